"""Tests for the renewal scheduler state machine."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import FakeSleep
from easytls.errors import ACMEError, RenewalError
from easytls.models import CertificateMaterial
from easytls.scheduler import RenewalScheduler, RenewalState

DAY = 86400.0


def _scheduler(renew, clock, sleep, **kwargs) -> RenewalScheduler:
	kwargs.setdefault("safety_margin", timedelta(days=1))
	return RenewalScheduler(renew, clock=clock, sleep=sleep, **kwargs)


class TestImmediateRenewal:
	@pytest.mark.asyncio
	async def test_expired_certificate_renews_before_any_timer(self, clock, fake_sleep, make_material):
		renewed = make_material(clock.now + timedelta(days=90))
		calls = []

		async def renew():
			calls.append(("renew", list(fake_sleep.delays)))
			return renewed

		scheduler = _scheduler(renew, clock, fake_sleep)
		result = await scheduler.schedule_next(make_material(clock.now - timedelta(days=3)))

		assert calls == [("renew", [])]
		assert result is renewed
		assert scheduler.renew_count == 1
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_inside_safety_margin_counts_as_due(self, clock, fake_sleep, make_material):
		renew = AsyncMock(return_value=make_material(clock.now + timedelta(days=90)))
		scheduler = _scheduler(renew, clock, fake_sleep)

		await scheduler.schedule_next(make_material(clock.now + timedelta(hours=12)))

		renew.assert_awaited_once()
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_inline_failure_propagates_and_arms_nothing(self, clock, fake_sleep, make_material):
		renew = AsyncMock(side_effect=ACMEError("rejected"))
		scheduler = _scheduler(renew, clock, fake_sleep)

		with pytest.raises(ACMEError, match="rejected"):
			await scheduler.schedule_next(make_material(clock.now - timedelta(days=1)))

		assert not scheduler.is_armed
		assert fake_sleep.delays == []
		assert scheduler.state is RenewalState.IDLE
		assert scheduler.fail_count == 1

	@pytest.mark.asyncio
	async def test_renewed_certificate_inside_margin_is_rejected(self, clock, fake_sleep, make_material):
		renew = AsyncMock(return_value=make_material(clock.now + timedelta(hours=1)))
		scheduler = _scheduler(renew, clock, fake_sleep)

		with pytest.raises(RenewalError):
			await scheduler.schedule_next(make_material(clock.now - timedelta(days=1)))

		renew.assert_awaited_once()
		assert scheduler.state is RenewalState.FAILED


class TestWaiting:
	@pytest.mark.asyncio
	async def test_two_days_left_arms_single_one_day_timer(self, clock, fake_sleep, make_material):
		renew = AsyncMock()
		scheduler = _scheduler(renew, clock, fake_sleep)

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=2)))
		await fake_sleep.wait_for(1)

		renew.assert_not_awaited()
		assert fake_sleep.delays == [pytest.approx(DAY)]
		assert scheduler.state is RenewalState.WAITING
		assert scheduler.deadline == clock.now + timedelta(days=1)
		await scheduler.shutdown()
		assert scheduler.state is RenewalState.IDLE

	@pytest.mark.asyncio
	async def test_long_wait_is_chained_and_lands_on_deadline(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=4)
		start = clock.now
		current = make_material(start + timedelta(days=26))
		renewed = make_material(start + timedelta(days=120))
		renew_times = []

		async def renew():
			renew_times.append(clock.now)
			return renewed

		scheduler = _scheduler(renew, clock, sleep, max_delay=timedelta(days=10))
		await scheduler.schedule_next(current)
		await sleep.wait_for(4)

		# 25 days to the deadline: 10 + 10 chained, then the 5 day remainder
		assert sleep.delays[:3] == [pytest.approx(10 * DAY), pytest.approx(10 * DAY), pytest.approx(5 * DAY)]
		assert renew_times == [start + timedelta(days=25)]
		assert scheduler.material is renewed
		# After renewal the next wait targets the new deadline
		assert sleep.delays[3] == pytest.approx(10 * DAY)
		assert scheduler.state is RenewalState.WAITING_CHAINED
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_chained_wait_does_not_renew_early(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=1)
		renew = AsyncMock()
		scheduler = _scheduler(renew, clock, sleep, max_delay=timedelta(days=10))

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=40)))
		await sleep.wait_for(2)

		renew.assert_not_awaited()
		assert sleep.delays == [pytest.approx(10 * DAY), pytest.approx(10 * DAY)]
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_rescheduling_replaces_the_existing_chain(self, clock, fake_sleep, make_material):
		scheduler = _scheduler(AsyncMock(), clock, fake_sleep)

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=5)))
		await fake_sleep.wait_for(1)
		first_task = scheduler._task

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=3)))

		assert first_task.cancelled()
		assert scheduler._task is not first_task
		assert scheduler.is_armed
		await scheduler.shutdown()
		assert not scheduler.is_armed


class TestRetry:
	@pytest.mark.asyncio
	async def test_failed_renewal_backs_off_then_succeeds(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=3)
		renewed = make_material(clock.now + timedelta(days=90))
		renew = AsyncMock(side_effect=[ACMEError("boom"), ACMEError("boom"), renewed])
		scheduler = _scheduler(renew, clock, sleep)

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=2)))
		await sleep.wait_for(4)

		assert sleep.delays[:3] == [pytest.approx(DAY), 60.0, 120.0]
		assert renew.await_count == 3
		assert scheduler.fail_count == 2
		assert scheduler.last_error is None
		assert scheduler.material is renewed
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_gives_up_after_retry_budget(self, clock, make_material):
		sleep = FakeSleep(clock)
		renew = AsyncMock(side_effect=ACMEError("down"))
		scheduler = _scheduler(renew, clock, sleep, retry_attempts=3, backoff_base=10.0, max_backoff=15.0)

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=2)))
		await scheduler.join()

		assert renew.await_count == 3
		assert sleep.delays == [pytest.approx(DAY), 10.0, 15.0]
		assert scheduler.state is RenewalState.FAILED
		assert isinstance(scheduler.last_error, RenewalError)
		assert scheduler.last_error.attempts == 3
		assert isinstance(scheduler.last_error.__cause__, ACMEError)
		assert scheduler.get_status()["state"] == "failed"


class TestInFlightRenewal:
	@staticmethod
	def _gated(result):
		gate = asyncio.Event()
		started = asyncio.Event()
		calls = []

		async def renew():
			calls.append(1)
			started.set()
			await gate.wait()
			return result

		return renew, gate, started, calls

	@pytest.mark.asyncio
	async def test_rescheduling_waits_for_running_renewal(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=1)
		current = make_material(clock.now + timedelta(days=2))
		renewed = make_material(clock.now + timedelta(days=90))
		renew, gate, started, calls = self._gated(renewed)
		scheduler = _scheduler(renew, clock, sleep)

		await scheduler.schedule_next(current)
		await started.wait()
		assert scheduler.state is RenewalState.RENEWING

		rescheduled = asyncio.create_task(scheduler.schedule_next(current))
		await asyncio.sleep(0.01)
		assert not rescheduled.done()
		gate.set()
		result = await rescheduled

		# The stale material is already due, but the finished renewal wins
		assert calls == [1]
		assert result is renewed
		assert scheduler.renew_count == 1
		assert scheduler.is_armed
		await scheduler.shutdown()

	@pytest.mark.asyncio
	async def test_shutdown_lets_running_renewal_finish(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=1)
		renewed = make_material(clock.now + timedelta(days=90))
		renew, gate, started, calls = self._gated(renewed)
		scheduler = _scheduler(renew, clock, sleep)

		await scheduler.schedule_next(make_material(clock.now + timedelta(days=2)))
		await started.wait()
		stopping = asyncio.create_task(scheduler.shutdown())
		await asyncio.sleep(0.01)
		assert not stopping.done()
		gate.set()
		await stopping

		assert scheduler.renew_count == 1
		assert scheduler.material is renewed
		assert not scheduler.is_armed
		assert scheduler.state is RenewalState.IDLE

	@pytest.mark.asyncio
	async def test_failed_running_renewal_is_recorded(self, clock, make_material):
		sleep = FakeSleep(clock, block_after=1)
		gate = asyncio.Event()

		async def renew():
			await gate.wait()
			raise ACMEError("order invalid")

		scheduler = _scheduler(renew, clock, sleep)
		await scheduler.schedule_next(make_material(clock.now + timedelta(days=2)))
		await sleep.wait_for(1)
		await asyncio.sleep(0.01)
		stopping = asyncio.create_task(scheduler.shutdown())
		await asyncio.sleep(0.01)
		gate.set()
		await stopping

		assert scheduler.fail_count == 1
		assert isinstance(scheduler.last_error, ACMEError)


class TestStatus:
	@pytest.mark.asyncio
	async def test_status_reports_deadline_and_counts(self, clock, fake_sleep, make_material):
		scheduler = _scheduler(AsyncMock(), clock, fake_sleep)
		material = make_material(clock.now + timedelta(days=10))

		await scheduler.schedule_next(material)
		await fake_sleep.wait_for(1)
		status = scheduler.get_status()

		assert status["state"] == "waiting"
		assert status["deadline"] == (material.not_after - timedelta(days=1)).isoformat()
		assert status["not_after"] == material.not_after.isoformat()
		assert status["renew_count"] == 0
		await scheduler.shutdown()

	def test_rejects_non_positive_max_delay(self, clock, fake_sleep):
		with pytest.raises(ValueError):
			_scheduler(AsyncMock(), clock, fake_sleep, max_delay=timedelta(0))

	@pytest.mark.asyncio
	async def test_rejects_naive_expiry(self, clock, fake_sleep, make_material):
		scheduler = _scheduler(AsyncMock(), clock, fake_sleep)
		material = make_material(clock.now + timedelta(days=5))
		naive = CertificateMaterial(chain=material.chain, not_after=material.not_after.replace(tzinfo=None))

		with pytest.raises(ValueError, match="Naive datetime"):
			await scheduler.schedule_next(naive)
		assert not scheduler.is_armed
