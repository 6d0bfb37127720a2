#!/usr/bin/env python3
#
# easytls/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Renewal scheduling for one managed certificate."""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypedDict

from .errors import RenewalError
from .models import CertificateMaterial
from .utils.config import MAX_TIMER_DELAY
from .utils.time import ensure_utc, utcnow

_log = logging.getLogger(__name__)

__all__ = ["RenewalScheduler", "RenewalState", "RenewalStatus"]

_ZERO = timedelta(0)


class RenewalState(str, enum.Enum):
	IDLE = "idle"
	WAITING = "waiting"
	WAITING_CHAINED = "waiting_chained"
	RENEWING = "renewing"
	BACKOFF = "backoff"
	FAILED = "failed"


class RenewalStatus(TypedDict):
	"""Status information for the renewal chain."""
	state: str
	deadline: str | None  # ISO timestamp at which renewal becomes due
	not_after: str | None
	last_renewal: str | None
	last_error: str | None
	renew_count: int
	fail_count: int


class RenewalScheduler:
	"""Waits until ``not_after - safety_margin`` and then renews.

	A single background task walks the states::

		IDLE -> WAITING_CHAINED* -> WAITING -> RENEWING [-> BACKOFF -> RENEWING]* -> WAITING ...

	Waits longer than ``max_delay`` are split into chained waits of at most
	``max_delay``; each wake re-evaluates the same deadline against the
	clock. Renewal itself is delegated to *renew*, which must acquire,
	persist and announce the new material and return it.

	Background renewal failures are retried with exponential backoff up to
	``retry_attempts`` times. After that the chain stops in ``FAILED`` and
	the error is kept on :attr:`last_error`. Nothing here is persisted; a
	restarted process derives the schedule from the certificate on disk.

	Usage::

		scheduler = RenewalScheduler(manager_renew, safety_margin=timedelta(days=1))
		material = await scheduler.schedule_next(material)
		...
		await scheduler.shutdown()
	"""

	def __init__(
		self,
		renew: Callable[[], Awaitable[CertificateMaterial]],
		*,
		safety_margin: timedelta = timedelta(days=1),
		max_delay: timedelta = MAX_TIMER_DELAY,
		retry_attempts: int = 5,
		backoff_base: float = 60.0,
		max_backoff: float = 3600.0,
		clock: Callable[[], datetime] = utcnow,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		if max_delay <= _ZERO:
			raise ValueError(f"max_delay must be positive, got {max_delay}")
		if retry_attempts < 1:
			raise ValueError(f"retry_attempts must be >= 1, got {retry_attempts}")

		self._renew = renew
		self.safety_margin = safety_margin
		self.max_delay = max_delay
		self.retry_attempts = retry_attempts
		self.backoff_base = backoff_base
		self.max_backoff = max_backoff
		self._clock = clock
		self._sleep = sleep

		self._task: Optional[asyncio.Task] = None
		self._inflight: Optional[asyncio.Task] = None
		self._state = RenewalState.IDLE
		self._material: Optional[CertificateMaterial] = None
		self._last_renewal: Optional[datetime] = None
		self._last_error: Optional[BaseException] = None
		self.renew_count = 0
		self.fail_count = 0

	# ------------------------------------------------------------------
	# Inspection
	# ------------------------------------------------------------------

	@property
	def state(self) -> RenewalState:
		return self._state

	@property
	def material(self) -> Optional[CertificateMaterial]:
		return self._material

	@property
	def deadline(self) -> Optional[datetime]:
		if self._material is None:
			return None
		return self._material.not_after - self.safety_margin

	@property
	def last_error(self) -> Optional[BaseException]:
		return self._last_error

	@property
	def is_armed(self) -> bool:
		return self._task is not None and not self._task.done()

	def remaining(self, material: CertificateMaterial) -> timedelta:
		"""Time left until *material* is due for renewal (may be negative)."""
		return (ensure_utc(material.not_after) - self.safety_margin) - self._clock()

	def get_status(self) -> RenewalStatus:
		deadline = self.deadline
		return {
			"state": self._state.value,
			"deadline": deadline.isoformat() if deadline else None,
			"not_after": self._material.not_after.isoformat() if self._material else None,
			"last_renewal": self._last_renewal.isoformat() if self._last_renewal else None,
			"last_error": str(self._last_error) if self._last_error else None,
			"renew_count": self.renew_count,
			"fail_count": self.fail_count,
		}

	# ------------------------------------------------------------------
	# Scheduling
	# ------------------------------------------------------------------

	async def schedule_next(self, material: CertificateMaterial) -> CertificateMaterial:
		"""Renew now if *material* is due, then arm the wait for the next renewal.

		A due renewal runs inline, before any timer is armed, and its
		failure propagates to the caller. Any previously armed chain is
		replaced; a renewal it has in flight is awaited rather than cancelled,
		and its certificate wins over *material* when it expires later.

		Returns:
			The material the new chain is waiting on
		"""
		settled = await self._cancel_chain()
		if settled is not None and settled.not_after > material.not_after:
			material = settled
		self._material = material

		if self.remaining(material) <= _ZERO:
			_log.info("RENEWAL certificate due (not_after=%s), renewing now", material.not_after.isoformat())
			try:
				material = await self._renew_once()
			except Exception as exc:
				self._state = RenewalState.IDLE
				self.fail_count += 1
				self._last_error = exc
				raise
			if self.remaining(material) <= _ZERO:
				self._state = RenewalState.FAILED
				self._last_error = self._inside_margin(material)
				raise self._last_error

		self._arm(material)
		return material

	def _inside_margin(self, material: CertificateMaterial) -> RenewalError:
		# A CA issuing certificates shorter than the margin would renew in a tight loop
		return RenewalError(
			f"Renewed certificate expires {material.not_after.isoformat()}, "
			f"inside the {self.safety_margin} safety margin",
			attempts=1,
		)

	def _arm(self, material: CertificateMaterial) -> None:
		self._material = material
		self._task = asyncio.create_task(self._run(material), name="easytls-renewal")

	async def _run(self, material: CertificateMaterial) -> None:
		try:
			while True:
				remaining = self.remaining(material)
				if remaining > self.max_delay:
					self._state = RenewalState.WAITING_CHAINED
					_log.debug(
						"RENEWAL deadline %s beyond single-wait limit, chaining %.0fs",
						self.deadline.isoformat(), self.max_delay.total_seconds(),
					)
					await self._sleep(self.max_delay.total_seconds())
					continue

				if remaining > _ZERO:
					self._state = RenewalState.WAITING
					_log.info(
						"RENEWAL next renewal at %s (in %.0fs)",
						self.deadline.isoformat(), remaining.total_seconds(),
					)
					await self._sleep(remaining.total_seconds())

				renewed = await self._renew_with_retry()
				if renewed is None:
					return
				material = renewed
				self._material = material
				if self.remaining(material) <= _ZERO:
					self._state = RenewalState.FAILED
					self._last_error = self._inside_margin(material)
					_log.critical("RENEWAL %s", self._last_error)
					return
		except asyncio.CancelledError:
			if self._state is not RenewalState.FAILED:
				self._state = RenewalState.IDLE
			raise

	async def _renew_once(self) -> CertificateMaterial:
		self._state = RenewalState.RENEWING
		# Own task: cancelling the chain must never cancel an acquisition
		renewal = asyncio.ensure_future(self._acquire())
		self._inflight = renewal
		try:
			return await asyncio.shield(renewal)
		finally:
			if renewal.done() and self._inflight is renewal:
				self._inflight = None

	async def _acquire(self) -> CertificateMaterial:
		material = await self._renew()
		self._material = material
		self._last_renewal = self._clock()
		self._last_error = None
		self.renew_count += 1
		_log.info("RENEWAL completed (run #%d), new expiry %s", self.renew_count, material.not_after.isoformat())
		return material

	async def _renew_with_retry(self) -> Optional[CertificateMaterial]:
		"""Renew with bounded exponential backoff; None once the budget is spent."""
		attempt = 0
		while True:
			attempt += 1
			try:
				return await self._renew_once()
			except Exception as exc:
				self.fail_count += 1
				if attempt >= self.retry_attempts:
					error = RenewalError(f"Renewal failed after {attempt} attempts: {exc}", attempts=attempt)
					error.__cause__ = exc
					self._last_error = error
					self._state = RenewalState.FAILED
					_log.critical("RENEWAL giving up after %d attempts", attempt, exc_info=exc)
					return None

				self._last_error = exc
				backoff = min(self.backoff_base * 2 ** (attempt - 1), self.max_backoff)
				_log.error(
					"RENEWAL attempt %d/%d failed: %s, backing off %.0fs",
					attempt, self.retry_attempts, exc, backoff,
				)
				self._state = RenewalState.BACKOFF
				await self._sleep(backoff)

	# ------------------------------------------------------------------
	# Teardown
	# ------------------------------------------------------------------

	async def _cancel_chain(self) -> Optional[CertificateMaterial]:
		"""Cancel the armed chain, then let an in-flight renewal settle.

		Returns:
			The material of a renewal that finished while settling, else None
		"""
		task, self._task = self._task, None
		if task is not None and not task.done():
			task.cancel()
			await asyncio.gather(task, return_exceptions=True)

		renewal, self._inflight = self._inflight, None
		if renewal is None:
			return None
		if not renewal.done():
			_log.info("RENEWAL waiting for the in-flight renewal to finish")
		try:
			return await renewal
		except Exception as exc:
			self.fail_count += 1
			self._last_error = exc
			_log.error("RENEWAL in-flight renewal failed: %s", exc)
			return None

	async def join(self) -> None:
		"""Wait until the current chain ends (FAILED or cancelled)."""
		if self._task is not None:
			await asyncio.gather(self._task, return_exceptions=True)

	async def shutdown(self) -> None:
		"""Cancel the renewal chain. Only meant for process shutdown.

		An acquisition already in flight is allowed to finish first.
		"""
		await self._cancel_chain()
		if self._state is not RenewalState.FAILED:
			self._state = RenewalState.IDLE
		_log.info("RENEWAL scheduler stopped")
