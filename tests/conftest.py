"""Shared fixtures for the EasyTLS test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from easytls.models import CertificateMaterial
from easytls.utils.config import Config, reset_config


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def _make_certificate(
	common_name: str = "example.com",
	not_after: Optional[datetime] = None,
	alt_names: tuple[str, ...] = (),
) -> bytes:
	"""Self-signed PEM certificate; two copies form a fake chain."""
	key = ec.generate_private_key(ec.SECP256R1())
	not_after = (not_after or datetime.now(timezone.utc) + timedelta(days=90)).replace(microsecond=0)
	not_before = not_after - timedelta(days=90)
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(n) for n in (common_name, *alt_names)]),
			critical=False,
		)
		.sign(key, hashes.SHA256())
	)
	pem = cert.public_bytes(serialization.Encoding.PEM)
	return pem + pem


@pytest.fixture
def make_certificate() -> Callable[..., bytes]:
	return _make_certificate


@pytest.fixture
def make_material(make_certificate) -> Callable[[datetime], CertificateMaterial]:
	def _factory(not_after: datetime) -> CertificateMaterial:
		return CertificateMaterial(chain=make_certificate(not_after=not_after), not_after=not_after)
	return _factory


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> Config:
	return Config(
		data_dir=tmp_path / "easytls",
		email="ops@example.com",
		directory_url="https://acme.test/directory",
		challenge_host="127.0.0.1",
		challenge_port=0,
		renew_margin=timedelta(days=1),
		key_size=2048,
	)


@pytest.fixture(autouse=True)
def fresh_config():
	"""Reset the config singleton before and after every test."""
	reset_config()
	yield
	reset_config()


# ---------------------------------------------------------------------------
# Deterministic time
# ---------------------------------------------------------------------------


class FakeClock:
	def __init__(self, now: Optional[datetime] = None):
		self.now = now or datetime(2026, 1, 1, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += timedelta(seconds=seconds)


class FakeSleep:
	"""Records requested delays and advances the clock instead of waiting.

	Once ``block_after`` sleeps have completed, further sleeps park until
	the task is cancelled.
	"""

	def __init__(self, clock: FakeClock, block_after: Optional[int] = None):
		self.clock = clock
		self.block_after = block_after
		self.delays: list[float] = []

	async def __call__(self, seconds: float) -> None:
		self.delays.append(seconds)
		if self.block_after is not None and len(self.delays) > self.block_after:
			await asyncio.Event().wait()
		self.clock.advance(seconds)
		await asyncio.sleep(0)

	async def wait_for(self, count: int, timeout: float = 5.0) -> None:
		"""Let the event loop run until *count* sleeps were requested."""
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		while len(self.delays) < count:
			if loop.time() > deadline:
				raise AssertionError(f"expected {count} sleeps, saw {self.delays}")
			await asyncio.sleep(0.01)


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
	return FakeSleep(clock, block_after=0)
