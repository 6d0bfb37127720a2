#!/usr/bin/env python3
#
# easytls/manager.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate manager: the context object tying the lifecycle together."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .acme import ACMEClient
from .challenge import ChallengeResponder
from .events import CERTIFICATE_RENEWED, EventEmitter, Listener
from .models import CertificateBundle, CertificateMaterial, CertificateRequest, KeyKind
from .orchestrator import AcquisitionOrchestrator
from .scheduler import RenewalScheduler, RenewalStatus
from .store import CertificateStore
from .utils.config import Config

_log = logging.getLogger(__name__)

__all__ = ["CertificateManager"]

ClientFactory = Callable[[str, bytes], ACMEClient]


class CertificateManager:
	"""Keeps one certificate valid for a long-running process.

	Every collaborator (store, responder, ACME client, scheduler, event
	channel) hangs off this object, so several independently configured
	managers can live in one process.

	Usage::

		manager = CertificateManager(load_config())
		manager.on(CERTIFICATE_RENEWED, reload_tls_context)
		bundle = await manager.initialize_certificates(
			CertificateRequest(common_name="example.com", terms_of_service_agreed=True)
		)
	"""

	def __init__(
		self,
		config: Config,
		*,
		store: Optional[CertificateStore] = None,
		responder: Optional[ChallengeResponder] = None,
		client_factory: Optional[ClientFactory] = None,
		scheduler_options: Optional[dict[str, Any]] = None,
	) -> None:
		self.config = config
		self.store = store or CertificateStore(config.data_dir, key_size=config.key_size)
		self.responder = responder or ChallengeResponder(config.challenge_host, config.challenge_port)
		self.events = EventEmitter()
		self.client: Optional[ACMEClient] = None
		self._client_factory: ClientFactory = client_factory or ACMEClient

		self._request: Optional[CertificateRequest] = None
		self._certificate_key: Optional[bytes] = None

		options = {
			"safety_margin": config.renew_margin,
			"retry_attempts": config.retry_attempts,
		}
		options.update(scheduler_options or {})
		self.scheduler = RenewalScheduler(self._acquire_and_persist, **options)

	def on(self, event: str, listener: Listener) -> None:
		self.events.on(event, listener)

	# ------------------------------------------------------------------
	# Public operations
	# ------------------------------------------------------------------

	async def initialize(self) -> None:
		"""Prepare the storage root and ACME account key, build the client."""
		self.store.ensure_directory()
		account_key = self.store.load_or_create(KeyKind.ACCOUNT)
		self.client = self._client_factory(self.config.directory_url, account_key)
		_log.info("EasyTLS initialized (dir=%s, directory=%s)", self.store.root, self.config.directory_url)

	async def initialize_certificates(self, request: CertificateRequest) -> CertificateBundle:
		"""Ensure a valid certificate exists and arm its renewal.

		Returns:
			The current chain and private key, after any due renewal
		"""
		if self.client is None:
			await self.initialize()

		self._request = request
		self._certificate_key = self.store.load_or_create(KeyKind.CERTIFICATE)

		material = self.store.load_certificate()
		if material is None:
			_log.info("No stored certificate for %s, acquiring one", request.common_name)
			material = await self._acquire_and_persist()

		material = await self.scheduler.schedule_next(material)
		return CertificateBundle(certificate=material.chain, private_key=self._certificate_key)

	async def acquire_certificate(self, request: CertificateRequest) -> bytes:
		"""Run one acquisition; neither the schedule nor the stored chain change."""
		if self.client is None:
			await self.initialize()
		certificate_key = self.store.load_or_create(KeyKind.CERTIFICATE)
		material = await self._orchestrator().acquire(
			certificate_key,
			request.common_name,
			request.alt_names,
			request.terms_of_service_agreed,
		)
		return material.chain

	def status(self) -> RenewalStatus:
		return self.scheduler.get_status()

	async def shutdown(self) -> None:
		await self.scheduler.shutdown()

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------

	def _orchestrator(self) -> AcquisitionOrchestrator:
		if self.client is None:
			raise RuntimeError("CertificateManager.initialize() has not been called")
		return AcquisitionOrchestrator(self.client, self.responder, email=self.config.email)

	async def _acquire_and_persist(self) -> CertificateMaterial:
		if self._request is None or self._certificate_key is None:
			raise RuntimeError("No certificate request registered")
		material = await self._orchestrator().acquire(
			self._certificate_key,
			self._request.common_name,
			self._request.alt_names,
			self._request.terms_of_service_agreed,
		)
		self.store.persist_certificate(material)
		await self.events.emit(CERTIFICATE_RENEWED, material.chain)
		return material
