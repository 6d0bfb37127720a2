#!/usr/bin/env python3
#
# easytls/orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""One end-to-end certificate acquisition."""

from __future__ import annotations

import logging
from typing import Iterable

from .acme import ACMEClient, forge
from .challenge import ChallengeResponder
from .models import CertificateMaterial

_log = logging.getLogger(__name__)


class AcquisitionOrchestrator:
	"""Generate a CSR, answer HTTP-01 challenges and collect the chain.

	Failures of the ACME exchange propagate unchanged. There is no retry
	here; the renewal scheduler decides whether to try again.
	"""

	def __init__(self, client: ACMEClient, responder: ChallengeResponder, *, email: str = ""):
		self.client = client
		self.responder = responder
		self.email = email

	async def acquire(
		self,
		certificate_key: bytes,
		common_name: str,
		alt_names: Iterable[str] = (),
		terms_of_service_agreed: bool = False,
	) -> CertificateMaterial:
		if terms_of_service_agreed:
			_log.warning(
				"ACME terms of service agreed: by setting terms_of_service_agreed you affirm "
				"you have read the CA's terms of service and accept them entirely"
			)
		_log.info("ACME acquiring new certificate for %s", common_name)

		csr = forge.create_csr(common_name, alt_names, certificate_key)

		async with self.responder.serving():
			chain = await self.client.auto(
				csr=csr,
				email=self.email,
				terms_of_service_agreed=terms_of_service_agreed,
				challenge_hooks=self.responder,
			)

		info = forge.read_certificate_info(chain)
		_log.info("ACME acquired certificate for %s (expires %s)", common_name, info.not_after.isoformat())
		return CertificateMaterial(chain=chain, not_after=info.not_after)
