#!/usr/bin/env python3
#
# easytls/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Exception types raised by EasyTLS."""

from __future__ import annotations

from typing import Optional


class EasyTLSError(Exception):
	"""Base class for all EasyTLS errors."""


class StorageError(EasyTLSError):
	"""Raised when the storage root cannot be used."""


class CertificateParseError(EasyTLSError):
	"""Raised when certificate bytes cannot be decoded."""


class ChallengeServerError(EasyTLSError):
	"""Raised when the HTTP-01 responder cannot bind its port."""


class ACMEError(EasyTLSError):
	"""Raised when the ACME exchange fails (rejection, network, bad CSR)."""

	def __init__(
		self,
		message: str,
		*,
		status_code: Optional[int] = None,
		problem_type: Optional[str] = None,
	) -> None:
		super().__init__(message)
		self.status_code = status_code
		self.problem_type = problem_type


class RenewalError(EasyTLSError):
	"""Raised when background renewal gave up after its retry budget."""

	def __init__(self, message: str, *, attempts: int) -> None:
		super().__init__(message)
		self.attempts = attempts
