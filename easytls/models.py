#!/usr/bin/env python3
#
# easytls/models.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Data types shared across the certificate lifecycle."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

# RFC 1123 hostname
DOMAIN_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"


class KeyKind(str, enum.Enum):
	"""Key material the store is allowed to generate on absence."""
	ACCOUNT = "account"
	CERTIFICATE = "certificate"


class CertificateRequest(BaseModel):
	"""Names and terms agreement for one managed certificate."""
	common_name: str = Field(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN)
	alt_names: list[str] = Field(default_factory=list)
	terms_of_service_agreed: bool = False

	@field_validator("alt_names")
	@classmethod
	def _validate_alt_names(cls, value: list[str]) -> list[str]:
		for name in value:
			if len(name) > 253 or not re.match(DOMAIN_PATTERN, name):
				raise ValueError(f"Invalid alternative name: {name!r}")
		return value


@dataclass(frozen=True)
class CertificateMaterial:
	"""An issued certificate chain and its expiry."""
	chain: bytes
	not_after: datetime


@dataclass(frozen=True)
class CertificateBundle:
	"""What a TLS listener needs: chain plus private key (both PEM)."""
	certificate: bytes
	private_key: bytes
