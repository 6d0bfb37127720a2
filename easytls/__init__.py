#!/usr/bin/env python3
#
# easytls/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""EasyTLS – automatic ACME certificates for a long-running server."""

from .events import CERTIFICATE_RENEWED
from .manager import CertificateManager
from .models import CertificateBundle, CertificateMaterial, CertificateRequest

__all__ = [
	"CERTIFICATE_RENEWED",
	"CertificateBundle",
	"CertificateManager",
	"CertificateMaterial",
	"CertificateRequest",
]
