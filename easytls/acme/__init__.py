#!/usr/bin/env python3
#
# easytls/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME protocol client and key/CSR forge."""

from .client import ACMEClient, ChallengeHooks

__all__ = ["ACMEClient", "ChallengeHooks"]
