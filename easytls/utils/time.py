#!/usr/bin/env python3
#
# easytls/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""UTC helpers for expiry arithmetic."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
	"""Normalize an expiry to UTC.

	Naive datetimes are rejected: comparing them against ``utcnow()`` would
	raise deep inside the renewal task instead of at the call site.
	"""
	if dt.tzinfo is None:
		raise ValueError(f"Naive datetime not allowed for certificate expiry: {dt!r}")
	return dt.astimezone(timezone.utc)
