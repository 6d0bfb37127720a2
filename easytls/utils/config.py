#!/usr/bin/env python3
#
# easytls/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Iterator

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""A setting has a value EasyTLS cannot run with."""


# ---------------------------------------------------------------------------
# Fixed constants
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# Largest delay a single timer is asked to wait (2**31 - 1 ms)
MAX_TIMER_DELAY = timedelta(milliseconds=2**31 - 1)

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
	"""Settings for one managed certificate and its daemon."""
	data_dir: Path
	email: str = ""
	directory_url: str = ACME_DIRECTORY_PROD
	challenge_host: str = "0.0.0.0"
	challenge_port: int = 80
	renew_margin: timedelta = timedelta(days=1)
	key_size: int = 2048
	retry_attempts: int = 5
	common_name: str = ""
	alt_names: tuple[str, ...] = field(default_factory=tuple)
	terms_of_service_agreed: bool = False
	log_level: str = "INFO"


def _unquote(raw: str) -> str:
	"""Value part of a settings.env line: quoted text verbatim, else up to ` #`."""
	raw = raw.strip()
	if len(raw) >= 2 and raw[0] in "\"'":
		closing = raw.find(raw[0], 1)
		if closing > 0:
			return raw[1:closing]
	return raw.partition(" #")[0].strip()


def _dotenv_pairs(path: Path) -> Iterator[tuple[str, str]]:
	for line in path.read_text(encoding="utf-8").splitlines():
		line = line.strip()
		if line.startswith("#") or "=" not in line:
			continue
		key, _, value = line.partition("=")
		key = key.strip().removeprefix("export ").strip()
		if key:
			yield key, _unquote(value)


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Seed ``os.environ`` from ``settings.env`` in the working directory.

	Variables already present in the environment always win. Accepts
	``export`` prefixes, ``#`` comments and quoted values.
	"""
	path = dotenv_path or Path.cwd() / "settings.env"
	if not path.is_file():
		return
	for key, value in _dotenv_pairs(path):
		os.environ.setdefault(key, value)


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None:
		return default
	return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def load_config() -> Config:
	"""Build a :class:`Config` from EASY_TLS_* variables and settings.env."""
	load_dotenv()

	data_dir = Path(os.getenv("EASY_TLS_DIR", ".easytls")).resolve()

	directory_url = os.getenv("EASY_TLS_DIRECTORY_URL", "").strip()
	if not directory_url:
		directory_url = ACME_DIRECTORY_STAGING if _env_bool("EASY_TLS_STAGING") else ACME_DIRECTORY_PROD
	if not directory_url.startswith(("https://", "http://")):
		raise ConfigValidationError(f"EASY_TLS_DIRECTORY_URL is not a URL: {directory_url!r}")

	port = _env_int("EASY_TLS_CHALLENGE_PORT", 80)
	if port > 65535:
		raise ConfigValidationError(f"EASY_TLS_CHALLENGE_PORT out of range: {port}")

	key_size = _env_int("EASY_TLS_KEY_SIZE", 2048, minimum=2048)

	alt_names = tuple(
		name.strip()
		for name in os.getenv("EASY_TLS_ALT_NAMES", "").split(",")
		if name.strip()
	)

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	email = os.getenv("EASY_TLS_EMAIL", "").strip()
	if not email:
		_log.debug("EASY_TLS_EMAIL not set, registering ACME account without contact")

	return Config(
		data_dir=data_dir,
		email=email,
		directory_url=directory_url,
		challenge_host=os.getenv("EASY_TLS_CHALLENGE_HOST", "0.0.0.0"),
		challenge_port=port,
		renew_margin=timedelta(days=_env_int("EASY_TLS_RENEW_MARGIN_DAYS", 1)),
		key_size=key_size,
		retry_attempts=_env_int("EASY_TLS_RETRY_ATTEMPTS", 5, minimum=1),
		common_name=os.getenv("EASY_TLS_COMMON_NAME", "").strip(),
		alt_names=alt_names,
		terms_of_service_agreed=_env_bool("EASY_TLS_AGREE_TOS"),
		log_level=log_level,
	)


# Process-wide config, created on first use
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Return the process-wide :class:`Config`, loading it once."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Forget the cached config so the next get_config() reloads it."""
	global _config
	with _config_lock:
		_config = None
