#!/usr/bin/env python3
#
# easytls/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Standalone daemon: keep the configured certificate valid until stopped."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from .events import CERTIFICATE_RENEWED
from .manager import CertificateManager
from .models import CertificateRequest
from .utils.config import Config, ConfigValidationError, get_config

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ColoredFormatter(logging.Formatter):
	"""Formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def setup_logging(log_level: str) -> None:
	"""Configure unified logging for the process."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt=DATE_FORMAT,
		)
	else:
		formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

	# force=True removes any pre-existing handlers
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Route the challenge responder's uvicorn loggers through the root handler
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx"):
		logging.getLogger(name).setLevel(logging.WARNING)


def request_from_config(cfg: Config) -> CertificateRequest:
	if not cfg.common_name:
		raise ConfigValidationError("EASY_TLS_COMMON_NAME is not set")
	try:
		return CertificateRequest(
			common_name=cfg.common_name,
			alt_names=list(cfg.alt_names),
			terms_of_service_agreed=cfg.terms_of_service_agreed,
		)
	except ValidationError as exc:
		raise ConfigValidationError(f"Invalid certificate names: {exc}") from exc


async def serve(cfg: Config) -> None:
	"""Initialize the certificate and keep renewing it until SIGINT/SIGTERM."""
	request = request_from_config(cfg)
	manager = CertificateManager(cfg)

	def _log_renewal(chain: bytes) -> None:
		_log.info("Certificate for %s renewed (%d bytes)", request.common_name, len(chain))

	manager.on(CERTIFICATE_RENEWED, _log_renewal)

	stop_event = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		loop.add_signal_handler(sig, stop_event.set)

	try:
		await manager.initialize_certificates(request)
		status = manager.status()
		_log.info("EasyTLS running (state=%s, next renewal %s)", status["state"], status["deadline"])
		await stop_event.wait()
	finally:
		await manager.shutdown()
		_log.info("EasyTLS shutdown complete")


def run() -> int:
	try:
		cfg = get_config()
	except ConfigValidationError as exc:
		logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT)
		_log.error("Invalid configuration: %s", exc)
		return 2

	setup_logging(cfg.log_level)
	try:
		asyncio.run(serve(cfg))
	except ConfigValidationError as exc:
		_log.error("Invalid configuration: %s", exc)
		return 2
	return 0


if __name__ == "__main__":
	sys.exit(run())
