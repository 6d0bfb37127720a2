#!/usr/bin/env python3
#
# easytls/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""On-disk storage for the account key, certificate key and chain."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional

from .acme import forge
from .errors import StorageError
from .models import CertificateMaterial, KeyKind
from .utils.fs import atomic_write_bytes

_log = logging.getLogger(__name__)

ACCOUNT_KEY_FILE = "account.key"
CERT_KEY_FILE = "cert.key"
CERT_FILE = "cert.pem"


class CertificateStore:
	"""Durable home of one managed certificate.

	Layout under *root*::

		account.key   ACME account key (PEM, 0600)
		cert.key      certificate private key (PEM, 0600)
		cert.pem      certificate chain (PEM, 0644)

	Keys are generated only when their file is absent. The chain is never
	generated here; it has to come from an acquisition.
	"""

	def __init__(
		self,
		root: Path,
		*,
		key_size: int = 2048,
		account_key_factory: Callable[[], bytes] = forge.create_account_key,
		private_key_factory: Optional[Callable[[int], bytes]] = None,
	):
		self.root = Path(root)
		self.key_size = key_size
		self._factories: dict[KeyKind, Callable[[], bytes]] = {
			KeyKind.ACCOUNT: account_key_factory,
			KeyKind.CERTIFICATE: lambda: (private_key_factory or forge.create_private_key)(self.key_size),
		}

	@property
	def account_key_path(self) -> Path:
		return self.root / ACCOUNT_KEY_FILE

	@property
	def cert_key_path(self) -> Path:
		return self.root / CERT_KEY_FILE

	@property
	def cert_path(self) -> Path:
		return self.root / CERT_FILE

	def _key_path(self, kind: KeyKind) -> Path:
		return self.account_key_path if kind is KeyKind.ACCOUNT else self.cert_key_path

	def ensure_directory(self) -> None:
		"""Create the storage root.

		"Already exists" is silent. Other failures are logged and tolerated
		only if the directory turns out to be present and writable anyway.
		"""
		if self.root.exists() and not self.root.is_dir():
			raise StorageError(f"Path exists but is not a directory: {self.root}")
		try:
			self.root.mkdir(parents=True, exist_ok=True)
		except FileExistsError:
			pass
		except OSError as exc:
			_log.warning("STORE could not create %s: %s", self.root, exc)

		if not self.root.is_dir() or not os.access(self.root, os.W_OK | os.X_OK):
			raise StorageError(f"Storage directory is not usable: {self.root}")

	def load_or_create(self, kind: KeyKind) -> bytes:
		"""Return the stored key of *kind*, generating it on first use.

		Only a missing file triggers generation; any other read error
		propagates so an unreadable key is never silently replaced.
		"""
		kind = KeyKind(kind)
		path = self._key_path(kind)
		try:
			return path.read_bytes()
		except FileNotFoundError:
			pass

		key_pem = self._factories[kind]()
		atomic_write_bytes(path, key_pem, mode=0o600)
		_log.info("STORE created new %s key at %s", kind.value, path)
		return key_pem

	def load_certificate(self) -> Optional[CertificateMaterial]:
		"""Return the stored chain, or None if none was ever persisted."""
		try:
			chain = self.cert_path.read_bytes()
		except FileNotFoundError:
			return None
		info = forge.read_certificate_info(chain)
		return CertificateMaterial(chain=chain, not_after=info.not_after)

	def persist_certificate(self, material: CertificateMaterial) -> None:
		"""Atomically replace the stored chain with *material*."""
		atomic_write_bytes(self.cert_path, material.chain, mode=0o644)
		_log.info("STORE saved certificate to %s (expires %s)", self.cert_path, material.not_after.isoformat())
