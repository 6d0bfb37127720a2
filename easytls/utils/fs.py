#!/usr/bin/env python3
#
# easytls/utils/fs.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Filesystem helpers."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: Path, content: bytes, mode: int = 0o600) -> None:
	"""Atomically replace *path* with *content*.

	The data is written to a temp file in the same directory, fsync'd and
	moved over the target with ``os.replace``. Readers see either the old
	file or the new one, never a mix.
	"""
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		with os.fdopen(fd, "wb") as f:
			f.write(content)
			f.flush()
			os.fsync(f.fileno())
		os.chmod(tmp_path, mode)
		os.replace(tmp_path, path)
		# Sync parent directory so the rename itself is durable
		dir_fd = os.open(str(path.parent), os.O_RDONLY)
		try:
			os.fsync(dir_fd)
		finally:
			os.close(dir_fd)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)
