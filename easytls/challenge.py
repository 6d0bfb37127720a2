#!/usr/bin/env python3
#
# easytls/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Ephemeral HTTP-01 challenge responder."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import AsyncIterator
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response

from .errors import ChallengeServerError

_log = logging.getLogger(__name__)

__all__ = ["ChallengeResponder", "challenge_path"]

CHALLENGE_PREFIX = ".well-known/acme-challenge"

_STARTUP_POLL_SECONDS = 0.05
_STARTUP_TIMEOUT_SECONDS = 10.0
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def challenge_path(token: str) -> str:
	"""Validation path for *token*, without the leading slash."""
	return f"{CHALLENGE_PREFIX}/{token}"


class _ResponderServer(uvicorn.Server):
	"""uvicorn server that leaves process signal handling to the host."""

	def install_signal_handlers(self) -> None:
		pass

	@contextlib.contextmanager
	def capture_signals(self):
		yield


class ChallengeResponder:
	"""HTTP-01 responder bound to a token → proof mapping.

	The ACME client drives the mapping through :meth:`offer` and
	:meth:`withdraw`. The listener only exists inside :meth:`serving`,
	and a lock keeps that whole start → stop span exclusive, so a new
	listener is never started before the previous one released the port.
	"""

	def __init__(self, host: str = "0.0.0.0", port: int = 80):
		self.host = host
		self.port = port
		self._mapping: dict[str, str] = {}
		self._lock = asyncio.Lock()
		self._server: Optional[_ResponderServer] = None
		self._task: Optional[asyncio.Task] = None
		self._sock: Optional[socket.socket] = None
		self.app = self._create_app()

	# ------------------------------------------------------------------
	# Challenge hooks
	# ------------------------------------------------------------------

	def offer(self, token: str, proof: str) -> None:
		self._mapping[challenge_path(token)] = proof
		_log.debug("CHALLENGE offered token=%s", token)

	def withdraw(self, token: str) -> None:
		self._mapping.pop(challenge_path(token), None)
		_log.debug("CHALLENGE withdrew token=%s", token)

	@property
	def mapping(self) -> dict[str, str]:
		return dict(self._mapping)

	def lookup(self, path: str) -> Optional[str]:
		return self._mapping.get(path)

	# ------------------------------------------------------------------
	# HTTP app
	# ------------------------------------------------------------------

	def _create_app(self) -> FastAPI:
		app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

		@app.api_route("/{path:path}", methods=_ALL_METHODS)
		async def serve_challenge(request: Request) -> Response:
			path = request.url.path[1:]
			client_ip = request.client.host if request.client else "-"
			_log.info("CHALLENGE request for %s from %s", path, client_ip)

			proof = self.lookup(path)
			if proof is None:
				return Response(status_code=404)
			return Response(content=proof, media_type="application/octet-stream")

		return app

	# ------------------------------------------------------------------
	# Listener lifecycle
	# ------------------------------------------------------------------

	@property
	def is_running(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def bound_port(self) -> Optional[int]:
		"""Actual listening port (differs from ``port`` when it is 0)."""
		if self._sock is None:
			return None
		return self._sock.getsockname()[1]

	async def start(self) -> None:
		"""Bind the validation port and begin serving."""
		if self._task is not None:
			raise RuntimeError("Challenge responder is already running")

		try:
			sock = socket.create_server((self.host, self.port))
		except OSError as exc:
			raise ChallengeServerError(f"Cannot bind {self.host}:{self.port}: {exc}") from exc

		config = uvicorn.Config(
			self.app,
			host=self.host,
			port=self.port,
			log_config=None,
			access_log=False,
			lifespan="off",
			timeout_graceful_shutdown=5,
		)
		server = _ResponderServer(config)
		self._sock = sock
		self._server = server
		self._task = asyncio.create_task(server.serve(sockets=[sock]))

		loop = asyncio.get_running_loop()
		deadline = loop.time() + _STARTUP_TIMEOUT_SECONDS
		try:
			while not server.started:
				if self._task.done() or loop.time() > deadline:
					error = None if not self._task.done() else self._task.exception()
					await self.stop()
					raise ChallengeServerError(f"Challenge responder failed to start on port {self.port}") from error
				await asyncio.sleep(_STARTUP_POLL_SECONDS)
		except asyncio.CancelledError:
			await self.stop()
			raise

		_log.info("CHALLENGE responder listening on %s:%d", self.host, self.bound_port)

	async def stop(self) -> None:
		"""Stop serving and release the port before returning.

		Cancelling the caller does not cut the teardown short: uvicorn is
		left to close its listener and the socket is closed before the
		cancellation propagates.
		"""
		server, task, sock = self._server, self._task, self._sock
		self._server = self._task = self._sock = None

		if server is not None:
			server.should_exit = True
		try:
			if task is not None and not task.done():
				await asyncio.shield(task)
		finally:
			try:
				if task is not None:
					if not task.done():
						_log.debug("CHALLENGE stop cancelled, finishing responder shutdown")
						await asyncio.wait({task})
					if not task.cancelled() and task.exception() is not None:
						_log.debug("CHALLENGE responder exited with %r", task.exception())
			finally:
				if sock is not None:
					sock.close()
					_log.info("CHALLENGE responder stopped")

	@contextlib.asynccontextmanager
	async def serving(self) -> AsyncIterator["ChallengeResponder"]:
		"""Scoped start/stop; the port is released before the block exits."""
		async with self._lock:
			await self.start()
			try:
				yield self
			finally:
				await self.stop()
