#!/usr/bin/env python3
#
# easytls/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process event channel for certificate lifecycle notifications."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Union

_log = logging.getLogger(__name__)

__all__ = ["CERTIFICATE_RENEWED", "KNOWN_EVENTS", "EventEmitter", "Listener"]

CERTIFICATE_RENEWED = "certificate_renewed"

KNOWN_EVENTS: frozenset[str] = frozenset({CERTIFICATE_RENEWED})

Listener = Callable[[Any], Union[None, Awaitable[None]]]


class EventEmitter:
	"""Dispatch events to registered listeners.

	Listeners may be plain callables or coroutine functions. A failing
	listener is logged and skipped; it never breaks the emitter or the
	remaining listeners.
	"""

	def __init__(self) -> None:
		self._listeners: dict[str, list[Listener]] = {name: [] for name in KNOWN_EVENTS}

	def _check(self, event: str) -> None:
		if event not in KNOWN_EVENTS:
			raise ValueError(f"Unknown event {event!r}. Known events: {sorted(KNOWN_EVENTS)}")

	def on(self, event: str, listener: Listener) -> None:
		"""Register *listener* for *event*."""
		self._check(event)
		self._listeners[event].append(listener)

	def off(self, event: str, listener: Listener) -> None:
		"""Unregister *listener*; unknown listeners are ignored."""
		self._check(event)
		try:
			self._listeners[event].remove(listener)
		except ValueError:
			pass

	def listener_count(self, event: str) -> int:
		self._check(event)
		return len(self._listeners[event])

	async def emit(self, event: str, payload: Any) -> int:
		"""Call every listener of *event* in registration order.

		Returns:
			Number of listeners that completed without raising
		"""
		self._check(event)
		delivered = 0
		for listener in list(self._listeners[event]):
			try:
				result = listener(payload)
				if inspect.isawaitable(result):
					await result
				delivered += 1
			except Exception:
				_log.exception("EVENT %s listener %r failed", event, listener)
		return delivered
