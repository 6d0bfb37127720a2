#!/usr/bin/env python3
#
# easytls/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client for HTTP-01 issuance."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from typing import Optional, Protocol

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from ..errors import ACMEError
from . import forge

_log = logging.getLogger(__name__)

_BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


class ChallengeHooks(Protocol):
	"""Receiver of HTTP-01 proofs while an authorization is pending."""

	def offer(self, token: str, proof: str) -> None: ...

	def withdraw(self, token: str) -> None: ...


def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _sha256(data: bytes) -> bytes:
	return hashlib.sha256(data).digest()


def _parse_acme_error(resp: httpx.Response) -> tuple[str, Optional[str]]:
	"""Extract (detail, problem type) from an ACME error response."""
	try:
		error = resp.json()
		detail = error.get("detail", "")
		error_type = error.get("type")
		if detail:
			return (f"{detail} ({error_type})" if error_type else detail), error_type
		return resp.text, error_type
	except (ValueError, AttributeError):
		return resp.text, None


def _raise_for(resp: httpx.Response, what: str) -> None:
	message, problem_type = _parse_acme_error(resp)
	raise ACMEError(
		f"Failed to {what}: {message}",
		status_code=resp.status_code,
		problem_type=problem_type,
	)


def _jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")

	if jwk["kty"] == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk["kty"] == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk['kty']}")

	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(_sha256(canonical_json.encode("utf-8")))


class ACMEClient:
	"""ACME v2 client driving a full HTTP-01 order from one CSR.

	Usage::

		async with ACMEClient(directory_url, account_key_pem) as client:
			chain = await client.auto(
				csr=csr_pem,
				email="ops@example.com",
				terms_of_service_agreed=True,
				challenge_hooks=responder,
			)
	"""

	def __init__(
		self,
		directory_url: str,
		account_key: bytes,
		*,
		timeout: float = 30.0,
		poll_interval: float = 2.0,
		max_polls: int = 30,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	):
		key = forge.load_private_key(account_key)
		if not isinstance(key, ec.EllipticCurvePrivateKey) or key.curve.name != "secp256r1":
			raise ValueError("Account key is not a P-256 EC key")

		self.directory_url = directory_url
		self.account_key: ec.EllipticCurvePrivateKey = key
		self.account_url: Optional[str] = None
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None
		self.timeout = timeout
		self.poll_interval = poll_interval
		self.max_polls = max_polls
		self._transport = transport

	async def __aenter__(self):
		self.http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
		return self

	async def __aexit__(self, *args):
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None
		self.nonce = None

	# ------------------------------------------------------------------
	# JWS plumbing
	# ------------------------------------------------------------------

	def _get_jwk(self) -> dict:
		"""Get JWK representation of account key."""
		numbers = self.account_key.public_key().public_numbers()
		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	@property
	def thumbprint(self) -> str:
		return _jwk_thumbprint(self._get_jwk())

	def key_authorization(self, token: str) -> str:
		return f"{token}.{self.thumbprint}"

	def _sign_payload(self, payload: bytes) -> bytes:
		"""Sign payload with account key (ES256)."""
		sig_der = self.account_key.sign(payload, ec.ECDSA(hashes.SHA256()))
		r, s = decode_dss_signature(sig_der)
		# ES256 signature is r || s, each 32 bytes
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	def _client(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client

	async def _fetch_directory(self) -> None:
		resp = await self._client().get(self.directory_url)
		if resp.status_code != 200:
			_raise_for(resp, "fetch ACME directory")
		self.directory = resp.json()

	async def _get_nonce(self) -> str:
		"""Get a fresh nonce, reusing the last Replay-Nonce if present."""
		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce

		resp = await self._client().head(self.directory["newNonce"])
		if "Replay-Nonce" in resp.headers:
			return resp.headers["Replay-Nonce"]

		# Fallback: GET request to newNonce
		resp = await self._client().get(self.directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise ACMEError("Failed to obtain ACME nonce", status_code=resp.status_code)
		return resp.headers["Replay-Nonce"]

	async def _post(self, url: str, payload: Optional[dict]) -> httpx.Response:
		"""Make one signed JWS request. ``payload=None`` is POST-as-GET."""
		nonce = await self._get_nonce()

		protected: dict = {"alg": "ES256", "nonce": nonce, "url": url}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self._get_jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))

		signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
		body = {
			"protected": protected_b64,
			"payload": payload_b64,
			"signature": _b64url(self._sign_payload(signing_input)),
		}

		resp = await self._client().post(
			url,
			json=body,
			headers={"Content-Type": "application/jose+json"},
		)
		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]
		return resp

	async def _signed_request(self, url: str, payload: Optional[dict]) -> httpx.Response:
		"""Signed request with a single retry on badNonce (RFC 8555 §6.5)."""
		resp = await self._post(url, payload)
		if resp.status_code == 400 and _parse_acme_error(resp)[1] == _BAD_NONCE:
			_log.debug("ACME badNonce for %s, retrying once", url)
			resp = await self._post(url, payload)
		return resp

	# ------------------------------------------------------------------
	# Protocol steps
	# ------------------------------------------------------------------

	async def register_account(self, email: str, terms_of_service_agreed: bool) -> str:
		"""Register a new account or look up the existing one for this key."""
		if self.account_url:
			return self.account_url

		payload: dict = {"termsOfServiceAgreed": terms_of_service_agreed}
		if email:
			payload["contact"] = [f"mailto:{email}"]

		resp = await self._signed_request(self.directory["newAccount"], payload)
		if resp.status_code not in (200, 201):
			_raise_for(resp, "register account")

		account_url = resp.headers.get("Location")
		if not account_url:
			raise ACMEError("No account URL in response", status_code=resp.status_code)

		self.account_url = account_url
		if resp.status_code == 201:
			_log.info("ACME registered new account: %s", account_url)
		else:
			_log.info("ACME using existing account: %s", account_url)
		return account_url

	async def new_order(self, names: list[str]) -> tuple[str, dict]:
		payload = {"identifiers": [{"type": "dns", "value": name} for name in names]}
		resp = await self._signed_request(self.directory["newOrder"], payload)
		if resp.status_code not in (200, 201):
			_raise_for(resp, "create order")

		order_url = resp.headers.get("Location")
		if not order_url:
			raise ACMEError("No order URL in response", status_code=resp.status_code)
		return order_url, resp.json()

	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._signed_request(auth_url, None)
		if resp.status_code != 200:
			_raise_for(resp, "get authorization")
		return resp.json()

	@staticmethod
	def get_http01_challenge(authorization: dict) -> dict:
		for challenge in authorization.get("challenges", []):
			if challenge.get("type") == "http-01":
				return challenge
		identifier = authorization.get("identifier", {}).get("value")
		raise ACMEError(f"No HTTP-01 challenge offered for {identifier}")

	async def respond_to_challenge(self, challenge_url: str) -> dict:
		"""Tell the ACME server the challenge is ready to be validated."""
		resp = await self._signed_request(challenge_url, {})
		if resp.status_code not in (200, 202):
			_raise_for(resp, "respond to challenge")
		return resp.json()

	async def poll_authorization(self, auth_url: str) -> dict:
		"""Poll an authorization until it is valid or failed."""
		for _ in range(self.max_polls):
			authorization = await self.get_authorization(auth_url)
			status = authorization.get("status")
			if status == "valid":
				return authorization
			if status in ("invalid", "deactivated", "expired", "revoked"):
				detail = ""
				for challenge in authorization.get("challenges", []):
					error = challenge.get("error")
					if error:
						detail = f": {error.get('detail', error)}"
						break
				identifier = authorization.get("identifier", {}).get("value")
				raise ACMEError(f"Authorization for {identifier} failed ({status}){detail}")
			await asyncio.sleep(self.poll_interval)

		raise ACMEError("Timeout waiting for authorization to be validated")

	async def poll_order(self, order_url: str, targets: tuple[str, ...] = ("ready", "valid")) -> dict:
		"""Poll order status until it reaches one of *targets* or fails."""
		for _ in range(self.max_polls):
			resp = await self._signed_request(order_url, None)
			if resp.status_code != 200:
				_raise_for(resp, "poll order")

			order = resp.json()
			status = order.get("status")
			if status in targets:
				return order
			if status in ("invalid", "expired", "revoked"):
				raise ACMEError(f"Order failed: {status}")

			await asyncio.sleep(self.poll_interval)

		raise ACMEError("Timeout waiting for order")

	async def finalize_order(self, order_url: str, order: dict, csr: bytes) -> dict:
		"""Submit the CSR and wait until the order is valid."""
		resp = await self._signed_request(order["finalize"], {"csr": _b64url(forge.csr_to_der(csr))})
		if resp.status_code not in (200, 201):
			_raise_for(resp, "finalize order")

		order = resp.json()
		if order.get("status") != "valid":
			order = await self.poll_order(order_url, targets=("valid",))
		return order

	async def download_certificate(self, order: dict) -> bytes:
		cert_url = order.get("certificate")
		if not cert_url:
			raise ACMEError("No certificate URL in order")

		resp = await self._signed_request(cert_url, None)
		if resp.status_code != 200:
			_raise_for(resp, "download certificate")
		return resp.content

	async def auto(
		self,
		*,
		csr: bytes,
		email: str,
		terms_of_service_agreed: bool,
		challenge_hooks: ChallengeHooks,
	) -> bytes:
		"""Run a complete order for *csr* and return the PEM chain.

		For each pending authorization the proof is handed to
		``challenge_hooks.offer`` before the server is asked to validate, and
		``challenge_hooks.withdraw`` is called once validation settles,
		successful or not.
		"""
		owns_client = self.http_client is None
		if owns_client:
			await self.__aenter__()
		try:
			return await self._auto(csr, email, terms_of_service_agreed, challenge_hooks)
		except httpx.HTTPError as exc:
			raise ACMEError(f"ACME transport error: {exc}") from exc
		except ValueError as exc:
			# Non-JSON bodies, unparsable CSRs
			raise ACMEError(f"ACME exchange failed: {exc}") from exc
		finally:
			if owns_client:
				await self.__aexit__(None, None, None)

	async def _auto(
		self,
		csr: bytes,
		email: str,
		terms_of_service_agreed: bool,
		challenge_hooks: ChallengeHooks,
	) -> bytes:
		await self._fetch_directory()
		await self.register_account(email, terms_of_service_agreed)

		names = forge.csr_names(csr)
		order_url, order = await self.new_order(names)
		_log.info("ACME created order %s for %s", order_url, ", ".join(names))

		authorizations = order.get("authorizations") or []
		if not authorizations:
			raise ACMEError("No authorizations in order")

		for auth_url in authorizations:
			authorization = await self.get_authorization(auth_url)
			identifier = authorization.get("identifier", {}).get("value")
			if authorization.get("status") == "valid":
				_log.debug("ACME authorization for %s already valid", identifier)
				continue

			challenge = self.get_http01_challenge(authorization)
			token = challenge["token"]
			challenge_hooks.offer(token, self.key_authorization(token))
			try:
				await self.respond_to_challenge(challenge["url"])
				await self.poll_authorization(auth_url)
				_log.info("ACME authorization for %s valid", identifier)
			finally:
				challenge_hooks.withdraw(token)

		order = await self.poll_order(order_url)
		if order.get("status") != "valid":
			order = await self.finalize_order(order_url, order, csr)

		return await self.download_certificate(order)
