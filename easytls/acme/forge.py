#!/usr/bin/env python3
#
# easytls/acme/forge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Key, CSR and certificate helpers built on ``cryptography``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from ..errors import CertificateParseError

_PEM_CERT_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = b"-----END CERTIFICATE-----"


@dataclass(frozen=True)
class CertificateInfo:
	"""Fields of the leaf certificate the lifecycle cares about."""
	common_name: Optional[str]
	alt_names: tuple[str, ...]
	not_before: datetime
	not_after: datetime
	serial: str


def _private_key_pem(key) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


def create_account_key() -> bytes:
	"""Generate a P-256 ACME account key (PEM)."""
	return _private_key_pem(ec.generate_private_key(ec.SECP256R1()))


def create_private_key(key_size: int = 2048) -> bytes:
	"""Generate an RSA certificate key (PEM)."""
	return _private_key_pem(rsa.generate_private_key(public_exponent=65537, key_size=key_size))


def load_private_key(key_pem: bytes):
	return serialization.load_pem_private_key(key_pem, password=None)


def create_csr(common_name: str, alt_names: Iterable[str], key_pem: bytes) -> bytes:
	"""Build a PEM CSR for *common_name* plus *alt_names*.

	The common name is always included in the SAN extension, since ACME
	servers only validate SAN entries.
	"""
	key = load_private_key(key_pem)
	names = [common_name]
	for name in alt_names:
		if name not in names:
			names.append(name)

	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
			critical=False,
		)
		.sign(key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.PEM)


def csr_to_der(csr_pem: bytes) -> bytes:
	return x509.load_pem_x509_csr(csr_pem).public_bytes(serialization.Encoding.DER)


def csr_names(csr_pem: bytes) -> list[str]:
	"""Return the DNS identifiers a CSR asks for (SAN order, CN first if absent)."""
	csr = x509.load_pem_x509_csr(csr_pem)
	names: list[str] = []
	try:
		san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		names.extend(san.value.get_values_for_type(x509.DNSName))
	except x509.ExtensionNotFound:
		pass
	cn_attrs = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
	if cn_attrs:
		cn = str(cn_attrs[0].value)
		if cn not in names:
			names.insert(0, cn)
	return names


def split_pem_chain(chain_pem: bytes) -> list[bytes]:
	"""Split a PEM bundle into its certificate blocks."""
	certs = []
	pem_data = chain_pem
	while _PEM_CERT_BEGIN in pem_data:
		start = pem_data.find(_PEM_CERT_BEGIN)
		end = pem_data.find(_PEM_CERT_END, start)
		if end == -1:
			break
		end += len(_PEM_CERT_END)
		certs.append(pem_data[start:end])
		pem_data = pem_data[end:]
	return certs


def read_certificate_info(chain_pem: bytes) -> CertificateInfo:
	"""Parse the leaf (first) certificate of a PEM chain."""
	blocks = split_pem_chain(chain_pem)
	if not blocks:
		raise CertificateParseError("No PEM certificate found")
	try:
		cert = x509.load_pem_x509_certificate(blocks[0])
	except ValueError as exc:
		raise CertificateParseError(f"Invalid certificate: {exc}") from exc

	cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
	try:
		san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		alt_names = tuple(san.value.get_values_for_type(x509.DNSName))
	except x509.ExtensionNotFound:
		alt_names = ()

	return CertificateInfo(
		common_name=str(cn_attrs[0].value) if cn_attrs else None,
		alt_names=alt_names,
		not_before=cert.not_valid_before_utc,
		not_after=cert.not_valid_after_utc,
		serial=format(cert.serial_number, "x"),
	)
