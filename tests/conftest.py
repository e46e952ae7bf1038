"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import base64
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest


def pytest_sessionstart() -> None:
    """Add src directory to sys.path for test imports."""
    project_root = Path(__file__).resolve().parent.parent
    src_path = project_root / "src"
    if str(src_path) not in sys.path:
        sys.path.insert(0, str(src_path))


def utc(year: int, month: int = 1, day: int = 1) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


_KEY = None


def _signing_key():
    global _KEY
    if _KEY is None:
        from cryptography.hazmat.primitives.asymmetric import ec

        _KEY = ec.generate_private_key(ec.SECP256R1())
    return _KEY


def build_certificate(
    dns_names: List[str],
    not_before: datetime = utc(2020),
    not_after: datetime = utc(2021),
    common_name: Optional[str] = "test.example",
    precert: bool = False,
) -> bytes:
    """DER of a self-signed certificate with the given SANs."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.x509.oid import NameOID

    key = _signing_key()
    attributes = []
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    name = x509.Name(attributes)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]),
            critical=False,
        )
    if precert:
        builder = builder.add_extension(x509.PrecertPoison(), critical=True)
    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.DER)


def build_duplicate_extension_certificate(dns_names: List[str]) -> bytes:
    """DER whose extension list carries OID 1.2.3.4 twice; parses, but extensions do not."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.x509.oid import NameOID, ObjectIdentifier

    key = _signing_key()
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "dup.example")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(utc(2020))
        .not_valid_after(utc(2021))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False)
        .add_extension(x509.UnrecognizedExtension(ObjectIdentifier("1.2.3.4"), b"\x05\x00"), critical=False)
        .add_extension(x509.UnrecognizedExtension(ObjectIdentifier("1.2.3.5"), b"\x05\x00"), critical=False)
        .sign(key, hashes.SHA256())
    )
    der = cert.public_bytes(serialization.Encoding.DER)
    # Same length, so no DER length field changes; the signature no longer verifies.
    return der.replace(b"\x06\x03\x2a\x03\x05", b"\x06\x03\x2a\x03\x04")


def classic_leaf(cert_der: bytes, timestamp_ms: int, precert: bool = False) -> dict:
    """A get-entries item as an RFC 6962 log would serve it."""
    header = bytes([0, 0]) + timestamp_ms.to_bytes(8, "big")
    if precert:
        tbs = b"\x30\x00"  # contents unused by the client
        leaf = (
            header
            + (1).to_bytes(2, "big")
            + b"\x00" * 32
            + len(tbs).to_bytes(3, "big")
            + tbs
            + b"\x00\x00"
        )
        extra = len(cert_der).to_bytes(3, "big") + cert_der + (0).to_bytes(3, "big")
    else:
        leaf = header + (0).to_bytes(2, "big") + len(cert_der).to_bytes(3, "big") + cert_der + b"\x00\x00"
        extra = (0).to_bytes(3, "big")
    return {
        "leaf_input": base64.b64encode(leaf).decode(),
        "extra_data": base64.b64encode(extra).decode(),
    }


def tile_leaf(cert_der: bytes, timestamp_ms: int, precert: bool = False) -> bytes:
    """One entry of a static-ct data tile."""
    out = timestamp_ms.to_bytes(8, "big")
    if precert:
        tbs = b"\x30\x00"
        out += (1).to_bytes(2, "big") + b"\x00" * 32 + len(tbs).to_bytes(3, "big") + tbs
        out += b"\x00\x00" + len(cert_der).to_bytes(3, "big") + cert_der
    else:
        out += (0).to_bytes(2, "big") + len(cert_der).to_bytes(3, "big") + cert_der + b"\x00\x00"
    return out + b"\x00\x00"


@pytest.fixture
def make_cert() -> Callable[..., bytes]:
    return build_certificate


@pytest.fixture
def duplicate_extension_cert() -> bytes:
    return build_duplicate_extension_certificate(["dup.example.com"])


@pytest.fixture
def make_classic_leaf() -> Callable[..., dict]:
    return classic_leaf


@pytest.fixture
def make_tile_leaf() -> Callable[..., bytes]:
    return tile_leaf


@pytest.fixture
def write_ingest_file() -> Callable[[Path, List[List[str]]], Path]:
    """Write rows as a zstd-compressed ingest file."""

    def _write(path: Path, rows: List[List[str]]) -> Path:
        import csv
        import io

        import zstandard

        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerows(rows)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(zstandard.ZstdCompressor().compress(buffer.getvalue().encode("utf-8")))
        return path

    return _write
