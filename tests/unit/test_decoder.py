"""Unit tests for certificate payload decoding."""

from __future__ import annotations

import pickle

import pytest

from ct_firstseen.decoder import (
    DecodeError,
    VariantMismatchError,
    decode_entry,
    decode_or_error,
)
from ct_firstseen.ledger import EntryType


def test_decode_entry_reads_sans_common_name_and_validity(make_cert) -> None:
    der = make_cert(["a.example.com", "b.example.com"], common_name="a.example.com")

    decoded = decode_entry(der, EntryType.X509_ENTRY)

    assert set(decoded.dns_names) == {"a.example.com", "b.example.com"}
    assert decoded.common_name == "a.example.com"
    assert decoded.not_before == 1577836800  # 2020-01-01T00:00:00Z
    assert decoded.not_after == 1609459200  # 2021-01-01T00:00:00Z
    assert decoded.is_precert is False


def test_decode_entry_accepts_precertificate_for_precert_entry(make_cert) -> None:
    der = make_cert(["pre.example.com"], precert=True)

    decoded = decode_entry(der, EntryType.PRECERT_ENTRY)

    assert decoded.is_precert is True
    assert decoded.dns_names == ("pre.example.com",)


def test_decode_entry_without_san_has_no_dns_names(make_cert) -> None:
    decoded = decode_entry(make_cert([], common_name=None), EntryType.X509_ENTRY)

    assert decoded.dns_names == ()
    assert decoded.common_name is None


def test_decode_entry_rejects_precertificate_in_x509_entry(make_cert) -> None:
    der = make_cert(["pre.example.com"], precert=True)

    with pytest.raises(VariantMismatchError):
        decode_entry(der, EntryType.X509_ENTRY)


def test_decode_entry_rejects_certificate_in_precert_entry(make_cert) -> None:
    with pytest.raises(VariantMismatchError):
        decode_entry(make_cert(["a.example.com"]), EntryType.PRECERT_ENTRY)


def test_decode_entry_rejects_garbage() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode_entry(b"\x30\x03\x02\x01", EntryType.X509_ENTRY)

    assert excinfo.value.fatal is True


def test_decode_or_error_returns_error_instead_of_raising() -> None:
    decoded, error = decode_or_error(b"not a certificate", int(EntryType.X509_ENTRY))

    assert decoded is None
    assert isinstance(error, DecodeError)


def test_decode_errors_survive_pickling() -> None:
    error = VariantMismatchError("expected certificate", fatal=False)

    restored = pickle.loads(pickle.dumps(error))

    assert isinstance(restored, VariantMismatchError)
    assert str(restored) == "expected certificate"
    assert restored.fatal is False


def test_decode_entry_wraps_extension_parsing_errors(duplicate_extension_cert) -> None:
    with pytest.raises(DecodeError):
        decode_entry(duplicate_extension_cert, EntryType.X509_ENTRY)


def test_decode_or_error_reports_duplicate_extension(duplicate_extension_cert) -> None:
    decoded, error = decode_or_error(duplicate_extension_cert, int(EntryType.X509_ENTRY))

    assert decoded is None
    assert isinstance(error, DecodeError)
    assert not isinstance(error, VariantMismatchError)
