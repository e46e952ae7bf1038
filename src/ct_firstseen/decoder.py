"""Decode certificate and precertificate payloads from CT log entries."""

from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography import x509

from .ledger import EntryType


class DecodeError(Exception):
    """Raised when an entry's payload cannot be used."""

    def __init__(self, message: str, fatal: bool = True):
        super().__init__(message)
        self.fatal = fatal

    def __reduce__(self):
        # Crosses the process pool boundary
        return (type(self), (str(self), self.fatal))


class VariantMismatchError(DecodeError):
    """The entry type disagrees with the payload (poison extension present or missing)."""


@dataclass(frozen=True)
class DecodedCertificate:
    """The fields of a certificate the extraction stage needs."""

    dns_names: Tuple[str, ...]
    common_name: Optional[str]
    not_before: int
    not_after: int
    is_precert: bool


def _is_precertificate(cert: x509.Certificate) -> bool:
    try:
        cert.extensions.get_extension_for_class(x509.PrecertPoison)
    except x509.ExtensionNotFound:
        return False
    return True


def _dns_names(cert: x509.Certificate) -> Tuple[str, ...]:
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(san_ext.value.get_values_for_type(x509.DNSName))


def _common_name(cert: x509.Certificate) -> Optional[str]:
    # Unreadable subjects are a soft failure: the entry is still usable.
    try:
        cn_attr = cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    except Exception:
        return None
    if not cn_attr:
        return None
    cn_value = cn_attr[0].value
    if isinstance(cn_value, bytes):
        cn_value = cn_value.decode("utf-8", errors="ignore")
    return str(cn_value)


def decode_entry(cert_data: bytes, entry_type: int) -> DecodedCertificate:
    """
    Decode a DER payload and check it against the entry type.

    Raises:
        DecodeError: the payload is not a parsable certificate
        VariantMismatchError: an X.509 entry carries a precertificate or vice versa
    """
    try:
        cert = x509.load_der_x509_certificate(cert_data)
    except Exception as e:
        raise DecodeError(f"unparsable certificate: {e}") from e

    expect_precert = entry_type == EntryType.PRECERT_ENTRY
    try:
        is_precert = _is_precertificate(cert)
        dns_names = _dns_names(cert)
    except Exception as e:  # DuplicateExtension, UnsupportedGeneralNameType, ValueError
        raise DecodeError(f"malformed extensions: {e}") from e

    if is_precert != expect_precert:
        expected = "precertificate" if expect_precert else "certificate"
        raise VariantMismatchError(f"expected {expected}, payload disagrees")

    return DecodedCertificate(
        dns_names=dns_names,
        common_name=_common_name(cert),
        not_before=int(cert.not_valid_before_utc.timestamp()),
        not_after=int(cert.not_valid_after_utc.timestamp()),
        is_precert=is_precert,
    )


def decode_or_error(
    cert_data: bytes, entry_type: int
) -> Tuple[Optional[DecodedCertificate], Optional[DecodeError]]:
    """
    Process-pool worker wrapping `decode_entry`.
    Must be module-level for pickling.
    """
    try:
        return decode_entry(cert_data, entry_type), None
    except DecodeError as e:
        return None, e
