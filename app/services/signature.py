"""
JVZoo IPN signature verification.

JVZoo signs each IPN with the vendor's secret key:
sort the posted field names (excluding cverify), join their values with "|",
append "|<secret>", SHA-1 the UTF-8 bytes, and send the first 8 hex
characters in upper case as cverify.
"""

import hashlib
import hmac
from collections.abc import Mapping

from app.observability.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_FIELD = "cverify"
SIGNATURE_LENGTH = 8


def compute_ipn_signature(
    fields: Mapping[str, str | None],
    secret: str,
    signature_field: str = SIGNATURE_FIELD,
) -> str:
    """Compute the 8-character upper-case signature for an IPN field map."""
    values = [
        "" if fields[name] is None else str(fields[name])
        for name in sorted(fields)
        if name != signature_field
    ]
    pop = "|".join(values) + "|" + secret
    digest = hashlib.sha1(pop.encode("utf-8")).hexdigest()
    return digest.upper()[:SIGNATURE_LENGTH]


def verify_ipn_signature(
    fields: Mapping[str, str | None],
    secret: str,
    signature_field: str = SIGNATURE_FIELD,
) -> bool:
    """
    Check the notification's signature field against the computed value.

    Returns False on any mismatch, missing signature or malformed input.
    Never raises: notifications are untrusted input.
    """
    try:
        supplied = fields.get(signature_field)
        if not supplied or not secret:
            return False
        expected = compute_ipn_signature(fields, secret, signature_field)
        return hmac.compare_digest(expected, str(supplied).strip().upper())
    except Exception as e:
        logger.warning("ipn_signature_check_error", error=str(e))
        return False
