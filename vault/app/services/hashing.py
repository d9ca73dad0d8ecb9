"""
Hashing helpers shared by the store, the de-identification engine and the
compliance tracker.
"""

import hashlib


def sha256_hex(data: bytes) -> str:
    """
    Compute SHA-256 and return the lowercase hex digest.

    Example:
        >>> sha256_hex(b"hello")
        '2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """SHA-256 of a UTF-8 string."""
    return sha256_hex(text.encode("utf-8"))


def patient_ref_hash(patient_id: str) -> str:
    """
    Stable pseudonymous reference to a patient for logs and audit details.

    Audit rows for listings record this instead of the raw patient ID.
    """
    return f"sha256:{sha256_text(patient_id)[:32]}"
