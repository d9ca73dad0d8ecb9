"""
Exception taxonomy for the vault.

Messages name the rule or check that failed and never include decrypted note
content. "Not found" is not an error: lookups return ``None``.
"""


class VaultError(Exception):
    """Base class for all vault errors."""

    error_code = "vault_error"


class ComplianceViolation(VaultError):
    """A note failed a compliance rule; raised before any I/O."""

    error_code = "compliance_violation"

    def __init__(self, rule: str):
        self.rule = rule
        super().__init__(f"Compliance violation: {rule}")


class EncryptionFailure(VaultError):
    """The cipher could not produce a ciphertext."""

    error_code = "encryption_failure"


class DecryptionFailure(VaultError):
    """Stored data failed integrity checks or could not be decrypted."""

    error_code = "decryption_failure"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Decryption failed: {reason}")


class StorageFailure(VaultError):
    """Underlying database I/O failed. Callers may retry."""

    error_code = "storage_failure"


class NetworkFailure(VaultError):
    """The remote sync peer was unreachable or returned an error."""

    error_code = "network_failure"


class SyncError(VaultError):
    """A sync cycle or conflict operation could not proceed."""

    error_code = "sync_error"


class StoreNotInitialized(VaultError):
    """An operation was attempted before initialize(passphrase)."""

    error_code = "store_not_initialized"

    def __init__(self, message: str = "Storage not initialized"):
        super().__init__(message)
