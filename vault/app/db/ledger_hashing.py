"""
Canonical hashing for the note audit ledger.

Every audit row written by the record store is chained to its predecessor.
The writer (``EncryptedRecordStore``) and the verifier
(``EncryptedRecordStore.verify_audit_chain``) both go through this module so
the two can never disagree on canonical form.

Hash policy
-----------
  input  = (prev_entry_hash or '') + timestamp + (note_id or '')
          + action + user_id + details_json
  digest = SHA-256(input.encode("utf-8")).hexdigest()

Ordering used by verifier
--------------------------
  ORDER BY rowid ASC
"""

import hashlib
import json
from typing import Any, Dict, Optional

HASH_POLICY = "SHA-256(prev_entry_hash||timestamp||note_id||action||user_id||details_json)"
ORDERING = "rowid ASC"


def hash_content(content: str) -> str:
    """Hash a UTF-8 string with SHA-256 and return the hex digest."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def canonical_details(details: Optional[Dict[str, Any]]) -> str:
    """Serialize audit details with sorted keys; ``None`` becomes ``""``."""
    if details is None:
        return ""
    return json.dumps(details, sort_keys=True, separators=(",", ":"))


def compute_entry_hash(
    prev_entry_hash: Optional[str],
    timestamp: str,
    note_id: Optional[str],
    action: str,
    user_id: str,
    details_json: str,
) -> str:
    """Compute the chained hash for one audit row."""
    return hash_content(
        f"{prev_entry_hash or ''}"
        f"{timestamp}"
        f"{note_id or ''}"
        f"{action}"
        f"{user_id}"
        f"{details_json}"
    )
