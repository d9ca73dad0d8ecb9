"""
Encrypted record store.

Persists clinical notes encrypted at rest in SQLite, with a hash-chained,
append-only access log.

Guarantees:
- The compliance invariant (consent obtained, data minimization confirmed,
  retention period > 0) is checked before any I/O. A violating note never
  produces a row or an audit entry.
- Every operation is one ``BEGIN IMMEDIATE`` transaction on a short-lived
  connection. The note row, its audit entry and (when a tracker is attached)
  its compliance event commit together or not at all.
- Deletion writes its audit entry before the row is removed.
- A checksum mismatch, wrong key or failed authentication tag is a
  ``DecryptionFailure``; ``None`` means only "no such ID".
"""

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from vault.app.config import get_audit_trail_limit
from vault.app.db.ledger_hashing import HASH_POLICY, ORDERING, canonical_details, compute_entry_hash
from vault.app.db.migrate import ensure_schema, get_connection, get_db_path, transaction
from vault.app.logging_config import get_logger
from vault.app.models.compliance import (
    AuditTrailAccessed,
    NoteAccessed,
    NoteCreated,
    NoteDeleted,
    NoteUpdated,
)
from vault.app.models.notes import (
    DEFAULT_RETENTION_DAYS,
    SHORT_RETENTION_DAYS,
    AuditContext,
    AuditEntry,
    ClinicalNote,
    ComplianceMetadata,
    EncryptedEnvelope,
    EncryptedRecord,
    SyncStatus,
)
from vault.app.services.crypto import NoteCipher
from vault.app.services.errors import ComplianceViolation, StoreNotInitialized
from vault.app.services.hashing import patient_ref_hash
from vault.app.services.timestamps import format_timestamp, get_utc_timestamp, parse_timestamp, utc_now
from vault.app.services.uuid7 import generate_uuid7

logger = get_logger("record_store")

RULE_MISSING_CONSENT = "missing consent"
RULE_DATA_MINIMIZATION = "data minimization not confirmed"
RULE_RETENTION = "missing retention period"
RULE_EXPLICIT_CONSENT = "explicit consent not recorded"
RULE_EMPTY_CONTENT = "empty content"
RULE_MISSING_PATIENT = "missing patient id"
RULE_MISSING_TEMPLATE = "missing template type"


def check_compliance_invariant(note: ClinicalNote) -> None:
    """
    Raise ``ComplianceViolation`` naming the first failed storage rule.

    Pure function: performs no I/O.
    """
    metadata = note.compliance_metadata
    if not note.consent_obtained:
        raise ComplianceViolation(RULE_MISSING_CONSENT)
    if not metadata.data_minimization:
        raise ComplianceViolation(RULE_DATA_MINIMIZATION)
    if metadata.retention_period_days <= 0:
        raise ComplianceViolation(RULE_RETENTION)


def validate_note_compliance(note: ClinicalNote) -> List[str]:
    """
    Every rule the note currently fails, for display before saving.

    Includes the storage invariant plus the upload rule (explicit consent)
    and basic completeness checks.
    """
    violations = []
    metadata = note.compliance_metadata
    if not note.consent_obtained:
        violations.append(RULE_MISSING_CONSENT)
    if not metadata.explicit_consent:
        violations.append(RULE_EXPLICIT_CONSENT)
    if not metadata.data_minimization:
        violations.append(RULE_DATA_MINIMIZATION)
    if metadata.retention_period_days <= 0:
        violations.append(RULE_RETENTION)
    if not note.content.strip():
        violations.append(RULE_EMPTY_CONTENT)
    if not note.patient_id.strip():
        violations.append(RULE_MISSING_PATIENT)
    if not note.template_type.strip():
        violations.append(RULE_MISSING_TEMPLATE)
    return violations


def create_note_with_defaults(patient_id: str, template_type: str) -> ClinicalNote:
    """An empty, unsaved ``Local`` note with conservative compliance defaults."""
    now = get_utc_timestamp()
    return ClinicalNote(
        id=generate_uuid7(),
        patient_id=patient_id,
        template_type=template_type,
        content="",
        created_at=now,
        modified_at=now,
        consent_obtained=False,
        deidentified=False,
        encrypted=False,
        sync_status=SyncStatus.LOCAL,
        compliance_metadata=ComplianceMetadata(
            explicit_consent=False,
            data_minimization=True,
            retention_period_days=DEFAULT_RETENTION_DAYS,
        ),
    )


def _compliance_json(metadata: ComplianceMetadata) -> str:
    # The embedded audit trail is rebuilt from audit_log on read.
    return metadata.model_dump_json(exclude={"audit_trail"})


def _normalize_timestamp(value: Optional[str], default: str) -> str:
    parsed = parse_timestamp(value)
    return format_timestamp(parsed) if parsed else default


def _row_to_audit_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        timestamp=row["timestamp"],
        note_id=row["note_id"],
        action=row["action"],
        user_id=row["user_id"],
        phi_accessed=bool(row["phi_accessed"]),
        ip_address=row["ip_address"],
        session_id=row["session_id"],
        details=json.loads(row["details"]) if row["details"] else None,
        retention_period_days=row["retention_period_days"],
    )


def _row_to_record(row: sqlite3.Row) -> EncryptedRecord:
    return EncryptedRecord(
        id=row["id"],
        patient_id=row["patient_id"],
        template_type=row["template_type"],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
        consent_obtained=bool(row["consent_obtained"]),
        deidentified=bool(row["deidentified"]),
        encrypted=bool(row["encrypted"]),
        sync_status=SyncStatus(row["sync_status"]),
        compliance_metadata=ComplianceMetadata.model_validate_json(row["compliance_json"]),
        version=row["version"],
        synced_version=row["synced_version"],
        synced_at=row["synced_at"],
        envelope=EncryptedEnvelope(
            ciphertext=bytes(row["ciphertext"]),
            nonce=bytes(row["nonce"]),
            checksum=row["checksum"],
            key_id=row["key_id"],
            content_hash=row["content_hash"],
            encryption_version=row["encryption_version"],
        ),
    )


class EncryptedRecordStore:
    """
    Encrypted, audited note storage.

    Usage:
        store = EncryptedRecordStore("/var/lib/vault/notes.db")
        store.initialize(passphrase)
        note_id = store.save_note(note, actor_id="dr-roy")
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None, tracker=None):
        self.db_path = get_db_path(db_path)
        self.tracker = tracker
        if tracker is not None and Path(tracker.db_path) != self.db_path:
            raise ValueError("Compliance tracker must share the store database")
        self._cipher: Optional[NoteCipher] = None

    # ------------------------------------------------------------------ #
    # Lifecycle                                                           #
    # ------------------------------------------------------------------ #

    def initialize(self, passphrase: str) -> "EncryptedRecordStore":
        """
        Derive the store key and bring the schema up to date.

        Raises:
            EncryptionFailure: empty passphrase
        """
        cipher = NoteCipher.from_passphrase(passphrase)
        ensure_schema(self.db_path)
        self._cipher = cipher
        logger.info("store_initialized", key_id=cipher.key_id)
        return self

    @property
    def is_initialized(self) -> bool:
        return self._cipher is not None

    @property
    def key_id(self) -> Optional[str]:
        return self._cipher.key_id if self._cipher else None

    def _require_cipher(self) -> NoteCipher:
        if self._cipher is None:
            raise StoreNotInitialized()
        return self._cipher

    def status(self) -> Dict[str, Any]:
        """Counts by sync status plus initialization state."""
        result: Dict[str, Any] = {
            "initialized": self.is_initialized,
            "key_id": self.key_id,
            "notes": {status.value: 0 for status in SyncStatus},
            "audit_entries": 0,
        }
        if not self.is_initialized:
            return result

        conn = get_connection(self.db_path)
        try:
            for row in conn.execute(
                "SELECT sync_status, COUNT(*) AS count FROM notes GROUP BY sync_status"
            ):
                result["notes"][row["sync_status"]] = row["count"]
            result["audit_entries"] = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
        finally:
            conn.close()
        return result

    # ------------------------------------------------------------------ #
    # Audit ledger                                                        #
    # ------------------------------------------------------------------ #

    def _append_audit(
        self,
        conn: sqlite3.Connection,
        note_id: Optional[str],
        action: str,
        user_id: str,
        phi_accessed: bool,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[AuditContext] = None,
    ) -> str:
        entry_id = generate_uuid7()
        timestamp = get_utc_timestamp()
        details_json = canonical_details(details)

        row = conn.execute(
            "SELECT entry_hash FROM audit_log ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        prev_entry_hash = row["entry_hash"] if row else None
        entry_hash = compute_entry_hash(
            prev_entry_hash, timestamp, note_id, action, user_id, details_json
        )

        conn.execute(
            """
            INSERT INTO audit_log (
                id, timestamp, note_id, action, user_id, phi_accessed,
                ip_address, session_id, details, retention_period_days,
                prev_entry_hash, entry_hash
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry_id,
                timestamp,
                note_id,
                action,
                user_id,
                int(phi_accessed),
                context.ip_address if context else None,
                context.session_id if context else None,
                details_json or None,
                DEFAULT_RETENTION_DAYS if phi_accessed else SHORT_RETENTION_DAYS,
                prev_entry_hash,
                entry_hash,
            ),
        )
        return entry_id

    def _log_compliance(self, conn: sqlite3.Connection, event, context: Optional[AuditContext]) -> None:
        if self.tracker is not None:
            self.tracker.log_event(event, context, conn=conn)

    @staticmethod
    def _audit_rows_for(conn: sqlite3.Connection, note_ids: List[str]) -> Dict[str, List[AuditEntry]]:
        trails: Dict[str, List[AuditEntry]] = {note_id: [] for note_id in note_ids}
        if not note_ids:
            return trails
        placeholders = ",".join("?" for _ in note_ids)
        cursor = conn.execute(
            f"""
            SELECT * FROM audit_log
            WHERE note_id IN ({placeholders})
            ORDER BY timestamp DESC, rowid DESC
            """,
            note_ids,
        )
        for row in cursor:
            trails[row["note_id"]].append(_row_to_audit_entry(row))
        return trails

    def get_audit_trail(
        self,
        note_id: Optional[str],
        actor_id: str,
        context: Optional[AuditContext] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """
        Audit entries for one note (newest first) or, with ``note_id=None``,
        the most recent entries across all notes.

        The read itself is logged as an ``audit_access`` entry. That entry has
        no note ID, so it never inflates a note's own trail.
        """
        self._require_cipher()
        with transaction(self.db_path) as conn:
            if note_id is not None:
                query = "SELECT * FROM audit_log WHERE note_id = ? ORDER BY timestamp DESC, rowid DESC"
                params: list = [note_id]
                if limit is not None:
                    query += " LIMIT ?"
                    params.append(limit)
            else:
                query = "SELECT * FROM audit_log ORDER BY timestamp DESC, rowid DESC LIMIT ?"
                params = [limit if limit is not None else get_audit_trail_limit()]
            entries = [_row_to_audit_entry(row) for row in conn.execute(query, params)]

            self._append_audit(
                conn,
                None,
                "audit_access",
                actor_id,
                phi_accessed=False,
                details={"target_note_id": note_id, "returned": len(entries)},
                context=context,
            )
            self._log_compliance(
                conn,
                AuditTrailAccessed(accessor_id=actor_id, target_resource=note_id or "all"),
                context,
            )
        return entries

    def verify_audit_chain(self) -> Dict[str, Any]:
        """Recompute every entry hash and check linkage between neighbours."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT id, timestamp, note_id, action, user_id, details,
                       prev_entry_hash, entry_hash
                FROM audit_log ORDER BY {ORDERING}
                """
            ).fetchall()
        finally:
            conn.close()

        errors = []
        for index, row in enumerate(rows):
            computed = compute_entry_hash(
                row["prev_entry_hash"],
                row["timestamp"],
                row["note_id"],
                row["action"],
                row["user_id"],
                row["details"] or "",
            )
            if computed != row["entry_hash"]:
                errors.append({"entry_id": row["id"], "index": index, "error": "Hash mismatch"})
            if index > 0 and row["prev_entry_hash"] != rows[index - 1]["entry_hash"]:
                errors.append({"entry_id": row["id"], "index": index, "error": "Chain break"})

        return {
            "valid": not errors,
            "total_entries": len(rows),
            "hash_policy": HASH_POLICY,
            "errors": errors,
        }

    def purge_expired_audit(self, as_of: Optional[datetime] = None) -> int:
        """
        Remove expired entries from the head of the ledger.

        Stops at the first entry still under retention so the remaining chain
        stays contiguous; a younger short-retention entry behind an older
        7-year one waits until the 7-year entry expires.
        """
        as_of = as_of or utc_now()
        with transaction(self.db_path) as conn:
            expired = []
            for row in conn.execute(
                f"SELECT id, timestamp, retention_period_days FROM audit_log ORDER BY {ORDERING}"
            ):
                expires_at = parse_timestamp(row["timestamp"]) + timedelta(
                    days=row["retention_period_days"]
                )
                if expires_at > as_of:
                    break
                expired.append((row["id"],))
            conn.executemany("DELETE FROM audit_log WHERE id = ?", expired)

        if expired:
            logger.info("audit_entries_purged", count=len(expired))
        return len(expired)

    # ------------------------------------------------------------------ #
    # Notes                                                               #
    # ------------------------------------------------------------------ #

    def save_note(
        self,
        note: ClinicalNote,
        actor_id: str,
        context: Optional[AuditContext] = None,
        local_edit: bool = False,
    ) -> str:
        """
        Encrypt and upsert a note; returns its ID (generated when absent).

        With ``local_edit=True`` the note moves to ``Pending`` for upload,
        unless it is already in ``Conflict``, which only resolution clears.
        """
        check_compliance_invariant(note)
        cipher = self._require_cipher()
        note_id = note.id or generate_uuid7()
        envelope = cipher.encrypt_content(note_id, note.content)

        with transaction(self.db_path) as conn:
            existing = conn.execute(
                "SELECT created_at, sync_status, version, synced_version, synced_at FROM notes WHERE id = ?",
                (note_id,),
            ).fetchone()

            status = note.sync_status
            if local_edit:
                status = SyncStatus.PENDING
                if existing is not None and existing["sync_status"] == SyncStatus.CONFLICT.value:
                    status = SyncStatus.CONFLICT

            if existing is not None:
                version = existing["version"] + 1
                synced_version, synced_at = existing["synced_version"], existing["synced_at"]
            else:
                version = max(note.version, 0) + 1
                synced_version, synced_at = note.synced_version, note.synced_at

            self._write_row(
                conn,
                note,
                note_id,
                envelope,
                status=status,
                version=version,
                synced_version=synced_version,
                synced_at=synced_at,
                created_at=existing["created_at"] if existing is not None else None,
            )
            self._record_write(conn, note_id, note.patient_id, existing is None, actor_id, context,
                               {"version": version, "sync_status": status.value})

        logger.info("note_saved", note_id=note_id, version=version, sync_status=status.value)
        return note_id

    def save_resolution(
        self,
        note: ClinicalNote,
        actor_id: str,
        status: SyncStatus,
        synced_version: int,
        synced_at: Optional[str],
        version: Optional[int] = None,
    ) -> str:
        """
        Write a conflict resolution with an explicit status and sync base.

        Used by the sync coordinator: the resolved content is re-encrypted,
        the base is advanced to the remote version that was reconciled, and
        the status is set regardless of the current ``Conflict`` state.
        """
        check_compliance_invariant(note)
        cipher = self._require_cipher()
        if not note.id:
            raise ValueError("Resolution requires a note ID")
        envelope = cipher.encrypt_content(note.id, note.content)

        with transaction(self.db_path) as conn:
            existing = conn.execute(
                "SELECT created_at, version FROM notes WHERE id = ?", (note.id,)
            ).fetchone()
            if version is None:
                version = max(existing["version"] if existing else 0, synced_version) + 1

            self._write_row(
                conn,
                note,
                note.id,
                envelope,
                status=status,
                version=version,
                synced_version=synced_version,
                synced_at=synced_at,
                created_at=existing["created_at"] if existing is not None else None,
            )
            self._record_write(
                conn, note.id, note.patient_id, existing is None, actor_id, None,
                {"version": version, "sync_status": status.value, "source": "conflict_resolution"},
            )

        logger.info("conflict_resolution_saved", note_id=note.id, sync_status=status.value)
        return note.id

    def _write_row(
        self,
        conn: sqlite3.Connection,
        note: ClinicalNote,
        note_id: str,
        envelope: EncryptedEnvelope,
        status: SyncStatus,
        version: int,
        synced_version: int,
        synced_at: Optional[str],
        created_at: Optional[str],
        modified_at: Optional[str] = None,
    ) -> None:
        now = get_utc_timestamp()
        conn.execute(
            """
            INSERT INTO notes (
                id, patient_id, template_type, created_at, modified_at,
                consent_obtained, encrypted, deidentified, sync_status,
                compliance_json, ciphertext, nonce, checksum, key_id,
                content_hash, encryption_version, version, synced_version,
                synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                patient_id = excluded.patient_id,
                template_type = excluded.template_type,
                modified_at = excluded.modified_at,
                consent_obtained = excluded.consent_obtained,
                sync_status = excluded.sync_status,
                compliance_json = excluded.compliance_json,
                ciphertext = excluded.ciphertext,
                nonce = excluded.nonce,
                checksum = excluded.checksum,
                key_id = excluded.key_id,
                content_hash = excluded.content_hash,
                encryption_version = excluded.encryption_version,
                version = excluded.version,
                synced_version = excluded.synced_version,
                synced_at = excluded.synced_at
            """,
            (
                note_id,
                note.patient_id,
                note.template_type,
                created_at or _normalize_timestamp(note.created_at, now),
                modified_at or now,
                int(note.consent_obtained),
                status.value,
                _compliance_json(note.compliance_metadata),
                envelope.ciphertext,
                envelope.nonce,
                envelope.checksum,
                envelope.key_id,
                envelope.content_hash,
                envelope.encryption_version,
                version,
                synced_version,
                synced_at,
            ),
        )

    def _record_write(
        self,
        conn: sqlite3.Connection,
        note_id: str,
        patient_id: str,
        created: bool,
        actor_id: str,
        context: Optional[AuditContext],
        details: Dict[str, Any],
    ) -> None:
        self._append_audit(
            conn,
            note_id,
            "create" if created else "update",
            actor_id,
            phi_accessed=True,
            details=details,
            context=context,
        )
        if created:
            event = NoteCreated(note_id=note_id, practitioner_id=actor_id, client_id=patient_id)
        else:
            event = NoteUpdated(note_id=note_id, practitioner_id=actor_id)
        self._log_compliance(conn, event, context)

    def _decrypt_row(self, row: sqlite3.Row) -> ClinicalNote:
        return self.open_record(_row_to_record(row))

    def open_record(self, record: EncryptedRecord) -> ClinicalNote:
        """
        Verify and decrypt a record into a ``ClinicalNote``. No I/O, no audit.

        Raises:
            DecryptionFailure: on any integrity or key check
        """
        cipher = self._require_cipher()
        content = cipher.decrypt_content(record.id, record.envelope)
        data = record.model_dump(exclude={"envelope"})
        return ClinicalNote(content=content, **data)

    def get_note(
        self, note_id: str, actor_id: str, context: Optional[AuditContext] = None
    ) -> Optional[ClinicalNote]:
        """
        Decrypt one note and log the read.

        Returns ``None`` only when the ID does not exist. A failed integrity
        check raises and writes nothing.
        """
        self._require_cipher()
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
            if row is None:
                return None

            note = self._decrypt_row(row)
            self._append_audit(
                conn, note_id, "read", actor_id, phi_accessed=True,
                details={"version": note.version}, context=context,
            )
            self._log_compliance(
                conn, NoteAccessed(note_id=note_id, practitioner_id=actor_id), context
            )
            note.compliance_metadata.audit_trail = self._audit_rows_for(conn, [note_id])[note_id]

        logger.info("note_read", note_id=note_id)
        return note

    def list_notes_for_patient(
        self,
        patient_id: str,
        actor_id: str,
        limit: int = 50,
        offset: int = 0,
        context: Optional[AuditContext] = None,
    ) -> List[ClinicalNote]:
        """
        One page of a patient's notes, newest first, with a single
        aggregated ``list`` audit entry.
        """
        if limit <= 0 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        self._require_cipher()

        with transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM notes
                WHERE patient_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (patient_id, limit, offset),
            ).fetchall()
            notes = [self._decrypt_row(row) for row in rows]

            self._append_audit(
                conn,
                None,
                "list",
                actor_id,
                phi_accessed=bool(notes),
                details={
                    "patient_ref_hash": patient_ref_hash(patient_id),
                    "count": len(notes),
                    "limit": limit,
                    "offset": offset,
                },
                context=context,
            )
            trails = self._audit_rows_for(conn, [note.id for note in notes])
            for note in notes:
                note.compliance_metadata.audit_trail = trails[note.id]

        logger.info("notes_listed", count=len(notes))
        return notes

    def delete_note(
        self, note_id: str, actor_id: str, context: Optional[AuditContext] = None
    ) -> bool:
        """
        Delete a note. The audit entry is inserted before the row is removed.

        Returns False when the ID does not exist (nothing is logged).
        """
        self._require_cipher()
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT version FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
            if row is None:
                return False

            self._append_audit(
                conn, note_id, "delete", actor_id, phi_accessed=True,
                details={"version": row["version"]}, context=context,
            )
            self._log_compliance(
                conn, NoteDeleted(note_id=note_id, practitioner_id=actor_id), context
            )
            conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))

        logger.info("note_deleted", note_id=note_id)
        return True

    def withdraw_consent(
        self, note_id: str, actor_id: str, context: Optional[AuditContext] = None
    ) -> bool:
        """
        Clear the consent flags on a stored note without touching content.

        The note stays readable; the upload gate will refuse it.
        """
        self._require_cipher()
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT compliance_json FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
            if row is None:
                return False

            metadata = ComplianceMetadata.model_validate_json(row["compliance_json"])
            metadata.explicit_consent = False
            conn.execute(
                """
                UPDATE notes
                SET consent_obtained = 0, compliance_json = ?, modified_at = ?
                WHERE id = ?
                """,
                (_compliance_json(metadata), get_utc_timestamp(), note_id),
            )
            self._append_audit(
                conn, note_id, "update", actor_id, phi_accessed=False,
                details={"change": "consent_withdrawn"}, context=context,
            )
            self._log_compliance(
                conn, NoteUpdated(note_id=note_id, practitioner_id=actor_id), context
            )

        logger.info("note_consent_withdrawn", note_id=note_id)
        return True

    # ------------------------------------------------------------------ #
    # Sync support                                                        #
    # ------------------------------------------------------------------ #

    def list_notes_by_sync_status(self, status: SyncStatus) -> List[str]:
        """IDs of notes in ``status``, oldest modification first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT id FROM notes WHERE sync_status = ? ORDER BY modified_at ASC, rowid ASC",
                (SyncStatus(status).value,),
            )
            return [row["id"] for row in cursor]
        finally:
            conn.close()

    def get_record(self, note_id: str) -> Optional[EncryptedRecord]:
        """
        The stored encrypted record, without decrypting it.

        Carries no plaintext, so no audit entry is written; the sync
        coordinator transmits records in this form.
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row is not None else None

    def set_sync_status(
        self,
        note_id: str,
        status: SyncStatus,
        actor_id: str,
        detail: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """
        Change a note's sync status without re-encrypting it.

        With ``expected_version`` the change only applies if the note has not
        been rewritten since the caller read it. Returns whether it applied.
        """
        status = SyncStatus(status)
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT sync_status, version FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
            if row is None:
                return False
            if expected_version is not None and row["version"] != expected_version:
                return False
            if row["sync_status"] == status.value:
                return True

            conn.execute(
                "UPDATE notes SET sync_status = ? WHERE id = ?", (status.value, note_id)
            )
            details = {"sync_status": status.value, "previous": row["sync_status"]}
            if detail:
                details["detail"] = detail
            self._append_audit(conn, note_id, "update", actor_id, phi_accessed=False, details=details)
        return True

    def mark_synced(
        self,
        note_id: str,
        expected_version: int,
        remote_version: int,
        remote_modified_at: str,
        actor_id: str,
    ) -> bool:
        """
        Record a successful upload.

        If the note was edited locally while the upload was in flight, only
        the sync base advances and the note stays ``Pending``.
        Returns True when the note ended ``Synced``.
        """
        with transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT version, sync_status FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
            if row is None:
                return False

            if row["version"] == expected_version:
                conn.execute(
                    """
                    UPDATE notes
                    SET sync_status = ?, version = ?, synced_version = ?, synced_at = ?
                    WHERE id = ?
                    """,
                    (SyncStatus.SYNCED.value, remote_version, remote_version, remote_modified_at, note_id),
                )
                synced = True
            else:
                conn.execute(
                    "UPDATE notes SET synced_version = ?, synced_at = ? WHERE id = ?",
                    (remote_version, remote_modified_at, note_id),
                )
                synced = False

            self._append_audit(
                conn, note_id, "update", actor_id, phi_accessed=False,
                details={
                    "sync_status": SyncStatus.SYNCED.value if synced else row["sync_status"],
                    "remote_version": remote_version,
                },
            )
        return synced

    def apply_remote_record(
        self,
        record: EncryptedRecord,
        actor_id: str,
        expected_local_version: Optional[int] = None,
    ) -> bool:
        """
        Store a downloaded record as ``Synced``.

        The envelope is verified (and must decrypt under this store's key)
        and the note must satisfy the storage invariant before anything is
        written. A local row is only overwritten if it is still ``Synced`` at
        ``expected_local_version``; otherwise nothing changes and False is
        returned so the next cycle re-evaluates it.
        """
        note = self.open_record(record)
        check_compliance_invariant(note)

        with transaction(self.db_path) as conn:
            existing = conn.execute(
                "SELECT created_at, sync_status, version FROM notes WHERE id = ?", (record.id,)
            ).fetchone()
            if existing is not None and (
                existing["sync_status"] != SyncStatus.SYNCED.value
                or existing["version"] != expected_local_version
            ):
                return False

            self._write_row(
                conn,
                note,
                record.id,
                record.envelope,
                status=SyncStatus.SYNCED,
                version=record.version,
                synced_version=record.version,
                synced_at=record.modified_at,
                created_at=existing["created_at"] if existing is not None else None,
                modified_at=_normalize_timestamp(record.modified_at, get_utc_timestamp()),
            )
            self._record_write(
                conn, record.id, record.patient_id, existing is None, actor_id, None,
                {"version": record.version, "sync_status": SyncStatus.SYNCED.value, "source": "remote"},
            )
        return True
