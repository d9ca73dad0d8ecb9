"""
Offline sync coordinator.

Reconciles the local encrypted store with the remote document peer.

Per-note state machine (``ClinicalNote.sync_status``):

    Local   --local edit-------------------------> Pending
    Pending --upload ok--------------------------> Synced
    Pending --upload failed / compliance gate----> Conflict
    Synced  --remote newer on download-----------> Synced (overwritten)
    Pending --remote changed since base----------> Conflict
    Conflict --resolution-------------------------> Pending (Synced for use-remote)

``perform_sync`` runs four phases in order: upload pending, download
changes, auto-resolve, advance ``last_sync``. The last step only happens if
no phase hit a fatal error; per-note failures are not fatal.

The coordinator never holds store access across a remote call: every store
method opens and closes its own transaction, and remote calls happen between
them.
"""

import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from vault.app.config import get_remote_collection, get_sync_interval_seconds, get_sync_lookback_days
from vault.app.logging_config import get_logger
from vault.app.models.notes import ClinicalNote, EncryptedRecord, SyncStatus
from vault.app.models.sync import (
    ConflictKind,
    ResolutionStrategy,
    SyncConflict,
    SyncMetadata,
    SyncResult,
    SyncStatistics,
)
from vault.app.services.errors import (
    ComplianceViolation,
    DecryptionFailure,
    NetworkFailure,
    StoreNotInitialized,
    SyncError,
    VaultError,
)
from vault.app.services.record_store import (
    RULE_EXPLICIT_CONSENT,
    EncryptedRecordStore,
    check_compliance_invariant,
)
from vault.app.services.remote_store import (
    RemoteDocumentStore,
    document_to_record,
    record_to_document,
)
from vault.app.services.timestamps import format_timestamp, get_utc_timestamp, parse_timestamp, utc_now

logger = get_logger("sync")

SYNC_ACTOR = "sync-coordinator"
DEFAULT_PAGE_SIZE = 100

# Outcomes of a single-note upload attempt.
UPLOADED = "uploaded"
CONFLICT = "conflict"
BLOCKED = "blocked"
SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Resolution strategies
# ---------------------------------------------------------------------------


class ConflictResolver:
    """
    Strategy interface. ``resolve`` returns the note to keep, or ``None`` to
    leave the conflict for a human.
    """

    strategy: ResolutionStrategy = ResolutionStrategy.MANUAL_REVIEW

    def resolve(self, conflict: SyncConflict) -> Optional[ClinicalNote]:
        raise NotImplementedError


class ManualReviewResolver(ConflictResolver):
    """Never resolves. The default."""

    strategy = ResolutionStrategy.MANUAL_REVIEW

    def resolve(self, conflict: SyncConflict) -> Optional[ClinicalNote]:
        return None


class UseLocalResolver(ConflictResolver):
    strategy = ResolutionStrategy.USE_LOCAL

    def resolve(self, conflict: SyncConflict) -> Optional[ClinicalNote]:
        return conflict.local_version


class UseRemoteResolver(ConflictResolver):
    strategy = ResolutionStrategy.USE_REMOTE

    def resolve(self, conflict: SyncConflict) -> Optional[ClinicalNote]:
        return conflict.remote_version


class MergeResolver(ConflictResolver):
    """Delegates to ``merge_fn(local, remote)``; only applies when both sides exist."""

    strategy = ResolutionStrategy.MERGE

    def __init__(self, merge_fn: Callable[[ClinicalNote, ClinicalNote], ClinicalNote]):
        self.merge_fn = merge_fn

    def resolve(self, conflict: SyncConflict) -> Optional[ClinicalNote]:
        if conflict.local_version is None or conflict.remote_version is None:
            return None
        return self.merge_fn(conflict.local_version, conflict.remote_version)


RESOLVERS: Dict[ResolutionStrategy, Callable[[], ConflictResolver]] = {
    ResolutionStrategy.MANUAL_REVIEW: ManualReviewResolver,
    ResolutionStrategy.USE_LOCAL: UseLocalResolver,
    ResolutionStrategy.USE_REMOTE: UseRemoteResolver,
}


def changed_since_base(local: EncryptedRecord, remote: EncryptedRecord) -> bool:
    """True when the remote copy moved past the version this device last reconciled."""
    if local.synced_at is None:
        return True
    if remote.version > local.synced_version:
        return True
    remote_modified = parse_timestamp(remote.modified_at)
    base_modified = parse_timestamp(local.synced_at)
    return remote_modified is not None and base_modified is not None and remote_modified > base_modified


def upload_gate_violation(record: EncryptedRecord) -> Optional[str]:
    """The rule a record fails before transmission, or None."""
    try:
        check_compliance_invariant(ClinicalNote(**record.model_dump(exclude={"envelope"})))
    except ComplianceViolation as e:
        return e.rule
    if not record.compliance_metadata.explicit_consent:
        return RULE_EXPLICIT_CONSENT
    return None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class SyncCoordinator:
    """
    Sync state for one store/peer pair. Holds ``last_sync`` and the conflict
    list as instance fields, so several coordinators can coexist.
    """

    def __init__(
        self,
        store: EncryptedRecordStore,
        remote: RemoteDocumentStore,
        collection: Optional[str] = None,
        resolver: Optional[ConflictResolver] = None,
        lookback_days: Optional[int] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.store = store
        self.remote = remote
        self.collection = collection or get_remote_collection()
        self.resolver = resolver or ManualReviewResolver()
        self.lookback_days = lookback_days if lookback_days is not None else get_sync_lookback_days()
        self.page_size = page_size

        self.last_sync: Optional[str] = None
        self.sync_enabled = True
        self._conflicts: Dict[str, SyncConflict] = {}
        self._stats = SyncStatistics()
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ #
    # Status                                                              #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    def set_resolver(self, resolver: ConflictResolver) -> None:
        self.resolver = resolver

    def set_sync_enabled(self, enabled: bool) -> None:
        self.sync_enabled = enabled
        logger.info("sync_enabled_changed", enabled=enabled)

    def list_conflicts(self) -> List[SyncConflict]:
        with self._state_lock:
            return sorted(self._conflicts.values(), key=lambda c: c.detected_at)

    def get_conflict(self, note_id: str) -> Optional[SyncConflict]:
        with self._state_lock:
            return self._conflicts.get(note_id)

    def get_sync_status(self) -> SyncMetadata:
        pending = self.store.list_notes_by_sync_status(SyncStatus.PENDING)
        conflicted = self.store.list_notes_by_sync_status(SyncStatus.CONFLICT)
        with self._state_lock:
            by_kind: Dict[str, int] = {}
            for conflict in self._conflicts.values():
                by_kind[conflict.kind.value] = by_kind.get(conflict.kind.value, 0) + 1
            return SyncMetadata(
                last_sync=self.last_sync,
                sync_enabled=self.sync_enabled,
                running=self.running,
                collection=self.collection,
                pending_notes=pending,
                conflict_notes=conflicted,
                statistics=self._stats.model_copy(),
                conflicts_by_kind=by_kind,
            )

    def _bump(self, result: SyncResult, field: str, amount: int = 1) -> None:
        setattr(result, field, getattr(result, field) + amount)
        with self._state_lock:
            setattr(self._stats, field, getattr(self._stats, field) + amount)

    def _register_conflict(self, conflict: SyncConflict, result: Optional[SyncResult]) -> None:
        with self._state_lock:
            is_new = conflict.note_id not in self._conflicts
            self._conflicts[conflict.note_id] = conflict
            if is_new:
                self._stats.conflicts_detected += 1
        if is_new and result is not None:
            result.conflicts_detected += 1
        logger.warning("sync_conflict", note_id=conflict.note_id, kind=conflict.kind.value)

    def _drop_conflict(self, note_id: str, result: Optional[SyncResult]) -> None:
        with self._state_lock:
            self._conflicts.pop(note_id, None)
            self._stats.conflicts_resolved += 1
        if result is not None:
            result.conflicts_resolved += 1

    # ------------------------------------------------------------------ #
    # Full cycle                                                          #
    # ------------------------------------------------------------------ #

    def perform_sync(self) -> SyncResult:
        """
        Run one sync cycle.

        Raises:
            SyncError: sync disabled, or a cycle already running
            StoreNotInitialized: the store has no key yet
        """
        if not self.sync_enabled:
            raise SyncError("Sync is disabled")
        if not self.store.is_initialized:
            raise StoreNotInitialized()
        if not self._cycle_lock.acquire(blocking=False):
            raise SyncError("A sync cycle is already running")

        try:
            started = utc_now()
            result = SyncResult(started_at=format_timestamp(started), finished_at="")
            phases = (
                ("upload", self._upload_phase),
                ("download", self._download_phase),
                ("resolve", self._resolve_phase),
            )
            fatal = False
            for name, phase in phases:
                try:
                    phase(result)
                except VaultError as e:
                    fatal = True
                    result.errors.append(f"{name}: {e}")
                    logger.error("sync_phase_failed", phase=name, error=type(e).__name__)

            if not fatal:
                self.last_sync = result.started_at
                result.last_sync_advanced = True

            result.finished_at = get_utc_timestamp()
            logger.info(
                "sync_cycle_finished",
                uploaded=result.uploaded,
                downloaded=result.downloaded,
                failed=result.failed,
                conflicts=result.conflicts_detected,
                last_sync_advanced=result.last_sync_advanced,
            )
            return result
        finally:
            self._cycle_lock.release()

    # ------------------------------------------------------------------ #
    # Phase 1: upload                                                     #
    # ------------------------------------------------------------------ #

    def _upload_phase(self, result: SyncResult) -> None:
        self._rehydrate_conflicts(result)
        for note_id in self.store.list_notes_by_sync_status(SyncStatus.PENDING):
            self._upload_one(note_id, result, (SyncStatus.PENDING,))

    def _rehydrate_conflicts(self, result: SyncResult) -> None:
        """Rebuild in-memory entries for notes left in Conflict by an earlier process."""
        for note_id in self.store.list_notes_by_sync_status(SyncStatus.CONFLICT):
            if self.get_conflict(note_id) is not None:
                continue
            record = self.store.get_record(note_id)
            if record is None:
                continue

            rule = upload_gate_violation(record)
            if rule is not None:
                self._register_conflict(
                    self._build_conflict(record, ConflictKind.COMPLIANCE_BLOCKED, None, rule), result
                )
                continue

            try:
                document = self.remote.get(self.collection, note_id)
            except NetworkFailure as e:
                self._register_conflict(
                    self._build_conflict(record, ConflictKind.UPLOAD_FAILED, None, str(e)), result
                )
                continue
            remote_record = self._parse_document(document) if document else None
            kind = ConflictKind.CONCURRENT_EDIT if remote_record else ConflictKind.UPLOAD_FAILED
            self._register_conflict(self._build_conflict(record, kind, remote_record), result)

    def _upload_one(self, note_id: str, result: Optional[SyncResult], allowed) -> str:
        record = self.store.get_record(note_id)
        if record is None or record.sync_status not in allowed:
            return SKIPPED

        rule = upload_gate_violation(record)
        if rule is not None:
            self._mark_conflict(record, ConflictKind.COMPLIANCE_BLOCKED, None, rule, result)
            logger.warning("sync_upload_blocked", note_id=note_id, rule=rule)
            return BLOCKED

        try:
            document = self.remote.get(self.collection, note_id)
            remote_record = None
            if document is not None:
                remote_record = self._parse_document(document)
                if remote_record is None:
                    raise NetworkFailure("Remote document is malformed")
                if changed_since_base(record, remote_record):
                    self._mark_conflict(record, ConflictKind.CONCURRENT_EDIT, remote_record, None, result)
                    return CONFLICT

            version = max(record.version, (remote_record.version + 1) if remote_record else 1)
            modified_at = get_utc_timestamp()
            payload = record_to_document(record, version, modified_at)
            if remote_record is None:
                self.remote.create(self.collection, note_id, payload)
            else:
                self.remote.update(self.collection, note_id, payload)
        except NetworkFailure as e:
            if result is not None:
                self._bump(result, "failed")
            self._mark_conflict(record, ConflictKind.UPLOAD_FAILED, None, str(e), result)
            return CONFLICT

        self.store.mark_synced(note_id, record.version, version, modified_at, SYNC_ACTOR)
        if result is not None:
            self._bump(result, "uploaded")
        else:
            with self._state_lock:
                self._stats.uploaded += 1
        logger.info("sync_note_uploaded", note_id=note_id, version=version)
        return UPLOADED

    def _mark_conflict(
        self,
        record: EncryptedRecord,
        kind: ConflictKind,
        remote_record: Optional[EncryptedRecord],
        detail: Optional[str],
        result: Optional[SyncResult],
    ) -> None:
        applied = self.store.set_sync_status(
            record.id, SyncStatus.CONFLICT, SYNC_ACTOR, detail=kind.value,
            expected_version=record.version,
        )
        if applied:
            self._register_conflict(self._build_conflict(record, kind, remote_record, detail), result)

    def _parse_document(self, document) -> Optional[EncryptedRecord]:
        try:
            return document_to_record(document)
        except ValueError:
            logger.warning("sync_remote_document_malformed")
            return None

    def _open(self, record: Optional[EncryptedRecord]) -> Optional[ClinicalNote]:
        if record is None:
            return None
        try:
            return self.store.open_record(record)
        except DecryptionFailure as e:
            logger.warning("sync_remote_undecryptable", note_id=record.id, reason=e.reason)
            return None

    def _build_conflict(
        self,
        record: EncryptedRecord,
        kind: ConflictKind,
        remote_record: Optional[EncryptedRecord],
        detail: Optional[str] = None,
    ) -> SyncConflict:
        local = self._open(record)
        if local is not None:
            local.sync_status = SyncStatus.CONFLICT
        return SyncConflict(
            note_id=record.id,
            kind=kind,
            local_version=local,
            remote_version=self._open(remote_record),
            local_version_number=record.version,
            remote_version_number=remote_record.version if remote_record else None,
            remote_modified_at=remote_record.modified_at if remote_record else None,
            detected_at=get_utc_timestamp(),
            detail=detail,
        )

    # ------------------------------------------------------------------ #
    # Phase 2: download                                                   #
    # ------------------------------------------------------------------ #

    def _download_phase(self, result: SyncResult) -> None:
        since = self.last_sync or format_timestamp(utc_now() - timedelta(days=self.lookback_days))
        page = 0
        while True:
            documents = self.remote.query_page(self.collection, page, self.page_size, since)
            for document in documents:
                self._apply_remote(document, result)
            if len(documents) < self.page_size:
                break
            page += 1

    def _apply_remote(self, document, result: SyncResult) -> None:
        remote_record = self._parse_document(document)
        if remote_record is None:
            self._bump(result, "failed")
            return

        local = self.store.get_record(remote_record.id)
        if local is not None and not changed_since_base(local, remote_record):
            return

        if local is None or local.sync_status == SyncStatus.SYNCED:
            try:
                applied = self.store.apply_remote_record(
                    remote_record, SYNC_ACTOR,
                    expected_local_version=local.version if local else None,
                )
            except (DecryptionFailure, ComplianceViolation) as e:
                self._bump(result, "failed")
                logger.warning("sync_download_rejected", note_id=remote_record.id, error=str(e))
                return
            if applied:
                self._bump(result, "downloaded")
            return

        if self._open(remote_record) is None:
            self._bump(result, "failed")
            return

        if local.sync_status == SyncStatus.CONFLICT:
            existing = self.get_conflict(local.id)
            refreshed = self._build_conflict(
                local,
                existing.kind if existing else ConflictKind.CONCURRENT_EDIT,
                remote_record,
                existing.detail if existing else None,
            )
            if existing is not None:
                refreshed.detected_at = existing.detected_at
            self._register_conflict(refreshed, result)
            return

        # Pending or Local: the remote moved while this device has unsynced edits.
        self._mark_conflict(local, ConflictKind.CONCURRENT_EDIT, remote_record, None, result)

    # ------------------------------------------------------------------ #
    # Phase 3: automatic resolution                                       #
    # ------------------------------------------------------------------ #

    def _resolve_phase(self, result: SyncResult) -> None:
        if isinstance(self.resolver, ManualReviewResolver):
            return
        for conflict in self.list_conflicts():
            if conflict.kind == ConflictKind.COMPLIANCE_BLOCKED:
                continue
            try:
                self._apply_resolver(conflict, self.resolver, SYNC_ACTOR, result)
            except (ComplianceViolation, DecryptionFailure, ValueError) as e:
                result.errors.append(f"resolve {conflict.note_id}: {type(e).__name__}")
                logger.warning("sync_auto_resolve_failed", note_id=conflict.note_id, error=type(e).__name__)

    def _apply_resolver(
        self,
        conflict: SyncConflict,
        resolver: ConflictResolver,
        actor_id: str,
        result: Optional[SyncResult],
    ) -> bool:
        resolved = resolver.resolve(conflict)
        if resolved is None:
            return False

        resolved = resolved.model_copy(update={"id": conflict.note_id})
        if resolver.strategy == ResolutionStrategy.USE_REMOTE:
            self.store.save_resolution(
                resolved,
                actor_id,
                SyncStatus.SYNCED,
                synced_version=conflict.remote_version_number,
                synced_at=conflict.remote_modified_at,
                version=conflict.remote_version_number,
            )
        else:
            self._save_pending_resolution(conflict, resolved, actor_id)

        conflict.resolution = resolver.strategy
        self._drop_conflict(conflict.note_id, result)
        logger.info("sync_conflict_resolved", note_id=conflict.note_id, strategy=resolver.strategy.value)
        return True

    def _save_pending_resolution(self, conflict: SyncConflict, note: ClinicalNote, actor_id: str) -> None:
        if conflict.remote_version_number is not None:
            synced_version, synced_at = conflict.remote_version_number, conflict.remote_modified_at
        elif conflict.local_version is not None:
            synced_version = conflict.local_version.synced_version
            synced_at = conflict.local_version.synced_at
        else:
            synced_version, synced_at = note.synced_version, note.synced_at
        self.store.save_resolution(note, actor_id, SyncStatus.PENDING, synced_version, synced_at)

    # ------------------------------------------------------------------ #
    # Caller-driven operations                                            #
    # ------------------------------------------------------------------ #

    def force_sync_note(self, note_id: str) -> str:
        """
        Upload one note now, outside the schedule. ``Local`` notes are
        included. The compliance gate still applies.

        Returns one of ``uploaded``, ``conflict``, ``blocked``, ``skipped``.

        Raises:
            SyncError: note missing or currently in conflict
        """
        record = self.store.get_record(note_id)
        if record is None:
            raise SyncError("Note not found")
        if record.sync_status == SyncStatus.CONFLICT:
            raise SyncError("Note is in conflict; resolve it first")
        if record.sync_status == SyncStatus.SYNCED:
            return SKIPPED
        return self._upload_one(note_id, None, (SyncStatus.PENDING, SyncStatus.LOCAL))

    def _conflict_for(self, note_id: str) -> SyncConflict:
        conflict = self.get_conflict(note_id)
        if conflict is not None:
            return conflict
        record = self.store.get_record(note_id)
        if record is None or record.sync_status != SyncStatus.CONFLICT:
            raise SyncError("Note is not in conflict")
        kind = ConflictKind.COMPLIANCE_BLOCKED if upload_gate_violation(record) else ConflictKind.UPLOAD_FAILED
        conflict = self._build_conflict(record, kind, None)
        self._register_conflict(conflict, None)
        return conflict

    def resolve_conflict_manually(self, note_id: str, resolved_content: str, actor_id: str) -> str:
        """
        Resolve with caller-supplied content; the note becomes ``Pending``.

        Raises:
            SyncError: no content given, or the note is not in conflict
            ComplianceViolation: the stored note no longer satisfies the
                storage invariant (e.g. consent was withdrawn)
        """
        if resolved_content is None:
            raise SyncError("Manual resolution requires explicit content")
        conflict = self._conflict_for(note_id)

        local = self.store.get_note(note_id, actor_id)
        if local is None:
            raise SyncError("Note not found")
        resolved = local.model_copy(update={"content": resolved_content})
        resolved.compliance_metadata.audit_trail = []
        self._save_pending_resolution(conflict, resolved, actor_id)

        conflict.resolution = ResolutionStrategy.MANUAL_REVIEW
        self._drop_conflict(note_id, None)
        logger.info("sync_conflict_resolved", note_id=note_id, strategy="manual")
        return note_id

    def resolve_conflict(self, note_id: str, strategy: ResolutionStrategy, actor_id: str) -> bool:
        """
        Apply a built-in strategy to one conflict at the caller's request.

        Returns False when the strategy declines (e.g. use-remote with no
        remote copy).
        """
        strategy = ResolutionStrategy(strategy)
        if strategy in (ResolutionStrategy.MANUAL_REVIEW, ResolutionStrategy.MERGE):
            raise SyncError("Strategy requires caller-supplied content")
        conflict = self._conflict_for(note_id)
        return self._apply_resolver(conflict, RESOLVERS[strategy](), actor_id, None)

    # ------------------------------------------------------------------ #
    # Background loop                                                     #
    # ------------------------------------------------------------------ #

    def start_background_sync(self, interval_seconds: Optional[float] = None) -> None:
        """Run ``perform_sync`` every interval on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        interval = interval_seconds if interval_seconds is not None else get_sync_interval_seconds()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._background_loop, args=(interval,), name="vault-sync", daemon=True
        )
        self._thread.start()
        logger.info("background_sync_started", interval_seconds=interval)

    def stop_background_sync(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("background_sync_stopped")

    def _background_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            if not self.sync_enabled or not self.store.is_initialized:
                continue
            try:
                self.perform_sync()
            except Exception as e:
                # A failed cycle is retried on the next tick.
                logger.error("background_sync_failed", error=type(e).__name__)
