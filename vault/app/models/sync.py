"""
Sync models: conflicts, strategies and coordinator metadata.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from vault.app.models.notes import ClinicalNote


class ConflictKind(str, Enum):
    """Why a note ended up in ``Conflict``."""

    CONCURRENT_EDIT = "concurrent_edit"
    UPLOAD_FAILED = "upload_failed"
    COMPLIANCE_BLOCKED = "compliance_blocked"


class ResolutionStrategy(str, Enum):
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"
    MANUAL_REVIEW = "manual_review"


class SyncConflict(BaseModel):
    """Local and remote versions of one note that could not be reconciled."""

    note_id: str
    kind: ConflictKind
    local_version: Optional[ClinicalNote] = None
    remote_version: Optional[ClinicalNote] = None
    local_version_number: int
    remote_version_number: Optional[int] = None
    remote_modified_at: Optional[str] = None
    detected_at: str
    detail: Optional[str] = Field(default=None, description="Rule or error summary, PHI-free")
    resolution: Optional[ResolutionStrategy] = None


class SyncStatistics(BaseModel):
    uploaded: int = 0
    downloaded: int = 0
    failed: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0


class SyncResult(BaseModel):
    """Outcome of one ``perform_sync`` cycle."""

    started_at: str
    finished_at: str
    uploaded: int = 0
    downloaded: int = 0
    failed: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    last_sync_advanced: bool = False
    errors: List[str] = Field(default_factory=list)


class SyncMetadata(BaseModel):
    """Snapshot returned by ``get_sync_status``."""

    last_sync: Optional[str] = None
    sync_enabled: bool = True
    running: bool = False
    collection: str
    pending_notes: List[str] = Field(default_factory=list)
    conflict_notes: List[str] = Field(default_factory=list)
    statistics: SyncStatistics = Field(default_factory=SyncStatistics)
    conflicts_by_kind: Dict[str, int] = Field(default_factory=dict)
