"""
Ferry Core Types
----------------
Pydantic models and enums shared by the ingestion, queue and delivery layers.

Timestamps are epoch seconds (float), matching what the SQLite store persists.
"""

import time
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field


class QueueState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class ContentType(str, Enum):
    STRUCTURED = "structured"
    BINARY = "binary"
    OTHER = "other"


class Origin(str, Enum):
    FOLDER = "folder"
    API = "api"


class SourceType(str, Enum):
    FOLDER = "folder"
    API = "api"


# Legal queue transitions. FAILED rows are always terminal: a retryable
# failure goes back to PENDING instead of parking in FAILED.
ALLOWED_TRANSITIONS: Dict[QueueState, FrozenSet[QueueState]] = {
    QueueState.PENDING: frozenset({QueueState.PROCESSING}),
    QueueState.PROCESSING: frozenset(
        {QueueState.COMPLETED, QueueState.FAILED, QueueState.PENDING}
    ),
    QueueState.FAILED: frozenset({QueueState.PENDING}),
    QueueState.COMPLETED: frozenset({QueueState.ARCHIVED}),
    QueueState.ARCHIVED: frozenset(),
}


def is_transition_allowed(current: QueueState, target: QueueState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class QueueItem(BaseModel):
    id: int
    source_path: str
    display_name: str
    content_type: ContentType = ContentType.OTHER
    origin: Origin = Origin.FOLDER
    size_bytes: int = 0
    content_hash: Optional[str] = None
    state: QueueState = QueueState.PENDING

    # Retry bookkeeping
    attempt_count: int = 0
    max_attempts: int = 5
    last_error: Optional[str] = None
    next_attempt_at: Optional[float] = None

    created_at: float = Field(default_factory=time.time)
    last_attempt_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Set on successful delivery
    destination_url: Optional[str] = None
    upload_duration_ms: Optional[int] = None

    source_id: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (QueueState.COMPLETED, QueueState.FAILED, QueueState.ARCHIVED)


class ProgressRecord(BaseModel):
    item_id: int
    bytes_uploaded: int = 0
    total_bytes: int = 0
    status_message: Optional[str] = None
    updated_at: float = Field(default_factory=time.time)

    @property
    def percent_complete(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.bytes_uploaded / self.total_bytes * 100.0


class HistoryRecord(BaseModel):
    """Immutable audit row written for every terminal outcome."""
    id: int
    item_id: Optional[int] = None
    display_name: str
    content_type: ContentType = ContentType.OTHER
    origin: Origin = Origin.FOLDER
    final_state: QueueState
    finished_at: float
    size_bytes: int = 0
    upload_duration_ms: Optional[int] = None
    total_attempts: int = 0
    destination_url: Optional[str] = None
    final_error: Optional[str] = None


class DataSourceConfig(BaseModel):
    id: int
    name: str
    source_type: SourceType
    enabled: bool = True
    folder_path: Optional[str] = None
    api_endpoint: Optional[str] = None
    api_key: Optional[str] = None
    polling_interval_minutes: float = 5.0
    file_pattern: Optional[str] = "*.*"
    created_at: float = Field(default_factory=time.time)
    last_processed_at: Optional[float] = None
    additional_settings: Dict[str, Any] = Field(default_factory=dict)

    def runtime_fingerprint(self) -> Tuple[Any, ...]:
        """Fields whose change requires the source runner to be restarted."""
        return (
            self.source_type,
            self.folder_path,
            self.api_endpoint,
            self.api_key,
            self.polling_interval_minutes,
            self.file_pattern,
            tuple(sorted((k, repr(v)) for k, v in self.additional_settings.items())),
        )


class SourceStatus(BaseModel):
    id: int
    name: str
    source_type: SourceType
    enabled: bool = True
    active: bool = False
    last_activity: Optional[float] = None
    items_processed: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[float] = None


class CoordinatorStatus(BaseModel):
    source_type: SourceType
    running: bool
    started_at: Optional[float] = None
    active_runners: int = 0
    total_items_processed: int = 0
    last_activity: Optional[float] = None
    sources: List[SourceStatus] = Field(default_factory=list)


class ActiveUploadInfo(BaseModel):
    """In-memory view of one delivery attempt. Never persisted."""
    item_id: int
    display_name: str
    bytes_uploaded: int = 0
    total_bytes: int = 0
    percent_complete: float = 0.0
    started_at: float = Field(default_factory=time.time)
    status: str = "starting"


class UploadResult(BaseModel):
    success: bool
    url: Optional[str] = None
    bytes_sent: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    etag: Optional[str] = None


class ProcessorStatus(BaseModel):
    running: bool
    paused: bool
    started_at: Optional[float] = None
    active_uploads: int = 0
    pending_count: int = 0
    failed_count: int = 0
    completed_count: int = 0
    total_bytes_uploaded: int = 0
    average_mb_per_minute: float = 0.0
    last_upload_completed_at: Optional[float] = None
    recent_errors: List[str] = Field(default_factory=list)
    active: List[ActiveUploadInfo] = Field(default_factory=list)
