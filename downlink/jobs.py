"""
Defines the job record, its status state machine, and serialization helpers.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, FrozenSet, Optional

from .error_classifier import ClassifiedError
from .exceptions import InvalidTransitionError


class SourceKind(str, Enum):
    SINGLE = 'single'
    PLAYLIST_PARENT = 'playlist_parent'
    PLAYLIST_ITEM = 'playlist_item'


class JobStatus(str, Enum):
    QUEUED = 'queued'
    FETCHING = 'fetching'
    READY = 'ready'
    DOWNLOADING = 'downloading'
    POSTPROCESSING = 'postprocessing'
    STOPPED = 'stopped'
    DONE = 'done'
    FAILED = 'failed'
    CANCELED = 'canceled'

    @property
    def holds_slot(self) -> bool:
        """True while the job occupies one of the scheduler's concurrency slots."""
        return self in SLOT_STATUSES

    @property
    def is_active(self) -> bool:
        """True while an engine process is (or is about to be) running for the job."""
        return self in (JobStatus.DOWNLOADING, JobStatus.POSTPROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.CANCELED)

    @property
    def is_finished(self) -> bool:
        """Terminal, or failed and waiting for an explicit retry."""
        return self in (JobStatus.DONE, JobStatus.CANCELED, JobStatus.FAILED)


SLOT_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.FETCHING, JobStatus.READY, JobStatus.DOWNLOADING, JobStatus.POSTPROCESSING,
})

# queued/fetching/ready -> stopped holds a job back without it ever having run.
# queued -> failed covers unavailable playlist entries and broken records.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.FETCHING, JobStatus.STOPPED, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.FETCHING: frozenset({JobStatus.READY, JobStatus.QUEUED, JobStatus.STOPPED, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.READY: frozenset({JobStatus.DOWNLOADING, JobStatus.QUEUED, JobStatus.STOPPED, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.POSTPROCESSING, JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.STOPPED, JobStatus.QUEUED}),
    JobStatus.POSTPROCESSING: frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.STOPPED, JobStatus.QUEUED}),
    JobStatus.STOPPED: frozenset({JobStatus.DOWNLOADING, JobStatus.CANCELED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.DONE: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """
    Represents a single download task, a playlist parent, or a playlist item.

    Attributes:
        job_id: A unique identifier for the job.
        source_url: The URL to download (or enumerate, for a playlist parent).
        source_kind: single, playlist_parent or playlist_item.
        parent_id: The playlist parent's id; set only for playlist items.
        status: The current state machine status.
        phase: A human-readable sub-stage label (e.g. "Merging streams").
        percent: Progress percent (0-100), None while unknown.
        bytes_downloaded / bytes_total: Byte counters, None until reported.
        speed_bps / eta_seconds: Transient rates; not persisted.
        preset_id: Selects the engine argument preset.
        output_dir: Directory the final file is written to.
        final_path: Set only when status is done.
        error: Set only when status is failed.
    """
    source_url: str
    preset_id: str
    output_dir: str
    source_kind: SourceKind = SourceKind.SINGLE
    parent_id: Optional[str] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    phase: Optional[str] = 'Queued'
    percent: Optional[float] = None
    bytes_downloaded: Optional[int] = None
    bytes_total: Optional[int] = None
    speed_bps: Optional[int] = None
    eta_seconds: Optional[int] = None
    final_path: Optional[str] = None
    error: Optional[ClassifiedError] = None
    title: Optional[str] = None
    uploader: Optional[str] = None
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    playlist_index: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new_single(cls, url: str, preset_id: str, output_dir: str, title: Optional[str] = None) -> 'JobRecord':
        return cls(url, preset_id, output_dir, title=title)

    @classmethod
    def new_playlist_parent(cls, url: str, preset_id: str, output_dir: str) -> 'JobRecord':
        return cls(url, preset_id, output_dir, source_kind=SourceKind.PLAYLIST_PARENT,
                   status=JobStatus.FETCHING, phase='Fetching playlist…')

    @classmethod
    def new_playlist_item(cls, parent_id: str, url: str, preset_id: str, output_dir: str,
                          title: Optional[str] = None, playlist_index: Optional[int] = None) -> 'JobRecord':
        return cls(url, preset_id, output_dir, source_kind=SourceKind.PLAYLIST_ITEM,
                   parent_id=parent_id, title=title, playlist_index=playlist_index)

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: JobStatus, phase: Optional[str] = None):
        """Moves to `new_status`, raising InvalidTransitionError if the state machine forbids it."""
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Job {self.job_id} cannot move from {self.status.value} to {new_status.value}."
            )
        self.status = new_status
        self.phase = phase
        self.updated_at = _utcnow()

    def mark_done(self, final_path: str):
        self.transition(JobStatus.DONE, 'Completed')
        self.final_path = final_path
        self.percent = 100.0
        self.speed_bps = self.eta_seconds = None

    def mark_failed(self, error: ClassifiedError):
        self.transition(JobStatus.FAILED, 'Failed')
        self.error = error
        self.speed_bps = self.eta_seconds = None

    def clear_progress(self):
        self.percent = self.bytes_downloaded = self.bytes_total = None
        self.speed_bps = self.eta_seconds = None

    def to_dict(self) -> Dict[str, Any]:
        """Serializes the persistent fields. Speed and ETA are transient and left out."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in ('speed_bps', 'eta_seconds'):
                continue
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, ClassifiedError):
                value = value.to_dict()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobRecord':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['source_kind'] = SourceKind(values.get('source_kind', SourceKind.SINGLE.value))
        values['status'] = JobStatus(values.get('status', JobStatus.QUEUED.value))
        if values.get('error') is not None:
            values['error'] = ClassifiedError.from_dict(values['error'])
        for key in ('created_at', 'updated_at'):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        values.pop('speed_bps', None)
        values.pop('eta_seconds', None)
        return cls(**values)
