"""
Concurrency-bounded admission controller and owner of the job state machine.

All shared state (job table, FIFO queue, slot arena) is guarded by a single
asyncio.Lock. Every status change goes through `_set_status`, which persists
the record and publishes exactly one event before the lock is released.
Storage I/O happens on a separate writer task, never under the lock.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional, Protocol, Set

from .config import Settings
from .error_classifier import INTERNAL_ERROR, ClassifiedError
from .events import (
    EventBus, JobCanceled, JobCompleted, JobFailed, JobPostProcessing, JobProgress, JobQueued,
    JobRemoved, JobStarted, JobStatusChanged, JobStopped, MetadataReady, PlaylistExpanded
)
from .exceptions import (
    DownloadCancelledError, InvalidTransitionError, InvariantViolation, JobNotFoundError,
    PlaylistExpansionError, SpawnError, URLExtractionError
)
from .jobs import JobRecord, JobStatus, SourceKind
from .playlist import EntryOverride, PlaylistExpander
from .process import DiagnosticLine, OutcomeKind, ProcessHandle, ProcessOrchestrator, ProcessOutcome
from .progress import Phase, ProgressEvent
from .storage import JobStore, MemoryJobStore
from .url_extractor import MediaMetadata, extract_urls, is_playlist_url

PHASE_QUEUED = 'Queued'
PHASE_FETCHING = 'Fetching info…'
PHASE_STARTING = 'Starting…'
PHASE_STOPPED = 'Stopped'
PHASE_RESUMING = 'Waiting to resume'
PHASE_CANCELED = 'Canceled'

MISSING_PARENT_ERROR = ClassifiedError(
    INTERNAL_ERROR.kind,
    "This playlist item lost its playlist and cannot be downloaded.",
    INTERNAL_ERROR.actions,
)


class MetadataProbe(Protocol):
    async def fetch_metadata(self, url: str, no_playlist: bool = True) -> MediaMetadata:
        ...


@dataclass
class ActiveSlot:
    """One admission slot. Lives in the scheduler's arena while the job holds it."""
    job_id: str
    runner: Optional[asyncio.Task] = None
    handle: Optional[ProcessHandle] = None
    # Set while orchestrator.start() is in flight; the runner cannot be cancelled safely then.
    spawning: bool = False
    pending: Optional[str] = None
    remove_after_exit: bool = False


@dataclass(frozen=True)
class PlaylistProgress:
    """Aggregate view of a playlist parent, computed from its children on every read."""
    total: int
    completed: int
    failed: int
    canceled: int
    active: int
    queued: int
    stopped: int
    remaining: int
    percent: float
    status: JobStatus


class Scheduler:
    """
    Admits queued jobs into a bounded number of slots and drives them through
    the state machine.

    Command methods raise JobNotFoundError for unknown ids and
    InvalidTransitionError when the job's status does not allow the command.
    Playlist parents accept the same commands and fan them out to their children.
    """

    def __init__(self, settings: Settings, orchestrator: ProcessOrchestrator, bus: EventBus,
                 store: Optional[JobStore] = None, expander: Optional[PlaylistExpander] = None,
                 metadata_probe: Optional[MetadataProbe] = None):
        self.settings = settings
        self.orchestrator = orchestrator
        self.bus = bus
        self.store: JobStore = store if store is not None else MemoryJobStore()
        self.expander = expander
        self.metadata_probe = metadata_probe
        self.logger = logging.getLogger(__name__)

        self._lock = asyncio.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self._children: Dict[str, List[str]] = {}
        self._queue: Deque[str] = deque()
        self._slots: Dict[str, ActiveSlot] = {}
        self._expansions: Dict[str, asyncio.Task] = {}
        # Playlists removed while some items were still running.
        self._parents_to_remove: Set[str] = set()
        self._diagnostics: Dict[str, List[DiagnosticLine]] = {}
        self._concurrency_limit = settings.max_concurrent_downloads
        self._tasks: Set[asyncio.Task] = set()
        self._persist_queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------ queries

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    @property
    def active_count(self) -> int:
        return len(self._slots)

    def get(self, job_id: str) -> JobRecord:
        """Returns a snapshot of the job. Mutating it has no effect on the scheduler."""
        return replace(self._get(job_id))

    def jobs(self) -> List[JobRecord]:
        """Snapshots of every job in submission order."""
        return [replace(job) for job in self._jobs.values()]

    def children_of(self, parent_id: str) -> List[JobRecord]:
        self._get(parent_id)
        return [replace(self._jobs[c]) for c in self._children.get(parent_id, [])]

    def queued_ids(self) -> List[str]:
        return list(self._queue)

    def diagnostics(self, job_id: str) -> List[DiagnosticLine]:
        """The most recent engine output lines for a job, live while it runs."""
        self._get(job_id)
        slot = self._slots.get(job_id)
        if slot is not None and slot.handle is not None:
            return list(slot.handle.buffer)
        return list(self._diagnostics.get(job_id, []))

    def playlist_progress(self, parent_id: str) -> PlaylistProgress:
        parent = self._get(parent_id)
        if parent.source_kind is not SourceKind.PLAYLIST_PARENT:
            raise InvalidTransitionError(f"Job {parent_id} is not a playlist.")
        statuses = [self._jobs[c].status for c in self._children.get(parent_id, [])]
        total = len(statuses)
        completed = statuses.count(JobStatus.DONE)
        failed = statuses.count(JobStatus.FAILED)
        canceled = statuses.count(JobStatus.CANCELED)
        active = sum(1 for s in statuses if s.holds_slot)
        queued = statuses.count(JobStatus.QUEUED)
        stopped = statuses.count(JobStatus.STOPPED)
        percent = 100.0 * completed / total if total else 0.0
        return PlaylistProgress(
            total=total, completed=completed, failed=failed, canceled=canceled,
            active=active, queued=queued, stopped=stopped,
            remaining=total - completed - failed - canceled,
            percent=percent,
            status=self._aggregate_status(parent, total, completed, failed, canceled, active, queued, stopped),
        )

    def has_pending_work(self) -> bool:
        """True while anything is queued, running, or being expanded."""
        if self._queue or self._slots or self._expansions:
            return True
        return any(j.status is JobStatus.QUEUED and j.source_kind is not SourceKind.PLAYLIST_PARENT
                   for j in self._jobs.values())

    # ------------------------------------------------------------------ intake

    async def submit(self, job: JobRecord) -> JobRecord:
        """
        Adds a new job. Singles and playlist items are queued; playlist parents are expanded.

        A playlist item whose parent is unknown is kept but immediately failed.
        """
        async with self._lock:
            if job.job_id in self._jobs:
                raise InvariantViolation(f"Job {job.job_id} was already submitted.")
            self._jobs[job.job_id] = job
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                self._emit_status(job)
                self._persist(job)
                self._start_expansion(job.job_id)
                return replace(job)

            if job.source_kind is SourceKind.PLAYLIST_ITEM:
                parent = self._jobs.get(job.parent_id or '')
                if parent is None or parent.source_kind is not SourceKind.PLAYLIST_PARENT:
                    self.logger.error(f"Job {job.job_id} references missing playlist {job.parent_id}.")
                    self._fail(job, MISSING_PARENT_ERROR)
                    return replace(job)
                self._children.setdefault(parent.job_id, []).append(job.job_id)

            if job.status is not JobStatus.QUEUED:
                self.logger.error(f"Job {job.job_id} submitted with status {job.status.value}.")
                if job.can_transition(JobStatus.FAILED):
                    self._fail(job, INTERNAL_ERROR)
                return replace(job)

            self._enqueue(job)
            self._admit_locked()
            return replace(job)

    async def submit_urls(self, text: str, preset_id: Optional[str] = None,
                          output_dir: Optional[str] = None) -> List[JobRecord]:
        """Extracts URLs from free text and submits each one, expanding playlist URLs."""
        preset_id = preset_id or self.settings.default_preset
        output_dir = str(output_dir or self.settings.default_output_dir)
        records = []
        for url in extract_urls(text):
            if is_playlist_url(url) and self.expander is not None:
                records.append(await self.expand_playlist(url, preset_id, output_dir))
            else:
                records.append(await self.submit(JobRecord.new_single(url, preset_id, output_dir)))
        self.logger.info(f"Submitted {len(records)} URL(s).")
        return records

    async def expand_playlist(self, url: str, preset_id: Optional[str] = None, output_dir: Optional[str] = None,
                              overrides: Optional[Dict[int, EntryOverride]] = None) -> JobRecord:
        """Creates a playlist parent and expands it in the background. Returns the parent."""
        parent = JobRecord.new_playlist_parent(
            url, preset_id or self.settings.default_preset, str(output_dir or self.settings.default_output_dir)
        )
        async with self._lock:
            self._jobs[parent.job_id] = parent
            self._emit_status(parent)
            self._persist(parent)
            self._start_expansion(parent.job_id, overrides)
        return replace(parent)

    async def expand(self, parent_id: str, overrides: Optional[Dict[int, EntryOverride]] = None) -> List[JobRecord]:
        """
        Expands a playlist parent now and returns the new children.

        A parent that already has children expands to nothing.
        """
        async with self._lock:
            parent = self._get(parent_id)
            if parent.source_kind is not SourceKind.PLAYLIST_PARENT:
                raise InvalidTransitionError(f"Job {parent_id} is not a playlist.")
            running = self._expansions.get(parent_id)
        if running is not None:
            await asyncio.gather(running, return_exceptions=True)
            return []
        return await self._expand_parent(parent_id, overrides)

    # ------------------------------------------------------------------ commands

    async def stop(self, job_id: str):
        """Stops a job, keeping its partial download so it can be resumed."""
        async with self._lock:
            job = self._get(job_id)
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                for child_id in list(self._children.get(job_id, [])):
                    self._stop_locked(self._jobs[child_id], strict=False)
            else:
                self._stop_locked(job, strict=True)
            self._admit_locked()

    async def cancel(self, job_id: str):
        """Cancels a job and discards its temp and partial files."""
        async with self._lock:
            job = self._get(job_id)
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                for child_id in list(self._children.get(job_id, [])):
                    self._cancel_locked(self._jobs[child_id], strict=False)
                expansion = self._expansions.pop(job_id, None)
                if expansion is not None:
                    expansion.cancel()
                if job.can_transition(JobStatus.CANCELED):
                    self._set_status(job, JobStatus.CANCELED, PHASE_CANCELED)
            else:
                self._cancel_locked(job, strict=True)
            self._admit_locked()

    async def resume(self, job_id: str):
        """Re-admits a stopped job. It continues from its partial file where the engine can."""
        async with self._lock:
            job = self._get(job_id)
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                for child_id in list(self._children.get(job_id, [])):
                    self._resume_locked(self._jobs[child_id], strict=False)
            else:
                self._resume_locked(job, strict=True)
            self._admit_locked()

    async def retry(self, job_id: str):
        """Re-queues a failed job with its error cleared. For a playlist, every failed child."""
        async with self._lock:
            job = self._get(job_id)
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                if job.status is JobStatus.FAILED and not self._children.get(job_id):
                    job.error = None
                    self._set_status(job, JobStatus.QUEUED, PHASE_QUEUED)
                    self._start_expansion(job_id)
                    return
                failed = [self._jobs[c] for c in self._children.get(job_id, [])
                          if self._jobs[c].status is JobStatus.FAILED]
                if not failed:
                    raise InvalidTransitionError(f"Playlist {job_id} has no failed items to retry.")
                for child in failed:
                    self._retry_locked(child)
            else:
                if job.status is not JobStatus.FAILED:
                    raise InvalidTransitionError(f"Job {job_id} is {job.status.value}; only failed jobs can be retried.")
                self._retry_locked(job)
            self._admit_locked()

    async def start_all(self) -> int:
        """Resumes every stopped job. Returns how many were re-admitted."""
        async with self._lock:
            count = 0
            for job in list(self._jobs.values()):
                if job.source_kind is not SourceKind.PLAYLIST_PARENT and self._resume_locked(job, strict=False):
                    count += 1
            self._admit_locked()
        self.logger.info(f"Start all: {count} job(s) re-admitted.")
        return count

    async def stop_all(self) -> int:
        """Stops every queued or running job. Returns how many were affected."""
        async with self._lock:
            count = 0
            for job in list(self._jobs.values()):
                if job.source_kind is not SourceKind.PLAYLIST_PARENT and self._stop_locked(job, strict=False):
                    count += 1
        self.logger.info(f"Stop all: {count} job(s) stopping.")
        return count

    async def remove(self, job_id: str):
        """
        Removes a job from the working set. A running job is canceled first and
        removed once its process has exited.
        """
        async with self._lock:
            job = self._get(job_id)
            if job.source_kind is SourceKind.PLAYLIST_PARENT:
                for child_id in list(self._children.get(job_id, [])):
                    self._remove_or_defer(self._jobs[child_id])
                expansion = self._expansions.pop(job_id, None)
                if expansion is not None:
                    expansion.cancel()
                if self._children.get(job_id):
                    self._parents_to_remove.add(job_id)
                else:
                    self._remove_locked(job_id)
            else:
                self._remove_or_defer(job)
            self._admit_locked()

    async def clear(self) -> List[str]:
        """Removes finished jobs (done, canceled, failed) and playlists left with no items."""
        async with self._lock:
            removed = []
            for job in list(self._jobs.values()):
                if job.source_kind is not SourceKind.PLAYLIST_PARENT and job.status.is_finished:
                    self._remove_locked(job.job_id)
                    removed.append(job.job_id)
            for job in list(self._jobs.values()):
                if (job.source_kind is SourceKind.PLAYLIST_PARENT and not self._children.get(job.job_id)
                        and job.job_id not in self._expansions
                        and job.status not in (JobStatus.QUEUED, JobStatus.FETCHING)):
                    self._remove_locked(job.job_id)
                    removed.append(job.job_id)
        self.logger.info(f"Cleared {len(removed)} finished item(s) from the list.")
        return removed

    async def set_concurrency_limit(self, limit: int):
        """Changes the slot count. Lowering it never preempts running jobs."""
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1.")
        async with self._lock:
            self.logger.info(f"Concurrency limit changed from {self._concurrency_limit} to {limit}.")
            self._concurrency_limit = limit
            self._admit_locked()

    def on_tool_swapped(self, tool: str):
        """Forwards an external tool swap; the next spawn resolves the new binary."""
        self.orchestrator.tool_swapped(tool)

    # ------------------------------------------------------------------ lifecycle

    async def restore(self) -> int:
        """
        Loads jobs left over from a previous run and reconciles them.

        Jobs that were mid-flight go back to queued with their progress kept;
        playlist items whose playlist is gone are failed.
        """
        records = sorted(await self.store.load_pending_jobs(), key=lambda r: r.created_at)
        async with self._lock:
            restored = [r for r in records if r.job_id not in self._jobs]
            for record in restored:
                self._jobs[record.job_id] = record
            for record in restored:
                self._reconcile(record)
        keep = [job_id for job_id, job in self._jobs.items() if not job.status.is_terminal]
        await self.orchestrator.initialize(keep)
        async with self._lock:
            for record in restored:
                if record.source_kind is SourceKind.PLAYLIST_PARENT:
                    if record.status is JobStatus.QUEUED and not self._children.get(record.job_id):
                        self._start_expansion(record.job_id)
                elif record.status is JobStatus.QUEUED:
                    self._queue.append(record.job_id)
            self._admit_locked()
        self.logger.info(f"Restored {len(restored)} job(s) from storage.")
        return len(restored)

    async def settle(self):
        """Waits until no admission runner or playlist expansion is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def flush(self):
        """Waits until every queued storage write has completed."""
        await self._persist_queue.join()

    async def shutdown(self):
        """Stops running processes (keeping partial files), then drains storage writes."""
        async with self._lock:
            self._closed = True
            watchers = []
            for slot in list(self._slots.values()):
                if slot.handle is not None:
                    self.orchestrator.request_stop(slot.handle)
                    if slot.handle.watcher is not None:
                        watchers.append(slot.handle.watcher)
                elif not slot.spawning and slot.runner is not None:
                    slot.runner.cancel()
            for task in self._expansions.values():
                task.cancel()
        if watchers:
            timeout = self.settings.stop_grace_period_seconds + 5
            done, pending = await asyncio.wait(watchers, timeout=timeout)
            for task in pending:
                task.cancel()
        await self.settle()
        await self.flush()
        if self._writer is not None:
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
            self._writer = None
        self.logger.info("Scheduler shut down.")

    # ------------------------------------------------------------------ process observer

    async def on_progress(self, job_id: str, event: ProgressEvent) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job_id not in self._slots:
                return
            self._ensure_started(job)
            if not job.status.is_active:
                return

            phase = event.phase
            if phase is not None and phase.is_postprocessing:
                if job.status is JobStatus.DOWNLOADING:
                    self._set_status(job, JobStatus.POSTPROCESSING, phase.label)
                elif job.phase != phase.label:
                    job.phase = phase.label
                    self.bus.publish(JobPostProcessing(job_id, step=phase.label))
                return

            if event.percent is not None:
                job.percent = event.percent
            if event.bytes_downloaded is not None:
                job.bytes_downloaded = event.bytes_downloaded
            if event.bytes_total is not None:
                job.bytes_total = event.bytes_total
            job.speed_bps = event.speed_bps
            job.eta_seconds = event.eta_seconds
            if phase is Phase.DOWNLOADING and job.status is JobStatus.DOWNLOADING:
                job.phase = phase.label
            self.bus.publish(JobProgress(job_id, status=job.status, progress=event, phase=job.phase))

    async def on_exit(self, job_id: str, outcome: ProcessOutcome, diagnostics: List[DiagnosticLine]) -> None:
        async with self._lock:
            self._diagnostics[job_id] = diagnostics
            job = self._jobs.get(job_id)
            slot = self._slots.get(job_id)
            if job is not None:
                self._ensure_started(job)
            self._slots.pop(job_id, None)
            if job is None:
                self._admit_locked()
                return
            try:
                self._finish(job, outcome)
            except InvalidTransitionError:
                self.logger.exception(f"[{job_id}] Could not record process outcome {outcome.kind.value}")
            if slot is not None and slot.remove_after_exit:
                self._remove_locked(job_id)
            self._admit_locked()

    # ------------------------------------------------------------------ internals: admission

    def _admit_locked(self):
        if self._closed:
            return
        while len(self._slots) < self._concurrency_limit and self._queue:
            job_id = self._queue.popleft()
            job = self._jobs.get(job_id)
            if job is None or job_id in self._slots:
                continue
            if job.status is JobStatus.QUEUED:
                resume = False
                self._set_status(job, JobStatus.FETCHING, PHASE_FETCHING)
            elif job.status is JobStatus.STOPPED:
                resume = True
            else:
                continue
            slot = ActiveSlot(job_id)
            self._slots[job_id] = slot
            slot.runner = self._spawn_task(self._run_job(job_id, resume), name=f"run-{job_id}")

    async def _run_job(self, job_id: str, resume: bool):
        """Admission runner: optional metadata probe, then spawn. Exits once the process is running."""
        try:
            if not resume:
                await self._probe(job_id)
            async with self._lock:
                job = self._jobs.get(job_id)
                slot = self._slots.get(job_id)
                if job is None or slot is None:
                    return
                if job.status is JobStatus.FETCHING:
                    self._set_status(job, JobStatus.READY, PHASE_STARTING)
                if job.status not in (JobStatus.READY, JobStatus.STOPPED):
                    self._slots.pop(job_id, None)
                    self._admit_locked()
                    return
                slot.spawning = True
                snapshot = replace(job)
            try:
                handle = await self.orchestrator.start(snapshot, self)
            except SpawnError as e:
                async with self._lock:
                    self._abort_slot(job_id, e.error)
                return
            async with self._lock:
                slot = self._slots.get(job_id)
                job = self._jobs.get(job_id)
                if slot is None or job is None:
                    # Exit already recorded.
                    return
                slot.handle = handle
                slot.spawning = False
                self._ensure_started(job)
                if slot.pending == 'cancel':
                    self.orchestrator.request_cancel(handle)
                elif slot.pending == 'stop':
                    self.orchestrator.request_stop(handle)
        except DownloadCancelledError:
            self.logger.debug(f"[{job_id}] Admission cancelled during metadata probe.")
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception(f"[{job_id}] Unexpected error while starting job")
            async with self._lock:
                self._abort_slot(job_id, INTERNAL_ERROR)

    async def _probe(self, job_id: str):
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            needed = (self.settings.fetch_metadata_before_download and self.metadata_probe is not None
                      and job.title is None)
            url = job.source_url
        if not needed:
            return
        try:
            metadata = await self.metadata_probe.fetch_metadata(url)
        except URLExtractionError as e:
            # The download itself reports a classified error if the URL is really broken.
            self.logger.warning(f"[{job_id}] Metadata probe failed: {e}")
            return
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.FETCHING:
                return
            job.title = metadata.title
            job.uploader = metadata.uploader
            job.duration_seconds = metadata.duration_seconds
            job.thumbnail_url = metadata.thumbnail_url
            self._persist(job)
            self.bus.publish(MetadataReady(
                job_id, title=job.title, uploader=job.uploader,
                duration_seconds=job.duration_seconds, thumbnail_url=job.thumbnail_url,
            ))

    def _abort_slot(self, job_id: str, error: ClassifiedError):
        """Frees a slot whose job never got a running process."""
        slot = self._slots.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None:
            if slot is not None and slot.pending == 'cancel' and job.can_transition(JobStatus.CANCELED):
                self._cancel_record(job)
            elif job.can_transition(JobStatus.FAILED):
                self.logger.warning(f"[{job_id}] Could not start: {error.user_message}")
                self._fail(job, error)
            if slot is not None and slot.remove_after_exit:
                self._remove_locked(job_id)
        self._admit_locked()

    def _ensure_started(self, job: JobRecord):
        """Marks a job downloading once its process exists, whichever side notices first."""
        if job.status in (JobStatus.READY, JobStatus.STOPPED) and job.job_id in self._slots:
            job.error = None
            self._set_status(job, JobStatus.DOWNLOADING, Phase.DOWNLOADING.label)

    def _finish(self, job: JobRecord, outcome: ProcessOutcome):
        if outcome.kind is OutcomeKind.SUCCEEDED:
            job.mark_done(outcome.final_path or '')
            self._persist(job)
            self.bus.publish(JobCompleted(job.job_id, final_path=job.final_path or ''))
            self.logger.info(f"[{job.job_id}] Completed: {job.final_path}")
        elif outcome.kind is OutcomeKind.STOPPED:
            job.speed_bps = job.eta_seconds = None
            self._set_status(job, JobStatus.STOPPED, PHASE_STOPPED)
        elif outcome.kind is OutcomeKind.CANCELED:
            self._cancel_record(job)
        else:
            self._fail(job, outcome.error or INTERNAL_ERROR)

    # ------------------------------------------------------------------ internals: commands

    def _stop_locked(self, job: JobRecord, strict: bool) -> bool:
        status = job.status
        slot = self._slots.get(job.job_id)
        if slot is not None:
            if slot.handle is not None:
                self.orchestrator.request_stop(slot.handle)
            elif slot.spawning:
                slot.pending = slot.pending or 'stop'
            else:
                self._release_unspawned(slot)
                if status is JobStatus.STOPPED:
                    job.phase = PHASE_STOPPED
                    self.bus.publish(JobStopped(job.job_id, percent=job.percent, bytes_downloaded=job.bytes_downloaded))
                else:
                    self._set_status(job, JobStatus.STOPPED, PHASE_STOPPED)
            return True
        if status is JobStatus.QUEUED:
            self._dequeue(job.job_id)
            self._set_status(job, JobStatus.STOPPED, PHASE_STOPPED)
            return True
        if status is JobStatus.STOPPED and job.job_id in self._queue:
            self._dequeue(job.job_id)
            job.phase = PHASE_STOPPED
            self.bus.publish(JobStopped(job.job_id, percent=job.percent, bytes_downloaded=job.bytes_downloaded))
            return True
        if strict and status is not JobStatus.STOPPED:
            raise InvalidTransitionError(f"Job {job.job_id} is {status.value} and cannot be stopped.")
        return False

    def _cancel_locked(self, job: JobRecord, strict: bool) -> bool:
        slot = self._slots.get(job.job_id)
        if slot is not None:
            if slot.handle is not None:
                self.orchestrator.request_cancel(slot.handle)
            elif slot.spawning:
                slot.pending = 'cancel'
            else:
                self._release_unspawned(slot)
                self._cancel_record(job)
            return True
        if job.status in (JobStatus.QUEUED, JobStatus.STOPPED):
            self._dequeue(job.job_id)
            self._cancel_record(job)
            return True
        if strict:
            raise InvalidTransitionError(f"Job {job.job_id} is {job.status.value} and cannot be canceled.")
        return False

    def _resume_locked(self, job: JobRecord, strict: bool) -> bool:
        if job.status is JobStatus.STOPPED and job.job_id not in self._slots and job.job_id not in self._queue:
            job.phase = PHASE_RESUMING
            self._queue.append(job.job_id)
            self._persist(job)
            self.bus.publish(JobStatusChanged(job.job_id, status=job.status, phase=job.phase))
            return True
        if strict and job.status is not JobStatus.STOPPED:
            raise InvalidTransitionError(f"Job {job.job_id} is {job.status.value}; only stopped jobs can be resumed.")
        return False

    def _retry_locked(self, job: JobRecord):
        job.error = None
        job.clear_progress()
        self._set_status(job, JobStatus.QUEUED, PHASE_QUEUED)
        if job.job_id not in self._queue:
            self._queue.append(job.job_id)

    def _remove_or_defer(self, job: JobRecord):
        slot = self._slots.get(job.job_id)
        if slot is not None and (slot.handle is not None or slot.spawning):
            slot.remove_after_exit = True
            self._cancel_locked(job, strict=False)
            return
        if not job.status.is_finished:
            self._cancel_locked(job, strict=False)
        self._remove_locked(job.job_id)

    def _release_unspawned(self, slot: ActiveSlot):
        """Frees a slot whose runner has not spawned a process yet."""
        self._slots.pop(slot.job_id, None)
        if slot.runner is not None:
            slot.runner.cancel()

    def _cancel_record(self, job: JobRecord):
        job.clear_progress()
        self._set_status(job, JobStatus.CANCELED, PHASE_CANCELED)
        if job.source_kind is not SourceKind.PLAYLIST_PARENT:
            self._spawn_task(self.orchestrator.discard_artifacts(job.job_id), name=f"discard-{job.job_id}")

    def _remove_locked(self, job_id: str):
        job = self._jobs.pop(job_id, None)
        if job is None:
            return
        self._dequeue(job_id)
        self._diagnostics.pop(job_id, None)
        self._children.pop(job_id, None)
        if job.parent_id and job.parent_id in self._children:
            siblings = self._children[job.parent_id]
            if job_id in siblings:
                siblings.remove(job_id)
            if not siblings and job.parent_id in self._parents_to_remove:
                self._parents_to_remove.discard(job.parent_id)
                self._remove_locked(job.parent_id)
        self._persist_queue.put_nowait(('delete', job_id))
        self._ensure_writer()
        self.bus.publish(JobRemoved(job_id))

    # ------------------------------------------------------------------ internals: playlists

    def _start_expansion(self, parent_id: str, overrides: Optional[Dict[int, EntryOverride]] = None):
        if self.expander is None:
            self.logger.error(f"No playlist expander configured; cannot expand {parent_id}.")
            self._fail(self._jobs[parent_id], INTERNAL_ERROR)
            return
        task = self._spawn_task(self._expand_parent(parent_id, overrides), name=f"expand-{parent_id}")
        self._expansions[parent_id] = task

    async def _expand_parent(self, parent_id: str, overrides: Optional[Dict[int, EntryOverride]] = None) -> List[JobRecord]:
        try:
            async with self._lock:
                parent = self._jobs.get(parent_id)
                if parent is None or self.expander is None:
                    return []
                if parent.status is JobStatus.QUEUED:
                    self._set_status(parent, JobStatus.FETCHING, 'Fetching playlist…')
                existing = [self._jobs[c] for c in self._children.get(parent_id, [])]
                snapshot = replace(parent)

            try:
                children = await self.expander.expand(snapshot, existing, overrides)
            except PlaylistExpansionError as e:
                async with self._lock:
                    parent = self._jobs.get(parent_id)
                    if parent is not None and parent.can_transition(JobStatus.FAILED):
                        self._fail(parent, e.error)
                return []
            except DownloadCancelledError:
                return []

            async with self._lock:
                parent = self._jobs.get(parent_id)
                if parent is None or parent.status is JobStatus.CANCELED or self._children.get(parent_id):
                    return []
                self._children[parent_id] = [c.job_id for c in children]
                if parent.status is JobStatus.FETCHING:
                    self._set_status(parent, JobStatus.READY, f"{len(children)} item(s)")
                self.bus.publish(PlaylistExpanded(
                    parent_id, child_ids=tuple(c.job_id for c in children), count=len(children)
                ))
                for child in children:
                    self._jobs[child.job_id] = child
                    if child.status is JobStatus.QUEUED:
                        self._enqueue(child)
                    else:
                        self._persist(child)
                        self._emit_status(child)
                self._admit_locked()
                return [replace(c) for c in children]
        finally:
            if self._expansions.get(parent_id) is asyncio.current_task():
                self._expansions.pop(parent_id, None)

    def _aggregate_status(self, parent: JobRecord, total: int, completed: int, failed: int,
                          canceled: int, active: int, queued: int, stopped: int) -> JobStatus:
        if total == 0:
            return parent.status
        if active:
            return JobStatus.DOWNLOADING
        if queued:
            return JobStatus.QUEUED
        if stopped:
            return JobStatus.STOPPED
        if completed == total:
            return JobStatus.DONE
        if canceled == total:
            return JobStatus.CANCELED
        if failed:
            return JobStatus.FAILED
        return JobStatus.DONE

    # ------------------------------------------------------------------ internals: records and events

    def _get(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _enqueue(self, job: JobRecord):
        if job.job_id not in self._queue:
            self._queue.append(job.job_id)
        self._persist(job)
        self.bus.publish(JobQueued(job.job_id))

    def _dequeue(self, job_id: str):
        try:
            self._queue.remove(job_id)
        except ValueError:
            pass

    def _fail(self, job: JobRecord, error: ClassifiedError):
        job.mark_failed(error)
        self._persist(job)
        self._emit_status(job)

    def _set_status(self, job: JobRecord, status: JobStatus, phase: Optional[str] = None):
        previous = job.status
        job.transition(status, phase)
        self.logger.info(f"[{job.job_id}] {previous.value} -> {status.value}")
        self._persist(job)
        self._emit_status(job)

    def _emit_status(self, job: JobRecord):
        """Publishes the one event that describes the job's current status."""
        status = job.status
        job_id = job.job_id
        if status is JobStatus.QUEUED:
            event = JobQueued(job_id)
        elif status is JobStatus.DOWNLOADING:
            event = JobStarted(job_id)
        elif status is JobStatus.POSTPROCESSING:
            event = JobPostProcessing(job_id, step=job.phase or '')
        elif status is JobStatus.STOPPED:
            event = JobStopped(job_id, percent=job.percent, bytes_downloaded=job.bytes_downloaded)
        elif status is JobStatus.CANCELED:
            event = JobCanceled(job_id)
        elif status is JobStatus.DONE:
            event = JobCompleted(job_id, final_path=job.final_path or '')
        elif status is JobStatus.FAILED:
            error = job.error or INTERNAL_ERROR
            event = JobFailed(job_id, kind=error.kind, message=error.user_message, actions=error.actions)
        else:
            event = JobStatusChanged(job_id, status=status, phase=job.phase)
        self.bus.publish(event)

    def _reconcile(self, record: JobRecord):
        if record.source_kind is SourceKind.PLAYLIST_ITEM:
            parent = self._jobs.get(record.parent_id or '')
            if parent is None or parent.source_kind is not SourceKind.PLAYLIST_PARENT:
                self.logger.error(f"Invariant violation while restoring: job {record.job_id} references "
                                  f"missing playlist {record.parent_id}.")
                if record.can_transition(JobStatus.FAILED):
                    if record.status.holds_slot:
                        record.transition(JobStatus.QUEUED, PHASE_QUEUED)
                    self._fail(record, MISSING_PARENT_ERROR)
                return
            self._children.setdefault(parent.job_id, []).append(record.job_id)
        elif record.source_kind is SourceKind.PLAYLIST_PARENT and record.status is JobStatus.READY:
            # Already expanded; its children carry the work.
            return
        if record.status.holds_slot:
            record.transition(JobStatus.QUEUED, PHASE_QUEUED)
            record.speed_bps = record.eta_seconds = None
            self._persist(record)

    # ------------------------------------------------------------------ internals: tasks and storage

    def _spawn_task(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done_callback)
        return task

    def _task_done_callback(self, task: asyncio.Task):
        """Removes a finished task from the set and logs exceptions."""
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def _persist(self, job: JobRecord):
        self._persist_queue.put_nowait(('save', replace(job)))
        self._ensure_writer()

    def _ensure_writer(self):
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._writer_loop(), name="job-store-writer")

    async def _writer_loop(self):
        while True:
            op, payload = await self._persist_queue.get()
            try:
                if op == 'save':
                    await self.store.save_job(payload)
                else:
                    await self.store.delete_job(payload)
            except Exception:
                self.logger.exception(f"Storage {op} failed")
            finally:
                self._persist_queue.task_done()
