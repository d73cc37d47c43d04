"""
Runs one yt-dlp process per active job and interprets how it ended.

The orchestrator owns the process handle. Everything else (the scheduler
included) reaches a running process only through `request_stop` and
`request_cancel`; results flow back through a ProcessObserver.
"""
import os
import sys
import shutil
import signal
import asyncio
import logging
import subprocess
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Set

from .config import Settings
from .constants import (
    ENGINE_TOOL, FFMPEG_TOOL, PARTIAL_SUFFIXES, STREAM_LINE_LIMIT, SUBPROCESS_CREATION_FLAGS
)
from .error_classifier import (
    CHOOSE_OUTPUT_FOLDER, INTERNAL_ERROR, OPEN_LOGS, RETRY, TOOL_MISSING_ERROR, TOOL_OUTDATED_ERROR,
    ClassifiedError, ErrorClassifier, ErrorKind
)
from .exceptions import SpawnError, ToolUnavailableError
from .jobs import JobRecord
from .presets import build_command, job_temp_dir
from .progress import ProgressEvent, ProgressThrottle, normalize_line, parse_output_path
from .tools import ToolHealth, ToolProvider


class OutcomeKind(str, Enum):
    SUCCEEDED = 'succeeded'
    STOPPED = 'stopped'
    CANCELED = 'canceled'
    FAILED = 'failed'


class StopReason(str, Enum):
    STOP = 'stop'
    CANCEL = 'cancel'


@dataclass(frozen=True)
class ProcessOutcome:
    kind: OutcomeKind
    exit_code: Optional[int] = None
    final_path: Optional[str] = None
    error: Optional[ClassifiedError] = None


@dataclass(frozen=True)
class DiagnosticLine:
    timestamp: datetime
    stream: str
    text: str

    def __str__(self) -> str:
        return f"{self.timestamp.isoformat()} [{self.stream}] {self.text}"


NO_OUTPUT_ERROR = ClassifiedError(
    ErrorKind.UNKNOWN,
    "The download finished but no output file was found.",
    (RETRY, OPEN_LOGS),
)

TEMP_DIR_ERROR = ClassifiedError(
    ErrorKind.DISK_ERROR,
    "The temporary folder could not be created. Choose another folder.",
    (CHOOSE_OUTPUT_FOLDER,),
)


class ProcessObserver(Protocol):
    async def on_progress(self, job_id: str, event: ProgressEvent) -> None:
        ...

    async def on_exit(self, job_id: str, outcome: ProcessOutcome, diagnostics: List[DiagnosticLine]) -> None:
        ...


@dataclass
class ProcessHandle:
    """Transient state of one running process. Never persisted, never shared between jobs."""
    job_id: str
    process: Any
    observer: ProcessObserver
    temp_dir: Path
    throttle: ProgressThrottle
    buffer: Deque[DiagnosticLine]
    stop_reason: Optional[StopReason] = None
    fatal_error: Optional[ClassifiedError] = None
    output_path: Optional[str] = None
    seen_paths: Set[str] = field(default_factory=set)
    watcher: Optional[asyncio.Task] = None
    kill_timer: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def recent_lines(self) -> List[str]:
        return [line.text for line in self.buffer]


class ProcessOrchestrator:
    """Spawns, watches, and terminates engine processes."""

    def __init__(self, settings: Settings, tools: ToolProvider, classifier: Optional[ErrorClassifier] = None):
        """
        Args:
            settings: Engine settings; read at spawn time so changes apply to the next job.
            tools: Resolves the yt-dlp (and optional ffmpeg) executables and their health.
            classifier: Maps failed runs to user-facing errors.
        """
        self.settings = settings
        self.tools = tools
        self.classifier = classifier or ErrorClassifier()
        self.logger = logging.getLogger(__name__)

    async def initialize(self, keep_job_ids: Iterable[str] = ()):
        """Removes temp artifacts left behind by jobs that no longer exist."""
        await self.cleanup_temporary_files(set(keep_job_ids))

    def tool_swapped(self, tool: str):
        """Called after an external tool manager replaced a binary; cached paths are dropped."""
        self.logger.info(f"Tool swapped: {tool}. Clearing cached tool state.")
        invalidate = getattr(self.tools, 'invalidate', None)
        if callable(invalidate):
            invalidate(tool)

    async def start(self, job: JobRecord, observer: ProcessObserver) -> ProcessHandle:
        """
        Spawns the engine for `job` and starts its watcher task.

        Raises:
            ToolUnavailableError: If the engine is missing, unhealthy, or cannot be executed.
            SpawnError: If the job's temp directory cannot be created.
        """
        engine_path = await self.tools.resolve_path(ENGINE_TOOL)
        health = await self.tools.health_status(ENGINE_TOOL)
        if engine_path is None or health is ToolHealth.MISSING:
            raise ToolUnavailableError(TOOL_MISSING_ERROR)
        if health is not ToolHealth.OK:
            raise ToolUnavailableError(TOOL_OUTDATED_ERROR)

        ffmpeg_path = await self.tools.resolve_path(FFMPEG_TOOL)
        temp_dir = job_temp_dir(self.settings, job.job_id)
        try:
            await asyncio.to_thread(temp_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            self.logger.error(f"[{job.job_id}] Could not create temp dir {temp_dir}: {e}")
            raise SpawnError(self._temp_dir_error(e)) from e
        command = build_command(engine_path, job, self.settings, ffmpeg_path)

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        self.logger.info(f"[{job.job_id}] Starting engine: {command}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
                **kwargs
            )
        except OSError as e:
            self.logger.error(f"[{job.job_id}] Failed to spawn {engine_path}: {e}")
            raise ToolUnavailableError(TOOL_MISSING_ERROR) from e

        handle = ProcessHandle(
            job_id=job.job_id,
            process=process,
            observer=observer,
            temp_dir=temp_dir,
            throttle=ProgressThrottle(self.settings.progress_updates_per_second),
            buffer=deque(maxlen=self.settings.diagnostic_buffer_lines),
        )
        handle.watcher = asyncio.create_task(self._watch(handle), name=f"watch-{job.job_id}")
        return handle

    def request_stop(self, handle: ProcessHandle):
        """Gracefully stops the process, keeping partial files so the job can resume."""
        if handle.stop_reason is not None:
            return
        handle.stop_reason = StopReason.STOP
        self.logger.info(f"[{handle.job_id}] Stop requested.")
        self._terminate(handle)

    def request_cancel(self, handle: ProcessHandle):
        """Stops the process and discards its artifacts once it has exited."""
        if handle.stop_reason is StopReason.CANCEL:
            return
        already_terminating = handle.stop_reason is not None
        handle.stop_reason = StopReason.CANCEL
        self.logger.info(f"[{handle.job_id}] Cancel requested.")
        if not already_terminating:
            self._terminate(handle)

    async def on_exit(self, handle: ProcessHandle, returncode: Optional[int]) -> ProcessOutcome:
        """
        Interprets the exit of a process.

        A completed file wins over a late stop request. A cancel always ends as
        canceled, and a requested stop never ends as failed.
        """
        if handle.kill_timer is not None:
            handle.kill_timer.cancel()

        if handle.stop_reason is StopReason.CANCEL:
            await self.discard_artifacts(handle.job_id, handle.seen_paths)
            return ProcessOutcome(OutcomeKind.CANCELED, returncode)

        if returncode == 0 and handle.fatal_error is None:
            final_path = handle.output_path
            if final_path and await asyncio.to_thread(_is_non_empty_file, Path(final_path)):
                await asyncio.to_thread(shutil.rmtree, handle.temp_dir, True)
                return ProcessOutcome(OutcomeKind.SUCCEEDED, returncode, final_path=final_path)
            if handle.stop_reason is StopReason.STOP:
                return ProcessOutcome(OutcomeKind.STOPPED, returncode)
            self.logger.warning(f"[{handle.job_id}] Exit 0 but output file missing or empty: {final_path}")
            return ProcessOutcome(OutcomeKind.FAILED, returncode, error=NO_OUTPUT_ERROR)

        if handle.stop_reason is StopReason.STOP:
            return ProcessOutcome(OutcomeKind.STOPPED, returncode)

        error = handle.fatal_error or self.classifier.classify(returncode, handle.recent_lines())
        self.logger.warning(f"[{handle.job_id}] Engine failed (exit {returncode}): {error.kind.value}")
        return ProcessOutcome(OutcomeKind.FAILED, returncode, error=error)

    async def discard_artifacts(self, job_id: str, candidate_paths: Iterable[str] = ()):
        """Deletes the job's temp directory and any partial files it left next to the output."""
        temp_dir = job_temp_dir(self.settings, job_id)
        await asyncio.to_thread(shutil.rmtree, temp_dir, True)
        for path_str in candidate_paths:
            path = Path(path_str)
            for candidate in (path, *(path.with_name(path.name + suffix) for suffix in PARTIAL_SUFFIXES)):
                if candidate.suffix in PARTIAL_SUFFIXES and await asyncio.to_thread(candidate.exists):
                    try:
                        await asyncio.to_thread(candidate.unlink)
                    except OSError as e:
                        self.logger.error(f"[{job_id}] Error deleting partial file {candidate}: {e}")

    async def cleanup_temporary_files(self, keep_job_ids: Set[str]):
        """Cleans up temp directories and stray partial files for jobs not in `keep_job_ids`."""
        temp_root = Path(self.settings.temp_dir)
        if not await asyncio.to_thread(temp_root.is_dir):
            return
        count = 0

        # iterdir() itself is blocking and must be wrapped
        items_to_check = await asyncio.to_thread(list, temp_root.iterdir())

        for item in items_to_check:
            if item.name in keep_job_ids:
                continue
            try:
                if await asyncio.to_thread(item.is_dir):
                    await asyncio.to_thread(shutil.rmtree, item)
                    count += 1
                elif item.suffix in PARTIAL_SUFFIXES:
                    await asyncio.to_thread(item.unlink)
                    count += 1
            except OSError as e:
                self.logger.error(f"Error deleting temp item {item.name}: {e}")
        if count > 0:
            self.logger.info(f"Deleted {count} temporary item(s).")

    async def _watch(self, handle: ProcessHandle):
        """Reads both streams until EOF, waits for exit, then reports exactly one outcome."""
        process = handle.process
        try:
            await asyncio.gather(
                self._read_stream(handle, process.stdout, 'stdout'),
                self._read_stream(handle, process.stderr, 'stderr'),
            )
            returncode = await process.wait()
            self.logger.info(f"[{handle.job_id}] Engine exited with code {returncode}.")
            outcome = await self.on_exit(handle, returncode)
        except asyncio.CancelledError:
            self._kill(handle)
            raise
        except Exception:
            self.logger.exception(f"[{handle.job_id}] Unexpected error while watching the engine process")
            self._kill(handle)
            if handle.kill_timer is not None:
                handle.kill_timer.cancel()
            outcome = ProcessOutcome(OutcomeKind.FAILED, process.returncode, error=INTERNAL_ERROR)

        try:
            await handle.observer.on_exit(handle.job_id, outcome, list(handle.buffer))
        except Exception:
            self.logger.exception(f"[{handle.job_id}] Observer failed to handle process exit")

    async def _read_stream(self, handle: ProcessHandle, stream: Optional[asyncio.StreamReader], name: str):
        if stream is None:
            return
        while True:
            try:
                line_bytes = await stream.readline()
            except ValueError:
                # Line longer than the reader limit; drop what was buffered and keep going.
                self.logger.warning(f"[{handle.job_id}] Skipped an over-long {name} line.")
                continue
            if not line_bytes:
                break
            text = line_bytes.decode('utf-8', 'replace').rstrip('\r\n')
            if text.strip():
                await self._handle_line(handle, name, text)

    async def _handle_line(self, handle: ProcessHandle, stream: str, text: str):
        handle.buffer.append(DiagnosticLine(datetime.now(timezone.utc), stream, text))
        self.logger.debug(f"[{handle.job_id}] {text}")

        if (path := parse_output_path(text)) is not None:
            handle.output_path = path
            handle.seen_paths.add(path)

        if handle.fatal_error is None and handle.stop_reason is None:
            fatal = self.classifier.classify_fatal(text)
            if fatal is not None:
                self.logger.warning(f"[{handle.job_id}] Fatal engine output, terminating: {fatal.kind.value}")
                handle.fatal_error = fatal
                self._terminate(handle)
                return

        event = normalize_line(text)
        if event is not None and handle.throttle.allow(event):
            await handle.observer.on_progress(handle.job_id, event)

    def _temp_dir_error(self, error: OSError) -> ClassifiedError:
        # A full disk keeps its own remediation; anything else points at the folder.
        classified = self.classifier.classify(None, [str(error)])
        if classified.kind is ErrorKind.DISK_ERROR:
            return classified
        return TEMP_DIR_ERROR

    def _terminate(self, handle: ProcessHandle):
        """Sends an interrupt to the process group and arms the forced-kill timer."""
        if not handle.running:
            return
        try:
            if sys.platform == 'win32':
                handle.process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(handle.pid), signal.SIGINT)
        except (ProcessLookupError, OSError) as e:
            self.logger.warning(f"[{handle.job_id}] Interrupt failed: {e}. Forcing termination...")
            self._kill(handle)
            return
        if handle.kill_timer is None:
            handle.kill_timer = asyncio.create_task(self._kill_after_grace(handle))

    async def _kill_after_grace(self, handle: ProcessHandle):
        await asyncio.sleep(self.settings.stop_grace_period_seconds)
        if handle.running:
            self.logger.warning(f"[{handle.job_id}] Process ignored interrupt for "
                                f"{self.settings.stop_grace_period_seconds}s. Killing.")
            self._kill(handle)

    def _kill(self, handle: ProcessHandle):
        if not handle.running:
            return
        try:
            if sys.platform == 'win32':
                handle.process.kill()
            else:
                os.killpg(os.getpgid(handle.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass  # Already gone


def _is_non_empty_file(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False
