"""
Defines the EngineController class, which wires the engine together and exposes UI commands.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .config import ConfigManager, Settings
from .constants import ENGINE_TOOL, JOBS_FILE
from .error_classifier import ErrorClassifier
from .events import (
    EngineEvent, EventBus, JobCanceled, JobCompleted, JobFailed, JobQueued, JobRemoved,
    PlaylistExpanded, describe
)
from .jobs import JobRecord, JobStatus, SourceKind
from .playlist import EntryOverride, PlaylistExpander
from .process import ProcessOrchestrator
from .scheduler import PlaylistProgress, Scheduler
from .storage import JobStore, JsonJobStore
from .tools import LocalToolResolver, ToolProvider, resolver_from_settings
from .url_extractor import MediaMetadata, URLInfoExtractor


class EngineController:
    """The central controller for the engine's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 tools: Optional[ToolProvider] = None, store: Optional[JobStore] = None,
                 bus: Optional[EventBus] = None):
        """
        Initializes the EngineController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded engine settings. Shared by reference with every component.
            tools: Tool provider; defaults to a local PATH/sidecar resolver.
            store: Job store; defaults to the JSON file under the user data dir.
            bus: Event bus; one is created if not given.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.bus = bus or EventBus()
        self.tools = tools or resolver_from_settings(config)
        self.classifier = ErrorClassifier()
        # The bare name resolves through PATH until startup finds the real executable.
        self.extractor = URLInfoExtractor(Path(ENGINE_TOOL), timeout=config.metadata_timeout_seconds)
        self.orchestrator = ProcessOrchestrator(config, self.tools, self.classifier)
        self.scheduler = Scheduler(
            config,
            self.orchestrator,
            self.bus,
            store=store if store is not None else JsonJobStore(JOBS_FILE),
            expander=PlaylistExpander(self.extractor, self.classifier),
            metadata_probe=self.extractor,
        )

        self.completed_jobs: int = 0
        self.failed_jobs: int = 0
        self.summary_callback: Optional[Callable[[Dict[str, int]], Any]] = None
        self._unsubscribe = self.bus.subscribe(self._on_engine_event)

    async def startup(self, restore: bool = True) -> int:
        """Resolves the engine binary and, unless told not to, restores jobs from the previous run."""
        await self._refresh_engine_path()
        restored = await self.scheduler.restore() if restore else 0
        self._recount()
        return restored

    async def shutdown(self):
        """Stops running downloads (keeping partial files) and flushes pending writes."""
        self.logger.info("Engine shutting down.")
        await self.scheduler.shutdown()
        await self.bus.join()
        self._unsubscribe()

    async def _refresh_engine_path(self):
        engine_path = await self.tools.resolve_path(ENGINE_TOOL)
        if engine_path is None:
            self.logger.warning("yt-dlp could not be found. Downloads will fail until it is installed.")
            return
        self.extractor.yt_dlp_path = engine_path

    def subscribe(self, listener) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    async def _on_engine_event(self, event: EngineEvent):
        """Keeps the summary counters current and logs notable events."""
        handler_map = {
            JobCompleted: self._handle_terminal,
            JobFailed: self._handle_failed,
            JobCanceled: self._handle_terminal,
            JobQueued: self._handle_count_change,
            JobRemoved: self._handle_count_change,
            PlaylistExpanded: self._handle_playlist_expanded,
        }
        handler = handler_map.get(type(event))
        if handler:
            await handler(event)
        else:
            self.logger.debug(describe(event))

    async def _handle_terminal(self, event: EngineEvent):
        self.logger.info(describe(event))
        await self._update_and_send_summary()

    async def _handle_failed(self, event: JobFailed):
        self.logger.warning(describe(event))
        await self._update_and_send_summary()

    async def _handle_count_change(self, event: EngineEvent):
        await self._update_and_send_summary()

    async def _handle_playlist_expanded(self, event: PlaylistExpanded):
        self.logger.info(describe(event))
        await self._update_and_send_summary()

    def _recount(self):
        jobs = [j for j in self.scheduler.jobs() if j.source_kind is not SourceKind.PLAYLIST_PARENT]
        self.completed_jobs = sum(1 for j in jobs if j.status is JobStatus.DONE)
        self.failed_jobs = sum(1 for j in jobs if j.status is JobStatus.FAILED)
        return len(jobs)

    def summary(self) -> Dict[str, int]:
        total = self._recount()
        return {
            'completed': self.completed_jobs,
            'failed': self.failed_jobs,
            'active': self.scheduler.active_count,
            'total': total,
        }

    async def _update_and_send_summary(self):
        """Calculates the summary and hands it to the registered callback, if any."""
        summary = self.summary()
        if self.summary_callback is not None:
            result = self.summary_callback(summary)
            if asyncio.iscoroutine(result):
                await result
        if summary['total'] > 0 and summary['completed'] >= summary['total']:
            self.logger.info("--- All queued downloads are complete! ---")

    # --- Commands ---

    async def submit_urls(self, text: str, preset_id: Optional[str] = None,
                          output_dir: Optional[str] = None) -> List[JobRecord]:
        return await self.scheduler.submit_urls(text, preset_id, output_dir)

    async def expand_playlist(self, url: str, preset_id: Optional[str] = None, output_dir: Optional[str] = None,
                              overrides: Optional[Dict[int, EntryOverride]] = None) -> JobRecord:
        return await self.scheduler.expand_playlist(url, preset_id, output_dir, overrides)

    async def preview(self, url: str) -> MediaMetadata:
        """Fetches metadata for the URL without queueing anything."""
        return await self.extractor.fetch_metadata(url, no_playlist=False)

    async def start(self, job_id: str):
        """Starts a job: resumes it if stopped, retries it if failed."""
        job = self.scheduler.get(job_id)
        if job.status is JobStatus.FAILED:
            await self.scheduler.retry(job_id)
        else:
            await self.scheduler.resume(job_id)

    async def stop(self, job_id: str):
        await self.scheduler.stop(job_id)

    async def cancel(self, job_id: str):
        await self.scheduler.cancel(job_id)

    async def retry(self, job_id: str):
        await self.scheduler.retry(job_id)

    async def resume(self, job_id: str):
        await self.scheduler.resume(job_id)

    async def start_all(self) -> int:
        return await self.scheduler.start_all()

    async def stop_all(self) -> int:
        return await self.scheduler.stop_all()

    async def remove(self, job_id: str):
        await self.scheduler.remove(job_id)

    async def clear_completed_jobs(self) -> List[str]:
        """Removes all finished (completed, failed, canceled) jobs from the list."""
        return await self.scheduler.clear()

    async def set_concurrency(self, limit: int):
        await self.scheduler.set_concurrency_limit(limit)

    def playlist_progress(self, parent_id: str) -> PlaylistProgress:
        return self.scheduler.playlist_progress(parent_id)

    def diagnostics(self, job_id: str) -> List[str]:
        return [str(line) for line in self.scheduler.diagnostics(job_id)]

    async def on_tool_swapped(self, tool: str):
        """Called by the external tool manager after it replaced a binary."""
        self.scheduler.on_tool_swapped(tool)
        if tool == ENGINE_TOOL:
            await self._refresh_engine_path()

    async def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings, applying them to the running engine."""
        try:
            new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"

        self.config_manager.save(new_settings)
        # Components hold a reference to self.config, so it is updated in place.
        for name in Settings.model_fields:
            setattr(self.config, name, getattr(new_settings, name))

        self.extractor.timeout = self.config.metadata_timeout_seconds
        if isinstance(self.tools, LocalToolResolver):
            self.tools.minimum_versions[ENGINE_TOOL] = self.config.minimum_engine_version
            self.tools.invalidate(ENGINE_TOOL)
        if self.config.max_concurrent_downloads != self.scheduler.concurrency_limit:
            await self.scheduler.set_concurrency_limit(self.config.max_concurrent_downloads)
        return True, "Settings have been saved."
