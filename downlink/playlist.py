"""Expands a playlist parent job into one child job per entry."""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from .error_classifier import UNAVAILABLE_ERROR, ErrorClassifier
from .exceptions import InvariantViolation, PlaylistExpansionError, URLExtractionError
from .jobs import JobRecord, SourceKind
from .url_extractor import PlaylistEntry


class PlaylistEnumerator(Protocol):
    async def enumerate_playlist(self, url: str) -> List[PlaylistEntry]:
        ...


@dataclass(frozen=True)
class EntryOverride:
    """Per-entry preset/output overrides, keyed by 1-based playlist index."""
    preset_id: Optional[str] = None
    output_dir: Optional[str] = None


class PlaylistExpander:
    """
    Turns a playlist parent into child JobRecords.

    Children inherit the parent's preset and output directory. Entries the
    enumeration reports as unavailable become children that are already failed,
    so they are visible to the user but never block their siblings.
    """

    def __init__(self, enumerator: PlaylistEnumerator, classifier: Optional[ErrorClassifier] = None):
        self.enumerator = enumerator
        self.classifier = classifier or ErrorClassifier()
        self.logger = logging.getLogger(__name__)

    async def expand(self, parent: JobRecord, existing_children: Sequence[JobRecord] = (),
                     overrides: Optional[Dict[int, EntryOverride]] = None) -> List[JobRecord]:
        """
        Enumerates the parent's URL and builds its children.

        Args:
            parent: A playlist parent job.
            existing_children: Children the scheduler already holds for this parent.
            overrides: Optional per-entry overrides by playlist index.

        Returns:
            The new children in playlist order; empty if the parent was already expanded.

        Raises:
            PlaylistExpansionError: If the playlist could not be enumerated.
            InvariantViolation: If `parent` is not a playlist parent.
        """
        if parent.source_kind is not SourceKind.PLAYLIST_PARENT:
            raise InvariantViolation(f"Job {parent.job_id} is not a playlist parent.")
        if existing_children:
            self.logger.info(f"Playlist {parent.job_id} already has {len(existing_children)} children; not re-expanding.")
            return []

        try:
            entries = await self.enumerator.enumerate_playlist(parent.source_url)
        except URLExtractionError as e:
            error = self.classifier.classify(e.exit_code, e.lines or [f"ERROR: {e}"])
            self.logger.warning(f"Playlist enumeration failed for {parent.source_url}: {e}")
            raise PlaylistExpansionError(error) from e

        overrides = overrides or {}
        children = []
        for index, entry in enumerate(entries, start=1):
            override = overrides.get(index, EntryOverride())
            child = JobRecord.new_playlist_item(
                parent_id=parent.job_id,
                url=entry.url or parent.source_url,
                preset_id=override.preset_id or parent.preset_id,
                output_dir=override.output_dir or parent.output_dir,
                title=entry.title,
                playlist_index=index,
            )
            child.uploader = entry.uploader
            child.duration_seconds = entry.duration_seconds
            child.thumbnail_url = entry.thumbnail_url
            if not entry.available:
                child.mark_failed(UNAVAILABLE_ERROR)
            children.append(child)

        unavailable = sum(1 for c in children if c.error is not None)
        self.logger.info(f"Expanded playlist {parent.job_id} into {len(children)} item(s), {unavailable} unavailable.")
        return children
