"""
Job persistence collaborators.

The scheduler only needs three operations; history retention and querying are
left to whichever store is plugged in.
"""
import json
import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Protocol

import aiofiles

from .jobs import JobRecord


class JobStore(Protocol):
    async def load_pending_jobs(self) -> List[JobRecord]:
        ...

    async def save_job(self, record: JobRecord) -> None:
        ...

    async def delete_job(self, job_id: str) -> None:
        ...


class MemoryJobStore:
    """Keeps records in a dict. Used by tests and headless runs that need no history."""

    def __init__(self):
        self.records: Dict[str, dict] = {}

    async def load_pending_jobs(self) -> List[JobRecord]:
        return [JobRecord.from_dict(data) for data in self.records.values()]

    async def save_job(self, record: JobRecord) -> None:
        self.records[record.job_id] = record.to_dict()

    async def delete_job(self, job_id: str) -> None:
        self.records.pop(job_id, None)


class JsonJobStore:
    """
    Stores every known job in a single JSON file.

    The whole file is rewritten on each change via a temp file and an atomic
    replace, so a crash mid-write leaves the previous version intact.
    """

    def __init__(self, path: Path):
        """
        Args:
            path: The JSON file to read and write.
        """
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._records: Dict[str, dict] = {}
        self._loaded = False
        self._write_lock = asyncio.Lock()

    async def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        if not await asyncio.to_thread(self.path.exists):
            return
        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
            if not isinstance(data, list):
                raise ValueError("expected a list of jobs")
            self._records = {item['job_id']: item for item in data if isinstance(item, dict) and 'job_id' in item}
        except (json.JSONDecodeError, ValueError, OSError) as e:
            self.logger.error(f"Error loading {self.path}: {e}. Backing up and starting empty.")
            try:
                backup_path = self.path.with_suffix(f".{int(time.time())}.bak")
                await asyncio.to_thread(self.path.rename, backup_path)
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted jobs file: {backup_e}")

    async def load_pending_jobs(self) -> List[JobRecord]:
        await self._ensure_loaded()
        records = []
        for data in self._records.values():
            try:
                records.append(JobRecord.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.error(f"Skipping unreadable job record {data.get('job_id')}: {e}")
        return records

    async def save_job(self, record: JobRecord) -> None:
        await self._ensure_loaded()
        self._records[record.job_id] = record.to_dict()
        await self._flush()

    async def delete_job(self, job_id: str) -> None:
        await self._ensure_loaded()
        if self._records.pop(job_id, None) is not None:
            await self._flush()

    async def _flush(self):
        async with self._write_lock:
            await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
            payload = json.dumps(list(self._records.values()), indent=2, ensure_ascii=False)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
            await asyncio.to_thread(tmp_path.replace, self.path)
