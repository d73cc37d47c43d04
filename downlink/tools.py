"""
Resolves the external tools (yt-dlp, ffmpeg) the engine runs.

Discovery, updating and swapping binaries belong to a separate tool manager;
the engine only asks for a resolved path and a health status.
"""
import re
import sys
import shutil
import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from packaging.version import InvalidVersion, Version

from .constants import APP_PATH, ENGINE_TOOL, SUBPROCESS_CREATION_FLAGS, TOOLS_DIR


class ToolHealth(str, Enum):
    OK = 'ok'
    DEGRADED = 'degraded'
    MISSING = 'missing'


class ToolProvider(Protocol):
    async def resolve_path(self, tool: str) -> Optional[Path]:
        ...

    async def health_status(self, tool: str) -> ToolHealth:
        ...


class StaticToolProvider:
    """Serves paths and health handed in by an external tool manager."""

    def __init__(self, paths: Optional[Dict[str, Path]] = None, health: Optional[Dict[str, ToolHealth]] = None):
        self.paths: Dict[str, Path] = dict(paths or {})
        self.health: Dict[str, ToolHealth] = dict(health or {})

    def set_tool(self, tool: str, path: Optional[Path], health: ToolHealth = ToolHealth.OK):
        if path is None:
            self.paths.pop(tool, None)
            self.health[tool] = ToolHealth.MISSING
        else:
            self.paths[tool] = path
            self.health[tool] = health

    async def resolve_path(self, tool: str) -> Optional[Path]:
        return self.paths.get(tool)

    async def health_status(self, tool: str) -> ToolHealth:
        if tool not in self.paths:
            return ToolHealth.MISSING
        return self.health.get(tool, ToolHealth.OK)


_VERSION_RE = re.compile(r'\d+(?:\.\d+)+')


class LocalToolResolver:
    """Finds tools next to the app (or in the tools dir) before falling back to PATH."""

    def __init__(self, minimum_versions: Optional[Dict[str, str]] = None,
                 search_dirs: Optional[List[Path]] = None, version_timeout: float = 15):
        """
        Args:
            minimum_versions: Per-tool minimum version; older tools report as degraded.
            search_dirs: Directories checked before PATH. Defaults to the tools dir and app dir.
            version_timeout: Seconds to wait for a `--version` probe.
        """
        self.minimum_versions = {k: v for k, v in (minimum_versions or {}).items() if v}
        self.search_dirs = search_dirs if search_dirs is not None else [TOOLS_DIR, APP_PATH]
        self.version_timeout = version_timeout
        self.logger = logging.getLogger(__name__)
        self._path_cache: Dict[str, Optional[Path]] = {}
        self._health_cache: Dict[str, ToolHealth] = {}

    def invalidate(self, tool: Optional[str] = None):
        """Forgets cached paths and health after a tool swap."""
        if tool is None:
            self._path_cache.clear()
            self._health_cache.clear()
        else:
            self._path_cache.pop(tool, None)
            self._health_cache.pop(tool, None)

    def _find_executable(self, name: str) -> Optional[Path]:
        filename = f'{name}.exe' if sys.platform == 'win32' else name
        for directory in self.search_dirs:
            local_path = Path(directory) / filename
            if local_path.exists():
                return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def resolve_path(self, tool: str) -> Optional[Path]:
        if tool not in self._path_cache:
            self._path_cache[tool] = await asyncio.to_thread(self._find_executable, tool)
            self.logger.info(f"{tool} path: {self._path_cache[tool]}")
        return self._path_cache[tool]

    async def get_version(self, executable_path: Optional[Path]) -> Optional[str]:
        """Runs the tool's version flag and returns the first line of output, or None if it cannot run."""
        if not executable_path or not executable_path.exists():
            return None
        command: List[str] = [str(executable_path)]
        command.append('-version' if 'ffmpeg' in executable_path.name.lower() else '--version')

        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=self.version_timeout)
        except asyncio.TimeoutError:
            if process:
                process.kill()
            self.logger.warning(f"Version check timed out for {executable_path}")
            return None
        except OSError as e:
            self.logger.warning(f"Cannot execute {executable_path}: {e}")
            return None

        if process.returncode != 0:
            return None
        lines = stdout_bytes.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else None

    async def health_status(self, tool: str) -> ToolHealth:
        """Probes the tool once and caches the result until `invalidate` is called."""
        if tool in self._health_cache:
            return self._health_cache[tool]
        health = await self._probe_health(tool)
        # A missing tool is re-checked next time so a fresh install is picked up.
        if health is not ToolHealth.MISSING:
            self._health_cache[tool] = health
        else:
            self._path_cache.pop(tool, None)
        return health

    async def _probe_health(self, tool: str) -> ToolHealth:
        path = await self.resolve_path(tool)
        if path is None:
            return ToolHealth.MISSING
        version_line = await self.get_version(path)
        if version_line is None:
            return ToolHealth.MISSING

        minimum = self.minimum_versions.get(tool)
        if minimum and not self._meets_minimum(version_line, minimum):
            self.logger.warning(f"{tool} version '{version_line}' is older than required {minimum}.")
            return ToolHealth.DEGRADED
        return ToolHealth.OK

    def _meets_minimum(self, version_line: str, minimum: str) -> bool:
        match = _VERSION_RE.search(version_line)
        if not match:
            return False
        try:
            return Version(match.group(0)) >= Version(minimum)
        except InvalidVersion:
            self.logger.warning(f"Could not compare version '{version_line}' against {minimum}.")
            return False


def resolver_from_settings(settings) -> LocalToolResolver:
    return LocalToolResolver(minimum_versions={ENGINE_TOOL: settings.minimum_engine_version})
