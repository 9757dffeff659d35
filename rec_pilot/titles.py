"""Recording titles derived from the working context."""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 2.0

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SEPARATORS = re.compile(r"[-_]+")
_DIFF_STAT_LINE = re.compile(r"^\s*([^|]+?)\s+\|")
_BRANCH_KIND = re.compile(r"^([\w-]+)/(.+)$")


def sanitize_title(text: Optional[str], max_length: int = 60) -> str:
    """Strip control characters, collapse whitespace and truncate."""
    if not text:
        return ""
    clean = _CONTROL_CHARS.sub(" ", text)
    clean = " ".join(clean.split())
    if len(clean) > max_length:
        clean = clean[:max_length].rstrip()
    return clean


def _humanize_filename(name: str) -> str:
    """`render_loop.rs` -> `render loop`"""
    stem = Path(name).name
    stem = re.sub(r"\.\w+$", "", stem)
    return _SEPARATORS.sub(" ", stem).strip()


class TitleGenerator:
    """
    Picks a title for a finished recording.

    Priority: git branch (trunk branches skipped), first file in
    ``git diff --stat``, current buffer name, then a timestamp.
    """

    def __init__(
        self,
        buffer_name: Callable[[], str],
        working_directory: Callable[[], Path],
        trunk_branches: Sequence[str] = ("main", "master", "dev"),
        max_length: int = 60,
    ):
        self.buffer_name = buffer_name
        self.working_directory = working_directory
        self.trunk_branches = tuple(trunk_branches)
        self.max_length = max_length

    def _base_dir(self) -> Path:
        """Directory of the current buffer, else the working directory."""
        name = self.buffer_name()
        if name:
            parent = Path(name).expanduser().absolute().parent
            if parent.is_dir():
                return parent
        return self.working_directory()

    async def _git(self, *args: str) -> Optional[List[str]]:
        cmd = ["git", "-C", str(self._base_dir()), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"git unavailable: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), GIT_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug(f"git {args[0]} timed out")
            return None

        if process.returncode != 0:
            return None
        return stdout.decode(errors="replace").splitlines()

    async def from_branch(self) -> Optional[str]:
        out = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        if not out:
            return None
        branch = out[0].strip()
        # Detached HEAD reports the literal "HEAD"
        if not branch or branch == "HEAD" or branch in self.trunk_branches:
            return None

        branch = re.sub(r"^origin/", "", branch)
        match = _BRANCH_KIND.match(branch)
        if match:
            rest = _SEPARATORS.sub(" ", match.group(2))
            return self._clean(f"{match.group(1)}: {rest}")
        return self._clean(_SEPARATORS.sub(" ", branch))

    async def from_diff(self) -> Optional[str]:
        out = await self._git("diff", "--stat")
        if not out:
            return None
        for line in out:
            match = _DIFF_STAT_LINE.match(line)
            if match:
                base = _humanize_filename(match.group(1))
                return self._clean(f"update: {base}") if base else None
        return None

    def from_buffer(self) -> Optional[str]:
        name = self.buffer_name()
        if not name:
            return None
        return self._clean(_humanize_filename(name))

    def fallback(self, now: Optional[float] = None) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(now))
        return self._clean(f"Recording {stamp}")

    def _clean(self, text: str) -> Optional[str]:
        return sanitize_title(text, self.max_length) or None

    async def generate(self, now: Optional[float] = None) -> str:
        """Walk the priority chain; always returns a non-empty title."""
        title = await self.from_branch()
        if title:
            return title
        title = await self.from_diff()
        if title:
            return title
        title = self.from_buffer()
        if title:
            return title
        return self.fallback(now)
