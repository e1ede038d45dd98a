"""
Scratch area for batch payloads and downloaded job output.

Batch input chunks are written here before upload and job output files are
downloaded here before aggregation. Output files may still be growing when
first seen, so readers wait for the size to settle before trusting them.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable, Iterator

from ..core.exceptions import AmbiguousOutputError, OutputFileError

logger = logging.getLogger(__name__)

JSONL_SUFFIX = ".jsonl"
STALE_FILE_SECONDS = 3600


class ScratchArea:
    """A directory holding JSONL payloads and results for in-flight jobs."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def ensure(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def path_for(self, name: str) -> Path:
        """Path inside the area for a remote file name (only its basename is kept)."""
        return self.ensure() / Path(name).name

    def write_jsonl(self, name: str, lines: Iterable[str]) -> Path:
        path = self.path_for(name)
        with open(path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line.rstrip("\n") + "\n")
        return path

    def remove(self, path: Path | str) -> None:
        path = Path(path)
        try:
            path.unlink()
            logger.debug(f"[SCRATCH] Removed {path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[SCRATCH] Could not remove {path.name}: {e}")

    def cleanup_stale(self, max_age_seconds: float = STALE_FILE_SECONDS) -> int:
        """Delete leftover files older than max_age_seconds."""
        if not self.directory.exists():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.directory.iterdir():
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.debug(f"[SCRATCH] Skipping {path.name} during cleanup: {e}")
        if removed:
            logger.info(f"[SCRATCH] Cleaned up {removed} stale files")
        return removed

    def locate_output(self, expected_name: str, recent_window_seconds: float = 600.0) -> Path:
        """
        Find the downloaded output file for a job.

        An exact basename match wins. Otherwise the single ``.jsonl`` file
        modified within the recency window is taken; several such files are
        an error, never a guess.

        Raises:
            OutputFileError: If no candidate exists
            AmbiguousOutputError: If more than one recent candidate exists
        """
        expected = Path(expected_name).name
        exact = self.directory / expected
        if exact.is_file():
            return exact

        if not self.directory.exists():
            raise OutputFileError(expected, "scratch directory does not exist")

        cutoff = time.time() - recent_window_seconds
        stem = Path(expected).stem
        files = [p for p in self.directory.iterdir() if p.is_file()]

        matching = [p for p in files if stem and stem in p.name]
        if len(matching) == 1:
            return matching[0]
        if len(matching) > 1:
            raise AmbiguousOutputError(expected, sorted(p.name for p in matching))

        recent = [p for p in files if p.suffix == JSONL_SUFFIX and p.stat().st_mtime >= cutoff]
        if len(recent) == 1:
            logger.warning(f"[SCRATCH] {expected} not found, using recent file {recent[0].name}")
            return recent[0]
        if len(recent) > 1:
            raise AmbiguousOutputError(expected, sorted(p.name for p in recent))

        raise OutputFileError(expected, "no suitable output file found", sorted(p.name for p in files))


async def wait_for_stable_size(path: Path | str, checks: int = 3, interval: float = 0.5, max_polls: int = 60) -> int:
    """
    Poll a file until its size is unchanged for ``checks`` consecutive readings.

    Returns the settled size in bytes.

    Raises:
        OutputFileError: If the file disappears or never settles within max_polls
    """
    path = Path(path)
    last_size = -1
    stable = 0
    for _ in range(max_polls):
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise OutputFileError(path.name, "file disappeared while waiting for download")
        if size == last_size and size > 0:
            stable += 1
            if stable >= checks:
                return size
        else:
            stable = 0
            last_size = size
        await asyncio.sleep(interval)
    raise OutputFileError(path.name, f"size did not settle after {max_polls} readings")


def iter_jsonl(path: Path | str) -> Iterator[dict[str, Any]]:
    """Yield parsed lines, logging and skipping lines that are not valid JSON."""
    path = Path(path)
    parsed = 0
    errors = 0
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                errors += 1
                logger.error(f"[SCRATCH] Failed to parse line {line_number} of {path.name}: {e}")
                logger.debug(f"[SCRATCH] Line preview: {line[:200]}")
                continue
            if not isinstance(record, dict):
                errors += 1
                logger.error(f"[SCRATCH] Line {line_number} of {path.name} is not an object")
                continue
            parsed += 1
            yield record

    if errors:
        logger.warning(f"[SCRATCH] Parsed {parsed} valid lines with {errors} errors from {path.name}")
    else:
        logger.debug(f"[SCRATCH] Parsed {parsed} lines from {path.name}")


def chunk_by_bytes(lines: Iterable[str], max_bytes: int) -> list[list[str]]:
    """
    Pack lines into chunks whose encoded size stays within max_bytes.

    A single line larger than the cap still gets a chunk of its own.
    """
    chunks: list[list[str]] = []
    current: list[str] = []
    current_size = 0
    for line in lines:
        size = len(line.encode("utf-8")) + 1
        if current and current_size + size > max_bytes:
            chunks.append(current)
            current, current_size = [], 0
        current.append(line)
        current_size += size
    if current:
        chunks.append(current)
    return chunks
