#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Git History Churn

Best-effort per-file change counts from `git log`, used as a supplementary
decay signal. Never raises for git problems: a missing git binary, a
directory that is not a repository, a timeout or a non-zero exit all yield
empty counts with degraded=True and a warning.

At most max_output_bytes + 1 bytes of git output are ever read. A git
process that produces more is killed and the result is flagged truncated.
"""

import logging
import subprocess
import tempfile
import threading
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
STDERR_LIMIT_BYTES = 4096


@dataclass
class ChurnResult:
    """File path → number of commits touching it within the window."""
    counts: dict[str, int] = field(default_factory=dict)
    degraded: bool = False
    warning: str | None = None
    truncated: bool = False

    def churn(self, path: str) -> int:
        return self.counts.get(path.removeprefix("./"), 0)


def _degraded(reason: str) -> ChurnResult:
    logger.warning("Git history unavailable: %s", reason)
    return ChurnResult(degraded=True, warning=f"Git history unavailable: {reason}")


def _read_capped(stream: BinaryIO, limit: int) -> bytes:
    """Read until EOF or until limit + 1 bytes have arrived, whichever is first."""
    chunks: list[bytes] = []
    size = 0
    while size <= limit:
        chunk = stream.read(min(READ_CHUNK_BYTES, limit + 1 - size))
        if not chunk:
            break
        chunks.append(chunk)
        size += len(chunk)
    return b"".join(chunks)


def file_churn(
    repo_root: str | Path,
    days: int = 30,
    timeout: float = 10,
    max_output_bytes: int = 5 * 1024 * 1024,
) -> ChurnResult:
    """
    Count how often each file changed in the last `days` days.

    Runs `git log --since="<days> days ago" --pretty=format: --name-only
    --no-merges` in repo_root. Output beyond max_output_bytes is dropped
    and the result is flagged truncated.
    """
    if not Path(repo_root).is_dir():
        return _degraded(f"{repo_root} is not a directory")

    command = [
        "git", "log", f"--since={days} days ago",
        "--pretty=format:", "--name-only", "--no-merges",
    ]
    with tempfile.TemporaryFile() as stderr_file:
        try:
            proc = subprocess.Popen(
                command, stdout=subprocess.PIPE, stderr=stderr_file, cwd=str(repo_root)
            )
        except FileNotFoundError:
            return _degraded("git executable not found")
        except OSError as exc:
            return _degraded(str(exc))

        timed_out = threading.Event()

        def expire() -> None:
            timed_out.set()
            proc.kill()

        timer = threading.Timer(timeout, expire)
        timer.start()
        try:
            output = _read_capped(proc.stdout, max_output_bytes)
            truncated = len(output) > max_output_bytes
            if truncated:
                proc.kill()
            returncode = proc.wait()
        finally:
            timer.cancel()
            proc.stdout.close()

        stderr_file.seek(0)
        stderr = stderr_file.read(STDERR_LIMIT_BYTES).decode("utf-8", errors="replace").strip()

    if returncode != 0 and not truncated:
        if timed_out.is_set():
            return _degraded(f"git log timed out after {timeout}s")
        return _degraded(stderr.splitlines()[0] if stderr else f"exit status {returncode}")

    if truncated:
        output = output[:max_output_bytes]
        # Drop the partial last line
        output = output[: output.rfind(b"\n") + 1]

    counts: Counter[str] = Counter()
    for line in output.decode("utf-8", errors="replace").split("\n"):
        line = line.strip()
        if line:
            counts[line] += 1

    warning = None
    if truncated:
        warning = f"git log output exceeded {max_output_bytes} bytes and was truncated"
        logger.warning(warning)
    return ChurnResult(counts=dict(counts), warning=warning, truncated=truncated)
