"""
Tests for engine/history.py

Validates:
- Per-file change counts parsed from git log output
- "./" prefixes are ignored when looking up a path
- Output beyond max_output_bytes is truncated at a line boundary
- No more than max_output_bytes + 1 bytes are read; a flooding git is killed
- Every git failure mode yields degraded=True with a warning, never an exception
"""

import subprocess
import threading

import pytest

from pmintel.engine import history
from pmintel.engine.history import ChurnResult, file_churn


class FakeStdout:
    """git's stdout pipe. endless never reaches EOF; block waits until the process is killed."""

    def __init__(self, data=b"", endless=False, block=False):
        self._data = data
        self.endless = endless
        self.block = block
        self.released = threading.Event()
        self.bytes_read = 0
        self.closed = False

    def read(self, size):
        if self.block:
            self.released.wait(timeout=5)
            return b""
        if self.endless:
            chunk = (b"src/a.py\n" * (size // 9 + 1))[:size]
        else:
            chunk, self._data = self._data[:size], self._data[size:]
        self.bytes_read += len(chunk)
        return chunk

    def close(self):
        self.closed = True


class FakeGit:
    """Stands in for subprocess.Popen; each call returns itself as the process."""

    def __init__(self, stdout, stderr=b"", returncode=0):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.killed = False
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        kwargs["stderr"].write(self.stderr)
        return self

    def kill(self):
        self.killed = True
        self.stdout.released.set()

    def wait(self, timeout=None):
        return -9 if self.killed else self.returncode


@pytest.fixture
def fake_git(monkeypatch):
    """Replace subprocess.Popen in the history module; returns the fake process."""

    def install(stdout=b"", stderr=b"", returncode=0, endless=False, block=False, raises=None):
        if raises is not None:
            def popen(cmd, **kwargs):
                raise raises
            monkeypatch.setattr(history.subprocess, "Popen", popen)
            return None
        git = FakeGit(FakeStdout(stdout, endless=endless, block=block), stderr, returncode)
        monkeypatch.setattr(history.subprocess, "Popen", git)
        return git

    return install


def test_counts_changes_per_file(tmp_path, fake_git):
    git = fake_git(b"a.py\nb.py\n\na.py\n\nsrc/c.py\n")

    result = file_churn(tmp_path, days=14, timeout=3)

    assert result.counts == {"a.py": 2, "b.py": 1, "src/c.py": 1}
    assert result.degraded is False
    assert result.warning is None
    assert result.churn("./a.py") == 2
    assert result.churn("missing.py") == 0

    cmd, kwargs = git.calls[0]
    assert cmd[:2] == ["git", "log"]
    assert "--since=14 days ago" in cmd
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["stdout"] == subprocess.PIPE
    assert git.killed is False
    assert git.stdout.closed is True


def test_output_truncated_at_line_boundary(tmp_path, fake_git):
    git = fake_git(b"a.py\nb.py\nc.py\n")

    result = file_churn(tmp_path, max_output_bytes=12)

    assert result.truncated is True
    assert result.counts == {"a.py": 1, "b.py": 1}
    assert "truncated" in result.warning
    assert result.degraded is False
    assert git.killed is True


def test_flooding_git_is_read_only_up_to_the_cap(tmp_path, fake_git):
    git = fake_git(endless=True)

    result = file_churn(tmp_path, max_output_bytes=1024)

    assert git.stdout.bytes_read == 1025
    assert git.killed is True
    assert result.truncated is True
    assert result.degraded is False
    assert result.counts == {"src/a.py": 1024 // 9}


def test_exact_cap_is_not_truncated(tmp_path, fake_git):
    git = fake_git(b"a.py\nb.py\n")

    result = file_churn(tmp_path, max_output_bytes=10)

    assert result.truncated is False
    assert result.counts == {"a.py": 1, "b.py": 1}
    assert git.killed is False


def test_hung_git_is_killed_after_timeout(tmp_path, fake_git):
    git = fake_git(block=True)

    result = file_churn(tmp_path, timeout=0.05)

    assert git.killed is True
    assert result.degraded is True
    assert result.warning == "Git history unavailable: git log timed out after 0.05s"


@pytest.mark.parametrize("raises,expected", [
    (FileNotFoundError("git"), "Git history unavailable: git executable not found"),
    (PermissionError("denied"), "Git history unavailable: denied"),
])
def test_git_launch_errors_degrade(tmp_path, fake_git, raises, expected):
    fake_git(raises=raises)

    result = file_churn(tmp_path, timeout=10)

    assert result.degraded is True
    assert result.warning == expected
    assert result.counts == {}


def test_non_zero_exit_uses_first_stderr_line(tmp_path, fake_git):
    fake_git(stderr=b"fatal: not a git repository\nhint: run git init\n", returncode=128)

    result = file_churn(tmp_path)

    assert result.degraded is True
    assert result.warning == "Git history unavailable: fatal: not a git repository"


def test_non_zero_exit_without_stderr(tmp_path, fake_git):
    fake_git(returncode=2)
    assert file_churn(tmp_path).warning == "Git history unavailable: exit status 2"


def test_missing_directory_degrades_without_running_git(tmp_path, fake_git):
    git = fake_git(b"a.py\n")

    result = file_churn(tmp_path / "nope")

    assert result.degraded is True
    assert "is not a directory" in result.warning
    assert git.calls == []


def test_plain_directory_degrades(tmp_path):
    """A directory outside any repository (or a host without git) degrades."""
    result = file_churn(tmp_path)
    assert result.degraded is True
    assert result.warning.startswith("Git history unavailable")


def test_empty_result_defaults():
    result = ChurnResult()
    assert result.churn("anything") == 0
    assert result.degraded is False
