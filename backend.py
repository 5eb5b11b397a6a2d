"""
Backend abstraction for file and command operations.
Review tools only read the workspace; commands run through run_command and
the streaming variant used by the sandbox executor.
"""

import logging
import os
import pathlib
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# on_output(chunk, is_stderr)
OutputCallback = Callable[[str, bool], None]

_STOP_POLL_SECS = 0.1


@dataclass
class CommandResult:
    """Outcome of a streamed command"""
    stdout: str
    stderr: str
    returncode: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def signal_name(self) -> Optional[str]:
        """Name of the signal that ended the process, if it was killed."""
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return None


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    @abstractmethod
    def run_command_stream(
        self,
        command: str,
        cwd: str,
        timeout: float = 30,
        on_output: Optional[OutputCallback] = None,
        stop: Optional[threading.Event] = None,
    ) -> CommandResult:
        """Run a command, reporting output incrementally through on_output.

        Setting ``stop`` kills the process group and returns early.
        """

    @abstractmethod
    def search(self, pattern: str, path: str, include: Optional[str] = None,
               cwd: str = ".") -> str:
        """Search for a regex pattern. Returns matching lines."""

    @abstractmethod
    def glob_find(self, pattern: str, cwd: str) -> List[str]:
        """Find files matching a glob pattern. Returns relative paths."""

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(self.working_directory, path))


# ============================================================
# Local Backend
# ============================================================

# Cache ripgrep availability
_HAS_RIPGREP: Optional[bool] = None


def _has_ripgrep() -> bool:
    global _HAS_RIPGREP
    if _HAS_RIPGREP is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _HAS_RIPGREP = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _HAS_RIPGREP = False
    return _HAS_RIPGREP


class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full_cwd(self, cwd: str) -> str:
        if not cwd or cwd == ".":
            return self._working_directory
        full = self.resolve_path(cwd)
        self._ensure_under_working(full)
        return full

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory"})
            elif os.path.isfile(child):
                _, ext = os.path.splitext(name)
                entries.append({
                    "name": name, "type": "file",
                    "ext": ext.lstrip("."),
                    "size": os.path.getsize(child),
                })
        return entries

    def read_file(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def file_exists(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.exists(full)

    def is_dir(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.isdir(full)

    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        proc = subprocess.Popen(
            command, shell=True, cwd=self._full_cwd(cwd),
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            preexec_fn=os.setsid,  # create process group for clean kill
        )
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        return stdout or "", stderr or "", proc.returncode

    def run_command_stream(
        self,
        command: str,
        cwd: str,
        timeout: float = 30,
        on_output: Optional[OutputCallback] = None,
        stop: Optional[threading.Event] = None,
    ) -> CommandResult:
        started = time.monotonic()
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=self._full_cwd(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            preexec_fn=os.setsid,
        )

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def _reader(pipe, is_stderr: bool):
            try:
                for line in iter(pipe.readline, ""):
                    (stderr_lines if is_stderr else stdout_lines).append(line)
                    if on_output:
                        try:
                            on_output(line, is_stderr)
                        except Exception:
                            logger.debug("on_output callback failed", exc_info=True)
            except (OSError, ValueError):
                # Pipe closed underneath us after a kill
                pass

        t_out = threading.Thread(target=_reader, args=(proc.stdout, False), daemon=True)
        t_err = threading.Thread(target=_reader, args=(proc.stderr, True), daemon=True)
        t_out.start()
        t_err.start()

        timed_out = cancelled = False
        deadline = started + timeout
        rc: Optional[int] = None
        try:
            while True:
                try:
                    rc = proc.wait(timeout=_STOP_POLL_SECS)
                    break
                except subprocess.TimeoutExpired:
                    cancelled = stop is not None and stop.is_set()
                    timed_out = not cancelled and time.monotonic() >= deadline
                    if cancelled or timed_out:
                        break
            if rc is None:
                self._kill_process(proc)
                try:
                    rc = proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    rc = None
        finally:
            t_out.join(timeout=2.0)
            t_err.join(timeout=2.0)
            for pipe in (proc.stdout, proc.stderr):
                try:
                    if pipe:
                        pipe.close()
                except OSError:
                    pass

        return CommandResult(
            stdout="".join(stdout_lines),
            stderr="".join(stderr_lines),
            returncode=rc,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def search(self, pattern: str, path: str, include: Optional[str] = None,
               cwd: str = ".") -> str:
        search_path = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(search_path)

        if _has_ripgrep():
            cmd = ["rg", "--line-number", "--no-heading", "--color=never", "-m", "100"]
            if include:
                cmd.extend(["--glob", include])
            cmd.extend(["--", pattern, search_path])
        else:
            cmd = ["grep", "-rn", "--color=never"]
            if include:
                cmd.extend(["--include", include])
            cmd.extend(["-e", pattern, search_path])

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=15, cwd=self._full_cwd(cwd))
        return result.stdout.strip() if result.stdout else ""

    def glob_find(self, pattern: str, cwd: str) -> List[str]:
        base = pathlib.Path(self._full_cwd(cwd))
        skip = {"__pycache__", "node_modules", ".git", "venv", ".venv"}
        matches = []
        for p in sorted(base.glob(pattern)):
            rel = str(p.relative_to(base))
            parts = set(pathlib.PurePath(rel).parts)
            if not parts & skip:
                matches.append(rel)
        return matches
