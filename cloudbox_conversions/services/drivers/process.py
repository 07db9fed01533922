"""
Scoped handle around one external binary.

A ManagedProcess is always reaped when its block exits, whether the driver
finished, raised, or the pool is shutting down. While alive it sits in a
process-wide registry so that `kill_all()` can terminate stragglers after
the shutdown grace period.
"""
import logging
import subprocess
import threading
from collections import deque
from typing import Iterable, Iterator, List, Optional, Sequence

from cloudbox_conversions.core.errors import ProcessFailure, ConversionTimeout

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 40
BINARY_NOT_FOUND = 127

# ─── Registry ────────────────────────────────────────────────────────────────
_registry_lock = threading.Lock()
_registry: "set[ManagedProcess]" = set()

def running_processes() -> List["ManagedProcess"]:
    with _registry_lock:
        return list(_registry)

def kill_all(thread_ids: Optional[Iterable[int]] = None) -> int:
    """
    Kill and reap registered processes, optionally only those started by the
    given threads. Returns how many were still running.
    """
    owners = set(thread_ids) if thread_ids is not None else None
    killed = 0
    for proc in running_processes():
        if owners is not None and proc.owner_thread not in owners:
            continue
        if proc.kill():
            killed += 1
    if killed:
        logger.warning(f"Killed {killed} conversion process(es) still running at shutdown.")
    return killed

class ManagedProcess:
    def __init__(self, args: Sequence[str], label: Optional[str] = None,
                 timeout: Optional[float] = None, capture_stdout: bool = True):
        self.args = [str(a) for a in args]
        self.label = label or self.args[0]
        self.timeout = timeout
        self.capture_stdout = capture_stdout
        self.popen: Optional[subprocess.Popen] = None
        self.timed_out = False
        self.owner_thread = threading.get_ident()
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._timer: Optional[threading.Timer] = None

    def __enter__(self) -> "ManagedProcess":
        try:
            self.popen = subprocess.Popen(
                self.args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if self.capture_stdout else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise ProcessFailure(self.label, BINARY_NOT_FOUND, f"{self.args[0]} not found") from e
        except PermissionError as e:
            raise ProcessFailure(self.label, 126, str(e)) from e

        with _registry_lock:
            _registry.add(self)

        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()
        if self.timeout:
            self._timer = threading.Timer(self.timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()
        logger.debug(f"Started {self.label} (pid {self.popen.pid})")
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._timer:
            self._timer.cancel()
        self.kill()
        if self.popen and self.popen.stdout:
            self.popen.stdout.close()
        if self._stderr_thread:
            self._stderr_thread.join(timeout=5)
        with _registry_lock:
            _registry.discard(self)
        return False

    # ─── Output ──────────────────────────────────────────────────────────────

    def _drain_stderr(self):
        for line in self.popen.stderr:
            self._stderr_tail.append(line)
        self.popen.stderr.close()

    def _on_timeout(self):
        if self.popen.poll() is None:
            self.timed_out = True
            logger.warning(f"{self.label} exceeded {self.timeout:g}s; killing pid {self.popen.pid}")
            self.popen.kill()

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)

    def stdout_lines(self) -> Iterator[str]:
        for line in self.popen.stdout:
            yield line.rstrip("\n")

    # ─── Completion ──────────────────────────────────────────────────────────

    def wait(self) -> int:
        """Wait for exit; raises ConversionTimeout if the deadline killed it."""
        code = self.popen.wait()
        if self._stderr_thread:
            self._stderr_thread.join(timeout=5)
        if self.timed_out:
            raise ConversionTimeout(self.label, self.timeout)
        return code

    def check(self) -> int:
        """wait(), then raise ProcessFailure on a non-zero exit code."""
        code = self.wait()
        if code != 0:
            raise ProcessFailure(self.label, code, self.stderr_tail)
        return code

    def kill(self) -> bool:
        """Kill if still running and always reap. True if a live process was killed."""
        if not self.popen:
            return False
        killed = False
        if self.popen.poll() is None:
            self.popen.kill()
            killed = True
        self.popen.wait()
        return killed

def run(args: Sequence[str], label: Optional[str] = None, timeout: Optional[float] = None) -> str:
    """Run a binary to completion and return its stdout."""
    with ManagedProcess(args, label=label, timeout=timeout) as proc:
        output = proc.popen.stdout.read()
        proc.check()
    return output
