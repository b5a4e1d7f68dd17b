"""Single-instance execution guard for named jobs.

A job marker is a file ``<lock_dir>/<job>.pid`` holding the decimal PID of
the process that owns the job. The marker is published with ``os.link``
from a private temp file, which fails atomically when a marker already
exists, so two concurrent starts cannot both win.

Stale markers are removed only while holding an exclusive ``flock`` on a
sibling guard file ``.<job>.pid.lock``, after re-reading the marker under
that lock. The guard file is never deleted.
"""

import atexit
import fcntl
import os
import signal
import tempfile
import threading
from pathlib import Path

from .errors import MarkerIOError
from .utils import debug, log, sanitize_name, warn

# Attempts to publish a marker before concluding another process holds it.
MAX_ACQUIRE_ATTEMPTS = 3

_CLEANUP_SIGNALS = [s for s in ("SIGTERM", "SIGHUP") if hasattr(signal, s)]


def marker_path(job_name: str, lock_dir: str | os.PathLike | None = None) -> Path:
    """:return: Marker file path for job_name inside lock_dir"""
    directory = Path(lock_dir) if lock_dir else Path(tempfile.gettempdir())
    return directory / f"{sanitize_name(job_name)}.pid"


def pid_is_alive(pid: int) -> bool:
    """Check whether pid maps to a running process."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


def read_marker(path: Path) -> int:
    """Read the PID stored in a marker file.

    :raises FileNotFoundError: If the marker vanished since it was seen
    :raises MarkerIOError: If the marker is unreadable or does not hold a PID
    """
    try:
        content = path.read_text()
    except FileNotFoundError:
        raise
    except OSError as e:
        raise MarkerIOError(f"Cannot read process file ({path}): {e}", str(path)) from e

    content = content.strip()
    if not content.isdigit() or int(content) <= 0:
        raise MarkerIOError(
            f"Process file ({path}) does not contain a process id: '{content[:20]}'",
            str(path),
        )
    return int(content)


def _raise_exit(signum, frame):
    raise SystemExit(128 + signum)


def _install_signal_cleanup() -> None:
    """Turn SIGTERM/SIGHUP into SystemExit so atexit handlers run."""
    if threading.current_thread() is not threading.main_thread():
        return
    for name in _CLEANUP_SIGNALS:
        signum = getattr(signal, name)
        if signal.getsignal(signum) is signal.SIG_DFL:
            signal.signal(signum, _raise_exit)


class ProcessLock:
    """Scoped guard ensuring a named job runs at most once per host.

    Usage::

        with ProcessLock("promote-web") as lock:
            if lock.already_running:
                return
            ...

    :param job_name: Job name; sanitized to a safe filename
    :param lock_dir: Directory for marker files (default: system temp dir)
    """

    def __init__(self, job_name: str, lock_dir: str | os.PathLike | None = None):
        self.job_name = job_name
        self.path = marker_path(job_name, lock_dir)
        self.pid = os.getpid()
        self.already_running: bool | None = None
        self.held = False

    def _publish(self) -> bool:
        """Atomically create the marker. :return: False if one already exists"""
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.stem}.", suffix=".tmp", dir=self.path.parent
            )
        except OSError as e:
            raise MarkerIOError(
                f"Cannot write process file ({self.path}): {e}", str(self.path)
            ) from e

        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(self.pid))
            os.link(tmp_name, self.path)
            return True
        except FileExistsError:
            return False
        except OSError as e:
            raise MarkerIOError(
                f"Cannot write process file ({self.path}): {e}", str(self.path)
            ) from e
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass

    @property
    def guard_path(self) -> Path:
        return self.path.with_name(f".{self.path.name}.lock")

    def _remove_stale(self, owner: int) -> None:
        """Delete the marker if it still names the dead process owner.

        Runs under an exclusive flock so the marker cannot be replaced by
        a live one between the re-read and the unlink.
        """
        try:
            fd = os.open(self.guard_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise MarkerIOError(
                f"Cannot open guard file ({self.guard_path}): {e}", str(self.path)
            ) from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                current = read_marker(self.path)
            except FileNotFoundError:
                return
            if current != owner:
                debug(f"Marker '{self.path}' now held by pid {current}, not removing")
                return

            warn(f"Removing stale marker '{self.path}' left by pid {owner}")
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise MarkerIOError(
                    f"Cannot remove stale process file ({self.path}): {e}",
                    str(self.path),
                ) from e
        finally:
            os.close(fd)

    def acquire(self) -> bool:
        """Take the guard if no live process holds it.

        :return: True if another live process already runs this job
        :raises MarkerIOError: If an existing marker cannot be read or a new
            one cannot be written
        """
        if self.held:
            return False

        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            if self._publish():
                self.held = True
                self.already_running = False
                atexit.register(self.release)
                _install_signal_cleanup()
                debug(f"Acquired job marker '{self.path}' (pid {self.pid})")
                return False

            try:
                owner = read_marker(self.path)
            except FileNotFoundError:
                continue

            if pid_is_alive(owner):
                log(f"Job '{self.job_name}' is already running (pid {owner})")
                self.already_running = True
                return True

            self._remove_stale(owner)

        # Lost every race: another process published between our attempts
        self.already_running = True
        return True

    def release(self) -> None:
        """Remove the marker if this process still owns it."""
        if not self.held:
            return
        self.held = False
        atexit.unregister(self.release)
        try:
            if read_marker(self.path) == self.pid:
                self.path.unlink()
                debug(f"Released job marker '{self.path}'")
        except FileNotFoundError:
            pass
        except MarkerIOError as e:
            warn(f"Not removing job marker: {e}")

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def acquire(job_name: str, lock_dir: str | os.PathLike | None = None) -> bool:
    """Take the guard for job_name until the process exits.

    :return: True if the job is already running; the caller must not proceed
    """
    return ProcessLock(job_name, lock_dir).acquire()
