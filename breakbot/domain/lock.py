import os
from pathlib import Path
from typing import Optional


def _pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False


def _read_pid(path: Path) -> int:
    try:
        txt = path.read_text(encoding="utf-8").strip()
        return int(txt) if txt else -1
    except (OSError, ValueError):
        return -1


class InstanceLock:
    """
    PID lock file, one per bot id.

    Two engines sharing an owner tag would manage each other's positions,
    so a second process for the same bot id refuses to start.
    A lock left behind by a dead PID is taken over.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.fd: Optional[int] = None

    def _create(self) -> None:
        self.fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(self.fd, str(os.getpid()).encode("utf-8"))
        os.fsync(self.fd)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create()
            return
        except FileExistsError:
            pass

        pid = _read_pid(self.path)
        if pid > 0 and _pid_is_alive(pid):
            raise RuntimeError(f"Active lock: {self.path}. PID {pid} is still alive.")

        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

        try:
            self._create()
        except FileExistsError:
            raise RuntimeError(f"Active lock: {self.path}. Another process won the race.")

    def release(self) -> None:
        try:
            if self.fd is not None:
                os.close(self.fd)
        finally:
            self.fd = None
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
