"""Advisory locks that keep a host serial port owned by one process.

Two layers are used: a UUCP lock file in /var/lock (honored by minicom,
picocom, ModemManager and friends) and flock/TIOCEXCL on the open fd."""

import contextlib
import fcntl
import logging
import os
import termios
from pathlib import Path
from typing import Literal

import typeguard

from iot_serial import _exceptions

SharingType = Literal["oblivious", "polite", "exclusive"]

LOCK_DIR = Path("/var/lock")
CLAIM_ATTEMPTS = 10

# flock operation per sharing mode; "oblivious" takes no lock at all
FLOCK_OPS = {"polite": fcntl.LOCK_SH, "exclusive": fcntl.LOCK_EX}

log = logging.getLogger("iot_serial.locking")


def lock_path_for(port: str) -> Path:
    """UUCP-style lock file path, e.g. /dev/ttyUSB0 -> LCK..ttyUSB0"""

    *_, parent, name = ("", "", *Path(port).parts)
    if name.isdigit() and parent.startswith("pt"):
        name = f"{parent}.{name}"
    return LOCK_DIR / f"LCK..{name}"


class PortLockFile:
    """One UUCP lock file; the content is the owner's pid, right-aligned"""

    def __init__(self, port: str):
        self.port = port
        self.path = lock_path_for(port)
        self.held = False

    def __repr__(self) -> str:
        return f"PortLockFile({str(self.path)!r}, held={self.held})"

    def claim(self) -> None:
        """Takes the lock or raises SerialOpenBusy"""

        for _attempt in range(CLAIM_ATTEMPTS):
            if self._try_claim():
                return
        raise _exceptions.SerialOpenBusy("Lock file keeps changing", self.port)

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        owner = lock_owner(self.path)
        if owner != os.getpid():
            if owner is not None:
                log.warning("%s now belongs to pid %d", self.path, owner)
            return
        try:
            self.path.unlink()
            log.debug("Unlocked %s", self.path)
        except OSError:
            log.warning("Can't unlink %s", self.path, exc_info=True)

    def _try_claim(self) -> bool:
        if not self.path.parent.is_dir():
            log.debug("%s missing, not locking", self.path.parent)
            return True

        owner = lock_owner(self.path)
        if owner == os.getpid():
            log.debug("%s is already ours", self.path)
            return True
        if owner is not None:
            message = f"In use by pid {owner} (see {self.path})"
            raise _exceptions.SerialOpenBusy(message, self.port)

        try:
            with self.path.open("xt") as lock_file:
                lock_file.write(f"{os.getpid():>10d}\n")
        except FileExistsError:
            log.debug("Someone else created %s first", self.path)
            return False
        except OSError:
            log.warning("Can't write %s", self.path, exc_info=True)
            return True

        self.held = True
        log.debug("Locked %s", self.path)
        return True


@contextlib.contextmanager
@typeguard.typechecked
def holding_lock_file(port: str, sharing: SharingType):
    """Holds the port's lock file (unless oblivious); yields its path"""

    lock_file = PortLockFile(port)
    if sharing != "oblivious":
        lock_file.claim()
    try:
        yield lock_file.path
    finally:
        lock_file.release()


@contextlib.contextmanager
@typeguard.typechecked
def holding_fd_lock(port: str, fd: int, sharing: SharingType):
    """Holds flock (and TIOCEXCL when exclusive) on an open port"""

    flocked = excluded = False
    if op := FLOCK_OPS.get(sharing):
        try:
            fcntl.flock(fd, op | fcntl.LOCK_NB)
            flocked = True
            log.debug("flock(%s) on %s", sharing, port)
        except BlockingIOError as exc:
            message = "Another process has it open (flock)"
            raise _exceptions.SerialOpenBusy(message, port) from exc
        except OSError:
            log.warning("flock unsupported on %s", port, exc_info=True)

    if sharing == "exclusive":
        try:
            fcntl.ioctl(fd, termios.TIOCEXCL)
            excluded = True
        except OSError:
            log.warning("TIOCEXCL unsupported on %s", port, exc_info=True)

    try:
        yield
    finally:
        if excluded:
            with contextlib.suppress(OSError):
                fcntl.ioctl(fd, termios.TIOCNXCL)
        if flocked:
            with contextlib.suppress(OSError):
                fcntl.flock(fd, fcntl.LOCK_UN)


def lock_owner(lock_path: Path) -> int | None:
    """Live pid holding 'lock_path'; stale or garbled files are removed"""

    try:
        text = lock_path.read_text()[:128]
    except FileNotFoundError:
        return None
    except OSError:
        log.warning("Can't read %s", lock_path, exc_info=True)
        return None

    try:
        owner = int(text.strip())
        os.kill(owner, 0)
    except PermissionError:
        return owner  # alive, but another user's process
    except (ProcessLookupError, ValueError):
        log.debug("Clearing stale %s (%r)", lock_path, text.strip())
        try:
            lock_path.unlink(missing_ok=True)
        except OSError:
            log.warning("Can't remove %s", lock_path, exc_info=True)
        return None
    return owner
