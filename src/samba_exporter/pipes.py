"""
Named pipe handling.

A ``PipeHandler`` is one direction of the channel between samba-exporter and
samba-statusd. The protocol layer only talks to this interface, so tests can
swap the FIFO files for an in-memory byte channel.
"""

import errno
import grp
import os
import select
import stat
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from samba_exporter.exceptions import PipeConnectionError
from samba_exporter.logger import VerboseLogger

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class PipeMode(Enum):
    """Which end of a pipe a handler owns."""
    READ = "read"
    WRITE = "write"


class PipeHandler(ABC):
    """One direction of a byte channel with explicit blocking semantics."""

    @abstractmethod
    def open(self) -> None:
        """Open the pipe, raising PipeConnectionError if that is not possible."""

    @abstractmethod
    def close(self) -> None:
        """Close the pipe. Closing a closed pipe does nothing."""

    @abstractmethod
    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        """Read up to ``size`` bytes.

        Blocks until at least one byte is available. Raises TimeoutError if
        ``timeout`` seconds pass first; ``None`` waits forever and ``0`` only
        polls. Returns ``b""`` when the stream has ended.
        """

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all of ``data``."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the pipe is currently open."""

    def __enter__(self) -> 'PipeHandler':
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class NamedPipeHandler(PipeHandler):
    """PipeHandler on top of a FIFO file.

    The reading end is opened read-write. Holding a write descriptor
    ourselves means the reader never sees end of stream while no peer is
    attached, it just waits. The writing end is opened write-only and
    non-blocking, which fails with ENXIO right away when nobody reads the
    pipe, so an absent peer is reported as PipeConnectionError instead of
    hanging in open().
    """

    def __init__(
        self,
        path: Union[str, Path],
        mode: PipeMode,
        write_timeout: Optional[float] = None
    ):
        self.path = Path(path)
        self.mode = mode
        self.write_timeout = write_timeout
        self._fd: Optional[int] = None

    def __repr__(self) -> str:
        return f"NamedPipeHandler({str(self.path)!r}, {self.mode.value})"

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def open(self) -> None:
        if self._fd is not None:
            return

        try:
            if not stat.S_ISFIFO(os.stat(self.path).st_mode):
                raise PipeConnectionError(f"{self.path} is not a named pipe")
        except FileNotFoundError:
            raise PipeConnectionError(f"Pipe {self.path} does not exist")
        except OSError as e:
            raise PipeConnectionError(f"Can not access pipe {self.path}: {e}")

        flags = os.O_NONBLOCK
        flags |= os.O_RDWR if self.mode == PipeMode.READ else os.O_WRONLY
        try:
            self._fd = os.open(self.path, flags)
        except OSError as e:
            if e.errno == errno.ENXIO:
                raise PipeConnectionError(f"No process is reading from pipe {self.path}")
            raise PipeConnectionError(f"Can not open pipe {self.path}: {e}")

    def close(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        finally:
            self._fd = None

    def _require_open(self) -> int:
        if self._fd is None:
            raise PipeConnectionError(f"Pipe {self.path} is not open")
        return self._fd

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        fd = self._require_open()
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            readable, _, _ = select.select([fd], [], [], self._remaining(deadline))
            if not readable:
                raise TimeoutError(f"No data on pipe {self.path} within {timeout} seconds")
            try:
                return os.read(fd, size)
            except BlockingIOError:
                # Another reader was faster, wait again
                continue
            except OSError as e:
                raise PipeConnectionError(f"Failed to read from pipe {self.path}: {e}")

    def write(self, data: bytes) -> None:
        fd = self._require_open()
        deadline = None if self.write_timeout is None else time.monotonic() + self.write_timeout
        view = memoryview(data)

        while view:
            _, writable, _ = select.select([], [fd], [], self._remaining(deadline))
            if not writable:
                raise TimeoutError(
                    f"Pipe {self.path} not drained within {self.write_timeout} seconds, "
                    f"{len(view)} bytes unsent"
                )
            try:
                written = os.write(fd, view)
            except BlockingIOError:
                continue
            except BrokenPipeError:
                raise PipeConnectionError(f"Reader of pipe {self.path} went away")
            except OSError as e:
                raise PipeConnectionError(f"Failed to write to pipe {self.path}: {e}")
            view = view[written:]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def create_fifo(
    path: Union[str, Path],
    mode: int,
    group: Optional[str],
    logger: VerboseLogger
) -> Path:
    """Make sure a FIFO exists at path with the given mode and group owner.

    Raises PipeConnectionError if a non-FIFO file is in the way or the FIFO
    can not be created.
    """
    path = Path(path)

    if path.exists() and not stat.S_ISFIFO(path.stat().st_mode):
        raise PipeConnectionError(f"{path} exists but is not a named pipe")

    try:
        if not path.exists():
            logger.info(f"Creating pipe {path}")
            os.mkfifo(path, mode)
        # mkfifo honours the umask, set the bits explicitly
        os.chmod(path, mode)
    except OSError as e:
        raise PipeConnectionError(f"Can not create pipe {path}: {e}")

    if group:
        try:
            gid = grp.getgrnam(group).gr_gid
            os.chown(path, -1, gid)
            logger.verbose(f"Set group of {path} to {group} (gid={gid})")
        except KeyError:
            logger.warning(f"Group {group} does not exist, keeping group of {path}")
        except OSError as e:
            logger.warning(f"Failed to set group of {path} to {group}: {e}")

    return path
