import threading
from typing import Optional

import pytest
import yaml

from samba_exporter import sample_data
from samba_exporter.config import ProgramConfig, ProgramSource
from samba_exporter.exceptions import PipeConnectionError
from samba_exporter.logger import null_logger
from samba_exporter.pipes import PipeHandler


class MemoryChannel:
    """Byte buffer shared by the two ends of an in-memory pipe."""

    def __init__(self):
        self.buffer = bytearray()
        self.condition = threading.Condition()

    def pending(self) -> bytes:
        with self.condition:
            return bytes(self.buffer)


class MemoryPipe(PipeHandler):
    """PipeHandler double working on a MemoryChannel.

    With absent=True open() fails like a FIFO without a peer.
    """

    def __init__(self, channel: MemoryChannel, absent: bool = False):
        self.channel = channel
        self.absent = absent
        self._open = False
        self.open_count = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if self.absent:
            raise PipeConnectionError("No process is reading from the memory pipe")
        self._open = True
        self.open_count += 1

    def close(self) -> None:
        self._open = False

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        if not self._open:
            raise PipeConnectionError("Memory pipe is not open")
        with self.channel.condition:
            if not self.channel.condition.wait_for(lambda: len(self.channel.buffer) > 0, timeout):
                raise TimeoutError("No data on memory pipe")
            chunk = bytes(self.channel.buffer[:size])
            del self.channel.buffer[:size]
            return chunk

    def write(self, data: bytes) -> None:
        if not self._open:
            raise PipeConnectionError("Memory pipe is not open")
        with self.channel.condition:
            self.channel.buffer.extend(data)
            self.channel.condition.notify_all()


@pytest.fixture
def logger():
    return null_logger()


@pytest.fixture
def request_channel():
    return MemoryChannel()


@pytest.fixture
def response_channel():
    return MemoryChannel()


@pytest.fixture
def write_config(tmp_path, monkeypatch):
    """Write a YAML config file and return a loaded ProgramConfig for it."""
    monkeypatch.delenv('INVOCATION_ID', raising=False)

    def _write(settings: dict, program_name: str = 'samba-exporter') -> ProgramConfig:
        path = tmp_path / 'samba_exporter.yml'
        path.write_text(yaml.safe_dump(settings))
        config = ProgramConfig(ProgramSource(program_name, path))
        config.load()
        return config

    return _write


@pytest.fixture
def default_config(monkeypatch):
    monkeypatch.delenv('INVOCATION_ID', raising=False)
    return ProgramConfig(ProgramSource('samba-exporter'))


@pytest.fixture
def sample_payload():
    return {
        'locks': sample_data.LOCK_DATA,
        'shares': sample_data.SHARE_DATA,
        'processes': sample_data.PROCESS_DATA,
        'ps': [dict(entry) for entry in sample_data.PS_DATA]
    }
