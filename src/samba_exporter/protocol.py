"""
Request/response protocol between samba-exporter and samba-statusd.

The exporter writes one request frame into the request pipe and waits for
one response frame on the response pipe. Frames are self delimiting:

    +--------+----------------+------------------------+
    | 'SMBX' | length (u32 BE)| JSON body (length bytes)|
    +--------+----------------+------------------------+

Request body:  {"id": "<hex>", "request": "all|locks|shares|processes|ps"}
Response body: {"id": "<hex>", "success": true, "payload": {...}, "error": null}

The payload holds the raw smbstatus text per table and the list of process
records for "ps". Every request carries a fresh id and the requester drops
responses carrying another id, so an answer that arrives after its requester
gave up can not be mistaken for the answer to a later request.
"""

import json
import struct
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from samba_exporter.exceptions import (
    FrameTooLargeError, MalformedFrameError, MalformedRequestError, PipeConnectionError,
    ResponseTimeoutError, UnexpectedResponseError
)
from samba_exporter.logger import VerboseLogger
from samba_exporter.pipes import PipeHandler

FRAME_MAGIC = b'SMBX'
FRAME_HEADER = struct.Struct('!4sI')
MAX_FRAME_SIZE = 64 * 1024 * 1024
READ_CHUNK_SIZE = 65536

TEXT_DATASETS = ('locks', 'shares', 'processes')
PS_DATASET = 'ps'

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Messages
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RequestType(Enum):
    """Datasets samba-statusd can be asked for."""
    LOCKS = "locks"
    SHARES = "shares"
    PROCESSES = "processes"
    PS = "ps"
    ALL = "all"

    @property
    def datasets(self) -> Tuple[str, ...]:
        """Payload keys a successful response to this request carries."""
        if self == RequestType.ALL:
            return TEXT_DATASETS + (PS_DATASET,)
        return (self.value,)


@dataclass(frozen=True)
class StatusRequest:
    """A request for one or all datasets."""
    request_type: RequestType
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_message(self) -> Dict[str, Any]:
        return {'id': self.request_id, 'request': self.request_type.value}

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> 'StatusRequest':
        request_id = message.get('id')
        if not isinstance(request_id, str) or not request_id:
            raise MalformedRequestError(f"Request without valid id: {message!r}")
        try:
            request_type = RequestType(message.get('request'))
        except ValueError:
            raise MalformedRequestError(f"Unknown request type {message.get('request')!r}")
        return cls(request_type=request_type, request_id=request_id)


@dataclass
class StatusResponse:
    """The answer of samba-statusd to one StatusRequest."""
    request_id: str
    success: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failed(cls, request_id: str, error: str) -> 'StatusResponse':
        return cls(request_id=request_id, success=False, error=error)

    def to_message(self) -> Dict[str, Any]:
        return {
            'id': self.request_id,
            'success': self.success,
            'payload': self.payload,
            'error': self.error
        }

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> 'StatusResponse':
        """Validate a decoded response body."""
        request_id = message.get('id')
        success = message.get('success')
        payload = message.get('payload')
        if payload is None:
            payload = {}
        error = message.get('error')

        if not isinstance(request_id, str):
            raise UnexpectedResponseError(f"Response without id: {sorted(message)}")
        if not isinstance(success, bool):
            raise UnexpectedResponseError(f"Response {request_id} without success flag")
        if not isinstance(payload, dict):
            raise UnexpectedResponseError(f"Response {request_id} payload is not an object")
        if error is not None and not isinstance(error, str):
            raise UnexpectedResponseError(f"Response {request_id} error is not a string")

        for key, value in payload.items():
            if key in TEXT_DATASETS:
                if not isinstance(value, str):
                    raise UnexpectedResponseError(f"Dataset '{key}' in response {request_id} is not text")
            elif key == PS_DATASET:
                if not isinstance(value, list):
                    raise UnexpectedResponseError(f"Dataset '{key}' in response {request_id} is not a list")
            else:
                raise UnexpectedResponseError(f"Unknown dataset '{key}' in response {request_id}")

        return cls(request_id=request_id, success=success, payload=payload, error=error)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Framing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class FrameTimeoutError(ResponseTimeoutError):
    """Deadline passed while reading a frame."""

    def __init__(self, message: str, received_bytes: int = 0):
        super().__init__(message)
        self.received_bytes = received_bytes


class FrameMagicError(MalformedFrameError):
    """A frame header without the frame magic, keeps the header bytes read."""

    def __init__(self, message: str, header: bytes):
        super().__init__(message)
        self.header = header


class PendingReader:
    """Reads from a PipeHandler with a pushback buffer in front of it."""

    def __init__(self, pipe: PipeHandler):
        self.pipe = pipe
        self._pending = b''

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        if self._pending:
            chunk, self._pending = self._pending[:size], self._pending[size:]
            return chunk
        return self.pipe.read(size, timeout)

    def unread(self, data: bytes) -> None:
        self._pending = data + self._pending


def encode_frame(message: Dict[str, Any]) -> bytes:
    body = json.dumps(message, separators=(',', ':')).encode('utf-8')
    if len(body) > MAX_FRAME_SIZE:
        raise FrameTooLargeError(f"Message of {len(body)} bytes exceeds the frame limit")
    return FRAME_HEADER.pack(FRAME_MAGIC, len(body)) + body


def write_frame(pipe: PipeHandler, message: Dict[str, Any]) -> None:
    """Write one complete frame; small frames go out in one atomic write."""
    pipe.write(encode_frame(message))


def _read_chunk(pipe: PipeHandler, size: int, deadline: Optional[float], received: int) -> bytes:
    remaining = None
    if deadline is not None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FrameTimeoutError(f"Timeout after {received} bytes of frame", received)
    try:
        chunk = pipe.read(size, remaining)
    except TimeoutError as e:
        raise FrameTimeoutError(f"Timeout after {received} bytes of frame: {e}", received) from e
    if not chunk:
        raise PipeConnectionError("Pipe closed in the middle of a frame")
    return chunk


def _read_exact(pipe: PipeHandler, size: int, deadline: Optional[float], already_received: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        buffer.extend(_read_chunk(
            pipe,
            min(size - len(buffer), READ_CHUNK_SIZE),
            deadline,
            already_received + len(buffer)
        ))
    return bytes(buffer)


def read_frame(pipe: PipeHandler, deadline: Optional[float] = None) -> Dict[str, Any]:
    """Read one complete frame and decode its body.

    ``deadline`` is a time.monotonic() value, None waits forever. Raises
    FrameTimeoutError when the deadline passes and MalformedFrameError
    when the bytes are not a valid frame.
    """
    header = _read_exact(pipe, FRAME_HEADER.size, deadline, 0)
    magic, length = FRAME_HEADER.unpack(header)
    if magic != FRAME_MAGIC:
        raise FrameMagicError(f"Bad frame magic {magic!r}", header)
    if length > MAX_FRAME_SIZE:
        raise MalformedFrameError(f"Frame length {length} exceeds the limit of {MAX_FRAME_SIZE}")

    body = _read_exact(pipe, length, deadline, FRAME_HEADER.size)
    try:
        message = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFrameError(f"Frame body is not valid JSON: {e}")
    if not isinstance(message, dict):
        raise MalformedFrameError(f"Frame body is not an object but {type(message).__name__}")
    return message


def skip_to_magic(reader: PendingReader, data: bytes, deadline: Optional[float]) -> int:
    """Drop bytes up to the next frame magic, returns the number of bytes dropped.

    ``data`` holds bytes already taken from the reader. The magic and
    whatever follows it are pushed back, so the next read_frame starts there.
    """
    skipped = 0
    while True:
        index = data.find(FRAME_MAGIC)
        if index >= 0:
            reader.unread(data[index:])
            return skipped + index
        # The tail may hold the start of a magic split across reads
        keep = min(len(data), len(FRAME_MAGIC) - 1)
        skipped += len(data) - keep
        data = data[len(data) - keep:] + _read_chunk(reader, READ_CHUNK_SIZE, deadline, 0)


def discard_pending(pipe: PipeHandler) -> int:
    """Drop whatever is readable right now, returns the number of bytes dropped."""
    dropped = 0
    while True:
        try:
            chunk = pipe.read(READ_CHUNK_SIZE, 0)
        except TimeoutError:
            return dropped
        if not chunk:
            return dropped
        dropped += len(chunk)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Roles
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class PipeRequester:
    """The samba-exporter side: send a request, wait for its response.

    Pipe handles live for one request. They are closed after every exchange,
    so a timed out or garbled exchange never leaves state behind for the
    next one. Requests from several threads are serialized.
    """

    def __init__(
        self,
        request_pipe: PipeHandler,
        response_pipe: PipeHandler,
        logger: VerboseLogger,
        timeout: float
    ):
        self.request_pipe = request_pipe
        self.response_pipe = response_pipe
        self.logger = logger
        self.timeout = timeout
        self._lock = threading.Lock()

    def send(self, request_type: RequestType) -> StatusResponse:
        """Send a request and return the matching response.

        Raises:
            PipeConnectionError: a pipe can not be opened, samba-statusd is not running
            ResponseTimeoutError: no matching response within the timeout
            ProtocolError: the response does not match the protocol
        """
        request = StatusRequest(request_type)
        with self._lock:
            deadline = time.monotonic() + self.timeout
            try:
                # The response pipe has to be open before samba-statusd answers
                self.response_pipe.open()
                dropped = discard_pending(self.response_pipe)
                if dropped:
                    self.logger.warning(f"Dropped {dropped} stale bytes from the response pipe")

                self.request_pipe.open()
                self.logger.verbose(f"Sending {request.request_type.value} request {request.request_id}")
                write_frame(self.request_pipe, request.to_message())
                self.request_pipe.close()

                response = self._wait_for_response(request, deadline)
            except FrameTimeoutError as e:
                raise ResponseTimeoutError(
                    f"No response to {request.request_type.value} request within {self.timeout} seconds "
                    f"({e.received_bytes} bytes received)"
                ) from e
            finally:
                self.request_pipe.close()
                self.response_pipe.close()

        if response.success:
            missing = [name for name in request_type.datasets if name not in response.payload]
            if missing:
                raise UnexpectedResponseError(
                    f"Response {response.request_id} lacks datasets: {', '.join(missing)}"
                )
        return response

    def _wait_for_response(self, request: StatusRequest, deadline: float) -> StatusResponse:
        # The tail of a response its requester gave up on may still arrive
        reader = PendingReader(self.response_pipe)
        while True:
            try:
                message = read_frame(reader, deadline)
            except FrameMagicError as e:
                skipped = skip_to_magic(reader, e.header, deadline)
                self.logger.warning(f"Skipped {skipped} bytes of a stale response")
                continue

            response = StatusResponse.from_message(message)
            if response.request_id == request.request_id:
                self.logger.verbose(f"Got response for request {request.request_id}")
                return response
            self.logger.warning(
                f"Discarding response {response.request_id} while waiting for {request.request_id}"
            )


class PipeResponder:
    """The samba-statusd side: receive requests, send responses.

    The request pipe stays open for the lifetime of the responder, the
    response pipe is opened for each answer since the requester only holds
    its end while it waits.
    """

    def __init__(
        self,
        request_pipe: PipeHandler,
        response_pipe: PipeHandler,
        logger: VerboseLogger
    ):
        self.request_pipe = request_pipe
        self.response_pipe = response_pipe
        self.logger = logger

    def open(self) -> None:
        self.request_pipe.open()

    def close(self) -> None:
        self.request_pipe.close()
        self.response_pipe.close()

    def _resynchronize(self) -> None:
        """Throw away a partial or broken frame and reopen the request pipe."""
        dropped = discard_pending(self.request_pipe)
        self.request_pipe.close()
        self.request_pipe.open()
        self.logger.warning(f"Request pipe resynchronized, {dropped} bytes dropped")

    def receive(self, timeout: Optional[float] = None) -> Optional[StatusRequest]:
        """Wait for the next request, None if there was none in time or it was broken."""
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            message = read_frame(self.request_pipe, deadline)
        except FrameTimeoutError as e:
            if e.received_bytes:
                self.logger.error(f"Incomplete request frame: {e}")
                self._resynchronize()
            return None
        except MalformedFrameError as e:
            self.logger.error_with_addition(e, "while reading a request frame")
            self._resynchronize()
            return None

        try:
            return StatusRequest.from_message(message)
        except MalformedRequestError as e:
            self.logger.error_with_addition(e, "while decoding a request")
            return None

    def reply(self, response: StatusResponse) -> bool:
        """Send a response, False if the requester is no longer listening.

        A response too large for one frame is replaced by a failed response,
        so the requester learns about it instead of running into its timeout.
        """
        try:
            frame = encode_frame(response.to_message())
        except FrameTooLargeError as e:
            self.logger.error_with_addition(e, f"while encoding response {response.request_id}")
            frame = encode_frame(
                StatusResponse.failed(response.request_id, "Response exceeds the frame limit").to_message()
            )

        try:
            self.response_pipe.open()
            self.response_pipe.write(frame)
            self.logger.verbose(f"Sent response for request {response.request_id}")
            return True
        except (PipeConnectionError, TimeoutError) as e:
            self.logger.error_with_addition(e, f"while sending response {response.request_id}")
            return False
        finally:
            self.response_pipe.close()
