"""Exception hierarchy shared by samba-exporter and samba-statusd."""


class SambaExporterError(Exception):
    """Base class for samba exporter errors."""
    pass

class ConfigurationError(SambaExporterError):
    """Error in the configuration file or its values."""
    pass

class PipeConnectionError(SambaExporterError, ConnectionError):
    """A named pipe could not be opened or the peer went away."""
    pass

class ResponseTimeoutError(SambaExporterError, TimeoutError):
    """No complete response arrived before the deadline."""
    pass

class ProtocolError(SambaExporterError):
    """Bytes or messages on a pipe do not follow the pipe protocol."""
    pass

class MalformedFrameError(ProtocolError):
    """Bytes read from a pipe are not a valid frame."""
    pass

class FrameTooLargeError(ProtocolError):
    """A message does not fit into a single frame."""
    pass

class MalformedRequestError(ProtocolError):
    """A request message did not match the request schema."""
    pass

class UnexpectedResponseError(ProtocolError):
    """A response message did not match the response schema."""
    pass

class StatusCommandError(SambaExporterError):
    """The status command failed inside samba-statusd."""
    pass
