"""
samba-statusd: the privileged half of the exporter.

Waits for requests on the request pipe, runs ``smbstatus`` (and lists the
samba server processes) for every request and writes the raw output back to
the response pipe. Requests are handled strictly one after the other.
"""

import shlex
import subprocess
import sys
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from samba_exporter import sample_data
from samba_exporter.config import ProgramConfig, ProgramSource
from samba_exporter.exceptions import (
    ConfigurationError, PipeConnectionError, StatusCommandError
)
from samba_exporter.logger import ProgramLogger, VerboseLogger
from samba_exporter.pipes import NamedPipeHandler, PipeMode, create_fifo
from samba_exporter.protocol import (
    PS_DATASET, PipeResponder, StatusRequest, StatusResponse
)
from samba_exporter.service import (
    build_arg_parser, install_signal_handlers, notify_systemd
)
from samba_exporter.smbstatus import PsRecord

# smbstatus arguments per table, '-n' keeps user and group ids numeric
SMBSTATUS_ARGUMENTS = {
    'locks': ('-L', '-n'),
    'shares': ('-S', '-n'),
    'processes': ('-p', '-n'),
}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Command Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CommandResult:
    """Result of a command execution."""
    output: Optional[str]
    success: bool
    error_message: Optional[str] = None
    execution_time: float = 0


class CommandExecutor:
    """Runs a command and captures its output."""

    def __init__(self, timeout: float, logger: VerboseLogger):
        self.timeout = timeout
        self.logger = logger

    def execute(self, command: Sequence[str]) -> CommandResult:
        """Execute command without a shell."""
        self.logger.verbose(f"Executing command: {' '.join(command)}")
        start_time = ProgramConfig.now_utc().timestamp()

        try:
            process = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                # smbstatus prints file names as stored, they need not be UTF-8
                errors='replace',
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                output=None,
                success=False,
                error_message=f"'{' '.join(command)}' timed out after {self.timeout} seconds",
                execution_time=ProgramConfig.now_utc().timestamp() - start_time
            )
        except OSError as e:
            return CommandResult(
                output=None,
                success=False,
                error_message=f"Failed to run '{' '.join(command)}': {e}",
                execution_time=ProgramConfig.now_utc().timestamp() - start_time
            )

        execution_time = ProgramConfig.now_utc().timestamp() - start_time
        if process.returncode == 0:
            return CommandResult(
                output=process.stdout,
                success=True,
                execution_time=execution_time
            )
        return CommandResult(
            output=None,
            success=False,
            error_message=(
                f"'{' '.join(command)}' exited with {process.returncode}: "
                f"{process.stderr.strip() or process.stdout.strip()}"
            ),
            execution_time=execution_time
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Process Listing
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def list_server_processes(process_name: str, logger: VerboseLogger) -> List[Dict[str, Any]]:
    """Resource usage of every process called process_name.

    psutil caches the Process objects between process_iter() calls, so the
    CPU percentage is the usage since the previous request (0.0 the first
    time a process is seen).
    """
    records = []
    for proc in psutil.process_iter(['pid', 'name']):
        if proc.info.get('name') != process_name:
            continue
        try:
            with proc.oneshot():
                memory = proc.memory_info()
                io_counters = proc.io_counters() if hasattr(proc, 'io_counters') else None
                record = PsRecord(
                    pid=proc.pid,
                    cpu_usage_percent=proc.cpu_percent(interval=None),
                    virtual_memory_usage_bytes=memory.vms,
                    virtual_memory_usage_percent=proc.memory_percent(memtype='vms'),
                    io_counter_read_bytes=io_counters.read_bytes if io_counters else 0,
                    io_counter_write_bytes=io_counters.write_bytes if io_counters else 0,
                    open_files=len(proc.open_files()),
                    thread_count=proc.num_threads()
                )
            records.append(asdict(record))
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            # Process ended while we looked at it
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Access denied reading process {proc.pid}: {e}")
    logger.verbose(f"Found {len(records)} {process_name} processes")
    return records

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Status Daemon
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class StatusDaemon:
    """Answers status requests coming in through a PipeResponder."""

    def __init__(
        self,
        config: ProgramConfig,
        logger: VerboseLogger,
        responder: PipeResponder,
        executor: Optional[CommandExecutor] = None,
        process_lister: Optional[Callable[[str, VerboseLogger], List[Dict[str, Any]]]] = None
    ):
        self.config = config
        self.logger = logger
        self.responder = responder
        self.executor = executor or CommandExecutor(config.command_timeout, logger)
        self.process_lister = process_lister or list_server_processes
        self.requests_handled = 0

    def _smbstatus_command(self, dataset: str) -> List[str]:
        return shlex.split(self.config.smbstatus_command) + list(SMBSTATUS_ARGUMENTS[dataset])

    def get_dataset(self, dataset: str) -> Any:
        """Get the raw data of one dataset.

        Raises:
            StatusCommandError: the command failed or the processes could not be listed
        """
        if self.config.test_mode:
            self.logger.verbose(f"Test mode, answering {dataset} with sample data")
            if dataset == PS_DATASET:
                return [dict(entry) for entry in sample_data.PS_DATA]
            return {
                'locks': sample_data.LOCK_DATA,
                'shares': sample_data.SHARE_DATA,
                'processes': sample_data.PROCESS_DATA
            }[dataset]

        if dataset == PS_DATASET:
            try:
                return self.process_lister(self.config.process_name, self.logger)
            except psutil.Error as e:
                raise StatusCommandError(f"Failed to list {self.config.process_name} processes: {e}")

        result = self.executor.execute(self._smbstatus_command(dataset))
        self.logger.verbose(f"{dataset} command finished in {result.execution_time:.3f}s")
        if not result.success:
            raise StatusCommandError(result.error_message or f"smbstatus failed for {dataset}")
        return result.output

    def handle_request(self, request: StatusRequest) -> StatusResponse:
        """Collect every dataset the request asks for.

        A failing dataset fails the whole response, the requester must not
        mistake a broken smbstatus call for an idle server.
        """
        self.logger.verbose(f"Handling {request.request_type.value} request {request.request_id}")
        payload = {}
        try:
            for dataset in request.request_type.datasets:
                payload[dataset] = self.get_dataset(dataset)
        except StatusCommandError as e:
            self.logger.error_with_addition(e, f"while handling {request.request_type.value} request")
            return StatusResponse.failed(request.request_id, str(e))
        except Exception as e:
            # Only startup problems may end samba-statusd
            self.logger.exception(f"Unexpected error handling {request.request_type.value} request")
            return StatusResponse.failed(request.request_id, f"Unexpected error in samba-statusd: {e}")

        return StatusResponse(request_id=request.request_id, success=True, payload=payload)

    def serve_forever(self, shutdown_event: threading.Event) -> None:
        """Handle requests until shutdown_event is set."""
        self.responder.open()
        self.logger.info("Waiting for requests")
        try:
            while not shutdown_event.is_set():
                request = self.responder.receive(timeout=self.config.idle_poll)
                if request is None:
                    continue
                response = self.handle_request(request)
                self.responder.reply(response)
                self.requests_handled += 1
        finally:
            self.responder.close()
            self.logger.info(f"Stopped after {self.requests_handled} requests")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of samba-statusd."""
    args = build_arg_parser(
        'samba-statusd',
        "Answer samba status requests of samba-exporter via named pipes"
    ).parse_args(argv)

    try:
        source = ProgramSource('samba-statusd', args.config, args.verbose)
        config = ProgramConfig(source)
        config.load()
    except ConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    logger = ProgramLogger(source, config).logger
    if config.loaded_from:
        logger.info(f"Configuration loaded from {config.loaded_from}")
    if config.test_mode:
        logger.warning("Running in test mode, requests are answered with sample data")

    try:
        create_fifo(config.request_pipe, config.pipe_mode, config.pipe_group, logger)
        create_fifo(config.response_pipe, config.pipe_mode, config.pipe_group, logger)
        responder = PipeResponder(
            NamedPipeHandler(config.request_pipe, PipeMode.READ),
            NamedPipeHandler(config.response_pipe, PipeMode.WRITE, write_timeout=config.response_timeout),
            logger
        )
        daemon = StatusDaemon(config, logger, responder)
        shutdown_event = threading.Event()
        install_signal_handlers(shutdown_event, logger)

        # Open the request pipe before telling systemd we are ready
        responder.open()
        notify_systemd(config, 'READY', logger)
        daemon.serve_forever(shutdown_event)
    except PipeConnectionError as e:
        logger.error(f"Can not use the named pipes: {e}")
        notify_systemd(config, 'STOPPING', logger)
        return 1

    notify_systemd(config, 'STOPPING', logger)
    return 0


if __name__ == '__main__':
    sys.exit(main())
