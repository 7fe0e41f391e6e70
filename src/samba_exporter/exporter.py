"""
samba-exporter: serves the samba status as Prometheus metrics.

Every scrape of the metrics endpoint sends one request to samba-statusd
through the named pipes and converts the answer into gauges.
"""

import sys
import threading
from typing import Optional, Sequence

from prometheus_client import CollectorRegistry, start_http_server

from samba_exporter.collector import SambaCollector
from samba_exporter.config import ProgramConfig, ProgramSource
from samba_exporter.exceptions import ConfigurationError
from samba_exporter.logger import ProgramLogger, VerboseLogger
from samba_exporter.pipes import NamedPipeHandler, PipeMode
from samba_exporter.protocol import PipeRequester
from samba_exporter.service import (
    build_arg_parser, install_signal_handlers, notify_systemd
)


class SambaExporter:
    """Main service class of samba-exporter.

    Attributes:
        config (ProgramConfig): Program configuration
        logger (VerboseLogger): Configured logger instance
        registry (CollectorRegistry): Registry served on the metrics port
        collector (SambaCollector): Collector registered in the registry
        shutdown_event (threading.Event): Event for coordinating shutdown
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: VerboseLogger,
        requester: Optional[PipeRequester] = None
    ):
        self.config = config
        self.logger = logger
        self.shutdown_event = threading.Event()
        self._server = None

        if requester is None:
            requester = PipeRequester(
                NamedPipeHandler(config.request_pipe, PipeMode.WRITE),
                NamedPipeHandler(config.response_pipe, PipeMode.READ),
                logger,
                config.response_timeout
            )
        self.collector = SambaCollector(requester, config, logger)

        # register() calls describe(), which already talks to samba-statusd
        self.registry = CollectorRegistry(auto_describe=True)
        self.registry.register(self.collector)
        registered = len(self.collector.descriptions)
        if registered:
            self.logger.info(f"Registered {registered} samba metrics")
        else:
            self.logger.warning("samba-statusd did not answer, metrics get registered on the first scrape")

    def _start_server(self) -> bool:
        """Start the metrics endpoint."""
        try:
            self._server, _ = start_http_server(self.config.metrics_port, registry=self.registry)
        except OSError as e:
            self.logger.error(f"Failed to start metrics server on port {self.config.metrics_port}: {e}")
            return False
        self.logger.info(f"Started metrics server on port {self.config.metrics_port}")
        return True

    def stop(self) -> None:
        self.shutdown_event.set()

    def run(self) -> int:
        """Serve metrics until shutdown_event is set."""
        if not self._start_server():
            notify_systemd(self.config, 'STOPPING', self.logger)
            return 1

        notify_systemd(self.config, 'READY', self.logger)
        try:
            self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
        finally:
            notify_systemd(self.config, 'STOPPING', self.logger)
            if self._server is not None:
                self._server.shutdown()
                self._server.server_close()
            self.logger.info(
                f"Service shutdown complete after {self.config.get_uptime_seconds():.0f}s, "
                f"{self.collector.stats.attempts} scrapes, {self.collector.stats.errors} failed"
            )
        return 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of samba-exporter."""
    args = build_arg_parser(
        'samba-exporter',
        "Prometheus exporter for the samba server status"
    ).parse_args(argv)

    try:
        source = ProgramSource('samba-exporter', args.config, args.verbose)
        config = ProgramConfig(source)
        config.load()
    except ConfigurationError as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    logger = ProgramLogger(source, config).logger
    if config.loaded_from:
        logger.info(f"Configuration loaded from {config.loaded_from}")

    exporter = SambaExporter(config, logger)
    install_signal_handlers(exporter.shutdown_event, logger)
    return exporter.run()


if __name__ == '__main__':
    sys.exit(main())
