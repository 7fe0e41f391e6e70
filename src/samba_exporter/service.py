"""
Process plumbing shared by samba-exporter and samba-statusd.
"""

import argparse
import signal
import threading
from pathlib import Path
from typing import Optional

from samba_exporter.config import DEFAULT_CONFIG_PATH, ProgramConfig
from samba_exporter.logger import VerboseLogger


def build_arg_parser(program_name: str, description: str) -> argparse.ArgumentParser:
    """Command line of both programs."""
    parser = argparse.ArgumentParser(prog=program_name, description=description)
    parser.add_argument(
        '-c', '--config',
        type=Path,
        default=None,
        help=f"Path of the YAML config file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help="Log verbose debugging output"
    )
    return parser


def install_signal_handlers(shutdown_event: threading.Event, logger: VerboseLogger) -> None:
    """Set shutdown_event on SIGTERM and SIGINT."""
    def _handle_signal(signum, frame):
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)


def notify_systemd(config: ProgramConfig, state: str, logger: Optional[VerboseLogger] = None) -> None:
    """Send READY or STOPPING to systemd, nothing when not started by systemd."""
    if not config.running_under_systemd:
        return

    from cysystemd.daemon import Notification, notify

    notify(Notification[state])
    if logger:
        logger.verbose(f"Notified systemd: {state}")
