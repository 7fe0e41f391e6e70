"""
Logging setup shared by samba-exporter and samba-statusd.

Components never print; they receive a logger and call ``info``,
``verbose``, ``error`` or ``error_with_addition`` on it. ``ProgramLogger``
builds the console/file/journal sinks for the running program and
``null_logger`` gives tests a sink that discards everything.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Union

from samba_exporter.config import ProgramConfig, ProgramSource

# Verbose logging config
VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class VerboseLogger(logging.Logger):
    """Logger class adding verbose debugging and error-with-context helpers."""

    def verbose(
        self,
        msg: Union[str, Callable[[], str]],
        *args: Any,
        **kwargs: Any
    ) -> None:
        """Log verbose debug messages with deferred evaluation."""
        if not self.isEnabledFor(VERBOSE_LEVEL):
            return

        # Handle deferred evaluation of expensive computations
        if callable(msg):
            self.log(VERBOSE_LEVEL, msg(*args, **kwargs))
        # Handle string formatting
        elif args or kwargs:
            self.log(VERBOSE_LEVEL, msg.format(*args, **kwargs))
        # Handle simple strings
        else:
            self.log(VERBOSE_LEVEL, msg)

    def error_with_addition(self, error: BaseException, addition: str) -> None:
        """Log an error together with what was going on when it happened."""
        self.error(f"{error} - {addition}")


def get_logger(name: str) -> VerboseLogger:
    """Get a named logger that is guaranteed to be a VerboseLogger."""
    logging.addLevelName(VERBOSE_LEVEL, 'VERBOSE')
    previous_class = logging.getLoggerClass()
    logging.setLoggerClass(VerboseLogger)
    try:
        logger = logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_class)

    if not isinstance(logger, VerboseLogger):
        raise TypeError(f"Logger '{name}' was created before the verbose logger class was installed")
    return logger


def null_logger() -> VerboseLogger:
    """Get a logger that drops every record."""
    logger = get_logger('samba_exporter.null')
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """
        self.source = source
        self.config = config
        self._logger = self._setup_logging()

    @property
    def logger(self) -> VerboseLogger:
        """Get the configured logger instance."""
        return self._logger

    def _get_formatter(self) -> logging.Formatter:
        """Create formatter using current settings."""
        log_settings = self.config.logging
        return logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

    def _setup_logging(self) -> VerboseLogger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - Console handler
        - File handler with rotation (if a log file is configured)
        - Journal handler (if running under systemd)

        Returns:
            Configured VerboseLogger instance

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = get_logger(self.source.logger_name)
        logger.handlers.clear()
        logger.propagate = False

        log_settings = self.config.logging
        level = 'VERBOSE' if self.source.verbose else log_settings['level']
        console_level = 'VERBOSE' if self.source.verbose else log_settings['console_level']
        logger.setLevel(level)

        formatter = self._get_formatter()

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(console_level)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

            # File handler
            if log_settings.get('file'):
                file_handler = RotatingFileHandler(
                    log_settings['file'],
                    maxBytes=log_settings['max_bytes'],
                    backupCount=log_settings['backup_count']
                )
                file_handler.setLevel(log_settings['file_level'])
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)

            # Journal handler for systemd
            if self.config.running_under_systemd:
                from cysystemd import journal

                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
            print(f"Failed to setup log handlers: {e}", file=sys.stderr)

        return logger

