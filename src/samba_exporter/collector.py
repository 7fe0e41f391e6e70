"""
prometheus_client adapter: turns samba-statusd answers into gauge families.

The collector owns its descriptor catalog. ``describe()`` fills it from a
first round trip; ``collect()`` only emits metrics the catalog knows, and
fills it itself while it is still empty so that an exporter started before
samba-statusd recovers on a later scrape.
"""

import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from samba_exporter.config import ProgramConfig
from samba_exporter.exceptions import SambaExporterError, StatusCommandError
from samba_exporter.logger import VerboseLogger
from samba_exporter.protocol import PipeRequester, RequestType
from samba_exporter.smbstatus import StatusSnapshot, parse_snapshot
from samba_exporter.statistics import MetricSample, get_smb_statistics

MACHINE_LABEL = 'machine'
FALLBACK_HOSTNAME = '127.0.0.1'


def get_samba_status(requester: PipeRequester, logger: VerboseLogger) -> StatusSnapshot:
    """Ask samba-statusd for all datasets and parse them.

    Raises:
        StatusCommandError: samba-statusd could not run its commands
        plus whatever PipeRequester.send raises
    """
    response = requester.send(RequestType.ALL)
    if not response.success:
        raise StatusCommandError(f"samba-statusd failed: {response.error or 'no reason given'}")
    return parse_snapshot(response.payload, logger)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for scrape operations.

    Attributes:
        attempts (int): Total collection attempts
        successful (int): Successful collections
        warnings (int): Samples dropped for lack of a descriptor
        errors (int): Failed collections
        consecutive_failures (int): Current streak of failures
        last_collection_time (float): Duration of last collection
        total_collection_time (float): Cumulative collection time
        last_collection_datetime (datetime): Timestamp of last collection
    """
    attempts: int = 0
    successful: int = 0
    warnings: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: datetime = field(
        default_factory=lambda: ProgramConfig.now_utc()
    )

    def record_success(self) -> None:
        self.successful += 1
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.errors += 1
        self.consecutive_failures += 1

    def update_collection_time(self, start_time: float) -> None:
        """Update collection timing statistics."""
        collection_time = ProgramConfig.now_utc().timestamp() - start_time
        self.last_collection_time = collection_time
        self.total_collection_time += collection_time
        self.last_collection_datetime = ProgramConfig.now_utc()

    def get_average_collection_time(self) -> float:
        """Calculate average collection time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MetricDescription:
    """Registered descriptor of one catalog entry."""
    name: str
    full_name: str
    help: str


class SambaCollector:
    """Custom collector for a prometheus_client CollectorRegistry."""

    def __init__(
        self,
        requester: PipeRequester,
        config: ProgramConfig,
        logger: VerboseLogger,
        hostname: Optional[str] = None
    ):
        self.requester = requester
        self.config = config
        self.logger = logger
        self.namespace = config.namespace
        self.label_names = [MACHINE_LABEL] if config.machine_label else []
        self.hostname = hostname or self._get_hostname()
        self.stats = CollectionStats()
        self._descriptions: Dict[str, MetricDescription] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _get_hostname() -> str:
        try:
            return socket.gethostname()
        except OSError:
            return FALLBACK_HOSTNAME

    @property
    def descriptions(self) -> Dict[str, MetricDescription]:
        """Copy of the registered descriptor catalog."""
        with self._lock:
            return dict(self._descriptions)

    def _full_name(self, name: str) -> str:
        return f"{self.namespace}_{name}"

    @property
    def _label_values(self) -> List[str]:
        return [self.hostname] if self.label_names else []

    def _register(self, samples: List[MetricSample]) -> None:
        # Append only, a registered name is never dropped or changed
        for sample in samples:
            if sample.name not in self._descriptions:
                self._descriptions[sample.name] = MetricDescription(
                    name=sample.name,
                    full_name=self._full_name(sample.name),
                    help=sample.help
                )
        self.logger.verbose(f"{len(self._descriptions)} metric descriptions registered")

    def _get_samples(self) -> List[MetricSample]:
        snapshot = get_samba_status(self.requester, self.logger)
        self.logger.verbose(
            f"Got {len(snapshot.locks)} locks, {len(snapshot.shares)} shares, "
            f"{len(snapshot.processes)} processes and {len(snapshot.ps_data)} server processes"
        )
        return get_smb_statistics(snapshot)

    def _self_metric_families(self, with_values: bool = True) -> List[Metric]:
        duration = GaugeMetricFamily(
            self._full_name('exporter_scrape_duration_seconds'),
            "Duration of the last request to samba-statusd in seconds",
            labels=self.label_names
        )
        errors = CounterMetricFamily(
            self._full_name('exporter_scrape_errors'),
            "Number of scrapes that could not get the samba status",
            labels=self.label_names
        )
        if with_values:
            duration.add_metric(self._label_values, self.stats.last_collection_time)
            errors.add_metric(self._label_values, self.stats.errors)
        return [duration, errors]

    def describe(self) -> Iterator[Metric]:
        """Register and yield the descriptors of the metric catalog.

        Nothing of the catalog is yielded when samba-statusd can not be asked,
        collect() registers the catalog on its first successful scrape then.
        """
        self.logger.verbose("Request samba-statusd to get prometheus descriptions")
        with self._lock:
            try:
                samples = self._get_samples()
            except (SambaExporterError, TimeoutError) as e:
                self.logger.error_with_addition(e, "while getting the metric descriptions")
                samples = []

            self._register(samples)
            families: List[Metric] = [
                GaugeMetricFamily(description.full_name, description.help, labels=self.label_names)
                for description in self._descriptions.values()
            ]

        families.extend(self._self_metric_families(with_values=False))
        return iter(families)

    def collect(self) -> Iterator[Metric]:
        """Yield one gauge per catalog entry from a fresh status request."""
        self.logger.verbose("Request samba-statusd to get prometheus metrics")
        families: List[Metric] = []

        with self._lock:
            start_time = ProgramConfig.now_utc().timestamp()
            self.stats.attempts += 1
            try:
                samples = self._get_samples()
            except (SambaExporterError, TimeoutError) as e:
                self.stats.record_failure()
                self.logger.error_with_addition(
                    e, f"while collecting metrics ({self.stats.consecutive_failures} failures in a row)"
                )
                samples = []
            else:
                self.stats.record_success()
            finally:
                self.stats.update_collection_time(start_time)

            if samples and not self._descriptions:
                self.logger.info("No metric descriptions registered yet, registering them now")
                self._register(samples)

            for sample in samples:
                description = self._descriptions.get(sample.name)
                if description is None:
                    self.stats.warnings += 1
                    self.logger.error(f"No description found for {sample.name}")
                    continue
                family = GaugeMetricFamily(description.full_name, description.help, labels=self.label_names)
                family.add_metric(self._label_values, sample.value)
                families.append(family)

            families.extend(self._self_metric_families())

        self.logger.verbose(
            f"Scrape took {self.stats.last_collection_time:.3f}s, "
            f"average {self.stats.get_average_collection_time():.3f}s"
        )
        return iter(families)
