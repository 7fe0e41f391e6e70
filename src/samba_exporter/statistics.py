"""
Reduce a StatusSnapshot to the metric catalog.

The catalog is a fixed, ordered table: every scrape yields the same names in
the same order, only the values change. Names are unprefixed here, the
collector adds the namespace.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple

from samba_exporter.smbstatus import StatusSnapshot


@dataclass(frozen=True)
class MetricSample:
    """One named value of the catalog."""
    name: str
    help: str
    value: float


def _distinct(values: Iterable) -> int:
    return len(set(values))


def _cluster_node_count(snapshot: StatusSnapshot) -> int:
    node_ids = set()
    for records in (snapshot.locks, snapshot.shares, snapshot.processes):
        node_ids.update(record.cluster_node_id for record in records if record.cluster_node_id >= 0)
    return len(node_ids)


def _server_up(snapshot: StatusSnapshot) -> int:
    return 1 if snapshot.processes or snapshot.ps_data else 0


def _ps_sum(attribute: str) -> Callable[[StatusSnapshot], float]:
    def total(snapshot: StatusSnapshot) -> float:
        return sum(getattr(record, attribute) for record in snapshot.ps_data)
    return total


STATISTICS: Tuple[Tuple[str, str, Callable[[StatusSnapshot], float]], ...] = (
    ('statusd_up',
     "1 if samba_statusd answered the request",
     lambda snapshot: 1),
    ('server_up',
     "1 if the samba server processes were found",
     _server_up),
    ('individual_user_count',
     "The number of users connected to this samba server",
     lambda snapshot: _distinct(process.user_id for process in snapshot.processes)),
    ('client_count',
     "Number of clients using the samba server",
     lambda snapshot: _distinct(process.machine for process in snapshot.processes)),
    ('pid_count',
     "Number of processes the samba server uses to serve its clients",
     lambda snapshot: _distinct(process.pid for process in snapshot.processes)),
    ('share_count',
     "Number of shares in use on the samba server",
     lambda snapshot: _distinct(share.service for share in snapshot.shares)),
    ('locked_file_count',
     "Number of files locked by the samba server",
     lambda snapshot: len(snapshot.locks)),
    ('locked_share_count',
     "Number of shares that contain locked files",
     lambda snapshot: _distinct(lock.share_path for lock in snapshot.locks)),
    ('cluster_node_count',
     "Number of cluster nodes seen in the samba status, 0 when not clustered",
     _cluster_node_count),
    ('encrypted_connection_count',
     "Number of share connections using encryption",
     lambda snapshot: sum(1 for share in snapshot.shares if share.encryption != '-')),
    ('signed_connection_count',
     "Number of share connections using signing",
     lambda snapshot: sum(1 for share in snapshot.shares if share.signing != '-')),
    ('smbd_process_count',
     "Number of running samba server processes",
     lambda snapshot: len(snapshot.ps_data)),
    ('smbd_sum_cpu_usage_percentage',
     "Sum of the CPU usage of all samba server processes in percent",
     _ps_sum('cpu_usage_percent')),
    ('smbd_sum_virtual_memory_usage_bytes',
     "Sum of the virtual memory used by all samba server processes in bytes",
     _ps_sum('virtual_memory_usage_bytes')),
    ('smbd_sum_virtual_memory_usage_percent',
     "Sum of the virtual memory used by all samba server processes in percent",
     _ps_sum('virtual_memory_usage_percent')),
    ('smbd_sum_io_counter_read_bytes',
     "Sum of the bytes read by all samba server processes",
     _ps_sum('io_counter_read_bytes')),
    ('smbd_sum_io_counter_write_bytes',
     "Sum of the bytes written by all samba server processes",
     _ps_sum('io_counter_write_bytes')),
    ('smbd_sum_open_file_count',
     "Sum of the files opened by all samba server processes",
     _ps_sum('open_files')),
    ('smbd_sum_thread_count',
     "Sum of the threads of all samba server processes",
     _ps_sum('thread_count')),
)

CATALOG_NAMES = tuple(name for name, _, _ in STATISTICS)


def get_smb_statistics(snapshot: StatusSnapshot) -> List[MetricSample]:
    """Compute the metric catalog for one snapshot."""
    return [
        MetricSample(name=name, help=help_text, value=float(compute(snapshot)))
        for name, help_text, compute in STATISTICS
    ]
