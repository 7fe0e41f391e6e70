"""
Parsers for the tables printed by ``smbstatus``.

``smbstatus -L -n``, ``-S -n`` and ``-p -n`` print whitespace aligned tables
whose columns differ between Samba versions, locales and cluster setups:

    Samba version 4.13.5-Debian
    PID     Username     Group        Machine                      Protocol Version  Encryption  Signing
    ----------------------------------------------------------------------------------------------------
    1120    1080         117          192.168.1.242 (ipv4:...)     SMB3_11           -           partial(AES-128-CMAC)

Every table is located by its separator line. The header above it selects a
``TableLayout``; an unknown header yields an empty result. Data rows are then
handed to the row parser of that layout. A row that cannot be converted is
logged and skipped, it never aborts the rest of the table.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from samba_exporter.logger import VerboseLogger

SEPARATOR_MIN_LENGTH = 10
HEADER_SEPARATOR = '  '
ROW_SEPARATOR = ' '
NO_LOCKS_LINE = 'No locked files'
SERVER_VERSION_PREFIX = 'Samba version'

# Sentinel for "not running in cluster mode" and for unknown user/group ids
NO_ID = -1

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Records
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class LockRecord:
    """One row of the 'smbstatus -L -n' table."""
    pid: int
    cluster_node_id: int
    user_id: int
    deny_mode: str
    access: str
    access_mode: str
    oplock: str
    share_path: str
    name: str
    timestamp: datetime

@dataclass(frozen=True)
class ShareRecord:
    """One row of the 'smbstatus -S -n' table.

    The cluster layout of the table has neither a service nor a connect time,
    records parsed from it carry an empty service and no connected_at.
    """
    service: str
    pid: int
    cluster_node_id: int
    machine: str
    connected_at: Optional[datetime]
    encryption: str
    signing: str

@dataclass(frozen=True)
class ProcessRecord:
    """One row of the 'smbstatus -p -n' table."""
    pid: int
    cluster_node_id: int
    user_id: int
    group_id: int
    machine: str
    protocol_version: str
    encryption: str
    signing: str
    server_version: str

@dataclass(frozen=True)
class PsRecord:
    """OS level resource usage of one Samba server process."""
    pid: int
    cpu_usage_percent: float
    virtual_memory_usage_bytes: int
    virtual_memory_usage_percent: float
    io_counter_read_bytes: int
    io_counter_write_bytes: int
    open_files: int
    thread_count: int

@dataclass
class StatusSnapshot:
    """All records obtained from one request/response cycle."""
    locks: List[LockRecord] = field(default_factory=list)
    shares: List[ShareRecord] = field(default_factory=list)
    processes: List[ProcessRecord] = field(default_factory=list)
    ps_data: List[PsRecord] = field(default_factory=list)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Table layouts
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class TableLayout(Enum):
    """Known header shapes of the smbstatus tables."""
    LOCKS = "locks"
    SHARES_NORMAL = "shares_normal"
    SHARES_CLUSTER = "shares_cluster"
    PROCESSES = "processes"

# Field count of the header line and the column names expected at fixed positions
HEADER_SIGNATURES: Dict[TableLayout, Tuple[int, Dict[int, str]]] = {
    TableLayout.LOCKS: (9, {0: 'Pid', 5: 'Oplock'}),
    TableLayout.SHARES_NORMAL: (6, {0: 'Service', 3: 'Connected at'}),
    TableLayout.SHARES_CLUSTER: (7, {0: 'PID', 4: 'Protocol Version'}),
    TableLayout.PROCESSES: (7, {1: 'Username', 4: 'Protocol Version'}),
}

# Normal share rows: number of row tokens -> number of tokens in 'Connected at'
SHARE_TIMESTAMP_TOKENS = {
    12: 7,  # Sun May 16 11:55:36 AM 2021 CEST
    11: 6,  # Sun May 16 11:55:36 2021 CEST
    10: 5,  # Sun May 16 11:55:36 2021
}

# Lock rows: the time stamp occupies the last 5 or 6 tokens
LOCK_TIMESTAMP_WINDOWS = (5, 6)

# Index of the first token of the lock name
LOCK_NAME_INDEX = 7


def match_layout(header_fields: Sequence[str], candidates: Sequence[TableLayout]) -> Optional[TableLayout]:
    """Return the first candidate layout whose header signature matches."""
    for layout in candidates:
        field_count, columns = HEADER_SIGNATURES[layout]
        if len(header_fields) != field_count:
            continue
        if all(header_fields[index] == name for index, name in columns.items()):
            return layout
    return None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Time stamps
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class TimestampPattern:
    """A strptime format plus the tokens handled outside of strptime."""
    format: str
    zone: bool = False           # last token is a time zone abbreviation
    short_weekday: bool = False  # first token is a two letter weekday, e.g. 'Mo'

# Tried in this order, the first match wins
TIMESTAMP_PATTERNS = (
    TimestampPattern('%a %b %d %H:%M:%S %Y'),                                 # ANSIC
    TimestampPattern('%a %b %d %I:%M:%S %p %Y', zone=True),                   # 12-hour
    TimestampPattern('%a %b %d %I:%M:%S %p %Y'),
    TimestampPattern('%a %b %d %H:%M:%S %Y', zone=True),                      # 24-hour
    TimestampPattern('%b %d %H:%M:%S %Y', zone=True, short_weekday=True),
)

ZONE_PATTERN = re.compile(r'[A-Z]{2,5}')
SHORT_WEEKDAY_PATTERN = re.compile(r'[A-Za-z]{2}')
UTC_ZONES = ('UTC', 'GMT')


def parse_timestamp(tokens: Sequence[str]) -> Optional[datetime]:
    """Parse whitespace separated time stamp tokens, None if no pattern matches.

    Time stamps in UTC/GMT come back timezone aware, any other zone
    abbreviation is accepted and the wall clock time is kept naive.
    """
    for pattern in TIMESTAMP_PATTERNS:
        body = list(tokens)
        zone = None

        if pattern.zone:
            if len(body) < 2 or body[-1] in ('AM', 'PM') or not ZONE_PATTERN.fullmatch(body[-1]):
                continue
            zone = body.pop()

        if pattern.short_weekday:
            if not body or not SHORT_WEEKDAY_PATTERN.fullmatch(body[0]):
                continue
            body = body[1:]

        try:
            result = datetime.strptime(' '.join(body), pattern.format)
        except ValueError:
            continue

        if zone in UTC_ZONES:
            result = result.replace(tzinfo=timezone.utc)
        return result

    return None


def find_trailing_timestamp(fields: Sequence[str]) -> Tuple[Optional[datetime], int]:
    """Find the time stamp at the end of a row.

    Returns the time stamp and the index of its first token, or (None, -1).
    """
    for window in LOCK_TIMESTAMP_WINDOWS:
        if len(fields) < window:
            continue
        timestamp = parse_timestamp(fields[-window:])
        if timestamp is not None:
            return timestamp, len(fields) - window
    return None, -1

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Field helpers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RowError(ValueError):
    """A data row that cannot be turned into a record."""

    def __init__(self, field_name: str, cause: Exception):
        super().__init__(f"{field_name}: {cause}")
        self.field_name = field_name
        self.cause = cause


def split_fields(line: str, separator: str) -> List[str]:
    """Split a line and keep the non-empty, trimmed fields."""
    return [part.strip() for part in line.split(separator) if part.strip()]


def find_separator_line_index(lines: Sequence[str]) -> int:
    """Index of the first line made of dashes only, -1 if there is none."""
    for index, line in enumerate(lines):
        stripped = line.strip()
        if len(stripped) >= SEPARATOR_MIN_LENGTH and not stripped.strip('-'):
            return index
    return -1


def _to_int(value: str, field_name: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise RowError(field_name, e)


def _parse_pid(value: str, field_name: str = 'PID') -> Tuple[int, int]:
    """Split a 'node:pid' token into (cluster_node_id, pid).

    Without a colon samba is not running in cluster mode and the node id is
    NO_ID.
    """
    if ':' in value:
        node, pid = value.split(':', 1)
        cluster_node_id = _to_int(node, 'ClusterNodeId')
        if cluster_node_id < 0:
            raise RowError('ClusterNodeId', ValueError(f"negative node id {cluster_node_id}"))
        return cluster_node_id, _to_int(pid, f"{field_name} (with :)")
    return NO_ID, _to_int(value, field_name)


def _id_or_sentinel(value: str, sentinel: str, field_name: str) -> int:
    """Ids printed as 'nobody'/'nogroup' by clustered samba map to NO_ID."""
    if value == sentinel:
        return NO_ID
    return _to_int(value, field_name)


def _require_field_count(fields: Sequence[str], expected: int) -> None:
    if len(fields) != expected:
        raise RowError('field count', ValueError(f"expected {expected} fields, got {len(fields)}"))

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Row parsers, one per layout
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def lock_from_fields(fields: Sequence[str]) -> LockRecord:
    if len(fields) <= LOCK_NAME_INDEX:
        raise RowError('field count', ValueError(f"too few fields ({len(fields)})"))

    cluster_node_id, pid = _parse_pid(fields[0])
    user_id = _to_int(fields[1], 'UserID')

    timestamp, name_end = find_trailing_timestamp(fields)
    if timestamp is None:
        raise RowError('Time', ValueError("no known time stamp format matches"))
    if name_end <= LOCK_NAME_INDEX:
        raise RowError('Name', ValueError("no name in front of the time stamp"))

    return LockRecord(
        pid=pid,
        cluster_node_id=cluster_node_id,
        user_id=user_id,
        deny_mode=fields[2],
        access=fields[3],
        access_mode=fields[4],
        oplock=fields[5],
        share_path=fields[6],
        name=' '.join(fields[LOCK_NAME_INDEX:name_end]).strip(),
        timestamp=timestamp
    )


def normal_share_from_fields(fields: Sequence[str]) -> ShareRecord:
    """Service, pid, machine, connect time (5 to 7 tokens), encryption, signing."""
    timestamp_tokens = SHARE_TIMESTAMP_TOKENS.get(len(fields))
    if timestamp_tokens is None:
        raise RowError('field count', ValueError(f"unexpected number of fields ({len(fields)})"))

    cluster_node_id, pid = _parse_pid(fields[1])
    connected_at = parse_timestamp(fields[3:3 + timestamp_tokens])
    if connected_at is None:
        raise RowError('ConnectedAt', ValueError(f"no known time stamp format matches ({len(fields)} fields)"))

    return ShareRecord(
        service=fields[0],
        pid=pid,
        cluster_node_id=cluster_node_id,
        machine=fields[2],
        connected_at=connected_at,
        encryption=fields[-2],
        signing=fields[-1]
    )


def cluster_share_from_fields(fields: Sequence[str]) -> ShareRecord:
    """Pid, user, group, machine (2 tokens), protocol, encryption, signing."""
    _require_field_count(fields, 8)
    cluster_node_id, pid = _parse_pid(fields[0])

    return ShareRecord(
        service='',
        pid=pid,
        cluster_node_id=cluster_node_id,
        machine=f"{fields[3]} {fields[4]}",
        connected_at=None,
        encryption=fields[6],
        signing=fields[7]
    )


def process_from_fields(fields: Sequence[str], server_version: str) -> ProcessRecord:
    """Pid, user, group, machine (2 tokens), protocol, encryption, signing."""
    _require_field_count(fields, 8)
    cluster_node_id, pid = _parse_pid(fields[0])

    return ProcessRecord(
        pid=pid,
        cluster_node_id=cluster_node_id,
        user_id=_id_or_sentinel(fields[1], 'nobody', 'UserID'),
        group_id=_id_or_sentinel(fields[2], 'nogroup', 'GroupID'),
        machine=f"{fields[3]} {fields[4]}",
        protocol_version=fields[5],
        encryption=fields[6],
        signing=fields[7],
        server_version=server_version
    )


ROW_PARSERS: Dict[TableLayout, Callable[[Sequence[str]], Any]] = {
    TableLayout.LOCKS: lock_from_fields,
    TableLayout.SHARES_NORMAL: normal_share_from_fields,
    TableLayout.SHARES_CLUSTER: cluster_share_from_fields,
}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Table parsers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def _locate_table(
    lines: Sequence[str],
    candidates: Sequence[TableLayout],
    table_name: str,
    logger: VerboseLogger
) -> Tuple[Optional[TableLayout], int]:
    """Find the separator and match the header above it."""
    separator_index = find_separator_line_index(lines)
    if separator_index < 1:
        logger.error(f"No table separator line found in {table_name} data")
        return None, -1

    header_fields = split_fields(lines[separator_index - 1], HEADER_SEPARATOR)
    layout = match_layout(header_fields, candidates)
    if layout is None:
        logger.error(f"Unknown {table_name} table header: {header_fields}")
        return None, -1

    logger.verbose(f"Detected {layout.value} table layout")
    return layout, separator_index


def _parse_rows(
    lines: Sequence[str],
    row_parser: Callable[[Sequence[str]], Any],
    table_name: str,
    logger: VerboseLogger
) -> list:
    """Run the row parser over every non blank data line."""
    records = []
    for line in lines:
        fields = split_fields(line, ROW_SEPARATOR)
        if not fields:
            continue
        try:
            records.append(row_parser(fields))
        except RowError as e:
            logger.error_with_addition(e.cause, f"while getting {table_name} {e.field_name}")
            logger.verbose(f"Skipped {table_name} line: \"{line}\"")
    return records


def parse_locks(data: str, logger: VerboseLogger) -> List[LockRecord]:
    """Get the entries out of the 'smbstatus -L -n' output.

    Returns an empty list if the data is in an unexpected format.
    """
    if data.strip() == NO_LOCKS_LINE:
        return []

    lines = data.splitlines()
    layout, separator_index = _locate_table(lines, (TableLayout.LOCKS,), 'LockData', logger)
    if layout is None:
        return []

    return _parse_rows(lines[separator_index + 1:], ROW_PARSERS[layout], 'LockData', logger)


def parse_shares(data: str, logger: VerboseLogger) -> List[ShareRecord]:
    """Get the entries out of the 'smbstatus -S -n' output.

    Both the normal and the cluster layout are understood. Returns an empty
    list if the data is in an unexpected format.
    """
    lines = data.splitlines()
    layout, separator_index = _locate_table(
        lines,
        (TableLayout.SHARES_NORMAL, TableLayout.SHARES_CLUSTER),
        'ShareData',
        logger
    )
    if layout is None:
        return []

    return _parse_rows(
        lines[separator_index + 1:],
        ROW_PARSERS[layout],
        f"ShareData ({layout.value})",
        logger
    )


def parse_processes(data: str, logger: VerboseLogger) -> List[ProcessRecord]:
    """Get the entries out of the 'smbstatus -p -n' output.

    The 'Samba version' banner two lines above the separator is required,
    without it the whole table is rejected. Returns an empty list if the data
    is in an unexpected format.
    """
    lines = data.splitlines()
    separator_index = find_separator_line_index(lines)
    if separator_index < 2:
        logger.error("No table separator line with version banner found in ProcessData")
        return []

    version_line = lines[separator_index - 2].strip()
    if not version_line.startswith(SERVER_VERSION_PREFIX):
        logger.error(f"Missing '{SERVER_VERSION_PREFIX}' line in ProcessData, got \"{version_line}\"")
        return []
    server_version = version_line[len(SERVER_VERSION_PREFIX):].strip()

    layout, separator_index = _locate_table(lines, (TableLayout.PROCESSES,), 'ProcessData', logger)
    if layout is None:
        return []

    return _parse_rows(
        lines[separator_index + 1:],
        partial(process_from_fields, server_version=server_version),
        'ProcessData',
        logger
    )


def parse_ps_data(data: Union[str, List[Dict[str, Any]], None], logger: VerboseLogger) -> List[PsRecord]:
    """Get the process resource records out of the ps payload.

    Accepts the decoded list or its JSON text. Entries with missing or
    non-numeric values are skipped.
    """
    if data is None:
        return []

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error_with_addition(e, "while converting PsData json")
            return []

    if not isinstance(data, list):
        logger.error(f"PsData must be a list, got {type(data).__name__}")
        return []

    records = []
    for entry in data:
        try:
            records.append(PsRecord(
                pid=int(entry['pid']),
                cpu_usage_percent=float(entry['cpu_usage_percent']),
                virtual_memory_usage_bytes=int(entry['virtual_memory_usage_bytes']),
                virtual_memory_usage_percent=float(entry['virtual_memory_usage_percent']),
                io_counter_read_bytes=int(entry['io_counter_read_bytes']),
                io_counter_write_bytes=int(entry['io_counter_write_bytes']),
                open_files=int(entry['open_files']),
                thread_count=int(entry['thread_count'])
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.error_with_addition(e, f"while getting PsData entry {entry!r}")
    return records


def parse_snapshot(payload: Dict[str, Any], logger: VerboseLogger) -> StatusSnapshot:
    """Parse all datasets of one response payload into a snapshot."""
    return StatusSnapshot(
        locks=parse_locks(payload.get('locks') or '', logger),
        shares=parse_shares(payload.get('shares') or '', logger),
        processes=parse_processes(payload.get('processes') or '', logger),
        ps_data=parse_ps_data(payload.get('ps'), logger)
    )
