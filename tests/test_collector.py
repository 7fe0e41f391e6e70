import threading
import time

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from samba_exporter.collector import SambaCollector, get_samba_status
from samba_exporter.exceptions import (
    PipeConnectionError, ResponseTimeoutError, StatusCommandError
)
from samba_exporter.protocol import RequestType, StatusResponse
from samba_exporter.statistics import CATALOG_NAMES

SELF_METRICS = {'samba_exporter_scrape_duration_seconds', 'samba_exporter_scrape_errors'}


class FakeRequester:
    """Answers every request with the next item of a script."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def send(self, request_type):
        self.requests.append(request_type)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def _ok(payload):
    return StatusResponse(request_id='abc', success=True, payload=payload)


def _families(metrics):
    return {family.name: family for family in metrics}


def test_get_samba_status(logger, sample_payload):
    requester = FakeRequester(_ok(sample_payload))

    snapshot = get_samba_status(requester, logger)

    assert requester.requests == [RequestType.ALL]
    assert len(snapshot.locks) == 3


def test_get_samba_status_failed_response(logger):
    requester = FakeRequester(StatusResponse.failed('abc', "smbstatus: command not found"))

    with pytest.raises(StatusCommandError, match="command not found"):
        get_samba_status(requester, logger)


def test_describe_registers_catalog(default_config, logger, sample_payload):
    collector = SambaCollector(FakeRequester(_ok(sample_payload)), default_config, logger, 'smbhost')

    families = _families(collector.describe())

    assert set(families) == {f"samba_{name}" for name in CATALOG_NAMES} | SELF_METRICS
    assert all(not family.samples for family in families.values())
    assert list(collector.descriptions) == list(CATALOG_NAMES)


def test_collect_after_describe(default_config, logger, sample_payload):
    collector = SambaCollector(FakeRequester(_ok(sample_payload)), default_config, logger, 'smbhost')
    list(collector.describe())

    families = _families(collector.collect())

    assert families['samba_locked_file_count'].samples[0].value == 3
    assert families['samba_share_count'].samples[0].value == 3
    assert families['samba_smbd_sum_thread_count'].samples[0].value == 5
    assert families['samba_locked_file_count'].samples[0].labels == {}
    assert families['samba_exporter_scrape_errors'].samples[0].value == 0
    assert collector.stats.attempts == 1
    assert collector.stats.successful == 1


def test_transport_failure_emits_no_catalog(default_config, logger):
    collector = SambaCollector(
        FakeRequester(PipeConnectionError("No process is reading from pipe")),
        default_config,
        logger,
        'smbhost'
    )

    described = _families(collector.describe())
    collected = _families(collector.collect())

    assert set(described) == SELF_METRICS
    assert set(collected) == SELF_METRICS
    assert collected['samba_exporter_scrape_errors'].samples[0].value == 1
    assert collector.descriptions == {}
    assert collector.stats.consecutive_failures == 1


def test_collect_registers_late(default_config, logger, sample_payload):
    requester = FakeRequester(
        ResponseTimeoutError("No response"),
        StatusResponse.failed('abc', "smbstatus failed"),
        _ok(sample_payload)
    )
    collector = SambaCollector(requester, default_config, logger, 'smbhost')

    assert set(_families(collector.describe())) == SELF_METRICS
    assert set(_families(collector.collect())) == SELF_METRICS
    families = _families(collector.collect())

    assert set(families) == {f"samba_{name}" for name in CATALOG_NAMES} | SELF_METRICS
    assert len(collector.descriptions) == len(CATALOG_NAMES)
    assert collector.stats.errors == 1
    assert collector.stats.consecutive_failures == 0


def test_catalog_never_shrinks(default_config, logger, sample_payload):
    requester = FakeRequester(_ok(sample_payload), PipeConnectionError("gone"))
    collector = SambaCollector(requester, default_config, logger, 'smbhost')
    list(collector.describe())

    list(collector.collect())

    assert list(collector.descriptions) == list(CATALOG_NAMES)


def test_machine_label(write_config, logger, sample_payload):
    config = write_config({'exporter': {'machine_label': True}})
    collector = SambaCollector(FakeRequester(_ok(sample_payload)), config, logger, 'smbhost')
    list(collector.describe())

    families = _families(collector.collect())

    assert families['samba_client_count'].samples[0].labels == {'machine': 'smbhost'}
    assert families['samba_exporter_scrape_errors'].samples[0].labels == {'machine': 'smbhost'}


def test_namespace(write_config, logger, sample_payload):
    config = write_config({'exporter': {'namespace': 'fileserver'}})
    collector = SambaCollector(FakeRequester(_ok(sample_payload)), config, logger, 'smbhost')

    families = _families(collector.describe())

    assert 'fileserver_statusd_up' in families
    assert 'fileserver_exporter_scrape_errors' in families


def test_exposition_through_registry(default_config, logger, sample_payload):
    collector = SambaCollector(FakeRequester(_ok(sample_payload)), default_config, logger, 'smbhost')
    registry = CollectorRegistry()
    registry.register(collector)

    output = generate_latest(registry).decode('utf-8')

    assert 'samba_locked_file_count 3.0' in output
    assert 'samba_server_up 1.0' in output
    assert 'samba_exporter_scrape_errors_total 0.0' in output
    assert '# TYPE samba_client_count gauge' in output


def test_concurrent_scrapes_do_not_overlap(default_config, logger, sample_payload):
    class SlowRequester(FakeRequester):
        def __init__(self, *script):
            super().__init__(*script)
            self.active = 0
            self.overlapped = False

        def send(self, request_type):
            self.active += 1
            if self.active > 1:
                self.overlapped = True
            time.sleep(0.02)
            self.active -= 1
            return super().send(request_type)

    requester = SlowRequester(_ok(sample_payload))
    collector = SambaCollector(requester, default_config, logger, 'smbhost')
    threads = [threading.Thread(target=lambda: list(collector.collect())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert not requester.overlapped
    assert len(requester.requests) == 4
    assert collector.stats.successful == 4
