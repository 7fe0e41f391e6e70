from pathlib import Path

import pytest

from samba_exporter.config import DEFAULT_CONFIG_PATH, ProgramConfig, ProgramSource
from samba_exporter.exceptions import ConfigurationError


def test_defaults(default_config):
    assert default_config.request_pipe == Path('/run/samba_exporter.request.pipe')
    assert default_config.response_pipe == Path('/run/samba_exporter.response.pipe')
    assert default_config.metrics_port == 9922
    assert default_config.namespace == 'samba'
    assert default_config.machine_label is False
    assert default_config.smbstatus_command == 'smbstatus'
    assert default_config.process_name == 'smbd'
    assert default_config.test_mode is False
    assert default_config.loaded_from is None
    assert default_config.running_under_systemd is False


def test_source():
    source = ProgramSource('samba-statusd')

    assert source.logger_name == 'samba_statusd'
    assert source.config_path == DEFAULT_CONFIG_PATH
    assert ProgramSource('samba-statusd', Path('/tmp/x.yml')).config_path == Path('/tmp/x.yml')


def test_file_merges_over_defaults(write_config):
    config = write_config({
        'pipes': {'request': '/tmp/req.pipe', 'response': '/tmp/resp.pipe', 'group': 'samba-exporter'},
        'exporter': {'metrics_port': 9123, 'response_timeout_sec': 2.5},
        'logging': {'level': 'verbose'},
    })

    assert config.request_pipe == Path('/tmp/req.pipe')
    assert config.pipe_group == 'samba-exporter'
    assert config.pipe_mode == 0o660
    assert config.metrics_port == 9123
    assert config.response_timeout == 2.5
    assert config.namespace == 'samba'
    assert config.command_timeout == 10
    assert config.logging['level'] == 'VERBOSE'
    assert config.logging['console_level'] == 'INFO'
    assert config.loaded_from is not None


def test_empty_file(write_config):
    config = write_config(None)

    assert config.metrics_port == 9922


@pytest.mark.parametrize('mode, expected', [
    (0o640, 0o640),
    ('0o600', 0o600),
    ('660', 0o660),
])
def test_pipe_mode(write_config, mode, expected):
    assert write_config({'pipes': {'mode': mode}}).pipe_mode == expected


def test_missing_explicit_file(tmp_path):
    config = ProgramConfig(ProgramSource('samba-exporter', tmp_path / 'missing.yml'))

    with pytest.raises(ConfigurationError):
        config.load()


@pytest.mark.parametrize('settings', [
    ['not', 'a', 'mapping'],
    {'unknown_section': {}},
    {'pipes': 'not a dict'},
    {'pipes': {'request': '/tmp/same.pipe', 'response': '/tmp/same.pipe'}},
    {'pipes': {'request': ''}},
    {'pipes': {'mode': 'rw-rw----'}},
    {'pipes': {'mode': 0o1777}},
    {'exporter': {'metrics_port': 0}},
    {'exporter': {'metrics_port': 70000}},
    {'exporter': {'metrics_port': '9922'}},
    {'exporter': {'namespace': 'samba-server'}},
    {'exporter': {'response_timeout_sec': 0}},
    {'statusd': {'smbstatus_command': ''}},
    {'statusd': {'command_timeout_sec': -1}},
    {'statusd': {'idle_poll_sec': True}},
    {'logging': {'level': 'LOUD'}},
])
def test_invalid_settings(write_config, settings):
    with pytest.raises(ConfigurationError):
        write_config(settings)


def test_invalid_yaml(tmp_path):
    path = tmp_path / 'broken.yml'
    path.write_text("pipes: [unclosed\n")
    config = ProgramConfig(ProgramSource('samba-exporter', path))

    with pytest.raises(ConfigurationError):
        config.load()


def test_failed_load_keeps_previous_values(write_config, tmp_path):
    config = write_config({'exporter': {'metrics_port': 9500}})
    (tmp_path / 'samba_exporter.yml').write_text("exporter:\n  metrics_port: -1\n")

    with pytest.raises(ConfigurationError):
        config.load()
    assert config.metrics_port == 9500


def test_systemd_detection(monkeypatch):
    monkeypatch.setenv('INVOCATION_ID', 'abc123')

    assert ProgramConfig(ProgramSource('samba-exporter')).running_under_systemd is True
