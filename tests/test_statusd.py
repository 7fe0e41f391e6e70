import os
import shlex
import sys
import threading

import psutil
import pytest

from conftest import MemoryPipe
from samba_exporter import protocol, sample_data
from samba_exporter.exceptions import StatusCommandError
from samba_exporter.protocol import (
    PipeRequester, PipeResponder, RequestType, StatusRequest
)
from samba_exporter.statusd import (
    CommandExecutor, CommandResult, StatusDaemon, list_server_processes
)


class FakeExecutor:
    """Records commands and answers with canned results."""

    def __init__(self, results=None, fail=False):
        self.results = results or {}
        self.fail = fail
        self.commands = []

    def execute(self, command):
        self.commands.append(list(command))
        if self.fail:
            return CommandResult(output=None, success=False, error_message="smbstatus: command not found")
        return CommandResult(output=self.results.get(command[1], ''), success=True)


def _fake_ps(process_name, logger):
    return [dict(entry) for entry in sample_data.PS_DATA]


def _daemon(config, logger, request_channel, response_channel, executor=None, process_lister=_fake_ps):
    responder = PipeResponder(MemoryPipe(request_channel), MemoryPipe(response_channel), logger)
    return StatusDaemon(config, logger, responder, executor or FakeExecutor(), process_lister)


def test_handle_all_request(default_config, logger, request_channel, response_channel):
    executor = FakeExecutor({
        '-L': sample_data.LOCK_DATA,
        '-S': sample_data.SHARE_DATA,
        '-p': sample_data.PROCESS_DATA,
    })
    daemon = _daemon(default_config, logger, request_channel, response_channel, executor)

    response = daemon.handle_request(StatusRequest(RequestType.ALL, 'abc'))

    assert response.success
    assert response.request_id == 'abc'
    assert response.payload == {
        'locks': sample_data.LOCK_DATA,
        'shares': sample_data.SHARE_DATA,
        'processes': sample_data.PROCESS_DATA,
        'ps': sample_data.PS_DATA,
    }
    assert executor.commands == [
        ['smbstatus', '-L', '-n'],
        ['smbstatus', '-S', '-n'],
        ['smbstatus', '-p', '-n'],
    ]


def test_handle_single_dataset(default_config, logger, request_channel, response_channel):
    executor = FakeExecutor({'-S': sample_data.SHARE_DATA})
    daemon = _daemon(default_config, logger, request_channel, response_channel, executor)

    response = daemon.handle_request(StatusRequest(RequestType.SHARES))

    assert response.payload == {'shares': sample_data.SHARE_DATA}
    assert executor.commands == [['smbstatus', '-S', '-n']]


def test_failing_command_fails_the_response(default_config, logger, request_channel, response_channel):
    daemon = _daemon(default_config, logger, request_channel, response_channel, FakeExecutor(fail=True))

    response = daemon.handle_request(StatusRequest(RequestType.ALL, 'abc'))

    assert not response.success
    assert response.request_id == 'abc'
    assert response.payload == {}
    assert "command not found" in response.error


def test_failing_process_listing(default_config, logger, request_channel, response_channel):
    def broken_lister(process_name, logger):
        raise psutil.AccessDenied(1)

    daemon = _daemon(default_config, logger, request_channel, response_channel, process_lister=broken_lister)

    with pytest.raises(StatusCommandError):
        daemon.get_dataset('ps')
    assert not daemon.handle_request(StatusRequest(RequestType.PS)).success


def test_smbstatus_command_with_arguments(write_config, logger, request_channel, response_channel):
    config = write_config({'statusd': {'smbstatus_command': '/usr/bin/sudo -n smbstatus'}}, 'samba-statusd')
    executor = FakeExecutor()
    daemon = _daemon(config, logger, request_channel, response_channel, executor)

    daemon.get_dataset('locks')

    assert executor.commands == [['/usr/bin/sudo', '-n', 'smbstatus', '-L', '-n']]


def test_test_mode_answers_sample_data(write_config, logger, request_channel, response_channel):
    config = write_config({'statusd': {'test_mode': True}}, 'samba-statusd')
    executor = FakeExecutor(fail=True)
    daemon = _daemon(config, logger, request_channel, response_channel, executor)

    response = daemon.handle_request(StatusRequest(RequestType.ALL))

    assert response.success
    assert response.payload['processes'] == sample_data.PROCESS_DATA
    assert response.payload['ps'] == sample_data.PS_DATA
    assert executor.commands == []


def test_serve_forever(write_config, logger, request_channel, response_channel):
    config = write_config({'statusd': {'test_mode': True, 'idle_poll_sec': 0.05}}, 'samba-statusd')
    daemon = _daemon(config, logger, request_channel, response_channel)
    shutdown_event = threading.Event()
    thread = threading.Thread(target=daemon.serve_forever, args=(shutdown_event,), daemon=True)
    thread.start()

    requester = PipeRequester(MemoryPipe(request_channel), MemoryPipe(response_channel), logger, 5)
    try:
        locks = requester.send(RequestType.LOCKS)
        everything = requester.send(RequestType.ALL)
    finally:
        shutdown_event.set()
        thread.join(5)

    assert not thread.is_alive()
    assert locks.payload == {'locks': sample_data.LOCK_DATA}
    assert set(everything.payload) == {'locks', 'shares', 'processes', 'ps'}
    assert daemon.requests_handled == 2
    assert not daemon.responder.request_pipe.is_open


def test_undecodable_file_name_is_replaced(write_config, logger, request_channel, response_channel):
    script = "import sys; sys.stdout.buffer.write(b'/srv/caf\\xe9\\n')"
    config = write_config(
        {'statusd': {'smbstatus_command': f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"}},
        'samba-statusd'
    )
    daemon = _daemon(config, logger, request_channel, response_channel, CommandExecutor(10, logger))

    response = daemon.handle_request(StatusRequest(RequestType.LOCKS, 'abc'))

    assert response.success
    assert response.payload == {'locks': '/srv/caf\ufffd\n'}


def test_unexpected_error_fails_the_response(default_config, logger, request_channel, response_channel):
    class BrokenExecutor:
        def execute(self, command):
            raise RuntimeError("broken pipe to smbstatus")

    daemon = _daemon(default_config, logger, request_channel, response_channel, BrokenExecutor())

    response = daemon.handle_request(StatusRequest(RequestType.ALL, 'abc'))

    assert not response.success
    assert "broken pipe to smbstatus" in response.error


def test_serve_forever_survives_oversized_response(write_config, logger, request_channel, response_channel, monkeypatch):
    monkeypatch.setattr(protocol, 'MAX_FRAME_SIZE', 200)
    config = write_config({'statusd': {'test_mode': True, 'idle_poll_sec': 0.05}}, 'samba-statusd')
    daemon = _daemon(config, logger, request_channel, response_channel)
    shutdown_event = threading.Event()
    thread = threading.Thread(target=daemon.serve_forever, args=(shutdown_event,), daemon=True)
    thread.start()

    requester = PipeRequester(MemoryPipe(request_channel), MemoryPipe(response_channel), logger, 5)
    try:
        first = requester.send(RequestType.ALL)
        second = requester.send(RequestType.LOCKS)
    finally:
        shutdown_event.set()
        thread.join(5)

    assert not first.success
    assert first.error == "Response exceeds the frame limit"
    assert not second.success
    assert daemon.requests_handled == 2

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def test_command_executor_success(logger):
    result = CommandExecutor(10, logger).execute([sys.executable, '-c', 'print("smbstatus")'])

    assert result.success
    assert result.output == "smbstatus\n"
    assert result.execution_time >= 0


def test_command_executor_exit_code(logger):
    result = CommandExecutor(10, logger).execute(
        [sys.executable, '-c', 'import sys; sys.stderr.write("denied"); sys.exit(3)']
    )

    assert not result.success
    assert result.output is None
    assert "exited with 3" in result.error_message
    assert "denied" in result.error_message


def test_command_executor_timeout(logger):
    result = CommandExecutor(0.2, logger).execute([sys.executable, '-c', 'import time; time.sleep(5)'])

    assert not result.success
    assert "timed out" in result.error_message


def test_command_executor_missing_command(logger):
    result = CommandExecutor(1, logger).execute(['/nonexistent/smbstatus', '-L'])

    assert not result.success
    assert "Failed to run" in result.error_message


def test_list_server_processes_finds_own_process(logger):
    own_name = psutil.Process().name()

    records = list_server_processes(own_name, logger)

    own = [record for record in records if record['pid'] == os.getpid()]
    assert len(own) == 1
    assert own[0]['thread_count'] >= 1
    assert own[0]['virtual_memory_usage_bytes'] > 0
    assert set(own[0]) == set(sample_data.PS_DATA[0])


def test_list_server_processes_without_match(logger):
    assert list_server_processes('no-such-process-name-for-samba', logger) == []
