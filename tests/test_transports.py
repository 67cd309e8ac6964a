"""Tests for the delivery transports."""
import base64
import json
import os
import shutil
import subprocess
import time
from unittest.mock import MagicMock

import pytest
import requests

from outboundiq import config
from outboundiq.configuration import TRANSPORT_NAMES, Configuration
from outboundiq.exceptions import ConfigurationError
from outboundiq.transports import (
    TRANSPORTS,
    AsyncTransport,
    DeliveryOutcome,
    QueueTransport,
    SyncTransport,
    Transport,
    create_transport,
    deliver_batch,
)
from outboundiq.transports import async_transport, sync_transport
from conftest import decode_body, make_call, wait_for

ENDPOINT = 'https://collector.example.com/v1/metrics'
CURL = '/usr/bin/curl'


@pytest.fixture
def batch():
    return [make_call().to_dict(), make_call(url='https://api.example.com/orders', method='POST').to_dict()]


@pytest.fixture
def popen(monkeypatch):
    monkeypatch.setattr(async_transport.shutil, 'which', lambda name: CURL)
    mock = MagicMock()
    monkeypatch.setattr(async_transport.subprocess, 'Popen', mock)
    return mock


@pytest.fixture
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(config, 'RETRY_DELAY', 0)


def async_config(api_key, tmp_path, **options):
    return Configuration(api_key, endpoint=ENDPOINT, transport='async', temp_dir=str(tmp_path), **options)


class TestRegistry:
    def test_every_transport_name_registered(self):
        assert set(TRANSPORTS) == set(TRANSPORT_NAMES)

    def test_file_is_alias_of_async(self, api_key, tmp_path, popen):
        transport = create_transport(Configuration(api_key, transport='file', temp_dir=str(tmp_path)))
        assert isinstance(transport, AsyncTransport)

    def test_queue_receives_dispatcher(self, api_key):
        dispatcher = MagicMock()
        transport = create_transport(Configuration(api_key, transport='queue'), dispatcher)
        assert isinstance(transport, QueueTransport)
        assert transport.dispatcher is dispatcher

    def test_encode_is_base64_json(self, batch):
        decoded = base64.b64decode(Transport.encode(batch)).decode('utf-8')
        assert json.loads(decoded) == batch
        assert '": ' not in decoded
        assert ', "' not in decoded

    def test_encode_rejects_unserializable(self):
        with pytest.raises(TypeError):
            Transport.encode([{'value': object()}])


class TestAsyncTransport:
    def test_requires_curl(self, api_key, tmp_path, monkeypatch):
        monkeypatch.setattr(async_transport.shutil, 'which', lambda name: None)
        with pytest.raises(ConfigurationError, match='curl'):
            AsyncTransport(async_config(api_key, tmp_path))

    def test_requires_temp_dir(self, api_key, tmp_path, popen):
        with pytest.raises(ConfigurationError, match='not writable'):
            AsyncTransport(async_config(api_key, tmp_path / 'missing'))

    def test_build_command(self, api_key, tmp_path, popen):
        transport = AsyncTransport(async_config(api_key, tmp_path))
        command = transport.build_command(['--data', 'abc'])

        assert command[:5] == [CURL, '-X', 'POST', '--ipv4', '--silent']
        assert f"Authorization: Bearer {api_key}" in command
        assert 'Content-Type: application/json' in command
        assert command[command.index('--max-time') + 1] == '5'
        assert command[command.index('--connect-timeout') + 1] == '2.5'
        assert command[command.index('--retry') + 1] == '3'
        assert command[-3:] == ['--data', 'abc', ENDPOINT]

    def test_small_payload_inline(self, api_key, tmp_path, popen, batch):
        transport = AsyncTransport(async_config(api_key, tmp_path))
        assert transport.send(batch) is DeliveryOutcome.DELEGATED

        args, kwargs = popen.call_args
        command = args[0]
        assert command[0] == CURL
        assert command[command.index('--data') + 1] == Transport.encode(batch)
        assert kwargs['start_new_session'] is True
        assert kwargs['stdout'] is subprocess.DEVNULL
        assert os.listdir(tmp_path) == []

    def test_payload_at_limit_stays_inline(self, api_key, tmp_path, popen):
        batch = [make_call(request_body='x' * 2000).to_dict()]
        size = len(Transport.encode(batch))

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=size))
        transport.send(batch)

        assert '--data' in popen.call_args[0][0]
        assert os.listdir(tmp_path) == []

    def test_payload_over_limit_uses_temp_file(self, api_key, tmp_path, popen):
        batch = [make_call(request_body='x' * 2000).to_dict()]
        encoded = Transport.encode(batch)

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=len(encoded) - 1))
        assert transport.send(batch) is DeliveryOutcome.DELEGATED

        files = os.listdir(tmp_path)
        assert len(files) == 1
        assert files[0].startswith('oiq_')
        path = os.path.join(str(tmp_path), files[0])
        with open(path) as f:
            assert f.read() == encoded

        shell, flag, script = popen.call_args[0][0]
        assert (shell, flag) == ('/bin/sh', '-c')
        assert f"--data-binary @{path}" in script
        assert script.endswith(f"rm -f {path}")

    def test_spawn_failure_cleans_up(self, api_key, tmp_path, popen):
        popen.side_effect = OSError('fork failed')
        batch = [make_call(request_body='x' * 2000).to_dict()]
        encoded = Transport.encode(batch)

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=len(encoded) - 1))
        assert transport.send(batch) is DeliveryOutcome.FAILED
        assert os.listdir(tmp_path) == []

    def test_payload_over_argument_size_piped(self, api_key, tmp_path, popen):
        batch = [make_call(request_body='x' * 200000).to_dict()]
        encoded = Transport.encode(batch)
        assert config.MAX_INLINE_ARG_SIZE < len(encoded) < 1048576

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=1048576))
        assert transport.send(batch) is DeliveryOutcome.DELEGATED

        args, kwargs = popen.call_args
        command = args[0]
        assert command[-3:] == ['--data-binary', '@-', ENDPOINT]
        assert '--data' not in command
        assert kwargs['stdin'] is subprocess.PIPE
        stdin = popen.return_value.stdin
        stdin.write.assert_called_once_with(encoded.encode('ascii'))
        stdin.close.assert_called_once()
        assert os.listdir(tmp_path) == []

    def test_broken_pipe_fails(self, api_key, tmp_path, popen):
        popen.return_value.stdin.write.side_effect = BrokenPipeError('curl exited')
        batch = [make_call(request_body='x' * 200000).to_dict()]

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=1048576))
        assert transport.send(batch) is DeliveryOutcome.FAILED
        popen.return_value.stdin.close.assert_called_once()

    def test_piped_payload_reaches_process(self, api_key, tmp_path, monkeypatch, fake_curl):
        script, capture = fake_curl
        monkeypatch.setattr(async_transport.shutil, 'which', lambda name: script)
        batch = [make_call(request_body='x' * 200000).to_dict()]

        transport = AsyncTransport(async_config(api_key, tmp_path, max_payload_size=1048576))
        assert transport.send(batch) is DeliveryOutcome.DELEGATED

        assert wait_for(capture.exists)
        assert capture.read_text() == Transport.encode(batch)

    @pytest.mark.skipif(shutil.which('curl') is None, reason='curl is not installed')
    def test_large_batch_delivered_by_curl(self, api_key, ingest_server, tmp_path):
        server, url = ingest_server
        c = Configuration(
            api_key, base_url=url, transport='async', temp_dir=str(tmp_path),
            max_payload_size=1048576, retry_attempts=0
        )
        batch = [make_call(request_body='x' * 200000).to_dict()]

        assert AsyncTransport(c).send(batch) is DeliveryOutcome.DELEGATED
        assert wait_for(lambda: server.payloads)
        assert decode_body(server.payloads[0]['body']) == batch


class TestSyncTransport:
    def test_delivered(self, api_key, monkeypatch, batch):
        post = MagicMock(return_value=MagicMock(status_code=202))
        monkeypatch.setattr(sync_transport.requests, 'post', post)
        c = Configuration(api_key, endpoint=ENDPOINT, transport='sync')

        assert SyncTransport(c).send(batch) is DeliveryOutcome.DELIVERED

        args, kwargs = post.call_args
        assert args[0] == ENDPOINT
        assert kwargs['data'] == Transport.encode(batch)
        assert kwargs['headers'] == c.headers()
        assert kwargs['timeout'] == (c.connect_timeout(), c.timeout - c.connect_timeout())
        assert kwargs['verify'] is True

    def test_http_error_not_retried(self, api_key, monkeypatch, batch, no_retry_delay):
        post = MagicMock(return_value=MagicMock(status_code=500, text='internal error'))
        monkeypatch.setattr(sync_transport.requests, 'post', post)
        c = Configuration(api_key, endpoint=ENDPOINT, transport='sync', retry_attempts=2)

        assert SyncTransport(c).send(batch) is DeliveryOutcome.FAILED
        assert post.call_count == 1

    def test_connection_error_retried(self, api_key, monkeypatch, batch, no_retry_delay):
        post = MagicMock(side_effect=requests.ConnectionError('refused'))
        monkeypatch.setattr(sync_transport.requests, 'post', post)
        c = Configuration(api_key, endpoint=ENDPOINT, transport='sync', retry_attempts=2)

        assert SyncTransport(c).send(batch) is DeliveryOutcome.FAILED
        assert post.call_count == 3

    def test_recovers_after_retry(self, api_key, monkeypatch, batch, no_retry_delay):
        post = MagicMock(side_effect=[requests.Timeout('slow'), MagicMock(status_code=200)])
        monkeypatch.setattr(sync_transport.requests, 'post', post)
        c = Configuration(api_key, endpoint=ENDPOINT, transport='sync', retry_attempts=1)

        assert SyncTransport(c).send(batch) is DeliveryOutcome.DELIVERED
        assert post.call_count == 2

    def test_retries_stop_once_timeout_elapsed(self, api_key, silent_collector, batch, no_retry_delay):
        c = Configuration(
            api_key, endpoint=f"{silent_collector}/v1/metrics", transport='sync',
            timeout=1, retry_attempts=5
        )

        start = time.monotonic()
        assert SyncTransport(c).send(batch) is DeliveryOutcome.FAILED
        assert time.monotonic() - start < 2 * c.timeout

    def test_against_server(self, api_key, ingest_server, batch):
        server, url = ingest_server
        c = Configuration(api_key, base_url=url, transport='sync', retry_attempts=0)

        assert SyncTransport(c).send(batch) is DeliveryOutcome.DELIVERED
        assert decode_body(server.payloads[0]['body']) == batch


class TestQueueTransport:
    def test_dispatches_batch_and_snapshot(self, api_key, batch):
        dispatcher = MagicMock()
        c = Configuration(api_key, endpoint=ENDPOINT, transport='queue')
        transport = QueueTransport(c, dispatcher=dispatcher)

        assert transport.has_dispatcher()
        assert transport.send(batch) is DeliveryOutcome.DELEGATED
        dispatcher.assert_called_once_with(batch, c.snapshot())

    def test_dispatcher_failure(self, api_key, batch):
        dispatcher = MagicMock(side_effect=RuntimeError('queue down'))
        c = Configuration(api_key, endpoint=ENDPOINT, transport='queue')
        assert QueueTransport(c, dispatcher=dispatcher).send(batch) is DeliveryOutcome.FAILED

    def test_fallback_matches_sync_wire_format(self, api_key, ingest_server, batch):
        server, url = ingest_server
        c = Configuration(api_key, base_url=url, transport='queue', retry_attempts=0)

        transport = QueueTransport(c)
        assert not transport.has_dispatcher()
        assert transport.send(batch) is DeliveryOutcome.DELIVERED
        assert SyncTransport(c).send(batch) is DeliveryOutcome.DELIVERED

        queued, direct = server.payloads
        assert queued['body'] == direct['body']
        assert queued['headers']['Authorization'] == direct['headers']['Authorization']

    def test_set_dispatcher(self, api_key):
        transport = QueueTransport(Configuration(api_key, transport='queue'))
        transport.set_dispatcher(MagicMock())
        assert transport.has_dispatcher()
        transport.set_dispatcher(None)
        assert not transport.has_dispatcher()

    def test_deliver_batch_from_worker(self, api_key, ingest_server, batch):
        server, url = ingest_server
        dispatched = []
        c = Configuration(api_key, base_url=url, transport='queue', retry_attempts=0)
        QueueTransport(c, dispatcher=lambda b, s: dispatched.append((b, s))).send(batch)

        # Round trip through a queue serializer
        job = json.loads(json.dumps(dispatched[0]))
        assert deliver_batch(*job) is DeliveryOutcome.DELIVERED
        assert decode_body(server.payloads[0]['body']) == batch
