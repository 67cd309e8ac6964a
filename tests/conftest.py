import base64
import json
import os
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List

import pytest

import outboundiq.client as client_module
from outboundiq import Client
from outboundiq.models import ApiCall

VALID_API_KEY = 'test_key_12345678901234567890123456789012'


def decode_body(body: bytes) -> List[Dict[str, Any]]:
    """Decode a delivered payload back into the list of records."""
    return json.loads(base64.b64decode(body))


def make_call(**overrides: Any) -> ApiCall:
    """Shortcut for a valid record."""
    values = {
        'url': 'https://api.example.com/users',
        'method': 'GET',
        'duration': 12.5,
        'status_code': 200,
        **overrides,
    }
    return ApiCall.create(**values)


class IngestHandler(BaseHTTPRequestHandler):
    """Records POSTed payloads and answers GETs with a canned JSON body."""

    server: 'IngestServer'  # type: ignore[assignment]

    def do_POST(self) -> None:
        length = int(self.headers.get('Content-Length', 0))
        body = self.rfile.read(length)
        self.server.payloads.append({
            'path': self.path,
            'headers': dict(self.headers),
            'body': body,
        })

        self.send_response(self.server.response_status)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(b'{"accepted": true}')

    def do_GET(self) -> None:
        self.server.requests.append({'path': self.path, 'headers': dict(self.headers)})

        self.send_response(self.server.response_status)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(self.server.get_body)

    def log_message(self, *args: Any) -> None:
        pass


class IngestServer(HTTPServer):
    payloads: List[Dict[str, Any]]
    requests: List[Dict[str, Any]]
    response_status: int
    get_body: bytes


@pytest.fixture
def api_key() -> str:
    return VALID_API_KEY


@pytest.fixture
def ingest_server():
    """Start a local HTTP server in a thread, yield (server, url)."""
    server = IngestServer(('127.0.0.1', 0), IngestHandler)
    server.payloads = []
    server.requests = []
    server.response_status = 200
    server.get_body = b'{"status": "ok"}'
    port = server.server_address[1]
    url = f"http://127.0.0.1:{port}"

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield server, url

    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


@pytest.fixture
def make_client(ingest_server):
    """Factory for clients delivering synchronously to the test server."""
    server, url = ingest_server
    clients: List[Client] = []

    def _make(**overrides: Any) -> Client:
        options = {
            'base_url': url,
            'endpoint': f"{url}/v1/metrics",
            'transport': 'sync',
            'buffer_size': 100,
            'flush_interval': 3600,  # no time-based flushes in tests
            'retry_attempts': 0,
            'register_shutdown': False,
            **overrides,
        }
        api_key = options.pop('api_key', VALID_API_KEY)
        c = Client(api_key, **options)
        clients.append(c)
        return c

    yield _make, server, url

    for c in clients:
        c.close()


def wait_for(predicate, timeout: float = 10.0) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def fake_curl(tmp_path):
    """Executable standing in for curl that saves its stdin, yield (path, capture)."""
    if os.name != 'posix':
        pytest.skip('needs a POSIX shell')
    capture = tmp_path / 'captured'
    script = tmp_path / 'curl'
    script.write_text(f'#!/bin/sh\ncat > "{capture}.part" && mv "{capture}.part" "{capture}"\n')
    script.chmod(0o755)
    return str(script), capture


@pytest.fixture
def silent_collector():
    """A listening socket that never answers, yield its URL."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    sock.listen(16)
    yield f"http://127.0.0.1:{sock.getsockname()[1]}"
    sock.close()


@pytest.fixture(autouse=True)
def reset_default_client():
    yield
    if client_module.default_client is not None:
        client_module.default_client.close()
    client_module.default_client = None
