"""Tests for the Socket.IO transport wrapper."""

import pytest
import socketio

from job_sync.errors import AuthenticationError, TransportError
from job_sync.ws.transport import SocketIOTransport, split_socket_url


@pytest.mark.parametrize(
    "url,expected",
    [
        ("http://localhost:9092", ("http://localhost:9092", "/socket.io")),
        ("https://example.com/socket", ("https://example.com", "/socket/socket.io")),
        ("https://example.com/socket/", ("https://example.com", "/socket/socket.io")),
        ("https://example.com/api/socket.io", ("https://example.com", "/api/socket.io")),
        ("localhost:9092", ("localhost:9092", "/socket.io")),
    ],
)
def test_split_socket_url(url, expected):
    assert split_socket_url(url) == expected


def test_inbound_events_reach_bound_callback():
    transport = SocketIOTransport("https://example.com/socket")
    received, drops = [], []
    transport.bind(lambda name, payload: received.append((name, payload)), drops.append)

    transport._dispatch("job:progress", {"id": "j1", "progress": 3})
    transport._dispatch("pong")
    transport._disconnected("ping timeout")

    assert received == [("job:progress", {"id": "j1", "progress": 3}), ("pong", None)]
    assert drops == ["ping timeout"]

    transport.unbind()
    transport._dispatch("job:progress", {"id": "j1", "progress": 4})
    assert len(received) == 2


@pytest.mark.asyncio
async def test_emit_requires_open_session():
    transport = SocketIOTransport("http://localhost:9092")
    assert not transport.connected
    with pytest.raises(TransportError):
        await transport.emit("subscribe", {"room": "jobs:all"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message,expected",
    [
        ("Unauthorized", AuthenticationError),
        ("HTTP 403 Forbidden", AuthenticationError),
        ("One or more namespaces failed to connect: 401", AuthenticationError),
        ("oauth proxy unavailable", TransportError),
        ("Connection refused by the server", TransportError),
    ],
)
async def test_open_classifies_connect_failures(monkeypatch, message, expected):
    async def refuse(self, *args, **kwargs):
        raise socketio.exceptions.ConnectionError(message)

    monkeypatch.setattr(socketio.AsyncClient, "connect", refuse)
    transport = SocketIOTransport("http://localhost:9092")

    with pytest.raises(expected) as info:
        await transport.open("tok", timeout=0.1)

    assert type(info.value) is expected
    assert not transport.connected
