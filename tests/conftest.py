import socket
from datetime import datetime, timezone

import pytest

import rcon_client
from ban_models import BAN_KIND_IP, BanRecord, ServerTarget
from http_client import StoreWriteFailure
from rcon_packet import (
    AUTH_FAILED_ID,
    SERVERDATA_AUTH,
    SERVERDATA_AUTH_RESPONSE,
    SERVERDATA_EXECCOMMAND,
    SERVERDATA_RESPONSE_VALUE,
    encode,
    iter_packets,
)


class FakeSocket:
    """Socket double that answers each sent packet through ``responder``.

    When nothing is queued, ``recv`` behaves like an idle server and times
    out, unless ``eof`` is set, in which case it reports a closed stream.
    """

    def __init__(self, responder, chunk_size=None, eof=False):
        self.responder = responder
        self.chunk_size = chunk_size
        self.eof = eof
        self.sent = []
        self.timeouts = []
        self.closed = False
        self._inbound = b""
        self._outbound = bytearray()

    def setsockopt(self, *args):
        pass

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendall(self, data):
        packets, self._inbound = iter_packets(self._inbound + data)
        for packet in packets:
            self.sent.append(packet)
            for reply in self.responder(packet) or []:
                self._outbound.extend(reply)

    def recv(self, size):
        if not self._outbound:
            if self.eof:
                return b""
            raise socket.timeout("timed out")
        size = min(size, self.chunk_size or size)
        chunk = bytes(self._outbound[:size])
        del self._outbound[:size]
        return chunk

    def close(self):
        self.closed = True


def source_server(password="secret", responses=None, fragment=None, empty_ack=True, echo_probe=True):
    """Responder that behaves like a Source dedicated server."""
    responses = responses or {}

    def respond(packet):
        if packet.type == SERVERDATA_AUTH:
            body = packet.body.decode("utf-8")
            replies = []
            if empty_ack:
                replies.append(encode(packet.request_id, SERVERDATA_RESPONSE_VALUE, b""))
            if body == password:
                replies.append(encode(packet.request_id, SERVERDATA_AUTH_RESPONSE, b""))
            else:
                replies.append(encode(AUTH_FAILED_ID, SERVERDATA_AUTH_RESPONSE, b""))
            return replies
        if packet.type == SERVERDATA_EXECCOMMAND:
            command = packet.body.decode("utf-8")
            if command == "":
                if not echo_probe:
                    return []
                return [encode(packet.request_id, SERVERDATA_RESPONSE_VALUE, b"")]
            text = responses.get(command, "").encode("utf-8")
            if fragment and text:
                pieces = [text[i:i + fragment] for i in range(0, len(text), fragment)]
            else:
                pieces = [text]
            return [encode(packet.request_id, SERVERDATA_RESPONSE_VALUE, piece) for piece in pieces]
        return []

    return respond


@pytest.fixture
def fake_connect(monkeypatch):
    """Route ``socket.create_connection`` in rcon_client to FakeSockets.

    Returns a function that installs a responder and yields the list of
    sockets created so far.
    """
    created = []

    def install(responder, **kwargs):
        def create_connection(address, timeout=None):
            sock = FakeSocket(responder, **kwargs)
            sock.address = address
            sock.connect_timeout = timeout
            created.append(sock)
            return sock

        monkeypatch.setattr(rcon_client.socket, "create_connection", create_connection)
        return created

    return install


class FakeStore:
    def __init__(self, ip_bans=(), identities=(), fail_inserts=False):
        self.ip_bans = list(ip_bans)
        self.identities = set(identities)
        self.fail_inserts = fail_inserts
        self.inserted = []
        self.ip_ban_loads = 0

    def list_active_ip_bans(self):
        self.ip_ban_loads += 1
        return list(self.ip_bans)

    def list_active_identities_with_bans(self):
        return set(self.identities)

    def insert_ban(self, record):
        if self.fail_inserts:
            raise StoreWriteFailure("database unavailable")
        self.inserted.append(record)
        return len(self.inserted)


class FakeRegistry:
    def __init__(self, servers):
        self.servers = list(servers)

    def list_servers(self):
        return list(self.servers)


class FakeRcon:
    """Records commands per server; ``status`` answers come from ``outputs``."""

    def __init__(self, outputs=None, failing=(), failing_commands=()):
        self.outputs = outputs or {}
        self.failing = set(failing)
        self.failing_commands = tuple(failing_commands)
        self.calls = []

    def __call__(self, server, command):
        self.calls.append((server.id, command))
        if server.id in self.failing:
            raise rcon_client.ConnectRefused(f"connection to {server.endpoint} refused")
        if self.failing_commands and command.startswith(self.failing_commands):
            raise rcon_client.ResponseTimeout("no response")
        if command == "status":
            return self.outputs.get(server.id, "")
        return ""

    def commands(self, prefix):
        return [c for c in self.calls if c[1].startswith(prefix)]


@pytest.fixture
def server():
    return ServerTarget(id=1, address="198.51.100.7", port=27015, rcon_secret="secret", name="Surf #1")


@pytest.fixture
def ip_ban():
    return BanRecord(
        id=10,
        display_name="Original",
        identity="STEAM_0:0:999",
        ip="192.0.2.5",
        ban_kind=BAN_KIND_IP,
        reason="cheating",
        duration_token="60",
        expires_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
    )
