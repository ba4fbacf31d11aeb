# Source RCON client
# TCP + password handshake + command execution with multi-packet responses.
# Connections are never pooled: open, authenticate, run one command, close.

import itertools
import logging
import socket
import time
from enum import Enum
from typing import Optional, Tuple, Union

from config import get_bool_setting, get_float_setting
from rcon_packet import (
    AUTH_FAILED_ID,
    SERVERDATA_AUTH,
    SERVERDATA_AUTH_RESPONSE,
    SERVERDATA_EXECCOMMAND,
    SERVERDATA_RESPONSE_VALUE,
    DecodeError,
    Packet,
    decode,
    encode,
)

log = logging.getLogger(__name__)

CONNECT_TIMEOUT = get_float_setting("RCON_CONNECT_TIMEOUT", 5.0)
AUTH_TIMEOUT = get_float_setting("RCON_AUTH_TIMEOUT", 5.0)
COMMAND_TIMEOUT = get_float_setting("RCON_COMMAND_TIMEOUT", 3.0)
USE_RESPONSE_PROBE = get_bool_setting("RCON_RESPONSE_PROBE", True)

RECV_SIZE = 4096

Address = Union[str, Tuple[str, int]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


class RconError(Exception):
    """Base class for RCON failures against one server."""


class ConnectTimeout(RconError):
    """TCP connect did not complete in time."""


class ConnectRefused(RconError):
    """The server actively refused the TCP connection."""


class AuthFailed(RconError):
    """The server rejected the RCON password. Retrying with it is pointless."""


class MalformedFrame(RconError):
    """The server sent a packet that violates the size invariant."""


class ResponseTimeout(RconError):
    """Nothing was received within the read window."""


class RconTransportError(RconError):
    """Socket-level failure: reset, closed mid-handshake, unreachable host."""


class InvalidAddress(RconError, ValueError):
    """The server address cannot be connected to as written."""


def parse_address(address: Address) -> Tuple[str, int]:
    if isinstance(address, tuple):
        host, port = address
        host = str(host or "")
    else:
        host, sep, port = str(address).rpartition(":")
        if not sep:
            raise InvalidAddress(f"RCON address {address!r} must look like host:port")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        elif ":" in host:
            raise InvalidAddress(f"IPv6 address {address!r} must be bracketed, e.g. [::1]:27015")

    try:
        port = int(port)
    except (TypeError, ValueError):
        raise InvalidAddress(f"RCON address {address!r} has an invalid port") from None
    if not host.strip():
        raise InvalidAddress(f"RCON address {address!r} has no host")
    if not 0 < port < 65536:
        raise InvalidAddress(f"RCON address {address!r} has port {port} out of range")
    return host, port


class RconConnection:
    def __init__(
        self,
        address: Address,
        secret: str,
        timeout: Optional[float] = None,
        auth_timeout: Optional[float] = None,
    ):
        self.host, self.port = parse_address(address)
        self.secret = secret or ""
        self.timeout = CONNECT_TIMEOUT if timeout is None else timeout
        self.auth_timeout = AUTH_TIMEOUT if auth_timeout is None else auth_timeout
        self.state = ConnectionState.DISCONNECTED
        self.failure: Optional[RconError] = None
        self._sock: Optional[socket.socket] = None
        self._buffer = bytearray()
        self._ids = itertools.count(1)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def __enter__(self):
        if self.state is ConnectionState.DISCONNECTED:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self) -> "RconConnection":
        if self.state is not ConnectionState.DISCONNECTED:
            raise RconError(f"connection to {self.endpoint} cannot be reopened ({self.state.value})")

        self.state = ConnectionState.CONNECTING
        log.debug("RCON connecting to %s", self.endpoint)
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except socket.timeout as exc:
            error = ConnectTimeout(f"connection to {self.endpoint} timed out after {self.timeout:g}s")
            self._mark_failed(error)
            raise error from exc
        except ConnectionRefusedError as exc:
            error = ConnectRefused(f"connection to {self.endpoint} refused")
            self._mark_failed(error)
            raise error from exc
        except (OSError, UnicodeError, ValueError) as exc:
            # A hostname that fails IDNA encoding raises UnicodeError, not OSError.
            error = RconTransportError(f"failed to connect to {self.endpoint}: {exc}")
            self._mark_failed(error)
            raise error from exc

        self._sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.state = ConnectionState.AUTHENTICATING
        try:
            self._authenticate()
        except RconError as exc:
            self._mark_failed(exc)
            raise

        self.state = ConnectionState.READY
        log.debug("RCON authenticated with %s", self.endpoint)
        return self

    def _authenticate(self) -> None:
        auth_id = next(self._ids)
        self._send(auth_id, SERVERDATA_AUTH, self.secret)

        deadline = time.monotonic() + self.auth_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ResponseTimeout(f"no auth response from {self.endpoint} within {self.auth_timeout:g}s")
            packet = self._read_packet(remaining)
            if packet is None:
                raise RconTransportError(f"{self.endpoint} closed the connection during authentication")

            # Some servers send an empty RESPONSE_VALUE before the auth result.
            if packet.type != SERVERDATA_AUTH_RESPONSE:
                log.debug("Discarding packet type %d from %s during auth", packet.type, self.endpoint)
                continue
            if packet.request_id == AUTH_FAILED_ID:
                raise AuthFailed(f"{self.endpoint} rejected the RCON password")
            if packet.request_id == auth_id:
                return
            log.debug("Ignoring auth response with unexpected id %d from %s", packet.request_id, self.endpoint)

    def execute(self, command: str, timeout: Optional[float] = None, probe: Optional[bool] = None) -> str:
        """Run ``command`` and return the full response text.

        With ``probe`` enabled an empty command is sent right after the real
        one; the server answers commands in order, so its echo marks the end
        of the real response. Otherwise reading stops once the stream has
        been idle for ``timeout`` seconds or is closed.
        """
        if self.state is not ConnectionState.READY:
            raise RconError(f"connection to {self.endpoint} is not ready ({self.state.value})")
        timeout = COMMAND_TIMEOUT if timeout is None else timeout
        probe = USE_RESPONSE_PROBE if probe is None else probe

        request_id = next(self._ids)
        self._send(request_id, SERVERDATA_EXECCOMMAND, command)
        probe_id = None
        if probe:
            probe_id = next(self._ids)
            self._send(probe_id, SERVERDATA_EXECCOMMAND, "")

        chunks = []
        received = False
        terminated = False
        while True:
            try:
                packet = self._read_packet(timeout)
            except ResponseTimeout:
                break
            if packet is None:
                break
            if probe_id is not None and packet.request_id == probe_id:
                terminated = True
                break
            if packet.request_id == request_id and packet.type == SERVERDATA_RESPONSE_VALUE:
                chunks.append(packet.body)
                received = True
            else:
                log.debug("Discarding packet id=%d type=%d from %s", packet.request_id, packet.type, self.endpoint)

        if not received and not terminated:
            raise ResponseTimeout(f"no response to {command.split(' ', 1)[0]!r} from {self.endpoint} within {timeout:g}s")
        return b"".join(chunks).decode("utf-8", errors="replace")

    def close(self) -> None:
        self._close_socket()
        if self.state is not ConnectionState.FAILED:
            self.state = ConnectionState.CLOSED

    def _mark_failed(self, error: RconError) -> None:
        self.state = ConnectionState.FAILED
        self.failure = error
        self._close_socket()

    def _close_socket(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError:
            log.debug("Error closing RCON socket to %s", self.endpoint, exc_info=True)
        self._sock = None

    def _send(self, request_id: int, packet_type: int, body: str) -> None:
        data = encode(request_id, packet_type, body)
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise RconTransportError(f"write to {self.endpoint} failed: {exc}") from exc

    def _read_packet(self, timeout: float) -> Optional[Packet]:
        """Return the next packet, or None when the server closed the stream."""
        while True:
            try:
                result = decode(self._buffer)
            except DecodeError as exc:
                raise MalformedFrame(f"malformed packet from {self.endpoint}: {exc}") from exc
            if result is not None:
                packet, consumed = result
                del self._buffer[:consumed]
                return packet

            self._sock.settimeout(timeout)
            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout as exc:
                raise ResponseTimeout(f"no data from {self.endpoint} within {timeout:g}s") from exc
            except OSError as exc:
                raise RconTransportError(f"read from {self.endpoint} failed: {exc}") from exc
            if not chunk:
                return None
            self._buffer.extend(chunk)


def connect(address: Address, secret: str, timeout: Optional[float] = None) -> RconConnection:
    return RconConnection(address, secret, timeout=timeout).open()


def execute(connection: RconConnection, command: str, timeout: Optional[float] = None) -> str:
    return connection.execute(command, timeout=timeout)


def send_command(address: Address, secret: str, command: str) -> str:
    with connect(address, secret) as conn:
        response = conn.execute(command)
    log.debug("RCON %s: %s -> %d chars", conn.endpoint, command.split(" ", 1)[0], len(response))
    return response


def send_server_command(server, command: str) -> str:
    return send_command((server.address, server.port), server.rcon_secret, command)


def check_rcon(address: Address, secret: str, timeout: Optional[float] = None) -> None:
    """Connect and authenticate only; raises an RconError on failure."""
    with connect(address, secret, timeout=timeout):
        pass
