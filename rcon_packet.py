# Source RCON packet codec
# [size:i32][request_id:i32][type:i32][body][0x00][0x00], little endian.
# size counts everything after itself: 4 (id) + 4 (type) + body + 2 NULs.

import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

SERVERDATA_RESPONSE_VALUE = 0
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_AUTH = 3

AUTH_FAILED_ID = -1

_HEADER = struct.Struct("<iii")
_SIZE = struct.Struct("<i")
MIN_PACKET_SIZE = 8


class PacketError(Exception):
    """Base class for codec failures."""


class EncodeError(PacketError):
    """The body cannot be represented on the wire."""


class DecodeError(PacketError):
    """The buffer does not hold a well-formed packet."""


@dataclass(frozen=True)
class Packet:
    request_id: int
    type: int
    body: bytes = b""

    @property
    def size(self) -> int:
        return MIN_PACKET_SIZE + len(self.body) + 2

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def encode(request_id: int, packet_type: int, body: Union[str, bytes] = b"") -> bytes:
    if isinstance(body, str):
        body = body.encode("utf-8")
    if b"\x00" in body:
        raise EncodeError("packet body must not contain NUL bytes")
    size = MIN_PACKET_SIZE + len(body) + 2
    return _HEADER.pack(size, request_id, packet_type) + body + b"\x00\x00"


def decode(buffer: bytes) -> Optional[Tuple[Packet, int]]:
    """Decode the first packet in ``buffer``.

    Returns ``(packet, consumed)`` or ``None`` when the buffer does not yet
    hold a complete packet. Bytes past ``consumed`` belong to the next packet
    and are left to the caller.
    """
    if len(buffer) < _SIZE.size:
        return None
    (size,) = _SIZE.unpack_from(buffer, 0)
    if size < MIN_PACKET_SIZE:
        raise DecodeError(f"packet size {size} is below the minimum of {MIN_PACKET_SIZE}")
    total = _SIZE.size + size
    if len(buffer) < total:
        return None
    request_id, packet_type = struct.unpack_from("<ii", buffer, _SIZE.size)
    # Terminators are normally two NULs, but some servers send one or none.
    body = bytes(buffer[_HEADER.size:total]).rstrip(b"\x00")
    return Packet(request_id, packet_type, body), total


def iter_packets(buffer: bytes) -> Tuple[List[Packet], bytes]:
    """Split every complete packet off ``buffer``; returns ``(packets, tail)``."""
    packets = []
    offset = 0
    view = memoryview(buffer)
    while True:
        result = decode(view[offset:])
        if result is None:
            break
        packet, consumed = result
        packets.append(packet)
        offset += consumed
    return packets, bytes(view[offset:])
