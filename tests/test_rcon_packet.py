import struct

import pytest

from rcon_packet import (
    SERVERDATA_AUTH,
    SERVERDATA_EXECCOMMAND,
    SERVERDATA_RESPONSE_VALUE,
    DecodeError,
    EncodeError,
    Packet,
    decode,
    encode,
    iter_packets,
)


def test_encode_layout():
    data = encode(7, SERVERDATA_AUTH, "pw")
    assert data == struct.pack("<iii", 12, 7, 3) + b"pw\x00\x00"


def test_encode_empty_body_has_size_ten():
    data = encode(1, SERVERDATA_EXECCOMMAND, "")
    assert struct.unpack_from("<i", data)[0] == 10
    assert len(data) == 14


def test_encode_rejects_embedded_nul():
    with pytest.raises(EncodeError):
        encode(1, SERVERDATA_EXECCOMMAND, "say a\x00b")


@pytest.mark.parametrize("body", ["status", "", "héllo wörld", "x" * 4000])
def test_round_trip(body):
    data = encode(42, SERVERDATA_RESPONSE_VALUE, body)
    packet, consumed = decode(data)
    assert consumed == len(data)
    assert packet == Packet(42, SERVERDATA_RESPONSE_VALUE, body.encode("utf-8"))
    assert packet.size == len(data) - 4


def test_negative_request_id_round_trips():
    packet, _ = decode(encode(-1, 2, b""))
    assert packet.request_id == -1


def test_decode_byte_by_byte_waits_for_full_packet():
    data = encode(5, SERVERDATA_RESPONSE_VALUE, "hello")
    trailing = b"\x01\x02"
    for cut in range(len(data)):
        assert decode(data[:cut]) is None
    stream = data + trailing
    packet, consumed = decode(stream)
    assert packet.body == b"hello"
    assert consumed == len(data)
    assert stream[consumed:] == trailing


def test_decode_rejects_small_size():
    with pytest.raises(DecodeError):
        decode(struct.pack("<iii", 4, 1, 0))


def test_decode_accepts_missing_terminators():
    data = struct.pack("<iii", 8, 3, 0)
    packet, consumed = decode(data)
    assert packet.body == b""
    assert consumed == 12


def test_iter_packets_splits_concatenated_and_keeps_tail():
    first = encode(1, SERVERDATA_RESPONSE_VALUE, "a")
    second = encode(2, SERVERDATA_RESPONSE_VALUE, "b")
    third = encode(3, SERVERDATA_RESPONSE_VALUE, "c")
    packets, tail = iter_packets(first + second + third[:5])
    assert [p.request_id for p in packets] == [1, 2]
    assert tail == third[:5]
    packets, tail = iter_packets(tail + third[5:])
    assert [p.body for p in packets] == [b"c"]
    assert tail == b""


def test_packet_text_is_lossy():
    assert Packet(1, 0, b"ok \xff").text() == "ok �"
