"""Decoding of Hermes binary price updates.

Hermes returns Pyth accumulator updates ("PNAU"): a Wormhole VAA that signs a
merkle root, followed by one ``(message, proof)`` pair per requested feed. All
integers on the wire are big-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from .errors import NoAttestationData

ACCUMULATOR_MAGIC = b"PNAU"
ACCUMULATOR_MAJOR_VERSION = 1
UPDATE_TYPE_WORMHOLE_MERKLE = 0
PRICE_FEED_MESSAGE_TYPE = 0
VAA_SIGNATURE_SIZE = 66
MERKLE_NODE_SIZE = 20


def _read(fmt: str, data: bytes, offset: int) -> int:
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise NoAttestationData(f"attestation truncated: need {size} bytes at offset {offset}, have {len(data)}")
    return struct.unpack_from(fmt, data, offset)[0]


def read_u8(data: bytes, offset: int = 0) -> int:
    return _read(">B", data, offset)


def read_u16_be(data: bytes, offset: int = 0) -> int:
    return _read(">H", data, offset)


def read_u32_be(data: bytes, offset: int = 0) -> int:
    return _read(">I", data, offset)


def read_u64_be(data: bytes, offset: int = 0) -> int:
    return _read(">Q", data, offset)


def read_i32_be(data: bytes, offset: int = 0) -> int:
    return _read(">i", data, offset)


def read_i64_be(data: bytes, offset: int = 0) -> int:
    return _read(">q", data, offset)


def read_bytes(data: bytes, offset: int, length: int) -> bytes:
    if length < 0 or offset + length > len(data):
        raise NoAttestationData(
            f"attestation truncated: need {length} bytes at offset {offset}, have {len(data)}"
        )
    return bytes(data[offset : offset + length])


@dataclass(slots=True, frozen=True)
class MerkleUpdate:
    message: bytes
    proof: tuple[bytes, ...]


@dataclass(slots=True, frozen=True)
class AccumulatorUpdate:
    major_version: int
    minor_version: int
    vaa: bytes
    updates: tuple[MerkleUpdate, ...]


@dataclass(slots=True, frozen=True)
class VaaHeader:
    version: int
    guardian_set_index: int
    signature_count: int
    body: bytes


@dataclass(slots=True, frozen=True)
class PriceFeedMessage:
    feed_id: bytes
    price: int
    conf: int
    exponent: int
    publish_time: int
    prev_publish_time: int
    ema_price: int
    ema_conf: int

    @property
    def feed_id_hex(self) -> str:
        return self.feed_id.hex()


def parse_accumulator_update(data: bytes) -> AccumulatorUpdate:
    if read_bytes(data, 0, 4) != ACCUMULATOR_MAGIC:
        raise NoAttestationData("attestation is not an accumulator update (bad magic)")

    major = read_u8(data, 4)
    minor = read_u8(data, 5)
    if major != ACCUMULATOR_MAJOR_VERSION:
        raise NoAttestationData(f"unsupported accumulator version {major}.{minor}")

    offset = 6
    trailing_header_size = read_u8(data, offset)
    offset += 1 + trailing_header_size

    update_type = read_u8(data, offset)
    offset += 1
    if update_type != UPDATE_TYPE_WORMHOLE_MERKLE:
        raise NoAttestationData(f"unsupported accumulator update type {update_type}")

    vaa_length = read_u16_be(data, offset)
    offset += 2
    vaa = read_bytes(data, offset, vaa_length)
    offset += vaa_length

    update_count = read_u8(data, offset)
    offset += 1

    updates: list[MerkleUpdate] = []
    for _ in range(update_count):
        message_size = read_u16_be(data, offset)
        offset += 2
        message = read_bytes(data, offset, message_size)
        offset += message_size

        proof_length = read_u8(data, offset)
        offset += 1
        proof: list[bytes] = []
        for _ in range(proof_length):
            proof.append(read_bytes(data, offset, MERKLE_NODE_SIZE))
            offset += MERKLE_NODE_SIZE
        updates.append(MerkleUpdate(message=message, proof=tuple(proof)))

    if offset != len(data):
        raise NoAttestationData(f"attestation has {len(data) - offset} trailing bytes")

    return AccumulatorUpdate(major_version=major, minor_version=minor, vaa=vaa, updates=tuple(updates))


def parse_vaa_header(vaa: bytes) -> VaaHeader:
    version = read_u8(vaa, 0)
    guardian_set_index = read_u32_be(vaa, 1)
    signature_count = read_u8(vaa, 5)
    body_offset = 6 + signature_count * VAA_SIGNATURE_SIZE
    if body_offset > len(vaa):
        raise NoAttestationData("VAA truncated inside guardian signatures")
    return VaaHeader(
        version=version,
        guardian_set_index=guardian_set_index,
        signature_count=signature_count,
        body=bytes(vaa[body_offset:]),
    )


def parse_price_feed_message(message: bytes) -> PriceFeedMessage:
    message_type = read_u8(message, 0)
    if message_type != PRICE_FEED_MESSAGE_TYPE:
        raise NoAttestationData(f"unexpected message type {message_type}")
    return PriceFeedMessage(
        feed_id=read_bytes(message, 1, 32),
        price=read_i64_be(message, 33),
        conf=read_u64_be(message, 41),
        exponent=read_i32_be(message, 49),
        publish_time=read_i64_be(message, 53),
        prev_publish_time=read_i64_be(message, 61),
        ema_price=read_i64_be(message, 69),
        ema_conf=read_u64_be(message, 77),
    )


def find_feed_update(update: AccumulatorUpdate, feed_id: bytes) -> tuple[MerkleUpdate, PriceFeedMessage]:
    for merkle_update in update.updates:
        message = parse_price_feed_message(merkle_update.message)
        if message.feed_id == feed_id:
            return merkle_update, message
    raise NoAttestationData(f"attestation carries no update for feed {feed_id.hex()}")
