"""
Depth calibration table codec.

The coefficients table starts with a 16-byte header followed by the left
and right 3x3 intrinsic blocks (float32, little-endian). The header's
CRC32 covers everything after the header.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass

TABLE_HEADER_SIZE = 16
CRC_OFFSET = 12
# First column of the right intrinsic block: focal scales along x and y
RIGHT_FOCAL_X_OFFSET = 52
RIGHT_FOCAL_Y_OFFSET = 56
MIN_TABLE_SIZE = RIGHT_FOCAL_Y_OFFSET + 4

_HEADER = struct.Struct("<HHIII")


@dataclass(frozen=True, slots=True)
class TableHeader:
    version: int
    table_type: int
    table_size: int
    param: int
    crc32: int

    @classmethod
    def parse(cls, table: bytes) -> TableHeader:
        if len(table) < TABLE_HEADER_SIZE:
            raise ValueError(f"Calibration table too short for header: {len(table)} bytes")
        return cls(*_HEADER.unpack_from(table, 0))


def table_crc32(table: bytes) -> int:
    """CRC32 of the table body (everything after the header)."""
    if len(table) < TABLE_HEADER_SIZE:
        raise ValueError(f"Calibration table too short for header: {len(table)} bytes")
    return zlib.crc32(bytes(table[TABLE_HEADER_SIZE:])) & 0xFFFFFFFF


def crc_is_valid(table: bytes) -> bool:
    return TableHeader.parse(table).crc32 == table_crc32(table)


def with_crc(table: bytes) -> bytes:
    """Copy of `table` with the header checksum recomputed."""
    patched = bytearray(table)
    struct.pack_into("<I", patched, CRC_OFFSET, table_crc32(patched))
    return bytes(patched)


def read_right_focal_scales(table: bytes) -> tuple[float, float]:
    if len(table) < MIN_TABLE_SIZE:
        raise ValueError(f"Calibration table too short: {len(table)} bytes")
    (fx,) = struct.unpack_from("<f", table, RIGHT_FOCAL_X_OFFSET)
    (fy,) = struct.unpack_from("<f", table, RIGHT_FOCAL_Y_OFFSET)
    return fx, fy


def patch_focal_length(table: bytes, ratio: float) -> bytes:
    """
    Scale the right camera focal fields by `ratio`.

    The checksum is always recomputed, never carried over from the input.

    Args:
        table: Current calibration table
        ratio: Multiplier applied to both right focal scales

    Returns:
        Patched table of the same size
    """
    fx, fy = read_right_focal_scales(table)
    patched = bytearray(table)
    struct.pack_into("<f", patched, RIGHT_FOCAL_X_OFFSET, fx * ratio)
    struct.pack_into("<f", patched, RIGHT_FOCAL_Y_OFFSET, fy * ratio)
    return with_crc(patched)
