#!/usr/bin/env python3
"""
Autocalib CLI - offline helpers for depth camera self-calibration.

Usage:
    autocalib patch-fl TABLE RATIO OUT   - Scale right focal fields, rewrite CRC
    autocalib crc TABLE                  - Show stored and computed table CRC
    autocalib health CODE                - Decode a packed on-chip health code
    autocalib config get FILE KEY        - Read a persisted setting
    autocalib config set FILE KEY VALUE  - Write a persisted setting
    autocalib --help                     - Show this help
"""

import logging
import sys
from pathlib import Path


def _patch_fl(args: list[str]) -> int:
    from autocalib.table import patch_focal_length, read_right_focal_scales, table_crc32

    if len(args) != 3:
        print("Usage: autocalib patch-fl TABLE RATIO OUT")
        return 1

    table = Path(args[0]).read_bytes()
    patched = patch_focal_length(table, float(args[1]))
    Path(args[2]).write_bytes(patched)

    fx, fy = read_right_focal_scales(patched)
    print(f"Right focal scales: {fx:.6f}, {fy:.6f}")
    print(f"CRC32: 0x{table_crc32(patched):08X}")
    return 0


def _crc(args: list[str]) -> int:
    from autocalib.table import TableHeader, table_crc32

    if len(args) != 1:
        print("Usage: autocalib crc TABLE")
        return 1

    table = Path(args[0]).read_bytes()
    stored = TableHeader.parse(table).crc32
    computed = table_crc32(table)
    print(f"Stored:   0x{stored:08X}")
    print(f"Computed: 0x{computed:08X}")
    return 0 if stored == computed else 2


def _health(args: list[str]) -> int:
    from autocalib.health import (
        FL_THRESHOLD,
        OCC_THRESHOLD,
        classify_health,
        decode_packed_health,
    )

    if len(args) != 1:
        print("Usage: autocalib health CODE")
        return 1

    h1, h2 = decode_packed_health(int(args[0], 0))
    print(f"Health 1: {h1:+.3f} ({classify_health(h1, OCC_THRESHOLD)})")
    print(f"Health 2: {h2:+.3f} ({classify_health(h2, FL_THRESHOLD)})")
    return 0


def _config(args: list[str]) -> int:
    from autocalib.config import TomlConfigStore

    if len(args) == 3 and args[0] == "get":
        value = TomlConfigStore(Path(args[1])).get(args[2])
        if value is None:
            print(f"{args[2]} is not set")
            return 1
        print(value)
        return 0

    if len(args) == 4 and args[0] == "set":
        raw = args[3]
        try:
            value = float(raw) if "." in raw else int(raw)
        except ValueError:
            value = raw
        TomlConfigStore(Path(args[1])).set(args[2], value)
        return 0

    print("Usage: autocalib config get FILE KEY | config set FILE KEY VALUE")
    return 1


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(__doc__)
        return 0

    command = sys.argv[1]
    args = sys.argv[2:]

    if command == "patch-fl":
        return _patch_fl(args)

    elif command == "crc":
        return _crc(args)

    elif command == "health":
        return _health(args)

    elif command == "config":
        return _config(args)

    else:
        print(f"Unknown command: {command}")
        print("Run 'autocalib --help' for usage")
        return 1


if __name__ == "__main__":
    sys.exit(main())
