#!/usr/bin/env python3
"""
Generate out_code_hex (disassembly listing) for a golden YAML.
Usage: python generate_golden_fields.py path/to/golden.yaml
"""

import os
import sys

import yaml

from isa import disassemble
from processor import PROGRAM_START


def rom_from_hex(text):
    """Turn the golden `in_rom` text (hex, whitespace allowed) into bytes."""
    return bytes.fromhex(" ".join(str(text).split()))


def build_code_hex(rom):
    return "\n".join(f"{addr:03X} - {hexbytes} - {text}" for addr, hexbytes, text in disassemble(rom, PROGRAM_START))


def main(path):
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)

    if not doc or "in_rom" not in doc:
        print("No 'in_rom' found in YAML — nothing to disassemble")
        sys.exit(2)

    rom = rom_from_hex(doc["in_rom"])

    if "expect" not in doc:
        doc["expect"] = {}
    doc["expect"]["out_code_hex"] = build_code_hex(rom)

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_code_hex ({len(rom)} ROM bytes).")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml")
        sys.exit(1)
    main(sys.argv[1])
