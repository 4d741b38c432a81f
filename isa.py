"""ISA: CHIP-8 instruction encodings and helpers."""

from __future__ import annotations

from enum import IntEnum
from typing import NamedTuple


class OpCode(IntEnum):
    """Keeps opcodes from all operations."""

    CLS = 0  # 00E0
    RET = 1  # 00EE

    JP = 10  # 1nnn
    CALL = 11  # 2nnn

    SE_IMM = 20  # 3xnn  skip if Vx == nn
    SNE_IMM = 21  # 4xnn  skip if Vx != nn
    SE_REG = 22  # 5xy0  skip if Vx == Vy
    SNE_REG = 23  # 9xy0  skip if Vx != Vy

    LD_IMM = 30  # 6xnn  Vx = nn
    ADD_IMM = 31  # 7xnn  Vx += nn, no flag

    LD_REG = 40  # 8xy0  Vx = Vy
    AND = 42  # 8xy2
    XOR = 43  # 8xy3
    ADD_REG = 44  # 8xy4  VF = carry
    SUB = 45  # 8xy5  VF = not borrow
    SHR = 46  # 8xy6  VF = bit 0
    SUBN = 47  # 8xy7  Vx = Vy - Vx
    SHL = 48  # 8xyE  VF = bit 7

    LD_I = 50  # Annn
    RND = 51  # Cxnn
    DRW = 52  # Dxyn

    SKP = 60  # Ex9E
    SKNP = 61  # ExA1

    LD_VX_DT = 70  # Fx07
    LD_KEY = 71  # Fx0A  wait for key
    LD_DT = 72  # Fx15
    LD_ST = 73  # Fx18
    ADD_I = 74  # Fx1E
    LD_FONT = 75  # Fx29
    BCD = 76  # Fx33
    STORE_REGS = 77  # Fx55
    LOAD_REGS = 78  # Fx65


INSTR_SIZE = 2  # every instruction is one big-endian 16-bit word


class DecodeError(ValueError):
    """Raised when a 16-bit word is not a known instruction."""

    def __init__(self, word: int, pc: int | None = None) -> None:
        self.word = word
        self.pc = pc
        where = f" at 0x{pc:03X}" if pc is not None else ""
        super().__init__(f"unknown instruction 0x{word:04X}{where}")


class Instruction(NamedTuple):
    """Decoded instruction: opcode plus the operands its form uses (others are 0)."""

    op: OpCode
    x: int = 0
    y: int = 0
    n: int = 0
    nn: int = 0
    nnn: int = 0


# Decode table: (mask, pattern, opcode, operand fields).
# A word matches a row when (word & mask) == pattern; rows are scanned in order.
DECODE_TABLE: list[tuple[int, int, OpCode, tuple[str, ...]]] = [
    (0xFFFF, 0x00E0, OpCode.CLS, ()),
    (0xFFFF, 0x00EE, OpCode.RET, ()),
    (0xF000, 0x1000, OpCode.JP, ("nnn",)),
    (0xF000, 0x2000, OpCode.CALL, ("nnn",)),
    (0xF000, 0x3000, OpCode.SE_IMM, ("x", "nn")),
    (0xF000, 0x4000, OpCode.SNE_IMM, ("x", "nn")),
    (0xF00F, 0x5000, OpCode.SE_REG, ("x", "y")),
    (0xF000, 0x6000, OpCode.LD_IMM, ("x", "nn")),
    (0xF000, 0x7000, OpCode.ADD_IMM, ("x", "nn")),
    (0xF00F, 0x8000, OpCode.LD_REG, ("x", "y")),
    (0xF00F, 0x8002, OpCode.AND, ("x", "y")),
    (0xF00F, 0x8003, OpCode.XOR, ("x", "y")),
    (0xF00F, 0x8004, OpCode.ADD_REG, ("x", "y")),
    (0xF00F, 0x8005, OpCode.SUB, ("x", "y")),
    (0xF00F, 0x8006, OpCode.SHR, ("x", "y")),
    (0xF00F, 0x8007, OpCode.SUBN, ("x", "y")),
    (0xF00F, 0x800E, OpCode.SHL, ("x", "y")),
    (0xF00F, 0x9000, OpCode.SNE_REG, ("x", "y")),
    (0xF000, 0xA000, OpCode.LD_I, ("nnn",)),
    (0xF000, 0xC000, OpCode.RND, ("x", "nn")),
    (0xF000, 0xD000, OpCode.DRW, ("x", "y", "n")),
    (0xF0FF, 0xE09E, OpCode.SKP, ("x",)),
    (0xF0FF, 0xE0A1, OpCode.SKNP, ("x",)),
    (0xF0FF, 0xF007, OpCode.LD_VX_DT, ("x",)),
    (0xF0FF, 0xF00A, OpCode.LD_KEY, ("x",)),
    (0xF0FF, 0xF015, OpCode.LD_DT, ("x",)),
    (0xF0FF, 0xF018, OpCode.LD_ST, ("x",)),
    (0xF0FF, 0xF01E, OpCode.ADD_I, ("x",)),
    (0xF0FF, 0xF029, OpCode.LD_FONT, ("x",)),
    (0xF0FF, 0xF033, OpCode.BCD, ("x",)),
    (0xF0FF, 0xF055, OpCode.STORE_REGS, ("x",)),
    (0xF0FF, 0xF065, OpCode.LOAD_REGS, ("x",)),
]

# opcode -> (pattern, fields); used by encode_instr
_ENCODINGS: dict[OpCode, tuple[int, tuple[str, ...]]] = {op: (pat, fields) for _, pat, op, fields in DECODE_TABLE}


def decode_instr(b1: int, b2: int) -> Instruction:
    """Decode two opcode bytes into an Instruction.

    Raises DecodeError when the word matches no row of DECODE_TABLE.
    """
    word = ((b1 & 0xFF) << 8) | (b2 & 0xFF)
    x = b1 & 0xF
    nn = b2 & 0xFF
    fields = {
        "x": x,
        "y": nn >> 4,
        "n": nn & 0xF,
        "nn": nn,
        "nnn": (x << 8) | nn,
    }
    for mask, pattern, op, used in DECODE_TABLE:
        if word & mask == pattern:
            return Instruction(op, **{name: fields[name] for name in used})
    raise DecodeError(word)


def encode_instr(op: OpCode, x: int = 0, y: int = 0, n: int = 0, nn: int = 0, nnn: int = 0) -> bytes:
    """Encode instruction into 2 big-endian bytes.

    Operands the opcode does not use are ignored.
    """
    pattern, used = _ENCODINGS[op]
    word = pattern
    if "nnn" in used:
        word |= nnn & 0xFFF
    if "x" in used:
        word |= (x & 0xF) << 8
    if "y" in used:
        word |= (y & 0xF) << 4
    if "nn" in used:
        word |= nn & 0xFF
    if "n" in used:
        word |= n & 0xF
    return word.to_bytes(2, "big")


_MNEMONIC_FORMATS: dict[OpCode, str] = {
    OpCode.CLS: "CLS",
    OpCode.RET: "RET",
    OpCode.JP: "JP 0x{nnn:03X}",
    OpCode.CALL: "CALL 0x{nnn:03X}",
    OpCode.SE_IMM: "SE V{x:X}, 0x{nn:02X}",
    OpCode.SNE_IMM: "SNE V{x:X}, 0x{nn:02X}",
    OpCode.SE_REG: "SE V{x:X}, V{y:X}",
    OpCode.SNE_REG: "SNE V{x:X}, V{y:X}",
    OpCode.LD_IMM: "LD V{x:X}, 0x{nn:02X}",
    OpCode.ADD_IMM: "ADD V{x:X}, 0x{nn:02X}",
    OpCode.LD_REG: "LD V{x:X}, V{y:X}",
    OpCode.AND: "AND V{x:X}, V{y:X}",
    OpCode.XOR: "XOR V{x:X}, V{y:X}",
    OpCode.ADD_REG: "ADD V{x:X}, V{y:X}",
    OpCode.SUB: "SUB V{x:X}, V{y:X}",
    OpCode.SHR: "SHR V{x:X}",
    OpCode.SUBN: "SUBN V{x:X}, V{y:X}",
    OpCode.SHL: "SHL V{x:X}",
    OpCode.LD_I: "LD I, 0x{nnn:03X}",
    OpCode.RND: "RND V{x:X}, 0x{nn:02X}",
    OpCode.DRW: "DRW V{x:X}, V{y:X}, {n}",
    OpCode.SKP: "SKP V{x:X}",
    OpCode.SKNP: "SKNP V{x:X}",
    OpCode.LD_VX_DT: "LD V{x:X}, DT",
    OpCode.LD_KEY: "LD V{x:X}, K",
    OpCode.LD_DT: "LD DT, V{x:X}",
    OpCode.LD_ST: "LD ST, V{x:X}",
    OpCode.ADD_I: "ADD I, V{x:X}",
    OpCode.LD_FONT: "LD F, V{x:X}",
    OpCode.BCD: "LD B, V{x:X}",
    OpCode.STORE_REGS: "LD [I], V{x:X}",
    OpCode.LOAD_REGS: "LD V{x:X}, [I]",
}


def mnemonic(instr: Instruction) -> str:
    """Get operation mnemonic."""
    return _MNEMONIC_FORMATS[instr.op].format(**instr._asdict())


def disassemble(blob: bytes, start: int = 0) -> list[tuple[int, str, str]]:
    """Disassemble a byte blob loaded at address `start`.

    Returns (address, hex bytes, text) tuples. Words that do not decode are
    listed as data (DW), a trailing odd byte as DB.
    """
    lines: list[tuple[int, str, str]] = []
    pc = 0
    while pc < len(blob):
        chunk = blob[pc : pc + INSTR_SIZE]
        if len(chunk) < INSTR_SIZE:
            lines.append((start + pc, chunk.hex().upper(), f"DB 0x{chunk[0]:02X}"))
            break
        hexbytes = chunk.hex().upper()
        try:
            text = mnemonic(decode_instr(chunk[0], chunk[1]))
        except DecodeError:
            text = f"DW 0x{hexbytes}"
        lines.append((start + pc, hexbytes, text))
        pc += INSTR_SIZE
    return lines
