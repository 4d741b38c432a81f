"""Processor (Datapath + ControlUnit) and CLI wrapper.

Provides CHIP-8 execution driven one 60 Hz tick at a time, logging
initialization and optional debug output files (out.bin / out.hex)
emitted when debug logging is enabled.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
from pathlib import Path
from typing import Any

from config import TIMER_HZ, ConfigError, load_config
from devices import Audio, Graphics, LogAudio, NullGraphics
from isa import INSTR_SIZE, DecodeError, Instruction, OpCode, decode_instr, disassemble, mnemonic

LOGFILE = "emulator.log"

MEM_SIZE = 4096
PROGRAM_START = 0x200
MAX_ROM_SIZE = MEM_SIZE - PROGRAM_START

WIDTH = 64
HEIGHT = 32

NUM_REGISTERS = 16
NUM_KEYS = 16
VF = 0xF

FONT_BASE = 0x50
FONT_SIZE = 5  # bytes per glyph
FONTS = bytes(
    [
        0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
        0x20, 0x60, 0x20, 0x20, 0x70,  # 1
        0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
        0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
        0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
        0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
        0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
        0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
        0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
        0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
        0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
        0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
        0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
        0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
        0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
        0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
    ]
)  # fmt: skip


class MachineError(RuntimeError):
    """Base class for faults that halt the machine."""


class MemoryAccessError(MachineError):
    """Raised for an address range outside memory."""


class StackUnderflowError(MachineError):
    """Raised on RET with an empty call stack."""


class RomTooLargeError(MachineError):
    """Raised when a ROM does not fit above PROGRAM_START."""


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level (one line per executed instruction).
    If console=True also echo logs to stdout.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.INFO
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


# --- debug output helpers ---
def _flush_logging_handlers() -> None:
    for h in list(logging.getLogger().handlers):
        h.flush()


def _write_out_bin(rom: bytes) -> None:
    try:
        with open("out.bin", "wb") as f:
            f.write(rom)
    except OSError as e:
        logging.debug("Failed to write out.bin: %s", e)


def _write_out_hex(rom: bytes) -> None:
    lines = [f"{addr:03X} - {hexbytes} - {text}" for addr, hexbytes, text in disassemble(rom, PROGRAM_START)]
    try:
        with open("out.hex", "w", encoding="utf-8") as f:
            f.write("\n".join(lines))
    except OSError as e:
        logging.debug("Failed to write out.hex: %s", e)


def _write_debug_out_files(rom: bytes) -> None:
    _flush_logging_handlers()
    _write_out_bin(rom)
    _write_out_hex(rom)


class Datapath:
    """Datapath (memory + registers + timers + framebuffer + key latch)."""

    memory: bytearray
    V: list[int]
    I: int  # noqa: E741
    PC: int
    stack: list[int]

    delay_timer: int
    sound_timer: int
    beeping: bool

    pixels: list[list[bool]]

    key_pressed: int | None
    waiting_register: int | None

    rom_len: int
    tick: int
    halted: bool
    lenient_log: bool

    def __init__(self, rom: bytes = b"", lenient_log: bool = False) -> None:
        """Initialize Datapath state, font table and (optionally) the ROM."""
        self.memory = bytearray(MEM_SIZE)
        self.memory[FONT_BASE : FONT_BASE + len(FONTS)] = FONTS

        self.V = [0] * NUM_REGISTERS
        self.I = 0
        self.PC = PROGRAM_START
        self.stack = []

        self.delay_timer = 0
        self.sound_timer = 0
        self.beeping = False

        self.pixels = [[False] * WIDTH for _ in range(HEIGHT)]

        self.key_pressed = None
        self.waiting_register = None

        self.rom_len = 0
        self.tick = 0
        self.halted = False
        self.lenient_log = bool(lenient_log)

        if rom:
            self.load_rom(rom)

    def load_rom(self, rom: bytes) -> None:
        """Copy `rom` into memory at PROGRAM_START.

        Raises RomTooLargeError (memory untouched) when it doesn't fit.
        """
        if len(rom) > MAX_ROM_SIZE:
            err = f"ROM is {len(rom)} bytes, at most {MAX_ROM_SIZE} fit into memory"
            raise RomTooLargeError(err)
        self.memory[PROGRAM_START : PROGRAM_START + len(rom)] = rom
        self.rom_len = len(rom)
        logging.debug("Datapath: loaded %d ROM bytes at 0x%03X", len(rom), PROGRAM_START)

    def _check_range(self, addr: int, length: int) -> None:
        if addr < 0 or length < 0 or addr + length > MEM_SIZE:
            err = f"memory access out of range: 0x{addr:X}..0x{addr + length:X} (size 0x{MEM_SIZE:X})"
            raise MemoryAccessError(err)

    def read_byte(self, addr: int) -> int:
        """Read one byte. Raises MemoryAccessError out of range."""
        self._check_range(addr, 1)
        return self.memory[addr]

    def write_byte(self, addr: int, value: int) -> None:
        """Write one byte (masked to 8 bits). Raises MemoryAccessError out of range."""
        self._check_range(addr, 1)
        self.memory[addr] = value & 0xFF

    def read_block(self, addr: int, length: int) -> bytes:
        """Read `length` bytes starting at `addr`."""
        self._check_range(addr, length)
        return bytes(self.memory[addr : addr + length])

    def write_block(self, addr: int, data: bytes) -> None:
        """Write `data` starting at `addr`; nothing is written when out of range."""
        self._check_range(addr, len(data))
        self.memory[addr : addr + len(data)] = data

    # --- call-stack helpers (return-address stack) ---
    def call_push(self, value: int) -> None:
        """Push a return address onto the call stack."""
        self.stack.append(value)

    def call_pop(self) -> int:
        """Pop a return address. Raises StackUnderflowError when empty."""
        if not self.stack:
            err = f"return with empty call stack at 0x{self.PC:03X}"
            raise StackUnderflowError(err)
        return self.stack.pop()


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath.

    The host calls `tick()` at 60 Hz; each tick decrements the timers once and
    runs `clock_hz // 60` instructions unless a key wait is pending.
    """

    dp: Datapath
    graphics: Graphics
    audio: Audio
    instructions_per_tick: int
    rng: random.Random

    def __init__(
        self,
        dp: Datapath,
        graphics: Graphics | None = None,
        audio: Audio | None = None,
        clock_hz: int = 700,
        seed: int | None = None,
    ) -> None:
        """Create a ControlUnit bound to `dp`."""
        if clock_hz < TIMER_HZ:
            err = f"clock_hz must be at least {TIMER_HZ}, got {clock_hz}"
            raise ValueError(err)
        self.dp = dp
        self.graphics = graphics if graphics is not None else NullGraphics()
        self.audio = audio if audio is not None else LogAudio()
        self.instructions_per_tick = clock_hz // TIMER_HZ
        self.rng = random.Random(seed)

    @property
    def state(self) -> str:
        """Return "waiting_for_key" while a key wait is pending, else "running"."""
        return "waiting_for_key" if self.dp.waiting_register is not None else "running"

    def _log_step(self, pc: int, instr: Instruction) -> None:
        # skip verbose per-step logs in lenient mode to reduce log size
        if self.dp.lenient_log or not logging.getLogger().isEnabledFor(logging.DEBUG):
            return
        dp = self.dp
        regs = " ".join(f"{v:02X}" for v in dp.V)
        logging.debug(
            "TICK: %4d PC: 0x%03X I: 0x%03X V: [%s] DT: %3d ST: %3d SP: %2d\tINSTR: %s",
            dp.tick,
            pc,
            dp.I,
            regs,
            dp.delay_timer,
            dp.sound_timer,
            len(dp.stack),
            mnemonic(instr),
        )

    # --- input latch ---
    def handle_key_pressed(self, key: int) -> None:
        """Latch `key` (0..15) and resolve a pending key wait."""
        if not 0 <= key < NUM_KEYS:
            err = f"key must be in range 0..{NUM_KEYS - 1}, got {key}"
            raise ValueError(err)
        dp = self.dp
        dp.key_pressed = key
        if dp.waiting_register is not None:
            dp.V[dp.waiting_register] = key
            logging.debug("key %X pressed -> V%X, resuming", key, dp.waiting_register)
            dp.waiting_register = None
        else:
            logging.debug("key %X pressed", key)

    def handle_key_released(self) -> None:
        """Clear the latched key; a pending key wait stays pending."""
        self.dp.key_pressed = None
        logging.debug("key released")

    # --- clock / timers ---
    def _update_beeper(self) -> None:
        dp = self.dp
        if dp.sound_timer > 0 and not dp.beeping:
            self.audio.start_beep()
            dp.beeping = True
        elif dp.sound_timer == 0 and dp.beeping:
            self.audio.stop_beep()
            dp.beeping = False

    def tick(self) -> int:
        """Run one 60 Hz tick and return the number of executed instructions."""
        dp = self.dp
        dp.delay_timer = max(dp.delay_timer - 1, 0)
        dp.sound_timer = max(dp.sound_timer - 1, 0)

        executed = 0
        for _ in range(self.instructions_per_tick):
            if dp.waiting_register is not None:
                break
            self.step()
            executed += 1
        if executed == 0:
            # stalled on a key wait: the sound timer may still run out
            self._update_beeper()
        dp.tick += 1
        return executed

    def step(self) -> Instruction:
        """Fetch, decode and execute a single instruction."""
        dp = self.dp
        pc = dp.PC
        b1, b2 = dp.read_block(pc, INSTR_SIZE)
        try:
            instr = decode_instr(b1, b2)
        except DecodeError as e:
            raise DecodeError(e.word, pc) from None
        self._log_step(pc, instr)
        self.exec(instr)
        self._update_beeper()
        return instr

    def run(
        self,
        tick_limit: int,
        schedule: list[tuple[int, int | None]] | None = None,
        stop_on_halt: bool = True,
    ) -> tuple[int, str]:
        """Run up to `tick_limit` ticks, replaying a key schedule.

        `schedule` holds (tick, key) events applied before that tick runs;
        key None means release. Returns (ticks run, state) where state is
        "halted" when stopped on a jump-to-self.
        """
        dp = self.dp
        pending = sorted(schedule or [], key=lambda e: e[0])
        ticks = 0
        while ticks < tick_limit:
            while pending and pending[0][0] <= dp.tick:
                _, key = pending.pop(0)
                if key is None:
                    self.handle_key_released()
                else:
                    self.handle_key_pressed(key)
            self.tick()
            ticks += 1
            if stop_on_halt and dp.halted:
                logging.debug("[tick %d] jump to self at 0x%03X -> halted", dp.tick - 1, dp.PC)
                return ticks, "halted"
        return ticks, self.state

    def exec(self, instr: Instruction) -> None:
        """Execute a single instruction and advance PC.

        JP and CALL set PC directly; everything else advances by one
        instruction once it has executed without error.
        """
        dp = self.dp
        op = instr.op
        if op == OpCode.JP:
            if instr.nnn == dp.PC:
                dp.halted = True
            dp.PC = instr.nnn
            return
        if op == OpCode.CALL:
            dp.call_push(dp.PC)
            dp.PC = instr.nnn
            return
        self._exec_in_place(instr)
        dp.PC += INSTR_SIZE

    def _skip_if(self, cond: bool) -> None:
        if cond:
            self.dp.PC += INSTR_SIZE

    def _exec_in_place(self, instr: Instruction) -> None:  # noqa: C901
        dp = self.dp
        op = instr.op
        V = dp.V
        x, y = instr.x, instr.y

        if op == OpCode.CLS:
            for py, row in enumerate(dp.pixels):
                for px, on in enumerate(row):
                    if on:
                        self.graphics.clear_pixel(px, py)
            dp.pixels = [[False] * WIDTH for _ in range(HEIGHT)]
            return
        if op == OpCode.RET:
            dp.PC = dp.call_pop()
            return

        if op == OpCode.SE_IMM:
            self._skip_if(V[x] == instr.nn)
            return
        if op == OpCode.SNE_IMM:
            self._skip_if(V[x] != instr.nn)
            return
        if op == OpCode.SE_REG:
            self._skip_if(V[x] == V[y])
            return
        if op == OpCode.SNE_REG:
            self._skip_if(V[x] != V[y])
            return

        if op == OpCode.LD_IMM:
            V[x] = instr.nn
            return
        if op == OpCode.ADD_IMM:
            V[x] = (V[x] + instr.nn) & 0xFF
            return

        if op == OpCode.LD_REG:
            V[x] = V[y]
            return
        if op == OpCode.AND:
            V[x] &= V[y]
            return
        if op == OpCode.XOR:
            V[x] ^= V[y]
            return
        if op == OpCode.ADD_REG:
            total = V[x] + V[y]
            V[x] = total & 0xFF
            V[VF] = 1 if total > 0xFF else 0
            return
        if op == OpCode.SUB:
            no_borrow = V[x] >= V[y]
            V[x] = (V[x] - V[y]) & 0xFF
            V[VF] = 1 if no_borrow else 0
            return
        if op == OpCode.SUBN:
            no_borrow = V[y] >= V[x]
            V[x] = (V[y] - V[x]) & 0xFF
            V[VF] = 1 if no_borrow else 0
            return
        if op == OpCode.SHR:
            V[VF] = V[x] & 0x01
            V[x] >>= 1
            return
        if op == OpCode.SHL:
            V[VF] = (V[x] >> 7) & 0x01
            V[x] = (V[x] << 1) & 0xFF
            return

        if op == OpCode.LD_I:
            dp.I = instr.nnn
            return
        if op == OpCode.RND:
            V[x] = self.rng.randrange(256) & instr.nn
            return
        if op == OpCode.DRW:
            self._draw_sprite(x, y, instr.n)
            return

        if op == OpCode.SKP:
            self._skip_if(dp.key_pressed == V[x])
            return
        if op == OpCode.SKNP:
            self._skip_if(dp.key_pressed != V[x])
            return

        if op == OpCode.LD_VX_DT:
            V[x] = dp.delay_timer
            return
        if op == OpCode.LD_KEY:
            dp.waiting_register = x
            logging.debug("waiting for key -> V%X", x)
            return
        if op == OpCode.LD_DT:
            dp.delay_timer = V[x]
            return
        if op == OpCode.LD_ST:
            dp.sound_timer = V[x]
            return
        if op == OpCode.ADD_I:
            total = dp.I + V[x]
            dp.I = total & 0xFFFF
            if total > 0xFFF:
                V[VF] = 1
            return
        if op == OpCode.LD_FONT:
            dp.I = FONT_BASE + V[x] * FONT_SIZE
            return
        if op == OpCode.BCD:
            v = V[x]
            dp.write_block(dp.I, bytes([v // 100, (v % 100) // 10, v % 10]))
            return
        if op == OpCode.STORE_REGS:
            dp.write_block(dp.I, bytes(V[: x + 1]))
            return
        if op == OpCode.LOAD_REGS:
            V[: x + 1] = dp.read_block(dp.I, x + 1)
            return

        err = f"unhandled opcode: {op.name}"
        raise MachineError(err)

    def _draw_sprite(self, x: int, y: int, n: int) -> None:
        """XOR an n-row sprite from memory at I onto the screen at (Vx, Vy).

        Rows and columns are clipped at the right and bottom edges.
        """
        dp = self.dp
        rows = dp.read_block(dp.I, n)
        ox = dp.V[x] % WIDTH
        py = dp.V[y] % HEIGHT
        dp.V[VF] = 0
        collision = False
        for row in rows:
            px = ox
            for bit in range(7, -1, -1):
                if (row >> bit) & 1:
                    if dp.pixels[py][px]:
                        dp.pixels[py][px] = False
                        self.graphics.clear_pixel(px, py)
                        collision = True
                    else:
                        dp.pixels[py][px] = True
                        self.graphics.draw_pixel(px, py)
                px += 1
                if px == WIDTH:
                    break
            py += 1
            if py == HEIGHT:
                break
        if collision:
            dp.V[VF] = 1


def render_screen(pixels: list[list[bool]], on: str = "#", off: str = ".") -> str:
    """Render the framebuffer as text, one line per row."""
    return "\n".join("".join(on if p else off for p in row) for row in pixels)


def parse_schedule_file(path: str) -> list[tuple[int, int | None]]:
    """Parse key schedule file with lines "<tick> <key>".

    <key> is a hex digit (press) or "-" (release). Blank lines and lines
    starting with "#" are ignored. Returns list of (tick, key or None).
    """
    result: list[tuple[int, int | None]] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 2:
                err = f"Bad schedule line: {line!r}"
                raise ValueError(err)
            try:
                tick = int(parts[0])
                key = None if parts[1] == "-" else int(parts[1], 16)
            except ValueError as e:
                err = f"Bad schedule line: {line!r}"
                raise ValueError(err) from e
            if tick < 0 or (key is not None and not 0 <= key < NUM_KEYS):
                err = f"Bad schedule line (out of range): {line!r}"
                raise ValueError(err)
            result.append((tick, key))
    return result


# ---------- Public API ----------
def run_rom(
    rom: bytes,
    config: dict[str, Any] | None = None,
    schedule: list[tuple[int, int | None]] | None = None,
    graphics: Graphics | None = None,
    audio: Audio | None = None,
) -> tuple[str, int, str]:
    """Run a ROM headless and return (screen, ticks, state)."""
    cfg = load_config(config)
    dp = Datapath(rom, lenient_log=cfg["lenient_log"])
    cu = ControlUnit(dp, graphics, audio, clock_hz=cfg["clock_hz"], seed=cfg["seed"])
    ticks, state = cu.run(cfg["tick_limit"], schedule, stop_on_halt=cfg["stop_on_halt"])
    logging.info("stopped after %d ticks, state=%s, PC=0x%03X", ticks, state, dp.PC)

    if logging.getLogger().getEffectiveLevel() == logging.DEBUG:
        _write_debug_out_files(rom)

    return render_screen(dp.pixels), ticks, state


# ---------- CLI ----------
def main(argv: list[str] | None = None) -> int:
    """Headless CHIP-8 runner."""
    ap = argparse.ArgumentParser(
        description="Headless CHIP-8 runner. Runs a ROM for a number of 60 Hz ticks and prints the final screen."
    )
    ap.add_argument("rom", help="CHIP-8 program binary")
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--clock", type=int, default=None, help="instructions per second (default 700)")
    ap.add_argument("--ticks", type=int, default=None, help="maximum number of 60 Hz ticks to run")
    ap.add_argument("--seed", type=int, default=None, help="seed for the RND instruction")
    ap.add_argument(
        "--key-schedule",
        default=None,
        help="key schedule file. Each non-empty line: '<tick> <hex key>' or '<tick> -' for release",
    )
    ap.add_argument("--debug", action="store_true", help="enable debug logging (per-instruction state)")
    ap.add_argument("--logfile", default=LOGFILE, help="path to emulator log")
    ap.add_argument("--console", action="store_true", help="also echo logs to console")
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
        overrides = {"clock_hz": args.clock, "tick_limit": args.ticks, "seed": args.seed}
        cfg = load_config({**cfg, **{k: v for k, v in overrides.items() if v is not None}})
    except ConfigError as e:
        print("Bad config:", e)
        return 2

    sched: list[tuple[int, int | None]] = []
    if args.key_schedule:
        if not Path(args.key_schedule).exists():
            print("Key schedule file not found:", args.key_schedule)
            return 2
        try:
            sched = parse_schedule_file(args.key_schedule)
        except ValueError as e:
            print("Bad key schedule:", e)
            return 2

    rom_path = Path(args.rom)
    if not rom_path.exists():
        print("ROM file not found:", args.rom)
        return 2
    rom = rom_path.read_bytes()

    try:
        screen, ticks, state = run_rom(rom, cfg, sched)
    except (MachineError, DecodeError) as e:
        logging.exception("emulation failed")
        print("Emulation failed:", e)
        return 1

    sys.stdout.write(screen)
    sys.stdout.write("\n")
    sys.stdout.write(f"TICKS: {ticks} STATE: {state}")
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
