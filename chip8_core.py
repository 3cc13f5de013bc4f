"""
Chip-8 virtual machine core

Holds the whole machine state (memory, registers, call stack, timers,
framebuffer and keypad) and the fetch/decode/execute cycle. Nothing here
touches a window, a sound device or a file: a host feeds it a program,
calls tick() a few times per frame, tick_timers() once per frame and reads
the display back.

Failures (bad fetch, stack over/underflow, unknown opcode, out of range
I-relative access) are raised as Chip8Error subclasses from tick(); the
host decides what to do with them.

Quirks:
- 8XY6 / 8XYE shift VX in place and ignore VY. Pass shift_vy=True for the
  original COSMAC behaviour (VX = VY shifted).
- FX55 / FX65 leave I alone. Pass legacy_store=True to have I advance.
- BNNN always uses V0 as the offset.
"""
from __future__ import annotations
import logging
import random
from dataclasses import dataclass, field
from typing import List, Tuple

logger = logging.getLogger(__name__)

# ==============================
# Constants
# ==============================
MEM_SIZE = 4096
START_ADDRESS = 0x200
FONT_ADDRESS = 0x000
SCREEN_W, SCREEN_H = 64, 32
NUM_REGS = 16
STACK_SIZE = 16
NUM_KEYS = 16
MAX_PROGRAM_SIZE = MEM_SIZE - START_ADDRESS

# Classic CHIP-8 4x5 font (each char 5 bytes)
FONTSET = [
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
    0xF0, 0x80, 0xF0, 0x80, 0x80   # F
]
FONT_GLYPH_SIZE = 5


# ==============================
# Errors
# ==============================
class Chip8Error(Exception):
    """Base class for everything tick() can raise."""


class OutOfBoundsFetch(Chip8Error):
    def __init__(self, pc: int):
        self.pc = pc
        super().__init__(f"Instruction fetch out of memory at PC {pc:04X}")


class StackOverflow(Chip8Error):
    def __init__(self, pc: int):
        self.pc = pc
        super().__init__(
            f"Stack overflow: more than {STACK_SIZE} nested calls at PC {pc:03X}")


class StackUnderflow(Chip8Error):
    def __init__(self, pc: int):
        self.pc = pc
        super().__init__(f"Stack underflow on RET at PC {pc:03X}")


class UnknownOpcode(Chip8Error):
    def __init__(self, opcode: int, pc: int):
        self.opcode = opcode
        self.pc = pc
        super().__init__(f"Unknown opcode: {opcode:04X} at PC {pc:03X}")


class OutOfBoundsAccess(Chip8Error):
    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Memory access out of range at address {address:04X}")


def _fresh_memory() -> bytearray:
    memory = bytearray(MEM_SIZE)
    memory[FONT_ADDRESS:FONT_ADDRESS + len(FONTSET)] = bytes(FONTSET)
    return memory


def decode(opcode: int) -> Tuple[int, int, int, int]:
    """Split an opcode into its four nibbles, most significant first."""
    return ((opcode >> 12) & 0xF, (opcode >> 8) & 0xF,
            (opcode >> 4) & 0xF, opcode & 0xF)


@dataclass
class Machine:
    # if True, 8XY6/8XYE shift VY into VX (original COSMAC quirk)
    shift_vy: bool = field(default=False, compare=False)
    # if True, FX55/FX65 increment I (original quirk)
    legacy_store: bool = field(default=False, compare=False)
    memory: bytearray = field(default_factory=_fresh_memory)
    V: List[int] = field(default_factory=lambda: [0] * NUM_REGS)  # V0..VF
    I: int = 0
    pc: int = START_ADDRESS
    sp: int = 0
    stack: List[int] = field(default_factory=lambda: [0] * STACK_SIZE)
    delay_timer: int = 0
    sound_timer: int = 0
    display: List[bool] = field(default_factory=lambda: [
                                False] * (SCREEN_W * SCREEN_H))
    keys: List[bool] = field(default_factory=lambda: [False] * NUM_KEYS)
    rng: random.Random = field(default_factory=random.Random,
                               compare=False, repr=False)

    # =============== Host interface ===============
    def load(self, data: bytes):
        """Copy a program into memory at 0x200. Nothing else is touched."""
        if len(data) > MAX_PROGRAM_SIZE:
            raise ValueError(
                f"ROM is too large for memory ({len(data)} bytes, "
                f"at most {MAX_PROGRAM_SIZE})")
        self.memory[START_ADDRESS:START_ADDRESS + len(data)] = data
        logger.debug("Loaded %d bytes at %03X", len(data), START_ADDRESS)

    def reset(self):
        self.memory = _fresh_memory()
        self.V = [0] * NUM_REGS
        self.I = 0
        self.pc = START_ADDRESS
        self.sp = 0
        self.stack = [0] * STACK_SIZE
        self.delay_timer = 0
        self.sound_timer = 0
        self.display = [False] * (SCREEN_W * SCREEN_H)
        self.keys = [False] * NUM_KEYS
        logger.debug("Machine reset")

    def tick(self):
        """Run one fetch/execute cycle."""
        opcode = self.fetch()
        self.execute(opcode)

    def tick_timers(self):
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    def run_frame(self, ticks_per_frame: int = 7):
        """One host frame: a batch of instructions, then one timer step."""
        for _ in range(ticks_per_frame):
            self.tick()
        self.tick_timers()

    def get_display(self) -> Tuple[bool, ...]:
        return tuple(self.display)

    def key_pressed(self, index: int, pressed: bool):
        if not 0 <= index < NUM_KEYS:
            raise ValueError(f"Key index out of range: {index}")
        self.keys[index] = bool(pressed)
        logger.debug("Key %X %s", index, "down" if pressed else "up")

    @property
    def sound_active(self) -> bool:
        return self.sound_timer > 0

    # =============== Stack ===============
    def push(self, addr: int):
        if self.sp == STACK_SIZE:
            raise StackOverflow(self.pc)
        self.stack[self.sp] = addr
        self.sp += 1

    def pop(self) -> int:
        if self.sp == 0:
            raise StackUnderflow(self.pc)
        self.sp -= 1
        return self.stack[self.sp]

    # =============== Core fetch/decode/execute cycle ===============
    def fetch(self) -> int:
        if not 0 <= self.pc <= MEM_SIZE - 2:
            raise OutOfBoundsFetch(self.pc)
        hi = self.memory[self.pc]
        lo = self.memory[self.pc + 1]
        self.pc += 2
        return (hi << 8) | lo

    def execute(self, opcode: int):
        op, x, y, n = decode(opcode)
        nnn = opcode & 0x0FFF
        nn = opcode & 0x00FF
        V = self.V

        if opcode == 0x0000:  # NOP
            pass
        elif opcode == 0x00E0:  # CLS
            self.display = [False] * (SCREEN_W * SCREEN_H)
        elif opcode == 0x00EE:  # RET
            self.pc = self.pop()
        elif op == 0x1:  # JP addr
            self.pc = nnn
        elif op == 0x2:  # CALL addr
            self.push(self.pc)
            self.pc = nnn
        elif op == 0x3:  # SE Vx, byte
            if V[x] == nn:
                self.pc += 2
        elif op == 0x4:  # SNE Vx, byte
            if V[x] != nn:
                self.pc += 2
        elif op == 0x5 and n == 0x0:  # SE Vx, Vy
            if V[x] == V[y]:
                self.pc += 2
        elif op == 0x6:  # LD Vx, byte
            V[x] = nn
        elif op == 0x7:  # ADD Vx, byte (VF untouched)
            V[x] = (V[x] + nn) & 0xFF
        elif op == 0x8:
            self._alu(opcode, x, y, n)
        elif op == 0x9 and n == 0x0:  # SNE Vx, Vy
            if V[x] != V[y]:
                self.pc += 2
        elif op == 0xA:  # LD I, addr
            self.I = nnn
        elif op == 0xB:  # JP V0, addr
            self.pc = V[0] + nnn
        elif op == 0xC:  # RND Vx, byte
            V[x] = self.rng.randrange(256) & nn
        elif op == 0xD:  # DRW Vx, Vy, nibble
            self._draw_sprite(V[x], V[y], n)
        elif op == 0xE and nn == 0x9E:  # SKP Vx
            if self._is_key_down(V[x]):
                self.pc += 2
        elif op == 0xE and nn == 0xA1:  # SKNP Vx
            if not self._is_key_down(V[x]):
                self.pc += 2
        elif op == 0xF:
            self._misc(opcode, x, nn)
        else:
            raise UnknownOpcode(opcode, self.pc - 2)

    # =============== Opcode groups ===============
    def _alu(self, opcode: int, x: int, y: int, n: int):
        V = self.V
        if n == 0x0:  # LD Vx, Vy
            V[x] = V[y]
        elif n == 0x1:  # OR Vx, Vy
            V[x] |= V[y]
        elif n == 0x2:  # AND Vx, Vy
            V[x] &= V[y]
        elif n == 0x3:  # XOR Vx, Vy
            V[x] ^= V[y]
        elif n == 0x4:  # ADD Vx, Vy; VF = 1 when there is NO carry
            total = V[x] + V[y]
            V[x] = total & 0xFF
            V[0xF] = 0 if total > 0xFF else 1
        elif n == 0x5:  # SUB Vx, Vy; VF = NOT borrow
            no_borrow = V[x] >= V[y]
            V[x] = (V[x] - V[y]) & 0xFF
            V[0xF] = 1 if no_borrow else 0
        elif n == 0x6:  # SHR Vx {, Vy}
            src = V[y] if self.shift_vy else V[x]
            V[x] = src >> 1
            V[0xF] = src & 0x1
        elif n == 0x7:  # SUBN Vx, Vy; VF = NOT borrow
            no_borrow = V[y] >= V[x]
            V[x] = (V[y] - V[x]) & 0xFF
            V[0xF] = 1 if no_borrow else 0
        elif n == 0xE:  # SHL Vx {, Vy}
            src = V[y] if self.shift_vy else V[x]
            V[x] = (src << 1) & 0xFF
            V[0xF] = (src >> 7) & 0x1
        else:
            raise UnknownOpcode(opcode, self.pc - 2)

    def _misc(self, opcode: int, x: int, nn: int):
        V = self.V
        if nn == 0x07:  # LD Vx, DT
            V[x] = self.delay_timer
        elif nn == 0x0A:  # LD Vx, K (wait for key)
            key = self._first_key_down()
            if key is None:
                # Nothing pressed: fetch this instruction again next tick
                self.pc -= 2
            else:
                V[x] = key
        elif nn == 0x15:  # LD DT, Vx
            self.delay_timer = V[x]
        elif nn == 0x18:  # LD ST, Vx
            self.sound_timer = V[x]
        elif nn == 0x1E:  # ADD I, Vx
            self.I = (self.I + V[x]) & 0xFFFF
        elif nn == 0x29:  # LD F, Vx
            self.I = FONT_ADDRESS + V[x] * FONT_GLYPH_SIZE
        elif nn == 0x33:  # LD B, Vx (BCD)
            self._check_span(self.I, 3)
            val = V[x]
            self.memory[self.I] = val // 100
            self.memory[self.I + 1] = (val // 10) % 10
            self.memory[self.I + 2] = val % 10
        elif nn == 0x55:  # LD [I], Vx
            self._check_span(self.I, x + 1)
            for i in range(x + 1):
                self.memory[self.I + i] = V[i]
            if self.legacy_store:
                self.I = (self.I + x + 1) & 0xFFFF
        elif nn == 0x65:  # LD Vx, [I]
            self._check_span(self.I, x + 1)
            for i in range(x + 1):
                V[i] = self.memory[self.I + i]
            if self.legacy_store:
                self.I = (self.I + x + 1) & 0xFFFF
        else:
            raise UnknownOpcode(opcode, self.pc - 2)

    # =============== Helpers ===============
    def _check_span(self, start: int, length: int):
        if length and start + length > MEM_SIZE:
            raise OutOfBoundsAccess(max(start, MEM_SIZE))

    def _is_key_down(self, chip8_key: int) -> bool:
        if 0 <= chip8_key < NUM_KEYS:
            return self.keys[chip8_key]
        return False

    def _first_key_down(self) -> int | None:
        for i in range(NUM_KEYS):
            if self.keys[i]:
                return i
        return None

    def _draw_sprite(self, x_pos: int, y_pos: int, height: int):
        self._check_span(self.I, height)
        collision = False
        for row in range(height):
            sprite = self.memory[self.I + row]
            py = (y_pos + row) % SCREEN_H
            for col in range(8):
                if (sprite >> (7 - col)) & 1:
                    px = (x_pos + col) % SCREEN_W
                    idx = px + SCREEN_W * py
                    collision |= self.display[idx]
                    self.display[idx] = not self.display[idx]
        self.V[0xF] = 1 if collision else 0
