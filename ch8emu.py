#!/usr/bin/env python3
"""
Chip-8 desktop host

Dependencies:
  - Python 3.8+
  - pygame (pip install pygame)
  - numpy (beep waveform)

Run:
  ch8emu path/to/game.ch8 [ticks-per-frame, default 7] [--scale 10] [--tone 440]

Keyboard mapping (common layout):

  CHIP-8  =>  Keyboard
  1 2 3 C =>  1 2 3 4
  4 5 6 D =>  Q W E R
  7 8 9 E =>  A S D F
  A 0 B F =>  Z X C V

  P       reset the machine and reload the ROM
  Esc     quit

A .ch8 file dropped on the window replaces the running program.

Notes:
- The machine itself lives in chip8_core; this module only paces it,
  draws its display, forwards key events and beeps while the sound timer runs.
- Frames run at 60 Hz: N instructions, then one timer step, then a redraw.
"""
from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

try:
    import pygame
except ImportError:
    print("This emulator requires pygame. Install with: pip install pygame", file=sys.stderr)
    raise

import numpy as np

from chip8_core import (
    Chip8Error,
    MAX_PROGRAM_SIZE,
    Machine,
    SCREEN_H,
    SCREEN_W,
)

logger = logging.getLogger(__name__)

ROM_EXTENSION = ".ch8"
DEFAULT_TICKS_PER_FRAME = 7
FRAME_RATE = 60
SAMPLE_RATE = 44100

# Keyboard mapping: pygame key -> CHIP-8 key index
KEYMAP: Dict[int, int] = {
    pygame.K_x: 0x0,
    pygame.K_1: 0x1,
    pygame.K_2: 0x2,
    pygame.K_3: 0x3,
    pygame.K_q: 0x4,
    pygame.K_w: 0x5,
    pygame.K_e: 0x6,
    pygame.K_a: 0x7,
    pygame.K_s: 0x8,
    pygame.K_d: 0x9,
    pygame.K_z: 0xA,
    pygame.K_c: 0xB,
    pygame.K_4: 0xC,
    pygame.K_r: 0xD,
    pygame.K_f: 0xE,
    pygame.K_v: 0xF,
}


def chip8_key(key: int) -> Optional[int]:
    """CHIP-8 key index for a pygame key code, None if it is not mapped."""
    return KEYMAP.get(key)


def square_wave(tone_hz: int, sample_rate: int = SAMPLE_RATE,
                duration: float = 0.1, channels: int = 1) -> np.ndarray:
    """100ms int16 square wave, shaped (samples,) or (samples, channels)."""
    t = np.arange(int(sample_rate * duration))
    wave = ((t * tone_hz * 2 / sample_rate) % 2 >= 1).astype('float32') * 2 - 1
    wave = (wave * 32767).astype('int16')
    if channels > 1:
        wave = np.repeat(wave[:, None], channels, axis=1)
    return wave


# ==============================
# Command line
# ==============================


def rom_path(value: str) -> Path:
    path = Path(value)
    if path.suffix.lower() != ROM_EXTENSION:
        raise argparse.ArgumentTypeError(
            f"chip8 game files must end with \"{ROM_EXTENSION}\": {value}")
    if not path.is_file():
        raise argparse.ArgumentTypeError(
            f"the path to the file could not be found: {value}")
    return path


def positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ch8emu", description="CHIP-8 emulator")
    parser.add_argument("rom", type=rom_path,
                        help=f"Path to CHIP-8 ROM ({ROM_EXTENSION})")
    parser.add_argument("ticks", nargs="?", type=positive_int,
                        default=DEFAULT_TICKS_PER_FRAME,
                        help="Instructions per frame (default 7)")
    parser.add_argument("--scale", type=positive_int, default=10,
                        help="Pixel scale factor (default 10)")
    parser.add_argument("--tone", type=positive_int, default=440,
                        help="Beep tone frequency in Hz (default 440)")
    parser.add_argument("--shift-vy", action="store_true",
                        help="8XY6/8XYE shift VY into VX (COSMAC quirk)")
    parser.add_argument("--legacy-store", action="store_true",
                        help="Use original FX55/FX65 quirk (I increments)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Log debug output")
    return parser


def read_rom(path: Path) -> bytes:
    with open(path, 'rb') as f:
        return f.read()

# ==============================
# Pygame Frontend
# ==============================


class Frontend:
    def __init__(self, machine: Machine, rom: bytes, scale: int = 10, tone_hz: int = 440):
        self.machine = machine
        self.rom = rom
        self.scale = max(1, int(scale))
        self.surface = pygame.display.set_mode(
            (SCREEN_W * self.scale, SCREEN_H * self.scale))
        pygame.display.set_caption("ch8emu")
        self.clock = pygame.time.Clock()
        self.sound = None
        self.tone_hz = tone_hz
        self._init_audio()

    def _init_audio(self):
        try:
            pygame.mixer.init(SAMPLE_RATE, -16, 1, 256)
        except pygame.error as e:
            logger.warning("Audio disabled: %s", e)
            return
        _, _, channels = pygame.mixer.get_init()
        self.sound = pygame.sndarray.make_sound(
            square_wave(self.tone_hz, channels=channels))
        self.sound.set_volume(0.2)

    def restart(self, rom: Optional[bytes] = None):
        """Reset the machine and load rom (or the current ROM again).

        A ROM that does not fit raises ValueError before anything changes.
        """
        if rom is None:
            rom = self.rom
        if len(rom) > MAX_PROGRAM_SIZE:
            raise ValueError(
                f"ROM is too large for memory ({len(rom)} bytes, "
                f"at most {MAX_PROGRAM_SIZE})")
        self.machine.reset()
        self.machine.load(rom)
        self.rom = rom

    def handle_events(self) -> bool:
        """Process pending window events. False means the user asked to quit."""
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                return False
            elif event.type in (pygame.KEYDOWN, pygame.KEYUP):
                is_down = event.type == pygame.KEYDOWN
                if event.key == pygame.K_ESCAPE:
                    return False
                if is_down and event.key == pygame.K_p:
                    logger.info("Reset")
                    self.restart()
                    continue
                k_idx = chip8_key(event.key)
                if k_idx is not None:
                    self.machine.key_pressed(k_idx, is_down)
            elif event.type == pygame.DROPFILE:
                self._load_dropped(event.file)
        return True

    def _load_dropped(self, filename: str):
        try:
            rom = read_rom(rom_path(filename))
            self.restart(rom)
        except (argparse.ArgumentTypeError, OSError, ValueError) as e:
            logger.warning("Ignoring dropped file: %s", e)
            return
        logger.info("Loaded %s", filename)

    def render(self):
        surf = self.surface
        surf.lock()
        surf.fill((0, 0, 0))
        pixel_size = self.scale
        display = self.machine.get_display()
        for y in range(SCREEN_H):
            for x in range(SCREEN_W):
                if display[x + SCREEN_W * y]:
                    rect = pygame.Rect(x * pixel_size, y *
                                       pixel_size, pixel_size, pixel_size)
                    pygame.draw.rect(surf, (255, 255, 255), rect)
        surf.unlock()
        pygame.display.flip()

    def tick(self, fps: int):
        self.clock.tick(fps)

    def play_sound_if_needed(self):
        if self.sound is not None and self.machine.sound_active:
            # Fire-and-forget short blip
            self.sound.play()

# ==============================
# Main loop
# ==============================


def run(frontend: Frontend, ticks_per_frame: int) -> int:
    machine = frontend.machine
    while frontend.handle_events():
        try:
            machine.run_frame(ticks_per_frame)
        except Chip8Error as e:
            logger.error("%s", e)
            return 1
        frontend.play_sound_if_needed()
        frontend.render()
        frontend.tick(FRAME_RATE)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s]: %(message)s")

    machine = Machine(shift_vy=args.shift_vy, legacy_store=args.legacy_store)
    rom = read_rom(args.rom)
    try:
        machine.load(rom)
    except ValueError as e:
        logger.error("%s", e)
        return 2
    logger.info("ROM loaded (%d bytes), %d ticks per frame", len(rom), args.ticks)

    pygame.init()
    try:
        frontend = Frontend(machine, rom, scale=args.scale, tone_hz=args.tone)
        return run(frontend, args.ticks)
    finally:
        pygame.quit()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExiting.")
