"""
Machine lifecycle tests: construction, load, reset, timers, keypad,
display snapshot, stack and fetch bounds.
"""
import pytest

from chip8_core import (
    FONTSET,
    MAX_PROGRAM_SIZE,
    MEM_SIZE,
    SCREEN_H,
    SCREEN_W,
    START_ADDRESS,
    Chip8Error,
    Machine,
    OutOfBoundsFetch,
    StackOverflow,
    StackUnderflow,
    decode,
)


def program(*words):
    return b"".join(w.to_bytes(2, "big") for w in words)


class TestConstruction:

    def test_initial_state(self):
        m = Machine()
        assert m.pc == START_ADDRESS == 0x200
        assert m.I == 0
        assert m.sp == 0
        assert m.V == [0] * 16
        assert m.stack == [0] * 16
        assert m.delay_timer == 0 and m.sound_timer == 0
        assert not any(m.display)
        assert not any(m.keys)

    def test_font_seeded_at_zero(self):
        m = Machine()
        assert len(m.memory) == MEM_SIZE
        assert bytes(m.memory[:80]) == bytes(FONTSET)
        assert not any(m.memory[80:])

    def test_decode_nibbles(self):
        assert decode(0xD12F) == (0xD, 0x1, 0x2, 0xF)
        assert decode(0x00EE) == (0x0, 0x0, 0xE, 0xE)


class TestLoad:

    def test_load_copies_at_start_address(self):
        m = Machine()
        m.load(b"\x12\x34\x56")
        assert bytes(m.memory[0x200:0x203]) == b"\x12\x34\x56"
        assert m.memory[0x203] == 0
        assert m.pc == 0x200

    def test_load_overwrites_previous_program(self):
        m = Machine()
        m.load(b"\xAA\xBB\xCC")
        m.load(b"\x01")
        assert bytes(m.memory[0x200:0x203]) == b"\x01\xBB\xCC"

    def test_load_accepts_full_program_region(self):
        m = Machine()
        m.load(b"\x01" * MAX_PROGRAM_SIZE)
        assert m.memory[MEM_SIZE - 1] == 1

    def test_load_rejects_oversized_program(self):
        m = Machine()
        with pytest.raises(ValueError):
            m.load(b"\x01" * (MAX_PROGRAM_SIZE + 1))
        assert not any(m.memory[0x200:])


class TestReset:

    def test_reset_matches_fresh_machine(self):
        m = Machine()
        m.load(program(
            0x6A05,  # V[A] = 5
            0xA000,  # I = font "0"
            0xD015,  # draw it at (V0, V1)
            0xFA15,  # DT = 5
            0xFA18,  # ST = 5
            0x2300,  # call 0x300
        ))
        for _ in range(6):
            m.tick()
        m.key_pressed(3, True)
        assert m != Machine()

        m.reset()
        assert m == Machine()
        assert bytes(m.memory[:80]) == bytes(FONTSET)
        assert m.memory[0x200] == 0

    def test_reset_keeps_quirk_flags(self):
        m = Machine(shift_vy=True, legacy_store=True)
        m.reset()
        assert m.shift_vy and m.legacy_store


class TestTimers:

    def test_delay_timer_does_not_underflow(self):
        m = Machine()
        m.tick_timers()
        assert m.delay_timer == 0
        assert m.sound_timer == 0

    def test_timers_count_down_independently(self):
        m = Machine()
        m.delay_timer = 3
        m.sound_timer = 1
        m.tick_timers()
        assert m.delay_timer == 2
        assert m.sound_timer == 0
        m.tick_timers()
        assert m.delay_timer == 1
        assert m.sound_timer == 0

    def test_sound_active_follows_sound_timer(self):
        m = Machine()
        assert not m.sound_active
        m.sound_timer = 1
        assert m.sound_active
        m.tick_timers()
        assert not m.sound_active

    def test_run_frame_ticks_then_steps_timers_once(self):
        m = Machine()
        m.load(program(*([0x0000] * 7)))
        m.delay_timer = 5
        m.run_frame()
        assert m.pc == 0x200 + 14
        assert m.delay_timer == 4

    def test_run_frame_custom_tick_count(self):
        m = Machine()
        m.run_frame(3)
        assert m.pc == 0x206


class TestHostSurface:

    def test_display_snapshot_is_read_only(self):
        m = Machine()
        snapshot = m.get_display()
        assert isinstance(snapshot, tuple)
        assert len(snapshot) == SCREEN_W * SCREEN_H
        m.display[0] = True
        assert snapshot[0] is False
        assert m.get_display()[0] is True

    def test_key_pressed_sets_and_clears(self):
        m = Machine()
        m.key_pressed(0xF, True)
        assert m.keys[0xF]
        m.key_pressed(0xF, False)
        assert not m.keys[0xF]

    @pytest.mark.parametrize("index", [-1, 16, 100])
    def test_key_pressed_rejects_bad_index(self, index):
        m = Machine()
        with pytest.raises(ValueError):
            m.key_pressed(index, True)


class TestStackAndFetch:

    def test_push_pop_order(self):
        m = Machine()
        m.push(0x222)
        m.push(0x444)
        assert m.sp == 2
        assert m.pop() == 0x444
        assert m.pop() == 0x222
        assert m.sp == 0

    def test_pop_empty_stack(self):
        with pytest.raises(StackUnderflow):
            Machine().pop()

    def test_push_full_stack(self):
        m = Machine()
        for addr in range(16):
            m.push(addr)
        with pytest.raises(StackOverflow):
            m.push(0x300)
        assert m.sp == 16

    def test_fetch_is_big_endian_and_advances(self):
        m = Machine()
        m.load(b"\xAB\xCD")
        assert m.fetch() == 0xABCD
        assert m.pc == 0x202

    def test_fetch_last_full_word(self):
        m = Machine()
        m.pc = MEM_SIZE - 2
        m.fetch()
        assert m.pc == MEM_SIZE

    @pytest.mark.parametrize("pc", [MEM_SIZE - 1, MEM_SIZE, 0x1FFF])
    def test_fetch_out_of_bounds(self, pc):
        m = Machine()
        m.pc = pc
        with pytest.raises(OutOfBoundsFetch) as exc:
            m.tick()
        assert exc.value.pc == pc
        assert isinstance(exc.value, Chip8Error)
