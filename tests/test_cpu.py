"""Tests for the Chip8CPU step driver."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from qchip8 import Chip8CPU, FixedTimestep
from qchip8.decode import Op
from qchip8.errors import AddressOutOfRange, StackOverflow, UnknownOpcode


@pytest.fixture
def cpu():
    return Chip8CPU(seed=1234)


class TestLoading:
    """Test ROM loading."""

    def test_step_without_rom(self, cpu):
        with pytest.raises(RuntimeError, match="No ROM loaded"):
            cpu.step()

    def test_load_rom(self, cpu):
        cpu.load_rom(bytes([0x60, 0x05]))
        assert cpu.state.memory[0x200] == 0x60
        assert cpu.get_pc() == 0x200

    def test_load_rom_too_large(self, cpu):
        with pytest.raises(ValueError):
            cpu.load_rom(bytes(4096))

    def test_reload_resets_machine(self, cpu):
        cpu.load_program("6005 1202")
        cpu.step()
        cpu.step()
        cpu.load_program("6107")
        assert cpu.get_register(0) == 0
        assert cpu.step_count == 0
        assert len(cpu.trace) == 0

    def test_not_loaded_defaults(self, cpu):
        assert cpu.is_halted() is True
        assert cpu.is_waiting() is False
        assert cpu.get_cycle_count() == 0


class TestStep:
    """Test single fetch-decode-execute steps."""

    def test_sequence_add(self, cpu):
        """V0=5, V1=3, V0+=V1 ends with V0=8, VF=0, PC advanced by 6."""
        cpu.load_program("6005 6103 8014")
        for _ in range(3):
            cpu.step()
        assert cpu.get_register(0) == 8
        assert cpu.get_register(0xF) == 0
        assert cpu.get_pc() == 0x206
        assert cpu.get_cycle_count() == 3

    def test_jump_sets_exact_pc(self, cpu):
        cpu.load_program("1202")
        cpu.step()
        assert cpu.get_pc() == 0x202

    def test_call_and_return(self, cpu):
        """CALL then RET resumes right after the call."""
        rom = bytearray(0x102)
        rom[0:2] = bytes([0x23, 0x00])      # 200: CALL 300
        rom[2:4] = bytes([0x00, 0x00])      # 202: HALT
        rom[0x100:0x102] = bytes([0x00, 0xEE])  # 300: RET
        cpu.load_rom(bytes(rom))
        cpu.step()
        assert cpu.get_pc() == 0x300
        cpu.step()
        assert cpu.get_pc() == 0x202
        cpu.step()
        assert cpu.is_halted() is True

    def test_trace_entry(self, cpu):
        cpu.load_program("6A42")
        entry = cpu.step()
        assert entry.step == 0
        assert entry.pc == 0x200
        assert entry.instruction == 0x6A42
        assert entry.decode_result.key is Op.LD_IMM
        assert entry.pre_state["registers"][0xA] == 0
        assert entry.post_state["registers"][0xA] == 0x42
        assert entry.error is None
        assert entry.waiting is False

    def test_step_after_halt(self, cpu):
        cpu.load_program("0000")
        cpu.step()
        with pytest.raises(RuntimeError, match="halted"):
            cpu.step()


class TestErrors:
    """Fatal errors halt the machine and come back in the trace entry."""

    def test_unknown_opcode(self, cpu):
        cpu.load_program("FFFF")
        entry = cpu.step()
        assert isinstance(entry.error, UnknownOpcode)
        assert entry.error.instruction == 0xFFFF
        assert cpu.is_halted() is True
        assert cpu.get_pc() == 0x200
        assert cpu.get_cycle_count() == 0

    def test_fetch_out_of_range(self, cpu):
        cpu.load_program("1FFF")
        cpu.step()
        entry = cpu.step()
        assert isinstance(entry.error, AddressOutOfRange)
        assert entry.error.address == 0x1000
        assert entry.instruction is None
        assert entry.decode_result is None
        assert cpu.is_halted() is True

    def test_stack_overflow(self, cpu):
        cpu.load_program("2200")
        cpu.run()
        summary = cpu.get_summary()
        assert summary["halted"] is True
        assert summary["errors"][0]["kind"] == "STACK_OVERFLOW"
        assert isinstance(cpu.trace[-1].error, StackOverflow)
        assert cpu.state.stack_pointer == 16
        assert cpu.step_count == 17

    def test_stack_underflow(self, cpu):
        cpu.load_program("00EE")
        cpu.run()
        assert cpu.get_summary()["errors"][0]["kind"] == "STACK_UNDERFLOW"

    def test_error_does_not_tick_timers(self, cpu):
        cpu.load_program("6A05 FA15 FFFF")
        cpu.run()
        # Set to 5, ticked once by the FA15 step, untouched by the failing step
        assert cpu.state.delay_timer == 4


class TestTimers:
    """Timers tick once per executed step and clamp at zero."""

    def test_timer_ticks_after_instruction(self, cpu):
        cpu.load_program("6103 F115 F207")
        cpu.step()
        cpu.step()
        assert cpu.state.delay_timer == 2
        cpu.step()
        assert cpu.get_register(2) == 2
        assert cpu.state.delay_timer == 1

    def test_timers_never_go_negative(self, cpu):
        cpu.load_program("6101 F115 F118 1206")
        for _ in range(10):
            cpu.step()
        assert cpu.state.delay_timer == 0
        assert cpu.state.sound_timer == 0

    def test_halt_does_not_tick(self, cpu):
        cpu.load_program("6105 F115 0000")
        cpu.run()
        assert cpu.state.delay_timer == 4


class TestKeyWait:
    """Wait-for-key suspension and down-edge resolution."""

    def test_wait_suspends_execution_and_timers(self, cpu):
        cpu.load_program("6A05 FA15 F50A 0000")
        for _ in range(3):
            cpu.step()
        assert cpu.is_waiting() is True
        assert cpu.state.delay_timer == 3

        for _ in range(5):
            entry = cpu.step()
            assert entry.waiting is True
            assert entry.instruction is None
            assert entry.key_pressed is None
        assert cpu.get_pc() == 0x204
        assert cpu.state.delay_timer == 3
        assert cpu.get_cycle_count() == 3

    def test_key_down_edge_resolves_wait(self, cpu):
        cpu.load_program("6A05 FA15 F50A 0000")
        for _ in range(4):
            cpu.step()

        cpu.set_key(7, True)
        entry = cpu.step()
        assert entry.key_pressed == 7
        assert cpu.is_waiting() is False
        assert cpu.get_register(5) == 7
        assert cpu.get_pc() == 0x206
        assert cpu.state.delay_timer == 3
        assert cpu.get_cycle_count() == 3

        entry = cpu.step()
        assert entry.decode_result.key is Op.HALT
        assert cpu.is_halted() is True

    def test_held_key_needs_new_edge(self, cpu):
        """A key already down when the wait starts does not resolve it."""
        cpu.load_program("F00A 0000")
        cpu.set_key(7, True)
        cpu.step()
        cpu.step()
        assert cpu.is_waiting() is True

        cpu.set_key(7, False)
        cpu.step()
        assert cpu.is_waiting() is True

        cpu.set_key(7, True)
        cpu.step()
        assert cpu.is_waiting() is False
        assert cpu.get_register(0) == 7

    def test_lowest_new_key_wins(self, cpu):
        cpu.load_program("F30A")
        cpu.step()
        cpu.set_keys([0xC, 0x4])
        cpu.step()
        assert cpu.get_register(3) == 0x4

    def test_set_key_invalid(self, cpu):
        cpu.load_program("0000")
        with pytest.raises(IndexError):
            cpu.set_key(16, True)

    @pytest.mark.parametrize("keys", [[16], [3, 16], [-1]])
    def test_set_keys_invalid(self, cpu, keys):
        """set_keys rejects bad indexes like set_key and leaves keys alone."""
        cpu.load_program("0000")
        cpu.set_key(5, True)
        with pytest.raises(IndexError, match="Invalid key"):
            cpu.set_keys(keys)
        assert cpu.state.keys[5] is True
        assert cpu.state.keys[3] is False


class TestDisplayConsumer:
    """draw_pending is a single-reader handoff."""

    def test_consume_display(self, cpu):
        cpu.load_program("A050 D015")
        cpu.step()
        assert cpu.consume_display() is None
        cpu.step()
        frame = cpu.consume_display()
        assert frame is not None
        assert len(frame) == 64 * 32
        assert frame[0:5] == bytes([1, 1, 1, 1, 0])
        assert cpu.state.draw_pending is False
        assert cpu.consume_display() is None


class TestRun:
    """Test run() and its step budget."""

    def test_run_until_halt(self, cpu):
        cpu.load_program("6005 6103 8014 0000")
        trace = cpu.run()
        assert len(trace) == 4
        assert cpu.is_halted() is True

    def test_max_steps_stops_execution(self):
        """Infinite loop stops at max steps without halting."""
        cpu = Chip8CPU(seed=0, max_steps=10)
        cpu.load_program("1200")
        with pytest.raises(RuntimeError, match="Max steps"):
            cpu.run()
        assert cpu.step_count == 10
        assert cpu.is_halted() is False

    def test_trace_limit(self):
        cpu = Chip8CPU(seed=0, trace_limit=5)
        cpu.load_program("1200")
        with pytest.raises(RuntimeError):
            cpu.run(max_steps=20)
        assert len(cpu.trace) == 5
        assert cpu.trace[-1].step == 19

    def test_summary(self, cpu):
        cpu.load_program("6005 0000")
        cpu.run()
        summary = cpu.get_summary()
        assert summary["steps"] == 2
        assert summary["cycles"] == 2
        assert summary["halted"] is True
        assert summary["registers"]["V0"] == 5
        assert summary["errors"] == []

    def test_print_trace(self, cpu, capsys):
        cpu.load_program("6005 F00A")
        cpu.step()
        cpu.step()
        cpu.step()
        cpu.print_trace()
        out = capsys.readouterr().out
        assert "OP_LD_IMM" in out
        assert "V0: 0x00 → 0x05" in out
        assert "Waiting for key -> V0" in out


class TestRandomIsolation:
    """Each machine owns its random generator."""

    def test_same_seed_same_sequence(self):
        a = Chip8CPU(seed=5)
        b = Chip8CPU(seed=5)
        for cpu in (a, b):
            cpu.load_program("C0FF C1FF C2FF 0000")
            cpu.run()
        assert a.dump_registers() == b.dump_registers()

    def test_interleaved_machines_are_independent(self):
        a = Chip8CPU(seed=5)
        b = Chip8CPU(seed=5)
        other = Chip8CPU(seed=5)
        for cpu in (a, b, other):
            cpu.load_program("C0FF C1FF 0000")

        a.run()
        other.step()
        b.run()
        assert a.get_register(0) == b.get_register(0)
        assert a.get_register(1) == b.get_register(1)


class TestFixedTimestep:
    """Time accumulator and advance()."""

    def test_accumulates_whole_steps(self):
        clock = FixedTimestep(0.25)
        assert clock.advance(0.5) == 2
        assert clock.advance(0.125) == 0
        assert clock.advance(0.125) == 1
        assert clock.accumulator == 0.0

    def test_rejects_negative_elapsed(self):
        with pytest.raises(ValueError):
            FixedTimestep(0.25).advance(-0.1)

    def test_rejects_non_positive_timestep(self):
        with pytest.raises(ValueError):
            FixedTimestep(0)

    def test_cpu_advance(self):
        cpu = Chip8CPU(seed=0, timestep=0.25)
        cpu.load_program("1200")
        entries = cpu.advance(1.0)
        assert len(entries) == 4
        assert cpu.step_count == 4

    def test_cpu_advance_stops_on_halt(self):
        cpu = Chip8CPU(seed=0, timestep=0.25)
        cpu.load_program("0000")
        entries = cpu.advance(1.0)
        assert len(entries) == 1
        assert cpu.is_halted() is True
        # The three steps not run stay on the clock
        assert cpu.clock.accumulator == 0.75

    def test_default_timestep_one_second(self):
        assert FixedTimestep().advance(1.0) == 60

    def test_default_timestep_split_evenly(self):
        clock = FixedTimestep()
        steps = sum(clock.advance(1 / 60) for _ in range(60))
        assert steps == 60

    def test_default_timestep_long_run(self):
        """An hour of uneven frames hands out exactly one step per 1/60 s."""
        clock = FixedTimestep()
        steps = 0
        for _ in range(3600):
            steps += clock.advance(0.3)
            steps += clock.advance(0.7)
        assert steps == 3600 * 60

    def test_give_back(self):
        clock = FixedTimestep(0.25)
        assert clock.advance(1.0) == 4
        clock.give_back(3)
        assert clock.advance(0.0) == 3
        with pytest.raises(ValueError):
            clock.give_back(5)

    def test_frame_rate_independent_at_60hz(self):
        whole = Chip8CPU(seed=0)
        frames = Chip8CPU(seed=0)
        for cpu in (whole, frames):
            cpu.load_program("7001 1200")
        whole.advance(1.0)
        for _ in range(60):
            frames.advance(1 / 60)
        assert whole.step_count == frames.step_count == 60
        assert whole.get_register(0) == frames.get_register(0)

    def test_steps_independent_of_frame_rate(self):
        coarse = Chip8CPU(seed=0, timestep=0.25)
        fine = Chip8CPU(seed=0, timestep=0.25)
        for cpu in (coarse, fine):
            cpu.load_program("7001 1200")
        coarse.advance(2.0)
        for _ in range(16):
            fine.advance(0.125)
        assert coarse.step_count == fine.step_count == 8
        assert coarse.get_register(0) == fine.get_register(0)
