"""Chip8CPU: Step driver for CHIP-8 emulation.

This module implements the full execution pipeline:
    MEMORY → FETCH → DECODE → KEY → REGISTRY → EXECUTE → STATE → TIMERS

One call to ``step`` is one logical 60 Hz tick. The driver has two states,
running and halted; halted is terminal. While the machine waits for a key,
a step only samples the keypad for a down edge and neither executes an
instruction nor ticks the timers.

Fatal machine errors never escape ``step``: they halt the machine and are
returned in the step's trace entry.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional

from .decode import DecodeResult, decode_opcode, fetch_opcode, parse_program
from .errors import Chip8Error
from .registry import InstructionRegistry, get_registry
from .state import NUM_KEYS, MachineState, create_initial_state
from .timing import UPDATE_TIMESTEP, FixedTimestep

logger = logging.getLogger(__name__)


@dataclass
class ExecutionTraceEntry:
    """Single entry in the execution trace.

    Captures one logical step for auditability and debugging.

    Attributes:
        step: Step number (0-indexed, counts waiting steps too)
        pc: Program counter at the start of the step
        instruction: Raw instruction, or None if nothing was fetched
        decode_result: Result from the decoder, or None if nothing was decoded
        pre_state: State snapshot before the step
        post_state: State snapshot after the step
        error: Fatal error that halted the machine during this step
        key_pressed: Key that resolved a pending wait-for-key
    """
    step: int
    pc: int
    instruction: Optional[int]
    decode_result: Optional[DecodeResult]
    pre_state: dict
    post_state: dict
    error: Optional[Chip8Error] = None
    key_pressed: Optional[int] = None

    @property
    def waiting(self) -> bool:
        """True if this step was spent in the wait-for-key state."""
        return self.pre_state.get("awaiting_key", False)


class Chip8CPU:
    """CHIP-8 interpreter driving one machine.

    Attributes:
        registry: InstructionRegistry with all instruction handlers
        state: Current machine state (None until a ROM is loaded)
        trace: Most recent execution trace entries
        max_steps: Step budget for ``run``
        clock: Fixed-timestep accumulator used by ``advance``
    """

    DEFAULT_MAX_STEPS = 10000
    DEFAULT_TRACE_LIMIT = 1000

    def __init__(
        self,
        seed: Optional[int] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        trace_limit: Optional[int] = DEFAULT_TRACE_LIMIT,
        timestep: float = UPDATE_TIMESTEP,
    ):
        """Initialize the interpreter.

        Args:
            seed: Seed for the machine's random generator (entropy if None)
            max_steps: Step budget for ``run``
            trace_limit: Number of trace entries kept (None keeps all)
            timestep: Seconds per logical step for ``advance``
        """
        self.seed = seed
        self.registry: InstructionRegistry = get_registry()
        self.state: Optional[MachineState] = None
        self.trace: Deque[ExecutionTraceEntry] = deque(maxlen=trace_limit)
        self.max_steps = max_steps
        self.clock = FixedTimestep(timestep)
        self.step_count = 0

    def load_rom(self, rom: bytes) -> None:
        """Load a raw CHIP-8 ROM at 0x200 into a fresh machine.

        Args:
            rom: Program bytes (at most 3584)

        Raises:
            ValueError: If the ROM is too large
        """
        self.state = create_initial_state(bytes(rom), seed=self.seed)
        self.trace.clear()
        self.clock.reset()
        self.step_count = 0
        logger.info("Loaded ROM: %d bytes (seed=%d)", len(rom), self.state.seed)

    def load_program(self, source: str) -> None:
        """Load a program written as hex instruction words.

        Args:
            source: Program text, see ``parse_program``
        """
        self.load_rom(parse_program(source))

    def _require_state(self) -> MachineState:
        if self.state is None:
            raise RuntimeError("No ROM loaded")
        return self.state

    # =========================================================================
    # Stepping
    # =========================================================================

    def step(self) -> ExecutionTraceEntry:
        """Execute one logical step.

        Performs: FETCH → DECODE → EXECUTE → TIMERS, or a key-edge check
        while waiting for a key.

        Returns:
            ExecutionTraceEntry with full step information

        Raises:
            RuntimeError: If no ROM loaded or machine halted
        """
        state = self._require_state()
        if state.halted:
            raise RuntimeError("CPU is halted")

        sample = list(state.keys)
        pc = state.pc
        pre_state = state.snapshot()

        if state.awaiting_key:
            entry = self._resolve_key_wait(state, sample, pc, pre_state)
        else:
            entry = self._execute(state, pc, pre_state)

        state.previous_keys = sample
        entry.post_state = state.snapshot()
        self.trace.append(entry)
        self.step_count += 1
        return entry

    def _resolve_key_wait(self, state: MachineState, sample: List[bool], pc: int,
                          pre_state: dict) -> ExecutionTraceEntry:
        pressed = None
        for key in range(NUM_KEYS):
            if sample[key] and not state.previous_keys[key]:
                pressed = key
                break

        if pressed is not None:
            state.registers[state.key_target] = pressed
            state.awaiting_key = False
            state.advance_pc()
            logger.debug("Key %X resolved wait into V%X", pressed, state.key_target)

        return ExecutionTraceEntry(
            step=self.step_count,
            pc=pc,
            instruction=None,
            decode_result=None,
            pre_state=pre_state,
            post_state={},
            key_pressed=pressed,
        )

    def _execute(self, state: MachineState, pc: int, pre_state: dict) -> ExecutionTraceEntry:
        instruction = None
        decode_result = None
        error = None

        try:
            instruction = fetch_opcode(state)
            decode_result = decode_opcode(instruction)
            self.registry.execute(state, decode_result.key, decode_result.params)
        except Chip8Error as e:
            error = e
            state.halted = True
            logger.warning("Machine halted at pc=%#06x: %s", pc, e)
        else:
            if state.halted:
                logger.info("Machine halted at pc=%#06x", pc)
            else:
                state.tick_timers()

        return ExecutionTraceEntry(
            step=self.step_count,
            pc=pc,
            instruction=instruction,
            decode_result=decode_result,
            pre_state=pre_state,
            post_state={},
            error=error,
        )

    def run(self, max_steps: Optional[int] = None) -> List[ExecutionTraceEntry]:
        """Step until the machine halts or the step budget runs out.

        Args:
            max_steps: Override step budget (uses instance default if None)

        Returns:
            Execution trace (most recent ``trace_limit`` entries)

        Raises:
            RuntimeError: If max steps exceeded (safety limit)
        """
        state = self._require_state()
        limit = max_steps if max_steps is not None else self.max_steps

        steps = 0
        while not state.halted and steps < limit:
            self.step()
            steps += 1

        if not state.halted:
            raise RuntimeError(f"Max steps ({limit}) exceeded")

        return list(self.trace)

    def advance(self, elapsed: float) -> List[ExecutionTraceEntry]:
        """Run however many fixed timesteps fit into the elapsed time.

        Stops early if the machine halts. Steps that were due but not run
        go back to the clock along with any leftover fraction of a step.

        Args:
            elapsed: Real seconds since the previous call

        Returns:
            Trace entries of the steps taken
        """
        state = self._require_state()
        due = self.clock.advance(elapsed)
        entries = []
        while len(entries) < due and not state.halted:
            entries.append(self.step())
        self.clock.give_back(due - len(entries))
        return entries

    # =========================================================================
    # Host Collaborators
    # =========================================================================

    def set_key(self, key: int, pressed: bool) -> None:
        """Set the down state of one hex key (0x0-0xF)."""
        state = self._require_state()
        if not 0 <= key < NUM_KEYS:
            raise IndexError(f"Invalid key: {key}")
        state.keys[key] = bool(pressed)

    def set_keys(self, pressed: Iterable[int]) -> None:
        """Replace the key state: keys listed are down, all others up."""
        down = set(pressed)
        for key in down:
            if not 0 <= key < NUM_KEYS:
                raise IndexError(f"Invalid key: {key}")
        for key in range(NUM_KEYS):
            self.set_key(key, key in down)

    def consume_display(self) -> Optional[bytes]:
        """Take the display if it changed since it was last consumed.

        Returns:
            Copy of the 64x32 buffer (row-major, 0/1) and clears
            draw_pending, or None if nothing was drawn
        """
        state = self._require_state()
        if not state.draw_pending:
            return None
        state.draw_pending = False
        return bytes(state.display)

    # =========================================================================
    # Accessors
    # =========================================================================

    def get_register(self, index: int) -> int:
        return self._require_state().get_register(index)

    def dump_registers(self) -> Dict[str, int]:
        """Get all register values keyed by name."""
        return self._require_state().dump_registers()

    def get_pc(self) -> int:
        return self._require_state().pc

    def get_cycle_count(self) -> int:
        """Get number of executed instructions."""
        if self.state is None:
            return 0
        return self.state.cycle_count

    def is_halted(self) -> bool:
        """Check if the machine is halted."""
        if self.state is None:
            return True
        return self.state.halted

    def is_waiting(self) -> bool:
        """Check if the machine is suspended on wait-for-key."""
        if self.state is None:
            return False
        return self.state.awaiting_key

    def format_registers(self, ascii: bool = False) -> str:
        return self._require_state().format_registers(ascii=ascii)

    def format_memory(self) -> str:
        return self._require_state().format_memory()

    def format_display(self) -> str:
        return self._require_state().format_display()

    def print_trace(self) -> None:
        """Print execution trace in human-readable format."""
        print("=" * 70)
        print("QCHIP8 EXECUTION TRACE")
        print("=" * 70)

        for entry in self.trace:
            status = "OK" if not entry.error else f"ERROR: {entry.error.kind}: {entry.error}"
            print(f"\n[Step {entry.step}] PC={entry.pc:#06x} {status}")

            if entry.waiting:
                target = entry.pre_state["key_target"]
                if entry.key_pressed is None:
                    print(f"  Waiting for key -> V{target:X}")
                else:
                    print(f"  Key {entry.key_pressed:X} -> V{target:X}")
                continue

            if entry.decode_result is not None:
                params = entry.decode_result.params
                print(f"  Instruction: {entry.instruction:04X}")
                print(f"  Decoded Key: {entry.decode_result.key.value}")
                print(f"  Params: x={params['x']:X} y={params['y']:X} "
                      f"nn={params['nn']:#04x} nnn={params['nnn']:#05x}")

            # Show register changes
            pre_regs = entry.pre_state["registers"]
            post_regs = entry.post_state["registers"]
            changes = [
                f"V{i:X}: {pre:#04x} → {post:#04x}"
                for i, (pre, post) in enumerate(zip(pre_regs, post_regs))
                if pre != post
            ]
            if entry.pre_state["I"] != entry.post_state["I"]:
                changes.append(f"I: {entry.pre_state['I']:#06x} → {entry.post_state['I']:#06x}")
            if changes:
                print(f"  Changes: {', '.join(changes)}")

            # Show PC change
            post_pc = entry.post_state["pc"]
            if post_pc != entry.pc + 2:
                print(f"  PC: {entry.pc:#06x} → {post_pc:#06x}")

        print("\n" + "=" * 70)
        print("FINAL STATE")
        print("=" * 70)
        if self.state:
            print(self.format_registers())
            print(f"  Steps: {self.step_count}")
            print(f"  Cycles: {self.get_cycle_count()}")
            print(f"  Halted: {self.is_halted()}")

    def get_summary(self) -> Dict:
        """Get execution summary.

        Returns:
            Dictionary with execution statistics and final state
        """
        return {
            "steps": self.step_count,
            "cycles": self.get_cycle_count(),
            "halted": self.is_halted(),
            "waiting": self.is_waiting(),
            "registers": self.dump_registers() if self.state else {},
            "pc": self.get_pc() if self.state else 0,
            "trace_length": len(self.trace),
            "errors": [e.error.to_dict() for e in self.trace if e.error],
        }
