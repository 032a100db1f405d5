"""MachineState: CHIP-8 machine state for qchip8.

This module defines the single aggregate that holds everything a running
CHIP-8 program can observe or change. It carries no instruction semantics;
handlers in the registry mutate it in place and the step driver owns its
lifecycle.

State Components:
    - Registers: V0-VF (16 unsigned 8-bit values, VF doubles as flag register)
    - Memory: 4096 bytes, font at 0x50, programs at 0x200
    - I: Index register (16-bit)
    - PC: Program counter (starts at 0x200)
    - Stack: 16 return addresses plus stack pointer
    - Display: 64x32 pixels, one byte per pixel, values 0/1
    - Timers: delay and sound, 8-bit, tick toward zero at 60 Hz
    - Keys: 16 key-down flags for the hex keypad
    - Flags: draw_pending, halted, awaiting_key
    - RNG: random generator owned by this machine, explicitly seeded
"""

import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import AddressOutOfRange


MEMORY_SIZE = 4096
ENTRY_POINT = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ENTRY_POINT
FONT_BASE = 0x50
GLYPH_SIZE = 5

NUM_REGISTERS = 16
FLAG_REGISTER = 0xF
STACK_DEPTH = 16
NUM_KEYS = 16

DISPLAY_WIDTH = 64
DISPLAY_HEIGHT = 32

# Glyph rows are drawn from four distinct bit patterns.
CHAR_LINES = (
    0xF0,  # ****----
    0x90,  # *--*----
    0x10,  # ---*----
    0x80,  # *-------
)

CHAR_DATA = (
    0, 1, 1, 1, 0,  # 0
    2, 2, 2, 2, 2,  # 1
    0, 2, 0, 3, 0,  # 2
    0, 2, 0, 2, 0,  # 3
    1, 1, 0, 2, 2,  # 4
    0, 3, 0, 2, 0,  # 5
    0, 3, 0, 1, 0,  # 6
    0, 2, 2, 2, 2,  # 7
    0, 1, 0, 1, 0,  # 8
    0, 1, 0, 2, 2,  # 9
    0, 1, 0, 1, 1,  # A
    3, 3, 0, 1, 0,  # B
    0, 3, 3, 3, 0,  # C
    2, 2, 0, 1, 0,  # D
    0, 1, 0, 3, 0,  # E
    0, 3, 0, 3, 3,  # F
)

FONT_DATA = bytes(CHAR_LINES[line] for line in CHAR_DATA)


def sprite_address(digit: int) -> int:
    """Address of the built-in glyph for the low nibble of ``digit``."""
    return FONT_BASE + (digit & 0xF) * GLYPH_SIZE


def _entropy_seed() -> int:
    return random.SystemRandom().getrandbits(64)


@dataclass
class MachineState:
    """Mutable CHIP-8 machine state.

    Attributes:
        registers: V0-VF as a 16-byte bytearray
        memory: 4096-byte bytearray, font preloaded at FONT_BASE
        index_register: I register
        pc: Program counter
        stack: Return address slots (STACK_DEPTH entries)
        stack_pointer: Index of the next free stack slot
        display: 64x32 bytearray, row-major, values 0/1
        delay_timer: Delay timer (0-255)
        sound_timer: Sound timer (0-255)
        keys: Current key-down flags, written by the input provider
        previous_keys: Key sample from the previous step (edge detection)
        draw_pending: Display changed and has not been consumed yet
        halted: Machine reached a terminal condition
        awaiting_key: Suspended on the wait-for-key instruction
        key_target: Register receiving the key once the wait resolves
        seed: Seed used for ``rng``
        rng: Random generator owned by this machine
        cycle_count: Number of executed instructions
    """
    registers: bytearray = field(default_factory=lambda: bytearray(NUM_REGISTERS))
    memory: bytearray = field(default_factory=lambda: bytearray(MEMORY_SIZE))
    index_register: int = 0
    pc: int = ENTRY_POINT
    stack: List[int] = field(default_factory=lambda: [0] * STACK_DEPTH)
    stack_pointer: int = 0
    display: bytearray = field(default_factory=lambda: bytearray(DISPLAY_WIDTH * DISPLAY_HEIGHT))
    delay_timer: int = 0
    sound_timer: int = 0
    keys: List[bool] = field(default_factory=lambda: [False] * NUM_KEYS)
    previous_keys: List[bool] = field(default_factory=lambda: [False] * NUM_KEYS)
    draw_pending: bool = False
    halted: bool = False
    awaiting_key: bool = False
    key_target: int = 0
    seed: Optional[int] = None
    rng: random.Random = field(default_factory=random.Random, repr=False)
    cycle_count: int = 0

    def __post_init__(self):
        if self.seed is None:
            self.seed = _entropy_seed()
        self.rng.seed(self.seed)
        self.memory[FONT_BASE:FONT_BASE + len(FONT_DATA)] = FONT_DATA

    # =========================================================================
    # Accessors
    # =========================================================================

    def get_register(self, index: int) -> int:
        """Get value of register V[index].

        Raises:
            IndexError: If index is not 0-15
        """
        if not 0 <= index < NUM_REGISTERS:
            raise IndexError(f"Invalid register: {index}")
        return self.registers[index]

    def set_register(self, index: int, value: int) -> None:
        """Set register V[index], truncating the value to 8 bits.

        Raises:
            IndexError: If index is not 0-15
        """
        if not 0 <= index < NUM_REGISTERS:
            raise IndexError(f"Invalid register: {index}")
        self.registers[index] = value & 0xFF

    def read_byte(self, address: int) -> int:
        """Read one byte of memory.

        Raises:
            AddressOutOfRange: If address is outside 0x000-0xFFF
        """
        if not 0 <= address < MEMORY_SIZE:
            raise AddressOutOfRange(address)
        return self.memory[address]

    def write_byte(self, address: int, value: int) -> None:
        """Write one byte of memory.

        Raises:
            AddressOutOfRange: If address is outside 0x000-0xFFF
        """
        if not 0 <= address < MEMORY_SIZE:
            raise AddressOutOfRange(address)
        self.memory[address] = value & 0xFF

    def advance_pc(self, amount: int = 2) -> None:
        self.pc = (self.pc + amount) & 0xFFFF

    def tick_timers(self) -> None:
        """Decrement both timers by one, clamped at zero."""
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    def pixel(self, col: int, row: int) -> int:
        return self.display[row * DISPLAY_WIDTH + col]

    # =========================================================================
    # Tracing and validation
    # =========================================================================

    def snapshot(self) -> dict:
        """Create a copy of current state for tracing.

        Returns:
            Dictionary with copies of all state components except memory
            and display
        """
        return {
            "registers": list(self.registers),
            "I": self.index_register,
            "pc": self.pc,
            "stack": list(self.stack[:self.stack_pointer]),
            "sp": self.stack_pointer,
            "delay_timer": self.delay_timer,
            "sound_timer": self.sound_timer,
            "draw_pending": self.draw_pending,
            "halted": self.halted,
            "awaiting_key": self.awaiting_key,
            "key_target": self.key_target,
            "cycle_count": self.cycle_count,
        }

    def validate(self) -> bool:
        """Validate state integrity.

        Checks:
            - Fixed sizes of registers, memory, stack, display and keys
            - Register and timer values fit in 8 bits
            - I and PC fit in 16 bits
            - Stack pointer within 0-16
            - Display pixels are 0 or 1

        Returns:
            True if state is valid, False otherwise
        """
        if len(self.registers) != NUM_REGISTERS or len(self.memory) != MEMORY_SIZE:
            return False
        if any(not 0 <= v <= 0xFF for v in self.registers):
            return False

        if not 0 <= self.index_register <= 0xFFFF:
            return False
        if not 0 <= self.pc <= 0xFFFF:
            return False

        if len(self.stack) != STACK_DEPTH:
            return False
        if not 0 <= self.stack_pointer <= STACK_DEPTH:
            return False

        if len(self.display) != DISPLAY_WIDTH * DISPLAY_HEIGHT:
            return False
        if any(p not in (0, 1) for p in self.display):
            return False

        for timer in (self.delay_timer, self.sound_timer):
            if not 0 <= timer <= 0xFF:
                return False

        if len(self.keys) != NUM_KEYS or len(self.previous_keys) != NUM_KEYS:
            return False
        if not 0 <= self.key_target < NUM_REGISTERS:
            return False

        if self.cycle_count < 0:
            return False

        return True

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def dump_registers(self) -> Dict[str, int]:
        """Get a copy of all register values keyed by name (V0-VF, I, PC, SP, DT, ST)."""
        regs = {f"V{i:X}": v for i, v in enumerate(self.registers)}
        regs.update({
            "I": self.index_register,
            "PC": self.pc,
            "SP": self.stack_pointer,
            "DT": self.delay_timer,
            "ST": self.sound_timer,
        })
        return regs

    def format_registers(self, ascii: bool = False) -> str:
        """Render registers as a table, V0-V7 and V8-VF then I/pc/sp/dt/st.

        Args:
            ascii: Show register values as characters instead of hex
        """
        def cell(value: int) -> str:
            if ascii:
                char = chr(value) if 0x20 <= value <= 0x7E else "."
                return f"{char:>4}"
            return f"{value:#4x}"

        lines = []
        for bank in (range(0, 8), range(8, 16)):
            lines.append("| " + "".join(f"  V{i:X} |" for i in bank))
            lines.append("| " + "".join(f"{cell(self.registers[i])} |" for i in bank))
            lines.append("")

        lines.append("|          I |        pc |  sp |  dt |  st |")
        lines.append(
            f"|     {self.index_register:#6x} |    {self.pc:#6x} |"
            f"{self.stack_pointer:#5x} |{self.delay_timer:#5x} |{self.sound_timer:#5x} |"
        )
        return "\n".join(lines)

    def format_memory(self) -> str:
        """Render memory as 16-byte lines of hex followed by printable ASCII."""
        lines = []
        for base in range(0, MEMORY_SIZE, 16):
            row = self.memory[base:base + 16]
            hex_part = " ".join(f"{b:02x}" for b in row)
            text_part = "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in row)
            lines.append(f"{base:04x} {hex_part}  : {text_part}")
        return "\n".join(lines)

    def format_display(self, on: str = "#", off: str = ".") -> str:
        """Render the display as text, one line per pixel row."""
        return "\n".join(
            "".join(on if self.display[row * DISPLAY_WIDTH + col] else off
                    for col in range(DISPLAY_WIDTH))
            for row in range(DISPLAY_HEIGHT)
        )

    def __str__(self) -> str:
        """Human-readable state representation."""
        regs = " ".join(f"V{i:X}={v:02x}" for i, v in enumerate(self.registers))
        status = "HALTED" if self.halted else ("WAITING" if self.awaiting_key else "")
        return (
            f"[Cycle {self.cycle_count}] PC={self.pc:#06x} I={self.index_register:#06x} "
            f"SP={self.stack_pointer} DT={self.delay_timer} ST={self.sound_timer} {regs} {status}"
        ).rstrip()


def create_initial_state(rom: bytes = b"", seed: Optional[int] = None) -> MachineState:
    """Create initial machine state with a ROM loaded at the entry point.

    Args:
        rom: Raw CHIP-8 program bytes
        seed: Seed for the machine's random generator (entropy if None)

    Returns:
        Fresh MachineState with font and program loaded

    Raises:
        ValueError: If the ROM does not fit above the entry point
    """
    if len(rom) > MAX_ROM_SIZE:
        raise ValueError(f"ROM too large: {len(rom)} bytes (max {MAX_ROM_SIZE})")

    state = MachineState(seed=seed)
    state.memory[ENTRY_POINT:ENTRY_POINT + len(rom)] = rom
    return state
