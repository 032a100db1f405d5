"""qchip8: CHIP-8 Virtual Machine Interpreter.

This package implements a CHIP-8 interpreter core: machine state, opcode
fetch and decode, one handler per instruction family, and a step driver
that runs one fetch-decode-execute cycle plus a timer tick per logical
60 Hz step.

Architecture:
    MEMORY -> FETCH -> DECODE -> KEY -> REGISTRY -> EXECUTE -> STATE
               |         |        |        |                    |
           [PC-based] [Rules]   [Op]  [Handlers]          [draw_pending,
                                                            timers, keys]

Modules:
    state: MachineState dataclass, font and memory layout
    errors: Fatal machine errors (AddressOutOfRange, UnknownOpcode, ...)
    decode: Opcode fetch, ordered decode rules and the Op enum
    registry: Instruction handlers (one per Op)
    timing: Fixed-timestep accumulator
    cpu: Main Chip8CPU step driver
"""

__version__ = "0.1.0"
__author__ = "qchip8 Project"

from .state import MachineState, create_initial_state
from .errors import (
    Chip8Error,
    AddressOutOfRange,
    UnknownOpcode,
    StackOverflow,
    StackUnderflow,
)
from .decode import Op, DecodeResult, decode_opcode, fetch_opcode, parse_program
from .registry import InstructionRegistry
from .timing import FixedTimestep
from .cpu import Chip8CPU, ExecutionTraceEntry

__all__ = [
    "MachineState",
    "create_initial_state",
    "Chip8Error",
    "AddressOutOfRange",
    "UnknownOpcode",
    "StackOverflow",
    "StackUnderflow",
    "Op",
    "DecodeResult",
    "decode_opcode",
    "fetch_opcode",
    "parse_program",
    "InstructionRegistry",
    "FixedTimestep",
    "Chip8CPU",
    "ExecutionTraceEntry",
]
