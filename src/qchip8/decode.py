"""Opcode fetch and decode for qchip8.

Decoding maps a raw 16-bit instruction to exactly one operation key from the
closed ``Op`` enum. The mapping is an ordered table of mask/match rules where
the first match wins; literal rules come first, then rules keyed on the high
nibble, then the 8xy?, Ex?? and Fx?? families. Several families share a high
nibble, so the order of ``DECODE_RULES`` is part of the contract.

Architecture:
    memory[pc], memory[pc+1] -> fetch_opcode -> decode_opcode -> (Op, operands)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from .errors import AddressOutOfRange
from .state import MEMORY_SIZE, MachineState


class Op(Enum):
    """Operation keys, one per instruction handler."""
    HALT = "OP_HALT"            # 0000
    CLS = "OP_CLS"              # 00E0
    RET = "OP_RET"              # 00EE
    JP = "OP_JP"                # 1nnn
    CALL = "OP_CALL"            # 2nnn
    SE_IMM = "OP_SE_IMM"        # 3xnn
    SNE_IMM = "OP_SNE_IMM"      # 4xnn
    SE_REG = "OP_SE_REG"        # 5xy0
    LD_IMM = "OP_LD_IMM"        # 6xnn
    ADD_IMM = "OP_ADD_IMM"      # 7xnn
    MOV = "OP_MOV"              # 8xy0
    OR = "OP_OR"                # 8xy1
    AND = "OP_AND"              # 8xy2
    XOR = "OP_XOR"              # 8xy3
    ADD = "OP_ADD"              # 8xy4
    SUB = "OP_SUB"              # 8xy5
    SHR = "OP_SHR"              # 8xy6
    SUBN = "OP_SUBN"            # 8xy7
    SHL = "OP_SHL"              # 8xyE
    SNE_REG = "OP_SNE_REG"      # 9xy0
    LD_I = "OP_LD_I"            # Annn
    JP_V0 = "OP_JP_V0"          # Bnnn
    RND = "OP_RND"              # Cxnn
    DRW = "OP_DRW"              # Dxyn
    SKP = "OP_SKP"              # Ex9E
    SKNP = "OP_SKNP"            # ExA1
    LD_VX_DT = "OP_LD_VX_DT"    # Fx07
    LD_VX_K = "OP_LD_VX_K"      # Fx0A
    LD_DT_VX = "OP_LD_DT_VX"    # Fx15
    LD_ST_VX = "OP_LD_ST_VX"    # Fx18
    ADD_I = "OP_ADD_I"          # Fx1E
    LD_F = "OP_LD_F"            # Fx29
    LD_B = "OP_LD_B"            # Fx33
    LD_MEM_VX = "OP_LD_MEM_VX"  # Fx55
    LD_VX_MEM = "OP_LD_VX_MEM"  # Fx65
    UNKNOWN = "OP_UNKNOWN"


@dataclass(frozen=True)
class DecodeRule:
    """Matches when ``instruction & mask == match``."""
    mask: int
    match: int
    key: Op

    def matches(self, instruction: int) -> bool:
        return instruction & self.mask == self.match


DECODE_RULES: Tuple[DecodeRule, ...] = (
    # Literals
    DecodeRule(0xFFFF, 0x0000, Op.HALT),
    DecodeRule(0xFFFF, 0x00E0, Op.CLS),
    DecodeRule(0xFFFF, 0x00EE, Op.RET),

    # High nibble families
    DecodeRule(0xF000, 0x1000, Op.JP),
    DecodeRule(0xF000, 0x2000, Op.CALL),
    DecodeRule(0xF000, 0x3000, Op.SE_IMM),
    DecodeRule(0xF000, 0x4000, Op.SNE_IMM),
    DecodeRule(0xF00F, 0x5000, Op.SE_REG),
    DecodeRule(0xF000, 0x6000, Op.LD_IMM),
    DecodeRule(0xF000, 0x7000, Op.ADD_IMM),
    DecodeRule(0xF00F, 0x9000, Op.SNE_REG),
    DecodeRule(0xF000, 0xA000, Op.LD_I),
    DecodeRule(0xF000, 0xB000, Op.JP_V0),
    DecodeRule(0xF000, 0xC000, Op.RND),
    DecodeRule(0xF000, 0xD000, Op.DRW),

    # 8xy? arithmetic/logic, keyed on the low nibble
    DecodeRule(0xF00F, 0x8000, Op.MOV),
    DecodeRule(0xF00F, 0x8001, Op.OR),
    DecodeRule(0xF00F, 0x8002, Op.AND),
    DecodeRule(0xF00F, 0x8003, Op.XOR),
    DecodeRule(0xF00F, 0x8004, Op.ADD),
    DecodeRule(0xF00F, 0x8005, Op.SUB),
    DecodeRule(0xF00F, 0x8006, Op.SHR),
    DecodeRule(0xF00F, 0x8007, Op.SUBN),
    DecodeRule(0xF00F, 0x800E, Op.SHL),

    # Ex?? keypad, keyed on the low byte
    DecodeRule(0xF0FF, 0xE09E, Op.SKP),
    DecodeRule(0xF0FF, 0xE0A1, Op.SKNP),

    # Fx?? timers/memory, keyed on the low byte
    DecodeRule(0xF0FF, 0xF007, Op.LD_VX_DT),
    DecodeRule(0xF0FF, 0xF00A, Op.LD_VX_K),
    DecodeRule(0xF0FF, 0xF015, Op.LD_DT_VX),
    DecodeRule(0xF0FF, 0xF018, Op.LD_ST_VX),
    DecodeRule(0xF0FF, 0xF01E, Op.ADD_I),
    DecodeRule(0xF0FF, 0xF029, Op.LD_F),
    DecodeRule(0xF0FF, 0xF033, Op.LD_B),
    DecodeRule(0xF0FF, 0xF055, Op.LD_MEM_VX),
    DecodeRule(0xF0FF, 0xF065, Op.LD_VX_MEM),
)


@dataclass(frozen=True)
class DecodeResult:
    """Result of instruction decode.

    Attributes:
        key: Operation key
        params: Operand fields (x, y, n, nn, nnn) and the raw instruction
        raw_instruction: Original 16-bit instruction
    """
    key: Op
    params: Dict[str, int]
    raw_instruction: int

    @property
    def valid(self) -> bool:
        return self.key is not Op.UNKNOWN

    def __str__(self) -> str:
        return f"{self.raw_instruction:04X} {self.key.value}"


def split_operands(instruction: int) -> Dict[str, int]:
    """Extract every operand field of an instruction.

    Returns:
        Dictionary with x (bits 8-11), y (bits 4-7), n (bits 0-3),
        nn (bits 0-7), nnn (bits 0-11) and raw
    """
    return {
        "x": (instruction & 0x0F00) >> 8,
        "y": (instruction & 0x00F0) >> 4,
        "n": instruction & 0x000F,
        "nn": instruction & 0x00FF,
        "nnn": instruction & 0x0FFF,
        "raw": instruction,
    }


def decode_opcode(instruction: int) -> DecodeResult:
    """Decode a 16-bit instruction to an operation key and its operands.

    Never fails: instructions no rule matches decode to ``Op.UNKNOWN``.

    Args:
        instruction: Raw instruction (0x0000-0xFFFF)

    Returns:
        DecodeResult for the first matching rule in DECODE_RULES
    """
    instruction &= 0xFFFF
    key = Op.UNKNOWN
    for rule in DECODE_RULES:
        if rule.matches(instruction):
            key = rule.key
            break
    return DecodeResult(key, split_operands(instruction), instruction)


def fetch_opcode(state: MachineState) -> int:
    """Read the big-endian instruction at the program counter.

    Raises:
        AddressOutOfRange: If pc+1 lies outside memory
    """
    pc = state.pc
    if pc + 1 >= MEMORY_SIZE:
        raise AddressOutOfRange(pc + 1)
    return (state.memory[pc] << 8) | state.memory[pc + 1]


def parse_program(source: str) -> bytes:
    """Parse hex instruction words into ROM bytes.

    Handles:
        - Whitespace or comma separated words of 2 or 4 hex digits
          (optionally prefixed with 0x); 2-digit words are single bytes
        - Comments (starting with ; or #)
        - Blank lines

    Args:
        source: Program text, e.g. "6005 6103 8014 ; V0 = 5 + 3"

    Returns:
        Program bytes, ready to load at the entry point

    Raises:
        ValueError: If a word is not valid hex of 2 or 4 digits
    """
    program = bytearray()

    for line in source.split("\n"):
        # Remove comments
        line = re.sub(r'[;#].*$', '', line).strip()

        if not line:
            continue

        for word in re.split(r'[\s,]+', line):
            if not word:
                continue
            digits = word[2:] if word.lower().startswith("0x") else word
            if len(digits) not in (2, 4) or not re.fullmatch(r'[0-9A-Fa-f]+', digits):
                raise ValueError(f"Invalid program word: {word}")
            program.extend(bytes.fromhex(digits))

    return bytes(program)
