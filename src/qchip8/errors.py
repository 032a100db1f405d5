"""Fatal machine errors for qchip8.

Every error here is terminal for the machine that raised it. Handlers and
fetch raise them; the step driver catches them, halts the machine and hands
them back to the caller inside the step's trace entry.

Each error carries a ``kind`` (stable string identifier) and a ``context``
dictionary with the values needed to diagnose it.
"""

from typing import Any, Dict


class Chip8Error(Exception):
    """Base class for fatal CHIP-8 machine errors."""

    kind = "CHIP8_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), **self.context}


class AddressOutOfRange(Chip8Error):
    """Memory access outside 0x000-0xFFF."""

    kind = "ADDRESS_OUT_OF_RANGE"

    def __init__(self, address: int):
        super().__init__(f"Address out of range: {address:#06x}", address=address)
        self.address = address


class UnknownOpcode(Chip8Error):
    """No decode rule matched the instruction."""

    kind = "UNKNOWN_OPCODE"

    def __init__(self, instruction: int):
        super().__init__(f"Unknown instruction: {instruction:#06x}", instruction=instruction)
        self.instruction = instruction


class StackOverflow(Chip8Error):
    """CALL executed with a full stack."""

    kind = "STACK_OVERFLOW"

    def __init__(self, pc: int):
        super().__init__(f"Stack overflow at pc={pc:#06x}", pc=pc)
        self.pc = pc


class StackUnderflow(Chip8Error):
    """RET executed with an empty stack."""

    kind = "STACK_UNDERFLOW"

    def __init__(self, pc: int):
        super().__init__(f"Stack underflow at pc={pc:#06x}", pc=pc)
        self.pc = pc
