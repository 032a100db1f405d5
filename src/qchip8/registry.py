"""InstructionRegistry: CHIP-8 instruction handlers for qchip8.

This module implements the registry pattern for instruction execution:
each operation key from the decoder maps to exactly one handler, and the
registry refuses to freeze until every key in ``Op`` has one.

Handlers share one signature, ``(MachineState, params) -> MachineState``,
where ``params`` are the operand fields produced by the decoder
(x, y, n, nn, nnn, raw). Handlers mutate the state in place and return it.
Unless noted, each handler advances PC by 2 after its effect.

Flag-producing handlers write VF as their last effect, so VF holds the flag
even when VF is also the destination register.

Shift instructions operate on V[x] only; V[y] is ignored.
"""

from typing import Any, Callable, Dict, Optional

from .decode import Op
from .errors import StackOverflow, StackUnderflow, UnknownOpcode
from .state import (
    DISPLAY_HEIGHT,
    DISPLAY_WIDTH,
    FLAG_REGISTER,
    STACK_DEPTH,
    MachineState,
    sprite_address,
)

Handler = Callable[[MachineState, Dict[str, Any]], MachineState]


class InstructionRegistry:
    """Verified registry of CHIP-8 instruction handlers.

    The registry is frozen after initialization to ensure
    no runtime modifications can occur.

    Attributes:
        _primitives: Dictionary mapping operation keys to handler functions
        _frozen: Whether the registry is locked against modifications
    """

    def __init__(self):
        """Initialize registry with all instruction handlers."""
        self._primitives: Dict[Op, Handler] = {}
        self._frozen = False
        self._register_all_primitives()
        self.freeze()

    def _register_all_primitives(self) -> None:
        """Register all instruction handlers."""
        # System and flow control
        self.register(Op.HALT, self._op_halt)
        self.register(Op.CLS, self._op_cls)
        self.register(Op.RET, self._op_ret)
        self.register(Op.JP, self._op_jp)
        self.register(Op.CALL, self._op_call)
        self.register(Op.JP_V0, self._op_jp_v0)

        # Conditional skips
        self.register(Op.SE_IMM, self._op_se_imm)
        self.register(Op.SNE_IMM, self._op_sne_imm)
        self.register(Op.SE_REG, self._op_se_reg)
        self.register(Op.SNE_REG, self._op_sne_reg)

        # Register loads and arithmetic
        self.register(Op.LD_IMM, self._op_ld_imm)
        self.register(Op.ADD_IMM, self._op_add_imm)
        self.register(Op.MOV, self._op_mov)
        self.register(Op.OR, self._op_or)
        self.register(Op.AND, self._op_and)
        self.register(Op.XOR, self._op_xor)
        self.register(Op.ADD, self._op_add)
        self.register(Op.SUB, self._op_sub)
        self.register(Op.SHR, self._op_shr)
        self.register(Op.SUBN, self._op_subn)
        self.register(Op.SHL, self._op_shl)
        self.register(Op.RND, self._op_rnd)

        # Index register and memory
        self.register(Op.LD_I, self._op_ld_i)
        self.register(Op.ADD_I, self._op_add_i)
        self.register(Op.LD_F, self._op_ld_f)
        self.register(Op.LD_B, self._op_ld_b)
        self.register(Op.LD_MEM_VX, self._op_ld_mem_vx)
        self.register(Op.LD_VX_MEM, self._op_ld_vx_mem)

        # Display
        self.register(Op.DRW, self._op_drw)

        # Keypad
        self.register(Op.SKP, self._op_skp)
        self.register(Op.SKNP, self._op_sknp)
        self.register(Op.LD_VX_K, self._op_ld_vx_k)

        # Timers
        self.register(Op.LD_VX_DT, self._op_ld_vx_dt)
        self.register(Op.LD_DT_VX, self._op_ld_dt_vx)
        self.register(Op.LD_ST_VX, self._op_ld_st_vx)

        # Fallback
        self.register(Op.UNKNOWN, self._op_unknown)

    def register(self, key: Op, handler: Handler) -> None:
        """Register an instruction handler.

        Args:
            key: Operation key
            handler: Function that takes (state, params) and returns the state

        Raises:
            RuntimeError: If registry is frozen
            ValueError: If key already registered
        """
        if self._frozen:
            raise RuntimeError("Cannot register primitives: registry is frozen")
        if key in self._primitives:
            raise ValueError(f"Primitive already registered: {key}")
        self._primitives[key] = handler

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications.

        Raises:
            RuntimeError: If any operation key has no handler
        """
        missing = set(Op) - set(self._primitives)
        if missing:
            names = ", ".join(sorted(op.value for op in missing))
            raise RuntimeError(f"No handler registered for: {names}")
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if registry is frozen."""
        return self._frozen

    def get_valid_keys(self) -> set:
        """Get set of all valid operation keys."""
        return set(self._primitives.keys())

    def execute(self, state: MachineState, key: Op, params: Dict[str, Any]) -> MachineState:
        """Execute a registered handler.

        Args:
            state: Machine state, mutated in place
            key: Operation key
            params: Operand fields from the decoder

        Returns:
            The same state after execution

        Raises:
            KeyError: If key not in registry
            Chip8Error: If the instruction hits a fatal condition
        """
        if key not in self._primitives:
            raise KeyError(f"Unknown operation key: {key}")

        handler = self._primitives[key]
        new_state = handler(state, params)

        new_state.cycle_count += 1
        return new_state

    # =========================================================================
    # System and Flow Control
    # =========================================================================

    def _op_halt(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """0000 - Stop execution. PC is not advanced."""
        state.halted = True
        return state

    def _op_cls(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """00E0 - Clear the display."""
        state.display[:] = bytes(len(state.display))
        state.draw_pending = True
        state.advance_pc()
        return state

    def _op_ret(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """00EE - Return from subroutine.

        Pops the return address pushed by CALL into PC.

        Raises:
            StackUnderflow: If the stack is empty
        """
        if state.stack_pointer == 0:
            raise StackUnderflow(state.pc)
        state.stack_pointer -= 1
        state.pc = state.stack[state.stack_pointer]
        return state

    def _op_jp(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """1nnn - Jump to nnn."""
        state.pc = params["nnn"]
        return state

    def _op_call(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """2nnn - Call subroutine at nnn.

        Pushes the address of the next instruction, then jumps.

        Raises:
            StackOverflow: If all 16 stack slots are in use
        """
        if state.stack_pointer >= STACK_DEPTH:
            raise StackOverflow(state.pc)
        state.stack[state.stack_pointer] = (state.pc + 2) & 0xFFFF
        state.stack_pointer += 1
        state.pc = params["nnn"]
        return state

    def _op_jp_v0(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Bnnn - Jump to nnn + V0."""
        state.pc = params["nnn"] + state.registers[0]
        return state

    # =========================================================================
    # Conditional Skips
    # =========================================================================

    def _skip_if(self, state: MachineState, condition: bool) -> MachineState:
        state.advance_pc(4 if condition else 2)
        return state

    def _op_se_imm(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """3xnn - Skip next instruction if V[x] == nn."""
        return self._skip_if(state, state.registers[params["x"]] == params["nn"])

    def _op_sne_imm(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """4xnn - Skip next instruction if V[x] != nn."""
        return self._skip_if(state, state.registers[params["x"]] != params["nn"])

    def _op_se_reg(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """5xy0 - Skip next instruction if V[x] == V[y]."""
        regs = state.registers
        return self._skip_if(state, regs[params["x"]] == regs[params["y"]])

    def _op_sne_reg(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """9xy0 - Skip next instruction if V[x] != V[y]."""
        regs = state.registers
        return self._skip_if(state, regs[params["x"]] != regs[params["y"]])

    # =========================================================================
    # Register Loads and Arithmetic
    # =========================================================================

    def _op_ld_imm(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """6xnn - V[x] = nn."""
        state.registers[params["x"]] = params["nn"]
        state.advance_pc()
        return state

    def _op_add_imm(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """7xnn - V[x] += nn, wrapping, VF untouched."""
        x = params["x"]
        state.registers[x] = (state.registers[x] + params["nn"]) & 0xFF
        state.advance_pc()
        return state

    def _op_mov(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy0 - V[x] = V[y]."""
        state.registers[params["x"]] = state.registers[params["y"]]
        state.advance_pc()
        return state

    def _op_or(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy1 - V[x] |= V[y]."""
        state.registers[params["x"]] |= state.registers[params["y"]]
        state.advance_pc()
        return state

    def _op_and(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy2 - V[x] &= V[y]."""
        state.registers[params["x"]] &= state.registers[params["y"]]
        state.advance_pc()
        return state

    def _op_xor(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy3 - V[x] ^= V[y]."""
        state.registers[params["x"]] ^= state.registers[params["y"]]
        state.advance_pc()
        return state

    def _op_add(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy4 - V[x] += V[y], VF = carry.

        Params:
            x: Destination and first operand register
            y: Second operand register

        Returns:
            State with V[x] = sum mod 256 and VF = 1 if sum >= 256
        """
        x, y = params["x"], params["y"]
        total = state.registers[x] + state.registers[y]
        state.registers[x] = total & 0xFF
        state.registers[FLAG_REGISTER] = 1 if total > 0xFF else 0
        state.advance_pc()
        return state

    def _op_sub(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy5 - V[x] -= V[y], VF = NOT borrow.

        Returns:
            State with V[x] = (V[x] - V[y]) mod 256 and VF = 1 if V[x] >= V[y]
        """
        x, y = params["x"], params["y"]
        vx, vy = state.registers[x], state.registers[y]
        state.registers[x] = (vx - vy) & 0xFF
        state.registers[FLAG_REGISTER] = 1 if vx >= vy else 0
        state.advance_pc()
        return state

    def _op_subn(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy7 - V[x] = V[y] - V[x], VF = NOT borrow.

        Returns:
            State with V[x] = (V[y] - V[x]) mod 256 and VF = 1 if V[y] >= V[x]
        """
        x, y = params["x"], params["y"]
        vx, vy = state.registers[x], state.registers[y]
        state.registers[x] = (vy - vx) & 0xFF
        state.registers[FLAG_REGISTER] = 1 if vy >= vx else 0
        state.advance_pc()
        return state

    def _op_shr(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xy6 - V[x] >>= 1, VF = bit shifted out."""
        x = params["x"]
        vx = state.registers[x]
        state.registers[x] = vx >> 1
        state.registers[FLAG_REGISTER] = vx & 0x01
        state.advance_pc()
        return state

    def _op_shl(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """8xyE - V[x] <<= 1, VF = bit shifted out."""
        x = params["x"]
        vx = state.registers[x]
        state.registers[x] = (vx << 1) & 0xFF
        state.registers[FLAG_REGISTER] = (vx >> 7) & 0x01
        state.advance_pc()
        return state

    def _op_rnd(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Cxnn - V[x] = random byte & nn, drawn from the machine's own generator."""
        state.registers[params["x"]] = state.rng.getrandbits(8) & params["nn"]
        state.advance_pc()
        return state

    # =========================================================================
    # Index Register and Memory
    # =========================================================================

    def _op_ld_i(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Annn - I = nnn."""
        state.index_register = params["nnn"]
        state.advance_pc()
        return state

    def _op_add_i(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx1E - I += V[x], 16-bit wrap, VF untouched."""
        state.index_register = (state.index_register + state.registers[params["x"]]) & 0xFFFF
        state.advance_pc()
        return state

    def _op_ld_f(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx29 - I = address of the font glyph for V[x]."""
        state.index_register = sprite_address(state.registers[params["x"]])
        state.advance_pc()
        return state

    def _op_ld_b(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx33 - Store BCD of V[x] at I, I+1, I+2.

        Raises:
            AddressOutOfRange: If I+2 lies outside memory
        """
        value = state.registers[params["x"]]
        base = state.index_register
        state.write_byte(base, value // 100)
        state.write_byte(base + 1, (value // 10) % 10)
        state.write_byte(base + 2, value % 10)
        state.advance_pc()
        return state

    def _op_ld_mem_vx(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx55 - Store V0..V[x] inclusive at I..I+x. I is unchanged."""
        base = state.index_register
        for i in range(params["x"] + 1):
            state.write_byte(base + i, state.registers[i])
        state.advance_pc()
        return state

    def _op_ld_vx_mem(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx65 - Load V0..V[x] inclusive from I..I+x. I is unchanged."""
        base = state.index_register
        for i in range(params["x"] + 1):
            state.registers[i] = state.read_byte(base + i)
        state.advance_pc()
        return state

    # =========================================================================
    # Display
    # =========================================================================

    def _op_drw(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Dxyn - XOR-draw an n-row sprite from memory[I] at (V[x], V[y]).

        The origin wraps to the screen, and each pixel wraps horizontally
        within its row and vertically across rows. Nothing is clipped.

        Returns:
            State with display updated, VF = 1 if any lit pixel was erased,
            and draw_pending set
        """
        origin_x = state.registers[params["x"]] % DISPLAY_WIDTH
        origin_y = state.registers[params["y"]] % DISPLAY_HEIGHT
        base = state.index_register
        rows = [state.read_byte(base + i) for i in range(params["n"])]

        collision = 0
        for dy, sprite_row in enumerate(rows):
            row = (origin_y + dy) % DISPLAY_HEIGHT
            for dx in range(8):
                if not sprite_row & (0x80 >> dx):
                    continue
                col = (origin_x + dx) % DISPLAY_WIDTH
                index = row * DISPLAY_WIDTH + col
                if state.display[index]:
                    collision = 1
                state.display[index] ^= 1

        state.registers[FLAG_REGISTER] = collision
        state.draw_pending = True
        state.advance_pc()
        return state

    # =========================================================================
    # Keypad
    # =========================================================================

    def _op_skp(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Ex9E - Skip next instruction if key V[x] is down."""
        key = state.registers[params["x"]] & 0xF
        return self._skip_if(state, state.keys[key])

    def _op_sknp(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """ExA1 - Skip next instruction if key V[x] is up."""
        key = state.registers[params["x"]] & 0xF
        return self._skip_if(state, not state.keys[key])

    def _op_ld_vx_k(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx0A - Wait for a key press, store it in V[x].

        Only enters the wait state; the step driver resolves it on the next
        key-down edge and advances PC then.
        """
        state.awaiting_key = True
        state.key_target = params["x"]
        return state

    # =========================================================================
    # Timers
    # =========================================================================

    def _op_ld_vx_dt(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx07 - V[x] = delay timer."""
        state.registers[params["x"]] = state.delay_timer
        state.advance_pc()
        return state

    def _op_ld_dt_vx(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx15 - delay timer = V[x]."""
        state.delay_timer = state.registers[params["x"]]
        state.advance_pc()
        return state

    def _op_ld_st_vx(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Fx18 - sound timer = V[x]."""
        state.sound_timer = state.registers[params["x"]]
        state.advance_pc()
        return state

    # =========================================================================
    # Fallback
    # =========================================================================

    def _op_unknown(self, state: MachineState, params: Dict[str, Any]) -> MachineState:
        """Unrecognized instruction. PC is not advanced.

        Raises:
            UnknownOpcode: Always, carrying the raw instruction
        """
        raise UnknownOpcode(params["raw"])


# Singleton registry instance
_registry: Optional[InstructionRegistry] = None


def get_registry() -> InstructionRegistry:
    """Get the singleton instruction registry instance.

    Returns:
        The frozen InstructionRegistry instance
    """
    global _registry
    if _registry is None:
        _registry = InstructionRegistry()
    return _registry
