"""Tests for opcode fetch and decode."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from qchip8.decode import (
    DECODE_RULES,
    DecodeResult,
    Op,
    decode_opcode,
    fetch_opcode,
    parse_program,
    split_operands,
)
from qchip8.errors import AddressOutOfRange
from qchip8.state import MachineState


class TestDecodeResultDataclass:
    """Test DecodeResult structure."""

    def test_valid_result(self):
        result = DecodeResult(Op.ADD, split_operands(0x8124), 0x8124)
        assert result.key is Op.ADD
        assert result.valid is True
        assert str(result) == "8124 OP_ADD"

    def test_unknown_result_is_invalid(self):
        result = decode_opcode(0xFFFF)
        assert result.key is Op.UNKNOWN
        assert result.valid is False


class TestOperandExtraction:
    """Test operand fields."""

    def test_split_operands(self):
        params = split_operands(0xD12F)
        assert params == {"x": 0x1, "y": 0x2, "n": 0xF, "nn": 0x2F, "nnn": 0x12F, "raw": 0xD12F}

    def test_decode_carries_operands(self):
        result = decode_opcode(0x6A42)
        assert result.key is Op.LD_IMM
        assert result.params["x"] == 0xA
        assert result.params["nn"] == 0x42
        assert result.raw_instruction == 0x6A42


class TestDecodeLiterals:
    """Exact literal instructions win over the 0x0nnn space."""

    @pytest.mark.parametrize("instruction,key", [
        (0x0000, Op.HALT),
        (0x00E0, Op.CLS),
        (0x00EE, Op.RET),
    ])
    def test_literals(self, instruction, key):
        assert decode_opcode(instruction).key is key

    @pytest.mark.parametrize("instruction", [0x0001, 0x00E1, 0x00EF, 0x0123, 0x0FFF])
    def test_other_system_calls_are_unknown(self, instruction):
        assert decode_opcode(instruction).key is Op.UNKNOWN


class TestDecodeFamilies:
    """One representative per instruction family."""

    @pytest.mark.parametrize("instruction,key", [
        (0x1202, Op.JP),
        (0x2300, Op.CALL),
        (0x3A12, Op.SE_IMM),
        (0x4A12, Op.SNE_IMM),
        (0x5AB0, Op.SE_REG),
        (0x6A12, Op.LD_IMM),
        (0x7A12, Op.ADD_IMM),
        (0x8AB0, Op.MOV),
        (0x8AB1, Op.OR),
        (0x8AB2, Op.AND),
        (0x8AB3, Op.XOR),
        (0x8AB4, Op.ADD),
        (0x8AB5, Op.SUB),
        (0x8AB6, Op.SHR),
        (0x8AB7, Op.SUBN),
        (0x8ABE, Op.SHL),
        (0x9AB0, Op.SNE_REG),
        (0xA123, Op.LD_I),
        (0xB123, Op.JP_V0),
        (0xCA12, Op.RND),
        (0xDAB5, Op.DRW),
        (0xEA9E, Op.SKP),
        (0xEAA1, Op.SKNP),
        (0xFA07, Op.LD_VX_DT),
        (0xFA0A, Op.LD_VX_K),
        (0xFA15, Op.LD_DT_VX),
        (0xFA18, Op.LD_ST_VX),
        (0xFA1E, Op.ADD_I),
        (0xFA29, Op.LD_F),
        (0xFA33, Op.LD_B),
        (0xFA55, Op.LD_MEM_VX),
        (0xFA65, Op.LD_VX_MEM),
    ])
    def test_family(self, instruction, key):
        assert decode_opcode(instruction).key is key

    @pytest.mark.parametrize("instruction", [
        0x5AB1,  # 5xy? requires low nibble 0
        0x9ABF,  # 9xy? requires low nibble 0
        0x8AB8,
        0x8ABF,
        0xEA9F,
        0xEA00,
        0xFA00,
        0xFA66,
        0xFFFF,
    ])
    def test_unmatched_is_unknown(self, instruction):
        assert decode_opcode(instruction).key is Op.UNKNOWN

    def test_decode_masks_to_16_bits(self):
        assert decode_opcode(0x11202).key is Op.JP


class TestDecodeTable:
    """The ordered rule table is the whole contract."""

    def test_every_op_reachable(self):
        """Every key except UNKNOWN has a rule, and no rule is duplicated."""
        keys = [rule.key for rule in DECODE_RULES]
        assert set(keys) == set(Op) - {Op.UNKNOWN}
        assert len(keys) == len(set(keys))

    def test_literals_precede_wide_masks(self):
        literal_positions = [i for i, r in enumerate(DECODE_RULES) if r.mask == 0xFFFF]
        assert literal_positions == [0, 1, 2]

    def test_exhaustive_first_match(self):
        """For all 16-bit values, decode returns the first matching rule or UNKNOWN."""
        for instruction in range(0x10000):
            expected = next(
                (rule.key for rule in DECODE_RULES if rule.matches(instruction)),
                Op.UNKNOWN,
            )
            result = decode_opcode(instruction)
            assert isinstance(result.key, Op)
            assert result.key is expected

    def test_rules_do_not_overlap(self):
        """No 16-bit value matches more than one rule."""
        for instruction in range(0x10000):
            matches = [rule for rule in DECODE_RULES if rule.matches(instruction)]
            assert len(matches) <= 1, f"{instruction:#06x} matches {matches}"


class TestFetch:
    """Test opcode fetch."""

    def test_fetch_big_endian(self):
        state = MachineState(seed=0)
        state.memory[0x200] = 0x12
        state.memory[0x201] = 0x34
        assert fetch_opcode(state) == 0x1234

    def test_fetch_has_no_side_effects(self):
        state = MachineState(seed=0)
        fetch_opcode(state)
        assert state.pc == 0x200
        assert state.cycle_count == 0

    def test_fetch_last_valid_address(self):
        state = MachineState(seed=0)
        state.pc = 0xFFE
        state.memory[0xFFE] = 0xAB
        state.memory[0xFFF] = 0xCD
        assert fetch_opcode(state) == 0xABCD

    def test_fetch_past_end(self):
        state = MachineState(seed=0)
        state.pc = 0xFFF
        with pytest.raises(AddressOutOfRange) as exc_info:
            fetch_opcode(state)
        assert exc_info.value.address == 0x1000


class TestParseProgram:
    """Test hex program parsing."""

    def test_words_and_comments(self):
        source = """
            6005        ; V0 = 5
            6103        # V1 = 3

            8014        ; V0 += V1
        """
        assert parse_program(source) == bytes.fromhex("600561038014")

    def test_hex_prefix_and_commas(self):
        assert parse_program("0x00E0, 0x1200") == bytes.fromhex("00E01200")

    def test_single_bytes(self):
        assert parse_program("F0 90 F0") == bytes([0xF0, 0x90, 0xF0])

    def test_empty_source(self):
        assert parse_program("; nothing here") == b""

    @pytest.mark.parametrize("source", ["123", "XYZ1", "12345"])
    def test_invalid_words(self, source):
        with pytest.raises(ValueError, match="Invalid program word"):
            parse_program(source)
