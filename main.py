#!/usr/bin/env python3
"""qchip8 Command Line Interface.

Run CHIP-8 ROMs headless with the qchip8 interpreter.

Usage:
    python main.py --rom roms/disp.ch8
    python main.py --inline "6005 6103 8014 0000" --trace
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from qchip8 import Chip8CPU


def parse_keys(text: str) -> list:
    """Parse a comma separated list of hex keys, e.g. "5,A"."""
    keys = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        key = int(item, 16)
        if not 0 <= key <= 0xF:
            raise argparse.ArgumentTypeError(f"Invalid key: {item}")
        keys.append(key)
    return keys


def main():
    parser = argparse.ArgumentParser(
        description="qchip8: CHIP-8 Virtual Machine Interpreter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run a ROM until it halts (or 10000 steps)
    python main.py --rom roms/disp.ch8

    # Run with full trace output
    python main.py --rom roms/disp.ch8 --trace

    # Run inline hex words with a fixed random seed
    python main.py --inline "C0FF 0000" --seed 1234

    # Hold keys 5 and A for the whole run
    python main.py --rom roms/keys.ch8 --keys 5,A
        """
    )

    parser.add_argument(
        "--rom", "-r",
        type=str,
        help="Path to raw CHIP-8 ROM file"
    )
    parser.add_argument(
        "--inline", "-i",
        type=str,
        help="Inline program as hex words (separate lines with ;)"
    )
    parser.add_argument(
        "--seed", "-s",
        type=int,
        help="Seed for the machine's random generator. Default: entropy"
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=Chip8CPU.DEFAULT_MAX_STEPS,
        help=f"Maximum logical steps (safety limit). Default: {Chip8CPU.DEFAULT_MAX_STEPS}"
    )
    parser.add_argument(
        "--keys", "-k",
        type=parse_keys,
        default=[],
        help="Hex keys held down for the whole run, e.g. 5,A"
    )
    parser.add_argument(
        "--trace", "-t",
        action="store_true",
        help="Print full execution trace"
    )
    parser.add_argument(
        "--dump-memory",
        action="store_true",
        help="Print a hex dump of memory after the run"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Minimal output (non-zero registers only)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args()

    # Validate arguments
    if not args.rom and not args.inline:
        parser.error("Either --rom or --inline is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cpu = Chip8CPU(seed=args.seed, max_steps=args.max_steps, trace_limit=None if args.trace else 1000)

    # Load program
    try:
        if args.rom:
            rom_path = Path(args.rom)
            if not rom_path.exists():
                print(f"Error: ROM file not found: {args.rom}")
                return 1
            cpu.load_rom(rom_path.read_bytes())
            if not args.quiet:
                print(f"Loading ROM: {args.rom}")
        else:
            # Inline program
            cpu.load_program(args.inline.replace(";", "\n"))
            if not args.quiet:
                print("Running inline program")
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    cpu.set_keys(args.keys)

    # Run
    if not args.quiet:
        print("-" * 60)
        print("Executing...")
        print("-" * 60)

    try:
        cpu.run()
    except RuntimeError as e:
        print(f"Execution error: {e}")

    # Output
    if args.trace:
        cpu.print_trace()
    elif not args.quiet:
        print()
        summary = cpu.get_summary()
        print(f"Steps: {summary['steps']}")
        print(f"Cycles: {summary['cycles']}")
        print(f"Halted: {summary['halted']}")
        print(f"Waiting for key: {summary['waiting']}")
        print(cpu.format_registers())
        if summary['errors']:
            print(f"Errors: {summary['errors']}")
        print()
        print(cpu.format_display())
    else:
        # Quiet mode - just print non-zero registers
        regs = cpu.dump_registers()
        for reg, value in regs.items():
            if value != 0:
                print(f"{reg}={value:#x}")

    if args.dump_memory:
        print(cpu.format_memory())

    # Return exit code based on halted state
    return 0 if cpu.is_halted() and not cpu.get_summary()["errors"] else 1


if __name__ == "__main__":
    sys.exit(main())
