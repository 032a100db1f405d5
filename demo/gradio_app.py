"""qchip8 Interactive Demo.

A Gradio web interface for running CHIP-8 programs and watching the display.

Usage:
    cd /path/to/qchip8
    python demo/gradio_app.py

Features:
    - Load example programs, edit them as hex words, or upload a ROM
    - Hold keypad keys and run any number of 60 Hz frames
    - See the 64x32 display, registers and the execution trace
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import gradio as gr
import numpy as np
from qchip8 import Chip8CPU
from qchip8.state import DISPLAY_HEIGHT, DISPLAY_WIDTH


# =============================================================================
# Example Programs
# =============================================================================

EXAMPLE_PROGRAMS = {
    "Font glyphs": """6000        ; V0 = digit
6100        ; V1 = x
6200        ; V2 = y
F029        ; I = glyph(V0)          <- 206
D125        ; draw 5 rows at (V1, V2)
7001        ; V0 += 1
7105        ; V1 += 5
3008        ; skip if V0 == 8
1216        ; jump 216
6100        ; V1 = 0
6206        ; V2 = 6 (second row)
3010        ; skip if V0 == 16        <- 216
1206        ; jump 206
121A        ; spin""",

    "Key echo": """00E0        ; clear
F00A        ; V0 = wait for key      <- 202
00E0        ; clear
F029        ; I = glyph(V0)
611C        ; V1 = 28
620D        ; V2 = 13
D125        ; draw
1202        ; jump 202""",

    "BCD counter": """6300        ; V3 = 0
00E0        ; clear                  <- 202
A300        ; I = 0x300
F333        ; BCD(V3) at I
F265        ; V0..V2 = digits
6414        ; V4 = 20 (x)
650C        ; V5 = 12 (y)
F029 D455   ; hundreds
7405
F129 D455   ; tens
7405
F229 D455   ; units
7301        ; V3 += 1
6610        ; V6 = 16
F615        ; delay = V6
F607        ; V6 = delay             <- 224
3600        ; skip if V6 == 0
1224        ; jump 224
1202        ; jump 202""",

    "Custom": ""
}

KEY_LABELS = [f"{k:X}" for k in range(16)]
SCALE = 8
BLANK_FRAME = bytes(DISPLAY_WIDTH * DISPLAY_HEIGHT)


# =============================================================================
# Execution Functions
# =============================================================================

def render_display(frame: bytes) -> np.ndarray:
    """Convert a consumed display frame into a scaled grayscale image."""
    pixels = np.frombuffer(frame, dtype=np.uint8)
    image = pixels.reshape(DISPLAY_HEIGHT, DISPLAY_WIDTH) * 255
    return np.kron(image, np.ones((SCALE, SCALE), dtype=np.uint8))


def format_trace(cpu: Chip8CPU, limit: int = 50) -> str:
    """Format the most recent trace entries."""
    entries = list(cpu.trace)[-limit:]
    lines = ["EXECUTION TRACE", "=" * 60]
    for entry in entries:
        if entry.waiting:
            key = "-" if entry.key_pressed is None else f"{entry.key_pressed:X}"
            lines.append(f"[{entry.step}] PC={entry.pc:#06x} waiting for key ({key})")
        elif entry.decode_result is not None:
            lines.append(f"[{entry.step}] PC={entry.pc:#06x} {entry.decode_result}")
        if entry.error:
            lines.append(f"    ERROR {entry.error.kind}: {entry.error}")
    return "\n".join(lines)


def format_summary(cpu: Chip8CPU, message: str = "") -> str:
    summary = cpu.get_summary()
    lines = [
        "EXECUTION SUMMARY",
        "=" * 40,
        f"Steps: {summary['steps']}",
        f"Cycles: {summary['cycles']}",
        f"Halted: {'Yes' if summary['halted'] else 'No'}",
        f"Waiting for key: {'Yes' if summary['waiting'] else 'No'}",
    ]
    if message:
        lines.append(f"\n{message}")
    for err in summary['errors'][:5]:
        lines.append(f"  - {err['kind']}: {err['message']}")
    return "\n".join(lines)


def outputs(cpu: Chip8CPU, image: np.ndarray, message: str = "") -> tuple:
    return (
        cpu,
        image,
        format_summary(cpu, message),
        cpu.format_registers(),
        format_trace(cpu),
    )


def load_program(program: str, rom_file, seed) -> tuple:
    """Create a fresh machine from the uploaded ROM or the hex source.

    Returns:
        Tuple of (cpu, image, summary_text, registers_text, trace_text)
    """
    cpu = Chip8CPU(seed=int(seed) if seed is not None else None)
    try:
        if rom_file:
            cpu.load_rom(Path(rom_file).read_bytes())
            message = f"Loaded ROM: {Path(rom_file).name}"
        else:
            cpu.load_program(program)
            message = "Loaded program from source"
    except ValueError as e:
        return None, None, f"Error: {e}", "", ""
    return outputs(cpu, render_display(BLANK_FRAME), message)


def run_frames(cpu, frames: int, held_keys: list, image=None) -> tuple:
    """Run a number of 60 Hz frames with the given keys held down.

    The display is only redrawn when the machine hands over a new frame;
    otherwise the previous image is shown again.
    """
    if cpu is None:
        return None, None, "Error: No program loaded", "", ""

    try:
        cpu.set_keys(int(k, 16) for k in held_keys)
    except (ValueError, IndexError) as e:
        return cpu, image, f"Error: {e}", cpu.format_registers(), format_trace(cpu)

    steps = 0
    while steps < int(frames) and not cpu.is_halted():
        cpu.step()
        steps += 1

    frame = cpu.consume_display()
    if frame is not None:
        image = render_display(frame)
    elif image is None:
        image = render_display(BLANK_FRAME)
    return outputs(cpu, image, f"Ran {steps} frame(s)")


def load_example(example_name: str) -> str:
    """Load an example program."""
    return EXAMPLE_PROGRAMS.get(example_name, "")


# =============================================================================
# Gradio Interface
# =============================================================================

def create_demo():
    """Create and return the Gradio demo interface."""

    with gr.Blocks(title="qchip8 Demo", theme=gr.themes.Soft()) as demo:
        gr.Markdown("""
        # qchip8: CHIP-8 Virtual Machine Interpreter

        Load a program, hold keys on the hex keypad and run frames.
        Each frame is one logical 60 Hz step: one instruction plus a timer tick.

        **Pipeline**: `fetch -> decode -> key -> execute -> state`
        """)

        cpu_state = gr.State(None)

        with gr.Row():
            with gr.Column(scale=2):
                gr.Markdown("### Program")

                example_dropdown = gr.Dropdown(
                    choices=list(EXAMPLE_PROGRAMS.keys()),
                    value="Font glyphs",
                    label="Load Example"
                )

                program_input = gr.Textbox(
                    value=EXAMPLE_PROGRAMS["Font glyphs"],
                    label="Hex Words",
                    lines=15,
                    placeholder="Enter hex instruction words here..."
                )

                rom_upload = gr.File(label="Or upload a ROM", type="filepath")

                seed_input = gr.Number(value=None, label="Random Seed (blank = entropy)", precision=0)

                load_button = gr.Button("Load", variant="primary")

                gr.Markdown("### Run")

                held_keys = gr.CheckboxGroup(choices=KEY_LABELS, label="Held Keys")

                frames = gr.Slider(
                    minimum=1,
                    maximum=3600,
                    value=60,
                    step=1,
                    label="Frames"
                )

                run_button = gr.Button("Run Frames")

            with gr.Column(scale=3):
                display_output = gr.Image(label="Display", type="numpy", interactive=False)

                with gr.Row():
                    summary_output = gr.Textbox(
                        label="Summary",
                        lines=10,
                        interactive=False
                    )
                    registers_output = gr.Textbox(
                        label="Registers",
                        lines=10,
                        interactive=False
                    )

                trace_output = gr.Textbox(
                    label="Execution Trace",
                    lines=20,
                    interactive=False
                )

        result_outputs = [cpu_state, display_output, summary_output, registers_output, trace_output]

        # Event handlers
        example_dropdown.change(
            fn=load_example,
            inputs=[example_dropdown],
            outputs=[program_input]
        )

        load_button.click(
            fn=load_program,
            inputs=[program_input, rom_upload, seed_input],
            outputs=result_outputs
        )

        run_button.click(
            fn=run_frames,
            inputs=[cpu_state, frames, held_keys, display_output],
            outputs=result_outputs
        )

    return demo


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    demo = create_demo()
    demo.launch(
        share=False,
        server_name="0.0.0.0",
        server_port=7861,
        show_error=True
    )
