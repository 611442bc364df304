"""
x2017 Virtual Machine
=====================
A small register-and-stack machine executing x2017 programs: functions of
two-operand instructions, run against a 256-byte RAM that holds the label
tables and the call stack.

Architecture:
    ┌───────────┐    ┌───────────┐    ┌────────────┐    ┌──────────────┐
    │ .asm text │───>│ Assembler │───>│ {label:    │───>│ X2017VM      │──> PRINT
    │           │    │ (2-pass)  │    │  Function} │    │ load() run() │    lines
    └───────────┘    └───────────┘    └────────────┘    └──────────────┘

    - isa.py:           opcodes, addressing modes, Instruction/Function records
    - assembler.py:     text → function table, and back (format_program)
    - vm.py:            bootstrap, dispatch loop, call/return protocol
    - cpu/regs.py:      register file, machine state (pc, sp), frame layout
    - cpu/resolver.py:  VAL/REG/STK/PTR operand reads, writes, addresses
    - mem/memory.py:    flat RAM split into code-address, frame-size, stack
    - config.py:        capacity constants and profiles
"""

__version__ = "0.1.0"

from .config import VMConfig, DEFAULT_CONFIG, PROFILES
from .errors import (
    X2017Error, AssemblerError, LoadInvariantViolation, OperandModeViolation,
    StackOverflow, InvalidProgramCounter,
)
from .isa import (
    Opcode, Mode, Argument, Instruction, Function, OPERAND_RULES,
    val, reg, stk, ptr,
)
from .assembler import Assembler, assemble, assemble_file, format_program
from .vm import X2017VM, StopReason, run_program


def run_source(source: str, *, config: VMConfig = DEFAULT_CONFIG, out=None) -> list:
    """Assemble and run x2017 assembly text, return the printed values."""
    return run_program(assemble(source, config), config=config, out=out)
