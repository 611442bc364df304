"""
x2017 VM — Instruction Set Definition

Every instruction is an opcode plus up to two tagged operands. The operand
tag (addressing mode) decides where a byte comes from or goes to:

  VAL   literal byte               read-only
  REG   register index             register file
  STK   stack symbol (offset)      byte in the current frame
  PTR   stack symbol (offset)      byte whose address is stored in the frame

Opcodes:

  MOV  A B   A ← value(B)
  CAL  A     call function with label A
  RET        return from the current function
  REF  A B   A ← address of stack symbol B
  ADD  A B   register A ← A + B (mod 256)
  PRINT A    write value(A) as an unsigned decimal line
  NOT  A     register A ← ~A
  EQU  A     register A ← 1 if A == 0 else 0

Functions are immutable once built: the VM lays their instructions into a
single flat code list and never modifies them.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class Opcode(Enum):
    MOV = 'MOV'
    CAL = 'CAL'
    RET = 'RET'
    REF = 'REF'
    ADD = 'ADD'
    PRINT = 'PRINT'
    NOT = 'NOT'
    EQU = 'EQU'


class Mode(Enum):
    VAL = 'VAL'
    REG = 'REG'
    STK = 'STK'
    PTR = 'PTR'


ANY_MODE: FrozenSet[Mode] = frozenset(Mode)
WRITABLE: FrozenSet[Mode] = frozenset({Mode.REG, Mode.STK, Mode.PTR})
STACK_MODES: FrozenSet[Mode] = frozenset({Mode.STK, Mode.PTR})


# ──────────────────────────────────────────────
# Operand contract per opcode
# ──────────────────────────────────────────────
# opcode -> (arg count, allowed arg1 modes, allowed arg2 modes)
# Checked by the assembler when a program is built and by the VM when the
# instruction executes. REF may name a VAL destination at run time; the write
# is dropped. The assembler rejects that form as bad input.

OPERAND_RULES: Dict[Opcode, Tuple[int, FrozenSet[Mode], FrozenSet[Mode]]] = {
    Opcode.MOV:   (2, WRITABLE,              ANY_MODE),
    Opcode.CAL:   (1, frozenset({Mode.VAL}), frozenset()),
    Opcode.RET:   (0, frozenset(),           frozenset()),
    Opcode.REF:   (2, ANY_MODE,              STACK_MODES),
    Opcode.ADD:   (2, frozenset({Mode.REG}), frozenset({Mode.REG})),
    Opcode.PRINT: (1, ANY_MODE,              frozenset()),
    Opcode.NOT:   (1, frozenset({Mode.REG}), frozenset()),
    Opcode.EQU:   (1, frozenset({Mode.REG}), frozenset()),
}


@dataclass(frozen=True)
class Argument:
    """A tagged operand."""
    mode: Mode
    value: int

    def __str__(self) -> str:
        return f"{self.mode.value} {self.value}"


@dataclass(frozen=True)
class Instruction:
    opcode: Opcode
    arg1: Optional[Argument] = None
    arg2: Optional[Argument] = None

    @property
    def args(self) -> Tuple[Argument, ...]:
        return tuple(a for a in (self.arg1, self.arg2) if a is not None)

    def __str__(self) -> str:
        return ' '.join([self.opcode.value] + [str(a) for a in self.args])


@dataclass(frozen=True)
class Function:
    """One function of a loaded program.

    frame_size is the number of stack-symbol bytes the function reserves;
    the two linkage bytes are not included.
    """
    label: int
    frame_size: int
    instructions: Tuple[Instruction, ...]

    def __post_init__(self):
        # Accept any sequence, store a tuple
        object.__setattr__(self, 'instructions', tuple(self.instructions))

    def __len__(self) -> int:
        return len(self.instructions)


def check_operands(inst: Instruction) -> Optional[str]:
    """Return a description of the first operand-contract violation, or None."""
    count, arg1_modes, arg2_modes = OPERAND_RULES[inst.opcode]
    name = inst.opcode.value
    if count >= 1:
        if inst.arg1 is None:
            return f"{name} requires a first argument"
        if inst.arg1.mode not in arg1_modes:
            return (f"first argument to {name} must be "
                    f"{_modes_text(arg1_modes)} typed, got {inst.arg1.mode.value}")
    if count >= 2:
        if inst.arg2 is None:
            return f"{name} requires a second argument"
        if inst.arg2.mode not in arg2_modes:
            return (f"second argument to {name} must be "
                    f"{_modes_text(arg2_modes)} typed, got {inst.arg2.mode.value}")
    return None


def _modes_text(modes: FrozenSet[Mode]) -> str:
    return ' or '.join(m.value for m in Mode if m in modes)


# --- Operand shorthands ---

def val(n: int) -> Argument:
    return Argument(Mode.VAL, n)


def reg(n: int) -> Argument:
    return Argument(Mode.REG, n)


def stk(n: int) -> Argument:
    return Argument(Mode.STK, n)


def ptr(n: int) -> Argument:
    return Argument(Mode.PTR, n)
