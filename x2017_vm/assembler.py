"""
x2017 Two-Pass Assembler

Turns x2017 assembly text into the function table the VM loads.

Input format (one instruction per line, ';' starts a comment):

    FUNC LABEL 0
        MOV STK A VAL 5
        CAL VAL 1
        PRINT STK A
        RET

    FUNC LABEL 1
        MOV REG 0 VAL 7
        RET

Operands are a mode keyword followed by a value:
  VAL  n     literal byte (decimal, 0x.. or $.. hex)
  REG  n     register index
  STK  s     stack symbol: a letter (A-Z, a-z) or a numeric offset
  PTR  s     stack symbol holding an address

Letter symbols get frame offsets in order of first appearance inside their
function; numeric offsets are used as written. A function uses one style or
the other. Its frame size is the number of offsets it uses.

How the two passes split the work:
  Pass 1: Parse lines, group instructions under their FUNC header, check
          operand counts and modes, allocate stack symbols.
  Pass 2: With every label known, check CAL targets and build the
          immutable Function records.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .config import VMConfig, DEFAULT_CONFIG
from .errors import AssemblerError
from .isa import (
    Argument, Function, Instruction, Mode, Opcode, OPERAND_RULES, check_operands,
)

__all__ = ['Assembler', 'AssemblerError', 'assemble', 'assemble_file',
           'format_program']

# Accepted spellings of the stack mode
MODE_ALIASES = {'STACK': Mode.STK}


# ──────────────────────────────────────────────
# Line Parser
# ──────────────────────────────────────────────

@dataclass
class AsmLine:
    """Parsed assembly source line."""
    tokens: List[str] = field(default_factory=list)
    comment: Optional[str] = None
    line_num: int = 0
    raw: str = ""


def _parse_line(line: str, line_num: int) -> AsmLine:
    result = AsmLine(line_num=line_num, raw=line)
    text = line
    semi_pos = text.find(';')
    if semi_pos >= 0:
        result.comment = text[semi_pos + 1:].strip()
        text = text[:semi_pos]
    result.tokens = text.split()
    return result


def _parse_number(text: str, line_num: int) -> int:
    """Parse $FF / 0xFF hex or decimal."""
    try:
        if text.startswith('$'):
            return int(text[1:], 16)
        if text.lower().startswith('0x'):
            return int(text, 16)
        if text.isdigit():
            return int(text)
    except ValueError:
        pass
    raise AssemblerError(f"Invalid number: '{text}'", line_num)


def _parse_mode(text: str, line_num: int) -> Mode:
    name = text.upper()
    if name in MODE_ALIASES:
        return MODE_ALIASES[name]
    try:
        return Mode(name)
    except ValueError:
        raise AssemblerError(f"Unknown operand type: '{text}'", line_num) from None


# ──────────────────────────────────────────────
# Per-function working state
# ──────────────────────────────────────────────

@dataclass
class _PendingFunction:
    label: int
    line_num: int
    instructions: List[Tuple[Instruction, int]] = field(default_factory=list)
    symbols: Dict[str, int] = field(default_factory=dict)
    max_offset: int = -1
    symbolic: bool = False
    numeric: bool = False

    @property
    def frame_size(self) -> int:
        if self.symbolic:
            return len(self.symbols)
        return self.max_offset + 1


# ──────────────────────────────────────────────
# The Assembler
# ──────────────────────────────────────────────

class Assembler:
    """Two-pass x2017 assembler.

    Usage:
        asm = Assembler()
        functions = asm.assemble(source_text)   # {label: Function}
    """

    def __init__(self, config: VMConfig = DEFAULT_CONFIG):
        self.config = config
        self.functions: Dict[int, Function] = {}
        self.errors: List[AssemblerError] = []
        self._pending: List[_PendingFunction] = []

    def assemble(self, source: str) -> Dict[int, Function]:
        """Assemble source text into {label: Function}, ordered by label.

        Raises AssemblerError carrying the line number of the first
        problem; every problem found in a pass is listed in the message.
        """
        self.functions = {}
        self.errors = []
        self._pending = []

        lines = [_parse_line(text, i) for i, text in enumerate(source.split('\n'), 1)]

        self._pass1(lines)
        self._raise_errors("Pass 1")

        self._pass2()
        self._raise_errors("Pass 2")

        return self.functions

    def _raise_errors(self, stage: str):
        if not self.errors:
            return
        if len(self.errors) == 1:
            raise self.errors[0]
        first = self.errors[0]
        raise AssemblerError(
            f"{stage} errors:\n" + "\n".join(str(e) for e in self.errors),
            first.line_num, first.line_text)

    # --- Pass 1 ---

    def _pass1(self, lines: List[AsmLine]):
        current: Optional[_PendingFunction] = None
        seen_labels = set()

        for line in lines:
            if not line.tokens:
                continue
            try:
                if line.tokens[0].upper() == 'FUNC':
                    current = self._open_function(line, seen_labels)
                    self._pending.append(current)
                elif current is None:
                    raise AssemblerError("Instruction outside of a FUNC block",
                                         line.line_num, line.raw)
                else:
                    current.instructions.append(
                        (self._parse_instruction(line, current), line.line_num))
            except AssemblerError as e:
                self.errors.append(e)

    def _open_function(self, line: AsmLine, seen_labels: set) -> _PendingFunction:
        tokens = line.tokens
        if len(tokens) != 3 or tokens[1].upper() != 'LABEL':
            raise AssemblerError("Expected 'FUNC LABEL <n>'", line.line_num, line.raw)
        label = _parse_number(tokens[2], line.line_num)
        if label >= self.config.max_functions:
            raise AssemblerError(
                f"Function label {label} outside 0..{self.config.max_functions - 1}",
                line.line_num, line.raw)
        if label in seen_labels:
            raise AssemblerError(f"Duplicate function label {label}",
                                 line.line_num, line.raw)
        seen_labels.add(label)
        return _PendingFunction(label=label, line_num=line.line_num)

    def _parse_instruction(self, line: AsmLine, func: _PendingFunction) -> Instruction:
        tokens = line.tokens
        try:
            opcode = Opcode(tokens[0].upper())
        except ValueError:
            raise AssemblerError(f"Unknown opcode: '{tokens[0]}'",
                                 line.line_num, line.raw) from None

        operand_tokens = tokens[1:]
        expected = OPERAND_RULES[opcode][0]
        if len(operand_tokens) != 2 * expected:
            raise AssemblerError(
                f"{opcode.value} takes {expected} operand(s), "
                f"got '{' '.join(operand_tokens)}'", line.line_num, line.raw)

        args = []
        for i in range(0, len(operand_tokens), 2):
            mode = _parse_mode(operand_tokens[i], line.line_num)
            args.append(self._parse_operand(mode, operand_tokens[i + 1], line, func))

        inst = Instruction(opcode, *args)
        problem = check_operands(inst)
        if problem is None and inst.opcode == Opcode.REF and inst.arg1.mode == Mode.VAL:
            problem = "first argument to REF cannot be VAL typed"
        if problem is not None:
            raise AssemblerError(problem, line.line_num, line.raw)
        return inst

    def _parse_operand(self, mode: Mode, text: str, line: AsmLine,
                       func: _PendingFunction) -> Argument:
        if mode in (Mode.STK, Mode.PTR):
            return Argument(mode, self._stack_offset(text, line, func))

        value = _parse_number(text, line.line_num)
        if mode == Mode.VAL and value > 0xFF:
            raise AssemblerError(f"Value {value} does not fit in a byte",
                                 line.line_num, line.raw)
        if mode == Mode.REG and value >= self.config.num_registers:
            raise AssemblerError(
                f"Register {value} outside 0..{self.config.num_registers - 1}",
                line.line_num, line.raw)
        return Argument(mode, value)

    def _stack_offset(self, text: str, line: AsmLine, func: _PendingFunction) -> int:
        if len(text) == 1 and text.isalpha():
            if func.numeric:
                raise AssemblerError(
                    "Cannot mix symbolic and numeric stack operands in one function",
                    line.line_num, line.raw)
            func.symbolic = True
            if text not in func.symbols:
                func.symbols[text] = len(func.symbols)
            return func.symbols[text]

        if func.symbolic:
            raise AssemblerError(
                "Cannot mix symbolic and numeric stack operands in one function",
                line.line_num, line.raw)
        func.numeric = True
        offset = _parse_number(text, line.line_num)
        func.max_offset = max(func.max_offset, offset)
        return offset

    # --- Pass 2 ---

    def _pass2(self):
        labels = {p.label for p in self._pending}
        total = 0

        for pending in sorted(self._pending, key=lambda p: p.label):
            try:
                self.functions[pending.label] = self._finish_function(pending, labels)
                total += len(pending.instructions)
            except AssemblerError as e:
                self.errors.append(e)

        if total > self.config.max_instructions_total:
            self.errors.append(AssemblerError(
                f"Program has {total} instructions "
                f"(max {self.config.max_instructions_total})"))

    def _finish_function(self, pending: _PendingFunction, labels: set) -> Function:
        for inst, line_num in pending.instructions:
            if inst.opcode == Opcode.CAL and inst.arg1.value not in labels:
                raise AssemblerError(
                    f"Call to undefined function {inst.arg1.value}", line_num)

        if not pending.instructions or pending.instructions[-1][0].opcode != Opcode.RET:
            raise AssemblerError(
                f"No return instruction found at end of function {pending.label}",
                pending.line_num)
        if len(pending.instructions) > self.config.max_instructions:
            raise AssemblerError(
                f"Function {pending.label} has {len(pending.instructions)} "
                f"instructions (max {self.config.max_instructions})",
                pending.line_num)

        return Function(
            label=pending.label,
            frame_size=pending.frame_size,
            instructions=[inst for inst, _ in pending.instructions],
        )


# ──────────────────────────────────────────────
# Listing
# ──────────────────────────────────────────────

def format_program(functions: Union[Mapping[int, Function], List[Function]]) -> str:
    """Render a function table back to assembly text (numeric stack offsets)."""
    if isinstance(functions, Mapping):
        functions = list(functions.values())
    blocks = []
    for func in sorted(functions, key=lambda f: f.label):
        lines = [f"FUNC LABEL {func.label}    ; frame size {func.frame_size}"]
        lines.extend(f"    {inst}" for inst in func.instructions)
        blocks.append('\n'.join(lines))
    return '\n\n'.join(blocks) + '\n'


# ──────────────────────────────────────────────
# Convenience functions
# ──────────────────────────────────────────────

def assemble(source: str, config: VMConfig = DEFAULT_CONFIG) -> Dict[int, Function]:
    """Assemble source text, return {label: Function}."""
    return Assembler(config).assemble(source)


def assemble_file(path: Union[str, Path],
                  config: VMConfig = DEFAULT_CONFIG) -> Dict[int, Function]:
    """Read and assemble an x2017 assembly file."""
    return assemble(Path(path).read_text(encoding="utf-8"), config)
