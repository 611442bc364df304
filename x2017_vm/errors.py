"""
x2017 VM — Error Types

Every error here is fatal for the run that raised it. Nothing inside the VM
catches them; the command-line front end turns them into exit code 1.
"""

from __future__ import annotations
from typing import Optional


class X2017Error(Exception):
    """Base class for all x2017 VM errors."""


class AssemblerError(X2017Error):
    """Raised on malformed assembly text."""
    def __init__(self, message: str, line_num: int = 0, line_text: str = ""):
        self.line_num = line_num
        self.line_text = line_text
        super().__init__(f"Line {line_num}: {message}" if line_num else message)


class LoadInvariantViolation(X2017Error):
    """The function table handed to the VM is not a valid program."""
    def __init__(self, message: str, label: Optional[int] = None):
        self.label = label
        super().__init__(message)


class OperandModeViolation(X2017Error):
    """An instruction was executed with an operand mode its opcode forbids."""
    def __init__(self, message: str, opcode=None, pc: Optional[int] = None):
        self.opcode = opcode
        self.pc = pc
        if pc is not None:
            message = f"{message} (pc={pc})"
        super().__init__(message)


class StackOverflow(X2017Error):
    """A call would place its frame below the stack floor."""
    def __init__(self, label: int):
        self.label = label
        super().__init__(
            f"Stack overflow detected when trying to call function {label}")


class InvalidProgramCounter(X2017Error):
    """The program counter left the loaded code (corrupted return address)."""
    def __init__(self, pc: int, code_size: int):
        self.pc = pc
        super().__init__(
            f"Program counter {pc} outside loaded code (0..{code_size - 1})")
