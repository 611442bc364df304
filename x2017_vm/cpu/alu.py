"""
x2017 VM — ALU Operations

The datapath is one byte wide and has no flags: every result is simply
truncated to 8 bits.
"""


def add8(a: int, b: int) -> int:
    """Unsigned 8-bit add, wrapping at 256."""
    return (a + b) & 0xFF


def not8(a: int) -> int:
    """Bitwise complement of a byte."""
    return ~a & 0xFF


def equ8(a: int) -> int:
    """Zero test: 1 if a == 0 else 0."""
    return 1 if (a & 0xFF) == 0 else 0
