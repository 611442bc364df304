"""
x2017 VM — Capacity Constants and Machine Profiles

The VM is built around a 256-byte RAM and an 8-register file. Every other
capacity (function count, instructions per function, entry label) comes from
the loader side and is kept configurable here, with defaults that match the
x2017 toolchain:

  ram_size               256   bytes of flat RAM (addresses are one byte)
  num_registers            8   user-visible byte registers
  max_functions            8   labels 0..7 (3-bit label field)
  max_instructions        32   per function
  max_instructions_total 256   flat code size (pc is one byte)
  entry_label              0   the function the run starts in

RAM layout derived from a config:

  [0, max_functions)                  code address table (label → pc)
  [max_functions, 2*max_functions)    frame size table   (label → bytes)
  [2*max_functions, ram_size)         call stack
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Tuple

# Largest value a RAM cell, a saved pc or a saved sp can hold.
BYTE_MAX = 0xFF

# Bytes of linkage stored with every frame: saved sp, saved pc.
FRAME_HEADER_SIZE = 2


@dataclass(frozen=True)
class VMConfig:
    """Capacity limits for one VM instance."""
    ram_size: int = 256
    num_registers: int = 8
    max_functions: int = 8
    max_instructions: int = 32
    max_instructions_total: int = 256
    entry_label: int = 0

    # --- Derived regions (half-open ranges) ---

    @property
    def code_addr_region(self) -> Tuple[int, int]:
        return (0, self.max_functions)

    @property
    def frame_size_region(self) -> Tuple[int, int]:
        return (self.max_functions, 2 * self.max_functions)

    @property
    def stack_region(self) -> Tuple[int, int]:
        return (2 * self.max_functions, self.ram_size)

    @property
    def stack_floor(self) -> int:
        """Lowest address a frame may occupy."""
        return self.stack_region[0]

    @property
    def stack_top(self) -> int:
        """Stack pointer of the virtual root the entry frame hangs below."""
        return self.ram_size - 1

    @property
    def stack_capacity(self) -> int:
        return self.stack_region[1] - self.stack_region[0]

    def validate(self) -> "VMConfig":
        """Reject configs whose addresses or pcs would not fit in a byte."""
        if not 0 < self.ram_size <= BYTE_MAX + 1:
            raise ValueError(f"ram_size must be 1..{BYTE_MAX + 1}, got {self.ram_size}")
        if self.num_registers < 1:
            raise ValueError("num_registers must be at least 1")
        if self.max_functions < 1:
            raise ValueError("max_functions must be at least 1")
        if 2 * self.max_functions + FRAME_HEADER_SIZE > self.ram_size:
            raise ValueError("tables leave no room for a stack frame")
        if not 0 < self.max_instructions_total <= BYTE_MAX + 1:
            raise ValueError(
                f"max_instructions_total must be 1..{BYTE_MAX + 1}, "
                f"got {self.max_instructions_total}")
        if self.max_instructions < 1:
            raise ValueError("max_instructions must be at least 1")
        if not 0 <= self.entry_label < self.max_functions:
            raise ValueError(
                f"entry_label {self.entry_label} outside 0..{self.max_functions - 1}")
        return self

    def display(self) -> str:
        lo, hi = self.stack_region
        return (f"RAM={self.ram_size} REGS={self.num_registers} "
                f"FUNCS={self.max_functions} INSTR={self.max_instructions}/"
                f"{self.max_instructions_total} ENTRY={self.entry_label} "
                f"STACK=[{lo:02X},{hi:02X})")


DEFAULT_CONFIG = VMConfig()

PROFILES: Dict[str, VMConfig] = {
    "x2017": DEFAULT_CONFIG,
    # Tight stack, for exercising overflow detection by hand.
    "small": replace(DEFAULT_CONFIG, ram_size=64),
}
