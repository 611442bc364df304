"""
x2017 VM — Register File + Machine State

Register model:
  R0..R(n-1)  — byte-wide general purpose registers, all addressable by
                REG operands (n = VMConfig.num_registers, 8 by default)

Machine state (not addressable by instructions):
  pc     — index of the next instruction in the flat code list
  sp     — stack pointer: exclusive low boundary of the active frame
  steps  — instructions executed so far

Frame layout relative to sp (stack grows downward):
  sp+1      saved sp of the caller (0 for the entry frame)
  sp+2      saved pc of the caller (return address)
  sp+3+k    stack symbol k
"""

from typing import List

# Offsets from sp of the frame header and the first stack symbol
LINK_OFFSET = 1
RETURN_OFFSET = 2
LOCALS_OFFSET = 3

# Saved link pointer marking the entry frame
NO_CALLER = 0


class RegisterFile:
    """Byte-wide general purpose registers. Writes wrap to 8 bits."""

    __slots__ = ('_regs',)

    def __init__(self, count: int = 8):
        self._regs: List[int] = [0] * count

    def __getitem__(self, index: int) -> int:
        return self._regs[index]

    def __setitem__(self, index: int, value: int):
        self._regs[index] = value & 0xFF

    def __len__(self) -> int:
        return len(self._regs)

    def values(self) -> List[int]:
        return list(self._regs)

    def display(self) -> str:
        return ' '.join(f"R{i}={v:02X}" for i, v in enumerate(self._regs))

    def reset(self):
        for i in range(len(self._regs)):
            self._regs[i] = 0


class MachineState:
    """Execution context of one VM instance: program counter + stack pointer."""

    __slots__ = ('pc', 'sp', 'steps')

    def __init__(self):
        self.pc: int = 0
        self.sp: int = 0
        self.steps: int = 0

    def stack_loc(self, symbol: int, ram_size: int) -> int:
        """RAM address of stack symbol `symbol` in the active frame."""
        return (self.sp + LOCALS_OFFSET + symbol) % ram_size

    def display(self) -> str:
        return f"PC={self.pc:02X} SP={self.sp:02X}"

    def reset(self):
        self.pc = 0
        self.sp = 0
        self.steps = 0
