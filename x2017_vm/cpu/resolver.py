"""
x2017 VM — Operand Address Resolution

Turns a tagged operand into the byte it names (read), stores into the
location it names (write), or yields the RAM address of a stack symbol
(address_of, used by REF).

  VAL  n   the literal n                    (writes are dropped)
  REG  n   registers[n]
  STK  k   ram[sp + 3 + k]
  PTR  k   ram[ram[sp + 3 + k]]             one more level of indirection

Intermediate addresses live in local variables; no register is borrowed
as scratch space.
"""

import logging

from ..errors import OperandModeViolation
from ..isa import Argument, Mode
from ..mem.memory import Memory
from .regs import MachineState, RegisterFile

logger = logging.getLogger(__name__)


class AddressResolver:
    """Operand reads and writes against one VM's RAM, registers and state."""

    def __init__(self, mem: Memory, regs: RegisterFile, state: MachineState):
        self.mem = mem
        self.regs = regs
        self.state = state

    def read(self, arg: Argument) -> int:
        mode = arg.mode
        if mode == Mode.VAL:
            return arg.value & 0xFF
        if mode == Mode.REG:
            return self.regs[arg.value]
        addr = self.state.stack_loc(arg.value, self.mem.size)
        if mode == Mode.PTR:
            addr = self.mem.read8(addr)
        return self.mem.read8(addr)

    def write(self, arg: Argument, value: int):
        mode = arg.mode
        if mode == Mode.REG:
            self.regs[arg.value] = value
            return
        if mode == Mode.VAL:
            logger.warning("Write of %d to VAL operand ignored "
                           "(invalid program input, pc=%d)",
                           value & 0xFF, self.state.pc)
            return
        addr = self.state.stack_loc(arg.value, self.mem.size)
        if mode == Mode.PTR:
            addr = self.mem.read8(addr)
        self.mem.write8(addr, value)

    def address_of(self, arg: Argument) -> int:
        """RAM address named by a STK operand, or stored in a PTR operand's slot."""
        if arg.mode not in (Mode.STK, Mode.PTR):
            raise OperandModeViolation(
                f"cannot take the address of a {arg.mode.value} operand",
                pc=self.state.pc)
        addr = self.state.stack_loc(arg.value, self.mem.size)
        if arg.mode == Mode.PTR:
            addr = self.mem.read8(addr)
        return addr
