from .regs import RegisterFile, MachineState
from .resolver import AddressResolver

__all__ = ['RegisterFile', 'MachineState', 'AddressResolver']
