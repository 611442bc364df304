"""
x2017 VM — Flat RAM with Logical Regions

One bytearray backs three regions whose bounds come from VMConfig:

  CODE_ADDR   [0, F)          label → first flat instruction index
  FRAME_SIZE  [F, 2F)         label → frame size in bytes
  STACK       [2F, RAM_SIZE)  call frames, grows downward

(F = max_functions.) The regions are only a logical split; a program that
writes through a PTR operand can reach any byte, table entries included.
Addresses wrap at ram_size.
"""

from typing import Callable, Dict, List, Optional

from ..config import VMConfig, DEFAULT_CONFIG, BYTE_MAX

# Code address table entry for a label with no loaded function. Unambiguous
# only while (max_functions - 1) * max_instructions < 255, as in the default
# profile; larger limits let a real function start at 255. The VM decides
# which labels are loaded from X2017VM.functions, never from this table.
UNASSIGNED = BYTE_MAX


class MemoryRegion:
    """A named, half-open region of RAM."""
    def __init__(self, name: str, start: int, end: int):
        self.name = name
        self.start = start
        self.end = end  # exclusive

    def contains(self, addr: int) -> bool:
        return self.start <= addr < self.end

    @property
    def size(self) -> int:
        return self.end - self.start

    def __repr__(self) -> str:
        return f"MemoryRegion({self.name!r}, {self.start:#04x}, {self.end:#04x})"


class Memory:
    """Byte-addressable RAM shared by the label tables and the stack.

    Watchpoints fire on every write8 to a watched address with
    callback(addr, old_val, new_val).
    """

    def __init__(self, config: VMConfig = DEFAULT_CONFIG):
        self.config = config
        self.size = config.ram_size
        self._mem = bytearray(self.size)
        self._watchpoints: Dict[int, List[Callable]] = {}

        self.regions = [
            MemoryRegion('CODE_ADDR', *config.code_addr_region),
            MemoryRegion('FRAME_SIZE', *config.frame_size_region),
            MemoryRegion('STACK', *config.stack_region),
        ]
        self.clear_tables()

    # --- Core read/write ---

    def read8(self, addr: int) -> int:
        return self._mem[addr % self.size]

    def write8(self, addr: int, value: int):
        addr %= self.size
        value &= 0xFF
        old = self._mem[addr]

        if addr in self._watchpoints:
            for cb in self._watchpoints[addr]:
                cb(addr, old, value)

        self._mem[addr] = value

    def clear(self):
        """Zero all of RAM and reset the label tables."""
        self._mem[:] = bytes(self.size)
        self.clear_tables()

    # --- Label tables ---

    def clear_tables(self):
        """Mark every label as unassigned and zero the frame sizes."""
        for label in range(self.config.max_functions):
            self._mem[label] = UNASSIGNED
            self._mem[self.config.max_functions + label] = 0

    def code_addr(self, label: int) -> int:
        return self._mem[self._table_slot(0, label)]

    def set_code_addr(self, label: int, index: int):
        self._mem[self._table_slot(0, label)] = index & 0xFF

    def frame_size(self, label: int) -> int:
        return self._mem[self._table_slot(self.config.max_functions, label)]

    def set_frame_size(self, label: int, size: int):
        self._mem[self._table_slot(self.config.max_functions, label)] = size & 0xFF

    def _table_slot(self, base: int, label: int) -> int:
        if not 0 <= label < self.config.max_functions:
            raise IndexError(
                f"label {label} outside 0..{self.config.max_functions - 1}")
        return base + label

    def region_of(self, addr: int) -> Optional[MemoryRegion]:
        addr %= self.size
        for region in self.regions:
            if region.contains(addr):
                return region
        return None

    # --- Watchpoints ---

    def add_watchpoint(self, addr: int, callback: Callable):
        """Call callback(addr, old_val, new_val) on every write to addr."""
        self._watchpoints.setdefault(addr % self.size, []).append(callback)

    def remove_watchpoint(self, addr: int, callback: Optional[Callable] = None):
        """Drop one callback from addr, or every callback when none is given."""
        callbacks = self._watchpoints.pop(addr % self.size, [])
        kept = [cb for cb in callbacks if callback is not None and cb is not callback]
        if kept:
            self._watchpoints[addr % self.size] = kept

    # --- Snapshots ---

    def snapshot(self, start: int = 0, end: Optional[int] = None) -> bytes:
        """Copy of RAM[start:end] (end exclusive, default: all of RAM)."""
        return bytes(self._mem[start:self.size if end is None else end])

    @staticmethod
    def diff_snapshots(snap_a: bytes, snap_b: bytes,
                       base_addr: int = 0) -> Dict[int, tuple]:
        """{addr: (old, new)} for every byte that differs between two snapshots."""
        return {base_addr + i: (old, new)
                for i, (old, new) in enumerate(zip(snap_a, snap_b)) if old != new}

    def hexdump(self, start: int = 0, length: Optional[int] = None) -> str:
        """Hex dump of RAM, 16 bytes per line."""
        if length is None:
            length = self.size - start
        lines = []
        for offset in range(0, length, 16):
            addr = start + offset
            row = [self._mem[(addr + i) % self.size]
                   for i in range(min(16, length - offset))]
            hex_bytes = ' '.join(f'{b:02X}' for b in row)
            lines.append(f'{addr:02X}  {hex_bytes}')
        return '\n'.join(lines)
