from .memory import Memory, MemoryRegion, UNASSIGNED

__all__ = ['Memory', 'MemoryRegion', 'UNASSIGNED']
