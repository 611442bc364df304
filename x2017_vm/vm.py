"""
x2017 VM — Main Virtual Machine Class

Integrates:
  - Register file + machine state (cpu/regs.py)
  - Flat RAM with label tables and stack (mem/memory.py)
  - Operand resolution (cpu/resolver.py)
  - ALU operations (cpu/alu.py)

Execution model:
  1. load(): validate the function table, lay every function's code into one
     flat list (highest label first), fill the code address and frame size
     tables, build the entry frame with a zero link pointer
  2. step(): fetch code[pc], advance pc, check the operand contract,
     execute the handler (CAL/RET redirect pc)
  3. run(): step until RET finds the zero link pointer of the entry frame

Termination reasons:
  - RETURNED: the entry function returned
  - BREAK:    a breakpoint pc was reached (run() again to resume)

Every error condition (bad program, operand mode violation, stack overflow)
raises an X2017Error and ends the run; nothing is retried.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, TextIO, Union

from .config import VMConfig, DEFAULT_CONFIG, FRAME_HEADER_SIZE
from .cpu import alu
from .cpu.regs import (
    RegisterFile, MachineState, LINK_OFFSET, RETURN_OFFSET, NO_CALLER,
)
from .cpu.resolver import AddressResolver
from .errors import (
    X2017Error, LoadInvariantViolation, OperandModeViolation,
    StackOverflow, InvalidProgramCounter,
)
from .isa import Function, Instruction, Mode, Opcode, check_operands
from .mem.memory import Memory

logger = logging.getLogger(__name__)

ProgramInput = Union[Mapping[int, Function], Iterable[Function]]


class StopReason(Enum):
    RETURNED = 'RETURNED'
    BREAK = 'BREAK'


class X2017VM:
    """x2017 virtual machine.

    Usage:
        vm = X2017VM()
        vm.load(functions)          # {label: Function} or [Function, ...]
        vm.run()                    # StopReason.RETURNED
        print(vm.output)            # values written by PRINT

    PRINT also writes each value as a decimal line to `out`
    (sys.stdout when not given).
    """

    def __init__(self, config: VMConfig = DEFAULT_CONFIG,
                 out: Optional[TextIO] = None):
        self.config = config.validate()
        self.out = out

        # Core components
        self.mem = Memory(config)
        self.regs = RegisterFile(config.num_registers)
        self.state = MachineState()
        self.resolver = AddressResolver(self.mem, self.regs, self.state)

        # Loaded program
        self.functions: Dict[int, Function] = {}
        self.code: List[Instruction] = []
        self.halted = False

        # Values written by PRINT, in execution order
        self.output: List[int] = []

        self._breakpoints: Set[int] = set()
        self._trace = False
        self._trace_output: List[str] = []

        self._dispatch = self._build_dispatch()

    # ══════════════════════════════════════════════
    # Bootstrap
    # ══════════════════════════════════════════════

    def load(self, functions: ProgramInput):
        """Validate a function table and prepare the entry frame.

        Raises LoadInvariantViolation for a malformed table (missing
        terminal RET, no entry function, capacity exceeded, frame larger
        than the stack, operand out of range, call to an unknown label).
        Nothing is changed unless the whole table is valid.
        """
        by_label = self._collect(functions)
        self._validate(by_label)
        entry = self.config.entry_label
        if entry not in by_label:
            raise LoadInvariantViolation("No main function found", label=entry)

        self.mem.clear()
        self.regs.reset()
        self.state.reset()
        self.output.clear()
        self.halted = False

        code: List[Instruction] = []
        for label in sorted(by_label, reverse=True):
            func = by_label[label]
            self.mem.set_code_addr(label, len(code))
            self.mem.set_frame_size(label, func.frame_size)
            code.extend(func.instructions)
        self.functions = by_label
        self.code = code

        sp = self.config.stack_top - (FRAME_HEADER_SIZE + self.mem.frame_size(entry))
        self.state.sp = sp
        self.mem.write8(sp + LINK_OFFSET, NO_CALLER)
        self.state.pc = self.mem.code_addr(entry)

        logger.debug("Loaded %d functions, %d instructions; entry pc=%d sp=%d",
                     len(by_label), len(code), self.state.pc, sp)

    def reset(self):
        """Reload the current program from a clean RAM and register file."""
        self.load(self.functions)
        self._trace_output.clear()

    def _collect(self, functions: ProgramInput) -> Dict[int, Function]:
        by_label: Dict[int, Function] = {}
        if isinstance(functions, Mapping):
            items = list(functions.items())
        else:
            items = [(f.label, f) for f in functions]
        for key, func in items:
            if key != func.label:
                raise LoadInvariantViolation(
                    f"Function table key {key} does not match label {func.label}",
                    label=func.label)
            if func.label in by_label:
                raise LoadInvariantViolation(
                    f"Duplicate function label {func.label}", label=func.label)
            by_label[func.label] = func
        return by_label

    def _validate(self, by_label: Dict[int, Function]):
        cfg = self.config
        total = 0
        for label, func in by_label.items():
            if not 0 <= label < cfg.max_functions:
                raise LoadInvariantViolation(
                    f"Function label {label} outside 0..{cfg.max_functions - 1}",
                    label=label)
            if not func.instructions or func.instructions[-1].opcode != Opcode.RET:
                raise LoadInvariantViolation(
                    f"No return instruction found at end of function {label}",
                    label=label)
            if len(func) > cfg.max_instructions:
                raise LoadInvariantViolation(
                    f"Function {label} has {len(func)} instructions "
                    f"(max {cfg.max_instructions})", label=label)
            if not 0 <= func.frame_size <= cfg.stack_capacity - FRAME_HEADER_SIZE:
                raise LoadInvariantViolation(
                    f"Function {label} frame size {func.frame_size} does not fit "
                    f"the stack", label=label)
            total += len(func)
            for inst in func.instructions:
                for arg in inst.args:
                    self._validate_arg(func, arg)
                if (inst.opcode == Opcode.CAL and inst.arg1 is not None
                        and inst.arg1.mode == Mode.VAL
                        and inst.arg1.value not in by_label):
                    raise LoadInvariantViolation(
                        f"Function {label} calls undefined function "
                        f"{inst.arg1.value}", label=label)
        if total > cfg.max_instructions_total:
            raise LoadInvariantViolation(
                f"Program has {total} instructions "
                f"(max {cfg.max_instructions_total})")

    def _validate_arg(self, func: Function, arg):
        if arg.mode == Mode.VAL:
            limit = 0x100
        elif arg.mode == Mode.REG:
            limit = self.config.num_registers
        else:
            limit = func.frame_size
        if not 0 <= arg.value < limit:
            raise LoadInvariantViolation(
                f"Function {func.label}: {arg.mode.value} operand {arg.value} "
                f"out of range (must be below {limit})", label=func.label)

    # ══════════════════════════════════════════════
    # Execution
    # ══════════════════════════════════════════════

    def step(self) -> Optional[StopReason]:
        """Execute one instruction. Returns RETURNED once the entry
        function has returned, else None."""
        if self.halted:
            return StopReason.RETURNED
        if not self.code:
            raise LoadInvariantViolation("No program loaded")

        pc = self.state.pc
        if not 0 <= pc < len(self.code):
            raise InvalidProgramCounter(pc, len(self.code))
        inst = self.code[pc]

        if self._trace:
            line = (f"{pc:02X}: {str(inst):<18s} "
                    f"{self.state.display()} {self.regs.display()}")
            self._trace_output.append(line)
            logger.debug(line)

        # Speculative advance; CAL and RET overwrite it
        self.state.pc = pc + 1

        finished = self._execute(inst, pc)
        self.state.steps += 1

        if finished:
            self.halted = True
            logger.debug("Entry function returned after %d steps",
                         self.state.steps)
            return StopReason.RETURNED
        return None

    def run(self) -> StopReason:
        """Run until the entry function returns or a breakpoint is reached.

        The instruction run() starts at is never treated as a breakpoint,
        so calling run() again resumes past the breakpoint that stopped it.
        """
        first = True
        while True:
            if not first and not self.halted and self.state.pc in self._breakpoints:
                return StopReason.BREAK
            first = False
            reason = self.step()
            if reason is not None:
                return reason

    def _execute(self, inst: Instruction, pc: int) -> bool:
        """Check the operand contract and dispatch. True means stop the run."""
        problem = check_operands(inst)
        if problem is not None:
            raise OperandModeViolation(problem, opcode=inst.opcode, pc=pc)
        return bool(self._dispatch[inst.opcode](inst))

    # ══════════════════════════════════════════════
    # Call / return
    # ══════════════════════════════════════════════

    def call(self, label: int):
        """Push a frame for `label` below the current one and jump to it."""
        if label not in self.functions:
            raise LoadInvariantViolation(
                f"Call to undefined function {label}", label=label)

        new_sp = self.state.sp - (FRAME_HEADER_SIZE + self.mem.frame_size(label))
        if new_sp + LINK_OFFSET < self.config.stack_floor:
            raise StackOverflow(label)

        self.mem.write8(new_sp + LINK_OFFSET, self.state.sp)
        self.mem.write8(new_sp + RETURN_OFFSET, self.state.pc)

        logger.debug("CAL %d: sp %d -> %d, return pc %d",
                     label, self.state.sp, new_sp, self.state.pc)
        self.state.sp = new_sp
        self.state.pc = self.mem.code_addr(label)

    def ret(self) -> bool:
        """Pop the current frame. True if it was the entry frame."""
        sp = self.state.sp
        link = self.mem.read8(sp + LINK_OFFSET)
        if link == NO_CALLER:
            return True
        self.state.pc = self.mem.read8(sp + RETURN_OFFSET)
        self.state.sp = link
        logger.debug("RET: sp %d -> %d, pc %d", sp, link, self.state.pc)
        return False

    # ══════════════════════════════════════════════
    # Instruction handlers
    # ══════════════════════════════════════════════
    # Handler signature: handler(inst) -> truthy to stop the run.
    # Operand modes have already been checked against OPERAND_RULES.

    def _build_dispatch(self) -> dict:
        return {
            Opcode.MOV:   self._op_mov,
            Opcode.CAL:   self._op_cal,
            Opcode.RET:   self._op_ret,
            Opcode.REF:   self._op_ref,
            Opcode.ADD:   self._op_add,
            Opcode.PRINT: self._op_print,
            Opcode.NOT:   self._op_not,
            Opcode.EQU:   self._op_equ,
        }

    def _op_mov(self, inst):
        self.resolver.write(inst.arg1, self.resolver.read(inst.arg2))

    def _op_cal(self, inst):
        self.call(inst.arg1.value)

    def _op_ret(self, inst):
        return self.ret()

    def _op_ref(self, inst):
        self.resolver.write(inst.arg1, self.resolver.address_of(inst.arg2))

    def _op_add(self, inst):
        a, b = inst.arg1.value, inst.arg2.value
        self.regs[a] = alu.add8(self.regs[a], self.regs[b])

    def _op_print(self, inst):
        value = self.resolver.read(inst.arg1)
        self.output.append(value)
        out = self.out if self.out is not None else sys.stdout
        out.write(f"{value}\n")

    def _op_not(self, inst):
        r = inst.arg1.value
        self.regs[r] = alu.not8(self.regs[r])

    def _op_equ(self, inst):
        r = inst.arg1.value
        self.regs[r] = alu.equ8(self.regs[r])

    # ══════════════════════════════════════════════
    # Breakpoint API
    # ══════════════════════════════════════════════

    def add_breakpoint(self, pc: int):
        """Stop run() before executing the instruction at flat index pc."""
        self._breakpoints.add(pc)

    def remove_breakpoint(self, pc: int):
        self._breakpoints.discard(pc)

    def clear_breakpoints(self):
        self._breakpoints.clear()

    def function_pc(self, label: int, offset: int = 0) -> int:
        """Flat pc of instruction `offset` inside function `label`."""
        return self.mem.code_addr(label) + offset

    # ══════════════════════════════════════════════
    # Trace / Debug
    # ══════════════════════════════════════════════

    def enable_trace(self, enable: bool = True):
        """Record one line per executed instruction (also logged at DEBUG)."""
        self._trace = enable

    def get_trace(self) -> str:
        return '\n'.join(self._trace_output)

    def clear_trace(self):
        self._trace_output.clear()

    def display(self) -> str:
        return f"{self.state.display()} {self.regs.display()}"


def run_program(functions: ProgramInput, config: VMConfig = DEFAULT_CONFIG,
                out: Optional[TextIO] = None) -> List[int]:
    """Load and run a program, return the values it printed."""
    vm = X2017VM(config, out=out)
    vm.load(functions)
    vm.run()
    return vm.output


__all__ = ['X2017VM', 'StopReason', 'run_program', 'X2017Error']
