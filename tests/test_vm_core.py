"""
x2017 VM — Core Execution Tests

Programs are built directly from Function/Instruction records so every
test pins down exactly what the VM is fed. Frame arithmetic assumes the
default profile: 256 bytes of RAM, stack floor 16, entry frame hanging
below address 255.

  - Opcode semantics (MOV, ADD, NOT, EQU, PRINT, REF)
  - Addressing modes (VAL, REG, STK, PTR)
  - Call/return protocol and frame layout
  - Bootstrap validation
  - Fatal errors (operand modes, stack overflow, runaway pc)
  - Debug API (trace, breakpoints, watchpoints)
"""

import io
import logging

import pytest

from x2017_vm import (
    X2017VM, StopReason, Function, Instruction, Opcode, VMConfig, PROFILES,
    LoadInvariantViolation, OperandModeViolation, StackOverflow,
    InvalidProgramCounter, run_program, val, reg, stk, ptr,
)
from x2017_vm.cpu import alu
from x2017_vm.mem import UNASSIGNED

MOV, CAL, RET, REF = Opcode.MOV, Opcode.CAL, Opcode.RET, Opcode.REF
ADD, PRINT, NOT, EQU = Opcode.ADD, Opcode.PRINT, Opcode.NOT, Opcode.EQU


def _fn(label, frame_size, *instructions):
    return Function(label, frame_size, [Instruction(*i) for i in instructions])


def _vm(*functions, config=PROFILES["x2017"]):
    vm = X2017VM(config, out=io.StringIO())
    vm.load(list(functions))
    return vm


def _run(*functions):
    vm = _vm(*functions)
    assert vm.run() == StopReason.RETURNED
    return vm


# ═══════════════════════════════════════════════
# Opcodes
# ═══════════════════════════════════════════════

class TestOpcodes:

    def test_mov_print(self):
        """MOV REG 0 VAL 5; PRINT REG 0 → prints exactly 5"""
        out = io.StringIO()
        output = run_program([_fn(0, 0,
            (MOV, reg(0), val(5)),
            (PRINT, reg(0)),
            (RET,),
        )], out=out)
        assert output == [5]
        assert out.getvalue() == "5\n"

    def test_print_one_line_per_value(self):
        out = io.StringIO()
        run_program([_fn(0, 0,
            (PRINT, val(0)),
            (PRINT, val(255)),
            (PRINT, val(17)),
            (RET,),
        )], out=out)
        assert out.getvalue() == "0\n255\n17\n"

    def test_add_wraps(self):
        """200 + 100 = 44 (mod 256), no error"""
        vm = _run(_fn(0, 0,
            (MOV, reg(0), val(200)),
            (MOV, reg(1), val(100)),
            (ADD, reg(0), reg(1)),
            (RET,),
        ))
        assert vm.regs[0] == 44
        assert vm.regs[1] == 100

    def test_add_same_register(self):
        vm = _run(_fn(0, 0,
            (MOV, reg(2), val(0x81)),
            (ADD, reg(2), reg(2)),
            (RET,),
        ))
        assert vm.regs[2] == 0x02

    def test_not_in_place(self):
        vm = _run(_fn(0, 0,
            (MOV, reg(3), val(0x0F)),
            (NOT, reg(3)),
            (RET,),
        ))
        assert vm.regs[3] == 0xF0

    def test_not_twice_restores(self):
        vm = _run(_fn(0, 0,
            (MOV, reg(3), val(0x5A)),
            (NOT, reg(3)),
            (NOT, reg(3)),
            (RET,),
        ))
        assert vm.regs[3] == 0x5A

    def test_equ_zero_and_nonzero(self):
        vm = _run(_fn(0, 0,
            (MOV, reg(0), val(0)),
            (MOV, reg(1), val(9)),
            (EQU, reg(0)),
            (EQU, reg(1)),
            (RET,),
        ))
        assert vm.regs[0] == 1
        assert vm.regs[1] == 0

    def test_alu_laws_all_bytes(self):
        for v in range(256):
            assert alu.equ8(v) == (1 if v == 0 else 0)
            assert alu.not8(alu.not8(v)) == v
            assert alu.add8(v, 256 - v) == 0

    def test_all_eight_registers_addressable(self):
        """No register is reserved as scratch space."""
        instructions = [(MOV, reg(r), val(r + 10)) for r in range(8)]
        vm = _run(_fn(0, 0, *instructions, (RET,)))
        assert vm.regs.values() == [10, 11, 12, 13, 14, 15, 16, 17]

    def test_only_ret_terminates_immediately(self):
        vm = _vm(_fn(0, 0, (RET,)))
        assert vm.step() == StopReason.RETURNED
        assert vm.output == []
        assert vm.out.getvalue() == ""
        assert vm.state.steps == 1

    def test_step_after_return_stays_returned(self):
        vm = _run(_fn(0, 0, (RET,)))
        assert vm.step() == StopReason.RETURNED
        assert vm.state.steps == 1


# ═══════════════════════════════════════════════
# Addressing modes
# ═══════════════════════════════════════════════

class TestAddressing:

    def test_val_to_register(self):
        vm = _run(_fn(0, 0, (MOV, reg(1), val(200)), (RET,)))
        assert vm.regs[1] == 200

    def test_reg_to_register(self):
        vm = _run(_fn(0, 0,
            (MOV, reg(0), val(77)),
            (MOV, reg(1), reg(0)),
            (RET,),
        ))
        assert vm.regs[1] == 77

    def test_stk_round_trip(self):
        vm = _run(_fn(0, 1,
            (MOV, stk(0), val(33)),
            (MOV, reg(1), stk(0)),
            (RET,),
        ))
        assert vm.regs[1] == 33

    def test_ptr_round_trip(self):
        """STK 1 holds the address of STK 0; PTR 1 reads and writes through it."""
        vm = _run(_fn(0, 2,
            (REF, stk(1), stk(0)),
            (MOV, ptr(1), val(99)),
            (MOV, reg(1), ptr(1)),
            (MOV, reg(2), stk(0)),
            (RET,),
        ))
        assert vm.regs[1] == 99
        assert vm.regs[2] == 99

    def test_stack_symbols_live_above_header(self):
        """Entry frame (size 2): sp=251, link at 252, return at 253, symbols at 254, 255."""
        vm = _run(_fn(0, 2,
            (MOV, stk(0), val(0xA0)),
            (MOV, stk(1), val(0xA1)),
            (RET,),
        ))
        assert vm.state.sp == 251
        assert vm.mem.read8(254) == 0xA0
        assert vm.mem.read8(255) == 0xA1

    def test_ref_stk_yields_address(self):
        vm = _run(_fn(0, 3, (REF, reg(0), stk(2)), (RET,)))
        assert vm.regs[0] == vm.state.sp + 3 + 2

    def test_ref_ptr_yields_stored_address(self):
        vm = _run(_fn(0, 1,
            (MOV, stk(0), val(0x40)),
            (REF, reg(0), ptr(0)),
            (RET,),
        ))
        assert vm.regs[0] == 0x40

    def test_resolver_ignores_val_write(self, caplog):
        vm = _vm(_fn(0, 0, (RET,)))
        before = vm.mem.snapshot()
        with caplog.at_level(logging.WARNING, logger="x2017_vm"):
            vm.resolver.write(val(3), 5)
        assert vm.mem.snapshot() == before
        assert vm.regs.values() == [0] * 8
        assert "VAL operand ignored" in caplog.text


# ═══════════════════════════════════════════════
# Call / return
# ═══════════════════════════════════════════════

class TestCallReturn:

    def _call_program(self):
        return [
            _fn(0, 0,
                (MOV, reg(0), val(1)),
                (CAL, val(1)),
                (PRINT, reg(0)),
                (RET,)),
            _fn(1, 3,
                (MOV, stk(2), val(9)),
                (MOV, reg(0), stk(2)),
                (RET,)),
        ]

    def test_entry_frame(self):
        vm = _vm(_fn(0, 4, (RET,)))
        assert vm.state.sp == 255 - 2 - 4
        assert vm.mem.read8(vm.state.sp + 1) == 0
        assert vm.state.pc == vm.mem.code_addr(0)

    def test_call_builds_frame_header(self):
        vm = _vm(*self._call_program())
        vm.step()                       # MOV
        caller_sp = vm.state.sp
        return_pc = vm.state.pc + 1     # instruction after CAL
        vm.step()                       # CAL 1
        assert vm.state.sp == caller_sp - (2 + 3)
        assert vm.mem.read8(vm.state.sp + 1) == caller_sp
        assert vm.mem.read8(vm.state.sp + 2) == return_pc
        assert vm.state.pc == vm.mem.code_addr(1)

    def test_call_return_balances_sp(self):
        vm = _vm(*self._call_program())
        after_call = vm.function_pc(0, 2)
        vm.add_breakpoint(after_call)
        vm.step()
        sp_before = vm.state.sp
        assert vm.run() == StopReason.BREAK
        assert vm.state.pc == after_call
        assert vm.state.sp == sp_before

    def test_callee_result_visible_after_return(self):
        vm = _run(*self._call_program())
        assert vm.output == [9]

    def test_nested_calls_return_in_order(self):
        vm = _run(
            _fn(0, 0, (PRINT, val(0)), (CAL, val(1)), (PRINT, val(4)), (RET,)),
            _fn(1, 1, (PRINT, val(1)), (CAL, val(2)), (PRINT, val(3)), (RET,)),
            _fn(2, 2, (PRINT, val(2)), (RET,)),
        )
        assert vm.output == [0, 1, 2, 3, 4]
        assert vm.state.sp == 255 - 2

    def test_frames_are_not_zeroed_on_return(self):
        """A later call sees the stale bytes an earlier callee left behind."""
        vm = _run(
            _fn(0, 0, (CAL, val(1)), (CAL, val(2)), (RET,)),
            _fn(1, 1, (MOV, stk(0), val(123)), (RET,)),
            _fn(2, 1, (PRINT, stk(0)), (RET,)),
        )
        assert vm.output == [123]

    def test_pointer_through_callee_frame(self):
        """Callee writes 7, overwrites it with 9 through a pointer; main reads 9."""
        vm = _run(
            _fn(0, 1,
                (CAL, val(1)),
                (MOV, stk(0), reg(0)),
                (PRINT, ptr(0)),
                (RET,)),
            _fn(1, 2,
                (MOV, stk(0), val(7)),
                (REF, reg(0), stk(0)),
                (MOV, stk(1), reg(0)),
                (MOV, ptr(1), val(9)),
                (RET,)),
        )
        assert vm.output == [9]

    def test_recursion_overflows_before_mutation(self):
        vm = _vm(
            _fn(0, 0, (CAL, val(1)), (RET,)),
            _fn(1, 0, (CAL, val(1)), (RET,)),
        )
        vm.add_breakpoint(vm.function_pc(1))
        # Every frame costs 2 bytes; the last one that fits has sp=15
        while vm.state.sp != 15:
            assert vm.run() == StopReason.BREAK
        ram_before = vm.mem.snapshot()
        regs_before = vm.regs.values()

        with pytest.raises(StackOverflow) as exc:
            vm.step()

        assert exc.value.label == 1
        assert "function 1" in str(exc.value)
        assert vm.state.sp == 15
        assert vm.mem.snapshot() == ram_before
        assert vm.regs.values() == regs_before

    def test_small_profile_overflows_sooner(self):
        vm = X2017VM(PROFILES["small"], out=io.StringIO())
        vm.load([
            _fn(0, 0, (CAL, val(1)), (RET,)),
            _fn(1, 10, (CAL, val(1)), (RET,)),
        ])
        with pytest.raises(StackOverflow):
            vm.run()
        # 64-byte RAM: floor 16, entry sp 61, frames of 12 bytes
        assert vm.state.sp == 61 - 12 * 3

    def test_independent_instances(self):
        a = _vm(_fn(0, 0, (MOV, reg(0), val(1)), (CAL, val(1)), (RET,)),
                _fn(1, 5, (MOV, reg(0), val(2)), (RET,)))
        b = _vm(_fn(0, 1, (MOV, reg(0), val(7)), (RET,)))
        a.step()
        b.step()
        a.step()
        assert a.state.sp == 253 - 7
        assert b.state.sp == 252
        assert a.regs[0] == 1
        assert b.regs[0] == 7


# ═══════════════════════════════════════════════
# Bootstrap
# ═══════════════════════════════════════════════

class TestBootstrap:

    def test_layout_highest_label_first(self):
        vm = _vm(
            _fn(0, 1, (RET,), (RET,)),
            _fn(1, 2, (RET,), (RET,), (RET,)),
            _fn(3, 4, (RET,)),
        )
        assert vm.mem.code_addr(3) == 0
        assert vm.mem.code_addr(1) == 1
        assert vm.mem.code_addr(0) == 4
        assert [vm.mem.frame_size(l) for l in (0, 1, 3)] == [1, 2, 4]
        assert vm.mem.code_addr(2) == UNASSIGNED
        assert len(vm.code) == 6

    def test_entry_at_last_code_index(self):
        """With 64-instruction functions the entry can start at 0xFF, the
        unassigned marker; loaded labels still run."""
        config = VMConfig(max_instructions=64)
        filler = [(PRINT, val(1))] * 63
        vm = X2017VM(config, out=io.StringIO())
        vm.load([
            _fn(0, 0, (RET,)),
            _fn(1, 0, *filler, (RET,)),
            _fn(2, 0, *filler, (RET,)),
            _fn(3, 0, *filler, (RET,)),
            _fn(4, 0, *filler[:62], (RET,)),
        ])
        assert len(vm.code) == 256
        assert vm.mem.code_addr(0) == UNASSIGNED
        assert vm.state.pc == 255
        assert vm.run() == StopReason.RETURNED
        assert vm.output == []

    def test_mapping_input(self):
        func = _fn(0, 0, (PRINT, val(1)), (RET,))
        assert run_program({0: func}, out=io.StringIO()) == [1]

    def test_mapping_key_must_match_label(self):
        with pytest.raises(LoadInvariantViolation):
            _vm_map = X2017VM(out=io.StringIO())
            _vm_map.load({1: _fn(0, 0, (RET,))})

    def test_missing_ret(self):
        with pytest.raises(LoadInvariantViolation) as exc:
            _vm(_fn(0, 0, (MOV, reg(0), val(1))))
        assert "No return instruction" in str(exc.value)
        assert exc.value.label == 0

    def test_empty_function(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0), _fn(1, 0, (RET,)))

    def test_no_entry_function(self):
        with pytest.raises(LoadInvariantViolation) as exc:
            _vm(_fn(1, 0, (RET,)))
        assert "No main function" in str(exc.value)

    def test_entry_label_configurable(self):
        config = VMConfig(entry_label=3)
        vm = X2017VM(config, out=io.StringIO())
        vm.load([_fn(3, 0, (PRINT, val(3)), (RET,)), _fn(0, 0, (RET,))])
        vm.run()
        assert vm.output == [3]

    def test_duplicate_labels(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, (RET,)), _fn(0, 0, (RET,)))

    def test_label_out_of_range(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, (RET,)), _fn(8, 0, (RET,)))

    def test_too_many_instructions(self):
        body = [(PRINT, val(1))] * 32
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, *body, (RET,)))

    def test_call_to_undefined_label(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, (CAL, val(5)), (RET,)))

    def test_register_out_of_range(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, (MOV, reg(8), val(1)), (RET,)))

    def test_stack_symbol_outside_frame(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 1, (MOV, stk(1), val(1)), (RET,)))

    def test_largest_entry_frame(self):
        """A 238-byte frame fills the stack exactly: link byte on the floor."""
        vm = _vm(_fn(0, 238, (RET,)))
        assert vm.state.sp == 15
        assert vm.state.sp + 1 == vm.config.stack_floor
        assert vm.run() == StopReason.RETURNED

    def test_oversized_frame_leaves_vm_untouched(self):
        vm = _vm(_fn(0, 0, (PRINT, val(1)), (RET,)))
        with pytest.raises(LoadInvariantViolation):
            vm.load([_fn(0, 239, (RET,))])
        assert len(vm.code) == 2
        assert vm.state.sp == 253
        assert vm.run() == StopReason.RETURNED
        assert vm.output == [1]

    def test_value_wider_than_byte(self):
        with pytest.raises(LoadInvariantViolation):
            _vm(_fn(0, 0, (PRINT, val(256)), (RET,)))

    def test_reset_reruns_program(self):
        vm = _run(_fn(0, 1, (MOV, stk(0), val(4)), (PRINT, stk(0)), (RET,)))
        vm.reset()
        assert vm.output == []
        assert not vm.halted
        vm.run()
        assert vm.output == [4]

    def test_step_without_program(self):
        with pytest.raises(LoadInvariantViolation):
            X2017VM().step()


# ═══════════════════════════════════════════════
# Operand mode violations
# ═══════════════════════════════════════════════

class TestOperandModes:

    @pytest.mark.parametrize("inst", [
        (MOV, val(1), val(2)),
        (CAL, reg(0)),
        (REF, reg(0), reg(1)),
        (REF, reg(0), val(1)),
        (ADD, reg(0), val(1)),
        (ADD, stk(0), reg(1)),
        (NOT, stk(0)),
        (EQU, val(0)),
    ])
    def test_violation_is_fatal(self, inst):
        vm = _vm(_fn(0, 1, (PRINT, val(3)), inst, (PRINT, val(4)), (RET,)))
        with pytest.raises(OperandModeViolation) as exc:
            vm.run()
        assert exc.value.opcode == inst[0]
        assert exc.value.pc == vm.function_pc(0, 1)
        assert vm.output == [3]

    def test_ref_into_literal_is_dropped(self, caplog):
        """REF VAL 3 STK 0 changes nothing; the run carries on."""
        vm = _vm(_fn(0, 1, (REF, val(3), stk(0)), (PRINT, val(1)), (RET,)))
        ram_before = vm.mem.snapshot()
        with caplog.at_level(logging.WARNING, logger="x2017_vm"):
            assert vm.run() == StopReason.RETURNED
        assert vm.output == [1]
        assert vm.mem.snapshot() == ram_before
        assert vm.regs.values() == [0] * 8
        assert "VAL operand ignored" in caplog.text

    def test_message_names_constraint(self):
        vm = _vm(_fn(0, 0, (MOV, val(1), val(2)), (RET,)))
        with pytest.raises(OperandModeViolation) as exc:
            vm.run()
        assert "first argument to MOV" in str(exc.value)

    def test_print_accepts_every_mode(self):
        vm = _run(_fn(0, 2,
            (MOV, reg(0), val(1)),
            (MOV, stk(0), val(2)),
            (REF, stk(1), stk(0)),
            (PRINT, val(0)),
            (PRINT, reg(0)),
            (PRINT, stk(0)),
            (PRINT, ptr(1)),
            (RET,),
        ))
        assert vm.output == [0, 1, 2, 2]


# ═══════════════════════════════════════════════
# Runaway program counter
# ═══════════════════════════════════════════════

class TestProgramCounter:

    def test_corrupted_return_address(self):
        """Callee overwrites its own return address (sp+2) with 200."""
        vm = _vm(
            _fn(0, 0, (CAL, val(1)), (RET,)),
            _fn(1, 1,
                (REF, reg(0), stk(0)),      # R0 = sp+3
                (MOV, reg(1), val(255)),
                (ADD, reg(0), reg(1)),      # R0 = sp+2
                (MOV, stk(0), reg(0)),
                (MOV, ptr(0), val(200)),
                (RET,)),
        )
        with pytest.raises(InvalidProgramCounter) as exc:
            vm.run()
        assert exc.value.pc == 200


# ═══════════════════════════════════════════════
# Debug API
# ═══════════════════════════════════════════════

class TestDebug:

    def test_trace_lines(self):
        vm = _vm(
            _fn(0, 0, (CAL, val(1)), (RET,)),
            _fn(1, 0, (MOV, reg(0), val(5)), (RET,)),
        )
        vm.enable_trace()
        vm.run()
        lines = vm.get_trace().split('\n')
        assert len(lines) == 4
        assert "CAL VAL 1" in lines[0]
        assert "MOV REG 0 VAL 5" in lines[1]
        vm.clear_trace()
        assert vm.get_trace() == ""

    def test_breakpoint_resume(self):
        vm = _vm(_fn(0, 0,
            (PRINT, val(1)),
            (PRINT, val(2)),
            (PRINT, val(3)),
            (RET,),
        ))
        vm.add_breakpoint(vm.function_pc(0, 2))
        assert vm.run() == StopReason.BREAK
        assert vm.output == [1, 2]
        assert vm.run() == StopReason.RETURNED
        assert vm.output == [1, 2, 3]

    def test_watchpoint_on_link_slot(self):
        vm = _vm(
            _fn(0, 0, (CAL, val(1)), (RET,)),
            _fn(1, 0, (RET,)),
        )
        writes = []
        callee_sp = vm.state.sp - 2
        vm.mem.add_watchpoint(callee_sp + 1,
                              lambda addr, old, new: writes.append((addr, new)))
        vm.run()
        assert writes == [(callee_sp + 1, 253)]
