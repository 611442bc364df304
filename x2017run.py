#!/usr/bin/env python3
"""
x2017run — x2017 Virtual Machine CLI

Usage:
    python x2017run.py <program.asm> [--profile x2017|small] [--trace]
                                     [--listing] [--dump-ram] [--verbose]
                                     [--log-dir DIR]

Each PRINT writes one unsigned decimal per line to stdout. Diagnostics go
to stderr.

Exit codes:
    0  entry function returned
    1  unreadable input, malformed program, operand mode violation,
       stack overflow
    2  usage error

Examples:
    python x2017run.py examples/hello.asm
    python x2017run.py examples/pointer.asm --trace --dump-ram
    python x2017run.py examples/arith.asm --log-dir logs
"""

import argparse
import logging
import sys
import os

# Allow running from project root without installing
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from x2017_vm import __version__
from x2017_vm.assembler import assemble, format_program
from x2017_vm.config import PROFILES
from x2017_vm.errors import AssemblerError, X2017Error
from x2017_vm.log import setup_logging
from x2017_vm.vm import X2017VM

logger = logging.getLogger("x2017_vm.cli")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="x2017run",
        description="Run an x2017 assembly program",
        epilog="Profiles: " + ", ".join(PROFILES.keys()),
    )
    parser.add_argument("input", help="Input x2017 assembly file")
    parser.add_argument("--profile", default="x2017", choices=list(PROFILES.keys()),
                        help="Machine capacity profile (default: x2017)")
    parser.add_argument("--trace", action="store_true",
                        help="Print an instruction trace to stderr after the run")
    parser.add_argument("--listing", action="store_true",
                        help="Print the assembled program and exit")
    parser.add_argument("--dump-ram", action="store_true",
                        help="Hex dump RAM to stderr after the run")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log load and call/return details to stderr")
    parser.add_argument("--log-dir", default=None,
                        help="Also write a DEBUG log file into this directory")
    parser.add_argument("--version", action="version",
                        version=f"x2017run {__version__}")

    args = parser.parse_args(argv)

    setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING,
                  log_dir=args.log_dir)
    config = PROFILES[args.profile]

    try:
        with open(args.input, "r", encoding="utf-8") as f:
            source = f.read()
    except OSError as e:
        print(f"Error reading {args.input}: {e}", file=sys.stderr)
        return 1

    vm = X2017VM(config)
    try:
        functions = assemble(source, config)
        if args.listing:
            sys.stdout.write(format_program(functions))
            return 0

        logger.info("Profile %s: %s", args.profile, config.display())
        vm.load(functions)
        vm.enable_trace(args.trace)
        vm.run()
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        return 1
    except X2017Error as e:
        print(f"VM error: {e}", file=sys.stderr)
        return 1
    finally:
        if args.trace and vm.get_trace():
            print(vm.get_trace(), file=sys.stderr)
        if args.dump_ram:
            print(vm.mem.hexdump(), file=sys.stderr)

    return 0


if __name__ == "__main__":
    sys.exit(main())
