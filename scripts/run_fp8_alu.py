"""
Drive one request through the E4M3 arithmetic unit in a MyHDL simulation.

Examples:
    python scripts/run_fp8_alu.py 1.5 add 1.25
    python scripts/run_fp8_alu.py 0x38 sub 0x40 --vcd
    python scripts/run_fp8_alu.py 0b01110111 mul 2.0 --verbose
"""

import argparse
import logging
import os
import sys

from myhdl import *

# Add the project source tree to the path
sys.path.append(os.path.join(os.path.dirname(__file__), "../src"))

from fp8alu.hdl.components.fp8_alu import fp8_alu
from fp8alu.utils.fp8_converter import E4M3Value, describe
from fp8alu.utils.fp_defs import AluOp, E4M3Format

OPS = {
    "add": AluOp.ADD,
    "sub": AluOp.SUB,
    "mul": AluOp.MUL,
    "reserved": AluOp.RESERVED,
}

PERIOD = 10
TIMEOUT_CYCLES = 20


def simulate_request(a_code, b_code, op, vcd=False):
    """
    Run a single request on the fp8_alu block.

    Returns:
        (result_code, flags_dict, latency_cycles)
    """
    clk = Signal(bool(0))
    rst = ResetSignal(0, active=1, isasync=True)
    input_a = Signal(intbv(a_code)[E4M3Format.WIDTH :])
    input_b = Signal(intbv(b_code)[E4M3Format.WIDTH :])
    op_sig = Signal(intbv(op)[AluOp.WIDTH :])
    output_z = Signal(intbv(0)[E4M3Format.WIDTH :])
    zero, overflow, underflow, inexact = [Signal(bool(0)) for _ in range(4)]
    start = Signal(bool(0))
    done = Signal(bool(0))

    captured = {}

    dut = fp8_alu(
        input_a,
        input_b,
        op_sig,
        output_z,
        zero,
        overflow,
        underflow,
        inexact,
        start,
        done,
        clk,
        rst,
    )
    if vcd:
        vcd_dir = os.path.join("vcd", "fp8_alu")
        os.makedirs(vcd_dir, exist_ok=True)
        traceSignals.directory = vcd_dir
        traceSignals.filename = f"fp8_alu_{a_code:02x}_{op}_{b_code:02x}"
        dut = traceSignals(dut)

    @always(delay(PERIOD // 2))
    def clk_gen():
        clk.next = not clk

    @instance
    def stimulus():
        rst.next = 1
        yield clk.posedge
        rst.next = 0
        yield clk.posedge

        start.next = 1
        yield clk.posedge
        start.next = 0

        for cycle in range(1, TIMEOUT_CYCLES + 1):
            yield clk.posedge
            yield delay(1)
            if done:
                captured["latency"] = cycle
                captured["code"] = int(output_z)
                captured["flags"] = {
                    "zero": bool(zero),
                    "overflow": bool(overflow),
                    "underflow": bool(underflow),
                    "inexact": bool(inexact),
                }
                break
        raise StopSimulation

    sim = Simulation(dut, clk_gen, stimulus)
    sim.run(quiet=1)

    if "code" not in captured:
        raise RuntimeError(f"No result within {TIMEOUT_CYCLES} cycles")
    return captured["code"], captured["flags"], captured["latency"]


def main():
    parser = argparse.ArgumentParser(
        description="Run one E4M3 operation through the simulated arithmetic unit."
    )
    parser.add_argument("a", help="Operand A: decimal, 0x.. hex or 0b.. binary")
    parser.add_argument("op", choices=sorted(OPS), help="Operation")
    parser.add_argument("b", help="Operand B: decimal, 0x.. hex or 0b.. binary")
    parser.add_argument(
        "--vcd", action="store_true", help="Write a waveform to vcd/fp8_alu/"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Log engine stage transitions"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        a = E4M3Value(args.a)
        b = E4M3Value(args.b)
    except (ValueError, TypeError) as e:
        parser.error(str(e))

    code, flags, latency = simulate_request(
        a.raw_value, b.raw_value, OPS[args.op], vcd=args.vcd
    )
    result = E4M3Value(code)

    print(f"A:      {a.to_fields()}  {a.to_hex()}  {a.to_float()}")
    print(f"B:      {b.to_fields()}  {b.to_hex()}  {b.to_float()}")
    print(f"Op:     {AluOp.NAMES[OPS[args.op]]}")
    print(
        f"Result: {result.to_fields()}  {result.to_hex()}  {result.to_binary()}  "
        f"{result.to_float()}"
    )
    print("Flags:  " + ", ".join(f"{k}={int(v)}" for k, v in flags.items()))
    print(f"Latency: {latency} cycles after start")
    print()
    print(describe(code))


if __name__ == "__main__":
    main()
