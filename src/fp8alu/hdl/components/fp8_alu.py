import logging

from myhdl import *

from fp8alu.hdl.components.fp8_codec import (
    CLEARED,
    EngineBusyError,
    ResultRecord,
    decode,
)
from fp8alu.hdl.components.fp8_e4m3_add import AddSubEngine, fp8_e4m3_add
from fp8alu.hdl.components.fp8_e4m3_mult import MultiplyEngine, fp8_e4m3_multiply
from fp8alu.utils.fp_defs import AluOp, E4M3Format

logger = logging.getLogger(__name__)

RESERVED_RESULT = ResultRecord(code=E4M3Format.ZERO, zero=True)


class Fp8Alu:
    """
    Operation dispatcher over one add/subtract and one multiply engine.

    A request goes to exactly one engine: ADD/SUB to the adder (SUB sets its
    mode bit), MUL to the multiplier. RESERVED does no arithmetic and
    answers with +0 and the zero flag one tick after start. The result bus
    republishes whichever engine completed on the last tick.
    """

    def __init__(self):
        self.adder = AddSubEngine()
        self.multiplier = MultiplyEngine()
        self._reserved_request = False
        self._reserved_pending = False
        self._reserved_done = False

    @property
    def busy(self):
        return (
            not self.adder.idle
            or not self.multiplier.idle
            or self._reserved_request
            or self._reserved_pending
        )

    @property
    def done(self):
        return self.adder.done or self.multiplier.done or self._reserved_done

    @property
    def result(self):
        if self.adder.done:
            return self.adder.result
        if self.multiplier.done:
            return self.multiplier.result
        if self._reserved_done:
            return RESERVED_RESULT
        return CLEARED

    def reset(self):
        self.adder.reset()
        self.multiplier.reset()
        self._reserved_request = False
        self._reserved_pending = False
        self._reserved_done = False

    def start(self, input_a, input_b, op):
        if op in (AluOp.ADD, AluOp.SUB):
            self.adder.start(input_a, input_b, subtract=op == AluOp.SUB)
        elif op == AluOp.MUL:
            self.multiplier.start(input_a, input_b)
        elif op == AluOp.RESERVED:
            if self._reserved_request or self._reserved_pending:
                raise EngineBusyError("RESERVED request already pending")
            decode(input_a)
            decode(input_b)
            self._reserved_request = True
        else:
            raise ValueError(f"Unknown operation selector {op}")
        logger.debug(
            "dispatch %s a=0x%02x b=0x%02x", AluOp.NAMES[op], input_a, input_b
        )

    def tick(self):
        """Tick both engines. Returns the ResultRecord when one completes."""
        self.adder.tick()
        self.multiplier.tick()
        self._reserved_done = self._reserved_pending
        self._reserved_pending = self._reserved_request
        self._reserved_request = False
        return self.result if self.done else None

    def run(self, input_a, input_b, op):
        """Issue one request and tick until it completes."""
        self.start(input_a, input_b, op)
        record = None
        while record is None:
            record = self.tick()
        return record


def run_operation(input_a, input_b, op):
    """Compute one operation on a fresh dispatcher."""
    return Fp8Alu().run(input_a, input_b, op)


@block
def fp8_alu(
    input_a,
    input_b,
    op,
    output_z,
    zero,
    overflow,
    underflow,
    inexact,
    start,
    done,
    clk,
    rst,
):
    """
    E4M3 arithmetic unit: dispatcher over the adder and the multiplier
    Parameters:
    - input_a, input_b: Input E4M3 operands (8-bit each)
    - op: Operation selector (2-bit): ADD=0, SUB=1, MUL=2, RESERVED=3
    - output_z: Output E4M3 result (8-bit)
    - zero, overflow, underflow, inexact: Result flags, valid with done
    - start: Start the selected operation (active high, engine must be idle)
    - done: Result valid (active high, one cycle)
    - clk, rst: Clock and asynchronous reset
    """
    WIDTH = E4M3Format.WIDTH

    # Adder interface
    add_start = Signal(bool(0))
    add_sub = Signal(bool(0))
    add_z = Signal(intbv(0)[WIDTH:])
    add_zero = Signal(bool(0))
    add_overflow = Signal(bool(0))
    add_underflow = Signal(bool(0))
    add_inexact = Signal(bool(0))
    add_done = Signal(bool(0))

    # Multiplier interface
    mult_start = Signal(bool(0))
    mult_z = Signal(intbv(0)[WIDTH:])
    mult_zero = Signal(bool(0))
    mult_overflow = Signal(bool(0))
    mult_underflow = Signal(bool(0))
    mult_inexact = Signal(bool(0))
    mult_done = Signal(bool(0))

    # RESERVED answers one cycle after start
    reserved_pending = Signal(bool(0))
    reserved_done = Signal(bool(0))

    adder = fp8_e4m3_add(
        input_a=input_a,
        input_b=input_b,
        sub=add_sub,
        output_z=add_z,
        zero=add_zero,
        overflow=add_overflow,
        underflow=add_underflow,
        inexact=add_inexact,
        start=add_start,
        done=add_done,
        clk=clk,
        rst=rst,
    )

    multiplier = fp8_e4m3_multiply(
        input_a=input_a,
        input_b=input_b,
        output_z=mult_z,
        zero=mult_zero,
        overflow=mult_overflow,
        underflow=mult_underflow,
        inexact=mult_inexact,
        start=mult_start,
        done=mult_done,
        clk=clk,
        rst=rst,
    )

    @always_comb
    def route_request():
        add_start.next = start and (op == AluOp.ADD or op == AluOp.SUB)
        add_sub.next = op == AluOp.SUB
        mult_start.next = start and op == AluOp.MUL

    rst_edge = rst.posedge if rst.active else rst.negedge

    @always(clk.posedge, rst_edge)
    def reserved_path():
        if rst == rst.active:
            reserved_pending.next = 0
            reserved_done.next = 0
        else:
            reserved_done.next = reserved_pending
            reserved_pending.next = start and op == AluOp.RESERVED

    @always_comb
    def output_mux():
        if add_done:
            output_z.next = add_z
            zero.next = add_zero
            overflow.next = add_overflow
            underflow.next = add_underflow
            inexact.next = add_inexact
        elif mult_done:
            output_z.next = mult_z
            zero.next = mult_zero
            overflow.next = mult_overflow
            underflow.next = mult_underflow
            inexact.next = mult_inexact
        elif reserved_done:
            output_z.next = E4M3Format.ZERO
            zero.next = 1
            overflow.next = 0
            underflow.next = 0
            inexact.next = 0
        else:
            output_z.next = 0
            zero.next = 0
            overflow.next = 0
            underflow.next = 0
            inexact.next = 0
        done.next = add_done or mult_done or reserved_done

    return instances()
