import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from myhdl import *

from fp8alu.hdl.components.bit_primitives import (
    add,
    at_least,
    barrel_shift_left_8,
    barrel_shift_right_8,
    decrement,
    increment,
    leading_zero_count_8,
    multiply_4x4,
    negate,
    subtract,
)
from fp8alu.hdl.components.fp8_codec import (
    CLEARED,
    DecodedOperand,
    EngineBusyError,
    ResultRecord,
    decode,
    encode,
    saturate,
)
from fp8alu.hdl.components.fp8_engine_block import clocked_engine
from fp8alu.hdl.components.rounder import round_nearest_even
from fp8alu.utils.fp_defs import E4M3Format

logger = logging.getLogger(__name__)

# Exponent arithmetic runs on a 6-bit two's-complement chain (-32..31)
EXP_WIDTH = 6
EXP_SIGN = 1 << (EXP_WIDTH - 1)

# Product register: leading 1 at bit 7 or bit 6 for normal operands
#   [6] hidden | [5:3] mantissa | [2] guard | [1] round | [0] sticky
PRODUCT_TOP = 7
HIDDEN_BIT = 6
MAN_LSB = 3
GUARD_BIT = 2
ROUND_BIT = 1


class MultiplyStage(Enum):
    IDLE = 0
    UNPACK = 1
    MULTIPLY = 2
    NORMALIZE = 3
    PACK = 4


_NEXT_STAGE = {
    MultiplyStage.UNPACK: MultiplyStage.MULTIPLY,
    MultiplyStage.MULTIPLY: MultiplyStage.NORMALIZE,
    MultiplyStage.NORMALIZE: MultiplyStage.PACK,
    MultiplyStage.PACK: MultiplyStage.IDLE,
}


@dataclass
class MultiplyState:
    """Stage register and working registers of one multiply operation."""

    stage: MultiplyStage = MultiplyStage.IDLE

    input_a: int = 0
    input_b: int = 0

    op_a: Optional[DecodedOperand] = None
    op_b: Optional[DecodedOperand] = None
    z_sign: bool = False
    sig_a: int = 0
    sig_b: int = 0

    # Biased exponent, two's complement over EXP_WIDTH bits
    z_exp: int = 0
    product: int = 0
    sticky: int = 0

    zero: bool = False
    overflow: bool = False
    underflow: bool = False

    result: ResultRecord = CLEARED


def _is_negative(exponent):
    return bool(exponent & EXP_SIGN)


def _signed_at_least(exponent, bound):
    return not _is_negative(exponent) and at_least(exponent, bound, width=EXP_WIDTH)


class MultiplyEngine:
    """
    E4M3 multiplier, one stage per tick:
    UNPACK -> MULTIPLY -> NORMALIZE -> PACK -> IDLE

    Denormal operands take part at exponent 1 (their real scale), and the
    product is shifted into the denormal position when the exponent drops
    below 1, so gradual underflow rounds like any other result.
    """

    LATENCY = 4

    def __init__(self):
        self.state = MultiplyState()
        self._request = None
        self._result = CLEARED
        self._done = False

    @property
    def stage(self):
        return self.state.stage

    @property
    def idle(self):
        return self.state.stage is MultiplyStage.IDLE and self._request is None

    @property
    def done(self):
        return self._done

    @property
    def result(self):
        return self._result

    def reset(self):
        self.state = MultiplyState()
        self._request = None
        self._result = CLEARED
        self._done = False

    def start(self, input_a, input_b):
        """Arm the start trigger; sampled by the next tick."""
        if not self.idle:
            raise EngineBusyError(
                f"Multiply engine busy in stage {self.state.stage.name}"
            )
        decode(input_a)
        decode(input_b)
        self._request = (input_a, input_b)

    def tick(self):
        """Advance one stage. Returns the ResultRecord on the completing tick."""
        self._done = False
        self._result = CLEARED

        state = self.state
        if state.stage is MultiplyStage.IDLE:
            if self._request is not None:
                input_a, input_b = self._request
                self._request = None
                self.state = MultiplyState(
                    stage=MultiplyStage.UNPACK, input_a=input_a, input_b=input_b
                )
                logger.debug("mul start a=0x%02x b=0x%02x", input_a, input_b)
            return None

        stage = state.stage
        self._STAGES[stage](state)
        state.stage = _NEXT_STAGE[stage]
        logger.debug("mul %s -> %s", stage.name, state.stage.name)

        if stage is MultiplyStage.PACK:
            self._done = True
            self._result = state.result
            return state.result
        return None

    def run(self, input_a, input_b):
        """Start an operation and tick until it completes."""
        self.start(input_a, input_b)
        record = None
        while record is None:
            record = self.tick()
        return record

    # ---- Stages ----

    @staticmethod
    def _unpack(s):
        s.op_a = decode(s.input_a)
        s.op_b = decode(s.input_b)
        s.z_sign = s.op_a.sign ^ s.op_b.sign
        s.sig_a = (s.op_a.hidden << E4M3Format.MAN_BITS) | s.op_a.mantissa
        s.sig_b = (s.op_b.hidden << E4M3Format.MAN_BITS) | s.op_b.mantissa

    @staticmethod
    def _multiply(s):
        if s.op_a.is_zero or s.op_b.is_zero:
            s.zero = True
            s.product = 0
            s.z_exp = 0
            return

        exp_sum, _ = add(
            s.op_a.effective_exponent, s.op_b.effective_exponent, width=EXP_WIDTH
        )
        # Subtract the bias by adding its two's complement
        s.z_exp, _ = add(
            exp_sum,
            negate(E4M3Format.EXP_BIAS, width=EXP_WIDTH),
            carry_in=1,
            width=EXP_WIDTH,
        )
        s.product = multiply_4x4(s.sig_a, s.sig_b)

    @staticmethod
    def _normalize(s):
        if s.zero:
            return

        product = s.product
        if (product >> PRODUCT_TOP) & 1:
            product, lost = barrel_shift_right_8(product, 1)
            s.sticky |= lost
            s.z_exp = increment(s.z_exp, width=EXP_WIDTH)
        elif not (product >> HIDDEN_BIT) & 1:
            # Only denormal operands get here; bring the leading 1 up to
            # bit 6 while the exponent allows it
            wanted = decrement(leading_zero_count_8(product), width=EXP_WIDTH)
            if _signed_at_least(s.z_exp, 2):
                room = decrement(s.z_exp, width=EXP_WIDTH)
                if at_least(room, wanted, width=EXP_WIDTH):
                    product = barrel_shift_left_8(product, wanted)
                    s.z_exp, _ = subtract(s.z_exp, wanted, width=EXP_WIDTH)
                else:
                    product = barrel_shift_left_8(product, room)
                    s.z_exp = 1
                    s.underflow = True
            else:
                s.underflow = True

        if not _signed_at_least(s.z_exp, 1):
            # Shift into the denormal position at exponent 1
            amount, _ = subtract(1, s.z_exp, width=EXP_WIDTH)
            if amount & ~0b111:
                amount = 8
            product, lost = barrel_shift_right_8(product, amount)
            s.sticky |= lost
            s.z_exp = 1
            s.underflow = True

        if _signed_at_least(s.z_exp, E4M3Format.OVERFLOW_EXP):
            s.overflow = True

        s.product = product

    @staticmethod
    def _pack(s):
        if s.zero:
            s.result = ResultRecord(code=encode(s.z_sign, 0, 0), zero=True)
            return

        if s.overflow:
            s.result = ResultRecord(
                code=saturate(s.z_sign), overflow=True, inexact=True
            )
            return

        product = s.product
        # Exponent field 0 when the hidden position did not fill
        exponent = s.z_exp if (product >> HIDDEN_BIT) & 1 else 0
        guard = (product >> GUARD_BIT) & 1
        round_bit = (product >> ROUND_BIT) & 1
        sticky = (product & 1) | s.sticky

        mantissa, carry = round_nearest_even(
            (product >> MAN_LSB) & E4M3Format.MAN_MASK, guard, round_bit, sticky
        )
        if carry:
            exponent = increment(exponent, width=EXP_WIDTH)
            if at_least(exponent, E4M3Format.OVERFLOW_EXP, width=EXP_WIDTH):
                s.result = ResultRecord(
                    code=saturate(s.z_sign),
                    overflow=True,
                    underflow=s.underflow,
                    inexact=True,
                )
                return

        flushed = exponent == 0 and mantissa == 0
        s.result = ResultRecord(
            code=encode(s.z_sign, exponent, mantissa),
            zero=flushed,
            underflow=s.underflow,
            inexact=bool(guard or round_bit or sticky),
        )

    _STAGES = {
        MultiplyStage.UNPACK: _unpack.__func__,
        MultiplyStage.MULTIPLY: _multiply.__func__,
        MultiplyStage.NORMALIZE: _normalize.__func__,
        MultiplyStage.PACK: _pack.__func__,
    }


@block
def fp8_e4m3_multiply(
    input_a,
    input_b,
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
    E4M3 floating-point multiplier (4-stage state machine)
    Parameters:
    - input_a, input_b: Input E4M3 operands (8-bit each)
    - output_z: Output E4M3 product (8-bit)
    - zero, overflow, underflow, inexact: Result flags, valid with done
    - start: Control signal to start computation (active high)
    - done: Signal indicating computation is complete (active high)
    - clk, rst: Clock and asynchronous reset
    """
    return clocked_engine(
        MultiplyEngine(),
        input_a,
        input_b,
        None,
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
