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
    subtract,
)
from fp8alu.hdl.components.fp8_codec import (
    CLEARED,
    DecodedOperand,
    EngineBusyError,
    ResultRecord,
    decode,
    encode,
    encode_operand,
    saturate,
)
from fp8alu.hdl.components.fp8_engine_block import clocked_engine
from fp8alu.hdl.components.rounder import round_nearest_even
from fp8alu.utils.fp_defs import E4M3Format

logger = logging.getLogger(__name__)

# Working significand layout (8-bit register, 9th bit is the adder carry):
#   [8] carry | [7] hidden | [6:4] mantissa | [3] guard | [2] round | [1] sticky | [0] spare
CARRY_BIT = 8
HIDDEN_BIT = 7
MAN_LSB = 4
GUARD_BIT = 3
ROUND_BIT = 2
STICKY_BIT = 1
LOW_BITS_MASK = 0x0F
STICKY_REGION_MASK = 0x03


class AddSubStage(Enum):
    IDLE = 0
    UNPACK = 1
    ALIGN = 2
    COMPUTE = 3
    COMPUTE2 = 4
    NORMALIZE = 5
    PACK = 6


_NEXT_STAGE = {
    AddSubStage.UNPACK: AddSubStage.ALIGN,
    AddSubStage.ALIGN: AddSubStage.COMPUTE,
    AddSubStage.COMPUTE: AddSubStage.COMPUTE2,
    AddSubStage.COMPUTE2: AddSubStage.NORMALIZE,
    AddSubStage.NORMALIZE: AddSubStage.PACK,
    AddSubStage.PACK: AddSubStage.IDLE,
}


@dataclass
class AddSubState:
    """Stage register and working registers of one add/subtract operation."""

    stage: AddSubStage = AddSubStage.IDLE

    # Latched request
    input_a: int = 0
    input_b: int = 0
    subtract: bool = False

    # Unpacked operands; sign_b already carries the subtract mode
    op_a: Optional[DecodedOperand] = None
    op_b: Optional[DecodedOperand] = None
    sign_a: bool = False
    sign_b: bool = False
    effective_subtract: bool = False
    sig_a: int = 0
    sig_b: int = 0

    # Alignment
    shift_a: bool = False
    shift_amount: int = 0
    bypass: Optional[int] = None

    # Combined result
    z_sign: bool = False
    z_exp: int = 0
    z_sig: int = 0

    zero: bool = False
    overflow: bool = False
    underflow: bool = False
    inexact: bool = False

    result: ResultRecord = CLEARED


def _working_significand(operand):
    return (operand.hidden << HIDDEN_BIT) | (operand.mantissa << MAN_LSB)


def _shift_with_sticky(significand, amount):
    shifted, sticky = barrel_shift_right_8(significand, amount)
    return shifted | (sticky << STICKY_BIT)


class AddSubEngine:
    """
    E4M3 adder/subtractor, one stage per tick:
    UNPACK -> ALIGN -> COMPUTE -> COMPUTE2 -> NORMALIZE -> PACK -> IDLE

    The tick that samples the start trigger latches the operands; the six
    stages then run on the following six ticks and the result is published
    on the tick that executes PACK.
    """

    LATENCY = 6

    def __init__(self):
        self.state = AddSubState()
        self._request = None
        self._result = CLEARED
        self._done = False

    @property
    def stage(self):
        return self.state.stage

    @property
    def idle(self):
        return self.state.stage is AddSubStage.IDLE and self._request is None

    @property
    def done(self):
        return self._done

    @property
    def result(self):
        return self._result

    def reset(self):
        self.state = AddSubState()
        self._request = None
        self._result = CLEARED
        self._done = False

    def start(self, input_a, input_b, subtract=False):
        """Arm the start trigger; sampled by the next tick."""
        if not self.idle:
            raise EngineBusyError(
                f"Add/subtract engine busy in stage {self.state.stage.name}"
            )
        # Reject bad codes before they reach the pipeline
        decode(input_a)
        decode(input_b)
        self._request = (input_a, input_b, bool(subtract))

    def tick(self):
        """Advance one stage. Returns the ResultRecord on the completing tick."""
        self._done = False
        self._result = CLEARED

        state = self.state
        if state.stage is AddSubStage.IDLE:
            if self._request is not None:
                input_a, input_b, sub = self._request
                self._request = None
                self.state = AddSubState(
                    stage=AddSubStage.UNPACK,
                    input_a=input_a,
                    input_b=input_b,
                    subtract=sub,
                )
                logger.debug(
                    "add/sub start a=0x%02x b=0x%02x sub=%s", input_a, input_b, sub
                )
            return None

        stage = state.stage
        self._STAGES[stage](state)
        state.stage = _NEXT_STAGE[stage]
        logger.debug("add/sub %s -> %s", stage.name, state.stage.name)

        if stage is AddSubStage.PACK:
            self._done = True
            self._result = state.result
            return state.result
        return None

    def run(self, input_a, input_b, subtract=False):
        """Start an operation and tick until it completes."""
        self.start(input_a, input_b, subtract)
        record = None
        while record is None:
            record = self.tick()
        return record

    # ---- Stages ----

    @staticmethod
    def _unpack(s):
        s.op_a = decode(s.input_a)
        s.op_b = decode(s.input_b)

        s.sign_a = s.op_a.sign
        s.sign_b = s.op_b.sign ^ s.subtract
        s.effective_subtract = s.sign_a ^ s.sign_b

        # Guard/round/sticky start clear
        s.sig_a = _working_significand(s.op_a)
        s.sig_b = _working_significand(s.op_b)

    @staticmethod
    def _align(s):
        if s.op_a.is_zero or s.op_b.is_zero:
            if s.op_a.is_zero and s.op_b.is_zero:
                # -0 survives only when both inputs are -0
                s.bypass = encode(s.sign_a and s.sign_b, 0, 0)
            elif s.op_a.is_zero:
                s.bypass = encode(s.sign_b, s.op_b.exponent, s.op_b.mantissa)
            else:
                s.bypass = encode_operand(s.op_a)
            return

        exp_a = s.op_a.effective_exponent
        exp_b = s.op_b.effective_exponent
        diff, borrow = subtract(exp_a, exp_b, width=4)
        if borrow:
            diff, _ = subtract(exp_b, exp_a, width=4)
            s.shift_a = True
            s.z_exp = s.op_b.exponent
        else:
            s.shift_a = False
            # Raw field, so two denormals stay at exponent 0
            s.z_exp = s.op_a.exponent if s.op_a.exponent else s.op_b.exponent

        # Eight places flush the whole register into sticky
        s.shift_amount = 8 if diff & 0b1000 else diff

    @staticmethod
    def _compute(s):
        if s.bypass is not None:
            return
        if s.shift_a:
            s.sig_a = _shift_with_sticky(s.sig_a, s.shift_amount)
        else:
            s.sig_b = _shift_with_sticky(s.sig_b, s.shift_amount)

    @staticmethod
    def _compute2(s):
        if s.bypass is not None:
            return
        if not s.effective_subtract:
            total, carry = add(s.sig_a, s.sig_b, width=8)
            s.z_sig = (carry << CARRY_BIT) | total
            s.z_sign = s.sign_a
            return

        a_minus_b, a_borrow = subtract(s.sig_a, s.sig_b, width=8)
        b_minus_a, _ = subtract(s.sig_b, s.sig_a, width=8)
        if not a_borrow:
            s.z_sig = a_minus_b
            s.z_sign = s.sign_a
        else:
            s.z_sig = b_minus_a
            s.z_sign = s.sign_b

    @staticmethod
    def _normalize(s):
        if s.bypass is not None:
            return

        z = s.z_sig
        if z == 0:
            # Exact cancellation is always +0
            s.z_exp = 0
            s.z_sign = False
            s.zero = True
            return

        if (z >> CARRY_BIT) & 1:
            s.z_sig = (z >> 1) | (z & 1)
            s.z_exp = increment(s.z_exp, width=5)
        elif not (z >> HIDDEN_BIT) & 1:
            if s.z_exp:
                lz = leading_zero_count_8(z)
                remaining, borrow = subtract(s.z_exp, lz, width=5)
                if borrow or remaining == 0:
                    s.z_sig = barrel_shift_left_8(z, decrement(s.z_exp, width=5))
                    s.z_exp = 0
                    s.underflow = True
                else:
                    s.z_sig = barrel_shift_left_8(z, lz)
                    s.z_exp = remaining
        elif s.z_exp == 0:
            # Two denormals carried into the hidden bit
            s.z_exp = 1

        if at_least(s.z_exp, E4M3Format.OVERFLOW_EXP, width=5):
            s.overflow = True
        s.inexact = s.overflow or (s.z_sig & LOW_BITS_MASK) != 0

    @staticmethod
    def _pack(s):
        if s.bypass is not None:
            s.result = ResultRecord(code=s.bypass, zero=decode(s.bypass).is_zero)
            return

        if s.overflow:
            s.result = ResultRecord(
                code=saturate(s.z_sign),
                overflow=True,
                underflow=s.underflow,
                inexact=True,
            )
            return

        z = s.z_sig
        mantissa, carry = round_nearest_even(
            (z >> MAN_LSB) & E4M3Format.MAN_MASK,
            (z >> GUARD_BIT) & 1,
            (z >> ROUND_BIT) & 1,
            int((z & STICKY_REGION_MASK) != 0),
        )
        exponent = s.z_exp
        if carry:
            exponent = increment(exponent, width=5)
            if at_least(exponent, E4M3Format.OVERFLOW_EXP, width=5):
                s.result = ResultRecord(
                    code=saturate(s.z_sign),
                    overflow=True,
                    underflow=s.underflow,
                    inexact=True,
                )
                return

        s.result = ResultRecord(
            code=encode(s.z_sign, exponent, mantissa),
            zero=s.zero or (exponent == 0 and mantissa == 0),
            underflow=s.underflow,
            inexact=s.inexact,
        )

    _STAGES = {
        AddSubStage.UNPACK: _unpack.__func__,
        AddSubStage.ALIGN: _align.__func__,
        AddSubStage.COMPUTE: _compute.__func__,
        AddSubStage.COMPUTE2: _compute2.__func__,
        AddSubStage.NORMALIZE: _normalize.__func__,
        AddSubStage.PACK: _pack.__func__,
    }


@block
def fp8_e4m3_add(
    input_a,
    input_b,
    sub,
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
    E4M3 floating-point adder/subtractor (6-stage state machine)
    Parameters:
    - input_a, input_b: Input E4M3 operands (8-bit each)
    - sub: Mode bit, flips the effective sign of input_b (active high)
    - output_z: Output E4M3 sum/difference (8-bit)
    - zero, overflow, underflow, inexact: Result flags, valid with done
    - start: Control signal to start computation (active high)
    - done: Signal indicating computation is complete (active high)
    - clk, rst: Clock and asynchronous reset
    """
    return clocked_engine(
        AddSubEngine(),
        input_a,
        input_b,
        sub,
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
