from dataclasses import dataclass
from enum import Enum

from fp8alu.utils.fp_defs import E4M3Format


class EngineBusyError(RuntimeError):
    """Raised when an engine is started while an operation is in flight."""


class FpClass(Enum):
    ZERO = "zero"
    DENORMAL = "denormal"
    NORMAL = "normal"


@dataclass(frozen=True)
class DecodedOperand:
    """
    Unpacked fields of an E4M3 code.

    Fields:
    - sign: True for negative values
    - exponent: biased exponent field (0-15)
    - mantissa: stored mantissa field (0-7)
    - fp_class: ZERO, DENORMAL or NORMAL
    """

    sign: bool
    exponent: int
    mantissa: int
    fp_class: FpClass

    @property
    def hidden(self) -> int:
        """Implicit leading bit, made explicit for arithmetic."""
        return 1 if self.fp_class is FpClass.NORMAL else 0

    @property
    def effective_exponent(self) -> int:
        """Denormals (and zero) sit at the same scale as exponent 1."""
        return self.exponent if self.exponent else 1

    @property
    def is_zero(self) -> bool:
        return self.fp_class is FpClass.ZERO


@dataclass(frozen=True)
class ResultRecord:
    """Result code and status flags of one completed operation."""

    code: int = E4M3Format.ZERO
    zero: bool = False
    overflow: bool = False
    underflow: bool = False
    inexact: bool = False

    @property
    def flags(self) -> int:
        """Flags packed as {inexact, underflow, overflow, zero}, zero in bit 0."""
        return (
            int(self.zero)
            | int(self.overflow) << 1
            | int(self.underflow) << 2
            | int(self.inexact) << 3
        )


CLEARED = ResultRecord()


def decode(code: int) -> DecodedOperand:
    """Split an 8-bit E4M3 code into sign, exponent, mantissa and class."""
    if not (0 <= code <= E4M3Format.CODE_MASK):
        raise ValueError(f"E4M3 code must be between 0 and 255, got {code}")

    sign = bool((code >> E4M3Format.SIGN_BIT) & 1)
    exponent = (code >> E4M3Format.MAN_BITS) & E4M3Format.EXP_MASK
    mantissa = code & E4M3Format.MAN_MASK

    if exponent == 0:
        fp_class = FpClass.DENORMAL if mantissa else FpClass.ZERO
    else:
        fp_class = FpClass.NORMAL
    return DecodedOperand(sign, exponent, mantissa, fp_class)


def encode(sign, exponent, mantissa) -> int:
    return (
        (int(bool(sign)) << E4M3Format.SIGN_BIT)
        | ((exponent & E4M3Format.EXP_MASK) << E4M3Format.MAN_BITS)
        | (mantissa & E4M3Format.MAN_MASK)
    )


def encode_operand(operand: DecodedOperand) -> int:
    return encode(operand.sign, operand.exponent, operand.mantissa)


def saturate(sign) -> int:
    """Largest finite magnitude with the given sign."""
    return encode(sign, E4M3Format.MAX_EXP, E4M3Format.MAX_MAN)
