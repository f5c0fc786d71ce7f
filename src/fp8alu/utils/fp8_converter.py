import math
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Union

from fp8alu.utils.fp_defs import E4M3Format

MIN_NORMAL = Fraction(1, 2 ** (E4M3Format.EXP_BIAS - 1))  # 2^-6
DENORMAL_STEP = MIN_NORMAL / (1 << E4M3Format.MAN_BITS)  # 2^-9
MAX_FINITE = Fraction(15, 8) * 2 ** (E4M3Format.MAX_EXP - E4M3Format.EXP_BIAS)  # 240


def fp8_to_fraction(code: int) -> Fraction:
    """Exact value of an E4M3 code (exponent 15 included, no NaN/Inf)."""
    if not (0 <= code <= E4M3Format.CODE_MASK):
        raise ValueError(f"E4M3 raw value must be between 0 and 255, got {code}")

    sign = (code >> E4M3Format.SIGN_BIT) & 1
    exp = (code >> E4M3Format.MAN_BITS) & E4M3Format.EXP_MASK
    frac = code & E4M3Format.MAN_MASK

    if exp == 0:
        magnitude = frac * DENORMAL_STEP
    else:
        magnitude = Fraction(8 + frac, 8) * Fraction(2) ** (exp - E4M3Format.EXP_BIAS)
    return -magnitude if sign else magnitude


def quantize(magnitude: Fraction, sign: bool = False) -> int:
    """
    Round a non-negative exact magnitude to E4M3, ties to even.

    Results whose exponent field would reach 15 saturate to the largest
    finite value, matching the overflow policy of the arithmetic engines.
    """
    sign_bits = int(bool(sign)) << E4M3Format.SIGN_BIT
    if magnitude < 0:
        raise ValueError(f"quantize expects a magnitude, got {magnitude}")
    if magnitude == 0:
        return sign_bits

    if magnitude < MIN_NORMAL:
        # Denormal grid; rounding up to 8 steps lands on the smallest normal
        return sign_bits | round(magnitude / DENORMAL_STEP)

    exp = 1 - E4M3Format.EXP_BIAS
    while magnitude >= Fraction(2) ** (exp + 1):
        exp += 1

    significand = round(magnitude / Fraction(2) ** (exp - E4M3Format.MAN_BITS))
    if significand == 16:
        significand = 8
        exp += 1

    biased_exp = exp + E4M3Format.EXP_BIAS
    if biased_exp > E4M3Format.MAX_EXP:
        return sign_bits | E4M3Format.MAX_POS
    return sign_bits | (biased_exp << E4M3Format.MAN_BITS) | (significand - 8)


@dataclass
class E4M3Value:
    """
    An 8-bit E4M3 value.

    This format has:
    - 1 sign bit
    - 4 exponent bits (biased by 7)
    - 3 mantissa bits

    There are no NaN/Infinity encodings. Codes with exponent field 15 decode
    as ordinary values (256.0 to 480.0), but conversions from floats saturate
    at the largest finite result, 0x77 = 240.0.

    Accepted inputs:
    - Integer: Interpreted as the raw 8-bit value (0-255)
    - Float: Rounded to the nearest E4M3 value, ties to even
    - String: Parsed as binary ("0b1010"), hex ("0x3A"), or decimal ("1.5")
    """

    _value: int = field(init=False)
    value: Union[int, float, str]

    def __post_init__(self):
        if isinstance(self.value, bool):
            raise TypeError("E4M3 value must be an integer, float, or string, got bool")
        if isinstance(self.value, int):
            if not (0 <= self.value <= E4M3Format.CODE_MASK):
                raise ValueError(
                    f"E4M3 raw value must be between 0 and 255, got {self.value}"
                )
            self._value = self.value
        elif isinstance(self.value, float):
            self._value = float_to_fp8(self.value)
        elif isinstance(self.value, str):
            self._value = self._parse_string(self.value)
        else:
            raise TypeError(
                f"E4M3 value must be an integer, float, or string, got {type(self.value)}"
            )

    @staticmethod
    def _parse_string(s: str) -> int:
        s = s.strip().lower()

        if s.startswith("0b") or s.startswith("0x"):
            base = 2 if s[1] == "b" else 16
            try:
                val = int(s[2:], base)
            except ValueError:
                raise ValueError(f"Invalid E4M3 value format: {s}")
            if base == 2 and len(s[2:]) > E4M3Format.WIDTH:
                raise ValueError(
                    f"Binary E4M3 value must be at most 8 bits, got {len(s[2:])} bits"
                )
            if not (0 <= val <= E4M3Format.CODE_MASK):
                raise ValueError(f"E4M3 raw value must be between 0 and 255, got {s}")
            return val

        try:
            return float_to_fp8(float(s))
        except ValueError:
            raise ValueError(f"Invalid E4M3 value format: {s}")

    @property
    def raw_value(self) -> int:
        return self._value

    def to_fraction(self) -> Fraction:
        return fp8_to_fraction(self._value)

    def to_float(self) -> float:
        value = float(self.to_fraction())
        if value == 0 and self._value >> E4M3Format.SIGN_BIT:
            return -0.0
        return value

    def to_binary(self) -> str:
        return f"0b{self._value:08b}"

    def to_hex(self) -> str:
        return f"0x{self._value:02x}"

    def to_fields(self) -> str:
        """Bits grouped as sign_exponent_mantissa, e.g. 0_0111_000."""
        bits = f"{self._value:08b}"
        return f"{bits[0]}_{bits[1:5]}_{bits[5:]}"

    def __str__(self) -> str:
        return f"E4M3({self.to_hex()}, {self.to_float()})"

    def __repr__(self) -> str:
        return self.__str__()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, E4M3Value):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


def float_to_fp8(f: float) -> int:
    """Convert a Python float to an E4M3 code (round to nearest even)."""
    if math.isnan(f):
        raise ValueError("E4M3 has no NaN encoding")
    sign = math.copysign(1.0, f) < 0
    if math.isinf(f):
        return quantize(MAX_FINITE, sign)
    return quantize(abs(Fraction(f)), sign)


def fp8_to_float(code: int) -> float:
    return E4M3Value(code).to_float()


def describe(code: int) -> str:
    """Field-by-field explanation of an E4M3 code."""
    value = E4M3Value(code)
    sign = code >> E4M3Format.SIGN_BIT
    exp = (code >> E4M3Format.MAN_BITS) & E4M3Format.EXP_MASK
    frac = code & E4M3Format.MAN_MASK
    sign_text = "negative" if sign else "positive"

    if exp == 0:
        exp_text = f"{exp:04b} = 0 (denormalized form, actual exponent is -6)"
        formula = f"(-1)^{sign} x (0 + {frac}/8) x 2^(-6)"
    else:
        exp_text = f"{exp:04b} = {exp} (unbiased: {exp - E4M3Format.EXP_BIAS})"
        formula = f"(-1)^{sign} x (1 + {frac}/8) x 2^({exp - E4M3Format.EXP_BIAS})"

    return (
        f"Binary representation: {value.to_fields()}\n"
        f"- Sign bit (S): {sign} ({sign_text})\n"
        f"- Exponent bits (E): {exp_text}\n"
        f"- Mantissa bits (M): {frac:03b}\n"
        f"v = {formula} = {value.to_float()}"
    )
