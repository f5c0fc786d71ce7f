from fp8alu.hdl.components.bit_primitives import add
from fp8alu.utils.fp_defs import E4M3Format


def round_nearest_even(mantissa, guard, round_bit, sticky):
    """
    Round a 3-bit mantissa to nearest, ties to even.

    - If guard=0: round down (truncate)
    - If guard=1 and (round=1 or sticky=1 or LSB=1): round up
    - If guard=1 and round=0 and sticky=0 and LSB=0: round down (to even)

    Returns (mantissa, carry) where carry reports that the increment ran
    out of the 3-bit field; the caller bumps the exponent.
    """
    lsb = mantissa & 1
    if not (guard and (round_bit or sticky or lsb)):
        return mantissa, 0

    # Zero-extended to 4 bits so the carry lands in bit 3
    incremented, _ = add(mantissa, 0, carry_in=1, width=4)
    return incremented & E4M3Format.MAN_MASK, (incremented >> E4M3Format.MAN_BITS) & 1
