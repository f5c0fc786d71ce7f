"""
Gate-level arithmetic primitives shared by the E4M3 engines.

Every engine stage does its arithmetic through these functions only. Sums are
formed by chaining 1-bit full adders, subtraction is addition of the bitwise
complement with a carry-in of 1, and shifts are built from fixed-distance
stages so the bits that fall off can be collected into a sticky bit.
"""

# Carry-chain widths the engines are built from
ADDER_WIDTHS = (4, 5, 6, 8, 9)

_MASKS = {1: 0x1, 2: 0x3, 4: 0xF, 5: 0x1F, 6: 0x3F, 8: 0xFF, 9: 0x1FF}

# (select bit of the amount, distance) for each barrel shifter stage
_RIGHT_STAGES = ((0, 1), (1, 2), (2, 4), (3, 8))
_LEFT_STAGES = ((0, 1), (1, 2), (2, 4))


def _check_width(width):
    if width not in ADDER_WIDTHS:
        raise ValueError(
            f"Adder width must be one of {ADDER_WIDTHS}, got {width}"
        )


def full_adder(a, b, carry_in):
    """1-bit full adder, returns (sum, carry_out)."""
    partial = a ^ b
    return partial ^ carry_in, (a & b) | (partial & carry_in)


def add(a, b, carry_in=0, width=8):
    """
    Ripple-carry addition of two `width`-bit values.

    Returns (sum, carry_out) where sum is truncated to `width` bits.
    """
    _check_width(width)
    total = 0
    carry = carry_in & 1
    for bit in range(width):
        s, carry = full_adder((a >> bit) & 1, (b >> bit) & 1, carry)
        total |= s << bit
    return total, carry


def negate(x, width=8):
    """Bitwise complement of x within `width` bits."""
    _check_width(width)
    return ~x & _MASKS[width]


def subtract(a, b, width=8):
    """
    Two's-complement subtraction a - b.

    Returns (difference, borrow). There is no borrow exactly when a >= b,
    treating both as unsigned `width`-bit values.
    """
    difference, carry = add(a, negate(b, width), carry_in=1, width=width)
    return difference, not carry


def increment(x, width=8):
    return add(x, 0, carry_in=1, width=width)[0]


def decrement(x, width=8):
    # Adding all ones is adding -1
    _check_width(width)
    return add(x, _MASKS[width], carry_in=0, width=width)[0]


def at_least(a, b, width=8):
    """Unsigned a >= b, decided by the borrow of the subtractor."""
    return not subtract(a, b, width)[1]


def barrel_shift_right_8(value, amount):
    """
    Logarithmic right shifter with sticky collection.

    Args:
        value: 8-bit operand
        amount: shift distance, 0..8 (anything with bit 3 set flushes
            the whole operand)

    Returns:
        (shifted, sticky) where sticky is the OR of every bit discarded
        by any stage.
    """
    shifted = value & _MASKS[8]
    sticky = 0
    for select, distance in _RIGHT_STAGES:
        if (amount >> select) & 1:
            sticky |= int((shifted & _MASKS[distance]) != 0)
            shifted >>= distance
    return shifted, sticky


def barrel_shift_left_8(value, amount):
    """Logarithmic left shifter, amount 0..7; bits past bit 7 are dropped."""
    shifted = value & _MASKS[8]
    for select, distance in _LEFT_STAGES:
        if (amount >> select) & 1:
            shifted = (shifted << distance) & _MASKS[8]
    return shifted


def leading_zero_count_8(value):
    """Priority search for the first set bit from the MSB; 8 when value is 0."""
    for count, bit in enumerate(range(7, -1, -1)):
        if (value >> bit) & 1:
            return count
    return 8


def multiply_4x4(a, b):
    """Shift-and-add multiply of two 4-bit values into an 8-bit product."""
    partials = [(a << i) if (b >> i) & 1 else 0 for i in range(4)]
    low, _ = add(partials[0], partials[1], width=8)
    high, _ = add(partials[2], partials[3], width=8)
    product, _ = add(low, high, width=8)
    return product
