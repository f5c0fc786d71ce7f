class E4M3Format:
    WIDTH = 8
    EXP_BITS = 4
    MAN_BITS = 3
    EXP_BIAS = 7

    # No NaN/Infinity encodings: exponent 15 decodes as an ordinary Normal,
    # but results never leave the finite range ending at exponent 14.
    MAX_EXP = 14
    OVERFLOW_EXP = MAX_EXP + 1
    MAX_MAN = (1 << MAN_BITS) - 1
    MAX_POS = 0x77  # 0_1110_111 = 240.0
    MAX_NEG = 0xF7
    ZERO = 0x00

    SIGN_BIT = WIDTH - 1
    EXP_MASK = (1 << EXP_BITS) - 1
    MAN_MASK = (1 << MAN_BITS) - 1
    CODE_MASK = (1 << WIDTH) - 1


class AluOp:
    """Operation selector codes on the dispatcher request bus."""

    ADD = 0
    SUB = 1
    MUL = 2
    RESERVED = 3

    WIDTH = 2
    NAMES = {ADD: "ADD", SUB: "SUB", MUL: "MUL", RESERVED: "RESERVED"}
