import unittest
from myhdl import *
import numpy as np
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), "../../"))
sys.path.append(os.path.join(os.path.dirname(__file__), "../../src"))
from fp8alu.hdl.components.fp8_codec import EngineBusyError
from fp8alu.hdl.components.fp8_e4m3_add import AddSubEngine, AddSubStage, fp8_e4m3_add
from fp8alu.utils.fp_defs import E4M3Format
from tests.utils.hdl_test_utils import apply_reset, pulse_start, sim_runner
from tests.utils.fp8_helpers import (
    ALL_CODES,
    describe_mismatches,
    reference_add,
    reference_table,
    sweep,
)


class TestAddSubEngineModel(unittest.TestCase):
    """Exhaustive and directed checks of the add/subtract engine model."""

    @classmethod
    def setUpClass(cls):
        engine = AddSubEngine()
        cls.add_codes, cls.add_flags = sweep(lambda a, b: engine.run(a, b))
        cls.sub_codes, cls.sub_flags = sweep(
            lambda a, b: engine.run(a, b, subtract=True)
        )

    def check(self, a, b, code, subtract=False, **flags):
        record = AddSubEngine().run(a, b, subtract)
        op = "-" if subtract else "+"
        self.assertEqual(
            record.code,
            code,
            f"0x{a:02x} {op} 0x{b:02x}: got 0x{record.code:02x}, expected 0x{code:02x}",
        )
        for name in ("zero", "overflow", "underflow", "inexact"):
            self.assertEqual(
                getattr(record, name), flags.get(name, False), f"{name} flag"
            )

    def test_add_matches_reference(self):
        expected_codes, expected_flags = reference_table("add")
        self.assertTrue(
            np.array_equal(self.add_codes, expected_codes),
            describe_mismatches(self.add_codes, expected_codes),
        )
        self.assertTrue(
            np.array_equal(self.add_flags, expected_flags),
            describe_mismatches(self.add_flags, expected_flags),
        )

    def test_sub_matches_reference(self):
        expected_codes, expected_flags = reference_table("sub")
        self.assertTrue(
            np.array_equal(self.sub_codes, expected_codes),
            describe_mismatches(self.sub_codes, expected_codes),
        )
        self.assertTrue(
            np.array_equal(self.sub_flags, expected_flags),
            describe_mismatches(self.sub_flags, expected_flags),
        )

    def test_add_commutes(self):
        self.assertTrue(np.array_equal(self.add_codes, self.add_codes.T))
        self.assertTrue(np.array_equal(self.add_flags, self.add_flags.T))

    def test_sub_is_add_of_negated_b(self):
        negated_b = ALL_CODES ^ (1 << E4M3Format.SIGN_BIT)
        self.assertTrue(np.array_equal(self.sub_codes, self.add_codes[:, negated_b]))
        self.assertTrue(np.array_equal(self.sub_flags, self.add_flags[:, negated_b]))

    def test_zero_is_identity(self):
        # x + 0 and 0 + x return x verbatim, whatever its exponent
        for x in range(1, 256):
            if x == 0x80:
                continue
            self.assertEqual(int(self.add_codes[x, 0x00]), x)
            self.assertEqual(int(self.add_codes[0x00, x]), x)
            self.assertEqual(int(self.add_codes[x, 0x80]), x)
            self.assertEqual(int(self.sub_codes[x, 0x00]), x)
            self.assertEqual(int(self.add_flags[x, 0x00]), 0)

    def test_signed_zero_operands(self):
        self.check(0x00, 0x00, 0x00, zero=True)
        self.check(0x80, 0x80, 0x80, zero=True)
        self.check(0x80, 0x00, 0x00, zero=True)
        self.check(0x80, 0x00, 0x80, subtract=True, zero=True)
        self.check(0x00, 0x00, 0x00, subtract=True, zero=True)
        self.check(0x00, 0x45, 0xC5, subtract=True)

    def test_cancellation_gives_positive_zero(self):
        self.check(0x45, 0x45, 0x00, subtract=True, zero=True)
        self.check(0xC5, 0x45, 0x00, zero=True)
        self.check(0x83, 0x03, 0x00, zero=True)

    def test_basic_values(self):
        # 1.0 + 1.0 = 2.0
        self.check(0x38, 0x38, 0x40)
        # 1.0 - 2.0 = -1.0
        self.check(0x38, 0x40, 0xB8, subtract=True)
        # 1.5 + 1.25 = 2.75
        self.check(0x3C, 0x3A, 0x43)
        # 2.0 + (-1.5) = 0.5
        self.check(0x40, 0xBC, 0x30)

    def test_denormal_sum(self):
        self.check(0x01, 0x01, 0x02)
        # 7 + 1 steps carries into the smallest normal
        self.check(0x07, 0x01, 0x08)

    def test_ties_round_to_even(self):
        # 8.0 + 0.5 is halfway between 8 and 9
        self.check(0x50, 0x30, 0x50, inexact=True)
        # 9.0 + 0.5 is halfway between 9 and 10
        self.check(0x51, 0x30, 0x52, inexact=True)
        # 8.0 + 0.5 + a little is above halfway
        self.check(0x50, 0x31, 0x51, inexact=True)

    def test_overflow_saturates(self):
        self.check(0x77, 0x77, 0x77, overflow=True, inexact=True)
        self.check(0xF7, 0xF7, 0xF7, overflow=True, inexact=True)
        self.check(0xF7, 0x77, 0xF7, subtract=True, overflow=True, inexact=True)
        # 240 + 8 rounds half-way up to 256
        self.check(0x77, 0x50, 0x77, overflow=True, inexact=True)

    def test_exponent_15_operands(self):
        # 256 - 16 = 240 is exact
        self.check(0x78, 0x58, 0x77, subtract=True)
        self.check(0x78, 0x08, 0x77, subtract=True, overflow=True, inexact=True)

    def test_underflow_when_normalization_is_cut_short(self):
        # 2^-6 - 2^-9 lands on the largest denormal exactly
        self.check(0x08, 0x01, 0x07, subtract=True, underflow=True)
        self.check(0x09, 0x08, 0x01, subtract=True, underflow=True)

    def test_large_exponent_difference_goes_to_sticky(self):
        # 240 + tiny: the small operand only reaches the sticky bit
        self.check(0x77, 0x01, 0x77, inexact=True)
        self.check(0x77, 0x01, 0x77, subtract=True, inexact=True)

    def test_reference_helper_agrees_on_directed_case(self):
        self.assertEqual(AddSubEngine().run(0x3C, 0x3A), reference_add(0x3C, 0x3A))


class TestAddSubEngineSequencing(unittest.TestCase):
    """Tick-level behaviour of the engine model."""

    def test_latency(self):
        engine = AddSubEngine()
        engine.start(0x38, 0x38)
        self.assertIsNone(engine.tick())
        self.assertIs(engine.stage, AddSubStage.UNPACK)
        ticks = 0
        record = None
        while record is None:
            record = engine.tick()
            ticks += 1
        self.assertEqual(ticks, AddSubEngine.LATENCY)
        self.assertTrue(engine.done)
        self.assertEqual(record.code, 0x40)

        # Result and done are cleared on the following tick
        self.assertIsNone(engine.tick())
        self.assertFalse(engine.done)
        self.assertEqual(engine.result.code, 0)
        self.assertTrue(engine.idle)

    def test_start_while_busy(self):
        engine = AddSubEngine()
        engine.start(0x38, 0x38)
        with self.assertRaises(EngineBusyError):
            engine.start(0x40, 0x40)
        engine.tick()
        engine.tick()
        with self.assertRaises(EngineBusyError):
            engine.start(0x40, 0x40)

    def test_reset_abandons_operation(self):
        engine = AddSubEngine()
        engine.start(0x38, 0x38)
        engine.tick()
        engine.tick()
        engine.reset()
        self.assertTrue(engine.idle)
        for _ in range(AddSubEngine.LATENCY + 1):
            self.assertIsNone(engine.tick())

    def test_back_to_back(self):
        engine = AddSubEngine()
        self.assertEqual(engine.run(0x38, 0x38).code, 0x40)
        # Restart on the tick after done
        self.assertEqual(engine.run(0x40, 0x38, subtract=True).code, 0x38)

    def test_invalid_code(self):
        with self.assertRaises(ValueError):
            AddSubEngine().start(0x100, 0x00)


class TestFP8E4M3Add(unittest.TestCase):
    """Clocked MyHDL adder/subtractor."""

    def setUp(self):
        """Setup common signals and parameters for all tests."""
        self.clk = Signal(bool(0))
        self.rst = ResetSignal(0, active=1, isasync=True)
        self.input_a = Signal(intbv(0)[E4M3Format.WIDTH :])
        self.input_b = Signal(intbv(0)[E4M3Format.WIDTH :])
        self.sub = Signal(bool(0))
        self.output_z = Signal(intbv(0)[E4M3Format.WIDTH :])
        self.zero = Signal(bool(0))
        self.overflow = Signal(bool(0))
        self.underflow = Signal(bool(0))
        self.inexact = Signal(bool(0))
        self.start = Signal(bool(0))
        self.done = Signal(bool(0))
        self.sim = None
        self.finished = False

    def tearDown(self):
        """Clean up after each test."""
        if self.sim is not None:
            self.sim.quit()

    def create_fp8_adder(self):
        """Helper to create adder instance with current signals."""
        return fp8_e4m3_add(
            self.input_a,
            self.input_b,
            self.sub,
            self.output_z,
            self.zero,
            self.overflow,
            self.underflow,
            self.inexact,
            self.start,
            self.done,
            self.clk,
            self.rst,
        )

    def outputs(self):
        return (
            int(self.output_z),
            bool(self.zero),
            bool(self.overflow),
            bool(self.underflow),
            bool(self.inexact),
        )

    def run_operation(self, a, b, subtract=False, max_cycles=12):
        """
        Drive one request and check it against the reference.

        Returns the number of rising edges from the start edge to done.
        """
        expected = reference_add(a, b, subtract)
        print(f"\n0x{a:02x} {'-' if subtract else '+'} 0x{b:02x}")

        self.input_a.next = a
        self.input_b.next = b
        self.sub.next = subtract
        yield from pulse_start(self.clk, self.start)

        cycles = 0
        while True:
            yield self.clk.posedge
            yield delay(1)
            cycles += 1
            if self.done or cycles >= max_cycles:
                break
        assert self.done, f"no done within {max_cycles} cycles"

        print(f"Result: 0x{int(self.output_z):02x} after {cycles} cycles")
        assert self.outputs() == (
            expected.code,
            expected.zero,
            expected.overflow,
            expected.underflow,
            expected.inexact,
        ), f"got {self.outputs()}, expected {expected}"
        self.latencies.append(cycles)

    def testLatencyAndResult(self):
        self.latencies = []

        @instance
        def test_sequence():
            yield from apply_reset(self.clk, self.rst)

            yield from self.run_operation(0x38, 0x38)
            # done and the result bus drop on the next edge
            yield self.clk.posedge
            yield delay(1)
            assert not self.done
            assert self.outputs() == (0, False, False, False, False)

            yield from self.run_operation(0x38, 0x40, subtract=True)
            yield from self.run_operation(0x77, 0x77)
            yield from self.run_operation(0x08, 0x01, subtract=True)
            yield from self.run_operation(0x50, 0x30)
            yield from self.run_operation(0x80, 0x80)
            self.finished = True

        self.sim = sim_runner(
            self.create_fp8_adder,
            lambda: test_sequence,
            clk=self.clk,
            period=10,
            dut_name="fp8_e4m3_add",
            duration=2000,
        )
        self.assertTrue(self.finished)
        self.assertEqual(self.latencies, [AddSubEngine.LATENCY] * 6)

    def testResetMidOperation(self):
        self.latencies = []

        @instance
        def test_sequence():
            yield from apply_reset(self.clk, self.rst)

            self.input_a.next = 0x38
            self.input_b.next = 0x38
            yield from pulse_start(self.clk, self.start)
            yield self.clk.posedge
            yield self.clk.posedge

            # Asynchronous reset takes effect without a clock edge
            yield delay(2)
            self.rst.next = 1
            yield delay(1)
            assert not self.done
            assert self.outputs() == (0, False, False, False, False)

            # The abandoned operation never reports
            for _ in range(AddSubEngine.LATENCY + 2):
                yield self.clk.posedge
                yield delay(1)
                assert not self.done
            self.rst.next = 0
            yield self.clk.posedge

            yield from self.run_operation(0x3C, 0x3A)
            self.finished = True

        self.sim = sim_runner(
            self.create_fp8_adder,
            lambda: test_sequence,
            clk=self.clk,
            period=10,
            dut_name="fp8_e4m3_add",
            duration=2000,
        )
        self.assertTrue(self.finished)
        self.assertEqual(self.latencies, [AddSubEngine.LATENCY])

    def testStartWhileBusyIsIgnored(self):
        @instance
        def test_sequence():
            yield from apply_reset(self.clk, self.rst)

            self.input_a.next = 0x38
            self.input_b.next = 0x38
            yield from pulse_start(self.clk, self.start)
            yield self.clk.posedge

            # Second request lands mid-operation
            self.input_a.next = 0x50
            self.input_b.next = 0x50
            yield from pulse_start(self.clk, self.start)

            dones = []
            for cycle in range(3, 17):
                yield self.clk.posedge
                yield delay(1)
                if self.done:
                    dones.append((cycle, int(self.output_z)))
            assert dones == [(AddSubEngine.LATENCY, 0x40)], dones
            self.finished = True

        self.sim = sim_runner(
            self.create_fp8_adder,
            lambda: test_sequence,
            clk=self.clk,
            period=10,
            dut_name="fp8_e4m3_add",
            duration=2000,
        )
        self.assertTrue(self.finished)


if __name__ == "__main__":
    unittest.main()
