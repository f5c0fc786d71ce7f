import logging

from myhdl import *

logger = logging.getLogger(__name__)


@block
def clocked_engine(
    engine,
    input_a,
    input_b,
    mode,
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
    Drive a staged engine model from a clock and an asynchronous reset.

    Each rising clock edge is one engine tick. A start pulse sampled while
    the engine is idle latches input_a/input_b (and the mode bit, when the
    engine takes one); a start pulse on a busy engine is ignored, as the
    hardware would. Reset is level-sensitive: while it is asserted the engine
    sits in IDLE and every output reads zero.

    Parameters:
    - engine: AddSubEngine or MultiplyEngine instance, owned by this block
    - mode: Mode bit passed to engine.start, or None for engines without one
    - output_z, zero, overflow, underflow, inexact: Result bus, valid with done
    - start, done: Handshake (active high)
    - clk, rst: Clock and ResetSignal
    """
    t_State = enum(*[stage.name for stage in type(engine.stage)])
    state = Signal(t_State.IDLE)

    rst_edge = rst.posedge if rst.active else rst.negedge

    @always(clk.posedge, rst_edge)
    def state_machine():
        if rst == rst.active:
            engine.reset()
        else:
            if start:
                if not engine.idle:
                    logger.warning(
                        "start ignored: %s busy in %s",
                        type(engine).__name__,
                        engine.stage.name,
                    )
                elif mode is None:
                    engine.start(int(input_a), int(input_b))
                else:
                    engine.start(int(input_a), int(input_b), bool(mode))
            engine.tick()

        record = engine.result
        state.next = getattr(t_State, engine.stage.name)
        output_z.next = record.code
        zero.next = record.zero
        overflow.next = record.overflow
        underflow.next = record.underflow
        inexact.next = record.inexact
        done.next = engine.done

    return instances()
