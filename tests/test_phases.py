from flatnlp.canonicalize import canonicalize
from flatnlp.diagram import Diagram
from flatnlp.discovery import discover
from flatnlp.phases import propagate_phases
from flatnlp.variables import MAJOR_PHASES, Phase

ALL_MAJOR = frozenset(MAJOR_PHASES)


def _run(diagram, minor=False):
    result = discover(diagram)
    canonicalize(result.step_vars)
    live = propagate_phases(result.blocks, result.step_vars, minor=minor)
    return result, live


def _live_of(result, live, block, port=1):
    var = result.step_vars[result.step_vars.first_index(block.outport(port))]
    return live[var.opt_var_idx]


def _accumulator():
    """x[k+1] = x[k] + u[k] with a bound on x."""
    diagram = Diagram("acc")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    delay = diagram.add_block("x", "UnitDelay")
    total = diagram.add_block("sum", "Sum")
    bound = diagram.add_block("bound", reference="Bound", lb=-1.0, ub=1.0)
    diagram.connect(delay, total, 1, 1)
    diagram.connect(u, total, 1, 2)
    diagram.connect(total, delay)
    diagram.connect(delay, bound)
    return diagram, u, delay, total


def test_sink_flags_seed_phases():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    gain = diagram.add_block("g", "Gain", Gain=2.0)
    bound = diagram.add_block(
        "bound", reference="Bound", initial_step="off", intermediate_step="off"
    )
    diagram.connect(u, gain)
    diagram.connect(gain, bound)

    result, live = _run(diagram)
    assert _live_of(result, live, gain) == frozenset({Phase.FINAL})
    assert _live_of(result, live, u) == frozenset({Phase.FINAL})


def test_phases_stored_on_step_vars():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    cost = diagram.add_block("cost", reference="DiscreteCost")
    diagram.connect(u, cost)

    result, live = _run(diagram)
    assert live == [ALL_MAJOR]
    assert result.step_vars[0].phases == set(MAJOR_PHASES)


def test_unreached_sink_phases_leave_variables_dead():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    bound = diagram.add_block(
        "bound",
        reference="Bound",
        initial_step="off",
        intermediate_step="off",
        final_step="off",
    )
    diagram.connect(u, bound)

    result, live = _run(diagram)
    assert live == [frozenset()]


def test_delay_needs_input_one_step_earlier():
    diagram, u, delay, total = _accumulator()
    result, live = _run(diagram)

    assert _live_of(result, live, delay) == ALL_MAJOR
    # the delay's input feeds steps 2..H, so it is never needed at the final step
    assert _live_of(result, live, total) == frozenset({Phase.INITIAL, Phase.INTERMEDIATE})
    assert _live_of(result, live, u) == frozenset({Phase.INITIAL, Phase.INTERMEDIATE})


def test_delay_output_only_live_initially_needs_no_input():
    diagram, u, delay, total = _accumulator()
    bound = diagram.find_blocks(reference="Bound")[0]
    bound.params["intermediate_step"] = "off"
    bound.params["final_step"] = "off"

    result, live = _run(diagram)
    assert _live_of(result, live, delay) == frozenset({Phase.INITIAL})
    assert _live_of(result, live, total) == frozenset()
    assert _live_of(result, live, u) == frozenset()


def _integrator():
    diagram = Diagram("int")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    gain = diagram.add_block("g", "Gain", Gain=-1.0)
    integrator = diagram.add_block("x", "Integrator")
    bound = diagram.add_block("bound", reference="Bound", final_step="off")
    diagram.connect(u, gain)
    diagram.connect(gain, integrator)
    diagram.connect(integrator, bound)
    return diagram, u, gain, integrator


def test_integrator_seeds_minor_phase():
    diagram, u, gain, integrator = _integrator()
    result, live = _run(diagram, minor=True)

    # forced onto the whole major grid even though the final step is not bounded
    assert _live_of(result, live, integrator) == ALL_MAJOR
    assert _live_of(result, live, gain) == frozenset({Phase.MINOR})
    # inputs reached in the minor phase are anchored on the major grid for holds
    assert _live_of(result, live, u) == ALL_MAJOR | {Phase.MINOR}


def test_integrator_without_minor_phase():
    diagram, u, gain, integrator = _integrator()
    result, live = _run(diagram, minor=False)
    assert _live_of(result, live, integrator) == ALL_MAJOR
    assert _live_of(result, live, gain) == frozenset()
    assert _live_of(result, live, u) == frozenset()


def test_delay_inside_integrated_loop_is_held_on_major_grid():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    delay = diagram.add_block("d", "UnitDelay")
    total = diagram.add_block("sum", "Sum")
    integrator = diagram.add_block("x", "Integrator")
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(u, delay)
    diagram.connect(delay, total, 1, 1)
    diagram.connect(u, total, 1, 2)
    diagram.connect(total, integrator)
    diagram.connect(integrator, bound)

    result, live = _run(diagram, minor=True)
    assert Phase.MINOR in _live_of(result, live, delay)
    assert ALL_MAJOR <= _live_of(result, live, delay)
    assert _live_of(result, live, u) == ALL_MAJOR | {Phase.MINOR}
