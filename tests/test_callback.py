import threading

import pytest

from conftest import RecordingSubsolver, disc_problem

from minlp_esh.config import ESHConfig
from minlp_esh.dual.callback import LazyCallbackHandler
from minlp_esh.dual.events import (
    AbortSearch,
    AddLazyRow,
    NewBound,
    NewIncumbent,
    NoAction,
    NodeRelaxationSolved,
    UpdateCutoff,
)
from minlp_esh.dual.solver import DualSolver
from minlp_esh.dual.types import CutStrategy, HyperplaneSource, TerminationReason


def _handler(problem=None, **dual):
    problem = problem or disc_problem()
    cfg = ESHConfig()
    cfg.dual.cut_strategy = CutStrategy.ECP
    cfg.dual.use_lazy_constraints = True
    for k, v in dual.items():
        setattr(cfg.dual, k, v)
    solver = DualSolver(problem, RecordingSubsolver(lazy=True), cfg)
    solver.relaxation.initialize()
    h = LazyCallbackHandler(
        problem, solver.context, solver.relaxation, solver.generator, solver.checker, cfg
    )
    return h, solver


def test_new_bound_updates_dual_and_node_counts():
    h, solver = _handler()
    assert h(NewBound(-5.0, explored_nodes=10, open_nodes=3)) == [NoAction()]
    ctx = solver.context
    assert ctx.dual_bound == -5.0
    assert ctx.statistics.explored_nodes == 10
    assert ctx.statistics.open_nodes == 3
    h(NewBound(-6.0, explored_nodes=4, open_nodes=1))
    assert ctx.dual_bound == -5.0
    assert ctx.statistics.explored_nodes == 10


def test_bound_not_certified_with_integer_cuts():
    h, solver = _handler()
    solver.relaxation.add_integer_cut([0], [1])
    h(NewBound(-5.0))
    assert not solver.context.has_dual_bound


def test_feasible_incumbent_sets_cutoff():
    h, solver = _handler()
    commands = h(NewIncumbent([1.0, 1.0], -2.0))
    assert solver.context.primal_bound == -2.0
    assert commands == [UpdateCutoff(-2.0 + 1e-5)]
    # an equal incumbent does not move the cutoff again
    assert h(NewIncumbent([1.0, 1.0], -2.0)) == [NoAction()]


def test_no_cutoff_when_disabled():
    h, _ = _handler(use_cutoff=False)
    assert h(NewIncumbent([1.0, 1.0], -2.0)) == [NoAction()]


def test_infeasible_incumbent_gets_lazy_cut():
    h, solver = _handler()
    commands = h(NewIncumbent([10.0, 10.0], -20.0))
    assert len(commands) == 1
    row = commands[0]
    assert isinstance(row, AddLazyRow)
    assert row.coefficients == {0: 20.0, 1: 20.0}
    assert row.rhs == pytest.approx(204.0)
    assert not solver.context.has_primal_bound
    it = solver.context.current_iteration
    assert it.is_solved
    assert it.solution_points[0].point == [10.0, 10.0]
    lazy = solver.relaxation.lazy_hyperplanes
    assert len(lazy) == 1
    assert lazy[0].source is HyperplaneSource.LAZY_CONSTRAINT_CALLBACK
    # the next event opens a new iteration
    h(NewIncumbent([-10.0, 10.0], 0.0))
    assert solver.context.iteration_count == 2


def test_abort_when_gap_closes():
    h, solver = _handler()
    h(NewBound(-2.0))
    commands = h(NewIncumbent([1.0, 1.0], -2.0))
    assert isinstance(commands[-1], AbortSearch)
    assert commands[-1].reason is TerminationReason.ABSOLUTE_GAP
    assert h.abort_reason is TerminationReason.ABSOLUTE_GAP


def test_abort_on_user_check():
    h, solver = _handler()
    h.termination_checks.append(lambda ctx: ctx.statistics.explored_nodes > 100)
    assert h(NewBound(-50.0, explored_nodes=5)) == [NoAction()]
    assert h(NewBound(-50.0, explored_nodes=500)) == [AbortSearch(TerminationReason.USER_ABORT)]


def test_abort_on_requested_termination():
    h, solver = _handler()
    solver.request_termination()
    commands = h(NodeRelaxationSolved([10.0, 10.0]))
    assert commands == [AbortSearch(TerminationReason.USER_ABORT)]


def test_node_relaxation_respects_lazy_limit():
    h, _ = _handler()
    assert h(NodeRelaxationSolved([10.0, 10.0])) == [NoAction()]

    h, solver = _handler(max_lazy_constraints=1)
    commands = h(NodeRelaxationSolved([10.0, 10.0]))
    assert len(commands) == 1 and isinstance(commands[0], AddLazyRow)
    assert solver.relaxation.lazy_hyperplanes[0].source is HyperplaneSource.MIP_CALLBACK_RELAXED
    assert h(NodeRelaxationSolved([-10.0, 10.0])) == [NoAction()]
    assert solver.context.current_iteration.relaxed_lazy_hyperplanes_added == 1


def test_unknown_event_is_rejected():
    h, _ = _handler()
    with pytest.raises(TypeError):
        h(object())


def test_concurrent_bounds_stay_monotone():
    h, solver = _handler()
    bounds = [-100.0 + i for i in range(64)]
    errors = []

    def worker(chunk):
        try:
            for b in chunk:
                h(NewBound(b, explored_nodes=int(b + 100)))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(bounds[i::8],)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert solver.context.dual_bound == max(bounds)
    assert solver.context.statistics.explored_nodes == 63
    values = [d.objective_value for d in solver.context.dual_solutions]
    assert values == sorted(values)
