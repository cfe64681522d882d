import math

import pytest

from conftest import FuncProblem, RecordingSubsolver, binary, cont, disc_problem, requires_highs

from minlp_esh.config import ESHConfig
from minlp_esh.dual.events import AddLazyRow, NewIncumbent
from minlp_esh.dual.solver import DualSolver
from minlp_esh.dual.subsolver import UNBOUNDED_VARIABLE_BOUND
from minlp_esh.dual.types import (
    ControllerState,
    CutStrategy,
    DualSolutionSource,
    PrimalSolutionSource,
    SolutionStatus,
    SolveStatus,
    TerminationReason,
    VariableType,
)

R = math.sqrt(2.0)


def _cfg(**dual):
    cfg = ESHConfig()
    cfg.dual.cut_strategy = CutStrategy.ECP
    cfg.dual.unbounded_repair_bound = 1e4
    for k, v in dual.items():
        setattr(cfg.dual, k, v)
    return cfg


def _step(point, obj, bound=None, status=SolutionStatus.OPTIMAL):
    return (status, [(point, obj)], obj if bound is None else bound)


def test_polling_loop_closes_gap():
    script = [_step([10.0, 10.0], -20.0), _step([R, R], -2 * R)]
    sub = RecordingSubsolver(script=script)
    solver = DualSolver(disc_problem(), sub, _cfg())
    result = solver.run()

    assert result.status is SolveStatus.OPTIMAL
    assert result.termination is TerminationReason.ABSOLUTE_GAP
    assert result.iterations == 2
    assert result.primal_bound == pytest.approx(-2 * R)
    assert result.dual_bound == pytest.approx(-2 * R)
    assert result.primal_point == pytest.approx([R, R])
    assert result.statistics.mip_solves == 2
    assert solver.state is ControllerState.TERMINATED

    # the ECP cut from iteration 1 went in before iteration 2
    assert len(sub.rows) == 1
    assert sub.rows[0]["coefficients"] == {0: 20.0, 1: 20.0}
    assert sub.rows[0]["rhs"] == pytest.approx(204.0)
    it1, it2 = solver.context.iterations
    assert it1.is_solved and it2.is_solved
    assert it1.dual_bound == -20.0
    assert solver.context.dual_solutions[0].source is DualSolutionSource.MIP_SOLUTION_OPTIMAL
    assert solver.context.primal_solutions[0].source is PrimalSolutionSource.MIP_SOLUTION
    assert sub.solve_limits[0].time_limit > 0


def test_cutoff_row_added_after_incumbent():
    # feasible but not optimal first, then a point that closes the gap
    script = [_step([1.0, 1.0], -2.0, bound=-3.0, status=SolutionStatus.SOLUTION_LIMIT), _step([R, R], -2 * R)]
    sub = RecordingSubsolver(script=script)
    result = DualSolver(disc_problem(), sub, _cfg()).run()
    assert result.termination is TerminationReason.ABSOLUTE_GAP
    names = [r["name"] for r in sub.rows]
    assert names == ["CUTOFF_C"]
    assert sub.rows[0]["rhs"] == pytest.approx(-2.0 + 1e-5)


def test_error_status_stops_run():
    result = DualSolver(disc_problem(), RecordingSubsolver(), _cfg()).run()
    assert result.status is SolveStatus.ERROR
    assert result.termination is TerminationReason.ERROR
    assert result.iterations == 1


def test_infeasible_convex_relaxation():
    script = [(SolutionStatus.INFEASIBLE, [], math.nan)]
    result = DualSolver(disc_problem(), RecordingSubsolver(script=script), _cfg()).run()
    assert result.status is SolveStatus.INFEASIBLE
    assert result.termination is TerminationReason.INFEASIBLE
    assert result.primal_bound is None


def test_infeasible_after_incumbent_certifies_cutoff():
    script = [_step([1.0, 1.0], -2.0, bound=-3.0, status=SolutionStatus.SOLUTION_LIMIT), (SolutionStatus.INFEASIBLE, [], math.nan)]
    solver = DualSolver(disc_problem(), RecordingSubsolver(script=script), _cfg())
    result = solver.run()
    assert result.termination is TerminationReason.INFEASIBLE
    assert result.status is SolveStatus.OPTIMAL
    assert result.dual_bound == -2.0
    assert solver.context.dual_solutions[-1].source is DualSolutionSource.CUTOFF_INFEASIBLE


def test_nonconvex_infeasibility_is_repaired_then_gives_up():
    p = FuncProblem([cont(0, 0.0, 10.0)], {0: -1.0})
    p.add_linear({0: 1.0}, 2.0, ">=")
    p.add_nonlinear(lambda x: x[0] - 1.0, lambda x: {0: 1.0}, convex=False)
    script = [
        _step([10.0], -10.0),
        (SolutionStatus.INFEASIBLE, [], math.nan),
        (SolutionStatus.INFEASIBLE, [], math.nan),
    ]
    clone_script = [_step([10.0, 9.0], -5.5)]
    sub = RecordingSubsolver(script=script, clone_script=clone_script)
    solver = DualSolver(p, sub, _cfg())
    result = solver.run()

    stats = result.statistics
    assert stats.infeasibility_repairs_succeeded == 1
    assert stats.infeasibility_repairs_failed == 1
    assert sub.rows[1]["rhs"] == pytest.approx(14.5)
    assert solver.context.iterations[1].has_infeasibility_repair_been_performed
    assert result.termination is TerminationReason.INFEASIBLE
    assert result.iterations == 3
    # the first dual bound predates the nonconvex cut; nothing after it is certified
    assert result.dual_bound == -10.0


def test_integer_cut_for_nonconvex_binary_problem():
    p = FuncProblem([binary(0), cont(1, 0.0, 10.0)], {1: -1.0})
    p.add_nonlinear(lambda x: x[1] - 2.0 - 5.0 * x[0], lambda x: {0: -5.0, 1: 1.0}, convex=False)
    script = [_step([1.0, 1.0], -1.0, bound=-10.0, status=SolutionStatus.SOLUTION_LIMIT)]
    sub = RecordingSubsolver(script=script)
    solver = DualSolver(p, sub, _cfg(use_integer_cuts=True))
    result = solver.run()

    assert result.primal_bound == -1.0
    assert result.statistics.integer_cuts_added == 1
    row = next(r for r in sub.rows if r["name"] == "IC_0")
    assert row["coefficients"] == {0: 1.0}
    assert row["rhs"] == 0.0
    assert solver.relaxation.has_integer_cuts
    # bounds stop being certified once integer cuts are present
    assert not solver._dual_bound_certified()


def test_unbounded_relaxation_is_boxed():
    p = FuncProblem([cont(0, 0.0, math.inf)], {0: -1.0})
    script = [(SolutionStatus.UNBOUNDED, [], math.nan), _step([1e4], -1e4)]
    sub = RecordingSubsolver(script=script)
    solver = DualSolver(p, sub, _cfg())
    result = solver.run()

    assert sub.bounds_at_solve[1] == [(0.0, 1e4)]
    assert sub.bounds[0] == (0.0, UNBOUNDED_VARIABLE_BOUND)
    assert solver.context.iterations[0].has_unbounded_repair_been_performed
    assert result.statistics.unbounded_repairs == 1
    # the boxed bound is not a valid dual bound
    assert result.dual_bound is None
    assert result.primal_bound == -1e4
    assert result.termination is TerminationReason.CONSTRAINT_TOLERANCE
    assert result.status is SolveStatus.FEASIBLE


def test_unbounded_even_when_boxed():
    p = FuncProblem([cont(0, 0.0, math.inf)], {0: -1.0})
    script = [(SolutionStatus.UNBOUNDED, [], math.nan)] * 2
    result = DualSolver(p, RecordingSubsolver(script=script), _cfg()).run()
    assert result.termination is TerminationReason.UNBOUNDED
    assert result.status is SolveStatus.UNBOUNDED


def test_termination_check_and_iteration_limit():
    solver = DualSolver(disc_problem(), RecordingSubsolver(), _cfg())
    solver.register_termination_check(lambda ctx: True)
    result = solver.run()
    assert result.termination is TerminationReason.USER_ABORT
    assert result.iterations == 0
    assert result.status is SolveStatus.UNKNOWN

    cfg = _cfg()
    cfg.termination.iteration_limit = 1
    script = [_step([10.0, 10.0], -20.0)]
    result = DualSolver(disc_problem(), RecordingSubsolver(script=script), cfg).run()
    assert result.termination is TerminationReason.ITERATION_LIMIT
    assert result.iterations == 1


def test_no_cut_for_infeasible_point_stops():
    script = [_step([10.0, 10.0], -20.0)]
    result = DualSolver(disc_problem(), RecordingSubsolver(script=script), _cfg(max_hyperplanes_per_iteration=0)).run()
    assert result.termination is TerminationReason.NO_PROGRESS
    assert result.iterations == 1
    assert result.status is SolveStatus.UNKNOWN
    assert result.dual_bound == -20.0


def test_esh_uses_configured_interior_point_and_linesearch():
    cfg = _cfg(cut_strategy=CutStrategy.ESH)
    cfg.interior_point.initial_point = [0.0, 0.0]
    script = [_step([10.0, 10.0], -20.0), _step([R, R], -2 * R)]
    solver = DualSolver(disc_problem(), RecordingSubsolver(script=script), cfg)
    result = solver.run()
    assert result.termination is TerminationReason.ABSOLUTE_GAP
    # the boundary point of the root-search is a feasible incumbent
    assert result.primal_bound == pytest.approx(-2 * R, abs=1e-6)
    assert solver.context.primal_solutions[0].source is PrimalSolutionSource.ROOTSEARCH
    assert solver.context.interior_point == [0.0, 0.0]
    assert result.statistics.rootsearches >= 1


def test_lp_phase_switches_to_mip():
    p = FuncProblem([cont(0), cont(1, 0.0, 3.0)], {0: -1.0, 1: -1.0})
    p.variables[1].var_type = VariableType.INTEGER
    p.add_nonlinear(lambda x: x[0] ** 2 + x[1] ** 2 - 4.0, lambda x: {0: 2 * x[0], 1: 2 * x[1]})
    script = [
        _step([10.0, 2.5], -12.5),
        _step([10.0, 2.0], -12.0),
        _step([R, 1.0], -R - 1.0),
    ]
    cfg = _cfg(lp_iteration_limit=1)
    sub = RecordingSubsolver(script=script)
    solver = DualSolver(p, sub, cfg)
    solver.run()
    its = solver.context.iterations
    assert not its[0].is_mip
    assert its[1].is_mip
    assert sub.discrete_active
    assert solver.context.statistics.lp_solves == 1
    assert solver.context.dual_solutions[0].source is DualSolutionSource.LP_SOLUTION
    assert sub.solve_limits[0].solution_limit is None


def test_lazy_mode_single_search():
    events = [NewIncumbent([10.0, 10.0], -20.0)]
    script = [_step([R, R], -2 * R)]
    sub = RecordingSubsolver(script=script, lazy=True, events=events)
    solver = DualSolver(disc_problem(), sub, _cfg(use_lazy_constraints=True))
    result = solver.run()

    assert len(sub.commands) == 1
    assert isinstance(sub.commands[0], AddLazyRow)
    assert sub.commands[0].rhs == pytest.approx(204.0)
    assert result.statistics.lazy_hyperplanes_added == 1
    assert result.termination is TerminationReason.ABSOLUTE_GAP
    assert result.iterations == 2
    assert sub._callback is None


def test_lazy_request_downgraded_without_support():
    cfg = _cfg(use_lazy_constraints=True)
    script = [_step([10.0, 10.0], -20.0), _step([R, R], -2 * R)]
    solver = DualSolver(disc_problem(), RecordingSubsolver(script=script), cfg)
    result = solver.run()
    assert not solver.settings.use_lazy_constraints
    # the caller's configuration keeps its request for the next run
    assert cfg.dual.use_lazy_constraints



def test_cuts_are_generated_before_the_bound_update():
    script = [_step([10.0, 10.0], -20.0), _step([R, R], -2 * R)]
    solver = DualSolver(disc_problem(), RecordingSubsolver(script=script), _cfg())
    generate = solver.generator.generate
    seen = []

    def recording_generate(points, it):
        seen.append((solver.state, len(solver.context.dual_solutions)))
        return generate(points, it)

    solver.generator.generate = recording_generate
    solver.run()
    assert [state for state, _ in seen] == [ControllerState.CUT_GENERATION] * 2
    # iteration 1 has no dual bound yet when its cuts are generated
    assert seen[0][1] == 0
    assert solver.context.iterations[0].dual_bound == -20.0

def test_incumbent_seeds_next_mip():
    script = [_step([1.0, 1.0], -2.0, bound=-3.0, status=SolutionStatus.SOLUTION_LIMIT), _step([R, R], -2 * R)]
    sub = RecordingSubsolver(script=script)
    DualSolver(disc_problem(), sub, _cfg()).run()
    assert sub.mip_starts_at_solve == [None, {0: 1.0, 1: 1.0}]


def test_lazy_nonconvex_rows_are_repairable():
    p = FuncProblem([cont(0, 0.0, 10.0)], {0: -1.0})
    p.add_linear({0: 1.0}, 2.0, ">=")
    p.add_nonlinear(lambda x: x[0] - 1.0, lambda x: {0: 1.0}, convex=False)
    events = [NewIncumbent([5.0], -5.0)]
    script = [(SolutionStatus.INFEASIBLE, [], math.nan)]
    clone_script = [_step([2.0, 1.0], -1.5)]
    sub = RecordingSubsolver(script=script, lazy=True, clone_script=clone_script, events=events)
    solver = DualSolver(p, sub, _cfg(use_lazy_constraints=True))
    result = solver.run()

    # the lazy cut x <= 1 was kept as row 1 and is now keyed by that row
    assert sub.rows[1]["name"].startswith("LH_")
    gh = solver.relaxation.generated_hyperplanes[1]
    assert gh.is_lazy
    assert not gh.is_source_convex
    assert gh.generated_constraint_index == 1
    assert solver.relaxation.lazy_hyperplanes == []

    assert len(sub.clones) == 1
    assert solver.context.statistics.infeasibility_repairs_succeeded == 1
    assert sub.rows[1]["rhs"] == pytest.approx(1.0 + 1.5 * 1.0)
    assert result.termination is TerminationReason.ABSOLUTE_GAP


@requires_highs
class TestWithHighs:
    def _cfg(self, tmp_path, **dual):
        cfg = ESHConfig()
        cfg.run.log_dir = str(tmp_path)
        cfg.termination.time_limit_s = 120.0
        for k, v in dual.items():
            setattr(cfg.dual, k, v)
        return cfg

    def test_example_model(self, tmp_path):
        import pyomo.environ as pyo

        from minlp_esh import run

        m = pyo.ConcreteModel()
        m.x = pyo.Var(bounds=(0, 4))
        m.y = pyo.Var(bounds=(0, 4))
        m.z = pyo.Var(within=pyo.Binary)
        m.disc = pyo.Constraint(expr=m.x**2 + m.y**2 <= 4 + 4 * m.z)
        m.budget = pyo.Constraint(expr=m.x + 2 * m.y <= 5)
        m.obj = pyo.Objective(expr=m.x + m.y - 1.5 * m.z, sense=pyo.maximize)

        result = run(m, cfg=self._cfg(tmp_path))
        assert result.status in (SolveStatus.OPTIMAL, SolveStatus.FEASIBLE)
        assert result.primal_bound == pytest.approx(2 * R, abs=5e-3)
        assert result.dual_bound is not None
        assert result.dual_bound >= result.primal_bound - 1e-6
        assert pyo.value(m.z) == pytest.approx(0.0)

    @pytest.mark.parametrize("strategy", [CutStrategy.ESH, CutStrategy.ECP])
    def test_integer_disc(self, tmp_path, strategy):
        import pyomo.environ as pyo

        from minlp_esh import run

        m = pyo.ConcreteModel()
        m.x = pyo.Var(bounds=(-5, 5))
        m.y = pyo.Var(within=pyo.Integers, bounds=(0, 3))
        m.disc = pyo.Constraint(expr=m.x**2 + m.y**2 <= 4)
        m.obj = pyo.Objective(expr=-m.x - m.y)

        result = run(m, cfg=self._cfg(tmp_path, cut_strategy=strategy))
        assert result.status is SolveStatus.OPTIMAL
        assert result.primal_bound == pytest.approx(-(1 + math.sqrt(3)), abs=5e-3)
        assert pyo.value(m.y) == pytest.approx(1.0)

    def test_quadratic_objective(self, tmp_path):
        import pyomo.environ as pyo

        from minlp_esh import run

        m = pyo.ConcreteModel()
        m.x = pyo.Var(bounds=(-5, 5))
        m.y = pyo.Var(within=pyo.Integers, bounds=(0, 3))
        m.cap = pyo.Constraint(expr=m.x + m.y <= 2)
        m.obj = pyo.Objective(expr=(m.x - 1) ** 2 + (m.y - 2) ** 2)

        result = run(m, cfg=self._cfg(tmp_path, unbounded_repair_bound=1e4))
        assert result.primal_bound == pytest.approx(1.0, abs=2e-3)
        assert result.dual_bound is not None
        assert result.dual_bound <= result.primal_bound + 1e-6
