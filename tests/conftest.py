from __future__ import annotations

import math
from pathlib import Path
from typing import Callable, Mapping, Sequence

import pytest

from minlp_esh.config import ESHConfig
from minlp_esh.dual.problem import ProblemModel
from minlp_esh.dual.events import AddLazyRow
from minlp_esh.dual.subsolver import MIPSubsolver
from minlp_esh.dual.types import (
    NumericConstraint,
    ObjectiveClassification,
    SolutionStatus,
    SolveLimits,
    Variable,
    VariableType,
)


class FuncProblem(ProblemModel):
    """Problem model whose nonlinear constraints are plain Python callables."""

    def __init__(self, variables: Sequence[Variable], objective: Mapping[int, float], minimize: bool = True):
        super().__init__()
        self.variables = list(variables)
        self.objective_coefficients = dict(objective)
        self.is_minimize = minimize
        self._funcs: dict[int, tuple[Callable, Callable]] = {}
        self._objective_function: Callable | None = None

    def _next_index(self) -> int:
        return len(self.linear_constraints) + len(self.nonlinear_constraints)

    def add_linear(self, coefficients, rhs, sense="<=", name=None) -> NumericConstraint:
        i = self._next_index()
        c = NumericConstraint(i, name or f"l{i}", is_linear=True, coefficients=dict(coefficients), rhs=rhs, sense=sense)
        self.linear_constraints.append(c)
        return c

    def add_nonlinear(self, func, grad, convex=True, name=None) -> NumericConstraint:
        i = self._next_index()
        c = NumericConstraint(i, name or f"g{i}", is_linear=False, is_convex=convex)
        self.nonlinear_constraints.append(c)
        self._funcs[i] = (func, grad)
        return c

    def set_nonlinear_objective(self, func, grad, convex=True) -> None:
        """Epigraph reformulation with an appended objective variable."""
        mu = len(self.variables)
        self.variables.append(Variable(mu, "mu", VariableType.CONTINUOUS, -1e4, 1e4))
        s = 1.0 if self.is_minimize else -1.0
        self.objective_constraint = self.add_nonlinear(
            lambda x: s * (func(x) - x[mu]),
            lambda x: {**{i: s * g for i, g in grad(x).items()}, mu: -s},
            convex=convex,
            name="epigraph",
        )
        self.objective_variable_index = mu
        self.objective_classification = ObjectiveClassification.NONLINEAR
        self.objective_coefficients = {mu: 1.0}
        self._objective_function = func

    def evaluate_nonlinear(self, constraint, point):
        return self._funcs[constraint.index][0](point)

    def gradient_nonlinear(self, constraint, point):
        return self._funcs[constraint.index][1](point)

    def objective_value(self, point):
        if self._objective_function is not None:
            return self._objective_function(point)
        return self.objective_constant + sum(a * point[i] for i, a in self.objective_coefficients.items())


def cont(index, lo=-10.0, up=10.0, name=None) -> Variable:
    return Variable(index, name or f"x{index}", VariableType.CONTINUOUS, lo, up)


def binary(index, name=None) -> Variable:
    return Variable(index, name or f"b{index}", VariableType.BINARY, 0.0, 1.0)


def disc_problem(radius_sq: float = 4.0, convex: bool = True) -> FuncProblem:
    """min -x - y  s.t.  x^2 + y^2 <= radius_sq, x, y in [-10, 10]."""
    p = FuncProblem([cont(0), cont(1)], {0: -1.0, 1: -1.0})
    p.add_nonlinear(
        lambda x: x[0] ** 2 + x[1] ** 2 - radius_sq,
        lambda x: {0: 2 * x[0], 1: 2 * x[1]},
        convex=convex,
        name="disc",
    )
    return p


class RecordingSubsolver(MIPSubsolver):
    """In-memory subsolver that records model edits and replays scripted solves.

    Each entry of `script` is (status, [(point, objective), ...], dual_bound).
    Clones pop their solves from the shared `clone_script` list. Lazy rows
    returned by the callback are kept as permanent rows after the solve.
    """

    def __init__(self, script=None, lazy: bool = False, clone_script=None, events=None):
        super().__init__(None)
        self.supports_lazy_constraints = lazy
        self.script = list(script or [])
        self.clone_script = clone_script if clone_script is not None else []
        self.events = list(events or [])
        self.commands: list = []
        self.types: list[VariableType] = []
        self.bounds: list[tuple[float, float]] = []
        self.rows: list[dict] = []
        self.objective = ({}, 0.0, True)
        self.discrete_active = True
        self.solve_limits: list[SolveLimits | None] = []
        self.bounds_at_solve: list[list[tuple[float, float]]] = []
        self.clones: list[RecordingSubsolver] = []
        self.mip_start: dict[int, float] | None = None
        self.mip_starts_at_solve: list[dict[int, float] | None] = []
        self._promoted: list[tuple[str, int]] = []
        self._solutions: list[tuple[list[float], float]] = []
        self._dual_bound = math.nan

    def add_variable(self, name, var_type, lower, upper):
        self.types.append(var_type)
        self.bounds.append((lower, upper))
        return len(self.types) - 1

    def add_linear_constraint(self, coefficients, rhs, name="", sense="<="):
        self.rows.append({"coefficients": dict(coefficients), "rhs": rhs, "name": name, "sense": sense})
        return len(self.rows) - 1

    def add_term_to_constraint(self, row, variable, coefficient):
        coefficients = self.rows[row]["coefficients"]
        coefficients[variable] = coefficients.get(variable, 0.0) + coefficient

    def get_row_rhs(self, row):
        return self.rows[row]["rhs"]

    def set_row_rhs(self, row, rhs):
        self.rows[row]["rhs"] = rhs

    def set_variable_bounds(self, index, lower, upper):
        self.bounds[index] = (lower, upper)

    def get_variable_bounds(self, index):
        return self.bounds[index]

    def set_objective(self, coefficients, constant=0.0, minimize=True):
        self.objective = (dict(coefficients), constant, minimize)

    def activate_discrete_variables(self, active):
        self.discrete_active = active

    @property
    def number_of_variables(self):
        return len(self.types)

    @property
    def number_of_rows(self):
        return len(self.rows)

    def solve(self, limits=None):
        self.solve_limits.append(limits)
        self.bounds_at_solve.append(list(self.bounds))
        self.mip_starts_at_solve.append(self.mip_start)
        self._promoted = []
        start = len(self.commands)
        if self._callback is not None:
            for event in self.events:
                self.commands.extend(self._callback(event))
            self.events = []
        for command in self.commands[start:]:
            if isinstance(command, AddLazyRow):
                row = self.add_linear_constraint(command.coefficients, command.rhs, command.name, command.sense)
                self._promoted.append((command.name, row))
        if not self.script:
            return SolutionStatus.ERROR
        status, solutions, bound = self.script.pop(0)
        self._solutions = [(list(p), obj) for p, obj in solutions]
        self._dual_bound = bound
        return status

    def get_number_of_solutions(self):
        return len(self._solutions)

    def get_solution(self, index=0):
        return list(self._solutions[index][0])

    def get_objective_value(self, index=0):
        return self._solutions[index][1]

    def get_dual_bound(self):
        return self._dual_bound

    def set_mip_start(self, assignment):
        self.mip_start = dict(assignment)

    def clear_mip_starts(self):
        self.mip_start = None

    def take_promoted_lazy_rows(self):
        promoted, self._promoted = self._promoted, []
        return promoted

    def write_problem_to_file(self, path):
        Path(path).write_text(repr(self.rows), encoding="utf-8")

    def clone(self):
        other = RecordingSubsolver()
        other.script = self.clone_script
        other.types = list(self.types)
        other.bounds = list(self.bounds)
        other.rows = [dict(r, coefficients=dict(r["coefficients"])) for r in self.rows]
        other.objective = self.objective
        self.clones.append(other)
        return other


@pytest.fixture
def cfg() -> ESHConfig:
    c = ESHConfig()
    c.dual.unbounded_repair_bound = 1e4
    return c


def highs_available() -> bool:
    try:
        import pyomo.environ as pyo

        return bool(pyo.SolverFactory("appsi_highs").available(exception_flag=False))
    except Exception:  # noqa: BLE001 - any import/plugin problem means unavailable
        return False


requires_highs = pytest.mark.skipif(not highs_available(), reason="appsi_highs not available")
