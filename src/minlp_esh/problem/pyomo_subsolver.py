from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Mapping, Optional

import pyomo.environ as pyo
from pyomo.common.errors import ApplicationError

from ..dual.subsolver import MIPSubsolver, register_subsolver
from ..dual.types import Point, SolutionStatus, SolveLimits, VariableType

log = logging.getLogger(__name__)

# Option names used to pass limits, keyed by solver family
_LIMIT_OPTIONS: dict[str, dict[str, str]] = {
    "highs": {"time": "time_limit", "nodes": "mip_max_nodes", "solutions": "mip_max_improving_sols", "threads": "threads"},
    "gurobi": {"time": "TimeLimit", "nodes": "NodeLimit", "solutions": "SolutionLimit", "threads": "Threads"},
    "cplex": {"time": "timelimit", "nodes": "mip_limits_nodes", "solutions": "mip_limits_solutions", "threads": "threads"},
    "cbc": {"time": "sec", "nodes": "maxNodes", "solutions": "maxSolutions", "threads": "threads"},
    "glpk": {"time": "tmlim"},
}


def _solver_family(name: str) -> Optional[str]:
    lname = name.lower()
    for family in _LIMIT_OPTIONS:
        if family in lname:
            return family
    return None


def limit_options(solver_name: str, limits: SolveLimits | None, threads: int = 1) -> dict[str, Any]:
    """Translate SolveLimits into the option names the given solver understands."""
    family = _solver_family(solver_name)
    if family is None:
        return {}
    names = _LIMIT_OPTIONS[family]
    opts: dict[str, Any] = {}
    if limits is not None:
        if limits.time_limit is not None and math.isfinite(limits.time_limit) and "time" in names:
            tl = max(limits.time_limit, 1.0)
            opts[names["time"]] = int(math.ceil(tl)) if family == "glpk" else float(tl)
        if limits.node_limit is not None and "nodes" in names:
            opts[names["nodes"]] = int(limits.node_limit)
        if limits.solution_limit is not None and "solutions" in names:
            opts[names["solutions"]] = int(limits.solution_limit)
    if threads > 1 and "threads" in names:
        opts[names["threads"]] = int(threads)
    return opts


_DOMAINS = {
    VariableType.BINARY: pyo.Binary,
    VariableType.INTEGER: pyo.Integers,
}


@register_subsolver("pyomo")
class PyomoSubsolver(MIPSubsolver):
    """Relaxation held in a Pyomo ConcreteModel and solved through SolverFactory.

    Columns live in the VarList `x` and rows in the ConstraintList `rows`
    (column i is ``x[i+1]``, row r is ``rows[r+1]``). Row data is also kept
    in plain dicts so that bound changes, added terms and clones can rebuild
    row expressions. Only the returned solution is available; there is no
    solution pool. Pyomo has no semi-continuous domain, so a semi-continuous
    column x in {0} U [lo, up] is relaxed to [min(0, lo), up].
    """

    def __init__(self, cfg=None):
        super().__init__(cfg)
        self.solver_name = str(getattr(cfg, "solver", "appsi_highs"))
        self.tee = bool(getattr(cfg, "tee", False))
        self.options: dict[str, Any] = dict(getattr(cfg, "options", {}) or {})
        self.m = pyo.ConcreteModel()
        self.m.x = pyo.VarList()
        self.m.rows = pyo.ConstraintList()
        self._types: list[VariableType] = []
        self._bounds: list[tuple[float, float]] = []
        self._rows: list[dict[str, Any]] = []
        self._objective: tuple[dict[int, float], float, bool] = ({}, 0.0, True)
        self._discrete_active = True
        self._mip_start: dict[int, float] = {}
        self._solution: Optional[Point] = None
        self._objective_value = math.nan
        self._dual_bound = math.nan

    # --- helpers ------------------------------------------------------------------
    def _pyomo_bound(self, value: float) -> Optional[float]:
        if not math.isfinite(value) or abs(value) >= self.unbounded_variable_bound_value:
            return None
        return float(value)

    def _linear_expr(self, coefficients: Mapping[int, float]):
        return pyo.quicksum(float(a) * self.m.x[i + 1] for i, a in coefficients.items())

    def _row_expr(self, row: Mapping[str, Any]):
        if not row["coefficients"]:
            raise ValueError(f"row '{row['name']}' has no terms")
        lhs = self._linear_expr(row["coefficients"])
        rhs = float(row["rhs"])
        if row["sense"] == "<=":
            return lhs <= rhs
        if row["sense"] == ">=":
            return lhs >= rhs
        if row["sense"] == "==":
            return lhs == rhs
        raise ValueError(f"unknown row sense '{row['sense']}'")

    def _apply_domain(self, index: int) -> None:
        var = self.m.x[index + 1]
        var_type = self._types[index]
        if self._discrete_active and var_type in _DOMAINS:
            var.domain = _DOMAINS[var_type]
        else:
            var.domain = pyo.Reals
        lo, up = self._bounds[index]
        if var_type is VariableType.SEMICONTINUOUS:
            lo = min(lo, 0.0)
        var.setlb(self._pyomo_bound(lo))
        var.setub(self._pyomo_bound(up))

    # --- model building -----------------------------------------------------------
    def add_variable(self, name: str, var_type: VariableType, lower: float, upper: float) -> int:
        if var_type is VariableType.SEMICONTINUOUS:
            log.warning("column %s is semi-continuous; relaxing it to a continuous range including 0", name or len(self._types))
        self.m.x.add()
        self._types.append(var_type)
        self._bounds.append((float(lower), float(upper)))
        index = len(self._types) - 1
        self._apply_domain(index)
        return index

    def add_linear_constraint(
        self, coefficients: Mapping[int, float], rhs: float, name: str = "", sense: str = "<="
    ) -> int:
        row = {"coefficients": dict(coefficients), "rhs": float(rhs), "sense": sense, "name": name}
        self.m.rows.add(self._row_expr(row))
        self._rows.append(row)
        return len(self._rows) - 1

    def _rebuild_row(self, index: int) -> None:
        self.m.rows[index + 1].set_value(self._row_expr(self._rows[index]))

    def add_term_to_constraint(self, row: int, variable: int, coefficient: float) -> None:
        coefficients = self._rows[row]["coefficients"]
        coefficients[variable] = coefficients.get(variable, 0.0) + float(coefficient)
        self._rebuild_row(row)

    def get_row_rhs(self, row: int) -> float:
        return self._rows[row]["rhs"]

    def set_row_rhs(self, row: int, rhs: float) -> None:
        self._rows[row]["rhs"] = float(rhs)
        self._rebuild_row(row)

    def set_variable_bounds(self, index: int, lower: float, upper: float) -> None:
        self._bounds[index] = (float(lower), float(upper))
        self._apply_domain(index)

    def get_variable_bounds(self, index: int) -> tuple[float, float]:
        return self._bounds[index]

    def set_objective(self, coefficients: Mapping[int, float], constant: float = 0.0, minimize: bool = True) -> None:
        self._objective = (dict(coefficients), float(constant), bool(minimize))
        if hasattr(self.m, "obj"):
            self.m.del_component(self.m.obj)
        self.m.obj = pyo.Objective(
            expr=self._linear_expr(coefficients) + float(constant),
            sense=pyo.minimize if minimize else pyo.maximize,
        )

    def activate_discrete_variables(self, active: bool) -> None:
        self._discrete_active = bool(active)
        for i in range(len(self._types)):
            self._apply_domain(i)

    @property
    def number_of_variables(self) -> int:
        return len(self._types)

    @property
    def number_of_rows(self) -> int:
        return len(self._rows)

    # --- solving ------------------------------------------------------------------
    def _map_termination(self, term, has_solution: bool, limits: SolveLimits | None) -> SolutionStatus:
        tc = pyo.TerminationCondition
        if term in (tc.optimal, tc.globallyOptimal, tc.locallyOptimal):
            return SolutionStatus.OPTIMAL
        if term is tc.feasible:
            return SolutionStatus.FEASIBLE
        if term is tc.maxTimeLimit:
            return SolutionStatus.TIME_LIMIT
        if term in (tc.maxIterations, tc.maxEvaluations):
            if limits is not None and limits.solution_limit is not None and has_solution:
                return SolutionStatus.SOLUTION_LIMIT
            return SolutionStatus.NODE_LIMIT
        if term is tc.infeasible:
            return SolutionStatus.INFEASIBLE
        if term in (tc.unbounded, tc.infeasibleOrUnbounded):
            return SolutionStatus.UNBOUNDED
        if term is tc.userInterrupt:
            return SolutionStatus.ABORT
        return SolutionStatus.FEASIBLE if has_solution else SolutionStatus.ERROR

    def _read_solution(self) -> Point:
        pt = []
        for i in range(len(self._types)):
            val = self.m.x[i + 1].value
            if val is None:
                lo, up = self._bounds[i]
                val = min(max(0.0, lo), up)
            pt.append(float(val))
        return pt

    def solve(self, limits: SolveLimits | None = None) -> SolutionStatus:
        self._solution = None
        self._objective_value = math.nan
        self._dual_bound = math.nan
        solver = pyo.SolverFactory(self.solver_name)
        for k, v in self.options.items():
            solver.options[k] = v
        for k, v in limit_options(self.solver_name, limits, self.threads).items():
            solver.options[k] = v
        kwargs: dict[str, Any] = {}
        if self._mip_start and getattr(solver, "warm_start_capable", lambda: False)():
            for i, v in self._mip_start.items():
                self.m.x[i + 1].set_value(v, skip_validation=True)
            kwargs["warmstart"] = True
        try:
            results = solver.solve(self.m, tee=self.tee, load_solutions=False, **kwargs)
        except (ApplicationError, RuntimeError, ValueError) as exc:
            log.error("subsolver '%s' failed: %s", self.solver_name, exc)
            return SolutionStatus.ERROR

        has_solution = len(results.solution) > 0
        if has_solution:
            self.m.solutions.load_from(results)
            self._solution = self._read_solution()
            self._objective_value = float(pyo.value(self.m.obj))
        term = getattr(results.solver, "termination_condition", None)
        status = self._map_termination(term, has_solution, limits)
        if status is SolutionStatus.OPTIMAL and not has_solution:
            log.warning("subsolver reported optimality without a solution")
            status = SolutionStatus.ERROR

        minimize = self._objective[2]
        if status is SolutionStatus.OPTIMAL:
            self._dual_bound = self._objective_value
        else:
            bound = results.problem.lower_bound if minimize else results.problem.upper_bound
            if bound is not None:
                self._dual_bound = float(bound)
        log.debug(
            "subsolver %s: %s (termination %s) obj=%s bound=%s",
            self.solver_name,
            status.value,
            term,
            self._objective_value,
            self._dual_bound,
        )
        return status

    def get_number_of_solutions(self) -> int:
        return 0 if self._solution is None else 1

    def get_solution(self, index: int = 0) -> Point:
        if self._solution is None or index != 0:
            raise IndexError(f"no solution with index {index}")
        return list(self._solution)

    def get_objective_value(self, index: int = 0) -> float:
        if self._solution is None or index != 0:
            raise IndexError(f"no solution with index {index}")
        return self._objective_value

    def get_dual_bound(self) -> float:
        return self._dual_bound

    def set_mip_start(self, assignment: Mapping[int, float]) -> None:
        self._mip_start = {int(i): float(v) for i, v in assignment.items()}

    def clear_mip_starts(self) -> None:
        self._mip_start = {}

    def write_problem_to_file(self, path: str | Path) -> None:
        self.m.write(str(path), io_options={"symbolic_solver_labels": True})

    def clone(self) -> "PyomoSubsolver":
        other = PyomoSubsolver(self.cfg)
        other.solver_name = self.solver_name
        other.threads = self.threads
        other.tee = self.tee
        other.options = dict(self.options)
        other._discrete_active = self._discrete_active
        for var_type, (lo, up) in zip(self._types, self._bounds):
            other.add_variable("", var_type, lo, up)
        for row in self._rows:
            other.add_linear_constraint(row["coefficients"], row["rhs"], row["name"], row["sense"])
        coefficients, constant, minimize = self._objective
        other.set_objective(coefficients, constant, minimize)
        return other


__all__ = ["PyomoSubsolver", "limit_options"]
