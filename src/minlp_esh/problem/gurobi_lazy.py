from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Mapping

from ..dual.events import AbortSearch, AddLazyRow, NewBound, NewIncumbent, NodeRelaxationSolved, UpdateCutoff
from ..dual.subsolver import MIPSubsolver, register_subsolver
from ..dual.types import Point, SolutionStatus, SolveLimits, VariableType

try:  # Optional import for Gurobi lazy callbacks
    import gurobipy as gp  # type: ignore
    from gurobipy import GRB  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    gp = None
    GRB = None

log = logging.getLogger(__name__)

# Gurobi refuses integer parameters above this
_GRB_MAXINT = 2_000_000_000


def _status_map() -> dict[int, SolutionStatus]:
    return {
        GRB.OPTIMAL: SolutionStatus.OPTIMAL,
        GRB.INFEASIBLE: SolutionStatus.INFEASIBLE,
        GRB.INF_OR_UNBD: SolutionStatus.UNBOUNDED,
        GRB.UNBOUNDED: SolutionStatus.UNBOUNDED,
        GRB.TIME_LIMIT: SolutionStatus.TIME_LIMIT,
        GRB.NODE_LIMIT: SolutionStatus.NODE_LIMIT,
        GRB.SOLUTION_LIMIT: SolutionStatus.SOLUTION_LIMIT,
        GRB.INTERRUPTED: SolutionStatus.ABORT,
        GRB.SUBOPTIMAL: SolutionStatus.FEASIBLE,
    }


@register_subsolver("gurobi_lazy")
class GurobiLazySubsolver(MIPSubsolver):
    """Relaxation held in a gurobipy model, with lazy-constraint callbacks.

    While a callback handler is registered, `solve` runs one branch-and-bound
    search and reports MIP progress, new incumbents and solved node
    relaxations to the handler. Rows it returns are injected with cbLazy and
    added permanently to the model once the search ends.
    """

    supports_lazy_constraints = True

    def __init__(self, cfg=None):
        if gp is None:
            raise RuntimeError("gurobipy is not installed; install the 'gurobi' extra to use impl 'gurobi_lazy'")
        super().__init__(cfg)
        self.tee = bool(getattr(cfg, "tee", False))
        self.options: dict[str, Any] = dict(getattr(cfg, "options", {}) or {})
        self.model = gp.Model("minlp_esh_relaxation")
        self.model.Params.OutputFlag = 1 if self.tee else 0
        if self.threads > 1:
            self.model.Params.Threads = self.threads
        for k, v in self.options.items():
            self.model.setParam(k, v)
        self._vars: list = []
        self._types: list[VariableType] = []
        self._bounds: list[tuple[float, float]] = []
        self._constrs: list = []
        self._rows: list[dict[str, Any]] = []
        self._objective: tuple[dict[int, float], float, bool] = ({}, 0.0, True)
        self._discrete_active = True
        self._pending_lazy: list[AddLazyRow] = []
        self._promoted: list[tuple[str, int]] = []
        self._solutions: list[Point] = []
        self._objective_values: list[float] = []
        self._dual_bound = math.nan
        self._node_count = 0

    # --- helpers ------------------------------------------------------------------
    def _grb_bound(self, value: float) -> float:
        if not math.isfinite(value) or abs(value) >= self.unbounded_variable_bound_value:
            return GRB.INFINITY if value > 0 else -GRB.INFINITY
        return float(value)

    def _vtype(self, var_type: VariableType) -> str:
        if not self._discrete_active:
            return GRB.CONTINUOUS
        if var_type is VariableType.BINARY:
            return GRB.BINARY
        if var_type is VariableType.INTEGER:
            return GRB.INTEGER
        if var_type is VariableType.SEMICONTINUOUS:
            return GRB.SEMICONT
        return GRB.CONTINUOUS

    def _lower(self, index: int) -> float:
        # x in {0} U [lo, up] relaxes to [min(0, lo), up] once integrality is off
        lo = self._bounds[index][0]
        if self._types[index] is VariableType.SEMICONTINUOUS and not self._discrete_active:
            lo = min(lo, 0.0)
        return self._grb_bound(lo)

    def _lin_expr(self, coefficients: Mapping[int, float]):
        items = list(coefficients.items())
        return gp.LinExpr([float(a) for _, a in items], [self._vars[i] for i, _ in items])

    @staticmethod
    def _sense(sense: str) -> str:
        try:
            return {"<=": GRB.LESS_EQUAL, ">=": GRB.GREATER_EQUAL, "==": GRB.EQUAL}[sense]
        except KeyError:
            raise ValueError(f"unknown row sense '{sense}'") from None

    # --- model building -----------------------------------------------------------
    def add_variable(self, name: str, var_type: VariableType, lower: float, upper: float) -> int:
        index = len(self._vars)
        self._types.append(var_type)
        self._bounds.append((float(lower), float(upper)))
        var = self.model.addVar(
            lb=self._lower(index),
            ub=self._grb_bound(upper),
            vtype=self._vtype(var_type),
            name=name or f"x{index}",
        )
        self._vars.append(var)
        self.model.update()
        return index

    def add_linear_constraint(
        self, coefficients: Mapping[int, float], rhs: float, name: str = "", sense: str = "<="
    ) -> int:
        index = len(self._constrs)
        constr = self.model.addLConstr(
            self._lin_expr(coefficients), self._sense(sense), float(rhs), name=name or f"r{index}"
        )
        self._constrs.append(constr)
        self._rows.append({"coefficients": dict(coefficients), "rhs": float(rhs), "sense": sense, "name": name})
        self.model.update()
        return index

    def add_term_to_constraint(self, row: int, variable: int, coefficient: float) -> None:
        coefficients = self._rows[row]["coefficients"]
        coefficients[variable] = coefficients.get(variable, 0.0) + float(coefficient)
        self.model.chgCoeff(self._constrs[row], self._vars[variable], coefficients[variable])
        self.model.update()

    def get_row_rhs(self, row: int) -> float:
        return self._rows[row]["rhs"]

    def set_row_rhs(self, row: int, rhs: float) -> None:
        self._rows[row]["rhs"] = float(rhs)
        self._constrs[row].RHS = float(rhs)
        self.model.update()

    def set_variable_bounds(self, index: int, lower: float, upper: float) -> None:
        self._bounds[index] = (float(lower), float(upper))
        var = self._vars[index]
        var.LB = self._lower(index)
        var.UB = self._grb_bound(upper)
        self.model.update()

    def get_variable_bounds(self, index: int) -> tuple[float, float]:
        return self._bounds[index]

    def set_objective(self, coefficients: Mapping[int, float], constant: float = 0.0, minimize: bool = True) -> None:
        self._objective = (dict(coefficients), float(constant), bool(minimize))
        expr = self._lin_expr(coefficients) + float(constant)
        self.model.setObjective(expr, GRB.MINIMIZE if minimize else GRB.MAXIMIZE)
        self.model.update()

    def activate_discrete_variables(self, active: bool) -> None:
        self._discrete_active = bool(active)
        for i, (var, var_type) in enumerate(zip(self._vars, self._types)):
            var.VType = self._vtype(var_type)
            var.LB = self._lower(i)
        self.model.update()

    @property
    def number_of_variables(self) -> int:
        return len(self._vars)

    @property
    def number_of_rows(self) -> int:
        return len(self._constrs)

    # --- callback -----------------------------------------------------------------
    def _gurobi_callback(self, model, where: int) -> None:
        if where == GRB.Callback.MIP:
            event = NewBound(
                dual_bound=model.cbGet(GRB.Callback.MIP_OBJBND),
                explored_nodes=int(model.cbGet(GRB.Callback.MIP_NODCNT)),
                open_nodes=int(model.cbGet(GRB.Callback.MIP_NODLFT)),
            )
        elif where == GRB.Callback.MIPSOL:
            event = NewIncumbent(
                point=[float(v) for v in model.cbGetSolution(self._vars)],
                objective_value=model.cbGet(GRB.Callback.MIPSOL_OBJ),
                dual_bound=model.cbGet(GRB.Callback.MIPSOL_OBJBND),
            )
        elif where == GRB.Callback.MIPNODE and model.cbGet(GRB.Callback.MIPNODE_STATUS) == GRB.OPTIMAL:
            event = NodeRelaxationSolved(
                point=[float(v) for v in model.cbGetNodeRel(self._vars)],
                dual_bound=model.cbGet(GRB.Callback.MIPNODE_OBJBND),
            )
        else:
            return
        can_add_rows = where in (GRB.Callback.MIPSOL, GRB.Callback.MIPNODE)
        for command in self._callback(event):
            if isinstance(command, AddLazyRow):
                if not can_add_rows:
                    continue
                lhs = self._lin_expr(command.coefficients)
                if command.sense == ">=":
                    model.cbLazy(lhs >= command.rhs)
                elif command.sense == "==":
                    model.cbLazy(lhs == command.rhs)
                else:
                    model.cbLazy(lhs <= command.rhs)
                self._pending_lazy.append(command)
            elif isinstance(command, UpdateCutoff):
                if not can_add_rows:
                    continue
                coefficients, constant, minimize = self._objective
                if not coefficients:
                    continue
                lhs = self._lin_expr(coefficients)
                if minimize:
                    model.cbLazy(lhs <= command.value - constant)
                else:
                    model.cbLazy(lhs >= command.value - constant)
            elif isinstance(command, AbortSearch):
                model.terminate()

    def _promote_lazy_rows(self) -> None:
        pending, self._pending_lazy = self._pending_lazy, []
        for row in pending:
            index = self.add_linear_constraint(row.coefficients, row.rhs, row.name, row.sense)
            self._promoted.append((row.name, index))
        if pending:
            log.debug("kept %d lazy row(s) in the relaxation", len(pending))

    # --- solving ------------------------------------------------------------------
    def solve(self, limits: SolveLimits | None = None) -> SolutionStatus:
        self._solutions = []
        self._promoted = []
        self._objective_values = []
        self._dual_bound = math.nan
        self._node_count = 0
        params = self.model.Params
        limits = limits or SolveLimits()
        params.TimeLimit = limits.time_limit if limits.time_limit is not None else GRB.INFINITY
        params.NodeLimit = float(limits.node_limit) if limits.node_limit is not None else GRB.INFINITY
        params.SolutionLimit = min(int(limits.solution_limit), _GRB_MAXINT) if limits.solution_limit is not None else _GRB_MAXINT
        try:
            if self._callback is not None:
                params.LazyConstraints = 1
                self.model.optimize(self._gurobi_callback)
            else:
                self.model.optimize()
        except gp.GurobiError as exc:
            log.error("Gurobi failed: %s", exc)
            self._pending_lazy = []
            return SolutionStatus.ERROR

        model = self.model
        has_solution = model.SolCount > 0
        status = _status_map().get(model.Status)
        if status is None:
            status = SolutionStatus.FEASIBLE if has_solution else SolutionStatus.ERROR
        for k in range(model.SolCount):
            params.SolutionNumber = k
            self._solutions.append([float(v) for v in model.getAttr("Xn", self._vars)])
            self._objective_values.append(float(model.PoolObjVal))
        if model.IsMIP:
            self._node_count = int(model.NodeCount)
            if has_solution or status is SolutionStatus.OPTIMAL:
                self._dual_bound = float(model.ObjBound)
        elif status is SolutionStatus.OPTIMAL:
            self._dual_bound = float(model.ObjVal)
        self._promote_lazy_rows()
        log.debug("gurobi: %s obj=%s bound=%s nodes=%d", status.value, self._objective_values[:1], self._dual_bound, self._node_count)
        return status

    def take_promoted_lazy_rows(self) -> list[tuple[str, int]]:
        promoted, self._promoted = self._promoted, []
        return promoted

    def get_number_of_solutions(self) -> int:
        return len(self._solutions)

    def get_solution(self, index: int = 0) -> Point:
        return list(self._solutions[index])

    def get_objective_value(self, index: int = 0) -> float:
        return self._objective_values[index]

    def get_dual_bound(self) -> float:
        return self._dual_bound

    def get_explored_node_count(self) -> int:
        return self._node_count

    def set_mip_start(self, assignment: Mapping[int, float]) -> None:
        for i, v in assignment.items():
            self._vars[int(i)].Start = float(v)
        self.model.update()

    def clear_mip_starts(self) -> None:
        for var in self._vars:
            var.Start = GRB.UNDEFINED
        self.model.update()

    def write_problem_to_file(self, path: str | Path) -> None:
        self.model.write(str(path))

    def clone(self) -> "GurobiLazySubsolver":
        other = GurobiLazySubsolver(self.cfg)
        other._discrete_active = self._discrete_active
        for var, var_type, (lo, up) in zip(self._vars, self._types, self._bounds):
            other.add_variable(var.VarName, var_type, lo, up)
        for row in self._rows:
            other.add_linear_constraint(row["coefficients"], row["rhs"], row["name"], row["sense"])
        coefficients, constant, minimize = self._objective
        other.set_objective(coefficients, constant, minimize)
        return other


__all__ = ["GurobiLazySubsolver"]
