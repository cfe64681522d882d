from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import pyomo.environ as pyo
from pyomo.common.collections import ComponentMap
from pyomo.core.expr.visitor import identify_variables
from pyomo.core.expr.calculus.derivatives import differentiate
from pyomo.repn import generate_standard_repn

from ..dual.problem import ProblemModel
from ..dual.types import NumericConstraint, ObjectiveClassification, Variable, VariableType

log = logging.getLogger(__name__)

_EVAL_ERRORS = (ValueError, ZeroDivisionError, OverflowError, TypeError)


@dataclass(slots=True)
class _NonlinearBody:
    # g(x) = sign * expr + offset + mu_coef * x[mu]
    expr: Any
    sign: float
    offset: float
    variables: list = field(default_factory=list)
    indices: list[int] = field(default_factory=list)
    mu: Optional[int] = None
    mu_coef: float = 0.0


class PyomoProblem(ProblemModel):
    """ProblemModel read from a Pyomo ConcreteModel.

    Linear rows are extracted with generate_standard_repn; nonlinear
    constraints are evaluated on the model itself and differentiated with
    Pyomo's reverse-mode numeric differentiation. Constraints listed in
    `nonconvex` (by component or constraint-data name) are marked as
    nonconvex; all other nonlinear constraints are assumed convex.
    """

    def __init__(
        self,
        model: pyo.ConcreteModel,
        nonconvex: Iterable[str] = (),
        objective_convex: bool = True,
    ):
        super().__init__()
        self.model = model
        self.nonconvex_names = {str(n) for n in nonconvex}
        self._var_index: ComponentMap = ComponentMap()
        self._var_data: list = []
        self._nonlinear: dict[int, _NonlinearBody] = {}
        self._objective_expr: Any = None
        self._build(objective_convex)

    # --- construction -------------------------------------------------------------
    def _active_objective(self):
        objs = list(self.model.component_data_objects(pyo.Objective, active=True, descend_into=True))
        if len(objs) != 1:
            raise ValueError(f"model must have exactly one active objective, found {len(objs)}")
        return objs[0]

    def _add_variable(self, var) -> int:
        if var in self._var_index:
            return self._var_index[var]
        if var.is_binary():
            var_type = VariableType.BINARY
        elif var.is_integer():
            var_type = VariableType.INTEGER
        else:
            var_type = VariableType.CONTINUOUS
        lo = -math.inf if var.lb is None else float(var.lb)
        up = math.inf if var.ub is None else float(var.ub)
        index = len(self.variables)
        self.variables.append(Variable(index, var.name, var_type, lo, up))
        self._var_index[var] = index
        self._var_data.append(var)
        return index

    def _is_nonconvex(self, con) -> bool:
        return con.name in self.nonconvex_names or con.parent_component().name in self.nonconvex_names

    def _next_index(self) -> int:
        return len(self.linear_constraints) + len(self.nonlinear_constraints)

    def _add_linear(self, name: str, coefficients: dict[int, float], rhs: float, sense: str) -> None:
        if not coefficients:
            log.debug("skipping constant row %s", name)
            return
        self.linear_constraints.append(
            NumericConstraint(self._next_index(), name, is_linear=True, coefficients=coefficients, rhs=rhs, sense=sense)
        )

    def _add_nonlinear(self, name: str, body: _NonlinearBody, is_convex: bool) -> NumericConstraint:
        c = NumericConstraint(self._next_index(), name, is_linear=False, is_convex=is_convex)
        self.nonlinear_constraints.append(c)
        self._nonlinear[c.index] = body
        return c

    def _linear_terms(self, expr) -> tuple[dict[int, float], float]:
        repn = generate_standard_repn(expr)
        coefficients: dict[int, float] = {}
        for var, coef in zip(repn.linear_vars, repn.linear_coefs):
            i = self._add_variable(var)
            coefficients[i] = coefficients.get(i, 0.0) + float(coef)
        return coefficients, float(repn.constant)

    def _build(self, objective_convex: bool) -> None:
        m = self.model
        for var in m.component_data_objects(pyo.Var, descend_into=True):
            if not var.fixed:
                self._add_variable(var)

        for con in m.component_data_objects(pyo.Constraint, active=True, descend_into=True):
            lower = None if con.lower is None else float(pyo.value(con.lower))
            upper = None if con.upper is None else float(pyo.value(con.upper))
            if con.body.polynomial_degree() in (0, 1):
                coefficients, constant = self._linear_terms(con.body)
                if con.equality:
                    self._add_linear(con.name, coefficients, upper - constant, "==")
                    continue
                if lower is not None and upper is not None:
                    self._add_linear(f"{con.name}_lo", coefficients, lower - constant, ">=")
                    self._add_linear(f"{con.name}_up", dict(coefficients), upper - constant, "<=")
                elif upper is not None:
                    self._add_linear(con.name, coefficients, upper - constant, "<=")
                elif lower is not None:
                    self._add_linear(con.name, coefficients, lower - constant, ">=")
                continue

            variables = list(identify_variables(con.body, include_fixed=False))
            indices = [self._add_variable(v) for v in variables]
            # nonlinear equalities are split into two nonconvex inequalities
            convex = not (self._is_nonconvex(con) or con.equality)
            if upper is not None:
                body = _NonlinearBody(con.body, 1.0, -upper, variables, indices)
                self._add_nonlinear(con.name if lower is None else f"{con.name}_up", body, convex)
            if lower is not None:
                body = _NonlinearBody(con.body, -1.0, lower, variables, indices)
                self._add_nonlinear(con.name if upper is None else f"{con.name}_lo", body, convex)

        obj = self._active_objective()
        self.is_minimize = obj.sense == pyo.minimize
        self._objective_expr = obj.expr
        degree = obj.expr.polynomial_degree()
        if degree in (0, 1):
            self.objective_coefficients, self.objective_constant = self._linear_terms(obj.expr)
            self.objective_classification = ObjectiveClassification.LINEAR
            return

        self.objective_classification = (
            ObjectiveClassification.QUADRATIC if degree == 2 else ObjectiveClassification.NONLINEAR
        )
        variables = list(identify_variables(obj.expr, include_fixed=False))
        indices = [self._add_variable(v) for v in variables]
        mu = len(self.variables)
        self.variables.append(Variable(mu, "objective_mu", VariableType.CONTINUOUS))
        s = 1.0 if self.is_minimize else -1.0
        body = _NonlinearBody(obj.expr, s, 0.0, variables, indices, mu=mu, mu_coef=-s)
        self.objective_variable_index = mu
        self.objective_constraint = self._add_nonlinear("objective_epigraph", body, objective_convex)
        self.objective_coefficients = {mu: 1.0}
        self.objective_constant = 0.0
        log.debug("objective is %s; using epigraph variable %d", self.objective_classification.value, mu)

    # --- evaluation ---------------------------------------------------------------
    def _load(self, variables: Sequence, indices: Sequence[int], point: Sequence[float]) -> None:
        for var, i in zip(variables, indices):
            var.set_value(float(point[i]), skip_validation=True)

    def evaluate_nonlinear(self, constraint: NumericConstraint, point: Sequence[float]) -> float:
        body = self._nonlinear[constraint.index]
        self._load(body.variables, body.indices, point)
        try:
            value = float(pyo.value(body.expr))
        except _EVAL_ERRORS:
            return math.inf
        g = body.sign * value + body.offset
        if body.mu is not None:
            g += body.mu_coef * point[body.mu]
        return g if not math.isnan(g) else math.inf

    def gradient_nonlinear(self, constraint: NumericConstraint, point: Sequence[float]) -> dict[int, float]:
        body = self._nonlinear[constraint.index]
        self._load(body.variables, body.indices, point)
        grad: dict[int, float] = {}
        if body.variables:
            try:
                values = differentiate(body.expr, wrt_list=body.variables, mode=differentiate.Modes.reverse_numeric)
            except _EVAL_ERRORS:
                values = [math.nan] * len(body.variables)
            for i, d in zip(body.indices, values):
                grad[i] = grad.get(i, 0.0) + body.sign * float(d)
        if body.mu is not None:
            grad[body.mu] = grad.get(body.mu, 0.0) + body.mu_coef
        return grad

    def objective_value(self, point: Sequence[float]) -> float:
        if self.objective_classification is ObjectiveClassification.LINEAR:
            return self.objective_constant + sum(a * point[i] for i, a in self.objective_coefficients.items())
        body = self._nonlinear[self.objective_constraint.index]
        self._load(body.variables, body.indices, point)
        try:
            return float(pyo.value(self._objective_expr))
        except _EVAL_ERRORS:
            return math.nan

    def load_into_model(self, point: Sequence[float]) -> None:
        """Write a point back into the variables of the Pyomo model."""
        self._load(self._var_data, range(len(self._var_data)), point)


__all__ = ["PyomoProblem"]
