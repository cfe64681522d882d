from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from .types import NumericConstraint, ObjectiveClassification, Point, Variable, VariableType


class ProblemModel(ABC):
    """Abstract view of the MINLP consumed by the dual solver.

    Implementations fill in the variable and constraint lists and provide
    function values and gradients of the nonlinear constraints. Every
    constraint is expressed so that ``evaluate(c, x) <= 0`` means satisfied.

    When the objective is not linear, implementations append an auxiliary
    objective variable `mu` and an epigraph constraint ``s*(f(x) - mu) <= 0``
    (s = +1 when minimizing, -1 when maximizing) to `nonlinear_constraints`,
    and the linear objective becomes `mu`.
    """

    def __init__(self) -> None:
        self.variables: list[Variable] = []
        self.linear_constraints: list[NumericConstraint] = []
        self.nonlinear_constraints: list[NumericConstraint] = []
        self.objective_coefficients: dict[int, float] = {}
        self.objective_constant: float = 0.0
        self.is_minimize: bool = True
        self.objective_classification = ObjectiveClassification.LINEAR
        self.objective_variable_index: Optional[int] = None
        self.objective_constraint: Optional[NumericConstraint] = None

    # --- nonlinear function access -------------------------------------------------
    @abstractmethod
    def evaluate_nonlinear(self, constraint: NumericConstraint, point: Sequence[float]) -> float:
        """Return g(point) for a nonlinear constraint; +inf if undefined there."""

    @abstractmethod
    def gradient_nonlinear(self, constraint: NumericConstraint, point: Sequence[float]) -> dict[int, float]:
        """Return the sparse gradient of g at point (may contain nan on failure)."""

    @abstractmethod
    def objective_value(self, point: Sequence[float]) -> float:
        """True objective value at point (not the relaxation's auxiliary variable)."""

    # --- uniform constraint access -------------------------------------------------
    def evaluate(self, constraint: NumericConstraint, point: Sequence[float]) -> float:
        if not constraint.is_linear:
            return self.evaluate_nonlinear(constraint, point)
        lhs = sum(a * point[i] for i, a in constraint.coefficients.items())
        if constraint.sense == "<=":
            return lhs - constraint.rhs
        if constraint.sense == ">=":
            return constraint.rhs - lhs
        return abs(lhs - constraint.rhs)

    def gradient(self, constraint: NumericConstraint, point: Sequence[float]) -> dict[int, float]:
        if not constraint.is_linear:
            return self.gradient_nonlinear(constraint, point)
        if constraint.sense == ">=":
            return {i: -a for i, a in constraint.coefficients.items()}
        return dict(constraint.coefficients)

    def is_convex_source(self, constraint: NumericConstraint) -> bool:
        return constraint.is_linear or constraint.is_convex

    @property
    def numeric_constraints(self) -> list[NumericConstraint]:
        return self.linear_constraints + self.nonlinear_constraints

    @property
    def original_nonlinear_constraints(self) -> list[NumericConstraint]:
        """Nonlinear constraints without the objective epigraph."""
        return [c for c in self.nonlinear_constraints if c is not self.objective_constraint]

    @property
    def discrete_variable_indices(self) -> list[int]:
        return [v.index for v in self.variables if v.is_discrete]

    @property
    def binary_variable_indices(self) -> list[int]:
        return [v.index for v in self.variables if v.var_type is VariableType.BINARY]

    @property
    def is_convex(self) -> bool:
        return all(self.is_convex_source(c) for c in self.nonlinear_constraints)

    def most_deviating_constraints(
        self, point: Sequence[float], selection_factor: float = 0.0
    ) -> list[tuple[NumericConstraint, float]]:
        """Violated nonlinear constraints ordered by decreasing violation.

        Only constraints whose violation is at least `selection_factor` times
        the largest one are returned. When nothing is violated the single
        least-satisfied constraint is returned, so callers can report that the
        point lies in the interior.
        """
        values = [(c, self.evaluate(c, point)) for c in self.nonlinear_constraints]
        if not values:
            return []
        values.sort(key=lambda cv: cv[1], reverse=True)
        top = values[0][1]
        if not top > 0:
            return [values[0]]
        threshold = max(0.0, selection_factor) * top
        return [(c, v) for c, v in values if v > 0 and v >= threshold]

    def max_deviation(
        self, point: Sequence[float], constraints: Optional[Iterable[NumericConstraint]] = None
    ) -> Optional[tuple[int, float]]:
        """(index, value) of the constraint with the largest value at point."""
        best: Optional[tuple[int, float]] = None
        for c in self.nonlinear_constraints if constraints is None else constraints:
            v = self.evaluate(c, point)
            if math.isnan(v):
                v = math.inf
            if best is None or v > best[1]:
                best = (c.index, v)
        return best


__all__ = ["ProblemModel"]
