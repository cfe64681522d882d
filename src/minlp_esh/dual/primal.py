from __future__ import annotations

import logging
from typing import Optional, Sequence

from .problem import ProblemModel
from .results import SolveContext
from .types import PrimalSolution, PrimalSolutionSource

log = logging.getLogger(__name__)


class PrimalSolutionChecker:
    """Validate candidate points against the true problem and record incumbents."""

    def __init__(
        self,
        problem: ProblemModel,
        context: SolveContext,
        constraint_tolerance: float = 1e-6,
        integer_tolerance: float = 1e-5,
    ):
        self.problem = problem
        self.context = context
        self.constraint_tolerance = constraint_tolerance
        self.integer_tolerance = integer_tolerance
        self._discrete = problem.discrete_variable_indices

    def round_discrete(self, point: Sequence[float]) -> Optional[list[float]]:
        """Round discrete coordinates; None if one is not within tolerance of an integer."""
        pt = list(point)
        for i in self._discrete:
            r = round(pt[i])
            if abs(pt[i] - r) > self.integer_tolerance:
                return None
            pt[i] = float(r)
        return pt

    def validate(
        self, point: Sequence[float], source: PrimalSolutionSource, iteration: int = 0
    ) -> Optional[PrimalSolution]:
        n = len(self.problem.variables)
        pt = self.round_discrete(list(point)[:n])
        if pt is None:
            return None
        constraints = self.problem.linear_constraints + self.problem.original_nonlinear_constraints
        max_dev = self.problem.max_deviation(pt, constraints)
        if max_dev is not None and max_dev[1] > self.constraint_tolerance:
            return None
        objective = self.problem.objective_value(pt)
        mu = self.problem.objective_variable_index
        if mu is not None:
            pt[mu] = objective
        return PrimalSolution(
            point=pt,
            source=source,
            objective_value=objective,
            iter_found=iteration,
            max_deviation=max_dev,
            is_feasible=True,
        )

    def add_candidate(
        self, point: Sequence[float], source: PrimalSolutionSource, iteration: int = 0
    ) -> Optional[PrimalSolution]:
        """Validate point and offer it to the context.

        Returns the validated solution (whether or not it improved the
        incumbent) or None when the point is not feasible.
        """
        sol = self.validate(point, source, iteration)
        if sol is None:
            return None
        if self.context.add_primal_solution(sol):
            log.info(
                "new primal solution %.10g (%s, iter %d)", sol.objective_value, source.value, iteration
            )
        return sol


__all__ = ["PrimalSolutionChecker"]
