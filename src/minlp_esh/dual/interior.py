from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from .problem import ProblemModel
from .results import SolveContext
from .subsolver import MIPSubsolver
from .types import Point, SolutionStatus, SolveLimits, VariableType

if TYPE_CHECKING:
    from ..config import InteriorPointConfig

log = logging.getLogger(__name__)

# Stop the minimax loop once the LP value is this close to the true max
MINIMAX_CONVERGENCE_TOL: float = 1e-6


class InteriorPointFinder:
    """Find and maintain a point strictly inside the nonlinear feasible set.

    The search solves the minimax problem ``min t s.t. g_i(x) <= t`` by
    Kelley cutting planes over the linear constraints, with integrality
    dropped and every column boxed into +-variable_bound.
    """

    def __init__(
        self,
        problem: ProblemModel,
        context: SolveContext,
        cfg: "InteriorPointConfig",
        subsolver_factory: Optional[Callable[[], MIPSubsolver]] = None,
    ):
        self.problem = problem
        self.context = context
        self.cfg = cfg
        self.subsolver_factory = subsolver_factory
        self.deviation = math.inf

    def _deviation(self, point: Sequence[float]) -> float:
        md = self.problem.max_deviation(point)
        return md[1] if md is not None else -math.inf

    def _accept(self, point: Point, deviation: float, origin: str) -> None:
        self.context.interior_point = list(point)
        self.deviation = deviation
        log.info("interior point from %s (max constraint value %.6g)", origin, deviation)

    def find(self) -> Optional[Point]:
        n = len(self.problem.variables)
        if self.cfg.initial_point is not None:
            if len(self.cfg.initial_point) != n:
                raise ValueError(
                    f"interior_point.initial_point has {len(self.cfg.initial_point)} entries, expected {n}"
                )
            pt = list(self.cfg.initial_point)
            dev = self._deviation(pt)
            if dev >= 0:
                log.warning("configured interior point is not strictly feasible (max value %.6g)", dev)
            self._accept(pt, dev, "configuration")
            return pt
        if not self.problem.nonlinear_constraints or not self.cfg.enabled:
            return None
        if self.subsolver_factory is None:
            log.info("no subsolver available for the interior point search")
            return None
        pt, dev = self._minimax()
        if pt is None or dev >= 0:
            log.warning("no interior point found; ESH cuts fall back to ECP")
            return None
        self._accept(pt, dev, "minimax search")
        return pt

    def _minimax(self) -> tuple[Optional[Point], float]:
        problem = self.problem
        bound = self.cfg.variable_bound
        sub = self.subsolver_factory()
        for v in problem.variables:
            lo = max(v.lower, -bound)
            up = min(v.upper, bound)
            sub.add_variable(v.name, VariableType.CONTINUOUS, lo, up)
        n = len(problem.variables)
        t = sub.add_variable("minimax_t", VariableType.CONTINUOUS, self.cfg.objective_lower_bound, bound)
        for c in problem.linear_constraints:
            sub.add_linear_constraint(c.coefficients, c.rhs, c.name, c.sense)
        sub.set_objective({t: 1.0}, 0.0, True)

        best: Optional[Point] = None
        best_dev = math.inf
        for k in range(self.cfg.iteration_limit):
            status = sub.solve(SolveLimits())
            if status is not SolutionStatus.OPTIMAL or sub.get_number_of_solutions() == 0:
                log.info("minimax LP %d ended with status %s", k + 1, status.value)
                break
            sol = sub.get_solution(0)
            x, t_val = sol[:n], sol[t]
            dev = self._deviation(x)
            if dev < best_dev:
                best, best_dev = list(x), dev
            if dev - t_val <= MINIMAX_CONVERGENCE_TOL:
                break
            added = 0
            for c in problem.nonlinear_constraints:
                g = problem.evaluate(c, x)
                if not g > t_val:
                    continue
                grad = problem.gradient(c, x)
                if not math.isfinite(g) or any(not math.isfinite(a) for a in grad.values()):
                    continue
                coefficients = dict(grad)
                coefficients[t] = -1.0
                rhs = sum(a * x[i] for i, a in grad.items()) - g
                sub.add_linear_constraint(coefficients, rhs, f"minimax_{k}_{c.index}", "<=")
                added += 1
            if added == 0:
                break
        log.debug("minimax search: best max constraint value %.6g", best_dev)
        return best, best_dev

    def update_from_primal(self, point: Sequence[float]) -> bool:
        """Replace the interior point by a primal point that lies deeper inside."""
        pt = list(point)
        mu = self.problem.objective_variable_index
        if mu is not None:
            f = self.problem.objective_value(pt)
            if not math.isfinite(f):
                return False
            pt[mu] = f + (1.0 if self.problem.is_minimize else -1.0)
        dev = self._deviation(pt)
        if dev < 0 and dev < self.deviation:
            self._accept(pt, dev, "primal solution")
            return True
        return False


__all__ = ["InteriorPointFinder"]
