from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from .problem import ProblemModel
from .types import NumericConstraint, Point

log = logging.getLogger(__name__)


@dataclass(slots=True)
class RootsearchResult:
    # Boundary point on the feasible side (never beyond tolerance on the infeasible side)
    point: Point
    interior_point: Point
    exterior_point: Point
    lambda_value: float
    value: float
    iterations: int = 0


def _on_segment(interior: Sequence[float], exterior: Sequence[float], lam: float) -> Point:
    return [a + lam * (b - a) for a, b in zip(interior, exterior)]


class Rootsearch:
    """Locate the boundary of {x : max_i g_i(x) <= 0} on a segment.

    Searches f(lam) = max_i g_i(interior + lam * (exterior - interior)) over
    [0, 1] with Illinois-modified false position, switching to bisection
    whenever a step fails to halve the bracket.
    """

    def __init__(
        self,
        problem: ProblemModel,
        iteration_limit: int = 100,
        lambda_tolerance: float = 1e-10,
        constraint_tolerance: float = 1e-8,
    ):
        self.problem = problem
        self.iteration_limit = iteration_limit
        self.lambda_tolerance = lambda_tolerance
        self.constraint_tolerance = constraint_tolerance

    def _value(self, point: Sequence[float], constraints: Sequence[NumericConstraint]) -> float:
        v = max(self.problem.evaluate(c, point) for c in constraints)
        return math.inf if math.isnan(v) else v

    def find_zero(
        self,
        interior: Sequence[float],
        exterior: Sequence[float],
        constraints: Sequence[NumericConstraint],
    ) -> RootsearchResult:
        if not constraints:
            raise ValueError("root-search needs at least one constraint")
        if len(interior) != len(exterior):
            raise ValueError("interior and exterior points differ in dimension")
        interior = list(interior)
        exterior = list(exterior)
        tol = self.constraint_tolerance

        f_ext = self._value(exterior, constraints)
        if f_ext <= tol:
            return RootsearchResult(list(exterior), interior, exterior, 1.0, f_ext)
        f_int = self._value(interior, constraints)
        if f_int > 0:
            log.warning("root-search: interior point is not feasible (max value %.3g)", f_int)
            return RootsearchResult(list(interior), interior, exterior, 0.0, f_int)

        lo, hi = 0.0, 1.0
        f_lo, f_hi = f_int, f_ext
        # Illinois-scaled copies used only for the secant step
        s_lo, s_hi = f_lo, f_hi
        side = 0
        bisect = False
        width = hi - lo
        it = 0
        while it < self.iteration_limit and hi - lo > self.lambda_tolerance:
            it += 1
            lam = 0.5 * (lo + hi)
            if not bisect and math.isfinite(s_hi) and s_hi != s_lo:
                cand = (lo * s_hi - hi * s_lo) / (s_hi - s_lo)
                if lo < cand < hi:
                    lam = cand
            f = self._value(_on_segment(interior, exterior, lam), constraints)
            if f <= 0:
                lo, f_lo, s_lo = lam, f, f
                if side == -1:
                    s_hi *= 0.5
                side = -1
            else:
                hi, f_hi, s_hi = lam, f, f
                if side == 1:
                    s_lo *= 0.5
                side = 1
            bisect = (hi - lo) > 0.5 * width
            width = hi - lo
            if abs(f) <= tol:
                break

        if f_hi <= tol:
            lam, value = hi, f_hi
        else:
            lam, value = lo, f_lo
        log.debug("root-search: lambda=%.6g value=%.3g after %d iteration(s)", lam, value, it)
        return RootsearchResult(_on_segment(interior, exterior, lam), interior, exterior, lam, value, it)


__all__ = ["Rootsearch", "RootsearchResult"]
