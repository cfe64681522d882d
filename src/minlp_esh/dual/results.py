from __future__ import annotations

import logging
import math
import threading
import time
from typing import Optional

from .types import (
    DualSolution,
    Iteration,
    Point,
    PrimalSolution,
    SolutionStatistics,
    TerminationReason,
)

log = logging.getLogger(__name__)

# Denominator guard of the relative gap
GAP_EPSILON: float = 1e-10


class SolveContext:
    """Per-run owner of the canonical bounds, iteration history and statistics.

    One instance is created at the start of a run and handed to every
    component. Mutations go through the methods below, which hold `lock`, so
    they may be called from solver callbacks running on other threads.
    """

    def __init__(
        self,
        is_minimization: bool = True,
        absolute_gap_tolerance: float = 1e-3,
        relative_gap_tolerance: float = 1e-3,
        bound_tolerance: float = 1e-6,
    ):
        self.lock = threading.RLock()
        self.is_minimization = is_minimization
        self.absolute_gap_tolerance = absolute_gap_tolerance
        self.relative_gap_tolerance = relative_gap_tolerance
        self.bound_tolerance = bound_tolerance
        self.dual_bound: float = -math.inf if is_minimization else math.inf
        self.primal_bound: float = math.inf if is_minimization else -math.inf
        self.dual_solutions: list[DualSolution] = []
        self.primal_solutions: list[PrimalSolution] = []
        self.iterations: list[Iteration] = []
        self.statistics = SolutionStatistics()
        self.interior_point: Optional[Point] = None
        self.termination_reason = TerminationReason.NONE
        self._termination_requested = False
        self.start_time = time.time()

    # --- bounds -------------------------------------------------------------------
    def _improves(self, new: float, old: float, towards_optimum_from_below: bool) -> bool:
        # Dual bounds rise (min) / fall (max); primal bounds do the opposite
        if towards_optimum_from_below:
            return new > old
        return new < old

    @property
    def has_dual_bound(self) -> bool:
        return math.isfinite(self.dual_bound)

    @property
    def has_primal_bound(self) -> bool:
        return math.isfinite(self.primal_bound)

    @property
    def primal_point(self) -> Optional[Point]:
        with self.lock:
            return list(self.primal_solutions[-1].point) if self.primal_solutions else None

    def is_better_primal(self, new: float, old: float) -> bool:
        return self._improves(new, old, not self.is_minimization)

    def add_dual_solution(self, solution: DualSolution) -> bool:
        """Record a dual bound candidate; accepted only if it strictly improves."""
        value = solution.objective_value
        if value is None or math.isnan(value):
            return False
        with self.lock:
            if not self._improves(value, self.dual_bound, self.is_minimization):
                return False
            self._warn_if_crossing(value, self.primal_bound)
            self.dual_bound = float(value)
            self.dual_solutions.append(solution)
            log.debug("dual bound -> %.10g (%s, iter %d)", value, solution.source.value, solution.iter_found)
            return True

    def add_primal_solution(self, solution: PrimalSolution) -> bool:
        """Record a feasible solution; accepted only if it strictly improves the incumbent."""
        value = solution.objective_value
        if value is None or math.isnan(value) or not solution.is_feasible:
            return False
        with self.lock:
            if not self.is_better_primal(value, self.primal_bound):
                return False
            self._warn_if_crossing(self.dual_bound, value)
            self.primal_bound = float(value)
            self.primal_solutions.append(solution)
            log.debug("primal bound -> %.10g (%s, iter %d)", value, solution.source.value, solution.iter_found)
            return True

    def _warn_if_crossing(self, dual: float, primal: float) -> None:
        if not (math.isfinite(dual) and math.isfinite(primal)):
            return
        excess = dual - primal if self.is_minimization else primal - dual
        if excess > self.bound_tolerance * (1.0 + abs(primal)):
            log.warning(
                "dual bound %.10g crosses primal bound %.10g; a cut or bound is not valid",
                dual,
                primal,
            )

    def absolute_gap(self) -> float:
        with self.lock:
            if not (self.has_dual_bound and self.has_primal_bound):
                return math.inf
            return abs(self.primal_bound - self.dual_bound)

    def relative_gap(self) -> float:
        with self.lock:
            gap = self.absolute_gap()
            if not math.isfinite(gap):
                return math.inf
            return gap / (GAP_EPSILON + abs(self.primal_bound))

    def is_absolute_gap_met(self) -> bool:
        return self.absolute_gap() <= self.absolute_gap_tolerance

    def is_relative_gap_met(self) -> bool:
        return self.relative_gap() <= self.relative_gap_tolerance

    # --- iterations ---------------------------------------------------------------
    def create_iteration(self, is_mip: bool = True) -> Iteration:
        with self.lock:
            it = Iteration(number=len(self.iterations) + 1, is_mip=is_mip)
            it.dual_bound = self.dual_bound
            it.primal_bound = self.primal_bound
            self.iterations.append(it)
            return it

    @property
    def current_iteration(self) -> Optional[Iteration]:
        with self.lock:
            return self.iterations[-1] if self.iterations else None

    def ensure_unsolved_iteration(self, is_mip: bool = True) -> Iteration:
        """Current iteration, or a fresh one if it has already been solved."""
        with self.lock:
            it = self.current_iteration
            if it is None or it.is_solved:
                it = self.create_iteration(is_mip=is_mip)
            return it

    @property
    def iteration_count(self) -> int:
        return len(self.iterations)

    # --- termination --------------------------------------------------------------
    def request_termination(self, reason: TerminationReason = TerminationReason.USER_ABORT) -> None:
        with self.lock:
            self._termination_requested = True
            if self.termination_reason is TerminationReason.NONE:
                self.termination_reason = reason

    @property
    def termination_requested(self) -> bool:
        return self._termination_requested

    def elapsed(self) -> float:
        return time.time() - self.start_time


__all__ = ["SolveContext", "GAP_EPSILON"]
