from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Optional, Sequence

from .problem import ProblemModel
from .results import SolveContext
from .rootsearch import Rootsearch
from .types import (
    CutStrategy,
    Hyperplane,
    HyperplaneSource,
    Iteration,
    ObjectiveClassification,
    Point,
    SolutionPoint,
)

if TYPE_CHECKING:
    from ..config import DualConfig

log = logging.getLogger(__name__)


class HyperplaneGenerator:
    """Choose linearization points for violated nonlinear constraints.

    ECP linearizes at the candidate itself. ESH runs a root-search from the
    interior point held by the context towards the candidate and linearizes
    at the boundary point it finds. Boundary points found on the way are kept
    as primal candidates (see `take_primal_candidates`).
    """

    def __init__(
        self,
        problem: ProblemModel,
        context: SolveContext,
        cfg: "DualConfig",
        rootsearch: Rootsearch,
    ):
        self.problem = problem
        self.context = context
        self.cfg = cfg
        self.rootsearch = rootsearch
        self._primal_candidates: list[Point] = []
        self._ecp_notice_done = False

    def _source_for(self, i: int, iteration: Iteration, source: Optional[HyperplaneSource]) -> HyperplaneSource:
        if source is not None:
            return source
        if i == 0 and iteration.is_mip:
            return HyperplaneSource.MIP_OPTIMAL_SOLUTION_POINT
        if iteration.is_mip:
            return HyperplaneSource.MIP_SOLUTION_POOL_SOLUTION_POINT
        return HyperplaneSource.LP_RELAXED_SOLUTION_POINT

    def generate(
        self,
        points: Sequence[SolutionPoint],
        iteration: Iteration,
        source: Optional[HyperplaneSource] = None,
    ) -> list[Hyperplane]:
        """Hyperplanes for the configured strategy plus the objective linesearch."""
        if self.cfg.cut_strategy is CutStrategy.ESH:
            hps = self.select_esh(points, iteration, source)
        else:
            hps = self.select_ecp(points, iteration, source)
        room = self.cfg.max_hyperplanes_per_iteration - len(hps)
        if room > 0:
            hps.extend(self.select_objective_linesearch(points, iteration)[:room])
        return hps

    def _selected(self, point: Sequence[float]):
        return self.problem.most_deviating_constraints(point, self.cfg.constraint_selection_factor)

    def select_ecp(
        self,
        points: Sequence[SolutionPoint],
        iteration: Iteration,
        source: Optional[HyperplaneSource] = None,
    ) -> list[Hyperplane]:
        out: list[Hyperplane] = []
        cap = self.cfg.max_hyperplanes_per_iteration
        for i, sp in enumerate(points):
            for constraint, value in self._selected(sp.point):
                if len(out) >= cap:
                    return out
                if value <= 0:
                    log.info("point is in the interior of %s (value %.3g); no cut", constraint.name, value)
                    continue
                out.append(Hyperplane(constraint, list(sp.point), self._source_for(i, iteration, source)))
        return out

    def select_esh(
        self,
        points: Sequence[SolutionPoint],
        iteration: Iteration,
        source: Optional[HyperplaneSource] = None,
    ) -> list[Hyperplane]:
        interior = self.context.interior_point
        if interior is None:
            if not self._ecp_notice_done:
                log.info("no interior point available; generating ECP cuts instead of ESH")
                self._ecp_notice_done = True
            return self.select_ecp(points, iteration, source)

        out: list[Hyperplane] = []
        cap = self.cfg.max_hyperplanes_per_iteration
        for i, sp in enumerate(points):
            for constraint, value in self._selected(sp.point):
                if len(out) >= cap:
                    return out
                if value <= 0:
                    log.info("point is in the interior of %s (value %.3g); no cut", constraint.name, value)
                    continue
                res = self.rootsearch.find_zero(interior, sp.point, [constraint])
                self.context.statistics.rootsearches += 1
                if self.cfg.use_primal_linesearch:
                    self._primal_candidates.append(list(res.point))
                out.append(Hyperplane(constraint, res.point, self._source_for(i, iteration, source)))
        return out

    def select_objective_linesearch(
        self, points: Sequence[SolutionPoint], iteration: Iteration
    ) -> list[Hyperplane]:
        """Epigraph cuts at the point where the objective variable meets f(x).

        Only used for objectives that are nonlinear beyond quadratic.
        """
        problem = self.problem
        epigraph = problem.objective_constraint
        mu = problem.objective_variable_index
        if (
            problem.objective_classification is not ObjectiveClassification.NONLINEAR
            or epigraph is None
            or mu is None
        ):
            return []
        out: list[Hyperplane] = []
        for sp in points:
            if problem.evaluate(epigraph, sp.point) <= 0:
                continue
            f = problem.objective_value(sp.point)
            if not math.isfinite(f):
                continue
            interior = list(sp.point)
            # one unit past the epigraph boundary along the objective variable
            interior[mu] = f + (1.0 if problem.is_minimize else -1.0)
            res = self.rootsearch.find_zero(interior, sp.point, [epigraph])
            self.context.statistics.rootsearches += 1
            out.append(
                Hyperplane(epigraph, res.point, HyperplaneSource.OBJECTIVE_LINESEARCH, is_objective_hyperplane=True)
            )
        return out

    def take_primal_candidates(self) -> list[Point]:
        pts, self._primal_candidates = self._primal_candidates, []
        return pts


__all__ = ["HyperplaneGenerator"]
