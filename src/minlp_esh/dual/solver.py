from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import ESHConfig
from .callback import LazyCallbackHandler, TerminationCheck
from .hyperplanes import HyperplaneGenerator
from .interior import InteriorPointFinder
from .primal import PrimalSolutionChecker
from .problem import ProblemModel
from .relaxation import RelaxationManager
from .results import SolveContext
from .rootsearch import Rootsearch
from .subsolver import EffectiveSettings, MIPSubsolver
from .types import (
    ControllerState,
    CutStrategy,
    DualSolution,
    DualSolutionSource,
    Iteration,
    Point,
    PrimalSolutionSource,
    SolutionPoint,
    SolutionStatistics,
    SolutionStatus,
    SolveLimits,
    SolveStatus,
    TerminationReason,
)

log = logging.getLogger(__name__)

_LIMIT_STATUSES = (
    SolutionStatus.SOLUTION_LIMIT,
    SolutionStatus.TIME_LIMIT,
    SolutionStatus.NODE_LIMIT,
    SolutionStatus.FEASIBLE,
)


@dataclass(slots=True)
class DualRunResult:
    status: SolveStatus
    termination: TerminationReason
    iterations: int
    dual_bound: Optional[float]
    primal_bound: Optional[float]
    primal_point: Optional[Point]
    absolute_gap: Optional[float]
    relative_gap: Optional[float]
    statistics: SolutionStatistics
    elapsed_s: float = 0.0


class DualSolver:
    """Iteration controller of the supporting-hyperplane method.

    Each iteration solves the current relaxation, extracts and validates
    candidate points, generates cuts for the violated nonlinear constraints,
    then updates the dual bound and checks termination. With
    `dual.use_lazy_constraints` and a subsolver that supports it, one solve
    drives the whole search through LazyCallbackHandler instead.
    """

    def __init__(
        self,
        problem: ProblemModel,
        subsolver: MIPSubsolver,
        cfg: ESHConfig,
        subsolver_factory: Optional[Callable[[], MIPSubsolver]] = None,
    ):
        self.problem = problem
        self.subsolver = subsolver
        self.cfg = cfg
        term = cfg.termination
        self.context = SolveContext(
            is_minimization=problem.is_minimize,
            absolute_gap_tolerance=term.absolute_gap,
            relative_gap_tolerance=term.relative_gap,
        )
        self.relaxation = RelaxationManager(problem, subsolver, self.context, cfg.dual, cfg.output)
        rs = cfg.rootsearch
        self.rootsearch = Rootsearch(problem, rs.iteration_limit, rs.lambda_tolerance, rs.constraint_tolerance)
        self.generator = HyperplaneGenerator(problem, self.context, cfg.dual, self.rootsearch)
        self.checker = PrimalSolutionChecker(
            problem, self.context, term.constraint_tolerance, term.integer_tolerance
        )
        self.interior = InteriorPointFinder(problem, self.context, cfg.interior_point, subsolver_factory)
        self.state = ControllerState.IDLE
        self._termination_checks: list[TerminationCheck] = []
        self._handler: Optional[LazyCallbackHandler] = None
        self._unbounded_repair_active = False
        self.settings: Optional[EffectiveSettings] = None

    # --- public hooks -------------------------------------------------------------
    def register_termination_check(self, check: TerminationCheck) -> None:
        """Add a predicate on the solve context; returning True stops the run."""
        self._termination_checks.append(check)

    def request_termination(self) -> None:
        self.context.request_termination(TerminationReason.USER_ABORT)

    # --- helpers ------------------------------------------------------------------
    def _dual_bound_certified(self) -> bool:
        return not (
            self.relaxation.has_nonconvex_cuts
            or self.relaxation.has_integer_cuts
            or self._unbounded_repair_active
        )

    def _time_left(self) -> float:
        return self.cfg.termination.time_limit_s - self.context.elapsed()

    def _check_limits(self) -> TerminationReason:
        ctx = self.context
        if ctx.termination_requested:
            return TerminationReason.USER_ABORT
        if any(check(ctx) for check in self._termination_checks):
            log.info("user termination check requested a stop")
            return TerminationReason.USER_ABORT
        if ctx.iteration_count >= self.cfg.termination.iteration_limit:
            log.warning("iteration limit reached: %d", self.cfg.termination.iteration_limit)
            return TerminationReason.ITERATION_LIMIT
        if self._time_left() <= 0:
            log.warning("time limit reached: %.1fs", self.cfg.termination.time_limit_s)
            return TerminationReason.TIME_LIMIT
        return TerminationReason.NONE

    def _limits(self, is_mip: bool, solution_limit: Optional[int]) -> SolveLimits:
        node_limit = self.cfg.dual.node_limit or None
        return SolveLimits(
            time_limit=max(self._time_left(), 0.0),
            node_limit=node_limit if is_mip else None,
            solution_limit=solution_limit if is_mip else None,
        )

    def _extract_points(self, it: Iteration) -> list[SolutionPoint]:
        points = []
        n = len(self.problem.variables)
        for i in range(self.subsolver.get_number_of_solutions()):
            pt = self.subsolver.get_solution(i)[:n]
            points.append(
                SolutionPoint(
                    point=pt,
                    objective_value=self.subsolver.get_objective_value(i),
                    max_deviation=self.problem.max_deviation(pt),
                    iter_found=it.number,
                )
            )
        return points

    def _update_dual(self, it: Iteration, status: SolutionStatus) -> None:
        if not self._dual_bound_certified():
            return
        if status is SolutionStatus.OPTIMAL:
            source = DualSolutionSource.MIP_SOLUTION_OPTIMAL if it.is_mip else DualSolutionSource.LP_SOLUTION
        elif status in _LIMIT_STATUSES and it.is_mip:
            source = DualSolutionSource.MIP_SOLVER_BOUND
        else:
            return
        bound = self.subsolver.get_dual_bound()
        if math.isfinite(bound):
            point = it.solution_points[0].point if (it.solution_points and status is SolutionStatus.OPTIMAL) else []
            self.context.add_dual_solution(DualSolution(list(point), source, bound, it.number))

    def _check_primal(self, points: list[SolutionPoint], it: Iteration) -> int:
        found = 0
        for i, sp in enumerate(points):
            source = PrimalSolutionSource.MIP_SOLUTION if i == 0 else PrimalSolutionSource.MIP_SOLUTION_POOL
            sol = self.checker.add_candidate(sp.point, source, it.number)
            if sol is None:
                continue
            found += 1
            self.interior.update_from_primal(sol.point)
            if it.is_mip and self.cfg.dual.use_integer_cuts and not self.problem.is_convex:
                self.relaxation.queue_integer_cut_from_point(sol.point, self.cfg.termination.integer_tolerance)
        return found

    def _check_linesearch_candidates(self, it: Iteration) -> None:
        for pt in self.generator.take_primal_candidates():
            self.checker.add_candidate(pt, PrimalSolutionSource.ROOTSEARCH, it.number)

    def _propose_cutoff_certificate(self, it: Iteration) -> None:
        """An infeasible convex relaxation below the cutoff proves the incumbent."""
        if not self.context.has_primal_bound or self.relaxation.has_nonconvex_cuts:
            return
        bound = self.relaxation.cutoff_bound()
        primal = self.context.primal_bound
        # the cutoff tolerance must not push the certificate past the incumbent
        if bound is None or self.context.is_better_primal(primal, bound):
            bound = primal
        self.context.add_dual_solution(
            DualSolution([], DualSolutionSource.CUTOFF_INFEASIBLE, bound, it.number)
        )

    def _report(self, it: Iteration, n_cuts: int) -> None:
        every = max(1, self.cfg.run.print_every)
        if it.number % every != 0:
            return
        best = it.solution_points[0] if it.solution_points else None
        log.info(
            "iter %d %s %s: obj=%s maxdev=%s cuts=%d dual=%.6g primal=%.6g gap=%.3g rel=%.3g",
            it.number,
            "MIP" if it.is_mip else "LP",
            it.status.value if it.status else "-",
            f"{it.objective_value:.6g}" if it.objective_value is not None else "-",
            f"{best.max_violation:.3g}" if best is not None else "-",
            n_cuts,
            self.context.dual_bound,
            self.context.primal_bound,
            self.context.absolute_gap(),
            self.context.relative_gap(),
        )

    def _install_callback(self) -> bool:
        if not self.settings.use_lazy_constraints:
            return False
        if not self.subsolver.supports_lazy_constraints:
            log.info("lazy constraints requested but the subsolver cannot take them; polling instead")
            return False
        self._handler = LazyCallbackHandler(
            self.problem,
            self.context,
            self.relaxation,
            self.generator,
            self.checker,
            self.cfg,
            termination_checks=self._termination_checks,
            dual_bound_certified=self._dual_bound_certified,
        )
        self.subsolver.register_callback(self._handler)
        log.info("using lazy constraints through the subsolver callback")
        return True

    # --- main loop ----------------------------------------------------------------
    def run(self) -> DualRunResult:
        ctx = self.context
        dual_cfg = self.cfg.dual
        self.settings = self.subsolver.check_parameters(self.cfg)
        self.relaxation.initialize()
        if dual_cfg.cut_strategy is CutStrategy.ESH and self.problem.nonlinear_constraints:
            self.interior.find()
        lazy = self._install_callback()

        has_discrete = bool(self.problem.discrete_variable_indices)
        lp_phase = dual_cfg.lp_iteration_limit > 0 and has_discrete and not lazy
        if lp_phase:
            self.subsolver.activate_discrete_variables(False)
        lp_iterations = 0
        prev_lp_objective: Optional[float] = None
        solution_limit = dual_cfg.solution_limit or None
        repairs_in_row = 0
        termination = TerminationReason.NONE

        while termination is TerminationReason.NONE:
            self.state = ControllerState.TERMINATION_CHECK
            termination = self._check_limits()
            if termination is not TerminationReason.NONE:
                break

            it = ctx.create_iteration(is_mip=not lp_phase)
            it.solution_limit = solution_limit
            with ctx.lock:
                self.relaxation.apply_pending(it)
                self.relaxation.apply_pending_integer_cuts(it)
                if dual_cfg.use_cutoff and ctx.has_primal_bound:
                    self.relaxation.set_cutoff(ctx.primal_bound)
                if it.is_mip and ctx.primal_point is not None:
                    self.subsolver.clear_mip_starts()
                    self.subsolver.set_mip_start(dict(enumerate(ctx.primal_point)))

            self.state = ControllerState.RELAXATION_SOLVING
            limits = self._limits(it.is_mip, solution_limit)
            status = self.subsolver.solve(limits)
            with ctx.lock:
                self.relaxation.adopt_lazy_rows(self.subsolver.take_promoted_lazy_rows())
            if it.is_mip:
                ctx.statistics.mip_solves += 1
            else:
                ctx.statistics.lp_solves += 1
            if lazy:
                # the callback may have opened further iterations during the search
                it = ctx.ensure_unsolved_iteration()
            it.status = status

            if status is SolutionStatus.UNBOUNDED:
                it.has_unbounded_repair_been_performed = True
                self._unbounded_repair_active = True
                status = self.relaxation.solve_bounded_relaxation(limits)
                it.status = status
                if status is SolutionStatus.UNBOUNDED:
                    termination = TerminationReason.UNBOUNDED
                    break

            if status is SolutionStatus.INFEASIBLE:
                if (
                    dual_cfg.infeasibility_repair
                    and self.relaxation.has_nonconvex_cuts
                    and repairs_in_row < dual_cfg.max_infeasibility_repairs
                ):
                    repairs_in_row += 1
                    it.has_infeasibility_repair_been_performed = True
                    if self.relaxation.repair_infeasibility(limits):
                        it.is_solved = True
                        continue
                self._propose_cutoff_certificate(it)
                log.info("relaxation is infeasible in iteration %d", it.number)
                termination = TerminationReason.INFEASIBLE
                break
            repairs_in_row = 0

            if status is SolutionStatus.ERROR:
                log.error("subsolver reported an error in iteration %d", it.number)
                termination = TerminationReason.ERROR
                break

            self.state = ControllerState.CANDIDATE_EXTRACTION
            points = self._extract_points(it)
            if status is SolutionStatus.ABORT and not points:
                termination = self._handler.abort_reason if (self._handler and self._handler.abort_reason) else TerminationReason.USER_ABORT
                break
            if not points:
                log.error("relaxation returned status %s without a solution", status.value)
                termination = TerminationReason.ERROR if status is SolutionStatus.OPTIMAL else TerminationReason.NO_PROGRESS
                break
            it.solution_points = points
            it.objective_value = points[0].objective_value
            it.explored_nodes = self.subsolver.get_explored_node_count()
            ctx.statistics.explored_nodes += it.explored_nodes

            with ctx.lock:
                self._check_primal(points, it)

                self.state = ControllerState.CUT_GENERATION
                hps = self.generator.generate(points, it)
                self.relaxation.queue_hyperplanes(hps)
                n_integer_cuts = len(self.relaxation.integer_cut_waiting_list)

                # queued cuts are not in the relaxation yet, so the solved bound still holds
                self.state = ControllerState.BOUND_UPDATE
                if status is not SolutionStatus.ABORT:
                    self._update_dual(it, status)
                self._unbounded_repair_active = False
                self._check_linesearch_candidates(it)
                it.dual_bound = ctx.dual_bound
                it.primal_bound = ctx.primal_bound
                it.is_solved = True
            self._report(it, len(hps))

            self.state = ControllerState.TERMINATION_CHECK
            if status is SolutionStatus.ABORT:
                termination = self._handler.abort_reason if (self._handler and self._handler.abort_reason) else TerminationReason.USER_ABORT
                break
            if ctx.is_absolute_gap_met():
                termination = TerminationReason.ABSOLUTE_GAP
                break
            if ctx.is_relative_gap_met():
                termination = TerminationReason.RELATIVE_GAP
                break
            best = points[0]
            feasible = best.max_violation <= self.cfg.termination.constraint_tolerance
            if (
                it.is_mip
                and status is SolutionStatus.OPTIMAL
                and feasible
                and self.checker.round_discrete(best.point) is not None
            ):
                termination = TerminationReason.CONSTRAINT_TOLERANCE
                break

            if lp_phase:
                lp_iterations += 1
                obj = it.objective_value
                stalled = prev_lp_objective is not None and abs(obj - prev_lp_objective) <= dual_cfg.lp_objective_tolerance
                prev_lp_objective = obj
                if lp_iterations >= dual_cfg.lp_iteration_limit or not hps or stalled:
                    lp_phase = False
                    self.subsolver.activate_discrete_variables(True)
                    log.info("switching from LP to MIP relaxations after %d LP iteration(s)", lp_iterations)
                continue

            if (
                solution_limit is not None
                and status is SolutionStatus.SOLUTION_LIMIT
                and all(p.max_violation <= self.cfg.termination.constraint_tolerance for p in points)
            ):
                solution_limit += 1
                log.info("all solutions feasible; solution limit increased to %d", solution_limit)
                continue

            if not hps and n_integer_cuts == 0 and not feasible:
                log.warning("no cuts could be generated for an infeasible point; stopping")
                termination = TerminationReason.NO_PROGRESS
                break
            if not hps and n_integer_cuts == 0 and status is SolutionStatus.OPTIMAL and not lazy:
                termination = TerminationReason.NO_PROGRESS
                break

        self.state = ControllerState.TERMINATED
        if self._handler is not None:
            self.subsolver.register_callback(None)
        return self._result(termination)

    def _result(self, termination: TerminationReason) -> DualRunResult:
        ctx = self.context
        ctx.termination_reason = termination
        has_primal = ctx.has_primal_bound
        if termination is TerminationReason.ERROR:
            status = SolveStatus.ERROR
        elif termination is TerminationReason.UNBOUNDED and not has_primal:
            status = SolveStatus.UNBOUNDED
        elif ctx.is_absolute_gap_met() or ctx.is_relative_gap_met():
            status = SolveStatus.OPTIMAL
        elif has_primal:
            status = SolveStatus.FEASIBLE
        elif termination is TerminationReason.INFEASIBLE:
            status = SolveStatus.INFEASIBLE
        else:
            status = SolveStatus.UNKNOWN
        result = DualRunResult(
            status=status,
            termination=termination,
            iterations=ctx.iteration_count,
            dual_bound=ctx.dual_bound if ctx.has_dual_bound else None,
            primal_bound=ctx.primal_bound if has_primal else None,
            primal_point=ctx.primal_point,
            absolute_gap=ctx.absolute_gap() if has_primal and ctx.has_dual_bound else None,
            relative_gap=ctx.relative_gap() if has_primal and ctx.has_dual_bound else None,
            statistics=ctx.statistics,
            elapsed_s=ctx.elapsed(),
        )
        log.info(
            "finished: %s (%s) after %d iteration(s) in %.2fs; dual=%s primal=%s",
            status.value,
            termination.value,
            result.iterations,
            result.elapsed_s,
            result.dual_bound,
            result.primal_bound,
        )
        return result


__all__ = ["DualSolver", "DualRunResult"]
