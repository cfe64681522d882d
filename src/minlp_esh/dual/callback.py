from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Optional

from .events import (
    AbortSearch,
    Command,
    Event,
    NewBound,
    NewIncumbent,
    NodeRelaxationSolved,
    NoAction,
    UpdateCutoff,
)
from .hyperplanes import HyperplaneGenerator
from .primal import PrimalSolutionChecker
from .problem import ProblemModel
from .relaxation import RelaxationManager
from .results import SolveContext
from .types import (
    DualSolution,
    DualSolutionSource,
    HyperplaneSource,
    PrimalSolutionSource,
    SolutionPoint,
    SolutionStatus,
    TerminationReason,
)

if TYPE_CHECKING:
    from ..config import ESHConfig

log = logging.getLogger(__name__)

TerminationCheck = Callable[[SolveContext], bool]


class LazyCallbackHandler:
    """Respond to events from a subsolver's branch-and-bound search.

    The whole body runs under the context lock: the subsolver may call it
    from several worker threads at once.
    """

    def __init__(
        self,
        problem: ProblemModel,
        context: SolveContext,
        relaxation: RelaxationManager,
        generator: HyperplaneGenerator,
        checker: PrimalSolutionChecker,
        cfg: "ESHConfig",
        termination_checks: Optional[list[TerminationCheck]] = None,
        dual_bound_certified: Optional[Callable[[], bool]] = None,
    ):
        self.problem = problem
        self.context = context
        self.relaxation = relaxation
        self.generator = generator
        self.checker = checker
        self.cfg = cfg
        self.termination_checks = termination_checks if termination_checks is not None else []
        self._certified = dual_bound_certified or (
            lambda: not (relaxation.has_nonconvex_cuts or relaxation.has_integer_cuts)
        )
        self.abort_reason: Optional[TerminationReason] = None
        self._last_cutoff = math.inf if problem.is_minimize else -math.inf

    def __call__(self, event: Event) -> list[Command]:
        with self.context.lock:
            if isinstance(event, NewBound):
                self._on_bound(event)
                commands: list[Command] = []
            elif isinstance(event, NodeRelaxationSolved):
                self._propose_dual(event.dual_bound)
                if self._check_abort():
                    return [AbortSearch(self.abort_reason)]
                commands = self._on_node(event)
            elif isinstance(event, NewIncumbent):
                commands = self._on_incumbent(event)
            else:
                raise TypeError(f"unsupported callback event {type(event).__name__}")
            if self._check_abort():
                commands.append(AbortSearch(self.abort_reason))
            return commands or [NoAction()]

    def _propose_dual(self, bound: Optional[float]) -> None:
        if bound is None or not math.isfinite(bound) or not self._certified():
            return
        it = self.context.current_iteration
        self.context.add_dual_solution(
            DualSolution([], DualSolutionSource.MIP_SOLVER_BOUND, float(bound), it.number if it else 0)
        )

    def _on_bound(self, event: NewBound) -> None:
        stats = self.context.statistics
        stats.explored_nodes = max(stats.explored_nodes, int(event.explored_nodes))
        stats.open_nodes = int(event.open_nodes)
        self._propose_dual(event.dual_bound)

    def _on_node(self, event: NodeRelaxationSolved) -> list[Command]:
        limit = self.cfg.dual.max_lazy_constraints
        it = self.context.ensure_unsolved_iteration()
        if it.relaxed_lazy_hyperplanes_added >= limit:
            return []
        sp = SolutionPoint(
            point=list(event.point),
            objective_value=math.nan,
            max_deviation=self.problem.max_deviation(event.point),
            iter_found=it.number,
        )
        hps = self.generator.generate([sp], it, source=HyperplaneSource.MIP_CALLBACK_RELAXED)
        self.generator.take_primal_candidates()
        commands: list[Command] = []
        for hp in hps[: limit - it.relaxed_lazy_hyperplanes_added]:
            row = self.relaxation.build_lazy_row(hp, it)
            if row is not None:
                commands.append(row)
        it.relaxed_lazy_hyperplanes_added += len(commands)
        return commands

    def _on_incumbent(self, event: NewIncumbent) -> list[Command]:
        self._propose_dual(event.dual_bound)
        it = self.context.ensure_unsolved_iteration()
        point = list(event.point)
        sp = SolutionPoint(
            point=point,
            objective_value=float(event.objective_value),
            max_deviation=self.problem.max_deviation(point),
            iter_found=it.number,
        )
        sol = self.checker.add_candidate(point, PrimalSolutionSource.LAZY_CONSTRAINT_CALLBACK, it.number)
        if sol is not None and self.cfg.dual.use_integer_cuts and not self.problem.is_convex:
            self.relaxation.queue_integer_cut_from_point(sol.point, self.cfg.termination.integer_tolerance)

        commands: list[Command] = []
        if sp.max_violation > self.cfg.termination.constraint_tolerance:
            hps = self.generator.generate([sp], it, source=HyperplaneSource.LAZY_CONSTRAINT_CALLBACK)
            for candidate in self.generator.take_primal_candidates():
                self.checker.add_candidate(candidate, PrimalSolutionSource.ROOTSEARCH, it.number)
            for hp in hps:
                row = self.relaxation.build_lazy_row(hp, it)
                if row is not None:
                    commands.append(row)
            commands.extend(self.relaxation.build_lazy_integer_cuts(it))
            it.status = SolutionStatus.FEASIBLE
            it.objective_value = sp.objective_value
            it.solution_points = [sp]
            it.explored_nodes = self.context.statistics.explored_nodes
            it.open_nodes = self.context.statistics.open_nodes
            it.dual_bound = self.context.dual_bound
            it.primal_bound = self.context.primal_bound
            it.is_solved = True
            log.info(
                "iter %d (lazy): obj=%.6g maxdev=%.3g cuts=%d dual=%.6g primal=%.6g",
                it.number,
                sp.objective_value,
                sp.max_violation,
                len(commands),
                self.context.dual_bound,
                self.context.primal_bound,
            )

        if self.cfg.dual.use_cutoff and self.context.has_primal_bound:
            primal = self.context.primal_bound
            if self.context.is_better_primal(primal, self._last_cutoff):
                self._last_cutoff = primal
                tol = self.cfg.dual.cutoff_tolerance
                commands.append(UpdateCutoff(primal + tol if self.problem.is_minimize else primal - tol))
        return commands

    def _check_abort(self) -> bool:
        ctx = self.context
        reason: Optional[TerminationReason] = None
        if ctx.termination_requested:
            reason = ctx.termination_reason if ctx.termination_reason is not TerminationReason.NONE else TerminationReason.USER_ABORT
        elif ctx.is_absolute_gap_met():
            reason = TerminationReason.ABSOLUTE_GAP
        elif ctx.is_relative_gap_met():
            reason = TerminationReason.RELATIVE_GAP
        elif ctx.iteration_count >= self.cfg.termination.iteration_limit:
            reason = TerminationReason.ITERATION_LIMIT
        elif ctx.elapsed() >= self.cfg.termination.time_limit_s:
            reason = TerminationReason.TIME_LIMIT
        elif any(check(ctx) for check in self.termination_checks):
            reason = TerminationReason.USER_ABORT
        if reason is None:
            return False
        if self.abort_reason is None:
            self.abort_reason = reason
            log.info("requesting the subsolver to stop its search: %s", reason.value)
        return True


__all__ = ["LazyCallbackHandler", "TerminationCheck"]
