from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from .events import AddLazyRow
from .problem import ProblemModel
from .results import SolveContext
from .subsolver import MIPSubsolver
from .types import (
    GeneratedHyperplane,
    Hyperplane,
    Iteration,
    SolutionStatus,
    SolveLimits,
    VariableType,
)

if TYPE_CHECKING:
    from ..config import DualConfig, OutputConfig

log = logging.getLogger(__name__)


# rounding digits for coefficients in signatures
COEFF_ROUND_DIGITS: int = 9
# treat smaller coefficients as zero
COEFF_ZERO_TOL: float = 1e-12
# slack below this is treated as zero after a repair solve
REPAIR_SLACK_TOL: float = 1e-9
# relax a repaired row by this multiple of its slack
REPAIR_RELAXATION_FACTOR: float = 1.5

CUTOFF_ROW_NAME = "CUTOFF_C"


def make_cut_signature(const: float, slopes: Mapping[int, float]) -> tuple:
    """Build a canonical signature for a cut: (rounded_const, ((idx, rounded_coef), ...)).

    - Only include coefficients with |coef| > COEFF_ZERO_TOL.
    - Round constant and coefficients to COEFF_ROUND_DIGITS.
    - Sort entries by index for determinism.
    """
    items = sorted(
        (int(k), round(float(v), COEFF_ROUND_DIGITS)) for k, v in slopes.items() if abs(float(v)) > COEFF_ZERO_TOL
    )
    return (round(float(const), COEFF_ROUND_DIGITS), tuple(items))


class RelaxationManager:
    """Owner of the polyhedral relaxation living inside a MIP subsolver.

    Rows are only ever appended. Every hyperplane row is recorded as a
    GeneratedHyperplane keyed by its row id. Lazily injected rows wait in a
    separate list with row id -1 until the subsolver reports the rows it kept
    after the search (`adopt_lazy_rows`). The cutoff row and integer-cut rows are
    tracked separately so that infeasibility repair can leave them alone.
    """

    def __init__(
        self,
        problem: ProblemModel,
        subsolver: MIPSubsolver,
        context: SolveContext,
        cfg: "DualConfig",
        output: "OutputConfig | None" = None,
    ):
        self.problem = problem
        self.subsolver = subsolver
        self.context = context
        self.cfg = cfg
        self.output = output
        self.hyperplane_waiting_list: list[Hyperplane] = []
        self.integer_cut_waiting_list: list[tuple[list[int], list[int]]] = []
        self.generated_hyperplanes: dict[int, GeneratedHyperplane] = {}
        self.lazy_hyperplanes: list[GeneratedHyperplane] = []
        self.integer_cut_rows: list[int] = []
        self.lazy_integer_cuts = 0
        self.repaired_rows: set[int] = set()
        self.cutoff_row: Optional[int] = None
        self.cutoff_rhs: Optional[float] = None
        self.number_of_original_linear_constraints = 0
        self.objective_coefficients: dict[int, float] = {}
        self.objective_constant = 0.0
        self._signatures: set[tuple] = set()
        self._integer_cut_signatures: set[tuple] = set()
        self._hyperplane_counter = 0
        self._lazy_by_name: dict[str, GeneratedHyperplane] = {}
        self._lazy_integer_cut_names: set[str] = set()
        self._initialized = False

    # --- construction -------------------------------------------------------------
    def _clamp(self, value: float) -> float:
        big = self.subsolver.unbounded_variable_bound_value
        return max(-big, min(big, value))

    def initialize(self) -> None:
        """Load variables, linear constraints and the linear objective into the subsolver."""
        if self._initialized:
            raise RuntimeError("relaxation already initialized")
        sub = self.subsolver
        for v in self.problem.variables:
            idx = sub.add_variable(v.name, v.var_type, self._clamp(v.lower), self._clamp(v.upper))
            if idx != v.index:
                raise RuntimeError(f"subsolver column {idx} does not match variable index {v.index}")
        for c in self.problem.linear_constraints:
            sub.add_linear_constraint(c.coefficients, c.rhs, c.name, c.sense)
        self.number_of_original_linear_constraints = len(self.problem.linear_constraints)
        self.objective_coefficients = dict(self.problem.objective_coefficients)
        self.objective_constant = float(self.problem.objective_constant)
        sub.set_objective(self.objective_coefficients, self.objective_constant, self.problem.is_minimize)
        self._initialized = True
        log.debug(
            "relaxation initialized: %d variables, %d linear rows, objective %s",
            sub.number_of_variables,
            sub.number_of_rows,
            self.problem.objective_classification.value,
        )

    # --- hyperplanes --------------------------------------------------------------
    def create_hyperplane_terms(self, hyperplane: Hyperplane) -> Optional[tuple[dict[int, float], float]]:
        """Linearize the source constraint at the generating point.

        Returns (coefficients, constant) of ``sum(a_i x_i) + constant <= 0``,
        or None if the gradient or function value is not finite there.
        """
        c = hyperplane.source_constraint
        pt = hyperplane.generated_point
        value = self.problem.evaluate(c, pt)
        grad = self.problem.gradient(c, pt)
        if not math.isfinite(value) or any(not math.isfinite(g) for g in grad.values()):
            log.warning(
                "hyperplane for %s rejected: non-finite value or gradient at generating point",
                c.name,
            )
            return None
        coefficients: dict[int, float] = {}
        constant = value
        for i, g in grad.items():
            if abs(g) <= COEFF_ZERO_TOL:
                continue
            coefficients[i] = g
            constant -= g * pt[i]
        if not math.isfinite(constant):
            log.warning("hyperplane for %s rejected: non-finite constant term", c.name)
            return None
        return coefficients, constant

    def _checked_terms(self, hyperplane: Hyperplane) -> Optional[tuple[dict[int, float], float]]:
        terms = self.create_hyperplane_terms(hyperplane)
        if terms is None:
            self.context.statistics.rejected_hyperplanes += 1
            return None
        coefficients, constant = terms
        if not coefficients:
            log.warning("hyperplane for %s rejected: empty gradient", hyperplane.source_constraint.name)
            self.context.statistics.rejected_hyperplanes += 1
            return None
        sig = make_cut_signature(constant, coefficients)
        if sig in self._signatures:
            log.debug("hyperplane for %s skipped: duplicate", hyperplane.source_constraint.name)
            return None
        self._signatures.add(sig)
        return terms

    def _record(self, hyperplane: Hyperplane, row: int, iteration: Iteration, is_lazy: bool) -> GeneratedHyperplane:
        c = hyperplane.source_constraint
        gh = GeneratedHyperplane(
            generated_constraint_index=row,
            source_constraint_index=c.index,
            generated_point=list(hyperplane.generated_point),
            source=hyperplane.source,
            generated_iter=iteration.number,
            is_lazy=is_lazy,
            is_source_convex=self.problem.is_convex_source(c),
        )
        if is_lazy:
            self.lazy_hyperplanes.append(gh)
            self.context.statistics.lazy_hyperplanes_added += 1
        else:
            self.generated_hyperplanes[row] = gh
            self.context.statistics.hyperplanes_added += 1
        iteration.hyperplanes_added += 1
        return gh

    def add_hyperplane(self, hyperplane: Hyperplane, iteration: Iteration) -> Optional[int]:
        """Append the cut as a row; returns the row id or None if it was rejected."""
        terms = self._checked_terms(hyperplane)
        if terms is None:
            return None
        coefficients, constant = terms
        self._hyperplane_counter += 1
        row = self.subsolver.add_linear_constraint(
            coefficients, -constant, f"H_{self._hyperplane_counter}", "<="
        )
        self._record(hyperplane, row, iteration, is_lazy=False)
        return row

    def build_lazy_row(self, hyperplane: Hyperplane, iteration: Iteration) -> Optional[AddLazyRow]:
        """Command injecting the cut into a running search, or None if rejected."""
        terms = self._checked_terms(hyperplane)
        if terms is None:
            return None
        coefficients, constant = terms
        self._hyperplane_counter += 1
        name = f"LH_{self._hyperplane_counter}"
        self._lazy_by_name[name] = self._record(hyperplane, -1, iteration, is_lazy=True)
        return AddLazyRow(coefficients, -constant, name, "<=")

    def adopt_lazy_rows(self, promoted: Iterable[tuple[str, int]]) -> int:
        """Key lazy records by the row ids the subsolver gave them when it kept the rows."""
        adopted = 0
        for name, row in promoted:
            gh = self._lazy_by_name.pop(name, None)
            if gh is not None:
                gh.generated_constraint_index = row
                self.generated_hyperplanes[row] = gh
                self.lazy_hyperplanes = [other for other in self.lazy_hyperplanes if other is not gh]
                adopted += 1
            elif name in self._lazy_integer_cut_names:
                self._lazy_integer_cut_names.discard(name)
                self.integer_cut_rows.append(row)
                adopted += 1
        if adopted:
            log.debug("adopted %d lazy row(s) into the relaxation", adopted)
        return adopted

    def queue_hyperplanes(self, hyperplanes: Iterable[Hyperplane]) -> None:
        self.hyperplane_waiting_list.extend(hyperplanes)

    def apply_pending(self, iteration: Iteration) -> int:
        """Flush the hyperplane waiting list into the relaxation."""
        pending, self.hyperplane_waiting_list = self.hyperplane_waiting_list, []
        added = sum(1 for hp in pending if self.add_hyperplane(hp, iteration) is not None)
        if added:
            log.debug("added %d hyperplane(s) in iteration %d", added, iteration.number)
        return added

    def mark_removed(self, row: int) -> None:
        self.generated_hyperplanes[row].is_removed = True

    def active_hyperplanes(self) -> list[GeneratedHyperplane]:
        return [gh for gh in self.generated_hyperplanes.values() if not gh.is_removed]

    @property
    def has_nonconvex_cuts(self) -> bool:
        return any(not gh.is_source_convex for gh in self.generated_hyperplanes.values()) or any(
            not gh.is_source_convex for gh in self.lazy_hyperplanes
        )

    @property
    def has_integer_cuts(self) -> bool:
        return bool(self.integer_cut_rows) or self.lazy_integer_cuts > 0

    # --- integer cuts -------------------------------------------------------------
    def add_integer_cut(self, ones: Sequence[int], zeros: Sequence[int], iteration: Iteration | None = None) -> int:
        """Forbid the binary assignment: sum(ones) - sum(zeros) <= |ones| - 1."""
        coefficients = {i: 1.0 for i in ones}
        coefficients.update({i: -1.0 for i in zeros})
        name = f"IC_{len(self.integer_cut_rows)}"
        row = self.subsolver.add_linear_constraint(coefficients, float(len(ones) - 1), name, "<=")
        self.integer_cut_rows.append(row)
        self.context.statistics.integer_cuts_added += 1
        if iteration is not None:
            iteration.integer_cuts_added += 1
        return row

    def queue_integer_cut(self, ones: Sequence[int], zeros: Sequence[int]) -> bool:
        sig = (tuple(sorted(ones)), tuple(sorted(zeros)))
        if sig in self._integer_cut_signatures:
            return False
        self._integer_cut_signatures.add(sig)
        self.integer_cut_waiting_list.append((list(ones), list(zeros)))
        return True

    def queue_integer_cut_from_point(self, point: Sequence[float], tolerance: float = 1e-5) -> bool:
        """Queue a no-good cut for the binary part of point, if every binary is integral.

        Problems with general integer variables get no cut: forbidding only
        the binary part would also cut off other integer assignments.
        """
        binaries = self.problem.binary_variable_indices
        if not binaries or len(binaries) != len(self.problem.discrete_variable_indices):
            return False
        ones: list[int] = []
        zeros: list[int] = []
        for i in binaries:
            if abs(point[i] - 1.0) <= tolerance:
                ones.append(i)
            elif abs(point[i]) <= tolerance:
                zeros.append(i)
            else:
                return False
        return self.queue_integer_cut(ones, zeros)

    def apply_pending_integer_cuts(self, iteration: Iteration) -> int:
        pending, self.integer_cut_waiting_list = self.integer_cut_waiting_list, []
        for ones, zeros in pending:
            self.add_integer_cut(ones, zeros, iteration)
        if pending:
            log.info("added %d integer cut(s)", len(pending))
        return len(pending)

    def build_lazy_integer_cuts(self, iteration: Iteration) -> list[AddLazyRow]:
        pending, self.integer_cut_waiting_list = self.integer_cut_waiting_list, []
        rows = []
        for ones, zeros in pending:
            coefficients = {i: 1.0 for i in ones}
            coefficients.update({i: -1.0 for i in zeros})
            name = f"LIC_{self.lazy_integer_cuts}"
            self.lazy_integer_cuts += 1
            self._lazy_integer_cut_names.add(name)
            rows.append(AddLazyRow(coefficients, float(len(ones) - 1), name, "<="))
            self.context.statistics.integer_cuts_added += 1
            iteration.integer_cuts_added += 1
        return rows

    # --- cutoff -------------------------------------------------------------------
    def cutoff_bound(self) -> Optional[float]:
        """Objective value that the cutoff row currently excludes improvements beyond."""
        if self.cutoff_rhs is None:
            return None
        return self.cutoff_rhs + self.objective_constant

    def set_cutoff(self, primal_bound: float) -> bool:
        """Create or tighten the row bounding the objective by the incumbent.

        The row is created once; later calls only move its bound in the
        tightening direction. Returns True if the relaxation changed.
        """
        if not math.isfinite(primal_bound) or not self.objective_coefficients:
            return False
        tol = self.cfg.cutoff_tolerance
        if self.problem.is_minimize:
            rhs = primal_bound + tol - self.objective_constant
            sense = "<="
        else:
            rhs = primal_bound - tol - self.objective_constant
            sense = ">="
        if self.cutoff_row is None:
            self.cutoff_row = self.subsolver.add_linear_constraint(
                self.objective_coefficients, rhs, CUTOFF_ROW_NAME, sense
            )
        elif (sense == "<=" and rhs < self.cutoff_rhs) or (sense == ">=" and rhs > self.cutoff_rhs):
            self.subsolver.set_row_rhs(self.cutoff_row, rhs)
        else:
            return False
        self.cutoff_rhs = rhs
        log.debug("cutoff set to %.10g", rhs + self.objective_constant)
        return True

    # --- repairs ------------------------------------------------------------------
    def _repairable_rows(self) -> list[int]:
        rows = []
        for row, gh in sorted(self.generated_hyperplanes.items()):
            if row < self.number_of_original_linear_constraints or row == self.cutoff_row:
                continue
            if row in self.integer_cut_rows or gh.is_source_convex or gh.is_removed:
                continue
            rows.append(row)
        return rows

    def _debug_write(self, sub: MIPSubsolver, name: str) -> None:
        if self.output is None or not self.output.debug_enable:
            return
        path = Path(self.output.debug_path)
        path.mkdir(parents=True, exist_ok=True)
        it = self.context.current_iteration
        sub.write_problem_to_file(path / f"lp{it.number if it else 0}{name}.lp")

    def repair_infeasibility(self, limits: SolveLimits | None = None) -> bool:
        """Relax the non-convex hyperplane rows that make the relaxation infeasible.

        A clone of the relaxation gets one slack column per repairable row,
        penalised by 1/(row+1) on top of the original objective. If the clone
        solves to optimality, each row with positive slack has its bound
        increased by REPAIR_RELAXATION_FACTOR times that slack in the live
        relaxation. On failure the live relaxation is untouched.
        """
        rows = self._repairable_rows()
        if not rows:
            log.info("infeasibility repair: no non-convex hyperplane rows to relax")
            return False
        clone = self.subsolver.clone()
        sign = 1.0 if self.problem.is_minimize else -1.0
        objective = dict(self.objective_coefficients)
        slack_columns: dict[int, int] = {}
        for row in rows:
            col = clone.add_variable(
                f"repair_slack_{row}", VariableType.CONTINUOUS, 0.0, clone.unbounded_variable_bound_value
            )
            clone.add_term_to_constraint(row, col, -1.0)
            objective[col] = sign / (row + 1.0)
            slack_columns[row] = col
        clone.set_objective(objective, self.objective_constant, self.problem.is_minimize)
        self._debug_write(clone, "infeasrelax")

        status = clone.solve(limits)
        if status is not SolutionStatus.OPTIMAL or clone.get_number_of_solutions() == 0:
            log.info("infeasibility repair failed: repair problem is %s", status.value)
            self.context.statistics.infeasibility_repairs_failed += 1
            return False

        solution = clone.get_solution(0)
        repaired = 0
        for row, col in slack_columns.items():
            slack = solution[col]
            if slack <= REPAIR_SLACK_TOL:
                continue
            rhs = self.subsolver.get_row_rhs(row)
            self.subsolver.set_row_rhs(row, rhs + REPAIR_RELAXATION_FACTOR * slack)
            self.repaired_rows.add(row)
            repaired += 1
            log.debug("repaired row %d: slack %.6g, rhs %.6g -> %.6g", row, slack, rhs, rhs + REPAIR_RELAXATION_FACTOR * slack)
        self._debug_write(self.subsolver, "repaired")
        self.context.statistics.infeasibility_repairs_succeeded += 1
        log.info("infeasibility repair relaxed %d row(s)", repaired)
        return True

    def solve_bounded_relaxation(self, limits: SolveLimits | None = None) -> SolutionStatus:
        """Re-solve with unbounded objective columns boxed in, then restore their bounds."""
        big = self.cfg.unbounded_repair_bound
        sentinel = self.subsolver.unbounded_variable_bound_value
        columns = set(self.objective_coefficients)
        if self.problem.objective_variable_index is not None:
            columns.add(self.problem.objective_variable_index)
        original: dict[int, tuple[float, float]] = {}
        for i in sorted(columns):
            lo, up = self.subsolver.get_variable_bounds(i)
            new_lo = -big if lo <= -sentinel else lo
            new_up = big if up >= sentinel else up
            if (new_lo, new_up) != (lo, up):
                original[i] = (lo, up)
                self.subsolver.set_variable_bounds(i, new_lo, new_up)
        if not original:
            log.info("relaxation unbounded but no objective column has an infinite bound")
            return SolutionStatus.UNBOUNDED
        try:
            status = self.subsolver.solve(limits)
        finally:
            for i, (lo, up) in original.items():
                self.subsolver.set_variable_bounds(i, lo, up)
        self.context.statistics.unbounded_repairs += 1
        log.info("bounded %d objective column(s) at +-%.3g to repair unboundedness: %s", len(original), big, status.value)
        return status


__all__ = ["RelaxationManager", "make_cut_signature", "CUTOFF_ROW_NAME"]
