from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class VariableType(str, Enum):
    CONTINUOUS = "CONTINUOUS"
    INTEGER = "INTEGER"
    BINARY = "BINARY"
    SEMICONTINUOUS = "SEMICONTINUOUS"


class SolutionStatus(str, Enum):
    """Outcome of a single relaxation solve."""

    OPTIMAL = "OPTIMAL"
    FEASIBLE = "FEASIBLE"
    INFEASIBLE = "INFEASIBLE"
    UNBOUNDED = "UNBOUNDED"
    SOLUTION_LIMIT = "SOLUTION_LIMIT"
    TIME_LIMIT = "TIME_LIMIT"
    NODE_LIMIT = "NODE_LIMIT"
    ABORT = "ABORT"
    ERROR = "ERROR"


class SolveStatus(str, Enum):
    """Outcome of a whole run."""

    OPTIMAL = "OPTIMAL"
    FEASIBLE = "FEASIBLE"
    INFEASIBLE = "INFEASIBLE"
    UNBOUNDED = "UNBOUNDED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class HyperplaneSource(str, Enum):
    LP_RELAXED_SOLUTION_POINT = "LP_RELAXED_SOLUTION_POINT"
    MIP_OPTIMAL_SOLUTION_POINT = "MIP_OPTIMAL_SOLUTION_POINT"
    MIP_SOLUTION_POOL_SOLUTION_POINT = "MIP_SOLUTION_POOL_SOLUTION_POINT"
    LAZY_CONSTRAINT_CALLBACK = "LAZY_CONSTRAINT_CALLBACK"
    MIP_CALLBACK_RELAXED = "MIP_CALLBACK_RELAXED"
    OBJECTIVE_LINESEARCH = "OBJECTIVE_LINESEARCH"
    INTERIOR_POINT_SEARCH = "INTERIOR_POINT_SEARCH"


class DualSolutionSource(str, Enum):
    MIP_SOLUTION_OPTIMAL = "MIP_SOLUTION_OPTIMAL"
    LP_SOLUTION = "LP_SOLUTION"
    MIP_SOLVER_BOUND = "MIP_SOLVER_BOUND"
    CUTOFF_INFEASIBLE = "CUTOFF_INFEASIBLE"


class PrimalSolutionSource(str, Enum):
    MIP_SOLUTION = "MIP_SOLUTION"
    MIP_SOLUTION_POOL = "MIP_SOLUTION_POOL"
    LAZY_CONSTRAINT_CALLBACK = "LAZY_CONSTRAINT_CALLBACK"
    ROOTSEARCH = "ROOTSEARCH"
    USER_PROVIDED = "USER_PROVIDED"


class CutStrategy(str, Enum):
    ESH = "ESH"
    ECP = "ECP"


class ObjectiveClassification(str, Enum):
    LINEAR = "LINEAR"
    QUADRATIC = "QUADRATIC"
    NONLINEAR = "NONLINEAR"


class TerminationReason(str, Enum):
    NONE = "NONE"
    ABSOLUTE_GAP = "ABSOLUTE_GAP"
    RELATIVE_GAP = "RELATIVE_GAP"
    CONSTRAINT_TOLERANCE = "CONSTRAINT_TOLERANCE"
    ITERATION_LIMIT = "ITERATION_LIMIT"
    TIME_LIMIT = "TIME_LIMIT"
    INFEASIBLE = "INFEASIBLE"
    UNBOUNDED = "UNBOUNDED"
    NO_PROGRESS = "NO_PROGRESS"
    ERROR = "ERROR"
    USER_ABORT = "USER_ABORT"


class ControllerState(str, Enum):
    IDLE = "IDLE"
    RELAXATION_SOLVING = "RELAXATION_SOLVING"
    CANDIDATE_EXTRACTION = "CANDIDATE_EXTRACTION"
    CUT_GENERATION = "CUT_GENERATION"
    BOUND_UPDATE = "BOUND_UPDATE"
    TERMINATION_CHECK = "TERMINATION_CHECK"
    TERMINATED = "TERMINATED"


Point = list[float]


@dataclass(slots=True)
class Variable:
    index: int
    name: str
    var_type: VariableType = VariableType.CONTINUOUS
    lower: float = -math.inf
    upper: float = math.inf

    @property
    def is_discrete(self) -> bool:
        return self.var_type in (VariableType.INTEGER, VariableType.BINARY)


@dataclass(slots=True)
class NumericConstraint:
    """A constraint of the problem model.

    Linear constraints are stored as ``sum(coefficients[i] * x_i) <sense> rhs``.
    Nonlinear constraints are normalised to ``g(x) <= 0`` and evaluated through
    the owning problem model.
    """

    index: int
    name: str
    is_linear: bool = False
    is_convex: bool = True
    coefficients: dict[int, float] = field(default_factory=dict)
    rhs: float = 0.0
    sense: str = "<="  # one of "<=", ">=", "=="


@dataclass(slots=True)
class Hyperplane:
    source_constraint: NumericConstraint
    generated_point: Point
    source: HyperplaneSource
    is_objective_hyperplane: bool = False


@dataclass(slots=True)
class GeneratedHyperplane:
    # -1 for rows injected lazily into a running search
    generated_constraint_index: int
    source_constraint_index: int
    generated_point: Point
    source: HyperplaneSource
    generated_iter: int
    is_lazy: bool = False
    is_removed: bool = False
    is_source_convex: bool = True


@dataclass(slots=True)
class SolutionPoint:
    point: Point
    objective_value: float
    # (constraint index, violation); None when the problem has no nonlinear constraints
    max_deviation: Optional[tuple[int, float]] = None
    iter_found: int = 0

    @property
    def max_violation(self) -> float:
        return self.max_deviation[1] if self.max_deviation is not None else -math.inf


@dataclass(slots=True)
class DualSolution:
    point: Point
    source: DualSolutionSource
    objective_value: float
    iter_found: int = 0


@dataclass(slots=True)
class PrimalSolution:
    point: Point
    source: PrimalSolutionSource
    objective_value: float
    iter_found: int = 0
    max_deviation: Optional[tuple[int, float]] = None
    is_feasible: bool = True


@dataclass(slots=True)
class SolveLimits:
    time_limit: Optional[float] = None
    node_limit: Optional[int] = None
    solution_limit: Optional[int] = None


@dataclass(slots=True)
class Iteration:
    number: int
    is_mip: bool = True
    status: Optional[SolutionStatus] = None
    objective_value: Optional[float] = None
    dual_bound: float = math.nan
    primal_bound: float = math.nan
    solution_points: list[SolutionPoint] = field(default_factory=list)
    hyperplanes_added: int = 0
    integer_cuts_added: int = 0
    relaxed_lazy_hyperplanes_added: int = 0
    is_solved: bool = False
    has_infeasibility_repair_been_performed: bool = False
    has_unbounded_repair_been_performed: bool = False
    explored_nodes: int = 0
    open_nodes: int = 0
    solution_limit: Optional[int] = None


@dataclass(slots=True)
class SolutionStatistics:
    hyperplanes_added: int = 0
    lazy_hyperplanes_added: int = 0
    rejected_hyperplanes: int = 0
    integer_cuts_added: int = 0
    infeasibility_repairs_succeeded: int = 0
    infeasibility_repairs_failed: int = 0
    unbounded_repairs: int = 0
    lp_solves: int = 0
    mip_solves: int = 0
    rootsearches: int = 0
    explored_nodes: int = 0
    open_nodes: int = 0


__all__ = [
    "VariableType",
    "SolutionStatus",
    "SolveStatus",
    "HyperplaneSource",
    "DualSolutionSource",
    "PrimalSolutionSource",
    "CutStrategy",
    "ObjectiveClassification",
    "TerminationReason",
    "ControllerState",
    "Point",
    "Variable",
    "NumericConstraint",
    "Hyperplane",
    "GeneratedHyperplane",
    "SolutionPoint",
    "DualSolution",
    "PrimalSolution",
    "SolveLimits",
    "Iteration",
    "SolutionStatistics",
]
