from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping, Optional

from .events import CallbackHandler
from .types import Point, SolutionStatus, SolveLimits, VariableType

if TYPE_CHECKING:
    from ..config import ESHConfig, SubsolverConfig

log = logging.getLogger(__name__)

# Bounds at or beyond this magnitude are treated as infinite
UNBOUNDED_VARIABLE_BOUND: float = 1e50


@dataclass(slots=True)
class EffectiveSettings:
    use_lazy_constraints: bool
    threads: int


class MIPSubsolver(ABC):
    """Abstract interface for the mixed-integer linear solver holding the relaxation.

    Columns and rows are addressed by the integer ids returned when they are
    added; ids are stable for the lifetime of the instance and rows are never
    deleted. Implementations cache the solutions of the last `solve` call so
    that they remain readable after bounds or rows change.
    """

    unbounded_variable_bound_value: float = UNBOUNDED_VARIABLE_BOUND
    supports_lazy_constraints: bool = False
    supports_threads: bool = True

    def __init__(self, cfg: "SubsolverConfig | None" = None):
        self.cfg = cfg
        self._callback: Optional[CallbackHandler] = None
        self.threads = int(getattr(cfg, "threads", 1) or 1)

    # --- model building -----------------------------------------------------------
    @abstractmethod
    def add_variable(
        self, name: str, var_type: VariableType, lower: float, upper: float
    ) -> int:
        """Add a column and return its index."""

    @abstractmethod
    def add_linear_constraint(
        self, coefficients: Mapping[int, float], rhs: float, name: str = "", sense: str = "<="
    ) -> int:
        """Add the row ``sum(coefficients[i] * x_i) <sense> rhs`` and return its index."""

    @abstractmethod
    def add_term_to_constraint(self, row: int, variable: int, coefficient: float) -> None:
        """Add ``coefficient * x_variable`` to the left-hand side of an existing row."""

    @abstractmethod
    def get_row_rhs(self, row: int) -> float: ...

    @abstractmethod
    def set_row_rhs(self, row: int, rhs: float) -> None: ...

    @abstractmethod
    def set_variable_bounds(self, index: int, lower: float, upper: float) -> None: ...

    @abstractmethod
    def get_variable_bounds(self, index: int) -> tuple[float, float]: ...

    @abstractmethod
    def set_objective(
        self, coefficients: Mapping[int, float], constant: float = 0.0, minimize: bool = True
    ) -> None: ...

    @abstractmethod
    def activate_discrete_variables(self, active: bool) -> None:
        """Toggle integrality of discrete columns (False solves the LP relaxation)."""

    @property
    @abstractmethod
    def number_of_variables(self) -> int: ...

    @property
    @abstractmethod
    def number_of_rows(self) -> int: ...

    # --- solving ------------------------------------------------------------------
    @abstractmethod
    def solve(self, limits: SolveLimits | None = None) -> SolutionStatus: ...

    @abstractmethod
    def get_number_of_solutions(self) -> int: ...

    @abstractmethod
    def get_solution(self, index: int = 0) -> Point: ...

    @abstractmethod
    def get_objective_value(self, index: int = 0) -> float: ...

    @abstractmethod
    def get_dual_bound(self) -> float: ...

    def get_explored_node_count(self) -> int:
        return 0

    def register_callback(self, handler: CallbackHandler | None) -> None:
        """Install the handler called with search events during `solve`."""
        if handler is not None and not self.supports_lazy_constraints:
            raise RuntimeError(f"{type(self).__name__} does not support solve-time callbacks")
        self._callback = handler

    @abstractmethod
    def set_mip_start(self, assignment: Mapping[int, float]) -> None: ...

    @abstractmethod
    def clear_mip_starts(self) -> None: ...

    @abstractmethod
    def write_problem_to_file(self, path: str | Path) -> None: ...

    @abstractmethod
    def clone(self) -> "MIPSubsolver":
        """Return an independent copy of the current relaxation."""

    def take_promoted_lazy_rows(self) -> list[tuple[str, int]]:
        """(name, row id) of lazy rows made permanent by the last `solve`.

        Back-ends without lazy support never promote anything.
        """
        return []

    def check_parameters(self, cfg: "ESHConfig") -> EffectiveSettings:
        """Settings this back-end can honour; unsupported ones are downgraded with a logged notice.

        The configuration itself is left untouched.
        """
        settings = EffectiveSettings(cfg.dual.use_lazy_constraints, cfg.subsolver.threads)
        if settings.use_lazy_constraints and not self.supports_lazy_constraints:
            log.info(
                "%s has no lazy-constraint support; using the polling loop instead",
                type(self).__name__,
            )
            settings.use_lazy_constraints = False
        if settings.threads > 1 and not self.supports_threads:
            log.info(
                "%s cannot run %d threads; using a single thread",
                type(self).__name__,
                settings.threads,
            )
            settings.threads = 1
            self.threads = 1
        return settings


_SUBSOLVERS: dict[str, type[MIPSubsolver]] = {}


def register_subsolver(name: str) -> Callable[[type[MIPSubsolver]], type[MIPSubsolver]]:
    def _register(cls: type[MIPSubsolver]) -> type[MIPSubsolver]:
        _SUBSOLVERS[name] = cls
        return cls

    return _register


def available_subsolvers() -> list[str]:
    return sorted(_SUBSOLVERS)


def create_subsolver(cfg: "SubsolverConfig") -> MIPSubsolver:
    try:
        cls = _SUBSOLVERS[cfg.impl]
    except KeyError:
        raise ValueError(
            f"Unknown subsolver impl '{cfg.impl}'. Available: {', '.join(available_subsolvers()) or '-'}"
        ) from None
    return cls(cfg)


__all__ = [
    "UNBOUNDED_VARIABLE_BOUND",
    "EffectiveSettings",
    "MIPSubsolver",
    "register_subsolver",
    "available_subsolvers",
    "create_subsolver",
]
