from .types import (
    CutStrategy,
    Hyperplane,
    NumericConstraint,
    SolutionStatus,
    SolveStatus,
    TerminationReason,
    Variable,
    VariableType,
)
from .events import AbortSearch, AddLazyRow, NewBound, NewIncumbent, NodeRelaxationSolved, NoAction, UpdateCutoff
from .problem import ProblemModel
from .subsolver import MIPSubsolver, available_subsolvers, create_subsolver, register_subsolver

__all__ = [
    "CutStrategy",
    "Hyperplane",
    "NumericConstraint",
    "SolutionStatus",
    "SolveStatus",
    "TerminationReason",
    "Variable",
    "VariableType",
    "AbortSearch",
    "AddLazyRow",
    "NewBound",
    "NewIncumbent",
    "NodeRelaxationSolved",
    "NoAction",
    "UpdateCutoff",
    "ProblemModel",
    "MIPSubsolver",
    "available_subsolvers",
    "create_subsolver",
    "register_subsolver",
]
