"""Concrete problem and subsolver implementations.

Importing this package registers the subsolver back-ends ("pyomo" and
"gurobi_lazy") with `minlp_esh.dual.subsolver.create_subsolver`.
"""

from .pyomo_subsolver import PyomoSubsolver  # noqa: F401
from .gurobi_lazy import GurobiLazySubsolver  # noqa: F401
from .pyomo_problem import PyomoProblem  # noqa: F401

__all__ = ["PyomoProblem", "PyomoSubsolver", "GurobiLazySubsolver"]
