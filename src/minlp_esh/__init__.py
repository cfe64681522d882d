"""minlp_esh

A supporting-hyperplane dual solver for mixed-integer nonlinear programs.
The package provides:

- A solver-agnostic iteration engine (ESH and ECP cuts, root-search,
  integer cuts, cutoff handling, infeasibility repair) under `minlp_esh.dual`
- Pyomo-backed problem and MIP subsolver implementations under
  `minlp_esh.problem`
- A small CLI and YAML-based configuration

Build a Pyomo `ConcreteModel` and hand it to `minlp_esh.run`.
"""

from .runner import run

__all__ = [
    "__version__",
    "run",
]

__version__ = "0.1.0"
