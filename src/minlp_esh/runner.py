from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pyomo.environ as pyo

from .config import ESHConfig, load_config
from .logging_config import setup_logging
from .dual.solver import DualRunResult, DualSolver
from .dual.subsolver import create_subsolver
from .problem import PyomoProblem


def _default_config_path() -> Path:
    """Best-effort discovery of the default YAML config.

    Tries these, in order:
    1) CWD `configs/default.yaml`
    2) Repo root relative to this file
    Falls back to `configs/default.yaml` in CWD regardless.
    """
    cwd_path = Path("configs/default.yaml")
    if cwd_path.exists():
        return cwd_path
    # src/minlp_esh/runner.py -> repo root
    repo_path = Path(__file__).resolve().parents[2] / "configs" / "default.yaml"
    if repo_path.exists():
        return repo_path
    return cwd_path


def build_solver(
    model: pyo.ConcreteModel,
    cfg: ESHConfig,
    nonconvex: Iterable[str] = (),
    objective_convex: bool = True,
) -> tuple[DualSolver, PyomoProblem]:
    """Wire a Pyomo model into a DualSolver using the configured subsolver."""
    problem = PyomoProblem(model, nonconvex=nonconvex, objective_convex=objective_convex)
    subsolver = create_subsolver(cfg.subsolver)
    solver = DualSolver(problem, subsolver, cfg, subsolver_factory=lambda: create_subsolver(cfg.subsolver))
    return solver, problem


def run(
    model: pyo.ConcreteModel,
    config_path: str | Path | None = None,
    nonconvex: Iterable[str] | None = None,
    cfg: ESHConfig | None = None,
) -> DualRunResult:
    """Solve a Pyomo MINLP with the dual ESH/ECP solver.

    Options come from `configs/default.yaml` unless `config_path` or an
    explicit `cfg` is given. The best primal point found is written back into
    the model's variables.
    """
    if cfg is None:
        cfg_path = Path(config_path) if config_path is not None else _default_config_path()
        cfg = load_config(cfg_path)
    setup_logging(cfg.run.log_level, cfg.run.log_dir)

    solver, problem = build_solver(model, cfg, nonconvex or ())
    result = solver.run()
    if result.primal_point is not None:
        problem.load_into_model(result.primal_point)
    return result


__all__ = ["run", "build_solver"]
