import argparse
import importlib.util
import sys
from pathlib import Path

import yaml

# Allow running as a standalone script (python path/to/cli.py)
if __package__ in (None, ""):
    THIS_FILE = Path(__file__).resolve()
    SRC_ROOT = THIS_FILE.parents[1]
    if str(SRC_ROOT) not in sys.path:
        sys.path.insert(0, str(SRC_ROOT))
    from minlp_esh.config import config_to_dict, load_config  # type: ignore
    from minlp_esh.logging_config import setup_logging  # type: ignore
    from minlp_esh.dual.subsolver import available_subsolvers  # type: ignore
    from minlp_esh.dual.types import SolveStatus  # type: ignore
    from minlp_esh.problem import PyomoProblem  # type: ignore
    from minlp_esh.runner import build_solver  # type: ignore
else:
    from .config import config_to_dict, load_config
    from .logging_config import setup_logging
    from .dual.subsolver import available_subsolvers
    from .dual.types import SolveStatus
    from .problem import PyomoProblem
    from .runner import build_solver

DEFAULT_FACTORY = "build_model"


def _load_model(target: str):
    """Import `path.py[:factory]` and call the factory to get a Pyomo model."""
    path_str, _, factory_name = target.partition(":")
    factory_name = factory_name or DEFAULT_FACTORY
    path = Path(path_str)
    if not path.exists():
        raise SystemExit(f"Model file not found: {path}")
    module_spec = importlib.util.spec_from_file_location(path.stem, path)
    if module_spec is None or module_spec.loader is None:
        raise SystemExit(f"Cannot import model file: {path}")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    factory = getattr(module, factory_name, None)
    if not callable(factory):
        raise SystemExit(
            f"Model file {path} has no callable '{factory_name}'.\n"
            "Define a function returning a Pyomo ConcreteModel, e.g.\n"
            "  def build_model():\n"
            "      m = pyo.ConcreteModel()\n"
            "      ...\n"
            "      return m\n"
            "and pass it as --model path.py[:factory]"
        )
    return factory()


def _nonconvex_names(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="minlp-esh",
        description="Supporting-hyperplane (ESH/ECP) dual solver for MINLP",
    )
    p.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to YAML config. Default: configs/default.yaml",
    )
    sub = p.add_subparsers(dest="cmd")
    sub.required = False

    run_p = sub.add_parser("run", help="Solve a Pyomo model with the dual solver")
    run_p.add_argument(
        "--model",
        dest="model",
        type=str,
        required=True,
        help=f"Python file with a model factory, as path.py[:factory] (default factory '{DEFAULT_FACTORY}')",
    )
    run_p.add_argument(
        "--nonconvex",
        dest="nonconvex",
        type=str,
        default=None,
        help="Comma-separated names of nonconvex constraints",
    )
    val_p = sub.add_parser("validate", help="Validate config and, optionally, a model")
    val_p.add_argument("--model", dest="model", type=str, default=None, help="path.py[:factory]")
    val_p.add_argument("--nonconvex", dest="nonconvex", type=str, default=None)
    sub.add_parser("info", help="Show current configuration")
    return p


def _print_problem(problem) -> None:
    n_disc = len(problem.discrete_variable_indices)
    n_nonconvex = sum(1 for c in problem.nonlinear_constraints if not problem.is_convex_source(c))
    print(
        f"  variables={len(problem.variables)} (discrete={n_disc}) "
        f"linear={len(problem.linear_constraints)} nonlinear={len(problem.nonlinear_constraints)} "
        f"(nonconvex={n_nonconvex}) objective={problem.objective_classification.value} "
        f"sense={'min' if problem.is_minimize else 'max'}"
    )


def cmd_run(args) -> int:
    cfg = load_config(args.config)
    setup_logging(cfg.run.log_level, cfg.run.log_dir)
    model = _load_model(args.model)
    solver, problem = build_solver(model, cfg, _nonconvex_names(args.nonconvex))

    print("Run configuration:")
    print(
        f"  dual: strategy={cfg.dual.cut_strategy.value} lazy={cfg.dual.use_lazy_constraints} "
        f"integer_cuts={cfg.dual.use_integer_cuts} lp_iterations={cfg.dual.lp_iteration_limit}"
    )
    print(
        f"  termination: abs_gap={cfg.termination.absolute_gap} rel_gap={cfg.termination.relative_gap} "
        f"iterations={cfg.termination.iteration_limit} time_limit_s={cfg.termination.time_limit_s}"
    )
    print(f"  subsolver: impl={cfg.subsolver.impl} solver={cfg.subsolver.solver}")
    _print_problem(problem)

    result = solver.run()
    if result.primal_point is not None:
        problem.load_into_model(result.primal_point)
    print(
        f"\nResult: status={result.status.value} termination={result.termination.value} "
        f"iterations={result.iterations} dual={result.dual_bound} primal={result.primal_bound} "
        f"rel_gap={result.relative_gap}"
    )
    stats = result.statistics
    print(
        f"  hyperplanes={stats.hyperplanes_added} lazy={stats.lazy_hyperplanes_added} "
        f"integer_cuts={stats.integer_cuts_added} rootsearches={stats.rootsearches} "
        f"repairs={stats.infeasibility_repairs_succeeded}/{stats.infeasibility_repairs_failed}"
    )
    return 1 if result.status is SolveStatus.ERROR else 0


def cmd_validate(args) -> int:
    cfg = load_config(args.config)
    setup_logging(cfg.run.log_level, cfg.run.log_dir)
    if cfg.subsolver.impl not in available_subsolvers():
        print(f"Config error: unknown subsolver impl '{cfg.subsolver.impl}'. Available: {available_subsolvers()}")
        return 1
    if args.model is None:
        print("Config OK.")
        return 0
    try:
        problem = PyomoProblem(_load_model(args.model), nonconvex=_nonconvex_names(args.nonconvex))
    except ValueError as e:
        print("Config OK. Model invalid:")
        print(e)
        return 1
    print("Config OK. Model OK:")
    _print_problem(problem)
    return 0


def cmd_info(args) -> int:
    cfg = load_config(args.config)
    print(yaml.safe_dump(config_to_dict(cfg), sort_keys=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "validate":
        return cmd_validate(args)
    if args.cmd in (None, "info"):
        return cmd_info(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
