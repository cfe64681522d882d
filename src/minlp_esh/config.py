from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .dual.types import CutStrategy


@dataclass(slots=True)
class RunConfig:
    log_level: str = "INFO"
    # Directory for the DEBUG log file
    log_dir: str = "Report"
    # Log an iteration summary every N iterations (1 = every iter)
    print_every: int = 1


@dataclass(slots=True)
class TerminationConfig:
    absolute_gap: float = 1e-3
    relative_gap: float = 1e-3
    constraint_tolerance: float = 1e-6
    integer_tolerance: float = 1e-5
    iteration_limit: int = 200
    time_limit_s: float = 600.0


@dataclass(slots=True)
class DualConfig:
    cut_strategy: CutStrategy = CutStrategy.ESH
    max_hyperplanes_per_iteration: int = 200
    constraint_selection_factor: float = 0.25
    use_lazy_constraints: bool = False
    # Hyperplanes injected at node relaxations per iteration (0 = none)
    max_lazy_constraints: int = 0
    use_integer_cuts: bool = False
    use_primal_linesearch: bool = True
    # Leading iterations solved as pure LP (0 = start with the MIP)
    lp_iteration_limit: int = 0
    lp_objective_tolerance: float = 1e-6
    # Solutions the MIP may collect before returning (0 = unlimited)
    solution_limit: int = 0
    node_limit: int = 0
    use_cutoff: bool = True
    cutoff_tolerance: float = 1e-5
    infeasibility_repair: bool = True
    max_infeasibility_repairs: int = 10
    unbounded_repair_bound: float = 1e19


@dataclass(slots=True)
class RootsearchConfig:
    iteration_limit: int = 100
    lambda_tolerance: float = 1e-10
    constraint_tolerance: float = 1e-8


@dataclass(slots=True)
class InteriorPointConfig:
    enabled: bool = True
    initial_point: list[float] | None = None
    iteration_limit: int = 50
    variable_bound: float = 1e4
    objective_lower_bound: float = -1.0


@dataclass(slots=True)
class SubsolverConfig:
    impl: str = "pyomo"
    solver: str = "appsi_highs"
    threads: int = 1
    tee: bool = False
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OutputConfig:
    debug_enable: bool = False
    debug_path: str = "debug"


@dataclass(slots=True)
class ESHConfig:
    run: RunConfig = field(default_factory=RunConfig)
    termination: TerminationConfig = field(default_factory=TerminationConfig)
    dual: DualConfig = field(default_factory=DualConfig)
    rootsearch: RootsearchConfig = field(default_factory=RootsearchConfig)
    interior_point: InteriorPointConfig = field(default_factory=InteriorPointConfig)
    subsolver: SubsolverConfig = field(default_factory=SubsolverConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


def _as_dict(m: Mapping[str, Any] | None) -> dict[str, Any]:
    return dict(m) if m else {}


def _as_bool(x: Any) -> bool:
    if isinstance(x, str):
        return x.strip().lower() in {"1", "true", "yes", "on"}
    return bool(x)


def _load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("Top-level YAML document must be a mapping")
        return data


def config_from_dict(raw: Mapping[str, Any]) -> ESHConfig:
    """Build a configuration from a plain mapping (e.g. parsed YAML).

    Unknown keys are ignored and missing keys keep their defaults.
    """
    d = ESHConfig()
    run = _as_dict(raw.get("run"))
    term = _as_dict(raw.get("termination"))
    dual = _as_dict(raw.get("dual"))
    rs = _as_dict(raw.get("rootsearch"))
    ip = _as_dict(raw.get("interior_point"))
    sub = _as_dict(raw.get("subsolver"))
    out = _as_dict(raw.get("output"))

    run_cfg = RunConfig(
        log_level=str(run.get("log_level", d.run.log_level)),
        log_dir=str(run.get("log_dir", d.run.log_dir)),
        print_every=int(run.get("print_every", d.run.print_every) or 1),
    )
    term_cfg = TerminationConfig(
        absolute_gap=float(term.get("absolute_gap", d.termination.absolute_gap)),
        relative_gap=float(term.get("relative_gap", d.termination.relative_gap)),
        constraint_tolerance=float(term.get("constraint_tolerance", d.termination.constraint_tolerance)),
        integer_tolerance=float(term.get("integer_tolerance", d.termination.integer_tolerance)),
        iteration_limit=int(term.get("iteration_limit", d.termination.iteration_limit)),
        time_limit_s=float(term.get("time_limit_s", d.termination.time_limit_s)),
    )
    dual_cfg = DualConfig(
        cut_strategy=CutStrategy(str(dual.get("cut_strategy", d.dual.cut_strategy.value)).upper()),
        max_hyperplanes_per_iteration=int(
            dual.get("max_hyperplanes_per_iteration", d.dual.max_hyperplanes_per_iteration)
        ),
        constraint_selection_factor=float(
            dual.get("constraint_selection_factor", d.dual.constraint_selection_factor)
        ),
        use_lazy_constraints=_as_bool(dual.get("use_lazy_constraints", d.dual.use_lazy_constraints)),
        max_lazy_constraints=int(dual.get("max_lazy_constraints", d.dual.max_lazy_constraints) or 0),
        use_integer_cuts=_as_bool(dual.get("use_integer_cuts", d.dual.use_integer_cuts)),
        use_primal_linesearch=_as_bool(dual.get("use_primal_linesearch", d.dual.use_primal_linesearch)),
        lp_iteration_limit=int(dual.get("lp_iteration_limit", d.dual.lp_iteration_limit) or 0),
        lp_objective_tolerance=float(dual.get("lp_objective_tolerance", d.dual.lp_objective_tolerance)),
        solution_limit=int(dual.get("solution_limit", d.dual.solution_limit) or 0),
        node_limit=int(dual.get("node_limit", d.dual.node_limit) or 0),
        use_cutoff=_as_bool(dual.get("use_cutoff", d.dual.use_cutoff)),
        cutoff_tolerance=float(dual.get("cutoff_tolerance", d.dual.cutoff_tolerance)),
        infeasibility_repair=_as_bool(dual.get("infeasibility_repair", d.dual.infeasibility_repair)),
        max_infeasibility_repairs=int(dual.get("max_infeasibility_repairs", d.dual.max_infeasibility_repairs)),
        unbounded_repair_bound=float(dual.get("unbounded_repair_bound", d.dual.unbounded_repair_bound)),
    )
    rs_cfg = RootsearchConfig(
        iteration_limit=int(rs.get("iteration_limit", d.rootsearch.iteration_limit)),
        lambda_tolerance=float(rs.get("lambda_tolerance", d.rootsearch.lambda_tolerance)),
        constraint_tolerance=float(rs.get("constraint_tolerance", d.rootsearch.constraint_tolerance)),
    )
    initial = ip.get("initial_point")
    ip_cfg = InteriorPointConfig(
        enabled=_as_bool(ip.get("enabled", d.interior_point.enabled)),
        initial_point=[float(v) for v in initial] if initial else None,
        iteration_limit=int(ip.get("iteration_limit", d.interior_point.iteration_limit)),
        variable_bound=float(ip.get("variable_bound", d.interior_point.variable_bound)),
        objective_lower_bound=float(ip.get("objective_lower_bound", d.interior_point.objective_lower_bound)),
    )
    sub_cfg = SubsolverConfig(
        impl=str(sub.get("impl", d.subsolver.impl)),
        solver=str(sub.get("solver", d.subsolver.solver)),
        threads=int(sub.get("threads", d.subsolver.threads) or 1),
        tee=_as_bool(sub.get("tee", d.subsolver.tee)),
        options=_as_dict(sub.get("options")),
    )
    out_cfg = OutputConfig(
        debug_enable=_as_bool(out.get("debug_enable", d.output.debug_enable)),
        debug_path=str(out.get("debug_path", d.output.debug_path)),
    )
    return ESHConfig(
        run=run_cfg,
        termination=term_cfg,
        dual=dual_cfg,
        rootsearch=rs_cfg,
        interior_point=ip_cfg,
        subsolver=sub_cfg,
        output=out_cfg,
    )


def load_config(path: str | Path | None) -> ESHConfig:
    """Load configuration from a YAML file or return defaults.

    The schema is minimal and forgiving; unknown keys are ignored. Only YAML is supported.
    """
    if path is None:
        return ESHConfig()
    p = Path(path)
    if not p.exists():
        # Return defaults but allow the CLI to keep going
        return ESHConfig()

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError(f"Unsupported config format '{p.suffix}'. Please provide a YAML file.")
    return config_from_dict(_load_yaml(p))


def config_to_dict(cfg: ESHConfig) -> dict[str, Any]:
    data = asdict(cfg)
    data["dual"]["cut_strategy"] = cfg.dual.cut_strategy.value
    return data


__all__ = [
    "RunConfig",
    "TerminationConfig",
    "DualConfig",
    "RootsearchConfig",
    "InteriorPointConfig",
    "SubsolverConfig",
    "OutputConfig",
    "ESHConfig",
    "config_from_dict",
    "config_to_dict",
    "load_config",
]
