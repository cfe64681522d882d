#!/usr/bin/env python3
"""Solve a small convex MINLP with the dual solver.

The file doubles as a CLI model file:
    minlp-esh run --model scripts/run_example.py
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import pyomo.environ as pyo

# Ensure `src/` is on sys.path for direct script execution
SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from minlp_esh import run  # noqa: E402


def build_model() -> pyo.ConcreteModel:
    """max x + y - 1.5 z  s.t.  x^2 + y^2 <= 4 + 4 z,  x + 2 y <= 5,  z binary.

    Enlarging the disc costs more than it gains: the optimum is z = 0,
    x = y = sqrt(2) with objective 2*sqrt(2).
    """
    m = pyo.ConcreteModel()
    m.x = pyo.Var(bounds=(0, 4))
    m.y = pyo.Var(bounds=(0, 4))
    m.z = pyo.Var(within=pyo.Binary)
    m.disc = pyo.Constraint(expr=m.x**2 + m.y**2 <= 4 + 4 * m.z)
    m.budget = pyo.Constraint(expr=m.x + 2 * m.y <= 5)
    m.obj = pyo.Objective(expr=m.x + m.y - 1.5 * m.z, sense=pyo.maximize)
    return m


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run the dual solver on a small example MINLP")
    p.add_argument("--config", type=Path, default=None, help="YAML config (default: configs/default.yaml)")
    args = p.parse_args(argv)

    m = build_model()
    result = run(m, config_path=args.config)
    print(
        f"status={result.status.value} iterations={result.iterations} "
        f"dual={result.dual_bound} primal={result.primal_bound}"
    )
    print(f"x={pyo.value(m.x):.6f} y={pyo.value(m.y):.6f} z={pyo.value(m.z):.0f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
