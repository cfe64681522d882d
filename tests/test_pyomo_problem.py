import math

import pyomo.environ as pyo
import pytest

from minlp_esh.dual.types import ObjectiveClassification, VariableType
from minlp_esh.problem import PyomoProblem


def _model(objective=None, sense=pyo.minimize):
    m = pyo.ConcreteModel()
    m.x = pyo.Var(bounds=(-5, 5))
    m.y = pyo.Var(within=pyo.Integers, bounds=(0, 3))
    m.b = pyo.Var(within=pyo.Binary)
    m.fixed = pyo.Var(initialize=2.0)
    m.fixed.fix()
    m.c1 = pyo.Constraint(expr=m.x + 2 * m.y + m.fixed <= 7)
    m.c2 = pyo.Constraint(expr=pyo.inequality(1, m.x + m.y, 4))
    m.c3 = pyo.Constraint(expr=m.x**2 + m.y**2 <= 4 + m.b)
    m.obj = pyo.Objective(expr=objective(m) if objective else m.x + m.y, sense=sense)
    return m


def test_variables_and_linear_rows():
    p = PyomoProblem(_model())
    assert [v.name for v in p.variables] == ["x", "y", "b"]
    assert [v.var_type for v in p.variables] == [
        VariableType.CONTINUOUS,
        VariableType.INTEGER,
        VariableType.BINARY,
    ]
    assert (p.variables[0].lower, p.variables[0].upper) == (-5.0, 5.0)
    assert p.discrete_variable_indices == [1, 2]
    assert p.binary_variable_indices == [2]

    rows = {c.name: c for c in p.linear_constraints}
    assert set(rows) == {"c1", "c2_lo", "c2_up"}
    # the fixed variable folds into the right-hand side
    assert rows["c1"].coefficients == {0: 1.0, 1: 2.0}
    assert rows["c1"].rhs == pytest.approx(5.0)
    assert rows["c1"].sense == "<="
    assert (rows["c2_lo"].sense, rows["c2_lo"].rhs) == (">=", 1.0)
    assert (rows["c2_up"].sense, rows["c2_up"].rhs) == ("<=", 4.0)
    assert len({c.index for c in p.numeric_constraints}) == 4


def test_nonlinear_value_and_gradient():
    p = PyomoProblem(_model())
    (c3,) = p.nonlinear_constraints
    assert c3.is_convex
    assert p.evaluate(c3, [1.0, 1.0, 0.0]) == pytest.approx(-2.0)
    assert p.evaluate(c3, [2.0, 1.0, 1.0]) == pytest.approx(0.0)
    grad = p.gradient(c3, [1.0, 2.0, 0.0])
    assert grad[0] == pytest.approx(2.0)
    assert grad[1] == pytest.approx(4.0)
    assert grad[2] == pytest.approx(-1.0)
    assert p.objective_classification is ObjectiveClassification.LINEAR
    assert p.objective_value([1.0, 2.0, 0.0]) == pytest.approx(3.0)


def test_nonconvex_names():
    p = PyomoProblem(_model(), nonconvex=["c3"])
    assert not p.nonlinear_constraints[0].is_convex
    assert not p.is_convex


def test_nonlinear_equality_splits_into_nonconvex_pair():
    m = _model()
    m.eq = pyo.Constraint(expr=m.x**2 == m.y)
    p = PyomoProblem(m)
    eq = [c for c in p.nonlinear_constraints if c.name.startswith("eq")]
    assert sorted(c.name for c in eq) == ["eq_lo", "eq_up"]
    assert all(not c.is_convex for c in eq)
    values = sorted(p.evaluate(c, [2.0, 1.0, 0.0]) for c in eq)
    assert values == pytest.approx([-3.0, 3.0])


@pytest.mark.parametrize("sense, sign", [(pyo.minimize, 1.0), (pyo.maximize, -1.0)])
def test_quadratic_objective_uses_epigraph(sense, sign):
    p = PyomoProblem(_model(lambda m: (m.x - 1) ** 2, sense=sense))
    assert p.objective_classification is ObjectiveClassification.QUADRATIC
    mu = p.objective_variable_index
    assert mu == 3
    assert p.objective_coefficients == {mu: 1.0}
    assert p.objective_constraint is p.nonlinear_constraints[-1]
    assert p.original_nonlinear_constraints == p.nonlinear_constraints[:-1]
    point = [3.0, 0.0, 0.0, 1.0]
    assert p.objective_value(point) == pytest.approx(4.0)
    assert p.evaluate(p.objective_constraint, point) == pytest.approx(sign * 3.0)
    grad = p.gradient(p.objective_constraint, point)
    assert grad[0] == pytest.approx(sign * 4.0)
    assert grad[mu] == pytest.approx(-sign)


def test_general_nonlinear_objective():
    p = PyomoProblem(_model(lambda m: pyo.exp(m.x)))
    assert p.objective_classification is ObjectiveClassification.NONLINEAR


def test_undefined_points_evaluate_to_inf():
    m = pyo.ConcreteModel()
    m.x = pyo.Var(bounds=(-1, 4))
    m.c = pyo.Constraint(expr=-pyo.log(m.x) <= 0)
    m.obj = pyo.Objective(expr=m.x)
    p = PyomoProblem(m)
    assert p.evaluate(p.nonlinear_constraints[0], [-1.0]) == math.inf
    assert p.evaluate(p.nonlinear_constraints[0], [1.0]) == pytest.approx(0.0)


def test_requires_single_objective():
    m = _model()
    m.obj2 = pyo.Objective(expr=m.x)
    with pytest.raises(ValueError, match="exactly one active objective"):
        PyomoProblem(m)


def test_load_into_model():
    m = _model()
    PyomoProblem(m).load_into_model([1.5, 2.0, 1.0])
    assert pyo.value(m.x) == 1.5
    assert pyo.value(m.y) == 2.0
    assert pyo.value(m.b) == 1.0
