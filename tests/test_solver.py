import dataclasses

import numpy as np
import pytest

from aux_NK import (
    SOLVERS,
    Exogenous,
    ModelParameters,
    PeriodShocks,
    PeriodState,
    ShockSeries,
    SolverResult,
    draw_shocks,
    get_solver,
    linear_solve,
    newton_solve,
    period_residuals,
    root_solve,
    solve_period,
    trend_path,
)

# Scenario with all shocks at zero
PREV = PeriodState(growth=1.0, inflation=2.0, rate=10.0, exchange_rate=100.0, cpi=500.0)
EXOG = Exogenous(cpi_f=300.0, i_f=5.0, nda_diff=0.5, trend=99.3)
NO_SHOCKS = PeriodShocks()


def scenario_solution():
    # policy rule is self-contained; UIP makes the real exchange rate term equal inflation
    i = 0.8 * 10.0 + 0.2 * (10.0 - 0.2 * 0.5)
    pi = (0.7 * 2.0 + 0.1 * (0.6 * 1.0 - 0.15 * (i - 3.5))) / (1.0 - 0.3 - 0.1 * (0.15 + 0.03))
    g = 0.6 * 1.0 - 0.15 * (i - pi - 3.5) + 0.03 * pi
    e = 99.3 + 500.0 + pi - 300.0
    return np.array([g, pi, i, e])


# === Parameters, shocks, trend =====

def test_default_parameters_match_calibration():
    p = ModelParameters()
    assert (p.alpha, p.beta, p.gamma) == (0.6, 0.15, 0.03)
    assert (p.phi, p.theta, p.psi) == (0.7, 0.1, 0.3)
    assert (p.rho, p.lambda_) == (0.8, 0.2)
    assert (p.neutral_rate, p.risk_premium, p.appreciation_rate, p.shock_sd) == (3.5, 3.5, 0.7, 0.5)


def test_parameters_are_immutable():
    p = ModelParameters()
    with pytest.raises(dataclasses.FrozenInstanceError):
        p.alpha = 0.9
    q = p.replace(alpha=0.9)
    assert q.alpha == 0.9 and p.alpha == 0.6


@pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
def test_parameters_must_be_finite(bad):
    with pytest.raises(ValueError, match="theta"):
        ModelParameters(theta=bad)


def test_shocks_are_reproducible_and_drawn_in_order():
    a = draw_shocks(10, sigma=0.5, seed=0)
    b = draw_shocks(10, sigma=0.5, seed=0)
    for name in ("is_", "pc", "mp", "uip"):
        np.testing.assert_array_equal(getattr(a, name), getattr(b, name))

    stream = np.random.default_rng(0).normal(0.0, 0.5, size=40)
    np.testing.assert_array_equal(a.is_, stream[:10])
    np.testing.assert_array_equal(a.uip, stream[30:])


def test_shocks_from_explicit_generator():
    rng = np.random.default_rng(7)
    first = draw_shocks(5, sigma=1.0, rng=rng)
    second = draw_shocks(5, sigma=1.0, rng=rng)
    assert not np.array_equal(first.is_, second.is_)


def test_shock_validation():
    with pytest.raises(ValueError):
        draw_shocks(5, sigma=-1.0)
    with pytest.raises(ValueError):
        draw_shocks(0)
    with pytest.raises(ValueError):
        ShockSeries(np.zeros(3), np.zeros(3), np.zeros(4), np.zeros(3))
    zero = draw_shocks(6, sigma=0.0)
    assert zero.at(3) == PeriodShocks()


def test_trend_is_linear():
    trend = trend_path(120.0, 8, appreciation_rate=0.7)
    assert trend.shape == (8,)
    assert trend[1] == 120.0
    np.testing.assert_allclose(np.diff(trend), -0.7)
    np.testing.assert_allclose(trend[0], 120.7)


# === Residuals and root finders =====

def test_residuals_vanish_at_scenario_solution():
    params = ModelParameters()
    r = period_residuals(scenario_solution(), PREV, EXOG, NO_SHOCKS, params)
    np.testing.assert_allclose(r, 0.0, atol=1e-10)


def test_residuals_include_shocks():
    params = ModelParameters()
    x = scenario_solution()
    s = PeriodShocks(is_=0.1, pc=0.2, mp=0.3, uip=0.4)
    np.testing.assert_allclose(period_residuals(x, PREV, EXOG, s, params), [-0.1, -0.2, -0.3, -0.4], atol=1e-10)


@pytest.mark.parametrize("name", sorted(SOLVERS))
def test_scenario_solves_with_every_solver(name):
    params = ModelParameters()
    out = solve_period(PREV, EXOG, NO_SHOCKS, params, solver=name)

    assert out.converged
    assert out.non_real is None
    x = out.state.quadruple()
    assert np.linalg.norm(period_residuals(x, PREV, EXOG, NO_SHOCKS, params)) < 1e-6
    np.testing.assert_allclose(x, scenario_solution(), atol=1e-6)
    assert out.state.cpi == PREV.cpi + out.state.inflation


def test_newton_handles_nonlinear_system():
    def fn(x):
        return np.array([x[0] ** 2 - 4.0, x[1] ** 3 - 8.0, np.exp(x[2]) - 1.0, x[3] * x[0] - 6.0])

    res = newton_solve(fn, np.array([1.0, 1.0, 0.5, 1.0]), tol=1e-10, max_iter=50)
    assert res.converged
    np.testing.assert_allclose(res.x, [2.0, 2.0, 0.0, 3.0], atol=1e-8)


def test_newton_reports_nan_residual_as_failure():
    res = newton_solve(lambda x: np.full(4, np.nan), np.ones(4), tol=1e-6, max_iter=20)
    assert not res.converged
    assert res.message == "non-finite residual"


def test_newton_iteration_limit():
    res = newton_solve(lambda x: x ** 2 + 1.0, np.ones(4), tol=1e-6, max_iter=5)
    assert not res.converged
    assert res.n_iter == 5


def test_root_solve_and_linear_solve_agree():
    A = np.array([[4.0, 1.0, 0.0, 0.0], [1.0, 3.0, 1.0, 0.0], [0.0, 1.0, 2.0, 1.0], [0.0, 0.0, 1.0, 5.0]])
    b = np.array([1.0, 2.0, 3.0, 4.0])

    def fn(x):
        return A @ x - b

    a = root_solve(fn, np.zeros(4))
    c = linear_solve(fn, np.zeros(4))
    assert a.converged and c.converged
    np.testing.assert_allclose(a.x, np.linalg.solve(A, b), atol=1e-8)
    np.testing.assert_allclose(c.x, np.linalg.solve(A, b), atol=1e-10)


def test_unknown_solver_name():
    with pytest.raises(ValueError, match="Unknown solver"):
        get_solver("fsolve")
    with pytest.raises(ValueError):
        solve_period(PREV, EXOG, NO_SHOCKS, ModelParameters(), solver="bogus")


# === Failure policy =====

def test_pathological_residual_falls_back_to_previous_state(caplog):
    def broken(fn, x0, tol, max_iter):
        return newton_solve(lambda x: np.full(4, np.nan), x0, tol, max_iter)

    with caplog.at_level("WARNING", logger="aux_NK"):
        out = solve_period(PREV, EXOG, NO_SHOCKS, ModelParameters(), solver=broken, year=1999)

    assert not out.converged
    np.testing.assert_array_equal(out.state.quadruple(), PREV.quadruple())
    assert out.state.cpi == PREV.cpi + PREV.inflation
    assert "1999" in caplog.text


def test_solver_exception_counts_as_non_convergence():
    def singular(fn, x0, tol, max_iter):
        raise np.linalg.LinAlgError("Singular matrix")

    out = solve_period(PREV, EXOG, NO_SHOCKS, ModelParameters(), solver=singular)
    assert not out.converged
    assert "Singular" in out.solver_result.message
    np.testing.assert_array_equal(out.state.quadruple(), PREV.quadruple())


def test_non_real_solution_is_diagnosed_and_real_part_used(caplog):
    target = scenario_solution()

    def complex_solver(fn, x0, tol, max_iter):
        return SolverResult(x=target + 1e-3j, converged=True, n_iter=1, residual_norm=0.0)

    with caplog.at_level("WARNING", logger="aux_NK"):
        out = solve_period(PREV, EXOG, NO_SHOCKS, ModelParameters(), solver=complex_solver, year=2004)

    assert not out.converged
    assert out.non_real is not None
    assert out.non_real.year == 2004
    np.testing.assert_allclose(out.non_real.real, target)
    np.testing.assert_allclose(out.non_real.imag, 1e-3)
    np.testing.assert_array_equal(out.state.quadruple(), target)
    assert "Non-real" in caplog.text
