"""
Period-by-period simulation of a small open-economy New Keynesian model.

Unknowns each period: x_t = (g_t, pi_t, i_t, e_t)
    g   output growth
    pi  inflation
    i   nominal policy rate
    e   (log) nominal exchange rate

System solved at every t, given the previous simulated period and period-t inputs:

    IS:       g  = alpha g_{t-1} - beta (i - pi - r*) + gamma (e + CPIf_t - CPI_{t-1} - trend_t) + eps_IS
    Phillips: pi = phi pi_{t-1} + theta g + psi (e + CPIf_t - CPI_{t-1} - trend_t) + eps_PC
    Policy:   i  = rho i_{t-1} + (1 - rho) (anchor - lambda dNDA_t) + eps_MP
    UIP:      e  = trend_t + CPI_{t-1} + pi - CPIf_t + eps_UIP

This module:
  1) Holds the calibration (ModelParameters) and the shock draws (ShockSeries).
  2) Builds the long-run real exchange rate trend.
  3) Solves one period with a pluggable root finder (scipy hybr, damped Newton, affine solve).
  4) Runs the sequential recursion t = 3..T and keeps the convergence log.

Indexing: arrays are 0-based, so period t of the model lives at index t-1.
Period 1 (index 0) is never simulated, period 2 (index 1) is seeded from data.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import optimize

from aux_data import ObservedSeries

logger = logging.getLogger(__name__)

UNKNOWNS = ("growth", "inflation", "rate", "exchange_rate")

OUTPUT_COLUMNS = (
    "growth",
    "inflation",
    "rate",
    "exchange_rate",
    "cpi",
    "real_exchange_rate",
    "real_rate",
    "rate_differential",
    "inflation_differential",
    "real_rate_gap",
    "real_exchange_rate_gap",
)


# -----------------------------
# Calibration
# -----------------------------

@dataclass(frozen=True)
class ModelParameters:
    # IS curve
    alpha: float = 0.6
    beta: float = 0.15
    gamma: float = 0.03

    # Phillips curve
    phi: float = 0.7
    theta: float = 0.1
    psi: float = 0.3

    # Policy rule
    rho: float = 0.8
    lambda_: float = 0.2
    policy_anchor: float = 10.0

    # Structural constants
    neutral_rate: float = 3.5
    risk_premium: float = 3.5   # calibration context only, not in the equations
    appreciation_rate: float = 0.7
    shock_sd: float = 0.5

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if not np.isfinite(value):
                raise ValueError(f"Parameter {f.name} must be a finite real, got {value!r}.")

    def replace(self, **changes) -> "ModelParameters":
        return dataclasses.replace(self, **changes)

    def as_dict(self) -> Dict[str, float]:
        return dataclasses.asdict(self)


# -----------------------------
# Shocks
# -----------------------------

@dataclass(frozen=True)
class PeriodShocks:
    is_: float = 0.0
    pc: float = 0.0
    mp: float = 0.0
    uip: float = 0.0


@dataclass(frozen=True)
class ShockSeries:
    is_: np.ndarray
    pc: np.ndarray
    mp: np.ndarray
    uip: np.ndarray

    def __post_init__(self):
        lengths = {len(self.is_), len(self.pc), len(self.mp), len(self.uip)}
        if len(lengths) != 1:
            raise ValueError(f"Shock series must share one length, got {sorted(lengths)}.")

    def __len__(self) -> int:
        return len(self.is_)

    def at(self, k: int) -> PeriodShocks:
        return PeriodShocks(
            is_=float(self.is_[k]),
            pc=float(self.pc[k]),
            mp=float(self.mp[k]),
            uip=float(self.uip[k]),
        )

    @classmethod
    def zeros(cls, T: int) -> "ShockSeries":
        return cls(np.zeros(T), np.zeros(T), np.zeros(T), np.zeros(T))


def draw_shocks(
    T: int,
    sigma: float = 0.5,
    seed: Optional[int] = 0,
    rng: Optional[np.random.Generator] = None,
) -> ShockSeries:
    """
    Draw the four Gaussian shock series from one seeded stream.

    The draws are taken in a fixed order (IS, PC, MP, UIP), each a full
    length-T block, so the same seed always maps to the same shocks.

    Parameters
    ----------
    T : int
        Number of periods.
    sigma : float
        Standard deviation of every series.
    seed : int or None
        Seed for numpy's default_rng. Ignored when `rng` is given.
    rng : numpy.random.Generator, optional
        Explicit generator (consumed in place).
    """
    if T < 1:
        raise ValueError("T must be >= 1.")
    if not np.isfinite(sigma) or sigma < 0:
        raise ValueError("sigma must be a finite non-negative number.")

    if rng is None:
        rng = np.random.default_rng(seed)

    is_ = rng.normal(loc=0.0, scale=sigma, size=T)
    pc = rng.normal(loc=0.0, scale=sigma, size=T)
    mp = rng.normal(loc=0.0, scale=sigma, size=T)
    uip = rng.normal(loc=0.0, scale=sigma, size=T)

    return ShockSeries(is_=is_, pc=pc, mp=mp, uip=uip)


# -----------------------------
# Trend of the real exchange rate
# -----------------------------

def trend_path(q2: float, T: int, appreciation_rate: float = 0.7) -> np.ndarray:
    """
    Linear trend anchored on the period-2 real exchange rate:
        trend[t] = q2 - (t - 2) * appreciation_rate,   t = 1..T
    """
    periods = np.arange(1, T + 1, dtype=float)
    return q2 - (periods - 2.0) * appreciation_rate


# -----------------------------
# One period
# -----------------------------

@dataclass(frozen=True)
class PeriodState:
    growth: float
    inflation: float
    rate: float
    exchange_rate: float
    cpi: float

    def quadruple(self) -> np.ndarray:
        return np.array([self.growth, self.inflation, self.rate, self.exchange_rate], dtype=float)


@dataclass(frozen=True)
class Exogenous:
    cpi_f: float
    i_f: float
    nda_diff: float
    trend: float


def period_residuals(
    x: np.ndarray,
    prev: PeriodState,
    exog: Exogenous,
    shocks: PeriodShocks,
    params: ModelParameters,
) -> np.ndarray:
    """
    LHS minus RHS of the IS, Phillips, policy and UIP equations at x = (g, pi, i, e).
    """
    g, pi, i, e = x[0], x[1], x[2], x[3]
    p = params

    rer_term = e + exog.cpi_f - prev.cpi - exog.trend

    r_is = g - (p.alpha * prev.growth - p.beta * (i - pi - p.neutral_rate) + p.gamma * rer_term + shocks.is_)
    r_pc = pi - (p.phi * prev.inflation + p.theta * g + p.psi * rer_term + shocks.pc)
    r_mp = i - (p.rho * prev.rate + (1.0 - p.rho) * (p.policy_anchor - p.lambda_ * exog.nda_diff) + shocks.mp)
    r_uip = e - (exog.trend + prev.cpi + pi - exog.cpi_f + shocks.uip)

    return np.array([r_is, r_pc, r_mp, r_uip])


# -----------------------------
# Root finders
# -----------------------------

ResidualFn = Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class SolverResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    message: str = ""


def residual_check(fn: ResidualFn, x: np.ndarray, tol: float) -> Tuple[float, bool]:
    """Euclidean norm of fn(x) and whether it is finite and within tol."""
    fx = np.asarray(fn(x))
    res = float(np.linalg.norm(fx))
    return res, bool(np.all(np.isfinite(fx)) and res <= tol)


def numerical_jacobian(fn: ResidualFn, x: np.ndarray, fx: Optional[np.ndarray] = None, eps: float = 1e-7) -> np.ndarray:
    """Forward-difference Jacobian."""
    x = np.asarray(x, float)
    if fx is None:
        fx = np.asarray(fn(x), float)
    n = x.shape[0]
    J = np.zeros((fx.shape[0], n))
    for j in range(n):
        h = eps * max(1.0, abs(x[j]))
        xh = x.copy()
        xh[j] += h
        J[:, j] = (np.asarray(fn(xh), float) - fx) / h
    return J


def root_solve(fn: ResidualFn, x0: np.ndarray, tol: float = 1e-6, max_iter: int = 100) -> SolverResult:
    """
    MINPACK hybrid Powell method through scipy.optimize.root.

    The function-evaluation budget is max_iter * (n + 1), i.e. about max_iter
    Jacobian updates. Convergence is re-checked on the residual at the returned x.
    """
    x0 = np.asarray(x0, float)
    sol = optimize.root(
        fn,
        x0,
        method="hybr",
        options={"maxfev": max_iter * (x0.size + 1), "xtol": 1e-12},
    )
    res, ok = residual_check(fn, sol.x, tol)
    return SolverResult(
        x=np.asarray(sol.x),
        converged=ok,
        n_iter=int(sol.nfev),
        residual_norm=res,
        message=str(sol.message),
    )


def newton_solve(fn: ResidualFn, x0: np.ndarray, tol: float = 1e-6, max_iter: int = 100) -> SolverResult:
    """
    Damped Newton iteration with a numerical Jacobian and backtracking on the step length.
    """
    x = np.asarray(x0, float).copy()
    fx = np.asarray(fn(x), float)
    res = float(np.linalg.norm(fx))

    it = 0
    message = "converged"
    for it in range(1, max_iter + 1):
        if not np.isfinite(res):
            message = "non-finite residual"
            break
        if res <= tol:
            it -= 1
            break

        J = numerical_jacobian(fn, x, fx)
        try:
            dx = np.linalg.solve(J, -fx)
        except np.linalg.LinAlgError:
            dx, *_ = np.linalg.lstsq(J, -fx, rcond=None)

        if not np.all(np.isfinite(dx)):
            message = "non-finite Newton step"
            break

        # backtracking line search on step length
        step = 1.0
        improved = False
        for _bt in range(11):
            x_trial = x + step * dx
            f_trial = np.asarray(fn(x_trial), float)
            res_trial = float(np.linalg.norm(f_trial))
            if res_trial < res * (1 - 1e-12) or res_trial < res - 1e-12:
                improved = True
                break
            step *= 0.5

        # take the smallest step even without improvement
        x, fx, res = x_trial, f_trial, res_trial
        logger.debug("Newton iter %2d: ||F||=%.3e, step=%.3e, improved=%s", it, res, step, improved)
    else:
        message = "iteration limit reached"

    res, ok = residual_check(fn, x, tol)
    if ok:
        message = "converged"
    return SolverResult(x=x, converged=ok, n_iter=it, residual_norm=res, message=message)


def linear_solve(fn: ResidualFn, x0: np.ndarray, tol: float = 1e-6, max_iter: int = 100) -> SolverResult:
    """
    Direct solve for an affine residual F(x) = A x + b.

    A is recovered column by column from unit perturbations around x0 (exact
    for affine F up to rounding), then x = x0 - A^{-1} F(x0). The residual is
    verified at the returned point; max_iter is unused.
    """
    x0 = np.asarray(x0, float)
    f0 = np.asarray(fn(x0), float)
    n = x0.shape[0]

    A = np.zeros((f0.shape[0], n))
    for j in range(n):
        xe = x0.copy()
        xe[j] += 1.0
        A[:, j] = np.asarray(fn(xe), float) - f0

    x = x0 - np.linalg.solve(A, f0)
    res, ok = residual_check(fn, x, tol)
    return SolverResult(x=x, converged=ok, n_iter=1, residual_norm=res,
                        message="converged" if ok else "residual above tolerance")


SolverFn = Callable[[ResidualFn, np.ndarray, float, int], SolverResult]

SOLVERS: Dict[str, SolverFn] = {
    "hybr": root_solve,
    "newton": newton_solve,
    "linear": linear_solve,
}


def get_solver(solver: Union[str, SolverFn]) -> SolverFn:
    if callable(solver):
        return solver
    try:
        return SOLVERS[solver]
    except KeyError:
        raise ValueError(f"Unknown solver '{solver}'. Choose one of {sorted(SOLVERS)} or pass a callable.") from None


# -----------------------------
# Period solver
# -----------------------------

@dataclass(frozen=True)
class NonRealDiagnostic:
    year: Optional[int]
    real: Tuple[float, ...]
    imag: Tuple[float, ...]

    def describe(self) -> str:
        parts = [f"{name}={re:.6g}{im:+.3g}j" for name, re, im in zip(UNKNOWNS, self.real, self.imag)]
        label = f"year {self.year}" if self.year is not None else "period"
        return f"Non-real solution in {label}: " + ", ".join(parts)


@dataclass(frozen=True)
class PeriodOutcome:
    state: PeriodState
    converged: bool
    solver_result: SolverResult
    non_real: Optional[NonRealDiagnostic] = None


def solve_period(
    prev: PeriodState,
    exog: Exogenous,
    shocks: PeriodShocks,
    params: ModelParameters,
    *,
    solver: Union[str, SolverFn] = "hybr",
    tol: float = 1e-6,
    max_iter: int = 100,
    year: Optional[int] = None,
) -> PeriodOutcome:
    """
    Solve the four-equation system for one period, warm-started at the previous period.

    Failure policy
    --------------
    - No convergence (or the solver raised): the quadruple falls back to the previous
      period's values and the period is flagged False.
    - Non-real root: the real part is kept, a NonRealDiagnostic is attached and the
      period is flagged False.

    Returns
    -------
    PeriodOutcome
    """
    solve = get_solver(solver)
    x0 = prev.quadruple()

    def fn(x):
        return period_residuals(x, prev, exog, shocks, params)

    try:
        result = solve(fn, x0.copy(), tol, max_iter)
    except (ArithmeticError, ValueError) as exc:
        result = SolverResult(x=x0.copy(), converged=False, n_iter=0,
                              residual_norm=float("nan"), message=f"solver raised: {exc}")

    x = np.asarray(result.x)
    converged = bool(result.converged)
    non_real = None

    if not converged:
        logger.warning(
            "Year %s: solver did not converge (%s, ||F||=%.3e); carrying forward previous values.",
            year, result.message, result.residual_norm,
        )
        x = x0
    elif np.iscomplexobj(x) and np.any(np.imag(x) != 0):
        non_real = NonRealDiagnostic(
            year=year,
            real=tuple(float(v) for v in np.real(x)),
            imag=tuple(float(v) for v in np.imag(x)),
        )
        logger.warning(non_real.describe())
        x = np.real(x).astype(float)
        converged = False
    else:
        x = np.real(x).astype(float)

    state = PeriodState(
        growth=float(x[0]),
        inflation=float(x[1]),
        rate=float(x[2]),
        exchange_rate=float(x[3]),
        cpi=prev.cpi + float(x[1]),
    )
    return PeriodOutcome(state=state, converged=converged, solver_result=result, non_real=non_real)


# -----------------------------
# Simulation driver
# -----------------------------

@dataclass
class SimulationResult:
    years: np.ndarray
    trend: np.ndarray
    growth: np.ndarray
    inflation: np.ndarray
    rate: np.ndarray
    exchange_rate: np.ndarray
    cpi: np.ndarray
    real_exchange_rate: np.ndarray
    real_rate: np.ndarray
    rate_differential: np.ndarray
    inflation_differential: np.ndarray
    real_rate_gap: np.ndarray
    real_exchange_rate_gap: np.ndarray
    # one flag per period 3..T
    convergence: np.ndarray
    params: ModelParameters
    diagnostics: List[NonRealDiagnostic] = field(default_factory=list)

    @property
    def T(self) -> int:
        return int(self.years.shape[0])

    @property
    def solved_years(self) -> np.ndarray:
        return self.years[2:]

    @property
    def n_failed(self) -> int:
        return int(np.sum(~self.convergence))

    def to_frame(self) -> pd.DataFrame:
        """Simulated series for periods 3..T, one row per year."""
        data = {name: getattr(self, name)[2:] for name in OUTPUT_COLUMNS}
        data["converged"] = self.convergence
        return pd.DataFrame(data, index=pd.Index(self.solved_years, name="Year"))


def simulate(
    observed: ObservedSeries,
    params: Optional[ModelParameters] = None,
    shocks: Optional[ShockSeries] = None,
    *,
    solver: Union[str, SolverFn] = "hybr",
    tol: float = 1e-6,
    max_iter: int = 100,
) -> SimulationResult:
    """
    Run the recursion: seed period 2 from data, then solve periods 3..T in order.

    Parameters
    ----------
    observed : ObservedSeries
        Loaded data (see aux_data.build_observed).
    params : ModelParameters, optional
        Defaults to ModelParameters().
    shocks : ShockSeries, optional
        Length must equal observed.T. Defaults to draw_shocks(T, params.shock_sd, seed=0).
    solver : name in SOLVERS or a callable (fn, x0, tol, max_iter) -> SolverResult

    Returns
    -------
    SimulationResult
    """
    params = params or ModelParameters()
    T = observed.T
    if T < 3:
        raise ValueError(f"Need at least 3 periods to simulate, got {T}.")
    if shocks is None:
        shocks = draw_shocks(T, sigma=params.shock_sd, seed=0)
    if len(shocks) != T:
        raise ValueError(f"Shock length {len(shocks)} does not match data length {T}.")
    solve = get_solver(solver)

    trend = trend_path(observed.q[1], T, params.appreciation_rate)

    out = {name: np.full(T, np.nan) for name in OUTPUT_COLUMNS}
    g, pi, i, e, cpi = out["growth"], out["inflation"], out["rate"], out["exchange_rate"], out["cpi"]
    convergence = np.ones(T - 2, dtype=bool)
    diagnostics: List[NonRealDiagnostic] = []

    def derive(k):
        out["real_exchange_rate"][k] = e[k] + observed.lcpi_f[k] - cpi[k]
        out["real_rate"][k] = i[k] - pi[k]
        out["real_rate_gap"][k] = out["real_rate"][k] - params.neutral_rate
        out["real_exchange_rate_gap"][k] = out["real_exchange_rate"][k] - trend[k]
        out["rate_differential"][k] = observed.i_f[k] - i[k]
        out["inflation_differential"][k] = pi[k] - observed.inflation_f[k]

    # period 2 from data
    g[1] = observed.growth[1]
    pi[1] = observed.inflation[1]
    i[1] = observed.i[1]
    e[1] = observed.le[1]
    cpi[1] = observed.lcpi[1]
    derive(1)

    for k in range(2, T):
        year = int(observed.years[k])
        prev = PeriodState(growth=g[k - 1], inflation=pi[k - 1], rate=i[k - 1],
                           exchange_rate=e[k - 1], cpi=cpi[k - 1])
        exog = Exogenous(
            cpi_f=observed.lcpi_f[k],
            i_f=observed.i_f[k],
            nda_diff=observed.nda_diff[k],
            trend=trend[k],
        )

        outcome = solve_period(prev, exog, shocks.at(k), params,
                               solver=solve, tol=tol, max_iter=max_iter, year=year)

        g[k] = outcome.state.growth
        pi[k] = outcome.state.inflation
        i[k] = outcome.state.rate
        e[k] = outcome.state.exchange_rate
        cpi[k] = cpi[k - 1] + pi[k]
        derive(k)

        convergence[k - 2] = outcome.converged
        if outcome.non_real is not None:
            diagnostics.append(outcome.non_real)

    n_ok = int(convergence.sum())
    logger.info("Simulation finished: %d/%d periods converged (%d-%d).",
                n_ok, T - 2, int(observed.years[2]), int(observed.years[-1]))

    for a in list(out.values()) + [trend, convergence]:
        a.setflags(write=False)

    return SimulationResult(
        years=np.asarray(observed.years),
        trend=trend,
        convergence=convergence,
        params=params,
        diagnostics=diagnostics,
        **out,
    )


# -----------------------------
# Small convenience helpers
# -----------------------------

def format_summary(result: SimulationResult) -> str:
    """
    Short text summary of a run (useful in logs).
    """
    lines = [f"Periods simulated: {result.T - 2} ({int(result.solved_years[0])}-{int(result.solved_years[-1])})"]
    lines.append(f"Converged: {result.T - 2 - result.n_failed}, failed: {result.n_failed}")
    failed = result.solved_years[~result.convergence]
    if failed.size > 0:
        lines.append("Failed years: " + ", ".join(str(int(y)) for y in failed))
    if result.diagnostics:
        lines.append("Non-real solutions:")
        for d in result.diagnostics:
            lines.append(f" - {d.describe()}")
    return "\n".join(lines)
