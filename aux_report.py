'''
Charts and tables for the NK simulation: convergence status, actual vs simulated paths,
fit statistics and CSV export.
'''

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from aux_data import ObservedSeries
from aux_NK import SimulationResult

logger = logging.getLogger(__name__)

# (label, simulated attribute, observed attribute)
COMPARISON_PANELS = (
    ("Output growth", "growth", "growth"),
    ("Inflation", "inflation", "inflation"),
    ("Nominal interest rate", "rate", "i"),
    ("Nominal exchange rate (log)", "exchange_rate", "le"),
    ("Real exchange rate", "real_exchange_rate", "q"),
    ("Real interest rate", "real_rate", "r"),
)


def comparison_pairs(observed: ObservedSeries, result: SimulationResult) -> dict:
    """
    Actual and simulated arrays for periods 3..T, keyed by simulated attribute name.
    """
    pairs = {}
    for _, sim_name, obs_name in COMPARISON_PANELS:
        pairs[sim_name] = (
            np.asarray(getattr(observed, obs_name))[2:],
            np.asarray(getattr(result, sim_name))[2:],
        )
    return pairs


# === CONVERGENCE CHART =====

def plot_convergence(years, converged, ax: Optional[plt.Axes] = None) -> plt.Figure:
    years = np.asarray(years)
    converged = np.asarray(converged, dtype=bool)
    if years.shape != converged.shape:
        raise ValueError("years and converged must have the same length.")

    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 3))
    else:
        fig = ax.figure

    ax.step(years, converged.astype(int), where="mid", linewidth=1.0, color="0.4")
    ax.scatter(years[converged], np.ones(converged.sum()), marker="o", color="tab:green", label="converged")
    ax.scatter(years[~converged], np.zeros((~converged).sum()), marker="x", color="tab:red", label="failed")
    ax.set_yticks([0, 1])
    ax.set_yticklabels(["failed", "converged"])
    ax.set_ylim(-0.5, 1.5)
    ax.set_title("Solver convergence by year")
    ax.set_xlabel("year")
    ax.legend(loc="lower right", fontsize=8)

    fig.tight_layout()
    return fig


# === ACTUAL VS SIMULATED =====

def plot_actual_vs_simulated(observed: ObservedSeries, result: SimulationResult) -> plt.Figure:
    years = result.solved_years
    pairs = comparison_pairs(observed, result)

    fig, axes = plt.subplots(2, 3, figsize=(14, 7), sharex=True)
    axes = axes.ravel()

    for ax, (label, sim_name, _) in zip(axes, COMPARISON_PANELS):
        actual, simulated = pairs[sim_name]
        ax.plot(years, actual, label="actual", linewidth=1.5)
        ax.plot(years, simulated, label="simulated", linewidth=1.5, linestyle="--")
        if sim_name == "real_exchange_rate":
            ax.plot(years, result.trend[2:], label="trend", linewidth=0.8, color="0.5")
        ax.set_title(label)
        ax.tick_params(axis="both", labelsize=9)

    axes[0].legend(fontsize=8)
    for ax in axes[3:]:
        ax.set_xlabel("year")

    fig.tight_layout()
    return fig


# === FIT STATISTICS =====

def fit_statistics(observed: ObservedSeries, result: SimulationResult) -> pd.DataFrame:
    """
    RMSE, MAE and correlation between actual and simulated series over converged periods 3..T.
    """
    mask = np.asarray(result.convergence, dtype=bool)
    pairs = comparison_pairs(observed, result)
    rows = []
    for label, sim_name, _ in COMPARISON_PANELS:
        actual, simulated = pairs[sim_name]
        a = actual[mask]
        s = simulated[mask]
        err = s - a

        if a.size >= 2 and np.std(a) > 0 and np.std(s) > 0:
            corr = float(np.corrcoef(a, s)[0, 1])
        else:
            corr = np.nan

        rows.append({
            "variable": sim_name,
            "label": label,
            "n": int(a.size),
            "rmse": float(np.sqrt(np.mean(err ** 2))) if a.size else np.nan,
            "mae": float(np.mean(np.abs(err))) if a.size else np.nan,
            "corr": corr,
        })

    return pd.DataFrame(rows).set_index("variable")


# === SAVE =====

def save_outputs(
    result: SimulationResult,
    stats: pd.DataFrame,
    out_dir: Union[str, Path],
) -> Tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    sim_path = out_dir / "nk_simulation.csv"
    stats_path = out_dir / "nk_fit_statistics.csv"

    result.to_frame().to_csv(sim_path)
    stats.to_csv(stats_path)
    logger.info("Saved %s and %s", sim_path, stats_path)
    return sim_path, stats_path
