'''
Simulating the small open-economy NK model over the historical sample

Four equations (IS, Phillips, policy rule, UIP closure) are solved jointly every year,
starting from the observed values of the second year, and the simulated paths are
compared with the data.
'''

# === PACKAGES AND IMPORTS =======

import logging
import os

import matplotlib.pyplot as plt

from aux_data import load_observed, read_table, build_observed, get_fred_client, fetch_foreign_block, attach_foreign_block
from aux_NK import ModelParameters, draw_shocks, simulate, format_summary
from aux_report import plot_convergence, plot_actual_vs_simulated, fit_statistics, save_outputs

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

DATA_PATH = "egypt_macro.xlsx"
OUT_DIR = "results"

# Replace i_foreign / CPI_foreign with FRED data (needs FRED_API_KEY)
USE_FRED_FOREIGN = False

# ==== PARAMETERS ====

alpha = 0.6     # output persistence
beta = 0.15     # real rate sensitivity
gamma = 0.03    # real exchange rate sensitivity (IS)
phi = 0.7       # inflation persistence
theta = 0.1     # output pass-through to inflation
psi = 0.3       # exchange rate pass-through
rho = 0.8       # interest rate smoothing
lambda_ = 0.2   # response to NDA growth

neutral_rate = 3.5
risk_premium = 3.5
appreciation_rate = 0.7   # trend real appreciation, pp per year
shock_sd = 0.5

SEED = 0
SOLVER = "hybr"   # "hybr", "newton" or "linear"
TOL = 1e-6
MAX_ITER = 100

params = ModelParameters(
    alpha=alpha, beta=beta, gamma=gamma,
    phi=phi, theta=theta, psi=psi,
    rho=rho, lambda_=lambda_,
    neutral_rate=neutral_rate,
    risk_premium=risk_premium,
    appreciation_rate=appreciation_rate,
    shock_sd=shock_sd,
)

# === DATA =====

if USE_FRED_FOREIGN:
    table = read_table(DATA_PATH)
    fred = get_fred_client()
    foreign = fetch_foreign_block(fred, int(table["Year"].min()), int(table["Year"].max()))
    observed = build_observed(attach_foreign_block(table, foreign))
else:
    observed = load_observed(DATA_PATH)

print(f"Loaded {observed.T} years: {observed.years[0]}-{observed.years[-1]}")

# === SIMULATION =====

shocks = draw_shocks(observed.T, sigma=params.shock_sd, seed=SEED)

result = simulate(observed, params, shocks, solver=SOLVER, tol=TOL, max_iter=MAX_ITER)
print(format_summary(result))

# === REPORTING =====

stats = fit_statistics(observed, result)
print(stats.round(3))

save_outputs(result, stats, OUT_DIR)

fig_conv = plot_convergence(result.solved_years, result.convergence)
fig_conv.savefig(os.path.join(OUT_DIR, "nk_convergence.png"), dpi=150)

fig_cmp = plot_actual_vs_simulated(observed, result)
fig_cmp.savefig(os.path.join(OUT_DIR, "nk_actual_vs_simulated.png"), dpi=150)

plt.show()
