"""
Loading and transforming the yearly macro table used by the NK simulation.

Expected input (one row per year):
    Year, RGDP, CPI, i, e, i_foreign, CPI_foreign, NDA

    RGDP, CPI, e, CPI_foreign and NDA are levels and must be strictly positive
    (they are log-transformed). i and i_foreign are percentages, used as given.

Transforms (all "logs" are 100*ln so differences read as percent):
    lrgdp   = 100 ln RGDP          growth      = diff(lrgdp)
    lcpi    = 100 ln CPI           inflation   = diff(lcpi)
    le      = 100 ln e             inflation_f = diff(lcpi_f)
    lcpi_f  = 100 ln CPI_foreign   nda_diff    = diff(lnda)
    lnda    = 100 ln (NDA / CPI)
    q       = le + lcpi_f - lcpi   (observed real exchange rate)
    r       = i - inflation        (observed real rate)

The first period has no derivative: its growth/inflation/differences are NaN.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
from fredapi import Fred

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Year", "RGDP", "CPI", "i", "e", "i_foreign", "CPI_foreign", "NDA")
POSITIVE_COLUMNS = ("RGDP", "CPI", "e", "CPI_foreign", "NDA")

# FRED ids for the foreign (US) block
FRED_FOREIGN_RATE = "FEDFUNDS"
FRED_FOREIGN_CPI = "CPIAUCSL"


class InputDataError(ValueError):
    """Structural problem in the input table. Fatal at load time."""


# -----------------------------
# Data structures
# -----------------------------

@dataclass(frozen=True)
class ObservedSeries:
    # Levels / logs, one entry per year (length T)
    years: np.ndarray
    lrgdp: np.ndarray
    lcpi: np.ndarray
    i: np.ndarray
    le: np.ndarray
    i_f: np.ndarray
    lcpi_f: np.ndarray
    lnda: np.ndarray

    # Derived, NaN at index 0
    growth: np.ndarray
    inflation: np.ndarray
    inflation_f: np.ndarray
    nda_diff: np.ndarray

    # Observed real exchange rate and real interest rate
    q: np.ndarray
    r: np.ndarray

    @property
    def T(self) -> int:
        return int(self.years.shape[0])

    def to_frame(self) -> pd.DataFrame:
        cols = {
            "lrgdp": self.lrgdp, "lcpi": self.lcpi, "i": self.i, "le": self.le,
            "i_foreign": self.i_f, "lcpi_f": self.lcpi_f, "lnda": self.lnda,
            "growth": self.growth, "inflation": self.inflation,
            "inflation_f": self.inflation_f, "nda_diff": self.nda_diff,
            "q": self.q, "r": self.r,
        }
        return pd.DataFrame(cols, index=pd.Index(self.years, name="Year"))


# -----------------------------
# Reading + validation
# -----------------------------

def read_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read the raw yearly table from a CSV or Excel file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path)
    elif suffix in (".xlsx", ".xls"):
        df = pd.read_excel(path)
    else:
        raise InputDataError(f"Unsupported file type '{suffix}' (use .csv, .xlsx or .xls).")

    df.columns = [str(c).strip() for c in df.columns]
    logger.info("Read %d rows from %s", len(df), path)
    return df


def validate_table(df: pd.DataFrame) -> pd.DataFrame:
    """
    Check the raw table and return a clean copy sorted by Year.

    Raises
    ------
    InputDataError
        Missing columns, missing values, non-numeric entries, duplicated years,
        non-positive values in log-transformed columns, or fewer than 3 rows.
    """
    df = df.copy()
    df.columns = [str(c).strip() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise InputDataError(f"Missing required column(s): {missing}")

    df = df[list(REQUIRED_COLUMNS)].copy()
    for col in REQUIRED_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    na_counts = df.isna().sum()
    bad = na_counts[na_counts > 0]
    if not bad.empty:
        raise InputDataError(
            "Missing or non-numeric values in: "
            + ", ".join(f"{c} ({n})" for c, n in bad.items())
        )

    for col in POSITIVE_COLUMNS:
        nonpos = df.loc[df[col] <= 0, "Year"].tolist()
        if nonpos:
            raise InputDataError(f"Column {col} must be strictly positive; offending years: {nonpos}")

    if df["Year"].duplicated().any():
        dup = df.loc[df["Year"].duplicated(), "Year"].tolist()
        raise InputDataError(f"Duplicated years: {dup}")

    if len(df) < 3:
        raise InputDataError(f"Need at least 3 years of data, got {len(df)}.")

    df = df.sort_values("Year").reset_index(drop=True)
    df["Year"] = df["Year"].astype(int)
    return df


# -----------------------------
# Transforms
# -----------------------------

def log100(x: pd.Series) -> pd.Series:
    return 100.0 * np.log(x.astype(float))


def build_observed(df: pd.DataFrame) -> ObservedSeries:
    """
    Validate the raw table and build the log / growth / difference series.
    """
    df = validate_table(df)

    lrgdp = log100(df["RGDP"])
    lcpi = log100(df["CPI"])
    le = log100(df["e"])
    lcpi_f = log100(df["CPI_foreign"])
    lnda = log100(df["NDA"] / df["CPI"])

    i = df["i"].astype(float)
    i_f = df["i_foreign"].astype(float)

    growth = lrgdp.diff(1)
    inflation = lcpi.diff(1)
    inflation_f = lcpi_f.diff(1)
    nda_diff = lnda.diff(1)

    q = le + lcpi_f - lcpi
    r = i - inflation

    def arr(s: pd.Series) -> np.ndarray:
        a = s.to_numpy(dtype=float).copy()
        a.setflags(write=False)
        return a

    years = df["Year"].to_numpy(dtype=int).copy()
    years.setflags(write=False)

    return ObservedSeries(
        years=years,
        lrgdp=arr(lrgdp), lcpi=arr(lcpi), i=arr(i), le=arr(le),
        i_f=arr(i_f), lcpi_f=arr(lcpi_f), lnda=arr(lnda),
        growth=arr(growth), inflation=arr(inflation),
        inflation_f=arr(inflation_f), nda_diff=arr(nda_diff),
        q=arr(q), r=arr(r),
    )


def load_observed(path: Union[str, Path]) -> ObservedSeries:
    return build_observed(read_table(path))


# -----------------------------
# Foreign block from FRED
# -----------------------------

def get_fred_client(api_key: Optional[str] = None):
    """
    fredapi client using `api_key` or the FRED_API_KEY environment variable.
    """
    api_key = api_key or os.getenv("FRED_API_KEY")
    if not api_key:
        raise ValueError("FRED_API_KEY environment variable is required to download the foreign block.")
    return Fred(api_key=api_key)


def annual_mean(s: pd.Series) -> pd.Series:
    s = pd.to_numeric(s, errors="coerce").dropna()
    s.index = pd.DatetimeIndex(s.index)
    out = s.groupby(s.index.year).mean()
    out.index = out.index.astype(int)
    return out


def fetch_foreign_block(fred, start_year: int, end_year: int) -> pd.DataFrame:
    """
    Yearly averages of the US policy rate and US CPI.

    Parameters
    ----------
    fred : fredapi.Fred (or anything with get_series(series_id, observation_start=, observation_end=))
    start_year, end_year : int
        Inclusive range of calendar years.

    Returns
    -------
    DataFrame with columns Year, i_foreign, CPI_foreign.
    """
    if end_year < start_year:
        raise ValueError("end_year must be >= start_year.")

    start = f"{start_year}-01-01"
    end = f"{end_year}-12-31"

    rate = annual_mean(fred.get_series(FRED_FOREIGN_RATE, observation_start=start, observation_end=end))
    cpi = annual_mean(fred.get_series(FRED_FOREIGN_CPI, observation_start=start, observation_end=end))

    out = pd.concat([rate.rename("i_foreign"), cpi.rename("CPI_foreign")], axis=1)
    out = out.loc[(out.index >= start_year) & (out.index <= end_year)]
    out.index.name = "Year"
    logger.info("Downloaded foreign block for %d-%d (%d years)", start_year, end_year, len(out))
    return out.reset_index()


def attach_foreign_block(table: pd.DataFrame, foreign: pd.DataFrame) -> pd.DataFrame:
    """
    Replace i_foreign / CPI_foreign in `table` with the values in `foreign`, matched on Year.
    Years missing from `foreign` end up NaN and are rejected later by validate_table.
    """
    base = table.drop(columns=[c for c in ("i_foreign", "CPI_foreign") if c in table.columns])
    return base.merge(foreign[["Year", "i_foreign", "CPI_foreign"]], on="Year", how="left")
