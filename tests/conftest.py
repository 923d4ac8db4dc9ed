import os
import sys

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aux_data import build_observed
from aux_NK import ModelParameters, draw_shocks


@pytest.fixture
def raw_table():
    return pd.DataFrame({
        "Year": [2000, 2001, 2002, 2003, 2004, 2005, 2006, 2007],
        "RGDP": [100.0, 103.0, 107.0, 110.0, 115.0, 119.0, 124.0, 130.0],
        "CPI": [100.0, 104.0, 109.0, 115.0, 121.0, 128.0, 136.0, 145.0],
        "i": [10.0, 10.5, 11.0, 11.5, 12.0, 11.0, 10.5, 10.0],
        "e": [3.5, 3.8, 4.2, 4.5, 5.5, 5.8, 5.7, 5.8],
        "i_foreign": [6.0, 3.5, 1.7, 1.1, 1.3, 3.2, 5.0, 5.0],
        "CPI_foreign": [172.0, 177.0, 180.0, 184.0, 189.0, 195.0, 201.0, 207.0],
        "NDA": [200.0, 215.0, 230.0, 250.0, 270.0, 290.0, 320.0, 350.0],
    })


@pytest.fixture
def observed(raw_table):
    return build_observed(raw_table)


@pytest.fixture
def params():
    return ModelParameters()


@pytest.fixture
def shocks(observed, params):
    return draw_shocks(observed.T, sigma=params.shock_sd, seed=0)
