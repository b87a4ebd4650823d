"""
Pytest configuration and shared fixtures.

This module provides common fixtures used across test modules: small
synthetic ZCTA layouts (unit squares in a projected CRS) and matching PQI /
SDI tables.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np
import geopandas as gpd
from shapely.geometry import box


CRS = "EPSG:32618"


def square_units(cells, crs=CRS):
    """GeoDataFrame of unit squares from {key: (col, row)}."""
    keys = list(cells)
    return gpd.GeoDataFrame(
        {"zcta": keys},
        geometry=[box(c, r, c + 1, r + 1) for c, r in cells.values()],
        crs=crs,
    )


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    from pqi_spatial.paths import get_project_root
    return get_project_root()


@pytest.fixture(scope="session")
def params_config():
    """Load the params.yml configuration."""
    from pqi_spatial.io_utils import read_yaml
    from pqi_spatial.paths import paths
    return read_yaml(paths.params_yml)


@pytest.fixture
def chain_units():
    """Four squares in a row: 00001 - 00002 - 00003 - 00004."""
    return square_units({
        "00001": (0, 0),
        "00002": (1, 0),
        "00003": (2, 0),
        "00004": (3, 0),
    })


@pytest.fixture
def chain_with_island():
    """The four-square chain plus 00099, far from every other unit."""
    return square_units({
        "00001": (0, 0),
        "00002": (1, 0),
        "00003": (2, 0),
        "00004": (3, 0),
        "00099": (50, 50),
    })


@pytest.fixture
def grid_units():
    """3 x 3 grid of squares, keys 10001..10009 in row-major order."""
    return square_units({
        f"{10001 + 3 * r + c}": (c, r) for r in range(3) for c in range(3)
    })


@pytest.fixture
def sample_pqi_df():
    """PQI rates for the 3 x 3 grid over two years, with gaps."""
    keys = [str(10001 + i) for i in range(9)]
    rates_2018 = [100.0, 110.0, np.nan, 130.0, 140.0, 150.0, 160.0, 170.0, 180.0]
    rates_2019 = [105.0, np.nan, 125.0, 135.0, 145.0, 155.0, 165.0, 175.0, 185.0]
    return pd.DataFrame({
        "zcta": keys + keys,
        "year": [2018] * 9 + [2019] * 9,
        "pqi_rate": rates_2018 + rates_2019,
    })


@pytest.fixture
def sample_sdi_df():
    """SDI scores for the grid, keyed as integers (no year column)."""
    return pd.DataFrame({
        "zcta": [10001 + i for i in range(9)],
        "sdi_score": [10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 70.0, 80.0, np.nan],
    })


@pytest.fixture
def analysis_params():
    """Parameters equivalent to configs/params.yml, for in-memory runs."""
    return {
        "keys": {"geo_key": "zcta", "period": "year", "key_width": 5},
        "gap_fill": {
            "columns": ["pqi_rate", "sdi_score"],
            "chain": ["carried", "median-group", "median-global"],
            "overrides": {},
        },
        "analysis": {"period": 2019, "measures": ["pqi_rate", "sdi_score"]},
        "weights": {"mode": "contiguity", "tolerance": 0.01, "k": 4, "zero_policy": "allow"},
        "autocorrelation": {"permutations": 0, "seed": 42, "correction": None},
        "regression": {
            "dependent": "pqi_rate",
            "predictors": ["sdi_score"],
            "spatial_lag": True,
            "zero_policy": "allow",
            "lag_method": "full",
        },
    }


@pytest.fixture
def temp_parquet_file(tmp_path):
    """Create a temporary parquet file path."""
    return tmp_path / "test_output.parquet"


@pytest.fixture
def temp_json_file(tmp_path):
    """Create a temporary JSON file path."""
    return tmp_path / "test_output.json"


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "smoke: mark test as smoke test (end-to-end run on synthetic inputs)"
    )
