"""
Tests for pqi_spatial.regression module.

Tests cover:
- OLS coefficients on exact and noisy data
- Handling of incomplete rows and too-small samples
- Spatial lag model fit and zero policy
- Residual spatial-dependence check
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np
import geopandas as gpd
from shapely.geometry import box

from pqi_spatial.errors import InsufficientDataError, IsolatedUnitError
from pqi_spatial.regression import INTERCEPT, RHO, fit_ols, fit_spatial_lag
from pqi_spatial.weights import contiguity_weights


@pytest.fixture
def grid_weights(grid_units):
    return contiguity_weights(grid_units, "zcta")


@pytest.fixture
def grid_frame(grid_weights):
    """y = 10 + 0.5 x plus a fixed perturbation, one row per grid unit."""
    x = np.array([12.0, 25.0, 31.0, 44.0, 52.0, 60.0, 71.0, 83.0, 95.0])
    noise = np.array([1.2, -0.8, 0.5, -1.5, 0.9, 0.1, -0.4, 1.1, -0.6])
    return pd.DataFrame({
        "zcta": list(grid_weights.keys),
        "sdi_score": x,
        "pqi_rate": 10.0 + 0.5 * x + noise,
    })


class TestOLS:
    """Tests for fit_ols()."""

    def test_exact_linear_relationship(self):
        data = pd.DataFrame({"x": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]})
        data["y"] = 2.0 * data["x"]

        result = fit_ols(data, "y", "x")

        assert result.coefficient("x") == pytest.approx(2.0)
        assert result.coefficient(INTERCEPT) == pytest.approx(0.0, abs=1e-9)
        assert result.r_squared == pytest.approx(1.0)
        assert result.n == 6
        assert result.residual_autocorrelation is None
        assert result.residual_dependence is None

    def test_noisy_fit(self, grid_frame):
        result = fit_ols(grid_frame, "pqi_rate", ["sdi_score"])

        assert result.coefficient("sdi_score") == pytest.approx(0.5, abs=0.05)
        assert 0.95 < result.r_squared <= 1.0
        assert result.adj_r_squared < result.r_squared
        assert result.statistic_kind == "t"
        assert result.p_values[1] < 0.001

    def test_residual_morans_i(self, grid_frame, grid_weights):
        result = fit_ols(grid_frame, "pqi_rate", "sdi_score", weights=grid_weights, key="zcta")

        moran = result.residual_autocorrelation
        assert moran is not None
        assert moran.n == 9
        assert result.residual_dependence in (True, False)
        assert result.residuals.index.tolist() == list(grid_weights.keys)

    def test_weights_require_key(self, grid_frame, grid_weights):
        with pytest.raises(ValueError, match="key is required"):
            fit_ols(grid_frame, "pqi_rate", "sdi_score", weights=grid_weights)

    def test_incomplete_rows_dropped(self, grid_frame):
        data = grid_frame.copy()
        data.loc[0, "sdi_score"] = np.nan
        assert fit_ols(data, "pqi_rate", "sdi_score").n == 8

    def test_too_few_rows_raises(self):
        data = pd.DataFrame({"x": [1.0, 2.0], "y": [3.0, 5.0]})
        with pytest.raises(InsufficientDataError):
            fit_ols(data, "y", "x")

    def test_missing_column_raises(self, grid_frame):
        with pytest.raises(ValueError, match="Columns not found"):
            fit_ols(grid_frame, "pqi_rate", "income")

    def test_coefficient_table(self, grid_frame):
        table = fit_ols(grid_frame, "pqi_rate", "sdi_score").coefficient_table()
        assert table["term"].tolist() == [INTERCEPT, "sdi_score"]
        assert list(table.columns) == [
            "model", "dependent", "term", "estimate", "std_error", "t_stat", "p_value"
        ]


class TestSpatialLag:
    """Tests for fit_spatial_lag()."""

    def test_fit(self, grid_frame, grid_weights):
        result = fit_spatial_lag(grid_frame, "pqi_rate", "sdi_score", grid_weights, "zcta")

        assert result.model == "spatial_lag"
        assert result.coefficient_names == (INTERCEPT, "sdi_score", RHO)
        assert -1.0 < result.rho < 1.0
        assert result.coefficient(RHO) == pytest.approx(result.rho)
        assert np.isfinite(result.log_likelihood)
        assert result.statistic_kind == "z"
        assert result.n == 9
        assert result.residual_autocorrelation is not None
        assert "z_stat" in result.coefficient_table().columns

    def test_isolated_unit_requires_allow(self, grid_units, grid_frame):
        island = gpd.GeoDataFrame({"zcta": ["99999"]}, geometry=[box(50, 50, 51, 51)],
                                  crs=grid_units.crs)
        units = pd.concat([grid_units, island], ignore_index=True)
        weights = contiguity_weights(units, "zcta", zero_policy="allow")
        data = pd.concat([grid_frame, pd.DataFrame({
            "zcta": ["99999"], "sdi_score": [50.0], "pqi_rate": [36.0],
        })], ignore_index=True)

        with pytest.raises(IsolatedUnitError) as excinfo:
            fit_spatial_lag(data, "pqi_rate", "sdi_score", weights, "zcta")
        assert excinfo.value.keys == ["99999"]

        result = fit_spatial_lag(data, "pqi_rate", "sdi_score", weights, "zcta",
                                 zero_policy="allow")
        assert result.n == 10
        assert result.residual_autocorrelation.excluded == ("99999",)

    def test_isolation_from_missing_rows(self, chain_units):
        """Dropping 00002 leaves 00001 without neighbors."""
        weights = contiguity_weights(chain_units, "zcta")
        data = pd.DataFrame({
            "zcta": list(weights.keys),
            "x": [1.0, np.nan, 3.0, 4.0],
            "y": [2.0, 4.0, 5.0, 9.0],
        })
        with pytest.raises(IsolatedUnitError) as excinfo:
            fit_spatial_lag(data, "y", "x", weights, "zcta")
        assert excinfo.value.keys == ["00001"]

    def test_unknown_units_raise(self, grid_frame, chain_units):
        weights = contiguity_weights(chain_units, "zcta")
        with pytest.raises(ValueError, match="not in weights"):
            fit_spatial_lag(grid_frame, "pqi_rate", "sdi_score", weights, "zcta")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
