"""
Tests for pqi_spatial.schemas module.

Tests cover:
- Schema definitions are complete
- Schema validation catches missing columns
- Schema validation catches type mismatches
- Schema validation catches null values in non-nullable columns
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np

from pqi_spatial.schemas import (
    SCHEMA_REGISTRY,
    SCHEMA_PQI,
    SCHEMA_SDI,
    SCHEMA_UNITS,
    SCHEMA_SPATIAL_STATISTICS,
    TableSchema,
    ColumnSpec,
    validate_schema,
    get_schema,
    SchemaValidationError,
)


class TestSchemaRegistry:
    """Tests for schema registry completeness."""

    def test_registry_has_required_schemas(self):
        """Registry should contain every input and output schema."""
        for schema_name in ["pqi", "sdi", "units", "fill_provenance", "spatial_statistics"]:
            assert schema_name in SCHEMA_REGISTRY, f"Missing schema: {schema_name}"

    def test_get_schema_returns_schema(self):
        """get_schema() should return TableSchema objects."""
        assert isinstance(get_schema("pqi"), TableSchema)

    def test_get_schema_raises_on_unknown(self):
        """get_schema() should raise ValueError for unknown schemas."""
        with pytest.raises(ValueError, match="Unknown schema"):
            get_schema("nonexistent_schema")


class TestPQISchema:
    """Tests for validating the PQI input table."""

    @pytest.fixture
    def valid_pqi_df(self):
        return pd.DataFrame({
            "zcta": ["10001", "10002", "10003"],
            "year": [2019, 2019, 2019],
            "pqi_rate": [120.5, np.nan, 98.0],
        })

    def test_valid_dataframe_passes(self, valid_pqi_df):
        """Valid DataFrame should pass validation without error."""
        assert validate_schema(valid_pqi_df, SCHEMA_PQI) == []

    def test_accepts_schema_by_name(self, valid_pqi_df):
        """Should accept schema name string instead of TableSchema object."""
        assert validate_schema(valid_pqi_df, "pqi") == []

    def test_missing_required_column_fails(self, valid_pqi_df):
        """Missing required column should raise SchemaValidationError."""
        df = valid_pqi_df.drop(columns=["year"])
        with pytest.raises(SchemaValidationError, match="Missing required column.*year"):
            validate_schema(df, SCHEMA_PQI)

    def test_null_key_fails(self, valid_pqi_df):
        """The key column is not nullable."""
        df = valid_pqi_df.copy()
        df.loc[0, "zcta"] = None
        with pytest.raises(SchemaValidationError, match="null values"):
            validate_schema(df, SCHEMA_PQI)

    def test_rate_must_be_numeric(self, valid_pqi_df):
        """A rate column read as text is schema drift."""
        df = valid_pqi_df.copy()
        df["pqi_rate"] = df["pqi_rate"].astype(str)
        with pytest.raises(SchemaValidationError, match="dtype"):
            validate_schema(df, SCHEMA_PQI)

    def test_strict_rejects_extra_columns(self, valid_pqi_df):
        """strict=True should reject columns outside the schema."""
        df = valid_pqi_df.assign(extra=1)
        with pytest.raises(SchemaValidationError, match="Unexpected columns"):
            validate_schema(df, SCHEMA_PQI, strict=True)


class TestSDISchema:
    """The SDI year column is optional."""

    def test_without_year_passes(self):
        df = pd.DataFrame({"zcta": ["10001"], "sdi_score": [42.0]})
        assert validate_schema(df, SCHEMA_SDI) == []


class TestUnitsSchema:
    """Tests for the units schema geometry check."""

    def test_geodataframe_passes(self, grid_units):
        assert validate_schema(grid_units, SCHEMA_UNITS) == []

    def test_plain_geometry_column_fails(self, grid_units):
        """A geometry column that is not a GeoSeries should fail."""
        df = pd.DataFrame({"zcta": grid_units["zcta"],
                           "geometry": grid_units.geometry.to_wkt()})
        with pytest.raises(SchemaValidationError, match="expected 'geometry'"):
            validate_schema(df, SCHEMA_UNITS)


class TestSpatialStatisticsSchema:
    """Tests for the long interchange table."""

    def test_nullable_value_passes(self):
        """Excluded units have null values and p-values."""
        df = pd.DataFrame({
            "measure": ["pqi_rate", "pqi_rate"],
            "unit": ["ALL", "10001"],
            "statistic": ["morans_i", "local_morans_i"],
            "value": [0.31, np.nan],
            "p_value": [0.01, np.nan],
        })
        assert validate_schema(df, SCHEMA_SPATIAL_STATISTICS) == []


class TestColumnSpec:
    """Tests for ColumnSpec dataclass."""

    def test_column_spec_defaults(self):
        """Should use default values for optional attributes."""
        spec = ColumnSpec(name="test_col", dtype="object")
        assert spec.required is True
        assert spec.nullable is False
        assert spec.description == ""


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
