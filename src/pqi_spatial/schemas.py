"""
Schema validation for input tables and written outputs.

Inputs are validated on read and outputs before write. Schema drift is a
hard failure.
"""

from dataclasses import dataclass

import pandas as pd


class SchemaValidationError(Exception):
    """Raised when data does not conform to expected schema."""
    pass


@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: str  # pandas dtype string (e.g., "int64", "float64", "object", "geometry")
    required: bool = True
    nullable: bool = False
    description: str = ""


@dataclass
class TableSchema:
    """Schema definition for a table."""
    name: str
    description: str
    columns: list[ColumnSpec]

    def required_columns(self) -> list[str]:
        """Get list of required column names."""
        return [c.name for c in self.columns if c.required]

    def all_columns(self) -> list[str]:
        """Get list of all column names."""
        return [c.name for c in self.columns]


# =============================================================================
# Schema definitions
# =============================================================================

SCHEMA_PQI = TableSchema(
    name="pqi",
    description="PQI admission rates by ZCTA and year",
    columns=[
        ColumnSpec("zcta", "object", required=True, nullable=False,
                   description="ZIP Code Tabulation Area"),
        ColumnSpec("year", "int64", required=True, nullable=False,
                   description="Reporting year"),
        ColumnSpec("pqi_rate", "float64", required=True, nullable=True,
                   description="PQI composite rate per 100,000"),
    ]
)

SCHEMA_SDI = TableSchema(
    name="sdi",
    description="Social Deprivation Index scores by ZCTA",
    columns=[
        ColumnSpec("zcta", "object", required=True, nullable=False,
                   description="ZIP Code Tabulation Area"),
        ColumnSpec("year", "int64", required=False, nullable=False,
                   description="Vintage year, if the extract is multi-year"),
        ColumnSpec("sdi_score", "float64", required=True, nullable=True,
                   description="SDI composite score (1-100)"),
    ]
)

SCHEMA_UNITS = TableSchema(
    name="units",
    description="ZCTA polygons",
    columns=[
        ColumnSpec("zcta", "object", required=True, nullable=False,
                   description="ZIP Code Tabulation Area"),
        ColumnSpec("geometry", "geometry", required=True, nullable=False,
                   description="Polygon geometry"),
    ]
)

SCHEMA_FILL_PROVENANCE = TableSchema(
    name="fill_provenance",
    description="One row per imputed cell",
    columns=[
        ColumnSpec("column", "object", required=True, nullable=False),
        ColumnSpec("group", "object", required=True, nullable=False),
        ColumnSpec("period", "int64", required=True, nullable=False),
        ColumnSpec("method", "object", required=True, nullable=False),
        ColumnSpec("value", "float64", required=True, nullable=False),
    ]
)

SCHEMA_SPATIAL_STATISTICS = TableSchema(
    name="spatial_statistics",
    description="Long interchange table of spatial statistics",
    columns=[
        ColumnSpec("measure", "object", required=True, nullable=False,
                   description="Measure or residual series the statistic describes"),
        ColumnSpec("unit", "object", required=True, nullable=False,
                   description="Unit key, or 'ALL' for global statistics"),
        ColumnSpec("statistic", "object", required=True, nullable=False,
                   description="Statistic name (morans_i, local_morans_i, gi_star, ...)"),
        ColumnSpec("value", "float64", required=True, nullable=True,
                   description="Statistic value; null for excluded units"),
        ColumnSpec("p_value", "float64", required=True, nullable=True,
                   description="p-value (adjusted if a correction was requested)"),
    ]
)

# Registry of all schemas
SCHEMA_REGISTRY: dict[str, TableSchema] = {
    "pqi": SCHEMA_PQI,
    "sdi": SCHEMA_SDI,
    "units": SCHEMA_UNITS,
    "fill_provenance": SCHEMA_FILL_PROVENANCE,
    "spatial_statistics": SCHEMA_SPATIAL_STATISTICS,
}


# =============================================================================
# Validation functions
# =============================================================================

def get_schema(name: str) -> TableSchema:
    """
    Get a schema by name from the registry.

    Raises:
        ValueError: If schema not found.
    """
    if name not in SCHEMA_REGISTRY:
        raise ValueError(f"Unknown schema: {name}. Available: {list(SCHEMA_REGISTRY.keys())}")
    return SCHEMA_REGISTRY[name]


def validate_schema(
    df: pd.DataFrame,
    schema: TableSchema | str,
    strict: bool = False,
) -> list[str]:
    """
    Validate a DataFrame against a schema.

    Args:
        df: DataFrame to validate.
        schema: TableSchema object or schema name from registry.
        strict: If True, fail on extra columns not in schema.

    Returns:
        List of validation error messages (empty if valid).

    Raises:
        SchemaValidationError: If validation fails.
    """
    if isinstance(schema, str):
        schema = get_schema(schema)

    errors = []

    for col in schema.columns:
        if col.required and col.name not in df.columns:
            errors.append(f"Missing required column: {col.name}")

    if strict:
        extra_cols = set(df.columns) - set(schema.all_columns())
        if extra_cols:
            errors.append(f"Unexpected columns: {sorted(extra_cols)}")

    for col in schema.columns:
        if col.name not in df.columns:
            continue

        series = df[col.name]

        if not col.nullable and series.isna().any():
            null_count = series.isna().sum()
            errors.append(f"Column '{col.name}' has {null_count} null values but is not nullable")

        if col.dtype == "geometry":
            if str(series.dtype) != "geometry":
                errors.append(f"Column '{col.name}' has dtype '{series.dtype}', expected 'geometry'")
            continue

        actual_dtype = str(series.dtype)
        expected_dtype = col.dtype

        # Allow some type flexibility
        compatible = False
        if expected_dtype == "object" and actual_dtype in ("object", "string", "str", "category"):
            compatible = True
        elif expected_dtype == "int64" and actual_dtype in ("int64", "int32", "Int64", "Int32"):
            compatible = True
        elif expected_dtype == "float64" and actual_dtype in ("float64", "float32", "Float64"):
            compatible = True
        elif expected_dtype == actual_dtype:
            compatible = True

        if not compatible:
            errors.append(f"Column '{col.name}' has dtype '{actual_dtype}', expected '{expected_dtype}'")

    if errors:
        error_msg = f"Schema validation failed for '{schema.name}':\n" + "\n".join(f"  - {e}" for e in errors)
        raise SchemaValidationError(error_msg)

    return errors
