"""
Quality assurance checks for inputs and stage outputs.

Checks return QAResult objects and, when given a logger, emit a structured
qa_check event. They report; the stages themselves enforce.
"""

import logging
from dataclasses import dataclass
from typing import Any

import pandas as pd

from pqi_spatial.logging_utils import log_qa_check


@dataclass
class QAResult:
    """Result of a QA check."""
    check_name: str
    passed: bool
    message: str
    details: dict[str, Any] | None = None

    def __bool__(self) -> bool:
        return self.passed


def _log(result: QAResult, logger: logging.Logger | None) -> QAResult:
    if logger:
        log_qa_check(logger, result.check_name, result.passed, result.message,
                     **(result.details or {}))
    return result


# =============================================================================
# CRS checks
# =============================================================================

def check_crs(
    gdf: pd.DataFrame,
    expected_crs: str | None = None,
    logger: logging.Logger | None = None,
) -> QAResult:
    """
    Check that a GeoDataFrame has a CRS, and optionally that it matches.

    Args:
        gdf: GeoDataFrame to check.
        expected_crs: Expected CRS string (e.g., "EPSG:4269"). If None, just
            checks a CRS exists.
        logger: Optional logger.
    """
    import geopandas as gpd

    check_name = "crs_valid"

    if not isinstance(gdf, gpd.GeoDataFrame):
        result = QAResult(check_name, False, "Input is not a GeoDataFrame",
                          {"type": type(gdf).__name__})
    elif gdf.crs is None:
        result = QAResult(check_name, False, "GeoDataFrame has no CRS defined", {"crs": None})
    elif expected_crs is None:
        result = QAResult(check_name, True, f"CRS is defined: {gdf.crs}", {"crs": str(gdf.crs)})
    else:
        try:
            matches = gdf.crs.to_epsg() == int(expected_crs.split(":")[1])
        except (ValueError, IndexError, AttributeError):
            matches = str(gdf.crs) == expected_crs
        if matches:
            result = QAResult(check_name, True, f"CRS is {expected_crs}",
                              {"crs": str(gdf.crs), "expected": expected_crs})
        else:
            result = QAResult(check_name, False, f"CRS mismatch: got {gdf.crs}, expected {expected_crs}",
                              {"crs": str(gdf.crs), "expected": expected_crs})

    return _log(result, logger)


# =============================================================================
# Key checks
# =============================================================================

def check_unique_keys(
    df: pd.DataFrame,
    columns: list[str],
    logger: logging.Logger | None = None,
) -> QAResult:
    """
    Check that a combination of columns (e.g. zcta + year) is unique.
    """
    check_name = "unique_keys"

    missing = [c for c in columns if c not in df.columns]
    if missing:
        result = QAResult(check_name, False, f"Key columns not found: {missing}",
                          {"columns": list(df.columns)})
    else:
        dup_mask = df.duplicated(subset=columns, keep=False)
        n_dup = int(dup_mask.sum())
        if n_dup == 0:
            result = QAResult(check_name, True, f"All {len(df)} {columns} combinations are unique",
                              {"total": len(df), "columns": columns})
        else:
            sample = df.loc[dup_mask, columns].drop_duplicates().head(5).to_dict(orient="records")
            result = QAResult(check_name, False, f"Found {n_dup} rows with duplicate {columns}",
                              {"total": len(df), "duplicates": n_dup,
                               "sample_duplicates": sample, "columns": columns})

    return _log(result, logger)


# =============================================================================
# Geometry checks
# =============================================================================

def check_valid_geoms(
    gdf: pd.DataFrame,
    logger: logging.Logger | None = None,
) -> QAResult:
    """
    Check that all geometries are present, non-empty and topologically valid.

    Invalid polygons are repaired later by the weights builder; this check
    records how many there were before repair.
    """
    import geopandas as gpd

    check_name = "valid_geoms"

    if not isinstance(gdf, gpd.GeoDataFrame):
        result = QAResult(check_name, False, "Input is not a GeoDataFrame")
    else:
        null_count = int(gdf.geometry.isna().sum())
        empty_count = int(gdf.geometry.is_empty.sum())
        invalid_count = int((~gdf.geometry.is_valid).sum()) - null_count
        details = {"total": len(gdf), "null": null_count, "empty": empty_count,
                   "invalid": max(invalid_count, 0)}
        if null_count == 0 and empty_count == 0 and invalid_count <= 0:
            result = QAResult(check_name, True,
                              f"All {len(gdf)} geometries are topologically valid", details)
        else:
            result = QAResult(check_name, False,
                              f"Found {null_count} null, {empty_count} empty and "
                              f"{max(invalid_count, 0)} invalid geometries", details)

    return _log(result, logger)


# =============================================================================
# Completeness checks
# =============================================================================

def check_no_nulls(
    df: pd.DataFrame,
    columns: list[str],
    logger: logging.Logger | None = None,
) -> QAResult:
    """
    Check that specified columns have no null values.
    """
    check_name = "no_nulls"

    missing_cols = [c for c in columns if c not in df.columns]
    if missing_cols:
        result = QAResult(check_name, False, f"Columns not found: {missing_cols}",
                          {"missing_columns": missing_cols})
    else:
        null_counts = {c: int(df[c].isna().sum()) for c in columns}
        total_nulls = sum(null_counts.values())
        if total_nulls == 0:
            result = QAResult(check_name, True, f"No null values in {len(columns)} checked columns",
                              {"columns": columns, "null_counts": null_counts})
        else:
            cols_with_nulls = {k: v for k, v in null_counts.items() if v > 0}
            result = QAResult(check_name, False, f"Found {total_nulls} null values",
                              {"columns_with_nulls": cols_with_nulls})

    return _log(result, logger)


# =============================================================================
# Aggregate QA runner
# =============================================================================

def run_unit_qa_checks(
    gdf: pd.DataFrame,
    key: str = "zcta",
    expected_crs: str | None = None,
    logger: logging.Logger | None = None,
    fail_on_error: bool = False,
) -> list[QAResult]:
    """
    Run the standard checks on the unit polygons.

    Args:
        gdf: GeoDataFrame to check.
        key: Unit key column.
        expected_crs: Expected CRS string, or None.
        logger: Optional logger.
        fail_on_error: If True, raise on any failed check.

    Raises:
        ValueError: If fail_on_error and any check fails.
    """
    results = [
        check_crs(gdf, expected_crs, logger),
        check_unique_keys(gdf, [key], logger),
        check_valid_geoms(gdf, logger),
    ]

    if fail_on_error:
        failed = [r for r in results if not r.passed]
        if failed:
            messages = [f"{r.check_name}: {r.message}" for r in failed]
            raise ValueError("QA checks failed:\n" + "\n".join(messages))

    return results
