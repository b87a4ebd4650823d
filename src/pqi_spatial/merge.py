"""
Keyed table merging on a geographic key.

The PQI and SDI extracts disagree on how ZCTAs are typed (integers in one,
text in the other, sometimes floats after a round trip through Excel). Keys
are normalized exactly once, by normalize_key(), to a zero-padded decimal
string before any join. The string form is canonical because it preserves
leading zeros (e.g. "01001").
"""

import logging
from dataclasses import dataclass

import geopandas as gpd
import numpy as np
import pandas as pd

from pqi_spatial.errors import KeyCollisionError
from pqi_spatial.logging_utils import (
    log_event, log_stage_start, log_stage_end, resolve_logger
)


DEFAULT_KEY_WIDTH = 5
RIGHT_SUFFIX = "_right"


@dataclass(frozen=True)
class MergeResult:
    """Merged table plus the diagnostics for left rows without a match."""
    data: pd.DataFrame
    key: str
    join_columns: tuple[str, ...]
    unmatched: pd.DataFrame  # columns: partition (or "partition" = "all"), n_unmatched
    unmatched_keys: tuple[str, ...]

    @property
    def n_unmatched(self) -> int:
        return int(self.unmatched["n_unmatched"].sum())


def normalize_key(series: pd.Series, width: int = DEFAULT_KEY_WIDTH) -> pd.Series:
    """
    Normalize a geographic key column to zero-padded decimal strings.

    Integers, integral floats (10001.0) and digit strings (" 10001") all map
    to the same canonical value. Anything else is rejected.

    Args:
        series: Key column.
        width: Minimum width; shorter keys are left-padded with zeros.

    Returns:
        New Series of dtype object holding strings.

    Raises:
        ValueError: If any key is null, non-integral or non-numeric.
    """
    if series.isna().any():
        raise ValueError(f"Key column '{series.name}' has {int(series.isna().sum())} null values")

    if pd.api.types.is_numeric_dtype(series):
        values = series.astype(float)
        bad = series[(values != np.floor(values)) | (values < 0)]
        if len(bad):
            raise ValueError(f"Non-integral keys in '{series.name}': {bad.unique()[:10].tolist()}")
        text = values.astype(np.int64).astype(str)
    else:
        text = series.astype(str).str.strip()
        # "10001.0" is what a float key looks like once it has been stringified
        text = text.str.replace(r"\.0+$", "", regex=True)
        bad = text[~text.str.fullmatch(r"\d+")]
        if len(bad):
            raise ValueError(f"Non-numeric keys in '{series.name}': {bad.unique()[:10].tolist()}")

    return text.str.zfill(width).astype(object)


def _check_unique(df: pd.DataFrame, columns: list[str], table_name: str) -> None:
    dup_mask = df.duplicated(subset=columns, keep=False)
    if dup_mask.any():
        offending = (
            df.loc[dup_mask, columns]
            .drop_duplicates()
            .astype(str)
            .agg("/".join, axis=1)
            .tolist()
        )
        raise KeyCollisionError(
            f"Duplicate {columns} values in {table_name} table", offending
        )


def merge(
    left: pd.DataFrame,
    right: pd.DataFrame,
    key: str,
    partition: str | None = None,
    key_width: int = DEFAULT_KEY_WIDTH,
    logger: logging.Logger | None = None,
) -> MergeResult:
    """
    Left-join two keyed tables on a geographic key.

    The join is on key alone, or on (key, partition) when both tables carry
    the partition column. Every left row appears exactly once in the output,
    in its original order; right-hand columns are null when unmatched.

    Args:
        left: Table whose rows are all kept.
        right: Table providing additional columns.
        key: Name of the geographic key column (present in both).
        partition: Optional partitioning column, e.g. "year".
        key_width: Zero-pad width for key normalization.
        logger: Optional logger.

    Returns:
        MergeResult with the merged frame and an unmatched report grouped by
        partition.

    Raises:
        KeyCollisionError: If either table repeats a join-column combination.
        ValueError: If a key column is missing or holds unusable values.
    """
    logger = resolve_logger(logger, __name__)
    started = log_stage_start(logger, "merge_tables", key=key, partition=partition,
                              n_left=len(left), n_right=len(right))

    for name, df in (("left", left), ("right", right)):
        if key not in df.columns:
            raise ValueError(f"Key column '{key}' not found in {name} table")

    left = left.copy()
    right = right.copy()
    left[key] = normalize_key(left[key], key_width)
    right[key] = normalize_key(right[key], key_width)

    join_columns = [key]
    if partition is not None and partition in left.columns and partition in right.columns:
        join_columns.append(partition)

    # uniqueness holds per (key, partition) within each table; the right
    # table must additionally be unique on the join columns
    left_unique = [key] + ([partition] if partition in left.columns else [])
    _check_unique(left, left_unique, "left")
    _check_unique(right, join_columns, "right")

    indicator = "_merge_source"
    merged = left.merge(
        right,
        on=join_columns,
        how="left",
        suffixes=("", RIGHT_SUFFIX),
        indicator=indicator,
        validate="many_to_one",
    )
    unmatched_mask = merged[indicator] == "left_only"
    merged = merged.drop(columns=indicator)

    if partition is not None and partition in left.columns:
        unmatched = (
            unmatched_mask
            .groupby(merged[partition], dropna=False)
            .sum()
            .astype(int)
            .rename("n_unmatched")
            .rename_axis(partition)
            .reset_index()
        )
    else:
        unmatched = pd.DataFrame({"partition": ["all"], "n_unmatched": [int(unmatched_mask.sum())]})

    unmatched_keys = tuple(sorted(merged.loc[unmatched_mask, key].unique()))

    if unmatched_mask.any():
        log_event(logger, logging.WARNING,
                  f"{int(unmatched_mask.sum())} of {len(merged)} left rows have no match",
                  "merge_unmatched",
                  by_partition=unmatched.to_dict(orient="records"),
                  sample_keys=list(unmatched_keys[:10]))

    log_stage_end(logger, "merge_tables", started, n_rows=len(merged),
                  n_unmatched=int(unmatched_mask.sum()))

    return MergeResult(
        data=merged,
        key=key,
        join_columns=tuple(join_columns),
        unmatched=unmatched,
        unmatched_keys=unmatched_keys,
    )


@dataclass(frozen=True)
class GeometryJoin:
    """Units joined to a table, with keys present on only one side."""
    data: gpd.GeoDataFrame
    units_without_observations: tuple[str, ...]
    observations_without_units: tuple[str, ...]


def attach_geometry(
    units: gpd.GeoDataFrame,
    table: pd.DataFrame,
    key: str,
    key_width: int = DEFAULT_KEY_WIDTH,
    how: str = "inner",
    logger: logging.Logger | None = None,
) -> GeometryJoin:
    """
    Join polygon units to an observation table on the geographic key.

    Args:
        units: GeoDataFrame with one row per unit.
        table: Observation table (one row per unit, or per unit and period).
        key: Key column present in both.
        key_width: Zero-pad width for key normalization.
        how: "inner" keeps matched units only, "left" keeps every unit.
        logger: Optional logger.

    Returns:
        GeometryJoin with the joined GeoDataFrame and the one-sided keys.

    Raises:
        KeyCollisionError: If a unit key appears more than once in units.
    """
    logger = resolve_logger(logger, __name__)
    if how not in ("inner", "left"):
        raise ValueError(f"how must be 'inner' or 'left', got {how!r}")

    units = units.copy()
    table = table.copy()
    units[key] = normalize_key(units[key], key_width)
    table[key] = normalize_key(table[key], key_width)
    _check_unique(units, [key], "units")

    unit_keys = set(units[key])
    table_keys = set(table[key])
    no_obs = tuple(sorted(unit_keys - table_keys))
    no_geom = tuple(sorted(table_keys - unit_keys))

    if no_obs:
        log_event(logger, logging.WARNING, f"{len(no_obs)} units have no observations",
                  "geometry_join_unmatched", side="units", sample_keys=list(no_obs[:10]))
    if no_geom:
        log_event(logger, logging.WARNING, f"{len(no_geom)} observation keys have no geometry",
                  "geometry_join_unmatched", side="observations", sample_keys=list(no_geom[:10]))

    joined = units.merge(table, on=key, how=how, suffixes=("", RIGHT_SUFFIX))
    joined = gpd.GeoDataFrame(joined, geometry=units.geometry.name, crs=units.crs)

    return GeometryJoin(
        data=joined,
        units_without_observations=no_obs,
        observations_without_units=no_geom,
    )
