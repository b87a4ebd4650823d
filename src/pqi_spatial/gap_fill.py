"""
Group-wise imputation of missing measure values.

Missing values are resolved by an ordered fallback chain:

1. carried        - within a group sorted by the order key, a missing cell
                    takes the last valid value seen; cells before the first
                    valid value take the group's earliest valid value.
2. median-group   - the median of the group's own observed values.
3. median-global  - the median over every observed value in the column.

Caller overrides (method "override") are applied before the chain. Every
imputed cell is annotated with its method in <value_column>_fill_method and
listed in FillResult.provenance, so any downstream statistic can be traced
back to the cells it was computed from.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from pqi_spatial.errors import UnfillableGroupError
from pqi_spatial.merge import normalize_key
from pqi_spatial.logging_utils import (
    log_event, log_imputation, log_stage_start, log_stage_end, resolve_logger
)


METHOD_OVERRIDE = "override"
METHOD_CARRIED = "carried"
METHOD_MEDIAN_GROUP = "median-group"
METHOD_MEDIAN_GLOBAL = "median-global"

CHAIN_METHODS = (METHOD_CARRIED, METHOD_MEDIAN_GROUP, METHOD_MEDIAN_GLOBAL)
DEFAULT_CHAIN = CHAIN_METHODS

PROVENANCE_COLUMNS = ["column", "group", "period", "method", "value"]


def method_column_name(value_column: str) -> str:
    return f"{value_column}_fill_method"


@dataclass(frozen=True)
class FillResult:
    """Filled observations and the record of every imputed cell."""
    data: pd.DataFrame
    value_column: str
    provenance: pd.DataFrame

    @property
    def method_column(self) -> str:
        return method_column_name(self.value_column)

    @property
    def n_filled(self) -> int:
        return len(self.provenance)

    def method_counts(self) -> dict[str, int]:
        """Number of imputed cells per method."""
        return self.provenance["method"].value_counts().to_dict()

    def groups_filled_by(self, method: str) -> list[Any]:
        """Groups that had at least one cell imputed with the given method."""
        rows = self.provenance[self.provenance["method"] == method]
        return sorted(rows["group"].unique().tolist())


def _validate_chain(chain: Sequence[str]) -> tuple[str, ...]:
    chain = tuple(chain)
    unknown = [m for m in chain if m not in CHAIN_METHODS]
    if unknown:
        raise ValueError(f"Unknown fill methods {unknown}. Available: {list(CHAIN_METHODS)}")
    if len(set(chain)) != len(chain):
        raise ValueError(f"Fill chain has repeated methods: {list(chain)}")
    return chain


def _match_overrides(
    overrides: Mapping[Any, float],
    group_values: np.ndarray,
    key_width: int | None,
) -> dict[Any, float]:
    """
    Map override keys onto the group keys of the frame.

    With key_width set, keys go through normalize_key() so that 10002,
    10002.0 and "10002" all address group "10002". Every override must
    match a group.
    """
    originals = list(overrides)
    keys = originals
    if key_width is not None:
        keys = normalize_key(pd.Series(originals, dtype=object, name="overrides"),
                             key_width).tolist()

    known = set(group_values.tolist())
    unmatched = [orig for orig, key in zip(originals, keys) if key not in known]
    if unmatched:
        raise ValueError(f"Override keys match no group: {unmatched}")
    return dict(zip(keys, overrides.values()))


def _carry(
    group_codes: np.ndarray,
    order_codes: np.ndarray,
    observed: np.ndarray,
    filled: np.ndarray,
    methods: np.ndarray,
) -> None:
    """Sort by (group, order, original position) and scan with a carried value."""
    positions = np.arange(len(observed))
    order = np.lexsort((positions, order_codes, group_codes))

    # earliest observed value per group, in sorted order
    first_known: dict[int, float] = {}
    for idx in order:
        g = group_codes[idx]
        if g not in first_known and not np.isnan(observed[idx]):
            first_known[g] = observed[idx]

    current_group = None
    carried = np.nan
    for idx in order:
        g = group_codes[idx]
        if g != current_group:
            current_group = g
            carried = first_known.get(g, np.nan)
        if not np.isnan(observed[idx]):
            carried = observed[idx]
        elif np.isnan(filled[idx]) and not np.isnan(carried):
            filled[idx] = carried
            methods[idx] = METHOD_CARRIED


def fill(
    observations: pd.DataFrame,
    group_key: str,
    value_column: str,
    order_key: str,
    chain: Sequence[str] = DEFAULT_CHAIN,
    overrides: Mapping[Any, float] | None = None,
    key_width: int | None = None,
    logger: logging.Logger | None = None,
) -> FillResult:
    """
    Impute missing values of one column group by group.

    The input frame is not modified.

    Args:
        observations: Table with one row per (group, period).
        group_key: Column identifying the group (e.g. the ZCTA).
        value_column: Numeric column to fill.
        order_key: Column ordering rows within a group (e.g. the year).
        chain: Fallback methods to try, in order.
        overrides: Optional {group: value} applied before the chain.
        key_width: If set, override keys are normalized like merged keys.
        logger: Optional logger.

    Returns:
        FillResult whose data has no missing values in value_column.

    Raises:
        UnfillableGroupError: If cells remain missing after the whole chain;
            lists every affected group.
        ValueError: On unknown methods, null group/order keys or override
            keys that match no group.
    """
    logger = resolve_logger(logger, __name__)
    chain = _validate_chain(chain)

    for col in (group_key, value_column, order_key):
        if col not in observations.columns:
            raise ValueError(f"Column '{col}' not found")
    for col in (group_key, order_key):
        if observations[col].isna().any():
            raise ValueError(f"Column '{col}' has null values; cannot order or group rows")

    started = log_stage_start(logger, f"fill_{value_column}", chain=list(chain))

    group_values = observations[group_key].to_numpy()
    period_values = observations[order_key].to_numpy()
    group_codes, _ = pd.factorize(observations[group_key], sort=True)
    order_codes, _ = pd.factorize(observations[order_key], sort=True)

    observed = (
        pd.to_numeric(observations[value_column], errors="raise")
        .to_numpy(dtype=float, na_value=np.nan)
    )
    filled = observed.copy()
    methods = np.full(len(observed), None, dtype=object)

    if overrides:
        overrides = _match_overrides(overrides, group_values, key_width)
        for group, value in overrides.items():
            mask = (group_values == group) & np.isnan(filled)
            filled[mask] = float(value)
            methods[mask] = METHOD_OVERRIDE

    for method in chain:
        if not np.isnan(filled).any():
            break

        if method == METHOD_CARRIED:
            _carry(group_codes, order_codes, observed, filled, methods)

        elif method == METHOD_MEDIAN_GROUP:
            medians = (
                pd.Series(observed)
                .groupby(group_codes)
                .median()
                .reindex(group_codes)
                .to_numpy()
            )
            mask = np.isnan(filled) & ~np.isnan(medians)
            filled[mask] = medians[mask]
            methods[mask] = METHOD_MEDIAN_GROUP

        elif method == METHOD_MEDIAN_GLOBAL:
            if np.isnan(observed).all():
                continue
            global_median = float(np.nanmedian(observed))
            mask = np.isnan(filled)
            filled[mask] = global_median
            methods[mask] = METHOD_MEDIAN_GLOBAL
            affected = sorted(set(group_values[mask].tolist()))
            log_event(logger, logging.WARNING,
                      f"{int(mask.sum())} cells of '{value_column}' filled with global median "
                      f"{global_median:.4g} ({len(affected)} groups)",
                      "fill_global_median",
                      column=value_column, groups=affected[:50], median=global_median)

    remaining = np.isnan(filled)
    if remaining.any():
        unfillable = sorted(set(group_values[remaining].tolist()))
        log_event(logger, logging.ERROR,
                  f"No fallback resolves missing '{value_column}' values",
                  "fill_failed", column=value_column, groups=unfillable[:50])
        raise UnfillableGroupError(
            f"Cannot fill '{value_column}' for {len(unfillable)} groups", unfillable
        )

    imputed = np.isnan(observed)
    provenance = pd.DataFrame({
        "column": value_column,
        "group": group_values[imputed],
        "period": period_values[imputed],
        "method": methods[imputed],
        "value": filled[imputed],
    }, columns=PROVENANCE_COLUMNS)

    for row in provenance.itertuples(index=False):
        log_imputation(logger, value_column, row.group, row.period, row.method, row.value)

    data = observations.copy()
    data[value_column] = filled
    data[method_column_name(value_column)] = pd.Series(methods, index=data.index, dtype=object)

    result = FillResult(data=data, value_column=value_column, provenance=provenance)
    log_stage_end(logger, f"fill_{value_column}", started, n_filled=result.n_filled,
                  by_method=result.method_counts())
    return result


def fill_columns(
    observations: pd.DataFrame,
    columns: Sequence[str],
    group_key: str,
    order_key: str,
    chain: Sequence[str] = DEFAULT_CHAIN,
    overrides: Mapping[str, Mapping[Any, float]] | None = None,
    key_width: int | None = None,
    logger: logging.Logger | None = None,
) -> FillResult:
    """
    Fill several columns in turn with the same chain.

    Args:
        columns: Value columns to fill.
        overrides: Optional {column: {group: value}}.
        (other arguments as in fill())

    Returns:
        FillResult over the last column, with provenance for all columns.
    """
    if not columns:
        raise ValueError("No columns to fill")

    overrides = overrides or {}
    data = observations
    provenance = []
    result = None
    for column in columns:
        result = fill(data, group_key, column, order_key, chain=chain,
                      overrides=overrides.get(column), key_width=key_width, logger=logger)
        data = result.data
        provenance.append(result.provenance)

    return FillResult(
        data=data,
        value_column=result.value_column,
        provenance=pd.concat(provenance, ignore_index=True),
    )
