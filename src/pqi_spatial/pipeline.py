"""
End-to-end analysis: merge -> fill -> attach geometry -> weights ->
autocorrelation -> regression.

run_analysis() performs no file I/O and mutates none of its inputs; each
stage hands a new object to the next. It composes build_analysis_frame()
and run_diagnostics(), which scripts/01 and scripts/02 wrap with reading,
writing and run logging.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import geopandas as gpd
import pandas as pd

from pqi_spatial.autocorrelation import (
    INTERCHANGE_COLUMNS,
    AutocorrelationResult,
    LocalAutocorrelationResult,
    getis_ord_gi_star,
    gi_star_frame,
    global_morans_i,
    local_morans_i,
    results_to_frame,
)
from pqi_spatial.gap_fill import DEFAULT_CHAIN, FillResult, fill_columns
from pqi_spatial.logging_utils import log_stage, resolve_logger
from pqi_spatial.merge import DEFAULT_KEY_WIDTH, GeometryJoin, MergeResult, attach_geometry, merge
from pqi_spatial.regression import RegressionResult, fit_ols, fit_spatial_lag
from pqi_spatial.weights import (
    DEFAULT_TOLERANCE, MODE_CONTIGUITY, ZERO_POLICY_FAIL, SpatialWeights, build_weights
)


@dataclass(frozen=True, eq=False)
class MeasureResult:
    """Spatial statistics for one measure."""
    measure: str
    morans_i: AutocorrelationResult
    local_morans_i: LocalAutocorrelationResult
    gi_star: LocalAutocorrelationResult

    def to_frame(self) -> pd.DataFrame:
        frame = pd.concat([
            results_to_frame(self.morans_i, self.local_morans_i, self.gi_star),
            gi_star_frame(self.gi_star),
        ], ignore_index=True)
        frame.insert(0, "measure", self.measure)
        return frame


def statistics_frame(
    measures: dict[str, MeasureResult],
    *models: RegressionResult | None,
) -> pd.DataFrame:
    """
    Long (measure, unit, statistic, value, p_value) table for every measure,
    plus the residual Moran's I of each fitted model.
    """
    frames = [m.to_frame() for m in measures.values()]
    for model in models:
        if model is not None and model.residual_autocorrelation is not None:
            frame = model.residual_autocorrelation.to_frame()
            frame.insert(0, "measure", f"{model.model}_residuals")
            frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=["measure", *INTERCHANGE_COLUMNS])
    return pd.concat(frames, ignore_index=True)


def coefficient_frame(*models: RegressionResult | None) -> pd.DataFrame:
    tables = [m.coefficient_table() for m in models if m is not None]
    if not tables:
        return pd.DataFrame()
    return pd.concat(tables, ignore_index=True)


@dataclass(frozen=True, eq=False)
class Diagnostics:
    """Output of the spatial stages."""
    weights: SpatialWeights
    measures: dict[str, MeasureResult] = field(default_factory=dict)
    ols: RegressionResult | None = None
    spatial_lag: RegressionResult | None = None

    def statistics_frame(self) -> pd.DataFrame:
        return statistics_frame(self.measures, self.ols, self.spatial_lag)

    def coefficient_frame(self) -> pd.DataFrame:
        return coefficient_frame(self.ols, self.spatial_lag)


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    merge: MergeResult
    fill: FillResult
    geometry: GeometryJoin
    weights: SpatialWeights
    measures: dict[str, MeasureResult] = field(default_factory=dict)
    ols: RegressionResult | None = None
    spatial_lag: RegressionResult | None = None

    def statistics_frame(self) -> pd.DataFrame:
        """Long (measure, unit, statistic, value, p_value) table."""
        return statistics_frame(self.measures, self.ols, self.spatial_lag)

    def coefficient_frame(self) -> pd.DataFrame:
        return coefficient_frame(self.ols, self.spatial_lag)


def analyze_measure(
    frame: pd.DataFrame,
    key: str,
    measure: str,
    weights: SpatialWeights,
    permutations: int = 0,
    seed: int | None = None,
    correction: str | None = None,
    logger: logging.Logger | None = None,
) -> MeasureResult:
    """Global Moran's I, local Moran's I and Gi* for one column."""
    values = pd.Series(frame[measure].to_numpy(dtype=float),
                       index=frame[key].astype(str), name=measure)
    return MeasureResult(
        measure=measure,
        morans_i=global_morans_i(values, weights, permutations=permutations,
                                 seed=seed, logger=logger),
        local_morans_i=local_morans_i(values, weights, permutations=permutations,
                                      seed=seed, correction=correction, logger=logger),
        gi_star=getis_ord_gi_star(values, weights, correction=correction, logger=logger),
    )


@dataclass(frozen=True, eq=False)
class AnalysisFrame:
    """Output of the data stages: merged, filled, joined to geometry."""
    merge: MergeResult
    fill: FillResult
    geometry: GeometryJoin


def _key_settings(params: dict[str, Any]) -> tuple[str, str, int]:
    keys_cfg = params.get("keys", {})
    return (
        keys_cfg.get("geo_key", "zcta"),
        keys_cfg.get("period", "year"),
        keys_cfg.get("key_width", DEFAULT_KEY_WIDTH),
    )


def build_analysis_frame(
    pqi: pd.DataFrame,
    sdi: pd.DataFrame,
    units: gpd.GeoDataFrame,
    params: dict[str, Any],
    logger: logging.Logger | None = None,
) -> AnalysisFrame:
    """
    Merge PQI with SDI, fill gaps, select the analysis period and join the
    ZCTA polygons.

    Args:
        pqi: PQI rates, one row per (ZCTA, year).
        sdi: SDI scores, one row per ZCTA (optionally per year).
        units: ZCTA polygons.
        params: Parsed params.yml.
        logger: Optional logger.
    """
    logger = resolve_logger(logger, __name__)
    key, period, key_width = _key_settings(params)
    fill_cfg = params.get("gap_fill", {})
    analysis_cfg = params.get("analysis", {})

    merged = merge(pqi, sdi, key, partition=period, key_width=key_width, logger=logger)

    filled = fill_columns(
        merged.data,
        columns=fill_cfg.get("columns", []),
        group_key=key,
        order_key=period,
        chain=fill_cfg.get("chain", DEFAULT_CHAIN),
        overrides=fill_cfg.get("overrides"),
        key_width=key_width,
        logger=logger,
    )

    frame = filled.data
    analysis_period = analysis_cfg.get("period")
    if analysis_period is not None:
        frame = frame[frame[period] == analysis_period]
        if frame.empty:
            raise ValueError(f"No observations for {period} = {analysis_period}")

    geometry = attach_geometry(units, frame, key, key_width=key_width, logger=logger)
    return AnalysisFrame(merge=merged, fill=filled, geometry=geometry)


def run_diagnostics(
    frame: gpd.GeoDataFrame,
    params: dict[str, Any],
    logger: logging.Logger | None = None,
) -> Diagnostics:
    """
    Build weights over the frame's units, then compute the statistics for
    every configured measure and fit the configured models.

    Args:
        frame: One row per unit with geometry and measure columns.
        params: Parsed params.yml.
        logger: Optional logger.
    """
    logger = resolve_logger(logger, __name__)
    key, _, _ = _key_settings(params)
    analysis_cfg = params.get("analysis", {})
    weights_cfg = params.get("weights", {})
    autocorr_cfg = params.get("autocorrelation", {})
    regression_cfg = params.get("regression", {})

    weights = build_weights(
        frame[[key, frame.geometry.name]],
        key,
        mode=weights_cfg.get("mode", MODE_CONTIGUITY),
        k=weights_cfg.get("k"),
        tolerance=weights_cfg.get("tolerance", DEFAULT_TOLERANCE),
        zero_policy=weights_cfg.get("zero_policy", ZERO_POLICY_FAIL),
        logger=logger,
    )

    measures = {
        measure: analyze_measure(
            frame, key, measure, weights,
            permutations=autocorr_cfg.get("permutations", 0),
            seed=autocorr_cfg.get("seed"),
            correction=autocorr_cfg.get("correction"),
            logger=logger,
        )
        for measure in analysis_cfg.get("measures", [])
    }

    ols = lag = None
    dependent = regression_cfg.get("dependent")
    if dependent:
        predictors = regression_cfg.get("predictors", [])
        ols = fit_ols(frame, dependent, predictors, weights=weights, key=key, logger=logger)
        if regression_cfg.get("spatial_lag", False):
            lag = fit_spatial_lag(
                frame, dependent, predictors, weights, key,
                zero_policy=regression_cfg.get("zero_policy"),
                method=regression_cfg.get("lag_method", "full"),
                logger=logger,
            )

    return Diagnostics(weights=weights, measures=measures, ols=ols, spatial_lag=lag)


def run_analysis(
    pqi: pd.DataFrame,
    sdi: pd.DataFrame,
    units: gpd.GeoDataFrame,
    params: dict[str, Any],
    logger: logging.Logger | None = None,
) -> AnalysisResult:
    """
    Run every stage with parameters from params.yml.

    Returns:
        AnalysisResult holding every intermediate and final result.
    """
    logger = resolve_logger(logger, __name__)
    with log_stage(logger, "run_analysis") as outcome:
        prepared = build_analysis_frame(pqi, sdi, units, params, logger=logger)
        diagnostics = run_diagnostics(prepared.geometry.data, params, logger=logger)
        outcome.update(n_units=diagnostics.weights.n, measures=list(diagnostics.measures))

    return AnalysisResult(
        merge=prepared.merge,
        fill=prepared.fill,
        geometry=prepared.geometry,
        weights=diagnostics.weights,
        measures=diagnostics.measures,
        ols=diagnostics.ols,
        spatial_lag=diagnostics.spatial_lag,
    )
