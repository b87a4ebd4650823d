#!/usr/bin/env python3
"""
02_spatial_diagnostics.py

Spatial weights, autocorrelation statistics and regressions on the
analysis frame.

Pipeline Step: 02

This script:
1. Builds spatial weights over the ZCTAs in the analysis frame
2. Computes global and local Moran's I and Getis-Ord Gi* for each measure
3. Fits OLS and (optionally) the spatial lag model of PQI on SDI
4. Tests both models' residuals for remaining spatial dependence

Inputs:
    - data/processed/analysis_frame.parquet
    - configs/params.yml (weights, autocorrelation, regression)

Outputs:
    - data/processed/spatial_statistics.parquet
    - data/processed/regression_coefficients.parquet
    - data/processed/*_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import logging

from pqi_spatial.paths import paths
from pqi_spatial.logging_utils import (
    get_logger, log_event, log_stage, log_output_written, log_run_summary, run_id_of
)
from pqi_spatial.io_utils import atomic_write_parquet, read_parquet, read_yaml
from pqi_spatial.hashing import write_metadata_sidecar
from pqi_spatial.autocorrelation import summarize
from pqi_spatial.pipeline import run_diagnostics
from pqi_spatial.schemas import SCHEMA_SPATIAL_STATISTICS, validate_schema


SCRIPT_NAME = "02_spatial_diagnostics"


def main():
    """Main entry point."""
    logger = get_logger(SCRIPT_NAME)
    run_id = run_id_of(logger)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)

        frame = read_parquet(paths.analysis_frame)
        logger.info(f"Loaded analysis frame with {len(frame)} units")

        with log_stage(logger, "spatial_diagnostics") as outcome:
            diagnostics = run_diagnostics(frame, params, logger=logger)
            outcome.update(diagnostics.weights.summary())

        global_results = {name: m.morans_i for name, m in diagnostics.measures.items()}
        for model in (diagnostics.ols, diagnostics.spatial_lag):
            if model is not None and model.residual_autocorrelation is not None:
                global_results[f"{model.model}_residuals"] = model.residual_autocorrelation
        if global_results:
            table = summarize(list(global_results.values()))
            table.insert(0, "series", list(global_results))
            logger.info("Global Moran's I:\n" + table.to_string(index=False))

        for model in (diagnostics.ols, diagnostics.spatial_lag):
            if model is None:
                continue
            if model.residual_dependence:
                log_event(logger, logging.WARNING,
                          f"{model.model} residuals remain spatially autocorrelated",
                          "residual_dependence", model=model.model)

        statistics = diagnostics.statistics_frame()
        validate_schema(statistics, SCHEMA_SPATIAL_STATISTICS)
        coefficients = diagnostics.coefficient_frame()

        atomic_write_parquet(paths.spatial_statistics, statistics)
        sidecar = write_metadata_sidecar(
            paths.spatial_statistics,
            run_id,
            input_files=[paths.analysis_frame],
            config_files=[paths.params_yml],
            parameters={
                "weights": params.get("weights"),
                "autocorrelation": params.get("autocorrelation"),
                "weights_summary": diagnostics.weights.summary(),
            },
            row_count=len(statistics),
        )
        log_output_written(logger, paths.spatial_statistics, len(statistics), sidecar)

        if not coefficients.empty:
            atomic_write_parquet(paths.regression_coefficients, coefficients)
            sidecar = write_metadata_sidecar(
                paths.regression_coefficients,
                run_id,
                input_files=[paths.analysis_frame],
                config_files=[paths.params_yml],
                parameters={"regression": params.get("regression")},
                row_count=len(coefficients),
            )
            log_output_written(logger, paths.regression_coefficients, len(coefficients), sidecar)

        summary = log_run_summary(logger)

        logger.info("=" * 60)
        logger.info(f"✅ {SCRIPT_NAME} completed successfully")
        logger.info(f"   Units: {diagnostics.weights.n}")
        logger.info(f"   Isolated units: {len(diagnostics.weights.isolated)}")
        logger.info(f"   Measures: {list(diagnostics.measures)}")
        logger.info(f"   Exclusion events: {summary['exclusion_events']}")
        logger.info(f"   Output: {paths.spatial_statistics}")
        logger.info("=" * 60)

        return 0

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
