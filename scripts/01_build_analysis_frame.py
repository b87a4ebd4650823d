#!/usr/bin/env python3
"""
01_build_analysis_frame.py

Merge PQI rates with SDI scores, fill gaps and attach ZCTA polygons.

Pipeline Step: 01

Inputs:
    - data/raw/pqi.csv (zcta, year, pqi_rate)
    - data/raw/sdi.csv (zcta, [year], sdi_score)
    - data/raw/zcta/*.shp (ZCTA polygons)
    - configs/params.yml (keys, gap_fill, analysis)

Outputs:
    - data/processed/analysis_frame.parquet
    - data/processed/fill_provenance.parquet
    - data/processed/*_metadata.json

QA Checks:
    - Input schemas (key and value columns, dtypes)
    - Unit polygons: CRS present, unique keys, valid geometries
    - Every configured measure is fully resolved after filling
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pqi_spatial.paths import paths
from pqi_spatial.logging_utils import (
    get_logger, log_stage, log_qa_check, log_output_written, log_run_summary, run_id_of
)
from pqi_spatial.io_utils import (
    atomic_write_parquet, read_table_csv, read_units, read_yaml
)
from pqi_spatial.hashing import write_metadata_sidecar
from pqi_spatial.pipeline import build_analysis_frame
from pqi_spatial.qa import check_no_nulls, run_unit_qa_checks
from pqi_spatial.schemas import (
    SCHEMA_FILL_PROVENANCE, SCHEMA_PQI, SCHEMA_SDI, SCHEMA_UNITS, validate_schema
)


SCRIPT_NAME = "01_build_analysis_frame"


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
        key = params["keys"]["geo_key"]
        measures = params["analysis"]["measures"]

        with log_stage(logger, "load_inputs") as outcome:
            pqi = read_table_csv(paths.raw_pqi, key)
            sdi = read_table_csv(paths.raw_sdi, key)
            units = read_units(paths.raw_geo, key)
            validate_schema(pqi, SCHEMA_PQI)
            validate_schema(sdi, SCHEMA_SDI)
            validate_schema(units, SCHEMA_UNITS)
            outcome.update(pqi_rows=len(pqi), sdi_rows=len(sdi), units=len(units))

        run_unit_qa_checks(units, key, params.get("qa", {}).get("expected_crs"), logger)

        with log_stage(logger, "build_analysis_frame") as outcome:
            prepared = build_analysis_frame(pqi, sdi, units, params, logger=logger)
            frame = prepared.geometry.data
            outcome.update(rows=len(frame), unmatched=prepared.merge.n_unmatched,
                           filled=prepared.fill.n_filled)

        coverage = check_no_nulls(frame, measures, logger)
        if not coverage:
            raise ValueError(f"Measures not fully resolved: {coverage.details}")

        if prepared.geometry.observations_without_units:
            log_qa_check(
                logger, "observations_have_units", False,
                f"{len(prepared.geometry.observations_without_units)} keys have no polygon",
                keys=list(prepared.geometry.observations_without_units[:20]),
            )

        provenance = prepared.fill.provenance
        validate_schema(provenance, SCHEMA_FILL_PROVENANCE)

        # Write outputs
        inputs = [paths.raw_pqi, paths.raw_sdi]
        atomic_write_parquet(paths.analysis_frame, frame)
        sidecar = write_metadata_sidecar(
            paths.analysis_frame,
            run_id,
            input_files=inputs,
            config_files=[paths.params_yml],
            parameters={
                "key": key,
                "period": params["analysis"].get("period"),
                "fill_chain": params["gap_fill"].get("chain"),
                "unmatched": prepared.merge.unmatched.to_dict(orient="records"),
            },
            row_count=len(frame),
        )
        log_output_written(logger, paths.analysis_frame, len(frame), sidecar)

        atomic_write_parquet(paths.fill_provenance, provenance)
        sidecar = write_metadata_sidecar(
            paths.fill_provenance,
            run_id,
            input_files=inputs,
            config_files=[paths.params_yml],
            parameters={"method_counts": prepared.fill.method_counts()},
            row_count=len(provenance),
        )
        log_output_written(logger, paths.fill_provenance, len(provenance), sidecar)

        summary = log_run_summary(logger)

        logger.info("=" * 60)
        logger.info(f"✅ {SCRIPT_NAME} completed successfully")
        logger.info(f"   Units in frame: {len(frame)}")
        logger.info(f"   Cells filled: {prepared.fill.n_filled}")
        logger.info(f"   Provenance events: {summary['provenance']}")
        logger.info(f"   Units without observations: "
                    f"{len(prepared.geometry.units_without_observations)}")
        logger.info(f"   Output: {paths.analysis_frame}")
        logger.info("=" * 60)

        return 0

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
