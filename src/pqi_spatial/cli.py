"""
Command-line entry points for the pipeline scripts.

Installed by pyproject.toml [project.scripts]:

    pqi-spatial-frame         # Run step 01
    pqi-spatial-diagnostics   # Run step 02
    pqi-spatial-run-all       # Run both in order
"""

import subprocess
import sys

from pqi_spatial.paths import get_project_root


PIPELINE_STEPS = [
    ("01_build_analysis_frame.py", "Merging, filling and attaching geometry"),
    ("02_spatial_diagnostics.py", "Building weights, statistics and models"),
]


def _run_script(script_name: str) -> int:
    """Run a pipeline script and return its exit code."""
    script_path = get_project_root() / "scripts" / script_name

    if not script_path.exists():
        print(f"Error: Script not found: {script_path}", file=sys.stderr)
        return 1

    result = subprocess.run([sys.executable, str(script_path)], cwd=get_project_root())
    return result.returncode


def run_01_frame() -> int:
    """Run step 01: build the analysis frame."""
    return _run_script(PIPELINE_STEPS[0][0])


def run_02_diagnostics() -> int:
    """Run step 02: spatial statistics and regressions."""
    return _run_script(PIPELINE_STEPS[1][0])


def run_all() -> int:
    """
    Run the full pipeline in order.

    Returns the first non-zero exit code, or 0 if all succeed.
    """
    print("=" * 60)
    print("PQI / SDI spatial analysis - full pipeline")
    print("=" * 60)

    for script_name, description in PIPELINE_STEPS:
        print(f"\n[{description}]")
        print("-" * 40)

        exit_code = _run_script(script_name)
        if exit_code != 0:
            print(f"\nPipeline failed at: {script_name}")
            return exit_code

    print("\n" + "=" * 60)
    print("Full pipeline completed successfully")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(run_all())
