"""
Hashing and metadata sidecars for reproducibility.

Every written output gets a <stem>_metadata.json next to it with the input
file hashes, the params digest, library versions, git commit and run_id, so
a statistic can be traced to the exact inputs and parameters behind it.
"""

import hashlib
import json
import subprocess
import sys
from datetime import datetime, timezone
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any

from pqi_spatial.paths import get_project_root


# Distribution names, as installed
TRACKED_LIBRARIES = [
    "pandas",
    "numpy",
    "scipy",
    "geopandas",
    "shapely",
    "pyarrow",
    "libpysal",
    "esda",
    "spreg",
]


def hash_file(file_path: Path | str, algorithm: str = "sha256") -> str:
    """
    Compute the hash of a file.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {file_path}")

    hasher = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)

    return hasher.hexdigest()


def hash_dict(data: dict, algorithm: str = "sha256") -> str:
    """Hash a dictionary via its JSON form with sorted keys."""
    content = json.dumps(data, sort_keys=True, default=str)
    hasher = hashlib.new(algorithm)
    hasher.update(content.encode("utf-8"))
    return hasher.hexdigest()


def hash_config(config_path: Path | str) -> str:
    """
    Hash a YAML config by content (parsed and re-serialized), so comment or
    formatting edits do not change the digest.
    """
    import yaml

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return hash_dict(data or {})


def get_git_commit() -> str | None:
    """Short commit hash, or None outside a git checkout."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short=8", "HEAD"],
            capture_output=True,
            text=True,
            cwd=get_project_root(),
            timeout=5
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    return None


def get_library_versions() -> dict[str, str]:
    """Versions of the analysis stack."""
    versions = {"python": sys.version.split()[0]}
    for lib in TRACKED_LIBRARIES:
        try:
            versions[lib] = importlib_metadata.version(lib)
        except importlib_metadata.PackageNotFoundError:
            versions[lib] = "not installed"
    return versions


def create_metadata_sidecar(
    output_path: Path | str,
    run_id: str,
    input_files: list[Path | str] | None = None,
    config_files: list[Path | str] | None = None,
    parameters: dict[str, Any] | None = None,
    row_count: int | None = None,
) -> dict[str, Any]:
    """
    Build the metadata dictionary for an output file.

    Args:
        output_path: Path to the output file.
        run_id: Unique run identifier.
        input_files: Input files to hash (missing files are skipped).
        config_files: Config files to hash.
        parameters: Runtime parameters.
        row_count: Number of rows in the output.
    """
    output_path = Path(output_path)

    metadata = {
        "output_file": output_path.name,
        "run_id": run_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "git_commit": get_git_commit(),
        "library_versions": get_library_versions(),
    }

    if input_files:
        metadata["input_file_hashes"] = {
            Path(f).name: hash_file(f) for f in input_files if Path(f).is_file()
        }

    if config_files:
        metadata["config_hashes"] = {
            Path(f).name: hash_config(f) for f in config_files if Path(f).exists()
        }

    if parameters:
        metadata["parameters"] = parameters

    if row_count is not None:
        metadata["row_count"] = row_count

    if output_path.exists():
        metadata["output_hash"] = hash_file(output_path)

    return metadata


def write_metadata_sidecar(
    output_path: Path | str,
    run_id: str,
    input_files: list[Path | str] | None = None,
    config_files: list[Path | str] | None = None,
    parameters: dict[str, Any] | None = None,
    row_count: int | None = None,
) -> Path:
    """
    Write <stem>_metadata.json next to an output.

    Returns:
        Path to the written metadata file.
    """
    output_path = Path(output_path)
    metadata = create_metadata_sidecar(
        output_path=output_path,
        run_id=run_id,
        input_files=input_files,
        config_files=config_files,
        parameters=parameters,
        row_count=row_count,
    )

    sidecar_path = output_path.parent / f"{output_path.stem}_metadata.json"

    # imported here to avoid a circular import
    from pqi_spatial.io_utils import atomic_write_json
    atomic_write_json(sidecar_path, metadata)

    return sidecar_path
