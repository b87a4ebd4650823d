"""
Project root detection and canonical path resolution.

Scripts and tests resolve every file through pqi_spatial.paths so that
nothing depends on the current working directory.

The .project-root file marks the repository root.
"""

from pathlib import Path
from typing import Union

# Cached project root
_PROJECT_ROOT: Path | None = None


def get_project_root() -> Path:
    """
    Find and return the project root directory.

    Searches upward from this file's location for the .project-root marker.
    Result is cached.

    Returns:
        Path to the project root directory.

    Raises:
        FileNotFoundError: If .project-root marker is not found.
    """
    global _PROJECT_ROOT

    if _PROJECT_ROOT is not None:
        return _PROJECT_ROOT

    current = Path(__file__).resolve().parent

    for _ in range(10):  # Limit search depth
        marker = current / ".project-root"
        if marker.exists():
            _PROJECT_ROOT = current
            return _PROJECT_ROOT

        parent = current.parent
        if parent == current:
            break
        current = parent

    raise FileNotFoundError(
        "Could not find .project-root marker. "
        "Ensure you are running from within the pqi-spatial repository."
    )


def get_path(*parts: str) -> Path:
    """
    Resolve a path relative to the project root.

    Args:
        *parts: Path components to join (e.g., "data", "raw")

    Returns:
        Absolute Path object.

    Example:
        >>> get_path("data", "processed")
        PosixPath('/path/to/project/data/processed')
    """
    return get_project_root() / Path(*parts)


# =============================================================================
# Canonical path constants
# =============================================================================

class Paths:
    """
    Canonical path constants for the project.

    All paths are resolved relative to the project root.
    """

    @property
    def root(self) -> Path:
        """Project root directory."""
        return get_project_root()

    # -------------------------------------------------------------------------
    # Config
    # -------------------------------------------------------------------------
    @property
    def configs(self) -> Path:
        return get_path("configs")

    @property
    def params_yml(self) -> Path:
        return get_path("configs", "params.yml")

    # -------------------------------------------------------------------------
    # Raw inputs
    # -------------------------------------------------------------------------
    @property
    def data_raw(self) -> Path:
        return get_path("data", "raw")

    @property
    def raw_pqi(self) -> Path:
        return get_path("data", "raw", "pqi.csv")

    @property
    def raw_sdi(self) -> Path:
        return get_path("data", "raw", "sdi.csv")

    @property
    def raw_geo(self) -> Path:
        return get_path("data", "raw", "zcta")

    # -------------------------------------------------------------------------
    # Processed outputs
    # -------------------------------------------------------------------------
    @property
    def data_processed(self) -> Path:
        return get_path("data", "processed")

    @property
    def analysis_frame(self) -> Path:
        return get_path("data", "processed", "analysis_frame.parquet")

    @property
    def fill_provenance(self) -> Path:
        return get_path("data", "processed", "fill_provenance.parquet")

    @property
    def spatial_statistics(self) -> Path:
        return get_path("data", "processed", "spatial_statistics.parquet")

    @property
    def regression_coefficients(self) -> Path:
        return get_path("data", "processed", "regression_coefficients.parquet")

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------
    @property
    def logs(self) -> Path:
        return get_path("logs")


# Singleton instance for convenience
paths = Paths()


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure exists.

    Returns:
        The Path object for the directory.
    """
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p
