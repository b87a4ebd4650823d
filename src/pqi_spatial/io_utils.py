"""
Atomic writes and input readers.

Outputs are written to a temp file in the target directory and then renamed
into place, so a failed run never leaves a half-written parquet behind.
Inputs are read with the geographic key kept as text; key normalization
itself happens once, in pqi_spatial.merge.normalize_key().
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TYPE_CHECKING

if TYPE_CHECKING:
    import geopandas as gpd
    import pandas as pd

from pqi_spatial.paths import ensure_dir


def atomic_write(
    target_path: Path | str,
    write_func: Callable,
    *args,
    **kwargs
) -> Path:
    """
    Write to a file atomically using a temporary file and rename.

    Args:
        target_path: Final destination path.
        write_func: Called as write_func(temp_path, *args, **kwargs).
        *args: Additional arguments to pass to write_func.
        **kwargs: Additional keyword arguments to pass to write_func.

    Returns:
        The target path (as Path object).

    Raises:
        Exception: Re-raises any exception from write_func after cleanup.
    """
    target_path = Path(target_path)
    ensure_dir(target_path.parent)

    temp_fd, temp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=f"{target_path.stem}_",
        dir=target_path.parent
    )
    temp_path = Path(temp_path)

    try:
        os.close(temp_fd)
        write_func(temp_path, *args, **kwargs)
        temp_path.replace(target_path)
        return target_path

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_json(target_path: Path | str, data: Any, indent: int = 2) -> Path:
    """Write JSON data to a file atomically."""
    def write_json(temp_path: Path, data: Any, indent: int):
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, default=str)

    return atomic_write(target_path, write_json, data, indent)


def atomic_write_parquet(
    target_path: Path | str,
    df: "pd.DataFrame",
    **kwargs
) -> Path:
    """
    Write a DataFrame to Parquet atomically.

    Geometry columns are written as WKB via GeoDataFrame.to_parquet; plain
    frames go through pyarrow directly.

    Args:
        target_path: Destination file path.
        df: DataFrame or GeoDataFrame to write.
        **kwargs: Passed to pyarrow.parquet.write_table.

    Returns:
        The target path.
    """
    import geopandas as gpd
    import pyarrow as pa
    import pyarrow.parquet as pq

    def write_parquet(temp_path: Path, df: "pd.DataFrame", **kwargs):
        if isinstance(df, gpd.GeoDataFrame):
            df.to_parquet(temp_path)
        else:
            table = pa.Table.from_pandas(df)
            pq.write_table(table, temp_path, **kwargs)

    return atomic_write(target_path, write_parquet, df, **kwargs)


# =============================================================================
# Read utilities
# =============================================================================

def read_parquet(file_path: Path | str) -> "pd.DataFrame":
    """
    Read a Parquet file into a DataFrame (GeoDataFrame if it has geometry).

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    import geopandas as gpd
    import pandas as pd

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Parquet file not found: {file_path}")
    try:
        return gpd.read_parquet(file_path)
    except ValueError:
        # no geo metadata
        return pd.read_parquet(file_path)


def read_table_csv(file_path: Path | str, key: str) -> "pd.DataFrame":
    """
    Read an observation CSV, keeping the geographic key as text.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the key column is absent.
    """
    import pandas as pd

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"CSV file not found: {file_path}")
    df = pd.read_csv(file_path, dtype={key: str})
    if key not in df.columns:
        raise ValueError(f"Key column '{key}' not found in {file_path.name}: {list(df.columns)}")
    return df


def read_units(path: Path | str, key: str) -> "gpd.GeoDataFrame":
    """
    Read unit polygons from a shapefile, or the first .shp in a directory.

    Raises:
        FileNotFoundError: If no shapefile is found.
        ValueError: If the key column is absent.
    """
    import geopandas as gpd

    path = Path(path)
    if path.is_dir():
        shapefiles = sorted(path.glob("*.shp"))
        if not shapefiles:
            raise FileNotFoundError(f"No .shp file in {path}")
        path = shapefiles[0]
    if not path.exists():
        raise FileNotFoundError(f"Shapefile not found: {path}")

    units = gpd.read_file(path)
    if key not in units.columns:
        raise ValueError(f"Key column '{key}' not found in {path.name}: {list(units.columns)}")
    return units


def read_yaml(file_path: Path | str) -> Any:
    """
    Read a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    import yaml

    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"YAML file not found: {file_path}")
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)
