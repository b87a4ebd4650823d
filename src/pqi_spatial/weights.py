"""
Spatial weights from polygon contiguity or k-nearest centroids.

Units are always processed in ascending key order, so neighbor lists,
weights and tie-breaks do not depend on the row order of the input frame.
Weights are row-standardized ("W" style). Units without neighbors are never
silently given a zero row: the caller's zero policy either rejects them
(IsolatedUnitError) or keeps them with an empty row and lists them in
SpatialWeights.isolated.
"""

import logging
import warnings
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Iterable

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from shapely.geometry import MultiPolygon, Polygon, box
from shapely.ops import unary_union
from shapely.validation import explain_validity, make_valid

from pqi_spatial.errors import InvalidGeometryError, IsolatedUnitError, KeyCollisionError
from pqi_spatial.logging_utils import (
    log_event, log_geometry_repair, log_stage_start, log_stage_end, resolve_logger
)


MODE_CONTIGUITY = "contiguity"
MODE_KNN = "knn"

ZERO_POLICY_FAIL = "fail"
ZERO_POLICY_ALLOW = "allow"
ZERO_POLICIES = (ZERO_POLICY_FAIL, ZERO_POLICY_ALLOW)

# Snapping tolerance for contiguity, in the units of the geometry's CRS.
DEFAULT_TOLERANCE = 0.01

ROW_SUM_TOLERANCE = 1e-9


@dataclass(frozen=True)
class GeometryRepair:
    """One polygon repaired before adjacency was computed."""
    key: str
    reason: str
    original_type: str
    repaired_type: str
    area_change: float


@dataclass(frozen=True)
class SpatialWeights:
    """
    Immutable neighbor structure over an ordered set of units.

    neighbors[i] and weights[i] belong to keys[i]; both are ordered by
    ascending neighbor key.
    """
    keys: tuple[str, ...]
    neighbors: tuple[tuple[str, ...], ...]
    weights: tuple[tuple[float, ...], ...]
    isolated: tuple[str, ...]
    mode: str
    zero_policy: str
    parameters: tuple[tuple[str, Any], ...] = ()
    repairs: tuple[GeometryRepair, ...] = field(default=(), compare=False)

    @property
    def n(self) -> int:
        return len(self.keys)

    @cached_property
    def index(self) -> dict[str, int]:
        return {k: i for i, k in enumerate(self.keys)}

    def neighbors_of(self, key: str) -> dict[str, float]:
        """Neighbor key -> weight for one unit."""
        i = self.index[key]
        return dict(zip(self.neighbors[i], self.weights[i]))

    def cardinalities(self) -> dict[str, int]:
        return {k: len(n) for k, n in zip(self.keys, self.neighbors)}

    def row_sums(self) -> np.ndarray:
        return np.array([sum(w) for w in self.weights], dtype=float)

    def to_dense(self) -> np.ndarray:
        """n x n weight matrix in key order."""
        matrix = np.zeros((self.n, self.n), dtype=float)
        for i, (nbrs, wts) in enumerate(zip(self.neighbors, self.weights)):
            for nbr, w in zip(nbrs, wts):
                matrix[i, self.index[nbr]] = w
        return matrix

    def to_frame(self) -> pd.DataFrame:
        """Long table of (focal, neighbor, weight) rows."""
        rows = [
            {"focal": k, "neighbor": nbr, "weight": w}
            for k, nbrs, wts in zip(self.keys, self.neighbors, self.weights)
            for nbr, w in zip(nbrs, wts)
        ]
        return pd.DataFrame(rows, columns=["focal", "neighbor", "weight"])

    def to_libpysal(self):
        """Row-standardized libpysal W with id_order equal to keys."""
        from libpysal.weights import W

        w = W(
            {k: list(n) for k, n in zip(self.keys, self.neighbors)},
            {k: list(wt) for k, wt in zip(self.keys, self.weights)},
            id_order=list(self.keys),
            silence_warnings=True,
        )
        w.transform = "r"
        return w

    def subset(self, keys: Iterable[str]) -> "SpatialWeights":
        """
        Restrict to a subset of units and re-standardize each row over the
        neighbors that remain. Units left without neighbors become isolated.
        """
        keep = set(keys)
        unknown = keep - set(self.keys)
        if unknown:
            raise KeyError(f"Units not in weights: {sorted(unknown)[:10]}")

        new_keys, new_neighbors, new_weights = [], [], []
        for k, nbrs, wts in zip(self.keys, self.neighbors, self.weights):
            if k not in keep:
                continue
            pairs = [(n, w) for n, w in zip(nbrs, wts) if n in keep and w > 0]
            total = sum(w for _, w in pairs)
            new_keys.append(k)
            new_neighbors.append(tuple(n for n, _ in pairs))
            new_weights.append(tuple(w / total for _, w in pairs))

        isolated = tuple(k for k, n in zip(new_keys, new_neighbors) if not n)
        return SpatialWeights(
            keys=tuple(new_keys),
            neighbors=tuple(new_neighbors),
            weights=tuple(new_weights),
            isolated=isolated,
            mode=self.mode,
            zero_policy=self.zero_policy,
            parameters=self.parameters,
            repairs=self.repairs,
        )

    def summary(self) -> dict[str, Any]:
        cards = np.array([len(n) for n in self.neighbors])
        return {
            "mode": self.mode,
            "zero_policy": self.zero_policy,
            "n_units": self.n,
            "n_isolated": len(self.isolated),
            "mean_neighbors": float(cards.mean()) if len(cards) else 0.0,
            "min_neighbors": int(cards.min()) if len(cards) else 0,
            "max_neighbors": int(cards.max()) if len(cards) else 0,
            "n_repaired": len(self.repairs),
            **dict(self.parameters),
        }


# =============================================================================
# Geometry preparation
# =============================================================================

def _polygonal_part(geom):
    """Keep only the polygonal components of a geometry, or None."""
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    parts = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    if not parts:
        return None
    return unary_union(parts)


def _prepare_units(units: gpd.GeoDataFrame, key: str) -> gpd.GeoDataFrame:
    if key not in units.columns:
        raise ValueError(f"Key column '{key}' not found in units")
    units = units.copy()
    units[key] = units[key].astype(str)
    dup = units[key][units[key].duplicated()].unique().tolist()
    if dup:
        raise KeyCollisionError("Duplicate unit keys", dup)
    return units.sort_values(key, kind="mergesort").reset_index(drop=True)


def repair_geometries(
    units: gpd.GeoDataFrame,
    key: str,
    logger: logging.Logger | None = None,
) -> tuple[gpd.GeoDataFrame, tuple[GeometryRepair, ...]]:
    """
    Validate unit polygons and repair invalid ones with make_valid.

    Args:
        units: GeoDataFrame with one polygon per unit.
        key: Unit key column.
        logger: Optional logger.

    Returns:
        (units sorted by key with repaired geometry, repair records)

    Raises:
        InvalidGeometryError: For null, empty or non-polygonal geometry, or
            polygons that have no polygonal part left after repair.
        KeyCollisionError: If a key appears twice.
    """
    logger = resolve_logger(logger, __name__)
    units = _prepare_units(units, key)

    geoms = list(units.geometry)
    bad = [
        k for k, g in zip(units[key], geoms)
        if g is None or g.is_empty or not isinstance(g, (Polygon, MultiPolygon))
    ]
    if bad:
        raise InvalidGeometryError("Null, empty or non-polygonal geometry", bad)

    repairs = []
    unrepairable = []
    for i, (k, geom) in enumerate(zip(units[key], geoms)):
        if geom.is_valid:
            continue
        reason = explain_validity(geom)
        fixed = _polygonal_part(make_valid(geom))
        if fixed is None or fixed.is_empty or not fixed.is_valid:
            unrepairable.append(k)
            continue
        geoms[i] = fixed
        repair = GeometryRepair(
            key=k,
            reason=reason,
            original_type=geom.geom_type,
            repaired_type=fixed.geom_type,
            area_change=float(fixed.area - geom.area),
        )
        repairs.append(repair)
        log_geometry_repair(logger, k, reason, repair.original_type, repair.repaired_type,
                            repair.area_change)

    if unrepairable:
        raise InvalidGeometryError("Polygons could not be repaired", unrepairable)

    if repairs:
        log_event(logger, logging.WARNING, f"Repaired {len(repairs)} invalid polygons",
                  "geometry_repaired", keys=[r.key for r in repairs])

    units[units.geometry.name] = gpd.GeoSeries(geoms, index=units.index, crs=units.crs)
    return units, tuple(repairs)


# =============================================================================
# Builders
# =============================================================================

def _check_zero_policy(zero_policy: str) -> None:
    if zero_policy not in ZERO_POLICIES:
        raise ValueError(f"zero_policy must be one of {ZERO_POLICIES}, got {zero_policy!r}")


def _finalize(
    keys: list[str],
    neighbor_sets: dict[str, set[str]],
    mode: str,
    zero_policy: str,
    parameters: dict[str, Any],
    repairs: tuple[GeometryRepair, ...],
    logger: logging.Logger,
) -> SpatialWeights:
    """Row-standardize neighbor sets and apply the zero policy."""
    neighbors = []
    weights = []
    for k in keys:
        nbrs = tuple(sorted(neighbor_sets[k]))
        neighbors.append(nbrs)
        weights.append(tuple(1.0 / len(nbrs) for _ in nbrs))

    isolated = tuple(k for k, n in zip(keys, neighbors) if not n)
    if isolated:
        if zero_policy == ZERO_POLICY_FAIL:
            log_event(logger, logging.ERROR, f"{len(isolated)} isolated units",
                      "isolated_units", keys=list(isolated), zero_policy=zero_policy)
            raise IsolatedUnitError("Units without neighbors", isolated)
        log_event(logger, logging.WARNING,
                  f"{len(isolated)} isolated units kept with zero weight rows",
                  "isolated_units", keys=list(isolated), zero_policy=zero_policy)

    return SpatialWeights(
        keys=tuple(keys),
        neighbors=tuple(neighbors),
        weights=tuple(weights),
        isolated=isolated,
        mode=mode,
        zero_policy=zero_policy,
        parameters=tuple(sorted(parameters.items())),
        repairs=repairs,
    )


def contiguity_weights(
    units: gpd.GeoDataFrame,
    key: str,
    tolerance: float = DEFAULT_TOLERANCE,
    zero_policy: str = ZERO_POLICY_FAIL,
    logger: logging.Logger | None = None,
) -> SpatialWeights:
    """
    Build weights from polygon adjacency.

    Two units are neighbors when the distance between their polygons is at
    most `tolerance` (shared edges and shared corners both count).

    Args:
        units: GeoDataFrame with one polygon per unit.
        key: Unit key column.
        tolerance: Snapping tolerance in CRS units.
        zero_policy: "fail" or "allow" for units without neighbors.
        logger: Optional logger.

    Returns:
        Row-standardized SpatialWeights.
    """
    logger = resolve_logger(logger, __name__)
    _check_zero_policy(zero_policy)
    if tolerance < 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")

    started = log_stage_start(logger, "contiguity_weights", n_units=len(units),
                              tolerance=tolerance)

    units, repairs = repair_geometries(units, key, logger)
    keys = units[key].tolist()
    geoms = list(units.geometry)
    sindex = units.sindex

    neighbor_sets: dict[str, set[str]] = {k: set() for k in keys}
    for i, geom in enumerate(geoms):
        minx, miny, maxx, maxy = geom.bounds
        window = box(minx - tolerance, miny - tolerance, maxx + tolerance, maxy + tolerance)
        for j in sorted(int(c) for c in sindex.query(window)):
            if j <= i:
                continue
            if geom.distance(geoms[j]) <= tolerance:
                neighbor_sets[keys[i]].add(keys[j])
                neighbor_sets[keys[j]].add(keys[i])

    weights = _finalize(keys, neighbor_sets, MODE_CONTIGUITY, zero_policy,
                        {"tolerance": tolerance}, repairs, logger)
    log_stage_end(logger, "contiguity_weights", started, **weights.summary())
    return weights


def knn_weights(
    units: gpd.GeoDataFrame,
    key: str,
    k: int,
    zero_policy: str = ZERO_POLICY_FAIL,
    logger: logging.Logger | None = None,
) -> SpatialWeights:
    """
    Build weights from the k nearest unit centroids.

    Candidates are ordered by Euclidean centroid distance, then by ascending
    key, so units tied at the k-th distance are chosen deterministically.

    Args:
        units: GeoDataFrame with one polygon per unit.
        key: Unit key column.
        k: Number of neighbors, 1 <= k < number of units.
        zero_policy: "fail" or "allow" for units without neighbors.
        logger: Optional logger.

    Returns:
        Row-standardized SpatialWeights.
    """
    logger = resolve_logger(logger, __name__)
    _check_zero_policy(zero_policy)

    n = len(units)
    if not isinstance(k, (int, np.integer)) or k < 1 or k >= n:
        raise ValueError(f"k must be an integer with 1 <= k < {n}, got {k!r}")

    started = log_stage_start(logger, "knn_weights", n_units=n, k=k)

    units, repairs = repair_geometries(units, key, logger)
    keys = units[key].tolist()

    if units.crs is not None and units.crs.is_geographic:
        log_event(logger, logging.WARNING,
                  "Centroid distances computed in a geographic CRS",
                  "geographic_crs", crs=str(units.crs))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        centroids = units.geometry.centroid

    coords = np.column_stack([centroids.x.to_numpy(), centroids.y.to_numpy()])
    distances = cdist(coords, coords)
    key_rank = np.arange(n)  # units are sorted by key

    neighbor_sets: dict[str, set[str]] = {}
    for i in range(n):
        row = distances[i].copy()
        row[i] = np.inf
        order = np.lexsort((key_rank, row))
        neighbor_sets[keys[i]] = {keys[j] for j in order[:k]}

    weights = _finalize(keys, neighbor_sets, MODE_KNN, zero_policy,
                        {"k": int(k)}, repairs, logger)
    log_stage_end(logger, "knn_weights", started, **weights.summary())
    return weights


def build_weights(
    units: gpd.GeoDataFrame,
    key: str,
    mode: str = MODE_CONTIGUITY,
    k: int | None = None,
    tolerance: float = DEFAULT_TOLERANCE,
    zero_policy: str = ZERO_POLICY_FAIL,
    logger: logging.Logger | None = None,
) -> SpatialWeights:
    """Dispatch to contiguity_weights() or knn_weights() by mode."""
    if mode == MODE_CONTIGUITY:
        return contiguity_weights(units, key, tolerance=tolerance,
                                  zero_policy=zero_policy, logger=logger)
    if mode == MODE_KNN:
        if k is None:
            raise ValueError("k is required for knn weights")
        return knn_weights(units, key, k, zero_policy=zero_policy, logger=logger)
    raise ValueError(f"Unknown weights mode {mode!r}; expected '{MODE_CONTIGUITY}' or '{MODE_KNN}'")
