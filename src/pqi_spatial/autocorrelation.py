"""
Global and local spatial autocorrelation.

- Global Moran's I with the randomization variance (Cliff & Ord) and an
  optional permutation pseudo p-value.
- Local Moran's I, Ii = zi / m2 * sum_j wij zj with m2 = sum(z^2) / (n - 1),
  with quadrant labels and optional conditional-permutation p-values (esda).
- Getis-Ord Gi*, binary neighbor sets including the unit itself, reported
  as a z-score under the closed-form variance.

Units with missing values and units without neighbors are excluded before
anything is computed; the weights are restricted to the remaining units and
re-standardized. Every result records the zero policy in effect and the
excluded units.

Local p-values are NOT adjusted for multiple comparisons unless the caller
passes correction="bonferroni" or correction="fdr".
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from pqi_spatial.errors import InsufficientDataError, IsolatedUnitError
from pqi_spatial.logging_utils import log_event, log_exclusion, resolve_logger
from pqi_spatial.weights import ZERO_POLICY_FAIL, SpatialWeights


CORRECTIONS = (None, "bonferroni", "fdr")
GLOBAL_UNIT = "ALL"
INTERCHANGE_COLUMNS = ["unit", "statistic", "value", "p_value"]


# =============================================================================
# Result types
# =============================================================================

@dataclass(frozen=True)
class AutocorrelationResult:
    """Global statistic over all connected units."""
    statistic: str
    value: float
    expected: float
    variance: float
    z_score: float
    p_value: float
    n: int
    zero_policy: str
    excluded: tuple[str, ...] = ()
    permutations: int = 0
    p_sim: float = float("nan")

    def is_significant(self, alpha: float = 0.05) -> bool:
        return bool(self.p_value < alpha)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {"unit": GLOBAL_UNIT, "statistic": self.statistic,
             "value": self.value, "p_value": self.p_value},
            {"unit": GLOBAL_UNIT, "statistic": f"{self.statistic}_z",
             "value": self.z_score, "p_value": self.p_value},
        ]
        return pd.DataFrame(rows, columns=INTERCHANGE_COLUMNS)


@dataclass(frozen=True, eq=False)
class LocalAutocorrelationResult:
    """
    One value per unit. Series are indexed by unit key over every unit of the
    weights; excluded units hold NaN.
    """
    statistic: str
    values: pd.Series
    z_scores: pd.Series
    p_values: pd.Series
    n: int
    zero_policy: str
    excluded: tuple[str, ...] = ()
    correction: str | None = None
    adjusted_p_values: pd.Series | None = None
    quadrants: pd.Series | None = None

    @property
    def reported_p_values(self) -> pd.Series:
        """Adjusted p-values when a correction was requested, raw otherwise."""
        return self.adjusted_p_values if self.adjusted_p_values is not None else self.p_values

    def significant(self, alpha: float = 0.05) -> list[str]:
        p = self.reported_p_values
        return sorted(p.index[p < alpha].tolist())

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({
            "unit": self.values.index,
            "statistic": self.statistic,
            "value": self.values.to_numpy(),
            "p_value": self.reported_p_values.reindex(self.values.index).to_numpy(),
        }, columns=INTERCHANGE_COLUMNS)
        return frame


def results_to_frame(*results) -> pd.DataFrame:
    """Stack results into the long (unit, statistic, value, p_value) table."""
    if not results:
        return pd.DataFrame(columns=INTERCHANGE_COLUMNS)
    return pd.concat([r.to_frame() for r in results], ignore_index=True)


# =============================================================================
# Helpers
# =============================================================================

def adjust_p_values(p_values: np.ndarray, correction: str | None) -> np.ndarray | None:
    """Bonferroni or Benjamini-Hochberg adjustment, ignoring NaN entries."""
    if correction not in CORRECTIONS:
        raise ValueError(f"correction must be one of {CORRECTIONS}, got {correction!r}")
    if correction is None:
        return None

    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p_values, np.nan)
    valid = ~np.isnan(p_values)
    if not valid.any():
        return adjusted
    if correction == "bonferroni":
        adjusted[valid] = np.minimum(p_values[valid] * valid.sum(), 1.0)
    else:
        adjusted[valid] = stats.false_discovery_control(p_values[valid], method="bh")
    return adjusted


def _as_series(values: Any, weights: SpatialWeights) -> pd.Series:
    if isinstance(values, pd.Series):
        series = values.copy()
        series.index = series.index.astype(str)
        unknown = sorted(set(series.index) - set(weights.keys))
        if unknown:
            raise ValueError(f"Values for units not in weights: {unknown[:10]}")
        if series.index.duplicated().any():
            raise ValueError("Values index has duplicate unit keys")
        return pd.to_numeric(series, errors="raise").astype(float).reindex(list(weights.keys))

    array = np.asarray(values, dtype=float)
    if array.shape != (weights.n,):
        raise ValueError(f"Expected {weights.n} values in weights key order, got shape {array.shape}")
    return pd.Series(array, index=list(weights.keys))


def _connected_subset(
    values: Any,
    weights: SpatialWeights,
    statistic: str,
    logger: logging.Logger,
) -> tuple[SpatialWeights, np.ndarray, pd.Series, tuple[str, ...]]:
    """
    Drop missing-value and neighborless units until every remaining unit has
    at least one remaining neighbor.

    Returns:
        (restricted weights, values in restricted key order, full value
        Series, excluded keys)
    """
    if weights.isolated and weights.zero_policy == ZERO_POLICY_FAIL:
        raise IsolatedUnitError("Weights contain isolated units under zero_policy='fail'",
                                weights.isolated)

    series = _as_series(values, weights)
    keep = [k for k in weights.keys if not np.isnan(series[k])]
    sub = weights.subset(keep)
    while sub.isolated:
        dropped = set(sub.isolated)
        keep = [k for k in keep if k not in dropped]
        sub = weights.subset(keep)

    excluded = tuple(k for k in weights.keys if k not in set(keep))
    log_exclusion(logger, statistic, excluded, "missing values or no neighbors",
                  zero_policy=weights.zero_policy)

    if len(keep) < 2:
        raise InsufficientDataError(
            f"{statistic} needs at least 2 connected units, {len(keep)} remain", keep
        )

    return sub, series.reindex(list(sub.keys)).to_numpy(), series, excluded


def _is_constant(x: np.ndarray) -> bool:
    return bool(np.ptp(x) == 0)


def _morans_i(z: np.ndarray, W: np.ndarray) -> float:
    n = len(z)
    return float(n / W.sum() * (z @ W @ z) / (z @ z))


# =============================================================================
# Global Moran's I
# =============================================================================

def global_morans_i(
    values: Any,
    weights: SpatialWeights,
    permutations: int = 0,
    seed: int | None = None,
    logger: logging.Logger | None = None,
) -> AutocorrelationResult:
    """
    Global Moran's I under the randomization assumption.

    Args:
        values: Series indexed by unit key, or an array in weights key order.
        weights: Row-standardized SpatialWeights.
        permutations: If > 0, also compute a permutation pseudo p-value.
        seed: Seed for the permutation generator.
        logger: Optional logger.

    Returns:
        AutocorrelationResult. For constant values, I equals E[I] and the
        z-score and p-value are NaN. The variance is NaN for fewer than 4
        units.

    Raises:
        InsufficientDataError: If fewer than 2 connected units remain.
        IsolatedUnitError: If the weights hold isolated units under "fail".
    """
    logger = resolve_logger(logger, __name__)
    sub, x, _, excluded = _connected_subset(values, weights, "morans_i", logger)

    n = len(x)
    W = sub.to_dense()
    expected = -1.0 / (n - 1)

    if _is_constant(x):
        return AutocorrelationResult(
            statistic="morans_i", value=expected, expected=expected,
            variance=float("nan"), z_score=float("nan"), p_value=float("nan"),
            n=n, zero_policy=weights.zero_policy, excluded=excluded,
        )

    z = x - x.mean()
    value = _morans_i(z, W)

    variance = float("nan")
    if n >= 4:
        S0 = W.sum()
        S1 = 0.5 * ((W + W.T) ** 2).sum()
        S2 = ((W.sum(axis=1) + W.sum(axis=0)) ** 2).sum()
        b2 = n * (z ** 4).sum() / (z @ z) ** 2
        numerator = (
            n * ((n * n - 3 * n + 3) * S1 - n * S2 + 3 * S0 ** 2)
            - b2 * ((n * n - n) * S1 - 2 * n * S2 + 6 * S0 ** 2)
        )
        denominator = (n - 1) * (n - 2) * (n - 3) * S0 ** 2
        variance = float(numerator / denominator - expected ** 2)

    if variance > 0:
        z_score = (value - expected) / np.sqrt(variance)
        p_value = float(2 * stats.norm.sf(abs(z_score)))
    else:
        z_score = p_value = float("nan")

    p_sim = float("nan")
    if permutations > 0:
        rng = np.random.default_rng(seed)
        simulated = np.array([_morans_i(rng.permutation(z), W) for _ in range(permutations)])
        larger = int((simulated >= value).sum())
        if permutations - larger < larger:
            larger = permutations - larger
        p_sim = (larger + 1.0) / (permutations + 1.0)

    result = AutocorrelationResult(
        statistic="morans_i", value=value, expected=expected, variance=variance,
        z_score=float(z_score), p_value=p_value, n=n, zero_policy=weights.zero_policy,
        excluded=excluded, permutations=permutations, p_sim=p_sim,
    )
    log_event(logger, logging.INFO,
              f"Moran's I = {value:.4f} (E[I] = {expected:.4f}, z = {z_score:.3f}, n = {n})",
              "morans_i", value=value, expected=expected, z_score=z_score,
              p_value=p_value, n=n, zero_policy=weights.zero_policy)
    return result


# =============================================================================
# Local Moran's I
# =============================================================================

QUADRANT_LABELS = {1: "HH", 2: "LH", 3: "LL", 4: "HL"}


def local_morans_i(
    values: Any,
    weights: SpatialWeights,
    permutations: int = 0,
    seed: int | None = None,
    correction: str | None = None,
    logger: logging.Logger | None = None,
) -> LocalAutocorrelationResult:
    """
    Local Moran's I per unit.

    Args:
        values: Series indexed by unit key, or an array in weights key order.
        weights: Row-standardized SpatialWeights.
        permutations: If > 0, conditional-permutation inference via esda.
            Otherwise z-scores and p-values are NaN.
        seed: Seed for the permutations.
        correction: None (default, no adjustment), "bonferroni" or "fdr".
        logger: Optional logger.

    Returns:
        LocalAutocorrelationResult with Ii values, quadrant labels
        (HH, LH, LL, HL), z-scores and p-values.

    Notes:
        The p-value is esda's folded pseudo p-value computed from the kept
        simulations: (min(larger, permutations - larger) + 1) / (permutations + 1),
        where larger counts simulated Ii >= observed Ii. This is the "directed"
        alternative of conditional randomization. The z-score is
        (Ii - mean(sim)) / std(sim).
    """
    logger = resolve_logger(logger, __name__)
    if correction not in CORRECTIONS:
        raise ValueError(f"correction must be one of {CORRECTIONS}, got {correction!r}")
    sub, x, series, excluded = _connected_subset(values, weights, "local_morans_i", logger)

    n = len(x)
    keys = list(sub.keys)
    W = sub.to_dense()
    z = x - x.mean()
    lag = W @ z

    p_values = np.full(n, np.nan)
    z_scores = np.full(n, np.nan)
    if _is_constant(x):
        local = np.zeros(n)
        quadrants = np.full(n, None, dtype=object)
    else:
        m2 = (z @ z) / (n - 1)
        local = z * lag / m2
        codes = np.select(
            [(z > 0) & (lag > 0), (z < 0) & (lag > 0), (z < 0) & (lag < 0), (z > 0) & (lag < 0)],
            [1, 2, 3, 4],
            default=0,
        )
        quadrants = np.array([QUADRANT_LABELS.get(c) for c in codes], dtype=object)

        if permutations > 0:
            from esda.moran import Moran_Local

            # Moran_Local takes no alternative argument; with keep_simulations
            # it recomputes p_sim from the simulations, so the warning about
            # the conditional-randomization default does not apply here.
            with warnings.catch_warnings():
                warnings.filterwarnings(
                    "ignore", message="The alternative hypothesis", category=DeprecationWarning
                )
                lisa = Moran_Local(x, sub.to_libpysal(), transformation="r",
                                   permutations=permutations, keep_simulations=True, seed=seed)
            p_values = np.asarray(lisa.p_sim, dtype=float)
            z_scores = np.asarray(lisa.z_sim, dtype=float)

    if permutations <= 0:
        log_event(logger, logging.WARNING,
                  "Local Moran's I computed without permutations; no local z-scores or p-values",
                  "local_inference_skipped", n=n)

    full_index = list(weights.keys)
    adjusted = adjust_p_values(p_values, correction)
    result = LocalAutocorrelationResult(
        statistic="local_morans_i",
        values=pd.Series(local, index=keys).reindex(full_index),
        z_scores=pd.Series(z_scores, index=keys).reindex(full_index),
        p_values=pd.Series(p_values, index=keys).reindex(full_index),
        n=n,
        zero_policy=weights.zero_policy,
        excluded=excluded,
        correction=correction,
        adjusted_p_values=(
            pd.Series(adjusted, index=keys).reindex(full_index) if adjusted is not None else None
        ),
        quadrants=pd.Series(quadrants, index=keys, dtype=object).reindex(full_index),
    )
    log_event(logger, logging.INFO, f"Local Moran's I computed for {n} units",
              "local_morans_i", n=n, permutations=permutations, correction=correction,
              quadrant_counts=result.quadrants.value_counts().to_dict())
    return result


# =============================================================================
# Getis-Ord Gi*
# =============================================================================

def getis_ord_gi_star(
    values: Any,
    weights: SpatialWeights,
    correction: str | None = None,
    logger: logging.Logger | None = None,
) -> LocalAutocorrelationResult:
    """
    Getis-Ord Gi* hot/cold spot statistic.

    Each unit's neighborhood is its neighbor set plus itself, with binary
    weights. Units with missing values are dropped from every sum.

    Args:
        values: Series indexed by unit key, or an array in weights key order.
        weights: SpatialWeights (only the neighbor sets are used).
        correction: None (default), "bonferroni" or "fdr".
        logger: Optional logger.

    Returns:
        LocalAutocorrelationResult; values hold the Gi* ratio
        sum_j wij xj / sum_j xj, z_scores the standardized statistic and
        p_values the two-sided normal p-values. Constant values give NaN
        z-scores.
    """
    logger = resolve_logger(logger, __name__)
    if correction not in CORRECTIONS:
        raise ValueError(f"correction must be one of {CORRECTIONS}, got {correction!r}")
    sub, x, series, excluded = _connected_subset(values, weights, "gi_star", logger)

    n = len(x)
    keys = list(sub.keys)
    B = (sub.to_dense() > 0).astype(float)
    np.fill_diagonal(B, 1.0)

    local_sum = B @ x
    total = x.sum()
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = local_sum / total if total != 0 else np.full(n, np.nan)

    if _is_constant(x):
        z_scores = np.full(n, np.nan)
    else:
        x_bar = x.mean()
        s = np.sqrt(((x - x_bar) ** 2).mean())
        w_i = B.sum(axis=1)
        s1_i = (B ** 2).sum(axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            z_scores = (local_sum - x_bar * w_i) / (s * np.sqrt((n * s1_i - w_i ** 2) / (n - 1)))
        z_scores[~np.isfinite(z_scores)] = np.nan

    p_values = 2 * stats.norm.sf(np.abs(z_scores))
    adjusted = adjust_p_values(p_values, correction)
    full_index = list(weights.keys)

    result = LocalAutocorrelationResult(
        statistic="gi_star",
        values=pd.Series(ratio, index=keys).reindex(full_index),
        z_scores=pd.Series(z_scores, index=keys).reindex(full_index),
        p_values=pd.Series(p_values, index=keys).reindex(full_index),
        n=n,
        zero_policy=weights.zero_policy,
        excluded=excluded,
        correction=correction,
        adjusted_p_values=(
            pd.Series(adjusted, index=keys).reindex(full_index) if adjusted is not None else None
        ),
    )
    finite = z_scores[np.isfinite(z_scores)]
    log_event(logger, logging.INFO, f"Gi* computed for {n} units",
              "gi_star", n=n, correction=correction,
              n_hot=int((finite > 1.96).sum()), n_cold=int((finite < -1.96).sum()))
    return result


def gi_star_frame(result: LocalAutocorrelationResult) -> pd.DataFrame:
    """Gi* result as long rows, with the z-score as the reported value."""
    if result.statistic != "gi_star":
        raise ValueError(f"Expected a gi_star result, got {result.statistic}")
    return pd.DataFrame({
        "unit": result.z_scores.index,
        "statistic": "gi_star_z",
        "value": result.z_scores.to_numpy(),
        "p_value": result.reported_p_values.to_numpy(),
    }, columns=INTERCHANGE_COLUMNS)


def summarize(results: Sequence[AutocorrelationResult]) -> pd.DataFrame:
    """One row per global result, for logging or reports."""
    return pd.DataFrame([
        {
            "statistic": r.statistic, "value": r.value, "expected": r.expected,
            "variance": r.variance, "z_score": r.z_score, "p_value": r.p_value,
            "n": r.n, "zero_policy": r.zero_policy, "n_excluded": len(r.excluded),
        }
        for r in results
    ])
