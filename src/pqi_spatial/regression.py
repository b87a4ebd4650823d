"""
OLS and spatial-lag regression with a residual spatial-dependence check.

OLS is solved with NumPy least squares and t-based inference. The spatial lag
model y = rho W y + X beta + e is fit by maximum likelihood with spreg.ML_Lag.
When weights are available, global Moran's I of the residuals is computed
after the fit and stored on the result.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from pqi_spatial.autocorrelation import AutocorrelationResult, global_morans_i
from pqi_spatial.errors import InsufficientDataError, IsolatedUnitError
from pqi_spatial.logging_utils import (
    log_event, log_exclusion, log_stage_start, log_stage_end, resolve_logger
)
from pqi_spatial.weights import ZERO_POLICY_ALLOW, ZERO_POLICIES, SpatialWeights


INTERCEPT = "intercept"
RHO = "rho"


@dataclass(frozen=True, eq=False)
class RegressionResult:
    """Fitted model. Arrays are aligned with coefficient_names."""
    model: str
    dependent: str
    coefficient_names: tuple[str, ...]
    coefficients: np.ndarray
    std_errors: np.ndarray
    test_statistics: np.ndarray
    p_values: np.ndarray
    residuals: pd.Series
    n: int
    r_squared: float
    adj_r_squared: float = float("nan")
    statistic_kind: str = "t"
    rho: float | None = None
    log_likelihood: float | None = None
    residual_autocorrelation: AutocorrelationResult | None = None

    def coefficient(self, name: str) -> float:
        return float(self.coefficients[self.coefficient_names.index(name)])

    def coefficient_table(self) -> pd.DataFrame:
        return pd.DataFrame({
            "model": self.model,
            "dependent": self.dependent,
            "term": list(self.coefficient_names),
            "estimate": self.coefficients,
            "std_error": self.std_errors,
            f"{self.statistic_kind}_stat": self.test_statistics,
            "p_value": self.p_values,
        })

    @property
    def residual_dependence(self) -> bool | None:
        """True if residual Moran's I is significant at 0.05."""
        if self.residual_autocorrelation is None:
            return None
        return self.residual_autocorrelation.is_significant()


def _model_frame(
    data: pd.DataFrame,
    y: str,
    x: Sequence[str],
    key: str | None,
    logger: logging.Logger,
) -> pd.DataFrame:
    """Select model columns and drop incomplete rows."""
    columns = [y, *x] + ([key] if key else [])
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Columns not found: {missing}")

    frame = data[columns].copy()
    if key:
        frame[key] = frame[key].astype(str)
        if frame[key].duplicated().any():
            dup = frame[key][frame[key].duplicated()].unique().tolist()
            raise ValueError(f"Regression data must have one row per unit; duplicated: {dup[:10]}")

    complete = frame[[y, *x]].notna().all(axis=1)
    if not complete.all():
        dropped = frame.loc[~complete, key] if key else frame.index[~complete.to_numpy()].astype(str)
        log_exclusion(logger, f"model {y}", list(dropped), "missing model values",
                      level=logging.WARNING)
    frame = frame.loc[complete]

    n_params = len(x) + 1
    if len(frame) <= n_params:
        raise InsufficientDataError(
            f"{len(frame)} complete rows for {n_params} parameters"
        )
    return frame


def fit_ols(
    data: pd.DataFrame,
    y: str,
    x: str | Sequence[str],
    weights: SpatialWeights | None = None,
    key: str | None = None,
    logger: logging.Logger | None = None,
) -> RegressionResult:
    """
    Ordinary least squares of y on x with an intercept.

    Args:
        data: Table with one row per observation.
        y: Dependent column.
        x: Independent column name(s).
        weights: Optional weights for the residual Moran's I check.
        key: Unit key column; required when weights are given.
        logger: Optional logger.

    Returns:
        RegressionResult with t-based standard errors and p-values.
    """
    logger = resolve_logger(logger, __name__)
    x = [x] if isinstance(x, str) else list(x)
    if weights is not None and key is None:
        raise ValueError("key is required when weights are given")

    started = log_stage_start(logger, f"ols_{y}", predictors=x)
    frame = _model_frame(data, y, x, key, logger)

    y_arr = frame[y].to_numpy(dtype=float)
    X = np.column_stack([np.ones(len(frame)), frame[x].to_numpy(dtype=float)])
    n, p = X.shape

    coefficients, _, rank, _ = np.linalg.lstsq(X, y_arr, rcond=None)
    if rank < p:
        log_event(logger, logging.WARNING, f"Design matrix is rank deficient ({rank} < {p})",
                  "rank_deficient", rank=int(rank), n_params=p)

    fitted = X @ coefficients
    residuals = y_arr - fitted
    dof = n - p
    ssr = float(residuals @ residuals)
    sst = float(((y_arr - y_arr.mean()) ** 2).sum())
    sigma2 = ssr / dof
    cov = sigma2 * np.linalg.pinv(X.T @ X)
    std_errors = np.sqrt(np.clip(np.diag(cov), 0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        t_stats = coefficients / std_errors
    p_values = 2 * stats.t.sf(np.abs(t_stats), dof)

    r_squared = 1 - ssr / sst if sst > 0 else float("nan")
    adj_r_squared = 1 - (1 - r_squared) * (n - 1) / dof if sst > 0 else float("nan")

    index = frame[key].to_numpy() if key else frame.index
    resid_series = pd.Series(residuals, index=index, name="residual")

    residual_moran = None
    if weights is not None:
        residual_moran = global_morans_i(resid_series, weights, logger=logger)

    result = RegressionResult(
        model="ols",
        dependent=y,
        coefficient_names=(INTERCEPT, *x),
        coefficients=coefficients,
        std_errors=std_errors,
        test_statistics=t_stats,
        p_values=p_values,
        residuals=resid_series,
        n=n,
        r_squared=float(r_squared),
        adj_r_squared=float(adj_r_squared),
        statistic_kind="t",
        residual_autocorrelation=residual_moran,
    )
    log_stage_end(logger, f"ols_{y}", started, n=n, r_squared=result.r_squared,
                  residual_morans_i=residual_moran.value if residual_moran else None)
    return result


def fit_spatial_lag(
    data: pd.DataFrame,
    y: str,
    x: str | Sequence[str],
    weights: SpatialWeights,
    key: str,
    zero_policy: str | None = None,
    method: str = "full",
    logger: logging.Logger | None = None,
) -> RegressionResult:
    """
    Maximum-likelihood spatial lag model y = rho W y + X beta + e.

    Args:
        data: Table with one row per unit.
        y: Dependent column.
        x: Independent column name(s).
        weights: SpatialWeights over the units.
        key: Unit key column matching the weights keys.
        zero_policy: Must be "allow" for weights with isolated units
            (including units isolated by dropping incomplete rows).
        method: spreg log-determinant method ("full", "lu", "ord").
        logger: Optional logger.

    Returns:
        RegressionResult with z-based inference, rho and log-likelihood.

    Raises:
        IsolatedUnitError: If isolated units exist and zero_policy is not
            "allow".
    """
    from spreg import ML_Lag

    logger = resolve_logger(logger, __name__)
    x = [x] if isinstance(x, str) else list(x)
    if zero_policy is not None and zero_policy not in ZERO_POLICIES:
        raise ValueError(f"zero_policy must be one of {ZERO_POLICIES} or None, got {zero_policy!r}")

    started = log_stage_start(logger, f"spatial_lag_{y}", predictors=x,
                              zero_policy=zero_policy)
    frame = _model_frame(data, y, x, key, logger)

    unknown = sorted(set(frame[key]) - set(weights.keys))
    if unknown:
        raise ValueError(f"Units not in weights: {unknown[:10]}")

    sub = weights.subset(frame[key])
    if sub.isolated and zero_policy != ZERO_POLICY_ALLOW:
        raise IsolatedUnitError(
            f"Spatial lag model with isolated units requires zero_policy='allow' (got {zero_policy!r})",
            sub.isolated,
        )
    if zero_policy == ZERO_POLICY_ALLOW:
        sub = dataclasses.replace(sub, zero_policy=ZERO_POLICY_ALLOW)

    frame = frame.set_index(key).loc[list(sub.keys)]
    y_arr = frame[y].to_numpy(dtype=float).reshape(-1, 1)
    X = frame[x].to_numpy(dtype=float)

    model = ML_Lag(y_arr, X, sub.to_libpysal(), method=method, name_y=y, name_x=x)

    names = (INTERCEPT, *x, RHO)
    coefficients = np.asarray(model.betas, dtype=float).flatten()
    std_errors = np.asarray(model.std_err, dtype=float).flatten()
    z_stats = np.array([z for z, _ in model.z_stat], dtype=float)
    p_values = np.array([pv for _, pv in model.z_stat], dtype=float)

    resid_series = pd.Series(np.asarray(model.u, dtype=float).flatten(),
                             index=list(sub.keys), name="residual")
    residual_moran = global_morans_i(resid_series, sub, logger=logger)

    result = RegressionResult(
        model="spatial_lag",
        dependent=y,
        coefficient_names=names,
        coefficients=coefficients,
        std_errors=std_errors,
        test_statistics=z_stats,
        p_values=p_values,
        residuals=resid_series,
        n=int(model.n),
        r_squared=float(model.pr2),
        statistic_kind="z",
        rho=float(model.rho),
        log_likelihood=float(model.logll),
        residual_autocorrelation=residual_moran,
    )
    log_stage_end(logger, f"spatial_lag_{y}", started, n=result.n, rho=result.rho,
                  pseudo_r_squared=result.r_squared,
                  residual_morans_i=residual_moran.value)
    return result
