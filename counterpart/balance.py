"""
Covariate balance diagnostics before and after matching.

Balance is summarised per covariate by the standardized mean difference
(raw difference in proportions for binary covariates), the variance ratio
for continuous covariates, and the Kolmogorov-Smirnov statistic. After
matching, every statistic is computed with the matching weights, so units
reused by matching with replacement count once per use.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .matching import MatchedSample

logger = logging.getLogger(__name__)

BALANCE_THRESHOLD = 0.1

_DISTANCE = "distance"


# ── Weighted statistics ────────────────────────────────────────────────────────

def effective_sample_size(weights: np.ndarray) -> float:
    """Kish effective sample size, (Σw)² / Σw², over the positive weights."""
    w = np.asarray(weights, dtype=float)
    w = w[w > 0]
    if w.size == 0:
        return 0.0
    return float(w.sum() ** 2 / (w ** 2).sum())


def _weighted_var(x: np.ndarray, w: np.ndarray) -> float:
    sw = w.sum()
    denom = sw - (w ** 2).sum() / sw
    if denom <= 0:
        return float("nan")
    m = np.average(x, weights=w)
    return float((w * (x - m) ** 2).sum() / denom)


def _ecdf(values: np.ndarray, weights: np.ndarray, grid: np.ndarray) -> np.ndarray:
    order = np.argsort(values, kind="stable")
    v = values[order]
    cw = np.cumsum(weights[order]) / weights.sum()
    idx = np.searchsorted(v, grid, side="right")
    return np.where(idx > 0, cw[np.maximum(idx - 1, 0)], 0.0)


def _weighted_ks(xt: np.ndarray, wt: np.ndarray, xc: np.ndarray, wc: np.ndarray) -> float:
    grid = np.unique(np.concatenate([xt, xc]))
    return float(np.max(np.abs(_ecdf(xt, wt, grid) - _ecdf(xc, wc, grid))))


def _is_binary(x: np.ndarray) -> bool:
    return set(np.unique(x)) <= {0.0, 1.0}


# ── Tables ─────────────────────────────────────────────────────────────────────

def _expand(data: pd.DataFrame, covariates: list[str]) -> pd.DataFrame:
    """Numeric covariates as-is; categorical covariates as one indicator per level."""
    missing = [c for c in covariates if c not in data.columns]
    if missing:
        raise ValueError(f"Covariate columns not found in dataframe: {missing}")
    frame = data[covariates]
    categorical = [c for c in covariates if not pd.api.types.is_numeric_dtype(frame[c])]
    if categorical:
        frame = pd.get_dummies(frame, columns=categorical, prefix_sep="_", dtype=float)
        # get_dummies appends the indicators; restore the caller's column order.
        ordered = []
        for c in covariates:
            if c in categorical:
                ordered += sorted(col for col in frame.columns if col.startswith(f"{c}_"))
            else:
                ordered.append(c)
        frame = frame[ordered]
    return frame.astype(float)


def _denominators(X: pd.DataFrame, T: np.ndarray, estimand: str) -> pd.Series:
    out = {}
    for col in X.columns:
        x = X[col].values
        v_t = np.var(x[T == 1], ddof=1)
        v_c = np.var(x[T == 0], ddof=1)
        if estimand == "ATT":
            out[col] = np.sqrt(v_t)
        elif estimand == "ATC":
            out[col] = np.sqrt(v_c)
        else:
            out[col] = np.sqrt((v_t + v_c) / 2.0)
    return pd.Series(out, dtype=float)


def balance_table(
    data: pd.DataFrame,
    covariates: list[str],
    treatment: str,
    weights: np.ndarray | None = None,
    estimand: str = "ATT",
    denominators: pd.Series | None = None,
) -> pd.DataFrame:
    """
    Per-covariate balance statistics for a (possibly weighted) sample.

    Parameters
    ----------
    data : pd.DataFrame
        Frame holding the treatment and covariate columns.
    covariates : list[str]
        Covariates to assess. Categorical columns are expanded to one
        indicator row per level.
    treatment : str
        Binary (0/1) treatment column.
    weights : np.ndarray, optional
        One weight per row; rows with weight 0 are excluded. ``None`` means
        the unweighted sample.
    estimand : str
        Chooses the standardization: treated SD for ATT, control SD for ATC,
        pooled SD for ATE.
    denominators : pd.Series, optional
        Precomputed standardization SDs per expanded covariate. Pass the
        unadjusted sample's values when assessing a matched sample so before
        and after differences share one scale.

    Returns
    -------
    pd.DataFrame
        Indexed by covariate with columns ``type``, ``mean_treated``,
        ``mean_control``, ``diff``, ``var_ratio`` and ``ks``.
    """
    X = _expand(data, covariates)
    T = data[treatment].values.astype(int)
    w = np.ones(len(data)) if weights is None else np.asarray(weights, dtype=float)
    if denominators is None:
        denominators = _denominators(X, T, estimand)

    t = (T == 1) & (w > 0)
    c = (T == 0) & (w > 0)
    if not t.any() or not c.any():
        raise ValueError("Balance requires both treated and control units with positive weight.")

    rows = []
    for col in X.columns:
        x = X[col].values
        binary = _is_binary(x)
        mean_t = float(np.average(x[t], weights=w[t]))
        mean_c = float(np.average(x[c], weights=w[c]))
        if binary:
            diff = mean_t - mean_c
            var_ratio = float("nan")
        else:
            sd = denominators[col]
            diff = (mean_t - mean_c) / sd if sd > 0 else 0.0
            v_c = _weighted_var(x[c], w[c])
            var_ratio = _weighted_var(x[t], w[t]) / v_c if v_c > 0 else float("nan")
        rows.append({
            "covariate":    col,
            "type":         "binary" if binary else "contin.",
            "mean_treated": mean_t,
            "mean_control": mean_c,
            "diff":         diff,
            "var_ratio":    var_ratio,
            "ks":           _weighted_ks(x[t], w[t], x[c], w[c]),
        })
    return pd.DataFrame(rows).set_index("covariate")


# ── Report ─────────────────────────────────────────────────────────────────────

class BalanceReport:
    """
    Covariate balance of one matched sample against the unmatched cohort.

    ``table`` shows each statistic unadjusted (``_un``) and adjusted by the
    matching weights (``_adj``). The first row, ``distance``, is the matching
    score itself.
    """

    def __init__(
        self,
        table: pd.DataFrame,
        sample_sizes: pd.DataFrame,
        threshold: float,
        name: str,
    ) -> None:
        self._table = table
        self._sample_sizes = sample_sizes
        self._threshold = threshold
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def table(self) -> pd.DataFrame:
        return self._table.copy()

    @property
    def sample_sizes(self) -> pd.DataFrame:
        """Counts per group: All, Matched (ESS), Matched (unweighted), Unmatched."""
        return self._sample_sizes.copy()

    @property
    def threshold(self) -> float:
        return self._threshold

    def max_abs_diff(self, adjusted: bool = True) -> float:
        """Largest absolute balance statistic over the covariates (``distance`` excluded)."""
        col = "diff_adj" if adjusted else "diff_un"
        return float(self._table[col].drop(_DISTANCE).abs().max())

    @property
    def imbalanced(self) -> list[str]:
        """Covariates whose adjusted difference exceeds the threshold."""
        diffs = self._table["diff_adj"].drop(_DISTANCE)
        return list(diffs.index[diffs.abs() > self._threshold])

    @property
    def balanced(self) -> bool:
        return not self.imbalanced

    def summary(self) -> str:
        tab = self._table
        lines = [
            "",
            f"Balance: {self._name}",
            "─" * 86,
            f"  {'covariate':<26}{'type':<9}{'Diff.Un':>9}{'Diff.Adj':>10}"
            f"{'V.Ratio.Un':>12}{'V.Ratio.Adj':>13}{'KS.Adj':>8}",
        ]
        for cov, row in tab.iterrows():
            flag = " *" if cov != _DISTANCE and abs(row["diff_adj"]) > self._threshold else ""
            vr_un = "" if np.isnan(row["var_ratio_un"]) else f"{row['var_ratio_un']:.3f}"
            vr_adj = "" if np.isnan(row["var_ratio_adj"]) else f"{row['var_ratio_adj']:.3f}"
            lines.append(
                f"  {cov:<26}{row['type']:<9}{row['diff_un']:>9.4f}{row['diff_adj']:>10.4f}"
                f"{vr_un:>12}{vr_adj:>13}{row['ks_adj']:>8.4f}{flag}"
            )

        lines += ["", f"  {'Sample sizes':<26}{'Control':>12}{'Treated':>12}"]
        for label, row in self._sample_sizes.iterrows():
            fmt = "{:>12.2f}" if "ESS" in label else "{:>12.0f}"
            lines.append(f"  {label:<26}" + fmt.format(row["control"]) + fmt.format(row["treated"]))

        lines.append("")
        if self.balanced:
            lines.append(f"  All covariates within |diff| ≤ {self._threshold} after matching.")
        else:
            lines.append(
                f"  {len(self.imbalanced)} covariate(s) exceed |diff| > {self._threshold} "
                f"after matching (marked *)."
            )
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


def _sample_sizes(T: np.ndarray, w: np.ndarray) -> pd.DataFrame:
    sizes = {}
    for label, arm in (("control", 0), ("treated", 1)):
        in_arm = T == arm
        sizes[label] = {
            "All":                  float(in_arm.sum()),
            "Matched (ESS)":        effective_sample_size(w[in_arm]),
            "Matched (unweighted)": float((in_arm & (w > 0)).sum()),
            "Unmatched":            float((in_arm & (w == 0)).sum()),
        }
    return pd.DataFrame(sizes)


def assess_balance(
    matched: MatchedSample,
    covariates: list[str],
    threshold: float = BALANCE_THRESHOLD,
) -> BalanceReport:
    """
    Compare covariate balance of the cohort before and after matching.

    The unadjusted side is the whole analysed frame, unweighted; the adjusted
    side uses ``matched.weights``. Both share the unadjusted standardization.
    """
    if _DISTANCE in covariates:
        raise ValueError(f"'{_DISTANCE}' is reserved for the matching score row.")

    data = matched.source.assign(**{_DISTANCE: matched.scores})
    treatment = matched.treatment
    estimand = matched.spec.estimand
    names = [_DISTANCE] + list(covariates)

    T = data[treatment].values.astype(int)
    denominators = _denominators(_expand(data, names), T, estimand)

    un = balance_table(data, names, treatment, None, estimand, denominators)
    adj = balance_table(data, names, treatment, matched.weights, estimand, denominators)

    table = pd.DataFrame({
        "type":              un["type"],
        "mean_treated_un":   un["mean_treated"],
        "mean_control_un":   un["mean_control"],
        "mean_treated_adj":  adj["mean_treated"],
        "mean_control_adj":  adj["mean_control"],
        "diff_un":           un["diff"],
        "diff_adj":          adj["diff"],
        "var_ratio_un":      un["var_ratio"],
        "var_ratio_adj":     adj["var_ratio"],
        "ks_un":             un["ks"],
        "ks_adj":            adj["ks"],
    })

    report = BalanceReport(
        table,
        _sample_sizes(T, matched.weights),
        threshold,
        matched.spec.name,
    )
    if report.imbalanced:
        logger.warning(
            "Matching '%s' leaves %d covariate(s) over the %.2f threshold: %s",
            matched.spec.name, len(report.imbalanced), threshold, report.imbalanced,
        )
    return report
