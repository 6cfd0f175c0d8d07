"""
Figures for the matching walkthrough.

Every function draws with matplotlib and returns the ``Figure`` so callers
can show it, save it, or embed it. Pass ``ax`` (or ``axes``) to draw into an
existing layout; otherwise a new figure is created.
"""
from __future__ import annotations

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.ticker import FuncFormatter

from .balance import BALANCE_THRESHOLD, BalanceReport
from .matching import MatchedSample

TREATED_COLOR = "#c44e52"
CONTROL_COLOR = "#4c72b0"
_MARKERS = ("o", "s", "^", "D", "v", "P")


def _figure(ax, figsize):
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure
    return fig, ax


def plot_propensity_overlap(
    data: pd.DataFrame,
    treatment: str,
    scores: pd.Series | np.ndarray,
    bins: int = 30,
    ax=None,
):
    """Mirrored histogram: treated scores above the axis, controls below."""
    fig, ax = _figure(ax, (8, 5))
    ps = np.asarray(scores, dtype=float)
    T = data[treatment].values.astype(int)

    edges = np.linspace(ps.min(), ps.max(), bins + 1)
    h_t, _ = np.histogram(ps[T == 1], bins=edges)
    h_c, _ = np.histogram(ps[T == 0], bins=edges)
    widths = np.diff(edges)

    ax.bar(edges[:-1], h_t, width=widths, align="edge", color=TREATED_COLOR,
           alpha=0.8, edgecolor="white", label="Treated")
    ax.bar(edges[:-1], -h_c, width=widths, align="edge", color=CONTROL_COLOR,
           alpha=0.8, edgecolor="white", label="Control")
    ax.axhline(0, color="black", linewidth=0.8)
    ax.yaxis.set_major_formatter(FuncFormatter(lambda v, _: f"{abs(v):g}"))
    ax.set_xlabel("Propensity score")
    ax.set_ylabel("Count")
    ax.set_title("Propensity score distribution by exposure")
    ax.legend(loc="upper right")
    fig.tight_layout()
    return fig


def plot_love(
    reports: list[BalanceReport],
    threshold: float = BALANCE_THRESHOLD,
    ax=None,
):
    """
    Love plot: absolute balance statistic per covariate, unadjusted and after
    each matching variant, with the balance threshold marked.
    """
    if not reports:
        raise ValueError("plot_love needs at least one BalanceReport.")

    base = reports[0].table
    covariates = list(base.index)[::-1]
    y = np.arange(len(covariates))
    fig, ax = _figure(ax, (8, max(4, 0.35 * len(covariates) + 1.5)))

    ax.scatter(base.loc[covariates, "diff_un"].abs(), y, color="black",
               marker="x", label="Unadjusted", zorder=3)
    for report, marker in zip(reports, _MARKERS * (len(reports) // len(_MARKERS) + 1)):
        diffs = report.table.loc[covariates, "diff_adj"].abs()
        ax.scatter(diffs, y, marker=marker, alpha=0.8, label=report.name, zorder=3)

    ax.axvline(threshold, color="grey", linestyle="--", linewidth=1)
    ax.axvline(0, color="black", linewidth=0.8)
    ax.set_yticks(y)
    ax.set_yticklabels(covariates)
    ax.set_xlabel("Absolute standardized mean difference (raw difference for binary)")
    ax.set_title("Covariate balance")
    ax.grid(axis="y", alpha=0.3)
    ax.legend(loc="lower right", fontsize="small")
    fig.tight_layout()
    return fig


def plot_covariate_balance(
    matched: MatchedSample,
    covariate: str,
    bins: int = 25,
    axes=None,
):
    """
    Distribution of one covariate by exposure group, before (left) and after
    (right) matching. Continuous covariates are drawn as density histograms,
    binary and categorical ones as bars of the proportion per level.
    """
    data = matched.source
    if covariate not in data.columns:
        raise ValueError(f"Covariate column '{covariate}' not found in dataframe.")

    if axes is None:
        fig, axes = plt.subplots(1, 2, figsize=(11, 4), sharey=True)
    else:
        fig = axes[0].figure

    T = data[matched.treatment].values.astype(int)
    x = data[covariate]
    panels = [("Unadjusted", np.ones(len(data))), (f"Matched: {matched.spec.name}", matched.weights)]

    categorical = not pd.api.types.is_numeric_dtype(x) or set(x.unique()) <= {0, 1}
    if categorical:
        levels = sorted(x.astype(str).unique())
        pos = np.arange(len(levels))
        for ax, (title, w) in zip(axes, panels):
            for offset, arm, color, label in ((-0.2, 1, TREATED_COLOR, "Treated"),
                                              (0.2, 0, CONTROL_COLOR, "Control")):
                keep = (T == arm) & (w > 0)
                shares = (
                    pd.Series(w[keep], index=x.astype(str).values[keep])
                    .groupby(level=0).sum()
                    .reindex(levels, fill_value=0.0)
                )
                ax.bar(pos + offset, shares.values / w[keep].sum(), width=0.4,
                       color=color, alpha=0.8, label=label)
            ax.set_xticks(pos)
            ax.set_xticklabels(levels)
            ax.set_title(title)
        axes[0].set_ylabel("Proportion")
    else:
        values = x.values.astype(float)
        edges = np.histogram_bin_edges(values, bins=bins)
        for ax, (title, w) in zip(axes, panels):
            for arm, color, label in ((1, TREATED_COLOR, "Treated"), (0, CONTROL_COLOR, "Control")):
                keep = (T == arm) & (w > 0)
                ax.hist(values[keep], bins=edges, weights=w[keep], density=True,
                        color=color, alpha=0.5, label=label)
            ax.set_title(title)
            ax.set_xlabel(covariate)
        axes[0].set_ylabel("Density")

    axes[1].legend(loc="upper right")
    fig.suptitle(f"Distributional balance for {covariate}")
    fig.tight_layout()
    return fig
