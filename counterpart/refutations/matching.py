from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from ._check import RefutationCheck, RefutationReport
from ..matching import _ORDER_SEED, MatchSpec, NearestNeighborMatcher
from ..propensity import PropensityModel

logger = logging.getLogger(__name__)

_RCC_SEED     = 54321
_PLACEBO_SEED = 99999
_RCC_COL      = "_rcc"


def _matched_difference(
    data: pd.DataFrame,
    treatment: str,
    outcome: str,
    covariates: list[str],
    spec: MatchSpec,
    seed: int = _ORDER_SEED,
) -> float:
    """Refit the propensity model, rematch with ``spec`` and return the matched mean difference."""
    ps = PropensityModel(covariates, treatment).fit(data)
    matched = NearestNeighborMatcher(spec, seed=seed).match(data, treatment, ps.scores)
    return matched.mean_difference(outcome)


def _check_placebo_treatment(
    data: pd.DataFrame,
    treatment: str,
    outcome: str,
    covariates: list[str],
    spec: MatchSpec,
    original_se: float,
    seed: int = _ORDER_SEED,
) -> RefutationCheck:
    """
    Permute the exposure labels at random and redo the whole matched analysis.

    A permuted exposure has no effect by construction, so the placebo matched
    difference should sit within one standard error of zero.
    """
    rng = np.random.default_rng(_PLACEBO_SEED)
    augmented = data.assign(**{treatment: rng.permutation(data[treatment].values)})

    try:
        placebo = _matched_difference(augmented, treatment, outcome, covariates, spec, seed)
    except Exception:
        logger.warning("Placebo rematch failed for '%s'", spec.name, exc_info=True)
        return RefutationCheck(
            name="Placebo treatment",
            passed=False,
            detail="Matching failed on permuted exposure; check data quality.",
        )

    passed = abs(placebo) <= original_se
    if passed:
        detail = (
            f"placebo difference = {placebo:.4f}  (≤ 1 SE = {original_se:.4f})  "
            f"Permuting exposure labels yields a near-zero difference, as expected."
        )
    else:
        detail = (
            f"placebo difference = {placebo:.4f}  (> 1 SE = {original_se:.4f})  "
            f"A randomly permuted exposure produced a sizeable difference; the matched "
            f"estimate may reflect residual imbalance rather than the exposure."
        )
    return RefutationCheck(
        name="Placebo treatment", passed=passed, detail=detail,
        statistic=placebo, tolerance=original_se,
    )


def _check_random_common_cause(
    data: pd.DataFrame,
    treatment: str,
    outcome: str,
    covariates: list[str],
    spec: MatchSpec,
    original_effect: float,
    original_se: float,
    seed: int = _ORDER_SEED,
) -> RefutationCheck:
    """
    Add a pure-noise covariate to the propensity model and rematch.

    Noise is unrelated to exposure and outcome, so the matched difference
    should not move by more than one standard error. A larger shift means the
    estimate hinges on small changes to the propensity model or match order.
    """
    rng = np.random.default_rng(_RCC_SEED)

    col = _RCC_COL
    while col in data.columns:
        col = "_" + col
    augmented = data.assign(**{col: rng.normal(size=len(data))})

    try:
        new_effect = _matched_difference(augmented, treatment, outcome, covariates + [col], spec, seed)
    except Exception:
        logger.warning("Random common cause rematch failed for '%s'", spec.name, exc_info=True)
        return RefutationCheck(
            name="Random common cause",
            passed=False,
            detail="Matching failed after adding a random covariate; check data quality.",
        )

    shift = new_effect - original_effect
    passed = abs(shift) <= original_se
    if passed:
        detail = f"difference shifted by {abs(shift):.4f}  (≤ 1 SE = {original_se:.4f})"
    else:
        detail = (
            f"difference shifted by {abs(shift):.4f}  (> 1 SE = {original_se:.4f})  "
            f"Adding a random common cause destabilised the matched estimate."
        )
    return RefutationCheck(
        name="Random common cause", passed=passed, detail=detail,
        statistic=shift, tolerance=original_se,
    )


class MatchingRefutationReport(RefutationReport):
    """
    Refutation checks for one matching variant's continuous-outcome estimate.

    Obtain via ``VariantResult.refute(data)``. Each check is a
    ``RefutationCheck`` in ``.checks``; the overall verdict is ``.passed``.

    Example::

        report = PropensityAnalysis().run(cohort).variants["1:1"].refute(cohort)
        print(report.summary())
    """

    def _header_lines(self) -> list[str]:
        return [
            f"Matching Refutation Report: {self._treatment} → {self._outcome}",
            f"  variant: {self._variant}",
        ]
