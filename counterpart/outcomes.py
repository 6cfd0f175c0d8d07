from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import scipy.stats as st
import statsmodels.formula.api as smf
from statsmodels.discrete.conditional_models import ConditionalLogit
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

from .matching import MatchedSample
from .refutations._check import Assumption

logger = logging.getLogger(__name__)

MATCHED_ASSUMPTIONS: list[Assumption] = [
    Assumption("No unmeasured confounding given the propensity model covariates", testable=False),
    Assumption("Positivity: propensity scores overlap between exposure groups", testable=True),
    Assumption("Covariate balance is achieved in the matched sample", testable=True),
    Assumption("Correct specification of the propensity model", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

UNADJUSTED_ASSUMPTIONS: list[Assumption] = [
    Assumption("Exposure is independent of prognosis (no confounding at all)", testable=False),
    Assumption("Stable Unit Treatment Value Assumption (SUTVA)", testable=False),
]

ODDS_RATIO      = "odds ratio"
MEAN_DIFFERENCE = "mean difference"

_Z = float(st.norm.ppf(0.975))


# ── Result ─────────────────────────────────────────────────────────────────────

class OutcomeResult:
    """
    One outcome model fitted on a matched (or unmatched) sample.

    The exposure coefficient is kept on the model scale (``estimate``) and
    reported on the effect scale (``effect``): an odds ratio for binary
    outcomes, a mean difference for continuous ones. Intervals and p-values
    are Wald (z) based.
    """

    def __init__(
        self,
        model: str,
        outcome: str,
        treatment: str,
        estimate: float,
        std_err: float,
        scale: str,
        n_obs: int,
        n_groups: int | None,
        result,
        assumptions: list[Assumption],
    ) -> None:
        self._model = model
        self._outcome = outcome
        self._treatment = treatment
        self._estimate = float(estimate)
        self._std_err = float(std_err)
        self._scale = scale
        self._n_obs = n_obs
        self._n_groups = n_groups
        self._result = result
        self._assumptions = assumptions

    def _to_effect(self, value: float) -> float:
        return float(np.exp(value)) if self._scale == ODDS_RATIO else float(value)

    @property
    def model(self) -> str:
        return self._model

    @property
    def outcome(self) -> str:
        return self._outcome

    @property
    def scale(self) -> str:
        """``"odds ratio"`` or ``"mean difference"``."""
        return self._scale

    @property
    def estimate(self) -> float:
        """Exposure coefficient on the model scale (log-odds or outcome units)."""
        return self._estimate

    @property
    def effect(self) -> float:
        """Exposure effect on the reporting scale."""
        return self._to_effect(self._estimate)

    @property
    def std_err(self) -> float:
        """Standard error of ``estimate``."""
        return self._std_err

    @property
    def conf_int(self) -> tuple[float, float]:
        """95% confidence interval on the reporting scale."""
        return (
            self._to_effect(self._estimate - _Z * self._std_err),
            self._to_effect(self._estimate + _Z * self._std_err),
        )

    @property
    def pvalue(self) -> float:
        """Two-sided p-value for ``H0: no exposure effect``."""
        return float(2.0 * st.norm.sf(abs(self._estimate) / self._std_err))

    @property
    def n_obs(self) -> int:
        return self._n_obs

    @property
    def n_groups(self) -> int | None:
        """Number of match groups (strata / random-effect levels); ``None`` if unmatched."""
        return self._n_groups

    @property
    def statsmodels_result(self):
        """The underlying statsmodels result, for full diagnostics."""
        return self._result

    @property
    def assumptions(self) -> list[Assumption]:
        return list(self._assumptions)

    def summary(self) -> str:
        lo, hi = self.conf_int
        label = "Odds ratio" if self._scale == ODDS_RATIO else "Mean difference"
        groups = f"{self._n_groups} match groups" if self._n_groups is not None else "no matching"
        return "\n".join([
            "",
            f"{self._model}: {self._treatment} → {self._outcome}",
            "─" * 54,
            f"  {label:<21}: {self.effect:>10.4f}",
            f"  95% CI               : [{lo:.4f}, {hi:.4f}]",
            f"  Std. error           : {self.std_err:>10.4f}  (model scale)",
            f"  p-value              : {self.pvalue:>10.4f}",
            f"  N                    : {self._n_obs:>10d}  ({groups})",
            "",
        ])

    def __repr__(self) -> str:
        return self.summary()


# ── Validation ─────────────────────────────────────────────────────────────────

def _check_columns(data: pd.DataFrame, outcome: str, treatment: str, binary: bool) -> None:
    for label, var in [("Treatment", treatment), ("Outcome", outcome)]:
        if var not in data.columns:
            raise ValueError(f"{label} column '{var}' not found in dataframe.")
    if set(data[treatment].unique()) != {0, 1}:
        raise ValueError(f"Sample must contain both treated and control units in '{treatment}'.")
    if binary and not set(data[outcome].unique()) <= {0, 1}:
        raise ValueError(f"Outcome '{outcome}' must be binary (0/1) for a logistic model.")


# ── Matched-sample models ──────────────────────────────────────────────────────

def conditional_logit(matched: MatchedSample, outcome: str, treatment: str = "treated") -> OutcomeResult:
    """
    Conditional logistic regression of a binary outcome on exposure, with one
    stratum per match group.

    Conditioning on the match group removes the group-specific intercepts,
    so the odds ratio compares members of the same group. Groups in which
    every member has the same outcome carry no information.
    """
    data = matched.data
    _check_columns(data, outcome, treatment, binary=True)

    model = ConditionalLogit(
        data[outcome].astype(float),
        data[[treatment]].astype(float),
        groups=data["match_id"].values,
    )
    result = model.fit(disp=0)
    logger.info(
        "Conditional logit on '%s' (%s): log-OR %.3f over %d strata",
        outcome, matched.spec.name, np.asarray(result.params)[0], matched.n_groups,
    )
    return OutcomeResult(
        model="Conditional logistic regression",
        outcome=outcome,
        treatment=treatment,
        estimate=np.asarray(result.params)[0],
        std_err=np.asarray(result.bse)[0],
        scale=ODDS_RATIO,
        n_obs=len(data),
        n_groups=matched.n_groups,
        result=result,
        assumptions=MATCHED_ASSUMPTIONS,
    )


def mixed_logit(matched: MatchedSample, outcome: str, treatment: str = "treated") -> OutcomeResult:
    """
    Mixed-effects logistic regression with a random intercept per match group.

    Fitted by variational Bayes (statsmodels ``BinomialBayesMixedGLM``); the
    posterior mean and SD of the exposure coefficient are used as estimate
    and standard error.
    """
    data = matched.data
    _check_columns(data, outcome, treatment, binary=True)

    model = BinomialBayesMixedGLM.from_formula(
        f"{outcome} ~ {treatment}",
        {"match_group": "0 + C(match_id)"},
        data,
    )
    result = model.fit_vb()
    i = list(model.exog_names).index(treatment)
    return OutcomeResult(
        model="Mixed-effects logistic regression",
        outcome=outcome,
        treatment=treatment,
        estimate=result.fe_mean[i],
        std_err=result.fe_sd[i],
        scale=ODDS_RATIO,
        n_obs=len(data),
        n_groups=matched.n_groups,
        result=result,
        assumptions=MATCHED_ASSUMPTIONS,
    )


def mixed_linear(matched: MatchedSample, outcome: str, treatment: str = "treated") -> OutcomeResult:
    """Linear mixed model (REML) with a random intercept per match group."""
    data = matched.data
    _check_columns(data, outcome, treatment, binary=False)

    result = smf.mixedlm(f"{outcome} ~ {treatment}", data, groups=data["match_id"]).fit(reml=True)
    return OutcomeResult(
        model="Linear mixed-effects model",
        outcome=outcome,
        treatment=treatment,
        estimate=result.params[treatment],
        std_err=result.bse[treatment],
        scale=MEAN_DIFFERENCE,
        n_obs=len(data),
        n_groups=matched.n_groups,
        result=result,
        assumptions=MATCHED_ASSUMPTIONS,
    )


# ── Unmatched comparisons ──────────────────────────────────────────────────────

def unadjusted_logit(data: pd.DataFrame, outcome: str, treatment: str = "treated") -> OutcomeResult:
    """Naive logistic regression of outcome on exposure over the full cohort."""
    _check_columns(data, outcome, treatment, binary=True)
    result = smf.logit(f"{outcome} ~ {treatment}", data=data).fit(disp=0)
    return OutcomeResult(
        model="Unadjusted logistic regression",
        outcome=outcome,
        treatment=treatment,
        estimate=result.params[treatment],
        std_err=result.bse[treatment],
        scale=ODDS_RATIO,
        n_obs=int(result.nobs),
        n_groups=None,
        result=result,
        assumptions=UNADJUSTED_ASSUMPTIONS,
    )


def unadjusted_linear(data: pd.DataFrame, outcome: str, treatment: str = "treated") -> OutcomeResult:
    """Naive OLS of outcome on exposure over the full cohort (difference in means)."""
    _check_columns(data, outcome, treatment, binary=False)
    result = smf.ols(f"{outcome} ~ {treatment}", data=data).fit()
    return OutcomeResult(
        model="Unadjusted linear regression",
        outcome=outcome,
        treatment=treatment,
        estimate=result.params[treatment],
        std_err=result.bse[treatment],
        scale=MEAN_DIFFERENCE,
        n_obs=int(result.nobs),
        n_groups=None,
        result=result,
        assumptions=UNADJUSTED_ASSUMPTIONS,
    )
