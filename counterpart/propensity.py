from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from sklearn.metrics import roc_auc_score

logger = logging.getLogger(__name__)


# ── Private helpers (also imported by counterpart/refutations/matching.py) ────

def _formula_term(data: pd.DataFrame, col: str) -> str:
    if pd.api.types.is_numeric_dtype(data[col]):
        return col
    return f"C({col})"


def _check_treatment(data: pd.DataFrame, treatment: str) -> None:
    if treatment not in data.columns:
        raise ValueError(f"Treatment column '{treatment}' not found in dataframe.")

    t_vals = set(data[treatment].dropna().unique())
    if not t_vals <= {0, 1, 0.0, 1.0}:
        raise ValueError(
            f"Treatment '{treatment}' must be binary (0/1). "
            f"Found values: {sorted(t_vals)}"
        )
    if not ({0, 1} <= {int(v) for v in t_vals}):
        raise ValueError(
            f"Treatment '{treatment}' must contain both 0 and 1. "
            f"Found only: {t_vals}"
        )


def _logit(ps: np.ndarray) -> np.ndarray:
    return np.log(ps / (1.0 - ps))


def _fit_logit(data: pd.DataFrame, treatment: str, covariates: list[str]):
    if covariates:
        rhs = " + ".join(_formula_term(data, c) for c in covariates)
    else:
        # Intercept-only: all units get the same PS (treatment base rate).
        rhs = "1"
    return smf.logit(f"{treatment} ~ {rhs}", data=data).fit(disp=0)


# ── Result ─────────────────────────────────────────────────────────────────────

class PropensityResult:
    """
    A fitted propensity score model.

    Holds the per-subject propensity score (predicted probability of exposure
    given the covariates) and its logit, aligned to the index of the frame
    passed to ``PropensityModel.fit()``, plus overlap diagnostics.
    """

    def __init__(
        self,
        result,
        treatment: str,
        covariates: list[str],
        treated: np.ndarray,
        index: pd.Index,
    ) -> None:
        self._result = result
        self._treatment = treatment
        self._covariates = list(covariates)
        self._treated = treated
        self._ps = pd.Series(np.asarray(result.predict()), index=index, name="ps")

    @property
    def scores(self) -> pd.Series:
        """Propensity scores, one per subject."""
        return self._ps.copy()

    @property
    def logit(self) -> pd.Series:
        """Logit of the propensity scores (the usual matching scale)."""
        return pd.Series(_logit(self._ps.values), index=self._ps.index, name="ps_logit")

    @property
    def treatment(self) -> str:
        return self._treatment

    @property
    def covariates(self) -> list[str]:
        """Covariates entered in the model, in the order given."""
        return list(self._covariates)

    @property
    def c_statistic(self) -> float:
        """Area under the ROC curve of the propensity model."""
        return float(roc_auc_score(self._treated, self._ps.values))

    @property
    def common_support(self) -> tuple[float, float]:
        """Interval of propensity scores covered by both exposure groups."""
        ps = self._ps.values
        t, c = ps[self._treated == 1], ps[self._treated == 0]
        return (float(max(t.min(), c.min())), float(min(t.max(), c.max())))

    @property
    def n_outside_support(self) -> int:
        """Number of subjects whose score falls outside the common support."""
        lo, hi = self.common_support
        ps = self._ps.values
        return int(((ps < lo) | (ps > hi)).sum())

    @property
    def statsmodels_result(self):
        """The underlying statsmodels Logit result, for full diagnostics."""
        return self._result

    def assign(self, data: pd.DataFrame) -> pd.DataFrame:
        """Return a copy of ``data`` with ``ps`` and ``ps_logit`` columns added."""
        return data.assign(ps=self._ps.values, ps_logit=_logit(self._ps.values))

    def summary(self) -> str:
        res = self._result
        ci = res.conf_int()
        lo, hi = self.common_support
        n_t = int(self._treated.sum())
        n_c = int(len(self._treated) - n_t)

        lines = [
            "",
            f"Propensity Model: P({self._treatment} = 1 | covariates)",
            "─" * 66,
            f"  {'term':<30}{'coef':>9}{'OR':>9}{'95% CI (OR)':>18}",
        ]
        for term in res.params.index:
            coef = res.params[term]
            lines.append(
                f"  {term:<30}{coef:>9.3f}{np.exp(coef):>9.3f}"
                f"   [{np.exp(ci.loc[term, 0]):.3f}, {np.exp(ci.loc[term, 1]):.3f}]"
            )
        lines += [
            "",
            f"  N (treated / control) : {n_t} / {n_c}",
            f"  c-statistic           : {self.c_statistic:>8.3f}",
            f"  Pseudo R²             : {res.prsquared:>8.3f}",
            f"  Common support        : [{lo:.4f}, {hi:.4f}]  ({self.n_outside_support} outside)",
            "",
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


# ── Model ──────────────────────────────────────────────────────────────────────

class PropensityModel:
    """
    Logistic regression of a binary exposure on baseline covariates.

    Numeric covariates enter linearly; string/categorical covariates enter as
    treatment-coded factors (``C(col)``). An empty covariate list fits an
    intercept-only model, which gives every subject the same score.

    Example::

        cohort = simulate_cohort()
        ps = PropensityModel(DEFAULT_COVARIATES).fit(cohort)
        print(ps.summary())
        cohort = ps.assign(cohort)
    """

    def __init__(self, covariates: list[str], treatment: str = "treated") -> None:
        self._covariates = list(covariates)
        self._treatment = treatment
        if treatment in self._covariates:
            raise ValueError("Treatment cannot also be a propensity model covariate.")

    def fit(self, data: pd.DataFrame) -> PropensityResult:
        """
        Fit the model and return per-subject scores.

        Raises
        ------
        ``ValueError``
            If the treatment column is missing, not binary, or has only one
            class, or if a covariate column is missing.
        """
        _check_treatment(data, self._treatment)
        missing = [c for c in self._covariates if c not in data.columns]
        if missing:
            raise ValueError(f"Covariate columns not found in dataframe: {missing}")

        result = _fit_logit(data, self._treatment, self._covariates)
        ps = PropensityResult(
            result,
            treatment=self._treatment,
            covariates=self._covariates,
            treated=data[self._treatment].values.astype(int),
            index=data.index,
        )

        logger.info(
            "Fitted propensity model on %d subjects, %d covariates (c-statistic %.3f)",
            len(data), len(self._covariates), ps.c_statistic,
        )
        if ps.n_outside_support:
            logger.warning(
                "%d subjects fall outside the common support %s",
                ps.n_outside_support, ps.common_support,
            )
        return ps
