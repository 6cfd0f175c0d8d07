from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd

from .balance import BALANCE_THRESHOLD, BalanceReport, assess_balance
from .cohort import DEFAULT_COVARIATES, TREATMENT
from .matching import MATCH_VARIANTS, MatchedSample, MatchSpec, NearestNeighborMatcher, _ORDER_SEED
from .outcomes import (
    OutcomeResult,
    conditional_logit,
    mixed_linear,
    mixed_logit,
    unadjusted_linear,
    unadjusted_logit,
)
from .propensity import PropensityModel, PropensityResult

logger = logging.getLogger(__name__)


# ── Results ────────────────────────────────────────────────────────────────────

class VariantResult:
    """Everything produced for one matching variant: the match, its balance and outcome models."""

    def __init__(
        self,
        matched: MatchedSample,
        balance: BalanceReport,
        outcomes: dict[str, OutcomeResult],
        covariates: list[str],
        continuous_outcome: str,
        seed: int = _ORDER_SEED,
    ) -> None:
        self._matched = matched
        self._balance = balance
        self._outcomes = outcomes
        self._covariates = covariates
        self._continuous_outcome = continuous_outcome
        self._seed = seed

    @property
    def spec(self) -> MatchSpec:
        return self._matched.spec

    @property
    def matched(self) -> MatchedSample:
        return self._matched

    @property
    def balance(self) -> BalanceReport:
        return self._balance

    @property
    def outcomes(self) -> dict[str, OutcomeResult]:
        """``conditional_logit``, ``mixed_logit`` and ``mixed_linear`` results."""
        return dict(self._outcomes)

    def summary(self) -> str:
        parts = [self._matched.summary(), self._balance.summary()]
        parts += [r.summary() for r in self._outcomes.values()]
        return "\n".join(parts)

    def refute(self, data: pd.DataFrame):
        """
        Run refutation checks on this variant's continuous-outcome estimate.

        Currently runs:

        - **Placebo treatment**: permutes exposure labels, refits the
          propensity model and rematches. The matched difference should be
          near zero.
        - **Random common cause**: adds a noise covariate to the propensity
          model and rematches. The matched difference should be stable.

        Rematching reuses the visit-order seed of the original match, so a
        ``random`` order is replayed exactly.

        Parameters
        ----------
        data : pd.DataFrame
            The same dataframe passed to ``PropensityAnalysis.run()``.
        """
        from .refutations.matching import (
            MatchingRefutationReport,
            _check_placebo_treatment,
            _check_random_common_cause,
        )
        treatment = self._matched.treatment
        outcome = self._continuous_outcome
        effect = self._matched.mean_difference(outcome)
        se = self._outcomes["mixed_linear"].std_err
        checks = [
            _check_placebo_treatment(
                data, treatment, outcome, self._covariates, self.spec, se, seed=self._seed
            ),
            _check_random_common_cause(
                data, treatment, outcome, self._covariates, self.spec, effect, se, seed=self._seed
            ),
        ]
        return MatchingRefutationReport(
            checks=checks,
            treatment=treatment,
            outcome=outcome,
            variant=self.spec.name,
        )

    def __repr__(self) -> str:
        return self.summary()


class AnalysisReport:
    """
    The rendered output of a full matching analysis.

    Holds the propensity model, one ``VariantResult`` per matching variant and
    the naive unmatched comparisons. ``summary()`` renders every table,
    ``executive_summary()`` the narrative, ``figures()`` the plots.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        propensity: PropensityResult,
        variants: dict[str, VariantResult],
        unadjusted: dict[str, OutcomeResult],
        treatment: str,
        binary_outcome: str,
        continuous_outcome: str,
        balance_threshold: float,
    ) -> None:
        self._data = data
        self._propensity = propensity
        self._variants = variants
        self._unadjusted = unadjusted
        self._treatment = treatment
        self._binary_outcome = binary_outcome
        self._continuous_outcome = continuous_outcome
        self._balance_threshold = balance_threshold

    @property
    def propensity(self) -> PropensityResult:
        return self._propensity

    @property
    def variants(self) -> dict[str, VariantResult]:
        return dict(self._variants)

    @property
    def unadjusted(self) -> dict[str, OutcomeResult]:
        """Naive comparisons on the unmatched cohort: ``logit`` and ``linear``."""
        return dict(self._unadjusted)

    @property
    def treatment(self) -> str:
        return self._treatment

    @property
    def binary_outcome(self) -> str:
        return self._binary_outcome

    @property
    def continuous_outcome(self) -> str:
        return self._continuous_outcome

    @property
    def balance_threshold(self) -> float:
        return self._balance_threshold

    def effects_table(self) -> pd.DataFrame:
        """One row per fitted outcome model, matched variants first, unmatched last."""
        rows = []
        entries = [(name, r) for name, v in self._variants.items() for r in v.outcomes.values()]
        entries += [("unmatched", r) for r in self._unadjusted.values()]
        for variant, r in entries:
            lo, hi = r.conf_int
            rows.append({
                "variant":  variant,
                "model":    r.model,
                "outcome":  r.outcome,
                "scale":    r.scale,
                "effect":   r.effect,
                "ci_lower": lo,
                "ci_upper": hi,
                "pvalue":   r.pvalue,
                "n_obs":    r.n_obs,
                "n_groups": r.n_groups,
            })
        return pd.DataFrame(rows)

    def _effects_lines(self) -> list[str]:
        lines = [
            "",
            "Outcome models across matching variants",
            "─" * 96,
            f"  {'variant':<22}{'model':<36}{'effect':>9}{'95% CI':>22}{'p':>7}",
        ]
        for _, row in self.effects_table().iterrows():
            ci = f"[{row['ci_lower']:.3f}, {row['ci_upper']:.3f}]"
            lines.append(
                f"  {row['variant']:<22}{row['model']:<36}{row['effect']:>9.3f}{ci:>22}{row['pvalue']:>7.3f}"
            )
        lines.append("")
        return lines

    def summary(self) -> str:
        parts = [self._propensity.summary()]
        parts += [v.summary() for v in self._variants.values()]
        parts.append("\n".join(self._effects_lines()))
        return "\n".join(parts)

    def executive_summary(self) -> str:
        """Narrative explanation of the method, balance, assumptions and results."""
        from ._explain import explain_analysis
        return explain_analysis(self)

    def figures(self, detail_covariates: list[str] | None = None) -> dict:
        """
        Build the report's figures.

        Always includes ``propensity_overlap`` and ``love_plot``; adds one
        ``balance_<covariate>`` figure per entry of ``detail_covariates``,
        drawn for the first matching variant.
        """
        from .plots import plot_covariate_balance, plot_love, plot_propensity_overlap

        figs = {
            "propensity_overlap": plot_propensity_overlap(
                self._data, self._treatment, self._propensity.scores
            ),
            "love_plot": plot_love(
                [v.balance for v in self._variants.values()], threshold=self._balance_threshold
            ),
        }
        first = next(iter(self._variants.values()))
        for cov in detail_covariates or []:
            figs[f"balance_{cov}"] = plot_covariate_balance(first.matched, cov)
        return figs

    def save_figures(self, directory: str | Path, detail_covariates: list[str] | None = None) -> list[Path]:
        """Write every figure as PNG into ``directory`` and close it. Returns the paths written."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for name, fig in self.figures(detail_covariates).items():
            path = directory / f"{name}.png"
            fig.savefig(path, dpi=150, bbox_inches="tight")
            plt.close(fig)
            paths.append(path)
        logger.info("Saved %d figures to %s", len(paths), directory)
        return paths

    def __repr__(self) -> str:
        return self.summary()


# ── Pipeline ───────────────────────────────────────────────────────────────────

class PropensityAnalysis:
    """
    The full matching walkthrough as one call.

    1. Fits a logistic propensity model of exposure on the covariates.
    2. For each matching variant: matches on the propensity score, assesses
       covariate balance, and fits conditional logistic and mixed logistic
       models for the binary outcome and a linear mixed model for the
       continuous outcome on the matched sample.
    3. Fits naive unmatched comparisons for contrast.

    Example::

        cohort = load_cohort("cohort.csv")
        report = PropensityAnalysis().run(cohort)
        print(report.summary())
        print(report.executive_summary())
        report.save_figures("figures")
    """

    def __init__(
        self,
        covariates: list[str] | None = None,
        variants: list[MatchSpec] | None = None,
        binary_outcome: str = "bp_control",
        continuous_outcome: str = "bmi",
        treatment: str = TREATMENT,
        balance_threshold: float = BALANCE_THRESHOLD,
        seed: int = _ORDER_SEED,
    ) -> None:
        self._covariates = list(DEFAULT_COVARIATES if covariates is None else covariates)
        self._variants = list(MATCH_VARIANTS if variants is None else variants)
        self._binary_outcome = binary_outcome
        self._continuous_outcome = continuous_outcome
        self._treatment = treatment
        self._balance_threshold = balance_threshold
        self._seed = seed
        self._validate_inputs()

    def _validate_inputs(self) -> None:
        if not self._variants:
            raise ValueError("At least one matching variant is required.")
        names = [v.name for v in self._variants]
        if len(set(names)) != len(names):
            raise ValueError(f"Matching variant names must be unique. Got: {names}")
        if self._binary_outcome == self._continuous_outcome:
            raise ValueError("Binary and continuous outcomes must be different variables.")
        for var in (self._binary_outcome, self._continuous_outcome):
            if var == self._treatment or var in self._covariates:
                raise ValueError(f"Outcome '{var}' cannot be the treatment or a covariate.")

    def run(self, data: pd.DataFrame) -> AnalysisReport:
        """
        Run the whole analysis on a validated cohort frame.

        Raises
        ------
        ``ValueError``
            If the treatment, outcome or covariate columns are missing or
            malformed.
        ``MatchingError``
            If a variant cannot match any focal unit.
        """
        for var in (self._binary_outcome, self._continuous_outcome):
            if var not in data.columns:
                raise ValueError(f"Outcome column '{var}' not found in dataframe.")

        propensity = PropensityModel(self._covariates, self._treatment).fit(data)

        variants: dict[str, VariantResult] = {}
        for spec in self._variants:
            matched = NearestNeighborMatcher(spec, seed=self._seed).match(
                data, self._treatment, propensity.scores
            )
            balance = assess_balance(matched, self._covariates, self._balance_threshold)
            outcomes = {
                "conditional_logit": conditional_logit(matched, self._binary_outcome, self._treatment),
                "mixed_logit":       mixed_logit(matched, self._binary_outcome, self._treatment),
                "mixed_linear":      mixed_linear(matched, self._continuous_outcome, self._treatment),
            }
            variants[spec.name] = VariantResult(
                matched, balance, outcomes, self._covariates, self._continuous_outcome,
                seed=self._seed,
            )

        unadjusted = {
            "logit":  unadjusted_logit(data, self._binary_outcome, self._treatment),
            "linear": unadjusted_linear(data, self._continuous_outcome, self._treatment),
        }

        return AnalysisReport(
            data=data,
            propensity=propensity,
            variants=variants,
            unadjusted=unadjusted,
            treatment=self._treatment,
            binary_outcome=self._binary_outcome,
            continuous_outcome=self._continuous_outcome,
            balance_threshold=self._balance_threshold,
        )
