import matplotlib

matplotlib.use("Agg")

import pytest

from counterpart import (
    MATCH_VARIANTS,
    AnalysisReport,
    MatchSpec,
    PropensityAnalysis,
    VariantResult,
    simulate_cohort,
)


def make_data():
    """Fixed seed so every call returns the same dataframe."""
    return simulate_cohort(seed=42)


class TestPropensityAnalysisValidation:
    """All raise before any model is fitted."""

    def test_duplicate_variant_names_raise(self):
        with pytest.raises(ValueError, match="unique"):
            PropensityAnalysis(variants=[MatchSpec("a"), MatchSpec("a", ratio=2)])

    def test_empty_variants_raise(self):
        with pytest.raises(ValueError, match="At least one"):
            PropensityAnalysis(variants=[])

    def test_same_outcomes_raise(self):
        with pytest.raises(ValueError, match="different"):
            PropensityAnalysis(binary_outcome="bmi", continuous_outcome="bmi")

    def test_outcome_as_covariate_raises(self):
        with pytest.raises(ValueError, match="covariate"):
            PropensityAnalysis(covariates=["age", "bmi"])

    def test_missing_outcome_column_raises(self):
        df = make_data().drop(columns=["bmi"])
        with pytest.raises(ValueError, match="Outcome"):
            PropensityAnalysis().run(df)


class TestPropensityAnalysisRun:
    """Run the full walkthrough once; tests inspect the report."""

    @classmethod
    def setup_class(cls):
        cls.df = make_data()
        cls.report = PropensityAnalysis().run(cls.df)

    def test_returns_report(self):
        assert isinstance(self.report, AnalysisReport)

    def test_every_teaching_variant_present(self):
        assert list(self.report.variants) == [v.name for v in MATCH_VARIANTS]
        for v in self.report.variants.values():
            assert isinstance(v, VariantResult)

    def test_each_variant_has_three_models(self):
        for v in self.report.variants.values():
            assert set(v.outcomes) == {"conditional_logit", "mixed_logit", "mixed_linear"}

    def test_unadjusted_comparisons(self):
        assert set(self.report.unadjusted) == {"logit", "linear"}

    def test_effects_table_shape(self):
        table = self.report.effects_table()
        assert len(table) == 3 * len(MATCH_VARIANTS) + 2
        assert table["variant"].iloc[-1] == "unmatched"
        assert {"effect", "ci_lower", "ci_upper", "pvalue"} <= set(table.columns)

    def test_caliper_variant_matches_no_more_than_plain(self):
        plain = self.report.variants["1:1"].matched
        caliper = self.report.variants["1:1 caliper 0.2"].matched
        assert caliper.n_groups <= plain.n_groups

    def test_matched_estimates_direction(self):
        for v in self.report.variants.values():
            assert v.outcomes["conditional_logit"].effect > 1.0
            assert v.outcomes["mixed_linear"].effect < 0.0

    def test_summary_renders_every_section(self):
        summary = self.report.summary()
        assert "Propensity Model" in summary
        for name in self.report.variants:
            assert f"Balance: {name}" in summary
        assert "Outcome models across matching variants" in summary
        assert repr(self.report) == summary

    def test_variant_summary(self):
        summary = self.report.variants["1:2"].summary()
        assert "Matched sample: 1:2" in summary
        assert "Conditional logistic regression" in summary

    def test_executive_summary(self):
        text = self.report.executive_summary()
        assert "Executive Summary" in text
        assert "ASSUMPTIONS" in text
        assert "RESULTS" in text
        for name in self.report.variants:
            assert name in text

    def test_figures(self):
        import matplotlib.pyplot as plt
        figs = self.report.figures(detail_covariates=["age"])
        assert set(figs) == {"propensity_overlap", "love_plot", "balance_age"}
        for fig in figs.values():
            plt.close(fig)

    def test_save_figures(self, tmp_path):
        paths = self.report.save_figures(tmp_path / "figs", detail_covariates=["insurance"])
        assert len(paths) == 3
        for path in paths:
            assert path.exists()
            assert path.suffix == ".png"
