import numpy as np
import pandas as pd
import pytest

from counterpart import (
    MATCH_VARIANTS,
    MatchedSample,
    MatchingError,
    MatchSpec,
    NearestNeighborMatcher,
    PropensityModel,
    simulate_cohort,
)
from counterpart.cohort import DEFAULT_COVARIATES


def make_small(treated_ps, control_ps, y=None):
    """Treated rows first, then controls; scores are returned separately."""
    ps = np.array(list(treated_ps) + list(control_ps), dtype=float)
    df = pd.DataFrame({
        "treated": [1] * len(treated_ps) + [0] * len(control_ps),
        "y": np.arange(len(ps), dtype=float) if y is None else y,
    })
    return df, ps


def groups(matched):
    """Map focal row -> sorted list of matched rows."""
    out = {}
    for row in matched.pairs.itertuples():
        out.setdefault(row.focal_row, []).append(row.match_row)
    return {k: sorted(v) for k, v in out.items()}


class TestMatchSpec:
    def test_defaults(self):
        spec = MatchSpec("x")
        assert (spec.ratio, spec.replace, spec.caliper, spec.estimand) == (1, False, None, "ATT")

    @pytest.mark.parametrize("kwargs", [
        {"ratio": 0},
        {"ratio": 1.5},
        {"ratio": True},
        {"caliper": 0},
        {"caliper": -0.1},
        {"estimand": "ATX"},
        {"distance": "mahalanobis"},
        {"order": "alphabetical"},
    ])
    def test_invalid_parameters_raise(self, kwargs):
        with pytest.raises(ValueError):
            MatchSpec("bad", **kwargs)

    def test_is_frozen(self):
        spec = MatchSpec("x")
        with pytest.raises(Exception):
            spec.ratio = 2

    def test_describe(self):
        text = MatchSpec("x", ratio=3, replace=True, caliper=0.2).describe()
        assert "1:3" in text
        assert "with replacement" in text
        assert "caliper 0.2 SD" in text

    def test_teaching_variants(self):
        names = [v.name for v in MATCH_VARIANTS]
        assert names == ["1:1", "1:2", "1:3 with replacement", "1:1 caliper 0.2"]
        assert [v.ratio for v in MATCH_VARIANTS] == [1, 2, 3, 1]
        assert [v.replace for v in MATCH_VARIANTS] == [False, False, True, False]
        assert MATCH_VARIANTS[3].caliper == 0.2


class TestGreedyMatchingByHand:
    """Small frames where the greedy result can be worked out by hand (ps scale)."""

    def test_one_to_one_nearest(self):
        df, ps = make_small([0.3, 0.6], [0.29, 0.5, 0.61, 0.9])
        m = NearestNeighborMatcher(MatchSpec("1:1", distance="ps")).match(df, "treated", ps)
        assert groups(m) == {0: [2], 1: [4]}

    def test_visit_order_changes_result(self):
        df, ps = make_small([0.5, 0.52], [0.51, 0.9])
        data_order = NearestNeighborMatcher(MatchSpec("a", distance="ps")).match(df, "treated", ps)
        largest = NearestNeighborMatcher(MatchSpec("b", distance="ps", order="largest")).match(df, "treated", ps)
        assert groups(data_order) == {0: [2], 1: [3]}
        assert groups(largest) == {0: [3], 1: [2]}

    def test_one_to_two_in_rounds(self):
        df, ps = make_small([0.3, 0.6], [0.28, 0.31, 0.59, 0.62, 0.9])
        m = NearestNeighborMatcher(MatchSpec("1:2", ratio=2, distance="ps")).match(df, "treated", ps)
        assert groups(m) == {0: [2, 3], 1: [4, 5]}

    def test_caliper_drops_distant_focal_unit(self):
        df, ps = make_small([0.3, 0.65], [0.295, 0.5, 0.61, 0.9])
        m = NearestNeighborMatcher(MatchSpec("cal", caliper=0.05, distance="ps")).match(df, "treated", ps)
        assert groups(m) == {0: [2]}
        assert m.n_focal_unmatched == 1
        assert m.caliper_width == pytest.approx(0.05 * np.std(ps, ddof=1))

    def test_with_replacement_reuses_controls(self):
        df, ps = make_small([0.5, 0.51], [0.49, 0.52, 0.3, 0.8])
        spec = MatchSpec("1:3r", ratio=3, replace=True, distance="ps")
        m = NearestNeighborMatcher(spec).match(df, "treated", ps)
        assert groups(m) == {0: [2, 3, 4], 1: [2, 3, 4]}
        assert m.n_unique_matches == 3

    def test_pool_exhaustion_leaves_focal_unmatched(self):
        df, ps = make_small([0.3, 0.4, 0.5], [0.35])
        m = NearestNeighborMatcher(MatchSpec("1:1", distance="ps")).match(df, "treated", ps)
        assert m.n_groups == 1
        assert m.n_focal_unmatched == 2

    def test_nothing_matched_raises(self):
        df, ps = make_small([0.1], [0.9, 0.95])
        with pytest.raises(MatchingError):
            NearestNeighborMatcher(MatchSpec("cal", caliper=0.01, distance="ps")).match(df, "treated", ps)

    def test_mean_difference(self):
        df, ps = make_small([0.3, 0.6], [0.29, 0.5, 0.61, 0.9], y=[10.0, 20.0, 7.0, 100.0, 15.0, 100.0])
        m = NearestNeighborMatcher(MatchSpec("1:1", distance="ps")).match(df, "treated", ps)
        assert m.mean_difference("y") == pytest.approx(15.0 - 11.0)

    def test_random_order_is_seeded(self):
        df, ps = make_small([0.5, 0.52, 0.55], [0.51, 0.53, 0.9])
        spec = MatchSpec("r", distance="ps", order="random")
        a = NearestNeighborMatcher(spec, seed=1).match(df, "treated", ps)
        b = NearestNeighborMatcher(spec, seed=1).match(df, "treated", ps)
        pd.testing.assert_frame_equal(a.pairs, b.pairs)


class TestMatcherValidation:
    def test_misaligned_scores_raise(self):
        df, ps = make_small([0.3], [0.4, 0.5])
        with pytest.raises(ValueError, match="one propensity score per row"):
            NearestNeighborMatcher(MatchSpec("x")).match(df, "treated", ps[:-1])

    def test_scores_outside_unit_interval_raise(self):
        df, ps = make_small([0.3], [0.4, 1.0])
        with pytest.raises(ValueError, match="strictly between"):
            NearestNeighborMatcher(MatchSpec("x")).match(df, "treated", ps)

    def test_single_class_raises(self):
        df, ps = make_small([0.3, 0.4], [])
        with pytest.raises(ValueError):
            NearestNeighborMatcher(MatchSpec("x")).match(df, "treated", ps)


class TestMatchingOnCohort:
    """Match the simulated cohort once per variant."""

    @classmethod
    def setup_class(cls):
        cls.df = simulate_cohort(seed=42)
        cls.ps = PropensityModel(DEFAULT_COVARIATES).fit(cls.df).scores
        cls.n_treated = int(cls.df["treated"].sum())
        cls.matched = {
            spec.name: NearestNeighborMatcher(spec).match(cls.df, "treated", cls.ps)
            for spec in MATCH_VARIANTS
        }

    def test_returns_matched_samples(self):
        for m in self.matched.values():
            assert isinstance(m, MatchedSample)

    def test_one_to_one_matches_every_treated(self):
        m = self.matched["1:1"]
        assert m.n_groups == self.n_treated
        assert m.n_focal_unmatched == 0

    def test_without_replacement_uses_controls_once(self):
        for name in ("1:1", "1:2", "1:1 caliper 0.2"):
            pairs = self.matched[name].pairs
            assert pairs["match_row"].is_unique

    def test_one_to_two_group_sizes(self):
        sizes = self.matched["1:2"].pairs.groupby("match_id").size()
        assert sizes.between(1, 2).all()
        assert (sizes == 2).mean() > 0.9

    def test_with_replacement_exact_ratio_and_reuse(self):
        m = self.matched["1:3 with replacement"]
        sizes = m.pairs.groupby("match_id").size()
        assert (sizes == 3).all()
        assert m.n_unique_matches < len(m.pairs)

    def test_caliper_respected(self):
        m = self.matched["1:1 caliper 0.2"]
        assert (m.pairs["distance"] <= m.caliper_width + 1e-12).all()
        assert m.n_groups + m.n_focal_unmatched == self.n_treated

    def test_focal_units_are_treated_for_att(self):
        T = self.df["treated"].values
        for m in self.matched.values():
            assert (T[m.pairs["focal_row"]] == 1).all()
            assert (T[m.pairs["match_row"]] == 0).all()

    def test_weights(self):
        for m in self.matched.values():
            w = m.weights
            T = self.df["treated"].values
            focal = m.pairs["focal_row"].unique()
            assert np.allclose(w[focal], 1.0)
            assert (w[(T == 1) & ~np.isin(np.arange(len(w)), focal)] == 0).all()
            control_used = (T == 0) & (w > 0)
            assert w[control_used].sum() == pytest.approx(control_used.sum())

    def test_long_format_data(self):
        m = self.matched["1:2"]
        data = m.data
        assert len(data) == m.n_groups + len(m.pairs)
        assert {"match_id", "matched_role", "distance", "source_row"} <= set(data.columns)
        per_group = data.groupby("match_id")["matched_role"].apply(lambda s: (s == "focal").sum())
        assert (per_group == 1).all()

    def test_long_format_repeats_reused_controls(self):
        m = self.matched["1:3 with replacement"]
        matches = m.data.query("matched_role == 'match'")
        assert matches["source_row"].duplicated().any()

    def test_summary(self):
        summary = self.matched["1:1 caliper 0.2"].summary()
        assert "Caliper width" in summary
        assert "Match groups" in summary


class TestOtherEstimands:
    @classmethod
    def setup_class(cls):
        cls.df = simulate_cohort(n=600, seed=9)
        cls.ps = PropensityModel(["age", "diabetes", "baseline_sbp"]).fit(cls.df).scores

    def test_atc_matches_controls_to_treated(self):
        m = NearestNeighborMatcher(MatchSpec("atc", estimand="ATC", replace=True)).match(
            self.df, "treated", self.ps
        )
        T = self.df["treated"].values
        assert (T[m.pairs["focal_row"]] == 0).all()
        assert m.n_groups == int((T == 0).sum())

    def test_ate_runs_both_passes(self):
        m = NearestNeighborMatcher(MatchSpec("ate", estimand="ATE", replace=True)).match(
            self.df, "treated", self.ps
        )
        T = self.df["treated"].values
        focal_arms = set(T[m.pairs["focal_row"]])
        assert focal_arms == {0, 1}
        assert m.n_groups == len(self.df)
        assert m.pairs.groupby("match_id")["focal_row"].nunique().eq(1).all()

    def test_atc_greedy_uses_each_treated_once(self):
        m = NearestNeighborMatcher(MatchSpec("atc", estimand="ATC")).match(
            self.df, "treated", self.ps
        )
        T = self.df["treated"].values
        n_t, n_c = int((T == 1).sum()), int((T == 0).sum())
        assert (T[m.pairs["focal_row"]] == 0).all()
        assert m.pairs["match_row"].is_unique
        # Controls outnumber treated, so the pool runs out.
        assert m.n_groups == n_t
        assert m.n_focal_unmatched == n_c - n_t
        w = m.weights
        assert np.allclose(w[m.pairs["focal_row"]], 1.0)

    def test_ate_greedy_uses_pool_once_per_pass(self):
        m = NearestNeighborMatcher(MatchSpec("ate", estimand="ATE")).match(
            self.df, "treated", self.ps
        )
        T = self.df["treated"].values
        pairs = m.pairs
        for arm in (0, 1):
            in_pass = pairs[T[pairs["focal_row"]] == arm]
            assert not in_pass.empty
            assert in_pass["match_row"].is_unique
            assert (T[in_pass["match_row"]] == 1 - arm).all()
        assert pairs["match_id"].is_unique

    def test_ate_weights_sum_both_passes(self):
        m = NearestNeighborMatcher(MatchSpec("ate", estimand="ATE")).match(
            self.df, "treated", self.ps
        )
        T = self.df["treated"].values
        pairs = m.pairs
        w = m.weights
        pool_part = w.copy()
        pool_part[pairs["focal_row"].unique()] -= 1.0
        assert (pool_part >= -1e-12).all()
        for arm in (0, 1):
            pool_rows = pairs.loc[T[pairs["focal_row"]] == 1 - arm, "match_row"]
            assert pool_part[T == arm].sum() == pytest.approx(pool_rows.nunique())
        used = np.isin(np.arange(len(w)), np.concatenate([pairs["focal_row"], pairs["match_row"]]))
        assert (w[~used] == 0).all()

    def test_with_replacement_caliper_respected(self):
        spec = MatchSpec("1:3r cal", ratio=3, replace=True, caliper=0.2)
        m = NearestNeighborMatcher(spec).match(self.df, "treated", self.ps)
        n_t = int(self.df["treated"].sum())
        assert (m.pairs["distance"] <= m.caliper_width + 1e-12).all()
        assert m.n_groups + m.n_focal_unmatched == n_t
        assert m.pairs.groupby("match_id").size().between(1, 3).all()


class TestOtherEstimandsByHand:
    """Same small frame as the ATT hand cases, worked through for ATE."""

    def test_ate_greedy_groups_and_weights(self):
        df, ps = make_small([0.3, 0.6], [0.29, 0.5, 0.61, 0.9])
        m = NearestNeighborMatcher(MatchSpec("ate", estimand="ATE", distance="ps")).match(
            df, "treated", ps
        )
        # Treated pass: 0 -> 2, 1 -> 4. Control pass: 2 -> 0, 3 -> 1, then
        # the treated pool is empty and rows 4 and 5 go unmatched.
        assert groups(m) == {0: [2], 1: [4], 2: [0], 3: [1]}
        assert m.n_focal_unmatched == 2
        assert np.allclose(m.weights, [2.0, 2.0, 2.0, 1.0, 1.0, 0.0])

    def test_with_replacement_caliper_drops_distant_focal_unit(self):
        df, ps = make_small([0.5, 0.9], [0.49, 0.52, 0.3])
        spec = MatchSpec("1:2r cal", ratio=2, replace=True, caliper=0.1, distance="ps")
        m = NearestNeighborMatcher(spec).match(df, "treated", ps)
        # Caliper width is 0.1 SD of the scores, about 0.022.
        assert m.caliper_width == pytest.approx(0.1 * np.std(ps, ddof=1))
        assert groups(m) == {0: [2, 3]}
        assert m.n_focal_unmatched == 1
        assert (m.pairs["distance"] <= m.caliper_width).all()
