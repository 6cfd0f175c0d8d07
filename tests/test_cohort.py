import numpy as np
import pandas as pd
import pytest

from counterpart import SchemaError, load_cohort, prepare_cohort, simulate_cohort, write_cohort
from counterpart.cohort import COLUMNS, DEFAULT_COVARIATES, EXPOSED, UNEXPOSED


def make_raw(n=40, seed=3):
    """Schema columns only, as they would appear in a CSV."""
    return simulate_cohort(n=n, seed=seed)[list(COLUMNS)]


class TestSimulateCohort:
    @classmethod
    def setup_class(cls):
        cls.df = simulate_cohort()

    def test_default_size(self):
        assert len(self.df) == 2_200

    def test_has_schema_and_treated_columns(self):
        for col in COLUMNS:
            assert col in self.df.columns
        assert "treated" in self.df.columns

    def test_treated_matches_exposure(self):
        assert ((self.df["exposure"] == EXPOSED) == (self.df["treated"] == 1)).all()

    def test_exposure_rate_is_a_minority(self):
        rate = self.df["treated"].mean()
        assert 0.1 < rate < 0.5

    def test_deterministic_per_seed(self):
        pd.testing.assert_frame_equal(simulate_cohort(seed=11), simulate_cohort(seed=11))

    def test_different_seeds_differ(self):
        assert not simulate_cohort(seed=1)["age"].equals(simulate_cohort(seed=2)["age"])

    def test_exposed_are_older_on_average(self):
        # Exposure is confounded by age in the simulation.
        by_arm = self.df.groupby("treated")["age"].mean()
        assert by_arm[1] > by_arm[0]

    def test_covariates_exclude_outcomes_and_exposure(self):
        for col in ("exposure", "bp_control", "bmi", "patient_id"):
            assert col not in DEFAULT_COVARIATES

    def test_too_small_raises(self):
        with pytest.raises(ValueError):
            simulate_cohort(n=5)

    def test_single_exposure_group_blames_size(self, monkeypatch):
        import counterpart.cohort as cohort_module

        # Zero enrolment probability: every patient lands in usual care.
        monkeypatch.setattr(cohort_module, "_expit", lambda x: np.zeros(np.shape(x)))
        with pytest.raises(ValueError, match="single exposure group"):
            simulate_cohort(n=10, seed=1)


class TestLoadCohort:
    def test_csv_round_trip(self, tmp_path):
        df = simulate_cohort(n=200, seed=5)
        path = tmp_path / "cohort.csv"
        write_cohort(df, path)
        pd.testing.assert_frame_equal(load_cohort(path), df)

    def test_write_drops_derived_columns(self, tmp_path):
        path = tmp_path / "cohort.csv"
        write_cohort(simulate_cohort(n=50, seed=5), path)
        assert list(pd.read_csv(path).columns) == list(COLUMNS)

    def test_levels_are_normalised(self):
        raw = make_raw()
        raw["exposure"] = raw["exposure"].str.upper()
        raw["sex"] = " " + raw["sex"].str.title()
        out = prepare_cohort(raw)
        assert set(out["exposure"]) == {EXPOSED, UNEXPOSED}
        assert set(out["sex"]) <= {"female", "male"}

    def test_extra_columns_are_kept(self):
        raw = make_raw().assign(site="north")
        assert "site" in prepare_cohort(raw).columns


class TestSchemaValidation:
    def test_missing_column_raises(self):
        with pytest.raises(SchemaError, match="missing required columns"):
            prepare_cohort(make_raw().drop(columns=["ckd"]))

    def test_missing_value_raises(self):
        raw = make_raw()
        raw.loc[3, "age"] = np.nan
        with pytest.raises(SchemaError, match="Missing values"):
            prepare_cohort(raw)

    def test_unparseable_numeric_raises(self):
        raw = make_raw().astype({"baseline_sbp": object})
        raw.loc[0, "baseline_sbp"] = "high"
        with pytest.raises(SchemaError, match="baseline_sbp"):
            prepare_cohort(raw)

    def test_unknown_level_raises(self):
        raw = make_raw()
        raw.loc[0, "insurance"] = "uninsured"
        with pytest.raises(SchemaError, match="unknown levels"):
            prepare_cohort(raw)

    def test_non_binary_flag_raises(self):
        raw = make_raw()
        raw.loc[0, "smoker"] = 2
        with pytest.raises(SchemaError, match="binary"):
            prepare_cohort(raw)

    def test_negative_count_raises(self):
        raw = make_raw()
        raw.loc[0, "ed_visits"] = -1
        with pytest.raises(SchemaError, match="ed_visits"):
            prepare_cohort(raw)

    def test_zero_patient_id_raises(self):
        raw = make_raw()
        raw.loc[0, "patient_id"] = 0
        with pytest.raises(SchemaError, match="patient_id.*positive"):
            prepare_cohort(raw)

    def test_duplicated_patient_id_raises(self):
        raw = make_raw()
        raw.loc[1, "patient_id"] = raw.loc[0, "patient_id"]
        with pytest.raises(SchemaError, match="Duplicated"):
            prepare_cohort(raw)

    def test_single_exposure_level_raises(self):
        raw = make_raw()
        raw["exposure"] = UNEXPOSED
        with pytest.raises(SchemaError, match="both"):
            prepare_cohort(raw)

    def test_schema_error_is_value_error(self):
        with pytest.raises(ValueError):
            prepare_cohort(make_raw().drop(columns=["bmi"]))
