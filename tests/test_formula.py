"""Tests for the formula and design-matrix helpers."""

import numpy as np
import pytest
from _simulate import simulate_data

from longimpute import LongData, set_vars
from longimpute.formula import as_model_df, as_simple_formula, validate_formula


class TestAsSimpleFormula:
    def test_without_covariates(self):
        assert as_simple_formula(set_vars()) == "outcome ~ 1 + visit + group"

    def test_with_covariates(self):
        vars = set_vars(outcome="y", covariates=["age", "visit*group"])
        assert as_simple_formula(vars) == "y ~ 1 + visit + group + age + visit*group"


class TestValidateFormula:
    def test_accepts_simple_formula(self):
        desc = validate_formula("outcome ~ 1 + visit + group")
        assert len(desc.lhs_termlist) == 1

    def test_rejects_non_string(self):
        with pytest.raises(ValueError, match="must be a string"):
            validate_formula(42)

    def test_rejects_missing_response(self):
        with pytest.raises(ValueError, match="exactly one response term"):
            validate_formula("~ visit")

    def test_rejects_unparsable(self):
        with pytest.raises(ValueError, match="Invalid model formula"):
            validate_formula("outcome ~ (visit")


class TestAsModelDf:
    def _longdata(self):
        data = simulate_data(n_subjects=10, missing_rate=0.3)
        return LongData(data, set_vars(covariates=["age"]))

    def test_columns(self):
        longdata = self._longdata()
        df = as_model_df(longdata.get_data(), as_simple_formula(longdata.vars))
        assert df.columns[0] == "outcome"
        assert df.columns[1] == "Intercept"
        # intercept + 3 visit contrasts + 1 group contrast + age
        assert df.shape[1] == 1 + 6

    def test_response_may_be_missing(self):
        longdata = self._longdata()
        data = longdata.get_data()
        df = as_model_df(data, as_simple_formula(longdata.vars))
        np.testing.assert_array_equal(df["outcome"].isna(), data["outcome"].isna())
        assert np.isfinite(df.iloc[:, 1:].to_numpy()).all()

    def test_same_columns_for_any_subset(self):
        longdata = self._longdata()
        formula = as_simple_formula(longdata.vars)
        full = as_model_df(longdata.get_data(), formula)
        # Both subjects in arm A: the group column is still present.
        subset = as_model_df(longdata.get_data(["1", "2"]), formula)
        assert list(full.columns) == list(subset.columns)

    def test_interaction_terms(self):
        data = simulate_data(n_subjects=10, missing_rate=0.0)
        longdata = LongData(data, set_vars(covariates=["visit*group"]))
        df = as_model_df(longdata.get_data(), as_simple_formula(longdata.vars))
        # intercept + 3 visit + 1 group + 3 interaction
        assert df.shape[1] == 1 + 8

    def test_unknown_response(self):
        longdata = self._longdata()
        with pytest.raises(ValueError, match="Response 'y' not found"):
            as_model_df(longdata.get_data(), "y ~ 1 + visit")
