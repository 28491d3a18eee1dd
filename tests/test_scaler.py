"""Tests for the centre/scale transform used by the MCMC driver."""

import numpy as np
import pandas as pd
import pytest
from _simulate import simulate_data

from longimpute import LongData, set_vars
from longimpute.formula import as_model_df, as_simple_formula
from longimpute.scaler import Scaler

_SEED = 42


@pytest.fixture
def model_df():
    data = simulate_data(n_subjects=30, missing_rate=0.2, seed=_SEED)
    longdata = LongData(data, set_vars(covariates=["age"]))
    return as_model_df(longdata.get_data(), as_simple_formula(longdata.vars))


class TestScale:
    def test_continuous_columns_standardised(self, model_df):
        scaled = Scaler(model_df).scale(model_df)
        for col in ("outcome", "age"):
            assert abs(np.nanmean(scaled[col])) < 1e-10
            assert np.nanstd(scaled[col], ddof=1) == pytest.approx(1.0)

    def test_intercept_and_dummies_untouched(self, model_df):
        scaled = Scaler(model_df).scale(model_df)
        dummies = [c for c in model_df.columns[1:] if c != "age"]
        pd.testing.assert_frame_equal(scaled[dummies], model_df[dummies])

    def test_missing_response_stays_missing(self, model_df):
        scaled = Scaler(model_df).scale(model_df)
        np.testing.assert_array_equal(
            scaled["outcome"].isna(), model_df["outcome"].isna()
        )

    def test_constant_column_not_divided_by_zero(self):
        df = pd.DataFrame(
            {"y": [1.0, 2.0, 3.0], "Intercept": 1.0, "x": [5.0, 5.0, 5.0]}
        )
        scaler = Scaler(df)
        assert np.all(np.isfinite(scaler.scale(df).to_numpy()))


class TestRoundTrip:
    def test_beta_round_trip(self, model_df):
        scaler = Scaler(model_df)
        rng = np.random.default_rng(_SEED)
        beta = rng.normal(size=model_df.shape[1] - 1)
        np.testing.assert_allclose(scaler.unscale_beta(scaler.scale_beta(beta)), beta)
        np.testing.assert_allclose(scaler.scale_beta(scaler.unscale_beta(beta)), beta)

    def test_sigma_round_trip(self, model_df):
        scaler = Scaler(model_df)
        sigma = np.array([[2.0, 0.5], [0.5, 1.0]])
        np.testing.assert_allclose(scaler.unscale_sigma(scaler.scale_sigma(sigma)), sigma)

    def test_unscaled_fit_predicts_like_scaled_fit(self, model_df):
        """A coefficient vector gives the same predictions on both scales."""
        scaler = Scaler(model_df)
        scaled = scaler.scale(model_df)
        rng = np.random.default_rng(_SEED)
        beta_scaled = rng.normal(size=model_df.shape[1] - 1)
        pred_scaled = scaled.iloc[:, 1:].to_numpy() @ beta_scaled
        pred = model_df.iloc[:, 1:].to_numpy() @ scaler.unscale_beta(beta_scaled)
        m_y, s_y = scaler.centre[0], scaler.scales[0]
        np.testing.assert_allclose(pred, m_y + s_y * pred_scaled)

    def test_requires_intercept(self):
        df = pd.DataFrame({"y": [1.0, 2.0, 4.0], "x": [0.5, 1.5, 2.0]})
        with pytest.raises(ValueError, match="requires an intercept"):
            Scaler(df).unscale_beta(np.array([1.0]))
