"""Tests for the sample, sample-list and draws value types."""

import dataclasses
import json

import numpy as np
import pytest
from _simulate import simulate_data

from longimpute import LongData, method_approxbayes, method_bayes, method_condmean, set_vars
from longimpute._results import (
    Draws,
    SampleList,
    SampleSingle,
    as_draws,
    as_sample_list,
    as_sample_single,
    with_ids,
)
from longimpute.mcmc import MCMCFit

_IDS = ("1", "2", "3")
_SIGMA = {"A": np.eye(2), "B": 2 * np.eye(2)}


def _sample(**kwargs):
    defaults = dict(ids=_IDS, beta=[1.0, 2.0], sigma=_SIGMA, theta=[0.1, 0.2, 0.3])
    return as_sample_single(**{**defaults, **kwargs})


def _fit():
    return MCMCFit(
        beta=np.zeros((1, 2)),
        sigma=np.ones((1, 1, 2, 2)),
        columns=("Intercept", "x"),
        visit_levels=("v1", "v2"),
        group_levels=("A", "B"),
        n_iter=3,
        burn_in=2,
        burn_between=1,
        same_cov=True,
        prior_df=4.0,
        prior_scale=(np.eye(2),),
    )


@pytest.fixture(scope="module")
def longdata():
    data = simulate_data(n_subjects=6, missing_rate=0.0)
    return LongData(data, set_vars()).set_strategies(None)


class TestSampleSingle:
    def test_valid_sample(self):
        sample = _sample()
        assert not sample.failed
        assert sample.ids == _IDS
        assert sample.ids_samp == _IDS
        assert isinstance(sample.beta, np.ndarray)

    def test_ids_samp_kept(self):
        sample = _sample(ids_samp=["1", "1", "3"])
        assert sample.ids_samp == ("1", "1", "3")

    def test_failed_sample_has_no_estimates(self):
        sample = as_sample_single(ids=_IDS, failed=True)
        assert sample.beta is None and sample.sigma is None and sample.theta is None

    def test_failed_sample_rejects_estimates(self):
        with pytest.raises(ValueError, match="must not carry estimates"):
            as_sample_single(ids=_IDS, beta=[1.0], failed=True)

    @pytest.mark.parametrize("ids", [["1"], [], "12"])
    def test_needs_more_than_one_id(self, ids):
        with pytest.raises(ValueError, match="'ids'"):
            _sample(ids=ids)

    def test_ids_samp_needs_more_than_one_id(self):
        with pytest.raises(ValueError, match="'ids_samp'"):
            _sample(ids_samp=["1"])

    def test_beta_must_be_finite(self):
        with pytest.raises(ValueError, match="without missing values"):
            _sample(beta=[1.0, np.nan])

    def test_missing_beta(self):
        with pytest.raises(ValueError, match="needs 'beta'"):
            _sample(beta=None)

    def test_sigma_must_be_named(self):
        with pytest.raises(ValueError, match="non-empty mapping"):
            _sample(sigma={})

    def test_sigma_must_be_square(self):
        with pytest.raises(ValueError, match="square matrix"):
            _sample(sigma={"A": np.ones((2, 3))})

    def test_theta_optional(self):
        assert _sample(theta=None).theta is None

    def test_frozen(self):
        sample = _sample()
        with pytest.raises(dataclasses.FrozenInstanceError):
            sample.failed = True

    def test_dict_access(self):
        sample = _sample()
        assert sample["failed"] is False
        assert sample.get("nope", 1) == 1
        assert "sigma" in sample
        with pytest.raises(KeyError):
            sample["nope"]

    def test_to_dict_is_json_serialisable(self):
        out = _sample().to_dict()
        assert out["beta"] == [1.0, 2.0]
        assert out["sigma"]["B"] == [[2.0, 0.0], [0.0, 2.0]]
        json.dumps(out)

    def test_with_ids_keeps_resample(self):
        sample = _sample(ids=["1", "1", "3"])
        relabelled = with_ids(sample, _IDS)
        assert relabelled.ids == _IDS
        assert relabelled.ids_samp == ("1", "1", "3")


class TestSampleList:
    def test_sequence_protocol(self):
        samples = as_sample_list(_sample(), _sample(theta=None))
        assert len(samples) == 2
        assert samples[1].theta is None
        assert [s.failed for s in samples] == [False, False]
        assert isinstance(samples[:1], SampleList)

    def test_accepts_single_iterable(self):
        samples = as_sample_list([_sample(), _sample()])
        assert len(samples) == 2

    def test_rejects_mapping(self):
        with pytest.raises(ValueError, match="unnamed sequence"):
            as_sample_list({"a": _sample()})

    def test_rejects_other_entries(self):
        with pytest.raises(ValueError, match="expected SampleSingle"):
            as_sample_list([_sample(), {"beta": [1.0]}])

    def test_counts_failures(self):
        samples = as_sample_list(_sample(), as_sample_single(ids=_IDS, failed=True))
        assert samples.n_failed == 1

    def test_empty(self):
        assert len(as_sample_list()) == 0


class TestDraws:
    def test_condmean(self, longdata):
        result = as_draws(
            method=method_condmean(n_samples=1),
            samples=as_sample_list(_sample(), _sample()),
            data=longdata,
            formula="outcome ~ 1 + visit + group",
            n_failures=0,
        )
        assert isinstance(result, Draws)
        assert result.imputation_type == "condmean"
        assert result.data is longdata

    def test_random_types(self, longdata):
        result = as_draws(
            method=method_approxbayes(n_samples=1),
            samples=as_sample_list(_sample()),
            data=longdata,
            formula="outcome ~ 1 + visit + group",
        )
        assert result.imputation_type == "random"
        bayes = as_draws(
            method=method_bayes(n_samples=1),
            samples=as_sample_list(_sample()),
            data=longdata,
            formula="outcome ~ 1 + visit + group",
            fit=_fit(),
        )
        assert bayes.imputation_type == "random"

    def test_bayes_requires_fit(self, longdata):
        with pytest.raises(ValueError, match="must carry the sampler fit"):
            as_draws(
                method=method_bayes(),
                samples=as_sample_list(_sample()),
                data=longdata,
                formula="outcome ~ 1",
            )

    def test_fit_only_for_bayes(self, longdata):
        with pytest.raises(ValueError, match="Only Bayesian draws"):
            as_draws(
                method=method_approxbayes(),
                samples=as_sample_list(_sample()),
                data=longdata,
                formula="outcome ~ 1",
                fit=_fit(),
            )

    @pytest.mark.parametrize(
        ("field", "value", "match"),
        [
            ("data", "not data", "'data' must be a LongData"),
            ("method", {"type": "bayes"}, "'method' must be a method"),
            ("samples", [1, 2], "'samples' must be a SampleList"),
            ("n_failures", "two", "'n_failures' must be a number"),
            ("fit", object(), "'fit' must be an MCMCFit"),
            ("formula", "~ visit", "exactly one response term"),
        ],
    )
    def test_validation(self, longdata, field, value, match):
        kwargs = dict(
            method=method_condmean(n_samples=1),
            samples=as_sample_list(_sample()),
            data=longdata,
            formula="outcome ~ 1",
        )
        kwargs[field] = value
        with pytest.raises(ValueError, match=match):
            as_draws(**kwargs)

    def test_to_dict(self, longdata):
        result = as_draws(
            method=method_condmean(n_samples=1),
            samples=as_sample_list(_sample(), _sample()),
            data=longdata,
            formula="outcome ~ 1",
            n_failures=2,
        )
        out = result.to_dict()
        assert "data" not in out and "fit" not in out
        assert out["method"]["kind"] == "condmean"
        assert len(out["samples"]) == 2
        assert out["n_failures"] == 2
        json.dumps(out)

    def test_field_access(self, longdata):
        result = as_draws(
            method=method_condmean(n_samples=1),
            samples=as_sample_list(_sample(), _sample()),
            data=longdata,
            formula="outcome ~ 1",
            n_failures=0,
        )
        assert result["n_failures"] == 0
        assert result.get("fit") is None
        assert "data" in result
        assert "imputation_type" not in result
        with pytest.raises(KeyError):
            result["imputation_type"]

    def test_sample_is_single(self):
        assert isinstance(_sample(), SampleSingle)
