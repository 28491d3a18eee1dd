"""Tests for the Gibbs sampler backend."""

import logging

import numpy as np
import pytest
from _simulate import simulate_data

from longimpute import LongData, set_vars
from longimpute.formula import as_model_df, as_simple_formula
from longimpute.mcmc import MCMCFit, fit_mcmc
from longimpute.mmrm import fit_mmrm

_SEED = 42


def _inputs(n_subjects=40, missing_rate=0.15):
    data = simulate_data(n_subjects=n_subjects, missing_rate=missing_rate, seed=_SEED)
    longdata = LongData(data, set_vars(covariates=["age"]))
    dat = longdata.get_data()
    model_df = as_model_df(dat, as_simple_formula(longdata.vars))
    return {
        "designmat": model_df.iloc[:, 1:],
        "outcome": model_df.iloc[:, 0],
        "group": dat["group"],
        "visit": dat["visit"],
        "subjid": dat["subjid"],
    }


@pytest.fixture(scope="module")
def inputs():
    return _inputs()


class TestFitMcmc:
    def test_output_shapes(self, inputs):
        result = fit_mcmc(
            **inputs,
            n_imputations=5,
            burn_in=10,
            burn_between=2,
            seed=_SEED,
            verbose=False,
        )
        fit = result["fit"]
        assert isinstance(fit, MCMCFit)
        assert fit.n_draws == 5
        assert fit.n_iter == 10 + 2 * 5
        assert fit.prior_df == 6.0
        assert len(result["samples"]["beta"]) == 5
        assert len(result["samples"]["sigma"]) == 5
        p = inputs["designmat"].shape[1]
        for beta, sigmas in zip(result["samples"]["beta"], result["samples"]["sigma"]):
            assert beta.shape == (p,)
            assert len(sigmas) == 1
            assert sigmas[0].shape == (4, 4)
            assert np.all(np.linalg.eigvalsh(sigmas[0]) > 0)

    def test_one_sigma_per_group_without_same_cov(self, inputs):
        result = fit_mcmc(
            **inputs,
            n_imputations=3,
            burn_in=5,
            burn_between=1,
            same_cov=False,
            seed=_SEED,
            verbose=False,
        )
        assert all(len(s) == 2 for s in result["samples"]["sigma"])
        assert result["fit"].group_levels == ("A", "B")

    def test_seed_reproducible(self, inputs):
        kwargs = dict(n_imputations=3, burn_in=5, burn_between=2, seed=7, verbose=False)
        first = fit_mcmc(**inputs, **kwargs)
        second = fit_mcmc(**inputs, **kwargs)
        np.testing.assert_array_equal(first["fit"].beta, second["fit"].beta)
        np.testing.assert_array_equal(first["fit"].sigma, second["fit"].sigma)

    def test_posterior_centred_on_reml_fit(self, inputs):
        observed = inputs["outcome"].notna().to_numpy()
        reml = fit_mmrm(
            designmat=inputs["designmat"][observed],
            outcome=inputs["outcome"][observed],
            subjid=inputs["subjid"][observed],
            visit=inputs["visit"][observed],
            group=inputs["group"][observed],
        )
        result = fit_mcmc(
            **inputs,
            n_imputations=40,
            burn_in=50,
            burn_between=2,
            seed=_SEED,
            verbose=False,
        )
        post = result["fit"].posterior_mean()
        np.testing.assert_allclose(post["beta"].to_numpy(), reml.beta, atol=1.5)
        assert list(post["beta"].index) == list(inputs["designmat"].columns)

    def test_verbose_logs_progress(self, inputs, caplog):
        with caplog.at_level(logging.INFO, logger="longimpute.mcmc"):
            fit_mcmc(
                **inputs,
                n_imputations=2,
                burn_in=10,
                burn_between=5,
                seed=_SEED,
                verbose=True,
            )
        messages = [r.getMessage() for r in caplog.records]
        assert any("warmup" in m for m in messages)
        assert any("sampling" in m for m in messages)

    def test_failed_initial_fit_raises(self, inputs, monkeypatch):
        import longimpute.mcmc as mcmc
        from longimpute.mmrm import MMRMFit

        monkeypatch.setattr(
            mcmc,
            "fit_mmrm_multiopt",
            lambda *a, **k: MMRMFit.failure("BFGS", "forced"),
        )
        with pytest.raises(RuntimeError, match="initialise the sampler failed"):
            fit_mcmc(**inputs, n_imputations=2, burn_in=1, burn_between=1, verbose=False)

    def test_incomplete_rows_rejected(self, inputs):
        trimmed = {k: v.iloc[1:] for k, v in inputs.items()}
        with pytest.raises(ValueError, match="one row per subject and visit"):
            fit_mcmc(**trimmed, n_imputations=2, burn_in=1, burn_between=1, verbose=False)
