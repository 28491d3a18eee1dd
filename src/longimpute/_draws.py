"""Draws engine: MMRM parameter samples under four resampling regimes.

:func:`draws` is the single dispatch point.  It builds the
:class:`~longimpute.longdata.LongData` provider, registers the ICE
table, and hands over to one driver according to the method:

=========================================  ==================================
Method                                     Driver
=========================================  ==================================
``MethodBayes``                            :func:`get_mcmc_draws`
``MethodApproxBayes``                      :func:`get_bootstrap_draws`
                                           (resample ids kept in
                                           ``ids_samp`` only, no original
                                           fit in the output)
``MethodCondMean(type="bootstrap")``       :func:`get_bootstrap_draws`
                                           (resample ids, original fit at
                                           index 0)
``MethodCondMean(type="jackknife")``       :func:`get_jackknife_draws`
=========================================  ==================================

Every MMRM fit goes through :func:`get_mmrm_sample`, which turns one id
list into one :class:`~longimpute._results.SampleSingle`.  The first fit
of each run is the full dataset with the cold optimiser sequence
``("L-BFGS-B", "BFGS")``; its β/θ then warm-start ``L-BFGS-B`` for all
resample fits, with a cold ``BFGS`` fit as fallback.

Failures
~~~~~~~~
* Original / full-dataset fit fails → ``RuntimeError``.
* Bootstrap resample fit fails → counted and redrawn, until more than
  ``ceil(threshold * n_samples)`` failures → ``RuntimeError``.
* Any jackknife fold fails → ``RuntimeError``.

No partial result is ever returned.
"""

from __future__ import annotations

import logging
import math
import warnings
from collections.abc import Mapping, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ._config import get_n_jobs, get_rng, set_seed
from ._results import (
    Draws,
    SampleSingle,
    as_draws,
    as_sample_list,
    as_sample_single,
    with_ids,
)
from ._typing import DataFrameLike, IdList
from .formula import as_model_df, as_simple_formula
from .longdata import LongData
from .mcmc import fit_mcmc
from .methods import Method, MethodApproxBayes, MethodBayes, MethodCondMean, _MMRMMethod
from .mmrm import DEFAULT_OPTIMIZERS, WarmStart, fit_mmrm_multiopt
from .scaler import Scaler
from .vars import Vars

logger = logging.getLogger(__name__)

OptimizerSpec = Sequence[str] | Mapping[str, WarmStart | None]


# ------------------------------------------------------------------ #
# Public entry point
# ------------------------------------------------------------------ #


def draws(
    data: DataFrameLike,
    data_ice: DataFrameLike | None,
    vars: Vars,
    method: Method,
    n_jobs: int | None = None,
) -> Draws:
    """Fit the imputation model and return its parameter samples.

    Args:
        data: Longitudinal data, one row per subject and visit.
            Missing outcomes are ``NaN``.
        data_ice: ICE table (subject id, first affected visit,
            strategy), or ``None`` when no subject has an ICE.
        vars: Column names, from :func:`~longimpute.set_vars`.
        method: One of :func:`~longimpute.method_bayes`,
            :func:`~longimpute.method_approxbayes` or
            :func:`~longimpute.method_condmean`.
        n_jobs: Workers for jackknife folds.  ``None`` uses
            :func:`~longimpute.get_n_jobs`.  Ignored, with a warning,
            for the other methods.

    Returns:
        A validated :class:`~longimpute._results.Draws`.

    Raises:
        RuntimeError: If the original-data fit fails, too many
            bootstrap fits fail, a jackknife fold fails, or the sampler
            cannot be initialised.
        ValueError: On invalid data, ICE table or method.

    Examples:
        >>> vars = set_vars(covariates=["age"])
        >>> method = method_condmean(type="jackknife")
        >>> result = draws(data, data_ice, vars, method)  # doctest: +SKIP
        >>> len(result.samples) == len(result.data.ids) + 1  # doctest: +SKIP
        True
    """
    is_jackknife = isinstance(method, MethodCondMean) and method.type == "jackknife"
    if n_jobs is not None and n_jobs != 1 and not is_jackknife:
        warnings.warn(
            f"n_jobs={n_jobs} is ignored: only the jackknife runs its fits in parallel.",
            UserWarning,
            stacklevel=2,
        )
    if n_jobs is None:
        n_jobs = get_n_jobs()

    if isinstance(method, MethodBayes):
        # Seed before any data handling, so the whole run is reproducible.
        if method.seed is not None:
            set_seed(method.seed)
        longdata = LongData(data, vars).set_strategies(data_ice)
        return get_mcmc_draws(longdata, method)

    if isinstance(method, MethodApproxBayes):
        longdata = LongData(data, vars).set_strategies(data_ice)
        return get_bootstrap_draws(
            longdata, method, use_samp_ids=False, first_sample_orig=False
        )

    if isinstance(method, MethodCondMean):
        longdata = LongData(data, vars).set_strategies(data_ice)
        if method.type == "bootstrap":
            return get_bootstrap_draws(
                longdata, method, use_samp_ids=True, first_sample_orig=True
            )
        return get_jackknife_draws(longdata, method, n_jobs=n_jobs)

    msg = (
        f"Unknown method type {type(method).__name__!r}. Use method_bayes(), "
        "method_approxbayes() or method_condmean()."
    )
    raise ValueError(msg)


# ------------------------------------------------------------------ #
# Model-fit primitive
# ------------------------------------------------------------------ #


def get_mmrm_sample(
    ids: IdList,
    longdata: LongData,
    method: _MMRMMethod,
    optimizer: OptimizerSpec = DEFAULT_OPTIMIZERS,
) -> SampleSingle:
    """Fit one MMRM to the MAR, observed outcomes of *ids*.

    Args:
        ids: Subject ids, duplicates allowed.
        longdata: Data provider with strategies set.
        method: Supplies covariance structure, REML and ``same_cov``.
        optimizer: Optimiser names tried cold, in order, or a mapping
            ``name -> WarmStart | None`` tried in order.

    Returns:
        A sample with ``ids = ids``; ``failed=True`` and no estimates
        when every optimiser failed.
    """
    vars = longdata.vars
    dat = longdata.get_data(ids, nmar_remove=True, na_remove=True)
    model_df = as_model_df(dat, as_simple_formula(vars))

    fit = fit_mmrm_multiopt(
        designmat=model_df.iloc[:, 1:],
        outcome=model_df.iloc[:, 0],
        subjid=dat[vars.subjid],
        visit=dat[vars.visit],
        group=dat[vars.group],
        cov_struct=method.covariance,
        REML=method.REML,
        same_cov=method.same_cov,
        optimizer=optimizer,
    )
    if fit.failed:
        return as_sample_single(ids=ids, failed=True)
    return as_sample_single(
        ids=ids,
        beta=fit.beta,
        sigma=fit.sigma,
        theta=fit.theta,
        failed=False,
    )


def _warm_optimizer(sample: SampleSingle) -> dict[str, WarmStart | None]:
    assert sample.beta is not None and sample.theta is not None  # noqa: S101
    return {"L-BFGS-B": WarmStart(beta=sample.beta, theta=sample.theta), "BFGS": None}


# ------------------------------------------------------------------ #
# Bootstrap driver
# ------------------------------------------------------------------ #


def get_bootstrap_draws(
    longdata: LongData,
    method: MethodApproxBayes | MethodCondMean,
    use_samp_ids: bool = False,
    first_sample_orig: bool = False,
) -> Draws:
    """MMRM fits on ``method.n_samples`` stratified bootstrap samples.

    Args:
        longdata: Data provider with strategies set.
        method: Approximate Bayes or bootstrap conditional mean.
        use_samp_ids: Keep the resampled ids as the sample's ``ids``.
            When ``False`` ``ids`` is reset to the full id set and the
            resample survives in ``ids_samp`` only.
        first_sample_orig: Put the original-data fit at index 0, for
            ``n_samples + 1`` samples in total.

    Raises:
        RuntimeError: If the original-data fit fails or more than
            ``ceil(threshold * n_samples)`` bootstrap fits fail.
    """
    ids = longdata.ids
    # Bootstrap methods reject n_samples=None at construction.
    assert method.n_samples is not None  # noqa: S101
    failure_limit = math.ceil(method.threshold * method.n_samples)

    initial = get_mmrm_sample(ids, longdata, method, optimizer=DEFAULT_OPTIMIZERS)
    if initial.failed:
        msg = "Fitting MMRM to original dataset failed"
        raise RuntimeError(msg)
    optimizer = _warm_optimizer(initial)

    samples: list[SampleSingle] = [initial] if first_sample_orig else []
    n_target = method.n_samples + len(samples)
    n_failures = 0

    while len(samples) < n_target:
        ids_boot = longdata.sample_ids()
        sample = get_mmrm_sample(ids_boot, longdata, method, optimizer=optimizer)
        if sample.failed:
            n_failures += 1
            logger.debug("Bootstrap fit failed (%d so far)", n_failures)
            if n_failures > failure_limit:
                msg = (
                    f"More than {failure_limit} failed fits "
                    f"(threshold={method.threshold}). "
                    "Try using a simpler covariance structure"
                )
                raise RuntimeError(msg)
            continue
        if not use_samp_ids:
            sample = with_ids(sample, ids)
        samples.append(sample)

    logger.debug(
        "Bootstrap finished: %d samples, %d failed fits", len(samples), n_failures
    )
    return as_draws(
        method=method,
        samples=as_sample_list(samples),
        data=longdata,
        formula=as_simple_formula(longdata.vars),
        n_failures=n_failures,
    )


# ------------------------------------------------------------------ #
# Jackknife driver
# ------------------------------------------------------------------ #


def get_jackknife_draws(
    longdata: LongData,
    method: MethodCondMean,
    n_jobs: int = 1,
) -> Draws:
    """Full-data fit followed by one leave-one-subject-out fit per subject.

    Folds only read the provider and the warm start, so with
    ``n_jobs != 1`` they run on a joblib thread pool.  Results are
    collected by subject index, never by completion order.

    Raises:
        RuntimeError: If the full-data fit or any fold fails.
    """
    ids = list(longdata.ids)

    initial = get_mmrm_sample(ids, longdata, method, optimizer=DEFAULT_OPTIMIZERS)
    if initial.failed:
        msg = "Fitting MMRM to original dataset failed"
        raise RuntimeError(msg)
    optimizer = _warm_optimizer(initial)

    def _fold(i: int) -> SampleSingle:
        return get_mmrm_sample(ids[:i] + ids[i + 1 :], longdata, method, optimizer=optimizer)

    def _check(i: int, sample: SampleSingle) -> SampleSingle:
        if sample.failed:
            msg = f"Jackknife sample failed (subject '{ids[i]}')"
            raise RuntimeError(msg)
        return sample

    if n_jobs == 1:
        folds = [_check(i, _fold(i)) for i in range(len(ids))]
    else:
        results = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_fold)(i) for i in range(len(ids))
        )
        folds = [_check(i, sample) for i, sample in enumerate(results)]

    return as_draws(
        method=method,
        samples=as_sample_list([initial, *folds]),
        data=longdata,
        formula=as_simple_formula(longdata.vars),
        n_failures=0,
    )


# ------------------------------------------------------------------ #
# MCMC driver
# ------------------------------------------------------------------ #


def extract_data_nmar_as_na(longdata: LongData) -> pd.DataFrame:
    """All rows of *longdata* with non-MAR outcomes set to ``NaN``.

    Rows are kept, so the sampler can integrate over the hidden
    outcomes.
    """
    data = longdata.get_data(longdata.ids, nmar_remove=False, na_remove=False)
    is_mar = longdata.is_mar.to_numpy()
    data.loc[~is_mar, longdata.vars.outcome] = np.nan
    return data


def get_mcmc_draws(longdata: LongData, method: MethodBayes) -> Draws:
    """Posterior draws of (β, Σ) from the Gibbs sampler.

    The sampler runs on centred and scaled data; its draws are mapped
    back to the original scale before being wrapped into samples.
    The process-wide generator is expected to be seeded by the caller
    when ``method.seed`` is set (see :func:`draws`).
    """
    vars = longdata.vars
    data = extract_data_nmar_as_na(longdata)

    formula = as_simple_formula(vars)
    model_df = as_model_df(data, formula)
    scaler = Scaler(model_df)
    scaled = scaler.scale(model_df)

    result = fit_mcmc(
        designmat=scaled.iloc[:, 1:],
        outcome=scaled.iloc[:, 0],
        group=data[vars.group],
        visit=data[vars.visit],
        subjid=data[vars.subjid],
        n_imputations=method.n_samples,
        burn_in=method.burn_in,
        burn_between=method.burn_between,
        same_cov=method.same_cov,
        seed=method.seed,
        verbose=method.verbose,
        rng=get_rng(),
    )

    levels = list(longdata.group_levels)
    samples = []
    for beta, sigmas in zip(result["samples"]["beta"], result["samples"]["sigma"]):
        if method.same_cov:
            sigmas = [sigmas[0]] * len(levels)
        samples.append(
            as_sample_single(
                ids=longdata.ids,
                beta=scaler.unscale_beta(beta),
                sigma={
                    lvl: scaler.unscale_sigma(s) for lvl, s in zip(levels, sigmas)
                },
                failed=False,
            )
        )

    return as_draws(
        method=method,
        samples=as_sample_list(samples),
        data=longdata,
        formula=formula,
        n_failures=0,
        fit=result["fit"],
    )


__all__ = [
    "draws",
    "extract_data_nmar_as_na",
    "get_bootstrap_draws",
    "get_jackknife_draws",
    "get_mcmc_draws",
    "get_mmrm_sample",
]
