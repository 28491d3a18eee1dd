"""Gibbs sampler for the multivariate normal MMRM with unstructured Σ.

Model, for subject *i* in covariance block *g* (one block when
``same_cov``, otherwise one per group level):

    yᵢ ~ N_V(Xᵢβ, Σ_g),   p(β) ∝ 1,   Σ_g ~ IW(ν₀, Ψ₀_g)

where V is the number of visits.  Missing outcomes (including the
non-MAR outcomes the draws driver nulls out) are treated as unknowns
and integrated over by data augmentation.  One iteration:

1. **Impute** — for every subject with missing visits m and observed
   visits o, draw y_m from its conditional normal

       y_m | y_o ~ N(μ_m + Σ_mo Σ_oo⁻¹ (y_o − μ_o),
                     Σ_mm − Σ_mo Σ_oo⁻¹ Σ_om).

2. **β | Σ, Y** — with complete Y the full conditional is normal with
   mean (Σᵢ Xᵢ'Σ⁻¹Xᵢ)⁻¹ Σᵢ Xᵢ'Σ⁻¹yᵢ and covariance (Σᵢ Xᵢ'Σ⁻¹Xᵢ)⁻¹.

3. **Σ_g | β, Y** — inverse-Wishart with ν₀ + n_g degrees of freedom
   and scale Ψ₀_g + Σᵢ rᵢrᵢ'.

Prior
~~~~~
ν₀ = V + 2 and Ψ₀_g = Σ̂_g, the REML estimate from an unstructured
MMRM fit to the observed data, so the prior mean of Σ_g equals Σ̂_g
and carries the weight of a few subjects only.  The same fit provides
the starting values.

Subjects are bucketed by (block, missingness pattern) once, so each
imputation step costs one Cholesky factorisation per bucket.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy.stats import invwishart

from ._config import get_rng
from ._typing import ArrayLike
from .mmrm import DEFAULT_OPTIMIZERS, _levels, fit_mmrm_multiopt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MCMCFit:
    """Sampler output handle retained on the draws object.

    Attributes:
        beta: Kept β draws, shape ``(n_draws, p)`` (sampler scale).
        sigma: Kept Σ draws, shape ``(n_draws, n_blocks, V, V)``
            (sampler scale).
        columns: Design-matrix column names.
        visit_levels: Visit order of the Σ dimensions.
        group_levels: Group levels; blocks follow this order unless
            ``same_cov``.
        n_iter: Total iterations run.
        burn_in: Discarded initial iterations.
        burn_between: Thinning interval.
        same_cov: Whether one Σ was shared.
        prior_df: ν₀.
        prior_scale: Ψ₀ per block.
        seed: Seed used for the generator, if any.
    """

    beta: np.ndarray
    sigma: np.ndarray
    columns: tuple[str, ...]
    visit_levels: tuple[str, ...]
    group_levels: tuple[str, ...]
    n_iter: int
    burn_in: int
    burn_between: int
    same_cov: bool
    prior_df: float
    prior_scale: tuple[np.ndarray, ...]
    seed: int | None = None

    @property
    def n_draws(self) -> int:
        return int(self.beta.shape[0])

    def posterior_mean(self) -> dict[str, Any]:
        """Posterior means of β and of each Σ block (sampler scale)."""
        return {
            "beta": pd.Series(self.beta.mean(axis=0), index=list(self.columns)),
            "sigma": [self.sigma[:, b].mean(axis=0) for b in range(self.sigma.shape[1])],
        }


@dataclass
class _PatternBucket:
    block: int
    subjects: np.ndarray
    miss: np.ndarray
    obs: np.ndarray


class _GibbsState:
    """Wide-format data and the per-iteration conditional draws."""

    def __init__(
        self,
        designmat: np.ndarray,
        outcome: np.ndarray,
        subjid: Any,
        visit: Any,
        group: Any,
        same_cov: bool,
    ) -> None:
        self.visit_levels, visit_codes = _levels(visit)
        self.group_levels, group_codes = _levels(group)
        subj_levels, subj_codes = _levels(pd.Series(subjid).astype(str))
        n_subj, V = len(subj_levels), len(self.visit_levels)
        p = designmat.shape[1]

        counts = np.bincount(subj_codes, minlength=n_subj)
        if np.any(counts != V):
            msg = "The sampler needs one row per subject and visit (NaN outcomes allowed)."
            raise ValueError(msg)

        self.V = V
        self.p = p
        self.X = np.empty((n_subj, V, p))
        self.Y = np.full((n_subj, V), np.nan)
        self.X[subj_codes, visit_codes] = designmat
        self.Y[subj_codes, visit_codes] = outcome
        self.observed = np.isfinite(self.Y)

        subj_group = np.empty(n_subj, dtype=int)
        subj_group[subj_codes] = group_codes
        self.n_blocks = 1 if same_cov else len(self.group_levels)
        self.block = np.zeros(n_subj, dtype=int) if same_cov else subj_group
        self.block_members = [np.flatnonzero(self.block == b) for b in range(self.n_blocks)]

        patterns: dict[tuple[int, bytes], list[int]] = {}
        for i in range(n_subj):
            if self.observed[i].all():
                continue
            patterns.setdefault((int(self.block[i]), self.observed[i].tobytes()), []).append(i)
        self.buckets = [
            _PatternBucket(
                block=b,
                subjects=np.asarray(members),
                miss=np.flatnonzero(~self.observed[members[0]]),
                obs=np.flatnonzero(self.observed[members[0]]),
            )
            for (b, _), members in patterns.items()
        ]
        # Starting fill for the missing cells; overwritten on the first step.
        self.Y_full = np.where(self.observed, self.Y, 0.0)

    def impute(self, beta: np.ndarray, sigmas: list[np.ndarray], rng: np.random.Generator) -> None:
        mu = self.X @ beta  # (N, V)
        for bucket in self.buckets:
            S = sigmas[bucket.block]
            m, o, idx = bucket.miss, bucket.obs, bucket.subjects
            mu_m = mu[np.ix_(idx, m)]
            if o.size:
                A = np.linalg.solve(S[np.ix_(o, o)], S[np.ix_(o, m)]).T  # (|m|, |o|)
                resid_o = self.Y[np.ix_(idx, o)] - mu[np.ix_(idx, o)]
                cond_mean = mu_m + resid_o @ A.T
                cond_cov = S[np.ix_(m, m)] - A @ S[np.ix_(o, m)]
            else:
                cond_mean = mu_m
                cond_cov = S[np.ix_(m, m)]
            L = np.linalg.cholesky((cond_cov + cond_cov.T) / 2.0)
            z = rng.standard_normal(cond_mean.shape)
            self.Y_full[np.ix_(idx, m)] = cond_mean + z @ L.T

    def draw_beta(self, sigmas: list[np.ndarray], rng: np.random.Generator) -> np.ndarray:
        XtVX = np.zeros((self.p, self.p))
        XtVy = np.zeros(self.p)
        for b, members in enumerate(self.block_members):
            if members.size == 0:
                continue
            S_inv = np.linalg.inv(sigmas[b])
            Xb, Yb = self.X[members], self.Y_full[members]
            XtVX += np.einsum("ivp,vw,iwq->pq", Xb, S_inv, Xb)
            XtVy += np.einsum("ivp,vw,iw->p", Xb, S_inv, Yb)
        L = np.linalg.cholesky(XtVX)
        mean = np.linalg.solve(XtVX, XtVy)
        # L L' = precision, so L'^{-1} z has covariance (XtVX)^{-1}.
        z = rng.standard_normal(self.p)
        return mean + np.linalg.solve(L.T, z)

    def draw_sigmas(
        self,
        beta: np.ndarray,
        prior_df: float,
        prior_scale: list[np.ndarray],
        rng: np.random.Generator,
    ) -> list[np.ndarray]:
        resid = self.Y_full - self.X @ beta
        out = []
        for b, members in enumerate(self.block_members):
            R = resid[members]
            scale = prior_scale[b] + R.T @ R
            draw = invwishart.rvs(df=prior_df + members.size, scale=scale, random_state=rng)
            out.append(np.atleast_2d(draw))
        return out


def fit_mcmc(
    designmat: ArrayLike,
    outcome: ArrayLike,
    group: Any,
    visit: Any,
    subjid: Any,
    n_imputations: int,
    burn_in: int,
    burn_between: int,
    same_cov: bool = True,
    seed: int | None = None,
    verbose: bool = True,
    rng: np.random.Generator | None = None,
) -> dict[str, Any]:
    """Draw from the posterior of (β, Σ) by Gibbs sampling.

    Args:
        designmat: Design matrix ``(n, p)`` over *all* subject-visit
            rows (``DataFrame`` column names are kept on the handle).
        outcome: Response ``(n,)``; ``NaN`` marks values to integrate
            over.
        group, visit, subjid: Per-row labels.
        n_imputations: Number of draws to keep.
        burn_in: Initial iterations to discard.
        burn_between: Keep every ``burn_between``-th iteration after
            the burn-in.
        same_cov: One Σ shared by all groups.
        seed: Seed for a fresh generator when *rng* is not given.
        verbose: Log progress at ``INFO``.
        rng: Generator to draw from.  Defaults to a generator seeded
            with *seed*, or the process-wide generator when *seed* is
            ``None``.

    Returns:
        ``{"fit": MCMCFit, "samples": {"beta": [...], "sigma": [...]}}``
        where each ``sigma`` entry is a list of ``(V, V)`` matrices
        (one per block).

    Raises:
        RuntimeError: If the initial MMRM fit used for the prior and
            starting values fails.
        ValueError: On malformed inputs.
    """
    if rng is None:
        rng = np.random.default_rng(seed) if seed is not None else get_rng()

    columns = tuple(str(c) for c in getattr(designmat, "columns", range(np.shape(designmat)[1])))
    X = np.asarray(designmat, dtype=float)
    y = np.asarray(outcome, dtype=float).reshape(-1)
    subjid = np.asarray(subjid)
    visit = pd.Series(visit).reset_index(drop=True)
    group = pd.Series(group).reset_index(drop=True)

    state = _GibbsState(X, y, subjid, visit, group, same_cov)

    obs = np.isfinite(y)
    initial = fit_mmrm_multiopt(
        X[obs],
        y[obs],
        subjid[obs],
        visit[obs],
        group[obs],
        cov_struct="us",
        REML=True,
        same_cov=same_cov,
        optimizer=DEFAULT_OPTIMIZERS,
    )
    if initial.failed:
        msg = "Fitting MMRM to the observed data to initialise the sampler failed"
        raise RuntimeError(msg)

    assert initial.sigma is not None and initial.beta is not None  # noqa: S101
    if same_cov:
        prior_scale = [next(iter(initial.sigma.values()))]
    else:
        prior_scale = [initial.sigma[lvl] for lvl in state.group_levels]
    prior_df = float(state.V + 2)

    beta = np.asarray(initial.beta, dtype=float)
    sigmas = [s.copy() for s in prior_scale]

    n_iter = burn_in + burn_between * n_imputations
    kept_beta = np.empty((n_imputations, state.p))
    kept_sigma = np.empty((n_imputations, state.n_blocks, state.V, state.V))
    n_kept = 0
    report_every = max(n_iter // 10, 1)

    for it in range(1, n_iter + 1):
        state.impute(beta, sigmas, rng)
        beta = state.draw_beta(sigmas, rng)
        sigmas = state.draw_sigmas(beta, prior_df, prior_scale, rng)

        if it > burn_in and (it - burn_in) % burn_between == 0:
            kept_beta[n_kept] = beta
            kept_sigma[n_kept] = np.stack(sigmas)
            n_kept += 1

        if verbose and it % report_every == 0:
            phase = "warmup" if it <= burn_in else "sampling"
            logger.info("Iteration %d / %d [%3.0f%%] (%s)", it, n_iter, 100 * it / n_iter, phase)

    fit = MCMCFit(
        beta=kept_beta,
        sigma=kept_sigma,
        columns=columns,
        visit_levels=tuple(state.visit_levels),
        group_levels=tuple(state.group_levels),
        n_iter=n_iter,
        burn_in=burn_in,
        burn_between=burn_between,
        same_cov=same_cov,
        prior_df=prior_df,
        prior_scale=tuple(prior_scale),
        seed=seed,
    )
    samples = {
        "beta": [kept_beta[k].copy() for k in range(n_imputations)],
        "sigma": [
            [kept_sigma[k, b].copy() for b in range(state.n_blocks)]
            for k in range(n_imputations)
        ],
    }
    return {"fit": fit, "samples": samples}


__all__ = ["MCMCFit", "fit_mcmc"]
