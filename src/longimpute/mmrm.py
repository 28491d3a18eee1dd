"""Mixed model for repeated measures (MMRM) fitted by ML or REML.

Model, for subject *i* in covariance group *g* with observed visits Oᵢ:

    yᵢ ~ N(Xᵢβ, Σ_g[Oᵢ, Oᵢ])

Σ_g is a structured ``(n_visits, n_visits)`` covariance matrix
parameterised by an unconstrained vector θ_g (see
:mod:`longimpute.covariance`).  With ``same_cov=True`` a single Σ is
shared by every group.

Estimation
~~~~~~~~~~
β is profiled out: for fixed θ the GLS estimate

    β̂(θ) = (Σᵢ Xᵢ'Vᵢ⁻¹Xᵢ)⁻¹ Σᵢ Xᵢ'Vᵢ⁻¹yᵢ

is available in closed form, so only θ is handed to
``scipy.optimize.minimize``.  The objective is −2 log-likelihood:

    ML:    n·log 2π + Σᵢ log|Vᵢ| + Σᵢ rᵢ'Vᵢ⁻¹rᵢ
    REML:  ML − p·log 2π + log|Σᵢ Xᵢ'Vᵢ⁻¹Xᵢ|

Subjects are bucketed by (covariance group, observed-visit pattern)
once per fit.  Each objective evaluation then needs one Cholesky
factorisation per bucket and two batched triangular solves, never a
per-subject Python loop.

Failure semantics
~~~~~~~~~~~~~~~~~
A fit that does not converge, produces non-finite estimates, or hits a
singular matrix is returned as ``MMRMFit(failed=True)`` rather than
raised: the bootstrap driver counts such fits, the jackknife driver
aborts on them.  Structural problems in the *inputs* (mismatched
lengths, unknown optimiser) still raise ``ValueError``.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import scipy.linalg
import statsmodels.api as sm
from scipy.optimize import minimize

from .covariance import CovarianceStructure, resolve_covariance

logger = logging.getLogger(__name__)

DEFAULT_OPTIMIZERS: tuple[str, ...] = ("L-BFGS-B", "BFGS")

_SUPPORTED_OPTIMIZERS = frozenset(
    {"L-BFGS-B", "BFGS", "CG", "Nelder-Mead", "Powell", "TNC", "SLSQP"}
)

# Accept "precision loss" terminations when the gradient is this flat.
_GRAD_TOL = 1e-3

_LOG_2PI = float(np.log(2.0 * np.pi))


# ------------------------------------------------------------------ #
# Result containers
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class WarmStart:
    """Parameter estimates from a previous fit, used as starting values.

    Only ``theta`` seeds the optimiser (β is profiled out of the
    objective); ``beta`` is kept so a warm start is a complete record
    of the fit it came from and is checked for a matching length.
    """

    beta: np.ndarray
    theta: np.ndarray


@dataclass(frozen=True)
class MMRMFit:
    """Outcome of one MMRM fit attempt.

    ``beta``, ``sigma`` and ``theta`` are ``None`` when ``failed``.
    ``sigma`` maps every group level to its covariance matrix.
    """

    failed: bool
    beta: np.ndarray | None = None
    sigma: dict[str, np.ndarray] | None = None
    theta: np.ndarray | None = None
    optimizer: str | None = None
    objective: float | None = None
    n_iter: int | None = None
    message: str = ""

    @classmethod
    def failure(cls, optimizer: str | None, message: str) -> MMRMFit:
        return cls(failed=True, optimizer=optimizer, message=message)


# ------------------------------------------------------------------ #
# Problem set-up
# ------------------------------------------------------------------ #


def _levels(values: Any) -> tuple[list[str], np.ndarray]:
    """String levels and integer codes, keeping categorical order."""
    series = pd.Series(values)
    if isinstance(series.dtype, pd.CategoricalDtype):
        cat = series.cat
    else:
        cat = series.astype("category").cat
    return [str(c) for c in cat.categories], cat.codes.to_numpy()


@dataclass
class _Bucket:
    block: int
    pattern: np.ndarray  # observed visit codes
    X: np.ndarray  # (k, m, p), visit-major for batched solves
    Y: np.ndarray  # (k, m)


class _MMRMProblem:
    """Observed data bucketed by covariance block and visit pattern."""

    def __init__(
        self,
        designmat: np.ndarray,
        outcome: np.ndarray,
        subjid: Any,
        visit: Any,
        group: Any,
        structure: CovarianceStructure,
        REML: bool,
        same_cov: bool,
    ) -> None:
        n, p = designmat.shape
        self.n_obs = n
        self.p = p
        self.REML = REML
        self.structure = structure
        self.same_cov = same_cov

        self.visit_levels, visit_codes = _levels(visit)
        self.group_levels, group_codes = _levels(group)
        self.n_visits = len(self.visit_levels)
        self.n_blocks = 1 if same_cov else len(self.group_levels)
        self.n_theta_block = structure.n_params(self.n_visits)

        frame = pd.DataFrame(
            {
                "subj": pd.Series(subjid).astype(str).to_numpy(),
                "block": np.zeros(n, dtype=int) if same_cov else group_codes,
            }
        )
        buckets: dict[tuple[int, tuple[int, ...]], list[np.ndarray]] = {}
        for _, rows in frame.groupby("subj", sort=False).indices.items():
            rows = rows[np.argsort(visit_codes[rows], kind="stable")]
            block = int(frame["block"].iat[rows[0]])
            pattern = tuple(int(v) for v in visit_codes[rows])
            if len(set(pattern)) != len(pattern):
                msg = "Each subject may contribute at most one row per visit."
                raise ValueError(msg)
            buckets.setdefault((block, pattern), []).append(rows)

        self.buckets: list[_Bucket] = []
        for (block, pattern), row_list in buckets.items():
            idx = np.vstack(row_list)  # (m, k)
            X = designmat[idx]  # (m, k, p)
            Y = outcome[idx]  # (m, k)
            self.buckets.append(
                _Bucket(
                    block=block,
                    pattern=np.asarray(pattern),
                    X=np.ascontiguousarray(X.transpose(1, 0, 2)),
                    Y=np.ascontiguousarray(Y.T),
                )
            )

    @property
    def n_theta(self) -> int:
        return self.n_blocks * self.n_theta_block

    def sigmas(self, theta: np.ndarray) -> list[np.ndarray]:
        k = self.n_theta_block
        return [
            self.structure.build(theta[b * k : (b + 1) * k], self.n_visits)
            for b in range(self.n_blocks)
        ]

    def _whiten(
        self, theta: np.ndarray
    ) -> tuple[float, list[tuple[np.ndarray, np.ndarray]]]:
        sigmas = self.sigmas(theta)
        logdet = 0.0
        whitened = []
        for bucket in self.buckets:
            V = sigmas[bucket.block][np.ix_(bucket.pattern, bucket.pattern)]
            L = np.linalg.cholesky(V)
            k, m, p = bucket.X.shape
            logdet += m * 2.0 * float(np.sum(np.log(np.diag(L))))
            Xw = scipy.linalg.solve_triangular(
                L, bucket.X.reshape(k, m * p), lower=True
            ).reshape(k, m, p)
            Yw = scipy.linalg.solve_triangular(L, bucket.Y, lower=True)
            whitened.append((Xw, Yw))
        return logdet, whitened

    def evaluate(self, theta: np.ndarray) -> tuple[float, np.ndarray]:
        """Return (−2 log-likelihood, β̂(θ))."""
        logdet, whitened = self._whiten(theta)
        XtVX = np.zeros((self.p, self.p))
        XtVy = np.zeros(self.p)
        for Xw, Yw in whitened:
            XtVX += np.einsum("kmp,kmq->pq", Xw, Xw)
            XtVy += np.einsum("kmp,km->p", Xw, Yw)
        chol = np.linalg.cholesky(XtVX)
        beta = scipy.linalg.cho_solve((chol, True), XtVy)
        quad = 0.0
        for Xw, Yw in whitened:
            resid = Yw - np.einsum("kmp,p->km", Xw, beta)
            quad += float(np.sum(resid**2))
        obj = self.n_obs * _LOG_2PI + logdet + quad
        if self.REML:
            obj += 2.0 * float(np.sum(np.log(np.diag(chol)))) - self.p * _LOG_2PI
        return obj, beta

    def objective(self, theta: np.ndarray) -> float:
        try:
            obj, _ = self.evaluate(theta)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError):
            return np.inf
        return obj if np.isfinite(obj) else np.inf

    def initial_theta(
        self, designmat: np.ndarray, outcome: np.ndarray, visit_codes: np.ndarray
    ) -> np.ndarray:
        # OLS residual variance per visit seeds the diagonal.
        ols = sm.OLS(outcome, designmat).fit()
        per_visit = pd.Series(ols.resid).groupby(visit_codes).var(ddof=1)
        overall = float(ols.scale)
        overall = overall if np.isfinite(overall) and overall > 0 else 1.0
        variance = np.full(self.n_visits, overall)
        for code, var in per_visit.items():
            if np.isfinite(var) and var > 0:
                variance[int(code)] = var
        block = self.structure.initial_theta(self.n_visits, variance)
        return np.tile(block, self.n_blocks)


# ------------------------------------------------------------------ #
# Fitting
# ------------------------------------------------------------------ #


def _check_inputs(
    designmat: Any, outcome: Any, *others: Any
) -> tuple[np.ndarray, np.ndarray]:
    X = np.asarray(designmat, dtype=float)
    y = np.asarray(outcome, dtype=float).reshape(-1)
    if X.ndim != 2:
        msg = f"'designmat' must be 2-D, got shape {X.shape}."
        raise ValueError(msg)
    for arr in (y, *others):
        if len(arr) != X.shape[0]:
            msg = "designmat, outcome, subjid, visit and group must have equal length."
            raise ValueError(msg)
    if not np.all(np.isfinite(X)) or not np.all(np.isfinite(y)):
        msg = "designmat and outcome must not contain missing values."
        raise ValueError(msg)
    return X, y


def fit_mmrm(
    designmat: Any,
    outcome: Any,
    subjid: Any,
    visit: Any,
    group: Any,
    cov_struct: str | CovarianceStructure = "us",
    REML: bool = True,
    same_cov: bool = True,
    optimizer: str = "L-BFGS-B",
    initial: WarmStart | None = None,
) -> MMRMFit:
    """Fit one MMRM with a single optimiser.

    Args:
        designmat: Fixed-effects design matrix ``(n, p)`` (observed
            rows only).
        outcome: Response ``(n,)`` without missing values.
        subjid: Subject label per row.
        visit: Visit per row; categorical order defines the visit
            dimension of Σ.
        group: Group per row; names the returned covariance matrices.
        cov_struct: Covariance structure name or instance.
        REML: Restricted (``True``) or full maximum likelihood.
        same_cov: One Σ for all groups.
        optimizer: A ``scipy.optimize.minimize`` method name.
        initial: Warm start; ``None`` starts from OLS residual
            variances with zero correlation.  A warm start whose sizes
            do not match the design gives a failed fit.

    Returns:
        An :class:`MMRMFit`; ``failed=True`` when the fit did not
        converge to finite estimates.

    Raises:
        ValueError: On malformed inputs or an unknown optimiser.
    """
    if optimizer not in _SUPPORTED_OPTIMIZERS:
        valid = ", ".join(sorted(_SUPPORTED_OPTIMIZERS))
        msg = f"Unknown optimizer '{optimizer}'. Choose from: {valid}."
        raise ValueError(msg)
    structure = resolve_covariance(cov_struct)
    X, y = _check_inputs(
        designmat, outcome, np.asarray(subjid), np.asarray(visit), np.asarray(group)
    )

    if X.shape[0] <= X.shape[1] or np.linalg.matrix_rank(X) < X.shape[1]:
        return MMRMFit.failure(optimizer, "design matrix is rank deficient")

    problem = _MMRMProblem(X, y, subjid, visit, group, structure, REML, same_cov)

    if initial is not None:
        theta0 = np.asarray(initial.theta, dtype=float)
        beta0 = np.asarray(initial.beta)
        if theta0.shape != (problem.n_theta,) or beta0.shape != (X.shape[1],):
            msg = (
                f"warm start has theta of length {theta0.size} and beta of length "
                f"{beta0.size}; expected {problem.n_theta} and {X.shape[1]}"
            )
            logger.debug("MMRM fit with %s skipped: %s", optimizer, msg)
            return MMRMFit.failure(optimizer, msg)
    else:
        _, visit_codes = _levels(visit)
        theta0 = problem.initial_theta(X, y, visit_codes)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        res = minimize(problem.objective, theta0, method=optimizer)

    theta = np.asarray(res.x, dtype=float)
    converged = bool(res.success)
    if not converged and getattr(res, "jac", None) is not None:
        jac = np.asarray(res.jac, dtype=float)
        converged = bool(np.all(np.isfinite(jac)) and np.max(np.abs(jac)) < _GRAD_TOL)
    if not converged or not np.isfinite(res.fun):
        logger.debug("MMRM fit with %s did not converge: %s", optimizer, res.message)
        return MMRMFit.failure(optimizer, str(res.message))

    try:
        objective, beta = problem.evaluate(theta)
        sigmas = problem.sigmas(theta)
    except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
        logger.debug("MMRM fit with %s ended at a singular point: %s", optimizer, exc)
        return MMRMFit.failure(optimizer, str(exc))

    if not (np.all(np.isfinite(beta)) and all(np.all(np.isfinite(s)) for s in sigmas)):
        return MMRMFit.failure(optimizer, "non-finite estimates")

    if same_cov:
        sigma = {lvl: sigmas[0].copy() for lvl in problem.group_levels}
    else:
        sigma = {lvl: sigmas[b] for b, lvl in enumerate(problem.group_levels)}

    return MMRMFit(
        failed=False,
        beta=beta,
        sigma=sigma,
        theta=theta,
        optimizer=optimizer,
        objective=float(objective),
        n_iter=int(getattr(res, "nit", 0)),
        message=str(res.message),
    )


def _normalise_optimizer(
    optimizer: str | Sequence[str] | Mapping[str, WarmStart | None],
) -> list[tuple[str, WarmStart | None]]:
    if isinstance(optimizer, str):
        return [(optimizer, None)]
    if isinstance(optimizer, Mapping):
        return list(optimizer.items())
    return [(name, None) for name in optimizer]


def fit_mmrm_multiopt(
    designmat: Any,
    outcome: Any,
    subjid: Any,
    visit: Any,
    group: Any,
    cov_struct: str | CovarianceStructure = "us",
    REML: bool = True,
    same_cov: bool = True,
    optimizer: str | Sequence[str] | Mapping[str, WarmStart | None] = DEFAULT_OPTIMIZERS,
) -> MMRMFit:
    """Fit an MMRM trying several optimisers in turn.

    Args:
        optimizer: Either optimiser names, each tried from a cold
            start, or an ordered mapping ``name -> WarmStart | None``.
            The first successful fit is returned.
        (other arguments as in :func:`fit_mmrm`)

    Returns:
        The first successful :class:`MMRMFit`, or the last failure.
    """
    attempts = _normalise_optimizer(optimizer)
    if not attempts:
        msg = "At least one optimizer is required."
        raise ValueError(msg)

    fit = MMRMFit.failure(None, "no optimizer tried")
    for name, start in attempts:
        fit = fit_mmrm(
            designmat,
            outcome,
            subjid,
            visit,
            group,
            cov_struct=cov_struct,
            REML=REML,
            same_cov=same_cov,
            optimizer=name,
            initial=start,
        )
        if not fit.failed:
            return fit
        logger.debug("Optimizer %s failed (%s); trying next", name, fit.message)
    return fit


__all__ = [
    "DEFAULT_OPTIMIZERS",
    "MMRMFit",
    "WarmStart",
    "fit_mmrm",
    "fit_mmrm_multiopt",
]
