"""Covariance structures for the MMRM visit dimension.

Every structure maps an **unconstrained** parameter vector θ to a
positive-definite ``(n_visits, n_visits)`` matrix, so the likelihood
can be handed straight to an unconstrained quasi-Newton optimiser
(``scipy.optimize.minimize``) without bounds.

Parameterisations
~~~~~~~~~~~~~~~~~
* **us** — unstructured, log-Cholesky: Σ = LL' with the diagonal of L
  stored as logs followed by the strictly-lower entries row by row.
* **cs / csh** — compound symmetry with a common correlation
  ρ = (eʳ − 1)/(eʳ + n − 1) ∈ (−1/(n−1), 1).
* **ar1 / ar1h** — first-order autoregressive, ρ = tanh(r).
* **ad / adh** — first-order ante-dependence, one lag-1 correlation
  ρ_k = tanh(r_k) per adjacent visit pair; corr(i, j) = ∏ ρ_k.
* **toep / toeph** — Toeplitz, built from partial autocorrelations
  φ_k = tanh(r_k) by the Durbin–Levinson recursion (any φ ∈ (−1, 1)ⁿ
  yields a valid correlation sequence).

The ``h`` variants carry one log standard deviation per visit instead
of a single shared one.  θ always starts with the log standard
deviation(s), followed by the correlation parameters.

Adding a structure
~~~~~~~~~~~~~~~~~~
Implement the :class:`CovarianceStructure` protocol and call
:func:`register_covariance`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, final, runtime_checkable

import numpy as np

# ------------------------------------------------------------------ #
# Protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class CovarianceStructure(Protocol):
    """Interface that every covariance structure must implement."""

    @property
    def name(self) -> str: ...

    def n_params(self, n_visits: int) -> int:
        """Length of θ for *n_visits* visits."""
        ...

    def build(self, theta: np.ndarray, n_visits: int) -> np.ndarray:
        """Return the ``(n_visits, n_visits)`` covariance matrix for θ."""
        ...

    def initial_theta(self, n_visits: int, variance: np.ndarray) -> np.ndarray:
        """Starting θ matching per-visit *variance* with zero correlation."""
        ...


# ------------------------------------------------------------------ #
# Shared helpers
# ------------------------------------------------------------------ #


def _scale_corr(sd: np.ndarray, corr: np.ndarray) -> np.ndarray:
    return corr * np.outer(sd, sd)


def _log_sd(variance: np.ndarray) -> np.ndarray:
    variance = np.asarray(variance, dtype=float)
    return 0.5 * np.log(np.clip(variance, 1e-8, None))


def _sd(theta_sd: np.ndarray, n_visits: int) -> np.ndarray:
    # A single log-sd is broadcast to every visit.
    return np.broadcast_to(np.exp(theta_sd), (n_visits,))


def _cs_corr(r: float, n_visits: int) -> np.ndarray:
    er = np.exp(r)
    rho = (er - 1.0) / (er + n_visits - 1.0)
    corr = np.full((n_visits, n_visits), rho)
    np.fill_diagonal(corr, 1.0)
    return corr


def _ar1_corr(r: float, n_visits: int) -> np.ndarray:
    rho = np.tanh(r)
    lags = np.abs(np.subtract.outer(np.arange(n_visits), np.arange(n_visits)))
    return rho**lags


def _ad_corr(r: np.ndarray, n_visits: int) -> np.ndarray:
    rho = np.tanh(np.asarray(r, dtype=float))
    corr = np.eye(n_visits)
    for i in range(n_visits):
        for j in range(i + 1, n_visits):
            # Product of the lag-1 correlations between visits i and j.
            corr[i, j] = corr[j, i] = np.prod(rho[i:j])
    return corr


def _pacf_to_acf(pacf: np.ndarray) -> np.ndarray:
    """Durbin–Levinson: partial autocorrelations → autocorrelations."""
    m = len(pacf)
    acf = np.empty(m)
    phi = np.empty(0)
    for k in range(m):
        a = pacf[k]
        if k == 0:
            acf[0] = a
            phi = np.array([a])
            continue
        acf[k] = phi @ acf[k - 1 :: -1] + a * (1.0 - phi @ acf[:k])
        phi = np.concatenate([phi - a * phi[::-1], [a]])
    return acf


def _toep_corr(r: np.ndarray, n_visits: int) -> np.ndarray:
    acf = np.concatenate([[1.0], _pacf_to_acf(np.tanh(np.asarray(r, dtype=float)))])
    lags = np.abs(np.subtract.outer(np.arange(n_visits), np.arange(n_visits)))
    return acf[lags]


# ------------------------------------------------------------------ #
# Structures
# ------------------------------------------------------------------ #


@final
@dataclass(frozen=True)
class UnstructuredCovariance:
    """Unstructured covariance via log-Cholesky parameterisation."""

    @property
    def name(self) -> str:
        return "us"

    def n_params(self, n_visits: int) -> int:
        return n_visits * (n_visits + 1) // 2

    def build(self, theta: np.ndarray, n_visits: int) -> np.ndarray:
        theta = np.asarray(theta, dtype=float)
        L = np.zeros((n_visits, n_visits))
        L[np.diag_indices(n_visits)] = np.exp(theta[:n_visits])
        L[np.tril_indices(n_visits, k=-1)] = theta[n_visits:]
        return L @ L.T

    def initial_theta(self, n_visits: int, variance: np.ndarray) -> np.ndarray:
        variance = np.broadcast_to(np.asarray(variance, dtype=float), (n_visits,))
        return np.concatenate(
            [_log_sd(variance), np.zeros(n_visits * (n_visits - 1) // 2)]
        )


@final
@dataclass(frozen=True)
class _CorrelationStructure:
    """Standard deviation(s) times a parametric correlation matrix.

    ``heterogeneous`` selects one log-sd per visit; ``n_corr`` returns
    the number of correlation parameters for a given visit count.
    """

    label: str
    heterogeneous: bool
    kind: str

    @property
    def name(self) -> str:
        return self.label

    def _n_sd(self, n_visits: int) -> int:
        return n_visits if self.heterogeneous else 1

    def _n_corr(self, n_visits: int) -> int:
        if self.kind in ("cs", "ar1"):
            return 1
        return max(n_visits - 1, 0)

    def n_params(self, n_visits: int) -> int:
        return self._n_sd(n_visits) + self._n_corr(n_visits)

    def build(self, theta: np.ndarray, n_visits: int) -> np.ndarray:
        theta = np.asarray(theta, dtype=float)
        n_sd = self._n_sd(n_visits)
        sd = _sd(theta[:n_sd], n_visits)
        r = theta[n_sd:]
        if self.kind == "cs":
            corr = _cs_corr(r[0], n_visits)
        elif self.kind == "ar1":
            corr = _ar1_corr(r[0], n_visits)
        elif self.kind == "ad":
            corr = _ad_corr(r, n_visits)
        else:
            corr = _toep_corr(r, n_visits)
        return _scale_corr(sd, corr)

    def initial_theta(self, n_visits: int, variance: np.ndarray) -> np.ndarray:
        variance = np.broadcast_to(np.asarray(variance, dtype=float), (n_visits,))
        if self.heterogeneous:
            log_sd = _log_sd(variance)
        else:
            log_sd = _log_sd(np.array([variance.mean()]))
        return np.concatenate([log_sd, np.zeros(self._n_corr(n_visits))])


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_COVARIANCES: dict[str, CovarianceStructure] = {
    "us": UnstructuredCovariance(),
    "cs": _CorrelationStructure("cs", heterogeneous=False, kind="cs"),
    "csh": _CorrelationStructure("csh", heterogeneous=True, kind="cs"),
    "ar1": _CorrelationStructure("ar1", heterogeneous=False, kind="ar1"),
    "ar1h": _CorrelationStructure("ar1h", heterogeneous=True, kind="ar1"),
    "ad": _CorrelationStructure("ad", heterogeneous=False, kind="ad"),
    "adh": _CorrelationStructure("adh", heterogeneous=True, kind="ad"),
    "toep": _CorrelationStructure("toep", heterogeneous=False, kind="toep"),
    "toeph": _CorrelationStructure("toeph", heterogeneous=True, kind="toep"),
}


def available_covariances() -> list[str]:
    """Return the registered covariance structure names, sorted."""
    return sorted(_COVARIANCES)


def register_covariance(name: str, structure: CovarianceStructure) -> None:
    """Register a covariance structure instance under *name*.

    Raises:
        TypeError: If *structure* does not satisfy the
            ``CovarianceStructure`` protocol.
    """
    if not isinstance(structure, CovarianceStructure):
        msg = f"{structure!r} does not implement the CovarianceStructure protocol."
        raise TypeError(msg)
    _COVARIANCES[name] = structure


def resolve_covariance(cov_struct: str | CovarianceStructure) -> CovarianceStructure:
    """Resolve a structure name (or pass an instance through).

    Raises:
        ValueError: If *cov_struct* is not a registered name.
    """
    if isinstance(cov_struct, CovarianceStructure):
        return cov_struct
    structure = _COVARIANCES.get(cov_struct)
    if structure is None:
        valid = ", ".join(available_covariances())
        msg = f"Unknown covariance structure '{cov_struct}'. Choose from: {valid}."
        raise ValueError(msg)
    return structure


__all__ = [
    "CovarianceStructure",
    "UnstructuredCovariance",
    "available_covariances",
    "register_covariance",
    "resolve_covariance",
]
