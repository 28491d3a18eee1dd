"""Multiple-imputation method configurations.

A method is one of three frozen dataclasses.  The draws driver matches
on the concrete class at a single dispatch point, so the classes carry
configuration only:

* :class:`MethodBayes` — Bayesian MI via MCMC sampling
  (unstructured covariance only).
* :class:`MethodApproxBayes` — approximate Bayesian MI via MMRM fits
  on bootstrap samples.
* :class:`MethodCondMean` — conditional mean imputation with either
  bootstrap or jackknife resampling.
"""

from __future__ import annotations

import numbers
from dataclasses import asdict, dataclass
from typing import Any, ClassVar

from .covariance import resolve_covariance

_CONDMEAN_TYPES = ("bootstrap", "jackknife")


def _check_positive_int(value: Any, what: str) -> None:
    if (
        isinstance(value, bool)
        or not isinstance(value, numbers.Integral)
        or value < 1
    ):
        msg = f"'{what}' must be a positive integer, got {value!r}."
        raise ValueError(msg)


def _check_flag(value: Any, what: str) -> None:
    if not isinstance(value, bool):
        msg = f"'{what}' must be True or False, got {value!r}."
        raise ValueError(msg)


def _check_threshold(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        msg = f"'threshold' must be a number, got {value!r}."
        raise ValueError(msg)
    if not 0 <= value <= 1:
        msg = f"'threshold' must lie in [0, 1], got {value}."
        raise ValueError(msg)


@dataclass(frozen=True)
class Method:
    """Common base of all method configurations."""

    kind: ClassVar[str] = ""
    label: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        """Plain dict of the configured arguments."""
        return asdict(self)


@dataclass(frozen=True)
class MethodBayes(Method):
    """Bayesian MI based on MCMC sampling.

    Attributes:
        burn_in: Number of initial iterations discarded.
        burn_between: Iterations between two kept draws (thinning).
        same_cov: One covariance matrix shared by all groups.
        n_samples: Number of posterior draws to keep.
        verbose: Log sampler progress at ``INFO``.
        seed: Seed for the process-wide generator, or ``None``.
    """

    kind: ClassVar[str] = "bayes"
    label: ClassVar[str] = "Bayes"
    covariance: ClassVar[str] = "us"

    burn_in: int = 200
    burn_between: int = 50
    same_cov: bool = True
    n_samples: int = 20
    verbose: bool = True
    seed: int | None = None

    def __post_init__(self) -> None:
        if (
            isinstance(self.burn_in, bool)
            or not isinstance(self.burn_in, numbers.Integral)
            or self.burn_in < 0
        ):
            msg = f"'burn_in' must be a non-negative integer, got {self.burn_in!r}."
            raise ValueError(msg)
        _check_positive_int(self.burn_between, "burn_between")
        _check_positive_int(self.n_samples, "n_samples")
        _check_flag(self.same_cov, "same_cov")
        _check_flag(self.verbose, "verbose")
        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, numbers.Integral)
        ):
            msg = f"'seed' must be an integer or None, got {self.seed!r}."
            raise ValueError(msg)


@dataclass(frozen=True)
class _MMRMMethod(Method):
    covariance: str = "us"
    threshold: float = 0.01
    same_cov: bool = True
    REML: bool = True

    def __post_init__(self) -> None:
        resolve_covariance(self.covariance)
        _check_threshold(self.threshold)
        _check_flag(self.same_cov, "same_cov")
        _check_flag(self.REML, "REML")


@dataclass(frozen=True)
class MethodApproxBayes(_MMRMMethod):
    """Approximate Bayesian MI based on bootstrapped MMRM fits.

    Attributes:
        covariance: Covariance structure name (see
            :func:`~longimpute.covariance.available_covariances`).
        threshold: Maximum fraction of failed bootstrap fits.
        same_cov: One covariance matrix shared by all groups.
        REML: Restricted (``True``) or full maximum likelihood.
        n_samples: Number of bootstrap samples.
    """

    kind: ClassVar[str] = "approxbayes"
    label: ClassVar[str] = "Approximate Bayes"

    n_samples: int = 20

    def __post_init__(self) -> None:
        super().__post_init__()
        _check_positive_int(self.n_samples, "n_samples")


@dataclass(frozen=True)
class MethodCondMean(_MMRMMethod):
    """Conditional mean imputation with bootstrap or jackknife resampling.

    ``n_samples`` is the number of bootstrap samples and must be left
    as ``None`` for ``type="jackknife"``, where the number of samples
    is fixed by the number of subjects.
    """

    kind: ClassVar[str] = "condmean"
    label: ClassVar[str] = "Conditional Mean"

    n_samples: int | None = None
    type: str = "bootstrap"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.type not in _CONDMEAN_TYPES:
            msg = f"'type' must be one of {_CONDMEAN_TYPES}, got {self.type!r}."
            raise ValueError(msg)
        if self.type == "bootstrap":
            _check_positive_int(self.n_samples, "n_samples")
        elif self.n_samples is not None:
            msg = "'n_samples' must be None when type='jackknife'."
            raise ValueError(msg)


def method_bayes(
    burn_in: int = 200,
    burn_between: int = 50,
    same_cov: bool = True,
    n_samples: int = 20,
    verbose: bool = True,
    seed: int | None = None,
) -> MethodBayes:
    """Configure Bayesian MI based on MCMC sampling."""
    return MethodBayes(
        burn_in=burn_in,
        burn_between=burn_between,
        same_cov=same_cov,
        n_samples=n_samples,
        verbose=verbose,
        seed=seed,
    )


def method_approxbayes(
    covariance: str = "us",
    threshold: float = 0.01,
    same_cov: bool = True,
    REML: bool = True,
    n_samples: int = 20,
) -> MethodApproxBayes:
    """Configure approximate Bayesian MI based on bootstrapping."""
    return MethodApproxBayes(
        covariance=covariance,
        threshold=threshold,
        same_cov=same_cov,
        REML=REML,
        n_samples=n_samples,
    )


def method_condmean(
    covariance: str = "us",
    threshold: float = 0.01,
    same_cov: bool = True,
    REML: bool = True,
    n_samples: int | None = None,
    type: str = "bootstrap",
) -> MethodCondMean:
    """Configure conditional mean imputation."""
    return MethodCondMean(
        covariance=covariance,
        threshold=threshold,
        same_cov=same_cov,
        REML=REML,
        n_samples=n_samples,
        type=type,
    )


__all__ = [
    "Method",
    "MethodApproxBayes",
    "MethodBayes",
    "MethodCondMean",
    "method_approxbayes",
    "method_bayes",
    "method_condmean",
]
