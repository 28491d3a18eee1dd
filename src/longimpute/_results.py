"""Value types handed from the draws engine to the imputation stage.

* :class:`SampleSingle` — one parameter sample (or a failed fit).
* :class:`SampleList` — the ordered, unnamed collection of samples.
* :class:`Draws` — samples plus the data, method, formula and failure
  count that produced them.

Every invariant is checked in ``__post_init__``: an instance is either
valid or construction raises ``ValueError``.  ``to_dict`` gives a
JSON-ready view with arrays as lists; the data provider and the
sampler fit are left out of it.
"""

from __future__ import annotations

import numbers
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, fields, replace
from typing import Any, overload

import numpy as np

from .formula import validate_formula
from .longdata import LongData
from .mcmc import MCMCFit
from .methods import Method, MethodBayes, MethodCondMean

# ------------------------------------------------------------------ #
# Field access
# ------------------------------------------------------------------ #


class _FieldAccess:
    """``obj["beta"]``, ``obj.get("fit")`` and ``"sigma" in obj``.

    Only dataclass fields are reachable this way; a miss raises
    ``KeyError`` (or returns the default for :meth:`get`).
    """

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in {f.name for f in fields(self)}  # type: ignore[arg-type]

    def __getitem__(self, key: str) -> Any:
        if key not in self:
            raise KeyError(key)
        return getattr(self, key)

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key) if key in self else default


def _as_list(arr: np.ndarray | None) -> list | None:
    return None if arr is None else arr.tolist()


# ------------------------------------------------------------------ #
# SampleSingle
# ------------------------------------------------------------------ #


def _as_ids(value: Any, what: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        msg = f"'{what}' must be a sequence of subject ids, got {type(value).__name__}."
        raise ValueError(msg)
    ids = tuple(str(i) for i in value)
    if len(ids) <= 1:
        msg = f"'{what}' must contain more than one subject id, got {len(ids)}."
        raise ValueError(msg)
    return ids


@dataclass(frozen=True)
class SampleSingle(_FieldAccess):
    """Parameter estimates from one fit, or the record of a failed fit.

    Attributes:
        ids: Subject ids of the data pool the sample stands for.
        failed: Whether the fit failed.  A failed sample carries no
            estimates.
        beta: Fixed-effect coefficients; finite, 1-D.
        sigma: Group level → ``(n_visits, n_visits)`` covariance
            matrix; non-empty.
        theta: Unconstrained covariance parameters of the fit.  Absent
            for posterior draws, which have no optimiser state.
        ids_samp: Subject ids actually fitted, with duplicates for a
            bootstrap resample.  Defaults to ``ids``.
    """

    ids: tuple[str, ...]
    failed: bool
    beta: np.ndarray | None = None
    sigma: dict[str, np.ndarray] | None = None
    theta: np.ndarray | None = None
    ids_samp: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "ids", _as_ids(self.ids, "ids"))
        ids_samp = self.ids if self.ids_samp is None else _as_ids(self.ids_samp, "ids_samp")
        object.__setattr__(self, "ids_samp", ids_samp)

        if not isinstance(self.failed, (bool, np.bool_)):
            msg = f"'failed' must be True or False, got {self.failed!r}."
            raise ValueError(msg)
        object.__setattr__(self, "failed", bool(self.failed))

        if self.failed:
            present = [n for n in ("beta", "sigma", "theta") if getattr(self, n) is not None]
            if present:
                msg = f"A failed sample must not carry estimates; got {present}."
                raise ValueError(msg)
            return

        if self.beta is None:
            msg = "A successful sample needs 'beta'."
            raise ValueError(msg)
        beta = np.asarray(self.beta, dtype=float)
        if beta.ndim != 1 or beta.size == 0 or not np.all(np.isfinite(beta)):
            msg = "'beta' must be a non-empty 1-D vector without missing values."
            raise ValueError(msg)
        object.__setattr__(self, "beta", beta)

        if not isinstance(self.sigma, Mapping) or len(self.sigma) == 0:
            msg = "A successful sample needs 'sigma' as a non-empty mapping of group → matrix."
            raise ValueError(msg)
        sigma: dict[str, np.ndarray] = {}
        for name, mat in self.sigma.items():
            if not isinstance(name, str) or not name:
                msg = f"'sigma' keys must be group names, got {name!r}."
                raise ValueError(msg)
            arr = np.asarray(mat, dtype=float)
            if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
                msg = f"sigma['{name}'] must be a square matrix, got shape {arr.shape}."
                raise ValueError(msg)
            sigma[name] = arr
        object.__setattr__(self, "sigma", sigma)

        if self.theta is not None:
            theta = np.asarray(self.theta, dtype=float)
            if theta.ndim != 1:
                msg = f"'theta' must be a 1-D vector, got shape {theta.shape}."
                raise ValueError(msg)
            object.__setattr__(self, "theta", theta)

    def to_dict(self) -> dict[str, Any]:
        sigma = None if self.sigma is None else {k: v.tolist() for k, v in self.sigma.items()}
        return {
            "ids": list(self.ids),
            "failed": self.failed,
            "beta": _as_list(self.beta),
            "sigma": sigma,
            "theta": _as_list(self.theta),
            "ids_samp": list(self.ids_samp or self.ids),
        }


# ------------------------------------------------------------------ #
# SampleList
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SampleList(Sequence):
    """Immutable, ordered, unnamed collection of :class:`SampleSingle`.

    For drivers that include the original-data fit, index 0 is that
    fit.
    """

    samples: tuple[SampleSingle, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.samples, Mapping):
            msg = "A sample list must be an unnamed sequence, not a mapping."
            raise ValueError(msg)
        samples = tuple(self.samples)
        for i, sample in enumerate(samples):
            if not isinstance(sample, SampleSingle):
                msg = f"Sample {i} is a {type(sample).__name__}, expected SampleSingle."
                raise ValueError(msg)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return len(self.samples)

    @overload
    def __getitem__(self, index: int) -> SampleSingle: ...

    @overload
    def __getitem__(self, index: slice) -> SampleList: ...

    def __getitem__(self, index: int | slice) -> SampleSingle | SampleList:
        if isinstance(index, slice):
            return SampleList(self.samples[index])
        return self.samples[index]

    def __iter__(self) -> Iterator[SampleSingle]:
        return iter(self.samples)

    @property
    def n_failed(self) -> int:
        return sum(s.failed for s in self.samples)

    def to_dict(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.samples]


# ------------------------------------------------------------------ #
# Draws
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Draws(_FieldAccess):
    """Validated output of :func:`~longimpute.draws`.

    Attributes:
        data: The :class:`~longimpute.longdata.LongData` the samples
            were drawn from (referenced, not copied).
        method: Method configuration used.
        samples: Parameter samples; none of them failed.
        formula: Fixed-effects model formula.
        n_failures: Failed resampling attempts that were discarded.
            Always ``0`` for the jackknife and the sampler, where any
            failure is fatal.
        fit: Sampler handle, present for Bayesian MI only.
    """

    data: LongData
    method: Method
    samples: SampleList
    formula: str
    n_failures: int | None = None
    fit: MCMCFit | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.data, LongData):
            msg = f"'data' must be a LongData object, got {type(self.data).__name__}."
            raise ValueError(msg)
        if not isinstance(self.method, Method) or type(self.method) is Method:
            msg = f"'method' must be a method configuration, got {type(self.method).__name__}."
            raise ValueError(msg)
        if not isinstance(self.samples, SampleList):
            msg = f"'samples' must be a SampleList, got {type(self.samples).__name__}."
            raise ValueError(msg)
        if self.n_failures is not None and (
            isinstance(self.n_failures, bool)
            or not isinstance(self.n_failures, numbers.Real)
        ):
            msg = f"'n_failures' must be a number or None, got {self.n_failures!r}."
            raise ValueError(msg)
        if self.fit is not None and not isinstance(self.fit, MCMCFit):
            msg = f"'fit' must be an MCMCFit or None, got {type(self.fit).__name__}."
            raise ValueError(msg)
        is_bayes = isinstance(self.method, MethodBayes)
        if is_bayes and self.fit is None:
            msg = "Bayesian draws must carry the sampler fit."
            raise ValueError(msg)
        if not is_bayes and self.fit is not None:
            msg = "Only Bayesian draws carry a sampler fit."
            raise ValueError(msg)
        validate_formula(self.formula)

    @property
    def imputation_type(self) -> str:
        """``"condmean"`` for conditional mean imputation, else ``"random"``."""
        return "condmean" if isinstance(self.method, MethodCondMean) else "random"

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": {"kind": self.method.kind, **self.method.to_dict()},
            "samples": self.samples.to_dict(),
            "formula": self.formula,
            "n_failures": None if self.n_failures is None else int(self.n_failures),
        }


# ------------------------------------------------------------------ #
# Builders
# ------------------------------------------------------------------ #


def as_sample_single(
    ids: Iterable[str],
    beta: Any = None,
    sigma: Mapping[str, Any] | None = None,
    theta: Any = None,
    failed: bool = False,
    ids_samp: Iterable[str] | None = None,
) -> SampleSingle:
    """Build a validated :class:`SampleSingle`.

    ``ids_samp`` defaults to ``ids``.
    """
    return SampleSingle(
        ids=tuple(ids),
        failed=failed,
        beta=beta,
        sigma=None if sigma is None else dict(sigma),
        theta=theta,
        ids_samp=None if ids_samp is None else tuple(ids_samp),
    )


def as_sample_list(*samples: SampleSingle | Iterable[SampleSingle]) -> SampleList:
    """Build a :class:`SampleList` from samples or from one iterable of them."""
    if len(samples) == 1 and not isinstance(samples[0], SampleSingle):
        only = samples[0]
        if isinstance(only, Mapping):
            msg = "A sample list must be an unnamed sequence, not a mapping."
            raise ValueError(msg)
        if not isinstance(only, Iterable):
            msg = f"Expected SampleSingle objects, got {type(only).__name__}."
            raise ValueError(msg)
        return SampleList(tuple(only))
    return SampleList(tuple(samples))  # type: ignore[arg-type]


def as_draws(
    method: Method,
    samples: SampleList,
    data: LongData,
    formula: str,
    n_failures: int | None = None,
    fit: MCMCFit | None = None,
) -> Draws:
    """Build a validated :class:`Draws` result."""
    return Draws(
        data=data,
        method=method,
        samples=samples,
        formula=formula,
        n_failures=n_failures,
        fit=fit,
    )


def with_ids(sample: SampleSingle, ids: Iterable[str]) -> SampleSingle:
    """Copy of *sample* relabelled to the data pool *ids*."""
    return replace(sample, ids=tuple(ids))


__all__ = [
    "Draws",
    "SampleList",
    "SampleSingle",
    "as_draws",
    "as_sample_list",
    "as_sample_single",
    "with_ids",
]
