"""Runtime configuration for the longimpute package.

Two pieces of process-wide state live here.

**Worker count** for the jackknife driver, the only driver whose
leave-one-out fits are independent of each other.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_n_jobs`.
    2. The ``LONGIMPUTE_N_JOBS`` environment variable.
    3. The default of ``1`` (sequential).

``-1`` means "all cores", as in joblib.

**Random generator** shared by bootstrap subject sampling and the MCMC
sampler.  :func:`set_seed` replaces it; the Bayes driver calls it when
``method_bayes(seed=...)`` is set.  Bootstrap draws are only
reproducible when the caller seeds this generator first.

Examples:
    Run jackknife folds on four workers from the shell::

        export LONGIMPUTE_N_JOBS=4

    Or programmatically, and seed the resampling::

        import longimpute
        longimpute.set_n_jobs(4)
        longimpute.set_seed(2024)
"""

from __future__ import annotations

import os

import numpy as np

_ENV_N_JOBS = "LONGIMPUTE_N_JOBS"

# Sentinel indicating "no programmatic override has been set".
_n_jobs_override: int | None = None

_rng: np.random.Generator = np.random.default_rng()


def _parse_n_jobs(value: object) -> int:
    try:
        n_jobs = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        msg = f"n_jobs must be an integer, got {value!r}."
        raise ValueError(msg) from None
    if n_jobs == 0 or n_jobs < -1:
        msg = f"n_jobs must be a positive integer or -1, got {n_jobs}."
        raise ValueError(msg)
    return n_jobs


def get_n_jobs() -> int:
    """Return the active jackknife worker count.

    Resolution order:
        1. Value set by :func:`set_n_jobs`.
        2. ``LONGIMPUTE_N_JOBS`` environment variable.
        3. ``1``.

    Raises:
        ValueError: If the environment variable holds an invalid value.
    """
    if _n_jobs_override is not None:
        return _n_jobs_override

    env = os.environ.get(_ENV_N_JOBS, "").strip()
    if env:
        return _parse_n_jobs(env)

    return 1


def set_n_jobs(n_jobs: int | str | None) -> None:
    """Override the jackknife worker count.

    Args:
        n_jobs: Positive integer, ``-1`` for all cores, or ``None`` /
            ``"auto"`` to restore the default resolution order.

    Raises:
        ValueError: If *n_jobs* is not a valid worker count.
    """
    global _n_jobs_override
    if n_jobs is None or (isinstance(n_jobs, str) and n_jobs.strip().lower() == "auto"):
        _n_jobs_override = None
        return
    _n_jobs_override = _parse_n_jobs(n_jobs)


def set_seed(seed: int | None) -> None:
    """Replace the process-wide random generator.

    Args:
        seed: Seed for :func:`numpy.random.default_rng`.  ``None``
            draws fresh entropy from the OS.
    """
    global _rng
    _rng = np.random.default_rng(seed)


def get_rng() -> np.random.Generator:
    """Return the process-wide random generator."""
    return _rng
