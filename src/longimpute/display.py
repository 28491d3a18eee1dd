"""Plain-text summary of a :class:`~longimpute._results.Draws` object."""

from __future__ import annotations

from ._results import Draws
from .methods import MethodCondMean


def format_draws(draws: Draws) -> str:
    """Return a multi-line summary of *draws*.

    For conditional mean imputation the sample count is shown as
    ``"1 + k"``: the original-data fit plus *k* resamples.
    """
    n_samp = len(draws.samples)
    if isinstance(draws.method, MethodCondMean):
        n_samp_str = f"1 + {n_samp - 1}"
    else:
        n_samp_str = str(n_samp)

    args = draws.method.to_dict()
    if args.get("n_samples", 0) is None:
        args["n_samples"] = "None"
    meth_args = [f"    {name}: {value}" for name, value in args.items()]

    lines = [
        "",
        "Draws Object",
        "------------",
        f"Number of Samples: {n_samp_str}",
        f"Number of Failed Samples: {draws.n_failures}",
        f"Model Formula: {draws.formula}",
        f"Imputation Type: {draws.imputation_type}",
        "Method:",
        f"    Type: {draws.method.label}",
        *meth_args,
        "",
    ]
    return "\n".join(lines)


def print_draws(draws: Draws) -> None:
    """Print :func:`format_draws` to stdout."""
    print(format_draws(draws))


__all__ = ["format_draws", "print_draws"]
