"""Fixed-effects formula and design-matrix helpers.

The imputation model is ``outcome ~ 1 + visit + group [+ covariates]``.
The group-by-visit interaction is *not* added by default; request it
through the covariates (``"visit*group"``).

Design matrices are built with Patsy.  Because the data provider
stores ``visit`` and ``group`` as pandas categoricals whose categories
survive row subsetting, every id subset (bootstrap or jackknife)
yields the same columns in the same order, even when a level happens
to be absent from the subset.
"""

from __future__ import annotations

import pandas as pd
import patsy

from .vars import Vars


def as_simple_formula(vars: Vars) -> str:
    """Return the fixed-effects formula implied by *vars*."""
    terms = ["1", vars.visit, vars.group, *vars.covariates]
    return f"{vars.outcome} ~ {' + '.join(terms)}"


def validate_formula(formula: str) -> patsy.ModelDesc:
    """Parse *formula* and check it has exactly one response term.

    Raises:
        ValueError: If *formula* is not a string, does not parse, or
            has no (or more than one) left-hand-side term.
    """
    if not isinstance(formula, str):
        msg = f"'formula' must be a string, got {type(formula).__name__}."
        raise ValueError(msg)
    try:
        desc = patsy.ModelDesc.from_formula(formula)
    except patsy.PatsyError as exc:
        msg = f"Invalid model formula {formula!r}: {exc}"
        raise ValueError(msg) from exc
    if len(desc.lhs_termlist) != 1:
        msg = f"Model formula {formula!r} must have exactly one response term."
        raise ValueError(msg)
    return desc


def _split_formula(formula: str) -> tuple[str, str]:
    validate_formula(formula)
    lhs, rhs = formula.split("~", 1)
    return lhs.strip(), rhs.strip()


def as_model_df(data: pd.DataFrame, formula: str) -> pd.DataFrame:
    """Response column followed by the design matrix columns.

    The response may contain ``NaN`` (it is taken from *data* as-is);
    missing values in the right-hand-side variables raise.

    Args:
        data: Subject-visit rows.
        formula: Model formula, e.g. from :func:`as_simple_formula`.

    Returns:
        DataFrame with the response first, indexed like *data*.
    """
    response, rhs = _split_formula(formula)
    if response not in data.columns:
        msg = f"Response '{response}' not found in data."
        raise ValueError(msg)
    design = patsy.dmatrix(rhs, data, NA_action="raise", return_type="dataframe")
    design.index = data.index
    y = data[response].astype(float)
    return pd.concat([y, design], axis=1)


__all__ = ["as_model_df", "as_simple_formula", "validate_formula"]
