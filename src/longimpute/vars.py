"""Column-name mapping for the longitudinal data and the ICE table."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


def _as_name_tuple(value: str | Sequence[str] | None, what: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = (value,)
    names = tuple(value)
    for name in names:
        if not isinstance(name, str) or not name:
            msg = f"'{what}' must contain non-empty strings, got {name!r}."
            raise ValueError(msg)
    return names


@dataclass(frozen=True)
class Vars:
    """Names of the key variables in ``data`` and ``data_ice``.

    Attributes:
        subjid: Subject id column (``data`` and ``data_ice``).
        visit: Visit column (``data`` and ``data_ice``).
        group: Treatment group column.
        outcome: Outcome column; may contain missing values.
        covariates: Model covariates.  Interactions are written
            ``"a*b"`` and passed through to the model formula.
        strata: Subject-level stratification variables for bootstrap
            sampling.  Defaults to ``(group,)``.
        strategy: Strategy column of ``data_ice``.
    """

    subjid: str = "subjid"
    visit: str = "visit"
    group: str = "group"
    outcome: str = "outcome"
    covariates: tuple[str, ...] = ()
    strata: tuple[str, ...] = ()
    strategy: str = "strategy"

    def __post_init__(self) -> None:
        for what in ("subjid", "visit", "group", "outcome", "strategy"):
            value = getattr(self, what)
            if not isinstance(value, str) or not value:
                msg = f"'{what}' must be a non-empty string, got {value!r}."
                raise ValueError(msg)
        object.__setattr__(
            self, "covariates", _as_name_tuple(self.covariates, "covariates")
        )
        strata = _as_name_tuple(self.strata, "strata")
        object.__setattr__(self, "strata", strata or (self.group,))

    @property
    def covariate_columns(self) -> tuple[str, ...]:
        """Plain column names referenced by the covariates (interactions split)."""
        cols: list[str] = []
        for term in self.covariates:
            for part in term.split("*"):
                part = part.strip()
                if part and part not in cols:
                    cols.append(part)
        return tuple(cols)


def set_vars(
    subjid: str = "subjid",
    visit: str = "visit",
    group: str = "group",
    outcome: str = "outcome",
    covariates: str | Sequence[str] | None = None,
    strata: str | Sequence[str] | None = None,
    strategy: str = "strategy",
) -> Vars:
    """Build a validated :class:`Vars` mapping.

    Raises:
        ValueError: If any name is empty or not a string.
    """
    return Vars(
        subjid=subjid,
        visit=visit,
        group=group,
        outcome=outcome,
        covariates=_as_name_tuple(covariates, "covariates"),
        strata=_as_name_tuple(strata, "strata"),
        strategy=strategy,
    )


__all__ = ["Vars", "set_vars"]
