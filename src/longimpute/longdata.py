"""Longitudinal data provider.

:class:`LongData` wraps the subject-visit table and answers the queries
the draws drivers need:

* the ordered subject ids and a stratified bootstrap resample of them,
* the rows of any id subset (duplicates allowed), optionally with the
  non-MAR outcomes and/or the missing outcomes dropped,
* the per-row MAR mask derived from the ICE table.

Lifecycle::

    longdata = LongData(data, vars)      # validate, sort, categorise
    longdata.set_strategies(data_ice)    # once; registers the ICEs
    longdata.get_data(ids, ...)          # read-only from here on

The ICE table is applied exactly once.  After that the provider is
read-only, which is what lets the jackknife driver share it between
worker threads.

MAR mask
~~~~~~~~
For a subject whose ICE record says visit *v* with strategy *s*, every
visit at or after *v* is *post-ICE*.  Post-ICE rows are masked out of
the model fit (``is_mar == False``) unless *s* is ``"MAR"``.  Subjects
without a record are entirely MAR.  Masked outcomes are only hidden
from the fit, never deleted from the stored table.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from types import MappingProxyType

import numpy as np
import pandas as pd
from typing_extensions import Self

from ._config import get_rng
from ._typing import DataFrameLike
from .vars import Vars

try:
    import polars as pl
except ImportError:
    pl = None

logger = logging.getLogger(__name__)

MAR_STRATEGY = "MAR"


def _as_str_categorical(values: pd.Series) -> pd.Series:
    """Categorical with string categories, keeping existing level order."""
    if isinstance(values.dtype, pd.CategoricalDtype):
        cats = [str(c) for c in values.cat.categories]
        if len(set(cats)) != len(cats):
            msg = f"Column '{values.name}' has levels that collide as strings."
            raise ValueError(msg)
        return pd.Series(
            pd.Categorical(
                values.astype(object).map(str, na_action="ignore"),
                categories=cats,
                ordered=values.cat.ordered,
            ),
            index=values.index,
            name=values.name,
        )
    uniq = list(pd.unique(values.dropna()))
    try:
        uniq = sorted(uniq)
    except TypeError:
        pass  # mixed types: keep order of appearance
    cats = list(dict.fromkeys(str(u) for u in uniq))
    return pd.Series(
        pd.Categorical(values.astype(object).map(str, na_action="ignore"), categories=cats),
        index=values.index,
        name=values.name,
    )


def _as_pandas_frame(obj: DataFrameLike, name: str, columns: Iterable[str]) -> pd.DataFrame:
    """Return *obj* as a pandas frame.

    Polars input (eager or lazy) is narrowed to the *columns* it has
    before conversion, so unrelated columns never reach pandas.
    """
    if isinstance(obj, pd.DataFrame):
        return obj
    if pl is not None and isinstance(obj, (pl.DataFrame, pl.LazyFrame)):
        wanted = set(columns)
        frame = obj.select([c for c in obj.collect_schema().names() if c in wanted])
        if isinstance(frame, pl.LazyFrame):
            frame = frame.collect()
        return frame.to_pandas()
    kinds = "a pandas or polars DataFrame" if pl is not None else "a pandas DataFrame"
    msg = f"'{name}' must be {kinds}, got {type(obj).__name__}."
    raise TypeError(msg)


class LongData:
    """Validated, sorted view of longitudinal trial data.

    Args:
        data: One row per subject per visit.  Missing outcomes must be
            ``NaN`` rather than absent rows.
        vars: Column-name mapping from :func:`~longimpute.vars.set_vars`.

    Raises:
        ValueError: On missing columns, missing covariate / design
            values, non-numeric outcome, or a subject without exactly
            one row per visit.
    """

    def __init__(self, data: DataFrameLike, vars: Vars) -> None:
        self._vars = vars

        design = [vars.subjid, vars.visit, vars.group]
        others = [
            c
            for c in dict.fromkeys((*vars.covariate_columns, *vars.strata))
            if c not in design and c != vars.outcome
        ]
        required = [*design, vars.outcome, *others]
        df = _as_pandas_frame(data, "data", required).copy()
        missing_cols = [c for c in required if c not in df.columns]
        if missing_cols:
            msg = f"Columns {missing_cols} not found in 'data'."
            raise ValueError(msg)

        for col in design:
            if df[col].isna().any():
                msg = f"Column '{col}' contains missing values."
                raise ValueError(msg)
            df[col] = _as_str_categorical(df[col])
        df[vars.subjid] = df[vars.subjid].cat.remove_unused_categories()

        if others and df[others].isna().any().any():
            bad = [c for c in others if df[c].isna().any()]
            msg = f"Missing values are not allowed in covariates/strata: {bad}."
            raise ValueError(msg)
        # Fixed levels keep the design columns identical for every id subset.
        for col in others:
            if pd.api.types.is_bool_dtype(df[col]) or not pd.api.types.is_numeric_dtype(
                df[col]
            ):
                df[col] = _as_str_categorical(df[col])

        try:
            df[vars.outcome] = pd.to_numeric(df[vars.outcome]).astype(float)
        except (TypeError, ValueError):
            msg = f"Outcome column '{vars.outcome}' must be numeric."
            raise ValueError(msg) from None

        if df.duplicated([vars.subjid, vars.visit]).any():
            msg = "'data' must have exactly one row per subject and visit."
            raise ValueError(msg)
        n_visits = len(df[vars.visit].cat.categories)
        per_subject = df.groupby(vars.subjid, observed=True).size()
        if (per_subject != n_visits).any():
            incomplete = list(per_subject.index[per_subject != n_visits][:5])
            msg = (
                f"Every subject needs one row for each of the {n_visits} visits; "
                f"incomplete subjects include {incomplete}. Insert the missing "
                "rows with NaN outcomes first."
            )
            raise ValueError(msg)

        df = df.sort_values(
            [vars.subjid, vars.visit],
            key=lambda s: s.cat.codes,
        ).reset_index(drop=True)

        self._data = df
        self._ids: tuple[str, ...] = tuple(df[vars.subjid].cat.categories)
        self._visits: tuple[str, ...] = tuple(df[vars.visit].cat.categories)
        self._rows: dict[str, np.ndarray] = {
            str(k): np.asarray(v)
            for k, v in df.groupby(vars.subjid, observed=True).indices.items()
        }
        self._is_mar = np.ones(len(df), dtype=bool)
        self._is_post_ice = np.zeros(len(df), dtype=bool)
        self._strategies: dict[str, str] = {sid: MAR_STRATEGY for sid in self._ids}
        self._ice_visits: dict[str, str] = {}
        self._strategies_set = False

        first = df.groupby(vars.subjid, observed=True)[list(vars.strata)].first()
        strata_keys = [tuple(row) for row in first.itertuples(index=False)]
        self._strata: dict[tuple, list[str]] = {}
        for sid, key in zip(first.index.astype(str), strata_keys):
            self._strata.setdefault(key, []).append(sid)

    # ---- Read-only views -------------------------------------------

    @property
    def vars(self) -> Vars:
        return self._vars

    @property
    def ids(self) -> tuple[str, ...]:
        """Subject ids in level order."""
        return self._ids

    @property
    def visits(self) -> tuple[str, ...]:
        return self._visits

    @property
    def n_visits(self) -> int:
        return len(self._visits)

    @property
    def group_levels(self) -> tuple[str, ...]:
        return tuple(self._data[self._vars.group].cat.categories)

    @property
    def is_mar(self) -> pd.Series:
        """Per subject-visit MAR mask aligned with :meth:`get_data` (all ids)."""
        return pd.Series(self._is_mar.copy(), name="is_mar")

    @property
    def is_post_ice(self) -> pd.Series:
        return pd.Series(self._is_post_ice.copy(), name="is_post_ice")

    @property
    def strategies(self) -> Mapping[str, str]:
        """Subject id → imputation strategy (``"MAR"`` when no ICE)."""
        return MappingProxyType(self._strategies)

    @property
    def ice_visits(self) -> Mapping[str, str]:
        """Subject id → first visit affected by the ICE."""
        return MappingProxyType(self._ice_visits)

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return (
            f"LongData(n_subjects={len(self._ids)}, n_visits={self.n_visits}, "
            f"n_ice={len(self._ice_visits)})"
        )

    # ---- Queries ---------------------------------------------------

    def sample_ids(self, rng: np.random.Generator | None = None) -> list[str]:
        """Stratified with-replacement resample of subject ids.

        Within every stratum (combination of ``vars.strata`` values)
        as many subjects are drawn as the stratum contains, so stratum
        sizes are preserved.

        Args:
            rng: Generator to draw from.  Defaults to the process-wide
                generator (see :func:`~longimpute.set_seed`).
        """
        rng = get_rng() if rng is None else rng
        sampled: list[str] = []
        for members in self._strata.values():
            picks = rng.integers(0, len(members), size=len(members))
            sampled.extend(members[i] for i in picks)
        return sampled

    def get_data(
        self,
        ids: Iterable[str] | None = None,
        nmar_remove: bool = False,
        na_remove: bool = False,
    ) -> pd.DataFrame:
        """Return the rows of the given subjects, in the order of *ids*.

        Args:
            ids: Subject ids; duplicates are allowed (bootstrap).  Each
                replicate of a repeated subject is relabelled
                ``"<id>_<k>"`` so that the model sees distinct subjects.
                ``None`` means all subjects.
            nmar_remove: Drop rows whose MAR mask is false.
            na_remove: Drop rows with a missing outcome.

        Raises:
            ValueError: If *ids* contains unknown subjects.
        """
        ids = list(self._ids) if ids is None else [str(i) for i in ids]
        unknown = sorted({i for i in ids if i not in self._rows})
        if unknown:
            msg = f"Unknown subject ids: {unknown[:5]}."
            raise ValueError(msg)

        positions = np.concatenate([self._rows[i] for i in ids]) if ids else np.empty(0, dtype=int)
        out = self._data.iloc[positions].copy()
        keep = np.ones(len(out), dtype=bool)
        if nmar_remove:
            keep &= self._is_mar[positions]
        if na_remove:
            keep &= out[self._vars.outcome].notna().to_numpy()

        subjid = self._vars.subjid
        counts = Counter(ids)
        if any(c > 1 for c in counts.values()):
            seen: Counter[str] = Counter()
            labels = []
            for sid in ids:
                seen[sid] += 1
                labels.append(f"{sid}_{seen[sid]}")
            n_rows = [len(self._rows[i]) for i in ids]
            out[subjid] = pd.Categorical(np.repeat(labels, n_rows), categories=labels)
        else:
            out[subjid] = out[subjid].cat.set_categories(ids)

        out = out.loc[keep].reset_index(drop=True)
        out[subjid] = out[subjid].cat.remove_unused_categories()
        return out

    # ---- Setup -----------------------------------------------------

    def set_strategies(self, data_ice: DataFrameLike | None = None) -> Self:
        """Register the ICE table (once) and derive the MAR mask.

        Args:
            data_ice: One row per subject with an ICE: subject id,
                first affected visit, and strategy name (columns named
                by ``vars.subjid``, ``vars.visit``, ``vars.strategy``).
                ``None`` or an empty table means no ICEs.

        Returns:
            ``self``, for chaining.

        Raises:
            RuntimeError: If strategies were already set.
            ValueError: If *data_ice* is malformed.
        """
        if self._strategies_set:
            msg = "Strategies have already been set for this LongData object."
            raise RuntimeError(msg)

        if data_ice is not None:
            v = self._vars
            ice = _as_pandas_frame(data_ice, "data_ice", (v.subjid, v.visit, v.strategy))
            if len(ice) > 0:
                self._apply_ice(ice)

        self._strategies_set = True
        return self

    def _apply_ice(self, ice: pd.DataFrame) -> None:
        v = self._vars
        missing_cols = [c for c in (v.subjid, v.visit, v.strategy) if c not in ice.columns]
        if missing_cols:
            msg = f"Columns {missing_cols} not found in 'data_ice'."
            raise ValueError(msg)

        if ice[[v.subjid, v.visit, v.strategy]].isna().any().any():
            msg = "'data_ice' must not contain missing values."
            raise ValueError(msg)

        sids = ice[v.subjid].astype(object).map(str)
        visits = ice[v.visit].astype(object).map(str)
        strategies = ice[v.strategy]

        if sids.duplicated().any():
            dup = sorted(set(sids[sids.duplicated()]))
            msg = (
                f"'data_ice' must have at most one row per subject; duplicated: {dup[:5]}."
            )
            raise ValueError(msg)
        unknown = sorted(set(sids) - set(self._ids))
        if unknown:
            msg = f"'data_ice' contains subjects not found in 'data': {unknown[:5]}."
            raise ValueError(msg)
        bad_visits = sorted(set(visits) - set(self._visits))
        if bad_visits:
            msg = (
                f"'data_ice' visits {bad_visits[:5]} are not levels of "
                f"'{v.visit}' ({list(self._visits)})."
            )
            raise ValueError(msg)
        for strategy in strategies:
            if not isinstance(strategy, str) or not strategy:
                msg = f"Strategies must be non-empty strings, got {strategy!r}."
                raise ValueError(msg)

        visit_codes = self._data[v.visit].cat.codes.to_numpy()
        for sid, visit, strategy in zip(sids, visits, strategies):
            rows = self._rows[sid]
            post = visit_codes[rows] >= self._visits.index(visit)
            self._is_post_ice[rows] = post
            self._is_mar[rows] = ~post if strategy != MAR_STRATEGY else True
            self._strategies[sid] = strategy
            self._ice_visits[sid] = visit

        logger.debug(
            "Registered %d ICEs; %d outcome cells masked as non-MAR",
            len(sids),
            int((~self._is_mar).sum()),
        )


__all__ = ["MAR_STRATEGY", "LongData"]
