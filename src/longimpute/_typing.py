"""Shared type aliases for the longimpute package."""

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Union

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    import polars as pl

# Array-like inputs accepted by the model-fitting primitives.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Subject-visit and ICE tables; polars frames are converted on entry.
DataFrameLike = Union[pd.DataFrame, "pl.DataFrame", "pl.LazyFrame"]

# Subject identifiers as handed around by the data provider.
IdList = Sequence[str]

# Group-level name -> (n_visits, n_visits) covariance matrix.
SigmaMap = Mapping[str, np.ndarray]
