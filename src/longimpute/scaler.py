"""Centre/scale transform for the MCMC design matrix and response.

The sampler runs on standardised data and its draws are mapped back.
With response scale (m_y, s_y) and covariate scales (m_j, s_j), the
scaled model

    (y − m_y)/s_y = b₀ + Σ_j b_j (x_j − m_j)/s_j + ε*

corresponds to the original-scale model with

    β_j = s_y · b_j / s_j                       (j ≥ 1)
    β₀  = m_y + s_y · b₀ − Σ_j β_j m_j
    Σ   = s_y² · Σ*

The intercept column and binary (0/1) dummy columns keep m = 0,
s = 1, so treatment-coded factors stay interpretable.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def _is_binary(values: np.ndarray) -> bool:
    observed = values[np.isfinite(values)]
    return bool(np.all(np.isin(observed, (0.0, 1.0))))


class Scaler:
    """Fitted centre/scale transform for a model frame.

    Args:
        model_df: Response in the first column (``NaN`` allowed), the
            design matrix in the rest, including an ``"Intercept"``
            column of ones.

    Raises:
        ValueError: If a column is non-numeric.
    """

    def __init__(self, model_df: pd.DataFrame) -> None:
        values = model_df.to_numpy(dtype=float)
        n_cols = values.shape[1]
        self.columns = list(model_df.columns)
        self.centre = np.zeros(n_cols)
        self.scales = np.ones(n_cols)

        for j in range(n_cols):
            col = values[:, j]
            if j > 0 and _is_binary(col):
                continue
            centre = float(np.nanmean(col))
            scale = float(np.nanstd(col, ddof=1)) if np.sum(np.isfinite(col)) > 1 else 0.0
            self.centre[j] = centre
            self.scales[j] = scale if np.isfinite(scale) and scale > 0 else 1.0

        # Columns of ones stay untouched whatever their name.
        self._intercept = [
            j for j in range(1, n_cols) if np.all(values[:, j] == 1.0)
        ]
        for j in self._intercept:
            self.centre[j] = 0.0
            self.scales[j] = 1.0

    def scale(self, model_df: pd.DataFrame) -> pd.DataFrame:
        """Apply the fitted transform column by column."""
        values = (model_df.to_numpy(dtype=float) - self.centre) / self.scales
        return pd.DataFrame(values, columns=model_df.columns, index=model_df.index)

    def _intercept_index(self) -> int:
        if not self._intercept:
            msg = "Unscaling beta requires an intercept column in the design matrix."
            raise ValueError(msg)
        # Column 0 of the frame is the response.
        return self._intercept[0] - 1

    def unscale_beta(self, beta: np.ndarray) -> np.ndarray:
        """Map coefficients of the scaled model back to the original scale."""
        beta = np.asarray(beta, dtype=float)
        m_y, s_y = self.centre[0], self.scales[0]
        out = s_y * beta / self.scales[1:]
        i0 = self._intercept_index()
        mask = np.ones(beta.size, dtype=bool)
        mask[i0] = False
        out[i0] = m_y + s_y * beta[i0] - np.sum(out[mask] * self.centre[1:][mask])
        return out

    def scale_beta(self, beta: np.ndarray) -> np.ndarray:
        """Inverse of :meth:`unscale_beta`."""
        beta = np.asarray(beta, dtype=float)
        m_y, s_y = self.centre[0], self.scales[0]
        out = beta * self.scales[1:] / s_y
        i0 = self._intercept_index()
        mask = np.ones(beta.size, dtype=bool)
        mask[i0] = False
        out[i0] = (beta[i0] + np.sum(beta[mask] * self.centre[1:][mask]) - m_y) / s_y
        return out

    def unscale_sigma(self, sigma: np.ndarray) -> np.ndarray:
        return np.asarray(sigma, dtype=float) * self.scales[0] ** 2

    def scale_sigma(self, sigma: np.ndarray) -> np.ndarray:
        return np.asarray(sigma, dtype=float) / self.scales[0] ** 2


__all__ = ["Scaler"]
