"""Tests for polars data and ICE tables at the LongData boundary."""

import numpy as np
import pytest
from _simulate import ice_table, simulate_data

from longimpute import LongData, draws, method_condmean, set_vars

pl = pytest.importorskip("polars")


def _data():
    data = simulate_data(n_subjects=12, missing_rate=0.0)
    data["visit"] = data["visit"].astype(str)
    return data


class TestPolarsData:
    def test_eager_frame(self):
        longdata = LongData(pl.from_pandas(_data()), set_vars(covariates=["age"]))
        assert len(longdata) == 12
        assert longdata.visits == ("visit_1", "visit_2", "visit_3", "visit_4")

    def test_lazy_frame(self):
        longdata = LongData(pl.from_pandas(_data()).lazy(), set_vars(covariates=["age"]))
        assert len(longdata) == 12

    def test_only_mapped_columns_converted(self):
        frame = pl.from_pandas(_data()).with_columns(pl.lit("free text").alias("notes"))
        out = LongData(frame, set_vars(covariates=["age"])).get_data()
        assert "notes" not in out.columns
        assert "site" not in out.columns

    def test_string_covariate_becomes_categorical(self):
        longdata = LongData(pl.from_pandas(_data()), set_vars(covariates=["site"]))
        out = longdata.get_data(["1", "3"])
        assert list(out["site"].cat.categories) == ["north", "south"]

    def test_missing_mapped_column(self):
        frame = pl.from_pandas(_data()).drop("age")
        with pytest.raises(ValueError, match=r"Columns \['age'\] not found in 'data'"):
            LongData(frame, set_vars(covariates=["age"]))

    def test_rejects_other_types(self):
        with pytest.raises(TypeError, match="'data' must be a pandas or polars DataFrame"):
            LongData({"subjid": ["1"]}, set_vars())


class TestPolarsIce:
    def test_ice_table(self):
        ice = pl.from_pandas(ice_table([("3", "visit_2", "JR")]))
        longdata = LongData(_data(), set_vars()).set_strategies(ice)
        assert longdata.strategies["3"] == "JR"
        assert not longdata.is_mar.all()

    def test_rejects_other_types(self):
        longdata = LongData(_data(), set_vars())
        with pytest.raises(TypeError, match="'data_ice'"):
            longdata.set_strategies([("3", "visit_2", "JR")])


class TestPolarsDraws:
    def test_matches_pandas(self):
        data = _data()
        vars = set_vars(covariates=["age"])
        method = method_condmean(covariance="cs", type="jackknife")
        from_polars = draws(pl.from_pandas(data), None, vars, method)
        from_pandas = draws(data, None, vars, method)
        assert len(from_polars.samples) == len(from_pandas.samples)
        np.testing.assert_allclose(
            from_polars.samples[0].beta, from_pandas.samples[0].beta, rtol=1e-8
        )
