"""
Tests for pqi_spatial.merge module.

Tests cover:
- Key normalization across integer, float and text representations
- Left-join semantics and the unmatched report by partition
- Duplicate-key detection
- Joining observations to unit polygons
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np

from pqi_spatial.errors import KeyCollisionError
from pqi_spatial.merge import attach_geometry, merge, normalize_key


class TestNormalizeKey:
    """Tests for normalize_key()."""

    def test_integer_keys_are_zero_padded(self):
        result = normalize_key(pd.Series([1001, 10001], name="zcta"))
        assert result.tolist() == ["01001", "10001"]

    def test_representations_agree(self):
        """Integers, integral floats and digit strings map to one key."""
        as_int = normalize_key(pd.Series([1001]))
        as_float = normalize_key(pd.Series([1001.0]))
        as_text = normalize_key(pd.Series([" 01001 "]))
        as_float_text = normalize_key(pd.Series(["1001.0"]))
        assert as_int.tolist() == as_float.tolist() == as_text.tolist() == as_float_text.tolist()

    def test_null_key_raises(self):
        with pytest.raises(ValueError, match="null"):
            normalize_key(pd.Series(["10001", None], name="zcta"))

    def test_non_integral_float_raises(self):
        with pytest.raises(ValueError, match="Non-integral"):
            normalize_key(pd.Series([10001.5]))

    def test_non_numeric_text_raises(self):
        with pytest.raises(ValueError, match="Non-numeric"):
            normalize_key(pd.Series(["1000A"]))


class TestMerge:
    """Tests for merge()."""

    def test_keeps_every_left_row_in_order(self, sample_pqi_df, sample_sdi_df):
        """PQI is multi-year and SDI is not: SDI is broadcast across years."""
        result = merge(sample_pqi_df, sample_sdi_df, "zcta", partition="year")

        assert len(result.data) == len(sample_pqi_df)
        assert result.data["year"].tolist() == sample_pqi_df["year"].tolist()
        assert result.join_columns == ("zcta",)
        row = result.data[(result.data["zcta"] == "10002") & (result.data["year"] == 2019)]
        assert row["sdi_score"].iloc[0] == 20.0

    def test_does_not_modify_inputs(self, sample_pqi_df, sample_sdi_df):
        before = sample_sdi_df.copy()
        merge(sample_pqi_df, sample_sdi_df, "zcta", partition="year")
        pd.testing.assert_frame_equal(sample_sdi_df, before)

    def test_unmatched_report_by_partition(self):
        left = pd.DataFrame({
            "zcta": ["10001", "10002", "10001", "10003"],
            "year": [2018, 2018, 2019, 2019],
            "pqi_rate": [1.0, 2.0, 3.0, 4.0],
        })
        right = pd.DataFrame({"zcta": [10001], "sdi_score": [50.0]})

        result = merge(left, right, "zcta", partition="year")

        report = result.unmatched.set_index("year")["n_unmatched"].to_dict()
        assert report == {2018: 1, 2019: 1}
        assert result.n_unmatched == 2
        assert result.unmatched_keys == ("10002", "10003")
        assert result.data["sdi_score"].isna().sum() == 2

    def test_unmatched_report_without_partition(self):
        left = pd.DataFrame({"zcta": ["10001", "10002"], "pqi_rate": [1.0, 2.0]})
        right = pd.DataFrame({"zcta": ["10001"], "sdi_score": [50.0]})

        result = merge(left, right, "zcta")

        assert result.unmatched["partition"].tolist() == ["all"]
        assert result.n_unmatched == 1

    def test_joins_on_partition_when_both_have_it(self):
        left = pd.DataFrame({"zcta": ["10001", "10001"], "year": [2018, 2019],
                             "pqi_rate": [1.0, 2.0]})
        right = pd.DataFrame({"zcta": ["10001", "10001"], "year": [2018, 2019],
                              "sdi_score": [40.0, 45.0]})

        result = merge(left, right, "zcta", partition="year")

        assert result.join_columns == ("zcta", "year")
        assert result.data["sdi_score"].tolist() == [40.0, 45.0]

    def test_duplicate_right_key_raises(self, sample_pqi_df):
        right = pd.DataFrame({"zcta": ["10001", "10001"], "sdi_score": [1.0, 2.0]})
        with pytest.raises(KeyCollisionError) as excinfo:
            merge(sample_pqi_df, right, "zcta", partition="year")
        assert excinfo.value.keys == ["10001"]

    def test_duplicate_left_key_within_partition_raises(self, sample_sdi_df):
        left = pd.DataFrame({"zcta": ["10001", "10001"], "year": [2019, 2019],
                             "pqi_rate": [1.0, 2.0]})
        with pytest.raises(KeyCollisionError):
            merge(left, sample_sdi_df, "zcta", partition="year")

    def test_keys_differing_only_in_type_collide(self):
        """'01001' and 1001 are the same unit after normalization."""
        right = pd.DataFrame({"zcta": ["01001", 1001], "sdi_score": [1.0, 2.0]})
        left = pd.DataFrame({"zcta": ["01001"], "pqi_rate": [1.0]})
        with pytest.raises(KeyCollisionError):
            merge(left, right, "zcta")

    def test_missing_key_column_raises(self, sample_pqi_df):
        with pytest.raises(ValueError, match="Key column"):
            merge(sample_pqi_df, pd.DataFrame({"zip": ["10001"]}), "zcta")


class TestAttachGeometry:
    """Tests for attach_geometry()."""

    def test_inner_join_reports_both_sides(self, chain_units):
        table = pd.DataFrame({"zcta": [1, 2, 7], "pqi_rate": [1.0, 2.0, 7.0]})

        result = attach_geometry(chain_units, table, "zcta")

        assert sorted(result.data["zcta"]) == ["00001", "00002"]
        assert result.units_without_observations == ("00003", "00004")
        assert result.observations_without_units == ("00007",)
        assert result.data.crs == chain_units.crs
        assert result.data.geometry.name == "geometry"

    def test_left_join_keeps_every_unit(self, chain_units):
        table = pd.DataFrame({"zcta": ["00001"], "pqi_rate": [1.0]})

        result = attach_geometry(chain_units, table, "zcta", how="left")

        assert len(result.data) == 4
        assert result.data["pqi_rate"].isna().sum() == 3

    def test_invalid_how_raises(self, chain_units):
        with pytest.raises(ValueError, match="how"):
            attach_geometry(chain_units, pd.DataFrame({"zcta": []}), "zcta", how="outer")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
