"""
Tests for pqi_spatial.gap_fill module.

Tests cover:
- Carry-forward within a group, including leading gaps
- Fallback to group and global medians
- Overrides and chain validation
- Provenance of every imputed cell
- Unfillable groups are reported, never silently left missing
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np

from pqi_spatial.errors import UnfillableGroupError
from pqi_spatial.gap_fill import (
    METHOD_CARRIED,
    METHOD_MEDIAN_GLOBAL,
    METHOD_MEDIAN_GROUP,
    METHOD_OVERRIDE,
    fill,
    fill_columns,
)


@pytest.fixture
def observations():
    """
    Three groups over three years:
    A has a middle gap, B a leading gap, C no observations at all.
    """
    return pd.DataFrame({
        "zcta": ["A", "A", "A", "B", "B", "B", "C", "C", "C"],
        "year": [2017, 2018, 2019] * 3,
        "pqi_rate": [1.0, np.nan, 3.0, np.nan, 5.0, 7.0, np.nan, np.nan, np.nan],
    })


def _value(result, group, year):
    data = result.data
    row = data[(data["zcta"] == group) & (data["year"] == year)]
    return row[result.value_column].iloc[0], row[result.method_column].iloc[0]


class TestCarried:
    """Tests for the carried method."""

    def test_middle_gap_takes_previous_value(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")
        assert _value(result, "A", 2018) == (1.0, METHOD_CARRIED)

    def test_leading_gap_takes_earliest_value(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")
        assert _value(result, "B", 2017) == (5.0, METHOD_CARRIED)

    def test_row_order_does_not_matter(self, observations):
        shuffled = observations.sample(frac=1.0, random_state=3)
        result = fill(shuffled, "zcta", "pqi_rate", "year")
        assert _value(result, "A", 2018) == (1.0, METHOD_CARRIED)
        assert _value(result, "B", 2017) == (5.0, METHOD_CARRIED)
        assert result.data.index.tolist() == shuffled.index.tolist()

    def test_observed_values_are_untouched(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")
        value, method = _value(result, "B", 2019)
        assert value == 7.0
        assert method is None


class TestMedians:
    """Tests for the median fallbacks."""

    def test_empty_group_takes_global_median(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")
        # observed values: 1, 3, 5, 7
        for year in (2017, 2018, 2019):
            assert _value(result, "C", year) == (4.0, METHOD_MEDIAN_GLOBAL)
        assert result.groups_filled_by(METHOD_MEDIAN_GLOBAL) == ["C"]

    def test_group_median_without_carried(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year",
                      chain=[METHOD_MEDIAN_GROUP, METHOD_MEDIAN_GLOBAL])
        assert _value(result, "A", 2018) == (2.0, METHOD_MEDIAN_GROUP)
        assert _value(result, "B", 2017) == (6.0, METHOD_MEDIAN_GROUP)
        assert _value(result, "C", 2017)[1] == METHOD_MEDIAN_GLOBAL


class TestOverridesAndChain:
    """Tests for overrides and chain validation."""

    def test_override_applied_first(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year", overrides={"C": 9.0})
        assert _value(result, "C", 2018) == (9.0, METHOD_OVERRIDE)
        assert METHOD_MEDIAN_GLOBAL not in result.method_counts()

    def test_numeric_override_keys_match_padded_groups(self):
        df = pd.DataFrame({
            "zcta": ["01001", "01001", "10002", "10002"],
            "year": [2018, 2019, 2018, 2019],
            "pqi_rate": [np.nan, np.nan, 5.0, np.nan],
        })

        result = fill(df, "zcta", "pqi_rate", "year", chain=[METHOD_CARRIED],
                      overrides={1001: 9.0, 10002.0: 7.0}, key_width=5)

        assert _value(result, "01001", 2019) == (9.0, METHOD_OVERRIDE)
        assert _value(result, "10002", 2019) == (7.0, METHOD_OVERRIDE)
        assert _value(result, "10002", 2018) == (5.0, None)

    def test_unmatched_override_raises(self, observations):
        with pytest.raises(ValueError, match="match no group"):
            fill(observations, "zcta", "pqi_rate", "year", overrides={"D": 1.0})

    def test_octal_read_key_raises(self):
        """An unquoted 01001 in YAML arrives as 513, which is no ZCTA here."""
        df = pd.DataFrame({"zcta": ["01001"], "year": [2019], "pqi_rate": [np.nan]})
        with pytest.raises(ValueError, match=r"match no group: \[513\]"):
            fill(df, "zcta", "pqi_rate", "year", overrides={513: 9.0}, key_width=5)

    def test_unfillable_group_raises_with_keys(self, observations):
        with pytest.raises(UnfillableGroupError) as excinfo:
            fill(observations, "zcta", "pqi_rate", "year", chain=[METHOD_CARRIED])
        assert excinfo.value.keys == ["C"]

    def test_all_missing_column_raises(self, observations):
        df = observations.assign(pqi_rate=np.nan)
        with pytest.raises(UnfillableGroupError) as excinfo:
            fill(df, "zcta", "pqi_rate", "year")
        assert excinfo.value.keys == ["A", "B", "C"]

    def test_unknown_method_raises(self, observations):
        with pytest.raises(ValueError, match="Unknown fill methods"):
            fill(observations, "zcta", "pqi_rate", "year", chain=["mean"])

    def test_repeated_method_raises(self, observations):
        with pytest.raises(ValueError, match="repeated"):
            fill(observations, "zcta", "pqi_rate", "year",
                 chain=[METHOD_CARRIED, METHOD_CARRIED])


class TestProvenance:
    """Every imputed cell is listed with its method."""

    def test_one_row_per_imputed_cell(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")

        assert result.n_filled == int(observations["pqi_rate"].isna().sum())
        assert result.method_counts() == {METHOD_MEDIAN_GLOBAL: 3, METHOD_CARRIED: 2}
        assert set(result.provenance.columns) == {"column", "group", "period", "method", "value"}
        assert (result.provenance["column"] == "pqi_rate").all()

    def test_no_missing_values_remain(self, observations):
        result = fill(observations, "zcta", "pqi_rate", "year")
        assert result.data["pqi_rate"].notna().all()

    def test_input_not_modified(self, observations):
        before = observations.copy()
        fill(observations, "zcta", "pqi_rate", "year")
        pd.testing.assert_frame_equal(observations, before)

    def test_nothing_to_fill(self, observations):
        complete = observations.dropna()
        result = fill(complete, "zcta", "pqi_rate", "year")
        assert result.n_filled == 0
        assert result.provenance.empty


class TestFillColumns:
    """Tests for fill_columns()."""

    def test_fills_each_column(self, observations):
        df = observations.assign(sdi_score=[10.0, 20.0, np.nan] * 3)

        result = fill_columns(df, ["pqi_rate", "sdi_score"], "zcta", "year",
                              overrides={"sdi_score": {"A": 99.0}})

        assert result.data[["pqi_rate", "sdi_score"]].notna().all().all()
        assert set(result.provenance["column"]) == {"pqi_rate", "sdi_score"}
        row = result.data[(result.data["zcta"] == "A") & (result.data["year"] == 2019)]
        assert row["sdi_score"].iloc[0] == 99.0
        assert row["sdi_score_fill_method"].iloc[0] == METHOD_OVERRIDE
        assert row["pqi_rate_fill_method"].iloc[0] is None

    def test_empty_column_list_raises(self, observations):
        with pytest.raises(ValueError, match="No columns"):
            fill_columns(observations, [], "zcta", "year")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
