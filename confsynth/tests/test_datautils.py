import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_array_equal

from confsynth.config_models import default_outcome_spec, OutcomeSpec
from confsynth.exceptions import ConfigurationError, ShapeMismatchError
from confsynth.utils.datautils import (
    build_matrices,
    check_matrix_shapes,
    drop_incomplete_entities,
    prepare_panel,
)


# === build_matrices ===

def test_build_matrices_shapes(panel):
    m = build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)
    assert m.T0 == 5
    assert m.T1 == 3
    assert m.Y1.shape == (8,)
    assert m.Y0.shape == (8, 3)
    assert m.donor_names == ["AT", "BE", "DE"]
    assert m.treated == "ES"
    assert m.outcome == "HICP"


def test_build_matrices_keeps_trailing_dates(panel):
    m = build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)
    all_dates = np.sort(panel["date"].unique())
    assert_array_equal(m.dates.to_numpy(), all_dates[-8:])


def test_build_matrices_row_alignment(panel):
    m = build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)
    for i, date in enumerate(m.dates):
        row = panel[panel["date"] == date].set_index("entity")["HICP"]
        assert m.Y1[i] == row["ES"]
        assert_array_equal(m.Y0[i], row[["AT", "BE", "DE"]].to_numpy())


def test_build_matrices_excludes_other_treated_unit(panel):
    m = build_matrices(panel, "HICP", treated="PT", exclude="ES", T0=5)
    assert "ES" not in m.donor_names
    assert "PT" not in m.donor_names


def test_build_matrices_pre_slices(panel):
    m = build_matrices(panel, "HICP", treated="ES", exclude=["PT"], T0=4)
    assert_array_equal(m.y1, m.Y1[:4])
    assert_array_equal(m.y0, m.Y0[:4, :])


def test_build_matrices_t0_above_long_history_cap(panel):
    with pytest.raises(ConfigurationError, match="HICP supports T0 up to 114. Got 115."):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=115)


def test_build_matrices_t0_above_short_history_cap(daa_panel):
    with pytest.raises(ConfigurationError, match="DAA supports T0 up to 89. Got 90."):
        build_matrices(daa_panel, "DAA", treated="ES", exclude="PT", T0=90)


def test_build_matrices_non_positive_t0(panel):
    with pytest.raises(ConfigurationError, match="T0 must be a positive integer"):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=0)


def test_build_matrices_unsupported_outcome(panel):
    with pytest.raises(ConfigurationError, match="Outcome 'CP0451' is not supported."):
        build_matrices(panel, "CP0451", treated="ES", exclude="PT", T0=5)


def test_build_matrices_missing_treated_unit(panel):
    with pytest.raises(ConfigurationError, match="Treated unit 'FR' not found in panel."):
        build_matrices(panel, "HICP", treated="FR", exclude="PT", T0=5)


def test_build_matrices_treated_cannot_be_excluded(panel):
    with pytest.raises(ConfigurationError, match="cannot also be excluded"):
        build_matrices(panel, "HICP", treated="ES", exclude=["ES", "PT"], T0=5)


def test_build_matrices_too_few_dates(panel):
    with pytest.raises(ShapeMismatchError, match="fewer than T0 \\+ T1 = 18"):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=15)


def test_build_matrices_missing_donor_value_in_window(panel):
    last_date = panel["date"].max()
    panel.loc[(panel["entity"] == "BE") & (panel["date"] == last_date), "HICP"] = np.nan
    with pytest.raises(ShapeMismatchError, match="Donor units with missing HICP values.*BE"):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)


def test_build_matrices_missing_value_outside_window_is_ignored(panel):
    first_date = panel["date"].min()
    panel.loc[(panel["entity"] == "BE") & (panel["date"] == first_date), "HICP"] = np.nan
    m = build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)
    assert np.all(np.isfinite(m.Y0))


def test_build_matrices_missing_treated_value(panel):
    last_date = panel["date"].max()
    panel.loc[(panel["entity"] == "ES") & (panel["date"] == last_date), "HICP"] = np.nan
    with pytest.raises(ShapeMismatchError, match="Treated unit 'ES' has missing HICP values"):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)


def test_build_matrices_duplicates(panel):
    duplicated = pd.concat([panel, panel.iloc[[0]]], ignore_index=True)
    with pytest.raises(ShapeMismatchError, match="Duplicate observations found"):
        build_matrices(duplicated, "HICP", treated="ES", exclude="PT", T0=5)


def test_build_matrices_no_post_period(panel):
    panel["post_treatment"] = False
    with pytest.raises(ShapeMismatchError, match="No post-treatment dates"):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5)


def test_build_matrices_custom_outcome_spec(panel):
    outcome_spec = OutcomeSpec(name="HICP", max_T0=4)
    with pytest.raises(ConfigurationError, match="HICP supports T0 up to 4. Got 5."):
        build_matrices(panel, "HICP", treated="ES", exclude="PT", T0=5, outcome_spec=outcome_spec)


def test_build_matrices_custom_column_names(panel):
    renamed = panel.rename(columns={"date": "time", "entity": "geo", "post_treatment": "post"})
    m = build_matrices(
        renamed, "HICP", treated="ES", exclude="PT", T0=5,
        date_col="time", entity_col="geo", post_col="post",
    )
    assert m.Y0.shape == (8, 3)


# === check_matrix_shapes ===

def test_check_matrix_shapes_mismatch():
    with pytest.raises(ShapeMismatchError, match="len\\(Y1\\) == T0 \\+ T1 == nrow\\(Y0\\)"):
        check_matrix_shapes(np.zeros(5), np.zeros((4, 2)), 3, 2)


def test_check_matrix_shapes_ok():
    check_matrix_shapes(np.zeros(5), np.zeros((5, 2)), 3, 2)


# === drop_incomplete_entities ===

def test_drop_incomplete_entities(two_outcome_panel):
    df = two_outcome_panel.copy()
    df.loc[(df["entity"] == "DE") & (df["date"] == df["date"].min()), "DAA"] = np.nan
    cleaned = drop_incomplete_entities(df, "DAA")
    assert "DE" not in set(cleaned["entity"])
    assert set(cleaned["entity"]) == {"AT", "BE", "ES", "PT"}


def test_drop_incomplete_entities_keeps_complete_panel(panel):
    cleaned = drop_incomplete_entities(panel, "HICP")
    assert len(cleaned) == len(panel)


# === default_outcome_spec ===

def test_default_outcome_spec_classes():
    daa = default_outcome_spec("DAA")
    hicp = default_outcome_spec("CP00")
    assert daa.max_T0 == 89
    assert (daa.lower_widening, daa.upper_widening) == (0.2, 0.1)
    assert daa.drop_incomplete_entities
    assert hicp.max_T0 == 114
    assert (hicp.lower_widening, hicp.upper_widening) == (0.4, 0.2)
    assert not hicp.drop_incomplete_entities


# === prepare_panel ===

def test_prepare_panel():
    raw = pd.DataFrame({
        "time": ["2022-05-01", "2022-06-01", "2023-07-01"] * 3 + ["2022-05-01"],
        "geo": ["ES"] * 3 + ["AT"] * 3 + ["FR"] * 3 + ["ES"],
        "coicop": ["CP00"] * 9 + ["CP01"],
        "values": np.arange(10, dtype=float),
    })
    panel = prepare_panel(
        raw,
        outcomes=["CP00"],
        treated_units=["ES"],
        control_units=["AT"],
        treatment_date="2022-06-01",
        end_date="2023-06-01",
    )
    assert list(panel.columns) == ["date", "entity", "post_treatment", "CP00"]
    assert set(panel["entity"]) == {"AT", "ES"}
    assert len(panel) == 4
    assert panel["post_treatment"].tolist() == [False, True, False, True]
    assert panel["CP00"].tolist() == [3.0, 4.0, 0.0, 1.0]
