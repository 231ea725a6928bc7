from decimal import Decimal

import numpy as np
import pandas as pd
import pytest

from confsynth.config_models import (
    InferenceConfig,
    OutcomeSpec,
    SCCIConfig,
    StudyDefaults,
    default_outcome_spec,
    validate_precision,
)
from confsynth.exceptions import ConfigurationError, ShapeMismatchError
from confsynth.utils.gridsearch import precision_decimals


def _config(df, **overrides):
    params = {"df": df, "outcomes": ["HICP"], "T0s": [10]}
    params.update(overrides)
    return SCCIConfig(**params)


# --- SCCIConfig ---

def test_valid_config_defaults(panel):
    config = _config(panel)
    assert config.precision == 0.01
    assert config.compute_ci is False
    assert config.fitting_mode == "simplex"
    assert config.treated_units == ["ES", "PT"]
    assert isinstance(config.inference, InferenceConfig)


def test_empty_dataframe():
    with pytest.raises(ShapeMismatchError, match="Input DataFrame 'df' cannot be empty."):
        _config(pd.DataFrame())


def test_missing_required_columns(panel):
    with pytest.raises(ShapeMismatchError, match="Missing required columns in DataFrame 'df': post_treatment"):
        _config(panel.drop(columns=["post_treatment"]))


def test_outcomes_and_t0s_length_mismatch(panel):
    with pytest.raises(
        ConfigurationError,
        match="T0s must be the same length as outcomes. Got 2 outcomes and 1 T0s.",
    ):
        _config(panel, outcomes=["HICP", "DAA"], T0s=[10])


def test_invalid_precision(panel):
    with pytest.raises(ConfigurationError, match="precision must be a number between 0 and 1. Got 1.5."):
        _config(panel, precision=1.5)


def test_invalid_fitting_mode(panel):
    with pytest.raises(ConfigurationError, match="fitting_mode must be one of"):
        _config(panel, fitting_mode="ridge")


def test_t0_caps(two_outcome_panel):
    with pytest.raises(ConfigurationError, match="HICP supports T0 up to 114. Got 115."):
        _config(two_outcome_panel, T0s=[115])
    with pytest.raises(ConfigurationError, match="DAA supports T0 up to 89. Got 90."):
        _config(two_outcome_panel, outcomes=["HICP", "DAA"], T0s=[100, 90])


def test_t0_must_be_positive(panel):
    with pytest.raises(ConfigurationError, match="T0 for HICP must be a positive integer. Got 0."):
        _config(panel, T0s=[0])


def test_unsupported_outcome(panel):
    with pytest.raises(ConfigurationError) as excinfo:
        _config(panel, outcomes=["CP0451"])
    message = str(excinfo.value)
    assert message.startswith("Outcome 'CP0451' not supported.")
    assert "Supported outcomes are: HICP" in message


def test_missing_treated_unit(panel):
    with pytest.raises(ConfigurationError, match="Treated units not found in panel: FR"):
        _config(panel, treated_units=["ES", "FR"])


def test_unsorted_dataframe_is_sorted(panel):
    shuffled = panel.sample(frac=1.0, random_state=0).reset_index(drop=True)
    with pytest.warns(UserWarning, match="Auto-sorting applied"):
        config = _config(shuffled)
    assert config.df["entity"].is_monotonic_increasing
    np.testing.assert_array_equal(config.df["HICP"].to_numpy(), panel["HICP"].to_numpy())


def test_extra_field_rejected(panel):
    with pytest.raises(Exception):
        _config(panel, unknown_option=True)


# --- InferenceConfig ---

@pytest.mark.parametrize(
    "field,value,message",
    [
        ("alpha", 0.0, "alpha must be between 0 and 1"),
        ("n_perm", 0, "n_perm must be a positive integer"),
        ("permutation_method", "block", "permutation_method must be one of"),
        ("q", -1.0, "q must be positive"),
        ("max_expansions", -1, "max_expansions must be non-negative"),
        ("expansion_factor", 0.0, "expansion_factor must be positive"),
        ("n_jobs", 0, "n_jobs must be at least 1"),
    ],
)
def test_inference_config_validation(field, value, message):
    with pytest.raises(ConfigurationError, match=message):
        InferenceConfig(**{field: value})


def test_inference_config_defaults():
    inference = InferenceConfig()
    assert inference.alpha == 0.1
    assert inference.n_perm == 5000
    assert inference.permutation_method == "iid"
    assert inference.max_expansions == 50


# --- OutcomeSpec and helpers ---

def test_outcome_spec_is_frozen():
    outcome_spec = OutcomeSpec(name="HICP")
    with pytest.raises(Exception):
        outcome_spec.max_T0 = 10


def test_outcome_spec_rejects_negative_widening():
    with pytest.raises(ConfigurationError, match="Grid widening factors must be non-negative."):
        OutcomeSpec(name="HICP", lower_widening=-0.1)


def test_default_outcome_spec_custom_short_history():
    outcome_spec = default_outcome_spec("CP0451", short_history_outcomes=["CP0451"])
    assert outcome_spec.max_T0 == 89


def test_validate_precision_returns_float():
    assert validate_precision(0.05) == 0.05
    with pytest.raises(ConfigurationError):
        validate_precision(True)


def test_validate_precision_accepts_numpy_and_decimal():
    assert validate_precision(np.float32(0.01)) == 0.01
    assert validate_precision(np.float64(0.1)) == 0.1
    assert validate_precision(Decimal("0.005")) == 0.005
    assert precision_decimals(validate_precision(np.float32(0.01))) == 2
    with pytest.raises(ConfigurationError, match="precision must be a number between 0 and 1"):
        validate_precision(np.float32(1.5))


def test_study_defaults():
    assert StudyDefaults.treated_units == ["ES", "PT"]
    assert len(StudyDefaults.control_units) == 23
    assert not set(StudyDefaults.treated_units) & set(StudyDefaults.control_units)
