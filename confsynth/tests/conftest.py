# tests/conftest.py
import numpy as np
import pandas as pd
import pytest


def make_panel(
    entities=("AT", "BE", "DE", "ES", "PT"),
    n_dates=15,
    n_post=3,
    outcomes=("HICP",),
    effect=5.0,
    treated=("ES", "PT"),
    seed=0,
):
    """Long panel with smooth donor series and treated units built from donors."""
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2021-01-01", periods=n_dates, freq="MS")
    t = np.arange(n_dates)
    post = t >= n_dates - n_post

    rows = []
    for outcome_idx, outcome in enumerate(outcomes):
        series = {}
        donors = [e for e in entities if e not in treated]
        for j, entity in enumerate(donors):
            series[entity] = 100 + 5 * j + 0.3 * (j + 1) * t + np.sin(t + j) + outcome_idx
        base = np.mean([series[d] for d in donors[:2]], axis=0)
        for entity in treated:
            noise = 0.5 * np.sin(3 * t + len(entity)) + 0.1 * rng.standard_normal(n_dates)
            series[entity] = base + noise + np.where(post, effect, 0.0)
        for entity in entities:
            for i in range(n_dates):
                rows.append((dates[i], entity, bool(post[i]), outcome, series[entity][i]))

    long = pd.DataFrame(rows, columns=["date", "entity", "post_treatment", "variable", "value"])
    panel = long.pivot_table(
        index=["date", "entity", "post_treatment"], columns="variable", values="value"
    ).reset_index()
    panel.columns.name = None
    return panel.sort_values(["entity", "date"]).reset_index(drop=True)


@pytest.fixture
def panel():
    """Five-entity panel with 12 pre- and 3 post-treatment months of HICP."""
    return make_panel()


@pytest.fixture
def two_outcome_panel():
    """Panel with a long-history (HICP) and a short-history (DAA) outcome."""
    return make_panel(outcomes=("HICP", "DAA"))


@pytest.fixture
def daa_panel():
    """Panel holding only the short-history outcome."""
    return make_panel(outcomes=("DAA",))


@pytest.fixture
def effect_matrices():
    """Treated series equal to a donor mix plus bounded noise, with an effect of 5 in the last period."""
    T0, T1 = 19, 1
    t = np.arange(T0 + T1)
    Y0 = np.column_stack([
        10 + 0.5 * t,
        20 + np.sin(t),
        15 + 2 * np.cos(t),
    ])
    Y1 = 0.5 * Y0[:, 0] + 0.5 * Y0[:, 1] + 0.3 * np.sin(3 * t)
    Y1[T0:] = 0.5 * Y0[T0:, 0] + 0.5 * Y0[T0:, 1] + 5.0
    return Y1, Y0, T0, T1
