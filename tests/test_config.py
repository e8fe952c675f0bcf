import json
from datetime import timedelta

import pytest

from utils.config import (
    GOOD_PREDICTION_KEY,
    SUBSCRIPTION_COUNT_KEY,
    _parse_bool_env,
    _parse_csv_env,
    _parse_minutes_thresholds,
    _parse_named_ints,
    _parse_positive_int_env,
    _parse_window_definitions,
    build_default_metric_queries,
    load_metric_queries_file,
)
from utils.history_contracts import CombinePolicy


def test_parse_csv_env_returns_default_on_empty_input():
    defaults = ["day:24h:30m"]
    assert _parse_csv_env(None, defaults) == defaults
    assert _parse_csv_env("", defaults) == defaults


def test_parse_csv_env_trims_and_filters_empty_values():
    raw = " day:24h:30m, , week:168h:120m ,, "
    parsed = _parse_csv_env(raw, ["X"])
    assert parsed == ["day:24h:30m", "week:168h:120m"]


def test_parse_bool_env_parses_common_values():
    assert _parse_bool_env("true") is True
    assert _parse_bool_env("1") is True
    assert _parse_bool_env("on") is True
    assert _parse_bool_env("false") is False
    assert _parse_bool_env("0") is False
    assert _parse_bool_env("off") is False


def test_parse_bool_env_falls_back_to_default_for_invalid():
    assert _parse_bool_env("not-a-bool", default=False) is False
    assert _parse_bool_env("not-a-bool", default=True) is True
    assert _parse_bool_env(None, default=True) is True


def test_parse_positive_int_env_falls_back_for_invalid_values():
    assert _parse_positive_int_env(None, 60) == 60
    assert _parse_positive_int_env("abc", 60) == 60
    assert _parse_positive_int_env("0", 60) == 60
    assert _parse_positive_int_env("-5", 60) == 60
    assert _parse_positive_int_env("120", 60) == 120


def test_parse_window_definitions_uses_lookback_over_step_as_min_samples():
    windows = _parse_window_definitions(
        ["day:24h:30m", "week:168h:120m"], env_name="HISTORY_WINDOWS"
    )

    assert [w.name for w in windows] == ["day", "week"]
    assert windows[0].lookback == timedelta(hours=24)
    assert windows[0].step == timedelta(minutes=30)
    assert windows[0].min_expected_samples == 48
    assert windows[1].min_expected_samples == 84
    assert windows[1].snapshot_filename == "week-history.json"


def test_parse_window_definitions_accepts_explicit_min_samples():
    windows = _parse_window_definitions(["day:24h:30m:40"], env_name="HISTORY_WINDOWS")

    assert windows[0].min_expected_samples == 40


@pytest.mark.parametrize(
    "definitions",
    [
        ["day:24h"],
        [":24h:30m"],
        ["day:24x:30m"],
        ["day:30m:24h"],
        ["day:24h:30m:-1"],
        ["day:24h:30m:many"],
        ["day:24h:30m", "day:48h:30m"],
        [],
    ],
)
def test_parse_window_definitions_rejects_invalid(definitions):
    with pytest.raises(ValueError):
        _parse_window_definitions(definitions, env_name="HISTORY_WINDOWS")


def test_parse_named_ints_skips_invalid_chunks():
    parsed = _parse_named_ints("day:60, week:abc,broken,month:0, :5,week:300")

    assert parsed == {"day": 60, "week": 300}


def test_parse_minutes_thresholds_applies_overrides():
    thresholds = _parse_minutes_thresholds("week:240", 5, ["day", "week"])

    assert thresholds == {
        "day": timedelta(minutes=5),
        "week": timedelta(minutes=240),
    }


def test_build_default_metric_queries_shape():
    metrics = build_default_metric_queries(rate_divisor="15 / 2", bad_bucket="50.0")

    assert [m.source_key for m in metrics] == [
        GOOD_PREDICTION_KEY,
        SUBSCRIPTION_COUNT_KEY,
    ]
    assert metrics[0].combine == CombinePolicy.SUM
    assert metrics[1].combine == CombinePolicy.OVERWRITE
    assert 'le="+Inf"' in metrics[0].expression
    assert 'le="50.0"' in metrics[0].expression
    assert "/ 15 / 2)" in metrics[0].expression
    assert metrics[0].expression.endswith("OR vector(0)")
    assert metrics[1].expression == f"{SUBSCRIPTION_COUNT_KEY} OR vector(0)"


def test_load_metric_queries_file(tmp_path):
    path = tmp_path / "metrics.json"
    path.write_text(
        json.dumps(
            [
                {"key": "a", "expression": "a_total", "combine": "sum"},
                {"key": "b", "expression": "b_total"},
            ]
        )
    )

    metrics = load_metric_queries_file(path)

    assert [m.source_key for m in metrics] == ["a", "b"]
    assert metrics[1].combine == CombinePolicy.OVERWRITE


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"key": "a"},
        [{"key": "a", "expression": "x"}, {"key": "a", "expression": "y"}],
        [{"key": "a", "expression": "x", "combine": "max"}],
        [{"key": "", "expression": "x"}],
    ],
)
def test_load_metric_queries_file_rejects_invalid(tmp_path, payload):
    path = tmp_path / "metrics.json"
    path.write_text(json.dumps(payload))

    with pytest.raises(ValueError):
        load_metric_queries_file(path)
