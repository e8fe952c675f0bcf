from datetime import datetime, timedelta, timezone

import pytest

from utils.history_contracts import (
    BuildError,
    BuildErrorKind,
    CombinePolicy,
    FetchError,
    FetchErrorKind,
    MetricQuery,
    QueryStatus,
    RawQueryResult,
    ReconcileReport,
    SnapshotBuildResult,
    format_utc_datetime,
)


def test_format_utc_datetime_normalizes_offsets():
    kst = timezone(timedelta(hours=9))
    value = datetime(2023, 6, 4, 23, 26, 40, tzinfo=kst)

    text = format_utc_datetime(value)

    assert text == "2023-06-04T14:26:40Z"
    assert format_utc_datetime(None) is None


def test_metric_query_from_payload_defaults_to_overwrite():
    metric = MetricQuery.from_payload({"key": "up", "expression": "up"})

    assert metric.combine == CombinePolicy.OVERWRITE


def test_metric_query_from_payload_rejects_missing_expression():
    with pytest.raises(ValueError):
        MetricQuery.from_payload({"key": "up"})


def test_raw_query_result_from_success_payload():
    result = RawQueryResult.from_payload(
        {
            "status": "success",
            "data": {
                "resultType": "matrix",
                "result": [
                    {"metric": {"job": "prediction"}, "values": [[1685888801.5, "1"]]}
                ],
            },
        }
    )

    assert result.status == QueryStatus.SUCCESS
    assert result.series[0].labels == {"job": "prediction"}
    assert result.series[0].values == [(1685888801, "1")]


def test_raw_query_result_keeps_non_matrix_kind_without_series():
    result = RawQueryResult.from_payload(
        {"status": "success", "data": {"resultType": "vector", "result": [{}]}}
    )

    assert result.result_kind == "vector"
    assert result.series == []


def test_raw_query_result_from_error_payload_without_data():
    result = RawQueryResult.from_payload(
        {"status": "error", "errorType": "timeout", "error": "query timed out"}
    )

    assert result.status == QueryStatus.ERROR
    assert result.error_type == "timeout"
    assert result.series == []


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"status": "pending"},
        {"status": "success"},
        {"status": "success", "data": {"resultType": 3}},
        {"status": "success", "warnings": "x", "data": {"resultType": "matrix"}},
        {
            "status": "success",
            "data": {"resultType": "matrix", "result": [{"values": [[1, "1", 2]]}]},
        },
        {
            "status": "success",
            "data": {"resultType": "matrix", "result": [{"values": [["1", "1"]]}]},
        },
        {
            "status": "success",
            "data": {"resultType": "matrix", "result": [{"values": [[True, "1"]]}]},
        },
    ],
)
def test_raw_query_result_rejects_schema_violations(payload):
    with pytest.raises(ValueError):
        RawQueryResult.from_payload(payload)


def test_error_kinds_are_carried_on_exceptions():
    cause = FetchError(FetchErrorKind.TRANSPORT, "refused", expression="up")
    error = BuildError(
        BuildErrorKind.PARTIAL_FAILURE,
        "window=day key=up",
        window="day",
        failed_key="up",
        cause=cause,
    )

    assert str(cause) == "transport: refused"
    assert error.kind == BuildErrorKind.PARTIAL_FAILURE
    assert error.cause is cause


def test_snapshot_build_result_reports_gap_keys_and_counts():
    reports = {
        "dense": ReconcileReport("dense", {1: 0.0, 2: 0.0}, 0, False, 0),
        "sparse": ReconcileReport("sparse", {1: 0.0}, 0, True, 0),
        "holey": ReconcileReport("holey", {1: 0.0, 9: 0.0}, 0, False, 1),
    }
    result = SnapshotBuildResult(
        window="day",
        path="static_data/day-history.json",
        snapshot={key: report.series for key, report in reports.items()},
        reports=reports,
        built_at=datetime(2023, 6, 5, tzinfo=timezone.utc),
    )

    assert result.gap_warning_keys == ["sparse", "holey"]
    assert result.sample_counts == {"dense": 2, "sparse": 1, "holey": 2}
