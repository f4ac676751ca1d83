import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.aggregation import (  # noqa: E402
    BREAKDOWN_TOP_VALUES,
    EMPTY_VALUE,
    AggregationEngine,
    frequency_table,
)
from backend.app.storage import InMemoryCollectionStore  # noqa: E402
from backend.app.telemetry import TelemetryLog  # noqa: E402

NOW = datetime(2026, 10, 18, 15, 30, tzinfo=timezone.utc)
MIDNIGHT = datetime(2026, 10, 18, tzinfo=timezone.utc)


@pytest.fixture
def log():
    store = InMemoryCollectionStore()
    store.initialize()
    return TelemetryLog(store, clock=lambda: NOW)


@pytest.fixture
def engine(log):
    return AggregationEngine(log, clock=lambda: NOW)


def _at(log, when, name="Tick", **properties):
    log.append_event({"event_name": name, "timestamp": when.isoformat(), "properties": properties})


def test_summary_windows(log, engine):
    for hour in range(5):
        _at(log, MIDNIGHT + timedelta(hours=hour))
    for days_ago in range(1, 7):
        _at(log, MIDNIGHT - timedelta(days=days_ago, hours=-12))
    _at(log, MIDNIGHT - timedelta(days=6, hours=1))
    _at(log, MIDNIGHT - timedelta(days=20))
    _at(log, MIDNIGHT - timedelta(days=45))

    summary = engine.summary(NOW)

    assert summary["events"] == {"total": 14, "today": 5, "this_week": 12, "this_month": 13}


def test_events_per_day_is_seven_ascending_zero_filled(log, engine):
    _at(log, MIDNIGHT + timedelta(hours=1))
    _at(log, MIDNIGHT + timedelta(hours=2))
    _at(log, MIDNIGHT - timedelta(days=3) + timedelta(hours=5))
    _at(log, MIDNIGHT - timedelta(days=6))
    _at(log, MIDNIGHT - timedelta(days=7))
    _at(log, MIDNIGHT + timedelta(days=1))

    per_day = engine.summary(NOW)["events_per_day"]

    assert len(per_day) == 7
    dates = [entry["date"] for entry in per_day]
    assert dates == sorted(dates)
    assert dates[0] == (date(2026, 10, 12)).isoformat()
    assert dates[-1] == date(2026, 10, 18).isoformat()
    assert [entry["count"] for entry in per_day] == [1, 0, 0, 1, 0, 0, 2]
    assert sum(entry["count"] for entry in per_day) == 4


def test_events_per_day_with_empty_log(engine):
    per_day = engine.summary(NOW)["events_per_day"]
    assert len(per_day) == 7
    assert all(entry["count"] == 0 for entry in per_day)


def test_top_events_ties_broken_by_name(log, engine):
    for name in ["Zeta", "Alpha", "Zeta", "Beta", "Alpha", "Gamma", "Zeta"]:
        _at(log, NOW, name)

    assert engine.summary(NOW)["top_events"] == [
        {"name": "Zeta", "count": 3},
        {"name": "Alpha", "count": 2},
        {"name": "Beta", "count": 1},
        {"name": "Gamma", "count": 1},
    ]
    assert len(engine.summary(NOW, top_limit=2)["top_events"]) == 2


def test_session_summary_counts_active(log, engine):
    first = log.start_session()
    log.start_session()
    log.end_session(first.id)

    sessions = engine.summary(NOW)["sessions"]
    assert sessions["total"] == 2
    assert sessions["today"] == 2
    assert sessions["active"] == 1


def test_breakdown_for_single_property(log, engine):
    _at(log, NOW, "LevelComplete", level="Berlin")
    _at(log, NOW, "LevelComplete", level="Tokyo")
    _at(log, NOW, "LevelComplete", level="Berlin")
    _at(log, NOW, "LevelStart", level="Paris")

    result = engine.event_breakdown("LevelComplete", "level")

    assert result["total_count"] == 3
    assert result["breakdown"] == [
        {"value": "Berlin", "count": 2},
        {"value": "Tokyo", "count": 1},
    ]


def test_breakdown_counts_missing_values_as_empty(log, engine):
    _at(log, NOW, "Shop", item="hat")
    _at(log, NOW, "Shop")
    log.append_event({"event_name": "Shop", "properties": {"item": None}})

    result = engine.event_breakdown("Shop", "item")

    assert result["breakdown"] == [
        {"value": EMPTY_VALUE, "count": 2},
        {"value": "hat", "count": 1},
    ]
    assert sum(entry["count"] for entry in result["breakdown"]) == result["total_count"]


def test_breakdown_keeps_value_types_apart(log, engine):
    _at(log, NOW, "Flag", value=True)
    _at(log, NOW, "Flag", value=1)
    _at(log, NOW, "Flag", value="1")

    breakdown = engine.event_breakdown("Flag", "value")["breakdown"]

    assert len(breakdown) == 3
    assert {type(entry["value"]) for entry in breakdown} == {bool, int, str}


def test_breakdown_of_all_properties_truncates_to_top_values(log, engine):
    for index in range(BREAKDOWN_TOP_VALUES + 5):
        _at(log, NOW, "Place", item=f"item-{index}", room="kitchen")
    _at(log, NOW, "Place", item="item-3", colour="red")

    result = engine.event_breakdown("Place")

    assert result["properties"] == ["colour", "item", "room"]
    assert result["total_count"] == BREAKDOWN_TOP_VALUES + 6
    assert len(result["breakdowns"]["item"]) == BREAKDOWN_TOP_VALUES
    assert result["breakdowns"]["item"][0] == {"value": "item-3", "count": 2}
    assert result["breakdowns"]["room"] == [
        {"value": "kitchen", "count": BREAKDOWN_TOP_VALUES + 5},
        {"value": EMPTY_VALUE, "count": 1},
    ]


def test_breakdown_of_unknown_event_is_empty(engine):
    assert engine.event_breakdown("Nope") == {
        "event_name": "Nope",
        "total_count": 0,
        "properties": [],
        "breakdowns": {},
    }
    assert engine.event_breakdown("Nope", "level")["breakdown"] == []


def test_single_property_table_is_not_truncated(log, engine):
    for index in range(BREAKDOWN_TOP_VALUES + 5):
        _at(log, NOW, "Place", item=f"item-{index}")
    assert len(engine.event_breakdown("Place", "item")["breakdown"]) == BREAKDOWN_TOP_VALUES + 5


def test_event_names_sorted_and_distinct(log, engine):
    for name in ["b", "a", "c", "a"]:
        _at(log, NOW, name)
    assert engine.event_names() == ["a", "b", "c"]


def test_results_follow_the_log_without_caching(log, engine):
    _at(log, NOW, "a")
    assert engine.event_names() == ["a"]
    _at(log, NOW, "b")
    assert engine.event_names() == ["a", "b"]
    log.clear()
    assert engine.summary(NOW)["events"]["total"] == 0


def test_frequency_table_ties_keep_first_seen_order():
    assert frequency_table(["b", "a", "b", "a", "c"]) == [
        {"value": "b", "count": 2},
        {"value": "a", "count": 2},
        {"value": "c", "count": 1},
    ]
