import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.blobs import InMemoryBlobStore  # noqa: E402
from backend.app.designs import (  # noqa: E402
    SORT_DOWNLOADS,
    BrowseFilters,
    DesignDraft,
    DesignStore,
)
from backend.app.errors import NotFoundError, ValidationError  # noqa: E402
from backend.app.storage import DESIGNS, InMemoryCollectionStore  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def collections():
    store = InMemoryCollectionStore()
    store.initialize()
    return store


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def store(collections, blobs, clock):
    return DesignStore(collections, blobs, clock=clock)


def _publish(store, design_id=None, title="Design", **kwargs):
    return store.upsert(DesignDraft(id=design_id, title=title, payload_ref="blob", **kwargs))


def test_fresh_upsert_creates_single_record_with_zero_count(store):
    result = _publish(store, "d1", "Cozy Loft")

    assert result.created is True
    browse = store.browse()
    assert browse.total == 1
    assert [design.id for design in browse.designs] == ["d1"]
    assert browse.designs[0].download_count == 0
    assert browse.designs[0].author_name == "Anonymous"
    assert browse.designs[0].event_flag is False


def test_upsert_without_id_generates_one(store):
    first = _publish(store)
    second = _publish(store)
    assert first.design.id and second.design.id
    assert first.design.id != second.design.id


@pytest.mark.parametrize(
    "title, payload_ref",
    [("", "blob"), ("   ", "blob"), ("Title", None), ("Title", "")],
)
def test_upsert_requires_title_and_payload(store, title, payload_ref):
    with pytest.raises(ValidationError):
        store.upsert(DesignDraft(id="d1", title=title, payload_ref=payload_ref))
    assert store.browse().total == 0


def test_republish_preserves_counter_and_refreshes_date(store, clock):
    _publish(store, "d1", "Cozy Loft", thumbnail_url="/api/thumbnails/d1.png")
    store.increment_download("d1")
    store.increment_download("d1")
    before = store.get("d1")

    clock.advance(minutes=5)
    result = _publish(store, "d1", "Cozy Loft v2", level="Tokyo", event_flag=True)

    assert result.created is False
    after = store.get("d1")
    assert store.browse().total == 1
    assert after.title == "Cozy Loft v2"
    assert after.level == "Tokyo"
    assert after.event_flag is True
    assert after.download_count == 2
    assert after.upload_date >= before.upload_date
    assert after.thumbnail_url == "/api/thumbnails/d1.png"


def test_republish_replaces_thumbnail_when_supplied(store):
    _publish(store, "d1", thumbnail_url="/api/thumbnails/old.png")
    _publish(store, "d1", thumbnail_url="/api/thumbnails/new.png")
    assert store.get("d1").thumbnail_url == "/api/thumbnails/new.png"


def test_download_and_like_share_one_counter(store):
    _publish(store, "d1", "Cozy Loft")

    store.increment_download("d1")
    updated = store.increment_download("d1")
    assert updated.download_count == 2

    assert store.adjust_like("d1", -5) == 0
    assert store.get("d1").download_count == 0
    assert store.adjust_like("d1", 1) == 1


@pytest.mark.parametrize("start, delta", [(0, -1), (3, -3), (3, -10), (7, 0)])
def test_adjust_like_never_goes_negative(store, start, delta):
    _publish(store, "d1")
    for _ in range(start):
        store.increment_download("d1")
    for _ in range(3):
        count = store.adjust_like("d1", delta)
        assert count >= 0
    assert store.get("d1").download_count == max(0, start + 3 * delta)


@pytest.mark.parametrize(
    "operation",
    [
        lambda store: store.increment_download("missing"),
        lambda store: store.adjust_like("missing", 1),
        lambda store: store.delete("missing"),
        lambda store: store.update_text("missing", title="x"),
    ],
)
def test_unknown_id_raises_not_found_and_leaves_collection(store, collections, operation):
    _publish(store, "d1")
    before = collections.load(DESIGNS)
    with pytest.raises(NotFoundError):
        operation(store)
    assert collections.load(DESIGNS) == before


def test_delete_removes_record_and_blobs(store, blobs):
    blobs.save_design("d1", b"save")
    blobs.save_thumbnail("d1", b"png")
    _publish(store, "d1")
    _publish(store, "d2")

    store.delete("d1")

    assert [design.id for design in store.browse().designs] == ["d2"]
    assert not blobs.has_design("d1")
    assert "d1.png" not in blobs.thumbnails


def test_browse_default_sort_is_newest_first(store, clock):
    for design_id in ("a", "b", "c"):
        _publish(store, design_id)
        clock.advance(minutes=1)
    assert [design.id for design in store.browse().designs] == ["c", "b", "a"]


def test_browse_sort_by_downloads_breaks_ties_by_date(store, clock):
    for design_id in ("a", "b", "c"):
        _publish(store, design_id)
        clock.advance(minutes=1)
    store.increment_download("a")
    result = store.browse(sort=SORT_DOWNLOADS)
    assert [design.id for design in result.designs] == ["a", "c", "b"]


def test_unknown_sort_falls_back_to_date(store, clock):
    _publish(store, "a")
    clock.advance(minutes=1)
    _publish(store, "b")
    assert [design.id for design in store.browse(sort="bogus").designs] == ["b", "a"]


def test_search_matches_title_or_author_case_insensitively(store):
    _publish(store, "a", "Cozy Loft", author_name="Mika")
    _publish(store, "b", "Garden", author_name="LOFTY")
    _publish(store, "c", "Kitchen", author_name="Jo")

    result = store.browse(BrowseFilters(search="loft"))
    assert sorted(design.id for design in result.designs) == ["a", "b"]
    assert result.total == 2


def test_level_filter_accepts_string_or_alternatives(store):
    _publish(store, "a", level="Europe/Berlin/Loft")
    _publish(store, "b", level="Asia/Tokyo/Flat")
    _publish(store, "c", level="America/NYC")

    single = store.browse(BrowseFilters(level="Berlin"))
    assert [design.id for design in single.designs] == ["a"]

    several = store.browse(BrowseFilters(level=["Berlin", "Tokyo"]))
    assert sorted(design.id for design in several.designs) == ["a", "b"]


def test_filters_compose_with_and(store, clock):
    _publish(store, "old", "Loft", level="Berlin", event_flag=True)
    clock.advance(days=2)
    cutoff = clock.now
    _publish(store, "new-flagged", "Loft", level="Berlin", event_flag=True)
    _publish(store, "new-plain", "Loft", level="Berlin")
    _publish(store, "new-other", "Loft", level="Tokyo", event_flag=True)

    result = store.browse(
        BrowseFilters(search="loft", level="Berlin", from_date=cutoff, event_flag=True)
    )
    assert [design.id for design in result.designs] == ["new-flagged"]

    unflagged = store.browse(BrowseFilters(event_flag=False))
    assert [design.id for design in unflagged.designs] == ["new-plain"]


def test_records_missing_newer_fields_get_defaults(store, collections):
    collections.save(
        DESIGNS,
        [
            {"id": "legacy", "title": "Old", "download_count": 4, "upload_date": "2024-01-01T00:00:00.000Z"},
            {"title": "no id"},
        ],
    )
    designs = store.browse().designs
    assert len(designs) == 1
    legacy = designs[0]
    assert legacy.event_flag is False
    assert legacy.thumbnail_url is None
    assert legacy.download_count == 4
    assert store.browse(BrowseFilters(event_flag=False)).total == 1


def test_get_by_ids_returns_subset_in_collection_order(store):
    for design_id in ("a", "b", "c"):
        _publish(store, design_id)
    assert [design.id for design in store.get_by_ids(["c", "a", "zzz"])] == ["a", "c"]


def test_top_orders_by_downloads(store, clock):
    for design_id in ("a", "b", "c", "d"):
        _publish(store, design_id)
        clock.advance(minutes=1)
    store.increment_download("b")
    store.increment_download("b")
    store.increment_download("a")
    assert [design.id for design in store.top(3)] == ["b", "a", "d"]


def test_update_text_keeps_other_fields(store):
    _publish(store, "d1", "Cl***ic Loft", author_name="Mika")
    store.increment_download("d1")
    before = store.get("d1")

    change = store.update_text("d1", title="Classic Loft")

    after = store.get("d1")
    assert change.old_title == "Cl***ic Loft"
    assert change.new_author == "Mika"
    assert after.title == "Classic Loft"
    assert after.download_count == 1
    assert after.upload_date == before.upload_date


def test_reset_clears_designs_and_blobs(store, blobs):
    blobs.save_design("d1", b"save")
    _publish(store, "d1")
    store.reset()
    assert store.browse().total == 0
    assert blobs.designs == {}
