"""Design record store: publishing, browsing and counters over the designs collection."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .blobs import BlobStore
from .errors import NotFoundError, ValidationError
from .storage import DESIGNS, CollectionStore, Record
from .timestamps import EPOCH, Clock, format_timestamp, parse_timestamp, stored_timestamp, utcnow

logger = logging.getLogger(__name__)

SORT_DATE = "date"
SORT_DOWNLOADS = "downloads"
DEFAULT_AUTHOR = "Anonymous"

TextRewrite = Callable[[str, str], Tuple[str, str]]


@dataclass
class DesignRecord:
    """Metadata for one published design."""

    id: str
    title: str
    description: str = ""
    author_name: str = DEFAULT_AUTHOR
    level: str = ""
    download_count: int = 0
    upload_date: datetime = EPOCH
    thumbnail_url: Optional[str] = None
    event_flag: bool = False

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "author_name": self.author_name,
            "level": self.level,
            "download_count": self.download_count,
            "upload_date": format_timestamp(self.upload_date),
            "thumbnail_url": self.thumbnail_url,
            "event_flag": self.event_flag,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "DesignRecord":
        """Build a record from its stored form, defaulting fields older records lack."""

        design_id = payload.get("id")
        if not isinstance(design_id, str) or not design_id:
            raise ValueError("Invalid design payload: missing id")
        try:
            download_count = max(0, int(payload.get("download_count") or 0))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            download_count = 0
        thumbnail_url = payload.get("thumbnail_url")
        return cls(
            id=design_id,
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            author_name=str(payload.get("author_name") or DEFAULT_AUTHOR),
            level=str(payload.get("level") or ""),
            download_count=download_count,
            upload_date=stored_timestamp(payload.get("upload_date")) or EPOCH,
            thumbnail_url=str(thumbnail_url) if thumbnail_url else None,
            event_flag=bool(payload.get("event_flag", False)),
        )


@dataclass
class DesignDraft:
    """Caller input for :meth:`DesignStore.upsert`.

    ``payload_ref`` is the reference returned by the blob store for the uploaded
    save file; the store only checks that one was supplied.
    """

    title: str
    payload_ref: Optional[str]
    id: Optional[str] = None
    description: Optional[str] = None
    author_name: Optional[str] = None
    level: Optional[str] = None
    thumbnail_url: Optional[str] = None
    event_flag: bool = False


@dataclass
class UpsertResult:
    design: DesignRecord
    created: bool


@dataclass
class BrowseFilters:
    """Browse filters; every supplied filter must match."""

    search: Optional[str] = None
    level: Union[None, str, Sequence[str]] = None
    from_date: Optional[datetime] = None
    event_flag: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.from_date is not None:
            self.from_date = parse_timestamp(self.from_date)

    def level_alternatives(self) -> List[str]:
        if self.level is None:
            return []
        if isinstance(self.level, str):
            candidates: Iterable[str] = [self.level]
        else:
            candidates = self.level
        return [candidate for candidate in candidates if candidate]

    def matches(self, design: DesignRecord) -> bool:
        if self.search:
            needle = self.search.lower()
            if needle not in design.title.lower() and needle not in design.author_name.lower():
                return False
        alternatives = self.level_alternatives()
        if alternatives and not any(alternative in design.level for alternative in alternatives):
            return False
        if self.from_date is not None and design.upload_date < self.from_date:
            return False
        if self.event_flag is not None and design.event_flag != self.event_flag:
            return False
        return True


@dataclass
class BrowseResult:
    designs: List[DesignRecord] = field(default_factory=list)
    total: int = 0


@dataclass
class TextChange:
    design_id: str
    old_title: str
    new_title: str
    old_author: str
    new_author: str

    @property
    def changed(self) -> bool:
        return self.old_title != self.new_title or self.old_author != self.new_author


def sort_designs(designs: List[DesignRecord], sort: Optional[str] = SORT_DATE) -> List[DesignRecord]:
    """Order by downloads then newest, or by newest alone for any other mode."""

    if sort == SORT_DOWNLOADS:
        return sorted(designs, key=lambda d: (d.download_count, d.upload_date), reverse=True)
    return sorted(designs, key=lambda d: d.upload_date, reverse=True)


def _index_of(records: List[Record], design_id: str) -> int:
    for index, record in enumerate(records):
        if record.get("id") == design_id:
            return index
    return -1


def validate_draft(draft: DesignDraft) -> None:
    """Raise :class:`ValidationError` unless the draft has a title and a payload."""

    if not (draft.title or "").strip():
        raise ValidationError("Title is required")
    if draft.id is not None and draft.id != draft.id.strip():
        raise ValidationError("Design id must not start or end with whitespace")
    if not draft.payload_ref:
        raise ValidationError("saveData is required")


class DesignStore:
    """CRUD, filtering and counters over the ``designs`` collection.

    Each mutation loads the whole collection under its lock, changes it in memory
    and writes it back in full. Reads work on the last committed snapshot.
    """

    def __init__(
        self,
        store: CollectionStore,
        blobs: Optional[BlobStore] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._clock = clock

    def all(self) -> List[DesignRecord]:
        designs = []
        for record in self._store.load(DESIGNS):
            try:
                designs.append(DesignRecord.from_payload(record))
            except ValueError:
                logger.warning("Skipping malformed design record: %r", record)
        return designs

    def get(self, design_id: str) -> DesignRecord:
        for design in self.all():
            if design.id == design_id:
                return design
        raise NotFoundError("Design", design_id)

    def upsert(self, draft: DesignDraft) -> UpsertResult:
        validate_draft(draft)
        design_id = draft.id or str(uuid.uuid4())
        with self._store.mutate(DESIGNS) as records:
            index = _index_of(records, design_id)
            design = DesignRecord(
                id=design_id,
                title=draft.title,
                description=draft.description or "",
                author_name=draft.author_name or DEFAULT_AUTHOR,
                level=draft.level or "",
                upload_date=self._clock(),
                thumbnail_url=draft.thumbnail_url,
                event_flag=bool(draft.event_flag),
            )
            if index == -1:
                records.append(design.to_payload())
            else:
                existing = DesignRecord.from_payload(records[index])
                design.download_count = existing.download_count
                if not design.thumbnail_url:
                    design.thumbnail_url = existing.thumbnail_url
                records[index] = design.to_payload()

        created = index == -1
        logger.info(
            "Design %s: %s by %s (ID: %s)",
            "created" if created else "updated",
            design.title,
            design.author_name,
            design.id,
        )
        return UpsertResult(design=design, created=created)

    def browse(self, filters: Optional[BrowseFilters] = None, sort: Optional[str] = SORT_DATE) -> BrowseResult:
        filters = filters or BrowseFilters()
        matching = [design for design in self.all() if filters.matches(design)]
        designs = sort_designs(matching, sort)
        return BrowseResult(designs=designs, total=len(designs))

    def top(self, limit: int = 3) -> List[DesignRecord]:
        return sort_designs(self.all(), SORT_DOWNLOADS)[: max(0, limit)]

    def get_by_ids(self, ids: Iterable[str]) -> List[DesignRecord]:
        wanted = set(ids)
        return [design for design in self.all() if design.id in wanted]

    def increment_download(self, design_id: str) -> DesignRecord:
        with self._store.mutate(DESIGNS) as records:
            design = self._require(records, design_id)
            design.download_count += 1
            records[_index_of(records, design_id)] = design.to_payload()
        logger.info("Design downloaded: %s", design_id)
        return design

    def adjust_like(self, design_id: str, delta: int) -> int:
        with self._store.mutate(DESIGNS) as records:
            design = self._require(records, design_id)
            design.download_count = max(0, design.download_count + int(delta))
            records[_index_of(records, design_id)] = design.to_payload()
        return design.download_count

    def update_text(
        self,
        design_id: str,
        title: Optional[str] = None,
        author_name: Optional[str] = None,
    ) -> TextChange:
        """Rewrite the title and/or author in place, keeping every other field."""

        with self._store.mutate(DESIGNS) as records:
            design = self._require(records, design_id)
            change = TextChange(
                design_id=design_id,
                old_title=design.title,
                new_title=design.title if title is None else title,
                old_author=design.author_name,
                new_author=design.author_name if author_name is None else author_name,
            )
            records[_index_of(records, design_id)].update(
                title=change.new_title, author_name=change.new_author
            )
        return change

    def rewrite_text(self, rewrite: TextRewrite) -> List[TextChange]:
        """Apply ``rewrite(title, author)`` to every design in one locked write.

        Only designs whose text actually changes are written and reported.
        """

        changes = []
        with self._store.mutate(DESIGNS) as records:
            for record in records:
                try:
                    design = DesignRecord.from_payload(record)
                except ValueError:
                    logger.warning("Skipping malformed design record: %r", record)
                    continue
                new_title, new_author = rewrite(design.title, design.author_name)
                change = TextChange(
                    design_id=design.id,
                    old_title=design.title,
                    new_title=new_title,
                    old_author=design.author_name,
                    new_author=new_author,
                )
                if change.changed:
                    record.update(title=new_title, author_name=new_author)
                    changes.append(change)
        return changes

    def delete(self, design_id: str) -> DesignRecord:
        with self._store.mutate(DESIGNS) as records:
            design = self._require(records, design_id)
            del records[_index_of(records, design_id)]

        if self._blobs is not None:
            try:
                self._blobs.delete(design_id)
            except OSError:
                logger.exception("Failed to delete blobs for design %s", design_id)
        logger.info("Design deleted: %s", design_id)
        return design

    def reset(self) -> None:
        """Remove every design record and, through the blob store, every payload."""

        with self._store.mutate(DESIGNS) as records:
            records.clear()
        if self._blobs is not None:
            self._blobs.clear()
        logger.info("Server data reset: all designs cleared")

    @staticmethod
    def _require(records: List[Record], design_id: str) -> DesignRecord:
        index = _index_of(records, design_id)
        if index == -1:
            raise NotFoundError("Design", design_id)
        return DesignRecord.from_payload(records[index])
