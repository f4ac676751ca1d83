"""FastAPI application entrypoint for the design exchange and telemetry API."""
from __future__ import annotations

import base64
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import FileResponse, Response

from . import database, schemas
from .aggregation import AggregationEngine
from .auth import require_admin
from .blobs import BlobStore, FileBlobStore, decode_base64
from .crashes import DEFAULT_MAX_BYTES, CrashReportStore
from .designs import SORT_DATE, BrowseFilters, DesignDraft, DesignStore, validate_draft
from .errors import NotFoundError, StorageError, ValidationError
from .storage import CollectionStore, SqlCollectionStore
from .telemetry import TelemetryLog
from .text_repair import repair_designs
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Design Exchange API",
    description="API for sharing player designs and collecting gameplay telemetry.",
    version="0.1.0",
)

TOP_DESIGNS_LIMIT = int(os.environ.get("DESIGN_SERVER_TOP_DESIGNS_LIMIT", "3"))
MAX_CRASH_BYTES = int(os.environ.get("DESIGN_SERVER_MAX_CRASH_BYTES", str(DEFAULT_MAX_BYTES)))


@dataclass
class Services:
    collections: CollectionStore
    blobs: BlobStore
    designs: DesignStore
    telemetry: TelemetryLog
    analytics: AggregationEngine
    crashes: CrashReportStore


def build_services(collections: CollectionStore, blobs: BlobStore) -> Services:
    """Wire the core services over the given stores, creating missing collections."""

    collections.initialize()
    telemetry = TelemetryLog(collections)
    return Services(
        collections=collections,
        blobs=blobs,
        designs=DesignStore(collections, blobs),
        telemetry=telemetry,
        analytics=AggregationEngine(telemetry),
        crashes=CrashReportStore(collections, blobs, max_bytes=MAX_CRASH_BYTES),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(
            SqlCollectionStore(database.engine, timeout=database.STORAGE_TIMEOUT),
            FileBlobStore.from_env(),
        )
    return _services


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map core exceptions onto HTTP responses."""

    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{exc.kind} not found") from exc
    except StorageError as exc:
        logger.error("Storage failure: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Storage unavailable") from exc


@app.get("/api/health")
def health() -> dict:
    return {"status": "OK", "message": "Design server is running"}


@app.post("/api/designs", response_model=schemas.UploadOut)
def upload_design(
    body: schemas.DesignUpload,
    services: Services = Depends(get_services),
) -> schemas.UploadOut:
    draft = DesignDraft(
        id=body.design_id or str(uuid.uuid4()),
        title=body.title,
        payload_ref=body.save_data or None,
        description=body.description,
        author_name=body.author_name,
        level=body.level,
        event_flag=body.event_flag,
    )
    with translate_errors():
        validate_draft(draft)
        save_data = decode_base64(body.save_data, "saveData")
        thumbnail = decode_base64(body.thumbnail, "thumbnail") if body.thumbnail else None
        try:
            draft.payload_ref = services.blobs.save_design(draft.id, save_data)
        except OSError as exc:
            logger.exception("Failed to save design file for %s", draft.id)
            raise HTTPException(status_code=500, detail="Failed to save design file") from exc
        if thumbnail is not None:
            draft.thumbnail_url = services.blobs.save_thumbnail(draft.id, thumbnail)
        result = services.designs.upsert(draft)

    return schemas.UploadOut(
        design_id=result.design.id,
        updated=not result.created,
        message="Design uploaded successfully" if result.created else "Design updated successfully",
    )


@app.get("/api/designs", response_model=schemas.DesignListOut)
def browse_designs(
    search: Optional[str] = Query(None),
    level: Optional[List[str]] = Query(None),
    from_date: Optional[str] = Query(None, alias="fromDate"),
    event_flag: Optional[bool] = Query(None, alias="eventFlag"),
    sort: str = Query(SORT_DATE),
    services: Services = Depends(get_services),
) -> schemas.DesignListOut:
    with translate_errors():
        filters = BrowseFilters(
            search=search,
            level=level,
            from_date=parse_timestamp(from_date) if from_date else None,
            event_flag=event_flag,
        )
        result = services.designs.browse(filters, sort)
    logger.info("Browse request: returning %d designs, sort=%s", result.total, sort)
    return schemas.DesignListOut(
        designs=[schemas.DesignOut.from_record(design) for design in result.designs],
        total=result.total,
    )


@app.get("/api/designs/top", response_model=schemas.TopDesignsOut)
def top_designs(
    limit: int = Query(TOP_DESIGNS_LIMIT, ge=1),
    services: Services = Depends(get_services),
) -> schemas.TopDesignsOut:
    designs = services.designs.top(limit)
    return schemas.TopDesignsOut(
        designs=[schemas.DesignOut.from_record(design) for design in designs],
        total=len(services.designs.all()),
        limit=limit,
    )


@app.get("/api/designs/by-ids", response_model=schemas.DesignListOut)
def designs_by_ids(
    ids: str = Query(..., description="Comma separated design ids"),
    services: Services = Depends(get_services),
) -> schemas.DesignListOut:
    wanted = [design_id.strip() for design_id in ids.split(",") if design_id.strip()]
    designs = services.designs.get_by_ids(wanted)
    return schemas.DesignListOut(
        designs=[schemas.DesignOut.from_record(design) for design in designs],
        total=len(designs),
    )


@app.post("/api/designs/{design_id}/download", response_model=schemas.DownloadOut)
def download_design(
    design_id: str,
    services: Services = Depends(get_services),
) -> schemas.DownloadOut:
    with translate_errors():
        if not services.blobs.has_design(design_id):
            raise NotFoundError("Design", design_id)
        design = services.designs.increment_download(design_id)
        data = services.blobs.load_design(design_id)
    return schemas.DownloadOut(
        save_data=base64.b64encode(data).decode("ascii"),
        design_id=design_id,
        thumbnail_url=design.thumbnail_url,
    )


@app.post("/api/designs/{design_id}/like", response_model=schemas.LikeOut)
def like_design(
    design_id: str,
    body: schemas.LikeIn,
    services: Services = Depends(get_services),
) -> schemas.LikeOut:
    with translate_errors():
        count = services.designs.adjust_like(design_id, body.delta)
    return schemas.LikeOut(design_id=design_id, download_count=count)


@app.delete("/api/designs/{design_id}", response_model=schemas.DeleteOut)
def delete_design(
    design_id: str,
    services: Services = Depends(get_services),
) -> schemas.DeleteOut:
    with translate_errors():
        services.designs.delete(design_id)
    return schemas.DeleteOut(message=f"Design {design_id} deleted successfully", deleted_id=design_id)


@app.get("/api/thumbnails/{filename}")
def get_thumbnail(filename: str, services: Services = Depends(get_services)) -> FileResponse:
    with translate_errors():
        path: Optional[Path] = services.blobs.thumbnail_path(filename)
    if path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thumbnail not found")
    return FileResponse(path)


@app.post("/api/admin/update-design-text")
def update_design_text(
    body: schemas.DesignTextIn,
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        change = services.designs.update_text(body.design_id, title=body.title, author_name=body.author_name)
    return {
        "success": True,
        "designId": change.design_id,
        "changes": {
            "title": {"old": change.old_title, "new": change.new_title},
            "author": {"old": change.old_author, "new": change.new_author},
        },
    }


@app.post("/api/admin/repair-censored")
def repair_censored(
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        repairs = repair_designs(services.designs)
    return {
        "success": True,
        "message": f"Repaired {len(repairs)} designs",
        "repaired": len(repairs),
        "repairs": [
            {
                "id": change.design_id,
                "originalTitle": change.old_title,
                "newTitle": change.new_title,
                "originalAuthor": change.old_author,
                "newAuthor": change.new_author,
            }
            for change in repairs
        ],
    }


@app.delete("/api/admin/reset")
def reset_designs(
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        services.designs.reset()
    return {"success": True, "message": "All server data has been cleared via admin reset"}


@app.post("/api/analytics/events", response_model=schemas.EventOut, status_code=status.HTTP_201_CREATED)
def ingest_event(
    event_in: schemas.EventIn,
    services: Services = Depends(get_services),
) -> schemas.EventOut:
    with translate_errors():
        event = services.telemetry.append_event(event_in.model_dump())
    return schemas.EventOut.from_record(event)


@app.post("/api/analytics/events/batch", status_code=status.HTTP_201_CREATED)
def ingest_event_batch(
    batch: schemas.EventBatchIn,
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        events = services.telemetry.append_batch(event.model_dump() for event in batch.events)
    return {"success": True, "count": len(events)}


@app.post("/api/analytics/sessions/start", response_model=schemas.SessionOut, status_code=status.HTTP_201_CREATED)
def start_session(
    body: schemas.SessionStartIn,
    services: Services = Depends(get_services),
) -> schemas.SessionOut:
    with translate_errors():
        session = services.telemetry.start_session(body.client_version, body.platform, body.metadata)
    return schemas.SessionOut.from_record(session)


@app.post("/api/analytics/sessions/{session_id}/end", response_model=schemas.SessionOut)
def end_session(
    session_id: str,
    services: Services = Depends(get_services),
) -> schemas.SessionOut:
    with translate_errors():
        session = services.telemetry.end_session(session_id)
    return schemas.SessionOut.from_record(session)


@app.get("/api/analytics/summary")
def analytics_summary(
    limit: Optional[int] = Query(None, ge=1),
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        return services.analytics.summary(top_limit=limit)


@app.get("/api/analytics/events", response_model=schemas.EventListOut)
def list_events(
    event_name: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.EventListOut:
    with translate_errors():
        page = services.telemetry.query_events(
            event_name=event_name,
            session_id=session_id,
            start=parse_timestamp(start_date) if start_date else None,
            end=parse_timestamp(end_date) if end_date else None,
            limit=limit,
            offset=offset,
        )
    return schemas.EventListOut(
        events=[schemas.EventOut.from_record(event) for event in page.items],
        total=page.total,
    )


@app.get("/api/analytics/sessions", response_model=schemas.SessionListOut)
def list_sessions(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.SessionListOut:
    page = services.telemetry.list_sessions(limit=limit, offset=offset)
    return schemas.SessionListOut(
        sessions=[schemas.SessionOut.from_record(session) for session in page.items],
        total=page.total,
    )


@app.get("/api/analytics/sessions/{session_id}/events", response_model=schemas.EventListOut)
def session_events(
    session_id: str,
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.EventListOut:
    events = services.telemetry.session_events(session_id)
    return schemas.EventListOut(
        events=[schemas.EventOut.from_record(event) for event in events],
        total=len(events),
    )


@app.get("/api/analytics/event-names", response_model=schemas.EventNamesOut)
def event_names(
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.EventNamesOut:
    return schemas.EventNamesOut(event_names=services.analytics.event_names())


@app.get("/api/analytics/event-breakdown")
def event_breakdown(
    event_name: str = Query(...),
    property_name: Optional[str] = Query(None, alias="property"),
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    return services.analytics.event_breakdown(event_name, property_name)


@app.delete("/api/analytics/clear")
def clear_analytics(
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        services.telemetry.clear()
    return {"success": True, "message": "All analytics data has been cleared"}


@app.post("/api/crashes", response_model=schemas.CrashOut, status_code=status.HTTP_201_CREATED)
def upload_crash(
    body: schemas.CrashUploadIn,
    services: Services = Depends(get_services),
) -> schemas.CrashOut:
    with translate_errors():
        data = decode_base64(body.data, "data")
        report = services.crashes.submit(
            body.filename,
            data,
            platform=body.platform,
            client_version=body.client_version,
            error_message=body.error_message,
        )
    return schemas.CrashOut.from_record(report)


@app.get("/api/crashes", response_model=schemas.CrashListOut)
def list_crashes(
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> schemas.CrashListOut:
    reports = services.crashes.all()
    return schemas.CrashListOut(
        crashes=[schemas.CrashOut.from_record(report) for report in reports],
        total=len(reports),
    )


@app.get("/api/crashes/{crash_id}/download")
def download_crash(
    crash_id: str,
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Response:
    with translate_errors():
        report = services.crashes.get(crash_id)
        data = services.crashes.download(crash_id)
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{report.filename}"'},
    )


@app.delete("/api/crashes/{crash_id}")
def delete_crash(
    crash_id: str,
    _: None = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict:
    with translate_errors():
        services.crashes.delete(crash_id)
    return {"success": True, "message": f"Crash report {crash_id} deleted"}


@app.on_event("startup")
def initialize_storage() -> None:
    try:
        get_services()
    except StorageError:
        logger.critical("Failed to initialize collections; refusing to start")
        raise


def reset_application_state(services: Optional[Services] = None) -> None:
    """Reset or replace the wired services. Intended for use in tests."""

    global _services
    _services = services
