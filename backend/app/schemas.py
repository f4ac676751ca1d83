"""Pydantic models for request and response bodies."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .crashes import CrashReport
from .designs import DesignRecord
from .telemetry import AnalyticsEvent, AnalyticsSession


class DesignUpload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    design_id: Optional[str] = Field(None, alias="designId", description="Existing id to re-publish")
    title: str = Field("", description="Display title of the design")
    description: Optional[str] = None
    author_name: Optional[str] = Field(None, alias="authorName")
    level: Optional[str] = Field(None, description="Category path of the level the design belongs to")
    save_data: str = Field("", alias="saveData", description="Base64 encoded save file")
    thumbnail: Optional[str] = Field(None, description="Base64 encoded thumbnail image")
    event_flag: bool = Field(False, alias="eventFlag")


class DesignOut(BaseModel):
    id: str
    title: str
    description: str
    author_name: str
    level: str
    download_count: int
    upload_date: str
    thumbnail_url: Optional[str] = None
    event_flag: bool = False

    @classmethod
    def from_record(cls, design: DesignRecord) -> "DesignOut":
        return cls(**design.to_payload())


class UploadOut(BaseModel):
    success: bool = True
    design_id: str
    updated: bool
    message: str


class DesignListOut(BaseModel):
    designs: List[DesignOut]
    total: int


class TopDesignsOut(DesignListOut):
    limit: int


class DownloadOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    save_data: str = Field(..., alias="saveData")
    design_id: str
    thumbnail_url: Optional[str] = None


class LikeIn(BaseModel):
    delta: int = Field(1, description="+1 to like, -1 to unlike")


class LikeOut(BaseModel):
    design_id: str
    download_count: int


class DeleteOut(BaseModel):
    success: bool = True
    message: str
    deleted_id: str


class DesignTextIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    design_id: str = Field(..., alias="designId")
    title: Optional[str] = None
    author_name: Optional[str] = Field(None, alias="authorName")


class EventIn(BaseModel):
    event_name: str = Field("", description="Name of the event, e.g. LevelComplete")
    session_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = Field(None, description="ISO-8601 time the event happened")
    client_version: Optional[str] = None
    platform: Optional[str] = None


class EventBatchIn(BaseModel):
    events: List[EventIn]


class EventOut(BaseModel):
    id: str
    session_id: str
    event_name: str
    properties: Dict[str, Any]
    timestamp: str
    client_version: str
    platform: str

    @classmethod
    def from_record(cls, event: AnalyticsEvent) -> "EventOut":
        return cls(**event.to_payload())


class EventListOut(BaseModel):
    events: List[EventOut]
    total: int


class SessionStartIn(BaseModel):
    client_version: Optional[str] = None
    platform: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionOut(BaseModel):
    id: str
    start_time: str
    end_time: Optional[str] = None
    client_version: str
    platform: str
    metadata: Dict[str, Any]
    event_count: int

    @classmethod
    def from_record(cls, session: AnalyticsSession) -> "SessionOut":
        return cls(**session.to_payload())


class SessionListOut(BaseModel):
    sessions: List[SessionOut]
    total: int


class EventNamesOut(BaseModel):
    event_names: List[str]


class CrashUploadIn(BaseModel):
    filename: str = Field(..., description="Name of the crash dump or log file")
    data: str = Field(..., description="Base64 encoded file contents")
    platform: Optional[str] = None
    client_version: Optional[str] = None
    error_message: Optional[str] = None


class CrashOut(BaseModel):
    id: str
    filename: str
    upload_date: str
    platform: str
    client_version: str
    file_size: int
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, report: CrashReport) -> "CrashOut":
        return cls(**report.to_payload())


class CrashListOut(BaseModel):
    crashes: List[CrashOut]
    total: int
