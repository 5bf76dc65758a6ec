from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from jobconsole.core.geometry import Box

TERMINAL_STATUSES = {"COMPLETED", "PARTIAL", "FAILED"}
SELECTION_STATUSES = {
    "WAITING_FOR_PLAYER",
    "WAITING_FOR_SELECTION",
    "WAITING_FOR_TARGET",
    "LOW_COVERAGE",
    "CREATED",
    "READY_TO_ENQUEUE",
}


class CreateJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")
    video_url: Optional[str] = None
    video_bucket: Optional[str] = None
    video_key: Optional[str] = None
    role: str = Field(min_length=1)
    category: str = Field(min_length=1)
    team_name: Optional[str] = None
    player_name: Optional[str] = None
    shirt_number: Optional[int] = Field(default=None, ge=0, le=99)

    @model_validator(mode="after")
    def require_video_source(self) -> "CreateJobPayload":
        if not self.video_url and not self.video_key:
            raise ValueError("video_url or video_key is required")
        if self.video_url and self.video_key:
            raise ValueError("Provide either video_url or video_key, not both")
        if self.video_key and not self.video_bucket:
            raise ValueError("video_bucket is required with video_key")
        return self


class Selection(BaseModel):
    frame_key: Optional[str] = None
    frame_time_sec: Optional[float] = None
    track_id: Optional[str] = None
    x: float
    y: float
    w: float
    h: float

    @property
    def box(self) -> Box:
        return Box(self.x, self.y, self.w, self.h)

    def with_box(self, box: Box) -> "Selection":
        return self.model_copy(update={"x": box.x, "y": box.y, "w": box.w, "h": box.h})

    def to_wire(self) -> Dict[str, Any]:
        bbox = {"x": self.x, "y": self.y, "w": self.w, "h": self.h}
        return {
            "frame_key": self.frame_key,
            "track_id": self.track_id,
            "time_sec": self.frame_time_sec,
            "frame_time_sec": self.frame_time_sec,
            "bbox": bbox,
            **bbox,
        }


class JobTarget(BaseModel):
    selections: List[Selection] = Field(default_factory=list)
    confirmed: bool = False


class JobProgress(BaseModel):
    step: Optional[str] = None
    pct: Optional[float] = None
    message: Optional[str] = None
    updated_at: Optional[str] = None
    autodetection_status: Optional[str] = None
    total_tracks: Optional[float] = None
    error_detail: Optional[Any] = None


class PreviewFrameTrack(BaseModel):
    track_id: str
    tier: Optional[str] = None
    score_hint: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None
    w: Optional[float] = None
    h: Optional[float] = None

    @property
    def has_box(self) -> bool:
        return None not in (self.x, self.y, self.w, self.h)


class PreviewFrame(BaseModel):
    key: str
    time_sec: Optional[float] = None
    url: str = ""
    width: Optional[float] = None
    height: Optional[float] = None
    tracks: List[PreviewFrameTrack] = Field(default_factory=list)

    def has_track(self, track_id: str) -> bool:
        return any(track.track_id == track_id for track in self.tracks)


class SampleFrame(BaseModel):
    frame_key: Optional[str] = None
    frame_time_sec: Optional[float] = None
    image_url: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    w: Optional[float] = None
    h: Optional[float] = None


class TrackCandidate(BaseModel):
    track_id: str
    tier: Optional[str] = None
    coverage: Optional[float] = None
    stability: Optional[float] = None
    avg_box_area: Optional[float] = None
    thumbnail_url: Optional[str] = None
    frame_time_sec: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None
    w: Optional[float] = None
    h: Optional[float] = None
    sample_frames: List[SampleFrame] = Field(default_factory=list)


class TrackCandidates(BaseModel):
    status: Optional[str] = None
    autodetection_status: Optional[str] = None
    candidates: List[TrackCandidate] = Field(default_factory=list)
    fallback_candidates: List[TrackCandidate] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return "FAILED" in (self.status, self.autodetection_status)


class Job(BaseModel):
    job_id: Optional[str] = None
    status: Optional[str] = None
    progress: JobProgress = Field(default_factory=JobProgress)
    player_ref: Optional[Selection] = None
    target: JobTarget = Field(default_factory=JobTarget)
    preview_frames: List[PreviewFrame] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failure_reason: Optional[str] = None
    warnings: List[Any] = Field(default_factory=list)
    video_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorMeta(BaseModel):
    request_id: Optional[str] = None
    timestamp: str


class ErrorEnvelope(BaseModel):
    ok: bool = False
    error: ErrorBody
    meta: ErrorMeta
