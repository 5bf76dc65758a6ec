import json
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from jobconsole.schemas import (
    Job,
    JobProgress,
    JobTarget,
    PreviewFrame,
    PreviewFrameTrack,
    SampleFrame,
    Selection,
    TrackCandidate,
    TrackCandidates,
)

# Precedence lists: the first present, non-null key wins. The canonical
# (snake_case) name is always first so that normalized output normalizes
# to itself.
JOB_ID_KEYS = ("job_id", "jobId", "id")
PLAYER_REF_KEYS = ("player_ref", "playerRef")
PREVIEW_FRAMES_KEYS = ("preview_frames", "previewFrames")
VIDEO_URL_KEYS = ("video_url", "videoUrl")
FAILURE_REASON_KEYS = ("failure_reason", "failureReason")
CREATED_AT_KEYS = ("created_at", "createdAt")
UPDATED_AT_KEYS = ("updated_at", "updatedAt")
AUTODETECTION_STATUS_KEYS = ("autodetection_status", "autodetectionStatus")
ERROR_DETAIL_KEYS = ("error_detail", "errorDetail")
TOTAL_TRACKS_KEYS = ("total_tracks", "totalTracks")

SELECTION_TIME_KEYS = (
    "frame_time_sec",
    "frameTimeSec",
    "time_sec",
    "timeSec",
    "t",
    "sample_time_sec",
    "sampleTimeSec",
)
FRAME_TIME_KEYS = ("time_sec", "timeSec", "frame_time_sec", "frameTimeSec", "timestamp", "t")
SELECTION_FRAME_KEY_KEYS = ("frame_key", "frameKey", "key", "s3_key", "s3Key")
FRAME_KEY_KEYS = ("key", "frame_key", "frameKey", "s3_key", "s3Key")
TRACK_ID_KEYS = ("track_id", "trackId", "id", "track")
BBOX_KEYS = ("bbox_xywh", "bbox", "box", "bounding_box", "boundingBox")
TIER_KEYS = ("tier", "group", "section", "category", "bucket", "segment")
SCORE_HINT_KEYS = ("score_hint", "scoreHint", "score", "confidence")
FRAME_TRACKS_KEYS = (
    "tracks",
    "track_overlays",
    "overlay_tracks",
    "overlayTracks",
    "trackOverlays",
    "track_candidates",
    "candidates",
)
FRAME_URL_KEYS = (
    "url",
    "imageUrl",
    "image_url",
    "public_url",
    "publicUrl",
    "signed_url",
    "signedUrl",
)
SAMPLE_IMAGE_URL_KEYS = (
    "image_url",
    "imageUrl",
    "frame_url",
    "frameUrl",
    "thumbnail_url",
    "thumbnailUrl",
    "signed_url",
    "url",
)
SAMPLE_FRAMES_KEYS = ("sample_frames", "sampleFrames", "samples", "frames")
THUMBNAIL_URL_KEYS = (
    "thumbnail_url",
    "thumbnailUrl",
    "sample_url",
    "sampleUrl",
    "frame_url",
    "frameUrl",
    "image_url",
    "imageUrl",
)
COVERAGE_KEYS = ("coverage", "coverage_pct", "coveragePct")
STABILITY_KEYS = ("stability", "stability_score", "stabilityScore")
AVG_BOX_AREA_KEYS = ("avg_box_area", "avgBoxArea", "avg_box", "avg_box_area_pct")
CANDIDATES_KEYS = ("candidates", "items", "tracks")
FALLBACK_CANDIDATES_KEYS = (
    "fallback_candidates",
    "fallbackCandidates",
    "best_matches",
    "bestMatches",
    "fallback",
)
FRAME_LIST_KEYS = ("items", "frames", "preview_frames")

STATUS_ALIASES = {"WAITING_FOR_ANCHOR": "WAITING_FOR_SELECTION"}


def normalize_failure_reason(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        if not value:
            return None
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def pick(record: Any, keys: Iterable[str], default: Any = None) -> Any:
    if not isinstance(record, dict):
        return default
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def has_any(record: Dict[str, Any], keys: Iterable[str]) -> bool:
    return any(key in record for key in keys)


def unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "ok" in payload and "data" in payload:
        return payload.get("data")
    return payload


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _extract_box(record: Dict[str, Any]) -> Tuple[Optional[float], ...]:
    nested = pick(record, BBOX_KEYS)
    if isinstance(nested, (list, tuple)) and len(nested) == 4:
        nested = dict(zip(("x", "y", "w", "h"), nested))
    if not isinstance(nested, dict):
        nested = {}
    return tuple(
        coerce_number(pick(record, (axis,), nested.get(axis)))
        for axis in ("x", "y", "w", "h")
    )


def normalize_status(value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    status = text.upper()
    return STATUS_ALIASES.get(status, status)


def normalize_selection(source: Any) -> Optional[Selection]:
    if isinstance(source, Selection):
        return source
    if not isinstance(source, dict):
        return None
    x, y, w, h = _extract_box(source)
    if None in (x, y, w, h):
        return None
    frame_key = pick(source, SELECTION_FRAME_KEY_KEYS)
    return Selection(
        frame_key=frame_key if isinstance(frame_key, str) and frame_key.strip() else None,
        frame_time_sec=coerce_number(pick(source, SELECTION_TIME_KEYS)),
        track_id=_as_text(pick(source, TRACK_ID_KEYS)),
        x=x,
        y=y,
        w=w,
        h=h,
    )


def normalize_player_ref(raw: Any) -> Optional[Selection]:
    if not raw:
        return None
    if isinstance(raw, str):
        try:
            return normalize_player_ref(json.loads(raw))
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    selection = normalize_selection(raw)
    if selection is not None:
        return selection
    # a ref saved from a track candidate carries its box on the first sample frame
    track_id = _as_text(pick(raw, TRACK_ID_KEYS))
    if track_id is None:
        return None
    for sample in pick(raw, SAMPLE_FRAMES_KEYS, []) or []:
        sample_selection = normalize_selection(sample)
        if sample_selection is not None:
            return sample_selection.model_copy(update={"track_id": track_id})
    return None


def normalize_target(raw: Any) -> JobTarget:
    if not isinstance(raw, dict):
        return JobTarget()
    source = raw.get("selections")
    if not isinstance(source, list):
        single = raw.get("selection")
        source = [single] if isinstance(single, dict) else []
    selections = [
        selection
        for selection in (normalize_selection(item) for item in source)
        if selection is not None
    ]
    return JobTarget(selections=selections, confirmed=raw.get("confirmed") is True)


def normalize_progress(raw: Any, fallback: Optional[Dict[str, Any]] = None) -> JobProgress:
    source = raw if isinstance(raw, dict) else {}
    fallback = fallback or {}
    return JobProgress(
        step=_as_text(source.get("step")),
        pct=coerce_number(source.get("pct")),
        message=_as_text(source.get("message")),
        updated_at=_as_text(pick(source, UPDATED_AT_KEYS)),
        autodetection_status=_as_text(
            pick(source, AUTODETECTION_STATUS_KEYS, pick(fallback, AUTODETECTION_STATUS_KEYS))
        ),
        total_tracks=coerce_number(
            pick(source, TOTAL_TRACKS_KEYS, pick(fallback, TOTAL_TRACKS_KEYS))
        ),
        error_detail=pick(source, ERROR_DETAIL_KEYS, pick(fallback, ERROR_DETAIL_KEYS)),
    )


def normalize_preview_track(raw: Any) -> Optional[PreviewFrameTrack]:
    if not isinstance(raw, dict):
        return None
    track_id = _as_text(pick(raw, TRACK_ID_KEYS))
    if track_id is None:
        return None
    x, y, w, h = _extract_box(raw)
    return PreviewFrameTrack(
        track_id=track_id,
        tier=_as_text(pick(raw, TIER_KEYS)),
        score_hint=coerce_number(pick(raw, SCORE_HINT_KEYS)),
        x=x,
        y=y,
        w=w,
        h=h,
    )


def normalize_preview_frame(raw: Any) -> Optional[PreviewFrame]:
    if not isinstance(raw, dict):
        return None
    time_sec = coerce_number(pick(raw, FRAME_TIME_KEYS))
    key = _as_text(pick(raw, FRAME_KEY_KEYS)) or f"frame-{time_sec}"
    url = _as_text(pick(raw, FRAME_URL_KEYS))
    if url is None:
        bucket = _as_text(pick(raw, ("bucket", "s3_bucket", "s3Bucket")))
        is_public = pick(raw, ("is_public", "isPublic", "public"), False) is True
        if is_public and bucket:
            url = f"https://{bucket}.s3.amazonaws.com/{key}"
    tracks_source = pick(raw, FRAME_TRACKS_KEYS, [])
    tracks = [
        track
        for track in (
            normalize_preview_track(item)
            for item in (tracks_source if isinstance(tracks_source, list) else [])
        )
        if track is not None
    ]
    return PreviewFrame(
        key=key,
        time_sec=time_sec,
        url=url or "",
        width=coerce_number(pick(raw, ("width", "w"))),
        height=coerce_number(pick(raw, ("height", "h"))),
        tracks=tracks,
    )


def normalize_preview_frames(frames: Any) -> List[PreviewFrame]:
    if not isinstance(frames, list):
        return []
    return [
        frame
        for frame in (normalize_preview_frame(item) for item in frames)
        if frame is not None
    ]


def normalize_frame_list(payload: Any) -> List[PreviewFrame]:
    data = unwrap(payload)
    source = data if isinstance(data, list) else pick(data, FRAME_LIST_KEYS, [])
    return [frame for frame in normalize_preview_frames(source) if frame.url]


def normalize_sample_frame(raw: Any) -> Optional[SampleFrame]:
    if not isinstance(raw, dict):
        return None
    x, y, w, h = _extract_box(raw)
    return SampleFrame(
        frame_key=_as_text(pick(raw, SELECTION_FRAME_KEY_KEYS)),
        frame_time_sec=coerce_number(pick(raw, SELECTION_TIME_KEYS)),
        image_url=_as_text(pick(raw, SAMPLE_IMAGE_URL_KEYS)),
        x=x,
        y=y,
        w=w,
        h=h,
    )


def _coverage_fraction(value: Any) -> Optional[float]:
    coverage = coerce_number(value)
    if coverage is not None and coverage > 1:
        coverage = coverage / 100.0
    return coverage


def normalize_track_candidate(raw: Any) -> Optional[TrackCandidate]:
    if not isinstance(raw, dict):
        return None
    track_id = _as_text(pick(raw, TRACK_ID_KEYS))
    if track_id is None:
        return None
    samples_source = pick(raw, SAMPLE_FRAMES_KEYS, [])
    samples = [
        sample
        for sample in (
            normalize_sample_frame(item)
            for item in (samples_source if isinstance(samples_source, list) else [])
        )
        if sample is not None
    ]
    primary = samples[0] if samples else SampleFrame()
    x, y, w, h = _extract_box(raw)
    if None in (x, y, w, h):
        x, y, w, h = primary.x, primary.y, primary.w, primary.h
    frame_time_sec = coerce_number(pick(raw, SELECTION_TIME_KEYS))
    if frame_time_sec is None:
        frame_time_sec = primary.frame_time_sec
    return TrackCandidate(
        track_id=track_id,
        tier=_as_text(pick(raw, TIER_KEYS)),
        coverage=_coverage_fraction(pick(raw, COVERAGE_KEYS)),
        stability=coerce_number(pick(raw, STABILITY_KEYS)),
        avg_box_area=coerce_number(pick(raw, AVG_BOX_AREA_KEYS)),
        thumbnail_url=_as_text(pick(raw, THUMBNAIL_URL_KEYS)) or primary.image_url,
        frame_time_sec=frame_time_sec,
        x=x,
        y=y,
        w=w,
        h=h,
        sample_frames=samples,
    )


def _normalize_candidate_list(source: Any) -> List[TrackCandidate]:
    if not isinstance(source, list):
        return []
    return [
        candidate
        for candidate in (normalize_track_candidate(item) for item in source)
        if candidate is not None
    ]


def normalize_track_candidates(payload: Any) -> TrackCandidates:
    data = unwrap(payload)
    if isinstance(data, list):
        return TrackCandidates(candidates=_normalize_candidate_list(data))
    if not isinstance(data, dict):
        return TrackCandidates()
    return TrackCandidates(
        status=normalize_status(data.get("status")),
        autodetection_status=normalize_status(pick(data, AUTODETECTION_STATUS_KEYS)),
        candidates=_normalize_candidate_list(pick(data, CANDIDATES_KEYS, [])),
        fallback_candidates=_normalize_candidate_list(pick(data, FALLBACK_CANDIDATES_KEYS, [])),
    )


def normalize_job(payload: Any) -> Job:
    if isinstance(payload, Job):
        payload = payload.model_dump(exclude_unset=True)
    data = unwrap(payload)
    if not isinstance(data, dict):
        data = {}
    fields: Dict[str, Any] = {}

    job_id = _as_text(pick(data, JOB_ID_KEYS))
    if job_id is not None:
        fields["job_id"] = job_id
    if "status" in data:
        fields["status"] = normalize_status(data.get("status"))
    if "progress" in data or has_any(data, AUTODETECTION_STATUS_KEYS + ERROR_DETAIL_KEYS):
        fields["progress"] = normalize_progress(data.get("progress"), data)
    if has_any(data, PLAYER_REF_KEYS):
        fields["player_ref"] = normalize_player_ref(pick(data, PLAYER_REF_KEYS))
    if "target" in data:
        fields["target"] = normalize_target(data.get("target"))

    result = data.get("result")
    if "result" in data:
        fields["result"] = dict(result) if isinstance(result, dict) and result else None
    frames_source = pick(data, PREVIEW_FRAMES_KEYS)
    if frames_source is None and isinstance(result, dict):
        frames_source = pick(result, PREVIEW_FRAMES_KEYS)
    if frames_source is not None:
        fields["preview_frames"] = normalize_preview_frames(frames_source)

    if "error" in data:
        fields["error"] = normalize_failure_reason(data.get("error"))
    if has_any(data, FAILURE_REASON_KEYS):
        fields["failure_reason"] = normalize_failure_reason(pick(data, FAILURE_REASON_KEYS))
    if "warnings" in data:
        warnings = data.get("warnings")
        fields["warnings"] = list(warnings) if isinstance(warnings, list) else []

    video_url = pick(data, VIDEO_URL_KEYS)
    if video_url is None:
        video_url = pick(data.get("assets"), ("input_video_url", "inputVideoUrl"))
    if video_url is not None:
        fields["video_url"] = _as_text(video_url)
    if has_any(data, CREATED_AT_KEYS):
        fields["created_at"] = _as_text(pick(data, CREATED_AT_KEYS))
    if has_any(data, UPDATED_AT_KEYS):
        fields["updated_at"] = _as_text(pick(data, UPDATED_AT_KEYS))
    return Job(**fields)


def _warning_message(warning: Dict[str, Any]) -> str:
    return (
        _as_text(pick(warning, ("message", "reason", "detail", "code")))
        or "Warning reported by backend."
    )


def extract_warnings(warnings: Any) -> Tuple[List[str], List[str]]:
    if not isinstance(warnings, list):
        return [], []
    messages: List[str] = []
    codes: List[str] = []
    for warning in warnings:
        if isinstance(warning, str):
            # bare warning codes such as "CANDIDATES_FAILED"
            message = warning
            code = warning if warning.isupper() and " " not in warning else None
        elif isinstance(warning, dict):
            message = _warning_message(warning)
            code = warning.get("code") if isinstance(warning.get("code"), str) else None
        else:
            continue
        if message and message not in messages:
            messages.append(message)
        if code and code not in codes:
            codes.append(code)
    return messages, codes


def rewrite_frame_url(
    url: str, legacy_origin: Optional[str], public_origin: Optional[str]
) -> str:
    if not url or not legacy_origin or not public_origin:
        return url
    parsed = urlsplit(url)
    legacy = urlsplit(legacy_origin if "://" in legacy_origin else f"//{legacy_origin}")
    if parsed.hostname != legacy.hostname:
        return url
    if legacy.port is not None and parsed.port not in (None, legacy.port):
        return url
    public = urlsplit(public_origin)
    return urlunsplit((public.scheme, public.netloc, parsed.path, parsed.query, parsed.fragment))
