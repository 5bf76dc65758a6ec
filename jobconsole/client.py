import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import quote

import requests
from pydantic import ValidationError

from jobconsole.core.env import Settings
from jobconsole.core.errors import (
    InvalidPayload,
    TimedOut,
    TransportFailure,
    error_from_payload,
)
from jobconsole.core.normalizers import (
    normalize_frame_list,
    normalize_job,
    normalize_selection,
    normalize_track_candidates,
    rewrite_frame_url,
    unwrap,
)
from jobconsole.schemas import (
    CreateJobPayload,
    Job,
    PreviewFrame,
    Selection,
    TrackCandidate,
    TrackCandidates,
)

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json", "Cache-Control": "no-store"}


def _job_path(job_id: str, suffix: str = "") -> str:
    return f"/jobs/{quote(job_id, safe='')}{suffix}"


def _validation_message(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
        message = str(error.get("msg", "invalid value"))
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid payload"


class JobApiClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = self.settings.api_url(path)
        try:
            response = self.session.request(
                method,
                url,
                json=payload,
                params=params,
                headers=JSON_HEADERS,
                timeout=self.settings.request_timeout_sec,
            )
        except requests.Timeout as exc:
            logger.warning("API_TIMEOUT method=%s url=%s", method, url)
            raise TimedOut(message="Request timed out. Please try again.") from exc
        except requests.RequestException as exc:
            logger.warning("API_TRANSPORT_FAILURE method=%s url=%s error=%s", method, url, exc)
            raise TransportFailure(message=str(exc) or None) from exc

        if not 200 <= response.status_code < 300:
            try:
                data = response.json()
            except ValueError:
                data = None
            error = error_from_payload(
                response.status_code, data, response.headers, response.text
            )
            logger.info(
                "API_ERROR",
                extra={
                    "method": method,
                    "url": url,
                    "status_code": response.status_code,
                    "code": error.code,
                    "request_id": error.request_id,
                },
            )
            raise error

        try:
            return unwrap(response.json())
        except ValueError:
            return None

    def _public_frames(self, frames: Iterable[PreviewFrame]) -> List[PreviewFrame]:
        # frames without a url cannot be shown; legacy storage origins are rewritten
        return [
            frame.model_copy(
                update={
                    "url": rewrite_frame_url(
                        frame.url,
                        self.settings.legacy_frame_origin,
                        self.settings.public_frame_origin,
                    )
                }
            )
            for frame in frames
            if frame.url
        ]

    def _job(self, data: Any) -> Job:
        job = normalize_job(data)
        if "preview_frames" in job.model_fields_set:
            job = job.model_copy(update={"preview_frames": self._public_frames(job.preview_frames)})
        return job

    def create_job(self, payload: Union[CreateJobPayload, Dict[str, Any]]) -> Job:
        if not isinstance(payload, CreateJobPayload):
            try:
                payload = CreateJobPayload.model_validate(payload)
            except ValidationError as exc:
                raise InvalidPayload(message=_validation_message(exc)) from exc
        data = self._request(
            "POST", "/jobs", payload=payload.model_dump(exclude_none=True)
        )
        return self._job(data)

    def enqueue_job(self, job_id: str) -> Job:
        return self._job(self._request("POST", _job_path(job_id, "/enqueue"), payload={}))

    def get_job(self, job_id: str, track_id: Optional[str] = None) -> Job:
        params = {"track_id": track_id} if track_id else None
        return self._job(self._request("GET", _job_path(job_id), params=params))

    def list_preview_frames(self, job_id: str) -> List[PreviewFrame]:
        return self._public_frames(
            normalize_frame_list(self._request("GET", _job_path(job_id, "/frames/list")))
        )

    def list_track_candidates(self, job_id: str) -> TrackCandidates:
        return normalize_track_candidates(self._request("GET", _job_path(job_id, "/candidates")))

    def save_target_selection(
        self, job_id: str, selections: Iterable[Selection], force: bool = False
    ) -> Job:
        wire_selections = []
        for selection in selections:
            if (
                not selection.frame_key
                or not selection.track_id
                or selection.frame_time_sec is None
            ):
                raise InvalidPayload(
                    message="Target selection payload missing frame_key, track_id, or time."
                )
            wire_selections.append(selection.to_wire())
        if not wire_selections:
            raise InvalidPayload(message="Draw at least one target box.")
        request_payload: Dict[str, Any] = {"selections": wire_selections}
        if force:
            request_payload["force"] = True
        logger.info(
            "target payload job_id=%s selections=%s force=%s",
            job_id,
            len(wire_selections),
            force,
        )
        return self._job(
            self._request("POST", _job_path(job_id, "/target"), payload=request_payload)
        )

    def save_player_reference(self, job_id: str, selection: Selection) -> Job:
        if selection.frame_time_sec is None:
            raise InvalidPayload(
                message="Missing frame time from preview frame. Pick a frame with timing."
            )
        request_payload = {
            "frame_time_sec": selection.frame_time_sec,
            "bbox_xywh": {
                "x": selection.x,
                "y": selection.y,
                "w": selection.w,
                "h": selection.h,
            },
        }
        data = self._request("POST", _job_path(job_id, "/player-ref"), payload=request_payload)
        job = self._job(data)
        if "player_ref" not in job.model_fields_set:
            # a 2xx without an echoed ref means the submitted box was stored as-is
            accepted = normalize_selection(data) or selection
            job = job.model_copy(update={"player_ref": accepted})
        return job

    def pick_player(self, job_id: str, frame_key: str, track_id: str) -> Job:
        if not frame_key or not track_id:
            raise InvalidPayload(message="frame_key and track_id are required.")
        request_payload = {"frame_key": frame_key, "track_id": track_id}
        return self._job(
            self._request("POST", _job_path(job_id, "/pick-player"), payload=request_payload)
        )

    def select_track(self, job_id: str, candidate: TrackCandidate) -> Job:
        values = (candidate.frame_time_sec, candidate.x, candidate.y, candidate.w, candidate.h)
        if any(value is None for value in values):
            raise InvalidPayload(message="Missing selection data for track candidate.")
        request_payload = {
            "trackId": candidate.track_id,
            "selection": {
                "time_sec": candidate.frame_time_sec,
                "frame_time_sec": candidate.frame_time_sec,
                "bbox": {"x": candidate.x, "y": candidate.y, "w": candidate.w, "h": candidate.h},
            },
        }
        return self._job(
            self._request("POST", _job_path(job_id, "/select-track"), payload=request_payload)
        )

    def confirm_selection(self, job_id: str) -> Job:
        return self._job(
            self._request("POST", _job_path(job_id, "/confirm-selection"), payload={})
        )
