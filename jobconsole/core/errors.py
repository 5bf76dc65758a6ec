import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


class JobConsoleError(Exception):
    default_code = "ERROR"
    generic_message = "Unexpected error. Please try again."

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or ""
        self.status = status
        self.request_id = request_id
        self.details = details or {}
        super().__init__(self.message or self.generic_message)


class ConfigError(JobConsoleError):
    default_code = "CONFIG_MISSING"
    generic_message = "The backend address is not configured."


class TransportFailure(JobConsoleError):
    default_code = "TRANSPORT_FAILURE"
    generic_message = "Unable to reach the analysis service. Check your connection and retry."


class TimedOut(JobConsoleError):
    default_code = "TIMED_OUT"
    generic_message = "Request timed out. Please try again."


class UpstreamHttpError(JobConsoleError):
    default_code = "HTTP_ERROR"
    generic_message = "The analysis service rejected the request."


class InvalidPayload(UpstreamHttpError):
    default_code = "INVALID_PAYLOAD"
    generic_message = "The selection is incomplete or malformed. Draw it again."


class InvalidFrameKey(UpstreamHttpError):
    default_code = "INVALID_FRAME_KEY"
    generic_message = "The selected frame is no longer available. Pick another frame."


class TrackNotInFrame(UpstreamHttpError):
    default_code = "TRACK_NOT_IN_FRAME"
    generic_message = "The selected player is not visible in this frame. Pick another frame."


class TargetMismatch(UpstreamHttpError):
    default_code = "TARGET_MISMATCH"
    generic_message = "The box does not match the selected player."

    def __init__(self, *args, allow_force: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.allow_force = allow_force


class InternalError(UpstreamHttpError):
    default_code = "INTERNAL_ERROR"
    generic_message = "The analysis service hit an unexpected error."


# The error code decides the class; the HTTP status only matters when no code is sent.
ERROR_CLASSES = {
    "PROXY_ERROR": TransportFailure,
    "UPSTREAM_UNREACHABLE": TransportFailure,
    "TIMED_OUT": TimedOut,
    "INVALID_PAYLOAD": InvalidPayload,
    "VALIDATION_ERROR": InvalidPayload,
    "INVALID_BBOX": InvalidPayload,
    "MISSING_SELECTION": InvalidPayload,
    "INVALID_FRAME_KEY": InvalidFrameKey,
    "TRACK_NOT_IN_FRAME": TrackNotInFrame,
    "NO_TRACKS_IN_FRAME": TrackNotInFrame,
    "TARGET_MISMATCH": TargetMismatch,
    "INTERNAL_ERROR": InternalError,
}


@dataclass
class ErrorFields:
    code: Optional[str] = None
    message: Optional[str] = None
    request_id: Optional[str] = None
    allow_force: Optional[bool] = None
    details: Optional[Dict[str, Any]] = None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def extract_detail_message(detail: Any) -> Optional[str]:
    if isinstance(detail, str):
        return detail or None
    if isinstance(detail, list):
        messages = []
        for item in detail:
            if isinstance(item, str):
                messages.append(item)
            elif isinstance(item, dict):
                text = _text(item.get("msg")) or _text(item.get("message"))
                messages.append(text or json.dumps(item, ensure_ascii=False))
            elif item is not None:
                messages.append(str(item))
        messages = [message for message in messages if message]
        return "; ".join(messages) if messages else None
    if isinstance(detail, dict):
        return _text(detail.get("message"))
    return None


def parse_error_payload(data: Any, headers: Optional[Mapping[str, str]] = None) -> ErrorFields:
    fields = ErrorFields()
    if isinstance(data, dict):
        error = data.get("error")
        error_obj = _as_dict(error)
        detail = data.get("detail")
        detail_obj = _as_dict(detail)
        meta = _as_dict(data.get("meta"))
        error_details = _as_dict(error_obj.get("details"))

        fields.code = _first(
            _text(error_obj.get("code")),
            _text(detail_obj.get("code")),
            _text(detail_obj.get("error_code")),
            _text(data.get("code")),
            _text(data.get("error_code")),
        )
        fields.request_id = _first(
            _text(data.get("request_id")),
            _text(data.get("requestId")),
            _text(meta.get("request_id")),
            _text(error_obj.get("request_id")),
            _text(error_obj.get("requestId")),
            _text(detail_obj.get("request_id")),
            _text(detail_obj.get("requestId")),
        )
        allow_force = _first(
            data.get("allow_force"),
            data.get("allowForce"),
            error_obj.get("allow_force"),
            error_obj.get("allowForce"),
            error_details.get("allow_force"),
            error_details.get("allowForce"),
            detail_obj.get("allow_force"),
            detail_obj.get("allowForce"),
        )
        if isinstance(allow_force, bool):
            fields.allow_force = allow_force

        missing = _first(
            data.get("missing"),
            error_obj.get("missing"),
            error_details.get("missing"),
            detail_obj.get("missing"),
        )
        missing_fields = (
            [item for item in missing if isinstance(item, str)]
            if isinstance(missing, list)
            else []
        )
        fields.message = _first(
            _text(error),
            _text(error_obj.get("message")),
            extract_detail_message(detail),
            _text(data.get("message")),
            _text(_as_dict(data.get("progress")).get("message")),
            f"Missing: {', '.join(missing_fields)}" if missing_fields else None,
        )
        fields.details = error_details or None
    if fields.request_id is None and headers is not None:
        fields.request_id = _text(headers.get("x-request-id"))
    return fields


def error_from_payload(
    status: Optional[int],
    data: Any,
    headers: Optional[Mapping[str, str]] = None,
    text: Optional[str] = None,
) -> JobConsoleError:
    fields = parse_error_payload(data, headers)
    cls = ERROR_CLASSES.get(fields.code or "")
    if cls is None:
        if status is not None and status >= 500 and fields.code is None:
            cls = InternalError
        else:
            cls = UpstreamHttpError
    message = fields.message
    if message is None and text and "<html" not in text.lower():
        message = text.strip()[:500] or None
    error = cls(
        fields.code,
        message,
        status=status,
        request_id=fields.request_id,
        details=fields.details,
    )
    if isinstance(error, TargetMismatch):
        error.allow_force = bool(fields.allow_force)
    return error


def user_message(exc: BaseException) -> str:
    if not isinstance(exc, JobConsoleError):
        return str(exc) or JobConsoleError.generic_message
    message = exc.message or exc.generic_message
    if isinstance(exc, InternalError) and exc.request_id:
        message = f"{message} (request id: {exc.request_id})"
    return message
