import json
import logging
from typing import List
from urllib.parse import quote, urlsplit

import requests
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from jobconsole.core.env import Settings
from jobconsole.core.errors import ConfigError
from jobconsole.proxy import NO_STORE, error_response, forward, request_id_for

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_FRAME_CONTENT_TYPE = "image/jpeg"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def error_detail(code: str, message: str, details: dict | None = None) -> dict:
    payload = {"code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


def backend_url(settings: Settings, path: str, request: Request | None = None) -> str:
    try:
        url = settings.api_url(path)
    except ConfigError as exc:
        logger.error("PROXY_CONFIG_ERROR", extra={"code": exc.code})
        raise HTTPException(
            status_code=500,
            detail=error_detail(exc.code, exc.message),
        ) from exc
    query = request.url.query if request is not None else ""
    return f"{url}?{query}" if query else url


def _job_path(job_id: str, suffix: str = "") -> str:
    return f"/jobs/{quote(job_id, safe='')}{suffix}"


async def _forward(request: Request, settings: Settings, url: str, **kwargs) -> Response:
    return await forward(request, url, timeout=settings.proxy_timeout_sec, **kwargs)


@router.post("/jobs")
async def create_job(request: Request, settings: Settings = Depends(get_settings)):
    return await _forward(request, settings, backend_url(settings, "/jobs"))


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id), request)
    return await _forward(request, settings, url, include_body=False)


@router.post("/jobs/{job_id}/enqueue")
async def enqueue_job(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/enqueue"))
    return await _forward(request, settings, url, method_override="POST")


@router.get("/jobs/{job_id}/frames")
async def get_frames(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    if "count" in request.query_params:
        url = backend_url(settings, _job_path(job_id, "/frames"), request)
    else:
        url = backend_url(settings, _job_path(job_id, "/frames")) + "?count=8"
    return await _forward(request, settings, url, include_body=False)


@router.get("/jobs/{job_id}/frames/list")
async def list_frames(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/frames/list"), request)
    return await _forward(request, settings, url, include_body=False)


@router.get("/jobs/{job_id}/candidates")
async def job_candidates(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/candidates"), request)
    return await _forward(request, settings, url, include_body=False)


@router.get("/jobs/{job_id}/candidates/{filename}")
async def candidate_asset(
    job_id: str, filename: str, request: Request, settings: Settings = Depends(get_settings)
):
    url = backend_url(settings, _job_path(job_id, f"/candidates/{quote(filename, safe='')}"))
    return await _forward(request, settings, url, method_override="GET", include_body=False)


def _pick_player_issues(body: bytes) -> List[str]:
    if not body:
        return ["body is required"]
    try:
        payload = json.loads(body)
    except ValueError as exc:
        return [f"invalid JSON: {exc}"]
    if not isinstance(payload, dict):
        return ["body must be a JSON object"]
    issues = []
    for name in ("frame_key", "track_id"):
        value = payload.get(name)
        if not isinstance(value, str) or not value.strip():
            issues.append(f"{name} is required.")
    return issues


@router.post("/jobs/{job_id}/pick-player")
async def pick_player(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/pick-player"))
    issues = _pick_player_issues(await request.body())
    if issues:
        return error_response(
            400,
            "INVALID_PAYLOAD",
            "Invalid pick-player payload.",
            request_id_for(request),
            {"issues": issues},
        )
    return await _forward(request, settings, url, method_override="POST")


@router.post("/jobs/{job_id}/player-ref")
async def save_player_ref(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/player-ref"))
    return await _forward(request, settings, url)


@router.post("/jobs/{job_id}/select-track")
async def select_track(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/select-track"))
    return await _forward(request, settings, url)


@router.post("/jobs/{job_id}/target")
async def save_target(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/target"))
    return await _forward(request, settings, url)


@router.post("/jobs/{job_id}/confirm-selection")
async def confirm_selection(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/confirm-selection"))
    return await _forward(request, settings, url, method_override="POST")


@router.post("/jobs/{job_id}/analyze-player")
async def analyze_player(job_id: str, request: Request, settings: Settings = Depends(get_settings)):
    url = backend_url(settings, _job_path(job_id, "/analyze-player"))
    return await _forward(request, settings, url)


def _host_allowed(url: str, allowed_hosts) -> bool:
    parsed = urlsplit(url)
    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return False
    try:
        port = parsed.port
    except ValueError:
        return False
    netloc = f"{hostname}:{port}" if port else hostname
    allowed = {host.lower() for host in allowed_hosts}
    return netloc in allowed or (port is None and hostname in allowed)


@router.get("/frame-proxy")
async def frame_proxy(request: Request, settings: Settings = Depends(get_settings)):
    request_id = request_id_for(request)
    url = (request.query_params.get("url") or "").strip()
    if not url:
        return error_response(400, "MISSING_URL", "Missing url", request_id)
    parsed = urlsplit(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return error_response(400, "INVALID_URL", "Invalid url", request_id)
    if not _host_allowed(url, settings.frame_proxy_allowed_hosts):
        logger.warning("FRAME_PROXY_HOST_BLOCKED", extra={"host": parsed.netloc, "request_id": request_id})
        return error_response(403, "HOST_NOT_ALLOWED", "Host not allowed", request_id)

    try:
        upstream = await run_in_threadpool(
            requests.get, url, timeout=settings.proxy_timeout_sec
        )
    except requests.RequestException as exc:
        return error_response(502, "UPSTREAM_FETCH_FAILED", str(exc) or "Upstream fetch failed", request_id)
    if not 200 <= upstream.status_code < 300 or not upstream.content:
        return error_response(502, "UPSTREAM_FETCH_FAILED", "Upstream fetch failed", request_id)
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers={
            "content-type": upstream.headers.get("content-type") or DEFAULT_FRAME_CONTENT_TYPE,
            "cache-control": NO_STORE,
        },
    )
