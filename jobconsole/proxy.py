import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import requests
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from jobconsole.core.errors import parse_error_payload
from jobconsole.schemas import ErrorBody, ErrorEnvelope, ErrorMeta

logger = logging.getLogger(__name__)

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

NO_STORE = "no-store"
DEFAULT_PROXY_TIMEOUT_SEC = 60.0


def request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid4())


def error_envelope(
    code: str,
    message: str,
    request_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
) -> dict:
    envelope = ErrorEnvelope(
        error=ErrorBody(code=code, message=message, details=details or None),
        meta=ErrorMeta(
            request_id=request_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ),
    ).model_dump()
    if envelope["error"]["details"] is None:
        del envelope["error"]["details"]
    return envelope


def error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    headers = {"cache-control": NO_STORE}
    if request_id:
        headers["x-request-id"] = request_id
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(code, message, request_id, details),
        headers=headers,
    )


def upstream_error_response(upstream: requests.Response, request_id: str) -> JSONResponse:
    try:
        data = upstream.json()
    except ValueError:
        data = None
    fields = parse_error_payload(data, upstream.headers)
    content_type = upstream.headers.get("content-type", "")
    is_html = "text/html" in content_type.lower()

    code = fields.code
    if code is None:
        code = "UPSTREAM_BAD_GATEWAY" if is_html and upstream.status_code >= 500 else "HTTP_ERROR"
    message = fields.message
    if message is None and not is_html:
        message = (upstream.text or "").strip()[:500] or None
    if message is None:
        message = (
            "Upstream returned an HTML error response."
            if is_html
            else upstream.reason or "Upstream request failed"
        )

    details = dict(fields.details or {})
    if fields.allow_force is not None:
        details["allow_force"] = fields.allow_force
    return error_response(
        upstream.status_code,
        code,
        message,
        fields.request_id or request_id,
        details,
    )


async def forward(
    request: Request,
    target_url: str,
    *,
    method_override: Optional[str] = None,
    include_body: bool = True,
    timeout: float = DEFAULT_PROXY_TIMEOUT_SEC,
) -> Response:
    request_id = request_id_for(request)
    headers = {
        key: value
        for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP
    }
    headers["x-request-id"] = request_id

    # buffered on purpose: streamed bodies do not survive every hosting hop
    body = await request.body() if include_body else b""
    method = method_override or request.method

    try:
        upstream = await run_in_threadpool(
            requests.request,
            method,
            target_url,
            headers=headers,
            data=body or None,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.warning(
            "PROXY_UPSTREAM_FAILED",
            extra={"request_id": request_id, "target_url": target_url, "error": str(exc)},
        )
        return error_response(
            502,
            "PROXY_ERROR",
            str(exc) or "Upstream unreachable",
            request_id,
        )

    content_type = upstream.headers.get("content-type")
    logger.info(
        "PROXY_UPSTREAM",
        extra={
            "request_id": request_id,
            "target_url": target_url,
            "status_code": upstream.status_code,
            "content_type": content_type or "unknown",
        },
    )
    if not 200 <= upstream.status_code < 300:
        return upstream_error_response(upstream, request_id)

    response_headers = {"cache-control": NO_STORE, "x-request-id": request_id}
    if content_type:
        response_headers["content-type"] = content_type
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=response_headers,
    )
