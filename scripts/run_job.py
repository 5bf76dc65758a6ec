import asyncio
import sys
from typing import Optional

from jobconsole.client import JobApiClient
from jobconsole.core.env import load_settings
from jobconsole.core.errors import ConfigError
from jobconsole.workers.orchestrator import (
    LOOP_STATUS,
    STATUS_TIMEOUT,
    JobOrchestrator,
    OrchestratorView,
)

USAGE = (
    "Usage: python scripts/run_job.py <job_id>\n"
    "       python scripts/run_job.py new <video_url> <role> <category>"
)


def describe(view: OrchestratorView) -> str:
    progress = view.job.progress if view.job else None
    pct = progress.pct if progress else None
    step = progress.step if progress else None
    candidates = len(view.candidates.candidates) if view.candidates else 0
    line = (
        f"job_id={view.job_id} status={view.status} ui_step={view.step} "
        f"progress={step}:{pct} frames={len(view.frames)} candidates={candidates}"
    )
    if view.manual_fallback:
        line += " manual_fallback=yes"
    if view.conditions:
        line += f" conditions={','.join(view.conditions)}"
    return line


def is_finished(view: OrchestratorView) -> bool:
    if view.job is not None and view.job.is_terminal:
        return True
    return STATUS_TIMEOUT in view.conditions or LOOP_STATUS in view.loop_errors


async def watch(orchestrator: JobOrchestrator, job_id: Optional[str], payload: Optional[dict]) -> int:
    finished = asyncio.Event()
    last_line = None

    def on_view(view: OrchestratorView) -> None:
        nonlocal last_line
        line = describe(view)
        if line != last_line:
            print(line)
            last_line = line
        if view.notice is not None:
            print(f"error: {view.notice.message}")
        for name, notice in view.loop_errors.items():
            print(f"{name} polling stopped: {notice.message}")
        if is_finished(view):
            finished.set()

    orchestrator.subscribe(on_view)
    if payload is not None:
        job = await orchestrator.create_job(payload)
        if job is None:
            return 1
    else:
        orchestrator.open_job(job_id)

    await finished.wait()
    view = orchestrator.view()
    orchestrator.close()
    if view.status == "FAILED" or not (view.job and view.job.is_terminal):
        return 1
    return 0


def main() -> int:
    args = sys.argv[1:]
    if len(args) == 1:
        job_id, payload = args[0], None
    elif len(args) == 4 and args[0] == "new":
        job_id = None
        payload = {"video_url": args[1], "role": args[2], "category": args[3]}
    else:
        print(USAGE)
        return 2

    settings = load_settings()
    try:
        settings.base_url()
    except ConfigError as exc:
        print(exc.message)
        return 2

    orchestrator = JobOrchestrator(JobApiClient(settings), settings)
    return asyncio.run(watch(orchestrator, job_id, payload))


if __name__ == "__main__":
    raise SystemExit(main())
