import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from jobconsole.core.env import Settings
from jobconsole.core.errors import (
    InvalidFrameKey,
    InvalidPayload,
    JobConsoleError,
    TargetMismatch,
    TrackNotInFrame,
    UpstreamHttpError,
    user_message,
)
from jobconsole.core.geometry import (
    Point,
    Size,
    apply_resize,
    box_from_drag,
    is_out_of_bounds,
    is_too_small_or_large,
)
from jobconsole.core.normalizers import extract_warnings
from jobconsole.schemas import (
    SELECTION_STATUSES,
    Job,
    PreviewFrame,
    Selection,
    TrackCandidate,
    TrackCandidates,
)
from jobconsole.workers.polling import PollingLoop

logger = logging.getLogger(__name__)

STEP_IDLE = "IDLE"
STEP_PLAYER = "PLAYER"
STEP_TARGET = "TARGET"
STEP_PROCESSING = "PROCESSING"

TARGET_EMPTY = "EMPTY"
TARGET_DRAFT = "DRAFT"
TARGET_PENDING_CONFIRM = "PENDING_CONFIRM"
TARGET_CONFIRMED = "CONFIRMED"
TARGET_MISMATCH_BLOCKED = "MISMATCH_BLOCKED"

STATUS_TIMEOUT = "STATUS_TIMEOUT"
PREVIEW_TIMEOUT = "PREVIEW_TIMEOUT"
CANDIDATES_TIMEOUT = "CANDIDATES_TIMEOUT"
CANDIDATES_FAILED = "CANDIDATES_FAILED"

LOOP_STATUS = "status"
LOOP_PREVIEW = "preview"
LOOP_CANDIDATES = "candidates"
LOOP_CONDITIONS = {
    LOOP_STATUS: STATUS_TIMEOUT,
    LOOP_PREVIEW: PREVIEW_TIMEOUT,
    LOOP_CANDIDATES: CANDIDATES_TIMEOUT,
}

SLOW_STEP_MARKERS = ("TRACK", "DOWNLOAD", "EXTRACT", "PROBING")
SLOTS = ("player", "target")

# errors caused by the submitted input itself; the offending selection is dropped
INPUT_ERRORS = (InvalidPayload, InvalidFrameKey, TrackNotInFrame)


def previews_ready(job: Job, frames_ready: bool = False) -> bool:
    return frames_ready or bool(job.preview_frames) or job.status in SELECTION_STATUSES


def derive_ui_step(
    job: Optional[Job], frames_ready: bool = False, target_confirmed: bool = False
) -> str:
    """Project the job onto the step the operator should be looking at."""
    if job is None:
        return STEP_IDLE
    if job.is_terminal:
        return STEP_PROCESSING
    if job.player_ref is None:
        return STEP_PLAYER if previews_ready(job, frames_ready) else STEP_PROCESSING
    if not (job.target.confirmed or target_confirmed):
        return STEP_TARGET
    return STEP_PROCESSING


@dataclass(frozen=True)
class ErrorNotice:
    code: str
    message: str
    source: str
    request_id: Optional[str] = None
    retryable: bool = False

    @classmethod
    def from_error(
        cls, exc: JobConsoleError, source: str, retryable: bool = False
    ) -> "ErrorNotice":
        return cls(
            code=exc.code,
            message=user_message(exc),
            source=source,
            request_id=exc.request_id,
            retryable=retryable,
        )


@dataclass(frozen=True)
class MismatchDialog:
    message: str
    allow_force: bool
    request_id: Optional[str] = None


@dataclass(frozen=True)
class OrchestratorView:
    step: str
    job: Optional[Job] = None
    frames: Tuple[PreviewFrame, ...] = ()
    frames_frozen: bool = False
    open_frame_key: Optional[str] = None
    candidates: Optional[TrackCandidates] = None
    selected_track_id: Optional[str] = None
    player_selection: Optional[Selection] = None
    target_selections: Tuple[Selection, ...] = ()
    target_state: str = TARGET_EMPTY
    mismatch: Optional[MismatchDialog] = None
    manual_fallback: bool = False
    conditions: Tuple[str, ...] = ()
    loop_errors: Dict[str, ErrorNotice] = field(default_factory=dict)
    running_loops: Tuple[str, ...] = ()
    notice: Optional[ErrorNotice] = None
    warnings: Tuple[str, ...] = ()

    @property
    def job_id(self) -> Optional[str]:
        return self.job.job_id if self.job else None

    @property
    def status(self) -> Optional[str]:
        return self.job.status if self.job else None


class JobOrchestrator:
    """Client-side state for one job at a time.

    Backend calls go through a blocking ``JobApiClient`` run in a worker
    thread. Every job switch bumps ``generation``; responses that come back
    for an older generation are dropped.
    """

    def __init__(
        self,
        client: Any,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self.generation = 0
        self._subscribers: List[Callable[[OrchestratorView], None]] = []
        self.loops: Dict[str, PollingLoop] = {}
        self._reset_state()

    def _reset_state(self) -> None:
        self.job: Optional[Job] = None
        self.frames: List[PreviewFrame] = []
        self.frames_frozen = False
        self.open_frame: Optional[PreviewFrame] = None
        self._preview_paused = False
        self.candidates: Optional[TrackCandidates] = None
        self.selected_track_id: Optional[str] = None
        self.player_selection: Optional[Selection] = None
        self.target_selections: List[Selection] = []
        self.target_state = TARGET_EMPTY
        self.mismatch: Optional[TargetMismatch] = None
        self.manual_fallback = False
        self.conditions: List[str] = []
        self.loop_errors: Dict[str, ErrorNotice] = {}
        self.notice: Optional[ErrorNotice] = None
        self.warnings: List[str] = []

    # observers

    def subscribe(self, callback: Callable[[OrchestratorView], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def target_confirmed(self) -> bool:
        return self.target_state == TARGET_CONFIRMED or bool(
            self.job and self.job.target.confirmed
        )

    @property
    def step(self) -> str:
        return derive_ui_step(
            self.job,
            frames_ready=bool(self.frames),
            target_confirmed=self.target_state == TARGET_CONFIRMED,
        )

    def view(self) -> OrchestratorView:
        mismatch = None
        if self.mismatch is not None:
            mismatch = MismatchDialog(
                message=user_message(self.mismatch),
                allow_force=self.mismatch.allow_force,
                request_id=self.mismatch.request_id,
            )
        return OrchestratorView(
            step=self.step,
            job=self.job,
            frames=tuple(self.frames),
            frames_frozen=self.frames_frozen,
            open_frame_key=self.open_frame.key if self.open_frame else None,
            candidates=self.candidates,
            selected_track_id=self.selected_track_id,
            player_selection=self.player_selection,
            target_selections=tuple(self.target_selections),
            target_state=self.target_state,
            mismatch=mismatch,
            manual_fallback=self.manual_fallback,
            conditions=tuple(self.conditions),
            loop_errors=dict(self.loop_errors),
            running_loops=tuple(name for name, loop in self.loops.items() if loop.running),
            notice=self.notice,
            warnings=tuple(self.warnings),
        )

    def _emit(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.view()
        for callback in list(self._subscribers):
            callback(snapshot)

    # generation bookkeeping

    def _is_stale(self, generation: int, source: str) -> bool:
        if generation == self.generation:
            return False
        logger.info(
            "STALE_RESPONSE_DROPPED",
            extra={"source": source, "generation": generation, "current": self.generation},
        )
        return True

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _set_target_state(self, state: str) -> None:
        if state != self.target_state:
            logger.info(
                "TARGET_STATE",
                extra={"job_id": self.job_id, "from": self.target_state, "to": state},
            )
            self.target_state = state

    @property
    def job_id(self) -> Optional[str]:
        return self.job.job_id if self.job else None

    # job switching

    def _stop_loops(self) -> None:
        for loop in self.loops.values():
            loop.stop()
        self.loops = {}

    def open_job(self, job_id: Optional[str], job: Optional[Job] = None) -> None:
        self._stop_loops()
        self.generation += 1
        self._reset_state()
        if job_id is None:
            logger.info("JOB_CLOSED", extra={"generation": self.generation})
            self._emit()
            return

        self.job = job if job is not None else Job(job_id=job_id)
        if self.job.job_id is None:
            self.job = self.job.model_copy(update={"job_id": job_id})
        logger.info("JOB_OPENED", extra={"job_id": job_id, "generation": self.generation})
        self._build_loops(self.generation)
        self._after_job_update()
        self._start_loop(LOOP_STATUS)
        if self._wants_previews():
            self._start_loop(LOOP_PREVIEW)
        if self._wants_candidates():
            self._start_loop(LOOP_CANDIDATES)
        self._emit()

    def close(self) -> None:
        self.open_job(None)

    def _build_loops(self, generation: int) -> None:
        settings = self.settings
        self.loops = {
            LOOP_STATUS: PollingLoop(
                LOOP_STATUS,
                lambda: self._status_tick(generation),
                self._status_interval,
                max_duration_sec=settings.status_poll_max_sec,
                on_exhausted=lambda: self._loop_exhausted(generation, LOOP_STATUS),
                on_error=lambda exc: self._loop_failed(generation, LOOP_STATUS, exc),
                clock=self._clock,
                sleep=self._sleep,
            ),
            LOOP_PREVIEW: PollingLoop(
                LOOP_PREVIEW,
                lambda: self._preview_tick(generation),
                settings.preview_poll_interval_sec,
                max_attempts=settings.preview_poll_max_attempts,
                on_exhausted=lambda: self._loop_exhausted(generation, LOOP_PREVIEW),
                on_error=lambda exc: self._loop_failed(generation, LOOP_PREVIEW, exc),
                clock=self._clock,
                sleep=self._sleep,
            ),
            LOOP_CANDIDATES: PollingLoop(
                LOOP_CANDIDATES,
                lambda: self._candidate_tick(generation),
                settings.candidate_poll_interval_sec,
                max_attempts=settings.candidate_poll_max_attempts,
                on_exhausted=lambda: self._loop_exhausted(generation, LOOP_CANDIDATES),
                on_error=lambda exc: self._loop_failed(generation, LOOP_CANDIDATES, exc),
                clock=self._clock,
                sleep=self._sleep,
            ),
        }

    def _start_loop(self, name: str) -> None:
        loop = self.loops.get(name)
        if loop is not None and not loop.running:
            loop.start()

    def _stop_loop(self, name: str) -> None:
        loop = self.loops.get(name)
        if loop is not None:
            loop.stop()

    def _wants_previews(self) -> bool:
        return (
            self.job is not None
            and not self.job.is_terminal
            and not self.frames_frozen
            and len(self.frames) < self.settings.preview_frames_required
        )

    def _wants_candidates(self) -> bool:
        return (
            self.job is not None
            and not self.job.is_terminal
            and self.job.player_ref is None
            and self.selected_track_id is None
            and not self.manual_fallback
        )

    # job record updates

    def _merge_job(self, update: Job) -> None:
        if self.job is None:
            self.job = update
            return
        # sub-objects are replaced wholesale, fields the response omits are kept
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        changes.pop("job_id", None)
        self.job = self.job.model_copy(update=changes)

    def _after_job_update(self) -> None:
        job = self.job
        if job is None:
            return
        messages, codes = extract_warnings(job.warnings)
        self.warnings = messages
        if (
            job.progress.step == CANDIDATES_FAILED
            or CANDIDATES_FAILED in codes
            or job.progress.autodetection_status == "FAILED"
        ):
            if not self.manual_fallback:
                logger.info("MANUAL_FALLBACK", extra={"job_id": job.job_id})
            self.manual_fallback = True
        if (
            job.preview_frames
            and not self.frames_frozen
            and len(job.preview_frames) > len(self.frames)
        ):
            self.frames = list(job.preview_frames)
        if job.target.confirmed:
            self._set_target_state(TARGET_CONFIRMED)

        if job.is_terminal:
            self._stop_loop(LOOP_PREVIEW)
            self._stop_loop(LOOP_CANDIDATES)
        elif job.player_ref is not None or self.manual_fallback:
            self._stop_loop(LOOP_CANDIDATES)

    # polling ticks

    def _status_interval(self) -> float:
        step = ((self.job.progress.step if self.job else None) or "").upper()
        if any(marker in step for marker in SLOW_STEP_MARKERS):
            return self.settings.status_poll_slow_interval_sec
        return self.settings.status_poll_interval_sec

    async def _status_tick(self, generation: int) -> bool:
        job = await self._call(self.client.get_job, self.job_id)
        if self._is_stale(generation, LOOP_STATUS):
            return True
        self._merge_job(job)
        self._after_job_update()
        self._emit()
        return self.job.is_terminal

    async def _preview_tick(self, generation: int) -> bool:
        frames = await self._call(self.client.list_preview_frames, self.job_id)
        if self._is_stale(generation, LOOP_PREVIEW):
            return True
        if self.frames_frozen:
            return True
        # an empty or shorter list never replaces frames already on screen
        if frames and len(frames) >= len(self.frames):
            self.frames = list(frames)
            self._emit()
        return len(self.frames) >= self.settings.preview_frames_required

    async def _candidate_tick(self, generation: int) -> bool:
        if not self._wants_candidates():
            return True
        candidates = await self._call(self.client.list_track_candidates, self.job_id)
        if self._is_stale(generation, LOOP_CANDIDATES):
            return True
        self.candidates = candidates
        if candidates.failed:
            logger.info("MANUAL_FALLBACK", extra={"job_id": self.job_id})
            self.manual_fallback = True
        self._emit()
        return not self._wants_candidates()

    def _loop_exhausted(self, generation: int, name: str) -> None:
        if self._is_stale(generation, name):
            return
        condition = LOOP_CONDITIONS[name]
        if condition not in self.conditions:
            self.conditions.append(condition)
        logger.warning("POLL_TIMEOUT", extra={"job_id": self.job_id, "condition": condition})
        self._emit()

    def _loop_failed(self, generation: int, name: str, exc: JobConsoleError) -> None:
        if self._is_stale(generation, name):
            return
        self.loop_errors[name] = ErrorNotice.from_error(exc, name, retryable=True)
        self._emit()

    def retry_loop(self, name: str) -> None:
        if name not in LOOP_CONDITIONS:
            raise ValueError(f"Unknown polling loop: {name}")
        if self.job is None:
            return
        self.loop_errors.pop(name, None)
        if LOOP_CONDITIONS[name] in self.conditions:
            self.conditions.remove(LOOP_CONDITIONS[name])
        self._start_loop(name)
        self._emit()

    # notices

    def _reject(self, exc: JobConsoleError, source: str) -> None:
        self.notice = ErrorNotice.from_error(exc, source)
        logger.info(
            "ACTION_REJECTED",
            extra={"action": source, "code": exc.code, "request_id": exc.request_id},
        )
        self._emit()

    def _require_job(self, source: str) -> bool:
        if self.job is None or self.job.job_id is None:
            self._reject(InvalidPayload(message="Open a job first."), source)
            return False
        return True

    # frame editor

    def _find_frame(self, frame_key: Optional[str]) -> Optional[PreviewFrame]:
        for frame in self.frames:
            if frame.key == frame_key:
                return frame
        return None

    def open_frame_editor(self, frame_key: str) -> bool:
        frame = self._find_frame(frame_key)
        if frame is None:
            self._reject(InvalidFrameKey(message="This frame is no longer available."), "open_frame_editor")
            return False
        self.open_frame = frame
        self.frames_frozen = True
        preview = self.loops.get(LOOP_PREVIEW)
        if preview is not None and preview.running:
            preview.stop()
            self._preview_paused = True
        self.notice = None
        self._emit()
        return True

    def close_frame_editor(self) -> None:
        self.open_frame = None
        self.frames_frozen = False
        if self._preview_paused and self._wants_previews():
            self._start_loop(LOOP_PREVIEW)
        self._preview_paused = False
        self._emit()

    # selection capture

    def _player_track_id(self) -> Optional[str]:
        if self.job is not None and self.job.player_ref is not None and self.job.player_ref.track_id:
            return self.job.player_ref.track_id
        return self.selected_track_id

    def _box_is_valid(self, selection: Selection) -> bool:
        box = selection.box
        return not is_out_of_bounds(box) and not is_too_small_or_large(
            box, self.settings.box_min_size, self.settings.box_max_size
        )

    def capture_selection(
        self, slot: str, start: Point, end: Point, container_size: Size
    ) -> Optional[Selection]:
        if slot not in SLOTS:
            raise ValueError(f"Unknown selection slot: {slot}")
        frame = self.open_frame
        if frame is None:
            self._reject(InvalidFrameKey(message="Open a frame before drawing a box."), "capture_selection")
            return None
        box = box_from_drag(start, end, container_size)
        selection = None
        if box is not None:
            selection = Selection(
                frame_key=frame.key,
                frame_time_sec=frame.time_sec,
                track_id=self._player_track_id(),
                x=box.x,
                y=box.y,
                w=box.w,
                h=box.h,
            )
        if selection is None or not self._box_is_valid(selection):
            self._reject(
                InvalidPayload(message="Draw a box around the player, inside the frame."),
                "capture_selection",
            )
            return None

        if slot == "player":
            self.player_selection = selection
        else:
            if len(self.target_selections) >= self.settings.max_target_selections:
                self._reject(
                    InvalidPayload(
                        message=f"At most {self.settings.max_target_selections} target boxes are allowed."
                    ),
                    "capture_selection",
                )
                return None
            self.target_selections.append(selection)
            self.mismatch = None
            self._set_target_state(TARGET_DRAFT)
        self.notice = None
        self._emit()
        return selection

    def resize_selection(
        self, slot: str, handle: str, delta: Point, index: int = -1
    ) -> Optional[Selection]:
        if slot not in SLOTS:
            raise ValueError(f"Unknown selection slot: {slot}")
        if slot == "player":
            current = self.player_selection
        else:
            try:
                current = self.target_selections[index]
            except IndexError:
                current = None
        if current is None:
            return None
        try:
            box = apply_resize(current.box, handle, delta, self.settings.box_min_size)
        except ValueError as exc:
            self._reject(InvalidPayload(message=str(exc)), "resize_selection")
            return None
        resized = current.with_box(box)
        if not self._box_is_valid(resized):
            self._reject(
                InvalidPayload(message="The box is outside the allowed size."),
                "resize_selection",
            )
            return None

        if slot == "player":
            self.player_selection = resized
        else:
            self.target_selections[index] = resized
            self.mismatch = None
            self._set_target_state(TARGET_DRAFT)
        self.notice = None
        self._emit()
        return resized

    def remove_target_selection(self, index: int) -> None:
        try:
            del self.target_selections[index]
        except IndexError:
            return
        self.mismatch = None
        self._set_target_state(TARGET_DRAFT if self.target_selections else TARGET_EMPTY)
        self._emit()

    def _clear_player_pick(self) -> None:
        self.selected_track_id = None
        self.player_selection = None

    def _clear_target(self) -> None:
        self.target_selections = []
        self.mismatch = None
        self._set_target_state(TARGET_EMPTY)

    # user actions

    async def _run_action(
        self,
        source: str,
        fn: Callable[..., Any],
        *args: Any,
        clear: Optional[Callable[[], None]] = None,
        **kwargs: Any,
    ) -> Optional[Job]:
        generation = self.generation
        try:
            job = await self._call(fn, *args, **kwargs)
        except TargetMismatch as exc:
            if self._is_stale(generation, source):
                return None
            self.mismatch = exc
            self._set_target_state(TARGET_MISMATCH_BLOCKED)
            self.notice = None
            self._emit()
            return None
        except JobConsoleError as exc:
            if self._is_stale(generation, source):
                return None
            if isinstance(exc, INPUT_ERRORS) and clear is not None:
                clear()
            self._reject(exc, source)
            return None
        if self._is_stale(generation, source):
            return None
        self._merge_job(job)
        self._after_job_update()
        self.notice = None
        return self.job

    async def create_job(self, payload: Any) -> Optional[Job]:
        generation = self.generation
        try:
            job = await self._call(self.client.create_job, payload)
        except JobConsoleError as exc:
            if not self._is_stale(generation, "create_job"):
                self._reject(exc, "create_job")
            return None
        if self._is_stale(generation, "create_job"):
            return None
        if not job.job_id:
            self._reject(
                UpstreamHttpError(message="The backend did not return a job id."),
                "create_job",
            )
            return None
        self.open_job(job.job_id, job=job)
        return self.job

    async def pick_track(self, track_id: str, frame_key: Optional[str] = None) -> Optional[Job]:
        if not self._require_job("pick_track"):
            return None
        candidate: Optional[TrackCandidate] = None
        if frame_key is not None:
            frame = self._find_frame(frame_key)
            if frame is not None and frame.tracks and not frame.has_track(track_id):
                self._reject(
                    TrackNotInFrame(message="The selected player is not visible in this frame."),
                    "pick_track",
                )
                return None
        else:
            pool = []
            if self.candidates is not None:
                pool = self.candidates.candidates + self.candidates.fallback_candidates
            candidate = next((item for item in pool if item.track_id == track_id), None)
            if candidate is None:
                self._reject(InvalidPayload(message="Unknown track candidate."), "pick_track")
                return None

        self.selected_track_id = track_id
        self._stop_loop(LOOP_CANDIDATES)
        self._emit()
        if candidate is not None:
            job = await self._run_action(
                "pick_track",
                self.client.select_track,
                self.job_id,
                candidate,
                clear=self._clear_player_pick,
            )
        else:
            job = await self._run_action(
                "pick_track",
                self.client.pick_player,
                self.job_id,
                frame_key,
                track_id,
                clear=self._clear_player_pick,
            )
        self._emit()
        return job

    async def save_player_reference(self) -> Optional[Job]:
        if not self._require_job("save_player_reference"):
            return None
        selection = self.player_selection
        if selection is None or not self._box_is_valid(selection):
            self._reject(
                InvalidPayload(message="Draw a box around the player first."),
                "save_player_reference",
            )
            return None
        job = await self._run_action(
            "save_player_reference",
            self.client.save_player_reference,
            self.job_id,
            selection,
            clear=self._clear_player_pick,
        )
        if job is not None and job.player_ref is not None:
            self.player_selection = None
        self._emit()
        return job

    async def save_target_draft(self) -> Optional[Job]:
        if not self._require_job("save_target_draft"):
            return None
        if self.job.player_ref is None:
            self._reject(
                InvalidPayload(message="Save the player reference before the target."),
                "save_target_draft",
            )
            return None
        if not self.target_selections:
            self._reject(InvalidPayload(message="Draw at least one target box."), "save_target_draft")
            return None
        if self.target_state not in (TARGET_DRAFT, TARGET_PENDING_CONFIRM):
            self._reject(
                InvalidPayload(message="Adjust the target boxes before saving again."),
                "save_target_draft",
            )
            return None
        job = await self._run_action(
            "save_target_draft",
            self.client.save_target_selection,
            self.job_id,
            list(self.target_selections),
            clear=self._clear_target,
        )
        if job is not None:
            self._set_target_state(
                TARGET_CONFIRMED if job.target.confirmed else TARGET_PENDING_CONFIRM
            )
        self._emit()
        return job

    async def confirm_target(self, force: bool = False) -> Optional[Job]:
        if not self._require_job("confirm_target"):
            return None
        if force:
            if (
                self.target_state != TARGET_MISMATCH_BLOCKED
                or self.mismatch is None
                or not self.mismatch.allow_force
            ):
                self._reject(
                    InvalidPayload(message="This target cannot be forced."),
                    "confirm_target",
                )
                return None
            logger.info("TARGET_FORCE", extra={"job_id": self.job_id})
            job = await self._run_action(
                "confirm_target",
                self.client.save_target_selection,
                self.job_id,
                list(self.target_selections),
                force=True,
                clear=self._clear_target,
            )
            if job is not None:
                self.mismatch = None
                self._set_target_state(
                    TARGET_CONFIRMED if job.target.confirmed else TARGET_PENDING_CONFIRM
                )
            self._emit()
            return job

        if self.target_state != TARGET_PENDING_CONFIRM:
            self._reject(
                InvalidPayload(message="Save the target before confirming it."),
                "confirm_target",
            )
            return None
        job = await self._run_action(
            "confirm_target", self.client.confirm_selection, self.job_id
        )
        if job is not None:
            # a 2xx from confirm-selection is the backend accepting the target
            self._set_target_state(TARGET_CONFIRMED)
            job = await self._run_action("confirm_target", self.client.get_job, self.job_id)
        self._emit()
        return job

    def discard_target(self) -> None:
        self._clear_target()
        self.notice = None
        self._emit()

    async def enqueue(self) -> Optional[Job]:
        if not self._require_job("enqueue"):
            return None
        if self.job.player_ref is None:
            self._reject(
                InvalidPayload(message="Select the player before starting the analysis."),
                "enqueue",
            )
            return None
        if not self.target_confirmed:
            self._reject(
                InvalidPayload(message="Confirm the target before starting the analysis."),
                "enqueue",
            )
            return None
        job = await self._run_action("enqueue", self.client.enqueue_job, self.job_id)
        if job is not None and not job.is_terminal:
            self._start_loop(LOOP_STATUS)
        self._emit()
        return job
