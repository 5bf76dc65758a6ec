import asyncio
import threading
import time
import unittest

from jobconsole.client import JobApiClient
from jobconsole.core.env import Settings
from jobconsole.core.errors import (
    InternalError,
    InvalidFrameKey,
    InvalidPayload,
    TargetMismatch,
    TransportFailure,
)
from jobconsole.schemas import (
    Job,
    JobProgress,
    JobTarget,
    PreviewFrame,
    PreviewFrameTrack,
    Selection,
    TrackCandidate,
    TrackCandidates,
)
from jobconsole.workers.orchestrator import (
    CANDIDATES_TIMEOUT,
    LOOP_CANDIDATES,
    LOOP_PREVIEW,
    LOOP_STATUS,
    PREVIEW_TIMEOUT,
    STEP_IDLE,
    STEP_PLAYER,
    STEP_PROCESSING,
    STEP_TARGET,
    TARGET_CONFIRMED,
    TARGET_DRAFT,
    TARGET_EMPTY,
    TARGET_MISMATCH_BLOCKED,
    TARGET_PENDING_CONFIRM,
    JobOrchestrator,
    derive_ui_step,
)

FRAME_1 = PreviewFrame(
    key="k1",
    time_sec=4.0,
    url="https://cdn/k1.jpg",
    tracks=[PreviewFrameTrack(track_id="7", x=0.1, y=0.1, w=0.2, h=0.3)],
)
FRAME_2 = PreviewFrame(key="k2", time_sec=8.0, url="https://cdn/k2.jpg")
PLAYER_REF = Selection(frame_key="k1", frame_time_sec=4.0, track_id="7", x=0.1, y=0.1, w=0.2, h=0.3)


class DummyClient:
    def __init__(self):
        self.jobs = {}
        self.results = {}
        self.frame_responses = []
        self.default_candidates = TrackCandidates()
        self.calls = []
        self.gated = set()
        self.gate = threading.Event()
        self.entered = threading.Event()

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.gated:
            self.entered.set()
            self.gate.wait(5)

    def _result(self, name, default):
        queue = self.results.get(name)
        result = queue.pop(0) if queue else default
        if isinstance(result, Exception):
            raise result
        return result

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def calls_to(self, name):
        return [call for call in self.calls if call[0] == name]

    def create_job(self, payload):
        self._record("create_job", payload)
        return self._result("create_job", Job(job_id="job-1", status="QUEUED"))

    def get_job(self, job_id, track_id=None):
        self._record("get_job", job_id)
        return self._result("get_job", self.jobs.get(job_id, Job(job_id=job_id, status="PROCESSING")))

    def list_preview_frames(self, job_id):
        self._record("list_preview_frames", job_id)
        if self.frame_responses:
            return self.frame_responses.pop(0)
        return []

    def list_track_candidates(self, job_id):
        self._record("list_track_candidates", job_id)
        return self._result("list_track_candidates", self.default_candidates)

    def save_target_selection(self, job_id, selections, force=False):
        self._record("save_target_selection", job_id, selections, force=force)
        return self._result(
            "save_target_selection",
            Job(target=JobTarget(selections=list(selections), confirmed=False)),
        )

    def save_player_reference(self, job_id, selection):
        self._record("save_player_reference", job_id, selection)
        return self._result("save_player_reference", Job(player_ref=selection))

    def pick_player(self, job_id, frame_key, track_id):
        self._record("pick_player", job_id, frame_key, track_id)
        return self._result("pick_player", Job(player_ref=PLAYER_REF, status="WAITING_FOR_TARGET"))

    def select_track(self, job_id, candidate):
        self._record("select_track", job_id, candidate)
        ref = Selection(
            track_id=candidate.track_id,
            frame_time_sec=candidate.frame_time_sec,
            x=candidate.x,
            y=candidate.y,
            w=candidate.w,
            h=candidate.h,
        )
        return self._result("select_track", Job(player_ref=ref, status="WAITING_FOR_TARGET"))

    def confirm_selection(self, job_id):
        self._record("confirm_selection", job_id)
        return self._result("confirm_selection", Job(status="CREATED"))

    def enqueue_job(self, job_id):
        self._record("enqueue_job", job_id)
        return self._result("enqueue_job", Job(status="QUEUED"))


def make_settings(**overrides):
    values = dict(
        api_base_url="https://api.example.com",
        status_poll_interval_sec=0.01,
        status_poll_slow_interval_sec=0.01,
        preview_poll_interval_sec=0.0,
        candidate_poll_interval_sec=0.01,
        preview_frames_required=2,
    )
    values.update(overrides)
    return Settings(**values)


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class DeriveStepTests(unittest.TestCase):
    def test_projection(self):
        self.assertEqual(derive_ui_step(None), STEP_IDLE)
        self.assertEqual(derive_ui_step(Job(status="WAITING_FOR_PLAYER")), STEP_PLAYER)
        self.assertEqual(derive_ui_step(Job(status="QUEUED")), STEP_PROCESSING)
        self.assertEqual(derive_ui_step(Job(status="QUEUED"), frames_ready=True), STEP_PLAYER)
        self.assertEqual(derive_ui_step(Job(status="WAITING_FOR_TARGET", player_ref=PLAYER_REF)), STEP_TARGET)
        self.assertEqual(
            derive_ui_step(Job(status="WAITING_FOR_TARGET", player_ref=PLAYER_REF), target_confirmed=True),
            STEP_PROCESSING,
        )
        self.assertEqual(
            derive_ui_step(
                Job(status="CREATED", player_ref=PLAYER_REF, target=JobTarget(confirmed=True))
            ),
            STEP_PROCESSING,
        )
        self.assertEqual(derive_ui_step(Job(status="FAILED")), STEP_PROCESSING)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    settings = make_settings()

    def setUp(self):
        self.client = DummyClient()
        self.orchestrator = JobOrchestrator(self.client, self.settings)
        self.views = []
        self.orchestrator.subscribe(self.views.append)

    async def asyncTearDown(self):
        self.client.gate.set()
        self.orchestrator.close()
        await asyncio.sleep(0)

    def open_selection_job(self, **fields):
        job = Job(job_id="job-1", status="WAITING_FOR_PLAYER", preview_frames=[FRAME_1, FRAME_2], **fields)
        self.client.jobs["job-1"] = job
        self.orchestrator.open_job("job-1", job=job)


class CreateAndEnqueueTests(OrchestratorTestCase):
    async def test_create_then_enqueue_without_player_is_rejected_locally(self):
        self.client.jobs["job-1"] = Job(job_id="job-1", status="QUEUED")
        job = await self.orchestrator.create_job(
            {"video_url": "https://x/y.mp4", "role": "Striker", "category": "U17"}
        )

        self.assertEqual(job.status, "QUEUED")
        self.assertEqual(self.orchestrator.view().status, "QUEUED")
        self.assertIn(LOOP_STATUS, self.orchestrator.view().running_loops)

        result = await self.orchestrator.enqueue()

        notice = self.orchestrator.view().notice
        self.assertIsNone(result)
        self.assertEqual(self.client.count("enqueue_job"), 0)
        self.assertEqual(notice.source, "enqueue")
        self.assertEqual(notice.code, "INVALID_PAYLOAD")

    async def test_create_failure_is_an_inline_notice(self):
        self.client.results["create_job"] = [InternalError(message="Crash", request_id="req-9")]

        job = await self.orchestrator.create_job({"video_url": "https://x/y.mp4", "role": "R", "category": "C"})

        notice = self.orchestrator.view().notice
        self.assertIsNone(job)
        self.assertEqual(notice.request_id, "req-9")
        self.assertEqual(notice.message, "Crash (request id: req-9)")
        self.assertEqual(self.orchestrator.step, STEP_IDLE)

    async def test_views_are_pushed_to_subscribers(self):
        self.open_selection_job()

        self.assertEqual(self.views[-1].job_id, "job-1")
        self.assertEqual(self.views[-1].step, STEP_PLAYER)


class StepProjectionTests(OrchestratorTestCase):
    async def test_waiting_for_player_ignores_stale_candidates(self):
        self.open_selection_job()
        self.orchestrator.candidates = TrackCandidates(candidates=[TrackCandidate(track_id="3")])
        self.orchestrator.selected_track_id = "3"

        self.assertEqual(self.orchestrator.view().step, STEP_PLAYER)


class TargetConfirmationTests(OrchestratorTestCase):
    settings = make_settings(preview_frames_required=1)

    def draw_target(self):
        self.assertTrue(self.orchestrator.open_frame_editor("k1"))
        selection = self.orchestrator.capture_selection("target", (100, 100), (300, 400), (1000, 1000))
        self.assertIsNotNone(selection)
        return selection

    async def test_mismatch_then_explicit_force(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        selection = self.draw_target()
        self.assertEqual(selection.track_id, "7")
        self.assertEqual(selection.frame_key, "k1")
        self.assertEqual(self.orchestrator.target_state, TARGET_DRAFT)
        self.client.results["save_target_selection"] = [
            TargetMismatch(message="Box does not match", status=409, allow_force=True),
            Job(target=JobTarget(selections=[selection], confirmed=True)),
        ]

        await self.orchestrator.save_target_draft()

        view = self.orchestrator.view()
        self.assertEqual(view.target_state, TARGET_MISMATCH_BLOCKED)
        self.assertTrue(view.mismatch.allow_force)
        self.assertEqual(view.mismatch.message, "Box does not match")
        self.assertEqual(self.client.count("save_target_selection"), 1)
        self.assertFalse(self.client.calls_to("save_target_selection")[0][2]["force"])

        await self.orchestrator.confirm_target()
        self.assertEqual(self.client.count("save_target_selection"), 1)
        self.assertEqual(self.client.count("confirm_selection"), 0)

        await self.orchestrator.confirm_target(force=True)

        saves = self.client.calls_to("save_target_selection")
        self.assertEqual(len(saves), 2)
        self.assertIs(saves[1][2]["force"], True)
        self.assertEqual(self.orchestrator.target_state, TARGET_CONFIRMED)
        self.assertIsNone(self.orchestrator.view().mismatch)

    async def test_force_not_offered_without_allow_force(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        self.draw_target()
        self.client.results["save_target_selection"] = [TargetMismatch(status=409, allow_force=False)]

        await self.orchestrator.save_target_draft()
        await self.orchestrator.confirm_target(force=True)

        self.assertFalse(self.orchestrator.view().mismatch.allow_force)
        self.assertEqual(self.client.count("save_target_selection"), 1)
        self.assertEqual(self.orchestrator.view().notice.source, "confirm_target")

    async def test_discard_clears_the_dialog(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        self.draw_target()
        self.client.results["save_target_selection"] = [TargetMismatch(status=409, allow_force=True)]
        await self.orchestrator.save_target_draft()

        self.orchestrator.discard_target()

        view = self.orchestrator.view()
        self.assertEqual(view.target_state, TARGET_EMPTY)
        self.assertEqual(view.target_selections, ())
        self.assertIsNone(view.mismatch)

    async def test_draft_confirm_enqueue(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        self.draw_target()

        await self.orchestrator.save_target_draft()
        self.assertEqual(self.orchestrator.target_state, TARGET_PENDING_CONFIRM)
        self.assertEqual(self.orchestrator.step, STEP_TARGET)

        await self.orchestrator.confirm_target()
        self.assertEqual(self.client.count("confirm_selection"), 1)
        self.assertEqual(self.orchestrator.target_state, TARGET_CONFIRMED)
        self.assertEqual(self.orchestrator.step, STEP_PROCESSING)

        job = await self.orchestrator.enqueue()
        self.assertEqual(job.status, "QUEUED")
        self.assertEqual(self.client.count("enqueue_job"), 1)

    async def test_enqueue_failure_keeps_request_id(self):
        self.open_selection_job(player_ref=PLAYER_REF, target=JobTarget(confirmed=True))
        self.client.results["enqueue_job"] = [InternalError(message="Worker down", request_id="req-42")]

        await self.orchestrator.enqueue()

        notice = self.orchestrator.view().notice
        self.assertEqual(notice.code, "INTERNAL_ERROR")
        self.assertEqual(notice.request_id, "req-42")
        self.assertIn("req-42", notice.message)

    async def test_invalid_payload_from_backend_clears_target(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        self.draw_target()
        self.client.results["save_target_selection"] = [InvalidPayload(message="Box too small")]

        await self.orchestrator.save_target_draft()

        view = self.orchestrator.view()
        self.assertEqual(view.target_selections, ())
        self.assertEqual(view.target_state, TARGET_EMPTY)
        self.assertEqual(view.notice.message, "Box too small")


class SelectionCaptureTests(OrchestratorTestCase):
    async def test_drag_without_open_frame(self):
        self.open_selection_job()

        selection = self.orchestrator.capture_selection("player", (0, 0), (100, 100), (1000, 1000))

        self.assertIsNone(selection)
        self.assertEqual(self.orchestrator.view().notice.code, "INVALID_FRAME_KEY")

    async def test_invalid_drags_produce_no_selection(self):
        self.open_selection_job()
        self.orchestrator.open_frame_editor("k1")
        drags = [
            ((10, 10), (11, 200)),
            ((0, 0), (1000, 1000)),
            ((10, 10), (15, 15)),
        ]
        for start, end in drags:
            with self.subTest(start=start, end=end):
                self.assertIsNone(
                    self.orchestrator.capture_selection("player", start, end, (1000, 1000))
                )
                self.assertEqual(self.orchestrator.view().notice.code, "INVALID_PAYLOAD")
        self.assertIsNone(self.orchestrator.player_selection)

    async def test_captured_and_resized_boxes_stay_inside(self):
        self.open_selection_job()
        self.orchestrator.open_frame_editor("k1")
        self.orchestrator.capture_selection("player", (700, 700), (900, 950), (1000, 1000))

        for handle, delta in (("se", (0.5, 0.5)), ("move", (0.4, 0.4)), ("nw", (-2.0, -2.0))):
            resized = self.orchestrator.resize_selection("player", handle, delta)
            if resized is None:
                resized = self.orchestrator.player_selection
            self.assertGreaterEqual(resized.x, 0.0)
            self.assertGreaterEqual(resized.y, 0.0)
            self.assertLessEqual(resized.x + resized.w, 1.0 + 1e-6)
            self.assertLessEqual(resized.y + resized.h, 1.0 + 1e-6)

    async def test_target_selection_limit(self):
        self.open_selection_job(player_ref=PLAYER_REF)
        self.orchestrator.open_frame_editor("k1")
        for _ in range(self.settings.max_target_selections):
            self.assertIsNotNone(
                self.orchestrator.capture_selection("target", (100, 100), (200, 300), (1000, 1000))
            )

        extra = self.orchestrator.capture_selection("target", (100, 100), (200, 300), (1000, 1000))

        self.assertIsNone(extra)
        self.assertEqual(len(self.orchestrator.target_selections), self.settings.max_target_selections)
        self.orchestrator.remove_target_selection(0)
        self.assertEqual(len(self.orchestrator.target_selections), self.settings.max_target_selections - 1)

    async def test_player_reference_save(self):
        self.open_selection_job()
        self.orchestrator.open_frame_editor("k1")
        self.orchestrator.capture_selection("player", (100, 100), (300, 400), (1000, 1000))

        job = await self.orchestrator.save_player_reference()

        self.assertEqual(job.player_ref.frame_time_sec, 4.0)
        self.assertIsNone(self.orchestrator.player_selection)
        self.assertEqual(self.orchestrator.step, STEP_TARGET)
        self.assertNotIn(LOOP_CANDIDATES, self.orchestrator.view().running_loops)

    async def test_pick_track_not_in_frame_is_rejected_locally(self):
        self.open_selection_job()

        await self.orchestrator.pick_track("5", frame_key="k1")

        self.assertEqual(self.client.count("pick_player"), 0)
        self.assertEqual(self.orchestrator.view().notice.code, "TRACK_NOT_IN_FRAME")
        self.assertIsNone(self.orchestrator.selected_track_id)

    async def test_backend_frame_key_error_clears_pick(self):
        self.open_selection_job()
        self.client.results["pick_player"] = [InvalidFrameKey(message="Frame expired")]

        await self.orchestrator.pick_track("7", frame_key="k2")

        view = self.orchestrator.view()
        self.assertEqual(self.client.count("pick_player"), 1)
        self.assertIsNone(view.selected_track_id)
        self.assertEqual(view.notice.message, "Frame expired")

    async def test_pick_from_candidates(self):
        self.client.default_candidates = TrackCandidates(
            candidates=[TrackCandidate(track_id="3", frame_time_sec=2.0, x=0.1, y=0.1, w=0.1, h=0.2)]
        )
        self.open_selection_job()
        await wait_until(lambda: self.orchestrator.candidates is not None)

        job = await self.orchestrator.pick_track("3")

        self.assertEqual(job.player_ref.track_id, "3")
        self.assertEqual(self.client.count("select_track"), 1)
        self.assertEqual(self.orchestrator.step, STEP_TARGET)
        self.assertNotIn(LOOP_CANDIDATES, self.orchestrator.view().running_loops)


class PollingTests(OrchestratorTestCase):
    settings = make_settings(preview_frames_required=8, preview_poll_max_attempts=30)

    async def test_empty_previews_time_out_and_keep_frames(self):
        self.client.frame_responses = [[FRAME_1, FRAME_2]]
        self.client.jobs["job-1"] = Job(job_id="job-1", status="PROCESSING")
        self.orchestrator.open_job("job-1")

        await self.orchestrator.loops[LOOP_PREVIEW].wait()

        view = self.orchestrator.view()
        self.assertEqual(self.client.count("list_preview_frames"), 30)
        self.assertIn(PREVIEW_TIMEOUT, view.conditions)
        self.assertEqual([frame.key for frame in view.frames], ["k1", "k2"])
        self.assertNotIn(LOOP_PREVIEW, view.running_loops)

    async def test_status_error_stops_only_that_loop(self):
        self.client.results["get_job"] = [TransportFailure(message="offline")]
        self.orchestrator.open_job("job-1")

        await self.orchestrator.loops[LOOP_STATUS].wait()

        view = self.orchestrator.view()
        self.assertTrue(view.loop_errors[LOOP_STATUS].retryable)
        self.assertEqual(view.loop_errors[LOOP_STATUS].message, "offline")
        self.assertIn(LOOP_CANDIDATES, view.running_loops)

        self.orchestrator.retry_loop(LOOP_STATUS)

        self.assertNotIn(LOOP_STATUS, self.orchestrator.view().loop_errors)
        self.assertIn(LOOP_STATUS, self.orchestrator.view().running_loops)

    async def test_unreadable_status_response_surfaces_a_loop_error(self):
        self.client.results["get_job"] = [OverflowError("int too large to convert to float")]
        self.orchestrator.open_job("job-1")

        with self.assertLogs("jobconsole.workers.polling", level="ERROR"):
            await self.orchestrator.loops[LOOP_STATUS].wait()

        view = self.orchestrator.view()
        self.assertNotIn(LOOP_STATUS, view.running_loops)
        self.assertEqual(view.loop_errors[LOOP_STATUS].code, "UNEXPECTED_RESPONSE")
        self.assertTrue(view.loop_errors[LOOP_STATUS].retryable)

        self.orchestrator.retry_loop(LOOP_STATUS)

        self.assertIn(LOOP_STATUS, self.orchestrator.view().running_loops)

    async def test_candidates_failed_enables_manual_fallback(self):
        self.client.default_candidates = TrackCandidates(autodetection_status="FAILED")
        self.orchestrator.open_job("job-1")

        await self.orchestrator.loops[LOOP_CANDIDATES].wait()

        self.assertTrue(self.orchestrator.view().manual_fallback)

    async def test_candidates_failed_step_from_status(self):
        self.client.jobs["job-1"] = Job(
            job_id="job-1", status="PROCESSING", progress=JobProgress(step="CANDIDATES_FAILED")
        )
        self.orchestrator.open_job("job-1")

        await wait_until(lambda: self.orchestrator.manual_fallback)

        self.assertNotIn(LOOP_CANDIDATES, self.orchestrator.view().running_loops)


class FrameEditorTests(OrchestratorTestCase):
    settings = make_settings(preview_frames_required=8, preview_poll_interval_sec=0.01)

    async def test_frame_editor_freezes_previews(self):
        self.client.frame_responses = [[FRAME_1]] * 3
        self.orchestrator.open_job("job-1")
        await wait_until(lambda: len(self.orchestrator.frames) == 1)

        self.orchestrator.open_frame_editor("k1")
        calls = self.client.count("list_preview_frames")
        await asyncio.sleep(0.05)

        self.assertTrue(self.orchestrator.view().frames_frozen)
        self.assertNotIn(LOOP_PREVIEW, self.orchestrator.view().running_loops)
        self.assertEqual(self.client.count("list_preview_frames"), calls)

        self.orchestrator.close_frame_editor()
        self.assertFalse(self.orchestrator.view().frames_frozen)
        self.assertIn(LOOP_PREVIEW, self.orchestrator.view().running_loops)


class CandidateBudgetTests(OrchestratorTestCase):
    settings = make_settings(candidate_poll_max_attempts=3, candidate_poll_interval_sec=0.0)

    async def test_candidate_timeout(self):
        self.orchestrator.open_job("job-1")

        await self.orchestrator.loops[LOOP_CANDIDATES].wait()

        self.assertEqual(self.client.count("list_track_candidates"), 3)
        self.assertIn(CANDIDATES_TIMEOUT, self.orchestrator.view().conditions)


class StatusIntervalTests(unittest.IsolatedAsyncioTestCase):
    async def test_interval_follows_progress_step_until_terminal(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await asyncio.sleep(0)

        client = DummyClient()
        client.results["get_job"] = [
            Job(status="RUNNING", progress=JobProgress(step="TRACKING")),
            Job(status="RUNNING", progress=JobProgress(step="SCORING")),
            Job(status="COMPLETED", progress=JobProgress(step="DONE", pct=100)),
        ]
        settings = make_settings(
            status_poll_interval_sec=2.0,
            status_poll_slow_interval_sec=5.0,
            preview_frames_required=0,
        )
        orchestrator = JobOrchestrator(client, settings, sleep=fake_sleep)
        orchestrator.open_job("job-1", job=Job(job_id="job-1", status="QUEUED", player_ref=PLAYER_REF))

        await orchestrator.loops[LOOP_STATUS].wait()

        self.assertEqual(sleeps, [5.0, 2.0])
        self.assertEqual(orchestrator.view().status, "COMPLETED")
        self.assertEqual(orchestrator.view().running_loops, ())
        orchestrator.close()


class RoutedResponse:
    def __init__(self, payload):
        self.status_code = 200
        self.payload = payload
        self.headers = {"content-type": "application/json"}
        self.text = ""

    def json(self):
        return self.payload


class RoutedSession:
    def __init__(self, routes):
        self.routes = routes
        self.paths = []

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        path = url.split("api.example.com", 1)[1]
        self.paths.append(path)
        return RoutedResponse(self.routes.get(path, {}))


class FrameSourceTests(unittest.IsolatedAsyncioTestCase):
    async def test_status_frames_are_cleaned_like_listed_frames(self):
        settings = make_settings(
            preview_frames_required=8,
            preview_poll_interval_sec=0.01,
            legacy_frame_origin="46.224.249.136:9000",
            public_frame_origin="https://s3.pub",
        )
        session = RoutedSession(
            {
                "/jobs/job-1/frames/list": {"items": [{"key": "a", "url": "https://s3.pub/a.jpg"}]},
                "/jobs/job-1": {
                    "job_id": "job-1",
                    "status": "PROCESSING",
                    "preview_frames": [
                        {"key": "a"},
                        {"key": "b", "url": "http://46.224.249.136:9000/b.jpg"},
                    ],
                },
                "/jobs/job-1/candidates": {"candidates": []},
            }
        )
        orchestrator = JobOrchestrator(JobApiClient(settings, session=session), settings)
        orchestrator.open_job("job-1")
        try:
            await wait_until(
                lambda: "/jobs/job-1" in session.paths
                and "/jobs/job-1/frames/list" in session.paths
                and orchestrator.job.preview_frames
                and orchestrator.frames
            )

            self.assertEqual(
                [(frame.key, frame.url) for frame in orchestrator.job.preview_frames],
                [("b", "https://s3.pub/b.jpg")],
            )
            for frame in orchestrator.view().frames:
                self.assertTrue(frame.url.startswith("https://s3.pub/"), frame)
        finally:
            orchestrator.close()


class CancellationTests(OrchestratorTestCase):
    async def test_late_status_response_for_previous_job_is_dropped(self):
        self.client.gated = {"get_job"}
        self.client.jobs["job-1"] = Job(job_id="job-1", status="COMPLETED")
        self.client.jobs["job-2"] = Job(job_id="job-2", status="RUNNING")
        self.orchestrator.open_job("job-1")
        await asyncio.to_thread(self.client.entered.wait, 2)

        self.orchestrator.open_job("job-2")
        self.client.gate.set()
        await wait_until(lambda: self.orchestrator.view().status == "RUNNING")
        await asyncio.sleep(0.05)

        self.assertEqual(self.orchestrator.view().job_id, "job-2")
        self.assertNotIn("COMPLETED", [view.status for view in self.views])

    async def test_late_action_response_for_previous_job_is_dropped(self):
        self.open_selection_job()
        self.orchestrator.open_frame_editor("k1")
        self.orchestrator.capture_selection("player", (100, 100), (300, 400), (1000, 1000))
        self.client.gated = {"save_player_reference"}

        pending = asyncio.create_task(self.orchestrator.save_player_reference())
        await asyncio.to_thread(self.client.entered.wait, 2)
        self.orchestrator.open_job("job-2")
        self.client.gate.set()
        result = await pending

        view = self.orchestrator.view()
        self.assertIsNone(result)
        self.assertEqual(view.job_id, "job-2")
        self.assertIsNone(view.job.player_ref)
        self.assertIsNone(view.notice)

    async def test_close_stops_every_loop(self):
        self.orchestrator.open_job("job-1")
        loops = list(self.orchestrator.loops.values())

        self.orchestrator.close()
        await asyncio.sleep(0.02)
        calls = len(self.client.calls)
        await asyncio.sleep(0.05)

        self.assertTrue(all(not loop.running for loop in loops))
        self.assertEqual(len(self.client.calls), calls)
        self.assertEqual(self.orchestrator.view().step, STEP_IDLE)


if __name__ == "__main__":
    unittest.main()
