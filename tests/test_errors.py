import unittest

from jobconsole.core.errors import (
    InternalError,
    InvalidFrameKey,
    InvalidPayload,
    TargetMismatch,
    TimedOut,
    TrackNotInFrame,
    TransportFailure,
    UpstreamHttpError,
    error_from_payload,
    extract_detail_message,
    parse_error_payload,
    user_message,
)


class ParseErrorPayloadTests(unittest.TestCase):
    def test_envelope_shape(self):
        fields = parse_error_payload(
            {
                "ok": False,
                "error": {"code": "TRACK_NOT_IN_FRAME", "message": "Track 4 not visible"},
                "meta": {"request_id": "req-1"},
            }
        )

        self.assertEqual(fields.code, "TRACK_NOT_IN_FRAME")
        self.assertEqual(fields.message, "Track 4 not visible")
        self.assertEqual(fields.request_id, "req-1")

    def test_fastapi_detail_object(self):
        fields = parse_error_payload(
            {"detail": {"code": "INVALID_FRAME_KEY", "message": "Unknown frame", "request_id": "req-2"}}
        )

        self.assertEqual(fields.code, "INVALID_FRAME_KEY")
        self.assertEqual(fields.message, "Unknown frame")
        self.assertEqual(fields.request_id, "req-2")

    def test_validation_detail_list(self):
        message = extract_detail_message(
            [{"loc": ["body", "x"], "msg": "field required"}, "bad y"]
        )

        self.assertEqual(message, "field required; bad y")

    def test_string_error_and_header_request_id(self):
        fields = parse_error_payload({"error": "Boom"}, {"x-request-id": "hdr-1"})

        self.assertEqual(fields.message, "Boom")
        self.assertIsNone(fields.code)
        self.assertEqual(fields.request_id, "hdr-1")

    def test_missing_fields_message(self):
        fields = parse_error_payload({"code": "MISSING_SELECTION", "missing": ["frame_key", "track_id"]})

        self.assertEqual(fields.message, "Missing: frame_key, track_id")

    def test_allow_force_locations(self):
        self.assertTrue(parse_error_payload({"code": "TARGET_MISMATCH", "allowForce": True}).allow_force)
        self.assertTrue(
            parse_error_payload(
                {"error": {"code": "TARGET_MISMATCH", "details": {"allow_force": True}}}
            ).allow_force
        )
        self.assertIsNone(parse_error_payload({"allow_force": "yes"}).allow_force)


class ErrorFromPayloadTests(unittest.TestCase):
    def test_code_selects_class(self):
        cases = {
            "INVALID_PAYLOAD": InvalidPayload,
            "VALIDATION_ERROR": InvalidPayload,
            "INVALID_FRAME_KEY": InvalidFrameKey,
            "NO_TRACKS_IN_FRAME": TrackNotInFrame,
            "PROXY_ERROR": TransportFailure,
            "TIMED_OUT": TimedOut,
            "INTERNAL_ERROR": InternalError,
            "JOB_NOT_FOUND": UpstreamHttpError,
        }
        for code, cls in cases.items():
            with self.subTest(code=code):
                error = error_from_payload(400, {"error": {"code": code, "message": "m"}})
                self.assertIs(type(error), cls)
                self.assertEqual(error.code, code)
                self.assertEqual(error.status, 400)

    def test_target_mismatch_code_wins_over_status(self):
        for status in (409, 400, 422):
            with self.subTest(status=status):
                error = error_from_payload(status, {"code": "TARGET_MISMATCH", "allowForce": True})
                self.assertIsInstance(error, TargetMismatch)
                self.assertTrue(error.allow_force)

    def test_mismatch_without_flag_does_not_allow_force(self):
        error = error_from_payload(409, {"error": {"code": "TARGET_MISMATCH"}})

        self.assertFalse(error.allow_force)

    def test_uncoded_5xx_is_internal(self):
        error = error_from_payload(503, None, {"x-request-id": "req-9"}, "Service Unavailable")

        self.assertIsInstance(error, InternalError)
        self.assertEqual(error.message, "Service Unavailable")
        self.assertEqual(error.request_id, "req-9")

    def test_html_body_is_not_used_as_message(self):
        error = error_from_payload(502, None, None, "<html><body>Bad gateway</body></html>")

        self.assertEqual(error.message, "")


class UserMessageTests(unittest.TestCase):
    def test_backend_message_preferred(self):
        self.assertEqual(user_message(InvalidPayload(message="Box too small")), "Box too small")

    def test_generic_message_by_kind(self):
        self.assertEqual(user_message(TimedOut()), TimedOut.generic_message)
        self.assertEqual(user_message(TrackNotInFrame()), TrackNotInFrame.generic_message)

    def test_internal_error_keeps_request_id(self):
        message = user_message(InternalError(message="Crash", request_id="req-7"))

        self.assertEqual(message, "Crash (request id: req-7)")


if __name__ == "__main__":
    unittest.main()
