import sys
import unittest
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from permissions_exporter.graph_client import GraphError
from permissions_exporter.retry import RetryController


class FlakySubmit:
    """Raises the queued failures in order, then returns ``response``."""

    def __init__(self, failures, response=None):
        self.failures = list(failures)
        self.response = response if response is not None else {"responses": []}
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return failure
        return self.response


def transient(status=503):
    return GraphError(status, "serviceNotAvailable", "$batch")


def throttled(retry_after=None):
    return GraphError(429, "tooManyRequests", "$batch", "", retry_after)


@patch("permissions_exporter.retry.emit")
class RetryControllerTests(unittest.TestCase):
    def setUp(self):
        self.sleeps = []

    def _controller(self, max_attempts=3, base_delay=1.0):
        return RetryController(max_attempts, base_delay=base_delay, sleep=self.sleeps.append)

    def test_first_success_does_not_sleep(self, _emit):
        submit = FlakySubmit([], response={"responses": [{"id": "1"}]})
        self.assertEqual(self._controller().execute(submit), {"responses": [{"id": "1"}]})
        self.assertEqual(submit.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_delay_doubles_for_each_transient_failure(self, _emit):
        submit = FlakySubmit([transient(), transient(), transient()])
        self._controller(max_attempts=3, base_delay=0.5).execute(submit)
        self.assertEqual(submit.calls, 4)
        self.assertEqual(self.sleeps, [0.5, 1.0, 2.0])

    def test_exhaustion_reraises_original_failure(self, _emit):
        last = transient(502)
        submit = FlakySubmit([transient(), transient(), transient(), last])
        with self.assertRaises(GraphError) as ctx:
            self._controller(max_attempts=3).execute(submit)
        self.assertIs(ctx.exception, last)
        self.assertEqual(submit.calls, 4)
        self.assertEqual(self.sleeps, [1.0, 2.0, 4.0])

    def test_non_graph_errors_are_retried_and_propagated(self, _emit):
        submit = FlakySubmit([ConnectionError("reset")] * 3)
        with self.assertRaises(ConnectionError):
            self._controller(max_attempts=2).execute(submit)
        self.assertEqual(submit.calls, 3)

    def test_zero_attempts_fails_immediately(self, _emit):
        submit = FlakySubmit([transient()])
        with self.assertRaises(GraphError):
            self._controller(max_attempts=0).execute(submit)
        self.assertEqual(submit.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_retry_after_hint_overrides_computed_delay(self, _emit):
        submit = FlakySubmit([throttled(retry_after=7), transient()])
        self._controller(max_attempts=3).execute(submit)
        self.assertEqual(self.sleeps, [7.0, 1.0])

    def test_hint_after_backoff_replaces_larger_computed_delay(self, _emit):
        submit = FlakySubmit([transient(), transient(), throttled(retry_after=1), transient()])
        self._controller(max_attempts=4).execute(submit)
        self.assertEqual(self.sleeps, [1.0, 2.0, 1.0, 4.0])

    def test_throttle_without_hint_uses_backoff(self, _emit):
        submit = FlakySubmit([throttled(), throttled()])
        controller = self._controller(max_attempts=3)
        controller.execute(submit)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(controller.throttle_count, 2)

    def test_empty_response_is_retried(self, _emit):
        submit = FlakySubmit([None, {}], response={"responses": [{"id": "x"}]})
        result = self._controller(max_attempts=3).execute(submit)
        self.assertEqual(result, {"responses": [{"id": "x"}]})
        self.assertEqual(submit.calls, 3)

    def test_empty_response_exhaustion_raises_graph_error(self, _emit):
        submit = FlakySubmit([None, None])
        with self.assertRaises(GraphError) as ctx:
            self._controller(max_attempts=1).execute(submit)
        self.assertEqual(ctx.exception.status_code, 0)

    def test_negative_attempts_rejected(self, _emit):
        with self.assertRaises(ValueError):
            RetryController(-1)


if __name__ == "__main__":
    unittest.main()
