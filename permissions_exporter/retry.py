import time
from enum import Enum
from typing import Any, Callable, Optional

from permissions_exporter.graph_client import GraphError
from permissions_exporter.runtime_logger import emit


DEFAULT_BASE_DELAY_SECONDS = 1.0


class RetryState(Enum):
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    EXHAUSTED_FAILED = "exhausted_failed"


def _wait_hint(failure: BaseException) -> Optional[float]:
    if isinstance(failure, GraphError) and failure.is_throttled and failure.retry_after is not None:
        return float(failure.retry_after)
    return None


def _is_throttled(failure: BaseException) -> bool:
    return isinstance(failure, GraphError) and failure.is_throttled


class RetryController:
    """Runs one batch submission under bounded retries with exponential backoff.

    The first submission is followed by up to ``max_attempts`` retries. Before
    retry k the controller sleeps ``base_delay * 2 ** (k - 1)`` seconds, unless
    the failure was a throttle carrying a Retry-After hint, in which case it
    sleeps exactly the hinted time and the exponential delay is left as is.
    Once the retries are spent the last failure is re-raised unchanged.
    """

    def __init__(
        self,
        max_attempts: int,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self.throttle_count = 0

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def execute(self, submit: Callable[[], Any]) -> Any:
        state = RetryState.ATTEMPTING
        attempt = 0
        delay = self._base_delay
        pending_delay = delay
        hinted = False
        response: Any = None
        failure: Optional[BaseException] = None

        while True:
            if state is RetryState.ATTEMPTING:
                try:
                    response = submit()
                except Exception as exc:
                    failure = exc
                else:
                    if response:
                        state = RetryState.SUCCEEDED
                        continue
                    failure = GraphError(0, "empty batch response", "$batch")

                if _is_throttled(failure):
                    self.throttle_count += 1
                if attempt >= self._max_attempts:
                    state = RetryState.EXHAUSTED_FAILED
                    continue

                hint = _wait_hint(failure)
                hinted = hint is not None
                pending_delay = hint if hinted else delay
                if _is_throttled(failure):
                    emit(
                        "WARN",
                        "RETRY",
                        f"Throttled (429), retry {attempt + 1}/{self._max_attempts} in {pending_delay:g}s"
                        + (" as indicated by Retry-After" if hinted else ""),
                    )
                else:
                    emit(
                        "WARN",
                        "RETRY",
                        f"Batch submission failed, retry {attempt + 1}/{self._max_attempts} in {pending_delay:g}s: error={failure}",
                    )
                state = RetryState.BACKING_OFF

            elif state is RetryState.BACKING_OFF:
                self._sleep(pending_delay)
                attempt += 1
                if not hinted:
                    delay *= 2
                state = RetryState.ATTEMPTING

            elif state is RetryState.SUCCEEDED:
                return response

            else:
                emit(
                    "ERROR",
                    "RETRY",
                    f"Max retry attempts reached: attempts={attempt + 1} error={failure}",
                )
                raise failure
