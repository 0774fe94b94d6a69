import functools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from botocore.exceptions import ClientError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")

NON_RETRYABLE_CODES = {"InvalidAccessKeyId", "SignatureDoesNotMatch"}


def error_status(exc: BaseException) -> Optional[int]:
    if isinstance(exc, ClientError):
        meta = exc.response.get("ResponseMetadata") or {}
        status = meta.get("HTTPStatusCode")
        return int(status) if status is not None else None
    return None


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str((exc.response.get("Error") or {}).get("Code") or "")
    return ""


def is_retryable(exc: BaseException) -> bool:
    if error_code(exc) in NON_RETRYABLE_CODES:
        return False
    status = error_status(exc)
    if status is not None and 400 <= status < 500:
        return status == 429
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff around a fallible call.

    Delays run initial, initial*factor, initial*factor**2, ... capped at
    max_delay. Errors the classifier rejects are re-raised on the spot; once
    max_retries is spent the last error is re-raised.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    classifier: Optional[Callable[[BaseException], bool]] = None
    sleep: Optional[Callable[[float], None]] = None

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.backoff_factor,
                max=self.max_delay,
            ),
            retry=retry_if_exception(self.classifier or is_retryable),
            before_sleep=before_sleep_log(logging.getLogger(), logging.WARNING),
            sleep=self.sleep or time.sleep,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        return self.retrying()(fn, *args, **kwargs)

    def __call__(self, fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs) -> T:
            return self.call(fn, *args, **kwargs)

        return wrapper
