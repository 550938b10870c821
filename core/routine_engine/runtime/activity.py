"""
Activity execution - the seam to the durable-execution substrate.

Plugin calls and sink writes are "activities": side-effecting calls that a
durable substrate may time out, retry and heartbeat. The engine only
supplies the policy. DirectActivityRunner is the in-process substrate used
when the engine runs on its own; it enforces the start-to-close timeout and
wraps failures in ActivityFailure the way a real substrate wraps them in its
own envelope.
"""

import asyncio
import logging
import time
import traceback
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, Field

from routine_engine.errors import EngineError
from routine_engine.schemas.execution import ExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Retry policy handed to the substrate. Intervals are in seconds."""

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 3

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)


class ActivityPolicy(BaseModel):
    """Timeout and retry policy for one kind of activity."""

    start_to_close_timeout: float = 300.0
    heartbeat_timeout: float | None = None
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class ActivityFailure(EngineError):
    """Substrate envelope around an activity's real error (kept as __cause__)."""

    error_code = "activity_failure"

    def __init__(self, activity: str, message: str = ""):
        super().__init__(message or f"Activity {activity} failed")
        self.activity = activity


def unwrap_error(exc: BaseException) -> BaseException:
    """Follow the __cause__ chain down to the root cause."""
    seen = {id(exc)}
    current = exc
    while current.__cause__ is not None and id(current.__cause__) not in seen:
        current = current.__cause__
        seen.add(id(current))
    return current


def describe_error(exc: BaseException) -> ExecutionError:
    """Build the stored error record from the root cause of exc."""
    root = unwrap_error(exc)
    details: dict[str, Any] = {"type": type(root).__name__}
    if root is not exc:
        details["wrapped_by"] = type(exc).__name__
    return ExecutionError(
        message=str(root) or type(root).__name__,
        stack="".join(traceback.format_exception(type(root), root, root.__traceback__)),
        code=getattr(root, "error_code", None),
        details=details,
    )


class ActivityRunner(Protocol):
    """Runs activities under a policy and supplies heartbeats."""

    async def run(
        self,
        name: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        policy: ActivityPolicy | None = None,
    ) -> T: ...

    def heartbeat(self, *details: Any) -> None: ...


class DirectActivityRunner:
    """
    In-process substrate.

    Enforces the start-to-close timeout. Retries only when ``apply_retries``
    is set; by default a failed activity fails once, since retrying is the
    substrate's decision and not the engine's.
    """

    def __init__(self, policy: ActivityPolicy | None = None, apply_retries: bool = False):
        self.policy = policy or ActivityPolicy()
        self.apply_retries = apply_retries
        self.last_heartbeat: float | None = None

    def heartbeat(self, *details: Any) -> None:
        self.last_heartbeat = time.monotonic()
        logger.debug("Heartbeat %s", details if details else "")

    async def run(
        self,
        name: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        policy: ActivityPolicy | None = None,
    ) -> T:
        policy = policy or self.policy
        attempts = policy.retry.maximum_attempts if self.apply_retries else 1
        attempt = 1
        while True:
            try:
                return await asyncio.wait_for(fn(*args), timeout=policy.start_to_close_timeout)
            except TimeoutError:
                failure = ActivityFailure(
                    name,
                    f"Activity {name} timed out after {policy.start_to_close_timeout}s",
                )
                cause: BaseException | None = None
            except Exception as e:
                failure = ActivityFailure(name)
                cause = e

            if attempt >= attempts:
                raise failure from cause
            delay = policy.retry.delay_for(attempt)
            logger.warning(
                "Activity %s failed (attempt %d/%d), retrying in %.1fs: %s",
                name,
                attempt,
                attempts,
                delay,
                cause,
            )
            attempt += 1
            await asyncio.sleep(delay)
