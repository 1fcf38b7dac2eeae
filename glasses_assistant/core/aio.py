"""
Asyncio primitives for the assistant pipeline.

Everything runs on one event loop: "parallel" capture and inference are
interleaved awaits, and per-user state is only mutated between awaits.
These helpers cover the recurring shapes:

- ``CancelToken`` / ``TokenSlots``: cooperative cancellation where a newer
  operation of the same kind supersedes the older one.
- ``race``: a remote call against a timer (and optionally a token).
- ``settle``: run an awaitable and capture success/failure as a value.
- ``sleep``: backoff delay that wakes early on cancellation.
- ``defer``: fire-and-forget scheduling on the loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Coroutine, Optional, TypeVar

from glasses_assistant.core.errors import InferenceTimeout, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to deferred tasks (the loop only keeps weak ones)
_background_tasks: set[asyncio.Task] = set()


class CancelToken:
    """Cooperative cancellation signal checked at await boundaries."""

    def __init__(self, label: str = ""):
        self.label = label
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.label or "operation cancelled")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancelToken({self.label!r}, {state})"


class TokenSlots:
    """
    Latest cancellation token per operation kind (e.g. "speech", "inference").

    ``replace`` cancels the previous token of that kind before installing a
    new one, so only the newest operation's side effects survive.
    """

    def __init__(self, owner: str = ""):
        self._owner = owner
        self._tokens: dict[str, CancelToken] = {}

    def current(self, kind: str) -> Optional[CancelToken]:
        return self._tokens.get(kind)

    def replace(self, kind: str) -> tuple[CancelToken, bool]:
        """
        Install a fresh token for ``kind``.

        Returns:
            (new token, whether a previous active token was cancelled)
        """
        previous = self._tokens.get(kind)
        superseded = previous is not None and not previous.cancelled
        if previous is not None:
            previous.cancel()
        token = CancelToken(f"{self._owner}:{kind}")
        self._tokens[kind] = token
        return token, superseded

    def release(self, kind: str, token: CancelToken) -> None:
        """Clear the slot, but only if ``token`` is still the current one."""
        if self._tokens.get(kind) is token:
            del self._tokens[kind]

    def cancel_all(self) -> None:
        for token in self._tokens.values():
            token.cancel()
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


@dataclass
class Outcome:
    """Tagged result of a settled awaitable."""

    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def race(
    awaitable: Awaitable[T],
    timeout: float,
    token: Optional[CancelToken] = None,
    label: str = "remote call",
    timeout_error: type[Exception] = InferenceTimeout,
) -> T:
    """
    Race a remote call against a timer and an optional cancel token.

    A timeout raises ``timeout_error`` so retry loops can treat it exactly
    like a remote failure. Cancellation raises ``OperationCancelled``. The
    losing call is cancelled and its eventual result discarded.

    Args:
        awaitable: The remote call
        timeout: Seconds before the call is abandoned
        token: Cancel token observed while waiting
        label: Name used in the error message
        timeout_error: Exception class raised on timeout

    Returns:
        The call's result
    """
    task = asyncio.ensure_future(awaitable)

    if token is not None and token.cancelled:
        task.cancel()
        raise OperationCancelled(label)

    waiters: set[asyncio.Future] = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelled(label)
    raise timeout_error(f"{label} timed out after {timeout:.1f}s")


async def settle(awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Outcome:
    """
    Await without propagating failure.

    Failures (including timeouts) come back as ``Outcome.error`` rather
    than being raised, so several settled awaitables can be gathered.
    """
    try:
        if timeout is None:
            value = await awaitable
        else:
            value = await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        return Outcome(error=InferenceTimeout(f"timed out after {timeout:.1f}s"))
    except Exception as e:
        return Outcome(error=e)
    return Outcome(value=value)


async def sleep(delay: float, token: Optional[CancelToken] = None) -> bool:
    """
    Backoff delay that returns early when ``token`` is cancelled.

    Returns:
        True if the token was cancelled during (or before) the delay
    """
    if token is None:
        await asyncio.sleep(delay)
        return False
    if token.cancelled:
        return True
    try:
        await asyncio.wait_for(token.wait(), delay)
    except asyncio.TimeoutError:
        return False
    return True


def defer(coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
    """
    Schedule a coroutine as a zero-delay task on the running loop.

    Exceptions are logged, never propagated to the caller.
    """
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_finish_deferred)
    return task


def _finish_deferred(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Deferred task %s failed: %s", task.get_name(), exc, exc_info=exc)
