"""
Request queue and scheduler.

Questions are processed strictly one at a time per scheduling domain, in
the order they were submitted. Enqueueing never blocks: the queue is drained
by a task on the event loop, and each next iteration is scheduled with
``loop.call_soon`` rather than awaited recursively.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Optional

from glasses_assistant.assistant.transport import GlassesSession

logger = logging.getLogger(__name__)

PROCESS_DOMAIN = "process"


@dataclass(frozen=True)
class QueuedRequest:
    """A dispatched question waiting for processing."""

    question: str
    user_id: str
    session: GlassesSession
    enqueued_at: float = field(default_factory=time.time)


RequestHandler = Callable[[QueuedRequest], Awaitable[None]]


class RequestQueue:
    """
    FIFO of requests with a busy flag.

    At most one handler invocation is active at any time. A handler failure
    is logged and the loop advances to the next request.
    """

    def __init__(self, handler: RequestHandler, name: str = PROCESS_DOMAIN):
        self.handler = handler
        self.name = name
        self._queue: deque[QueuedRequest] = deque()
        self._busy = False
        self._closed = False
        self._current: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.processed = 0
        self.failed = 0

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, request: QueuedRequest) -> int:
        """
        Append a request and kick the loop if idle.

        Returns:
            Number of requests waiting (including this one)
        """
        if self._closed:
            raise RuntimeError(f"Request queue {self.name} is closed")

        self._queue.append(request)
        self._idle.clear()
        logger.info(
            "Request queued for user %s on %s (pending=%d, busy=%s)",
            request.user_id, self.name, len(self._queue), self._busy,
        )
        if not self._busy:
            asyncio.get_running_loop().call_soon(self._start_next)
        return len(self._queue)

    def _start_next(self) -> None:
        if self._busy or self._closed:
            return
        if not self._queue:
            self._idle.set()
            return

        request = self._queue.popleft()
        self._busy = True
        self._current = asyncio.get_running_loop().create_task(
            self._run(request), name=f"request-{self.name}"
        )

    async def _run(self, request: QueuedRequest) -> None:
        started = time.time()
        try:
            await self.handler(request)
            self.processed += 1
        except asyncio.CancelledError:
            logger.debug("Request for user %s cancelled on %s", request.user_id, self.name)
            raise
        except Exception as e:
            self.failed += 1
            logger.error(
                "Request for user %s failed on %s: %s", request.user_id, self.name, e,
                exc_info=True,
            )
        finally:
            logger.debug(
                "Request for user %s finished in %.2fs (waited %.2fs)",
                request.user_id, time.time() - started, started - request.enqueued_at,
            )
            self._busy = False
            self._current = None
            if self._queue and not self._closed:
                asyncio.get_running_loop().call_soon(self._start_next)
            else:
                self._idle.set()

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is in flight."""
        while (self._queue or self._busy) and not self._closed:
            await self._idle.wait()

    def close(self) -> None:
        """Drop pending requests and cancel the one in flight."""
        self._closed = True
        dropped = len(self._queue)
        self._queue.clear()
        if self._current is not None:
            self._current.cancel()
        self._idle.set()
        if dropped:
            logger.info("Dropped %d pending request(s) on %s", dropped, self.name)


class Scheduler:
    """
    Routes requests to a ``RequestQueue`` per scheduling domain.

    ``process``: one queue shared by all users.
    ``user``: one queue per user id.
    """

    def __init__(self, handler: RequestHandler, domain: Literal["process", "user"] = "process"):
        if domain not in ("process", "user"):
            raise ValueError(f"Unknown scheduling domain: {domain}")
        self.handler = handler
        self.domain = domain
        self._queues: dict[str, RequestQueue] = {}

    def _key(self, user_id: str) -> str:
        return PROCESS_DOMAIN if self.domain == "process" else user_id

    def queue_for(self, user_id: str) -> RequestQueue:
        key = self._key(user_id)
        queue = self._queues.get(key)
        if queue is None:
            queue = RequestQueue(self.handler, name=key)
            self._queues[key] = queue
        return queue

    def submit(self, question: str, user_id: str, session: GlassesSession) -> QueuedRequest:
        """Enqueue a question; returns the queued request."""
        request = QueuedRequest(question=question, user_id=user_id, session=session)
        self.queue_for(user_id).enqueue(request)
        return request

    def discard(self, user_id: str) -> None:
        """Close a per-user queue (no-op for the shared process queue)."""
        if self.domain == "user":
            queue = self._queues.pop(user_id, None)
            if queue is not None:
                queue.close()

    async def join(self) -> None:
        for queue in list(self._queues.values()):
            await queue.join()

    def close(self) -> None:
        for queue in self._queues.values():
            queue.close()
        self._queues.clear()

    @property
    def pending(self) -> int:
        return sum(q.pending for q in self._queues.values())
