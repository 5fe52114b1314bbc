import asyncio
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from loguru import logger

from graph.models import ModelScore, ScoringInput, TokenUsage
from tools.errors import ScoringCollaboratorFailure

Scorer = Callable[[List[ScoringInput]], Awaitable[Tuple[List[ModelScore], TokenUsage]]]
_Entry = Tuple[ScoringInput, "asyncio.Future[ModelScore]"]


class ScoreBatcher:
    """
    Coalesces scoring requests that arrive close together into one model call.

    A batch is sent as soon as ``batch_size`` requests are waiting, or
    ``flush_delay`` seconds after the first request of a partial batch.
    When a multi-lead call fails, each lead is retried on its own so one bad
    lead cannot sink its neighbours.

    Args:
        scorer: Batch scoring coroutine, e.g. ``LLMClient.score_batch``
        batch_size: Maximum leads per call
        flush_delay: Seconds to wait for a partial batch to fill
        on_usage: Called with the token usage of every successful call
    """

    def __init__(
        self,
        scorer: Scorer,
        batch_size: int = 5,
        flush_delay: float = 0.05,
        on_usage: Optional[Callable[[TokenUsage], None]] = None,
    ):
        self._scorer = scorer
        self.batch_size = max(1, batch_size)
        self.flush_delay = max(0.0, flush_delay)
        self._on_usage = on_usage
        self._pending: List[_Entry] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set["asyncio.Task[None]"] = set()
        self.calls = 0

    async def submit(self, item: ScoringInput) -> ModelScore:
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[ModelScore]" = loop.create_future()
        self._pending.append((item, future))
        if len(self._pending) >= self.batch_size:
            self._flush()
        elif self._timer is None:
            self._timer = loop.call_later(self.flush_delay, self._flush)
        return await future

    def _flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        while self._pending:
            batch = [entry for entry in self._pending[: self.batch_size] if not entry[1].done()]
            del self._pending[: self.batch_size]
            if batch:
                task = asyncio.ensure_future(self._run(batch))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run(self, batch: List[_Entry]) -> None:
        items = [item for item, _ in batch]
        self.calls += 1
        try:
            scores, usage = await self._scorer(items)
            if len(scores) != len(items):
                raise ScoringCollaboratorFailure(f"Expected {len(items)} scores, got {len(scores)}")
        except asyncio.CancelledError:
            for _, future in batch:
                future.cancel()
            raise
        except Exception as e:
            error = e if isinstance(e, ScoringCollaboratorFailure) else ScoringCollaboratorFailure(str(e))
            if len(batch) == 1:
                if not batch[0][1].done():
                    batch[0][1].set_exception(error)
                return
            logger.warning(f"Scoring batch of {len(batch)} failed ({error}), retrying leads one by one")
            await asyncio.gather(*(self._run([entry]) for entry in batch))
            return

        if self._on_usage is not None:
            self._on_usage(usage)
        for (_, future), score in zip(batch, scores):
            if not future.done():
                future.set_result(score)
