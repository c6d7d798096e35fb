import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchItemResult(Generic[R]):
    """Outcome for one input, at its original position."""
    index: int
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchDriver:
    """
    Runs a worker over items in ceiling-sized groups.

    Items within a group run concurrently; groups are separated by a fixed
    pause. A failing item is reported in place and does not affect the rest.
    """

    def __init__(self, group_size: int = 3, delay_ms: int = 100):
        self.group_size = max(1, group_size)
        self.delay_ms = max(0, delay_ms)

    def partition(self, items: Sequence[T]) -> List[List[T]]:
        return [list(items[i:i + self.group_size]) for i in range(0, len(items), self.group_size)]

    async def run(self, items: Sequence[T], worker: Callable[[T], Awaitable[R]],
                  delay_ms: Optional[int] = None) -> List[BatchItemResult[R]]:
        """Process every item. Results are returned in input order."""
        delay = self.delay_ms if delay_ms is None else max(0, delay_ms)
        groups = self.partition(items)
        results: List[BatchItemResult[R]] = []

        for group_index, group in enumerate(groups):
            offset = group_index * self.group_size
            outcomes = await asyncio.gather(*(worker(item) for item in group), return_exceptions=True)

            for position, outcome in enumerate(outcomes):
                index = offset + position
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.error(f"Batch item {index} failed: {outcome}")
                    results.append(BatchItemResult(index=index, error=outcome))
                else:
                    results.append(BatchItemResult(index=index, value=outcome))

            if group_index < len(groups) - 1 and delay:
                await asyncio.sleep(delay / 1000)

        logger.info(f"Batch finished: {sum(1 for r in results if r.ok)}/{len(results)} succeeded in {len(groups)} groups")
        return sorted(results, key=lambda r: r.index)

