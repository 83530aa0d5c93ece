"""
Metered work unit.

Runs a producer over a list of requests with bounded concurrency and meters
every produced item through a MeteringSession.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List

from ..core.decision import ChargeDecision
from ..core.session import MeteringSession

logger = logging.getLogger(__name__)


@dataclass
class WorkUnitReport:
    """What a run produced and how it was billed."""
    items: List[Any] = field(default_factory=list)
    free: int = 0
    paid: int = 0
    skipped_requests: int = 0
    stopped_by_limit: bool = False


class MeteredWorkUnit:
    """Bounded-concurrency producer wired to a metering session.

    Once the session's stop signal is set no new request is started;
    handlers already running are allowed to finish.
    """

    def __init__(self, session: MeteringSession, max_concurrency: int = 3):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self.session = session
        self.max_concurrency = max_concurrency

    async def run(
        self,
        requests: Iterable[Any],
        handler: Callable[[Any], Awaitable[Any]],
    ) -> WorkUnitReport:
        """Process requests, metering each item the handler returns.

        Args:
            requests: Inputs to the handler
            handler: Produces one item per request

        Returns:
            WorkUnitReport for this run

        Raises:
            ChargeServiceError: If charging an item fails; other handlers
                are cancelled
        """
        report = WorkUnitReport()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def process(request: Any) -> None:
            async with semaphore:
                if self.session.stop_requested:
                    report.skipped_requests += 1
                    return
                item = await handler(request)
                decision = await self.session.on_item_produced(item)
                report.items.append(item)
                if decision is ChargeDecision.FREE:
                    report.free += 1
                else:
                    report.paid += 1

        tasks = [asyncio.create_task(process(request)) for request in requests]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        report.stopped_by_limit = self.session.stop_requested
        if report.stopped_by_limit:
            logger.warning(
                "Stopped by charge limit after %d items, %d requests not processed",
                len(report.items), report.skipped_requests,
            )
        return report
