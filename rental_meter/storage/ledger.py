"""
Ledger store client.

Binds a store to one period partition and turns any store failure into a
single LedgerUnavailableError that the coordination code knows how to degrade on.
"""

import asyncio
import logging
from typing import List, Protocol, Sequence

from .models import LedgerRecord
from .repository import LedgerRepository

logger = logging.getLogger(__name__)


class LedgerUnavailableError(Exception):
    """Raised when a ledger append or listing fails."""
    def __init__(self, message: str, partition_key: str):
        super().__init__(message)
        self.partition_key = partition_key


class LedgerStore(Protocol):
    """Append/list-only record store. No compare-and-append, no ordering across writers."""

    async def append(self, partition_key: str, record: LedgerRecord) -> None:
        ...

    async def append_batch(self, partition_key: str, records: Sequence[LedgerRecord]) -> None:
        ...

    async def list_all(self, partition_key: str) -> List[LedgerRecord]:
        ...


class SqliteLedgerStore:
    """Async adapter running LedgerRepository calls off the event loop."""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    async def append(self, partition_key: str, record: LedgerRecord) -> None:
        await asyncio.to_thread(self.repository.append, partition_key, record)

    async def append_batch(self, partition_key: str, records: Sequence[LedgerRecord]) -> None:
        await asyncio.to_thread(self.repository.append_batch, partition_key, list(records))

    async def list_all(self, partition_key: str) -> List[LedgerRecord]:
        return await asyncio.to_thread(self.repository.list_all, partition_key)


class PartitionLedger:
    """Ledger client bound to a single period partition."""

    def __init__(self, store: LedgerStore, partition_key: str):
        self.store = store
        self.partition_key = partition_key

    async def append(self, record: LedgerRecord) -> None:
        try:
            await self.store.append(self.partition_key, record)
        except Exception as e:
            raise LedgerUnavailableError(
                f"Append to ledger partition {self.partition_key} failed: {e}",
                self.partition_key,
            ) from e

    async def append_batch(self, records: Sequence[LedgerRecord]) -> None:
        if not records:
            return
        try:
            await self.store.append_batch(self.partition_key, records)
        except Exception as e:
            raise LedgerUnavailableError(
                f"Batch append of {len(records)} records to ledger partition "
                f"{self.partition_key} failed: {e}",
                self.partition_key,
            ) from e

    async def list_all(self) -> List[LedgerRecord]:
        try:
            records = await self.store.list_all(self.partition_key)
        except Exception as e:
            raise LedgerUnavailableError(
                f"Listing ledger partition {self.partition_key} failed: {e}",
                self.partition_key,
            ) from e
        logger.debug("Listed %d records from %s", len(records), self.partition_key)
        return records
