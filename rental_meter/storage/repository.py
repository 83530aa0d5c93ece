"""
Repository pattern for ledger access.

Append-only, partitioned storage of ledger records. Partitions are created
implicitly by their first append and are never closed, updated or deleted.
"""

import json
from datetime import datetime, timezone
from typing import List, Sequence

from .db import get_connection
from .models import LedgerRecord, record_from_dict, record_to_dict


class LedgerRepository:
    """SQLite-backed append-only ledger, addressed by partition key.

    Listing order is insertion order and is stable between calls, which
    the rental tie-break relies on.
    """

    def __init__(self, db_path: str = "rental_meter_ledger.db"):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the ledger_record table if it doesn't exist.

        No UPDATE or DELETE operations should ever be performed on this table.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_record (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    partition_key TEXT NOT NULL,
                    record_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_partition
                ON ledger_record(partition_key, id)
            """)
            conn.commit()
        finally:
            conn.close()

    def append(self, partition_key: str, record: LedgerRecord) -> None:
        """Append a single record to a partition."""
        self.append_batch(partition_key, [record])

    def append_batch(self, partition_key: str, records: Sequence[LedgerRecord]) -> None:
        """Append several records to a partition in one transaction.

        Args:
            partition_key: Partition to append to
            records: Records to append, in order
        """
        if not records:
            return

        created_at = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for record in records:
                conn.execute("""
                    INSERT INTO ledger_record
                    (partition_key, record_type, payload, created_at)
                    VALUES (?, ?, ?, ?)
                """, (
                    partition_key,
                    record.type,
                    json.dumps(record_to_dict(record)),
                    created_at,
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_all(self, partition_key: str) -> List[LedgerRecord]:
        """List every record of a partition in insertion order.

        Returns:
            Records, empty if the partition has never been written
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT payload FROM ledger_record WHERE partition_key = ? ORDER BY id ASC",
                (partition_key,),
            )
            return [record_from_dict(json.loads(row[0])) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_partitions(self) -> List[str]:
        """List known partition keys, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT partition_key FROM ledger_record GROUP BY partition_key ORDER BY MIN(id)"
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()
