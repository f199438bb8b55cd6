"""
Story queue

A persistent FIFO of stories waiting to be imported, kept in SQLite beside
the content records. Items are claimed with a lease, then deleted once
processed or released to be tried again later.

CDS queue items are normalized story dicts; legacy queue items are NPR story
ids.
"""

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import NprError, TransientNetworkError

logger = logging.getLogger(__name__)

QUEUE_NAME = "npr_api.story_queue"
DEFAULT_LEASE_TIME = 3600


@dataclass
class QueueItem:
    item_id: int
    data: Any
    created: int


class StoryQueue:
    """SQLite-backed FIFO queue"""

    def __init__(self, conn: sqlite3.Connection, name: str = QUEUE_NAME):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.name = name
        self._create_table()

    def _create_table(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS queue (
                item_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                data TEXT NOT NULL,
                expire INTEGER NOT NULL DEFAULT 0,
                created INTEGER NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_queue_name_created
            ON queue(name, created)
        """)
        self.conn.commit()

    def create_item(self, data: Any) -> int:
        """Append an item; returns its id"""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO queue (name, data, created) VALUES (?, ?, ?)",
            (self.name, json.dumps(data), int(time.time())),
        )
        self.conn.commit()
        return cursor.lastrowid

    def claim_item(self, lease_time: int = DEFAULT_LEASE_TIME) -> Optional[QueueItem]:
        """
        Lease the oldest unclaimed item.

        Returns:
            The item, or None when nothing is waiting
        """
        now = int(time.time())
        cursor = self.conn.cursor()
        # Expired leases go back into the queue
        cursor.execute(
            "UPDATE queue SET expire = 0 WHERE name = ? AND expire != 0 AND expire < ?",
            (self.name, now),
        )
        cursor.execute(
            "SELECT * FROM queue WHERE name = ? AND expire = 0 ORDER BY created, item_id LIMIT 1",
            (self.name,),
        )
        row = cursor.fetchone()
        if row is None:
            self.conn.commit()
            return None

        cursor.execute(
            "UPDATE queue SET expire = ? WHERE item_id = ? AND expire = 0",
            (now + lease_time, row["item_id"]),
        )
        self.conn.commit()
        return QueueItem(item_id=row["item_id"], data=json.loads(row["data"]), created=row["created"])

    def delete_item(self, item: QueueItem):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM queue WHERE item_id = ?", (item.item_id,))
        self.conn.commit()

    def release_item(self, item: QueueItem):
        """Put a claimed item back so it can be claimed again"""
        cursor = self.conn.cursor()
        cursor.execute("UPDATE queue SET expire = 0 WHERE item_id = ?", (item.item_id,))
        self.conn.commit()

    def number_of_items(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) as count FROM queue WHERE name = ?", (self.name,))
        return cursor.fetchone()["count"]

    def delete_queue(self):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM queue WHERE name = ?", (self.name,))
        self.conn.commit()


class StoryQueueWorker:
    """Imports queued stories through a pull client"""

    def __init__(self, pull_client, published: bool = True):
        self.pull_client = pull_client
        self.published = published

    def process_item(self, data: Any):
        """Import one queued story; imports are keyed by NPR id, so repeats update"""
        if isinstance(data, dict):
            return self.pull_client.add_or_update_node(data, self.published)
        return self.pull_client.save_or_update_node(str(data), self.published)

    def run(self, queue: StoryQueue, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Process queued items oldest first.

        A network failure releases the current item and stops the run; any
        other import error drops the item.

        Returns:
            Counts of processed, failed, and remaining items
        """
        stats = {"processed": 0, "failed": 0}
        while limit is None or stats["processed"] + stats["failed"] < limit:
            item = queue.claim_item()
            if item is None:
                break
            try:
                self.process_item(item.data)
            except TransientNetworkError as e:
                logger.error(f"Queue item {item.item_id} released after network error: {e}")
                queue.release_item(item)
                break
            except NprError as e:
                logger.error(f"Queue item {item.item_id} failed: {e}")
                queue.delete_item(item)
                stats["failed"] += 1
                continue

            queue.delete_item(item)
            stats["processed"] += 1

        stats["remaining"] = queue.number_of_items()
        logger.info(
            f"Queue run finished: {stats['processed']} processed, "
            f"{stats['failed']} failed, {stats['remaining']} remaining"
        )
        return stats
