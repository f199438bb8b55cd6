"""
Unit tests for StoryQueue and StoryQueueWorker

Tests queue behavior including:
- FIFO claiming
- Leases, release and expiry
- Worker error handling
"""

import sqlite3
import unittest
from unittest.mock import MagicMock, patch

from npr_api.cds import denormalize
from npr_api.errors import ConfigurationError, TransientNetworkError
from npr_api.pull import CdsPullClient
from npr_api.store import ContentStore
from npr_api.story_queue import StoryQueue, StoryQueueWorker
from npr_api.utils import clear_reports

from story_fixtures import cds_resource, configured_settings


class TestStoryQueue(unittest.TestCase):
    """Test the SQLite-backed queue"""

    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        self.queue = StoryQueue(self.conn)

    def tearDown(self):
        self.conn.close()

    def test_fifo(self):
        """Items are claimed in the order they were created"""
        for story_id in ("1", "2", "3"):
            self.queue.create_item(story_id)

        claimed = [self.queue.claim_item().data for _ in range(3)]
        self.assertEqual(claimed, ["1", "2", "3"])
        self.assertIsNone(self.queue.claim_item())

    def test_dict_items(self):
        self.queue.create_item({"id": "1234567", "title": "Story"})
        self.assertEqual(self.queue.claim_item().data, {"id": "1234567", "title": "Story"})

    def test_release(self):
        """A released item can be claimed again"""
        self.queue.create_item("1")
        item = self.queue.claim_item()
        self.assertIsNone(self.queue.claim_item())

        self.queue.release_item(item)
        self.assertEqual(self.queue.claim_item().item_id, item.item_id)

    def test_expired_lease(self):
        """An item whose lease ran out goes back into the queue"""
        self.queue.create_item("1")
        with patch("npr_api.story_queue.time.time", return_value=1000):
            self.queue.claim_item(lease_time=10)
        with patch("npr_api.story_queue.time.time", return_value=1011):
            self.assertIsNotNone(self.queue.claim_item())

    def test_delete_and_count(self):
        self.queue.create_item("1")
        self.queue.create_item("2")
        self.assertEqual(self.queue.number_of_items(), 2)

        self.queue.delete_item(self.queue.claim_item())
        self.assertEqual(self.queue.number_of_items(), 1)

        self.queue.delete_queue()
        self.assertEqual(self.queue.number_of_items(), 0)

    def test_named_queues_are_separate(self):
        other = StoryQueue(self.conn, name="other")
        other.create_item("1")
        self.assertEqual(self.queue.number_of_items(), 0)
        self.assertIsNone(self.queue.claim_item())


class TestStoryQueueWorker(unittest.TestCase):
    """Test processing queued stories"""

    def setUp(self):
        self.conn = sqlite3.connect(":memory:")
        self.queue = StoryQueue(self.conn)
        self.pull_client = MagicMock()
        self.worker = StoryQueueWorker(self.pull_client)

    def tearDown(self):
        self.conn.close()

    def test_dict_items_imported_directly(self):
        self.queue.create_item({"id": "1"})
        stats = self.worker.run(self.queue)

        self.pull_client.add_or_update_node.assert_called_once_with({"id": "1"}, True)
        self.assertEqual(stats, {"processed": 1, "failed": 0, "remaining": 0})

    def test_ids_fetched_then_imported(self):
        self.queue.create_item("100")
        self.worker.run(self.queue)
        self.pull_client.save_or_update_node.assert_called_once_with("100", True)

    def test_limit(self):
        for story_id in ("1", "2", "3"):
            self.queue.create_item(story_id)
        stats = self.worker.run(self.queue, limit=2)
        self.assertEqual(stats["processed"], 2)
        self.assertEqual(stats["remaining"], 1)

    def test_network_error_releases_item(self):
        """The item stays queued and the run stops"""
        self.queue.create_item("1")
        self.queue.create_item("2")
        self.pull_client.save_or_update_node.side_effect = TransientNetworkError("timed out")

        stats = self.worker.run(self.queue)

        self.assertEqual(stats, {"processed": 0, "failed": 0, "remaining": 2})
        self.pull_client.save_or_update_node.assert_called_once()
        self.assertEqual(self.queue.claim_item().data, "1")

    def test_other_errors_drop_item(self):
        self.queue.create_item("1")
        self.queue.create_item("2")
        self.pull_client.save_or_update_node.side_effect = [ConfigurationError("bad"), []]

        stats = self.worker.run(self.queue)

        self.assertEqual(stats, {"processed": 1, "failed": 1, "remaining": 0})


class TestQueuedImports(unittest.TestCase):
    """Queued CDS stories imported through a real pull client"""

    def setUp(self):
        self.store = ContentStore(":memory:")
        self.pull_client = CdsPullClient(configured_settings(), self.store, client=MagicMock())
        self.queue = self.pull_client.queue
        clear_reports()

    def tearDown(self):
        clear_reports()
        self.store.close()

    def test_malformed_date_skips_only_that_story(self):
        """The update check on story 1 fails; story 2 behind it is still imported"""
        existing = self.store.create("node", "npr_story", title="Old", field_npr_id="1")
        self.store.save(existing)
        self.queue.create_item(denormalize(cds_resource(id="1", editorialMajorUpdateDateTime="not a date", images=[])))
        self.queue.create_item(denormalize(cds_resource(id="2", images=[])))

        stats = StoryQueueWorker(self.pull_client).run(self.queue)

        self.assertEqual(stats, {"processed": 2, "failed": 0, "remaining": 0})
        self.assertEqual(self.store.load(existing.entity_type, existing.id).label, "Old")
        self.assertEqual(len(self.store.load_by_properties("node", {"field_npr_id": "2"})), 1)


if __name__ == "__main__":
    unittest.main()
