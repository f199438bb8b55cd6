"""
Tests for npr_api.pull
"""

import shutil
import tempfile
import unittest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from npr_api.cds import denormalize
from npr_api.mapper import ImportStatus
from npr_api.pull import (
    LAST_UPDATE_KEY,
    CdsPullClient,
    NprmlPullClient,
    create_pull_client,
    extract_id,
)
from npr_api.store import ContentStore
from npr_api.transport import NprCdsClient

from story_fixtures import NPRML_TWO_STORIES, cds_resource, configured_settings, fake_response


class TestExtractId(unittest.TestCase):

    def test_dated_url(self):
        self.assertEqual(extract_id("https://www.npr.org/2024/01/02/1234567890/some-slug"), "1234567890")

    def test_section_url(self):
        self.assertEqual(
            extract_id("https://www.npr.org/sections/money/2024/01/02/1234567890/some-slug"),
            "1234567890",
        )

    def test_story_id_query(self):
        self.assertEqual(
            extract_id("https://www.npr.org/templates/story/story.php?storyId=123456789"),
            "123456789",
        )

    def test_not_an_npr_url(self):
        self.assertIsNone(extract_id("https://www.example.org/2024/01/02/1234567890/slug"))
        self.assertIsNone(extract_id(""))


class PullTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = ContentStore(":memory:", files_dir=self.temp_dir)
        self.settings = configured_settings()

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestCdsPullClient(PullTestCase):

    def setUp(self):
        super().setUp()
        self.api = MagicMock()
        self.api.get_stories.return_value = []
        self.client = CdsPullClient(self.settings, self.store, client=self.api)

    def test_topic_params(self):
        self.client.get_stories_by_topic_id(
            1001, {"num_results": 5, "start_num": 2, "sort": "dateAsc", "start_date": "2024-01-01", "end_date": "2024-01-03"}
        )
        self.api.get_stories.assert_called_once_with(
            {
                "limit": 5,
                "collectionIds": 1001,
                "sort": "publishDateTime:asc",
                "offset": 2,
                "publishDateTime": "2024-01-01...2024-01-03",
            }
        )

    def test_topic_defaults(self):
        self.client.get_stories_by_topic_id(1001)
        self.api.get_stories.assert_called_once_with(
            {"limit": 1, "collectionIds": 1001, "sort": "publishDateTime:desc"}
        )

    def test_topic_limit(self):
        with pytest.raises(ValueError):
            self.client.get_stories_by_topic_id(1001, {"num_results": 51})
        self.api.get_stories.assert_not_called()

    def test_org_params(self):
        self.client.get_stories_by_org_id(305, {"num_results": 10, "start_date": "2024-01-01"})
        self.api.get_stories.assert_called_once_with(
            {
                "ownerHrefs": "https://organization.api.npr.org/v4/services/305",
                "publishDateTime": "2024-01-01",
                "offset": 0,
                "limit": 10,
            }
        )

    def test_fields_dropped(self):
        self.client.get_stories({"id": "1", "fields": "all"})
        self.api.get_stories.assert_called_once_with({"id": "1"})

    def test_subscription_ids_default_to_news(self):
        self.assertEqual(self.client.get_subscription_ids(), ["1001"])

    def test_subscription_ids_from_checkboxes(self):
        self.settings.set("pull", "topic_ids", {"1014": 1014, "1039": 0, "1019": 1019})
        self.assertEqual(self.client.get_subscription_ids(), ["1014", "1019"])

    def test_subscription_ids_from_terms(self):
        self.settings.set("pull", "subscribe_method", "taxonomy")
        self.settings.set("pull", "topic_vocabularies", {"npr_topics": True, "tags": False})
        for name, npr_id, subscribed in (("News", 1001, True), ("Music", 1039, False), ("Politics", 1014, True)):
            self.store.save(self.store.create(
                "taxonomy_term", "npr_topics", name=name,
                field_npr_news_id=npr_id, field_npr_subscribe=subscribed,
            ))
        self.store.save(self.store.create("taxonomy_term", "tags", name="Tag", field_npr_news_id=5, field_npr_subscribe=True))

        self.assertEqual(self.client.get_subscription_ids(), ["1001", "1014"])

    def test_last_update_time(self):
        self.assertEqual(self.client.get_last_update_time(), datetime.fromtimestamp(1, tz=timezone.utc))
        moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        self.client.set_last_update_time(moment)
        self.assertEqual(self.client.get_last_update_time(), moment)
        self.client.reset_last_update_time()
        self.assertIsNone(self.store.get_state(LAST_UPDATE_KEY))

    def test_update_queue_dedupes(self):
        self.settings.set("pull", "topic_ids", {"1001": 1001, "1014": 1014})
        stories = [denormalize(cds_resource()), denormalize(cds_resource(id="7654321"))]
        self.api.get_stories.return_value = stories

        self.assertTrue(self.client.update_queue())

        self.assertEqual(self.client.queue.number_of_items(), 2)
        first = self.client.queue.claim_item()
        self.assertEqual(first.data["id"], "1234567")
        self.assertIsNotNone(self.store.get_state(LAST_UPDATE_KEY))

    def test_update_queue_rechecks_manual_imports(self):
        self.store.save(self.store.create(
            "node", "npr_story", title="Manual", field_npr_id="555",
            field_imported_manually=True, field_story_date=date.today().isoformat() + "T00:00:00",
        ))
        self.store.save(self.store.create(
            "node", "npr_story", title="Old", field_npr_id="444",
            field_imported_manually=True, field_story_date="2001-01-01T00:00:00",
        ))

        def get_stories(params):
            if params.get("id") == "555":
                return [denormalize(cds_resource(id="555"))]
            return []

        self.api.get_stories.side_effect = get_stories
        self.client.update_queue()

        self.assertEqual(self.client.queue.number_of_items(), 1)
        self.assertEqual(self.client.queue.claim_item().data["id"], "555")

    def test_update_queue_needs_days_back(self):
        self.settings.set("pull", "start_date", "")
        self.assertFalse(self.client.update_queue())
        self.assertEqual(self.client.messenger.messages["error"], [])
        self.api.get_stories.assert_not_called()

    def test_add_or_update_node(self):
        self.settings.set("story", "image_media_type", "")
        result = self.client.add_or_update_node(denormalize(cds_resource()), manual_import=True)
        self.assertEqual(result.status, ImportStatus.SAVED)
        self.assertTrue(result.record.get("field_imported_manually"))


class TestNprmlPullClient(PullTestCase):

    def setUp(self):
        super().setUp()
        self.session = MagicMock()
        self.session.request.return_value = fake_response(200, text=NPRML_TWO_STORIES)
        self.client = NprmlPullClient(self.settings, self.store, session=self.session)

    def test_save_or_update_node(self):
        results = self.client.save_or_update_node("100")
        self.assertEqual([result.status for result in results], [ImportStatus.SAVED, ImportStatus.SAVED])
        self.assertEqual(self.store.count("node"), 2)
        self.assertEqual(self.session.request.call_args[1]["params"]["id"], "100")

    def test_invalid_story_id(self):
        self.session.request.return_value = fake_response(200, text="<nprml><list/></nprml>")
        results = self.client.save_or_update_node("999", display_messages=True)
        self.assertEqual(results[0].status, ImportStatus.ERROR)
        self.assertEqual(self.client.messenger.messages["error"], ["999 is not a valid story ID."])

    def test_update_queue_since(self):
        since = datetime(2024, 1, 2, 16, 0, tzinfo=timezone.utc)
        self.assertTrue(self.client.update_queue(since))

        # story 100 was modified at 15:00 UTC, story 200 a day later
        self.assertEqual(self.client.queue.number_of_items(), 1)
        self.assertEqual(self.client.queue.claim_item().data, "200")

        params = self.session.request.call_args[1]["params"]
        self.assertEqual(params["id"], "1001")
        self.assertEqual(params["numResults"], 10)

    def test_update_queue_skips_failed_topics(self):
        self.session.request.return_value = fake_response(500, reason="Server Error")
        self.assertTrue(self.client.update_queue())
        self.assertEqual(self.client.queue.number_of_items(), 0)


class TestCreatePullClient(PullTestCase):

    def test_cds(self):
        client = create_pull_client(self.settings, self.store, session=MagicMock(), token="abc")
        self.assertIsInstance(client, CdsPullClient)
        self.assertIsInstance(client.client, NprCdsClient)
        self.assertEqual(client.client.token, "abc")

    def test_legacy(self):
        self.settings.set("pull", "npr_pull_service", "xml")
        client = create_pull_client(self.settings, self.store, session=MagicMock(), api_key="key")
        self.assertIsInstance(client, NprmlPullClient)
        self.assertEqual(client.api_key, "key")


if __name__ == "__main__":
    unittest.main()
