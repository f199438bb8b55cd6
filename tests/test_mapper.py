"""
Tests for npr_api.mapper

Stories are imported into an in-memory ContentStore; image downloads go
through a mocked client.
"""

import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from npr_api.cds import denormalize
from npr_api.errors import NprError, TransientNetworkError
from npr_api.mapper import (
    ImportStatus,
    NprmlStoryMapper,
    StoryMapper,
    format_date,
    parse_datetime,
)
from npr_api.nprml import parse_nprml
from npr_api.store import ContentStore
from npr_api.utils import Messenger, clear_reports, reports

from story_fixtures import NPRML_TWO_STORIES, STORY_MAPPINGS, cds_resource, configured_settings, fake_response


class TestDates(unittest.TestCase):

    def test_iso(self):
        self.assertEqual(format_date("2024-01-02T09:00:00Z", "field_story_date"), "2024-01-02T09:00:00")

    def test_rfc2822_converted_to_utc(self):
        self.assertEqual(
            format_date("Tue, 02 Jan 2024 09:00:00 -0500", "field_story_date"),
            "2024-01-02T14:00:00",
        )

    def test_epoch_for_changed(self):
        self.assertEqual(format_date("1970-01-01T00:01:00Z", "changed"), 60)

    def test_naive_taken_as_utc(self):
        self.assertEqual(parse_datetime("2024-01-02T09:00:00").hour, 9)

    def test_invalid_date(self):
        with self.assertRaises(NprError):
            parse_datetime("not a date")


class MapperTestCase(unittest.TestCase):

    mapper_class = StoryMapper

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = ContentStore(":memory:", files_dir=self.temp_dir)
        self.client = MagicMock()
        self.client.request.return_value = fake_response(200, content=b"jpeg-bytes")
        self.messenger = Messenger()
        self.settings = configured_settings()
        self.mapper = self.build_mapper(self.settings)
        clear_reports()

    def tearDown(self):
        clear_reports()
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def build_mapper(self, settings):
        return self.mapper_class(self.store, settings, messenger=self.messenger, client=self.client)


class TestStoryMapper(MapperTestCase):

    def import_story(self, **kwargs):
        return self.mapper.add_or_update_node(denormalize(cds_resource()), **kwargs)

    def test_creates_story(self):
        result = self.import_story(display_messages=True)

        self.assertEqual(result.status, ImportStatus.SAVED)
        self.assertEqual(result.operation, "created")
        node = result.record
        self.assertEqual(node.label, "Rock & roll story")
        self.assertEqual(node.get("field_npr_id"), "1234567")
        self.assertEqual(node.get("uid"), 7)
        self.assertTrue(node.get("status"))
        self.assertEqual(node.get("field_teaser"), {"value": "The teaser.", "format": "plain_text"})
        self.assertEqual(node.get("field_subtitle"), "The subtitle")
        self.assertEqual(node.get("field_link"), {"uri": "https://www.npr.org/2024/01/02/1234567/rock-story"})
        self.assertEqual(node.get("field_slug"), "Music")
        self.assertEqual(node.get("field_byline"), [{"title": "Jane Reporter", "uri": "route:<nolink>"}])
        self.assertEqual(node.get("field_story_date"), "2024-01-02T09:00:00")
        self.assertEqual(node.get("field_last_modified"), "2024-01-02T11:00:00")
        self.assertNotIn("field_imported_manually", node.fields)

        self.assertIn("Story Rock & roll story was created.", self.messenger.messages["status"])
        self.assertEqual(reports["created"], [("1234567", "Story Rock & roll story was created.")])

    def test_manual_import_flag(self):
        node = self.import_story(manual_import=True).record
        self.assertTrue(node.get("field_imported_manually"))

    def test_primary_image_imported(self):
        node = self.import_story().record

        image_ids = node.referenced_ids("field_primary_image")
        self.assertEqual(len(image_ids), 1)
        image = self.store.load("media", image_ids[0])
        self.assertEqual(image.bundle, "npr_image")
        self.assertEqual(image.get("name"), "Photo title")
        self.assertEqual(image.get("field_npr_image_id"), "5")
        self.assertEqual(image.get("field_image_type"), "primary")
        self.assertEqual(image.get("field_caption"), "A caption")

        file = self.store.load("file", image.referenced_ids("field_media_image")[0])
        self.assertEqual(file.get("uri"), "public://npr_story_images/2024/01/02/photo.jpg")
        self.client.request.assert_called_with(
            "GET", "https://media.npr.org/assets/img/2024/01/02/photo.jpg"
        )

    def test_body_placeholders_replaced(self):
        node = self.import_story().record
        image = self.store.load("media", node.referenced_ids("field_primary_image")[0])

        body = node.get("field_body")
        self.assertEqual(body["format"], "basic_html")
        self.assertNotIn("[npr_image:", body["value"])
        self.assertTrue(body["value"].startswith("<p>First paragraph.</p>\n<drupal-media"))
        self.assertIn(f'data-entity-uuid="{image.uuid}"', body["value"])
        self.assertIn("A caption&lt;cite class=&quot;npr-credit&quot;&gt;NPR 2024&lt;/cite&gt;", body["value"])
        self.assertTrue(body["value"].endswith("<p>Second paragraph.</p>\n"))

    def test_embed_tag_configurable(self):
        self.settings.set("story", "embed_tag", "media-embed")
        node = self.import_story().record
        self.assertIn("<media-embed data-entity-type", node.value("field_body"))

    def test_topics(self):
        node = self.import_story().record
        primary = self.store.load_multiple("taxonomy_term", node.referenced_ids("field_primary_topic"))
        topics = self.store.load_multiple("taxonomy_term", node.referenced_ids("field_topic"))

        self.assertEqual([term.get("name") for term in primary], ["News"])
        self.assertEqual([term.get("name") for term in topics], ["News", "Music"])
        self.assertEqual(primary[0].bundle, "npr_topics")
        self.assertEqual(self.store.count("taxonomy_term"), 2)

    def test_unchanged_story_skipped(self):
        self.import_story()
        result = self.import_story()

        self.assertEqual(result.status, ImportStatus.SKIPPED)
        self.assertEqual(self.store.count("node"), 1)
        self.assertIn(
            "The NPR story with the NPR ID 1234567 has not been updated in the NPR API so it was not updated.",
            result.message,
        )
        self.assertEqual(len(reports["skipped"]), 1)

    def test_force_updates_and_reuses_terms(self):
        first = self.import_story().record
        result = self.import_story(force=True)

        self.assertEqual(result.operation, "updated")
        self.assertEqual(result.record.id, first.id)
        self.assertEqual(self.store.count("node"), 1)
        self.assertEqual(self.store.count("taxonomy_term"), 2)
        self.assertEqual(self.store.count("media", "npr_image"), 1)
        self.assertEqual(len(result.record.referenced_ids("field_primary_image")), 1)
        self.assertEqual(len(result.record.referenced_ids("field_topic")), 2)

    def test_newer_story_updates(self):
        node = self.import_story().record
        node.changed = 1000
        self.store.save(node)

        result = self.import_story()
        self.assertEqual(result.operation, "updated")

    def test_unused_id_mapping(self):
        settings = configured_settings(story={"story_field_mappings": dict(STORY_MAPPINGS, id="unused")})
        result = self.build_mapper(settings).add_or_update_node(denormalize(cds_resource()))

        self.assertEqual(result.status, ImportStatus.ERROR)
        self.assertEqual(result.message, "Please configure the story id field.")
        self.assertEqual(self.store.get_stats()["total"], 0)
        self.client.request.assert_not_called()
        self.assertEqual(len(reports["error"]), 1)

    def test_missing_body_format(self):
        settings = configured_settings(story={"body_text_format": ""})
        result = self.build_mapper(settings).add_or_update_node(denormalize(cds_resource()))
        self.assertEqual(result.status, ImportStatus.ERROR)
        self.assertEqual(self.store.count("node"), 0)

    def test_duplicate_nodes(self):
        for _ in range(2):
            node = self.store.create("node", "npr_story", title="Old", field_npr_id="1234567")
            node.changed = 1000
            self.store.save(node)

        result = self.import_story(force=True, display_messages=True)

        self.assertEqual(result.status, ImportStatus.ERROR)
        self.assertIn("More than one story with the ID 1234567 exists", result.message)
        self.assertEqual(self.messenger.messages["error"], [result.message])
        for node in self.store.load_by_properties("node", {"field_npr_id": "1234567"}):
            self.assertEqual(node.label, "Old")
            self.assertEqual(node.changed, 1000)

    def test_story_without_id(self):
        result = self.mapper.add_or_update_node(denormalize(cds_resource(id="")))
        self.assertEqual(result.status, ImportStatus.ERROR)
        self.assertEqual(self.store.count("node"), 0)

    def test_term_without_npr_id_not_matched(self):
        self.store.save(self.store.create("taxonomy_term", "npr_topics", name="Other"))
        self.assertEqual(self.mapper.get_term_id("News", None, "npr_topics"), 0)
        self.assertEqual(self.store.count("taxonomy_term"), 1)

    def test_malformed_update_date(self):
        node = self.store.create("node", "npr_story", title="Old", field_npr_id="1234567")
        self.store.save(node)

        result = self.mapper.add_or_update_node(denormalize(cds_resource(editorialMajorUpdateDateTime="not a date")))

        self.assertEqual(result.status, ImportStatus.ERROR)
        self.assertEqual(result.message, "Invalid date 'not a date'")
        self.assertEqual(self.store.load("node", node.id).label, "Old")

    def test_network_failure_propagates(self):
        self.client.request.side_effect = TransientNetworkError("timed out")
        with self.assertRaises(TransientNetworkError):
            self.import_story()

    def test_failed_download_skips_image(self):
        self.client.request.return_value = fake_response(404)
        node = self.import_story(display_messages=True).record

        self.assertEqual(node.referenced_ids("field_primary_image"), [])
        self.assertIn("[npr_image:5]", node.value("field_body"))
        self.assertTrue(any("There is no image at" in e for e in self.messenger.messages["error"]))

    def test_unmapped_media_reported(self):
        mappings = dict(STORY_MAPPINGS, externalAsset="unused")
        settings = configured_settings(story={"story_field_mappings": mappings})
        story = denormalize(cds_resource())
        story["externalAsset"] = [{"id": "y1", "url": "https://www.youtube.com/watch?v=abc"}]

        self.build_mapper(settings).add_or_update_node(story, display_messages=True)

        self.assertIn(
            "This story contains external assets, but the external assets field for NPR stories "
            "has not been configured. Please configure it.",
            self.messenger.messages["error"],
        )

    def test_html_blocks_embedded(self):
        settings = configured_settings(story={"html_block_field_mappings": {"html_block_body": "field_html"}})
        story = denormalize(cds_resource(
            layout=[{"href": "#/assets/h1"}],
            assets={
                "h1": {
                    "id": "h1",
                    "profiles": [{"href": "/v1/profiles/html-block", "rels": ["type"]}],
                    "html": "<div>embed</div>",
                },
            },
            images=[],
            bylines=[],
        ))

        node = self.build_mapper(settings).add_or_update_node(story).record

        block = self.store.load_by_properties("media", {"bundle": "npr_html"})[0]
        self.assertEqual(block.get("name"), "h1")
        self.assertEqual(block.get("field_html"), {"value": "<div>embed</div>", "format": "full_html"})
        self.assertIn(f'data-entity-uuid="{block.uuid}"', node.value("field_body"))


class TestNprmlStoryMapper(MapperTestCase):

    mapper_class = NprmlStoryMapper

    def test_maps_legacy_story(self):
        story = parse_nprml(NPRML_TWO_STORIES)[0]
        result = self.mapper.add_or_update_node(story)

        node = result.record
        self.assertEqual(result.operation, "created")
        self.assertEqual(node.label, "First story")
        self.assertEqual(node.get("field_npr_id"), "100")
        self.assertEqual(node.get("field_body"), {"value": "<p>One.</p>\n<p>Two.</p>\n", "format": "basic_html"})
        self.assertEqual(node.get("field_teaser"), {"value": "First teaser", "format": "plain_text"})
        self.assertEqual(node.get("field_link"), {"uri": "https://www.npr.org/2024/01/02/100/first-story"})
        self.assertEqual(
            node.get("field_byline"),
            [{"uri": "https://www.npr.org/people/1/jane", "title": "Jane Reporter"}],
        )
        self.assertEqual(node.get("field_story_date"), "2024-01-02T14:00:00")
        self.assertEqual(node.get("field_last_modified"), "2024-01-02T15:00:00")

    def test_pub_date_mapped(self):
        settings = configured_settings(story={"story_field_mappings": dict(STORY_MAPPINGS, pubDate="field_pub_date")})
        xml = NPRML_TWO_STORIES.replace(
            "<storyDate>", "<pubDate>Tue, 02 Jan 2024 08:00:00 -0500</pubDate><storyDate>", 1
        )

        node = self.build_mapper(settings).add_or_update_node(parse_nprml(xml)[0]).record

        self.assertEqual(node.get("field_pub_date"), "2024-01-02T13:00:00")

    def test_parent_topic(self):
        node = self.mapper.add_or_update_node(parse_nprml(NPRML_TWO_STORIES)[0]).record
        terms = self.store.load_multiple("taxonomy_term", node.referenced_ids("field_primary_topic"))
        self.assertEqual([term.get("name") for term in terms], ["News"])
        self.assertEqual(terms[0].get("field_npr_news_id"), "1001")

    def test_skip_compares_last_modified(self):
        story = parse_nprml(NPRML_TWO_STORIES)[1]
        self.mapper.add_or_update_node(story)
        self.assertEqual(self.mapper.add_or_update_node(story).status, ImportStatus.SKIPPED)

    def test_rejects_cds_dict(self):
        result = self.mapper.add_or_update_node({"id": "1"})
        self.assertEqual(result.status, ImportStatus.ERROR)


if __name__ == "__main__":
    unittest.main()
