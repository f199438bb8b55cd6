"""
Tests for npr_api.settings
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from npr_api.settings import STORY_FIELDS, UNUSED, Settings, is_used


class TestIsUsed(unittest.TestCase):

    def test_values(self):
        self.assertTrue(is_used("field_body"))
        self.assertFalse(is_used(UNUSED))
        self.assertFalse(is_used(""))
        self.assertFalse(is_used(None))


class TestSettings(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "settings.json"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.get("pull", "npr_pull_service"), "cds")
        self.assertEqual(settings.get("story", "embed_tag"), "drupal-media")
        mappings = settings.story_mappings()
        self.assertEqual(set(mappings), set(STORY_FIELDS))
        self.assertTrue(all(value == UNUSED for value in mappings.values()))

    def test_dotted_get_and_default(self):
        settings = Settings()
        self.assertEqual(settings.get("story", "html_block_field_mappings.html_block_id"), "name")
        self.assertEqual(settings.get("story", "missing.key", "fallback"), "fallback")
        self.assertEqual(settings.get("nope", "key", 3), 3)

    def test_data_merges_over_defaults(self):
        settings = Settings(data={"story": {"story_field_mappings": {"id": "field_npr_id"}}})
        mappings = settings.story_mappings()
        self.assertEqual(mappings["id"], "field_npr_id")
        self.assertEqual(mappings["body"], UNUSED)

    def test_set_nested(self):
        settings = Settings()
        settings.set("story", "image_field_mappings.caption", "field_caption")
        self.assertEqual(settings.mapping("image_field_mappings")["caption"], "field_caption")

    def test_mapping_is_a_copy(self):
        settings = Settings()
        mapping = settings.story_mappings()
        mapping["id"] = "changed"
        self.assertEqual(settings.story_mappings()["id"], UNUSED)

    def test_save_and_load(self):
        settings = Settings(self.path)
        settings.set("push", "org_id", "305")
        settings.save()

        with open(self.path) as f:
            self.assertEqual(json.load(f)["push"]["org_id"], "305")

        reloaded = Settings(self.path)
        self.assertEqual(reloaded.get("push", "org_id"), "305")
        self.assertEqual(reloaded.get("api", "request_timeout"), 30)

    def test_save_without_path(self):
        with self.assertRaises(ValueError):
            Settings().save()


if __name__ == "__main__":
    unittest.main()
