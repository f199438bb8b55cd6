"""
Tests for the npr-story command line interface

Commands run through click's CliRunner against a StoryCLI rooted in a
temporary directory.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

import cli as cli_module
from cli import StoryCLI, main
from npr_api.cds import denormalize
from npr_api.pull import CdsPullClient
from npr_api.utils import clear_reports

from story_fixtures import cds_resource, configured_settings, fake_response


class CLITestCase(unittest.TestCase):

    def setUp(self):
        """Set up a StoryCLI in a temporary directory"""
        self.temp_dir = tempfile.mkdtemp()
        self.story_cli = StoryCLI(Path(self.temp_dir))
        self.cli_patch = patch.object(cli_module, "cli", self.story_cli)
        self.cli_patch.start()
        self.env = patch.dict(os.environ, {}, clear=True)
        self.env.start()
        self.runner = CliRunner()
        clear_reports()

    def tearDown(self):
        self.env.stop()
        self.cli_patch.stop()
        self.story_cli.close()
        clear_reports()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def use_api(self):
        """Route pulls through a mocked CDS client"""
        self.story_cli._settings = configured_settings(story={"image_media_type": ""})
        self.api = MagicMock()
        self.api.get_stories.return_value = [denormalize(cds_resource())]
        client = CdsPullClient(
            self.story_cli.settings,
            self.story_cli.store,
            client=self.api,
            queue=self.story_cli.queue,
            messenger=self.story_cli.messenger,
        )
        return patch.object(self.story_cli, "pull_client", return_value=client)


class TestConfigCommands(CLITestCase):

    def test_config_set_and_show(self):
        """Test settings are saved to the settings file"""
        result = self.runner.invoke(main, ["config-set", "story", "story_field_mappings.id", "field_npr_id"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("story.story_field_mappings.id = field_npr_id", result.output)
        self.assertTrue((Path(self.temp_dir) / "settings.json").exists())

        result = self.runner.invoke(main, ["config-show", "story"])
        self.assertIn('"id": "field_npr_id"', result.output)

    def test_config_set_parses_json(self):
        self.runner.invoke(main, ["config-set", "pull", "num_results", "25"])
        self.assertEqual(self.story_cli.settings.get("pull", "num_results"), 25)

    def test_setup_stores_credentials(self):
        result = self.runner.invoke(main, ["setup", "--api-key", "legacy-key", "--cds-token", "token"])
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(self.story_cli.secrets.get_secret("api_key"), "legacy-key")
        self.assertEqual(self.story_cli.secrets.get_secret("cds_token"), "token")

    def test_setup_from_env(self):
        result = self.runner.invoke(main, ["setup", "--from-env"])
        self.assertIn("No credentials found", result.output)


class TestPullCommands(CLITestCase):

    def test_get_story_by_url(self):
        """Test a story URL is resolved to its id and imported"""
        with self.use_api():
            result = self.runner.invoke(main, ["get-story", "https://www.npr.org/2024/01/02/1234567890/rock-story"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.api.get_stories.assert_called_once_with({"id": "1234567890"})
        self.assertIn("Story Rock & roll story was created.", result.output)
        self.assertIn("created: 1", result.output)
        node = self.story_cli.store.load_by_properties("node", {"field_npr_id": "1234567"})[0]
        self.assertTrue(node.get("field_imported_manually"))

    def test_get_story_bad_url(self):
        result = self.runner.invoke(main, ["get-story", "https://www.example.org/story"])
        self.assertIn("Could not extract an NPR ID", result.output)

    def test_get_story_nothing_found(self):
        with self.use_api():
            self.api.get_stories.return_value = []
            result = self.runner.invoke(main, ["get-story", "1234567"])
        self.assertIn("No stories found", result.output)

    def test_get_topic_limit(self):
        with self.use_api():
            result = self.runner.invoke(main, ["get-topic", "1001", "--num-results", "51"])
        self.assertIn("Cannot process more than 50 stories", result.output)
        self.api.get_stories.assert_not_called()

    def test_get_topic(self):
        with self.use_api():
            result = self.runner.invoke(main, ["get-topic", "1001", "--num-results", "5", "--unpublished"])
        self.assertEqual(result.exit_code, 0, result.output)
        node = self.story_cli.store.load_by_properties("node", {"field_npr_id": "1234567"})[0]
        self.assertFalse(node.get("status"))

    def test_update_and_process_queue(self):
        with self.use_api():
            result = self.runner.invoke(main, ["update-queue"])
            self.assertIn("Queue updated: 1 items waiting", result.output)

            result = self.runner.invoke(main, ["process-queue"])
            self.assertIn("Processed 1 items (0 failed, 0 remaining)", result.output)

        self.assertEqual(self.story_cli.store.count("node"), 1)

    def test_reports_survive_a_new_session(self):
        with self.use_api():
            self.runner.invoke(main, ["get-story", "1234567"])

        # A later invocation starts with empty in-memory tallies
        self.story_cli.close()
        clear_reports()
        with patch.object(cli_module, "cli", StoryCLI(Path(self.temp_dir))) as later_cli:
            self.addCleanup(later_cli.close)
            result = self.runner.invoke(main, ["reports", "--clear"])
            self.assertIn("CREATED", result.output)
            self.assertIn("created: 1", result.output)

            result = self.runner.invoke(main, ["reports"])
            self.assertIn("created: 0", result.output)


class TestOtherCommands(CLITestCase):

    def test_push_missing_node(self):
        result = self.runner.invoke(main, ["push", "42"])
        self.assertIn("Story 42 not found", result.output)

    def test_push(self):
        self.story_cli._settings = configured_settings()
        node = self.story_cli.store.save(self.story_cli.store.create(
            "node", "npr_story", title="Local", field_body={"value": "<p>x</p>", "format": "basic_html"}
        ))
        push_client = MagicMock()
        push_client.push_story.return_value = fake_response(200)

        with patch.object(self.story_cli, "push_client", return_value=push_client):
            result = self.runner.invoke(main, ["push", str(node.id)])

        self.assertIn("Story Local sent to NPR", result.output)
        push_client.push_story.assert_called_once()

    def test_report_cds(self):
        session = MagicMock()
        session.request.return_value = fake_response(200, {"resources": [{"id": "1", "title": "One"}]})
        with patch("npr_api.transport.requests.Session", return_value=session):
            result = self.runner.invoke(main, ["report", "--service", "cds"])
        self.assertIn("Response code was 200", result.output)
        self.assertIn("One (ID: 1)", result.output)

    def test_stats(self):
        result = self.runner.invoke(main, ["stats"])
        self.assertIn("node: 0", result.output)
        self.assertIn("queued: 0", result.output)


if __name__ == "__main__":
    unittest.main()
