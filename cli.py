#!/usr/bin/env python3
"""
NPR Story Sync CLI

Command-line interface for pulling NPR stories into the local content store,
working the story queue, and pushing local stories back to NPR.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

import npr_api
from config import CONFIG_DIR, DB_PATH, FILES_DIR, QUEUE_BATCH_SIZE, QUEUE_INTERVAL, SETTINGS_FILE, SERVICES
from logging_config import logger
from npr_api.utils import delete_reports, get_report_summary, load_reports, report_out, save_reports
from scheduled_jobs import JobStatus, QueueJobs
from secrets_manager import SecretsManager


class StoryCLI:
    """Lazily builds the settings, store, and API clients a command needs"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else CONFIG_DIR
        self._settings: Optional[npr_api.Settings] = None
        self._store: Optional[npr_api.ContentStore] = None
        self._secrets: Optional[SecretsManager] = None
        self.messenger = npr_api.Messenger(output=click.echo)

    @property
    def settings_file(self) -> Path:
        return self.config_dir / SETTINGS_FILE.name

    @property
    def settings(self) -> npr_api.Settings:
        if self._settings is None:
            self._settings = npr_api.Settings(self.settings_file)
        return self._settings

    @property
    def store(self) -> npr_api.ContentStore:
        if self._store is None:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self._store = npr_api.ContentStore(
                str(self.config_dir / DB_PATH.name), str(self.config_dir / FILES_DIR.name)
            )
        return self._store

    @property
    def secrets(self) -> SecretsManager:
        if self._secrets is None:
            self._secrets = SecretsManager(self.config_dir)
        return self._secrets

    @property
    def queue(self) -> npr_api.StoryQueue:
        return npr_api.StoryQueue(self.store.conn)

    def pull_client(self):
        return npr_api.create_pull_client(
            self.settings,
            self.store,
            queue=self.queue,
            messenger=self.messenger,
            api_key=self.secrets.get_secret("api_key"),
            token=self.secrets.get_secret("cds_token"),
        )

    def push_client(self):
        return npr_api.create_push_client(
            self.settings,
            self.store,
            messenger=self.messenger,
            api_key=self.secrets.get_secret("api_key"),
            token=self.secrets.get_secret("cds_token"),
        )

    def import_stories(self, client, stories: List[Any], published: bool, force: bool = False, manual_import: bool = False):
        """Import fetched stories and echo each outcome"""
        if not stories:
            click.echo("📋 No stories found")
            return []

        results = []
        for story in stories:
            result = client.add_or_update_node(
                story,
                published,
                display_messages=True,
                manual_import=manual_import,
                force=force,
            )
            results.append(result)
            logger.log_story_import(result.story_id, result.status.value, result.message)
        save_reports(self.store)
        self.print_summary(results)
        return results

    def print_summary(self, results):
        summary: Dict[str, int] = {}
        for result in results:
            key = result.operation or result.status.value
            summary[key] = summary.get(key, 0) + 1

        click.echo("\n📊 Import Summary:")
        for status, count in summary.items():
            click.echo(f"  {status}: {count}")

    def close(self):
        if self._store is not None:
            self._store.close()
            self._store = None


# Global CLI instance
cli = StoryCLI()


def _parse_value(value: str) -> Any:
    """JSON when it parses, plain string otherwise"""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _fetch_options(num_results, start_num, sort, start_date, end_date) -> Dict[str, Any]:
    options: Dict[str, Any] = {"num_results": num_results, "start_num": start_num}
    if sort:
        options["sort"] = sort
    if start_date:
        options["start_date"] = start_date
    if end_date:
        options["end_date"] = end_date
    return options


@click.group()
def main():
    """NPR Story Sync - pull NPR stories into a local content store"""
    pass


@main.command()
@click.option("--api-key", help="Legacy NPR API key")
@click.option("--cds-token", help="CDS bearer token")
@click.option(
    "--from-env", is_flag=True, help="Check credentials in NPR_API_KEY / NPR_CDS_TOKEN"
)
def setup(api_key: Optional[str], cds_token: Optional[str], from_env: bool):
    """Store NPR API credentials securely"""

    if from_env:
        env_credentials = cli.secrets.get_from_environment()
        if env_credentials:
            click.echo("✅ Credentials found in environment variables")
        else:
            click.echo("❌ No credentials found in environment variables")
            click.echo("💡 Set NPR_API_KEY and/or NPR_CDS_TOKEN")
        return

    if not api_key and not cds_token:
        cli.secrets.interactive_setup()
        return

    if api_key:
        cli.secrets.store_secret("api_key", api_key)
    if cds_token:
        cli.secrets.store_secret("cds_token", cds_token)
    click.echo("🔒 Credentials encrypted and stored locally")


@main.command("config-set")
@click.argument("group", type=click.Choice(["api", "pull", "push", "story"]))
@click.argument("key")
@click.argument("value")
def config_set(group: str, key: str, value: str):
    """Set a setting; dotted keys set nested values (e.g. story_field_mappings.id)"""

    cli.settings.set(group, key, _parse_value(value))
    cli.settings.save()
    click.echo(f"✅ {group}.{key} = {value}")


@main.command("config-show")
@click.argument("group", required=False, type=click.Choice(["api", "pull", "push", "story"]))
def config_show(group: Optional[str]):
    """Show settings (credentials are never shown)"""

    data = cli.settings.get(group) if group else cli.settings.data
    click.echo(json.dumps(data, indent=2, sort_keys=True))


@main.command("get-story")
@click.argument("story")
@click.option("--unpublished", is_flag=True, help="Save the story unpublished")
@click.option("--force", is_flag=True, help="Update even if the story has not changed")
def get_story(story: str, unpublished: bool, force: bool):
    """Import one story by NPR id or npr.org URL"""

    story_id = story if story.isdigit() else npr_api.extract_id(story)
    if not story_id:
        click.echo("❌ Could not extract an NPR ID from the given URL")
        return

    logger.log_operation_start("get_story", story_id=story_id)
    try:
        client = cli.pull_client()
        stories = client.get_stories({"id": story_id})
        results = cli.import_stories(client, stories, not unpublished, force=force, manual_import=True)
    except npr_api.NprError as e:
        logger.log_error(e, {"operation": "get_story", "story_id": story_id})
        click.echo(f"❌ Error getting story: {e}")
        return
    logger.log_operation_end("get_story", True, story_id=story_id, results=len(results))


@main.command("get-topic")
@click.argument("topic_id", type=int)
@click.option("--num-results", default=1, help="Number of stories to import (max 50)")
@click.option("--start-num", default=0, help="Offset of the first story")
@click.option("--sort", type=click.Choice(["dateDesc", "dateAsc"]), default="dateDesc")
@click.option("--start-date", help="Earliest publish date (YYYY-MM-DD)")
@click.option("--end-date", help="Latest publish date (YYYY-MM-DD)")
@click.option("--unpublished", is_flag=True, help="Save stories unpublished")
def get_topic(topic_id: int, num_results: int, start_num: int, sort: str, start_date, end_date, unpublished: bool):
    """Import stories from an NPR topic"""

    options = _fetch_options(num_results, start_num, sort, start_date, end_date)
    try:
        client = cli.pull_client()
        stories = client.get_stories_by_topic_id(topic_id, options)
    except (npr_api.NprError, ValueError) as e:
        logger.log_error(e, {"operation": "get_topic", "topic_id": topic_id})
        click.echo(f"❌ Error getting topic stories: {e}")
        return
    cli.import_stories(client, stories, not unpublished)


@main.command("get-org")
@click.argument("org_id", type=int)
@click.option("--num-results", default=1, help="Number of stories to import")
@click.option("--start-num", default=0, help="Offset of the first story")
@click.option("--start-date", help="Earliest publish date (YYYY-MM-DD)")
@click.option("--end-date", help="Latest publish date (YYYY-MM-DD)")
@click.option("--unpublished", is_flag=True, help="Save stories unpublished")
def get_org(org_id: int, num_results: int, start_num: int, start_date, end_date, unpublished: bool):
    """Import stories owned by an NPR organization"""

    options = _fetch_options(num_results, start_num, None, start_date, end_date)
    try:
        client = cli.pull_client()
        stories = client.get_stories_by_org_id(org_id, options)
    except npr_api.NprError as e:
        logger.log_error(e, {"operation": "get_org", "org_id": org_id})
        click.echo(f"❌ Error getting organization stories: {e}")
        return
    cli.import_stories(client, stories, not unpublished)


@main.command("update-queue")
def update_queue():
    """Queue recent stories from subscribed topics"""

    try:
        updated = cli.pull_client().update_queue()
    except npr_api.NprError as e:
        logger.log_error(e, {"operation": "update_queue"})
        click.echo(f"❌ Error updating the queue: {e}")
        return

    if updated:
        click.echo(f"✅ Queue updated: {cli.queue.number_of_items()} items waiting")
    else:
        click.echo("❌ Queue was not updated")


@main.command("process-queue")
@click.option("--limit", type=int, default=None, help="Maximum number of items to process")
@click.option("--unpublished", is_flag=True, help="Save stories unpublished")
def process_queue(limit: Optional[int], unpublished: bool):
    """Import queued stories"""

    worker = npr_api.StoryQueueWorker(cli.pull_client(), published=not unpublished)
    stats = worker.run(cli.queue, limit=limit)
    save_reports(cli.store)
    logger.log_queue_run(stats)
    click.echo(
        f"✅ Processed {stats['processed']} items "
        f"({stats['failed']} failed, {stats['remaining']} remaining)"
    )


@main.command()
@click.argument("node_id", type=int)
@click.option("--delete", "delete_story", is_flag=True, help="Remove the story from NPR instead")
def push(node_id: int, delete_story: bool):
    """Send a local story to NPR"""

    node = cli.store.load("node", node_id)
    if node is None:
        click.echo(f"❌ Story {node_id} not found")
        return

    client = cli.push_client()
    try:
        if delete_story:
            if not hasattr(client, "delete_story"):
                click.echo("❌ Deleting stories requires the CDS push service")
                return
            response = client.delete_story(node)
            if response is None:
                click.echo(f"❌ Story {node_id} has no NPR id")
                return
        else:
            response = client.push_story(node)
    except npr_api.NprError as e:
        logger.log_error(e, {"operation": "push", "node_id": node_id})
        click.echo(f"❌ Error pushing story: {e}")
        return

    if response.ok:
        click.echo(f"✅ Story {node.label} {'deleted from' if delete_story else 'sent to'} NPR")
    else:
        click.echo(f"❌ NPR returned {response.status_code}")


@main.command()
@click.option("--service", type=click.Choice(SERVICES), help="API to test (defaults to the pull service)")
def report(service: Optional[str]):
    """Test the API connection and summarize the response"""

    service = service or cli.settings.get("pull", "npr_pull_service")
    try:
        if service == "cds":
            client = npr_api.NprCdsClient(cli.settings, token=cli.secrets.get_secret("cds_token"))
            lines = client.report()
        else:
            client = npr_api.NprClient(cli.settings, api_key=cli.secrets.get_secret("api_key"))
            try:
                client.get_stories({"id": 1001, "numResults": 10})
            except npr_api.NotFoundError as e:
                click.echo(f"❌ {e}")
            lines = client.report()
    except npr_api.NprError as e:
        click.echo(f"❌ {e}")
        return

    for line in lines:
        click.echo(line)


@main.command()
@click.option("--clear", is_flag=True, help="Clear the report after printing")
def reports(clear: bool):
    """Print the saved import report"""

    stored = load_reports(cli.store)
    report_out(stored)
    for status, count in get_report_summary(stored).items():
        click.echo(f"  {status}: {count}")
    if clear:
        delete_reports(cli.store)


@main.command()
@click.option("--interval", type=int, default=None, help="Seconds between runs (defaults to the queue interval setting)")
@click.option("--batch-size", type=int, default=QUEUE_BATCH_SIZE, help="Queue items per run")
@click.option("--once", is_flag=True, help="Run both jobs once and exit")
def scheduler(interval: Optional[int], batch_size: int, once: bool):
    """Keep the story queue updated and processed"""

    interval = interval or int(cli.settings.get("pull", "queue_interval") or QUEUE_INTERVAL)
    jobs = QueueJobs(cli.pull_client(), cli.queue, interval=interval, batch_size=batch_size, store=cli.store)

    if once:
        for job_type in jobs.jobs:
            execution = jobs.run_job(job_type)
            icon = {JobStatus.COMPLETED: "✅", JobStatus.FAILED: "❌", JobStatus.SKIPPED: "⏭️"}.get(
                execution.status, "❓"
            )
            click.echo(f"{icon} {job_type.value}: {execution.output or execution.error}")
        return

    click.echo(f"🚀 Scheduler started (every {interval} seconds)")
    jobs.run_forever()


@main.command()
def stats():
    """Show local content counts"""

    for entity_type, count in cli.store.get_stats().items():
        click.echo(f"  {entity_type}: {count}")
    click.echo(f"  queued: {cli.queue.number_of_items()}")


if __name__ == "__main__":
    main()
