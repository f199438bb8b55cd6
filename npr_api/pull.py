"""
Pull clients

Fetch stories from NPR and import them as local story nodes, one story at a
time or through the story queue.

    CdsPullClient    Content Distribution Service (JSON)
    NprmlPullClient  legacy story API (NPRML)

create_pull_client() picks one based on the pull settings.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .errors import NprError
from .mapper import ImportResult, ImportStatus, NprmlStoryMapper, StoryMapper, parse_datetime
from .settings import Settings, is_used
from .store import ContentStore
from .story_queue import StoryQueue
from .transport import MAX_TOPIC_RESULTS, NprCdsClient, NprClient
from .utils import ImportNotifier, Messenger

logger = logging.getLogger(__name__)

LAST_UPDATE_KEY = "npr_pull.last_update"
NEWS_TOPIC_ID = 1001
ORGANIZATION_URL = "https://organization.api.npr.org/v4/services/"

# /yyyy/mm/dd/id and /blogs/name/yyyy/mm/dd/id
_dated_url = re.compile(r"https://[^\s/]*npr\.org/((([^/]*/){3,5})([0-9]{8,12}))/.*")
# /templates/story/story.php?storyId=id
_query_url = re.compile(r"https://[^\s/]*npr\.org/([^&\s<]*storyId=([0-9]+)).*")


def extract_id(url: str) -> Optional[str]:
    """NPR story id from an npr.org story URL, or None"""
    match = _dated_url.match(url or "")
    if match and match.group(4):
        return match.group(4)
    match = _query_url.match(url or "")
    if match and match.group(2):
        return match.group(2)
    return None


def _date_range(options: Dict[str, Any]) -> Optional[str]:
    if not options.get("start_date"):
        return None
    value = str(options["start_date"])
    if options.get("end_date"):
        value += f"...{options['end_date']}"
    return value


class PullClientBase:
    """Queue, subscription, and last-update handling shared by both pull clients"""

    mapper_class = StoryMapper

    def _setup(
        self,
        settings: Settings,
        store: ContentStore,
        queue: Optional[StoryQueue],
        messenger: Optional[Messenger],
        import_logger: Optional[logging.Logger],
        client,
    ):
        self.store = store
        self.queue = queue or StoryQueue(store.conn)
        self.messenger = messenger or Messenger()
        self.logger = import_logger or logger
        self.notifier = ImportNotifier(self.logger, self.messenger)
        self.mapper = self.mapper_class(
            store, settings, logger=self.logger, messenger=self.messenger, client=client
        )

    @staticmethod
    def extract_id(url: str) -> Optional[str]:
        return extract_id(url)

    def get_last_update_time(self) -> datetime:
        value = self.store.get_state(LAST_UPDATE_KEY)
        if not value:
            return datetime.fromtimestamp(1, tz=timezone.utc)
        return parse_datetime(value)

    def set_last_update_time(self, time: datetime):
        self.store.set_state(LAST_UPDATE_KEY, time.astimezone(timezone.utc).isoformat())

    def reset_last_update_time(self):
        self.store.delete_state(LAST_UPDATE_KEY)

    def get_subscription_terms(self):
        """Subscribed taxonomy terms that carry an NPR id"""
        vocabularies = [
            vocabulary
            for vocabulary, enabled in (self.settings.get("pull", "topic_vocabularies") or {}).items()
            if enabled
        ]
        id_field = self.settings.get("story", "term_id_field")
        subscribe_field = self.settings.get("story", "term_subscribe_field")

        terms = []
        for vocabulary in vocabularies:
            for term in self.store.load_by_properties(
                "taxonomy_term", {subscribe_field: 1, "bundle": vocabulary}
            ):
                if term.value(id_field):
                    terms.append(term)
        return terms

    def get_subscription_ids(self) -> List[str]:
        """
        NPR topic ids to pull, from checked topics or subscribed terms.
        Falls back to the News topic.
        """
        subscribe_method = self.settings.get("pull", "subscribe_method")
        npr_ids: List[str] = []
        if subscribe_method == "taxonomy":
            id_field = self.settings.get("story", "term_id_field")
            for term in self.get_subscription_terms():
                npr_id = str(term.value(id_field))
                if npr_id not in npr_ids:
                    npr_ids.append(npr_id)
        elif subscribe_method == "checkbox":
            topic_ids = self.settings.get("pull", "topic_ids") or {}
            if isinstance(topic_ids, dict):
                topic_ids = [value for value in topic_ids.values() if value]
            npr_ids = [str(topic_id) for topic_id in topic_ids]

        if not npr_ids:
            npr_ids = [str(NEWS_TOPIC_ID)]
        return npr_ids

    def _days_back_window(self) -> Optional[tuple]:
        days_back = self.settings.get("pull", "start_date")
        if not days_back:
            self.notifier.error('Please configure the "Days back" pull setting.')
            return None
        start = date.today() - timedelta(days=int(days_back))
        return start.isoformat(), date.today().isoformat()

    def add_or_update_node(
        self,
        story,
        published: bool = True,
        display_messages: bool = False,
        manual_import: bool = False,
        force: bool = False,
    ) -> ImportResult:
        return self.mapper.add_or_update_node(
            story,
            published=published,
            display_messages=display_messages,
            manual_import=manual_import,
            force=force,
        )


class CdsPullClient(PullClientBase):
    """Pulls normalized stories from the Content Distribution Service"""

    def __init__(
        self,
        settings: Settings,
        store: ContentStore,
        client: Optional[NprCdsClient] = None,
        queue: Optional[StoryQueue] = None,
        messenger: Optional[Messenger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.client = client or NprCdsClient(settings)
        self._setup(settings, store, queue, messenger, logger, self.client)

    def get_stories(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        query = dict(params)
        query.pop("fields", None)
        return self.client.get_stories(query)

    def get_stories_by_org_id(self, org_id: int, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        options = {"num_results": 1, "start_num": 0, "start_date": "", "end_date": "", **(options or {})}
        params: Dict[str, Any] = {"ownerHrefs": f"{ORGANIZATION_URL}{org_id}"}
        publish_range = _date_range(options)
        if publish_range:
            params["publishDateTime"] = publish_range
        params["offset"] = options["start_num"]
        params["limit"] = options["num_results"]
        return self.get_stories(params)

    def get_stories_by_topic_id(self, topic_id: int, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        options = {
            "num_results": 1,
            "start_num": 0,
            "sort": "dateDesc",
            "start_date": "",
            "end_date": "",
            **(options or {}),
        }
        if int(options["num_results"]) > MAX_TOPIC_RESULTS:
            raise ValueError(
                f"Cannot process more than {MAX_TOPIC_RESULTS} stories at one time "
                "when a date range is used."
            )

        direction = "desc" if options["sort"] == "dateDesc" else "asc"
        params: Dict[str, Any] = {
            "limit": options["num_results"],
            "collectionIds": topic_id,
            "sort": f"publishDateTime:{direction}",
        }
        if int(options["start_num"]) > 0:
            params["offset"] = options["start_num"]
        publish_range = _date_range(options)
        if publish_range:
            params["publishDateTime"] = publish_range
        return self.get_stories(params)

    def update_queue(self) -> bool:
        """
        Queue recent stories from every subscribed topic, once each, then
        re-check manually imported stories within the days-back window.

        Returns:
            False when the days-back setting is missing
        """
        started = datetime.now(timezone.utc)
        window = self._days_back_window()
        if window is None:
            return False
        start, end = window
        num_results = self.settings.get("pull", "num_results")

        queued: List[str] = []
        for npr_id in self.get_subscription_ids():
            stories = self.get_stories_by_topic_id(
                int(npr_id), {"num_results": num_results, "start_date": start, "end_date": end}
            )
            for story in stories:
                if story["id"] not in queued:
                    self.queue.create_item(story)
                    queued.append(story["id"])

        for story_id in self._manually_imported_ids(start):
            if story_id in queued:
                continue
            stories = self.get_stories({"id": story_id, "fields": "all"})
            if stories:
                self.queue.create_item(stories[0])
                queued.append(story_id)

        self.logger.info(f"Queued {len(queued)} NPR stories")
        self.set_last_update_time(started)
        return True

    def _manually_imported_ids(self, start: str) -> List[str]:
        """Ids of manually imported stories whose story date is within the window"""
        mappings = self.settings.story_mappings()
        imported_field = mappings.get("imported_manually")
        story_date_field = mappings.get("storyDate")
        if not is_used(imported_field) or not is_used(story_date_field):
            return []

        nodes = self.store.load_by_properties(
            "node",
            {"bundle": self.settings.get("story", "story_node_type"), imported_field: 1},
        )
        story_ids = []
        for node in nodes:
            story_date = node.value(story_date_field)
            if not story_date or str(story_date)[:10] < start:
                continue
            story_id = node.value(mappings["id"])
            if story_id:
                story_ids.append(str(story_id))
        return story_ids


class NprmlPullClient(NprClient, PullClientBase):
    """Pulls parsed NPRML stories from the legacy story API"""

    mapper_class = NprmlStoryMapper

    def __init__(
        self,
        settings: Settings,
        store: ContentStore,
        session=None,
        api_key: Optional[str] = None,
        queue: Optional[StoryQueue] = None,
        messenger: Optional[Messenger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        NprClient.__init__(self, settings, session=session, api_key=api_key)
        self._setup(settings, store, queue, messenger, logger, self)

    def save_or_update_node(self, story_id: str, published: bool = True, display_messages: bool = False, force: bool = False) -> List[ImportResult]:
        """Fetch one story by id and import it"""
        self.mapper.notifier.display_messages = display_messages
        stories = self.get_stories({"id": story_id})
        if not stories:
            message = f"{story_id} is not a valid story ID."
            self.mapper.notifier.error(message)
            return [ImportResult(story_id, ImportStatus.ERROR, message=message)]

        return [
            self.add_or_update_node(story, published, display_messages=display_messages, force=force)
            for story in stories
        ]

    def update_queue(self, since: Optional[datetime] = None) -> bool:
        """
        Queue the ids of subscribed stories modified since the last update.

        Returns:
            False when the days-back setting is missing
        """
        started = datetime.now(timezone.utc)
        since = since or self.get_last_update_time()
        window = self._days_back_window()
        if window is None:
            return False
        start, end = window
        num_results = self.settings.get("pull", "num_results")

        queued: List[str] = []
        for npr_id in self.get_subscription_ids():
            params = {"id": npr_id, "numResults": num_results, "startDate": start, "endDate": end}
            try:
                stories = self.get_stories(params)
            except NprError as e:
                self.logger.error(f"Topic {npr_id} could not be retrieved: {e}")
                continue

            for story in stories:
                story_id = story.text("id")
                modified = story.text("lastModifiedDate")
                if not story_id or story_id in queued:
                    continue
                try:
                    if modified and parse_datetime(modified) <= since:
                        continue
                except NprError as e:
                    self.logger.error(f"Story {story_id} skipped: {e}")
                    continue
                self.queue.create_item(story_id)
                queued.append(story_id)

        self.logger.info(f"Queued {len(queued)} NPR stories")
        self.set_last_update_time(started)
        return True


def create_pull_client(
    settings: Settings,
    store: ContentStore,
    queue: Optional[StoryQueue] = None,
    messenger: Optional[Messenger] = None,
    session=None,
    api_key: Optional[str] = None,
    token: Optional[str] = None,
):
    """Pull client for the configured service ("cds" or "xml")"""
    service = settings.get("pull", "npr_pull_service") or "xml"
    if service == "cds":
        client = NprCdsClient(settings, session=session, token=token)
        return CdsPullClient(settings, store, client=client, queue=queue, messenger=messenger)
    return NprmlPullClient(
        settings, store, session=session, api_key=api_key, queue=queue, messenger=messenger
    )
