"""
Push clients

Send locally authored story nodes to NPR.

    CdsPushClient    builds a CDS story document and PUTs it to /v1/documents/{id}
    NprmlPushClient  builds NPRML and PUTs it to the legacy {base}/story endpoint

create_push_client() picks one based on the push settings.
"""

import email.utils
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .errors import ConfigurationError
from .filters import rel_to_abs, text_summary
from .settings import Settings, is_used
from .store import ContentRecord, ContentStore
from .transport import NprCdsClient, NprClient
from .utils import ImportNotifier, Messenger

logger = logging.getLogger(__name__)

NPRML_VERSION = "0.92.2"
ORGANIZATION_URL = "https://organization.api.npr.org/v4/services/"
TITLE_LIMIT = 100

STORY_PROFILES = [
    {"href": "/v1/profiles/story", "rels": ["type"]},
    {"href": "/v1/profiles/publishable", "rels": ["interface"]},
    {"href": "/v1/profiles/renderable", "rels": ["interface"]},
    {"href": "/v1/profiles/document"},
]

# Local mapping key -> CDS document property
CDS_TEXT_FIELDS = {"subtitle": "subtitle", "shortTitle": "socialTitle", "miniTeaser": "shortTeaser"}


def node_url(settings: Settings, node: ContentRecord) -> str:
    """Absolute URL of a local story node"""
    return f"{settings.get('push', 'site_url', '').rstrip('/')}/node/{node.id}"


def file_url(settings: Settings, file_record: ContentRecord) -> str:
    """Public URL of a stored file"""
    uri = file_record.get("uri", "")
    if uri.startswith("public://"):
        uri = uri[len("public://"):]
    return f"{settings.get('push', 'files_url', '').rstrip('/')}/{uri}"


class PushClientBase:
    """Story mapping lookups shared by both push clients"""

    def _setup(self, settings: Settings, store: ContentStore, messenger: Optional[Messenger]):
        self.settings = settings
        self.store = store
        self.notifier = ImportNotifier(logger, messenger or Messenger())

    def _mappings(self) -> Dict[str, str]:
        mappings = self.settings.story_mappings()
        if not is_used(mappings.get("id")):
            raise ConfigurationError("Please configure the story id field.")
        if not is_used(mappings.get("body")):
            raise ConfigurationError("Please configure the body field.")
        return mappings

    def primary_image_urls(self, node: ContentRecord, mappings: Dict[str, str]) -> List[tuple]:
        """(media record, file URL) for each file of the first primary image"""
        image_field = mappings.get("primary_image")
        if not is_used(image_field):
            return []

        image_file_field = self.settings.get("story", "image_field_mappings.image_field")
        if not is_used(image_file_field):
            raise ConfigurationError(
                "In order to push media images to NPR, please configure the image_field "
                "mapping in the image field mappings."
            )

        media_ids = node.referenced_ids(image_field)
        media_image = self.store.load("media", media_ids[0]) if media_ids else None
        if media_image is None:
            return []

        urls = []
        for file_id in media_image.referenced_ids(image_file_field):
            image_file = self.store.load("file", file_id)
            if image_file is not None:
                urls.append((media_image, file_url(self.settings, image_file)))
        return urls


class CdsPushClient(PushClientBase):
    """Sends story documents to the Content Distribution Service"""

    def __init__(
        self,
        settings: Settings,
        store: ContentStore,
        client: Optional[NprCdsClient] = None,
        messenger: Optional[Messenger] = None,
    ):
        self._setup(settings, store, messenger)
        self.client = client or NprCdsClient(settings)
        self.client.set_url(settings.get("push", "cds_ingest_url"))

    def create_story_document(self, node: ContentRecord) -> Dict[str, Any]:
        """
        Build a CDS story document from a local story node.

        Raises:
            ConfigurationError: id, body, or image file mapping missing
        """
        mappings = self._mappings()
        id_prefix = self.settings.get("push", "cds_doc_id_prefix", "")
        service_url = f"{ORGANIZATION_URL}{self.settings.get('push', 'org_id', '')}"

        story: Dict[str, Any] = {
            "id": f"{id_prefix}-{node.id}",
            "owners": [{"href": service_url}],
            "brandings": [{"href": service_url}],
            "profiles": [dict(profile) for profile in STORY_PROFILES],
        }

        id_value = node.value(mappings["id"])
        if id_value:
            story["id"] = str(id_value)

        title = node.label[:TITLE_LIMIT]
        if title:
            story["title"] = title

        body = node.value(mappings["body"])
        if body:
            body = rel_to_abs(body, self.settings.get("push", "site_url", ""))
            asset_id = f"{id_prefix}-body"
            story["layout"] = [{"href": f"#/assets/{asset_id}"}]
            story.setdefault("assets", {})[asset_id] = {
                "id": asset_id,
                "text": body,
                "profiles": [
                    {"href": "/v1/profiles/text", "rels": ["type"]},
                    {"href": "/v1/profiles/document"},
                ],
            }
            story["teaser"] = text_summary(body)

        if node.created:
            story["editorialMajorUpdateDateTime"] = datetime.fromtimestamp(
                node.created, tz=timezone.utc
            ).isoformat()

        story["webPages"] = [{"href": node_url(self.settings, node), "rels": ["canonical"]}]
        story["collections"] = self.topic_collections(node, mappings)

        for key, cds_key in CDS_TEXT_FIELDS.items():
            field_name = mappings.get(key)
            if is_used(field_name) and node.value(field_name):
                story[cds_key] = node.value(field_name)

        images = self.primary_image_urls(node, mappings)
        if images:
            story["profiles"].append({"href": "/v1/profiles/has-images", "rels": ["interface"]})
            for media_image, url in images:
                image_id = f"{id_prefix}-media-{media_image.id}"
                story.setdefault("images", []).append({"href": f"#/assets/{image_id}", "rels": ["primary"]})
                story.setdefault("assets", {})[image_id] = {
                    "id": image_id,
                    "profiles": [
                        {"href": "/v1/profiles/image", "rels": ["type"]},
                        {"href": "/v1/profiles/document"},
                    ],
                    "enclosures": [{"href": url}],
                }
        return story

    def topic_collections(self, node: ContentRecord, mappings: Dict[str, str]) -> List[Dict[str, Any]]:
        """Topic collections; the primary topic goes first, the slug topic is marked"""
        topic_field = mappings.get("topic")
        if not is_used(topic_field):
            return []

        id_field = self.settings.get("story", "term_id_field")
        primary_field = mappings.get("primaryTopic")
        primary_ids = node.referenced_ids(primary_field) if is_used(primary_field) else []
        primary_term = self.store.load("taxonomy_term", primary_ids[0]) if primary_ids else None
        slug_field = mappings.get("slug")
        slug = node.value(slug_field) if is_used(slug_field) else None

        collections: List[Dict[str, Any]] = []
        for topic in self.store.load_multiple("taxonomy_term", node.referenced_ids(topic_field)):
            topic_id = topic.value(id_field)
            collection = {"href": f"/v1/documents/{topic_id}", "rels": ["topic"]}
            if slug and slug == topic.label:
                collection["rels"].append("slug")
            if primary_term is not None and primary_term.value(id_field) == topic_id:
                collections.insert(0, collection)
                primary_term = None
                continue
            collections.append(collection)
        return collections

    def create_or_update_story(self, story: Dict[str, Any]) -> requests.Response:
        """PUT the document to /v1/documents/{id}"""
        url = f"/v1/documents/{story['id']}"
        response = self.client.request("PUT", url, json=story)
        if response.ok:
            logger.info(f"Story sent to the NPR story API at the URL {url}")
            if self.settings.get("push", "npr_cds_push_verbose_logging"):
                logger.info(f"Document sent: {story}")
        else:
            self.notifier.error(f"Error sending story: {response.text}")
        return response

    def push_story(self, node: ContentRecord) -> requests.Response:
        return self.create_or_update_story(self.create_story_document(node))

    def delete_story(self, node: ContentRecord) -> Optional[requests.Response]:
        """DELETE the node's document; None when the node has no NPR id"""
        story_id = node.value(self._mappings()["id"])
        if not story_id:
            return None
        return self.client.request("DELETE", f"/v1/documents/{story_id}")


class NprmlPushClient(NprClient, PushClientBase):
    """Sends NPRML to the legacy story API"""

    def __init__(
        self,
        settings: Settings,
        store: ContentStore,
        session=None,
        api_key: Optional[str] = None,
        messenger: Optional[Messenger] = None,
    ):
        NprClient.__init__(self, settings, session=session, api_key=api_key)
        self._setup(settings, store, messenger)

    def create_nprml(self, node: ContentRecord) -> str:
        """
        Build an NPRML document for a local story node.

        Raises:
            ConfigurationError: id, body, or image file mapping missing
        """
        mappings = self._mappings()
        root = ET.Element("nprml", version=NPRML_VERSION)
        story = ET.SubElement(ET.SubElement(root, "list"), "story")

        id_value = node.value(mappings["id"])
        if id_value:
            story.set("id", str(id_value))

        title = node.label[:TITLE_LIMIT]
        if title:
            ET.SubElement(story, "title").text = title

        body = node.value(mappings["body"])
        if body:
            ET.SubElement(story, "text").text = body
            ET.SubElement(story, "teaser").text = text_summary(body)

        now = email.utils.format_datetime(datetime.now(timezone.utc))
        if node.created and node.changed != node.created:
            story_date = email.utils.format_datetime(datetime.fromtimestamp(node.created, tz=timezone.utc))
        else:
            story_date = now
        ET.SubElement(story, "storyDate").text = story_date
        ET.SubElement(story, "pubDate").text = now

        ET.SubElement(story, "link", type="html").text = node_url(self.settings, node)
        ET.SubElement(story, "organization", orgId=str(self.settings.get("push", "org_id", "")))
        ET.SubElement(story, "partnerId").text = str(node.id)

        for key in ("subtitle", "shortTitle", "miniTeaser", "slug"):
            field_name = mappings.get(key)
            if is_used(field_name) and node.value(field_name):
                ET.SubElement(story, key).text = str(node.value(field_name))

        for _, url in self.primary_image_urls(node, mappings):
            ET.SubElement(story, "image", type="primary", src=url)

        return ET.tostring(root, encoding="unicode")

    def push_nprml(self, node: ContentRecord) -> requests.Response:
        """PUT the node's NPRML to {ingest_url}/story"""
        base_url = self.settings.get("push", "ingest_url") or self.base_url
        org_id = self.settings.get("push", "org_id")
        if not self.api_key or not org_id:
            raise ConfigurationError("Please configure the NPR API key and organization id.")

        xml = self.create_nprml(node)
        response = self.request(
            "PUT",
            base_url.rstrip("/") + "/story",
            params={"orgId": org_id, "apiKey": self.api_key},
            data=xml.encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
        if response.ok:
            logger.info(f"Story {node.label} sent to the NPR story API")
        else:
            self.notifier.error(f"Error sending story: {response.text}")
        return response

    def push_story(self, node: ContentRecord) -> requests.Response:
        return self.push_nprml(node)


def create_push_client(
    settings: Settings,
    store: ContentStore,
    messenger: Optional[Messenger] = None,
    session=None,
    api_key: Optional[str] = None,
    token: Optional[str] = None,
):
    """Push client for the configured service ("cds" or "xml")"""
    service = settings.get("push", "npr_push_service") or "xml"
    if service == "cds":
        client = NprCdsClient(settings, session=session, token=token)
        return CdsPushClient(settings, store, client=client, messenger=messenger)
    return NprmlPushClient(settings, store, session=session, api_key=api_key, messenger=messenger)
