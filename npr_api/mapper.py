"""
Story field mapper

Copies a fetched NPR story into a local story node, field by field, using
the story field mapping table from settings. Media the story refers to is
created first; body placeholders are swapped for embed markup afterwards.

Per story the outcome is one of:

    saved    (created or updated)
    skipped  the local copy is at least as new as the NPR story
    error    configuration problem or duplicate records; nothing is saved

StoryMapper handles normalized CDS stories (dicts). NprmlStoryMapper handles
parsed legacy NPRML stories.
"""

import email.utils
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    ConfigurationError,
    DuplicateEntityError,
    NprError,
    TransientNetworkError,
)
from .filters import clean_title, encode_entities, truncate
from .media import MediaImporter
from .nprml import ParsedElement
from .settings import UNUSED, Settings, is_used
from .store import ContentRecord, ContentStore
from .utils import ImportNotifier, Messenger, report

DATETIME_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S"

IMAGE_TOKEN = re.compile(r"\[npr_image:([^\]]*)\]")
MULTIMEDIA_TOKEN = re.compile(r"\[npr_multimedia:([^\]]*)\]")
EXTERNAL_TOKEN = re.compile(r"\[npr_external:([^\]]*)\]")
HTML_TOKEN = re.compile(r"\[npr_html:([^\]]*)\]")

# Mapped by the media import step, not by the field loop
MEDIA_FIELDS = (
    "primary_image",
    "additional_images",
    "image",
    "audio",
    "multimedia",
    "externalAsset",
)

# Collection rel used for each taxonomy mapping key, when it differs
TAXONOMY_RELS = {"primaryTopic": "topic", "artist": "music-artist"}


class StoryField(Enum):
    """Story mapping keys that need more than a plain value copy"""

    ID = "id"
    BODY = "body"
    TEASER = "teaser"
    LINK = "link"
    IMPORTED_MANUALLY = "imported_manually"
    BYLINE = "byline"
    CORRECTION_TEXT = "correctionText"
    CORRECTION_TITLE = "correctionTitle"
    CORRECTION_DATE = "correctionDate"
    SLUG = "slug"
    SUBTITLE = "subtitle"
    SHORT_TITLE = "shortTitle"
    MINI_TEASER = "miniTeaser"
    PUB_DATE = "pubDate"
    LAST_MODIFIED_DATE = "lastModifiedDate"
    STORY_DATE = "storyDate"
    AUDIO_RUN_BY_DATE = "audioRunByDate"


class ImportStatus(Enum):
    SAVED = "saved"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ImportResult:
    """Outcome of importing one story"""

    story_id: Optional[str]
    status: ImportStatus
    operation: Optional[str] = None
    record: Optional[ContentRecord] = None
    message: str = ""


def parse_datetime(value: str) -> datetime:
    """
    Parse an NPR date (ISO 8601 or RFC 2822) into an aware UTC datetime.
    Naive values are taken as UTC.

    Raises:
        NprError: the value is not a date in either format
    """
    try:
        value = value.strip()
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = email.utils.parsedate_to_datetime(value)
    except (ValueError, TypeError, AttributeError) as e:
        raise NprError(f"Invalid date {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: str, field_name: str):
    """Epoch seconds for created/changed targets, storage format otherwise"""
    parsed = parse_datetime(value)
    if field_name in ("created", "changed"):
        return int(parsed.timestamp())
    return parsed.strftime(DATETIME_STORAGE_FORMAT)


class StoryMapper:
    """Maps normalized CDS stories onto local story nodes"""

    def __init__(
        self,
        store: ContentStore,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
        messenger: Optional[Messenger] = None,
        client=None,
        media: Optional[MediaImporter] = None,
    ):
        self.store = store
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.client = client
        self.notifier = ImportNotifier(self.logger, messenger)
        self.media = media or MediaImporter(store, settings, client, self.notifier)

        self.node: Optional[ContentRecord] = None
        self._manual_import = False
        self._html_blocks: List[ContentRecord] = []
        self._media_fields: Dict[str, str] = {}

        self.transforms: Dict[StoryField, Callable[[Any, str], None]] = {
            StoryField.ID: self.map_id,
            StoryField.BODY: self.map_body,
            StoryField.TEASER: self.map_teaser,
            StoryField.LINK: self.map_link,
            StoryField.IMPORTED_MANUALLY: self.map_imported_manually,
            StoryField.BYLINE: self.map_byline,
            StoryField.CORRECTION_TEXT: partial(self.map_correction, "text"),
            StoryField.CORRECTION_TITLE: partial(self.map_correction, "title"),
            StoryField.CORRECTION_DATE: partial(self.map_correction, "dateTime"),
            StoryField.SLUG: self.map_slug,
            StoryField.SUBTITLE: partial(self.map_plain, ("subtitle", "subTitle")),
            StoryField.SHORT_TITLE: partial(self.map_plain, ("shortTitle", "socialTitle")),
            StoryField.MINI_TEASER: partial(self.map_plain, ("miniTeaser", "shortTeaser")),
            StoryField.PUB_DATE: partial(self.map_date, "editorialLastModifiedDateTime"),
            StoryField.LAST_MODIFIED_DATE: partial(self.map_date, "editorialLastModifiedDateTime"),
            StoryField.STORY_DATE: partial(self.map_date, "publishDateTime"),
            StoryField.AUDIO_RUN_BY_DATE: self.map_nothing,
        }

    def _story_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get("story", key, default)

    def check_configuration(self) -> Dict[str, str]:
        """
        Verify the settings every import needs.

        Raises:
            ConfigurationError: id, body format, or teaser mapping/format missing,
                                or correction text mapped without a format
        """
        mappings = self.settings.story_mappings()
        if not is_used(mappings.get("id")):
            raise ConfigurationError("Please configure the story id field.")
        if not self._story_setting("body_text_format"):
            raise ConfigurationError("Please configure the story body text format.")
        if not is_used(mappings.get("teaser")) or not self._story_setting("teaser_text_format"):
            raise ConfigurationError("Please configure the story teaser text format.")
        if is_used(mappings.get("correctionText")) and not self._story_setting("correction_text_format"):
            raise ConfigurationError("Please configure the story correction text format.")
        return mappings

    # Story accessors, overridden for NPRML

    def story_id(self, story) -> Optional[str]:
        if not isinstance(story, dict):
            return None
        return story.get("id")

    def story_title(self, story) -> str:
        return story.get("title", "")

    def story_modified(self, story) -> Optional[int]:
        """NPR modification time compared against the local changed time"""
        value = story.get("editorialMajorUpdateDateTime")
        return int(parse_datetime(value).timestamp()) if value else None

    def load_node(self, story, story_id: str, mappings: Dict[str, str], published: bool, force: bool) -> Tuple[Optional[ContentRecord], str]:
        """
        Load the existing node for the story or build a new one.

        Returns:
            (node, "updated" | "created"), or (None, "skipped")
        """
        pull_author = self.settings.get("pull", "npr_pull_author")
        title = clean_title(self.story_title(story))

        matches = self.store.load_by_properties("node", {mappings["id"]: story_id})
        if len(matches) > 1:
            raise DuplicateEntityError(
                f"More than one story with the ID {story_id} exists. Please delete the duplicate stories.",
                entity_type="node",
                external_id=story_id,
                matches=len(matches),
            )

        if matches:
            node = matches[0]
            npr_modified = self.story_modified(story)
            if npr_modified is not None and node.changed >= npr_modified and not force:
                return None, "skipped"

            node.set("title", title)
            node.set("uid", pull_author)
            node.set("status", published)
            return node, "updated"

        node = self.store.create(
            "node",
            self._story_setting("story_node_type"),
            title=title,
            langcode="en",
            uid=pull_author,
            status=published,
        )
        return node, "created"

    def map_story(self, story, published: bool = True, manual_import: bool = False, force: bool = False) -> ImportResult:
        """
        Import one story. Errors are raised, not reported.

        Raises:
            ConfigurationError, DuplicateEntityError, NprError
        """
        mappings = self.check_configuration()

        story_id = self.story_id(story)
        if not story_id:
            raise NprError("The story could not be added or updated.")
        if isinstance(story, dict):
            story = dict(story)

        self.node, operation = self.load_node(story, story_id, mappings, published, force)
        if self.node is None:
            message = (
                f"The NPR story with the NPR ID {story_id} has not been updated in the NPR API "
                "so it was not updated."
            )
            self.notifier.status(message)
            return ImportResult(story_id, ImportStatus.SKIPPED, "skipped", message=message)

        self._manual_import = manual_import
        self.attach_media(story, mappings)

        parent_vocabulary = self._story_setting("parent_vocabulary", {}) or {}
        for key, target in mappings.items():
            if not is_used(target) or key in MEDIA_FIELDS:
                continue
            if key in parent_vocabulary:
                self.map_taxonomy(story, key, target)
                continue
            try:
                transform = self.transforms.get(StoryField(key))
            except ValueError:
                transform = None
            if transform is not None:
                transform(story, target)
            else:
                self.map_plain((key,), story, target)

        self.store.save(self.node)
        message = f"Story {self.node.label} was {operation}."
        self.notifier.status(message)
        return ImportResult(story_id, ImportStatus.SAVED, operation, self.node, message)

    def add_or_update_node(
        self,
        story,
        published: bool = True,
        display_messages: bool = False,
        manual_import: bool = False,
        force: bool = False,
    ) -> ImportResult:
        """
        Import one story, logging and reporting failures instead of raising.
        Network failures still propagate.
        """
        self.notifier.display_messages = display_messages
        story_id = self.story_id(story)
        try:
            result = self.map_story(story, published, manual_import=manual_import, force=force)
        except TransientNetworkError:
            raise
        except NprError as e:
            self.notifier.error(e.message)
            report("error", story_id, e.message)
            return ImportResult(story_id, ImportStatus.ERROR, message=e.message)

        report(result.operation, story_id, result.message)
        return result

    # Media

    def _reference(self, field_name: str, ids: List[int]):
        for record_id in ids:
            self.node.append(field_name, {"target_id": record_id})

    def attach_media(self, story, mappings: Dict[str, str]):
        """Create media records and reference them from the node"""
        self._media_fields = {key: mappings.get(key, UNUSED) for key in MEDIA_FIELDS}
        primary_field = self._media_fields["primary_image"]
        additional_field = self._media_fields["additional_images"]

        self._html_blocks = self.media.add_or_update_html_blocks(story)

        media_images = self.media.add_or_update_images(story, self.node, primary_field, additional_field)
        type_field = self._story_setting("image_field_mappings.type")
        for media_image in media_images:
            image_type = media_image.get(type_field) if is_used(type_field) else None
            if image_type == "primary" and is_used(primary_field):
                self._reference(primary_field, [media_image.id])
            elif image_type != "primary" and is_used(additional_field):
                self._reference(additional_field, [media_image.id])

        for key, importer, label in (
            ("audio", self.media.add_or_update_audio, "audio"),
            ("multimedia", self.media.add_or_update_multimedia, "multimedia"),
            ("externalAsset", self.media.add_or_update_external_assets, "external assets"),
        ):
            field_name = self._media_fields[key]
            ids = importer(story, self.node, field_name)
            if story.get(key) and field_name == UNUSED:
                self.notifier.error(
                    f"This story contains {label}, but the {label} field for NPR stories "
                    "has not been configured. Please configure it."
                )
            if is_used(field_name):
                self._reference(field_name, ids)

    # Field transforms

    def map_nothing(self, story, target: str):
        """Mapped but not imported yet"""

    def map_id(self, story, target: str):
        self.node.set(target, self.story_id(story))

    def map_plain(self, keys: Tuple[str, ...], story, target: str):
        for key in keys:
            value = story.get(key)
            if value and not isinstance(value, (dict, list)):
                self.node.set(target, value)
                return

    def map_teaser(self, story, target: str):
        self.node.set(
            target,
            {"value": story.get("teaser", ""), "format": self._story_setting("teaser_text_format")},
        )

    def map_link(self, story, target: str):
        web_pages = story.get("webPages") or []
        if web_pages and web_pages[0].get("href"):
            self.node.set(target, {"uri": web_pages[0]["href"]})

    def map_imported_manually(self, story, target: str):
        if self._manual_import:
            self.node.set(target, True)

    def _set_date(self, target: str, value: str):
        formatted = format_date(value, target)
        if target in ("created", "changed"):
            setattr(self.node, target, formatted)
        else:
            self.node.set(target, formatted)

    def map_date(self, source_key: str, story, target: str):
        if story.get(source_key):
            self._set_date(target, story[source_key])

    def map_correction(self, key: str, story, target: str):
        corrections = story.get("corrections") or []
        if not corrections:
            return
        correction = corrections[0].get("embed") or {}
        if key == "text":
            self.node.set(
                target,
                {"value": correction.get("text", ""), "format": self._story_setting("correction_text_format")},
            )
        elif key == "dateTime":
            if correction.get("dateTime"):
                self._set_date(target, correction["dateTime"])
        elif correction.get(key):
            self.node.set(target, correction[key])

    def map_slug(self, story, target: str):
        for item in story.get("collections") or []:
            if "slug" in (item.get("rels") or []):
                self.node.set(target, (item.get("embed") or {}).get("title"))

    def map_byline(self, story, target: str):
        bylines = story.get("bylines") or []
        if not bylines:
            return

        field_value = []
        for byline in bylines:
            embed = byline.get("embed") or {}
            uri = "route:<nolink>"
            title = embed.get("name", "")

            documents = embed.get("bylineDocuments") or []
            href = documents[0].get("href") if documents else None
            if href and self.client is not None:
                response = self.client.request("GET", href)
                if response.status_code == 200:
                    resources = response.json().get("resources") or []
                    if resources:
                        document = resources[0]
                        web_pages = document.get("webPages") or []
                        if web_pages and web_pages[0].get("href"):
                            uri = web_pages[0]["href"]
                        if document.get("title"):
                            title = document["title"]

            field_value.append({"title": title, "uri": uri})
        self.node.set(target, field_value)

    def map_body(self, story, target: str):
        body = story.get("body", "") or ""
        body = self._substitute(body, IMAGE_TOKEN, self.replace_images)
        body = self._substitute(body, MULTIMEDIA_TOKEN, self.replace_multimedia)
        body = self._substitute(body, EXTERNAL_TOKEN, self.replace_external_assets)
        body = self._substitute(body, HTML_TOKEN, self.replace_html_blocks)
        self.node.set(target, {"value": body, "format": self._story_setting("body_text_format")})

    # Taxonomy

    def map_taxonomy(self, story, key: str, target: str):
        """Reference a term for each collection tied to the mapped vocabulary"""
        vocabulary = self._story_setting(f"parent_vocabulary.{key}")
        prefix = self._story_setting(f"parent_vocabulary_prefix.{key}_prefix", "") or ""
        rel = TAXONOMY_RELS.get(key, key)

        for item in story.get("collections") or []:
            if rel not in (item.get("rels") or []):
                continue
            embed = item.get("embed") or {}
            self._reference_term(target, prefix, embed.get("title", ""), embed.get("id"), vocabulary)
            if key == "primaryTopic":
                break

    def _reference_term(self, target: str, prefix: str, title: str, npr_id: Any, vocabulary: str):
        if not title:
            return
        term_id = self.get_term_id(prefix + title, npr_id, vocabulary)
        if term_id and term_id not in self.node.referenced_ids(target):
            self.node.append(target, {"target_id": term_id})

    def get_term_id(self, term_name: str, npr_id: Any, vocabulary: str) -> int:
        """
        Id of the term holding the NPR id; the term is created when missing.

        Raises:
            DuplicateEntityError: more than one term holds the NPR id
        """
        if not term_name or not npr_id:
            return 0
        id_field = self._story_setting("term_id_field")
        matches = self.store.load_by_properties("taxonomy_term", {id_field: npr_id})
        if len(matches) > 1:
            raise DuplicateEntityError(
                f"Multiple terms with the id {npr_id} exist. Please delete the duplicate term(s).",
                entity_type="taxonomy_term",
                external_id=str(npr_id),
                matches=len(matches),
            )
        if matches:
            return matches[0].id

        term = self.store.create("taxonomy_term", vocabulary, name=term_name, **{id_field: npr_id})
        self.store.save(term)
        self.notifier.status(f"The term {term_name} was added to {vocabulary}")
        return term.id

    # Placeholder replacement

    def _embed(self, uuid: str, **attributes) -> str:
        tag = self._story_setting("embed_tag", "drupal-media")
        extra = "".join(f' {name}="{value}"' for name, value in attributes.items())
        return f'<{tag} data-entity-type="media" data-entity-uuid="{uuid}"{extra}></{tag}>'

    def _substitute(self, body: str, pattern, build_replacements: Callable[[], Dict[str, str]]) -> str:
        if not pattern.search(body):
            return body
        replacements = build_replacements()
        return pattern.sub(lambda m: replacements.get(m.group(1), m.group(0)), body)

    def _referenced_media(self, *field_names: str) -> List[ContentRecord]:
        ids: List[int] = []
        for field_name in field_names:
            if is_used(field_name):
                ids.extend(self.node.referenced_ids(field_name))
        return self.store.load_multiple("media", ids)

    def replace_images(self) -> Dict[str, str]:
        """Embed markup per NPR image id, with caption, credit and alt text"""
        mappings = self.settings.mapping("image_field_mappings")

        def mapped(record: ContentRecord, key: str) -> str:
            field_name = mappings.get(key)
            return str(record.value(field_name) or "") if is_used(field_name) else ""

        replacements = {}
        for image in self._referenced_media(
            self._media_fields.get("primary_image", UNUSED),
            self._media_fields.get("additional_images", UNUSED),
            self._media_fields.get("image", UNUSED),
        ):
            npr_id = mapped(image, "image_id")
            caption = mapped(image, "caption")
            alt = truncate(caption, 512, add_ellipsis=True)
            provider = mapped(image, "provider")
            provider_url = mapped(image, "provider_url")
            copyright_text = mapped(image, "copyright")

            if provider and provider_url:
                provider = f'<a href="{provider_url}">{provider}</a>'
            if provider or copyright_text:
                caption += f'<cite class="npr-credit">{provider} {copyright_text}</cite>'

            replacements[npr_id] = self._embed(
                image.uuid,
                **{"data-caption": encode_entities(caption), "alt": encode_entities(alt)},
            )
        return replacements

    def replace_multimedia(self) -> Dict[str, str]:
        id_field = self._story_setting("multimedia_field_mappings.multimedia_id")
        if not is_used(id_field):
            return {}
        return {
            str(item.get(id_field)): self._embed(item.uuid)
            for item in self._referenced_media(self._media_fields.get("multimedia", UNUSED))
            if item.get(id_field) is not None
        }

    def replace_external_assets(self) -> Dict[str, str]:
        mappings = self.settings.mapping("external_asset_field_mappings")
        id_field = mappings.get("external_asset_id")
        caption_field = mappings.get("external_asset_caption")
        credit_field = mappings.get("external_asset_credit")
        if not is_used(id_field):
            return {}

        replacements = {}
        for asset in self._referenced_media(self._media_fields.get("externalAsset", UNUSED)):
            if asset.get(id_field) is None:
                continue
            caption = str(asset.value(caption_field) or "") if is_used(caption_field) else ""
            if is_used(credit_field):
                caption += f'<cite class="npr-credit">{asset.value(credit_field) or ""}</cite>'
            replacements[str(asset.get(id_field))] = self._embed(
                asset.uuid, **{"data-caption": encode_entities(caption)}
            )
        return replacements

    def replace_html_blocks(self) -> Dict[str, str]:
        id_field = self._story_setting("html_block_field_mappings.html_block_id")
        return {str(block.get(id_field)): self._embed(block.uuid) for block in self._html_blocks}


class NprmlStoryMapper(StoryMapper):
    """Maps parsed legacy NPRML stories onto local story nodes"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # NPRML date elements carry the mapping key names
        self.transforms.update({
            StoryField.PUB_DATE: partial(self.map_date, "pubDate"),
            StoryField.LAST_MODIFIED_DATE: partial(self.map_date, "lastModifiedDate"),
            StoryField.STORY_DATE: partial(self.map_date, "storyDate"),
        })

    def story_id(self, story) -> Optional[str]:
        if not isinstance(story, ParsedElement):
            return None
        return story.text("id") or None

    def story_title(self, story) -> str:
        return story.text("title")

    def story_modified(self, story) -> Optional[int]:
        value = story.text("lastModifiedDate")
        return int(parse_datetime(value).timestamp()) if value else None

    def attach_media(self, story, mappings: Dict[str, str]):
        self._media_fields = {key: mappings.get(key, UNUSED) for key in MEDIA_FIELDS}
        self._html_blocks = []

        image_field = self._media_fields["image"]
        image_id = self.media.add_or_update_legacy_image(story, self.node, image_field)
        if is_used(image_field) and image_id:
            self._reference(image_field, [image_id])

        audio_field = self._media_fields["audio"]
        audio_ids = self.media.add_or_update_legacy_audio(story, self.node, audio_field)
        if story.as_list("audio") and audio_field == UNUSED:
            self.notifier.error(
                "This story contains audio, but the audio field for NPR stories has not been configured. "
                "Please configure it."
            )
        if is_used(audio_field):
            self._reference(audio_field, audio_ids)

    def map_plain(self, keys: Tuple[str, ...], story, target: str):
        for key in keys:
            value = story.text(key)
            if value:
                self.node.set(target, value)
                return

    def map_teaser(self, story, target: str):
        self.node.set(
            target,
            {"value": story.text("teaser"), "format": self._story_setting("teaser_text_format")},
        )

    def map_link(self, story, target: str):
        links = story.get("link")
        if isinstance(links, dict) and links.get("html") is not None:
            self.node.set(target, {"uri": links["html"].value})

    def map_date(self, source_key: str, story, target: str):
        value = story.text(source_key)
        if value:
            self._set_date(target, value)

    def map_correction(self, key: str, story, target: str):
        corrections = story.as_list("correction")
        if not corrections:
            return
        correction = corrections[0]
        if key == "text":
            self.node.set(
                target,
                {"value": correction.text("correctionText"), "format": self._story_setting("correction_text_format")},
            )
        elif key == "dateTime":
            if correction.text("correctionDate"):
                self._set_date(target, correction.text("correctionDate"))
        elif correction.text("correctionTitle"):
            self.node.set(target, correction.text("correctionTitle"))

    def map_slug(self, story, target: str):
        if story.text("slug"):
            self.node.set(target, story.text("slug"))

    def map_byline(self, story, target: str):
        authors = story.as_list("byline")
        if not authors:
            return
        field_value = []
        for author in authors:
            links = author.as_list("link")
            uri = links[0].value if links and links[0].value else "route:<nolink>"
            field_value.append({"uri": uri, "title": author.text("name")})
        self.node.set(target, field_value)

    def map_taxonomy(self, story, key: str, target: str):
        """NPRML <parent type="..."> elements become terms"""
        vocabulary = self._story_setting(f"parent_vocabulary.{key}")
        prefix = self._story_setting(f"parent_vocabulary_prefix.{key}_prefix", "") or ""
        for parent in story.as_list("parent"):
            if parent.text("type") != key:
                continue
            self._reference_term(target, prefix, parent.text("title"), parent.text("id"), vocabulary)
            if key == "primaryTopic":
                break
