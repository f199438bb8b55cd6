"""
Settings for the NPR API library

Settings are grouped the way the pull, push, and story import code reads them:

    api    API credentials and legacy hosts
    pull   which service and host to pull from, author, queue options
    push   organization, document id prefix, ingest host
    story  target content types, text formats, and every field mapping table

Field mapping tables map an NPR field name to a local field name, or to the
sentinel "unused" when the NPR field should not be mapped.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

UNUSED = "unused"

STORY_FIELDS = [
    "id",
    "body",
    "teaser",
    "byline",
    "link",
    "slug",
    "subtitle",
    "shortTitle",
    "miniTeaser",
    "storyDate",
    "pubDate",
    "lastModifiedDate",
    "audioRunByDate",
    "correctionTitle",
    "correctionText",
    "correctionDate",
    "primary_image",
    "additional_images",
    "image",
    "audio",
    "multimedia",
    "externalAsset",
    "imported_manually",
    "primaryTopic",
    "topic",
]

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "api": {
        "npr_api_api_key": "",
        "npr_api_cds_api_key": "",
        "npr_api_url": "production",
        "npr_api_production_url": "https://api.npr.org",
        "npr_api_stage_url": "https://api-s1.npr.org",
        "request_timeout": 30,
    },
    "pull": {
        "npr_pull_url": "production",
        "npr_pull_service": "cds",
        "npr_pull_author": 1,
        "queue_enable": False,
        "queue_interval": 3600,
        "num_results": 10,
        "start_date": 3,
        "org_id": "",
        "subscribe_method": "checkbox",
        "topic_ids": {},
        "topic_vocabularies": {},
    },
    "push": {
        "org_id": "",
        "ingest_url": "https://api.npr.org",
        "cds_doc_id_prefix": "",
        "cds_ingest_url": "production",
        "npr_push_service": "cds",
        "npr_cds_push_body_format": "",
        "npr_cds_push_verbose_logging": False,
        "site_url": "",
        "files_url": "",
    },
    "story": {
        "story_node_type": "npr_story",
        "body_text_format": "",
        "teaser_text_format": "",
        "correction_text_format": "",
        "embed_tag": "drupal-media",
        "term_id_field": "field_npr_news_id",
        "term_subscribe_field": "field_npr_subscribe",
        "image_media_type": "",
        "image_crop_size": "standard",
        "audio_media_type": "",
        "audio_format": "mp3",
        "alternate_audio_format": "",
        "multimedia_media_type": "",
        "external_asset_media_type": "",
        "html_block_media_type": "",
        "html_block_text_format": "full_html",
        "story_field_mappings": {field: UNUSED for field in STORY_FIELDS},
        "image_field_mappings": {
            "image_id": UNUSED,
            "image_title": UNUSED,
            "image_field": UNUSED,
            "type": UNUSED,
            "caption": UNUSED,
            "copyright": UNUSED,
            "provider": UNUSED,
            "provider_url": UNUSED,
        },
        "audio_field_mappings": {
            "audio_id": UNUSED,
            "audio_title": UNUSED,
            "remote_audio": UNUSED,
            "duration": UNUSED,
            "description": UNUSED,
        },
        "multimedia_field_mappings": {
            "multimedia_id": UNUSED,
            "multimedia_title": UNUSED,
            "remote_multimedia": UNUSED,
            "multimedia_duration": UNUSED,
        },
        "external_asset_field_mappings": {
            "external_asset_id": UNUSED,
            "external_asset_title": UNUSED,
            "oEmbed": UNUSED,
            "external_asset_type": UNUSED,
            "external_asset_caption": UNUSED,
            "external_asset_credit": UNUSED,
        },
        "html_block_field_mappings": {
            "html_block_id": "name",
            "html_block_body": UNUSED,
        },
        "parent_vocabulary": {},
        "parent_vocabulary_prefix": {},
    },
}


def is_used(value: Any) -> bool:
    """True when a mapping value points at a real local field"""
    return bool(value) and value != UNUSED


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Settings:
    """Grouped settings with defaults, backed by an optional JSON file"""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        data: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.path = Path(path) if path else None
        self.data = _merge(DEFAULT_SETTINGS, data or {})

        if self.path and self.path.exists():
            self.load()

    def load(self):
        """Merge the JSON file over the current values"""
        with open(self.path, "r") as f:
            stored = json.load(f)
        self.data = _merge(self.data, stored)
        logger.debug("Loaded settings from %s", self.path)

    def save(self):
        """Write all settings to the JSON file"""
        if not self.path:
            raise ValueError("Settings have no file path to save to")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(self.data, f, indent=2, sort_keys=True)

    def get(self, group: str, key: Optional[str] = None, default: Any = None) -> Any:
        """
        Read a setting.

        Parameters:
            :group: settings group ("api", "pull", "push", "story")
            :key: setting name; dotted names read nested values
                  (e.g. "image_field_mappings.type")
            :default: returned when the setting does not exist
        """
        value: Any = self.data.get(group)
        if value is None:
            return default
        if key is None:
            return value

        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, group: str, key: str, value: Any):
        """Write a setting in memory; dotted names write nested values"""
        target = self.data.setdefault(group, {})
        parts = key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value

    def mapping(self, name: str) -> Dict[str, str]:
        """Return a field mapping table from the story group"""
        return dict(self.get("story", name, {}) or {})

    def story_mappings(self) -> Dict[str, str]:
        return self.mapping("story_field_mappings")
