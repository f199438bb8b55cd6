"""
Media import for NPR stories

Creates or updates the media records a story refers to: images (with a
downloaded file), audio, multimedia, external assets and HTML blocks. Every
media item is looked up by its NPR id first. More than one match raises
DuplicateEntityError. A media kind without configuration is logged and
skipped.
"""

import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from .errors import DuplicateEntityError
from .filters import clean_title, truncate
from .nprml import ParsedElement
from .settings import Settings, is_used
from .store import ContentRecord, ContentStore
from .utils import ImportNotifier

IMAGE_DIRECTORY = "npr_story_images"
EMBEDDED_VIDEO_URL = "https://www.npr.org/embedded-video"

_date_path = re.compile(r"[0-9]{4}/(0[1-9]|1[0-2])/(0[1-9]|[1-2][0-9]|3[0-1])")


def image_directory(image_url: str) -> str:
    """npr_story_images/YYYY/MM/DD from the image URL, or from today's date"""
    if _date_path.search(image_url):
        return f"{IMAGE_DIRECTORY}/{os.path.dirname(image_url)[-10:]}"
    return f"{IMAGE_DIRECTORY}/{datetime.now().strftime('%Y/%m/%d')}"


def image_filename(image_url: str) -> str:
    filename = os.path.basename(image_url)
    base, extension = os.path.splitext(filename)
    if extension.lower() == ".jfif":
        filename = base + ".jpg"
    return filename


def select_image_enclosure(image: Dict[str, Any], crop: str) -> Dict[str, Any]:
    """
    Pick the enclosure to download for a CDS image reference.

    A primary image takes its primary enclosure. Otherwise the configured
    crop wins, falling back to the last primary enclosure seen.
    """
    image_rels = image.get("rels") or []
    selected: Dict[str, Any] = {}
    for enclosure in (image.get("embed") or {}).get("enclosures") or []:
        rels = enclosure.get("rels")
        if not isinstance(rels, list):
            continue
        if "primary" in rels:
            selected = enclosure
            if "primary" in image_rels:
                break
        if f"image-{crop}" in rels:
            selected = enclosure
            break
    return selected


def select_audio_enclosure(
    audio: Dict[str, Any], audio_format: str, alternate_format: str
) -> Dict[str, Any]:
    """The first enclosure in the preferred format, else the last in the alternate format"""
    selected: Dict[str, Any] = {}
    for enclosure in (audio.get("embed") or {}).get("enclosures") or []:
        if "premium" in (enclosure.get("rels") or []):
            continue
        href = enclosure.get("href", "")
        extension = os.path.splitext(href.split("?")[0])[1].lstrip(".")
        if extension == audio_format:
            return enclosure
        if alternate_format and extension == alternate_format:
            selected = enclosure
    return selected


class MediaImporter:
    """Creates and updates media records for one story at a time"""

    def __init__(
        self,
        store: ContentStore,
        settings: Settings,
        client,
        notifier: ImportNotifier,
    ):
        self.store = store
        self.settings = settings
        self.client = client
        self.notifier = notifier

    @property
    def author(self):
        return self.settings.get("pull", "npr_pull_author")

    def _story_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get("story", key, default)

    def _lookup(self, id_field: str, npr_id: Any, bundle: str, kind: str, title: str = "") -> Optional[ContentRecord]:
        matches = self.store.load_by_properties("media", {id_field: npr_id, "bundle": bundle})
        if len(matches) > 1:
            raise DuplicateEntityError(
                f'More than one {kind} with the ID {npr_id} ("{title}") exists. '
                f"Please delete the duplicate {kind} media.",
                entity_type="media",
                external_id=str(npr_id),
                matches=len(matches),
            )
        return matches[0] if matches else None

    def _clear_files(self, media: ContentRecord, image_field: str):
        for file_id in media.referenced_ids(image_field):
            referenced_file = self.store.load("file", file_id)
            if referenced_file:
                self.store.delete(referenced_file)
        media.set(image_field, None)

    def _download(self, url: str, story_title: str, story_url: str = ""):
        response = self.client.request("GET", url)
        if response.status_code != 200:
            self.notifier.error(
                f"There is no image at {url} for story {story_title} (source URL: {story_url})."
            )
            return None
        return response.content

    # CDS stories

    def add_or_update_html_blocks(self, story: Dict[str, Any]) -> List[ContentRecord]:
        """Media records holding the raw HTML of each html-block"""
        blocks: List[ContentRecord] = []
        if not story.get("html-block"):
            return blocks

        media_type = self._story_setting("html_block_media_type")
        mappings = self.settings.mapping("html_block_field_mappings")
        id_field = mappings.get("html_block_id")
        body_field = mappings.get("html_block_body")
        if not media_type or not is_used(id_field) or not is_used(body_field):
            self.notifier.error("Please configure the html block media type and field mappings.")
            return blocks

        for block in story["html-block"]:
            if not block.get("id"):
                continue
            html_block = self._lookup(id_field, block["id"], media_type, "html block")
            if html_block is None:
                html_block = self.store.create("media", media_type, **{id_field: block["id"]})
                html_block.set("uid", self.author)
            html_block.set(
                body_field,
                {"value": block.get("html", ""), "format": self._story_setting("html_block_text_format")},
            )
            self.store.save(html_block)
            blocks.append(html_block)
        return blocks

    def add_or_update_images(
        self,
        story: Dict[str, Any],
        node: ContentRecord,
        primary_image_field: str,
        additional_images_field: str,
    ) -> List[ContentRecord]:
        """Image media records, each with a freshly downloaded file"""
        media_images: List[ContentRecord] = []
        mappings = self.settings.mapping("image_field_mappings")
        media_type = self._story_setting("image_media_type")
        crop = self._story_setting("image_crop_size")

        image_field = mappings.get("image_field")
        image_id_field = mappings.get("image_id")
        title_field = mappings.get("image_title")
        if not is_used(image_id_field) or not is_used(title_field) or not is_used(image_field):
            self.notifier.error("Please configure the image_id, title, and image_field settings for media images.")
            return media_images
        if not media_type or not crop:
            self.notifier.error("Please configure the NPR story image settings.")
            return media_images

        story_url = ((story.get("webPages") or [{}])[0]).get("href", "")
        for image in story.get("images") or []:
            embed = image.get("embed") or {}
            image_title = clean_title(embed.get("title", ""))
            if not embed.get("id"):
                self.notifier.error(f"An image in the story {story.get('title', '')} has no NPR id.")
                continue

            media_image = self._lookup(image_id_field, embed.get("id"), media_type, "image", image_title)
            if media_image is not None:
                self._clear_files(media_image, image_field)
                for field_name in (primary_image_field, additional_images_field):
                    if is_used(field_name):
                        node.set(field_name, None)
            else:
                media_image = self.store.create("media", media_type, **{title_field: image_title})
                media_image.set("uid", self.author)

            image_url = select_image_enclosure(image, crop).get("href")
            if not image_url:
                self.notifier.error(
                    f"There is no image of type {crop} available for story {story.get('title', '')}."
                )
                continue
            image_url = image_url.split("?")[0]

            data = self._download(image_url, story.get("title", ""), story_url)
            if data is None:
                continue

            file = self.store.write_file(data, f"{image_directory(image_url)}/{image_filename(image_url)}")
            media_image.set(
                image_field,
                [
                    {
                        "target_id": file.id,
                        "alt": truncate(embed.get("caption") or "", 512, add_ellipsis=True),
                    }
                ],
            )

            for key, value in mappings.items():
                if not is_used(value) or key in ("image_title", "image_field"):
                    continue
                if key == "image_id":
                    media_image.set(value, embed.get("id"))
                elif key == "type":
                    media_image.set(value, "primary" if "primary" in (image.get("rels") or []) else crop)
                elif key == "provider_url":
                    media_image.set(value, embed.get("providerLink") or None)
                else:
                    media_image.set(value, embed.get(key) or None)

            self.store.save(media_image)
            media_images.append(media_image)
        return media_images

    def add_or_update_audio(self, story: Dict[str, Any], node: ContentRecord, audio_field: str) -> List[int]:
        """Remote audio media records; returns their ids"""
        audio_ids: List[int] = []
        if not story.get("audio"):
            return audio_ids

        media_type = self._story_setting("audio_media_type")
        audio_format = self._story_setting("audio_format")
        alternate_format = self._story_setting("alternate_audio_format")
        if not media_type or not audio_format:
            self.notifier.error("Please configure the NPR story audio type and format.")
            return audio_ids

        mappings = self.settings.mapping("audio_field_mappings")
        audio_id_field = mappings.get("audio_id")
        remote_audio_field = mappings.get("remote_audio")
        if not is_used(audio_id_field) or not is_used(mappings.get("audio_title")) or not is_used(remote_audio_field):
            self.notifier.error("Please configure the audio_id, audio_title, and remote_audio settings.")
            return audio_ids

        for audio in story["audio"]:
            embed = audio.get("embed") or {}
            audio_file = select_audio_enclosure(audio, audio_format, alternate_format)
            if not audio_file:
                self.notifier.error(
                    f"An audio file of the correct type could not be found for the story {story.get('title', '')}."
                )
                continue

            if not embed.get("id"):
                continue
            media_audio = self._lookup(audio_id_field, embed.get("id"), media_type, "audio", story.get("title", ""))
            if media_audio is not None:
                media_audio.set(remote_audio_field, {"uri": audio_file["href"]})
                media_audio.set("uid", self.author)
                if is_used(audio_field):
                    node.set(audio_field, None)
            else:
                media_audio = self.store.create(
                    "media",
                    media_type,
                    **{
                        mappings["audio_title"]: story.get("title", ""),
                        remote_audio_field: {"uri": audio_file["href"]},
                    },
                )
                media_audio.set("uid", self.author)

            for key, value in mappings.items():
                if not is_used(value) or key in ("audio_title", "remote_audio"):
                    continue
                if key == "audio_id":
                    media_audio.set(value, embed.get("id"))
                elif embed.get(key):
                    media_audio.set(value, embed[key])

            self.store.save(media_audio)
            audio_ids.append(media_audio.id)
        return audio_ids

    def add_or_update_multimedia(
        self, story: Dict[str, Any], node: ContentRecord, multimedia_field: str
    ) -> List[int]:
        """Remote video media records pointing at NPR's embedded player"""
        multimedia_ids: List[int] = []
        if not story.get("multimedia"):
            return multimedia_ids

        media_type = self._story_setting("multimedia_media_type")
        mappings = self.settings.mapping("multimedia_field_mappings")
        multimedia_id_field = mappings.get("multimedia_id")
        remote_field = mappings.get("remote_multimedia")
        if (
            not media_type
            or not is_used(multimedia_id_field)
            or not is_used(mappings.get("multimedia_title"))
            or not is_used(remote_field)
        ):
            self.notifier.error(
                "Please configure the multimedia_id, multimedia_title, and remote_multimedia settings."
            )
            return multimedia_ids

        for multimedia in story["multimedia"]:
            if not multimedia.get("id"):
                continue
            query = urlencode({"storyId": story["id"], "mediaId": multimedia["id"]})
            multimedia_uri = f"{EMBEDDED_VIDEO_URL}?{query}"

            media = self._lookup(
                multimedia_id_field, multimedia["id"], media_type, "multimedia", story.get("title", "")
            )
            if media is not None:
                media.set(remote_field, {"uri": multimedia_uri})
                media.set("uid", self.author)
                if is_used(multimedia_field):
                    node.set(multimedia_field, None)
            else:
                media = self.store.create(
                    "media",
                    media_type,
                    **{
                        mappings["multimedia_title"]: story.get("title", ""),
                        remote_field: {"uri": multimedia_uri},
                    },
                )
                media.set("uid", self.author)

            for key, value in mappings.items():
                if not is_used(value) or key in ("multimedia_title", "remote_multimedia"):
                    continue
                if key == "multimedia_id":
                    media.set(value, multimedia["id"])
                elif key == "multimedia_duration":
                    if multimedia.get("duration") is not None:
                        media.set(value, multimedia["duration"])
                elif multimedia.get(key) is not None:
                    media.set(value, multimedia[key])

            self.store.save(media)
            multimedia_ids.append(media.id)
        return multimedia_ids

    def add_or_update_external_assets(
        self, story: Dict[str, Any], node: ContentRecord, external_asset_field: str
    ) -> List[int]:
        """oEmbed media records for external assets such as YouTube videos"""
        asset_ids: List[int] = []
        if not story.get("externalAsset"):
            return asset_ids

        mappings = self.settings.mapping("external_asset_field_mappings")
        if (
            not is_used(mappings.get("external_asset_id"))
            or not is_used(mappings.get("external_asset_title"))
            or not is_used(mappings.get("oEmbed"))
        ):
            self.notifier.error("Please configure the external_asset_id, external_asset_title, and oEmbed settings.")
            return asset_ids

        for external_asset in story["externalAsset"]:
            asset_id = self.create_external_asset(external_asset, story, mappings, node, external_asset_field)
            if asset_id is not None:
                asset_ids.append(asset_id)
        return asset_ids

    def create_external_asset(
        self,
        external_asset: Dict[str, Any],
        story: Dict[str, Any],
        mappings: Dict[str, str],
        node: ContentRecord,
        external_asset_field: str,
    ) -> Optional[int]:
        uri = external_asset.get("url")
        if not uri or not external_asset.get("id"):
            return None

        media_type = self._story_setting("external_asset_media_type")
        title_field = mappings["external_asset_title"]
        oembed_field = mappings["oEmbed"]

        story_title = story.get("title", "")
        if external_asset.get("type") and external_asset.get("externalId"):
            asset_title = f"{external_asset['type']} ({external_asset['externalId']}): {story_title}"
            if len(asset_title) > 255:
                asset_title = asset_title[:250] + "[...]"
        else:
            asset_title = story_title

        media = self._lookup(
            mappings["external_asset_id"], external_asset["id"], media_type, "external asset", asset_title
        )
        if media is not None:
            media.set(title_field, asset_title)
            media.set(oembed_field, {"value": uri})
            media.set("uid", self.author)
            if is_used(external_asset_field):
                node.set(external_asset_field, None)
        else:
            media = self.store.create(
                "media", media_type, **{title_field: asset_title, oembed_field: {"value": uri}}
            )
            media.set("uid", self.author)

        for key, value in mappings.items():
            if not is_used(value) or key in ("external_asset_title", "oEmbed"):
                continue
            if key == "external_asset_id":
                media.set(value, external_asset["id"])
            elif key == "external_asset_type":
                media.set(value, external_asset.get("type"))
            else:
                source_key = key.replace("external_asset_", "")
                if source_key in external_asset:
                    media.set(value, external_asset[source_key])

        self.store.save(media)
        return media.id

    # Legacy NPRML stories

    def add_or_update_legacy_image(self, story: ParsedElement, node: ContentRecord, image_field_name: str) -> Optional[int]:
        """Only the first image of an NPRML story is imported"""
        media_type = self._story_setting("image_media_type")
        crop = self._story_setting("image_crop_size")
        if not media_type or not crop:
            self.notifier.error("Please configure the NPR story image settings.")
            return None

        images = story.as_list("image")
        if not images:
            return None
        image = images[0]

        mappings = self.settings.mapping("image_field_mappings")
        image_field = mappings.get("image_field")
        image_id_field = mappings.get("image_id")
        title_field = mappings.get("image_title")
        if not is_used(image_id_field) or not is_used(title_field) or not is_used(image_field):
            self.notifier.error("Please configure the title and image field settings for media images.")
            return None

        image_id = image.text("id")
        if not image_id:
            self.notifier.error(f"The first image of the story {story.text('title')} has no NPR id.")
            return None
        image_title = clean_title(image.text("title"))
        media_image = self._lookup(image_id_field, image_id, media_type, "image", image_title)
        if media_image is not None:
            self._clear_files(media_image, image_field)
            if is_used(image_field_name):
                node.set(image_field_name, None)
        else:
            media_image = self.store.create("media", media_type, **{title_field: image_title})
            media_image.set("uid", self.author)

        image_url = None
        for crop_element in image.as_list("crop"):
            if crop_element.text("type") == crop:
                image_url = crop_element.text("src")
        if not image_url:
            self.notifier.error(f"There is no image available for the image with the ID {image_id}.")
            return None

        data = self._download(image_url, story.text("title"))
        if data is None:
            return None

        image_url = image_url.split("?")[0]
        file = self.store.write_file(
            data, f"{image_directory(image_url)}/{image_filename(image_url)}", replace=True
        )
        media_image.set(image_field, [{"target_id": file.id, "alt": image.text("caption")}])

        for key, value in mappings.items():
            if not is_used(value) or key in ("image_title", "image_field"):
                continue
            if key == "image_id":
                media_image.set(value, image_id)
            else:
                media_image.set(value, image.text(key) or None)

        self.store.save(media_image)
        return media_image.id

    def add_or_update_legacy_audio(self, story: ParsedElement, node: ContentRecord, audio_field: str) -> List[int]:
        """Remote audio records from each NPRML audio's m3u link"""
        audio_ids: List[int] = []
        if not story.as_list("audio"):
            return audio_ids

        media_type = self._story_setting("audio_media_type")
        if not media_type or not self._story_setting("audio_format"):
            self.notifier.error("Please configure the NPR story audio type and format.")
            return audio_ids

        mappings = self.settings.mapping("audio_field_mappings")
        audio_id_field = mappings.get("audio_id")
        remote_audio_field = mappings.get("remote_audio")
        if not is_used(audio_id_field) or not is_used(mappings.get("audio_title")) or not is_used(remote_audio_field):
            self.notifier.error("Please configure the title and remote audio settings.")
            return audio_ids

        for audio in story.as_list("audio"):
            audio_format = audio.get("format")
            mp3 = audio_format.get("mp3") if isinstance(audio_format, ParsedElement) else None
            m3u = mp3.get("m3u") if isinstance(mp3, dict) else None
            audio_uri = m3u.value if isinstance(m3u, ParsedElement) else None
            if not audio_uri:
                continue

            audio_id = audio.text("id")
            if not audio_id:
                continue
            media_audio = self._lookup(audio_id_field, audio_id, media_type, "audio", audio.text("title"))
            if media_audio is not None:
                media_audio.set(remote_audio_field, {"uri": audio_uri})
                media_audio.set("uid", self.author)
                if is_used(audio_field):
                    node.set(audio_field, None)
            else:
                media_audio = self.store.create(
                    "media",
                    media_type,
                    **{mappings["audio_title"]: audio.text("title"), remote_audio_field: {"uri": audio_uri}},
                )
                media_audio.set("uid", self.author)

            for key, value in mappings.items():
                if not is_used(value) or key in ("audio_title", "remote_audio"):
                    continue
                if key == "audio_id":
                    media_audio.set(value, audio_id)
                elif audio.text(key):
                    media_audio.set(value, audio.text(key))

            self.store.save(media_audio)
            audio_ids.append(media_audio.id)
        return audio_ids
