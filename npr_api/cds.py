"""
CDS (Content Distribution Service) document normalizer

Resolves "#/assets/<id>" references and flattens the ordered layout into a
single body string. Non-text blocks leave placeholder tokens in the body:

    [npr_image:<id>]       image asset
    [npr_html:<id>]        HTML block, also recorded in story["html-block"]
    [npr_external:<id>]    YouTube video, also recorded in story["externalAsset"]
    [npr_multimedia:<id>]  NPR player video, also recorded in story["multimedia"]

Placeholders are swapped for embed markup later, once the media records
they point to exist.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from .filters import autop

logger = logging.getLogger(__name__)

TEXT_PROFILE = "/v1/profiles/text"
IMAGE_PROFILE = "/v1/profiles/image"
HTML_BLOCK_PROFILE = "/v1/profiles/html-block"
YOUTUBE_PROFILE = "/v1/profiles/youtube-video"
PLAYER_VIDEO_PROFILE = "/v1/profiles/player-video"
STREAM_PLAYER_VIDEO_PROFILE = "/v1/profiles/stream-player-video"
PROMO_CARD_PROFILE = "/v1/profiles/promo-card"
RESOURCE_CONTAINER_PROFILE = "/v1/profiles/resource-container"

# Story keys holding references that get the referenced asset under "embed"
REFERENCE_KEYS = ("images", "bylines", "audio", "collections", "corrections")

ASSET_PREFIX = "#/assets/"


def asset_id(href: str) -> str:
    """Asset id from a reference such as "#/assets/12345"."""
    return href.split("/")[2]


def get_type(element: Dict[str, Any]) -> Optional[str]:
    """The href of the profile whose rels contain "type"."""
    for profile in element.get("profiles") or []:
        if "type" in (profile.get("rels") or []):
            return profile.get("href")
    return None


def resolve_layout(refs: List[Dict[str, Any]], assets: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Replace each layout reference with the asset it points to"""
    elements = []
    for ref in refs or []:
        href = ref.get("href", "")
        if not href.startswith(ASSET_PREFIX):
            elements.append(ref)
            continue
        asset = assets.get(asset_id(href))
        if asset is None:
            logger.warning(f"Layout reference {href} has no matching asset")
            continue
        elements.append(asset)
    return elements


def attach_embeds(refs: List[Dict[str, Any]], assets: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Attach the referenced asset under "embed" unless it is already there"""
    resolved = []
    for ref in refs or []:
        href = ref.get("href", "")
        if "embed" not in ref and href.startswith(ASSET_PREFIX):
            asset = assets.get(asset_id(href))
            if asset is not None:
                ref = {**ref, "embed": asset}
        resolved.append(ref)
    return resolved


def _text_block(element, story) -> str:
    return autop(element.get("text", ""))


def _image_block(element, story) -> str:
    return f"[npr_image:{element['id']}]"


def _html_block(element, story) -> str:
    story["html-block"].append({"id": element["id"], "html": element.get("html", "")})
    return f"[npr_html:{element['id']}]"


def _youtube_block(element, story) -> str:
    video_id = element.get("videoId", "")
    story["externalAsset"].append(
        {
            "id": element["id"],
            "url": f"https://www.youtube.com/watch?v={video_id}",
            "type": "youtube",
            "externalId": video_id,
            "headline": element.get("headline", ""),
            "subheadline": element.get("subheadline", ""),
        }
    )
    return f"[npr_external:{element['id']}]"


def _player_video_block(element, story) -> str:
    story["multimedia"].append(
        {
            "id": element["id"],
            "title": element.get("title", ""),
            "duration": element.get("duration"),
        }
    )
    return f"[npr_multimedia:{element['id']}]"


LAYOUT_HANDLERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], str]] = {
    TEXT_PROFILE: _text_block,
    IMAGE_PROFILE: _image_block,
    HTML_BLOCK_PROFILE: _html_block,
    YOUTUBE_PROFILE: _youtube_block,
    PLAYER_VIDEO_PROFILE: _player_video_block,
    STREAM_PLAYER_VIDEO_PROFILE: _player_video_block,
}


def denormalize(resource: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize one CDS resource into a story dict.

    Args:
        resource: A document from the "resources" array of a CDS response

    Returns:
        A copy of the resource with resolved layout and references, a "body"
        string, and "html-block", "externalAsset" and "multimedia" lists
    """
    story = copy.deepcopy(resource)
    assets = story.get("assets") or {}

    story["layout"] = resolve_layout(story.get("layout"), assets)
    for key in REFERENCE_KEYS:
        if key in story:
            story[key] = attach_embeds(story[key], assets)

    story["html-block"] = []
    story["externalAsset"] = []
    story["multimedia"] = []

    body_content = []
    for element in story["layout"]:
        handler = LAYOUT_HANDLERS.get(get_type(element))
        if handler is None:
            # promo cards, resource containers and unknown types
            continue
        body_content.append(handler(element, story))

    story["body"] = "".join(body_content)
    return story
