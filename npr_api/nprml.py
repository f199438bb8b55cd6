"""
NPRML (legacy XML) parser

Each <story> under <list> becomes a ParsedElement. A ParsedElement keeps a
scalar ``value`` and a mapping of property name to one of:

    str                      an XML attribute
    ParsedElement            a child element
    list[ParsedElement]      a repeated child element
    dict[str, ParsedElement] a keyed collection (paragraphs, mp3, link)

Attributes are added first, then children, so a child element replaces an
attribute with the same name. Leaf elements carry their text as ``value``;
elements with children never get a value and any trailing text is dropped.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import NprError
from .filters import autop
from .settings import UNUSED, is_used

logger = logging.getLogger(__name__)

Property = Union[str, "ParsedElement", List["ParsedElement"], Dict[str, "ParsedElement"]]

# Story-level tags that always collect into a list
STORY_LIST_TAGS = ("image", "audio", "multimedia")


class ParsedElement:
    """A parsed NPRML element (tagged union of value and named properties)"""

    __slots__ = ("value", "properties")

    def __init__(self, value: Optional[str] = None):
        self.value = value
        self.properties: Dict[str, Property] = {}

    def __str__(self):
        return self.value or ""

    def __repr__(self):
        return f"ParsedElement(value={self.value!r}, properties={list(self.properties)!r})"

    def __contains__(self, name: str) -> bool:
        return name in self.properties

    def __getitem__(self, name: str) -> Property:
        return self.properties[name]

    def get(self, name: str, default=None):
        return self.properties.get(name, default)

    def set(self, name: str, value: Property):
        self.properties[name] = value

    def items(self) -> Iterator[Tuple[str, Property]]:
        return iter(self.properties.items())

    def text(self, name: str, default: str = "") -> str:
        """String form of a property: attribute text, child value, or first item"""
        prop = self.properties.get(name)
        if isinstance(prop, str):
            return prop
        if isinstance(prop, ParsedElement):
            return prop.value if prop.value is not None else default
        if isinstance(prop, list) and prop:
            return prop[0].value if prop[0].value is not None else default
        return default

    def as_list(self, name: str) -> List["ParsedElement"]:
        """A property as a list of elements, however many times it occurred"""
        prop = self.properties.get(name)
        if prop is None or isinstance(prop, str):
            return []
        if isinstance(prop, list):
            return prop
        if isinstance(prop, dict):
            return list(prop.values())
        return [prop]

    def add_child(self, name: str, child: "ParsedElement"):
        """Add a child; a second occurrence turns the property into a list"""
        existing = self.properties.get(name)
        if isinstance(existing, ParsedElement):
            self.properties[name] = [existing, child]
        elif isinstance(existing, list):
            existing.append(child)
        else:
            self.properties[name] = child

    def append_to(self, name: str, child: "ParsedElement"):
        existing = self.properties.get(name)
        if not isinstance(existing, list):
            existing = []
            self.properties[name] = existing
        existing.append(child)

    def add_keyed(self, name: str, key: str, child: "ParsedElement"):
        existing = self.properties.get(name)
        if not isinstance(existing, dict):
            existing = {}
            self.properties[name] = existing
        existing[key] = child


def _add_attributes(element: ET.Element, node) -> Dict[str, str]:
    attributes = dict(element.attrib)
    if isinstance(node, ParsedElement):
        for name, value in attributes.items():
            node.set(name, value)
    return attributes


class NprmlParser:
    """Turns raw NPRML into a list of story elements"""

    def __init__(self, field_mappings: Optional[Dict[str, str]] = None):
        self.field_mappings = field_mappings or {}
        self.notices: List[str] = []
        self.message: Dict[str, Optional[str]] = {}
        self.attributes: Dict[str, str] = {}
        self.stories: List[ParsedElement] = []

    def parse(self, xml: Optional[str]) -> List[ParsedElement]:
        """
        Parse an NPRML document.

        Args:
            xml: Raw NPRML text

        Returns:
            One ParsedElement per <story> under <list>, in document order
        """
        self.stories = []
        if not xml or not xml.strip():
            self.notices.append("No XML to parse.")
            return self.stories

        try:
            root = ET.fromstring(xml)
        except ET.ParseError as e:
            self.notices.append(f"Could not parse XML: {e}")
            raise NprError(f"Could not parse NPRML: {e}") from e

        self.attributes = _add_attributes(root, None)

        message = root.find("message")
        if message is not None:
            self.message = {"id": message.get("id"), "level": message.get("level")}

        story_list = root.find("list")
        if story_list is None:
            return self.stories

        for story_element in story_list.findall("story"):
            self.stories.append(self.parse_story(story_element))

        logger.debug(f"Parsed {len(self.stories)} NPRML stories")
        return self.stories

    def parse_story(self, element: ET.Element) -> ParsedElement:
        story = ParsedElement()
        _add_attributes(element, story)

        for child in element:
            parsed = self.parse_element(child)
            if child.tag in STORY_LIST_TAGS:
                story.append_to(child.tag, parsed)
            elif child.tag == "link":
                story.add_keyed("link", child.get("type", ""), parsed)
            else:
                story.add_child(child.tag, parsed)

        story.set("body", self.assemble_body(story))
        return story

    def parse_element(self, element: ET.Element) -> ParsedElement:
        node = ParsedElement()
        _add_attributes(element, node)

        children = list(element)
        if not children:
            node.value = element.text or ""
            return node

        for child in children:
            parsed = self.parse_element(child)
            if child.tag == "paragraph":
                node.add_keyed("paragraphs", parsed.text("num"), parsed)
            elif child.tag == "mp3":
                node.add_keyed("mp3", parsed.text("type"), parsed)
            else:
                node.add_child(child.tag, parsed)
        return node

    def assemble_body(self, story: ParsedElement) -> str:
        """
        Build the story body.

        With layout/storytext, each storytext entry adds a fragment keyed by
        its num; fragments are joined in num order. Otherwise the paragraphs
        are auto-paragraphed and joined.
        """
        text_with_html = story.get("textWithHtml")
        paragraphs = (
            text_with_html.get("paragraphs")
            if isinstance(text_with_html, ParsedElement)
            else None
        )
        layout = story.get("layout")
        storytext = layout.get("storytext") if isinstance(layout, ParsedElement) else None

        if isinstance(storytext, ParsedElement) and storytext.properties and paragraphs:
            paragraph_text = {num: p.value or "" for num, p in paragraphs.items()}
            fragments: Dict[int, str] = {}

            for kind, items in storytext.items():
                entries = items if isinstance(items, list) else [items]
                for item in entries:
                    if not isinstance(item, ParsedElement):
                        continue
                    num = item.text("num")
                    try:
                        position = int(num)
                    except ValueError:
                        logger.warning(f"Skipping storytext {kind} without a numeric num")
                        continue

                    fragment = self._storytext_fragment(kind, item, story, paragraph_text)
                    if fragment is not None:
                        fragments[position] = fragment

            return "".join(fragments[position] for position in sorted(fragments))

        if paragraphs:
            return "".join(autop(p.value or "") for p in paragraphs.values())
        return ""

    def _storytext_fragment(
        self,
        kind: str,
        item: ParsedElement,
        story: ParsedElement,
        paragraph_text: Dict[str, str],
    ) -> Optional[str]:
        ref_id = item.text("refId")

        if kind == "text":
            return autop(paragraph_text.get(item.text("paragraphNum"), ""))
        if kind == "staticHtml":
            for html_asset in story.as_list("htmlAsset"):
                if html_asset.text("id") == ref_id:
                    return html_asset.value or ""
            return None
        if kind == "image":
            return f"[npr_image:{ref_id}]"
        if kind == "multimedia":
            if is_used(self.field_mappings.get("multimedia")):
                return f"[npr_multimedia:{ref_id}]"
            return None
        if kind == "externalAsset":
            if self.field_mappings.get("externalAsset") != UNUSED:
                return f"[npr_external:{ref_id}]"
            return None
        return None


def parse_nprml(
    xml: Optional[str], field_mappings: Optional[Dict[str, str]] = None
) -> List[ParsedElement]:
    """Parse NPRML text into story elements"""
    return NprmlParser(field_mappings=field_mappings).parse(xml)
