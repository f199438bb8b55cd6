"""
Text filters for NPR story content.

Converts plain story text into paragraph markup, builds teaser summaries,
truncates titles and captions, and rewrites root-relative links so pushed
stories render outside the local site.
"""

import html
import re
from urllib.parse import urljoin

# Tags that already form a block and must not be wrapped in <p>
BLOCK_TAGS = (
    "address|article|aside|blockquote|dd|div|dl|dt|fieldset|figcaption|figure|"
    "footer|form|h[1-6]|header|hr|iframe|li|nav|ol|p|pre|script|section|style|"
    "table|tbody|td|tfoot|th|thead|tr|ul|drupal-media"
)

_block_start = re.compile(rf"^\s*<(?:{BLOCK_TAGS})[\s>/]", re.IGNORECASE)
_paragraph_split = re.compile(r"\n\s*\n")
_paragraph_end = re.compile(r"</p>", re.IGNORECASE)
_sentence_end = re.compile(r"[.!?][\"')\]]?(?=\s)")


def autop(text: str) -> str:
    """
    Convert line breaks into <p> and <br /> markup.

    Chunks separated by a blank line become paragraphs; single line breaks
    inside a chunk become <br />. Chunks that already start with a block-level
    tag are left untouched.

    Args:
        text: Raw story text, possibly containing inline HTML

    Returns:
        Text with paragraph markup, one block per line
    """
    if not text:
        return ""

    text = text.replace("\r\n", "\n").replace("\r", "\n")

    blocks = []
    for chunk in _paragraph_split.split(text):
        chunk = chunk.strip()
        if not chunk:
            continue
        if _block_start.match(chunk):
            blocks.append(chunk)
        else:
            blocks.append("<p>" + chunk.replace("\n", "<br />\n") + "</p>")

    if not blocks:
        return ""
    return "\n".join(blocks) + "\n"


def text_summary(text: str, size: int = 600) -> str:
    """
    Build a teaser from the beginning of a story body.

    Prefers to stop at the last closing paragraph tag, then at the last
    sentence end, inside the size limit.

    Args:
        text: Body text (HTML)
        size: Maximum summary length in characters

    Returns:
        Summary text
    """
    if not text or len(text) <= size:
        return text or ""

    head = text[:size]

    paragraph_ends = [m.end() for m in _paragraph_end.finditer(head)]
    if paragraph_ends:
        return head[: paragraph_ends[-1]]

    sentence_ends = [m.end() for m in _sentence_end.finditer(head)]
    if sentence_ends:
        return head[: sentence_ends[-1]]

    return head


def truncate(
    text: str, max_length: int, wordsafe: bool = False, add_ellipsis: bool = False
) -> str:
    """
    Truncate a string to a maximum length.

    Args:
        text: String to truncate
        max_length: Maximum length of the result, ellipsis included
        wordsafe: Cut at the last word boundary
        add_ellipsis: Append "..." when the string was shortened

    Returns:
        Truncated string
    """
    if text is None:
        return ""
    if len(text) <= max_length:
        return text

    if add_ellipsis:
        max_length = max(max_length - 3, 0)

    truncated = text[:max_length]
    if wordsafe and " " in truncated:
        truncated = truncated.rsplit(" ", 1)[0].rstrip()

    if add_ellipsis:
        truncated += "..."
    return truncated


def encode_entities(text: str) -> str:
    """Encode HTML special characters (quotes included)."""
    return html.escape(text or "", quote=True)


def decode_entities(text: str) -> str:
    """Decode HTML entities back into characters."""
    return html.unescape(text or "")


def clean_title(title: str, max_length: int = 255) -> str:
    """Decode entities in a title and cut it to the storage limit."""
    return decode_entities(title)[:max_length]


def rel_to_abs(html_content: str, base_url: str) -> str:
    """
    Rewrite root-relative src and href attributes to absolute URLs.

    Skips:
    - Absolute URLs (http://, https://, //)
    - mailto: and tel: links
    - Anchor-only links (#...)

    Args:
        html_content: Body markup
        base_url: Site URL used as the prefix (e.g., https://www.example.org)

    Returns:
        Markup with absolute URLs
    """
    if not base_url:
        return html_content

    def replace_path(match):
        prefix = match.group(1)
        path = match.group(2)
        quote = match.group(3)

        if path.startswith(("http://", "https://", "//", "mailto:", "tel:", "#")):
            return match.group(0)
        if not path.startswith("/"):
            return match.group(0)

        return f"{prefix}{urljoin(base_url, path)}{quote}"

    path_pattern = re.compile(r'((?:href|src)=[\'"])([^\'"]*)([\'"])', re.IGNORECASE)
    return path_pattern.sub(replace_path, html_content)
