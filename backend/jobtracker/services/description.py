"""
Job description normalization.

Career sites hand back descriptions as (sometimes entity-escaped) HTML or as
plain text. Before storage every description is normalized:

    HTML:  decode entities → sanitize to an allow-list → convert to markdown
    Plain: kept as-is, tagged "markdown" if it already uses markdown syntax

Key Functions:
    - process_description(content, source_format): (text, format) tuple
    - sanitize_html(html): allow-listed HTML string
    - html_to_markdown(html): markdown string (ATX headings, "-" bullets, fenced code)
    - contains_html(text): cheap tag sniffing
"""

import html as html_lib
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

ALLOWED_TAGS = {
    "p", "br", "ul", "ol", "li", "strong", "b", "em", "i", "u",
    "h1", "h2", "h3", "h4", "h5", "h6", "a", "code", "pre", "blockquote",
}
ALLOWED_SCHEMES = {"", "http", "https", "mailto"}
# Dropped together with their contents
DROP_TAGS = ["script", "style", "textarea", "option", "noscript", "iframe", "head", "title"]

INLINE_PARENTS = {"p", "li", "strong", "b", "em", "i", "u", "a", "code", "h1", "h2", "h3", "h4", "h5", "h6"}

HTML_TAG_PATTERN = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
MARKDOWN_PATTERNS = [
    re.compile(r"^#{1,6}\s+", re.MULTILINE),
    re.compile(r"\*\*.*?\*\*"),
    re.compile(r"\*.*?\*"),
    re.compile(r"\[.*?\]\(.*?\)"),
    re.compile(r"^[-*+]\s+", re.MULTILINE),
    re.compile(r"^\d+\.\s+", re.MULTILINE),
]


def decode_html_entities(text: str) -> str:
    # Twice: some boards double-encode (&amp;lt;p&amp;gt;)
    return html_lib.unescape(html_lib.unescape(text)).replace("\xa0", " ")


def contains_html(text: str) -> bool:
    return bool(HTML_TAG_PATTERN.search(text))


def sanitize_html(html: str) -> str:
    """Strip everything outside the allow-list; only <a href> keeps an attribute."""
    soup = BeautifulSoup(decode_html_entities(html), "html.parser")

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for tag in soup.find_all(DROP_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue

        href = tag.get("href") if tag.name == "a" else None
        tag.attrs = {}
        if href and urlparse(href.strip()).scheme.lower() in ALLOWED_SCHEMES:
            tag.attrs["href"] = href.strip()

    return str(soup)


def _render_list(node: Tag, depth: int) -> str:
    ordered = node.name == "ol"
    lines = []
    for index, item in enumerate(node.find_all("li", recursive=False), start=1):
        marker = f"{index}." if ordered else "-"
        text_parts = []
        nested = []
        for child in item.children:
            if isinstance(child, Tag) and child.name in ("ul", "ol"):
                nested.append(_render_list(child, depth + 1))
            else:
                text_parts.append(_render(child, depth))
        text = re.sub(r"\s*\n\s*", " ", "".join(text_parts)).strip()
        lines.append(f"{'  ' * depth}{marker} {text}")
        lines.extend(nested)
    return "\n".join(lines)


def _render(node, depth: int = 0) -> str:
    if isinstance(node, NavigableString):
        text = str(node)
        if not text.strip():
            parent = node.parent.name if node.parent is not None else None
            return " " if parent in INLINE_PARENTS else ""
        return re.sub(r"\s+", " ", text)

    name = node.name

    if name in ("ul", "ol"):
        body = _render_list(node, depth)
        return f"\n\n{body}\n\n" if depth == 0 else f"\n{body}\n"
    if name == "pre":
        return f"\n\n```\n{node.get_text().rstrip()}\n```\n\n"
    if name == "br":
        return "\n"

    inner = "".join(_render(child, depth) for child in node.children)

    if name in ("h1", "h2", "h3", "h4", "h5", "h6"):
        return f"\n\n{'#' * int(name[1])} {inner.strip()}\n\n"
    if name == "p":
        return f"\n\n{inner.strip()}\n\n"
    if name in ("strong", "b"):
        return f"**{inner.strip()}**" if inner.strip() else ""
    if name in ("em", "i"):
        return f"_{inner.strip()}_" if inner.strip() else ""
    if name == "code":
        return f"`{inner}`"
    if name == "a":
        href = node.get("href")
        return f"[{inner.strip()}]({href})" if href else inner
    if name == "blockquote":
        quoted = "\n".join(f"> {line}".rstrip() for line in inner.strip().split("\n"))
        return f"\n\n{quoted}\n\n"
    return inner


def html_to_markdown(html: str) -> str:
    soup = BeautifulSoup(sanitize_html(html), "html.parser")
    markdown = _render(soup)
    markdown = "\n".join(line.rstrip() for line in markdown.split("\n"))
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip()


def looks_like_markdown(text: str) -> bool:
    return any(pattern.search(text) for pattern in MARKDOWN_PATTERNS)


def process_description(content: Optional[str], source_format: str) -> Tuple[Optional[str], str]:
    """
    Normalize a raw description.

    Args:
        content: Raw description from the platform
        source_format: "html" or "plain"

    Returns:
        (text, format) where text is None for empty input and format is
        "markdown" or "plain".
    """
    if not content or not content.strip():
        return None, "plain"

    if source_format == "html":
        return html_to_markdown(content), "markdown"

    return content, "markdown" if looks_like_markdown(content) else "plain"
