"""HTML email body to plain text via ordered BeautifulSoup transforms.

Each transform is a standalone function mutating the parsed tree, applied in
the order listed in ``TRANSFORMS``. When the tree pipeline fails, extraction
falls back to trafilatura and finally to a regex tag-stripping pass.
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from collections.abc import Callable

import trafilatura
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from mail_vectorizer.core.models import HtmlMetadata, ParsedContent, SignatureSplit

logger = logging.getLogger(__name__)

Transform = Callable[[BeautifulSoup], None]

_WS_RE = re.compile(r"\s+")
_HSPACE_RE = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NL_RE = re.compile(r" *\n *")
_MULTI_NL_RE = re.compile(r"\n{3,}")
_CHARSET_RE = re.compile(r"charset=([^;]+)", re.IGNORECASE)
_PRESERVE_WS_TAGS = {"pre", "textarea"}

MAX_SIGNATURE_LENGTH = 500
SIGNATURE_RATIO = 0.3
MAX_SIGNATURE_LINES = 3

# (pattern, signature starts at the match rather than after it)
SIGNATURE_PATTERNS: tuple[tuple[re.Pattern[str], bool], ...] = (
    (re.compile(r"\n--\s*\n"), False),
    (re.compile(r"\nBest regards?\s*,?\s*\n", re.IGNORECASE), False),
    (re.compile(r"\nSincerely\s*,?\s*\n", re.IGNORECASE), False),
    (re.compile(r"\nKind regards?\s*,?\s*\n", re.IGNORECASE), False),
    (re.compile(r"\nThanks?\s*,?\s*\n", re.IGNORECASE), False),
    (re.compile(r"\nSent from my \w+", re.IGNORECASE), True),
)


def _squash(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _style(tag: Tag) -> str:
    return str(tag.get("style", "")).replace(" ", "").lower()


def _replace_anchor(anchor: Tag) -> None:
    text = _squash(anchor.get_text())
    href = str(anchor.get("href", "")).strip()
    if text and href and href != text:
        anchor.replace_with(f"{text} ({href})")
    elif text:
        anchor.replace_with(text)


def _render_inline(tag: Tag) -> None:
    """Render nested line breaks and links before a block is flattened."""
    for br in tag.find_all("br"):
        br.replace_with("\n")
    for anchor in tag.find_all("a", href=True):
        _replace_anchor(anchor)


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------


def normalize_text_nodes(soup: BeautifulSoup) -> None:
    """Collapse source whitespace in text nodes and drop comments."""
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for node in list(soup.find_all(string=True)):
        if type(node) is not NavigableString:
            continue
        if node.parent is not None and node.parent.name in _PRESERVE_WS_TAGS:
            continue
        collapsed = _WS_RE.sub(" ", str(node))
        if collapsed != node:
            node.replace_with(collapsed)


def remove_non_content(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(["script", "style", "meta", "link"]):
        tag.decompose()


def remove_tracking_pixels(soup: BeautifulSoup) -> None:
    for img in soup.find_all("img"):
        width = str(img.get("width", "")).strip()
        height = str(img.get("height", "")).strip()
        style = _style(img)
        if width == "1" or height == "1" or "width:1px" in style or "height:1px" in style:
            img.decompose()


def remove_hidden(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(style=True):
        if tag.decomposed:
            continue
        style = _style(tag)
        if "display:none" in style or "visibility:hidden" in style:
            tag.decompose()


def convert_headers(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        _render_inline(tag)
        text = _squash(tag.get_text())
        if text:
            tag.replace_with(f"\n\n{text.upper()}\n\n")


def convert_paragraphs(soup: BeautifulSoup) -> None:
    for tag in soup.find_all("p"):
        _render_inline(tag)
        text = _HSPACE_RE.sub(" ", tag.get_text()).strip()
        if text:
            tag.replace_with(f"\n{text}\n")


def convert_lists(soup: BeautifulSoup) -> None:
    # Innermost lists first so nested items are not repeated
    for tag in reversed(soup.find_all(["ul", "ol"])):
        items: list[str] = []
        for li in tag.find_all("li"):
            _render_inline(li)
            text = _squash(li.get_text())
            if text:
                items.append(text)
        if tag.name == "ol":
            lines = [f"{number}. {text}" for number, text in enumerate(items, start=1)]
        else:
            lines = [f"• {text}" for text in items]
        tag.replace_with("\n" + "".join(f"{line}\n" for line in lines) + "\n")


def convert_tables(soup: BeautifulSoup) -> None:
    for table in reversed(soup.find_all("table")):
        rows: list[str] = []
        for row in table.find_all("tr"):
            cells = []
            for cell in row.find_all(["td", "th"]):
                _render_inline(cell)
                text = _squash(cell.get_text())
                if text:
                    cells.append(text)
            if cells:
                rows.append(" | ".join(cells))
        body = "".join(f"{row}\n" for row in rows)
        table.replace_with(f"\n--- TABLE ---\n{body}--- END TABLE ---\n\n")


def convert_links(soup: BeautifulSoup) -> None:
    for anchor in soup.find_all("a", href=True):
        _replace_anchor(anchor)


def convert_breaks_and_inline(soup: BeautifulSoup) -> None:
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(["div", "span"]):
        text = tag.get_text()
        if text.strip():
            tag.replace_with(f" {text} ")


TRANSFORMS: tuple[Transform, ...] = (
    normalize_text_nodes,
    remove_non_content,
    remove_tracking_pixels,
    remove_hidden,
    convert_headers,
    convert_paragraphs,
    convert_lists,
    convert_tables,
    convert_links,
    convert_breaks_and_inline,
)


def collapse_whitespace(text: str) -> str:
    text = _HSPACE_RE.sub(" ", text)
    text = _SPACE_AROUND_NL_RE.sub("\n", text)
    text = _MULTI_NL_RE.sub("\n\n", text)
    return text.strip()


def clean_plain_text(text: str) -> str:
    """Normalize line endings, tabs, trailing whitespace and blank-line runs."""
    text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", "    ")
    text = re.sub(r"[ \f\v]+$", "", text, flags=re.MULTILINE)
    text = _MULTI_NL_RE.sub("\n\n", text)
    return text.strip()


def strip_html_tags(html: str) -> str:
    """Regex fallback: drop scripts, styles and tags, decode entities."""
    text = re.sub(r"<script\b[^>]*>.*?</script\s*>", "", html, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<style\b[^>]*>.*?</style\s*>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<[^>]*>", "", text)
    text = html_lib.unescape(text)
    return _squash(text)


class HtmlTextExtractor:
    """Convert HTML email bodies into normalized plain text with metadata."""

    def __init__(self, transforms: tuple[Transform, ...] = TRANSFORMS) -> None:
        self._transforms = transforms

    def parse(self, html: str) -> ParsedContent:
        """Parse an HTML body. Never raises.

        Strategy:
        1. Parse with BeautifulSoup, read metadata from the untouched tree.
        2. Apply the transform pipeline and collapse whitespace.
        3. On any failure, fall back to trafilatura, then to tag stripping.
        """
        html = html or ""
        try:
            soup = BeautifulSoup(html, "html.parser")
            has_images, has_links, has_tables, encoding = self._structure(soup)

            for transform in self._transforms:
                transform(soup)

            plain_text = collapse_whitespace(soup.get_text())
            return ParsedContent(
                plain_text=plain_text,
                metadata=HtmlMetadata(
                    has_images=has_images,
                    has_links=has_links,
                    has_tables=has_tables,
                    word_count=len(plain_text.split()),
                    encoding=encoding,
                ),
            )
        except Exception as e:
            logger.warning("HTML parsing failed, using fallback extraction: %s", e)
            return self._fallback(html)

    @staticmethod
    def _structure(soup: BeautifulSoup) -> tuple[bool, bool, bool, str]:
        has_images = soup.find("img") is not None
        has_links = soup.find("a", href=True) is not None
        has_tables = soup.find("table") is not None

        encoding = "utf-8"
        charset_meta = soup.find("meta", charset=True)
        content_type_meta = soup.find(
            "meta", attrs={"http-equiv": re.compile(r"^content-type$", re.IGNORECASE)}
        )
        if charset_meta is not None:
            encoding = str(charset_meta["charset"]).strip().lower()
        elif content_type_meta is not None:
            match = _CHARSET_RE.search(str(content_type_meta.get("content", "")))
            if match:
                encoding = match.group(1).strip().lower()

        return has_images, has_links, has_tables, encoding

    @staticmethod
    def _fallback(html: str) -> ParsedContent:
        text: str | None = None
        try:
            text = trafilatura.extract(
                html,
                output_format="txt",
                favor_recall=True,
                include_links=True,
                include_tables=True,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            text = None

        if not text:
            text = strip_html_tags(html)

        return ParsedContent(
            plain_text=text,
            metadata=HtmlMetadata(word_count=len(text.split())),
            is_fallback=True,
        )

    @staticmethod
    def clean_plain_text(text: str) -> str:
        return clean_plain_text(text)

    @staticmethod
    def extract_signature(text: str) -> SignatureSplit:
        """Split a trailing signature off the message body.

        Delimiters are tried in priority order. A split is kept only when the
        signature is under 500 characters and either under 30% of the content
        or a short sign-off block of at most three lines.
        """
        for pattern, include_match in SIGNATURE_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue

            content = text[: match.start()].strip()
            start = match.start() if include_match else match.end()
            signature = text[start:].strip()
            if not content:
                continue

            lines = [line for line in signature.splitlines() if line.strip()]
            short_block = len(lines) <= MAX_SIGNATURE_LINES
            if len(signature) < MAX_SIGNATURE_LENGTH and (
                len(signature) < len(content) * SIGNATURE_RATIO or short_block
            ):
                return SignatureSplit(content=content, signature=signature)

        return SignatureSplit(content=text, signature=None)
