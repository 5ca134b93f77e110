"""HTML to structured page content.

``extract_content`` parses a fetched HTML document with BeautifulSoup and
returns metadata, outgoing links (with anchor text for prioritisation),
images, code blocks, tables, JSON-LD and a whitespace-insensitive content
hash. The markdown body is rendered by article-extractor from the document
with scripts and navigation chrome already removed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
import re
from typing import Any
from urllib.parse import urldefrag, urljoin, urlsplit

from article_extractor import ExtractionOptions, extract_article
from bs4 import BeautifulSoup, Comment, Tag

from crawl_engine.utils.url_rules import normalize_url


logger = logging.getLogger(__name__)

_STRIP_TAGS = ["script", "style", "noscript", "iframe", "template"]
_NON_CONTENT_TAGS = [
    "header",
    "footer",
    "nav",
    "aside",
    "menu",
    "menuitem",
    "form",
    "button",
    "input",
    "select",
    "textarea",
]
_NON_CONTENT_MARKER = re.compile(
    r"(?:^|[\s_-])(?:nav|navbar|navigation|menu|sidebar|footer|header|ad|ads|advert|advertisement|"
    r"social|share|sharing|comment|comments|related)(?:$|[\s_-])",
    re.IGNORECASE,
)
_PROTECTED_TAGS = frozenset({"html", "body", "main", "article"})
_PUBLISHED_DATE_KEYS = ("article:published_time", "datepublished", "date", "dc.date.issued")
_SKIPPED_LINK_PREFIXES = ("javascript:", "mailto:", "tel:", "#")
_WHITESPACE = re.compile(r"\s+")
_BLANK_RUNS = re.compile(r"\n{3,}")

UNTITLED = "Untitled"


@dataclass(slots=True, frozen=True)
class ExtractedLink:
    url: str
    normalized_url: str
    anchor_text: str = ""


@dataclass(slots=True, frozen=True)
class ExtractedImage:
    src: str
    alt: str = ""


@dataclass(slots=True, frozen=True)
class CodeBlock:
    language: str
    code: str


@dataclass(slots=True)
class ExtractedContent:
    title: str
    markdown: str
    text: str
    content_hash: str
    word_count: int
    description: str | None = None
    author: str | None = None
    published_date: str | None = None
    links: list[ExtractedLink] = field(default_factory=list)
    images: list[ExtractedImage] = field(default_factory=list)
    code_blocks: list[CodeBlock] = field(default_factory=list)
    tables: list[list[str]] = field(default_factory=list)
    structured_data: Any = None

    @property
    def outgoing_links(self) -> tuple[str, ...]:
        return tuple(link.normalized_url for link in self.links)


def content_hash(markdown: str) -> str:
    """SHA-256 of the markdown, lowercased with whitespace runs collapsed."""
    normalized = _WHITESPACE.sub(" ", markdown.lower()).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def count_words(text: str) -> int:
    return len(text.split())


def _squash(text: str | None) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _meta_index(soup: BeautifulSoup) -> dict[str, str]:
    """Map lower-cased ``name``/``property``/``itemprop`` to the first non-empty ``content``."""
    index: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        content = _squash(meta.get("content"))
        if not content:
            continue
        for attribute in ("property", "name", "itemprop"):
            key = meta.get(attribute)
            if key:
                index.setdefault(str(key).lower(), content)
    return index


def _extract_title(soup: BeautifulSoup, meta: dict[str, str]) -> str:
    if soup.title is not None:
        title = _squash(soup.title.get_text())
        if title:
            return title
    if og_title := meta.get("og:title"):
        return og_title
    h1 = soup.find("h1")
    if h1 is not None:
        heading = _squash(h1.get_text())
        if heading:
            return heading
    return UNTITLED


def _extract_published_date(soup: BeautifulSoup, meta: dict[str, str]) -> str | None:
    for key in _PUBLISHED_DATE_KEYS:
        if value := meta.get(key):
            return value
    time_tag = soup.find("time", attrs={"datetime": True})
    if time_tag is not None:
        return str(time_tag["datetime"]).strip() or None
    return None


def _extract_structured_data(soup: BeautifulSoup) -> Any:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed JSON-LD block")
            continue
    return None


def _extract_links(soup: BeautifulSoup, base_url: str) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if isinstance(href, list):
            href = href[0] if href else ""
        href = str(href).strip()
        if not href or href.lower().startswith(_SKIPPED_LINK_PREFIXES):
            continue
        try:
            absolute, _fragment = urldefrag(urljoin(base_url, href))
            scheme = urlsplit(absolute).scheme
        except ValueError:
            logger.debug("Dropping malformed link %r on %s", href, base_url)
            continue
        if scheme not in {"http", "https"}:
            continue
        normalized = normalize_url(absolute)
        if normalized in seen:
            continue
        seen.add(normalized)
        links.append(ExtractedLink(url=absolute, normalized_url=normalized, anchor_text=_squash(anchor.get_text())))
    return links


def _extract_images(soup: BeautifulSoup, base_url: str) -> list[ExtractedImage]:
    images: list[ExtractedImage] = []
    for img in soup.find_all("img", src=True):
        src = str(img["src"]).strip()
        if not src:
            continue
        try:
            absolute = urljoin(base_url, src)
        except ValueError:
            continue
        images.append(ExtractedImage(src=absolute, alt=_squash(img.get("alt"))))
    return images


def _code_language(code: Tag) -> str:
    for css_class in code.get("class") or []:
        for prefix in ("language-", "lang-"):
            if css_class.startswith(prefix):
                return css_class[len(prefix) :]
    return ""


def _extract_code_blocks(soup: BeautifulSoup) -> list[CodeBlock]:
    blocks: list[CodeBlock] = []
    for pre in soup.find_all("pre"):
        code = pre.find("code")
        source = code if code is not None else pre
        text = source.get_text().strip()
        if text:
            blocks.append(CodeBlock(language=_code_language(code) if code is not None else "", code=text))
    for code in soup.find_all("code"):
        if code.find_parent("pre") is not None:
            continue
        text = code.get_text().strip()
        if text and "\n" not in text:
            blocks.append(CodeBlock(language=_code_language(code), code=text))
    return blocks


def _table_rows(table: Tag) -> list[list[str]]:
    rows: list[list[str]] = []
    for tr in table.find_all("tr"):
        if tr.find_parent("table") is not table:
            continue
        cells = [_squash(cell.get_text()) for cell in tr.find_all(["th", "td"], recursive=False)]
        if cells:
            rows.append(cells)
    return rows


def _extract_tables(soup: BeautifulSoup) -> list[list[str]]:
    tables: list[list[str]] = []
    for table in soup.find_all("table"):
        rows = [" | ".join(cells) for cells in _table_rows(table)]
        if rows:
            tables.append(rows)
    return tables


def _is_non_content(tag: Tag) -> bool:
    if tag.name in _PROTECTED_TAGS:
        return False
    markers = " ".join(tag.get("class") or [])
    element_id = tag.get("id")
    if element_id:
        markers = f"{markers} {element_id}"
    return bool(markers and _NON_CONTENT_MARKER.search(markers))


def _remove_non_content(soup: BeautifulSoup) -> None:
    for tag in soup.find_all(_NON_CONTENT_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        # Skip tags already removed together with an ancestor.
        if tag.decomposed:
            continue
        if _is_non_content(tag):
            tag.decompose()


# Lower than a docs fetcher would use: short pages still become page records.
MARKDOWN_OPTIONS = ExtractionOptions(
    min_word_count=20,
    include_images=True,
    include_code_blocks=True,
    safe_markdown=True,
)


def _clean_markdown(markdown: str) -> str:
    lines = [line.rstrip() for line in markdown.split("\n")]
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


def _visible_text(root: Tag) -> str:
    return _squash(root.get_text(" "))


def render_markdown(soup: BeautifulSoup, url: str, options: ExtractionOptions = MARKDOWN_OPTIONS) -> str:
    """Markdown body for a document whose boilerplate has already been removed.

    article-extractor renders the readable content. When it rejects the page
    (too little text, no article block) the visible text is kept as a single
    paragraph.
    """
    text = _visible_text(soup.body or soup)
    try:
        result = extract_article(str(soup), url, options)
    except Exception as exc:
        logger.warning("article-extractor failed on %s: %s", url, exc)
        return text

    if not result.success or not (result.markdown or "").strip():
        logger.debug("No article content on %s: %s", url, result.error)
        return text
    return _clean_markdown(result.markdown)


def extract_content(html: str, url: str) -> ExtractedContent:
    """Parse ``html`` fetched from ``url`` into structured content."""
    soup = BeautifulSoup(html, "lxml")

    structured_data = _extract_structured_data(soup)
    for tag in soup.find_all(_STRIP_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    meta = _meta_index(soup)
    title = _extract_title(soup, meta)
    links = _extract_links(soup, url)
    images = _extract_images(soup, url)
    code_blocks = _extract_code_blocks(soup)
    tables = _extract_tables(soup)
    published_date = _extract_published_date(soup, meta)

    _remove_non_content(soup)
    markdown = render_markdown(soup, url)

    return ExtractedContent(
        title=title,
        description=meta.get("description"),
        author=meta.get("author"),
        published_date=published_date,
        markdown=markdown,
        text=_visible_text(soup.body or soup),
        content_hash=content_hash(markdown),
        word_count=count_words(markdown),
        links=links,
        images=images,
        code_blocks=code_blocks,
        tables=tables,
        structured_data=structured_data,
    )
