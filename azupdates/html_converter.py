"""
HTML-to-markdown conversion for update descriptions.

The feed delivers descriptions as HTML. They are stored alongside a markdown
rendering that is easier for language models to read and that feeds the
full-text index. Conversion never fails: malformed input degrades to plain
text with the tags stripped.
"""

import html
import logging
import re
from typing import Optional

import html2text
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# Relative links in descriptions point at the Azure site
BASE_URL = "https://azure.microsoft.com"

_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)


def _make_converter() -> html2text.HTML2Text:
    h = html2text.HTML2Text(baseurl=BASE_URL)
    h.body_width = 0          # don't wrap lines
    h.ignore_links = False
    h.ignore_images = False
    h.images_to_alt = False   # keep image markdown, data URLs included
    h.inline_links = True
    h.protect_links = False
    h.ul_item_mark = "-"
    h.emphasis_mark = "*"
    h.strong_mark = "**"
    h.unicode_snob = True
    return h


def convert_html_to_markdown(content: Optional[str]) -> Optional[str]:
    """
    Convert an HTML description to markdown.

    Args:
        content: HTML string (may be None)

    Returns:
        Markdown text, or None for empty input
    """
    if not content or not content.strip():
        return None

    try:
        markdown = _make_converter().handle(content)
    except Exception as e:
        logger.warning("HTML conversion failed, stripping tags instead: %s", e)
        return strip_html_tags(content)

    cleaned = _TRAILING_SPACE.sub("", markdown)
    cleaned = _EXCESS_NEWLINES.sub("\n\n", cleaned).strip()
    logger.debug("HTML converted: %d -> %d chars", len(content), len(cleaned))
    return cleaned


def strip_html_tags(content: str) -> str:
    """
    Reduce HTML to plain text, removing scripts and styles.

    Uses BeautifulSoup when it can parse the input, and a regex pass
    otherwise.
    """
    try:
        soup = BeautifulSoup(content, "html.parser")
        for tag in soup(["script", "style"]):
            tag.decompose()
        text = soup.get_text(" ")
    except Exception as e:
        logger.debug("BeautifulSoup could not parse description: %s", e)
        text = re.sub(r"<script\b.*?</script>", "", content, flags=re.IGNORECASE | re.DOTALL)
        text = re.sub(r"<style\b.*?</style>", "", text, flags=re.IGNORECASE | re.DOTALL)
        text = re.sub(r"<[^>]+>", "", text)
        text = html.unescape(text)

    return re.sub(r"\s+", " ", text.replace("\xa0", " ")).strip()
