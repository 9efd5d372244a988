"""HTML to plain text conversion for cached message bodies."""

from __future__ import annotations

import html2text

MAX_CONSECUTIVE_BLANK_LINES = 2


def convert_html_to_text(html_content: str) -> str:
    """Convert an HTML body to readable plain text.

    Links are kept inline and images are dropped. Runs of blank lines are
    collapsed to at most two.
    """

    if not html_content:
        return ""

    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    return _cleanup_whitespace(converter.handle(html_content))


def _cleanup_whitespace(text: str) -> str:
    lines: list[str] = []
    blank_run = 0
    for line in text.splitlines():
        if line.strip():
            blank_run = 0
            lines.append(line.rstrip())
            continue
        blank_run += 1
        if blank_run <= MAX_CONSECUTIVE_BLANK_LINES:
            lines.append("")
    return "\n".join(lines).strip()
