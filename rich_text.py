# rich_text.py - Markdown rendering for exam prompts and rationales
import os
import re
from functools import lru_cache
from typing import Any, Optional

import bleach
import markdown
from markupsafe import Markup, escape

ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "1").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a","abbr","b","blockquote","code","em","i","li","ol","strong","ul","sub","sup",
    "p","pre","hr","br","span","div","img","table","thead","tbody","tr","th","td","caption",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class","title"],
    "a": ["href","name","target","rel"],
    "img": ["src","alt","width","height","loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http","https","mailto","data"]

_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")


def _sanitize_if_enabled(html: str, sanitize: bool) -> str:
    if not sanitize:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )


@lru_cache(maxsize=512)
def _render_rich_cached(text: str, allow_raw: bool, sanitize: bool) -> str:
    if not text:
        return ""
    if allow_raw and _HTML_PATTERN.search(text):
        return _sanitize_if_enabled(text, sanitize)
    try:
        html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html")
    except Exception as e:
        print(f"[exam] markdown render failed, falling back to plain text: {e}")
        safe = str(escape(text))
        return "<p>" + safe.replace("\n\n", "</p><p>").replace("\n", "<br/>") + "</p>"
    return _sanitize_if_enabled(html, sanitize)


def render_rich(text: Optional[Any]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))


__all__ = ["render_rich"]
