# ripit_utils.py
# RIPIT HELPERS
# Version: 1.0.0

"""
RIPIT HELPERS
=============
Pure helper functions used by the engine and the CLI.

- Filename sanitisation (minimal and strict policies)
- og:meta lookup in HTML pages (BeautifulSoup)
- Jinja2 templates for post filters and link logs
- Human readable sizes and terminal width
"""

import json
import shutil
from typing import Any, Dict, Optional

import jinja2
from bs4 import BeautifulSoup

# =========================================================
# FILENAME SANITISATION
# =========================================================

# Strict policy: characters Windows refuses in filenames
WINDOWS_SUBST = {
    '<': '&lt;',
    '>': '&gt;',
    ':': '-',
    '"': '&quot;',
    '/': '',
    '\\': '',
    '|': '',
    '?': '',
    '*': '',
}

# Minimal policy: only path separators
MINIMAL_SUBST = {
    '/': '',
    '\\': '',
}

WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}

BLANK_FILENAME = "__Blank__"


def _sanitize_windows_filename(name: str) -> str:
    name = name.strip(" .")
    if not name:
        return BLANK_FILENAME
    stem = name.split(".", 1)[0]
    if stem.upper() in WINDOWS_RESERVED_NAMES:
        return "__" + name
    return name


def sanitize_filename(name: str, allow_special_chars: bool = False) -> str:
    """
    Make a filename safe to create on disk.

    Args:
        name: Candidate filename (no directory part)
        allow_special_chars: Only strip path separators instead of every
            character Windows rejects

    Returns:
        Sanitised filename, never empty
    """
    table = MINIMAL_SUBST if allow_special_chars else WINDOWS_SUBST
    cleaned = "".join(table.get(ch, ch) for ch in name)
    if not allow_special_chars:
        cleaned = "".join(ch for ch in cleaned if ord(ch) >= 32)
    return _sanitize_windows_filename(cleaned)


# =========================================================
# OG:META SCRAPING
# =========================================================
OG_TYPES = ("image", "video", "any")


def extract_og_url(html_content, og_type: str) -> Optional[str]:
    """
    Find the og:image / og:video link of a page.

    Only meta tags in the document head are considered. With og_type "any"
    whichever of og:video or og:image appears first wins.

    Args:
        html_content: Page markup (str or bytes)
        og_type: One of "image", "video", "any"

    Returns:
        The content attribute of the first matching meta tag, or None
    """
    if og_type not in OG_TYPES:
        raise ValueError(f"Unsupported og type: {og_type}")

    wanted = {"og:image", "og:video"} if og_type == "any" else {f"og:{og_type}"}
    soup = BeautifulSoup(html_content, "html.parser")
    scope = soup.head or soup

    for meta in scope.find_all("meta"):
        if meta.find_parent("body") is not None:
            break
        if meta.get("property") in wanted:
            content = (meta.get("content") or "").strip()
            if content:
                return content
    return None


# =========================================================
# TEMPLATES
# =========================================================
FALSE_VALUES = {"", "nil", "false", "0", "none"}
MISSING_VALUE = "<no value>"


class _MissingKey(jinja2.ChainableUndefined):
    """Missing keys render as "<no value>", so they keep the post."""

    def __str__(self):
        return MISSING_VALUE


_TEMPLATE_ENV = jinja2.Environment(
    loader=jinja2.BaseLoader(),
    autoescape=False,
    undefined=_MissingKey,
)


def compile_template(source: str) -> jinja2.Template:
    """Compile a template string. Raises jinja2.TemplateSyntaxError."""
    return _TEMPLATE_ENV.from_string(source)


def render_template(template: jinja2.Template, values: Dict[str, Any]) -> str:
    return template.render(values)


def is_false_value(rendered: str) -> bool:
    """Whether a rendered filter template means "skip this post"."""
    return rendered.strip().lower() in FALSE_VALUES


def link_fields(entry, final_url: str) -> Dict[str, Any]:
    """Fields available to the media-link template."""
    return {
        "posted_url": entry.url,
        "final_url": final_url,
        "subreddit": entry.subreddit,
        "id": entry.id,
        "author": entry.author,
        "score": entry.score,
        "title": entry.title,
        "quoted_title": json.dumps(entry.title, ensure_ascii=False),
    }


# =========================================================
# FORMATTING
# =========================================================
_SIZE_UNITS = (
    (1000 * 1000 * 1000, "GB"),
    (1000 * 1000, "MB"),
    (1000, "KB"),
)


def format_size(num_bytes: Optional[int]) -> str:
    """
    Human readable byte count, decimal units.

    >>> format_size(1500000)
    '1.5MB'
    """
    if num_bytes is None or num_bytes < 0:
        return "Unknown length"
    for unit_size, name in _SIZE_UNITS:
        if num_bytes > unit_size:
            return f"{num_bytes / unit_size:.1f}{name}"
    return f"{num_bytes}B"


def terminal_columns(default: int = 80) -> int:
    columns = shutil.get_terminal_size((default, 24)).columns
    return columns if columns > 0 else default
