"""String sanitization pipeline and field-specific entry points.

Stage order matters; each stage works on the previous stage's output:

1. control characters
2. markup tags (inner text is kept)
3. SQL metacharacters and destructive keyword constructs
4. whitespace collapsing
5. allowed-character filtering
6. truncation

Stages 1-5 repeat until the text stops changing, because removing one
construct can join its neighbours into another (``dr<b>op table`` becomes
``drop table`` once the tag goes). Every stage only removes or shortens, so
the loop terminates, and the result is a fixed point:
``sanitize(sanitize(x, o), o) == sanitize(x, o)``.
"""

from __future__ import annotations

import re
from functools import lru_cache

from aether_guard.security.models import (
    DEFAULT_OPTIONS,
    PERMISSIVE_OPTIONS,
    SanitizationOptions,
)
from aether_guard.security.patterns import (
    CONTROL_CHAR_PATTERN,
    HTML_TAG_PATTERN,
    tag_search_end,
)

_WHITESPACE_RUN = re.compile(r"\s+")

# Quotes, statement separators and comment markers
_SQL_METACHARACTERS = re.compile(r"['\";]|--|/\*|\*/")

# DROP has no leading boundary and no construct has a trailing one: every
# prefix of a clean string is itself clean.
_SQL_KEYWORD_CONSTRUCTS = re.compile(
    r"drop\s+(?:table|database|index)"
    r"|\btruncate\s+table"
    r"|\bunion\s+(?:all\s+)?select"
    r"|\bxp_cmdshell",
    re.IGNORECASE,
)

_PATH_TRAVERSAL = re.compile(r"\.\.[/\\]")
_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\x00]')
_RESERVED_FILENAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)
MAX_FILENAME_LENGTH = 255
UNTITLED_FILENAME = "untitled"

_DANGEROUS_URL_SCHEMES = ("javascript:", "vbscript:", "data:")
# Browsers ignore whitespace and control characters inside a scheme
_URL_SCHEME_NOISE = re.compile(r"[\s\x00-\x1F\x7F]+")


@lru_cache(maxsize=64)
def _disallowed_chars_pattern(allowed_chars: str) -> re.Pattern[str]:
    return re.compile(f"[^{allowed_chars}]")


# ---------------------------------------------------------------------------
# Individual stages
# ---------------------------------------------------------------------------


def strip_control_chars(text: str) -> str:
    """Remove non-printable control characters (tab, LF and CR are kept)."""
    return CONTROL_CHAR_PATTERN.sub("", text)


def strip_html(text: str) -> str:
    """Remove every ``<...>`` tag, keeping the text between tags."""
    end = tag_search_end(text)
    return HTML_TAG_PATTERN.sub("", text[:end]) + text[end:]


def strip_sql_injection(text: str) -> str:
    """Remove SQL metacharacters and destructive keyword constructs."""
    return _SQL_METACHARACTERS.sub("", _SQL_KEYWORD_CONSTRUCTS.sub("", text))


def collapse_whitespace(text: str) -> str:
    """Replace whitespace runs with a single space and trim both ends."""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def _apply_stages(text: str, options: SanitizationOptions) -> str:
    if options.strip_control_chars:
        text = strip_control_chars(text)
    if options.strip_html:
        text = strip_html(text)
    if options.strip_sql_injection:
        text = strip_sql_injection(text)
    if options.collapse_whitespace:
        text = collapse_whitespace(text)
    if options.allowed_chars is not None:
        text = _disallowed_chars_pattern(options.allowed_chars).sub("", text)
    return text


def sanitize(text: str, options: SanitizationOptions = DEFAULT_OPTIONS) -> str:
    """Clean *text* according to *options*. Idempotent for any options."""
    if not text:
        return text

    result = text
    while True:
        cleaned = _apply_stages(result, options)
        if cleaned == result:
            break
        result = cleaned

    if options.max_length is not None and len(result) > options.max_length:
        result = result[: options.max_length]
        if options.collapse_whitespace:
            result = result.rstrip()
    return result


# ---------------------------------------------------------------------------
# Field-specific entry points
# ---------------------------------------------------------------------------

_TITLE_OPTIONS = DEFAULT_OPTIONS.with_overrides(max_length=255)
_DESCRIPTION_OPTIONS = PERMISSIVE_OPTIONS.with_overrides(max_length=2000)
_SEARCH_QUERY_OPTIONS = DEFAULT_OPTIONS.with_overrides(max_length=500)
_TAG_OPTIONS = DEFAULT_OPTIONS.with_overrides(max_length=50, allowed_chars=r"a-z0-9_\-")
_FILENAME_OPTIONS = DEFAULT_OPTIONS.with_overrides(max_length=None)
_URL_OPTIONS = DEFAULT_OPTIONS.with_overrides(strip_html=False, max_length=2048)
# Document bodies keep their markup and formatting
_CONTENT_OPTIONS = SanitizationOptions(
    strip_html=False,
    collapse_whitespace=False,
    max_length=10 * 1024 * 1024,
)


def sanitize_email(email: str) -> str:
    """Trim and lowercase. Format validation rejects malformed addresses."""
    return email.strip().lower()


def sanitize_username(username: str) -> str:
    """Trim only. Format validation restricts the charset."""
    return username.strip()


def sanitize_title(title: str) -> str:
    return sanitize(title, _TITLE_OPTIONS)


def sanitize_description(description: str) -> str:
    return sanitize(description, _DESCRIPTION_OPTIONS)


def sanitize_search_query(query: str) -> str:
    return sanitize(query, _SEARCH_QUERY_OPTIONS)


def sanitize_tag(tag: str) -> str:
    """Lowercase and keep only ``a-z0-9_-``."""
    return sanitize(tag.lower(), _TAG_OPTIONS)


def sanitize_filename(filename: str) -> str:
    """Make *filename* safe for storage paths.

    Removes control characters, markup and SQL constructs, path traversal
    sequences, separators and reserved characters. Windows device names get
    a ``_file`` suffix and an empty result becomes ``"untitled"``.
    """
    if not filename:
        return UNTITLED_FILENAME

    result = sanitize(filename, _FILENAME_OPTIONS)

    previous = None
    while previous != result:
        previous = result
        result = _PATH_TRAVERSAL.sub("", result)

    result = _UNSAFE_FILENAME_CHARS.sub("", result).strip(". ")

    stem, dot, suffix = result.partition(".")
    if stem.upper() in _RESERVED_FILENAMES:
        result = f"{stem}_file{dot}{suffix}"

    result = result[:MAX_FILENAME_LENGTH].rstrip(". ")
    return result or UNTITLED_FILENAME


def _has_dangerous_scheme(url: str) -> bool:
    return _URL_SCHEME_NOISE.sub("", url).lower().startswith(_DANGEROUS_URL_SCHEMES)


def sanitize_url(url: str) -> str:
    """Sanitize a URL; script-capable schemes always yield ``""``."""
    if _has_dangerous_scheme(url):
        return ""
    result = sanitize(url, _URL_OPTIONS)
    if _has_dangerous_scheme(result):
        return ""
    return result


def sanitize_content(content: str) -> str:
    """Large document bodies: SQL and control stripping only, formatting kept."""
    return sanitize(content, _CONTENT_OPTIONS)


# Fields whose values must reach the handler byte-for-byte
PASSTHROUGH_FIELDS = frozenset({"password", "file_content"})

_FIELD_SANITIZERS = {
    "email": sanitize_email,
    "username": sanitize_username,
    "filename": sanitize_filename,
    "file_name": sanitize_filename,
    "original_filename": sanitize_filename,
    "url": sanitize_url,
    "source_url": sanitize_url,
    "website": sanitize_url,
    "tag": sanitize_tag,
    "tags": sanitize_tag,
    "title": sanitize_title,
    "name": sanitize_title,
    "display_name": sanitize_title,
    "description": sanitize_description,
    "summary": sanitize_description,
    "notes": sanitize_description,
    "review_notes": sanitize_description,
    "query": sanitize_search_query,
    "q": sanitize_search_query,
    "search": sanitize_search_query,
    "content": sanitize_content,
    "markdown": sanitize_content,
    "html": sanitize_content,
    "body": sanitize_content,
    "text": sanitize_content,
}


def sanitize_field(field_name: str, value: str) -> str:
    """Sanitize *value* with the entry point appropriate for *field_name*."""
    if field_name in PASSTHROUGH_FIELDS:
        return value
    sanitizer = _FIELD_SANITIZERS.get(field_name)
    if sanitizer is None:
        return sanitize(value, DEFAULT_OPTIONS)
    return sanitizer(value)
