"""Markup sanitizer for free-text fields (note bodies, titles, AI inputs)."""

import nh3

# Formatting tags that survive; everything else is dropped and its text kept.
ALLOWED_TAGS = frozenset({"b", "i", "em", "strong", "u", "br", "p", "ul", "ol", "li"})

# Dropped together with their text content.
STRIPPED_CONTENT_TAGS = frozenset({"script", "style"})


def sanitize(text: str) -> str:
    """Strip all markup except the formatting safelist. No attributes are kept."""
    if not text:
        return ""
    return nh3.clean(
        text,
        tags=set(ALLOWED_TAGS),
        clean_content_tags=set(STRIPPED_CONTENT_TAGS),
        attributes={},
        link_rel=None,
        strip_comments=True,
    )
