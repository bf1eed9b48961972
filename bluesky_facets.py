import re
from typing import Dict, List, Optional, Tuple, TypedDict

from bluesky_handles import resolve_handles

LINK_FEATURE = "app.bsky.richtext.facet#link"
MENTION_FEATURE = "app.bsky.richtext.facet#mention"

MARKDOWN_LINK_REGEX = re.compile(r"\[([^\]]*)\]\(([^)]+)\)")
MENTION_REGEX = re.compile(
    r"(?<![A-Za-z0-9_])@((?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)"
)


class LinkSpan(TypedDict):
    start: int
    end: int
    url: str


class MentionSpan(TypedDict):
    start: int
    end: int
    handle: str


def extract_links(text: str) -> Tuple[List[LinkSpan], str]:
    """
    Strips markdown link markup, keeping only the label text.

    Spans are measured against the text being rebuilt, so every span indexes
    into the returned text and not into the input.

    Args:
        text: Text that may contain [label](url) links.

    Returns:
        A (spans, rewritten_text) tuple.
    """
    spans = []
    rewritten = ""
    last_index = 0
    for m in MARKDOWN_LINK_REGEX.finditer(text):
        rewritten += text[last_index:m.start()]
        start = len(rewritten)
        rewritten += m.group(1)
        spans.append({
            "start": start,
            "end": len(rewritten),
            "url": m.group(2),
        })
        last_index = m.end()
    rewritten += text[last_index:]
    return spans, rewritten


def parse_mentions(text: str) -> List[MentionSpan]:
    spans = []
    for m in MENTION_REGEX.finditer(text):
        spans.append({
            "start": m.start(),
            "end": m.end(),
            "handle": m.group(1),
        })
    return spans


def char_to_byte_offset(text: str, index: int) -> int:
    """Converts a character index into a UTF-8 byte offset within text."""
    return len(text[:index].encode("UTF-8"))


def _overlaps(span: Dict, others: List[Dict]) -> bool:
    return any(
        o["start"] < o["end"] and span["start"] < o["end"] and o["start"] < span["end"]
        for o in others
    )


def assemble_facets(
    text: str,
    link_spans: List[LinkSpan],
    mention_spans: List[MentionSpan],
    resolutions: Dict[str, Optional[str]],
) -> List[Dict]:
    """
    Builds app.bsky.richtext.facet objects from link and mention spans.

    Span offsets are character indices into text; facet offsets are UTF-8 byte
    offsets, as the Bluesky API expects. Mentions whose handle did not resolve
    are left out and stay plain text in the post. A mention written inside a
    link label is left out too, so no two facets cover the same bytes.
    """
    facets = []
    for link in link_spans:
        facets.append({
            "index": {
                "byteStart": char_to_byte_offset(text, link["start"]),
                "byteEnd": char_to_byte_offset(text, link["end"]),
            },
            # NOTE: URI ("I") not URL ("L")
            "features": [{"$type": LINK_FEATURE, "uri": link["url"]}],
        })
    for mention in mention_spans:
        did = resolutions.get(mention["handle"])
        if not did:
            continue
        if _overlaps(mention, link_spans):
            continue
        facets.append({
            "index": {
                "byteStart": char_to_byte_offset(text, mention["start"]),
                "byteEnd": char_to_byte_offset(text, mention["end"]),
            },
            "features": [{"$type": MENTION_FEATURE, "did": did}],
        })
    return facets


async def parse_facets(text: str, pds_url: str, session=None, timeout: float = 10.0) -> Tuple[str, List[Dict]]:
    """
    Runs the whole rich text pipeline over markdown-like text.

    Args:
        text: The raw text, possibly containing [label](url) links and @mentions.
        pds_url: Base URL of the PDS used to resolve mention handles.
        session: Optional aiohttp.ClientSession to reuse for handle lookups.
        timeout: Seconds allowed for each handle lookup.

    Returns:
        A (text, facets) tuple. The text is the rewritten text with link markup
        removed; the facets index into it, never into the input.
    """
    link_spans, rewritten = extract_links(text)
    mention_spans = parse_mentions(rewritten)

    resolutions = {}
    handles = {m["handle"] for m in mention_spans}
    if handles:
        resolutions = await resolve_handles(handles, pds_url, session=session, timeout=timeout)

    return rewritten, assemble_facets(rewritten, link_spans, mention_spans, resolutions)
