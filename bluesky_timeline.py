from datetime import datetime
from typing import Dict, List

from atproto import AsyncClient
from dateutil import parser

from bluesky_facets import LINK_FEATURE, MENTION_FEATURE

PROFILE_URL = "https://bsky.app/profile/{did}"
MIN_TIMELINE_LIMIT = 1
MAX_TIMELINE_LIMIT = 50


def validate_timeline_limit(limit: int) -> int:
    if not MIN_TIMELINE_LIMIT <= limit <= MAX_TIMELINE_LIMIT:
        raise ValueError(f"Timeline limit must be between {MIN_TIMELINE_LIMIT} and {MAX_TIMELINE_LIMIT}, got: {limit}")
    return limit


def facet_to_dict(facet) -> Dict:
    """
    Converts an atproto facet model into the wire dictionary shape.

    Dictionaries are passed through unchanged.
    """
    if isinstance(facet, dict):
        return facet
    features = []
    for feature in facet.features:
        feature_dict = {"$type": feature.py_type}
        if getattr(feature, "uri", None) is not None:
            feature_dict["uri"] = feature.uri
        if getattr(feature, "did", None) is not None:
            feature_dict["did"] = feature.did
        features.append(feature_dict)
    return {
        "index": {"byteStart": facet.index.byte_start, "byteEnd": facet.index.byte_end},
        "features": features,
    }


def _feature_link(facet: Dict):
    for feature in facet.get("features", []):
        if feature.get("$type") == LINK_FEATURE and feature.get("uri"):
            return feature["uri"]
        if feature.get("$type") == MENTION_FEATURE and feature.get("did"):
            return PROFILE_URL.format(did=feature["did"])
    return None


def facets_to_markdown(text: str, facets: List) -> str:
    """
    Renders post text as markdown, turning link and mention facets into [label](url) links.

    Facet offsets are UTF-8 byte offsets. Facets that overlap an earlier one or
    fall outside the text are ignored.
    """
    text_bytes = text.encode("UTF-8")
    facet_dicts = sorted((facet_to_dict(f) for f in facets or []), key=lambda f: f["index"]["byteStart"])

    markdown = ""
    cursor = 0
    for facet in facet_dicts:
        start = facet["index"]["byteStart"]
        end = facet["index"]["byteEnd"]
        url = _feature_link(facet)
        if url is None or start < cursor or end > len(text_bytes) or start >= end:
            continue
        markdown += text_bytes[cursor:start].decode("UTF-8", errors="replace")
        markdown += f"[{text_bytes[start:end].decode('UTF-8', errors='replace')}]({url})"
        cursor = end
    markdown += text_bytes[cursor:].decode("UTF-8", errors="replace")
    return markdown


def format_posted_at(created_at: str) -> str:
    return parser.isoparse(created_at).strftime('%Y-%m-%d %H:%M:%S %Z').strip()


def format_feed_item(item, index: int) -> str:
    """
    Formats one timeline entry as a markdown section.

    Args:
        item: A feed view post with .post.record, .post.author and .post.cid.
        index: Position in the page; every entry after the first gets a '---' separator.
    """
    post = item.post
    record = post.record
    author = post.author.display_name or post.author.handle
    markdown = facets_to_markdown(record.text, record.facets)
    separator = "\n---\n" if index > 0 else "\n"

    return (
        f"{separator}"
        f"# Posted: {format_posted_at(record.created_at)}\n\n"
        f"## {author}\n"
        f"![{author}s icon|80x80]({post.author.avatar})\n"
        f"{markdown}\n\n"
        f"cid: {post.cid}"
    )


async def fetch_timeline_markdown(client: AsyncClient, limit: int = 10) -> str:
    """
    Fetches one page of the home timeline and renders it as markdown.

    Args:
        client: A logged in atproto AsyncClient.
        limit: Number of posts to fetch, between 1 and 50.
    """
    response = await client.get_timeline(limit=validate_timeline_limit(limit))
    return "\n".join(format_feed_item(item, i) for i, item in enumerate(response.feed))


def timeline_filename(now: datetime) -> str:
    return f"timeline_{now.strftime('%Y-%m-%d-%H-%M-%S')}.md"
