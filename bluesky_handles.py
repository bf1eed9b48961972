import asyncio
import sys
from typing import Dict, Iterable, Optional

import aiohttp

RESOLVE_HANDLE_ENDPOINT = "/xrpc/com.atproto.identity.resolveHandle"


async def resolve_handle(session: aiohttp.ClientSession, pds_url: str, handle: str) -> Optional[str]:
    """
    Resolves a single handle to its DID.

    Returns None when the handle cannot be resolved. Every failure is reported
    on stderr with its reason and swallowed here, so one bad handle never
    affects the others in a batch.
    """
    try:
        async with session.get(
            pds_url.rstrip("/") + RESOLVE_HANDLE_ENDPOINT,
            params={"handle": handle},
        ) as resp:
            if resp.status == 400:
                # Unknown handle; the mention stays plain text in the post.
                print(f"Handle '{handle}' could not be resolved (not_found). Status: 400", file=sys.stderr)
                return None
            if resp.status < 200 or resp.status >= 300:
                print(f"Failed to resolve handle '{handle}' (http_error). Status: {resp.status}", file=sys.stderr)
                return None
            data = await resp.json()
    except (aiohttp.ContentTypeError, ValueError) as e:
        print(f"Error resolving handle '{handle}' (malformed): {e}", file=sys.stderr)
        return None
    except aiohttp.ClientError as e:
        print(f"Error resolving handle '{handle}' (network): {e}", file=sys.stderr)
        return None

    did = data.get("did") if isinstance(data, dict) else None
    if not did:
        print(f"No DID found in response for handle '{handle}' (malformed).", file=sys.stderr)
        return None
    return did


async def _resolve_with_timeout(session, pds_url: str, handle: str, timeout: Optional[float]) -> Optional[str]:
    try:
        return await asyncio.wait_for(resolve_handle(session, pds_url, handle), timeout)
    except asyncio.TimeoutError:
        print(f"Timed out resolving handle '{handle}' (timeout) after {timeout} seconds.", file=sys.stderr)
        return None
    except Exception as e:
        print(f"Unexpected error resolving handle '{handle}' (error): {e}", file=sys.stderr)
        return None


async def resolve_handles(
    handles: Iterable[str],
    pds_url: str,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: Optional[float] = 10.0,
) -> Dict[str, Optional[str]]:
    """
    Resolves a batch of handles to DIDs concurrently.

    Each unique handle is looked up once and all lookups run at the same time.
    The call waits for every lookup to finish, and a failed or timed out lookup
    maps its handle to None instead of failing the batch.

    Args:
        handles: Handles without the leading '@'. Duplicates are ignored.
        pds_url: Base URL of the PDS serving com.atproto.identity.resolveHandle.
        session: Optional aiohttp.ClientSession. When omitted, one is opened
            for this batch and closed afterwards.
        timeout: Seconds allowed for each lookup, or None for no limit.

    Returns:
        A dictionary with one entry per unique handle: its DID or None.
    """
    unique_handles = list(dict.fromkeys(handles))
    if not unique_handles:
        return {}

    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await resolve_handles(unique_handles, pds_url, session=own_session, timeout=timeout)

    dids = await asyncio.gather(
        *(_resolve_with_timeout(session, pds_url, handle, timeout) for handle in unique_handles)
    )
    return dict(zip(unique_handles, dids))
