from bluesky_facets import parse_facets
import sys
import json
from typing import Callable, Dict, List, Optional
import asyncio
import aiohttp
from datetime import datetime, timezone
from datetime import timedelta

NOTIFY_PREFIX = "Bluesky: "


def format_timestamp(dt: datetime) -> str:
    """Formats a datetime as 'YYYY-MM-DD HH:MM:SS' in UTC."""
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def annotate_posted(text: str, posted_at: datetime) -> str:
    """Prepends the 'posted at' confirmation marker to the posted text."""
    return f"posted at {format_timestamp(posted_at)} UTC\n{text}"


class BlueskyPoster:
    """
        A class to handle sessions and rich text posts on a Bluesky server.

        Markdown links and @mentions in the posted text become facets; see
        bluesky_facets.parse_facets.

        Attributes:
            pds_url (str): The URL of the Bluesky server.
            handle (str): The user handle for authentication.
            password (str): The app password for authentication.
            access_jwt (str): The access token for the session.
            did (str): The decentralized identifier for the session.
            session_lock (asyncio.Lock): A lock to manage session creation.
            session (dict): The current session information.
            session_expiry (datetime): The expiry time of the current session.
            notify (callable): Receives short human-readable status messages.
            resolve_timeout (float): Seconds allowed for each mention handle lookup.
        """
    def __init__(self, pds_url, handle, password, notify: Callable[[str], None] = print, resolve_timeout: float = 10.0):
        """
        Initializes the instance with server URL, user handle, and password, and sets up session management attributes.
        """
        self.pds_url = pds_url.rstrip("/")
        self.handle = handle
        self.password = password
        self.access_jwt = None
        self.did = None
        self.session_lock = asyncio.Lock()
        self.session = None
        self.session_expiry = None
        self._notify = notify
        self.resolve_timeout = resolve_timeout

    def notify(self, message: str):
        self._notify(f"{NOTIFY_PREFIX}{message}")

    @property
    def has_session(self) -> bool:
        if self.session is None or self.access_jwt is None:
            return False
        return self.session_expiry is None or datetime.now(timezone.utc) <= self.session_expiry

    async def bsky_login_session(self, pds_url: str, handle: str, password: str) -> Optional[Dict]:
        """
            Initiates an asynchronous login session with a Bluesky server.

            Args:
                pds_url: The URL of the Bluesky server.
                handle: The user handle for login.
                password: The app password for login.

            Returns:
                A dictionary containing the session data if successful, or None if an error occurs.
            """
        headers = {'Content-Type': 'application/json'}

        try:
            async with aiohttp.ClientSession() as session:
                resp = await session.post(
                    pds_url + "/xrpc/com.atproto.server.createSession",
                    json={"identifier": handle, "password": password},
                    headers=headers
                )
                resp.raise_for_status()  # This will raise an exception for 4xx and 5xx status codes
                return await resp.json()
        except aiohttp.ClientError as e:
            print(f"An error occurred during the login request: {e}", file=sys.stderr)
            return None

    async def get_or_create_session(self):
        """
        Manages the session lifecycle, creating a new session if none exists or if the current session has expired.
        """
        async with self.session_lock:
            if self.session is None or (self.session_expiry and datetime.now(timezone.utc) > self.session_expiry):
                self.session = await self.bsky_login_session(self.pds_url, self.handle, self.password)
                if self.session is None:
                    print("Authentication failed", file=sys.stderr)
                    return None

                self.access_jwt = self.session.get("accessJwt")
                self.did = self.session.get("did")

                expiry_seconds = self.session.get("expires_in", 3600)  # Default to 1 hour if unspecified
                self.session_expiry = datetime.now(timezone.utc) + timedelta(seconds=expiry_seconds)

            return self.session

    async def login(self) -> bool:
        """
        Logs in with the configured identifier and app password.

        Refuses without credentials or when a session already exists. The outcome is
        reported through notify.

        Returns:
            True if a new session was created, False otherwise.
        """
        if not self.handle or not self.password:
            self.notify("identifier or app password must be set")
            return False
        if self.has_session:
            self.notify("you are already logged in")
            return False

        if await self.get_or_create_session() is None:
            self.notify("login failed")
            return False

        self.notify("login succeeded")
        return True

    async def create_post(self, text: str, facets: List[Dict]) -> Optional[Dict]:
        """
        Creates a new app.bsky.feed.post record.

            Args:
            text: The final post text. Facet offsets index into this text.
            facets: A list of app.bsky.richtext.facet objects.

            Returns:
            The createRecord response (uri, cid) or None if the request failed.
        """
        # trailing "Z" is preferred over "+00:00"
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        # these are the required fields which every post must include
        post = {
            "$type": "app.bsky.feed.post",
            "text": text,
            "createdAt": now,
            "facets": facets,
        }

        print("Final post object being sent:", file=sys.stderr)
        print(json.dumps(post, indent=2), file=sys.stderr)

        try:
            async with aiohttp.ClientSession() as session:
                resp = await session.post(
                    self.pds_url + "/xrpc/com.atproto.repo.createRecord",
                    headers={"Authorization": "Bearer " + self.access_jwt},
                    json={
                        "repo": self.did,
                        "collection": "app.bsky.feed.post",
                        "record": post,
                    },
                )
                resp.raise_for_status()
                return await resp.json()
        except aiohttp.ClientError as e:
            print(f"Error creating record: {e}", file=sys.stderr)
            return None

    async def post_selection(self, text: Optional[str]) -> Optional[str]:
        """
        Posts a selection of markdown-like text, with its links and mentions as facets.

        Args:
            text: The selected text, or None when nothing is selected.

        Returns:
            The selection with a 'posted at' marker prepended if the post succeeded,
            otherwise None.
        """
        if not self.has_session:
            self.notify("(Error) not authenticated")
            return None
        if not text:
            self.notify("texts are not selected")
            return None

        try:
            post_text, facets = await parse_facets(text, self.pds_url, timeout=self.resolve_timeout)
            response = await self.create_post(post_text, facets)
        except aiohttp.ClientError as e:
            print(f"Network error posting selection: {e}", file=sys.stderr)
            response = None

        if not response:
            self.notify("Failed to post")
            return None

        self.notify("Post message succeeded")
        return annotate_posted(text, datetime.now(timezone.utc))
