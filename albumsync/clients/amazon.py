"""Amazon Photos client using the cookie-authenticated Amazon Drive API."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from albumsync.clients.base import AttachResult
from albumsync.exceptions import AuthenticationError, TargetAPIError
from albumsync.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
NORTH_AMERICA_TLDS = frozenset({"com", "ca", "com.mx", "com.br"})
# Platform limit on node ids per album/trash/purge request.
MAX_BATCH_SIZE = 50
_BASE_PARAMS = {
    "asset": "ALL",
    "tempLink": "false",
    "resourceVersion": "V2",
    "ContentType": "JSON",
}
_REQUEST_TIMEOUT = 30.0
_UPLOAD_TIMEOUT = 300.0
_INTL_TOKEN_COOKIE = re.compile(r"^at[-_]acb(?P<tld>[a-z.]+)$")


class Node(BaseModel):
    """A file, folder or album on Amazon Drive."""

    id: str
    name: str | None = None
    kind: str | None = None
    status: str | None = None


class NodeList(BaseModel):
    data: list[Node] = Field(default_factory=list)
    next_token: str | None = Field(default=None, alias="nextToken")


class _RetryableResponseError(Exception):
    """Internal marker for 429/5xx responses and transport failures."""


def detect_tld(cookies: dict[str, str]) -> str:
    """Infer the Amazon marketplace TLD from the auth cookie names."""
    if "at-main" in cookies or "at_main" in cookies:
        return "com"
    for name in cookies:
        match = _INTL_TOKEN_COOKIE.match(name)
        if match:
            return match.group("tld")
    return "com"


def parse_cookie_string(raw: str) -> dict[str, str]:
    """Parse a browser ``Cookie`` header value into a name -> value mapping."""
    cookies: dict[str, str] = {}
    for part in raw.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies[name.strip()] = value.strip()
    return cookies


def _cookies_from_json(data: Any, path: Path) -> dict[str, str]:
    if isinstance(data, dict):
        return {str(k): str(v) for k, v in data.items()}
    if isinstance(data, list):
        # Browser extension export: [{"name": ..., "value": ...}, ...]
        cookies: dict[str, str] = {}
        for entry in data:
            if not isinstance(entry, dict) or "name" not in entry or "value" not in entry:
                msg = f"Cookie file {path} has an entry without name and value"
                raise ValueError(msg)
            cookies[str(entry["name"])] = str(entry["value"])
        return cookies
    msg = f"Cookie file {path} must contain a JSON object or a list of cookies"
    raise ValueError(msg)


def load_cookies(path: Path) -> dict[str, str]:
    """Load cookies from a JSON file (object or exported list) or a ``Cookie`` header string.

    Raises ValueError if the file is malformed or yields no cookies.
    """
    text = path.read_text(encoding="utf-8").strip()
    if text.startswith(("{", "[")):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"Cookie file {path} is not valid JSON: {exc}"
            raise ValueError(msg) from exc
        cookies = _cookies_from_json(data, path)
    else:
        cookies = parse_cookie_string(text)
    if not cookies:
        msg = f"Cookie file {path} contains no cookies"
        raise ValueError(msg)
    return cookies


def _chunks(ids: list[str], size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    return [ids[start : start + size] for start in range(0, len(ids), size)]


class AmazonPhotosClient:
    """Uploads to, organizes and deletes from an Amazon Photos library.

    Args:
        cookies: Browser session cookies for the Amazon account.
        auto_refresh: Exchange ``sess-at-main`` for fresh cookies on 401/403.
        cookies_path: Where refreshed cookies are persisted, if anywhere.
        retry_policy: Backoff for 429/5xx responses and transport errors.
        http_client: Injected client (tests); otherwise one is created.
    """

    def __init__(
        self,
        cookies: dict[str, str],
        *,
        auto_refresh: bool = True,
        cookies_path: Path | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._cookies = dict(cookies)
        self._auto_refresh = auto_refresh
        self._cookies_path = cookies_path
        self._retry = retry_policy or RetryPolicy()
        self._client = http_client or httpx.AsyncClient(timeout=_REQUEST_TIMEOUT)
        self._owns_client = http_client is None
        self._tld = detect_tld(self._cookies)
        self._root_node_id: str | None = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_file(
        cls,
        path: Path,
        *,
        auto_refresh: bool = True,
        retry_policy: RetryPolicy | None = None,
    ) -> AmazonPhotosClient:
        """Create a client from a cookie file; refreshed cookies are written back."""
        cookies = load_cookies(path)
        logger.info("Loaded %d Amazon cookies from %s", len(cookies), path)
        return cls(
            cookies,
            auto_refresh=auto_refresh,
            cookies_path=path,
            retry_policy=retry_policy,
        )

    # ── URLs and headers ─────────────────────────────

    @property
    def tld(self) -> str:
        return self._tld

    @property
    def drive_url(self) -> str:
        return f"https://www.amazon.{self._tld}/drive/v1"

    @property
    def cdproxy_url(self) -> str:
        region = "na" if self._tld in NORTH_AMERICA_TLDS else "eu"
        return f"https://content-{region}.drive.amazonaws.com/cdproxy/nodes"

    @property
    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self._cookies.items())

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Cookie": self.cookie_header,
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        session_id = self._cookies.get("session-id")
        if session_id:
            headers["x-amzn-sessionid"] = session_id
        return headers

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Transport ────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        content: bytes | None = None,
        extra_headers: dict[str, str] | None = None,
        timeout: float = _REQUEST_TIMEOUT,
    ) -> httpx.Response:
        """Send one request with retries for throttling and transient failures."""

        async def _attempt() -> httpx.Response:
            headers = self.headers
            if extra_headers:
                headers.update(extra_headers)
            try:
                resp = await self._client.request(
                    method,
                    url,
                    params={**_BASE_PARAMS, **(params or {})},
                    json=json_body,
                    content=content,
                    headers=headers,
                    timeout=timeout,
                )
            except httpx.TransportError as exc:
                raise _RetryableResponseError(f"{method} {url}: {exc}") from exc
            if resp.status_code == 429 or resp.status_code >= 500:
                raise _RetryableResponseError(f"{method} {url}: HTTP {resp.status_code}")
            return resp

        try:
            return await self._retry.run(
                _attempt,
                retry_on=(_RetryableResponseError,),
                description=f"Amazon {method}",
            )
        except _RetryableResponseError as exc:
            raise TargetAPIError(str(exc)) from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        allow_conflict: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, refreshing cookies once on 401/403.

        With ``allow_conflict`` a 409 is returned to the caller untouched. Other
        non-2xx statuses raise TargetAPIError; auth failures raise
        AuthenticationError.
        """
        resp = await self._send(method, url, **kwargs)
        if resp.status_code in (401, 403):
            if self._auto_refresh and await self.refresh_credentials():
                resp = await self._send(method, url, **kwargs)
            if resp.status_code in (401, 403):
                msg = f"Amazon Photos auth failed: HTTP {resp.status_code}"
                raise AuthenticationError(msg)
        if resp.is_success or (allow_conflict and resp.status_code == 409):
            return resp
        msg = f"Amazon API error on {method} {url}: HTTP {resp.status_code} {resp.text[:200]}"
        raise TargetAPIError(msg, status_code=resp.status_code)

    # ── Authentication ───────────────────────────────

    async def check_authenticated(self) -> bool:
        """Probe the drive API with the current cookies. Never raises."""
        try:
            resp = await self._client.get(
                f"{self.drive_url}/nodes",
                params={**_BASE_PARAMS, "filters": "isRoot:true"},
                headers=self.headers,
                timeout=_REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            logger.warning("Amazon auth check failed: %s", exc)
            return False
        if resp.status_code != 200:
            logger.warning("Amazon auth check returned HTTP %d", resp.status_code)
            return False
        return True

    async def refresh_credentials(self) -> bool:
        """Exchange the long-lived session token for fresh auth cookies.

        Returns False when refresh is impossible (no ``sess-at-main``) or the
        exchange fails. Refreshed cookies are persisted when a path is known.
        """
        async with self._refresh_lock:
            if "sess-at-main" not in self._cookies:
                logger.warning("Cannot refresh Amazon cookies: sess-at-main missing")
                return False
            try:
                resp = await self._client.post(
                    f"https://www.amazon.{self._tld}/ap/exchangetoken/refresh",
                    data={
                        "requested_token_type": "auth_cookies",
                        "app_name": "Amazon Photos",
                        "domain": f".amazon.{self._tld}",
                    },
                    headers=self.headers,
                    timeout=_REQUEST_TIMEOUT,
                )
            except httpx.HTTPError as exc:
                logger.error("Amazon cookie refresh failed: %s", exc)
                return False
            if resp.status_code != 200:
                logger.error("Amazon cookie refresh returned HTTP %d", resp.status_code)
                return False

            try:
                fresh = resp.json()["response"]["tokens"]["cookies"]
                updates = {str(c["Name"]): str(c["Value"]) for c in fresh}
            except (ValueError, KeyError, TypeError) as exc:
                logger.error("Unexpected cookie refresh response: %s", exc)
                return False
            if not updates:
                logger.error("Cookie refresh returned no cookies")
                return False

            self._cookies.update(updates)
            self._save_cookies()
            logger.info("Refreshed %d Amazon cookie(s)", len(updates))
            return True

    def _save_cookies(self) -> None:
        if self._cookies_path is None:
            return
        try:
            self._cookies_path.parent.mkdir(parents=True, exist_ok=True)
            self._cookies_path.write_text(json.dumps(self._cookies, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to persist refreshed cookies to %s: %s", self._cookies_path, exc)

    # ── Nodes and albums ─────────────────────────────

    async def get_root_id(self) -> str:
        """Return (and cache) the id of the drive root folder."""
        if self._root_node_id is not None:
            return self._root_node_id
        resp = await self._request(
            "GET", f"{self.drive_url}/nodes", params={"filters": "isRoot:true"}
        )
        nodes = self._parse_nodes(resp)
        if not nodes.data:
            raise TargetAPIError("Failed to get root node")
        self._root_node_id = nodes.data[0].id
        return self._root_node_id

    async def find_album(self, name: str) -> Node | None:
        """Find an album by exact name."""
        resp = await self._request(
            "GET",
            f"{self.drive_url}/nodes",
            params={"filters": "kind:VISUAL_COLLECTION", "limit": "200"},
        )
        for node in self._parse_nodes(resp).data:
            if node.name == name:
                return node
        return None

    async def create_album(self, name: str) -> str:
        resp = await self._request(
            "POST",
            f"{self.drive_url}/nodes",
            json_body={"kind": "VISUAL_COLLECTION", "name": name},
        )
        try:
            node = Node.model_validate(resp.json())
        except (ValidationError, ValueError) as exc:
            raise TargetAPIError(f"Unexpected create album response: {exc}") from exc
        logger.info("Created album %r (%s)", name, node.id)
        return node.id

    async def ensure_collection_exists(self, name: str) -> str:
        """Find-or-create the named album and return its id."""
        album = await self.find_album(name)
        if album is not None:
            return album.id
        return await self.create_album(name)

    async def get_album_node_ids(self, album_id: str) -> set[str]:
        """Return the ids of every node currently in the album."""
        node_ids: set[str] = set()
        next_token: str | None = None
        while True:
            params = {"limit": "200"}
            if next_token:
                params["startToken"] = next_token
            resp = await self._request(
                "GET", f"{self.drive_url}/nodes/{album_id}/children", params=params
            )
            page = self._parse_nodes(resp)
            node_ids.update(node.id for node in page.data)
            if not page.next_token or not page.data:
                return node_ids
            next_token = page.next_token

    async def _patch_album(self, album_id: str, op: str, target_ids: list[str]) -> None:
        for batch in _chunks(target_ids):
            await self._request(
                "PATCH",
                f"{self.drive_url}/nodes/{album_id}/children",
                json_body={"op": op, "value": batch},
            )

    async def attach_if_absent(self, collection_id: str, target_ids: list[str]) -> AttachResult:
        """Add nodes to an album, skipping any that are already members."""
        if not target_ids:
            return AttachResult(added=0, skipped=0)
        existing = await self.get_album_node_ids(collection_id)
        missing = [node_id for node_id in dict.fromkeys(target_ids) if node_id not in existing]
        if missing:
            await self._patch_album(collection_id, "add", missing)
        result = AttachResult(added=len(missing), skipped=len(target_ids) - len(missing))
        logger.debug(
            "Album %s: %d added, %d already present", collection_id, result.added, result.skipped
        )
        return result

    async def detach(self, collection_id: str, target_ids: list[str]) -> None:
        """Remove nodes from an album."""
        if target_ids:
            await self._patch_album(collection_id, "remove", target_ids)

    async def trash(self, target_ids: list[str]) -> None:
        """Move nodes to the trash."""
        for batch in _chunks(target_ids):
            await self._request(
                "PATCH",
                f"{self.drive_url}/trash",
                json_body={
                    "recurse": "true",
                    "op": "add",
                    "filters": "",
                    "conflictResolution": "RENAME",
                    "value": batch,
                    "resourceVersion": "V2",
                    "ContentType": "JSON",
                },
            )
        logger.debug("Trashed %d node(s)", len(target_ids))

    async def purge(self, target_ids: list[str]) -> None:
        """Permanently delete trashed nodes."""
        for batch in _chunks(target_ids):
            await self._request(
                "POST",
                f"{self.drive_url}/bulk/nodes/purge",
                json_body={"recurse": "false", "nodeIds": batch},
            )
        logger.debug("Purged %d node(s)", len(target_ids))

    # ── Upload ───────────────────────────────────────

    @staticmethod
    def md5(data: bytes) -> str:
        return hashlib.md5(data, usedforsecurity=False).hexdigest()

    async def upload(self, data: bytes, suggested_name: str) -> str:
        """Upload a photo into the drive root and return its node id.

        Amazon deduplicates by MD5; a 409 means the bytes already exist and
        the existing node id is returned.
        """
        parent_id = await self.get_root_id()
        resp = await self._request(
            "POST",
            self.cdproxy_url,
            params={
                "name": suggested_name,
                "kind": "FILE",
                "parentNodeId": parent_id,
                "conflictResolution": "RENAME",
            },
            content=data,
            extra_headers={
                "Content-Type": "application/octet-stream",
                "x-amzn-file-md5": self.md5(data),
            },
            timeout=_UPLOAD_TIMEOUT,
            allow_conflict=True,
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise TargetAPIError(f"Unexpected upload response: {exc}") from exc

        if resp.status_code == 409:
            node_id = (body.get("info") or {}).get("nodeId") or body.get("id")
            if not node_id:
                raise TargetAPIError("Upload conflict without an existing node id", 409)
            logger.info("%s already exists on Amazon as %s", suggested_name, node_id)
            return str(node_id)

        node_id = body.get("id")
        if not node_id:
            raise TargetAPIError("Upload response missing node id", resp.status_code)
        logger.info("Uploaded %s as %s", suggested_name, node_id)
        return str(node_id)

    @staticmethod
    def _parse_nodes(resp: httpx.Response) -> NodeList:
        try:
            return NodeList.model_validate(resp.json())
        except (ValidationError, ValueError) as exc:
            raise TargetAPIError(f"Unexpected node list response: {exc}") from exc
