"""iCloud shared album client using the public sharedstreams web API."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from albumsync.clients.base import SourceItem
from albumsync.exceptions import SourceUnavailableError
from albumsync.services.datetime_service import parse_apple_date
from albumsync.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Apple answers 330 with X-Apple-MMe-Host when the album lives on another partition.
_PARTITION_REDIRECT_STATUS = 330
_DEFAULT_HOST = "p01-sharedstreams.icloud.com"
_REQUEST_TIMEOUT = 30.0
_DOWNLOAD_TIMEOUT = 120.0


class Derivative(BaseModel):
    """One rendition of a shared photo."""

    checksum: str
    file_size: int = Field(default=0, alias="fileSize")
    width: int = 0
    height: int = 0


class PhotoAsset(BaseModel):
    """A photo entry in the webstream response."""

    photo_guid: str = Field(alias="photoGuid")
    derivatives: dict[str, Derivative] = Field(default_factory=dict)
    caption: str | None = None
    date_created: str | float | None = Field(default=None, alias="dateCreated")


class WebstreamResponse(BaseModel):
    photos: list[PhotoAsset] = Field(default_factory=list)


class AssetLocation(BaseModel):
    url_location: str
    url_path: str


class AssetUrlsResponse(BaseModel):
    items: dict[str, AssetLocation] = Field(default_factory=dict)


def _is_retryable_download(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class _RetryableDownloadError(Exception):
    """Internal marker for download failures worth another attempt."""


class ICloudClient:
    """Lists and downloads photos of a public iCloud shared album."""

    def __init__(
        self,
        album_token: str,
        *,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not album_token:
            msg = "album_token must not be empty"
            raise ValueError(msg)
        self._album_token = album_token
        self._base_url = self._stream_url(_DEFAULT_HOST)
        self._retry = retry_policy or RetryPolicy()
        self._client = http_client or httpx.AsyncClient(timeout=_REQUEST_TIMEOUT)
        self._owns_client = http_client is None

    def _stream_url(self, host: str) -> str:
        return f"https://{host}/{self._album_token}/sharedstreams"

    @property
    def base_url(self) -> str:
        """Current sharedstreams base URL (updated by partition discovery)."""
        return self._base_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _discover_partition(self) -> None:
        """Switch to the partition host Apple redirects us to, if any."""
        resp = await self._client.post(
            f"{self._base_url}/webstream",
            content=_encode_body({"streamCtag": None}),
            headers={"Content-Type": "text/plain"},
            follow_redirects=False,
        )
        if resp.status_code == _PARTITION_REDIRECT_STATUS:
            host = resp.headers.get("X-Apple-MMe-Host")
            if host:
                self._base_url = self._stream_url(host)
                logger.debug("Discovered iCloud partition %s", host)

    async def _post_json(self, path: str, payload: str) -> Any:
        resp = await self._client.post(
            f"{self._base_url}/{path}",
            content=payload,
            headers={"Content-Type": "text/plain"},
        )
        if resp.status_code != 200:
            msg = f"iCloud {path} request failed: HTTP {resp.status_code}"
            raise SourceUnavailableError(msg)
        return resp.json()

    async def list_items(self) -> list[SourceItem]:
        """Fetch every photo in the album with its best-quality download URL.

        Raises SourceUnavailableError on HTTP, transport or payload errors.
        """
        logger.debug("Fetching photos from iCloud shared album")
        try:
            await self._discover_partition()
            webstream = WebstreamResponse.model_validate(
                await self._post_json("webstream", _encode_body({"streamCtag": None}))
            )
            if not webstream.photos:
                logger.info("No photos found in album")
                return []

            guids = [photo.photo_guid for photo in webstream.photos]
            assets = AssetUrlsResponse.model_validate(
                await self._post_json("webasseturls", _encode_body({"photoGuids": guids}))
            )
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(f"iCloud request failed: {exc}") from exc
        except (ValidationError, ValueError) as exc:
            raise SourceUnavailableError(f"Unexpected iCloud response: {exc}") from exc

        items: list[SourceItem] = []
        for photo in webstream.photos:
            item = _build_item(photo, assets.items)
            if item is None:
                logger.debug("Skipping %s: no download URL", photo.photo_guid)
                continue
            items.append(item)

        logger.info("Fetched %d photos from iCloud", len(items))
        return items

    async def fetch_content(self, item: SourceItem) -> bytes:
        """Download ``item`` with bounded retries.

        Raises SourceUnavailableError once retries are exhausted or on a
        non-retryable HTTP status.
        """
        logger.debug("Downloading %s", item.id)

        async def _download() -> bytes:
            try:
                resp = await self._client.get(item.content_location, timeout=_DOWNLOAD_TIMEOUT)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                if _is_retryable_download(exc):
                    raise _RetryableDownloadError(str(exc)) from exc
                raise SourceUnavailableError(f"Failed to download {item.id}: {exc}") from exc
            return resp.content

        try:
            return await self._retry.run(
                _download,
                retry_on=(_RetryableDownloadError,),
                description=f"Download of {item.id}",
            )
        except _RetryableDownloadError as exc:
            msg = (
                f"Failed to download {item.id} after "
                f"{self._retry.max_retries + 1} attempts: {exc}"
            )
            raise SourceUnavailableError(msg) from exc


def _encode_body(payload: dict[str, Any]) -> str:
    """Serialize a request body; the sharedstreams API expects text/plain JSON."""
    return json.dumps(payload, separators=(",", ":"))


def _build_item(photo: PhotoAsset, locations: dict[str, AssetLocation]) -> SourceItem | None:
    """Pick the widest derivative and resolve its download URL."""
    if not photo.derivatives:
        return None
    best = max(photo.derivatives.values(), key=lambda d: d.width)
    location = locations.get(best.checksum)
    if location is None:
        return None
    return SourceItem(
        id=photo.photo_guid,
        content_hash=best.checksum,
        content_location=f"https://{location.url_location}{location.url_path}",
        width=best.width,
        height=best.height,
        caption=photo.caption,
        date_created=parse_apple_date(photo.date_created),
    )
