"""HTTP image source: paginated reference listing and image download."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import TypeAdapter, ValidationError

from ovrcurator.errors import TransientNetworkError
from ovrcurator.models import ImageReference

if TYPE_CHECKING:
    from ovrcurator.config import Settings

logger = logging.getLogger(__name__)

_REFERENCE_LIST = TypeAdapter(list[ImageReference])


class ImageSource(Protocol):
    """Protocol for the remote candidate listing."""

    async def fetch_references(self, count: int, page_size: int) -> list[ImageReference]:
        """Return up to ``count`` references, fetched ``page_size`` at a time."""
        ...


class ImageDownloader(Protocol):
    """Protocol for fetching image bytes."""

    async def download(self, reference: ImageReference) -> bytes:
        """Return the raw bytes behind ``reference.url``."""
        ...


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared HTTP client used for listing and downloads."""
    headers = {}
    if settings.source_api_key:
        headers["x-api-key"] = settings.source_api_key
    return httpx.AsyncClient(
        headers=headers,
        timeout=settings.http_timeout,
        follow_redirects=True,
    )


class HttpImageSource:
    """Lists random images from a ``?limit=&page=&order=`` style search endpoint."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._url = settings.source_url
        self._extensions = frozenset(ext.lower().lstrip(".") for ext in settings.supported_extensions)

    async def fetch_references(self, count: int, page_size: int) -> list[ImageReference]:
        """Page through the source until ``count`` supported references are gathered.

        References with an unsupported extension are dropped. Paging stops
        early when a page adds nothing new.

        Raises:
            TransientNetworkError: On transport errors, non-2xx responses, or an
                undecodable body.
        """
        result: list[ImageReference] = []
        seen: set[str] = set()
        page = 0
        total_fetched = 0

        while len(result) < count:
            references = await self._fetch_page(page, page_size)
            total_fetched += len(references)
            page += 1

            added = 0
            for reference in references:
                if reference.extension not in self._extensions or reference.id in seen:
                    continue
                seen.add(reference.id)
                result.append(reference)
                added += 1

            if added == 0:
                break

        logger.info(
            "Requested %d references: fetched %d over %d pages, %d after filtering",
            count,
            total_fetched,
            page,
            len(result),
        )
        return result[:count]

    async def _fetch_page(self, page: int, page_size: int) -> list[ImageReference]:
        params = {"limit": page_size, "page": page, "order": "Rand"}
        try:
            response = await self._client.get(self._url, params=params)
            response.raise_for_status()
            return _REFERENCE_LIST.validate_json(response.content)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Listing page {page} failed: {exc}") from exc
        except ValidationError as exc:
            raise TransientNetworkError(f"Listing page {page} returned an invalid body: {exc}") from exc


class HttpImageDownloader:
    """Downloads image bytes over HTTP."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def download(self, reference: ImageReference) -> bytes:
        """Fetch the image bytes.

        Raises:
            TransientNetworkError: On transport errors or non-2xx responses.
        """
        try:
            response = await self._client.get(reference.url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Download of {reference.url} failed: {exc}") from exc
        logger.debug("Downloaded %s (%d bytes)", reference.file_name, len(response.content))
        return response.content
