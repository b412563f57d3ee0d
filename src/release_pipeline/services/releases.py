"""GitHub release publisher.

Uploads a built binary to the release for the triggering tag, under the job's
asset name, replacing any asset that already has that name. Publishing the
same asset twice therefore always leaves exactly one asset of that name.

Flow for one asset:
1. GET  /repos/{repo}/releases/tags/{tag}        (optionally create it)
2. GET  /repos/{repo}/releases/{id}/assets       (paginated)
3. DELETE /repos/{repo}/releases/assets/{id}     (same-named asset, if any)
4. POST {upload_url}?name={asset_name}           (raw bytes)

Design notes:
- Uses httpx for async HTTP requests, like the other GitHub clients
- Metadata requests retry transient transport errors with tenacity; the
  upload is never retried blindly
- A failed or cancelled upload removes any half-uploaded asset of the same
  name before the error propagates, so no partial artifact stays visible

GitHub API docs: https://docs.github.com/en/rest/releases
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from release_pipeline.errors import PublishError
from release_pipeline.logging_config import get_logger
from release_pipeline.schemas import MatrixEntry, ReleaseTrigger

logger = get_logger(__name__)


class PublishedAsset(BaseModel):
    """Acknowledgement of a successful upload.

    Attributes:
        name: Asset name on the release
        size: Uploaded size in bytes
        url: Browser download URL, when the service reports one
        replaced: Whether an existing asset of the same name was removed
    """

    name: str
    size: int
    url: str | None = None
    replaced: bool = False


# ---------------------------------------------------------------------------
# Protocol (Interface)
# ---------------------------------------------------------------------------


class ArtifactPublisherProtocol(Protocol):
    """Interface for release hosting backends."""

    async def publish(
        self, entry: MatrixEntry, artifact: Path, trigger: ReleaseTrigger
    ) -> PublishedAsset:
        """Upload-or-replace entry.asset_name on the release for trigger.

        Args:
            entry: Matrix entry whose asset_name names the upload
            artifact: Local path of the built binary
            trigger: Tag identifying the release

        Returns:
            The published asset

        Raises:
            PublishError: On missing release, rejected upload or transport error
        """
        ...


# ---------------------------------------------------------------------------
# Concrete Implementation
# ---------------------------------------------------------------------------


class GitHubReleasePublisher:
    """Publishes assets through the GitHub REST API.

    Usage:
        publisher = GitHubReleasePublisher("myorg/diamant", token="ghp_...")
        asset = await publisher.publish(entry, Path("target/.../diamant"), trigger)
    """

    BASE_URL = "https://api.github.com"
    UPLOAD_URL = "https://uploads.github.com"

    def __init__(
        self,
        repository: str,
        token: str | None = None,
        create_missing: bool = False,
        base_url: str | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the publisher.

        Args:
            repository: Repository in "owner/name" format
            token: Token with contents:write on the repository
            create_missing: Create the release if the tag has none
            base_url: API root, for GitHub Enterprise
            timeout: Per-request timeout in seconds; uploads can be large
            transport: Custom httpx transport (used by tests)
        """
        self._repo = repository
        self._create_missing = create_missing
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def publish(
        self, entry: MatrixEntry, artifact: Path, trigger: ReleaseTrigger
    ) -> PublishedAsset:
        asset_name = entry.asset_name
        try:
            content = artifact.read_bytes()
        except OSError as exc:
            raise PublishError(entry, f"Cannot read artifact {artifact}: {exc}") from exc

        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                release = await self._find_release(client, trigger.tag)
                if release is None:
                    raise PublishError(
                        entry,
                        f"No release exists for tag {trigger.tag!r} in {self._repo}",
                        status_code=404,
                    )
                replaced = await self._delete_existing(client, release["id"], asset_name)
            except httpx.HTTPStatusError as exc:
                raise PublishError(
                    entry,
                    f"GitHub API returned {exc.response.status_code} for "
                    f"{exc.request.method} {exc.request.url.path}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise PublishError(entry, f"GitHub API request failed: {exc}") from exc

            data = await self._upload(client, entry, release, content)

        logger.info(
            "asset_uploaded",
            asset=asset_name,
            tag=trigger.tag,
            size=len(content),
            replaced=replaced,
        )
        return PublishedAsset(
            name=asset_name,
            size=len(content),
            url=data.get("browser_download_url"),
            replaced=replaced,
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        return await client.request(method, url, **kwargs)

    async def _find_release(
        self, client: httpx.AsyncClient, tag: str
    ) -> dict[str, Any] | None:
        """Look up the release for a tag, creating it if configured to."""
        resp = await self._request(client, "GET", f"/repos/{self._repo}/releases/tags/{tag}")
        if resp.status_code == 404:
            if not self._create_missing:
                return None
            return await self._create_release(client, tag)
        resp.raise_for_status()
        return resp.json()

    async def _create_release(self, client: httpx.AsyncClient, tag: str) -> dict[str, Any]:
        resp = await self._request(
            client,
            "POST",
            f"/repos/{self._repo}/releases",
            json={"tag_name": tag, "name": tag},
        )
        if resp.status_code == 422:
            # A sibling job created it first
            resp = await self._request(
                client, "GET", f"/repos/{self._repo}/releases/tags/{tag}"
            )
            resp.raise_for_status()
            return resp.json()
        resp.raise_for_status()
        logger.info("release_created", tag=tag, repo=self._repo)
        return resp.json()

    async def _list_assets(
        self, client: httpx.AsyncClient, release_id: int
    ) -> list[dict[str, Any]]:
        """Fetch every asset of a release, following Link pagination."""
        all_items: list[dict[str, Any]] = []
        next_url: str | None = f"/repos/{self._repo}/releases/{release_id}/assets"
        params: dict[str, int] | None = {"per_page": 100}

        while next_url:
            resp = await self._request(client, "GET", next_url, params=params)
            resp.raise_for_status()
            all_items.extend(resp.json())
            next_url = self._parse_next_link(resp.headers.get("link", ""))
            # The next link already carries its query string
            params = None

        return all_items

    async def _delete_existing(
        self,
        client: httpx.AsyncClient,
        release_id: int,
        asset_name: str,
        only_incomplete: bool = False,
    ) -> bool:
        """Delete assets named asset_name. Returns whether any were removed."""
        removed = False
        for asset in await self._list_assets(client, release_id):
            if asset.get("name") != asset_name:
                continue
            if only_incomplete and asset.get("state") == "uploaded":
                continue
            resp = await self._request(
                client, "DELETE", f"/repos/{self._repo}/releases/assets/{asset['id']}"
            )
            if resp.status_code != 404:
                resp.raise_for_status()
            logger.info("asset_deleted", asset=asset_name, asset_id=asset["id"])
            removed = True
        return removed

    async def _upload(
        self,
        client: httpx.AsyncClient,
        entry: MatrixEntry,
        release: dict[str, Any],
        content: bytes,
    ) -> dict[str, Any]:
        upload_url = (release.get("upload_url") or "").split("{", 1)[0] or (
            f"{self.UPLOAD_URL}/repos/{self._repo}/releases/{release['id']}/assets"
        )
        try:
            resp = await client.post(
                upload_url,
                params={"name": entry.asset_name},
                content=content,
                headers={"Content-Type": "application/octet-stream"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            await self._discard_partial(client, release["id"], entry.asset_name)
            raise PublishError(
                entry,
                f"Upload of {entry.asset_name} rejected with {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            await self._discard_partial(client, release["id"], entry.asset_name)
            raise PublishError(entry, f"Upload of {entry.asset_name} failed: {exc}") from exc
        except asyncio.CancelledError:
            await self._discard_partial(client, release["id"], entry.asset_name)
            raise
        return resp.json()

    async def _discard_partial(
        self, client: httpx.AsyncClient, release_id: int, asset_name: str
    ) -> None:
        """Remove a half-uploaded asset after a failed upload."""
        try:
            await self._delete_existing(client, release_id, asset_name, only_incomplete=True)
        except httpx.HTTPError as exc:
            logger.warning(
                "partial_asset_cleanup_failed", asset=asset_name, error=str(exc)
            )

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the 'next' URL from a GitHub Link header."""
        if not link_header:
            return None
        for part in link_header.split(","):
            if 'rel="next"' in part:
                return part.split(";")[0].strip().strip("<>")
        return None


# ---------------------------------------------------------------------------
# Mock Implementation (for testing and dry runs)
# ---------------------------------------------------------------------------


class MockPublisher:
    """In-memory release store with the same overwrite semantics as GitHub.

    Usage:
        publisher = MockPublisher(existing_tags={"v1.0.0"})
        await publisher.publish(entry, artifact, ReleaseTrigger(ref="v1.0.0"))
        publisher.releases["v1.0.0"]  # {asset_name: bytes}
    """

    def __init__(
        self,
        existing_tags: Iterable[str] | None = None,
        fail_assets: set[str] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            existing_tags: Tags that already have a release. If None, releases
                           are created on first upload.
            fail_assets: Asset names whose upload should be rejected
        """
        self._create_missing = existing_tags is None
        self._fail_assets = fail_assets or set()
        self.releases: dict[str, dict[str, bytes]] = {
            tag: {} for tag in (existing_tags or ())
        }
        self.uploads: list[tuple[str, str]] = []

    async def publish(
        self, entry: MatrixEntry, artifact: Path, trigger: ReleaseTrigger
    ) -> PublishedAsset:
        tag = trigger.tag
        if entry.asset_name in self._fail_assets:
            raise PublishError(
                entry, f"Upload of {entry.asset_name} rejected with 502", status_code=502
            )
        if tag not in self.releases:
            if not self._create_missing:
                raise PublishError(
                    entry, f"No release exists for tag {tag!r}", status_code=404
                )
            self.releases[tag] = {}

        content = artifact.read_bytes()
        assets = self.releases[tag]
        replaced = entry.asset_name in assets
        assets[entry.asset_name] = content
        self.uploads.append((tag, entry.asset_name))
        logger.info(
            "asset_uploaded",
            asset=entry.asset_name,
            tag=tag,
            size=len(content),
            backend="memory",
        )
        return PublishedAsset(name=entry.asset_name, size=len(content), replaced=replaced)
