"""Artifact storage collaborators.

Both stores implement the publisher's ``ArtifactStore`` protocol and raise
``StorageError`` on any failure. Draft artifacts (tag-triggered runs) are kept
apart from released ones until a human promotes them.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

import httpx

from tiergate.config import ArtifactKind, ArtifactTarget
from tiergate.pipeline.models import BuildArtifact
from tiergate.pipeline.publisher import StorageError

logger = logging.getLogger(__name__)


class FilesystemArtifactStore:
    """Copies artifacts into a directory tree.

    ``target.destination`` is a directory, relative to ``root`` unless absolute.
    Drafts land in a ``drafts/`` subdirectory of the destination.
    """

    def __init__(self, root: Path):
        self.root = root

    async def put(self, artifact: BuildArtifact, target: ArtifactTarget, *, draft: bool) -> None:
        dest_dir = Path(target.destination)
        if not dest_dir.is_absolute():
            dest_dir = self.root / dest_dir
        if draft:
            dest_dir = dest_dir / "drafts"

        source = Path(artifact.uri)
        if not source.is_file():
            raise StorageError(f"artifact '{artifact.name}' not found at {source}")

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest_dir / artifact.name)
        except OSError as exc:
            raise StorageError(f"copy of '{artifact.name}' to {dest_dir} failed: {exc}") from exc

        logger.info("Stored %s%s at %s", artifact.name, " (draft)" if draft else "", dest_dir)


class HttpArtifactStore:
    """Uploads artifacts over HTTP.

    Object-store targets receive a ``PUT <destination>/<name>`` with the raw
    bytes. Release-channel targets receive a multipart ``POST <destination>``
    carrying the file and a ``draft`` flag.
    """

    def __init__(self, *, token: str | None = None, timeout: float = 60.0):
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        headers = {"User-Agent": "tiergate/0.1.0"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTP artifact store not started")
        return self._client

    async def put(self, artifact: BuildArtifact, target: ArtifactTarget, *, draft: bool) -> None:
        source = Path(artifact.uri)
        try:
            data = source.read_bytes()
        except OSError as exc:
            raise StorageError(f"artifact '{artifact.name}' unreadable: {exc}") from exc

        try:
            if target.kind == ArtifactKind.OBJECT_STORE:
                url = f"{target.destination.rstrip('/')}/{artifact.name}"
                if draft:
                    url = f"{target.destination.rstrip('/')}/drafts/{artifact.name}"
                resp = await self.client.put(url, content=data)
            else:
                url = target.destination
                resp = await self.client.post(
                    url,
                    data={"name": artifact.name, "draft": "true" if draft else "false"},
                    files={"file": (artifact.name, data)},
                )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"upload of '{artifact.name}' rejected ({exc.response.status_code})"
            ) from exc
        except httpx.HTTPError as exc:
            raise StorageError(f"upload of '{artifact.name}' failed: {exc}") from exc

        logger.info("Uploaded %s%s to %s", artifact.name, " (draft)" if draft else "", url)
