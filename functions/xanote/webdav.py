"""
Backup storage: WebDAV uploads and an in-memory test double.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from xanote.backup import BackupConfig
from xanote.errors import TransientIOError, UploadError

logger = logging.getLogger(__name__)


class BackupStorage(Protocol):
    """Destination for backup documents."""

    async def upload(self, file_name: str, content: str) -> None:
        ...


def normalize_base_url(url: str) -> str:
    return url.rstrip("/") + "/"


async def upload_to_webdav(
    config: BackupConfig,
    file_name: str,
    content: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
    retry_backoff: float = 2.0,
) -> None:
    """
    PUT ``content`` to ``<webdav_url>/<file_name>``.

    Any non-2xx status raises ``UploadError``. Transport errors and 5xx
    responses are retried up to ``max_retries`` times with exponential backoff;
    other statuses fail immediately.
    """
    file_url = normalize_base_url(config.webdav_url) + file_name
    auth = httpx.BasicAuth(config.webdav_user, config.webdav_password)
    body = content.encode("utf-8")
    headers = {"Content-Type": "application/json"}

    attempt = 0
    while True:
        try:
            if client is not None:
                response = await client.put(file_url, content=body, headers=headers, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as own_client:
                    response = await own_client.put(
                        file_url, content=body, headers=headers, auth=auth
                    )
        except httpx.HTTPError as exc:
            error: TransientIOError = TransientIOError(
                f"WebDAV upload of {file_name} failed: {exc}"
            )
            retryable = True
        else:
            if response.is_success:
                logger.info("Uploaded %s to WebDAV (%d bytes)", file_name, len(body))
                return
            error = UploadError(
                f"WebDAV upload failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
            retryable = response.status_code >= 500

        if not retryable or attempt >= max_retries:
            raise error
        delay = retry_backoff * (2 ** attempt)
        attempt += 1
        logger.warning(
            "%s; retrying in %.1fs (attempt %d/%d)", error, delay, attempt, max_retries
        )
        await asyncio.sleep(delay)


@dataclass
class WebDavStorage:
    """Uploads backup documents to a WebDAV collection."""

    config: BackupConfig
    timeout: Optional[float] = None
    max_retries: int = 0
    retry_backoff: float = 2.0
    client: Optional[httpx.AsyncClient] = None

    async def upload(self, file_name: str, content: str) -> None:
        await upload_to_webdav(
            self.config,
            file_name,
            content,
            client=self.client,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
        )


@dataclass
class InMemoryBackupStorage:
    """Test double for backup uploads."""

    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    async def upload(self, file_name: str, content: str) -> None:
        self.stored_objects[file_name] = content
