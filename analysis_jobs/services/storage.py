from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

import httpx

from analysis_jobs.core.config import StorageSettings
from analysis_jobs.core.errors import ObjectNotFoundError, StorageWriteError
from analysis_jobs.services.signing import Credentials, canonical_object_path, sign_request

logger = logging.getLogger(__name__)

# keep error bodies short in logs / exception messages
_MAX_ERROR_BODY = 512


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageClient:
    """
    Minimal signed client for an S3-compatible bucket (path-style addressing).

    No retries here: a failed call raises and the caller decides.
    """

    def __init__(
        self,
        config: StorageSettings,
        *,
        timeout_s: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        config.validate()
        self.config = config
        self.credentials = Credentials(
            access_key=config.access_key or "",
            secret_key=config.secret_key or "",
            region=config.region or "",
        )
        self._clock = clock
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    def _path(self, key: str) -> str:
        return canonical_object_path(self.config.bucket, key)

    def public_url(self, key: str) -> str:
        return f"{self.config.scheme}://{self.config.host}{self._path(key)}"

    def fetch(self, key: str) -> bytes:
        path = self._path(key)
        signed = sign_request("GET", self.config.host, path, None, b"", self.credentials, self._clock())

        r = self._client.get(self.public_url(key), headers=signed.headers)
        if not r.is_success:
            body = r.text[:_MAX_ERROR_BODY]
            raise ObjectNotFoundError(
                f"Failed to fetch {key!r} from bucket: {r.status_code} {body}",
                status_code=r.status_code,
                body=body,
            )
        logger.debug("Fetched %s (%d bytes)", key, len(r.content))
        return r.content

    def store(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        signed = sign_request(
            "PUT",
            self.config.host,
            path,
            {"Content-Type": content_type},
            data,
            self.credentials,
            self._clock(),
        )

        r = self._client.put(self.public_url(key), headers=signed.headers, content=data)
        if not r.is_success:
            body = r.text[:_MAX_ERROR_BODY]
            raise StorageWriteError(
                f"Failed to upload {key!r} to bucket: {r.status_code} {body}",
                status_code=r.status_code,
                body=body,
            )
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)

    def close(self) -> None:
        self._client.close()
