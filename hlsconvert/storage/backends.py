"""Artifact publishing backends: local static serving or Supabase Storage."""

import asyncio
import mimetypes
import os
from abc import ABC, abstractmethod
from typing import Optional

from supabase import create_client

from hlsconvert.config import Settings
from hlsconvert.core.exceptions import ArtifactError, ConfigurationError
from hlsconvert.core.logging import get_logger

logger = get_logger(__name__)


class ArtifactBackend(ABC):
    """Abstract interface for exposing finished artifacts (local or cloud)."""

    name: str = ""

    @abstractmethod
    async def publish(self, job_id: str, path: str) -> str:
        """Make the file at ``path`` retrievable. Returns its public reference."""
        ...

    @abstractmethod
    async def discard(self, job_id: str, path: str) -> None:
        """Remove any published copy of the artifact. May raise."""
        ...


class LocalBackend(ArtifactBackend):
    """Files stay in the downloads directory and are served statically."""

    name = "local"

    def __init__(self, public_prefix: str = "/downloads"):
        self._public_prefix = public_prefix.rstrip("/")

    async def publish(self, job_id: str, path: str) -> str:
        return f"{self._public_prefix}/{os.path.basename(path)}"

    async def discard(self, job_id: str, path: str) -> None:
        # The local file is the published copy; ArtifactManager deletes it.
        return None


class SupabaseBackend(ArtifactBackend):
    """Uploads artifacts to a Supabase Storage bucket and drops the local copy.

    The supabase client is synchronous, so calls run in the default executor.
    """

    name = "supabase"

    def __init__(self, url: str, service_role_key: str, bucket: str, client=None):
        self._url = url
        self._key = service_role_key
        self._bucket = bucket
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self._url or not self._key:
                raise ArtifactError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
                )
            self._client = create_client(self._url, self._key)
        return self._client

    def _upload(self, path: str) -> str:
        object_name = os.path.basename(path)
        content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        bucket = self._get_client().storage.from_(self._bucket)
        with open(path, "rb") as f:
            bucket.upload(
                path=object_name,
                file=f,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        return bucket.get_public_url(object_name)

    def _remove(self, path: str) -> None:
        self._get_client().storage.from_(self._bucket).remove([os.path.basename(path)])

    async def publish(self, job_id: str, path: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            public_url = await loop.run_in_executor(None, self._upload, path)
        except ArtifactError:
            raise
        except Exception as exc:
            raise ArtifactError(f"upload failed: {exc}", path=path) from exc
        logger.info("Uploaded artifact", job_id=job_id, bucket=self._bucket, url=public_url)
        try:
            os.remove(path)
        except OSError as exc:
            logger.error("Error deleting local copy after upload", path=path, error=str(exc))
        return public_url

    async def discard(self, job_id: str, path: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._remove, path)


def build_backend(settings: Settings, client: Optional[object] = None) -> ArtifactBackend:
    """Select the artifact backend from STORAGE_BACKEND."""
    if settings.storage_backend == "local":
        return LocalBackend(public_prefix=settings.public_downloads_path)
    if settings.storage_backend == "supabase":
        return SupabaseBackend(
            url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            bucket=settings.supabase_bucket,
            client=client,
        )
    raise ConfigurationError(
        f"Unsupported STORAGE_BACKEND: {settings.storage_backend}", setting="storage_backend"
    )
