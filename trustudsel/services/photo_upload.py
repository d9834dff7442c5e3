"""
Profile Photo Uploader.

Boundary to the image store used on the last registration stage.  An
upload failure is the registration flow's one non-fatal error: the
caller receives ``SideEffectError`` and continues without a photo.
"""

from __future__ import annotations

import asyncio
import mimetypes
import uuid
from pathlib import Path
from typing import Optional, Protocol

from supabase import AsyncClient

from trustudsel.errors import SideEffectError


class PhotoUploader(Protocol):
    """Uploads a local image and returns an opaque reference to it."""

    async def upload(self, user_id: str, path: str) -> str: ...


class SupabasePhotoUploader:
    """Stores profile photos in a Supabase Storage bucket.

    The returned reference is the object path inside the bucket,
    ``<user_id>/<uuid><suffix>``.
    """

    def __init__(self, client: Optional[AsyncClient], bucket: str = "profile-photos") -> None:
        self._client: Optional[AsyncClient] = client
        self._bucket: str = bucket

    async def upload(self, user_id: str, path: str) -> str:
        if self._client is None:
            raise SideEffectError("Photo upload unavailable (offline mode).")

        source = Path(path)
        try:
            content = await asyncio.to_thread(source.read_bytes)
        except OSError as exc:
            raise SideEffectError(f"Cannot read photo '{path}': {exc}") from exc

        object_path = f"{user_id}/{uuid.uuid4().hex}{source.suffix.lower()}"
        content_type = mimetypes.guess_type(source.name)[0] or "application/octet-stream"
        try:
            await self._client.storage.from_(self._bucket).upload(
                object_path,
                content,
                {"content-type": content_type},
            )
        except Exception as exc:
            raise SideEffectError(f"Photo upload failed: {exc}") from exc
        return object_path
