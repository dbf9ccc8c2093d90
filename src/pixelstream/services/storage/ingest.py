"""Media ingest: upload a generated artifact and derive its thumbnail.

The main upload must succeed for the item to succeed. Thumbnail derivation
or upload failure only leaves the thumbnail unset.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from pixelstream.services.storage.keys import generate_object_key, generate_thumbnail_key
from pixelstream.services.storage.object_store import ObjectStore, UploadResult
from pixelstream.services.storage.thumbnails import extract_video_thumbnail, make_image_thumbnail

logger = structlog.get_logger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/jpeg"


@dataclass
class MediaUploadResult:
    object_key: str
    media: UploadResult
    thumbnail_key: Optional[str] = None
    thumbnail: Optional[UploadResult] = None


class MediaIngestPipeline:
    """Uploads media and thumbnails to an ObjectStore."""

    def __init__(self, store: ObjectStore, ffmpeg_path: str = "ffmpeg"):
        self.store = store
        self.ffmpeg_path = ffmpeg_path

    async def ingest(self, owner_id: str, data: bytes, content_type: str) -> MediaUploadResult:
        """Upload media bytes for owner_id and attach a thumbnail when possible.

        Videos upload and extract their first frame concurrently. Images upload
        first and are then resized.

        Args:
            owner_id: Owner identity (hashed into the key)
            data: Media bytes
            content_type: Media content type from the upstream response

        Returns:
            MediaUploadResult with thumbnail fields unset if derivation failed

        Raises:
            StorageError: Main media upload failed
        """
        object_key = generate_object_key(owner_id, content_type)

        if content_type.startswith("video/"):
            media, thumbnail_bytes = await asyncio.gather(
                self.store.put(object_key, data, content_type),
                self._video_thumbnail(data),
            )
        else:
            media = await self.store.put(object_key, data, content_type)
            thumbnail_bytes = await self._image_thumbnail(data)

        result = MediaUploadResult(object_key=object_key, media=media)
        if thumbnail_bytes is None:
            return result

        thumbnail_key = generate_thumbnail_key(object_key)
        try:
            result.thumbnail = await self.store.put(
                thumbnail_key, thumbnail_bytes, THUMBNAIL_CONTENT_TYPE
            )
            result.thumbnail_key = thumbnail_key
        except Exception as e:
            logger.warning(
                "ingest.thumbnail_upload_failed",
                key=thumbnail_key,
                error_type=type(e).__name__,
                error_message=str(e),
            )

        return result

    async def _video_thumbnail(self, data: bytes) -> bytes | None:
        try:
            return await extract_video_thumbnail(data, self.ffmpeg_path)
        except Exception as e:
            logger.warning(
                "ingest.thumbnail_failed",
                media_kind="video",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return None

    async def _image_thumbnail(self, data: bytes) -> bytes | None:
        try:
            return await asyncio.to_thread(make_image_thumbnail, data)
        except Exception as e:
            logger.warning(
                "ingest.thumbnail_failed",
                media_kind="image",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return None
