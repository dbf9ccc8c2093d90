"""Object key layout for generated media.

Keys never contain the raw owner identity:
    generated/{sha256(owner_id)}/{epoch_ms}-{uuid4}.{ext}
    thumbnails/{sha256(owner_id)}/{epoch_ms}-{uuid4}.jpg
"""

import hashlib
import re
import time
import uuid

MEDIA_PREFIX = "generated/"
THUMBNAIL_PREFIX = "thumbnails/"
DEFAULT_EXTENSION = "jpg"
MEDIA_TYPES = ("image", "video")
SUBTYPE_EXTENSIONS = {
    "svg+xml": "svg",
    "quicktime": "mov",
    "x-matroska": "mkv",
    "x-msvideo": "avi",
    "x-icon": "ico",
    "vnd.microsoft.icon": "ico",
}
_PLAIN_SUBTYPE = re.compile(r"^[a-z0-9]+$")


def hash_owner(owner_id: str) -> str:
    return hashlib.sha256(owner_id.encode("utf-8")).hexdigest()


def extension_for(content_type: str) -> str:
    """File extension from a media content type ("video/mp4" → "mp4").

    Non-media types and subtypes that are not a plain token fall back to
    DEFAULT_EXTENSION.
    """
    mime = content_type.split(";", 1)[0].strip().lower()
    media_type, _, subtype = mime.partition("/")
    if media_type not in MEDIA_TYPES:
        return DEFAULT_EXTENSION
    if subtype in SUBTYPE_EXTENSIONS:
        return SUBTYPE_EXTENSIONS[subtype]
    if _PLAIN_SUBTYPE.match(subtype):
        return subtype
    return DEFAULT_EXTENSION


def generate_object_key(owner_id: str, content_type: str, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return (
        f"{MEDIA_PREFIX}{hash_owner(owner_id)}/"
        f"{timestamp_ms}-{uuid.uuid4()}.{extension_for(content_type)}"
    )


def generate_thumbnail_key(object_key: str) -> str:
    """Thumbnail key for a media key: thumbnails/ namespace, .jpg extension."""
    key = re.sub(r"^generated/", THUMBNAIL_PREFIX, object_key)
    return re.sub(r"\.[^./]+$", ".jpg", key)
