"""Square JPEG thumbnails for generated images and videos."""

import asyncio
import io
import tempfile
import uuid
from pathlib import Path

import structlog
from PIL import Image, ImageOps

logger = structlog.get_logger(__name__)

THUMBNAIL_SIZE = 128
THUMBNAIL_QUALITY = 80
# ffmpeg -q:v scale (2 best, 31 worst); 3 is roughly JPEG quality 80
FFMPEG_QUALITY = 3
FFMPEG_TIMEOUT_SECONDS = 30.0


def make_image_thumbnail(data: bytes) -> bytes:
    """Centre-crop an image to a square and scale it to 128x128 JPEG.

    Raises:
        PIL.UnidentifiedImageError: If data is not a readable image
    """
    with Image.open(io.BytesIO(data)) as image:
        thumbnail = ImageOps.fit(
            image.convert("RGB"),
            (THUMBNAIL_SIZE, THUMBNAIL_SIZE),
            method=Image.Resampling.LANCZOS,
            centering=(0.5, 0.5),
        )
    output = io.BytesIO()
    thumbnail.save(output, format="JPEG", quality=THUMBNAIL_QUALITY)
    return output.getvalue()


async def extract_video_thumbnail(data: bytes, ffmpeg_path: str = "ffmpeg") -> bytes | None:
    """Extract the first frame of a video as a 128x128 centre-cropped JPEG.

    The video is written to a temporary file because MP4 containers need
    seeking; the frame is read from ffmpeg's stdout.

    Returns:
        JPEG bytes, or None if extraction failed
    """
    with tempfile.TemporaryDirectory(prefix="pixelstream-thumbnails-") as temp_dir:
        input_path = Path(temp_dir) / f"input-{uuid.uuid4()}.mp4"
        await asyncio.to_thread(input_path.write_bytes, data)

        cmd = [
            ffmpeg_path,
            "-nostdin",
            "-i", str(input_path),
            "-an",
            "-frames:v", "1",
            "-vf", f"crop=min(iw\\,ih):min(iw\\,ih),scale={THUMBNAIL_SIZE}:{THUMBNAIL_SIZE}",
            "-q:v", str(FFMPEG_QUALITY),
            "-f", "mjpeg",
            "pipe:1",
        ]  # fmt: skip

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("thumbnail.ffmpeg_unavailable", ffmpeg_path=ffmpeg_path, error=str(e))
            return None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=FFMPEG_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("thumbnail.ffmpeg_timeout", timeout=FFMPEG_TIMEOUT_SECONDS)
            return None

    if process.returncode != 0 or not stdout:
        logger.warning(
            "thumbnail.ffmpeg_failed",
            returncode=process.returncode,
            stderr=stderr.decode(errors="replace")[-500:],
        )
        return None

    return stdout
