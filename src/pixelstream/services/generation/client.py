"""Upstream generation API client with bounded, classified retries."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote, urlencode

import httpx
import structlog

from pixelstream.models.generation_params import ImageParams, VideoParams
from pixelstream.services.generation.backoff import RetryConfig, calculate_backoff_delay
from pixelstream.services.generation.error_classifier import classify_api_error

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"


@dataclass
class GenerationResponse:
    """Binary media payload returned by the upstream API."""

    content: bytes
    content_type: str


@dataclass
class RetryResult:
    """Outcome of one upstream call including every retry.

    attempts_made counts attempts, so retries consumed is attempts_made - 1.
    """

    success: bool
    attempts_made: int
    response: Optional[GenerationResponse] = None
    error: Optional[str] = None
    was_non_retryable: bool = False

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts_made - 1)


def build_generation_url(params: ImageParams | VideoParams, seed: int, base_url: str) -> str:
    """Build the GET URL for one generation request.

    The prompt goes in the path, everything else in the query string. Optional
    fields are only sent when set; quality is always "high".

    Args:
        params: Job template (image or video)
        seed: Per-item seed, already clamped to the upstream range
        base_url: Upstream API base URL (no trailing slash)

    Returns:
        Fully formed request URL
    """
    query: list[tuple[str, str]] = []

    if params.negative_prompt and params.negative_prompt.strip():
        query.append(("negative_prompt", params.negative_prompt.strip()))
    if params.model:
        query.append(("model", params.model))
    if params.width:
        query.append(("width", str(params.width)))
    if params.height:
        query.append(("height", str(params.height)))
    if seed >= 0:
        query.append(("seed", str(seed)))

    query.append(("quality", "high"))

    if params.enhance:
        query.append(("enhance", "true"))
    if params.safe:
        query.append(("safe", "true"))
    if params.private:
        query.append(("private", "true"))
    if params.image:
        query.append(("image", params.image))

    if isinstance(params, VideoParams):
        if params.duration:
            query.append(("duration", str(params.duration)))
        if params.aspect_ratio:
            query.append(("aspectRatio", params.aspect_ratio))
        if params.audio:
            query.append(("audio", "true"))
        if params.last_frame_image:
            query.append(("lastFrameImage", params.last_frame_image))

    encoded_prompt = quote(params.prompt, safe="!~*'()")
    return f"{base_url.rstrip('/')}/image/{encoded_prompt}?{urlencode(query)}"


def _unwrap_json(value: Any) -> Any:
    """Parse JSON strings, recursing into nested JSON-in-string values."""
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except ValueError:
        return value
    if isinstance(parsed, dict):
        return {key: _unwrap_json(item) for key, item in parsed.items()}
    if isinstance(parsed, list):
        return [_unwrap_json(item) for item in parsed]
    return parsed


def format_error_body(error_text: str) -> str:
    """Render an error body for display, pretty-printing JSON payloads."""
    parsed = _unwrap_json(error_text)
    if isinstance(parsed, str):
        return parsed
    return json.dumps(parsed, indent=2)


class GenerationClient:
    """HTTP client for the upstream generation API."""

    def __init__(
        self,
        base_url: str,
        retry_config: RetryConfig | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize generation client.

        Args:
            base_url: Upstream API base URL (from GENERATION_BASE_URL)
            retry_config: Retry budget (default: 3 retries, 2s base, 30s cap)
            timeout_seconds: Hard limit for each individual attempt
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used to wait between attempts
        """
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.sleep = sleep

    async def generate(
        self, params: ImageParams | VideoParams, seed: int, api_key: str
    ) -> RetryResult:
        """Request one artifact from the upstream API.

        Args:
            params: Job template
            seed: Per-item seed
            api_key: Owner's decrypted upstream API key

        Returns:
            RetryResult with the media payload on success
        """
        url = build_generation_url(params, seed, self.base_url)
        return await self.fetch_with_retry(url, headers={"Authorization": f"Bearer {api_key}"})

    async def fetch_with_retry(self, url: str, headers: dict[str, str]) -> RetryResult:
        """GET url with classified retries and exponential backoff.

        Non-OK responses are classified by status and body: terminal errors
        return immediately, retryable ones consume retry budget. Network
        errors and per-attempt timeouts are always retryable.

        Args:
            url: Request URL
            headers: Request headers

        Returns:
            RetryResult (never raises for upstream or network failures)
        """
        config = self.retry_config
        total_attempts = config.max_retries + 1
        last_error: str | None = None

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self.transport
        ) as client:
            for attempt in range(total_attempts):
                try:
                    response = await asyncio.wait_for(
                        client.get(url, headers=headers), timeout=self.timeout_seconds
                    )
                except (httpx.HTTPError, asyncio.TimeoutError) as e:
                    last_error = str(e) or type(e).__name__
                    logger.warning(
                        "generation.attempt_failed",
                        attempt=attempt + 1,
                        max_attempts=total_attempts,
                        error_type=type(e).__name__,
                        error_message=last_error,
                    )
                else:
                    if response.is_success:
                        return RetryResult(
                            success=True,
                            attempts_made=attempt + 1,
                            response=GenerationResponse(
                                content=response.content,
                                content_type=response.headers.get(
                                    "content-type", DEFAULT_CONTENT_TYPE
                                ),
                            ),
                        )

                    error_text = response.text
                    last_error = f"HTTP {response.status_code}: {format_error_body(error_text)}"
                    classification = classify_api_error(response.status_code, error_text)

                    if not classification.is_retryable:
                        logger.warning(
                            "generation.non_retryable_error",
                            attempt=attempt + 1,
                            status_code=response.status_code,
                            reason=classification.reason,
                        )
                        return RetryResult(
                            success=False,
                            attempts_made=attempt + 1,
                            error=last_error,
                            was_non_retryable=True,
                        )

                    logger.warning(
                        "generation.attempt_failed",
                        attempt=attempt + 1,
                        max_attempts=total_attempts,
                        status_code=response.status_code,
                        reason=classification.reason,
                    )

                if attempt < config.max_retries:
                    delay = calculate_backoff_delay(
                        attempt, config.base_delay_seconds, config.max_delay_seconds
                    )
                    logger.info("generation.retry_scheduled", attempt=attempt + 1, delay=delay)
                    await self.sleep(delay)

        logger.warning("generation.retries_exhausted", attempts=total_attempts)
        return RetryResult(
            success=False,
            attempts_made=total_attempts,
            error=last_error or "Generation failed after retries",
        )
