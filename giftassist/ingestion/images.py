import httpx
import structlog

from ..models import ImageMetadata

logger = structlog.get_logger()

DEFAULT_IMAGE_CHECK_TIMEOUT = 4.0


def is_http_url(url: str) -> bool:
    lowered = url.lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def _content_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


async def validate_image(
    url: str,
    timeout: float = DEFAULT_IMAGE_CHECK_TIMEOUT,
    client: httpx.AsyncClient | None = None,
) -> ImageMetadata:
    """
    Checks that an image reference points at something reachable.

    Sends a HEAD request so the image body is never downloaded. Anything that
    is not an absolute HTTP(S) URL is reported invalid without a request.
    Network failures, timeouts and non-2xx answers are reported as invalid
    too; this function never raises.

    Args:
        url: The image reference taken from the sheet.
        timeout: Seconds allowed for the whole request.
        client: Optional shared client. A short-lived one is created when not
            given.
    """
    if not is_http_url(url):
        return ImageMetadata(url=url, valid=False)

    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True) as own_client:
                response = await own_client.head(url, timeout=timeout)
        else:
            response = await client.head(url, timeout=timeout)
    except httpx.HTTPError as e:
        await logger.adebug("image check failed", url=url, error=str(e))
        return ImageMetadata(url=url, valid=False)
    except httpx.InvalidURL as e:
        await logger.adebug("image url rejected", url=url, error=str(e))
        return ImageMetadata(url=url, valid=False)
    except Exception as e:
        # e.g. idna errors for malformed hosts, raised outside httpx's hierarchy
        await logger.adebug(
            "image check errored",
            url=url,
            error=str(e),
            error_type=e.__class__.__name__,
        )
        return ImageMetadata(url=url, valid=False)

    if not response.is_success:
        await logger.adebug(
            "image check returned non-2xx", url=url, status=response.status_code
        )
        return ImageMetadata(url=url, valid=False)

    return ImageMetadata(
        url=url,
        valid=True,
        content_type=response.headers.get("content-type"),
        byte_size=_content_length(response.headers.get("content-length")),
    )
