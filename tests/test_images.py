import httpx
import pytest

from giftassist.ingestion import validate_image
from tests.conftest import IMAGE_HOST


async def test_valid_image_reports_headers(image_client: httpx.AsyncClient):
    url = f"https://{IMAGE_HOST}/mug.png"

    image = await validate_image(url, 1.0, image_client)

    assert image.url == url
    assert image.valid
    assert image.content_type == "image/png"
    assert image.byte_size == 2048


async def test_non_2xx_is_invalid(image_client: httpx.AsyncClient):
    image = await validate_image(f"https://{IMAGE_HOST}/missing.png", 1.0, image_client)

    assert not image.valid
    assert image.content_type is None
    assert image.byte_size is None


async def test_network_error_is_invalid(image_client: httpx.AsyncClient):
    image = await validate_image("https://unknown.example.org/a.png", 1.0, image_client)

    assert not image.valid


@pytest.mark.parametrize("url", ["not-a-url", "", "ftp://example.com/a.png", "/a.png"])
async def test_non_http_reference_is_invalid_without_request(url: str):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        image = await validate_image(url, 1.0, client)

    assert not image.valid
    assert requests == []


async def test_uses_head_and_tolerates_bad_content_length():
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(
            200, headers={"content-type": "image/jpeg", "content-length": "abc"}
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        image = await validate_image("http://img.example.com/a.jpg", 1.0, client)

    assert methods == ["HEAD"]
    assert image.valid
    assert image.content_type == "image/jpeg"
    assert image.byte_size is None


async def test_timeout_is_invalid():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        image = await validate_image("https://img.example.com/slow.png", 0.1, client)

    assert not image.valid


@pytest.mark.parametrize(
    "url", ["http://localhost:1/doesnotexist", "http://xn--/x", "https://[::1/a.png"]
)
async def test_unreachable_or_malformed_host_never_raises(url: str):
    image = await validate_image(url, 1.0)

    assert image.url == url
    assert not image.valid


async def test_unexpected_client_error_is_invalid():
    def handler(request: httpx.Request) -> httpx.Response:
        raise UnicodeError("bad label")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        image = await validate_image("https://img.example.com/a.png", 1.0, client)

    assert not image.valid
