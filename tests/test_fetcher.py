import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web

from nodepilot.exceptions import FetchError, FetchTimeoutError, InvalidRequestError
from nodepilot.fetcher import AcceleratedFetcher, SubscriptionFetcher


@pytest.fixture
def app():
    """Creates a mock aiohttp app for testing."""
    app = web.Application()

    async def source1(request):
        return web.Response(text="config1\nconfig2")

    async def source2(request):
        return web.Response(text="config3\nconfig1")

    async def bad_source(request):
        raise web.HTTPInternalServerError()

    async def base64_source(request):
        # base64 encoding of "decoded-config1\ndecoded-config2"
        encoded_content = "ZGVjb2RlZC1jb25maWcxCmRlY29kZWQtY29uZmlnMg=="
        return web.Response(text=encoded_content)

    async def slow(request):
        await asyncio.sleep(1)
        return web.Response(text="too late")

    async def geo(request):
        return web.json_response({"country": "JP"}, content_type="text/plain")

    app.router.add_get("/source1", source1)
    app.router.add_get("/source2", source2)
    app.router.add_get("/bad_source", bad_source)
    app.router.add_get("/base64_source", base64_source)
    app.router.add_get("/slow", slow)
    app.router.add_get("/geo", geo)

    return app


@pytest.fixture
async def client(aiohttp_client, app):
    return await aiohttp_client(app)


@pytest.mark.asyncio
async def test_fetch_all_success(client):
    """Test that fetch_all successfully fetches from multiple sources."""
    sources = [str(client.make_url("/source1")), str(client.make_url("/source2"))]
    fetcher = SubscriptionFetcher(AcceleratedFetcher(client.session), sources)

    configs = await fetcher.fetch_all()

    assert configs == ["config1", "config2", "config3"]


@pytest.mark.asyncio
async def test_fetch_all_with_failures(client):
    """Test that fetch_all handles failed requests gracefully."""
    sources = [str(client.make_url("/source1")), str(client.make_url("/bad_source"))]
    fetcher = SubscriptionFetcher(AcceleratedFetcher(client.session), sources)

    configs = await fetcher.fetch_all()

    assert len(configs) == 2
    assert "config1" in configs
    assert "config2" in configs


@pytest.mark.asyncio
async def test_fetch_all_base64_decoding(client):
    """Test that fetch_all correctly decodes base64 content."""
    sources = [str(client.make_url("/base64_source"))]
    fetcher = SubscriptionFetcher(AcceleratedFetcher(client.session), sources)

    configs = await fetcher.fetch_all()

    assert configs == ["decoded-config1", "decoded-config2"]


@pytest.mark.asyncio
async def test_deadline_raises_timeout_error(client):
    fetcher = AcceleratedFetcher(client.session)

    with pytest.raises(FetchTimeoutError) as exc_info:
        await fetcher.fetch_text(str(client.make_url("/slow")), timeout=0.2)

    assert exc_info.value.timeout == 0.2
    assert "timed out" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_failure_is_not_a_timeout(client):
    fetcher = AcceleratedFetcher(client.session)

    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch_text("http://127.0.0.1:1/", timeout=2)

    assert not isinstance(exc_info.value, FetchTimeoutError)


@pytest.mark.asyncio
async def test_http_error_status_raises(client):
    fetcher = AcceleratedFetcher(client.session)
    with pytest.raises(FetchError, match="500"):
        await fetcher.fetch_text(str(client.make_url("/bad_source")))


@pytest.mark.asyncio
async def test_fetch_json_ignores_content_type(client):
    fetcher = AcceleratedFetcher(client.session)
    assert await fetcher.fetch_json(str(client.make_url("/geo"))) == {"country": "JP"}


@pytest.mark.asyncio
async def test_empty_url_is_rejected(client):
    fetcher = AcceleratedFetcher(client.session)
    with pytest.raises(InvalidRequestError):
        await fetcher.fetch_text("")


@pytest.mark.asyncio
async def test_github_urls_are_accelerated():
    mirror = MagicMock()
    mirror.select_best = AsyncMock(return_value="https://mirror.example/")
    fetcher = AcceleratedFetcher(MagicMock(), mirror)

    raw = "https://raw.githubusercontent.com/owner/repo/main/rules.txt"
    assert await fetcher.accelerate(raw) == f"https://mirror.example/{raw}"
    assert await fetcher.accelerate("https://example.com/a") == "https://example.com/a"

    mirror.select_best = AsyncMock(side_effect=RuntimeError("no mirrors"))
    assert await fetcher.accelerate(raw) == raw
