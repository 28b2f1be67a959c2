"""Tests for the Mercado Livre REST client."""

import httpx
import pytest

from mlagent.config import MarketplaceConfig
from mlagent.marketplace.client import (
    MarketplaceError,
    MercadoLibreClient,
    NotFoundError,
    RateLimitedError,
)


def make_client(handler, **config):
    return MercadoLibreClient(
        MarketplaceConfig(client_id="app-id", client_secret="app-secret", **config),
        transport=httpx.MockTransport(handler),
    )


class TestMercadoLibreClient:
    async def test_get_question_sends_bearer(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": 123456, "status": "UNANSWERED"})

        client = make_client(handler)
        data = await client.get_question("123456", "APP_USR-token")
        await client.close()

        assert data["status"] == "UNANSWERED"
        assert seen[0].url.path == "/questions/123456"
        assert seen[0].headers["Authorization"] == "Bearer APP_USR-token"

    async def test_resource_paths(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        client = make_client(handler)
        await client.get_item("MLB1", "t")
        await client.get_item_description("MLB1", "t")
        await client.get_user("555", "t")
        await client.close()

        assert paths == ["/items/MLB1", "/items/MLB1/description", "/users/555"]

    async def test_search_questions(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"questions": [{"id": 1}, {"id": 2}]})

        client = make_client(handler)
        questions = await client.search_questions("111", "t", limit=10)
        await client.close()

        assert [q["id"] for q in questions] == [1, 2]
        params = seen[0].url.params
        assert params["seller_id"] == "111"
        assert params["limit"] == "10"

    async def test_search_questions_without_list(self):
        client = make_client(lambda request: httpx.Response(200, json={"total": 0}))
        assert await client.search_questions("111", "t") == []
        await client.close()

    async def test_404_raises_not_found(self):
        client = make_client(lambda request: httpx.Response(404, json={"message": "not_found"}))
        with pytest.raises(NotFoundError) as exc:
            await client.get_question("1", "t")
        await client.close()
        assert exc.value.status_code == 404

    async def test_429_raises_rate_limited(self):
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "12"}, json={})
        )
        with pytest.raises(RateLimitedError) as exc:
            await client.get_item("MLB1", "t")
        await client.close()
        assert exc.value.status_code == 429
        assert exc.value.retry_after == 12.0

    async def test_server_error(self):
        client = make_client(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(MarketplaceError) as exc:
            await client.get_user("555", "t")
        await client.close()
        assert exc.value.status_code == 503
        assert not isinstance(exc.value, NotFoundError)

    async def test_non_json_body_raises_marketplace_error(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with pytest.raises(MarketplaceError, match="invalid JSON") as exc:
            await client.get_item("MLB1", "t")
        await client.close()
        assert exc.value.status_code == 200

    async def test_non_object_body_raises_marketplace_error(self):
        client = make_client(lambda request: httpx.Response(200, json=[1, 2]))
        with pytest.raises(MarketplaceError, match="unexpected list payload"):
            await client.search_questions("111", "t")
        await client.close()

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(MarketplaceError) as exc:
            await client.get_question("1", "t")
        await client.close()
        assert exc.value.status_code == 0

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(MarketplaceError, match="timeout"):
            await client.get_question("1", "t")
        await client.close()

    async def test_refresh_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={"access_token": "new", "refresh_token": "TG-new", "expires_in": 21600},
            )

        client = make_client(handler)
        data = await client.refresh_token("TG-old")
        await client.close()

        assert data["access_token"] == "new"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/oauth/token"
        body = seen[0].content.decode()
        assert "grant_type=refresh_token" in body
        assert "refresh_token=TG-old" in body
        assert "client_id=app-id" in body
