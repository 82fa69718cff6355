"""Tests for the DigitalOcean API client."""

import json

import httpx
import pytest

from machina.services.provider_client import (
    DigitalOceanClient,
    ProviderAPIError,
    UnsupportedProviderError,
    get_provider_client,
)

API_URL = "https://api.digitalocean.test/v2"


def _droplet(droplet_id: int, status: str = "active", public_ip: str | None = None) -> dict:
    v4 = [{"ip_address": "10.10.0.5", "type": "private"}]
    if public_ip:
        v4.append({"ip_address": public_ip, "type": "public"})
    return {
        "id": droplet_id,
        "name": f"web-{droplet_id}",
        "status": status,
        "networks": {"v4": v4},
    }


def _client(handler) -> DigitalOceanClient:
    return DigitalOceanClient(
        "dop_v1_token", api_url=API_URL, transport=httpx.MockTransport(handler)
    )


class TestDigitalOceanClient:
    async def test_list_droplets_follows_pages(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            assert request.headers["Authorization"] == "Bearer dop_v1_token"
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json={"droplets": [_droplet(43, "off")], "links": {}})
            return httpx.Response(
                200,
                json={
                    "droplets": [_droplet(42, public_ip="203.0.113.5")],
                    "links": {"pages": {"next": f"{API_URL}/droplets?page=2&per_page=200"}},
                },
            )

        resources = await _client(handler).list_droplets()

        assert set(resources) == {"42", "43"}
        assert resources["42"].public_ip == "203.0.113.5"
        assert resources["42"].private_ip == "10.10.0.5"
        assert resources["43"].status == "off"
        assert resources["43"].public_ip is None
        assert len(seen) == 2

    async def test_reboot_posts_action(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"action": {"id": 1, "status": "in-progress"}})

        await _client(handler).reboot("42")

        assert captured == {
            "method": "POST",
            "path": "/v2/droplets/42/actions",
            "body": {"type": "reboot"},
        }

    async def test_droplet_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"droplet": _droplet(42, "new")})

        assert await _client(handler).get_droplet_status("42") == "new"

    async def test_error_message_from_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"id": "unauthorized", "message": "Unable to authenticate you"}
            )

        with pytest.raises(ProviderAPIError) as exc_info:
            await _client(handler).list_droplets()
        assert str(exc_info.value) == "Unable to authenticate you"
        assert exc_info.value.status_code == 401

    async def test_error_without_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="upstream unavailable")

        with pytest.raises(ProviderAPIError, match="DigitalOcean API error: 503"):
            await _client(handler).get_droplet_status("42")

    async def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderAPIError, match="request failed"):
            await _client(handler).reboot("42")

    async def test_malformed_success_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(ProviderAPIError, match="malformed response") as exc_info:
            await _client(handler).list_droplets()
        assert exc_info.value.status_code == 200

    async def test_non_object_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(ProviderAPIError, match="unexpected response"):
            await _client(handler).get_droplet_status("42")

    async def test_droplets_without_id_are_ignored(self):
        def handler(request: httpx.Request) -> httpx.Response:
            nameless = {"name": "orphan", "status": "active"}
            return httpx.Response(200, json={"droplets": [nameless, _droplet(42)], "links": {}})

        resources = await _client(handler).list_droplets()

        assert set(resources) == {"42"}


class TestGetProviderClient:
    def test_digitalocean(self):
        client = get_provider_client("digitalocean", {"api_token": "t"})
        assert isinstance(client, DigitalOceanClient)

    @pytest.mark.parametrize("provider", ["aws", "gcp", "hetzner"])
    def test_unsupported(self, provider):
        with pytest.raises(UnsupportedProviderError):
            get_provider_client(provider, {"api_token": "t"})

    def test_missing_token(self):
        with pytest.raises(ProviderAPIError, match="Missing api_token"):
            get_provider_client("digitalocean", {})
