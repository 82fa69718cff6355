"""Cloud provider REST clients.

Only DigitalOcean is implemented. It is used for the direct reboot action,
its status polling, and the full droplet listing read by the reconciler.
Authentication is a bearer token taken from the account's decrypted
credentials; the token is never logged.
"""

from dataclasses import dataclass
from typing import Any

import httpx

from machina.config import settings
from machina.logging_config import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = frozenset({"digitalocean"})


class ProviderAPIError(Exception):
    """The provider API rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UnsupportedProviderError(ValueError):
    """No client exists for this provider type."""


@dataclass(frozen=True)
class ProviderResource:
    """One compute instance as reported by the provider."""

    resource_id: str
    name: str
    status: str
    public_ip: str | None = None
    private_ip: str | None = None


def _droplet_to_resource(droplet: dict[str, Any]) -> ProviderResource:
    v4 = (droplet.get("networks") or {}).get("v4") or []
    public_ip = next((n.get("ip_address") for n in v4 if n.get("type") == "public"), None)
    private_ip = next((n.get("ip_address") for n in v4 if n.get("type") == "private"), None)
    return ProviderResource(
        resource_id=str(droplet["id"]),
        name=droplet.get("name", ""),
        status=droplet.get("status", ""),
        public_ip=public_ip,
        private_ip=private_ip,
    )


class DigitalOceanClient:
    """Thin async client for the DigitalOcean v2 API."""

    provider_type = "digitalocean"

    def __init__(
        self,
        api_token: str,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self._api_url = (api_url or settings.digitalocean.api_url).rstrip("/")
        self._timeout = timeout or settings.digitalocean.timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    @staticmethod
    def _raise_for_error(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            body = resp.json()
        except ValueError:
            body = None
        message = str(body.get("message") or "") if isinstance(body, dict) else ""
        raise ProviderAPIError(
            message or f"DigitalOcean API error: {resp.status_code}",
            status_code=resp.status_code,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"DigitalOcean API request failed: {e}") from e
        self._raise_for_error(resp)
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderAPIError(
                "DigitalOcean API returned a malformed response", status_code=resp.status_code
            ) from e
        if not isinstance(data, dict):
            raise ProviderAPIError(
                "DigitalOcean API returned an unexpected response", status_code=resp.status_code
            )
        return data

    async def reboot(self, resource_id: str) -> None:
        await self._request("POST", f"/droplets/{resource_id}/actions", json={"type": "reboot"})
        logger.info("Reboot action requested", provider="digitalocean", resource_id=resource_id)

    async def get_droplet_status(self, resource_id: str) -> str:
        data = await self._request("GET", f"/droplets/{resource_id}")
        return (data.get("droplet") or {}).get("status", "")

    async def list_droplets(self) -> dict[str, ProviderResource]:
        """Every droplet visible to the token, keyed by resource id."""
        resources: dict[str, ProviderResource] = {}
        url: str | None = f"/droplets?per_page={settings.digitalocean.page_size}"
        pages = skipped = 0
        while url:
            data = await self._request("GET", url)
            for droplet in data.get("droplets") or []:
                if not isinstance(droplet, dict) or droplet.get("id") in (None, ""):
                    skipped += 1
                    continue
                resource = _droplet_to_resource(droplet)
                resources[resource.resource_id] = resource
            pages += 1
            url = ((data.get("links") or {}).get("pages") or {}).get("next")

        if skipped:
            logger.warning("Ignored droplets without an id", count=skipped)
        logger.debug("Listed droplets", count=len(resources), pages=pages)
        return resources


def get_provider_client(
    provider_type: str,
    credentials: dict[str, Any],
    transport: httpx.AsyncBaseTransport | None = None,
) -> DigitalOceanClient:
    """Build the API client for a provider account's decrypted credentials."""
    if provider_type not in SUPPORTED_PROVIDERS:
        raise UnsupportedProviderError(f"Unsupported provider: {provider_type}")

    api_token = credentials.get("api_token")
    if not api_token:
        raise ProviderAPIError("Missing api_token in credentials")
    return DigitalOceanClient(str(api_token), transport=transport)
