"""Cloudflare DNS API client."""

from typing import Any

import httpx

from ..common.exceptions import DNSProviderError
from ..common.logging import get_logger
from ..common.utils import mask_sensitive_data

logger = get_logger(__name__)

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"


class CloudflareDNSProvider:
    """Creates and deletes proxied CNAME records pointing at the tunnel.

    Every call is bounded by ``timeout``; timeouts, transport errors and
    envelopes with ``success: false`` all raise ``DNSProviderError``.
    """

    def __init__(
        self,
        api_token: str,
        account_id: str | None = None,
        timeout: float = 30.0,
        base_url: str = CLOUDFLARE_API_URL,
        transport: httpx.BaseTransport | None = None,
        page_size: int = 50,
    ):
        if not api_token:
            raise DNSProviderError("Cloudflare API token is empty")
        self.account_id = account_id
        self.page_size = page_size
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        logger.debug(
            "Cloudflare client created",
            token=mask_sensitive_data(api_token),
            account_id=account_id,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise DNSProviderError(f"Cloudflare {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise DNSProviderError(f"Cloudflare {method} {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise DNSProviderError(
                f"Cloudflare {method} {path} returned HTTP {response.status_code} "
                "with a non-JSON body"
            ) from e

        if not response.is_success or not body.get("success", False):
            errors = "; ".join(
                f"{err.get('code')}: {err.get('message')}" for err in body.get("errors") or []
            )
            raise DNSProviderError(
                f"Cloudflare {method} {path} failed (HTTP {response.status_code}): "
                f"{errors or 'unknown error'}",
                status_code=response.status_code,
            )
        return body

    def create_record(self, zone_id: str, name: str, target: str) -> str:
        """Create a proxied CNAME ``name -> target``. Returns the record id."""
        body = self._request(
            "POST",
            f"/zones/{zone_id}/dns_records",
            json={
                "type": "CNAME",
                "name": name,
                "content": target,
                "proxied": True,
                "ttl": 1,
            },
        )
        record_id = body["result"]["id"]
        logger.info("DNS record created", name=name, target=target, record_id=record_id)
        return record_id

    def delete_record(self, zone_id: str, record_id: str) -> None:
        """Delete a record; a record that is already gone counts as deleted."""
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except DNSProviderError as e:
            if e.status_code == 404:
                logger.warning("DNS record already absent", record_id=record_id)
                return
            raise
        logger.info("DNS record deleted", zone_id=zone_id, record_id=record_id)

    def list_zones(self) -> list[dict[str, str]]:
        """All zones visible to the token, following pagination."""
        zones: list[dict[str, str]] = []
        page = 1
        while True:
            params: dict[str, Any] = {"page": page, "per_page": self.page_size}
            if self.account_id:
                params["account.id"] = self.account_id
            body = self._request("GET", "/zones", params=params)
            for zone in body.get("result") or []:
                zones.append({"name": zone["name"], "zone_id": zone["id"]})

            total_pages = (body.get("result_info") or {}).get("total_pages", 1)
            if page >= total_pages:
                break
            page += 1

        logger.debug("Zones listed", count=len(zones))
        return zones

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CloudflareDNSProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
