# src/tools/pricing.py
from decimal import Decimal
import logging

import requests

from engine.errors import BitorError


class PricingError(BitorError):
    pass


class DigitalOceanPricing:
    """Hourly droplet prices from the DigitalOcean sizes API."""

    def __init__(self, api_url: str, timeout: float = 15, session=None):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def hourly_price(self, api_key: str, region: str, size: str) -> Decimal:
        url = f"{self.api_url}/sizes?per_page=200&page=1"
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        while url:
            try:
                resp = self.session.get(url, headers=headers, timeout=self.timeout)
                resp.raise_for_status()
                data = resp.json()
            except (requests.RequestException, ValueError) as e:
                raise PricingError(f"failed to fetch DigitalOcean sizes: {e}") from e

            for item in data.get("sizes", []):
                if item.get("slug") == size and region in (item.get("regions") or []):
                    return Decimal(str(item.get("price_hourly", 0)))
            url = ((data.get("links") or {}).get("pages") or {}).get("next")

        logging.warning(f"[pricing] No DigitalOcean size {size} in region {region}")
        raise PricingError(f"size {size} not available in region {region}")


class PricingService:
    """Dispatches a price lookup to the right provider client."""

    def __init__(self, vault_bridge, clients=None):
        self.vault_bridge = vault_bridge
        self.clients = clients or {}

    def hourly_price(self, provider, region: str, size: str) -> Decimal:
        client = self.clients.get(provider.provider_type)
        if client is None:
            raise PricingError(f"unsupported provider type: {provider.provider_type}")
        keys = self.vault_bridge.provider_keys(provider)
        return client.hourly_price(keys["api_key"], region, size)
