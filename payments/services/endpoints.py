# payments/services/endpoints.py
from dataclasses import dataclass
from typing import Any

from payments.config import PaymentSettings

@dataclass
class ProviderEndpoints:
    # host / base url of the transfer provider
    rest_base: str

    # REST paths
    transfer_status: str = "/api/v1/transfers/{transfer_id}"
    transfer_execute: str = "/api/v1/transfers/execute"
    transfer_preview: str = "/api/v1/transfers/preview"
    networks: str = "/api/v1/transfers/managed/networks"

    def url(self, path: str, **kw: Any) -> str:
        return self.rest_base + path.format(**kw)


def make_provider_endpoints(settings: PaymentSettings) -> ProviderEndpoints:
    rest_base = (settings.provider_api_base or "").rstrip("/")
    if not rest_base.startswith(("http://", "https://")):
        raise ValueError(f"Invalid provider api_base: {settings.provider_api_base!r}")
    return ProviderEndpoints(rest_base=rest_base)
