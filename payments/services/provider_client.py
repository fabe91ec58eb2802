# payments/services/provider_client.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from infra.http_client import HttpError, _mask
from payments.config import CredentialCache, ProviderCredentials
from payments.enums import map_provider_status
from payments.errors import SignalSourceError
from payments.models import Order, ProviderTransfer
from payments.networks import LEGACY_NETWORK_IDS, normalize_network_id
from payments.services.endpoints import ProviderEndpoints
from utils.logger import logger as _default_logger

# internal network id -> provider network id, where the provider uses its own ids
PROVIDER_NETWORK_IDS: Dict[str, str] = {v: k for k, v in LEGACY_NETWORK_IDS.items()}

SOURCE = "provider"


def _decimal(v: Any) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


def parse_transfer(payload: Mapping[str, Any]) -> ProviderTransfer:
    """Provider envelope {content: {...}, status, message} -> ProviderTransfer."""
    content = payload.get("content") or {}
    transfer_id = content.get("transferId") or content.get("id")
    if not transfer_id:
        raise SignalSourceError(SOURCE, f"response without transferId: {payload.get('message') or payload.get('status')}")
    raw_status = str(content.get("status") or "")
    return ProviderTransfer(
        transfer_id=str(transfer_id),
        status=map_provider_status(raw_status),
        raw_status=raw_status,
        transaction_hash=content.get("transactionHash") or content.get("txHash"),
        from_address=content.get("fromAddress"),
        to_address=content.get("toAddress"),
        amount=_decimal(content.get("fiatAmount") or content.get("amount")),
        symbol=(content.get("symbol") or None),
        network_id=normalize_network_id(content.get("networkId")),
        raw=dict(payload),
    )


class TransferProviderClient:
    """
    Thin client for the third-party transfer provider.

    Every transport failure surfaces as SignalSourceError so the
    reconciliation engine can treat the provider as one transient signal source.
    """

    def __init__(self, http_client, endpoints: ProviderEndpoints, credentials: CredentialCache,
                 logger=None, *, timeout_ms: Optional[int] = None) -> None:
        self._http = http_client
        self._ep = endpoints
        self._creds = credentials
        self._log = logger or _default_logger
        self._timeout_ms = timeout_ms

    async def _headers(self) -> Dict[str, str]:
        creds: ProviderCredentials = await self._creds.get()
        return {"X-Client-Id": creds.client_id, "X-Client-Secret": creds.client_secret}

    async def _call(self, method: str, url: str, json_body: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        headers = await self._headers()
        try:
            return await self._http.request(
                method, url, json_body=json_body, headers=headers, timeout_ms=self._timeout_ms
            )
        except HttpError as e:
            self._log.warning(
                f"Provider {method} {url} failed status={e.status} client={_mask(headers.get('X-Client-Id'))}"
            )
            raise SignalSourceError(SOURCE, str(e)) from e

    async def get_transfer(self, transfer_id: str) -> ProviderTransfer:
        payload = await self._call("GET", self._ep.url(self._ep.transfer_status, transfer_id=transfer_id))
        return parse_transfer(payload)

    def _transfer_body(self, order: Order, network_id: str, symbol: str, from_type: str) -> Dict[str, Any]:
        return {
            "fromType": from_type,
            "toAddress": order.merchant_address,
            "symbol": symbol,
            "networkId": PROVIDER_NETWORK_IDS.get(network_id, network_id),
            "amount": format(order.amount_fiat, "f"),
            "fiatCurrency": order.currency,
            "fiatAmount": float(order.amount_fiat),
        }

    async def preview_transfer(self, order: Order, network_id: str, symbol: str,
                               *, from_type: str = "exchange") -> Dict[str, Any]:
        body = self._transfer_body(order, network_id, symbol, from_type)
        payload = await self._call("POST", self._ep.url(self._ep.transfer_preview), body)
        content = payload.get("content") or {}
        return {
            "amount": str(content.get("amount") or body["amount"]),
            "fee": str(content.get("fee") or "0"),
            "total": str(content.get("total") or body["amount"]),
            "symbol": symbol,
        }

    async def execute_transfer(self, order: Order, auth_token: str, network_id: str, symbol: str,
                               *, from_type: str = "exchange") -> ProviderTransfer:
        body = self._transfer_body(order, network_id, symbol, from_type)
        body["fromAuthToken"] = auth_token
        self._log.info(f"Provider execute transfer order={order.order_id} {body['amount']} {symbol} on {network_id}")
        payload = await self._call("POST", self._ep.url(self._ep.transfer_execute), body)
        return parse_transfer(payload)

    async def list_networks(self) -> List[Dict[str, Any]]:
        """Networks the provider currently supports for managed transfers."""
        payload = await self._call("GET", self._ep.url(self._ep.networks))
        content = payload.get("content") or {}
        networks = content.get("networks") if isinstance(content, dict) else content
        return [n for n in (networks or []) if isinstance(n, dict)]
