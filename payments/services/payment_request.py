# payments/services/payment_request.py
from __future__ import annotations

from decimal import ROUND_DOWN
from typing import Any, Dict, List, Tuple

from payments.config import PaymentSettings
from payments.errors import ConfigurationError
from payments.models import AssetSelector, Order
from payments.networks import NETWORKS, TOKEN_CONTRACTS, decimals_for, is_supported

# cheapest networks first
NETWORK_PRIORITY = ("base", "polygon", "arbitrum", "optimism", "avalanche", "bsc", "ethereum")


def resolve_pair(asset: AssetSelector, settings: PaymentSettings) -> Tuple[str, str]:
    """Pick the concrete (network, symbol) to quote for an order's selector."""
    network = asset.network_id or settings.default_network
    symbol = asset.symbol or settings.default_stablecoin
    if is_supported(network, symbol):
        return network, symbol
    if asset.symbol:
        for net in NETWORK_PRIORITY:
            if asset.network_id in (None, net) and is_supported(net, asset.symbol):
                return net, asset.symbol
    if is_supported(network, "USDC"):
        return network, "USDC"
    raise ConfigurationError("no stablecoin available", network=network, symbol=symbol)


def token_units(order: Order, network_id: str, symbol: str) -> int:
    return int(order.amount_fiat.scaleb(decimals_for(network_id, symbol)).to_integral_value(rounding=ROUND_DOWN))


def eip681_url(order: Order, network_id: str, symbol: str) -> str:
    """ethereum:<token>@<chainId>/transfer?address=<merchant>&uint256=<units>"""
    contract = TOKEN_CONTRACTS[network_id][symbol]
    chain_id = NETWORKS[network_id].chain_id
    units = token_units(order, network_id, symbol)
    return f"ethereum:{contract}@{chain_id}/transfer?address={order.merchant_address}&uint256={units}"


def supported_options() -> List[Dict[str, Any]]:
    return [
        {"network": NETWORKS[net].name, "networkId": net, "stablecoin": sym, "chainId": NETWORKS[net].chain_id}
        for net in NETWORK_PRIORITY
        for sym in TOKEN_CONTRACTS.get(net, {})
    ]


def build_payment_request(order: Order, settings: PaymentSettings) -> Dict[str, Any]:
    network_id, symbol = resolve_pair(order.asset, settings)
    is_auto = order.asset.network_id is None or order.asset.symbol is None
    out: Dict[str, Any] = {
        "orderId": order.order_id,
        "paymentUrl": eip681_url(order, network_id, symbol),
        "networkId": network_id,
        "stablecoin": symbol,
        "chainId": NETWORKS[network_id].chain_id,
        "amount": format(order.amount_fiat, "f"),
        "expiresAt": order.to_dict()["expiresAt"],
        "isAutoDetect": is_auto,
    }
    if is_auto:
        out["supportedOptions"] = supported_options()
    return out
