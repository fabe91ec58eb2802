# payments/app/pos_api.py
from __future__ import annotations

from decimal import Decimal
from typing import List, Literal, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from payments.app.bootstrap import PaymentServices
from payments.errors import (
    ConfigurationError,
    NotFoundError,
    PaymentError,
    SignalSourceError,
    SignatureError,
    ValidationError,
)
from payments.idempotency import parse_order_id
from payments.models import AssetSelector, OrderItem
from payments.networks import AUTO, NETWORKS
from payments.services.payment_request import build_payment_request
from payments.state_machine import OPEN
from utils.logger import logger

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (SignatureError, 401),
    (SignalSourceError, 502),
    (ConfigurationError, 500),
)


class AssetSelectorReq(BaseModel):
    networkId: str = AUTO
    symbol: str = Field(default="any", validation_alias=AliasChoices("symbol", "stablecoin"))


class ItemReq(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: Decimal = Field(gt=0)


class CreateOrderReq(BaseModel):
    amountFiat: Decimal
    description: Optional[str] = Field(default=None, max_length=500)
    assetSelector: Union[Literal["auto"], AssetSelectorReq] = AUTO
    items: List[ItemReq] = []

    def selector(self) -> AssetSelector:
        if isinstance(self.assetSelector, str):
            return AssetSelector.auto()
        return AssetSelector.parse(self.assetSelector.networkId, self.assetSelector.symbol)


class ProviderTransferReq(BaseModel):
    authToken: str = Field(min_length=1)
    fromType: str = "exchange"


class CancelReq(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def _error(status: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "error": msg})


def build_app(services: PaymentServices) -> FastAPI:
    app = FastAPI(title="Stablecoin POS Payments")
    settings = services.settings
    lifecycle = services.lifecycle
    reconcile = services.reconcile

    @app.exception_handler(RequestValidationError)
    async def _on_request_validation(request: Request, exc: RequestValidationError):
        parts = [f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()]
        return _error(400, "Validation error: " + "; ".join(parts))

    @app.exception_handler(PaymentError)
    async def _on_payment_error(request: Request, exc: PaymentError):
        for cls, status in _STATUS_BY_ERROR:
            if isinstance(exc, cls):
                if status >= 500:
                    logger.error(f"{request.method} {request.url.path} failed: {exc}")
                return _error(status, str(exc))
        logger.exception(f"{request.method} {request.url.path} unexpected payment error: {exc}")
        return _error(500, "internal error")

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/stats")
    async def stats():
        return await reconcile.stats()

    # ---- orders ----------------------------------------------------------------------
    @app.post("/orders", status_code=201)
    async def create_order(req: CreateOrderReq):
        order = await lifecycle.create_order(
            req.amountFiat,
            req.selector(),
            description=req.description,
            items=[OrderItem(i.name, i.quantity, i.price) for i in req.items],
        )
        return {"success": True, "order": order.to_dict()}

    @app.post("/orders/{order_id}/payment-request")
    async def payment_request(order_id: str):
        order = await lifecycle.get_fresh(parse_order_id(order_id))
        if order.status not in OPEN:
            raise ValidationError(f"Cannot generate payment request for order with status: {order.status.value}")
        return {"success": True, **build_payment_request(order, settings)}

    @app.get("/orders/{order_id}/status")
    async def order_status(order_id: str):
        view = await reconcile.check_status(order_id)
        return {"success": True, **view.to_dict()}

    @app.post("/orders/{order_id}/scanned")
    async def order_scanned(order_id: str):
        order = await lifecycle.mark_scanning(parse_order_id(order_id))
        return {"success": True, "order": order.to_dict()}

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(order_id: str, req: Optional[CancelReq] = None):
        order = await lifecycle.cancel(parse_order_id(order_id), req.reason if req else None)
        return {"success": True, "order": order.to_dict()}

    @app.post("/orders/{order_id}/provider-transfer")
    async def provider_transfer(order_id: str, req: ProviderTransferReq):
        result = await reconcile.initiate_provider_payment(order_id, req.authToken, from_type=req.fromType)
        return {"success": True, **result}

    # ---- webhooks --------------------------------------------------------------------
    @app.post("/webhooks/provider")
    async def provider_webhook(request: Request):
        raw = await request.body()
        sig = request.headers.get(settings.provider_signature_header)
        try:
            return await reconcile.handle_provider_webhook(raw, sig)
        except SignatureError:
            raise
        except PaymentError as e:
            logger.error(f"Provider webhook processing error: {e}")
            return {"received": True, "error": "processing error"}

    @app.get("/webhooks/provider")
    async def provider_webhook_info():
        return {
            "status": "ok",
            "message": "Provider webhook endpoint is active",
            "expectedHeaders": [settings.provider_signature_header],
        }

    @app.post("/webhooks/indexer")
    async def indexer_webhook(request: Request):
        raw = await request.body()
        sig = request.headers.get(settings.indexer_signature_header)
        try:
            return await reconcile.handle_indexer_webhook(raw, sig)
        except SignatureError:
            raise
        except PaymentError as e:
            logger.error(f"Indexer webhook processing error: {e}")
            return {"received": True, "error": "processing error"}

    @app.get("/webhooks/indexer")
    async def indexer_webhook_info():
        return {
            "status": "ok",
            "message": "Indexer webhook endpoint is active",
            "expectedHeaders": [settings.indexer_signature_header],
            "supportedNetworks": sorted(NETWORKS),
        }

    # ---- diagnostics -----------------------------------------------------------------
    @app.get("/debug/check-payment")
    async def check_payment(address: Optional[str] = None, network: Optional[str] = None,
                            amount: Optional[Decimal] = None):
        addr = address or settings.merchant_address
        if not addr:
            raise ValidationError("address is required")
        if network and network not in NETWORKS:
            raise ValidationError(f"unknown network {network}")
        return {"success": True, **await reconcile.debug_scan(addr, network, amount)}

    @app.get("/debug/provider-networks")
    async def provider_networks():
        return await reconcile.provider_networks()

    return app
