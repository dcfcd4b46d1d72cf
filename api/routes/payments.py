"""
Payments API routes.

Thin HTTP layer over PaymentService and the webhook pipeline: no provider SDK
details here. Errors raised by the services are rendered by the global
exception handlers in core.exceptions.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_payment_service, get_registry, get_webhook_pipeline
from application.dtos.payments import ConfirmPayment, CreatePayment, RefundRequest, WebhookRequest
from application.services.payment_service import PaymentService
from application.services.webhook_service import WebhookOutcome, WebhookPipeline
from core.logging_config import get_logger
from core.response import error_response, success_response
from infrastructure.external.payments.registry import PaymentGatewayRegistry
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.get("/gateways", summary="List gateways")
async def list_gateways(service: PaymentService = Depends(get_payment_service)):
    gateways = service.list_gateways()
    return success_response(data=[g.model_dump(mode="json") for g in gateways])


@router.get("/gateways/enabled", summary="List enabled gateways")
async def list_enabled_gateways(service: PaymentService = Depends(get_payment_service)):
    gateways = service.list_gateways(enabled_only=True)
    return success_response(data=[g.model_dump(mode="json") for g in gateways])


@router.post("/{provider}/intents", summary="Create payment intent")
async def create_payment(
    provider: str,
    payload: CreatePayment,
    service: PaymentService = Depends(get_payment_service),
):
    intent = await service.create_payment(provider, payload)
    return success_response(data=intent.model_dump(mode="json"), message="Payment intent created")


@router.get("/{provider}/intents/{intent_id}", summary="Get payment status")
async def get_payment_status(
    provider: str,
    intent_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    intent = await service.get_payment_status(provider, intent_id)
    return success_response(data=intent.model_dump(mode="json"))


@router.post("/{provider}/intents/{intent_id}/confirm", summary="Confirm payment")
async def confirm_payment(
    provider: str,
    intent_id: str,
    payload: Optional[ConfirmPayment] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    extra = payload.extra if payload else None
    intent = await service.confirm_payment(provider, intent_id, extra)
    return success_response(data=intent.model_dump(mode="json"), message="Payment confirmed")


@router.post("/{provider}/intents/{intent_id}/refunds", summary="Refund payment")
async def refund_payment(
    provider: str,
    intent_id: str,
    payload: Optional[RefundRequest] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    record = await service.refund_payment(provider, intent_id, payload or RefundRequest())
    return success_response(data=record.model_dump(mode="json"), message="Refund accepted")


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
    registry: PaymentGatewayRegistry = Depends(get_registry),
):
    # Only the socket peer is trusted here; forwarded headers are caller-controlled
    allowlist = registry.setting("payments.webhook.ip_allowlist") or []
    if allowlist:
        remote_ip = request.client.host if request.client else ""
        if not _ip_permitted(remote_ip, allowlist):
            logger.warning("webhook_ip_not_allowed", provider=provider, remote_ip=remote_ip)
            raise HTTPException(status_code=403, detail="Webhook source IP not allowed")

    webhook_request = WebhookRequest(
        headers=dict(request.headers),
        body=await request.body(),
        query_params=dict(request.query_params),
    )
    result = await pipeline.handle(provider, webhook_request)

    if result.acknowledged:
        body = success_response(
            data={
                "provider": result.provider,
                "event_id": result.event_id,
                "event_type": result.event_type,
                "outcome": result.outcome.value,
            },
            message="Webhook received",
        )
        return JSONResponse(status_code=result.http_status, content=body.model_dump(mode="json"))

    request_id = getattr(request.state, "request_id", None)
    if result.outcome is WebhookOutcome.REJECTED:
        body = error_response(
            code=PaymentCode.SIGNATURE_ERROR,
            message="Invalid webhook signature",
            error_type="SignatureVerificationError",
            details={"provider": result.provider},
            request_id=request_id,
        )
        return JSONResponse(status_code=result.http_status, content=body.model_dump(mode="json"))

    body = error_response(
        code=BusinessCode.SERVICE_UNAVAILABLE,
        message="Webhook could not be processed, retry later",
        error_type="WebhookRetry",
        details={"provider": result.provider, "event_id": result.event_id},
        request_id=request_id,
    )
    return JSONResponse(
        status_code=result.http_status,
        content=body.model_dump(mode="json"),
        headers={"Retry-After": "30"},
    )
