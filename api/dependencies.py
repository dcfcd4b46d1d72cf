"""
API依赖项 - 从 app.state 取出生命周期内构建的支付组件
"""
from fastapi import Request

from application.services.payment_service import PaymentService
from application.services.webhook_service import WebhookPipeline
from infrastructure.external.payments.registry import PaymentGatewayRegistry


def get_registry(request: Request) -> PaymentGatewayRegistry:
    return request.app.state.payment_registry


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def get_webhook_pipeline(request: Request) -> WebhookPipeline:
    return request.app.state.webhook_pipeline
