"""
Gateway plug-in API routes.

Exposes the host callback interface (config, transactions, callbacks,
status, currencies) via the application service. Keep this thin: no ledger
or gateway details here.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from api.dependencies import get_plugin_service
from application.dtos.payments import CallbackPayload, OperationRequest
from application.services.payment_service import GatewayPluginService
from core.response import model_response, success_response
from core.logging_config import get_logger


router = APIRouter(prefix="/gateway", tags=["Gateway"])
logger = get_logger(__name__)


@router.get("/config", summary="Describe plug-in configuration")
async def get_config(service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(service.get_config())


@router.post("/config/validate", summary="Validate plug-in configuration")
async def validate_config(
    config: Optional[dict[str, Any]] = Body(default=None),
    service: GatewayPluginService = Depends(get_plugin_service),
):
    return model_response(service.validate_config(config or {}))


@router.post("/config/3dsecure", summary="Is 3-D Secure active")
async def is_3dsecure_active(
    config: Optional[dict[str, Any]] = Body(default=None),
    service: GatewayPluginService = Depends(get_plugin_service),
):
    return model_response(service.is_3dsecure_active(config))


@router.get("/currencies", summary="Supported currencies")
async def supported_currencies(service: GatewayPluginService = Depends(get_plugin_service)):
    return success_response(data=service.supported_currencies())


@router.post("/connection/test", summary="Test gateway connection")
async def test_connection(service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.test_connection())


@router.post("/transactions/redirect", summary="Hosted-page redirect")
async def redirect(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.redirect(payload))


@router.post("/transactions/sell", summary="One-phase sale")
async def sell(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.sell(payload))


@router.post("/transactions/auth", summary="Authorize")
async def auth(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.auth(payload))


@router.post("/transactions/capture", summary="Capture an authorization")
async def capture(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.capture(payload))


@router.post("/transactions/refund", summary="Refund")
async def refund(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.refund(payload))


@router.post("/transactions/refund-partial", summary="Partial refund")
async def refund_partial(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.refund_partial(payload))


@router.post("/transactions/void", summary="Void an authorization")
async def void(payload: OperationRequest, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.void(payload))


@router.get("/transactions/{ref_no}/status", summary="Check transaction status")
async def check_status(ref_no: str, service: GatewayPluginService = Depends(get_plugin_service)):
    return model_response(await service.check_status(ref_no))


@router.post("/callbacks", summary="Gateway callback")
async def callback(payload: CallbackPayload, service: GatewayPluginService = Depends(get_plugin_service)):
    result = await service.callback(payload)
    if result.ignored:
        # acknowledge with 200 so the gateway stops redelivering
        logger.info("callback_acknowledged_ignored", external_ref=payload.external_ref)
        return model_response(result, message="Callback ignored")
    return model_response(result, message="Callback applied")
