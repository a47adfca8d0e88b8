"""
Application service exposing the gateway plug-in interface to the host.

This class depends only on the ledger, the reconciler and DTOs. The gateway
client, record store and idempotency store are built by infrastructure and
injected from the composition root (API), keeping dependencies one-way.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError

from application.dtos.payments import (
    CallbackPayload,
    ConfigOption,
    Messages,
    OperationRequest,
    OperationResult,
    PluginConfig,
    PluginConfigDescription,
    ResultStatus,
)
from application.services.ledger import TransactionLedger
from application.services.reconciler import CallbackReconciler
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    GatewayException,
    StaleCallbackException,
    UnknownCallbackException,
)
from domain.transaction.events import PaymentMethodRegistered, TransactionStateChanged
from shared.currencies import SUPPORTED_CURRENCIES


logger = get_logger(__name__)


class GatewayPluginService:
    def __init__(
        self,
        ledger: TransactionLedger,
        *,
        reconciler: Optional[CallbackReconciler] = None,
        default_config: Optional[PluginConfig] = None,
    ) -> None:
        self.ledger = ledger
        self.reconciler = reconciler or CallbackReconciler(ledger)
        self.default_config = default_config or PluginConfig()

    @property
    def gateway(self):
        return self.ledger.gateway

    # --- configuration -------------------------------------------------

    def get_config(self) -> PluginConfigDescription:
        return PluginConfigDescription(
            friendly_name="Gateway Ledger",
            options={
                "enable_tokens": ConfigOption(
                    friendly_name="Enable tokens",
                    description="Store reusable payment methods returned by the gateway",
                    default=self.default_config.enable_tokens,
                ),
                "enable_3dsecure": ConfigOption(
                    friendly_name="Enable 3-D Secure",
                    description="Step up card authorizations through 3-D Secure",
                    default=self.default_config.enable_3dsecure,
                ),
            },
        )

    def validate_config(self, config: dict[str, Any]) -> OperationResult:
        try:
            PluginConfig.model_validate(config)
        except ValidationError as exc:
            first = exc.errors()[0]
            raise DomainValidationException(
                f"Invalid plug-in config: {first['msg']}",
                field=".".join(str(p) for p in first["loc"]) or None,
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        return OperationResult(status=ResultStatus.APPROVED)

    def is_3dsecure_active(self, config: Optional[dict[str, Any]] = None) -> OperationResult:
        cfg = PluginConfig.model_validate(config) if config is not None else self.default_config
        return OperationResult(status=ResultStatus.APPROVED if cfg.enable_3dsecure else ResultStatus.DECLINED)

    async def test_connection(self) -> OperationResult:
        ping = getattr(self.gateway, "ping", None)
        if not callable(ping):
            return OperationResult(status=ResultStatus.APPROVED)
        try:
            await ping()
        except GatewayException as exc:
            logger.warning("gateway_ping_failed", provider=self.gateway.provider, error=exc.message)
            return OperationResult(status=ResultStatus.ERROR, messages=Messages(vendor_message=exc.message))
        return OperationResult(status=ResultStatus.APPROVED)

    def supported_currencies(self) -> list[str]:
        return list(SUPPORTED_CURRENCIES)

    # --- transactions --------------------------------------------------

    async def redirect(self, req: OperationRequest) -> OperationResult:
        req = self._with_defaults(req)
        logger.info("plugin_redirect_request", ref_no=req.ref_no)
        return await self._run(self.ledger.redirect(req))

    async def sell(self, req: OperationRequest) -> OperationResult:
        req = self._with_defaults(req)
        logger.info("plugin_sell_request", ref_no=req.ref_no, amount=str(req.amount), currency=req.currency)
        return await self._run(self.ledger.sell(req))

    async def auth(self, req: OperationRequest) -> OperationResult:
        req = self._with_defaults(req)
        logger.info(
            "plugin_auth_request",
            ref_no=req.ref_no,
            amount=str(req.amount),
            currency=req.currency,
            three_ds=req.config.enable_3dsecure,
        )
        return await self._run(self.ledger.auth(req))

    async def capture(self, req: OperationRequest) -> OperationResult:
        logger.info("plugin_capture_request", ref_no=req.ref_no, amount=str(req.amount))
        return await self._run(self.ledger.capture(req))

    async def refund(self, req: OperationRequest) -> OperationResult:
        logger.info("plugin_refund_request", ref_no=req.ref_no, amount=str(req.amount))
        return await self._run(self.ledger.refund(req))

    async def refund_partial(self, req: OperationRequest) -> OperationResult:
        logger.info("plugin_refund_partial_request", ref_no=req.ref_no, amount=str(req.amount))
        return await self._run(self.ledger.refund(req, partial=True))

    async def void(self, req: OperationRequest) -> OperationResult:
        logger.info("plugin_void_request", ref_no=req.ref_no)
        return await self._run(self.ledger.void(req))

    async def callback(self, payload: CallbackPayload) -> OperationResult:
        logger.info("plugin_callback_received", external_ref=payload.external_ref, result=payload.result)
        try:
            return await self._run(self.reconciler.reconcile(payload))
        except (StaleCallbackException, UnknownCallbackException) as exc:
            # acknowledged so the gateway stops redelivering; nothing was changed
            return OperationResult(
                status=ResultStatus.ERROR,
                ref_no=(exc.details or {}).get("ref_no"),
                messages=Messages(vendor_message=exc.message),
                ignored=True,
            )

    async def check_status(self, ref_no: str) -> OperationResult:
        return await self.ledger.status(ref_no)

    async def aclose(self) -> None:
        # Best-effort close underlying resources
        for resource in (self.gateway, self.ledger.idempotency):
            close = getattr(resource, "aclose", None)
            if callable(close):
                await close()

    # --- helpers -------------------------------------------------------

    def _with_defaults(self, req: OperationRequest) -> OperationRequest:
        if "config" in req.model_fields_set:
            return req
        return req.model_copy(update={"config": self.default_config})

    async def _run(self, operation) -> OperationResult:
        with self.ledger.collecting_events() as events:
            try:
                return await operation
            finally:
                self._publish_events(events)

    def _publish_events(self, events) -> None:
        for event in events:
            if isinstance(event, TransactionStateChanged):
                logger.info(
                    "transaction_state_changed",
                    ref_no=event.ref_no,
                    from_state=event.from_state,
                    to_state=event.to_state,
                    trigger=event.trigger,
                    event_id=event.event_id,
                )
            elif isinstance(event, PaymentMethodRegistered):
                logger.info("transaction_payment_method_registered", ref_no=event.ref_no, event_id=event.event_id)
