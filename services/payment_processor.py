"""
Stripe Payment Processor Adapter
Thin async adapter over the Stripe SDK used by the escrow ledger, payout
coordinator and payment status monitor.

All amounts cross this boundary as Decimal dollars and are sent to Stripe as
integer cents. Stripe errors are mapped to RetryableProcessorError or
TerminalProcessorError; responses are normalized to plain dicts.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
import stripe
from config import Config
from utils.exceptions import RetryableProcessorError, TerminalProcessorError

logger = logging.getLogger(__name__)


# Stripe PaymentIntent statuses as seen by the engine
INTENT_SUCCEEDED = "succeeded"
INTENT_PROCESSING = "processing"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_REQUIRES_CONFIRMATION = "requires_confirmation"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_CANCELED = "canceled"
INTENT_FAILED = "failed"

PENDING_INTENT_STATUSES = {
    INTENT_PROCESSING,
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_CONFIRMATION,
    INTENT_REQUIRES_PAYMENT_METHOD,
    "requires_capture",
}

# Stripe caps list pages at 100 objects
LIST_PAGE_SIZE = 100


def to_minor_units(amount: Decimal) -> int:
    """Dollars to integer cents"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _unix_seconds(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def map_stripe_error(error: stripe.StripeError, operation: str):
    """Translate a Stripe SDK error into the engine's processor error types"""
    code = getattr(error, "code", None)
    message = getattr(error, "user_message", None) or str(error) or f"{operation} failed"

    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return RetryableProcessorError(message, processor_code=code, details={"operation": operation})

    if isinstance(error, stripe.APIError):
        http_status = getattr(error, "http_status", None)
        if http_status is None or http_status >= 500:
            return RetryableProcessorError(message, processor_code=code, details={"operation": operation})

    if isinstance(error, stripe.IdempotencyError):
        return TerminalProcessorError(message, processor_code=code or "idempotency_error",
                                      details={"operation": operation})

    # CardError, InvalidRequestError, AuthenticationError, PermissionError and the rest
    return TerminalProcessorError(message, processor_code=code, details={"operation": operation})


class StripePaymentProcessor:
    """Payment processor collaborator backed by Stripe"""

    def __init__(self, api_key: str = None, currency: str = None, api_version: str = None):
        self.api_key = api_key or Config.STRIPE_SECRET_KEY
        self.currency = (currency or Config.PAYMENT_CURRENCY).lower()
        self.api_version = api_version or Config.STRIPE_API_VERSION
        if not self.api_key:
            logger.warning("⚠️ STRIPE_PROCESSOR: No STRIPE_SECRET_KEY configured, processor calls will fail")

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    @staticmethod
    def _normalize_intent(intent) -> Dict[str, Any]:
        last_error = intent.get("last_payment_error")
        status = intent.get("status")
        failure_reason = None
        if last_error:
            failure_reason = last_error.get("message") or last_error.get("code")
            if status == INTENT_REQUIRES_PAYMENT_METHOD:
                status = INTENT_FAILED
        return {
            "id": intent.get("id"),
            "status": status,
            "client_secret": intent.get("client_secret"),
            "amount": from_minor_units(intent.get("amount") or 0),
            "last_error": failure_reason,
            "metadata": dict(intent.get("metadata") or {}),
        }

    async def create_payment_intent(
        self,
        amount: Decimal,
        payer_ref: Optional[str],
        payment_method_ref: str,
        metadata: Dict[str, Any],
        currency: str = None,
        idempotency_key: str = None,
    ) -> Dict[str, Any]:
        """Create and confirm a PaymentIntent for amount (dollars)"""
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": (currency or self.currency).lower(),
            "payment_method": payment_method_ref,
            "confirm": True,
            "metadata": {k: str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if payer_ref:
            params["customer"] = payer_ref
        try:
            intent = await stripe.PaymentIntent.create_async(**params, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            raise map_stripe_error(e, "create_payment_intent") from e
        result = self._normalize_intent(intent)
        logger.info(f"💳 STRIPE_INTENT_CREATED: {result['id']} status={result['status']} amount=${amount}")
        return result

    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(intent_id, **self._request_options())
        except stripe.StripeError as e:
            raise map_stripe_error(e, "retrieve_payment_intent") from e
        return self._normalize_intent(intent)

    async def confirm_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = await stripe.PaymentIntent.confirm_async(intent_id, **self._request_options())
        except stripe.StripeError as e:
            raise map_stripe_error(e, "confirm_payment_intent") from e
        return self._normalize_intent(intent)

    async def list_payment_intents(self, created_gte: datetime, created_lte: datetime) -> List[Dict[str, Any]]:
        """Every PaymentIntent created in [created_gte, created_lte] (naive datetimes are UTC)"""
        created = {"gte": _unix_seconds(created_gte), "lte": _unix_seconds(created_lte)}
        intents: List[Dict[str, Any]] = []
        starting_after = None
        while True:
            params: Dict[str, Any] = {"created": created, "limit": LIST_PAGE_SIZE}
            if starting_after:
                params["starting_after"] = starting_after
            try:
                page = await stripe.PaymentIntent.list_async(**params, **self._request_options())
            except stripe.StripeError as e:
                raise map_stripe_error(e, "list_payment_intents") from e
            data = page.get("data") or []
            intents.extend(self._normalize_intent(intent) for intent in data)
            if not page.get("has_more") or not data:
                break
            starting_after = data[-1].get("id")
        logger.info(f"📋 STRIPE_INTENTS_LISTED: {len(intents)} intent(s) between {created_gte} and {created_lte}")
        return intents

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: str = None,
    ) -> Dict[str, Any]:
        """Refund all or part of a PaymentIntent"""
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if metadata:
            params["metadata"] = {k: str(v) for k, v in metadata.items()}
        try:
            refund = await stripe.Refund.create_async(**params, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            raise map_stripe_error(e, "create_refund") from e
        logger.info(f"↩️ STRIPE_REFUND_CREATED: {refund.get('id')} for {payment_intent_id} status={refund.get('status')}")
        return {"id": refund.get("id"), "status": refund.get("status")}

    async def create_transfer(
        self,
        amount: Decimal,
        destination_account_ref: str,
        metadata: Dict[str, Any],
        currency: str = None,
        idempotency_key: str = None,
    ) -> Dict[str, Any]:
        """Transfer amount (dollars) to a connected account"""
        params = {
            "amount": to_minor_units(amount),
            "currency": (currency or self.currency).lower(),
            "destination": destination_account_ref,
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        try:
            transfer = await stripe.Transfer.create_async(**params, **self._request_options(idempotency_key))
        except stripe.StripeError as e:
            raise map_stripe_error(e, "create_transfer") from e
        logger.info(f"💸 STRIPE_TRANSFER_CREATED: {transfer.get('id')} -> {destination_account_ref} ${amount}")
        return {"id": transfer.get("id")}

    async def retrieve_account(self, account_ref: str) -> Dict[str, Any]:
        try:
            account = await stripe.Account.retrieve_async(account_ref, **self._request_options())
        except stripe.StripeError as e:
            raise map_stripe_error(e, "retrieve_account") from e
        requirements = account.get("requirements") or {}
        return {
            "id": account.get("id"),
            "charges_enabled": bool(account.get("charges_enabled")),
            "payouts_enabled": bool(account.get("payouts_enabled")),
            "requirements": {
                "currently_due": list(requirements.get("currently_due") or []),
                "past_due": list(requirements.get("past_due") or []),
                "disabled_reason": requirements.get("disabled_reason"),
            },
        }
