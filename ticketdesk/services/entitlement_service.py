from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from core.config import BillingConfig
from core.errors import TenantNotFoundError, UpstreamUnavailableError, ValidationError
from database.base import Database
from database.repositories import (
    AccountRepository,
    AuditRepository,
    BillingEventRepository,
    TenantRepository,
)
from utils.constants import ENTITLED_PROVIDER_STATUSES, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_INACTIVE

LOGGER = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _metadata_int(metadata: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = metadata.get(key)
        if value in (None, ""):
            continue
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Checkout metadata `{key}` is not a number.") from exc
    return None


class EntitlementService:
    def __init__(
        self,
        db: Database,
        config: BillingConfig,
        tenant_repo: TenantRepository,
        account_repo: AccountRepository,
        billing_repo: BillingEventRepository,
        audit_repo: AuditRepository,
    ) -> None:
        self.db = db
        self.config = config
        self.tenant_repo = tenant_repo
        self.account_repo = account_repo
        self.billing_repo = billing_repo
        self.audit_repo = audit_repo

    def _verify(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not self.config.webhook_secret:
            raise UpstreamUnavailableError("Billing webhooks are not configured.")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.config.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as exc:
            LOGGER.warning("Billing webhook signature rejected: %s", exc)
            raise ValidationError("Invalid webhook signature.") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("Webhook payload is not valid JSON.") from exc
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise ValidationError("Webhook payload is not a provider event.")
        return event

    async def handle_webhook(self, payload: bytes, signature: str) -> bool:
        event = self._verify(payload, signature)
        event_id = str(event["id"])
        event_type = str(event["type"])
        obj = dict(event.get("data", {}).get("object", {}))
        LOGGER.info("Billing webhook received event=%s type=%s", event_id, event_type)

        if event_type == CHECKOUT_COMPLETED:
            metadata = dict(obj.get("metadata") or {})
            guild_id = _metadata_int(metadata, "guild_id", "serverId")
            account_id = _metadata_int(metadata, "account_id")
            if account_id is None:
                account_id = _metadata_int(obj, "client_reference_id")
            if guild_id is None or account_id is None:
                LOGGER.warning("Checkout without tenant reference event=%s", event_id)
                return False
            plan_tokens = _metadata_int(metadata, "plan_tokens")
            return await self.on_checkout_completed(
                event_id=event_id,
                guild_id=guild_id,
                account_id=account_id,
                subscription_id=obj.get("subscription"),
                plan_tokens=self.config.default_plan_tokens if plan_tokens is None else plan_tokens,
            )

        if event_type in {SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}:
            status = "canceled" if event_type == SUBSCRIPTION_DELETED else str(obj.get("status", ""))
            return await self.on_subscription_changed(
                event_id=event_id,
                subscription_id=str(obj.get("id", "")),
                new_status=status,
                event_type=event_type,
            )

        LOGGER.debug("Ignoring billing event type=%s", event_type)
        return False

    async def on_checkout_completed(
        self,
        event_id: str,
        guild_id: int,
        account_id: int,
        subscription_id: str | None,
        plan_tokens: int,
    ) -> bool:
        async with self.db.transaction() as tx:
            if not await self.billing_repo.record(event_id, CHECKOUT_COMPLETED, tx):
                LOGGER.info("Billing event already processed event=%s", event_id)
                return False
            if await self.tenant_repo.get(guild_id, tx) is None:
                raise TenantNotFoundError()
            await self.account_repo.ensure(account_id, tx)
            await self.tenant_repo.bind_subscription(guild_id, subscription_id, account_id, tx)
            if plan_tokens > 0:
                await self.account_repo.adjust_tokens(account_id, plan_tokens, tx)
            await self.audit_repo.log(
                guild_id=guild_id,
                actor_id=account_id,
                action="subscription_activate",
                target_id=subscription_id,
                metadata={"event_id": event_id, "plan_tokens": plan_tokens},
                tx=tx,
            )
        LOGGER.info(
            "Subscription activated guild=%s account=%s subscription=%s",
            guild_id,
            account_id,
            subscription_id,
        )
        return True

    async def on_subscription_changed(
        self,
        event_id: str,
        subscription_id: str,
        new_status: str,
        event_type: str = SUBSCRIPTION_UPDATED,
    ) -> bool:
        entitled = new_status in ENTITLED_PROVIDER_STATUSES
        async with self.db.transaction() as tx:
            if not await self.billing_repo.record(event_id, event_type, tx):
                LOGGER.info("Billing event already processed event=%s", event_id)
                return False
            tenant = await self.tenant_repo.get_by_subscription(subscription_id, tx)
            if tenant is None:
                LOGGER.warning("Subscription change for unknown subscription=%s", subscription_id)
                return True

            if entitled and not tenant.is_active:
                await self.tenant_repo.set_subscription_status(
                    tenant.guild_id, SUBSCRIPTION_ACTIVE, tenant.claimed_by_id, tx
                )
            elif not entitled and tenant.is_active:
                await self.tenant_repo.set_subscription_status(tenant.guild_id, SUBSCRIPTION_INACTIVE, None, tx)
                if tenant.claimed_by_id is not None:
                    await self.account_repo.decrement_floored(tenant.claimed_by_id, 1, tx)
            else:
                return True

            await self.audit_repo.log(
                guild_id=tenant.guild_id,
                actor_id=tenant.claimed_by_id,
                action="subscription_status",
                target_id=subscription_id,
                metadata={"event_id": event_id, "provider_status": new_status},
                tx=tx,
            )
        LOGGER.info(
            "Subscription status changed guild=%s subscription=%s status=%s",
            tenant.guild_id,
            subscription_id,
            new_status,
        )
        return True
