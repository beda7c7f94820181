from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from core.errors import (
    BotError,
    ConflictError,
    PanelNotFoundError,
    ValidationError,
)
from database.base import INTEGRITY_ERRORS
from database.models import FormField, TicketPanel
from database.repositories import AuditRepository, PanelRepository
from services.gateway import ChatGateway
from services.tenant_service import TenantService
from utils.constants import FORM_FIELD_KINDS, MAX_FORM_FIELDS, PANEL_PREFIX_PATTERN

LOGGER = logging.getLogger(__name__)

_ROUTING_FIELDS = (
    "channel_id",
    "category_id",
    "prefix",
    "title",
    "description",
    "support_role_ids",
    "transcript_channel_id",
    "form_fields",
)


@dataclass(slots=True)
class PanelDraft:
    channel_id: int
    prefix: str
    title: str
    description: str
    category_id: int | None = None
    support_role_ids: list[int] | None = None
    transcript_channel_id: int | None = None
    form_fields: list[dict[str, Any]] | None = None


def _slugify(label: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", label.strip().lower()).strip("_")
    return slug[:32] or "field"


def normalize_form_fields(raw_fields: list[dict[str, Any]]) -> list[FormField]:
    if len(raw_fields) > MAX_FORM_FIELDS:
        raise ValidationError(f"A panel supports at most {MAX_FORM_FIELDS} form fields.")
    fields: list[FormField] = []
    seen: set[str] = set()
    for raw in raw_fields:
        form_field = FormField.from_dict(raw)
        form_field.label = form_field.label.strip()
        if not form_field.label:
            raise ValidationError("Every form field needs a label.")
        if len(form_field.label) > 45:
            raise ValidationError("Form field labels are limited to 45 characters.")
        if form_field.kind not in FORM_FIELD_KINDS:
            raise ValidationError(f"Unknown form field kind: {form_field.kind}")
        form_field.options = [opt.strip() for opt in form_field.options if opt.strip()]
        if form_field.kind == "choice" and not form_field.options:
            raise ValidationError(f"Choice field `{form_field.label}` needs at least one option.")
        form_field.id = form_field.id.strip() or _slugify(form_field.label)
        if form_field.id in seen:
            raise ValidationError(f"Duplicate form field id: {form_field.id}")
        seen.add(form_field.id)
        fields.append(form_field)
    return fields


class PanelService:
    def __init__(
        self,
        panel_repo: PanelRepository,
        audit_repo: AuditRepository,
        tenants: TenantService,
        gateway: ChatGateway,
    ) -> None:
        self.panel_repo = panel_repo
        self.audit_repo = audit_repo
        self.tenants = tenants
        self.gateway = gateway

    async def get_panel(self, panel_id: str) -> TicketPanel:
        panel = await self.panel_repo.get(panel_id)
        if not panel:
            raise PanelNotFoundError()
        return panel

    async def list_panels_for_tenant(self, guild_id: int, actor_id: int | None = None) -> list[TicketPanel]:
        tenant = await self.tenants.get_tenant(guild_id)
        if actor_id is not None:
            await self.tenants.require_operator(tenant, actor_id)
        return await self.panel_repo.list_by_guild(guild_id)

    async def _validate_references(self, guild_id: int, panel: TicketPanel) -> None:
        channel_ids = {c.id for c in await self.gateway.list_channels(guild_id)}
        if panel.channel_id not in channel_ids:
            raise ValidationError("The panel channel does not exist in this server.")
        if panel.transcript_channel_id is not None and panel.transcript_channel_id not in channel_ids:
            raise ValidationError("The transcript channel does not exist in this server.")
        if panel.category_id is not None:
            category_ids = {c.id for c in await self.gateway.list_categories(guild_id)}
            if panel.category_id not in category_ids:
                raise ValidationError("The ticket category does not exist in this server.")
        for role_id in panel.support_role_ids:
            if await self.gateway.resolve_role(guild_id, role_id) is None:
                raise ValidationError(f"Support role {role_id} does not exist in this server.")

    @staticmethod
    def _normalize_prefix(prefix: str) -> str:
        normalized = prefix.strip().upper()
        if not re.fullmatch(PANEL_PREFIX_PATTERN, normalized):
            raise ValidationError("Prefix must be 1-16 letters or digits.")
        return normalized

    async def _ensure_prefix_free(self, guild_id: int, prefix: str, panel_id: str | None = None) -> None:
        existing = await self.panel_repo.find_live_by_prefix(guild_id, prefix)
        if existing and existing.id != panel_id:
            raise ConflictError(f"Another panel already uses the prefix `{prefix}`.")

    async def _publish(self, panel: TicketPanel) -> TicketPanel:
        try:
            message_id = await self.gateway.publish_panel(panel)
        except BotError:
            LOGGER.warning(
                "Panel announcement failed panel=%s guild=%s",
                panel.id,
                panel.guild_id,
                exc_info=True,
            )
            return panel
        await self.panel_repo.set_message_id(panel.id, message_id)
        panel.message_id = message_id
        return panel

    async def create_panel(self, guild_id: int, actor_id: int, draft: PanelDraft) -> TicketPanel:
        tenant = await self.tenants.get_tenant(guild_id)
        await self.tenants.require_operator(tenant, actor_id)

        panel = TicketPanel(
            id=str(uuid4()),
            guild_id=guild_id,
            channel_id=draft.channel_id,
            category_id=draft.category_id,
            prefix=self._normalize_prefix(draft.prefix),
            title=draft.title.strip(),
            description=draft.description.strip(),
            support_role_ids=list(dict.fromkeys(draft.support_role_ids or [])),
            transcript_channel_id=draft.transcript_channel_id,
            form_fields=normalize_form_fields(draft.form_fields or []),
            created_by_id=actor_id,
        )
        if not panel.title:
            raise ValidationError("Panel title is required.")
        await self._ensure_prefix_free(guild_id, panel.prefix)
        await self._validate_references(guild_id, panel)

        try:
            await self.panel_repo.create(panel)
        except INTEGRITY_ERRORS as exc:
            raise ConflictError(f"Another panel already uses the prefix `{panel.prefix}`.") from exc
        await self.audit_repo.log(
            guild_id=guild_id,
            actor_id=actor_id,
            action="panel_create",
            target_id=panel.id,
            metadata={"prefix": panel.prefix},
        )
        LOGGER.info("Panel created panel=%s guild=%s prefix=%s", panel.id, guild_id, panel.prefix)
        return await self._publish(panel)

    async def update_panel(self, panel_id: str, actor_id: int, changes: dict[str, Any]) -> TicketPanel:
        panel = await self.get_panel(panel_id)
        if panel.is_deleted:
            raise PanelNotFoundError()
        tenant = await self.tenants.get_tenant(panel.guild_id)
        await self.tenants.require_operator(tenant, actor_id)

        unknown = set(changes) - set(_ROUTING_FIELDS)
        if unknown:
            raise ValidationError(f"Unsupported panel fields: {', '.join(sorted(unknown))}")

        changed = False
        for key, value in changes.items():
            if key == "prefix":
                value = self._normalize_prefix(value)
            elif key == "form_fields":
                value = normalize_form_fields(value or [])
            elif key == "support_role_ids":
                value = list(dict.fromkeys(value or []))
            elif key in {"title", "description"}:
                value = str(value).strip()
            if getattr(panel, key) != value:
                setattr(panel, key, value)
                changed = True
        if not changed:
            return panel
        if not panel.title:
            raise ValidationError("Panel title is required.")

        await self._ensure_prefix_free(panel.guild_id, panel.prefix, panel_id=panel.id)
        await self._validate_references(panel.guild_id, panel)
        try:
            await self.panel_repo.update(panel)
        except INTEGRITY_ERRORS as exc:
            raise ConflictError(f"Another panel already uses the prefix `{panel.prefix}`.") from exc
        await self.audit_repo.log(
            guild_id=panel.guild_id,
            actor_id=actor_id,
            action="panel_update",
            target_id=panel.id,
            metadata={"fields": sorted(changes)},
        )
        return await self._publish(panel)

    async def delete_panel(self, panel_id: str, actor_id: int) -> None:
        panel = await self.get_panel(panel_id)
        tenant = await self.tenants.get_tenant(panel.guild_id)
        await self.tenants.require_operator(tenant, actor_id)
        if await self.panel_repo.soft_delete(panel_id):
            await self.audit_repo.log(
                guild_id=panel.guild_id,
                actor_id=actor_id,
                action="panel_delete",
                target_id=panel.id,
            )
            LOGGER.info("Panel deleted panel=%s guild=%s", panel.id, panel.guild_id)

    async def resend_panel(self, panel_id: str, actor_id: int) -> TicketPanel:
        panel = await self.get_panel(panel_id)
        if panel.is_deleted:
            raise PanelNotFoundError()
        tenant = await self.tenants.get_tenant(panel.guild_id)
        await self.tenants.require_operator(tenant, actor_id)
        self.tenants.require_active(tenant)
        message_id = await self.gateway.publish_panel(panel)
        await self.panel_repo.set_message_id(panel.id, message_id)
        panel.message_id = message_id
        await self.audit_repo.log(
            guild_id=panel.guild_id,
            actor_id=actor_id,
            action="panel_resend",
            target_id=panel.id,
        )
        return panel
