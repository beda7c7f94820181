from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from core.config import AppConfig
from core.errors import (
    BotError,
    ChannelGoneError,
    ConflictError,
    PanelNotFoundError,
    PermissionDeniedError,
    TicketLimitReachedError,
    TicketNotFoundError,
    TicketStateError,
    ValidationError,
)
from database.base import Database
from database.models import Tenant, TicketMessage, TicketPanel, TicketRecord
from database.repositories import (
    EventRepository,
    MessageRepository,
    PanelRepository,
    ParticipantRepository,
    TicketRepository,
)
from services.cache import CacheBackend
from services.gateway import ChatGateway, Notice, OutgoingFile, PermissionRule, TicketControls
from services.tenant_service import TenantService
from services.transcript_service import TranscriptArtifact, TranscriptService
from utils.constants import (
    ASSISTANT_NAME,
    MESSAGE_SOURCE_CONSOLE,
    MESSAGE_SOURCE_DISCORD,
    MESSAGE_SOURCE_SYSTEM,
    MESSAGE_SOURCES,
    SUPPORT_TEAM_NAME,
    SYSTEM_AUTHOR_ID,
    SYSTEM_AUTHOR_NAME,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_OPEN,
    TICKET_STATUSES,
)
from utils.rate_limit import TicketCreationThrottle
from utils.time import to_iso, utc_now

if TYPE_CHECKING:
    from services.advisor_service import AdvisorService

LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
# Discord rejects longer message content.
MAX_MIRROR_LENGTH = 2000
MAX_FORM_ANSWER_LENGTH = 1000


@dataclass(slots=True)
class TicketServiceDeps:
    db: Database
    panel_repo: PanelRepository
    ticket_repo: TicketRepository
    message_repo: MessageRepository
    participant_repo: ParticipantRepository
    event_repo: EventRepository
    tenants: TenantService
    gateway: ChatGateway
    transcripts: TranscriptService
    cache: CacheBackend


def _mention_roles(role_ids: Sequence[int]) -> str:
    return " ".join(f"<@&{role_id}>" for role_id in role_ids)


def validate_form_responses(panel: TicketPanel, responses: dict[str, Any] | None) -> dict[str, str]:
    cleaned = {str(key): str(value).strip() for key, value in (responses or {}).items()}
    known = {field.id: field for field in panel.form_fields}
    unknown = set(cleaned) - set(known)
    if unknown:
        raise ValidationError(f"Unknown form fields: {', '.join(sorted(unknown))}")
    accepted: dict[str, str] = {}
    for field in panel.form_fields:
        value = cleaned.get(field.id, "")
        if not value:
            if field.required:
                raise ValidationError(f"`{field.label}` is required.")
            continue
        if len(value) > MAX_FORM_ANSWER_LENGTH:
            raise ValidationError(f"`{field.label}` is too long.")
        if field.kind == "choice" and value not in field.options:
            raise ValidationError(f"`{value}` is not a valid option for `{field.label}`.")
        if field.kind == "text" and "\n" in value:
            raise ValidationError(f"`{field.label}` must be a single line.")
        accepted[field.id] = value
    return accepted


class TicketService:
    def __init__(self, config: AppConfig, deps: TicketServiceDeps) -> None:
        self.config = config
        self.deps = deps
        self.throttle = TicketCreationThrottle(deps.cache, config.security)
        self.advisor: AdvisorService | None = None
        self._background: set[asyncio.Task[Any]] = set()

    def attach_advisor(self, advisor: AdvisorService) -> None:
        self.advisor = advisor

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Background ticket task failed", exc_info=exc)

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Lookups

    async def get_ticket(self, ticket_id: str) -> TicketRecord:
        ticket = await self.deps.ticket_repo.get(ticket_id)
        if not ticket:
            raise TicketNotFoundError()
        return ticket

    async def find_ticket_for_channel(self, channel_id: int) -> TicketRecord | None:
        return await self.deps.ticket_repo.get_by_channel(channel_id)

    async def get_ticket_for_channel(self, channel_id: int) -> TicketRecord:
        ticket = await self.find_ticket_for_channel(channel_id)
        if not ticket:
            raise TicketNotFoundError()
        return ticket

    async def get_ticket_for_actor(self, ticket_id: str, actor_id: int) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        return ticket

    async def list_tickets(self, guild_id: int, actor_id: int, status: str | None = None) -> list[TicketRecord]:
        tenant = await self.deps.tenants.get_tenant(guild_id)
        await self.deps.tenants.require_operator(tenant, actor_id)
        if status is not None and status not in TICKET_STATUSES:
            raise ValidationError(f"Unknown ticket status: {status}")
        return await self.deps.ticket_repo.list_by_guild(guild_id, status=status)

    async def list_messages(self, ticket_id: str, actor_id: int, after_seq: int = 0) -> list[TicketMessage]:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        return await self.deps.message_repo.list_by_ticket(ticket.id, after_seq=after_seq)

    async def _require_operator(self, ticket: TicketRecord, actor_id: int) -> Tenant:
        tenant = await self.deps.tenants.get_tenant(ticket.guild_id)
        await self.deps.tenants.require_operator(tenant, actor_id)
        return tenant

    async def _require_claim_rights(self, ticket: TicketRecord, tenant: Tenant, actor_id: int) -> None:
        if await self.deps.tenants.is_operator(tenant, actor_id):
            return
        if ticket.support_role_ids:
            role_ids = await self.deps.gateway.get_member_role_ids(ticket.guild_id, actor_id)
            if role_ids.intersection(ticket.support_role_ids):
                return
        raise PermissionDeniedError()

    # Notices are informational; a failed post never undoes committed state.
    async def _notify(
        self,
        ticket: TicketRecord,
        notice: Notice,
        content: str | None = None,
        controls: TicketControls | None = None,
    ) -> None:
        if ticket.channel_id is None:
            return
        try:
            await self.deps.gateway.send_as_system(
                ticket.channel_id,
                content=content,
                notices=[notice],
                controls=controls,
            )
        except ChannelGoneError:
            await self._forget_channel(ticket)
        except BotError:
            LOGGER.warning(
                "Ticket notice failed ticket=%s channel=%s title=%s",
                ticket.id,
                ticket.channel_id,
                notice.title,
                exc_info=True,
            )

    async def _forget_channel(self, ticket: TicketRecord, *, actor_id: int | None = None) -> None:
        """Drop a channel reference whose channel is gone on the platform side."""
        channel_id = ticket.channel_id
        if channel_id is None:
            return
        ticket.channel_id = None
        if await self.deps.ticket_repo.clear_channel(ticket.id):
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type="channel_delete",
                payload={"channel_id": channel_id, "external": True},
            )
            LOGGER.info("Ticket channel removed externally ticket=%s channel=%s", ticket.id, channel_id)

    async def _apply_channel_rule(self, ticket: TicketRecord, rule: PermissionRule) -> None:
        if ticket.channel_id is None:
            return
        try:
            await self.deps.gateway.edit_channel_permissions(ticket.channel_id, rule)
        except ChannelGoneError:
            await self._forget_channel(ticket)

    # Creation

    async def _check_creation_limits(self, guild_id: int, creator_id: int) -> None:
        security = self.config.security
        if security.max_open_tickets_per_user > 0:
            open_count = await self.deps.ticket_repo.count_open_by_creator(guild_id, creator_id)
            if open_count >= security.max_open_tickets_per_user:
                raise TicketLimitReachedError()

        await self.throttle.consume(guild_id, creator_id)

    @staticmethod
    def _opening_text(ticket: TicketRecord, panel: TicketPanel) -> str:
        mentions = " ".join(filter(None, [f"<@{ticket.creator_id}>", _mention_roles(ticket.support_role_ids)]))
        lines = [mentions, f"Ticket {ticket.display_name} opened by {ticket.creator_name}."]
        if ticket.form_responses:
            labels = {field.id: field.label for field in panel.form_fields}
            lines.append("Ticket Information")
            for key, value in ticket.form_responses.items():
                lines.append(f"{labels.get(key, key)}: {value}")
        return "\n".join(lines)

    async def create_ticket(
        self,
        guild_id: int,
        panel_id: str,
        creator_id: int,
        creator_name: str,
        form_responses: dict[str, Any] | None = None,
        title: str | None = None,
    ) -> TicketRecord:
        tenant = await self.deps.tenants.get_tenant(guild_id)
        self.deps.tenants.require_active(tenant)

        panel = await self.deps.panel_repo.get(panel_id)
        if not panel or panel.guild_id != guild_id or panel.is_deleted:
            raise PanelNotFoundError()
        answers = validate_form_responses(panel, form_responses)
        await self._check_creation_limits(guild_id, creator_id)

        now = to_iso(utc_now())
        async with self.deps.db.transaction() as tx:
            number = await self.deps.ticket_repo.next_number(guild_id, panel.prefix, tx)
            ticket = TicketRecord(
                id=str(uuid4()),
                guild_id=guild_id,
                panel_id=panel.id,
                prefix=panel.prefix,
                number=number,
                title=(title or "").strip() or None,
                creator_id=creator_id,
                creator_name=creator_name,
                category_id=panel.category_id,
                support_role_ids=list(panel.support_role_ids),
                transcript_channel_id=panel.transcript_channel_id,
                form_responses=answers,
                created_at=now,
                updated_at=now,
            )
            await self.deps.ticket_repo.create(ticket, tx)
            await self._append(
                ticket.id,
                guild_id=guild_id,
                source=MESSAGE_SOURCE_SYSTEM,
                author_id=SYSTEM_AUTHOR_ID,
                author_name=SYSTEM_AUTHOR_NAME,
                content=self._opening_text(ticket, panel),
                tx=tx,
            )
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=guild_id,
                actor_id=creator_id,
                event_type="create",
                payload={"panel_id": panel.id, "number": number, "answers": answers},
                tx=tx,
            )
        ticket.message_seq = 1
        LOGGER.info(
            "Ticket created ticket=%s name=%s guild=%s creator=%s",
            ticket.id,
            ticket.display_name,
            guild_id,
            creator_id,
        )

        try:
            return await self._open_channel(ticket, panel)
        except BotError as exc:
            LOGGER.warning(
                "Ticket channel not created ticket=%s guild=%s: %s",
                ticket.id,
                guild_id,
                exc.user_message,
            )
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=guild_id,
                actor_id=None,
                event_type="channel_materialize",
                payload={"ok": False, "reason": exc.user_message},
            )
            return ticket

    async def _open_channel(self, ticket: TicketRecord, panel: TicketPanel | None = None) -> TicketRecord:
        rules = [
            PermissionRule(subject_id=ticket.guild_id, kind="role", allow=False),
            PermissionRule(subject_id=ticket.creator_id, kind="member", allow=True),
            *(
                PermissionRule(subject_id=role_id, kind="role", allow=True, manage=True)
                for role_id in ticket.support_role_ids
            ),
        ]
        channel_id = await self.deps.gateway.create_channel(
            ticket.guild_id,
            ticket.display_name.lower(),
            ticket.category_id,
            rules,
            topic=f"Ticket {ticket.display_name} | {ticket.id}",
        )
        if not await self.deps.ticket_repo.bind_channel(ticket.id, channel_id):
            LOGGER.warning("Ticket %s already bound; removing duplicate channel %s", ticket.id, channel_id)
            try:
                await self.deps.gateway.delete_channel(channel_id)
            except BotError:
                LOGGER.warning("Duplicate channel cleanup failed channel=%s", channel_id, exc_info=True)
            return await self.get_ticket(ticket.id)

        ticket.channel_id = channel_id
        ticket.channel_deleted_at = None
        await self.deps.event_repo.log(
            ticket_id=ticket.id,
            guild_id=ticket.guild_id,
            actor_id=None,
            event_type="channel_materialize",
            payload={"ok": True, "channel_id": channel_id},
        )

        fields = [
            ("Created by", f"<@{ticket.creator_id}>"),
            ("Support Team", _mention_roles(ticket.support_role_ids) or "-"),
        ]
        if ticket.form_responses:
            labels = {f.id: f.label for f in panel.form_fields} if panel else {}
            info = "\n".join(
                f"**{labels.get(key, key)}**: {value}" for key, value in ticket.form_responses.items()
            )
            fields.append(("Ticket Information", info))
        await self._notify(
            ticket,
            Notice(
                title=f"Welcome to Ticket: {ticket.display_name}",
                description=ticket.title or "Support will be with you shortly.",
                fields=fields,
            ),
            content=" ".join(filter(None, [f"<@{ticket.creator_id}>", _mention_roles(ticket.support_role_ids)])),
            controls=TicketControls.OPEN,
        )
        return ticket

    async def materialize_channel(self, ticket_id: str, actor_id: int) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        tenant = await self._require_operator(ticket, actor_id)
        if ticket.channel_id is not None:
            return ticket
        if ticket.status != TICKET_STATUS_OPEN:
            raise TicketStateError("Only open tickets can get a new channel.")
        self.deps.tenants.require_active(tenant)
        panel = await self.deps.panel_repo.get(ticket.panel_id)
        return await self._open_channel(ticket, panel)

    # Claiming

    async def claim_ticket(self, ticket_id: str, actor_id: int) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        tenant = await self.deps.tenants.get_tenant(ticket.guild_id)
        await self._require_claim_rights(ticket, tenant, actor_id)

        if ticket.claimed_by_id is not None and ticket.claimed_by_id != actor_id:
            raise ConflictError(
                f"This ticket is already claimed by <@{ticket.claimed_by_id}>.",
                holder_id=ticket.claimed_by_id,
            )

        if ticket.claimed_by_id is None:
            if ticket.status != TICKET_STATUS_OPEN:
                raise TicketStateError("Only open tickets can be claimed.")
            won = await self.deps.ticket_repo.try_claim(ticket.id, actor_id)
            event_type, title, description = "claim", "Ticket Claimed", f"<@{actor_id}> will handle this ticket."
        else:
            won = await self.deps.ticket_repo.try_unclaim(ticket.id, actor_id)
            event_type, title, description = "unclaim", "Ticket Unclaimed", f"<@{actor_id}> released this ticket."

        refreshed = await self.get_ticket(ticket.id)
        if not won:
            if refreshed.claimed_by_id is not None and refreshed.claimed_by_id != actor_id:
                raise ConflictError(
                    f"This ticket is already claimed by <@{refreshed.claimed_by_id}>.",
                    holder_id=refreshed.claimed_by_id,
                )
            raise TicketStateError("The ticket changed while claiming. Please retry.")

        await self.deps.event_repo.log(
            ticket_id=ticket.id,
            guild_id=ticket.guild_id,
            actor_id=actor_id,
            event_type=event_type,
        )
        LOGGER.info("Ticket %s ticket=%s actor=%s", event_type, ticket.id, actor_id)
        await self._notify(refreshed, Notice(title=title, description=description, tone="staff"))
        return refreshed

    # Message log

    async def _append(
        self,
        ticket_id: str,
        *,
        guild_id: int,
        source: str,
        author_id: int,
        author_name: str,
        content: str,
        avatar_url: str | None = None,
        attachments: Sequence[str] = (),
        tx: Any,
    ) -> TicketMessage:
        reserved = await self.deps.ticket_repo.reserve_message_seq(ticket_id, tx)
        if reserved is None:
            raise TicketNotFoundError()
        seq, claimed_by_id = reserved
        message = TicketMessage(
            ticket_id=ticket_id,
            seq=seq,
            source=source,
            author_id=author_id,
            author_name=author_name,
            avatar_url=avatar_url,
            content=content,
            attachments=list(attachments),
            is_support=claimed_by_id is not None and claimed_by_id == author_id,
            created_at=to_iso(utc_now()),
        )
        await self.deps.message_repo.insert(message, tx)
        await self.deps.event_repo.log(
            ticket_id=ticket_id,
            guild_id=guild_id,
            actor_id=author_id or None,
            event_type="message",
            payload={"seq": seq, "source": source},
            tx=tx,
        )
        return message

    async def append_message(
        self,
        ticket_id: str,
        author_id: int,
        content: str,
        source: str,
        author_name: str,
        avatar_url: str | None = None,
        attachments: Sequence[str] = (),
    ) -> TicketMessage:
        """Append one entry to the ticket log.

        The sequence id and the support attribution (author is the claimant at
        this moment) are assigned inside one transaction, so concurrent appends
        from the console and the channel never share or skip a sequence id.
        """
        if source not in MESSAGE_SOURCES:
            raise ValidationError(f"Unknown message source: {source}")
        if not content.strip() and not attachments:
            raise ValidationError("Message content cannot be empty.")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Messages are limited to {MAX_MESSAGE_LENGTH} characters.")
        ticket = await self.get_ticket(ticket_id)
        async with self.deps.db.transaction() as tx:
            return await self._append(
                ticket.id,
                guild_id=ticket.guild_id,
                source=source,
                author_id=author_id,
                author_name=author_name,
                content=content,
                avatar_url=avatar_url,
                attachments=attachments,
                tx=tx,
            )

    @staticmethod
    def _operator_identity(tenant: Tenant, author_name: str, avatar_url: str | None) -> tuple[str, str | None]:
        if tenant.anonymous_mode:
            return SUPPORT_TEAM_NAME, tenant.webhook_avatar_url
        return f"{author_name} ({SUPPORT_TEAM_NAME})", avatar_url

    async def post_operator_message(
        self,
        ticket_id: str,
        actor_id: int,
        content: str,
        author_name: str,
        avatar_url: str | None = None,
        attachments: Sequence[str] = (),
    ) -> TicketMessage:
        ticket = await self.get_ticket(ticket_id)
        tenant = await self._require_operator(ticket, actor_id)
        mirrored = "\n".join([content, *attachments]).strip()
        if not mirrored:
            raise ValidationError("Message content cannot be empty.")
        if len(mirrored) > MAX_MIRROR_LENGTH:
            raise ValidationError(f"Replies are limited to {MAX_MIRROR_LENGTH} characters.")
        if (
            tenant.restrict_claimed_messages
            and ticket.claimed_by_id is not None
            and actor_id not in {tenant.owner_id, ticket.claimed_by_id}
        ):
            raise PermissionDeniedError("Only the claiming operator can reply to this ticket.")

        if ticket.channel_id is not None:
            display_name, display_avatar = self._operator_identity(tenant, author_name, avatar_url)
            # Raises before anything is logged, so the console can retry safely.
            try:
                await self.deps.gateway.send_as_identity(
                    ticket.channel_id,
                    mirrored,
                    display_name,
                    display_avatar,
                )
            except ChannelGoneError:
                await self._forget_channel(ticket, actor_id=actor_id)
        return await self.append_message(
            ticket.id,
            author_id=actor_id,
            content=content,
            source=MESSAGE_SOURCE_CONSOLE,
            author_name=author_name,
            avatar_url=avatar_url,
            attachments=attachments,
        )

    async def post_assistant_message(self, ticket_id: str, content: str) -> TicketMessage:
        ticket = await self.get_ticket(ticket_id)
        tenant = await self.deps.tenants.get_tenant(ticket.guild_id)
        content = content[:MAX_MIRROR_LENGTH]
        if ticket.channel_id is not None:
            try:
                await self.deps.gateway.send_as_identity(
                    ticket.channel_id,
                    content,
                    ASSISTANT_NAME,
                    tenant.webhook_avatar_url,
                )
            except ChannelGoneError:
                await self._forget_channel(ticket)
        return await self.append_message(
            ticket.id,
            author_id=SYSTEM_AUTHOR_ID,
            content=content,
            source=MESSAGE_SOURCE_CONSOLE,
            author_name=ASSISTANT_NAME,
        )

    async def post_system_notice(self, ticket_id: str, notice: Notice, content: str | None = None) -> None:
        ticket = await self.get_ticket(ticket_id)
        await self._notify(ticket, notice, content=content)

    async def ingest_channel_message(
        self,
        guild_id: int,
        channel_id: int,
        author_id: int,
        author_name: str,
        avatar_url: str | None,
        content: str,
        attachments: Sequence[str] = (),
    ) -> TicketMessage | None:
        ticket = await self.find_ticket_for_channel(channel_id)
        if ticket is None or ticket.guild_id != guild_id:
            return None
        if not content.strip() and not attachments:
            return None
        message = await self.append_message(
            ticket.id,
            author_id=author_id,
            content=content[:MAX_MESSAGE_LENGTH],
            source=MESSAGE_SOURCE_DISCORD,
            author_name=author_name,
            avatar_url=avatar_url,
            attachments=attachments,
        )
        if (
            self.advisor is not None
            and author_id == ticket.creator_id
            and ticket.claimed_by_id is None
            and ticket.status == TICKET_STATUS_OPEN
        ):
            self._schedule(self.advisor.consider(ticket.id))
        return message

    # Status

    async def set_status(self, ticket_id: str, actor_id: int, status: str) -> TicketRecord:
        if status not in TICKET_STATUSES:
            raise ValidationError(f"Unknown ticket status: {status}")
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        if ticket.status == status:
            return ticket

        closing = status == TICKET_STATUS_CLOSED
        await self._apply_channel_rule(
            ticket,
            PermissionRule(subject_id=ticket.creator_id, kind="member", allow=not closing),
        )

        won = await self.deps.ticket_repo.transition_status(ticket.id, ticket.status, status, actor_id)
        refreshed = await self.get_ticket(ticket.id)
        if not won:
            return refreshed

        event_type = "close" if closing else "reopen"
        await self.deps.event_repo.log(
            ticket_id=ticket.id,
            guild_id=ticket.guild_id,
            actor_id=actor_id,
            event_type=event_type,
        )
        LOGGER.info("Ticket %s ticket=%s actor=%s", event_type, ticket.id, actor_id)
        if closing:
            await self._notify(
                refreshed,
                Notice(
                    title="Ticket Controls",
                    description=f"Ticket closed by <@{actor_id}>.",
                    tone="warning",
                ),
                controls=TicketControls.CLOSED,
            )
        else:
            await self._notify(
                refreshed,
                Notice(title="Ticket Reopened", description=f"Ticket reopened by <@{actor_id}>.", tone="success"),
                content=f"<@{ticket.creator_id}>",
                controls=TicketControls.OPEN,
            )
        return refreshed

    # Routing

    async def escalate(self, ticket_id: str, actor_id: int, role_id: int) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        role = await self.deps.gateway.resolve_role(ticket.guild_id, role_id)
        if role is None:
            raise ValidationError("That role does not exist in this server.")
        if role_id in ticket.support_role_ids:
            return ticket

        await self._apply_channel_rule(
            ticket,
            PermissionRule(subject_id=role_id, kind="role", allow=True, manage=True),
        )
        async with self.deps.db.transaction() as tx:
            await self.deps.ticket_repo.add_support_role(ticket.id, role_id, tx)
            await self.deps.panel_repo.add_support_role(ticket.panel_id, role_id, tx)
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type="escalate",
                payload={"role_id": role_id, "role_name": role.name},
                tx=tx,
            )
        refreshed = await self.get_ticket(ticket.id)
        await self._notify(
            refreshed,
            Notice(
                title="Ticket Upgraded",
                description=f"<@&{role_id}> has been added to this ticket by <@{actor_id}>.",
                tone="staff",
            ),
            content=f"<@&{role_id}>",
        )
        return refreshed

    async def add_participant(self, ticket_id: str, actor_id: int, user_id: int) -> bool:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        if user_id in await self.deps.participant_repo.list_user_ids(ticket.id):
            return False
        await self._apply_channel_rule(ticket, PermissionRule(subject_id=user_id, kind="member", allow=True))
        added = await self.deps.participant_repo.add(ticket.id, user_id, actor_id)
        if added:
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type="add_user",
                payload={"user_id": user_id},
            )
            await self._notify(
                ticket,
                Notice(title="User Added", description=f"<@{user_id}> was added to this ticket.", tone="info"),
            )
        return added

    async def remove_participant(self, ticket_id: str, actor_id: int, user_id: int) -> bool:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        if user_id not in await self.deps.participant_repo.list_user_ids(ticket.id):
            return False
        await self._apply_channel_rule(ticket, PermissionRule(subject_id=user_id, kind="member", allow=False))
        removed = await self.deps.participant_repo.remove(ticket.id, user_id)
        if removed:
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type="remove_user",
                payload={"user_id": user_id},
            )
        return removed

    # Archival

    async def generate_transcript(self, ticket_id: str, actor_id: int) -> TranscriptArtifact:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        if ticket.transcript_channel_id is None:
            raise ValidationError("No transcript channel is configured for this ticket.")

        messages = await self.deps.message_repo.list_by_ticket(ticket.id)
        artifact = await self.deps.transcripts.render(ticket, messages)
        closed_by = f"<@{ticket.closed_by_id}>" if ticket.closed_by_id else "Still open"
        notice = Notice(
            title=f"Ticket Transcript - {ticket.display_name}",
            fields=[
                ("Created By", f"<@{ticket.creator_id}>"),
                ("Closed By", closed_by),
                ("Duration", self.deps.transcripts.ticket_duration(ticket)),
                ("Messages", str(artifact.line_count)),
            ],
        )
        await self.deps.gateway.send_as_system(
            ticket.transcript_channel_id,
            notices=[notice],
            file=OutgoingFile(filename=artifact.filename, content=artifact.content),
        )
        await self.deps.event_repo.log(
            ticket_id=ticket.id,
            guild_id=ticket.guild_id,
            actor_id=actor_id,
            event_type="transcript",
            payload={"lines": artifact.line_count, "path": str(artifact.path) if artifact.path else None},
        )
        return artifact

    async def delete_channel(self, ticket_id: str, actor_id: int) -> TicketRecord:
        ticket = await self.get_ticket(ticket_id)
        await self._require_operator(ticket, actor_id)
        if ticket.channel_id is None:
            return ticket
        await self.deps.gateway.delete_channel(ticket.channel_id)
        if await self.deps.ticket_repo.clear_channel(ticket.id):
            await self.deps.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=actor_id,
                event_type="channel_delete",
                payload={"channel_id": ticket.channel_id},
            )
        return await self.get_ticket(ticket.id)

    async def handle_channel_deleted(self, channel_id: int) -> None:
        ticket = await self.find_ticket_for_channel(channel_id)
        if ticket is None:
            return
        await self._forget_channel(ticket)
