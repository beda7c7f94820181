from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

import openai
from openai import AsyncOpenAI

from core.config import AdvisorConfig
from core.errors import ConflictError, NotFoundError, ValidationError
from database.base import INTEGRITY_ERRORS
from database.models import KnowledgeEntry, TicketMessage, TicketRecord
from database.repositories import EventRepository, KnowledgeRepository, MessageRepository
from services.gateway import Notice
from services.tenant_service import TenantService
from services.ticket_service import TicketService
from utils.constants import TICKET_STATUS_OPEN
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

HANDOVER_MESSAGE = (
    "I apologize, but I'm having trouble processing your request. "
    "Let me hand this over to our support team."
)

_SYSTEM_PROMPT = (
    "You are a helpful support assistant. Use the following knowledge base to help "
    "answer user queries:\n\n{knowledge}\n\nIf you cannot confidently answer the query "
    "based on the knowledge base, indicate that the ticket should be handed over to "
    "human support."
)

_USER_PROMPT = (
    "Ticket conversation:\n{conversation}\n\nPlease provide a response to help the user. "
    'Respond in JSON format with the following structure: {{ "response": "your response text", '
    '"confidence": number between 0 and 1, "usedKnowledgeBaseIds": array of knowledge base '
    'entry IDs used, "shouldHandover": boolean indicating if human support is needed }}'
)


@dataclass(slots=True)
class AdvisorProposal:
    reply: str
    confidence: float
    used_knowledge_ids: list[str] = field(default_factory=list)
    needs_human: bool = False

    @classmethod
    def handover(cls) -> AdvisorProposal:
        return cls(reply=HANDOVER_MESSAGE, confidence=0.0, needs_human=True)


class AdvisoryResponder(Protocol):
    async def propose(
        self,
        ticket: TicketRecord,
        messages: Sequence[TicketMessage],
        knowledge: Sequence[KnowledgeEntry],
    ) -> AdvisorProposal: ...


def parse_proposal(raw: str) -> AdvisorProposal:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("advisor reply is not a JSON object")
    confidence = min(max(float(data.get("confidence", 0.0)), 0.0), 1.0)
    return AdvisorProposal(
        reply=str(data.get("response", "")).strip(),
        confidence=confidence,
        used_knowledge_ids=[str(x) for x in data.get("usedKnowledgeBaseIds") or []],
        needs_human=bool(data.get("shouldHandover", False)),
    )


class OpenAIResponder(AdvisoryResponder):
    def __init__(self, config: AdvisorConfig, client: AsyncOpenAI | None = None) -> None:
        self.config = config
        self.client = client or AsyncOpenAI(api_key=config.api_key, timeout=config.timeout_seconds)

    async def propose(
        self,
        ticket: TicketRecord,
        messages: Sequence[TicketMessage],
        knowledge: Sequence[KnowledgeEntry],
    ) -> AdvisorProposal:
        knowledge_context = "\n\n".join(f"[{entry.id}] {entry.key_phrase}:\n{entry.answer}" for entry in knowledge)
        conversation = "\n".join(f"{msg.author_name}: {msg.content}" for msg in messages)
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT.format(knowledge=knowledge_context)},
                    {"role": "user", "content": _USER_PROMPT.format(conversation=conversation)},
                ],
                response_format={"type": "json_object"},
            )
            return parse_proposal(response.choices[0].message.content or "")
        except openai.OpenAIError:
            LOGGER.warning("Advisor request failed ticket=%s", ticket.id, exc_info=True)
        except (ValueError, TypeError):
            LOGGER.warning("Advisor returned malformed output ticket=%s", ticket.id, exc_info=True)
        return AdvisorProposal.handover()


class AdvisorService:
    def __init__(
        self,
        config: AdvisorConfig,
        tenants: TenantService,
        tickets: TicketService,
        knowledge_repo: KnowledgeRepository,
        message_repo: MessageRepository,
        event_repo: EventRepository,
        responder: AdvisoryResponder | None,
    ) -> None:
        self.config = config
        self.tenants = tenants
        self.tickets = tickets
        self.knowledge_repo = knowledge_repo
        self.message_repo = message_repo
        self.event_repo = event_repo
        self.responder = responder

    @staticmethod
    def _eligible(ticket: TicketRecord) -> bool:
        return ticket.status == TICKET_STATUS_OPEN and ticket.claimed_by_id is None and ticket.channel_id is not None

    async def consider(self, ticket_id: str) -> AdvisorProposal | None:
        if not self.config.enabled or self.responder is None:
            return None
        ticket = await self.tickets.get_ticket(ticket_id)
        tenant = await self.tenants.get_tenant(ticket.guild_id)
        if not tenant.advisor_enabled or not tenant.is_active or not self._eligible(ticket):
            return None

        messages = await self.message_repo.list_by_ticket(ticket.id)
        history = messages[-self.config.history_limit :] if self.config.history_limit > 0 else messages
        knowledge = await self.knowledge_repo.list_by_guild(ticket.guild_id)
        proposal = await self.responder.propose(ticket, history, knowledge)

        # An operator may have claimed the ticket while the responder was running.
        current = await self.tickets.get_ticket(ticket.id)
        if not self._eligible(current):
            LOGGER.info("Advisor reply dropped; ticket taken over ticket=%s", ticket.id)
            return None

        confident = proposal.confidence >= self.config.confidence_threshold
        if confident and not proposal.needs_human and proposal.reply:
            await self.tickets.post_assistant_message(ticket.id, proposal.reply)
            await self.event_repo.log(
                ticket_id=ticket.id,
                guild_id=ticket.guild_id,
                actor_id=None,
                event_type="advisor_reply",
                payload={"confidence": proposal.confidence, "knowledge_ids": proposal.used_knowledge_ids},
            )
            if self.config.auto_capture and proposal.confidence >= self.config.capture_threshold:
                await self._capture(ticket, messages, proposal.reply)
            return proposal

        await self.tickets.post_assistant_message(ticket.id, HANDOVER_MESSAGE)
        roles = " ".join(f"<@&{role_id}>" for role_id in current.support_role_ids)
        await self.tickets.post_system_notice(
            ticket.id,
            Notice(
                title="Support Requested",
                description="A member of the support team will be with you shortly.",
                tone="staff",
            ),
            content=roles or None,
        )
        await self.event_repo.log(
            ticket_id=ticket.id,
            guild_id=ticket.guild_id,
            actor_id=None,
            event_type="advisor_handover",
            payload={"confidence": proposal.confidence},
        )
        return proposal

    async def _capture(self, ticket: TicketRecord, messages: Sequence[TicketMessage], answer: str) -> None:
        question = next((m for m in reversed(messages) if m.author_id == ticket.creator_id), None)
        if question is None:
            return
        phrase = question.content.strip()[:200]
        if not phrase or await self.knowledge_repo.find_by_phrase(ticket.guild_id, phrase):
            return
        try:
            await self.knowledge_repo.add(
                KnowledgeEntry(
                    id=str(uuid4()),
                    guild_id=ticket.guild_id,
                    key_phrase=phrase,
                    answer=answer,
                    auto_captured=True,
                    created_at=to_iso(utc_now()),
                )
            )
        except INTEGRITY_ERRORS:
            LOGGER.debug("Knowledge phrase captured concurrently guild=%s", ticket.guild_id)

    # Knowledge base

    async def list_knowledge(self, guild_id: int, actor_id: int) -> list[KnowledgeEntry]:
        tenant = await self.tenants.get_tenant(guild_id)
        await self.tenants.require_operator(tenant, actor_id)
        return await self.knowledge_repo.list_by_guild(guild_id)

    async def add_knowledge(self, guild_id: int, actor_id: int, key_phrase: str, answer: str) -> KnowledgeEntry:
        tenant = await self.tenants.get_tenant(guild_id)
        await self.tenants.require_operator(tenant, actor_id)
        phrase = key_phrase.strip()
        if not phrase or not answer.strip():
            raise ValidationError("Knowledge entries need a key phrase and an answer.")
        if await self.knowledge_repo.find_by_phrase(guild_id, phrase):
            raise ConflictError("A knowledge entry with this key phrase already exists.")
        entry = KnowledgeEntry(
            id=str(uuid4()),
            guild_id=guild_id,
            key_phrase=phrase,
            answer=answer.strip(),
            created_by_id=actor_id,
            created_at=to_iso(utc_now()),
        )
        try:
            await self.knowledge_repo.add(entry)
        except INTEGRITY_ERRORS as exc:
            raise ConflictError("A knowledge entry with this key phrase already exists.") from exc
        return entry

    async def delete_knowledge(self, guild_id: int, actor_id: int, entry_id: str) -> None:
        tenant = await self.tenants.get_tenant(guild_id)
        await self.tenants.require_operator(tenant, actor_id)
        if not await self.knowledge_repo.delete(guild_id, entry_id):
            raise NotFoundError("The knowledge entry could not be found.")
