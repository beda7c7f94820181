from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class Account:
    id: int
    username: str
    avatar_url: str | None = None
    token_balance: int = 0
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class Tenant:
    guild_id: int
    name: str
    owner_id: int
    icon_url: str | None = None
    claimed_by_id: int | None = None
    subscription_id: str | None = None
    subscription_status: str = "none"
    manager_role_id: int | None = None
    anonymous_mode: bool = False
    webhook_avatar_url: str | None = None
    restrict_claimed_messages: bool = False
    advisor_enabled: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.subscription_status == "active"


@dataclass(slots=True)
class FormField:
    id: str
    label: str
    kind: str = "text"
    required: bool = True
    options: list[str] = field(default_factory=list)
    placeholder: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "kind": self.kind,
            "required": self.required,
            "options": list(self.options),
            "placeholder": self.placeholder,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FormField:
        return cls(
            id=str(raw.get("id", "")),
            label=str(raw.get("label", "")),
            kind=str(raw.get("kind", "text")),
            required=bool(raw.get("required", True)),
            options=[str(opt) for opt in raw.get("options", [])],
            placeholder=str(raw.get("placeholder", "")),
        )


@dataclass(slots=True)
class TicketPanel:
    id: str
    guild_id: int
    channel_id: int
    prefix: str
    title: str
    description: str
    category_id: int | None = None
    support_role_ids: list[int] = field(default_factory=list)
    transcript_channel_id: int | None = None
    form_fields: list[FormField] = field(default_factory=list)
    message_id: int | None = None
    is_deleted: bool = False
    created_by_id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class TicketRecord:
    id: str
    guild_id: int
    panel_id: str
    prefix: str
    number: int
    creator_id: int
    creator_name: str
    status: str = "open"
    title: str | None = None
    claimed_by_id: int | None = None
    claimed_at: str | None = None
    channel_id: int | None = None
    category_id: int | None = None
    support_role_ids: list[int] = field(default_factory=list)
    transcript_channel_id: int | None = None
    form_responses: dict[str, str] = field(default_factory=dict)
    message_seq: int = 0
    reopened_count: int = 0
    closed_at: str | None = None
    closed_by_id: int | None = None
    channel_deleted_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.prefix}-{self.number}"


@dataclass(slots=True)
class TicketMessage:
    ticket_id: str
    seq: int
    source: str
    author_id: int
    author_name: str
    content: str
    avatar_url: str | None = None
    attachments: list[str] = field(default_factory=list)
    is_support: bool = False
    created_at: str | None = None


@dataclass(slots=True)
class KnowledgeEntry:
    id: str
    guild_id: int
    key_phrase: str
    answer: str
    auto_captured: bool = False
    created_by_id: int | None = None
    created_at: str | None = None
