from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ErrorModel(BaseModel):
    detail: str
    holder_id: int | None = None


class AccountProfileRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    avatar_url: str | None = None


class AccountModel(_Record):
    id: int
    username: str
    avatar_url: str | None = None
    token_balance: int


class ObservedGuildModel(BaseModel):
    id: int
    name: str
    icon_url: str | None = None
    owner: bool = False
    permissions: int = 0


class RegisterGuildsRequest(BaseModel):
    guilds: list[ObservedGuildModel] = Field(default_factory=list)


class TenantModel(_Record):
    guild_id: int
    name: str
    icon_url: str | None = None
    owner_id: int
    claimed_by_id: int | None = None
    subscription_status: str
    manager_role_id: int | None = None
    anonymous_mode: bool
    webhook_avatar_url: str | None = None
    restrict_claimed_messages: bool
    advisor_enabled: bool


class TenantSettingsRequest(BaseModel):
    manager_role_id: int | None = None
    anonymous_mode: bool = False
    webhook_avatar_url: str | None = None
    restrict_claimed_messages: bool = False
    advisor_enabled: bool = False


class ChannelModel(_Record):
    id: int
    name: str


class RoleModel(_Record):
    id: int
    name: str


class FormFieldModel(_Record):
    id: str = ""
    label: str
    kind: Literal["text", "multiline", "choice"] = "text"
    required: bool = True
    options: list[str] = Field(default_factory=list)
    placeholder: str = ""


class PanelCreateRequest(BaseModel):
    channel_id: int
    prefix: str
    title: str
    description: str = ""
    category_id: int | None = None
    support_role_ids: list[int] = Field(default_factory=list)
    transcript_channel_id: int | None = None
    form_fields: list[FormFieldModel] = Field(default_factory=list)


class PanelUpdateRequest(BaseModel):
    channel_id: int | None = None
    prefix: str | None = None
    title: str | None = None
    description: str | None = None
    category_id: int | None = None
    support_role_ids: list[int] | None = None
    transcript_channel_id: int | None = None
    form_fields: list[FormFieldModel] | None = None


class PanelModel(_Record):
    id: str
    guild_id: int
    channel_id: int
    category_id: int | None = None
    prefix: str
    title: str
    description: str
    support_role_ids: list[int]
    transcript_channel_id: int | None = None
    form_fields: list[FormFieldModel]
    message_id: int | None = None
    is_deleted: bool


class TicketCreateRequest(BaseModel):
    panel_id: str
    creator_name: str | None = None
    title: str | None = None
    form_responses: dict[str, str] = Field(default_factory=dict)


class TicketModel(_Record):
    id: str
    guild_id: int
    panel_id: str
    prefix: str
    number: int
    display_name: str
    title: str | None = None
    status: str
    creator_id: int
    creator_name: str
    claimed_by_id: int | None = None
    claimed_at: str | None = None
    channel_id: int | None = None
    category_id: int | None = None
    support_role_ids: list[int]
    transcript_channel_id: int | None = None
    form_responses: dict[str, str]
    reopened_count: int
    closed_at: str | None = None
    closed_by_id: int | None = None
    channel_deleted_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class TicketStatusRequest(BaseModel):
    status: Literal["open", "closed"]


class TicketMessageModel(_Record):
    seq: int
    source: str
    author_id: int
    author_name: str
    avatar_url: str | None = None
    content: str
    attachments: list[str]
    is_support: bool
    created_at: str | None = None


class MessageCreateRequest(BaseModel):
    content: str = Field(default="", max_length=2000)
    author_name: str = Field(min_length=1, max_length=100)
    avatar_url: str | None = None
    attachments: list[str] = Field(default_factory=list)


class RoleRequest(BaseModel):
    role_id: int


class UserRequest(BaseModel):
    user_id: int


class ChangedModel(BaseModel):
    changed: bool


class TranscriptModel(BaseModel):
    filename: str
    line_count: int
    path: str | None = None


class KnowledgeCreateRequest(BaseModel):
    key_phrase: str = Field(min_length=1, max_length=200)
    answer: str = Field(min_length=1, max_length=4000)


class KnowledgeModel(_Record):
    id: str
    key_phrase: str
    answer: str
    auto_captured: bool
    created_by_id: int | None = None
    created_at: str | None = None


class WebhookAckModel(BaseModel):
    received: bool = True
    processed: bool
