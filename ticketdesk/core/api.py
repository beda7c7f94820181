from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.errors import (
    BotError,
    ConflictError,
    InsufficientTokensError,
    NotFoundError,
    PanelNotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    SubscriptionRequiredError,
    TicketLimitReachedError,
    UpstreamUnavailableError,
    ValidationError,
)
from core.schemas import (
    AccountModel,
    AccountProfileRequest,
    ChangedModel,
    ChannelModel,
    KnowledgeCreateRequest,
    KnowledgeModel,
    MessageCreateRequest,
    PanelCreateRequest,
    PanelModel,
    PanelUpdateRequest,
    RegisterGuildsRequest,
    RoleModel,
    RoleRequest,
    TenantModel,
    TenantSettingsRequest,
    TicketCreateRequest,
    TicketMessageModel,
    TicketModel,
    TicketStatusRequest,
    TranscriptModel,
    UserRequest,
    WebhookAckModel,
)
from services.panel_service import PanelDraft
from services.tenant_service import ObservedGuild

LOGGER = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[BotError], int], ...] = (
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (SubscriptionRequiredError, 402),
    (InsufficientTokensError, 402),
    (ConflictError, 409),
    (ValidationError, 422),
    (TicketLimitReachedError, 429),
    (RateLimitedError, 429),
    (UpstreamUnavailableError, 502),
)


def status_for_error(exc: BotError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def current_actor(x_actor_id: int | None = Header(default=None)) -> int:
    if x_actor_id is None:
        raise HTTPException(status_code=401, detail="Missing actor")
    return x_actor_id


Actor = Annotated[int, Depends(current_actor)]


def create_api_app(bot: Any) -> FastAPI:
    """Build the operator console API on top of the bot's services.

    ``bot`` only needs ``config`` plus the service attributes the bot wires in
    ``setup_hook``; tests pass a plain namespace.
    """
    app = FastAPI(title="Ticketdesk API", version="1.0.0")
    expected_key = bot.config.fastapi.api_key

    async def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        if expected_key and x_api_key != expected_key:
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.exception_handler(BotError)
    async def bot_error_handler(request: Request, exc: BotError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            LOGGER.warning("Request failed path=%s status=%s: %s", request.url.path, status_code, exc.user_message)
        body: dict[str, Any] = {"detail": exc.user_message}
        if isinstance(exc, ConflictError) and exc.holder_id is not None:
            body["holder_id"] = exc.holder_id
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/billing/webhook", response_model=WebhookAckModel)
    async def billing_webhook(
        request: Request,
        stripe_signature: str | None = Header(default=None),
    ) -> WebhookAckModel:
        if not stripe_signature:
            raise ValidationError("Missing webhook signature.")
        payload = await request.body()
        processed = await bot.entitlement_service.handle_webhook(payload, stripe_signature)
        return WebhookAckModel(processed=processed)

    router = APIRouter(dependencies=[Depends(require_api_key)])

    # Accounts

    @router.put("/accounts/me", response_model=AccountModel)
    async def upsert_me(body: AccountProfileRequest, actor: Actor) -> Any:
        return await bot.tenant_service.upsert_account(actor, body.username, body.avatar_url)

    @router.post("/accounts/me/guilds", response_model=list[TenantModel])
    async def register_guilds(body: RegisterGuildsRequest, actor: Actor) -> Any:
        observed = [ObservedGuild(**guild.model_dump()) for guild in body.guilds]
        return await bot.tenant_service.register_guilds(actor, observed)

    @router.get("/accounts/me/tenants", response_model=list[TenantModel])
    async def my_tenants(actor: Actor) -> Any:
        return await bot.tenant_service.list_tenants_for_account(actor)

    # Tenants

    async def _operator_tenant(guild_id: int, actor: int) -> Any:
        tenant = await bot.tenant_service.get_tenant(guild_id)
        await bot.tenant_service.require_operator(tenant, actor)
        return tenant

    @router.get("/tenants/{guild_id}", response_model=TenantModel)
    async def get_tenant(guild_id: int, actor: Actor) -> Any:
        return await _operator_tenant(guild_id, actor)

    @router.patch("/tenants/{guild_id}", response_model=TenantModel)
    async def update_tenant(guild_id: int, body: TenantSettingsRequest, actor: Actor) -> Any:
        return await bot.tenant_service.update_settings(guild_id, actor, **body.model_dump(exclude_unset=True))

    @router.post("/tenants/{guild_id}/activate", response_model=TenantModel)
    async def activate_tenant(guild_id: int, actor: Actor) -> Any:
        return await bot.tenant_service.activate_tenant(guild_id, actor)

    @router.get("/tenants/{guild_id}/channels", response_model=list[ChannelModel])
    async def list_channels(guild_id: int, actor: Actor) -> Any:
        await _operator_tenant(guild_id, actor)
        return await bot.gateway.list_channels(guild_id)

    @router.get("/tenants/{guild_id}/categories", response_model=list[ChannelModel])
    async def list_categories(guild_id: int, actor: Actor) -> Any:
        await _operator_tenant(guild_id, actor)
        return await bot.gateway.list_categories(guild_id)

    @router.get("/tenants/{guild_id}/roles", response_model=list[RoleModel])
    async def list_roles(guild_id: int, actor: Actor) -> Any:
        await _operator_tenant(guild_id, actor)
        return await bot.gateway.list_roles(guild_id)

    # Panels

    async def _tenant_panel(guild_id: int, panel_id: str) -> Any:
        panel = await bot.panel_service.get_panel(panel_id)
        if panel.guild_id != guild_id:
            raise PanelNotFoundError()
        return panel

    @router.get("/tenants/{guild_id}/panels", response_model=list[PanelModel])
    async def list_panels(guild_id: int, actor: Actor) -> Any:
        return await bot.panel_service.list_panels_for_tenant(guild_id, actor)

    @router.post("/tenants/{guild_id}/panels", response_model=PanelModel, status_code=201)
    async def create_panel(guild_id: int, body: PanelCreateRequest, actor: Actor) -> Any:
        draft = PanelDraft(
            channel_id=body.channel_id,
            prefix=body.prefix,
            title=body.title,
            description=body.description,
            category_id=body.category_id,
            support_role_ids=body.support_role_ids,
            transcript_channel_id=body.transcript_channel_id,
            form_fields=[form_field.model_dump() for form_field in body.form_fields],
        )
        return await bot.panel_service.create_panel(guild_id, actor, draft)

    @router.get("/tenants/{guild_id}/panels/{panel_id}", response_model=PanelModel)
    async def get_panel(guild_id: int, panel_id: str, actor: Actor) -> Any:
        await _operator_tenant(guild_id, actor)
        return await _tenant_panel(guild_id, panel_id)

    @router.patch("/tenants/{guild_id}/panels/{panel_id}", response_model=PanelModel)
    async def update_panel(guild_id: int, panel_id: str, body: PanelUpdateRequest, actor: Actor) -> Any:
        await _tenant_panel(guild_id, panel_id)
        return await bot.panel_service.update_panel(panel_id, actor, body.model_dump(exclude_unset=True))

    @router.delete("/tenants/{guild_id}/panels/{panel_id}", status_code=204)
    async def delete_panel(guild_id: int, panel_id: str, actor: Actor) -> None:
        await _tenant_panel(guild_id, panel_id)
        await bot.panel_service.delete_panel(panel_id, actor)

    @router.post("/tenants/{guild_id}/panels/{panel_id}/resend", response_model=PanelModel)
    async def resend_panel(guild_id: int, panel_id: str, actor: Actor) -> Any:
        await _tenant_panel(guild_id, panel_id)
        return await bot.panel_service.resend_panel(panel_id, actor)

    # Tickets

    @router.post("/tenants/{guild_id}/tickets", response_model=TicketModel, status_code=201)
    async def create_ticket(guild_id: int, body: TicketCreateRequest, actor: Actor) -> Any:
        creator_name = body.creator_name
        if not creator_name:
            account = await bot.tenant_service.get_account(actor)
            creator_name = account.username
        return await bot.ticket_service.create_ticket(
            guild_id=guild_id,
            panel_id=body.panel_id,
            creator_id=actor,
            creator_name=creator_name,
            form_responses=body.form_responses,
            title=body.title,
        )

    @router.get("/tenants/{guild_id}/tickets", response_model=list[TicketModel])
    async def list_tickets(
        guild_id: int,
        actor: Actor,
        status: Annotated[str | None, Query()] = None,
    ) -> Any:
        return await bot.ticket_service.list_tickets(guild_id, actor, status=status)

    @router.get("/tickets/{ticket_id}", response_model=TicketModel)
    async def get_ticket(ticket_id: str, actor: Actor) -> Any:
        return await bot.ticket_service.get_ticket_for_actor(ticket_id, actor)

    @router.patch("/tickets/{ticket_id}", response_model=TicketModel)
    async def set_status(ticket_id: str, body: TicketStatusRequest, actor: Actor) -> Any:
        return await bot.ticket_service.set_status(ticket_id, actor, body.status)

    @router.get("/tickets/{ticket_id}/messages", response_model=list[TicketMessageModel])
    async def list_messages(
        ticket_id: str,
        actor: Actor,
        after: Annotated[int, Query(ge=0)] = 0,
    ) -> Any:
        return await bot.ticket_service.list_messages(ticket_id, actor, after_seq=after)

    @router.post("/tickets/{ticket_id}/messages", response_model=TicketMessageModel, status_code=201)
    async def post_message(ticket_id: str, body: MessageCreateRequest, actor: Actor) -> Any:
        return await bot.ticket_service.post_operator_message(
            ticket_id,
            actor,
            body.content,
            author_name=body.author_name,
            avatar_url=body.avatar_url,
            attachments=body.attachments,
        )

    @router.post("/tickets/{ticket_id}/claim", response_model=TicketModel)
    async def claim_ticket(ticket_id: str, actor: Actor) -> Any:
        return await bot.ticket_service.claim_ticket(ticket_id, actor)

    @router.post("/tickets/{ticket_id}/upgrade", response_model=TicketModel)
    async def upgrade_ticket(ticket_id: str, body: RoleRequest, actor: Actor) -> Any:
        return await bot.ticket_service.escalate(ticket_id, actor, body.role_id)

    @router.post("/tickets/{ticket_id}/add-user", response_model=ChangedModel)
    async def add_user(ticket_id: str, body: UserRequest, actor: Actor) -> ChangedModel:
        return ChangedModel(changed=await bot.ticket_service.add_participant(ticket_id, actor, body.user_id))

    @router.post("/tickets/{ticket_id}/remove-user", response_model=ChangedModel)
    async def remove_user(ticket_id: str, body: UserRequest, actor: Actor) -> ChangedModel:
        return ChangedModel(changed=await bot.ticket_service.remove_participant(ticket_id, actor, body.user_id))

    @router.post("/tickets/{ticket_id}/transcript", response_model=TranscriptModel)
    async def transcript(ticket_id: str, actor: Actor) -> TranscriptModel:
        artifact = await bot.ticket_service.generate_transcript(ticket_id, actor)
        return TranscriptModel(
            filename=artifact.filename,
            line_count=artifact.line_count,
            path=str(artifact.path) if artifact.path else None,
        )

    @router.post("/tickets/{ticket_id}/channel", response_model=TicketModel)
    async def materialize_channel(ticket_id: str, actor: Actor) -> Any:
        return await bot.ticket_service.materialize_channel(ticket_id, actor)

    @router.delete("/tickets/{ticket_id}/channel", response_model=TicketModel)
    async def delete_channel(ticket_id: str, actor: Actor) -> Any:
        return await bot.ticket_service.delete_channel(ticket_id, actor)

    # Knowledge base

    @router.get("/tenants/{guild_id}/knowledge", response_model=list[KnowledgeModel])
    async def list_knowledge(guild_id: int, actor: Actor) -> Any:
        return await bot.advisor_service.list_knowledge(guild_id, actor)

    @router.post("/tenants/{guild_id}/knowledge", response_model=KnowledgeModel, status_code=201)
    async def add_knowledge(guild_id: int, body: KnowledgeCreateRequest, actor: Actor) -> Any:
        return await bot.advisor_service.add_knowledge(guild_id, actor, body.key_phrase, body.answer)

    @router.delete("/tenants/{guild_id}/knowledge/{entry_id}", status_code=204)
    async def delete_knowledge(guild_id: int, entry_id: str, actor: Actor) -> None:
        await bot.advisor_service.delete_knowledge(guild_id, actor, entry_id)

    app.include_router(router)
    return app
