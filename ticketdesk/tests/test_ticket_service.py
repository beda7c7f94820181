from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import (
    CREATOR_ID,
    GUILD_ID,
    OWNER_ID,
    STAFF_ID,
    SUPPORT_ROLE_ID,
    TRANSCRIPT_CHANNEL_ID,
    register_tenant,
)
from core.errors import (
    ChannelGoneError,
    ConflictError,
    PermissionDeniedError,
    RateLimitedError,
    SubscriptionRequiredError,
    TicketLimitReachedError,
    TicketStateError,
    UpstreamUnavailableError,
    ValidationError,
)
from database.models import TicketPanel
from services.gateway import OutgoingFile, PermissionRule, TicketControls
from services.ticket_service import validate_form_responses

ANSWERS = {"order_number": "42"}


async def _open_ticket(services, panel: TicketPanel, creator_id: int = CREATOR_ID, **kwargs):
    return await services.ticket_service.create_ticket(
        guild_id=GUILD_ID,
        panel_id=panel.id,
        creator_id=creator_id,
        creator_name=f"user-{creator_id}",
        form_responses=kwargs.pop("form_responses", ANSWERS),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_create_ticket_numbers_per_prefix_and_opens_channel(services, gateway, panel) -> None:
    first = await _open_ticket(services, panel, title="Refund")
    second = await _open_ticket(services, panel, creator_id=CREATOR_ID + 1)

    assert (first.number, second.number) == (1, 2)
    assert first.display_name == "SUP-1"
    assert first.title == "Refund"
    assert first.channel_id == 9000
    assert second.channel_id == 9001
    assert first.support_role_ids == [SUPPORT_ROLE_ID]

    _, name, category_id, rules = gateway.create_channel.await_args_list[0].args
    assert name == "sup-1"
    assert category_id == panel.category_id
    assert PermissionRule(subject_id=GUILD_ID, kind="role", allow=False) in rules
    assert PermissionRule(subject_id=CREATOR_ID, kind="member", allow=True) in rules
    assert PermissionRule(subject_id=SUPPORT_ROLE_ID, kind="role", allow=True, manage=True) in rules

    welcome = gateway.send_as_system.await_args_list[0]
    assert welcome.args[0] == 9000
    assert welcome.kwargs["controls"] is TicketControls.OPEN
    assert welcome.kwargs["notices"][0].title == "Welcome to Ticket: SUP-1"

    messages = await services.ticket_service.list_messages(first.id, OWNER_ID)
    assert [m.seq for m in messages] == [1]
    assert messages[0].source == "system"
    assert "Ticket Information" in messages[0].content
    assert "Order number: 42" in messages[0].content


@pytest.mark.asyncio
async def test_create_ticket_requires_active_subscription(services, gateway) -> None:
    await register_tenant(services, active=False)
    with pytest.raises(SubscriptionRequiredError):
        await services.ticket_service.create_ticket(GUILD_ID, "missing", CREATOR_ID, "user")
    gateway.create_channel.assert_not_awaited()


@pytest.mark.asyncio
async def test_validate_form_responses(panel) -> None:
    assert validate_form_responses(panel, {"order_number": " 42 "}) == {"order_number": "42"}
    with pytest.raises(ValidationError):
        validate_form_responses(panel, {})
    with pytest.raises(ValidationError):
        validate_form_responses(panel, {"order_number": "1", "color": "red"})
    with pytest.raises(ValidationError):
        validate_form_responses(panel, {"order_number": "1\n2"})


@pytest.mark.asyncio
async def test_create_ticket_enforces_open_limit(services, panel) -> None:
    services.ticket_service.config.security.max_open_tickets_per_user = 1
    await _open_ticket(services, panel)
    with pytest.raises(TicketLimitReachedError):
        await _open_ticket(services, panel)


@pytest.mark.asyncio
async def test_create_ticket_enforces_cooldown(services, panel) -> None:
    services.ticket_service.config.security.ticket_creation_cooldown_seconds = 60
    await _open_ticket(services, panel)
    with pytest.raises(RateLimitedError):
        await _open_ticket(services, panel)


@pytest.mark.asyncio
async def test_channel_failure_keeps_ticket_for_retry(services, gateway, panel) -> None:
    gateway.create_channel.side_effect = UpstreamUnavailableError()
    ticket = await _open_ticket(services, panel)

    assert ticket.channel_id is None
    stored = await services.ticket_service.get_ticket(ticket.id)
    assert stored.status == "open"

    gateway.create_channel.side_effect = None
    gateway.create_channel.return_value = 9100
    retried = await services.ticket_service.materialize_channel(ticket.id, OWNER_ID)
    assert retried.channel_id == 9100
    assert await services.ticket_service.find_ticket_for_channel(9100) is not None


@pytest.mark.asyncio
async def test_support_attribution_follows_claimant(services, gateway, panel) -> None:
    gateway.member_roles[STAFF_ID] = {SUPPORT_ROLE_ID}
    ticket = await _open_ticket(services, panel)

    before = await services.ticket_service.ingest_channel_message(
        GUILD_ID, ticket.channel_id, STAFF_ID, "staff", None, "looking into it"
    )
    claimed = await services.ticket_service.claim_ticket(ticket.id, STAFF_ID)
    assert claimed.claimed_by_id == STAFF_ID

    staff_reply = await services.ticket_service.ingest_channel_message(
        GUILD_ID, ticket.channel_id, STAFF_ID, "staff", None, "found it"
    )
    creator_reply = await services.ticket_service.ingest_channel_message(
        GUILD_ID, ticket.channel_id, CREATOR_ID, "creator", None, "thanks"
    )
    released = await services.ticket_service.claim_ticket(ticket.id, STAFF_ID)
    assert released.claimed_by_id is None
    after = await services.ticket_service.ingest_channel_message(
        GUILD_ID, ticket.channel_id, STAFF_ID, "staff", None, "anything else?"
    )

    assert [before.is_support, staff_reply.is_support, creator_reply.is_support, after.is_support] == [
        False,
        True,
        False,
        False,
    ]
    assert [before.seq, staff_reply.seq, creator_reply.seq, after.seq] == [2, 3, 4, 5]


@pytest.mark.asyncio
async def test_claim_conflict_reports_holder(services, gateway, panel) -> None:
    gateway.member_roles[STAFF_ID] = {SUPPORT_ROLE_ID}
    ticket = await _open_ticket(services, panel)
    await services.ticket_service.claim_ticket(ticket.id, STAFF_ID)

    with pytest.raises(ConflictError) as excinfo:
        await services.ticket_service.claim_ticket(ticket.id, OWNER_ID)
    assert excinfo.value.holder_id == STAFF_ID


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(services, gateway, panel) -> None:
    rivals = [STAFF_ID, STAFF_ID + 1, STAFF_ID + 2]
    for rival in rivals:
        gateway.member_roles[rival] = {SUPPORT_ROLE_ID}
    ticket = await _open_ticket(services, panel)

    results = await asyncio.gather(
        *(services.ticket_service.claim_ticket(ticket.id, rival) for rival in rivals),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 2
    holder = winners[0].claimed_by_id
    assert all(loser.holder_id == holder for loser in losers)


@pytest.mark.asyncio
async def test_claim_requires_operator_or_support_role(services, panel) -> None:
    ticket = await _open_ticket(services, panel)
    with pytest.raises(PermissionDeniedError):
        await services.ticket_service.claim_ticket(ticket.id, 4242)


@pytest.mark.asyncio
async def test_close_and_reopen(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)

    closed = await services.ticket_service.set_status(ticket.id, OWNER_ID, "closed")
    assert closed.status == "closed"
    assert closed.closed_by_id == OWNER_ID
    gateway.edit_channel_permissions.assert_awaited_with(
        ticket.channel_id, PermissionRule(subject_id=CREATOR_ID, kind="member", allow=False)
    )
    assert gateway.send_as_system.await_args.kwargs["controls"] is TicketControls.CLOSED

    again = await services.ticket_service.set_status(ticket.id, OWNER_ID, "closed")
    assert again.status == "closed"
    assert gateway.edit_channel_permissions.await_count == 1

    with pytest.raises(TicketStateError):
        await services.ticket_service.claim_ticket(ticket.id, OWNER_ID)

    reopened = await services.ticket_service.set_status(ticket.id, OWNER_ID, "open")
    assert reopened.status == "open"
    assert reopened.reopened_count == 1
    assert reopened.closed_at is None
    assert gateway.send_as_system.await_args.kwargs["controls"] is TicketControls.OPEN


@pytest.mark.asyncio
async def test_set_status_rejects_unknown_status_and_non_operators(services, panel) -> None:
    ticket = await _open_ticket(services, panel)
    with pytest.raises(ValidationError):
        await services.ticket_service.set_status(ticket.id, OWNER_ID, "archived")
    with pytest.raises(PermissionDeniedError):
        await services.ticket_service.set_status(ticket.id, CREATOR_ID, "closed")


@pytest.mark.asyncio
async def test_vanished_channel_does_not_block_status_changes(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)
    gateway.edit_channel_permissions.side_effect = ChannelGoneError()
    gateway.send_as_system.reset_mock()

    closed = await services.ticket_service.set_status(ticket.id, OWNER_ID, "closed")

    assert closed.status == "closed"
    assert closed.channel_id is None
    assert closed.channel_deleted_at is not None
    gateway.send_as_system.assert_not_awaited()

    reopened = await services.ticket_service.set_status(ticket.id, OWNER_ID, "open")
    assert reopened.status == "open"
    assert gateway.edit_channel_permissions.await_count == 1

    assert await services.ticket_service.add_participant(ticket.id, OWNER_ID, STAFF_ID) is True
    escalated = await services.ticket_service.escalate(ticket.id, OWNER_ID, 900)
    assert 900 in escalated.support_role_ids


@pytest.mark.asyncio
async def test_vanished_channel_keeps_operator_reply_in_log(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)
    gateway.send_as_identity.side_effect = ChannelGoneError()

    message = await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "hello", "Alice")

    assert message.seq == 2
    assert (await services.ticket_service.get_ticket(ticket.id)).channel_id is None


@pytest.mark.asyncio
async def test_operator_message_uses_tenant_identity(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)

    message = await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "hello", "Alice")
    gateway.send_as_identity.assert_awaited_with(ticket.channel_id, "hello", "Alice (Support Team)", None)
    assert message.source == "console"
    assert message.seq == 2

    await services.tenant_service.update_settings(
        GUILD_ID, OWNER_ID, anonymous_mode=True, webhook_avatar_url="https://cdn.example/team.png"
    )
    await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "again", "Alice")
    gateway.send_as_identity.assert_awaited_with(
        ticket.channel_id, "again", "Support Team", "https://cdn.example/team.png"
    )


@pytest.mark.asyncio
async def test_failed_mirror_does_not_log_message(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)
    gateway.send_as_identity.side_effect = UpstreamUnavailableError()

    with pytest.raises(UpstreamUnavailableError):
        await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "hello", "Alice")

    messages = await services.ticket_service.list_messages(ticket.id, OWNER_ID)
    assert [m.seq for m in messages] == [1]


@pytest.mark.asyncio
async def test_operator_reply_too_long_for_discord_is_rejected_before_mirroring(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)

    with pytest.raises(ValidationError):
        await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "x" * 2001, "Alice")
    gateway.send_as_identity.assert_not_awaited()

    message = await services.ticket_service.post_operator_message(
        ticket.id, OWNER_ID, "", "Alice", attachments=["https://cdn.example/log.txt"]
    )
    assert message.content == ""
    assert message.attachments == ["https://cdn.example/log.txt"]
    gateway.send_as_identity.assert_awaited_with(
        ticket.channel_id, "https://cdn.example/log.txt", "Alice (Support Team)", None
    )


@pytest.mark.asyncio
async def test_restricted_tenant_only_lets_claimant_reply(services, gateway, panel) -> None:
    manager_role = 800
    manager_id = 5005
    gateway.member_roles[STAFF_ID] = {SUPPORT_ROLE_ID, manager_role}
    gateway.member_roles[manager_id] = {manager_role}
    await services.tenant_service.update_settings(
        GUILD_ID, OWNER_ID, manager_role_id=manager_role, restrict_claimed_messages=True
    )
    ticket = await _open_ticket(services, panel)
    await services.ticket_service.claim_ticket(ticket.id, manager_id)

    await services.ticket_service.post_operator_message(ticket.id, manager_id, "on it", "Manager")
    await services.ticket_service.post_operator_message(ticket.id, OWNER_ID, "owner note", "Owner")
    with pytest.raises(PermissionDeniedError):
        await services.ticket_service.post_operator_message(ticket.id, STAFF_ID, "me too", "Staff")


@pytest.mark.asyncio
async def test_concurrent_appends_get_unique_sequence_ids(services, panel) -> None:
    ticket = await _open_ticket(services, panel)

    appended = await asyncio.gather(
        *(
            services.ticket_service.append_message(
                ticket.id, author_id=CREATOR_ID, content=f"msg {i}", source="discord", author_name="creator"
            )
            for i in range(10)
        )
    )

    assert sorted(m.seq for m in appended) == list(range(2, 12))
    stored = await services.ticket_service.list_messages(ticket.id, OWNER_ID, after_seq=6)
    assert [m.seq for m in stored] == [7, 8, 9, 10, 11]


@pytest.mark.asyncio
async def test_append_message_validation(services, panel) -> None:
    ticket = await _open_ticket(services, panel)
    with pytest.raises(ValidationError):
        await services.ticket_service.append_message(ticket.id, CREATOR_ID, "   ", "discord", "creator")
    with pytest.raises(ValidationError):
        await services.ticket_service.append_message(ticket.id, CREATOR_ID, "hi", "email", "creator")
    with pytest.raises(ValidationError):
        await services.ticket_service.append_message(ticket.id, CREATOR_ID, "x" * 4001, "discord", "creator")


@pytest.mark.asyncio
async def test_ingest_ignores_unknown_channels(services, panel) -> None:
    await _open_ticket(services, panel)
    assert await services.ticket_service.ingest_channel_message(GUILD_ID, 1, CREATOR_ID, "c", None, "hi") is None


@pytest.mark.asyncio
async def test_escalate_adds_role_to_ticket_and_panel(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)

    upgraded = await services.ticket_service.escalate(ticket.id, OWNER_ID, 4242)
    assert upgraded.support_role_ids == [SUPPORT_ROLE_ID, 4242]
    refreshed_panel = await services.panel_service.get_panel(panel.id)
    assert 4242 in refreshed_panel.support_role_ids
    gateway.edit_channel_permissions.assert_awaited_once_with(
        ticket.channel_id, PermissionRule(subject_id=4242, kind="role", allow=True, manage=True)
    )

    await services.ticket_service.escalate(ticket.id, OWNER_ID, 4242)
    assert gateway.edit_channel_permissions.await_count == 1


@pytest.mark.asyncio
async def test_escalate_rejects_unknown_role(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)
    gateway.resolve_role.side_effect = lambda guild_id, role_id: None
    with pytest.raises(ValidationError):
        await services.ticket_service.escalate(ticket.id, OWNER_ID, 4242)


@pytest.mark.asyncio
async def test_participants_are_idempotent(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)

    assert await services.ticket_service.add_participant(ticket.id, OWNER_ID, 6006) is True
    assert await services.ticket_service.add_participant(ticket.id, OWNER_ID, 6006) is False
    assert await services.ticket_service.remove_participant(ticket.id, OWNER_ID, 6006) is True
    assert await services.ticket_service.remove_participant(ticket.id, OWNER_ID, 6006) is False
    assert gateway.edit_channel_permissions.await_count == 2


@pytest.mark.asyncio
async def test_generate_transcript_posts_file(services, gateway, panel) -> None:
    ticket = await _open_ticket(services, panel)
    await services.ticket_service.ingest_channel_message(
        GUILD_ID, ticket.channel_id, CREATOR_ID, "creator", None, "line one\nline two"
    )

    artifact = await services.ticket_service.generate_transcript(ticket.id, OWNER_ID)

    assert artifact.line_count == 2
    assert artifact.filename == "ticket-sup-1-transcript.txt"
    assert artifact.path is not None and Path(artifact.path).exists()
    call = gateway.send_as_system.await_args
    assert call.args[0] == TRANSCRIPT_CHANNEL_ID
    assert isinstance(call.kwargs["file"], OutgoingFile)
    assert b"line one\\nline two" in call.kwargs["file"].content
    messages = await services.ticket_service.list_messages(ticket.id, OWNER_ID)
    assert len(artifact.content.decode("utf-8").splitlines()) == len(messages) == 2


@pytest.mark.asyncio
async def test_generate_transcript_requires_destination(services, panel) -> None:
    await services.panel_service.update_panel(panel.id, OWNER_ID, {"transcript_channel_id": None})
    ticket = await _open_ticket(services, panel)
    with pytest.raises(ValidationError):
        await services.ticket_service.generate_transcript(ticket.id, OWNER_ID)


@pytest.mark.asyncio
async def test_delete_channel_and_external_removal(services, gateway, panel) -> None:
    first = await _open_ticket(services, panel)
    second = await _open_ticket(services, panel, creator_id=CREATOR_ID + 1)

    deleted = await services.ticket_service.delete_channel(first.id, OWNER_ID)
    gateway.delete_channel.assert_awaited_once_with(first.channel_id)
    assert deleted.channel_id is None
    assert deleted.channel_deleted_at is not None

    await services.ticket_service.handle_channel_deleted(second.channel_id)
    refreshed = await services.ticket_service.get_ticket(second.id)
    assert refreshed.channel_id is None
    assert refreshed.status == "open"
