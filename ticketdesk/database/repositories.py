from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from database.base import Database, Transaction
from database.models import (
    Account,
    FormField,
    KnowledgeEntry,
    Tenant,
    TicketMessage,
    TicketPanel,
    TicketRecord,
)


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


class AccountRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert(self, account_id: int, username: str, avatar_url: str | None) -> Account:
        now = _now_iso()
        await self.db.execute(
            """
            INSERT INTO accounts(id, username, avatar_url, token_balance, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                avatar_url = excluded.avatar_url,
                updated_at = excluded.updated_at;
            """,
            [account_id, username, avatar_url, now, now],
        )
        account = await self.get(account_id)
        assert account is not None
        return account

    async def ensure(self, account_id: int, tx: Transaction | None = None) -> None:
        runner = tx or self.db
        now = _now_iso()
        await runner.execute(
            """
            INSERT INTO accounts(id, username, avatar_url, token_balance, created_at, updated_at)
            VALUES (?, ?, NULL, 0, ?, ?)
            ON CONFLICT(id) DO NOTHING;
            """,
            [account_id, str(account_id), now, now],
        )

    async def get(self, account_id: int, tx: Transaction | None = None) -> Account | None:
        runner = tx or self.db
        row = await runner.fetchone("SELECT * FROM accounts WHERE id = ?;", [account_id])
        if not row:
            return None
        return self._row_to_account(row)

    async def adjust_tokens(self, account_id: int, delta: int, tx: Transaction | None = None) -> bool:
        runner = tx or self.db
        affected = await runner.execute(
            """
            UPDATE accounts
            SET token_balance = token_balance + ?, updated_at = ?
            WHERE id = ? AND token_balance + ? >= 0;
            """,
            [delta, _now_iso(), account_id, delta],
        )
        return affected == 1

    async def decrement_floored(self, account_id: int, amount: int, tx: Transaction | None = None) -> None:
        runner = tx or self.db
        await runner.execute(
            """
            UPDATE accounts
            SET token_balance = CASE WHEN token_balance >= ? THEN token_balance - ? ELSE 0 END,
                updated_at = ?
            WHERE id = ?;
            """,
            [amount, amount, _now_iso(), account_id],
        )

    def _row_to_account(self, row: dict[str, Any]) -> Account:
        return Account(
            id=int(row["id"]),
            username=row["username"],
            avatar_url=row["avatar_url"],
            token_balance=int(row["token_balance"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class TenantRepository:
    _MUTABLE_COLUMNS = {
        "name",
        "icon_url",
        "manager_role_id",
        "anonymous_mode",
        "webhook_avatar_url",
        "restrict_claimed_messages",
        "advisor_enabled",
    }

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, tenant: Tenant) -> bool:
        now = _now_iso()
        affected = await self.db.execute(
            """
            INSERT INTO tenants(
                guild_id, name, icon_url, owner_id, claimed_by_id, subscription_id,
                subscription_status, manager_role_id, anonymous_mode, webhook_avatar_url,
                restrict_claimed_messages, advisor_enabled, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id) DO NOTHING;
            """,
            [
                tenant.guild_id,
                tenant.name,
                tenant.icon_url,
                tenant.owner_id,
                tenant.claimed_by_id,
                tenant.subscription_id,
                tenant.subscription_status,
                tenant.manager_role_id,
                tenant.anonymous_mode,
                tenant.webhook_avatar_url,
                tenant.restrict_claimed_messages,
                tenant.advisor_enabled,
                now,
                now,
            ],
        )
        return affected == 1

    async def get(self, guild_id: int, tx: Transaction | None = None) -> Tenant | None:
        runner = tx or self.db
        row = await runner.fetchone("SELECT * FROM tenants WHERE guild_id = ?;", [guild_id])
        if not row:
            return None
        return self._row_to_tenant(row)

    async def get_by_subscription(self, subscription_id: str, tx: Transaction | None = None) -> Tenant | None:
        runner = tx or self.db
        row = await runner.fetchone(
            "SELECT * FROM tenants WHERE subscription_id = ?;",
            [subscription_id],
        )
        if not row:
            return None
        return self._row_to_tenant(row)

    async def list_for_account(self, account_id: int) -> list[Tenant]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM tenants
            WHERE owner_id = ? OR claimed_by_id = ?
            ORDER BY name ASC;
            """,
            [account_id, account_id],
        )
        return [self._row_to_tenant(row) for row in rows]

    async def update_fields(self, guild_id: int, fields: dict[str, Any]) -> None:
        unknown = set(fields) - self._MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported tenant columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        await self.db.execute(
            f"UPDATE tenants SET {assignments}, updated_at = ? WHERE guild_id = ?;",
            [*fields.values(), _now_iso(), guild_id],
        )

    async def activate(self, guild_id: int, account_id: int, tx: Transaction | None = None) -> bool:
        runner = tx or self.db
        affected = await runner.execute(
            """
            UPDATE tenants
            SET subscription_status = 'active', claimed_by_id = ?, updated_at = ?
            WHERE guild_id = ? AND subscription_status <> 'active';
            """,
            [account_id, _now_iso(), guild_id],
        )
        return affected == 1

    async def bind_subscription(
        self,
        guild_id: int,
        subscription_id: str | None,
        claimed_by_id: int,
        tx: Transaction | None = None,
    ) -> bool:
        runner = tx or self.db
        affected = await runner.execute(
            """
            UPDATE tenants
            SET subscription_status = 'active', subscription_id = ?, claimed_by_id = ?, updated_at = ?
            WHERE guild_id = ?;
            """,
            [subscription_id, claimed_by_id, _now_iso(), guild_id],
        )
        return affected == 1

    async def set_subscription_status(
        self,
        guild_id: int,
        status: str,
        claimed_by_id: int | None,
        tx: Transaction | None = None,
    ) -> None:
        runner = tx or self.db
        await runner.execute(
            """
            UPDATE tenants
            SET subscription_status = ?, claimed_by_id = ?, updated_at = ?
            WHERE guild_id = ?;
            """,
            [status, claimed_by_id, _now_iso(), guild_id],
        )

    def _row_to_tenant(self, row: dict[str, Any]) -> Tenant:
        return Tenant(
            guild_id=int(row["guild_id"]),
            name=row["name"],
            owner_id=int(row["owner_id"]),
            icon_url=row["icon_url"],
            claimed_by_id=_optional_int(row["claimed_by_id"]),
            subscription_id=row["subscription_id"],
            subscription_status=row["subscription_status"],
            manager_role_id=_optional_int(row["manager_role_id"]),
            anonymous_mode=bool(row["anonymous_mode"]),
            webhook_avatar_url=row["webhook_avatar_url"],
            restrict_claimed_messages=bool(row["restrict_claimed_messages"]),
            advisor_enabled=bool(row["advisor_enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class PanelRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, panel: TicketPanel) -> None:
        now = _now_iso()
        await self.db.execute(
            """
            INSERT INTO ticket_panels(
                id, guild_id, channel_id, category_id, prefix, title, description,
                support_role_ids_json, transcript_channel_id, form_fields_json,
                message_id, is_deleted, created_by_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                panel.id,
                panel.guild_id,
                panel.channel_id,
                panel.category_id,
                panel.prefix,
                panel.title,
                panel.description,
                _json_dump(panel.support_role_ids),
                panel.transcript_channel_id,
                _json_dump([f.to_dict() for f in panel.form_fields]),
                panel.message_id,
                panel.is_deleted,
                panel.created_by_id,
                now,
                now,
            ],
        )

    async def update(self, panel: TicketPanel) -> None:
        await self.db.execute(
            """
            UPDATE ticket_panels
            SET channel_id = ?, category_id = ?, prefix = ?, title = ?, description = ?,
                support_role_ids_json = ?, transcript_channel_id = ?, form_fields_json = ?,
                updated_at = ?
            WHERE id = ?;
            """,
            [
                panel.channel_id,
                panel.category_id,
                panel.prefix,
                panel.title,
                panel.description,
                _json_dump(panel.support_role_ids),
                panel.transcript_channel_id,
                _json_dump([f.to_dict() for f in panel.form_fields]),
                _now_iso(),
                panel.id,
            ],
        )

    async def set_message_id(self, panel_id: str, message_id: int | None) -> None:
        await self.db.execute(
            "UPDATE ticket_panels SET message_id = ?, updated_at = ? WHERE id = ?;",
            [message_id, _now_iso(), panel_id],
        )

    async def soft_delete(self, panel_id: str) -> bool:
        affected = await self.db.execute(
            """
            UPDATE ticket_panels
            SET is_deleted = TRUE, updated_at = ?
            WHERE id = ? AND is_deleted = FALSE;
            """,
            [_now_iso(), panel_id],
        )
        return affected == 1

    async def add_support_role(self, panel_id: str, role_id: int, tx: Transaction) -> None:
        row = await tx.fetchone(
            "SELECT support_role_ids_json FROM ticket_panels WHERE id = ?;",
            [panel_id],
        )
        if not row:
            return
        role_ids = [int(x) for x in _json_load(row["support_role_ids_json"], [])]
        if role_id in role_ids:
            return
        role_ids.append(role_id)
        await tx.execute(
            "UPDATE ticket_panels SET support_role_ids_json = ?, updated_at = ? WHERE id = ?;",
            [_json_dump(role_ids), _now_iso(), panel_id],
        )

    async def get(self, panel_id: str, tx: Transaction | None = None) -> TicketPanel | None:
        runner = tx or self.db
        row = await runner.fetchone("SELECT * FROM ticket_panels WHERE id = ?;", [panel_id])
        if not row:
            return None
        return self._row_to_panel(row)

    async def find_live_by_prefix(self, guild_id: int, prefix: str) -> TicketPanel | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM ticket_panels
            WHERE guild_id = ? AND prefix = ? AND is_deleted = FALSE;
            """,
            [guild_id, prefix],
        )
        if not row:
            return None
        return self._row_to_panel(row)

    async def list_by_guild(self, guild_id: int, include_deleted: bool = False) -> list[TicketPanel]:
        query = "SELECT * FROM ticket_panels WHERE guild_id = ?"
        if not include_deleted:
            query += " AND is_deleted = FALSE"
        rows = await self.db.fetchall(query + " ORDER BY created_at ASC;", [guild_id])
        return [self._row_to_panel(row) for row in rows]

    async def list_live(self) -> list[TicketPanel]:
        rows = await self.db.fetchall(
            "SELECT * FROM ticket_panels WHERE is_deleted = FALSE ORDER BY created_at ASC;"
        )
        return [self._row_to_panel(row) for row in rows]

    def _row_to_panel(self, row: dict[str, Any]) -> TicketPanel:
        return TicketPanel(
            id=row["id"],
            guild_id=int(row["guild_id"]),
            channel_id=int(row["channel_id"]),
            category_id=_optional_int(row["category_id"]),
            prefix=row["prefix"],
            title=row["title"],
            description=row["description"],
            support_role_ids=[int(x) for x in _json_load(row["support_role_ids_json"], [])],
            transcript_channel_id=_optional_int(row["transcript_channel_id"]),
            form_fields=[FormField.from_dict(x) for x in _json_load(row["form_fields_json"], [])],
            message_id=_optional_int(row["message_id"]),
            is_deleted=bool(row["is_deleted"]),
            created_by_id=_optional_int(row["created_by_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_number(self, guild_id: int, prefix: str, tx: Transaction) -> int:
        # Seed from existing tickets so counters survive data imported before the table existed.
        await tx.execute(
            """
            INSERT INTO ticket_counters(guild_id, prefix, value)
            SELECT CAST(? AS BIGINT), CAST(? AS TEXT), COALESCE(MAX(number), 0)
            FROM tickets WHERE guild_id = ? AND prefix = ?
            ON CONFLICT(guild_id, prefix) DO NOTHING;
            """,
            [guild_id, prefix, guild_id, prefix],
        )
        row = await tx.fetchone(
            """
            UPDATE ticket_counters
            SET value = value + 1
            WHERE guild_id = ? AND prefix = ?
            RETURNING value;
            """,
            [guild_id, prefix],
        )
        assert row is not None
        return int(row["value"])

    async def create(self, ticket: TicketRecord, tx: Transaction) -> None:
        await tx.execute(
            """
            INSERT INTO tickets(
                id, guild_id, panel_id, prefix, number, title, status, creator_id, creator_name,
                claimed_by_id, claimed_at, channel_id, category_id, support_role_ids_json,
                transcript_channel_id, form_responses_json, message_seq, reopened_count,
                closed_at, closed_by_id, channel_deleted_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.guild_id,
                ticket.panel_id,
                ticket.prefix,
                ticket.number,
                ticket.title,
                ticket.status,
                ticket.creator_id,
                ticket.creator_name,
                ticket.claimed_by_id,
                ticket.claimed_at,
                ticket.channel_id,
                ticket.category_id,
                _json_dump(ticket.support_role_ids),
                ticket.transcript_channel_id,
                _json_dump(ticket.form_responses),
                ticket.message_seq,
                ticket.reopened_count,
                ticket.closed_at,
                ticket.closed_by_id,
                ticket.channel_deleted_at,
                ticket.created_at,
                ticket.updated_at,
            ],
        )

    async def get(self, ticket_id: str, tx: Transaction | None = None) -> TicketRecord | None:
        runner = tx or self.db
        row = await runner.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def get_by_channel(self, channel_id: int) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE channel_id = ?;", [channel_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def list_by_guild(self, guild_id: int, status: str | None = None, limit: int = 200) -> list[TicketRecord]:
        if status:
            rows = await self.db.fetchall(
                """
                SELECT * FROM tickets
                WHERE guild_id = ? AND status = ?
                ORDER BY created_at DESC
                LIMIT ?;
                """,
                [guild_id, status, limit],
            )
        else:
            rows = await self.db.fetchall(
                """
                SELECT * FROM tickets
                WHERE guild_id = ?
                ORDER BY created_at DESC
                LIMIT ?;
                """,
                [guild_id, limit],
            )
        return [self._row_to_ticket(row) for row in rows]

    async def count_open_by_creator(self, guild_id: int, creator_id: int) -> int:
        row = await self.db.fetchone(
            """
            SELECT COUNT(*) AS total FROM tickets
            WHERE guild_id = ? AND creator_id = ? AND status = 'open';
            """,
            [guild_id, creator_id],
        )
        return int(row["total"]) if row else 0

    async def bind_channel(self, ticket_id: str, channel_id: int) -> bool:
        affected = await self.db.execute(
            """
            UPDATE tickets
            SET channel_id = ?, channel_deleted_at = NULL, updated_at = ?
            WHERE id = ? AND channel_id IS NULL;
            """,
            [channel_id, _now_iso(), ticket_id],
        )
        return affected == 1

    async def clear_channel(self, ticket_id: str) -> bool:
        now = _now_iso()
        affected = await self.db.execute(
            """
            UPDATE tickets
            SET channel_id = NULL, channel_deleted_at = ?, updated_at = ?
            WHERE id = ? AND channel_id IS NOT NULL;
            """,
            [now, now, ticket_id],
        )
        return affected == 1

    async def try_claim(self, ticket_id: str, actor_id: int) -> bool:
        now = _now_iso()
        affected = await self.db.execute(
            """
            UPDATE tickets
            SET claimed_by_id = ?, claimed_at = ?, updated_at = ?
            WHERE id = ? AND claimed_by_id IS NULL AND status = 'open';
            """,
            [actor_id, now, now, ticket_id],
        )
        return affected == 1

    async def try_unclaim(self, ticket_id: str, actor_id: int) -> bool:
        affected = await self.db.execute(
            """
            UPDATE tickets
            SET claimed_by_id = NULL, claimed_at = NULL, updated_at = ?
            WHERE id = ? AND claimed_by_id = ?;
            """,
            [_now_iso(), ticket_id, actor_id],
        )
        return affected == 1

    async def transition_status(self, ticket_id: str, from_status: str, to_status: str, actor_id: int) -> bool:
        now = _now_iso()
        if to_status == "closed":
            affected = await self.db.execute(
                """
                UPDATE tickets
                SET status = 'closed', closed_at = ?, closed_by_id = ?, updated_at = ?
                WHERE id = ? AND status = ?;
                """,
                [now, actor_id, now, ticket_id, from_status],
            )
        else:
            affected = await self.db.execute(
                """
                UPDATE tickets
                SET status = 'open', closed_at = NULL, closed_by_id = NULL,
                    reopened_count = reopened_count + 1, updated_at = ?
                WHERE id = ? AND status = ?;
                """,
                [now, ticket_id, from_status],
            )
        return affected == 1

    async def reserve_message_seq(self, ticket_id: str, tx: Transaction) -> tuple[int, int | None] | None:
        row = await tx.fetchone(
            """
            UPDATE tickets
            SET message_seq = message_seq + 1, updated_at = ?
            WHERE id = ?
            RETURNING message_seq, claimed_by_id;
            """,
            [_now_iso(), ticket_id],
        )
        if not row:
            return None
        return int(row["message_seq"]), _optional_int(row["claimed_by_id"])

    async def add_support_role(self, ticket_id: str, role_id: int, tx: Transaction) -> bool:
        row = await tx.fetchone("SELECT support_role_ids_json FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return False
        role_ids = [int(x) for x in _json_load(row["support_role_ids_json"], [])]
        if role_id in role_ids:
            return False
        role_ids.append(role_id)
        await tx.execute(
            "UPDATE tickets SET support_role_ids_json = ?, updated_at = ? WHERE id = ?;",
            [_json_dump(role_ids), _now_iso(), ticket_id],
        )
        return True

    def _row_to_ticket(self, row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            guild_id=int(row["guild_id"]),
            panel_id=row["panel_id"],
            prefix=row["prefix"],
            number=int(row["number"]),
            title=row["title"],
            status=row["status"],
            creator_id=int(row["creator_id"]),
            creator_name=row["creator_name"],
            claimed_by_id=_optional_int(row["claimed_by_id"]),
            claimed_at=row["claimed_at"],
            channel_id=_optional_int(row["channel_id"]),
            category_id=_optional_int(row["category_id"]),
            support_role_ids=[int(x) for x in _json_load(row["support_role_ids_json"], [])],
            transcript_channel_id=_optional_int(row["transcript_channel_id"]),
            form_responses={
                str(key): str(value)
                for key, value in dict(_json_load(row["form_responses_json"], {})).items()
            },
            message_seq=int(row["message_seq"]),
            reopened_count=int(row["reopened_count"]),
            closed_at=row["closed_at"],
            closed_by_id=_optional_int(row["closed_by_id"]),
            channel_deleted_at=row["channel_deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class MessageRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, message: TicketMessage, tx: Transaction) -> None:
        await tx.execute(
            """
            INSERT INTO ticket_messages(
                ticket_id, seq, source, author_id, author_name, avatar_url,
                content, attachments_json, is_support, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                message.ticket_id,
                message.seq,
                message.source,
                message.author_id,
                message.author_name,
                message.avatar_url,
                message.content,
                _json_dump(message.attachments),
                message.is_support,
                message.created_at,
            ],
        )

    async def list_by_ticket(self, ticket_id: str, after_seq: int = 0) -> list[TicketMessage]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM ticket_messages
            WHERE ticket_id = ? AND seq > ?
            ORDER BY seq ASC;
            """,
            [ticket_id, after_seq],
        )
        return [self._row_to_message(row) for row in rows]

    def _row_to_message(self, row: dict[str, Any]) -> TicketMessage:
        return TicketMessage(
            ticket_id=row["ticket_id"],
            seq=int(row["seq"]),
            source=row["source"],
            author_id=int(row["author_id"]),
            author_name=row["author_name"],
            avatar_url=row["avatar_url"],
            content=row["content"],
            attachments=[str(x) for x in _json_load(row["attachments_json"], [])],
            is_support=bool(row["is_support"]),
            created_at=row["created_at"],
        )


class ParticipantRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(self, ticket_id: str, user_id: int, added_by_id: int) -> bool:
        affected = await self.db.execute(
            """
            INSERT INTO ticket_participants(ticket_id, user_id, added_by_id, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(ticket_id, user_id) DO NOTHING;
            """,
            [ticket_id, user_id, added_by_id, _now_iso()],
        )
        return affected == 1

    async def remove(self, ticket_id: str, user_id: int) -> bool:
        affected = await self.db.execute(
            "DELETE FROM ticket_participants WHERE ticket_id = ? AND user_id = ?;",
            [ticket_id, user_id],
        )
        return affected == 1

    async def list_user_ids(self, ticket_id: str) -> list[int]:
        rows = await self.db.fetchall(
            "SELECT user_id FROM ticket_participants WHERE ticket_id = ? ORDER BY created_at ASC;",
            [ticket_id],
        )
        return [int(row["user_id"]) for row in rows]


class EventRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def log(
        self,
        ticket_id: str,
        guild_id: int,
        actor_id: int | None,
        event_type: str,
        payload: dict[str, Any] | None = None,
        tx: Transaction | None = None,
    ) -> None:
        runner = tx or self.db
        await runner.execute(
            """
            INSERT INTO ticket_events(id, ticket_id, guild_id, actor_id, event_type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [str(uuid4()), ticket_id, guild_id, actor_id, event_type, _json_dump(payload or {}), _now_iso()],
        )

    async def list_by_ticket(self, ticket_id: str) -> list[dict[str, Any]]:
        rows = await self.db.fetchall(
            """
            SELECT event_type, actor_id, payload_json, created_at FROM ticket_events
            WHERE ticket_id = ?
            ORDER BY created_at ASC;
            """,
            [ticket_id],
        )
        return [
            {
                "event_type": row["event_type"],
                "actor_id": _optional_int(row["actor_id"]),
                "payload": _json_load(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]


class AuditRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def log(
        self,
        guild_id: int | None,
        actor_id: int | None,
        action: str,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        tx: Transaction | None = None,
    ) -> None:
        runner = tx or self.db
        await runner.execute(
            """
            INSERT INTO audit_logs(id, guild_id, actor_id, action, target_id, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [str(uuid4()), guild_id, actor_id, action, target_id, _json_dump(metadata or {}), _now_iso()],
        )


class BillingEventRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def record(self, event_id: str, event_type: str, tx: Transaction) -> bool:
        affected = await tx.execute(
            """
            INSERT INTO billing_events(event_id, event_type, processed_at)
            VALUES (?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING;
            """,
            [event_id, event_type, _now_iso()],
        )
        return affected == 1


class KnowledgeRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(self, entry: KnowledgeEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO knowledge_entries(id, guild_id, key_phrase, answer, auto_captured, created_by_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [
                entry.id,
                entry.guild_id,
                entry.key_phrase,
                entry.answer,
                entry.auto_captured,
                entry.created_by_id,
                entry.created_at or _now_iso(),
            ],
        )

    async def find_by_phrase(self, guild_id: int, key_phrase: str) -> KnowledgeEntry | None:
        row = await self.db.fetchone(
            "SELECT * FROM knowledge_entries WHERE guild_id = ? AND key_phrase = ?;",
            [guild_id, key_phrase],
        )
        if not row:
            return None
        return self._row_to_entry(row)

    async def list_by_guild(self, guild_id: int) -> list[KnowledgeEntry]:
        rows = await self.db.fetchall(
            "SELECT * FROM knowledge_entries WHERE guild_id = ? ORDER BY created_at ASC;",
            [guild_id],
        )
        return [self._row_to_entry(row) for row in rows]

    async def delete(self, guild_id: int, entry_id: str) -> bool:
        affected = await self.db.execute(
            "DELETE FROM knowledge_entries WHERE guild_id = ? AND id = ?;",
            [guild_id, entry_id],
        )
        return affected == 1

    def _row_to_entry(self, row: dict[str, Any]) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            guild_id=int(row["guild_id"]),
            key_phrase=row["key_phrase"],
            answer=row["answer"],
            auto_captured=bool(row["auto_captured"]),
            created_by_id=_optional_int(row["created_by_id"]),
            created_at=row["created_at"],
        )
