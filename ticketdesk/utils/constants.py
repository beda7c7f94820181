from __future__ import annotations

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_CLOSED = "closed"
TICKET_STATUSES = (TICKET_STATUS_OPEN, TICKET_STATUS_CLOSED)

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_INACTIVE = "inactive"

MESSAGE_SOURCE_SYSTEM = "system"
MESSAGE_SOURCE_CONSOLE = "console"
MESSAGE_SOURCE_DISCORD = "discord"
MESSAGE_SOURCES = (MESSAGE_SOURCE_SYSTEM, MESSAGE_SOURCE_CONSOLE, MESSAGE_SOURCE_DISCORD)

FORM_FIELD_KINDS = ("text", "multiline", "choice")
MAX_FORM_FIELDS = 5

PANEL_PREFIX_PATTERN = r"^[A-Z0-9]{1,16}$"

SUPPORT_TEAM_NAME = "Support Team"
ASSISTANT_NAME = "Support Assistant"
SYSTEM_AUTHOR_ID = 0
SYSTEM_AUTHOR_NAME = "System"

# Discord permission bit granting full guild administration.
ADMINISTRATOR_PERMISSION = 0x8

# Provider subscription states that keep a tenant entitled.
ENTITLED_PROVIDER_STATUSES = frozenset({"active", "trialing"})
