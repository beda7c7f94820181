from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from core.config import TranscriptConfig
from database.models import TicketMessage, TicketRecord
from utils.time import format_duration, parse_iso, utc_now


@dataclass(slots=True)
class TranscriptArtifact:
    filename: str
    content: bytes
    line_count: int
    path: Path | None = None


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n")


def render_line(message: TicketMessage) -> str:
    line = (
        f"[{message.created_at}] #{message.seq} {_escape(message.author_name)} "
        f"({message.author_id}) [{message.source}]: {_escape(message.content)}"
    )
    if message.attachments:
        line += " | attachments: " + ", ".join(message.attachments)
    return line


class TranscriptService:
    def __init__(self, config: TranscriptConfig) -> None:
        self.config = config
        self.base_dir = Path(config.storage_directory)

    @staticmethod
    def build_text(messages: Iterable[TicketMessage]) -> list[str]:
        ordered = sorted(messages, key=lambda msg: msg.seq)
        return [render_line(msg) for msg in ordered]

    @staticmethod
    def ticket_duration(ticket: TicketRecord) -> str:
        opened = parse_iso(ticket.created_at)
        if opened is None:
            return "-"
        ended = parse_iso(ticket.closed_at) or utc_now()
        return format_duration(ended - opened)

    async def render(self, ticket: TicketRecord, messages: Iterable[TicketMessage]) -> TranscriptArtifact:
        lines = self.build_text(messages)
        body = "".join(f"{line}\n" for line in lines)
        artifact = TranscriptArtifact(
            filename=f"ticket-{ticket.display_name.lower()}-transcript.txt",
            content=body.encode("utf-8"),
            line_count=len(lines),
        )
        if self.config.archive_enabled:
            artifact.path = await asyncio.to_thread(self._archive, ticket, artifact)
        return artifact

    def _archive(self, ticket: TicketRecord, artifact: TranscriptArtifact) -> Path:
        target_dir = self.base_dir / str(ticket.guild_id) / ticket.id
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / artifact.filename
        path.write_bytes(artifact.content)
        return path
