from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from core.config import TranscriptConfig
from database.models import TicketMessage, TicketRecord
from services.transcript_service import TranscriptService, render_line
from utils.time import format_duration


def _message(seq: int, content: str, **kwargs) -> TicketMessage:
    return TicketMessage(
        ticket_id="t1",
        seq=seq,
        source=kwargs.pop("source", "discord"),
        author_id=kwargs.pop("author_id", 2002),
        author_name=kwargs.pop("author_name", "creator"),
        content=content,
        created_at="2024-05-01T10:00:00+00:00",
        **kwargs,
    )


def _ticket(**kwargs) -> TicketRecord:
    return TicketRecord(
        id="t1",
        guild_id=111,
        panel_id="p1",
        prefix="SUP",
        number=7,
        creator_id=2002,
        creator_name="creator",
        **kwargs,
    )


def test_render_line_escapes_and_lists_attachments() -> None:
    line = render_line(_message(3, "first\nsecond", attachments=["https://cdn.example/a.png"]))
    assert line == (
        "[2024-05-01T10:00:00+00:00] #3 creator (2002) [discord]: first\\nsecond"
        " | attachments: https://cdn.example/a.png"
    )


def test_build_text_orders_by_sequence() -> None:
    lines = TranscriptService.build_text([_message(2, "b"), _message(1, "a")])
    assert [line.split("]: ")[-1] for line in lines] == ["a", "b"]


def test_ticket_duration() -> None:
    ticket = _ticket(created_at="2024-05-01T10:00:00+00:00", closed_at="2024-05-02T12:30:00+00:00")
    assert TranscriptService.ticket_duration(ticket) == "1d 2h 30m"
    assert TranscriptService.ticket_duration(_ticket()) == "-"
    assert format_duration(timedelta(seconds=20)) == "0m"


@pytest.mark.asyncio
async def test_render_archives_when_enabled(tmp_path: Path) -> None:
    service = TranscriptService(TranscriptConfig(storage_directory=str(tmp_path)))
    artifact = await service.render(_ticket(), [_message(1, "hello")])

    assert artifact.filename == "ticket-sup-7-transcript.txt"
    assert artifact.line_count == 1
    assert artifact.content.decode("utf-8").splitlines() == [render_line(_message(1, "hello"))]
    assert artifact.path == tmp_path / "111" / "t1" / artifact.filename
    assert artifact.path.read_bytes() == artifact.content


@pytest.mark.asyncio
async def test_render_skips_archive_when_disabled(tmp_path: Path) -> None:
    service = TranscriptService(TranscriptConfig(storage_directory=str(tmp_path), archive_enabled=False))
    artifact = await service.render(_ticket(), [])
    assert artifact.path is None
    assert artifact.line_count == 0
    assert not any(tmp_path.iterdir())
