"""Lightweight chat UI state shared across client components."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ChatUIState:
    server_url: str
    directory: str | None = None
    show_status_on_start: bool = True
    turn_timeout: float | None = None
