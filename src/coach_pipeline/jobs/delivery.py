"""Delivery adapters used by notification and document job handlers."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> None:
        """Deliver one email or raise."""


class DocumentRenderer(Protocol):
    def render(self, *, booking_id: str, kind: str, content: dict[str, Any]) -> Path:
        """Render one booking document and return where it was written."""


@dataclass(slots=True)
class LoggingEmailSender:
    """Records outgoing mail in the log; keeps sent messages for inspection."""

    sent: list[EmailMessage] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.sent.append(message)
        logger.info(
            "Email sent to=%s subject=%s bytes=%d",
            message.to,
            message.subject,
            len(message.html.encode("utf-8")),
        )


class FileDocumentRenderer:
    """Writes `<base_dir>/<booking_id>/<kind>.json`, replacing earlier renders."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def render(self, *, booking_id: str, kind: str, content: dict[str, Any]) -> Path:
        target_dir = self.base_dir / booking_id
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{kind}.json"
        tmp_path = target.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(content, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        tmp_path.replace(target)
        logger.info("Document rendered booking_id=%s kind=%s path=%s", booking_id, kind, target)
        return target
