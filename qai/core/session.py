"""
qai.core.session — The ordered message log of one task.

A Session is created per user task and owned by the loop controller, which
is the only writer. Renderers receive ``SessionSnapshot`` objects and never
hold a live reference.
"""

from __future__ import annotations

from typing import Iterable

from qai.core.models import Message, Role, SessionSnapshot


class Session:
    """Messages, step counter, cancellation flag and the active tool handle."""

    def __init__(self, history: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self.step_count = 0
        self.cancelled = False
        self.active_tool: str | None = None
        for msg in history:
            self.append(msg.role, msg.content)

    def append(self, role: Role, content: str) -> Message:
        msg = Message(role=role, content=content, index=len(self._messages))
        self._messages.append(msg)
        return msg

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def last(self, role: Role) -> Message | None:
        for msg in reversed(self._messages):
            if msg.role == role:
                return msg
        return None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            messages=tuple(self._messages),
            step_count=self.step_count,
            cancelled=self.cancelled,
            active_tool=self.active_tool,
        )

    def __len__(self) -> int:
        return len(self._messages)
