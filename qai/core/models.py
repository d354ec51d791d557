"""
qai.core.models — Pydantic schemas for the agent's conversation, providers,
tool invocations and persisted configuration.

Messages are immutable once created; the Session (``qai.core.session``) is
the only place that creates them.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from qai.core.errors import ErrorKind, ToolFailureKind

logger = logging.getLogger("qai.core.models")


# ---------------------------------------------------------------------------
# Cross-platform directory helpers
# ---------------------------------------------------------------------------

def get_global_config_dir() -> Path:
    """
    Return the user-level config directory for QAI, created if needed.

    - ``QAI_CONFIG_DIR`` if set
    - Windows:  %LOCALAPPDATA%\\qai
    - macOS:    ~/Library/Application Support/qai
    - Linux:    $XDG_CONFIG_HOME/qai  (default ~/.config/qai)
    """
    override = os.environ.get("QAI_CONFIG_DIR")
    if override:
        d = Path(override)
    else:
        if sys.platform == "win32":
            base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        elif sys.platform == "darwin":
            base = Path.home() / "Library" / "Application Support"
        else:
            base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        d = base / "qai"
    d.mkdir(parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    OBSERVATION = "tool-observation"


class AuthScheme(StrEnum):
    BEARER = "bearer"
    X_API_KEY = "x-api-key"
    NONE = "none"


class RequestShape(StrEnum):
    OPENAI_CHAT = "openai-chat"
    ANTHROPIC_MESSAGES = "anthropic-messages"
    OLLAMA_CHAT = "ollama-chat"


class TaskStatus(StrEnum):
    """Terminal states reported back to the host."""
    ANSWERED = "Answered"
    STEP_CAP_EXCEEDED = "StepCapExceeded"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single entry in the session's ordered message log."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    index: int
    timestamp: float = Field(default_factory=time.time)


class SessionSnapshot(BaseModel):
    """Read-only view of a session handed to renderers after each append."""
    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...] = ()
    step_count: int = 0
    cancelled: bool = False
    active_tool: str | None = None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """Static description of one vendor chat API."""
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    chat_endpoint_url: str
    auth_scheme: AuthScheme
    request_shape: RequestShape
    default_model: str
    description: str = ""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolInvocation(BaseModel):
    """A tool call extracted from the model's output."""
    model_config = ConfigDict(frozen=True)

    name: str
    raw_input: str


class ToolResult(BaseModel):
    """Outcome of a tool invocation: success(text) or failure(kind, detail)."""
    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    output: str = ""
    failure_kind: ToolFailureKind | None = None
    elapsed: float = 0.0

    @classmethod
    def success(cls, name: str, output: str, elapsed: float = 0.0) -> "ToolResult":
        return cls(name=name, ok=True, output=output, elapsed=elapsed)

    @classmethod
    def failure(
        cls, name: str, kind: ToolFailureKind, detail: str, elapsed: float = 0.0
    ) -> "ToolResult":
        return cls(name=name, ok=False, output=detail, failure_kind=kind, elapsed=elapsed)

    def as_observation(self) -> str:
        """Text folded into the conversation for the model to read."""
        if self.ok:
            return self.output if self.output else "(no output)"
        return f"[{self.name} failed: {self.failure_kind}] {self.output}"


class ToolSpec(BaseModel):
    """Name, description and input convention of a built-in tool."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    input_format: str
    category: str = ""


# ---------------------------------------------------------------------------
# Task outcome
# ---------------------------------------------------------------------------

class TaskOutcome(BaseModel):
    """What a task invocation reports to its host. The host renders, never alters."""
    model_config = ConfigDict(frozen=True)

    status: TaskStatus
    text: str = ""
    error_kind: ErrorKind | None = None
    detail: str = ""
    steps: int = 0

    @property
    def exit_code(self) -> int:
        return {
            TaskStatus.ANSWERED: 0,
            TaskStatus.FAILED: 1,
            TaskStatus.STEP_CAP_EXCEEDED: 2,
            TaskStatus.CANCELLED: 130,
        }[self.status]


# ---------------------------------------------------------------------------
# Persisted configuration
# ---------------------------------------------------------------------------

class GlobalConfig(BaseModel):
    """
    User-level settings stored in the global config directory as
    ``config.json``.

    API tokens are stored per provider and written the moment they are
    entered. Environment variables always take precedence at startup.
    """
    provider: str = "openai"
    api_tokens: dict[str, str] = {}
    models: dict[str, str] = {}
    endpoints: dict[str, str] = {}
    max_steps: int = 15
    connect_timeout: float = 5.0
    read_timeout: float = 120.0
    shell_timeout: float = 60.0

    @staticmethod
    def path() -> Path:
        return get_global_config_dir() / "config.json"

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load from disk, returning defaults if the file doesn't exist."""
        path = cls.path()
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return cls(**data)
            except (OSError, json.JSONDecodeError, TypeError, ValidationError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", path, exc)
                return cls()
        return cls()

    def save(self) -> Path:
        """Persist to disk. Returns the file path."""
        path = self.path()
        path.write_text(
            json.dumps(self.model_dump(), indent=2),
            encoding="utf-8",
        )
        try:
            path.chmod(0o600)
        except OSError:
            pass
        logger.debug("Saved config to %s", path)
        return path

    def set_api_token(self, provider: str, token: str) -> Path:
        """Store a token for *provider* and write it out immediately."""
        self.api_tokens[provider] = token.strip()
        return self.save()
