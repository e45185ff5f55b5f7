"""Conversation history and the active model selection.

A ``SessionStore`` is created once at startup and handed to the tool loop,
the confirmation gate and the REPL meta-commands. History only changes
through ``append`` (validate, de-duplicate, append, trim) and ``clear``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from . import fmt
from .tools import ToolOutcome

AVAILABLE_MODELS = (
    "gemini-1.5-flash-latest",
    "gemini-1.5-pro-latest",
    "gemini-2.5-pro-exp-03-25",
)

MAX_HISTORY_TURNS = 20


class Role(str, Enum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FunctionResponse:
    name: str
    result: ToolOutcome


Part = Union[Text, FunctionCall, FunctionResponse]


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    parts: tuple[Part, ...]

    @classmethod
    def user(cls, text: str) -> "ConversationTurn":
        return cls(Role.USER, (Text(text),))

    @classmethod
    def model_text(cls, text: str) -> "ConversationTurn":
        return cls(Role.MODEL, (Text(text),))

    @classmethod
    def model_call(cls, name: str, args: dict[str, Any]) -> "ConversationTurn":
        return cls(Role.MODEL, (FunctionCall(name, dict(args)),))

    @classmethod
    def tool_result(cls, name: str, result: ToolOutcome) -> "ConversationTurn":
        return cls(Role.TOOL, (FunctionResponse(name, result),))


@dataclass(frozen=True)
class SessionState:
    current_model: str
    history: tuple[ConversationTurn, ...]


def is_valid_model_id(model_id: str, models: tuple[str, ...] = AVAILABLE_MODELS) -> bool:
    return model_id in models


def validate_turn(turn: ConversationTurn) -> str | None:
    """Check part shapes for the turn's role. Returns a reason, or None if valid."""
    if not isinstance(turn, ConversationTurn):
        return f"not a conversation turn: {turn!r}"
    if not turn.parts:
        return f"{turn.role.value} turn has no parts"
    if turn.role is Role.USER:
        if not all(isinstance(p, Text) for p in turn.parts):
            return "user turn may only contain text"
    elif turn.role is Role.MODEL:
        if not all(isinstance(p, (Text, FunctionCall)) for p in turn.parts):
            return "model turn may only contain text and a function call"
        calls = sum(1 for p in turn.parts if isinstance(p, FunctionCall))
        if calls > 1:
            return f"model turn carries {calls} function calls, at most one allowed"
    elif turn.role is Role.TOOL:
        if len(turn.parts) != 1 or not isinstance(turn.parts[0], FunctionResponse):
            return "tool turn must contain exactly one function response"
    else:
        return f"unknown role {turn.role!r}"
    return None


class SessionStore:
    """Ordered conversation history plus the model currently in use."""

    def __init__(self, model_id: str, *, max_turns: int = MAX_HISTORY_TURNS):
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = max_turns
        self._model = model_id
        self._history: list[ConversationTurn] = []
        fmt.debug(f"session initialized with model {model_id}")

    @classmethod
    def from_config(
        cls, default_model: str | None, models: tuple[str, ...] = AVAILABLE_MODELS
    ) -> "SessionStore":
        """Start on the configured model, or the first catalogue entry if unknown."""
        if default_model and is_valid_model_id(default_model, models):
            return cls(default_model)
        if default_model:
            fmt.warning(
                f"default model {default_model!r} is not available, using {models[0]}"
            )
        return cls(models[0])

    def append(self, turn: ConversationTurn) -> bool:
        """Validate, de-duplicate, append and trim. Returns True if the turn was stored."""
        reason = validate_turn(turn)
        if reason:
            fmt.warning(f"ignoring invalid history turn: {reason}")
            return False

        if self._history:
            last = self._history[-1]
            # Structural equality with the previous turn of the same role.
            if last.role is turn.role and last.parts == turn.parts:
                fmt.debug("skipping duplicate consecutive turn in history")
                return False

        self._history.append(turn)
        if len(self._history) > self.max_turns:
            del self._history[: len(self._history) - self.max_turns]
            fmt.debug(f"history pruned to last {self.max_turns} turns")
        fmt.debug(
            f"history updated: {len(self._history)} turns, last role {turn.role.value}"
        )
        return True

    def current(self) -> SessionState:
        return SessionState(current_model=self._model, history=tuple(self._history))

    def set_model(self, model_id: str) -> None:
        self._model = model_id
        fmt.debug(f"model set to {model_id}")

    def clear(self) -> int:
        """Empty the history. Returns the number of turns dropped."""
        dropped = len(self._history)
        self._history = []
        return dropped

    @property
    def model(self) -> str:
        return self._model

    def __len__(self) -> int:
        return len(self._history)
