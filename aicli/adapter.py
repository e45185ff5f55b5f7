"""Model adapter: one LiteLLM completion per ``generate`` call.

Conversation turns are mapped to OpenAI-style chat messages, which LiteLLM
translates for the selected provider. Replies are reduced to at most one
function call plus optional text.
"""

import json
from dataclasses import dataclass
from typing import Any, Sequence

from . import fmt
from .config import get_api_key
from .errors import ConfigError, ContentBlockedError, ModelError, NoCandidateError
from .session import ConversationTurn, FunctionCall, FunctionResponse, Role, Text

EMPTY_PLACEHOLDER = "[empty]"

# Model-id prefix -> (LiteLLM provider, default API-key variable).
_PROVIDERS = {
    "gemini": ("gemini", "GEMINI_API_KEY"),
    "gpt": ("openai", "OPENAI_API_KEY"),
    "claude": ("anthropic", "ANTHROPIC_API_KEY"),
}

_BLOCKED_FINISH_REASONS = ("content_filter", "safety", "other")

DEFAULT_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


@dataclass(frozen=True)
class ModelReply:
    text: str | None = None
    function_call: FunctionCall | None = None
    finish_reason: str | None = None


def model_string(model_id: str) -> str:
    """Map a catalogue model id to the LiteLLM ``provider/model`` form."""
    if "/" in model_id:
        return model_id
    for prefix, (provider, _) in _PROVIDERS.items():
        if model_id.startswith(prefix):
            return f"{provider}/{model_id}"
    raise ConfigError(f"unsupported model {model_id!r}")


def default_key_env(model_id: str) -> str | None:
    bare = model_id.split("/", 1)[-1]
    for prefix, (provider, env_var) in _PROVIDERS.items():
        if bare.startswith(prefix) or model_id.startswith(f"{provider}/"):
            return env_var
    return None


# --- Wire mapping ---


def _join_text(parts) -> str:
    return "".join(p.text for p in parts if isinstance(p, Text))


def to_messages(turns: Sequence[ConversationTurn]) -> list[dict]:
    """Convert conversation turns to chat messages.

    A model call turn becomes an assistant message with one ``tool_calls``
    entry and is merged into an immediately preceding text-only assistant
    message. A tool result answers the most recent unanswered call; results
    and calls with no counterpart are rendered as plain text.
    """
    messages: list[dict] = []
    pending: tuple[str, str] | None = None
    n_calls = 0

    for turn in turns:
        if turn.role is Role.USER:
            messages.append({"role": "user", "content": _join_text(turn.parts)})
            pending = None
        elif turn.role is Role.MODEL:
            text = _join_text(turn.parts)
            call = next((p for p in turn.parts if isinstance(p, FunctionCall)), None)
            if call is None:
                messages.append({"role": "assistant", "content": text})
                pending = None
                continue
            n_calls += 1
            call_id = f"call_{n_calls}"
            tool_call = {
                "id": call_id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.args, ensure_ascii=False),
                },
            }
            prev = messages[-1] if messages else None
            if (
                prev is not None
                and prev["role"] == "assistant"
                and "tool_calls" not in prev
                and not text
            ):
                prev["tool_calls"] = [tool_call]
            else:
                messages.append(
                    {"role": "assistant", "content": text or None, "tool_calls": [tool_call]}
                )
            pending = (call.name, call_id)
        else:
            response = turn.parts[0] if turn.parts else None
            if not isinstance(response, FunctionResponse):
                fmt.warning("tool turn without a function response, skipping it")
                pending = None
                continue
            payload = json.dumps(response.result.to_dict(), ensure_ascii=False)
            if pending is not None and pending[0] == response.name:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": pending[1],
                        "name": response.name,
                        "content": payload,
                    }
                )
            else:
                messages.append(
                    {"role": "user", "content": f"Tool result ({response.name}): {payload}"}
                )
            pending = None

    _drop_unanswered_calls(messages)

    for msg in messages:
        if msg["role"] != "assistant" or "tool_calls" not in msg:
            if not msg.get("content"):
                fmt.warning(
                    f"{msg['role']} message is empty after mapping, sending placeholder"
                )
                msg["content"] = EMPTY_PLACEHOLDER
    return messages


def _drop_unanswered_calls(messages: list[dict]) -> None:
    answered = {m["tool_call_id"] for m in messages if m["role"] == "tool"}
    for msg in messages:
        calls = msg.get("tool_calls")
        if not calls or calls[0]["id"] in answered:
            continue
        fn = calls[0]["function"]
        note = f"(requested {fn['name']} with {fn['arguments']})"
        msg["content"] = f"{msg['content']}\n{note}" if msg.get("content") else note
        del msg["tool_calls"]


# --- Reply interpretation ---


def _interpret(response: Any, model_id: str) -> ModelReply:
    choices = getattr(response, "choices", None)
    if not choices:
        raise NoCandidateError(f"no candidate in response from model {model_id}")

    choice = choices[0]
    finish_reason = getattr(choice, "finish_reason", None)
    message = choice.message
    content = getattr(message, "content", None)
    tool_calls = getattr(message, "tool_calls", None) or []

    if not content and not tool_calls:
        if finish_reason and str(finish_reason).lower() in _BLOCKED_FINISH_REASONS:
            raise ContentBlockedError(
                f"Content generation stopped. Reason: {finish_reason}"
            )
        if finish_reason not in (None, "stop"):
            fmt.warning(
                f"response has no text and no function call, finish_reason={finish_reason}"
            )

    function_call = None
    if tool_calls:
        if len(tool_calls) > 1:
            fmt.warning(
                f"model requested {len(tool_calls)} tool calls, only the first is used"
            )
        fn = tool_calls[0].function
        raw_args = fn.arguments or "{}"
        try:
            args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except json.JSONDecodeError as e:
            raise ModelError(f"invalid JSON arguments for {fn.name}: {e}")
        if not isinstance(args, dict):
            raise ModelError(
                f"arguments for {fn.name} must be an object, got {type(args).__name__}"
            )
        function_call = FunctionCall(fn.name, args)

    return ModelReply(
        text=content or "", function_call=function_call, finish_reason=finish_reason
    )


class LiteLLMAdapter:
    """Single-shape adapter over ``litellm.completion``."""

    def __init__(
        self,
        model_id: str,
        api_key: str | None,
        tools: list[dict] | None = None,
        *,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        cache: bool = False,
        cache_ttl: int | None = None,
    ):
        self.model_id = model_id
        self.model_str = model_string(model_id)
        self.api_key = api_key
        self.tools = tools
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.cache = cache
        self.cache_ttl = cache_ttl

    def _completion_kwargs(self, messages: list[dict], options: dict | None) -> dict:
        options = dict(options or {})
        kwargs: dict[str, Any] = {
            "model": model_string(options.pop("model", self.model_id)),
            "messages": messages,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.tools:
            kwargs["tools"] = [{"type": "function", "function": t} for t in self.tools]
            kwargs["tool_choice"] = "auto"
        for key, val in [
            ("temperature", self.temperature),
            ("max_tokens", self.max_output_tokens),
        ]:
            if val is not None:
                kwargs[key] = val
        if kwargs["model"].startswith("gemini/"):
            kwargs["safety_settings"] = DEFAULT_SAFETY_SETTINGS
        if self.cache:
            kwargs["caching"] = True
            if self.cache_ttl:
                kwargs["cache"] = {"ttl": self.cache_ttl}
        kwargs.update(options)
        return kwargs

    def generate(
        self, prompt: str | Sequence[ConversationTurn], options: dict | None = None
    ) -> ModelReply:
        """Send a bare prompt or a full conversation and interpret the reply.

        Raises ModelError (or a subclass) on transport failure, policy block,
        missing candidate or unusable function-call arguments.
        """
        import litellm

        litellm.suppress_debug_info = True

        if isinstance(prompt, str):
            messages = [{"role": "user", "content": prompt or EMPTY_PLACEHOLDER}]
        else:
            messages = to_messages(prompt)

        if self.cache and litellm.cache is None:
            litellm.cache = litellm.Cache(type="local")

        kwargs = self._completion_kwargs(messages, options)
        fmt.debug(
            f"calling model {kwargs['model']} with {len(messages)} messages"
        )
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise ModelError(
                f"Model API request failed for model {kwargs['model']}: {e}"
            )
        return _interpret(response, kwargs["model"])


_adapters: dict[str, LiteLLMAdapter] = {}


def _key_env_var(config, model_id: str) -> str:
    # The configured variable applies to Gemini and to explicit provider ids.
    default = default_key_env(model_id)
    configured = getattr(config, "api_key_env_var", None)
    if default is None or default == "GEMINI_API_KEY":
        return configured or "GEMINI_API_KEY"
    return default


def get_adapter(config, model_id: str, tools: list[dict] | None = None) -> LiteLLMAdapter:
    """Return a cached adapter for ``model_id``, building it on first use.

    ``config`` is the resolved settings namespace. Raises ConfigError for an
    unsupported model id or a missing API key.
    """
    if model_id in _adapters:
        return _adapters[model_id]

    model_string(model_id)
    api_key = get_api_key(_key_env_var(config, model_id))

    cache = getattr(config, "cache", None) or {}
    adapter = LiteLLMAdapter(
        model_id,
        api_key,
        tools,
        temperature=getattr(config, "temperature", None),
        max_output_tokens=getattr(config, "max_output_tokens", None),
        cache=bool(cache.get("enabled", False)),
        cache_ttl=cache.get("ttl"),
    )
    _adapters[model_id] = adapter
    fmt.debug(f"created adapter for {model_id} ({adapter.model_str})")
    return adapter


def reset_adapters() -> None:
    _adapters.clear()
