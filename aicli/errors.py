"""Exception types shared across ai-cli."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unsupported model, missing API key, etc.)."""


class ModelError(AgentError):
    """Raised when the model API cannot be reached or its reply cannot be used."""


class ContentBlockedError(ModelError):
    """Raised when the provider refused to produce content on policy grounds."""


class NoCandidateError(ModelError):
    """Raised when the provider answered without any candidate."""


class ToolArgumentError(ValueError):
    """Raised when model-supplied tool arguments fail schema validation."""
