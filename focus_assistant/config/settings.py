"""Settings for the on-device assistant.

Values are loaded in this order:
1. Pydantic model defaults (in code)
2. FOCUS_ASSISTANT_* environment variables
3. Runtime updates made through ``SettingsStore.update``
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
PromptFormat = Literal["simple", "chatml", "llama", "zephyr"]


class AssistantSettings(BaseSettings):
    """Model selection, generation parameters and memory bounds"""

    model_config = SettingsConfigDict(
        env_prefix="FOCUS_ASSISTANT_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    service_name: str = Field(default="focus-assistant", description="Service name for logging")
    log_level: LogLevel = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)

    # Model discovery and loading
    models_dir: Path = Field(default=Path("models"), description="Directory scanned for GGUF files")
    selected_model: Optional[str] = Field(
        default=None,
        description="Name or file name of the model to load; first installed model when unset",
    )
    context_size: int = Field(default=2048, ge=128)
    threads: int = Field(default=4, ge=1)
    gpu_layers: int = Field(default=0, ge=-1)
    memory_headroom_bytes: int = Field(
        default=500 * 1024 * 1024,
        ge=0,
        description="Free memory that must remain after loading a model",
    )

    # Generation
    max_tokens: int = Field(default=128, ge=1, le=4096)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    generation_timeout_seconds: float = Field(default=30.0, gt=0)
    prompt_format: PromptFormat = Field(default="simple")
    stop_sequences: List[str] = Field(default_factory=list, description="Extra stop sequences")

    # Conversation memory
    conversation_id: str = Field(default="default")
    max_turns: int = Field(default=20, ge=3)
    summary_max_chars: int = Field(default=1200, ge=100)
    summarizer: Literal["rule", "model"] = Field(
        default="rule",
        description="How dropped turns are condensed; 'model' falls back to rules when no model is ready",
    )
    memory_dir: Optional[Path] = Field(default=None, description="JSONL memory store; in-memory when unset")

    # Fallback to rule-based command parsing when no model can be made ready
    use_command_fallback: bool = Field(default=False)


@lru_cache
def get_settings() -> AssistantSettings:
    """Process-wide settings loaded from the environment"""
    return AssistantSettings()


class SettingsStore:
    """Mutable holder for the current settings; updates are validated"""

    def __init__(self, settings: Optional[AssistantSettings] = None):
        self._settings = settings or get_settings()

    def get(self) -> AssistantSettings:
        """Return the current settings object"""
        return self._settings

    def update(self, **changes: Any) -> AssistantSettings:
        """Apply recognized options; unknown keys raise ValueError"""

        unknown = set(changes) - set(AssistantSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        merged = {**self._settings.model_dump(), **changes}
        try:
            updated = AssistantSettings.model_validate(merged)
        except ValidationError as e:
            raise ValueError(str(e)) from e

        self._settings = updated
        logger.info("Settings updated", changed=sorted(changes))
        return updated
