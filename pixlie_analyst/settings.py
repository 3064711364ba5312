"""
Service configuration.

Every value can come from the environment or a ``.env`` file. Limits of the
analysis loop, the tool sandbox and stream backpressure live here next to
the HTTP and provider settings.
"""

from typing import Optional, List
from pydantic import Field, field_validator, AliasChoices
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from typing_extensions import Annotated


VALID_PROVIDERS = ["openai", "anthropic", "local", "mock"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Upper bound of planning iterations for one objective
MAX_ITERATIONS_CAP = 200


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="Pixlie Analyst", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(
        default=False,
        description="Debug mode",
        validation_alias=AliasChoices("DEBUG", "debug"),
    )

    # API settings
    api_host: str = Field(
        default="0.0.0.0",
        description="API host",
        validation_alias=AliasChoices("API_HOST", "api_host"),
    )
    api_port: int = Field(
        default=8000,
        description="API port",
        validation_alias=AliasChoices("API_PORT", "api_port"),
    )
    api_prefix: str = Field(default="/v1", description="API prefix")
    allowed_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # Workspace settings
    workspace_root: str = Field(
        default="./workspaces",
        description="Directory holding one folder per workspace",
        validation_alias=AliasChoices("WORKSPACE_ROOT", "workspace_root"),
    )
    default_workspace: str = Field(
        default="default",
        description="Workspace used when a request does not name one",
    )
    autosave_interval_seconds: float = Field(
        default=30.0,
        description="Interval of the timer driven workspace auto-save",
        validation_alias=AliasChoices("AUTOSAVE_INTERVAL", "autosave_interval_seconds"),
    )

    # Data source settings
    data_database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the analysed data source (opened read-only)",
        validation_alias=AliasChoices("DATA_DATABASE_URL", "DATABASE_URL", "data_database_url"),
    )
    data_dialect: Optional[str] = Field(
        default=None,
        description="Connector kind of the data source; inferred from the URL when unset",
        validation_alias=AliasChoices("DATA_DIALECT", "data_dialect"),
    )
    database_pool_size: int = Field(
        default=5,
        description="Database connection pool size"
    )

    # LLM Provider settings
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key"
    )
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="Anthropic API key"
    )
    ollama_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of a local Ollama server"
    )
    default_llm_provider: str = Field(
        default="openai",
        description="Primary LLM provider (openai, anthropic, local, mock)",
        validation_alias=AliasChoices("DEFAULT_LLM_PROVIDER", "default_llm_provider"),
    )
    fallback_llm_providers: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Ordered fallback providers tried when the primary fails",
        validation_alias=AliasChoices("FALLBACK_LLM_PROVIDERS", "fallback_llm_providers"),
    )
    default_llm_model: str = Field(
        default="gpt-4o",
        description="Default LLM model",
        validation_alias=AliasChoices("DEFAULT_LLM_MODEL", "default_llm_model"),
    )
    llm_temperature: float = Field(
        default=0.0,
        description="Default LLM temperature (0.0-1.0)",
        validation_alias=AliasChoices("LLM_TEMPERATURE", "TEMPERATURE", "llm_temperature"),
    )
    provider_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout applied to every provider call",
    )
    provider_retries: int = Field(
        default=1,
        description="Retries per provider before falling through to the next one",
    )
    rate_limit_requests_per_minute: float = Field(
        default=60.0,
        description="Sustained provider request rate per workspace",
    )
    rate_limit_burst: int = Field(
        default=10,
        description="Token bucket capacity per workspace",
    )
    enable_streaming: bool = Field(
        default=True,
        description="Stream synthesis text to subscribers",
    )

    # LangSmith settings
    langsmith_tracing: bool = Field(
        default=False,
        description="Enable LangSmith tracing",
        validation_alias=AliasChoices("LANGSMITH_TRACING", "langsmith_tracing"),
    )
    langsmith_api_key: Optional[str] = Field(
        default=None,
        description="LangSmith API key",
        validation_alias=AliasChoices("LANGSMITH_API_KEY", "langsmith_api_key"),
    )
    langsmith_project: Optional[str] = Field(
        default=None,
        description="LangSmith project name",
        validation_alias=AliasChoices("LANGSMITH_PROJECT", "LANGCHAIN_PROJECT", "langsmith_project"),
    )

    # Analysis loop settings
    max_iterations: int = Field(
        default=10,
        description="Maximum planning iterations per objective",
        validation_alias=AliasChoices("MAX_ITERATIONS", "max_iterations"),
    )
    max_consecutive_tool_failures: int = Field(
        default=3,
        description="Consecutive failures of one tool before the objective fails",
    )
    context_window_steps: int = Field(
        default=8,
        description="Number of recent steps rendered verbatim into planning context",
    )
    ask_user_timeout_seconds: Optional[float] = Field(
        default=None,
        description="How long a loop waits for a user answer (None waits forever)",
    )

    # Tool sandbox settings
    tool_timeout_seconds: float = Field(
        default=30.0,
        description="Hard timeout of a single tool execution",
    )
    tool_max_result_bytes: int = Field(
        default=256 * 1024,
        description="Maximum serialized size of a tool result",
    )
    sql_max_rows: int = Field(
        default=500,
        description="Maximum rows returned by one SQL page",
    )

    # Streaming settings
    subscriber_buffer_size: int = Field(
        default=256,
        description="Bounded buffer size of each stream subscriber",
    )
    subscriber_put_timeout_seconds: float = Field(
        default=5.0,
        description="How long a publisher waits on a full subscriber before dropping it",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: str = Field(
        default="json",
        description="Log format (json, text)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v.lower()

    @field_validator("default_llm_provider")
    @classmethod
    def validate_llm_provider(cls, v):
        if v.lower() not in VALID_PROVIDERS:
            raise ValueError(f"default_llm_provider must be one of {VALID_PROVIDERS}")
        return v.lower()

    @field_validator("fallback_llm_providers", mode="before")
    @classmethod
    def validate_fallback_providers(cls, v):
        if isinstance(v, str):
            v = [p.strip() for p in v.split(",") if p.strip()]
        providers = [p.lower() for p in (v or [])]
        for provider in providers:
            if provider not in VALID_PROVIDERS:
                raise ValueError(f"fallback provider must be one of {VALID_PROVIDERS}")
        return providers

    @field_validator("max_iterations")
    @classmethod
    def clamp_max_iterations(cls, v):
        return min(max(int(v), 1), MAX_ITERATIONS_CAP)

    @field_validator("llm_temperature")
    @classmethod
    def clamp_llm_temperature(cls, v):
        return min(max(float(v), 0.0), 1.0)

    @field_validator("provider_retries", "max_consecutive_tool_failures")
    @classmethod
    def validate_non_negative(cls, v):
        if int(v) < 0:
            raise ValueError("value must not be negative")
        return int(v)


# Global settings instance
settings = Settings()
