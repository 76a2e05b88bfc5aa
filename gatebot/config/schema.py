"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

SandboxMode = Literal["off", "non-main", "all"]
SnapshotMode = Literal["auto", "aria", "role"]


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GatewayConfig(Base):
    """Gateway server (HTTP + WebSocket) configuration."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 18790
    token: str | None = None
    allow_origins: list[str] = Field(default_factory=list)
    max_message_bytes: int = 65536
    max_queue_frames: int = 32
    ping_interval_s: float = 20.0
    ping_timeout_s: float = 20.0
    rate_limit_window_s: float = 10.0
    rate_limit_count: int = 8


class ToolPolicyConfig(Base):
    """One allow/deny policy layer. Entries are names, group:<scope>, '*' or globs."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class ExecToolConfig(Base):
    """Shell exec tool configuration."""

    timeout: int = 60
    deny_patterns: list[str] = Field(default_factory=list)
    allow_patterns: list[str] = Field(default_factory=list)


class WebToolConfig(Base):
    """web_fetch tool configuration."""

    fetch_max_chars: int = 50000
    timeout_s: float = 30.0


class BrowserToolConfig(Base):
    """Browser tool configuration (Chrome DevTools endpoint)."""

    enabled: bool = True
    endpoint: str = "http://127.0.0.1:9222"
    timeout_s: float = 20.0
    default_mode: SnapshotMode = "auto"
    ref_ttl_s: float | None = None
    snapshot_max_chars: int = 20000


class ToolsConfig(Base):
    """Tool registry and policy configuration."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)
    by_provider: dict[str, ToolPolicyConfig] = Field(default_factory=dict)
    sandbox: ToolPolicyConfig = Field(
        default_factory=lambda: ToolPolicyConfig(deny=["group:runtime"])
    )
    fatal: list[str] = Field(default_factory=list)
    restrict_to_workspace: bool = False
    timeout_s: float = 60.0
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    web: WebToolConfig = Field(default_factory=WebToolConfig)
    browser: BrowserToolConfig = Field(default_factory=BrowserToolConfig)


class AgentDefaults(Base):
    """Default agent configuration."""

    workspace: str = "~/.gatebot/workspace"
    model: str = "gpt-5.1"
    max_tokens: int = 8192
    temperature: float = 0.7
    max_tool_iterations: int = 20
    memory_window: int = 50
    context_window_tokens: int = 128000
    parallel_tool_calls: bool = True
    sandbox: SandboxMode = "off"
    main_session_key: str = "cli:direct"


class AgentConfig(Base):
    """Per-agent overrides. Unset fields fall back to agents.defaults."""

    model: str | None = None
    sandbox: SandboxMode | None = None
    main_session_key: str | None = None
    tools: ToolPolicyConfig = Field(default_factory=ToolPolicyConfig)


class AgentsConfig(Base):
    """Agent configuration."""

    default_agent: str = "main"
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    list: dict[str, AgentConfig] = Field(default_factory=dict)


class ProviderConfig(Base):
    """Reasoning-engine provider configuration."""

    name: str = "openai"
    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"


class ProvidersConfig(Base):
    """Configuration for LLM providers."""

    default: ProviderConfig = Field(default_factory=ProviderConfig)


class Config(BaseSettings):
    """Root configuration for gatebot."""

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    model_config = SettingsConfigDict(
        env_prefix="GATEBOT_",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()

    def agent(self, agent_id: str | None = None) -> AgentConfig:
        """Get the effective config for an agent, with defaults filled in."""
        agent_id = agent_id or self.agents.default_agent
        defaults = self.agents.defaults
        override = self.agents.list.get(agent_id) or AgentConfig()
        return AgentConfig(
            model=override.model or defaults.model,
            sandbox=override.sandbox or defaults.sandbox,
            main_session_key=override.main_session_key or defaults.main_session_key,
            tools=override.tools,
        )
