from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from open_agent_router.utils.yaml_utils import load_yaml_dict

DEFAULT_LONG_CONTEXT_THRESHOLD = 60_000


class ConfigError(ValueError):
    pass


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    api_base_url: str = ""
    api_key: str | None = None
    models: list[str] = Field(default_factory=list)

    def find_model(self, model: str) -> str | None:
        wanted = model.strip().lower()
        for configured in self.models:
            if configured.lower() == wanted:
                return configured
        return None


class RouterConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    default: str
    background: str | None = None
    think: str | None = None
    long_context: str | None = Field(default=None, alias="longContext")
    long_context_threshold: int = Field(
        default=DEFAULT_LONG_CONTEXT_THRESHOLD, alias="longContextThreshold"
    )
    web_search: str | None = Field(default=None, alias="webSearch")
    image: str | None = None

    @field_validator("default")
    @classmethod
    def _require_default(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Router.default must name a 'provider,model' pair.")
        return normalized

    @field_validator("long_context_threshold", mode="before")
    @classmethod
    def _coerce_threshold(cls, value: Any) -> Any:
        # A falsy threshold in the file means "use the default".
        if value in (None, 0, ""):
            return DEFAULT_LONG_CONTEXT_THRESHOLD
        return value


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    providers: list[ProviderConfig] = Field(default_factory=list, alias="Providers")
    router: RouterConfig = Field(alias="Router")
    api_key: str | None = Field(default=None, alias="APIKEY")
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=3456, alias="PORT")
    custom_router_path: str | None = Field(default=None, alias="CUSTOM_ROUTER_PATH")
    rewrite_system_prompt: str | None = Field(
        default=None, alias="REWRITE_SYSTEM_PROMPT"
    )
    agents: list[str] = Field(default_factory=list, alias="AGENTS")

    def find_provider(self, name: str) -> ProviderConfig | None:
        wanted = name.strip().lower()
        for provider in self.providers:
            if provider.name.lower() == wanted:
                return provider
        return None

    def as_plain_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_app_config(payload: dict[str, Any]) -> AppConfig:
    # Older config files spell the provider list in lower case.
    if "Providers" not in payload and "providers" in payload:
        payload = {**payload, "Providers": payload["providers"]}
        payload.pop("providers", None)
    try:
        return AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid router configuration: {exc}") from exc


def load_app_config(path: str | Path) -> AppConfig:
    resolved = Path(path).expanduser()
    if not resolved.exists():
        raise FileNotFoundError(f"Router config file not found: {resolved}")
    payload = load_yaml_dict(
        resolved, error_message=f"Expected a JSON object in '{resolved}'."
    )
    return parse_app_config(payload)


def parse_router_section(payload: Any) -> RouterConfig | None:
    if not isinstance(payload, dict):
        return None
    try:
        return RouterConfig.model_validate(payload)
    except ValidationError:
        return None
