"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from mlagent.utils.platform import get_config_dir, get_data_dir


class MarketplaceConfig(BaseModel):
    api_base: str = "https://api.mercadolibre.com"
    client_id: str = ""
    client_secret: str = ""
    request_timeout: float = 30.0
    # Refresh credentials that expire within this margin
    token_refresh_margin: int = 300


class BatchConfig(BaseModel):
    batch_size: int = 1
    item_delay: float = 5.0
    batch_delay: float = 10.0
    stats_probability: float = 0.1


class FetchPolicy(BaseModel):
    """Warm-up and retry schedule for one upstream call site (seconds)."""
    warmup_min: float = 0.0
    warmup_max: float = 0.0
    max_retries: int = 1
    retry_delay: float = 20.0
    rate_limit_delay: float = 45.0


class ProcessorConfig(BaseModel):
    question: FetchPolicy = Field(
        default_factory=lambda: FetchPolicy(
            warmup_min=3.0, warmup_max=5.0, retry_delay=30.0, rate_limit_delay=60.0
        )
    )
    item: FetchPolicy = Field(
        default_factory=lambda: FetchPolicy(
            warmup_min=2.0, warmup_max=3.0, retry_delay=20.0, rate_limit_delay=45.0
        )
    )
    user: FetchPolicy = Field(default_factory=FetchPolicy)
    description_ttl: int = 1800
    user_ttl: int = 3600
    history_limit: int = 5
    history_search_limit: int = 50


class AutomationConfig(BaseModel):
    webhook_url: str = ""
    timeout: float = 120.0


class WebhooksConfig(BaseModel):
    enabled: bool = True
    bind: str = "0.0.0.0"
    port: int = 8420
    path: str = "/webhooks/mercadolibre"
    secret: str = ""
    admin_secret: str = ""
    allowed_ips: list[str] = Field(default_factory=list)
    # Honour X-Forwarded-For and similar headers for the client address
    trust_proxy: bool = True
    sse_keepalive: float = 15.0


class AccountConfig(BaseModel):
    """A seller account seeded into the store at startup."""
    id: str
    ml_user_id: str
    organization_id: str
    site_id: str = "MLB"
    nickname: str = ""
    access_token: str = ""
    refresh_token: str = ""
    is_active: bool = True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MLAGENT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    marketplace: MarketplaceConfig = Field(default_factory=MarketplaceConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    accounts: list[AccountConfig] = Field(default_factory=list)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Env vars take precedence over keyword values (the YAML overlay)
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return get_data_dir()


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config."""
    yaml_data: dict[str, Any] = {}

    # Determine config file path
    if config_path is None:
        config_path = os.environ.get("MLAGENT_CONFIG")
    if config_path is None:
        default = get_config_dir() / "config.yaml"
        if default.exists():
            config_path = default

    # Load YAML if found
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    # YAML values are passed as keywords; env vars still override them
    return Settings(**yaml_data)
