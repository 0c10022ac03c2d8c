"""Configuration for the ad credit ledger backend using pydantic-settings."""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class AppEnv(StrEnum):
    DEV = "dev"
    PRODUCTION = "production"


class ResizePolicy(StrEnum):
    PARTIAL = "partial"
    STRICT = "strict"


DEFAULT_RESIZE_TARGETS: list[dict[str, Any]] = [
    {"width": 1080, "height": 1080, "label": "Square (1:1)", "required": True},
    {"width": 1200, "height": 628, "label": "Landscape (1.91:1)", "required": True},
    {"width": 1080, "height": 1920, "label": "Vertical (9:16)", "required": True},
]


class TomlSettingsSource(PydanticBaseSettingsSource):
    def __init__(self, settings_cls: type[BaseSettings], toml_file: str | Path):
        super().__init__(settings_cls)
        self.toml_file = Path(toml_file)

    def get_field_value(self, field_name: str, field_data: Any) -> tuple[Any, str, bool]:
        # Not used in this source style
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not self.toml_file.exists():
            return {}

        import tomllib

        try:
            with open(self.toml_file, "rb") as f:
                data = tomllib.load(f)
        except Exception:
            return {}

        if not isinstance(data, dict):
            return {}

        flattened: dict[str, Any] = {}

        # [generation] section
        generation = data.get("generation", {})
        if isinstance(generation, dict):
            for key in ("max_attempts", "attempt_timeout_seconds", "max_elapsed_seconds", "cost_credits"):
                if key in generation:
                    flattened[f"generation_{key}"] = generation[key]

        # [resize] section
        resize = data.get("resize", {})
        if isinstance(resize, dict):
            if "policy" in resize:
                flattened["resize_policy"] = resize["policy"]
            if "targets" in resize:
                flattened["resize_targets"] = resize["targets"]
            for key in ("timeout_seconds", "max_attempts", "max_workers"):
                if key in resize:
                    flattened[f"resize_{key}"] = resize[key]

        # [credits] section
        credits = data.get("credits", {})
        if isinstance(credits, dict):
            if "starting_credits" in credits:
                flattened["starting_credits"] = credits["starting_credits"]

        # Top level keys
        for k, v in data.items():
            if k not in {"generation", "resize", "credits"}:
                flattened[k] = v

        return flattened


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # --- Environment ---
    app_env: AppEnv = Field(
        default=AppEnv.PRODUCTION,
        validation_alias=AliasChoices("ADG_APP_ENV", "APP_ENV", "ENV"),
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> AppEnv:
        if v is None:
            return AppEnv.PRODUCTION
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in {"dev", "development", "local", "localhost"}:
                return AppEnv.DEV
        return AppEnv.PRODUCTION

    @field_validator("allowed_origins", "trusted_hosts", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v_stripped = v.strip()
            if not v_stripped:
                return []
            if v_stripped.startswith("[") and v_stripped.endswith("]"):
                import json
                try:
                    return json.loads(v_stripped)
                except Exception:
                    pass
            return [x.strip() for x in v_stripped.split(",") if x.strip()]
        return v or []

    @field_validator("resize_policy", mode="before")
    @classmethod
    def normalize_resize_policy(cls, v: Any) -> ResizePolicy:
        if isinstance(v, str) and v.strip().lower() == "strict":
            return ResizePolicy.STRICT
        if isinstance(v, ResizePolicy):
            return v
        return ResizePolicy.PARTIAL

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    # --- Project Paths ---
    project_root: Path = PROJECT_ROOT

    # --- API & Security ---
    allowed_origins: Any = Field(default_factory=list, validation_alias="ADG_ALLOWED_ORIGINS")
    trusted_hosts: Any = Field(default_factory=list, validation_alias="ADG_TRUSTED_HOSTS")
    force_https: bool = Field(default=False, validation_alias="ADG_FORCE_HTTPS")
    service_token: str | None = Field(default=None, validation_alias="ADG_SERVICE_TOKEN")

    # --- Database ---
    database_url: str = Field(
        default="postgresql+psycopg://localhost/adg_dev",
        validation_alias=AliasChoices("ADG_DATABASE_URL", "DATABASE_URL"),
    )

    # --- Stripe ---
    stripe_secret_key: str | None = Field(default=None, validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = Field(default=None, validation_alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = 300
    checkout_success_url: str = Field(
        default="http://localhost:5173/?checkout_success=true&session_id={CHECKOUT_SESSION_ID}",
        validation_alias="ADG_CHECKOUT_SUCCESS_URL",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:5173/pricing",
        validation_alias="ADG_CHECKOUT_CANCEL_URL",
    )

    # --- Credits ---
    starting_credits: int = Field(default=3, ge=0, validation_alias="ADG_STARTING_CREDITS")
    generation_cost_credits: int = Field(default=1, ge=1, validation_alias="ADG_GENERATION_COST_CREDITS")

    # --- Generation ---
    generation_provider_url: str | None = Field(default=None, validation_alias="ADG_GENERATION_PROVIDER_URL")
    generation_provider_api_key: str | None = Field(default=None, validation_alias="ADG_GENERATION_PROVIDER_API_KEY")
    generation_max_attempts: int = Field(default=3, ge=1, validation_alias="ADG_GENERATION_MAX_ATTEMPTS")
    generation_attempt_timeout_seconds: float = Field(
        default=60.0, validation_alias="ADG_GENERATION_ATTEMPT_TIMEOUT_SECONDS"
    )
    generation_max_elapsed_seconds: float | None = Field(
        default=300.0, validation_alias="ADG_GENERATION_MAX_ELAPSED_SECONDS"
    )
    generation_retry_backoff_seconds: float = Field(
        default=1.0, validation_alias="ADG_GENERATION_RETRY_BACKOFF_SECONDS"
    )
    generation_retry_backoff_factor: float = Field(
        default=2.0, validation_alias="ADG_GENERATION_RETRY_BACKOFF_FACTOR"
    )
    min_prompt_length: int = Field(default=20, validation_alias="ADG_MIN_PROMPT_LENGTH")
    max_prompt_length: int = Field(default=1000, validation_alias="ADG_MAX_PROMPT_LENGTH")

    # --- Resize ---
    resize_provider_url: str | None = Field(default=None, validation_alias="ADG_RESIZE_PROVIDER_URL")
    resize_policy: ResizePolicy = Field(default=ResizePolicy.PARTIAL, validation_alias="ADG_RESIZE_POLICY")
    resize_targets: list[dict[str, Any]] = Field(
        default_factory=lambda: [dict(t) for t in DEFAULT_RESIZE_TARGETS],
        validation_alias="ADG_RESIZE_TARGETS",
    )
    resize_timeout_seconds: float = Field(default=30.0, validation_alias="ADG_RESIZE_TIMEOUT_SECONDS")
    resize_max_attempts: int = Field(default=2, ge=1, validation_alias="ADG_RESIZE_MAX_ATTEMPTS")
    resize_max_workers: int = Field(default=4, ge=1, validation_alias="ADG_RESIZE_MAX_WORKERS")

    def __init__(self, **values: Any) -> None:
        super().__init__(**values)
        # Apply secure defaults for production if hosts are missing
        if not self.is_dev:
            if not self.trusted_hosts:
                self.trusted_hosts = ["*.run.app", "*.a.run.app"]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Order of precedence:
        # 1. Constructor arguments
        # 2. Environment variables
        # 3. .env file
        # 4. config/app_settings.toml
        # 5. Secrets
        toml_path = os.getenv("ADG_APP_SETTINGS_FILE")
        if not toml_path:
            toml_path = str(PROJECT_ROOT / "config" / "app_settings.toml")

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlSettingsSource(settings_cls, toml_file=toml_path),
            file_secret_settings,
        )


settings = Settings()
