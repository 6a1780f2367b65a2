from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    function_name: str = Field(default="httpTrigger", alias="FUNCTION_NAME")
    route_prefix: str = Field(default="/api", alias="ROUTE_PREFIX")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    applicationinsights_connection_string: str = Field(
        default="",
        alias="APPLICATIONINSIGHTS_CONNECTION_STRING",
    )
    cloud_role_name: str = Field(default="insights-trigger", alias="CLOUD_ROLE_NAME")
    telemetry_flush_timeout_s: float = Field(default=5.0, gt=0, alias="TELEMETRY_FLUSH_TIMEOUT_S")
    telemetry_disable_offline_storage: bool = Field(default=False, alias="TELEMETRY_DISABLE_OFFLINE_STORAGE")
    telemetry_storage_directory: str | None = Field(default=None, alias="TELEMETRY_STORAGE_DIRECTORY")
    telemetry_forward_logs: bool = Field(default=True, alias="TELEMETRY_FORWARD_LOGS")
    telemetry_metric_export_interval_ms: int = Field(
        default=60_000,
        gt=0,
        alias="TELEMETRY_METRIC_EXPORT_INTERVAL_MS",
    )

    dependency_target: str = Field(default="external-api.example.com", alias="DEPENDENCY_TARGET")
    dependency_name: str = Field(default="GET /api/data", alias="DEPENDENCY_NAME")
    dependency_min_delay_ms: float = Field(default=50.0, ge=0, alias="DEPENDENCY_MIN_DELAY_MS")
    dependency_max_delay_ms: float = Field(default=150.0, ge=0, alias="DEPENDENCY_MAX_DELAY_MS")
    dependency_success_rate: float = Field(default=1.0, ge=0.0, le=1.0, alias="DEPENDENCY_SUCCESS_RATE")

    @model_validator(mode="after")
    def _check_delay_range(self) -> "Settings":
        if self.dependency_min_delay_ms > self.dependency_max_delay_ms:
            raise ValueError("DEPENDENCY_MIN_DELAY_MS must not exceed DEPENDENCY_MAX_DELAY_MS")
        return self

    @property
    def function_route(self) -> str:
        prefix = "/" + self.route_prefix.strip("/") if self.route_prefix.strip("/") else ""
        return f"{prefix}/{self.function_name}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
