"""Configuration management for the regional checks."""

import os
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ResourceConfig(BaseModel):
    """One resource fetched over the probe connection."""
    model_config = ConfigDict(frozen=True)

    path: str = Field(description="Request path on the probed origin")
    label: str = Field(description="Stable name stored as the request filename")
    log_to_database: Optional[bool] = Field(default=None, description="Persist this resource's results")


class PostgresConfig(BaseModel):
    """Connection parameters for the telemetry database."""
    model_config = ConfigDict(frozen=True)

    host: Optional[str] = Field(default=None, description="Database host; unset disables persistence")
    port: int = Field(default=5432)
    database: str = Field(default="default")
    user: str = Field(default="postgres")
    password: str = Field(default="")
    max_connections: Optional[int] = Field(default=None, description="Pool size, derived from regions if unset")


class ProbeConfig(BaseModel):
    """Main configuration, loaded once per process."""
    model_config = ConfigDict(frozen=True)

    # Probe settings
    hostname: Optional[str] = Field(default=None, description="Origin probed over HTTP/2, e.g. https://example.com")
    resources: list[ResourceConfig] = Field(default_factory=list)
    debug_header_name: str = Field(default="fastly-debug")
    debug_header_value: str = Field(default="1")
    probe_timeout_seconds: int = Field(default=10, description="Execution timeout enforced by the host platform")

    # Fan-out settings
    regions: list[str] = Field(default_factory=list)
    project: str = Field(default="", description="Project id used in region endpoint hostnames")
    platform_domain: str = Field(default="cloudfunctions.net")
    check_path: str = Field(default="/check")
    schedule_cron: str = Field(default="* * * * *")
    timezone: str = Field(default="Asia/Singapore")
    scheduler_deadline_seconds: float = Field(default=9.0)
    dry_run: bool = Field(default=False, description="Log region URLs instead of calling them")

    # Identities
    scheduler_service_account: Optional[str] = Field(default=None)
    function_service_account: Optional[str] = Field(default=None)

    # Output settings
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console", description="console or json")
    event_source_env: str = Field(default="EVENTARC_CLOUD_EVENT_SOURCE")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)

    def pool_size(self) -> int:
        if self.postgres.max_connections is not None:
            return self.postgres.max_connections
        return max(len(self.regions) + 1, 10)

    def region_url(self, region: str) -> str:
        return f"https://{region}-{self.project}.{self.platform_domain}{self.check_path}"

    def logged_labels(self) -> Optional[set[str]]:
        """Labels allowed into the database, or None when every resource is persisted."""
        if all(r.log_to_database is None for r in self.resources):
            return None
        return {r.label for r in self.resources if r.log_to_database is True}


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in ("true", "1", "yes")


def load_config(config_path: Optional[str] = None) -> ProbeConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("REGION_CHECKS_CONFIG", "config.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    env_overrides = {
        "hostname": os.getenv("PROBE_HOSTNAME"),
        "project": os.getenv("GCLOUD_PROJECT"),
        "dry_run": os.getenv("FUNCTIONS_EMULATOR"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    for key, value in env_overrides.items():
        if value is not None:
            if key == "dry_run":
                value = _env_bool(value)
            config_data[key] = value

    pg_overrides = {
        "host": os.getenv("POSTGRES_HOST"),
        "port": os.getenv("POSTGRES_PORT"),
        "database": os.getenv("POSTGRES_DATABASE"),
        "user": os.getenv("POSTGRES_USER"),
        "password": os.getenv("POSTGRES_PASSWORD"),
    }
    pg = dict(config_data.get("postgres") or {})
    for key, value in pg_overrides.items():
        if value is None:
            continue
        if key == "port":
            try:
                value = int(value)
            except ValueError:
                value = 5432
        pg[key] = value
    if pg:
        config_data["postgres"] = pg

    return ProbeConfig(**config_data)
