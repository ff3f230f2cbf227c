from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from link_sentinel_core.util import clamp


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    pg_dsn: str | None = Field(default=None, alias="PG_DSN")
    pg_schema: str = Field(default="public", alias="PG_SCHEMA")

    site_url: str = Field(alias="SITE_URL")
    internal_hosts: str = Field(default="", alias="INTERNAL_HOSTS")
    admin_path_prefixes: str = Field(default="/wp-admin,/wp-login", alias="ADMIN_PATH_PREFIXES")
    eligible_types: str = Field(default="post,page", alias="ELIGIBLE_TYPES")

    auto_resolve_permanent: bool = Field(default=False, alias="AUTO_RESOLVE_PERMANENT")

    scan_batch_size: int = Field(default=25, alias="SCAN_BATCH_SIZE")
    scan_progress_interval: int = Field(default=10, alias="SCAN_PROGRESS_INTERVAL")
    scan_step_budget_s: float = Field(default=10.0, alias="SCAN_STEP_BUDGET_S")
    scan_min_batch: int = Field(default=5, alias="SCAN_MIN_BATCH")
    scan_lease_ttl_s: int = Field(default=15 * 60, alias="SCAN_LEASE_TTL_S")

    follow_external_redirects: bool = Field(default=False, alias="FOLLOW_EXTERNAL_REDIRECTS")
    external_max_hops: int = Field(default=3, alias="EXTERNAL_MAX_HOPS")
    internal_timeout_s: float = Field(default=1.5, alias="INTERNAL_TIMEOUT_S")
    external_timeout_s: float = Field(default=2.0, alias="EXTERNAL_TIMEOUT_S")
    resolve_cache_ttl_s: int = Field(default=24 * 60 * 60, alias="RESOLVE_CACHE_TTL_S")

    resolve_all_batch_size: int = Field(default=8, alias="RESOLVE_ALL_BATCH_SIZE")
    resolve_all_delay_ms: int = Field(default=600, alias="RESOLVE_ALL_DELAY_MS")
    resolve_all_step_budget_s: float = Field(default=12.0, alias="RESOLVE_ALL_STEP_BUDGET_S")
    resolve_all_lease_ttl_s: int = Field(default=3 * 60, alias="RESOLVE_ALL_LEASE_TTL_S")

    @property
    def internal_host_list(self) -> list[str]:
        return _split_csv(self.internal_hosts)

    @property
    def admin_prefix_list(self) -> list[str]:
        return _split_csv(self.admin_path_prefixes)

    @property
    def eligible_type_list(self) -> list[str]:
        return _split_csv(self.eligible_types) or ["post", "page"]

    @property
    def scan_batch_size_bounded(self) -> int:
        return clamp(self.scan_batch_size or 25, 5, 100)

    @property
    def scan_progress_interval_bounded(self) -> int:
        return clamp(self.scan_progress_interval or 10, 1, self.scan_batch_size_bounded)

    @property
    def scan_step_budget_bounded(self) -> float:
        return max(3.0, self.scan_step_budget_s)

    @property
    def external_max_hops_bounded(self) -> int:
        return clamp(self.external_max_hops, 0, 3)

    @property
    def resolve_all_batch_bounded(self) -> int:
        return clamp(self.resolve_all_batch_size, 1, 50)

    @property
    def resolve_all_delay_bounded(self) -> int:
        return max(0, self.resolve_all_delay_ms)

    @property
    def resolve_all_step_budget_bounded(self) -> float:
        return max(5.0, self.resolve_all_step_budget_s)


def load_settings() -> Settings:
    return Settings()
