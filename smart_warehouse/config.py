from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Smart Warehouse"
    host: str = "0.0.0.0"
    port: int = 5001

    log_level: str = "INFO"
    log_to_console: bool = True
    log_file: str = "logs/smart_warehouse.log"

    grid_rows: int = Field(default=3, ge=1, le=50)
    grid_cols: int = Field(default=4, ge=1, le=50)

    device_base_url: str = ""
    device_timeout_seconds: float = Field(default=10.0, gt=0.0, le=120.0)

    persistence_backend: Literal["json", "sqlserver", "memory"] = "json"
    state_file: str = ".warehouse_state.json"

    sql_server: str = "localhost"
    sql_port: int = 1433
    sql_database: str = "smart_warehouse"
    sql_user: str = "sa"
    sql_password: str = ""
    sql_driver: str = "ODBC Driver 18 for SQL Server"
    sql_trust_server_certificate: bool = True
    sql_schema: str = "dbo"
    sql_max_concurrent_queries: int = Field(default=4, ge=1, le=32)
    sql_query_timeout_seconds: int = Field(default=15, ge=1, le=600)
    log_sql_preview_chars: int = Field(default=240, ge=40, le=4000)

    store_queue_size: int = Field(default=1000, ge=10, le=100000)
    event_queue_size: int = Field(default=2000, ge=100, le=500000)
    ws_queue_size: int = Field(default=2000, ge=100, le=500000)

    scheduler_success_delay_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    scheduler_noop_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    scheduler_failure_delay_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    auto_start_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    snapshot_broadcast_interval_seconds: float = Field(default=3.0, ge=0.1, le=3600.0)
    operations_default_limit: int = Field(default=20, ge=1, le=1000)

    def build_odbc_dsn(self, driver: str | None = None) -> str:
        selected_driver = (driver or self.sql_driver).strip()
        dsn = (
            f"DRIVER={{{selected_driver}}};"
            f"SERVER={self.sql_server},{self.sql_port};"
            f"DATABASE={self.sql_database};"
            f"UID={self.sql_user};"
            f"PWD={self.sql_password};"
        )
        if "ODBC Driver" in selected_driver and "SQL Server" in selected_driver:
            trust = "yes" if self.sql_trust_server_certificate else "no"
            dsn += f"TrustServerCertificate={trust};"
        return dsn


settings = Settings()
