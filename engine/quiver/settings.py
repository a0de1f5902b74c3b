from __future__ import annotations
from pathlib import Path
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    home: Path = Field(default=Path("/var/lib/quiver"), alias="QUIVER_HOME")
    install_dir: Optional[Path] = Field(default=None, alias="QUIVER_INSTALL_DIR")
    database_path: Optional[Path] = Field(default=None, alias="QUIVER_DATABASE_PATH")
    logs_dir: Optional[Path] = Field(default=None, alias="QUIVER_LOGS_DIR")

    repositories: List[str] = Field(default_factory=lambda: ["./pkgs"], alias="QUIVER_REPOSITORIES")

    port_range_start: int = Field(default=8000, alias="QUIVER_PORT_RANGE_START")
    port_range_end: int = Field(default=9000, alias="QUIVER_PORT_RANGE_END")
    netbridge_enabled: bool = Field(default=True, alias="QUIVER_NETBRIDGE_ENABLED")

    download_timeout: float = Field(default=30.0, alias="QUIVER_DOWNLOAD_TIMEOUT")
    method_timeout: float = Field(default=300.0, alias="QUIVER_METHOD_TIMEOUT")
    stop_timeout: float = Field(default=10.0, alias="QUIVER_STOP_TIMEOUT")
    process_sweep_interval: float = Field(default=30.0, alias="QUIVER_PROCESS_SWEEP_INTERVAL")

    api_host: str = Field(default="0.0.0.0", alias="QUIVER_API_HOST")
    api_port: int = Field(default=8080, alias="QUIVER_API_PORT")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)
