from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


CONTRACT_SUFFIXES = (".yaml", ".yml", ".json")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="")

    SERVICE_NAME: str = "contract-engine"
    LOG_LEVEL: str = "INFO"
    CONTRACTS_PATH: str = "contracts"
    ADMIN_TOKEN: Optional[str] = None

    # Resolution
    STRICT_MATCHING: bool = False

    # Stub serving
    STUB_HOST: str = "127.0.0.1"
    STUB_REQUEST_TIMEOUT_SECONDS: float = 5.0
    STUB_ARTIFACT_ID: str = "contracts"

    def contract_paths(self) -> list[Path]:
        p = Path(self.CONTRACTS_PATH)
        if p.is_dir():
            return sorted(f for f in p.rglob("*") if f.is_file() and f.suffix.lower() in CONTRACT_SUFFIXES)
        return [p]


def get_settings() -> Settings:
    return Settings()
