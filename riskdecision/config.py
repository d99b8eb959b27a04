"""Runtime settings loaded from environment/.env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .rule_engine import EngineConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    assessment_db_path: Path = Field(default=Path("data/assessment.sqlite"), alias="RISKDECISION_DB")
    decisions_config_path: Path = Field(default=Path("configs/decisions.yaml"), alias="RISKDECISION_CONFIG")

    # Rule evaluation
    cpu_budget: float = Field(default=0.25, ge=0, alias="RISKDECISION_CPU_BUDGET")
    # unset: the dsl_mode of the configuration file applies
    dsl_mode: Optional[Literal["warn", "strict"]] = Field(default=None, alias="RISKDECISION_DSL_MODE")

    # Logging
    log_file: Optional[Path] = Field(default=None, alias="RISKDECISION_LOG_FILE")
    log_level: str = Field(default="INFO", alias="RISKDECISION_LOG_LEVEL")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(cpu_budget=self.cpu_budget)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
