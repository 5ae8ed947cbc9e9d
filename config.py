"""
程序層級設定（環境變數 / .env）

營運可調的參數（倍率、營業時間、開獎模式）不在這裡，
而是存在 settings 資料表，由 services.settings_service 管理。
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./rounds.db"

    jwt_secret: str = "change-me-jwt-secret"
    barcode_secret: str = "change-me-barcode-secret"

    bind_host: str = "0.0.0.0"
    bind_port: int = 8000
    cors_origins: List[str] = ["*"]

    access_token_minutes: int = 240
    refresh_token_days: int = 7

    request_timeout_seconds: float = 5.0
    settlement_budget_seconds: float = 30.0

    scheduler_enabled: bool = True
    alarm_restore_skew_seconds: int = 600

    log_level: str = "INFO"

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
