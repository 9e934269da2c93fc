# app/core/config.py

from typing import Any, Set
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
import os

# 프로젝트의 루트 디렉토리 경로를 계산합니다.
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class Settings(BaseSettings):
    """
    애플리케이션의 모든 설정을 정의하는 Pydantic BaseSettings 모델입니다.
    환경 변수 및 .env 파일에서 값을 자동으로 로드합니다.
    """

    # --- Pydantic Settings 설정 ---
    model_config = SettingsConfigDict(
        env_file=os.path.join(BASE_DIR, '.env'),  # 프로젝트 루트의 .env 파일을 명시적으로 지정
        env_file_encoding='utf-8',           # .env 파일 인코딩
        extra='ignore',                      # .env 파일에 정의되었지만 모델에 없는 변수는 무시
        case_sensitive=True                  # 환경 변수 이름 대소문자 구분
    )

    # --- 애플리케이션 기본 설정 ---
    APP_NAME: str = "ProdFlow FastAPI API"
    APP_VERSION: str = "0.1.0"
    APP_DESCRIPTION: str = "Textile production flow (stage ledger & production batch) API"
    # 애플리케이션 환경 (예: "development", "production", "testing")
    APP_ENV: str = Field("development", description="Application environment (e.g., development, production, testing)")
    # 디버그 모드 활성화 여부
    DEBUG_MODE: bool = Field(False, description="Enable debug mode for detailed logging and error messages")
    LOG_LEVEL: str = Field("INFO", description="Root logging level (DEBUG, INFO, WARNING, ERROR)")

    # --- 데이터베이스 설정 ---
    # 운영 환경에서는 postgresql+asyncpg://... 형식의 URL을 사용합니다.
    DATABASE_URL: SecretStr = Field(
        SecretStr(f"sqlite+aiosqlite:///{os.path.join(BASE_DIR, 'prodflow.db')}"),
        description="Async database connection URL"
    )

    # --- ARQ (Redis) 설정 ---
    REDIS_HOST: str = Field("localhost", description="Redis host for the ARQ worker")
    REDIS_PORT: int = Field(6379, description="Redis port for the ARQ worker")

    # --- 생산 흐름 설정 ---
    DEFAULT_COMPANY_CODE: str = Field("COMP", description="Batch number prefix used when no company code is given")
    FORWARDING_RETRY_LIMIT: int = Field(5, description="Max automatic retry attempts per forwarding step")
    RECONCILE_CRON_MINUTES: Set[int] = Field(
        default_factory=lambda: set(range(0, 60, 5)),
        description="Minutes of the hour at which the forwarding reconciler runs"
    )

    # Post-initialization validation (Pydantic v2 BaseSettings)
    def model_post_init(self, __context: Any) -> None:  # noqa: ANN001
        # 회사 코드는 배치 번호의 접두사이므로 항상 대문자로 정규화합니다.
        self.DEFAULT_COMPANY_CODE = self.DEFAULT_COMPANY_CODE.strip().upper() or "COMP"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.get_secret_value().startswith("sqlite")


settings = Settings()
