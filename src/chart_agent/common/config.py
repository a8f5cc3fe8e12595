from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    """
    애플리케이션 전역 설정 클래스
    Pydantic Settings를 사용하여 환경 변수(.env) 및 기본값을 관리합니다.
    """

    # --- [LLM Configuration] ---
    # OpenAI 호환 엔드포인트 (OpenAI, vLLM, Grok 등 공유)
    LLM_API_KEY: str = "token-needed"
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_MODEL_NAME: str = "gpt-4o-mini"
    # 주 모델 호출 실패 시 사용할 보조 모델 (미설정 시 폴백 없음)
    LLM_FALLBACK_MODEL_NAME: Optional[str] = None
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2048
    LLM_TIMEOUT: int = 30
    EMBEDDING_MODEL_NAME: str = "text-embedding-3-small"

    # --- [Database Configuration - SQL Tool] ---
    # 날짜 규칙(strftime 등)이 SQLite 기준이므로 기본값도 SQLite
    SQL_DATABASE_URL: str = "sqlite:///data/chart_agent.db"

    # --- [Memory Configuration - Redis] ---
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_TTL: int = 3600
    SHORT_TERM_MEMORY_LIMIT: int = 100

    # --- [Workflow Configuration] ---
    MAX_RETRIES: int = 3
    # LangGraph 기본 recursion_limit(25)은 다단계 계획 + 재시도에 부족함
    GRAPH_RECURSION_LIMIT: int = 100
    HISTORY_TURNS: int = 5

    # --- [Application Settings] ---
    LOG_LEVEL: str = "INFO"
    SEED_SCHEMA_ON_STARTUP: bool = True
    RUN_MANUAL_TESTS: bool = False

    # Pydantic 설정 구성
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"  # 정의되지 않은 환경 변수는 무시
    )

# 싱글톤 설정 객체 생성
settings = Settings()
