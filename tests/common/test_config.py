from chart_agent.common.config import Settings

def test_settings_load():
    """기본값 또는 환경 변수가 정상적으로 로드되는지 확인"""
    s = Settings(LLM_MODEL_NAME="test-model", MAX_RETRIES=5)
    assert s.LLM_MODEL_NAME == "test-model"
    assert s.MAX_RETRIES == 5
    assert s.SQL_DATABASE_URL.startswith("sqlite")

def test_settings_env_override(monkeypatch):
    """환경 변수가 기본값보다 우선하는지 확인"""
    monkeypatch.setenv("REDIS_PORT", "6380")
    monkeypatch.setenv("SEED_SCHEMA_ON_STARTUP", "false")
    s = Settings()
    assert s.REDIS_PORT == 6380
    assert s.SEED_SCHEMA_ON_STARTUP is False
