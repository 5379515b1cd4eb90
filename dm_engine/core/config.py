from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "dm-engine"
    debug: bool = False
    log_level: str = "INFO"

    # backend
    database_url: str = "sqlite:///./dm_engine.db"
    public_base_url: str = "http://127.0.0.1:8001"
    storage_dir: str = "./storage"

    # client
    api_base_url: str = "http://127.0.0.1:8001"
    request_timeout: float = 10.0
    edit_window_seconds: int = 15 * 60
    typing_idle_seconds: float = 2.0
    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    online_channel: str = "online-users"
    presence_heartbeat_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="DM_"
    )


settings = Settings()
