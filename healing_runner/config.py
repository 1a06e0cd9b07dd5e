from __future__ import annotations

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./healing_runs.db"
    results_dir: str = "RESULTS"
    results_workbook: str = "Test_Results.xlsx"
    headless: bool = False
    browser_args: list[str] = ["--start-maximized"]
    default_timeout_ms: int = 30000
    navigation_timeout_ms: int = 30000

    # search bounds
    max_frames: int = 15
    max_shadow_depth: int = 5
    max_listed_elements: int = 300

    # overlay heuristics
    overlay_min_width: int = 100
    overlay_min_height: int = 50
    overlay_min_z_index: int = 100

    # retries
    action_retries: int = 5
    open_retries: int = 3
    open_retry_delay_ms: int = 2000

    # readiness gate
    readiness_budget_ms: int = 30000
    network_idle_timeout_ms: int = 15000
    frame_load_timeout_ms: int = 5000
    loading_indicator_timeout_ms: int = 8000
    document_state_timeout_ms: int = 3000

    # waits and delays
    dynamic_wait_ms: int = 2000
    dynamic_poll_ms: int = 200
    technique_timeout_ms: int = 3000
    action_settle_ms: int = 800
    pause_poll_ms: int = 500
    step_delay_ms: int = 300

    log_buffer_size: int = 200
    server_host: str = "127.0.0.1"
    server_port: int = 3000


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
