"""
引擎配置（环境变量）
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class EngineSettings:
    """引擎配置"""
    database_url: str = ""              # 为空时使用内存存储
    lanes: int = 8
    timer_poll_interval: float = 1.0    # 秒
    event_replay_window: float = 300.0  # 秒
    automatic_max_attempts: int = 5
    automatic_backoff_initial: float = 0.5
    automatic_backoff_max: float = 30.0
    automatic_call_timeout: float = 30.0
    conflict_retries: int = 10
    step_budget: int = 1000
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "EngineSettings":
        """从环境变量加载配置"""
        if load_dotenv_file:
            load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            lanes=int(os.getenv("ENGINE_LANES", "8")),
            timer_poll_interval=float(os.getenv("TIMER_POLL_INTERVAL", "1.0")),
            event_replay_window=float(os.getenv("EVENT_REPLAY_WINDOW", "300")),
            automatic_max_attempts=int(os.getenv("AUTOMATIC_MAX_ATTEMPTS", "5")),
            automatic_backoff_initial=float(os.getenv("AUTOMATIC_BACKOFF_INITIAL", "0.5")),
            automatic_backoff_max=float(os.getenv("AUTOMATIC_BACKOFF_MAX", "30")),
            automatic_call_timeout=float(os.getenv("AUTOMATIC_CALL_TIMEOUT", "30")),
            conflict_retries=int(os.getenv("CONFLICT_RETRIES", "10")),
            step_budget=int(os.getenv("STEP_BUDGET", "1000")),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            api_reload=_env_bool("API_RELOAD", "false"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper()
        )
