import json
from typing import Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
# Try multiple paths to find .env file
import pathlib
project_root = pathlib.Path(__file__).parent.parent.parent.parent
env_paths = [
    project_root / ".env",
    pathlib.Path.cwd() / ".env",
    pathlib.Path(".env")
]

for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break


def split_model_list(raw: str) -> List[str]:
    """Parse a model ladder given as JSON array or comma-separated string."""
    raw = raw.strip()
    if raw.startswith("["):
        models = json.loads(raw)
    else:
        models = raw.split(",")
    return [model.strip() for model in models if model.strip()]


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite+aiosqlite:///./taskflow.db", env="DATABASE_URL")

    # OpenAI-compatible gateway used by every model in the fallback ladders
    llm_base_url: str = Field(default="https://api.openai.com/v1", env="LLM_BASE_URL")
    llm_api_key: Optional[str] = Field(default=None, env="LLM_API_KEY")
    llm_timeout_seconds: float = Field(default=120.0, env="LLM_TIMEOUT_SECONDS")
    llm_retry_base_delay: float = Field(default=0.5, env="LLM_RETRY_BASE_DELAY")
    llm_retry_max_delay: float = Field(default=10.0, env="LLM_RETRY_MAX_DELAY")
    llm_rate_limit_per_minute: int = Field(default=60, env="LLM_RATE_LIMIT_PER_MINUTE")

    # Fallback ladders: fast/cheap models first, stronger ones later
    generator_models: str = Field(
        default="gemini-2.0-flash,deepseek-chat,gpt-4o-mini,claude-3-5-haiku,qwen-plus",
        env="GENERATOR_MODELS"
    )
    trigger_models: str = Field(
        default="gemini-2.0-flash,deepseek-chat,deepseek-reasoner,claude-3-5-sonnet,gpt-4o,qwen-plus",
        env="TRIGGER_MODELS"
    )
    task_models: str = Field(default="gpt-4o-mini,claude-3-5-sonnet,gpt-4o", env="TASK_MODELS")
    generator_max_attempts: int = Field(default=4, env="GENERATOR_MAX_ATTEMPTS")
    trigger_max_attempts: int = Field(default=5, env="TRIGGER_MAX_ATTEMPTS")
    task_max_attempts: int = Field(default=3, env="TASK_MAX_ATTEMPTS")

    # Agent code -> event ids its integration can emit
    agent_event_triggers: Dict[str, List[str]] = Field(default_factory=dict, env="AGENT_EVENT_TRIGGERS")

    scheduler_timezone: str = Field(default="UTC", env="SCHEDULER_TIMEZONE")
    dispatch_interval_seconds: int = Field(default=30, env="DISPATCH_INTERVAL_SECONDS")
    max_concurrent_dispatches: int = Field(default=10, env="MAX_CONCURRENT_DISPATCHES")

    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8000, env="PORT")
    debug: bool = Field(default=False, env="DEBUG")

    # API Security
    api_key: Optional[str] = Field(default=None, env="API_KEY")

    class Config:
        env_file = [str(p) for p in env_paths if p.exists()]
        case_sensitive = False
        extra = "ignore"  # Allow extra environment variables

    @field_validator("generator_models", "trigger_models", "task_models")
    @classmethod
    def validate_model_list(cls, value: str) -> str:
        try:
            models = split_model_list(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON model list: {e}")
        if not models:
            raise ValueError("Model list must contain at least one model")
        return value

    @field_validator("agent_event_triggers", mode="before")
    @classmethod
    def parse_agent_event_triggers(cls, value):
        if isinstance(value, str):
            try:
                value = json.loads(value) if value.strip() else {}
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON for agent_event_triggers: {e}")
        return value

    @property
    def generator_model_list(self) -> List[str]:
        return split_model_list(self.generator_models)

    @property
    def trigger_model_list(self) -> List[str]:
        return split_model_list(self.trigger_models)

    @property
    def task_model_list(self) -> List[str]:
        return split_model_list(self.task_models)

    def get_event_ids_for_agents(self, agent_codes: List[str]) -> Dict[str, List[str]]:
        """Get the event ids each of the given agents can emit."""
        return {
            code: self.agent_event_triggers[code]
            for code in agent_codes
            if self.agent_event_triggers.get(code)
        }


settings = Settings()
