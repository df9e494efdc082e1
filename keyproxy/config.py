# keyproxy/config.py
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Upstream LLM API
    openai_api_key: str = Field(min_length=1)           # OPENAI_API_KEY (required)
    openai_base_url: str = "http://localhost:8000"      # OPENAI_BASE_URL
    default_timeout_ms: int = 600_000                   # DEFAULT_TIMEOUT_MS

    # Virtual keys, one per line. Blank lines and "#" comments are ignored.
    allowed_keys_file: str = "/app/allowed_api_keys.txt"  # ALLOWED_KEYS_FILE
    # How long a parsed allow-list is reused (seconds); 0 re-reads it per request.
    allowed_keys_cache_ttl: float = 0.0                 # ALLOWED_KEYS_CACHE_TTL

    # Usage accounting, one JSON record per line.
    log_file: str = "/app/logs/logs.jsonl"              # LOG_FILE

    host: str = "0.0.0.0"                               # HOST
    port: int = 8080                                    # PORT
    verbose: bool = False                               # VERBOSE

    @property
    def timeout_seconds(self) -> float:
        return self.default_timeout_ms / 1000

    model_config = {"env_file": ".env", "case_sensitive": False}
