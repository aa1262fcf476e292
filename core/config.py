import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_MODELS_CONFIG = BASE_DIR / 'configs' / 'models.yml'
logger = logging.getLogger(__name__)

# --- Environment-based Settings ---

class GatewaySettings(BaseSettings):
    """
    Gateway settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the gateway (e.g., DEBUG, INFO, WARNING, ERROR)")
    LOG_FILE: Optional[str] = Field(None, description="Optional: Path of a rotating JSON log file.")
    MODELS_CONFIG_PATH: Optional[str] = Field(None, description="Optional: Path to the YAML model registry file.")

    # --- Providers ---
    OPENAI_API_KEY: Optional[str] = Field(None)
    OPENAI_API_URL: str = Field("https://api.openai.com/v1")
    ANTHROPIC_API_KEY: Optional[str] = Field(None)
    ANTHROPIC_API_URL: str = Field("https://api.anthropic.com/v1")
    GOOGLE_AI_API_KEY: Optional[str] = Field(None)
    GOOGLE_AI_API_URL: str = Field("https://generativelanguage.googleapis.com/v1beta")
    GROK_API_KEY: Optional[str] = Field(None)
    GROK_API_URL: str = Field("https://api.x.ai/v1")
    HUGGINGFACE_API_KEY: Optional[str] = Field(None)
    HUGGINGFACE_API_URL: str = Field("https://api-inference.huggingface.co/models")
    OPENROUTER_API_KEY: Optional[str] = Field(None)
    OPENROUTER_API_URL: str = Field("https://openrouter.ai/api/v1")
    OPENROUTER_SITE_URL: Optional[str] = Field(None, description="Optional: Sent as HTTP-Referer for OpenRouter attribution.")
    MISTRAL_API_KEY: Optional[str] = Field(None)
    MISTRAL_API_URL: str = Field("https://api.mistral.ai/v1")
    DEEPSEEK_API_KEY: Optional[str] = Field(None)
    DEEPSEEK_API_URL: str = Field("https://api.deepseek.com/v1")
    COHERE_API_KEY: Optional[str] = Field(None)
    COHERE_API_URL: str = Field("https://api.cohere.ai/v1")
    OLLAMA_HOST: str = Field("http://localhost:11434", description="The full URL of your Ollama server.")
    PROVIDER_TIMEOUT: float = Field(30.0, gt=0, description="Timeout in seconds for a single provider call.")

    # --- Response Cache ---
    AI_CACHE_ENABLED: bool = Field(True)
    AI_CACHE_TTL: int = Field(3600, gt=0, description="Cache entry lifetime in seconds.")
    AI_CACHE_MAX_ENTRIES: Optional[int] = Field(None, gt=0, description="Optional: LRU capacity bound.")
    AI_CACHE_PURGE_EVERY: int = Field(100, ge=0, description="Sweep expired entries every N writes (0 disables).")

    # --- Retry & Fallback ---
    AI_RETRY_ATTEMPTS: int = Field(3, ge=0, description="Retries per model after the first attempt.")
    AI_RETRY_DELAY: int = Field(1000, ge=0, description="Base backoff delay in milliseconds.")
    AI_RETRY_MAX_DELAY: int = Field(30000, ge=0, description="Backoff ceiling in milliseconds.")
    AI_RETRY_JITTER: int = Field(1000, ge=0, description="Maximum random jitter in milliseconds.")
    AI_FALLBACK_ENABLED: bool = Field(True)

    # --- Interaction Logging ---
    AI_LOGGING_ENABLED: bool = Field(True)
    INTERACTION_DB_PATH: Optional[str] = Field(None, description="Optional: SQLite file for interaction logs.")

    # --- Knowledge Base ---
    KNOWLEDGE_SEARCH_URL: Optional[str] = Field(None, description="Optional: Base URL of the knowledge-base search service.")
    KNOWLEDGE_MAX_RESULTS: int = Field(5, gt=0)
    KNOWLEDGE_MIN_SIMILARITY: float = Field(0.7, ge=0, le=1)

# --- YAML-based Configuration Models ---

class ModelEntry(BaseModel):
    id: str
    provider: str
    name: Optional[str] = None
    priority: int = 0
    is_available: bool = True
    context_window: int = 4096
    max_tokens: int = 1000
    capabilities: List[str] = Field(default_factory=list)

class RetryPatternEntry(BaseModel):
    pattern: str
    retryable: bool

class ModelsConfig(BaseModel):
    default_model: Optional[str] = None
    models: List[ModelEntry] = Field(default_factory=list)
    retry_patterns: Optional[List[RetryPatternEntry]] = None

def load_models_config(path: Optional[Path] = None) -> ModelsConfig:
    """Loads the model registry YAML file and validates it with ModelsConfig."""
    config_path = Path(path) if path else DEFAULT_MODELS_CONFIG
    if not config_path.exists():
        raise ConfigError(f"Model configuration file not found: {config_path}")
    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    try:
        return ModelsConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid model configuration in {config_path}: {e}") from e

# --- Main Config Object ---

class Config:
    """
    A unified configuration object.
    """
    def __init__(self, app: Optional[GatewaySettings] = None):
        try:
            self.app = app or GatewaySettings()
        except ValidationError as e:
            raise ConfigError(f"Configuration validation error: {e}") from e

        self.models: ModelsConfig = load_models_config(self.app.MODELS_CONFIG_PATH)

# --- Global Config Instance ---
_settings_instance = None

def get_settings() -> Config:
    """
    Returns a singleton instance of the Config object.
    This function controls when the settings are loaded and validated,
    making the gateway more testable.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Config()
        logger.debug("Loaded gateway configuration with %d models", len(_settings_instance.models.models))
    return _settings_instance

def reset_settings() -> None:
    """Drops the cached Config so the next get_settings() call reloads it."""
    global _settings_instance
    _settings_instance = None
