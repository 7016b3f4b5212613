"""Configuration management for the memory engine."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.memory-engine/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.memory-engine/memory/index.sqlite").expanduser()
DEFAULT_MEMORY_DIR = Path("~/.memory-engine/memory").expanduser()
LOCAL_CONFIG_FILENAME = "memory-engine.yaml"


class StoreConfig(BaseModel):
    """Content store configuration."""

    path: str = str(DEFAULT_DB_PATH)
    fts_enabled: bool = True


class CorpusConfig(BaseModel):
    """Memory files location (MEMORY.md + daily logs)."""

    path: str = str(DEFAULT_MEMORY_DIR)


class ChunkingConfig(BaseModel):
    """Chunk window size and overlap, in approximate tokens (1 token ~ 4 chars)."""

    tokens: int = Field(default=400, ge=1)
    overlap: int = Field(default=80, ge=0)


class EmbeddingsConfig(BaseModel):
    """Embedding provider configuration."""

    provider: Literal["litellm", "ollama", "local_hash", "none"] = "litellm"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    api_key: str = ""
    base_url: str = ""
    ollama_base_url: str = "http://127.0.0.1:11434"
    request_timeout_seconds: int = 30


class SearchConfig(BaseModel):
    """Hybrid search tuning."""

    model_config = ConfigDict(extra="forbid")

    max_results: int = Field(default=5, ge=1)
    min_score: float = 0.1
    vector_weight: float = Field(default=0.7, ge=0.0)
    text_weight: float = Field(default=0.3, ge=0.0)
    candidate_multiplier: int = Field(default=4, ge=1)
    snippet_max_chars: int = Field(default=700, ge=1)

    @model_validator(mode="after")
    def _check_weights(self) -> "SearchConfig":
        if self.vector_weight + self.text_weight <= 0:
            raise ValueError("vector_weight + text_weight must be positive")
        return self

    @property
    def candidate_limit(self) -> int:
        return self.max_results * self.candidate_multiplier


class RecallConfig(BaseModel):
    """Auto-recall / auto-capture thresholds."""

    max_results: int = 5
    min_score: float = 0.3
    dedup_min_score: float = 0.92
    forget_max_results: int = 3
    forget_min_score: float = 0.7
    max_captures: int = 3


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the memory engine."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    corpus: CorpusConfig = Field(default_factory=CorpusConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    recall: RecallConfig = Field(default_factory=RecallConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MEMORY_ENGINE_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are merged by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_store_path(self) -> Path:
        return Path(self.store.path).expanduser()

    def resolved_corpus_path(self) -> Path:
        return Path(self.corpus.path).expanduser()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
