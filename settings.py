"""Environment-driven configuration.

Values are read from process environment variables; ``pipeline.py`` loads
a ``.env`` file first via python-dotenv. Library code never reads the
environment itself, it is handed a ``Settings`` instance.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from schemas.document import ChunkOptions

DEFAULT_LLM_API_BASE = "https://api.moonshot.cn/v1"
DEFAULT_LLM_MODELS = {
    "openai": "moonshot-v1-128k",
    "anthropic": "claude-sonnet-4-6",
}


def _optional(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _optional(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _optional(env, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    # Embeddings
    embeddings_provider: str = "openai"
    embeddings_api_base: Optional[str] = None
    embeddings_api_key: Optional[str] = None
    embeddings_model: str = "text-embedding-3-large"
    embeddings_dimensions: int = 1536
    embeddings_batch_size: int = 100

    # Vector store
    vector_db_provider: str = "chroma"
    vector_db_path: str = "./data/chroma"
    vector_db_host: Optional[str] = None
    vector_db_port: int = 8000
    vector_db_collection_prefix: str = "ratu_"

    # Chat model
    llm_provider: str = "openai"
    llm_api_base: Optional[str] = DEFAULT_LLM_API_BASE
    llm_api_key: Optional[str] = None
    llm_model: str = DEFAULT_LLM_MODELS["openai"]
    llm_max_tokens: int = 4096
    llm_temperature: float = 0.4
    llm_timeout: float = 60.0
    llm_max_retries: int = 3

    # Chunking
    chunk_target_tokens: int = 800
    chunk_overlap: int = 120
    chunk_min_size: int = 100
    tokenizer_model: str = "gpt-3.5-turbo"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``).

        Raises:
            ValueError: a numeric variable could not be parsed.
        """
        env = os.environ if environ is None else environ

        llm_provider = (_optional(env, "LLM_PROVIDER") or "openai").lower()
        default_base = DEFAULT_LLM_API_BASE if llm_provider == "openai" else None

        return cls(
            embeddings_provider=(_optional(env, "EMBEDDINGS_PROVIDER") or "openai").lower(),
            embeddings_api_base=_optional(env, "EMBEDDINGS_API_BASE"),
            embeddings_api_key=_optional(env, "EMBEDDINGS_API_KEY", _optional(env, "OPENAI_API_KEY")),
            embeddings_model=_optional(env, "EMBEDDINGS_MODEL", "text-embedding-3-large"),
            embeddings_dimensions=_int(env, "EMBEDDINGS_DIMENSIONS", 1536),
            embeddings_batch_size=_int(env, "EMBEDDINGS_BATCH_SIZE", 100),
            vector_db_provider=(_optional(env, "VECTOR_DB_PROVIDER") or "chroma").lower(),
            vector_db_path=_optional(env, "VECTOR_DB_PATH", "./data/chroma"),
            vector_db_host=_optional(env, "VECTOR_DB_HOST"),
            vector_db_port=_int(env, "VECTOR_DB_PORT", 8000),
            vector_db_collection_prefix=_optional(env, "VECTOR_DB_COLLECTION_PREFIX", "ratu_"),
            llm_provider=llm_provider,
            llm_api_base=_optional(env, "LLM_API_BASE", default_base),
            llm_api_key=_optional(env, "LLM_API_KEY"),
            llm_model=_optional(env, "LLM_MODEL", DEFAULT_LLM_MODELS.get(llm_provider, "")),
            llm_max_tokens=_int(env, "LLM_MAX_TOKENS", 4096),
            llm_temperature=_float(env, "LLM_TEMPERATURE", 0.4),
            llm_timeout=_float(env, "LLM_TIMEOUT", 60.0),
            llm_max_retries=_int(env, "LLM_MAX_RETRIES", 3),
            chunk_target_tokens=_int(env, "CHUNK_TARGET_TOKENS", 800),
            chunk_overlap=_int(env, "CHUNK_OVERLAP", 120),
            chunk_min_size=_int(env, "CHUNK_MIN_SIZE", 100),
            tokenizer_model=_optional(env, "TOKENIZER_MODEL", "gpt-3.5-turbo"),
        )

    def chunk_options(self) -> ChunkOptions:
        return ChunkOptions(
            target_tokens=self.chunk_target_tokens,
            overlap=self.chunk_overlap,
            min_chunk_size=self.chunk_min_size,
        )
