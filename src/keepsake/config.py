"""Configuration loading from environment variables and keepsake.toml."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from keepsake.access import Scope, ScopePolicy, default_policies

logger = logging.getLogger(__name__)

_DEFAULT_MEMORY_DIR = Path.home() / ".keepsake" / "memory"
_CONFIG_FILENAME = "keepsake.toml"


@dataclass
class EngineConfig:
    """Configuration for the generation/extraction engine."""

    name: str = "anthropic_api"
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1024
    timeout: int = 120
    temperature: float = 0.0


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    model: str = "text-embedding-3-small"
    dimension: int = 1536
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    timeout: float = 30.0
    retry_max: int = 2
    retry_backoff: float = 0.5


@dataclass
class RetrievalConfig:
    """Retrieval router limits."""

    result_cap: int = 5
    per_tier_limit: int = 5
    search_retries: int = 1


@dataclass
class KeepsakeConfig:
    """Top-level keepsake configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    scopes: dict[Scope, ScopePolicy] = field(default_factory=default_policies)
    store: str = "markdown"
    memory_dir: Path = _DEFAULT_MEMORY_DIR
    log_level: str = "INFO"


def _load_scopes(scope_data: dict) -> dict[Scope, ScopePolicy]:
    """Overlay [scopes.<NAME>] tables on the reference policies.

    Only ``requires``, ``allows`` and ``interface`` can be changed; the tiers a
    scope resolves to are fixed.
    """
    policies = default_policies()
    for name, table in scope_data.items():
        scope = Scope.parse(name)
        if scope is None:
            logger.warning("Ignoring policy for unknown scope %r", name)
            continue
        if "tiers" in table:
            logger.warning("Ignoring tiers override for scope %s", scope.value)
        base = policies[scope]
        policies[scope] = replace(
            base,
            requires=frozenset(table.get("requires", base.requires)),
            allows=frozenset(table.get("allows", base.allows)),
            interface=table.get("interface", base.interface),
        )
    return policies


def load_config(config_path: Path | None = None) -> KeepsakeConfig:
    """Load configuration from environment variables and optional keepsake.toml.

    Priority: environment variables > keepsake.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.keepsake/
        for candidate in [
            Path.cwd() / _CONFIG_FILENAME,
            Path.home() / ".keepsake" / _CONFIG_FILENAME,
        ]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    engine_data = file_data.get("engine", {})
    embedding_data = file_data.get("embedding", {})
    retrieval_data = file_data.get("retrieval", {})

    config = KeepsakeConfig(
        engine=EngineConfig(
            name=os.getenv("KEEPSAKE_ENGINE", engine_data.get("name", "anthropic_api")),
            model=os.getenv(
                "KEEPSAKE_MODEL", engine_data.get("model", EngineConfig.model)
            ),
            max_tokens=int(engine_data.get("max_tokens", 1024)),
            temperature=float(engine_data.get("temperature", 0.0)),
            timeout=int(os.getenv("KEEPSAKE_TIMEOUT", engine_data.get("timeout", 120))),
        ),
        embedding=EmbeddingConfig(
            model=embedding_data.get("model", EmbeddingConfig.model),
            dimension=int(embedding_data.get("dimension", 1536)),
            api_key=os.getenv("OPENAI_API_KEY", embedding_data.get("api_key", "")),
            base_url=os.getenv(
                "KEEPSAKE_EMBEDDING_URL", embedding_data.get("base_url", EmbeddingConfig.base_url)
            ),
            timeout=float(embedding_data.get("timeout", 30.0)),
            retry_max=int(embedding_data.get("retry_max", 2)),
            retry_backoff=float(embedding_data.get("retry_backoff", 0.5)),
        ),
        retrieval=RetrievalConfig(
            result_cap=int(os.getenv("KEEPSAKE_RESULT_CAP", retrieval_data.get("result_cap", 5))),
            per_tier_limit=int(
                os.getenv("KEEPSAKE_PER_TIER_LIMIT", retrieval_data.get("per_tier_limit", 5))
            ),
            search_retries=int(retrieval_data.get("search_retries", 1)),
        ),
        scopes=_load_scopes(file_data.get("scopes", {})),
        store=os.getenv("KEEPSAKE_STORE", file_data.get("store", "markdown")),
        memory_dir=Path(
            os.getenv("KEEPSAKE_MEMORY_DIR", file_data.get("memory_dir", str(_DEFAULT_MEMORY_DIR)))
        ).expanduser(),
        log_level=os.getenv("KEEPSAKE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
