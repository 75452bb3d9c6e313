"""threadline configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (THREADLINE_DB, THREADLINE_EMBEDDING_MODEL, ...)
  3. Per-project threadline.yaml  (working directory)
  4. Global ~/.threadline/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
Invalid chunking or retrieval values raise ConfigError here, at startup,
so nothing downstream has to re-check them mid-request.
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".threadline"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "threadline.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like token_budget or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token (suffix)
    r"|^token$"                  # exactly "token"
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret"
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "embedding", "chunking", "retrieval", "generation", "logging"]
)

BOUNDARY_MODES: tuple[str, ...] = ("paragraph", "sentence", "char")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when configuration contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """SQLite database location and pool size (threadline.yaml: database:)."""

    path: str = ".threadline.db"
    pool_size: int = 4


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (threadline.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 64
    max_retries: int = 3
    backoff_base: float = 0.5
    timeout: float = 30.0


@dataclass
class ChunkingCfg:
    """Chunk window configuration (threadline.yaml: chunking:).

    Attributes:
        max_chars: Upper bound on a chunk's length in characters.
        overlap_chars: Characters shared between consecutive windows.
        boundary: Where windows prefer to end: paragraph, sentence or char.
    """

    max_chars: int = 1000
    overlap_chars: int = 200
    boundary: str = "paragraph"


@dataclass
class RetrievalCfg:
    """Similarity search policy (threadline.yaml: retrieval:)."""

    threshold: float = 0.72
    top_k: int = 5


@dataclass
class GenerationCfg:
    """Completion defaults (threadline.yaml: generation:).

    ``timeout`` bounds the opening request and each chunk read;
    ``stream_timeout`` bounds a whole completion. ``title_model`` is a
    LiteLLM model string used to name new threads; None disables title
    generation.
    """

    provider: str = "openai"
    model: str = "gpt-4o"
    max_tokens: int = 1500
    temperature: float = 0.7
    timeout: float = 60.0
    stream_timeout: float = 600.0
    token_budget: int = 8_192
    title_model: str | None = None


@dataclass
class LoggingCfg:
    level: str = "INFO"


@dataclass
class ThreadlineConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_chunking(cfg: ChunkingCfg) -> None:
    """Raise ConfigError unless *cfg* describes a window that always advances."""
    if cfg.max_chars < 1:
        raise ConfigError(f"chunking.max_chars must be >= 1, got {cfg.max_chars}")
    if cfg.overlap_chars < 0:
        raise ConfigError(
            f"chunking.overlap_chars must be >= 0, got {cfg.overlap_chars}"
        )
    if cfg.overlap_chars >= cfg.max_chars:
        raise ConfigError(
            f"chunking.overlap_chars ({cfg.overlap_chars}) must be smaller than "
            f"chunking.max_chars ({cfg.max_chars}); the window would not advance."
        )
    if cfg.boundary not in BOUNDARY_MODES:
        raise ConfigError(
            f"chunking.boundary must be one of {', '.join(BOUNDARY_MODES)}, "
            f"got '{cfg.boundary}'"
        )


def validate_retrieval(cfg: RetrievalCfg) -> None:
    """Raise ConfigError for a threshold outside [-1, 1) or a non-positive top_k."""
    if not -1.0 <= cfg.threshold < 1.0:
        raise ConfigError(
            f"retrieval.threshold must be in [-1.0, 1.0), got {cfg.threshold}"
        )
    if cfg.top_k < 1:
        raise ConfigError(f"retrieval.top_k must be >= 1, got {cfg.top_k}")


def _validate(cfg: ThreadlineConfig) -> None:
    validate_chunking(cfg.chunking)
    validate_retrieval(cfg.retrieval)
    if cfg.embedding.dimensions < 1:
        raise ConfigError(
            f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}"
        )
    if cfg.embedding.batch_size < 1:
        raise ConfigError(
            f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}"
        )
    if cfg.embedding.max_retries < 0:
        raise ConfigError(
            f"embedding.max_retries must be >= 0, got {cfg.embedding.max_retries}"
        )
    if cfg.generation.token_budget < 1:
        raise ConfigError(
            f"generation.token_budget must be >= 1, got {cfg.generation.token_budget}"
        )
    if min(cfg.generation.timeout, cfg.generation.stream_timeout, cfg.embedding.timeout) <= 0:
        raise ConfigError("timeouts must be positive")
    if cfg.database.pool_size < 1:
        raise ConfigError(
            f"database.pool_size must be >= 1, got {cfg.database.pool_size}"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> ThreadlineConfig:
    """Build a *ThreadlineConfig* from a merged raw YAML dict."""
    cfg = ThreadlineConfig()

    try:
        if "database" in data:
            d = data["database"]
            cfg.database = DatabaseCfg(
                path=str(d.get("path", cfg.database.path)),
                pool_size=int(d.get("pool_size", cfg.database.pool_size)),
            )

        if "embedding" in data:
            e = data["embedding"]
            cfg.embedding = EmbeddingCfg(
                model=str(e.get("model", cfg.embedding.model)),
                dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
                batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
                max_retries=int(e.get("max_retries", cfg.embedding.max_retries)),
                backoff_base=float(e.get("backoff_base", cfg.embedding.backoff_base)),
                timeout=float(e.get("timeout", cfg.embedding.timeout)),
            )

        if "chunking" in data:
            c = data["chunking"]
            cfg.chunking = ChunkingCfg(
                max_chars=int(c.get("max_chars", cfg.chunking.max_chars)),
                overlap_chars=int(c.get("overlap_chars", cfg.chunking.overlap_chars)),
                boundary=str(c.get("boundary", cfg.chunking.boundary)),
            )

        if "retrieval" in data:
            r = data["retrieval"]
            cfg.retrieval = RetrievalCfg(
                threshold=float(r.get("threshold", cfg.retrieval.threshold)),
                top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            )

        if "generation" in data:
            g = data["generation"]
            cfg.generation = GenerationCfg(
                provider=str(g.get("provider", cfg.generation.provider)),
                model=str(g.get("model", cfg.generation.model)),
                max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
                temperature=float(g.get("temperature", cfg.generation.temperature)),
                timeout=float(g.get("timeout", cfg.generation.timeout)),
                stream_timeout=float(g.get("stream_timeout", cfg.generation.stream_timeout)),
                token_budget=int(g.get("token_budget", cfg.generation.token_budget)),
                title_model=g.get("title_model") or cfg.generation.title_model,
            )

        if "logging" in data:
            cfg.logging = LoggingCfg(
                level=str(data["logging"].get("level", cfg.logging.level)).upper()
            )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: ThreadlineConfig) -> ThreadlineConfig:
    """Apply THREADLINE_* environment variable overrides (layer 2)."""
    if path := os.environ.get("THREADLINE_DB"):
        cfg.database.path = path
    if model := os.environ.get("THREADLINE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if provider := os.environ.get("THREADLINE_GENERATION_PROVIDER"):
        cfg.generation.provider = provider
    if model := os.environ.get("THREADLINE_GENERATION_MODEL"):
        cfg.generation.model = model
    if level := os.environ.get("THREADLINE_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ThreadlineConfig:
    """Load, validate and return a merged *ThreadlineConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *threadline.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *ThreadlineConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or any
            chunking / retrieval / generation value is invalid.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    cfg = _apply_env_overrides(cfg)
    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.threadline/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# threadline global configuration: defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export ANTHROPIC_API_KEY=sk-ant-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "  dimensions: 1536\n"
            "\n"
            "generation:\n"
            "  provider: openai\n"
            "  model: gpt-4o\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
