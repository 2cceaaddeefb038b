"""Global configuration management for repocache."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from .text import Messages

DEFAULT_CONFIG_DIR = Path(os.path.expanduser("~")) / ".repocache"
CONFIG_DIR = DEFAULT_CONFIG_DIR
CONFIG_FILE = CONFIG_DIR / "config.json"
_CONFIG_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "repocache_config_dir_override",
    default=None,
)
DEFAULT_PROVIDER = "voyage"
DEFAULT_MODEL = "voyage-code-2"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_LOCAL_MODEL = "intfloat/multilingual-e5-small"
DEFAULT_BATCH_SIZE = 10
DEFAULT_EMBED_CONCURRENCY = 2
DEFAULT_EXTRACT_CONCURRENCY = max(1, min(4, os.cpu_count() or 1))
DEFAULT_EXTENSIONS: tuple[str, ...] = (".java",)
DEFAULT_BLOB_GRACE_SECONDS = 300.0
SUPPORTED_PROVIDERS: tuple[str, ...] = (DEFAULT_PROVIDER, "openai", "gemini", "custom", "local")
TTL_KEYS: tuple[str, ...] = ("file", "ast", "metadata", "embedding", "pattern")
ENV_API_KEY = "REPOCACHE_API_KEY"
ENV_HOME = "REPOCACHE_HOME"
VOYAGE_ENV = "VOYAGE_API_KEY"
GEMINI_ENV = "GOOGLE_GENAI_API_KEY"
OPENAI_ENV = "OPENAI_API_KEY"


@dataclass
class Config:
    api_key: str | None = None
    provider: str = DEFAULT_PROVIDER
    model: str | None = None
    base_url: str | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    embed_concurrency: int = DEFAULT_EMBED_CONCURRENCY
    extract_concurrency: int = DEFAULT_EXTRACT_CONCURRENCY
    data_dir: str | None = None
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    skip_dirs: tuple[str, ...] = ()
    ttl_days: dict[str, float] = field(default_factory=dict)
    blob_grace_seconds: float = DEFAULT_BLOB_GRACE_SECONDS
    sweep_on_start: bool = True


def _resolve_config_dir() -> Path:
    override = _CONFIG_DIR_OVERRIDE.get()
    if override is not None:
        return override
    env_home = os.getenv(ENV_HOME)
    if env_home and CONFIG_DIR == DEFAULT_CONFIG_DIR:
        return Path(env_home).expanduser().resolve()
    return CONFIG_DIR


def _resolve_config_file() -> Path:
    return _resolve_config_dir() / "config.json"


@contextmanager
def config_dir_context(path: Path | str | None):
    """Temporarily override the config directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _CONFIG_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _CONFIG_DIR_OVERRIDE.reset(token)


def set_config_dir(path: Path | str | None) -> None:
    global CONFIG_DIR, CONFIG_FILE
    if path is None:
        CONFIG_DIR = DEFAULT_CONFIG_DIR
    else:
        dir_path = Path(path).expanduser().resolve()
        if dir_path.exists() and not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {dir_path}")
        CONFIG_DIR = dir_path
    CONFIG_FILE = CONFIG_DIR / "config.json"


def load_config() -> Config:
    config_file = _resolve_config_file()
    if not config_file.exists():
        return Config()
    raw = json.loads(config_file.read_text(encoding="utf-8"))
    if not isinstance(raw, Mapping):
        return Config()
    return config_from_json(raw)


def save_config(config: Config) -> None:
    config_dir = _resolve_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data: Dict[str, Any] = {}
    if config.api_key:
        data["api_key"] = config.api_key
    if config.provider:
        data["provider"] = config.provider
    if config.model:
        data["model"] = config.model
    if config.base_url:
        data["base_url"] = config.base_url
    data["batch_size"] = config.batch_size
    data["embed_concurrency"] = config.embed_concurrency
    data["extract_concurrency"] = config.extract_concurrency
    if config.data_dir:
        data["data_dir"] = config.data_dir
    data["extensions"] = list(config.extensions)
    if config.skip_dirs:
        data["skip_dirs"] = list(config.skip_dirs)
    if config.ttl_days:
        data["ttl_days"] = dict(config.ttl_days)
    data["blob_grace_seconds"] = config.blob_grace_seconds
    data["sweep_on_start"] = bool(config.sweep_on_start)
    _resolve_config_file().write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def config_from_json(
    payload: str | Mapping[str, object], *, base: Config | None = None
) -> Config:
    """Return a Config from a JSON string or mapping without saving it."""
    data = _coerce_config_payload(payload)
    config = Config() if base is None else _clone_config(base)
    _apply_config_payload(config, data)
    return config


def update_config_from_json(
    payload: str | Mapping[str, object], *, replace: bool = False
) -> Config:
    """Update config from a JSON string or mapping and persist it."""
    base = None if replace else load_config()
    config = config_from_json(payload, base=base)
    save_config(config)
    return config


def set_api_key(value: str | None) -> None:
    config = load_config()
    config.api_key = value
    save_config(config)


def set_provider(value: str) -> None:
    config = load_config()
    config.provider = _normalize_provider(value)
    save_config(config)


def set_model(value: str) -> None:
    config = load_config()
    config.model = value
    save_config(config)


def set_base_url(value: str | None) -> None:
    config = load_config()
    config.base_url = value
    save_config(config)


def set_batch_size(value: int) -> None:
    config = load_config()
    config.batch_size = value
    save_config(config)


def resolve_data_dir(config: Config) -> Path | None:
    """Return the configured data directory, or None to use the default cache dir."""

    if config.data_dir:
        return Path(config.data_dir).expanduser().resolve()
    return None


def resolve_default_model(provider: str | None, model: str | None) -> str:
    """Return the effective model name for the selected provider."""
    clean_model = (model or "").strip()
    if clean_model:
        return clean_model
    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "gemini":
        return DEFAULT_GEMINI_MODEL
    if normalized in {"openai", "custom"}:
        return DEFAULT_OPENAI_MODEL
    if normalized == "local":
        return DEFAULT_LOCAL_MODEL
    return DEFAULT_MODEL


def resolve_api_key(configured: str | None, provider: str) -> str | None:
    """Return the first available API key from config or environment."""

    normalized = (provider or DEFAULT_PROVIDER).lower()
    if normalized == "local":
        return None
    if configured:
        return configured
    general = os.getenv(ENV_API_KEY)
    if general:
        return general
    if normalized == "voyage":
        voyage_key = os.getenv(VOYAGE_ENV)
        if voyage_key:
            return voyage_key
    if normalized == "gemini":
        gemini_key = os.getenv(GEMINI_ENV)
        if gemini_key:
            return gemini_key
    if normalized in {"openai", "custom"}:
        openai_key = os.getenv(OPENAI_ENV)
        if openai_key:
            return openai_key
    return None


def _coerce_config_payload(payload: str | Mapping[str, object]) -> Mapping[str, object]:
    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID) from exc
    elif isinstance(payload, Mapping):
        data = dict(payload)
    else:
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    if not isinstance(data, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_JSON_INVALID)
    return data


def _clone_config(config: Config) -> Config:
    return Config(
        api_key=config.api_key,
        provider=config.provider,
        model=config.model,
        base_url=config.base_url,
        batch_size=config.batch_size,
        embed_concurrency=config.embed_concurrency,
        extract_concurrency=config.extract_concurrency,
        data_dir=config.data_dir,
        extensions=tuple(config.extensions),
        skip_dirs=tuple(config.skip_dirs),
        ttl_days=dict(config.ttl_days),
        blob_grace_seconds=config.blob_grace_seconds,
        sweep_on_start=config.sweep_on_start,
    )


def _apply_config_payload(config: Config, payload: Mapping[str, object]) -> None:
    if "api_key" in payload:
        config.api_key = _coerce_optional_str(payload["api_key"], "api_key")
    if "provider" in payload:
        config.provider = _normalize_provider(payload["provider"])
    if "model" in payload:
        config.model = _coerce_optional_str(payload["model"], "model")
    if "base_url" in payload:
        config.base_url = _coerce_optional_str(payload["base_url"], "base_url")
    if "batch_size" in payload:
        config.batch_size = _coerce_positive_int(
            payload["batch_size"], "batch_size", DEFAULT_BATCH_SIZE
        )
    if "embed_concurrency" in payload:
        config.embed_concurrency = _coerce_positive_int(
            payload["embed_concurrency"],
            "embed_concurrency",
            DEFAULT_EMBED_CONCURRENCY,
        )
    if "extract_concurrency" in payload:
        config.extract_concurrency = _coerce_positive_int(
            payload["extract_concurrency"],
            "extract_concurrency",
            DEFAULT_EXTRACT_CONCURRENCY,
        )
    if "data_dir" in payload:
        config.data_dir = _coerce_optional_str(payload["data_dir"], "data_dir")
    if "extensions" in payload:
        config.extensions = _coerce_extensions(payload["extensions"])
    if "skip_dirs" in payload:
        config.skip_dirs = _coerce_str_tuple(payload["skip_dirs"], "skip_dirs")
    if "ttl_days" in payload:
        config.ttl_days = _coerce_ttl_days(payload["ttl_days"])
    if "blob_grace_seconds" in payload:
        config.blob_grace_seconds = _coerce_non_negative_float(
            payload["blob_grace_seconds"],
            "blob_grace_seconds",
            DEFAULT_BLOB_GRACE_SECONDS,
        )
    if "sweep_on_start" in payload:
        config.sweep_on_start = _coerce_bool(payload["sweep_on_start"], "sweep_on_start")


def _normalize_provider(value: object) -> str:
    if value is None:
        return DEFAULT_PROVIDER
    if isinstance(value, str):
        normalized = value.strip().lower() or DEFAULT_PROVIDER
        if normalized in SUPPORTED_PROVIDERS:
            return normalized
        raise ValueError(
            Messages.ERROR_PROVIDER_INVALID.format(
                value=value, allowed=", ".join(SUPPORTED_PROVIDERS)
            )
        )
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="provider"))


def _coerce_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_int(value: object, field: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return default
        try:
            return int(cleaned)
        except ValueError as exc:
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_positive_int(value: object, field: str, default: int) -> int:
    number = _coerce_int(value, field, default)
    if number < 1:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    return number


def _coerce_non_negative_float(value: object, field: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field)) from exc
    if number < 0:
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    return number


def _coerce_bool(value: object, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in {"true", "1", "yes", "on"}:
            return True
        if cleaned in {"false", "0", "no", "off"}:
            return False
    raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))


def _coerce_str_tuple(value: object, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=field))
        cleaned = item.strip()
        if cleaned and cleaned not in items:
            items.append(cleaned)
    return tuple(items)


def _coerce_extensions(value: object) -> tuple[str, ...]:
    items = _coerce_str_tuple(value, "extensions")
    normalized = []
    for item in items:
        ext = item.lower()
        if not ext.startswith("."):
            ext = f".{ext}"
        if ext not in normalized:
            normalized.append(ext)
    return tuple(normalized) or DEFAULT_EXTENSIONS


def _coerce_ttl_days(value: object) -> dict[str, float]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field="ttl_days"))
    result: dict[str, float] = {}
    for key, days in value.items():
        if key not in TTL_KEYS:
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=f"ttl_days.{key}"))
        number = _coerce_non_negative_float(days, f"ttl_days.{key}", 0.0)
        if number <= 0:
            raise ValueError(Messages.ERROR_CONFIG_VALUE_INVALID.format(field=f"ttl_days.{key}"))
        result[str(key)] = number
    return result
