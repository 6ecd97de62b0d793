from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
from pathlib import Path
import tomllib


logger = logging.getLogger(__name__)

DEFAULT_QUESTIONS = ("Hi", "How are you", "Ok")
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_CACHE_TTL_S = 300.0
DEFAULT_RESCHEDULE_S = 60.0


class ConfigurationError(ValueError):
    pass


def _escape_toml_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{_escape_toml_string(value)}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, list | tuple):
        return "[" + ", ".join(_format_toml_value(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _format_toml_kv(key: str, value: object) -> str:
    return f"{key} = {_format_toml_value(value)}"


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    index: int
    name: str
    model: str
    url: str
    api_key: str | None = None
    api_key_env: str | None = None
    timeout_s: float | None = None

    def credential(self) -> str:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            value = os.getenv(self.api_key_env)
            if value:
                return value
            raise ConfigurationError(
                f"Missing API key from environment variable {self.api_key_env!r}"
            )
        raise ConfigurationError(f"Provider {self.name!r} has no credential configured")

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "name": self.name,
            "model": self.model,
            "url": self.url,
        }
        if self.api_key:
            data["api_key"] = self.api_key
        if self.api_key_env:
            data["api_key_env"] = self.api_key_env
        if self.timeout_s is not None:
            data["timeout_s"] = self.timeout_s
        return data

    @classmethod
    def from_dict(cls, index: int, data: dict[str, object]) -> "ProviderConfig":
        name = _coerce_optional_string(data.get("name"))
        if name is None:
            raise ConfigurationError(f"Provider #{index} missing required field 'name'")
        model = _coerce_optional_string(data.get("model"))
        if model is None:
            raise ConfigurationError(f"Provider {name!r} missing required field 'model'")
        url = _coerce_optional_string(data.get("url"))
        if url is None:
            raise ConfigurationError(f"Provider {name!r} missing required field 'url'")

        return cls(
            index=index,
            name=name,
            model=model,
            url=url,
            api_key=_coerce_optional_string(data.get("api_key")),
            api_key_env=_coerce_optional_string(data.get("api_key_env")),
            timeout_s=(
                float(data["timeout_s"])
                if "timeout_s" in data and data["timeout_s"] is not None
                else None
            ),
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ConfigurationError("base_delay_ms must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_delay_s(self, retry_number: int) -> float:
        # retry_number is 0 for the first retry.
        return self.base_delay_ms * (2**retry_number) / 1000.0

    def backoff_schedule(self) -> list[float]:
        return [self.backoff_delay_s(retry_number) for retry_number in range(self.max_retries)]


@dataclass(frozen=True, slots=True)
class KeepaliveConfig:
    providers: tuple[ProviderConfig, ...] = ()
    questions: tuple[str, ...] = DEFAULT_QUESTIONS
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    history_limit: int = DEFAULT_HISTORY_LIMIT
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S
    reschedule_s: float = DEFAULT_RESCHEDULE_S

    def __post_init__(self) -> None:
        if not self.questions:
            raise ConfigurationError("Question pool must not be empty")
        if self.history_limit < 1:
            raise ConfigurationError("history_limit must be >= 1")
        for position, provider in enumerate(self.providers):
            if provider.index != position:
                raise ConfigurationError(
                    f"Provider {provider.name!r} has index {provider.index}, expected {position}"
                )

    def list_providers(self) -> list[ProviderConfig]:
        return list(self.providers)

    def question_pool(self) -> tuple[str, ...]:
        return self.questions

    def retry_policy(self) -> RetryPolicy:
        return self.retry

    def settings_dict(self) -> dict[str, object]:
        return {
            "questions": list(self.questions),
            "max_retries": self.retry.max_retries,
            "base_delay_ms": self.retry.base_delay_ms,
            "history_limit": self.history_limit,
            "cache_ttl_s": self.cache_ttl_s,
            "reschedule_s": self.reschedule_s,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> "KeepaliveConfig":
        settings = raw.get("keepalive", {})
        if not isinstance(settings, dict):
            raise ConfigurationError("Top-level 'keepalive' must be a table")
        providers_raw = raw.get("providers", [])
        if not isinstance(providers_raw, list):
            raise ConfigurationError("Top-level 'providers' must be an array of tables")

        providers: list[ProviderConfig] = []
        for index, data in enumerate(providers_raw):
            if not isinstance(data, dict):
                raise ConfigurationError(f"Provider #{index} entry must be a table")
            providers.append(ProviderConfig.from_dict(index, data))

        questions_raw = settings.get("questions", list(DEFAULT_QUESTIONS))
        if not isinstance(questions_raw, list):
            raise ConfigurationError("'questions' must be an array of strings")
        questions = tuple(str(question) for question in questions_raw if str(question).strip())

        try:
            return cls(
                providers=tuple(providers),
                questions=questions,
                retry=RetryPolicy(
                    max_retries=int(settings.get("max_retries", DEFAULT_MAX_RETRIES)),
                    base_delay_ms=int(settings.get("base_delay_ms", DEFAULT_BASE_DELAY_MS)),
                ),
                history_limit=int(settings.get("history_limit", DEFAULT_HISTORY_LIMIT)),
                cache_ttl_s=float(settings.get("cache_ttl_s", DEFAULT_CACHE_TTL_S)),
                reschedule_s=float(settings.get("reschedule_s", DEFAULT_RESCHEDULE_S)),
            )
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid keepalive setting: {exc}") from exc


class ProviderRegistry:
    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path

    def load(self) -> KeepaliveConfig:
        config = KeepaliveConfig.from_dict(self._read_raw())
        logger.debug("Loaded %d provider(s) from %s", len(config.providers), self.config_path)
        return config

    def list_providers(self) -> list[ProviderConfig]:
        return self.load().list_providers()

    def get_provider(self, name: str) -> ProviderConfig:
        for provider in self.list_providers():
            if provider.name == name:
                return provider
        raise KeyError(name)

    def save_provider(self, provider: ProviderConfig) -> ProviderConfig:
        if not provider.name.strip():
            raise ConfigurationError("Provider name cannot be empty")

        config = self.load()
        providers = list(config.providers)
        for position, existing in enumerate(providers):
            if existing.name == provider.name:
                saved = replace(provider, index=position)
                providers[position] = saved
                break
        else:
            saved = replace(provider, index=len(providers))
            providers.append(saved)

        self._write(replace(config, providers=tuple(providers)))
        logger.debug("Saved provider %r at index %d to %s", saved.name, saved.index, self.config_path)
        return saved

    def remove_provider(self, name: str) -> None:
        config = self.load()
        remaining = [provider for provider in config.providers if provider.name != name]
        if len(remaining) == len(config.providers):
            raise KeyError(name)
        # Indices are reassigned on the next load; a running engine keeps its snapshot.
        reindexed = tuple(replace(provider, index=position) for position, provider in enumerate(remaining))
        self._write(replace(config, providers=reindexed))
        logger.debug("Removed provider %r from %s", name, self.config_path)

    def _read_raw(self) -> dict[str, object]:
        if not self.config_path.exists():
            return {"providers": []}

        with self.config_path.open("rb") as handle:
            try:
                parsed = tomllib.load(handle)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigurationError(f"Invalid config file {self.config_path}: {exc}") from exc
        parsed.setdefault("providers", [])
        return parsed

    def _write(self, config: KeepaliveConfig) -> None:
        lines: list[str] = ["[keepalive]"]
        settings = config.settings_dict()
        for key in sorted(settings):
            lines.append(_format_toml_kv(key, settings[key]))
        lines.append("")

        for provider in config.providers:
            lines.append("[[providers]]")
            provider_data = provider.to_dict()
            for key in ("name", "model", "url", "api_key", "api_key_env", "timeout_s"):
                if key in provider_data:
                    lines.append(_format_toml_kv(key, provider_data[key]))
            lines.append("")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines).strip()
        self.config_path.write_text(content + "\n", encoding="utf-8")
