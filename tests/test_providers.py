from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from providers import (
    DEFAULT_QUESTIONS,
    ConfigurationError,
    KeepaliveConfig,
    ProviderConfig,
    ProviderRegistry,
    RetryPolicy,
)


@pytest.fixture
def registry(tmp_path: Path) -> ProviderRegistry:
    return ProviderRegistry(tmp_path / "keepalive.toml")


def _provider(name: str, model: str = "m1") -> ProviderConfig:
    return ProviderConfig(
        index=-1,
        name=name,
        model=model,
        url=f"https://{name}.example.com/v1/chat/completions",
        api_key_env=f"{name.upper()}_API_KEY",
    )


def test_load_missing_file_returns_defaults(registry: ProviderRegistry) -> None:
    config = registry.load()
    assert config.list_providers() == []
    assert config.question_pool() == DEFAULT_QUESTIONS
    assert config.retry_policy() == RetryPolicy(max_retries=3, base_delay_ms=1000)
    assert config.history_limit == 50
    assert config.cache_ttl_s == pytest.approx(300.0)
    assert config.reschedule_s == pytest.approx(60.0)


def test_load_assigns_dense_indices_in_file_order(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        "\n".join(
            [
                "[keepalive]",
                'questions = ["ping", "pong"]',
                "max_retries = 1",
                "base_delay_ms = 250",
                "",
                "[[providers]]",
                'name = "zeta"',
                'model = "m1"',
                'url = "https://zeta.example.com"',
                'api_key = "secret"',
                "",
                "[[providers]]",
                'name = "alpha"',
                'model = "m2"',
                'url = "https://alpha.example.com"',
                "timeout_s = 12.5",
            ]
        ),
        encoding="utf-8",
    )
    config = registry.load()
    assert [(provider.index, provider.name) for provider in config.providers] == [
        (0, "zeta"),
        (1, "alpha"),
    ]
    assert config.question_pool() == ("ping", "pong")
    assert config.retry_policy().backoff_schedule() == [0.25]
    assert config.providers[0].credential() == "secret"
    assert config.providers[1].timeout_s == pytest.approx(12.5)


def test_save_appends_and_replaces_by_name(registry: ProviderRegistry) -> None:
    first = registry.save_provider(_provider("openai"))
    second = registry.save_provider(_provider("anthropic"))
    replaced = registry.save_provider(_provider("openai", model="m2"))

    assert (first.index, second.index, replaced.index) == (0, 1, 0)
    providers = registry.list_providers()
    assert [provider.name for provider in providers] == ["openai", "anthropic"]
    assert providers[0].model == "m2"
    assert providers[1].api_key_env == "ANTHROPIC_API_KEY"


def test_save_preserves_settings(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        '[keepalive]\nquestions = ["only"]\nhistory_limit = 7\n', encoding="utf-8"
    )
    registry.save_provider(_provider("openai"))
    config = registry.load()
    assert config.question_pool() == ("only",)
    assert config.history_limit == 7
    assert len(config.providers) == 1


def test_remove_provider_reindexes_remaining(registry: ProviderRegistry) -> None:
    registry.save_provider(_provider("a"))
    registry.save_provider(_provider("b"))
    registry.save_provider(_provider("c"))
    registry.remove_provider("a")
    assert [(provider.index, provider.name) for provider in registry.list_providers()] == [
        (0, "b"),
        (1, "c"),
    ]


def test_remove_provider_raises_when_missing(registry: ProviderRegistry) -> None:
    with pytest.raises(KeyError):
        registry.remove_provider("missing")


def test_get_provider(registry: ProviderRegistry) -> None:
    registry.save_provider(_provider("openrouter"))
    assert registry.get_provider("openrouter").url == "https://openrouter.example.com/v1/chat/completions"
    with pytest.raises(KeyError):
        registry.get_provider("missing")


def test_load_raises_when_provider_url_missing(registry: ProviderRegistry) -> None:
    registry.config_path.write_text(
        '[[providers]]\nname = "bad"\nmodel = "m"\n', encoding="utf-8"
    )
    with pytest.raises(ConfigurationError, match="url"):
        registry.load()


def test_load_raises_on_empty_question_pool(registry: ProviderRegistry) -> None:
    registry.config_path.write_text("[keepalive]\nquestions = []\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Question pool"):
        registry.load()


def test_load_raises_on_invalid_toml(registry: ProviderRegistry) -> None:
    registry.config_path.write_text("[keepalive\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        registry.load()


def test_load_raises_on_non_numeric_setting(registry: ProviderRegistry) -> None:
    registry.config_path.write_text('[keepalive]\nmax_retries = "lots"\n', encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Invalid keepalive setting"):
        registry.load()


def test_config_rejects_non_dense_indices() -> None:
    provider = ProviderConfig(index=3, name="x", model="m", url="https://x.example.com")
    with pytest.raises(ConfigurationError):
        KeepaliveConfig(providers=(provider,))


def test_retry_policy_rejects_negative_values() -> None:
    with pytest.raises(ConfigurationError):
        RetryPolicy(max_retries=-1)


def test_backoff_schedule_doubles() -> None:
    policy = RetryPolicy(max_retries=3, base_delay_ms=1000)
    assert policy.max_attempts == 4
    assert policy.backoff_schedule() == [1.0, 2.0, 4.0]


def test_credential_resolution(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KEEPALIVE_TEST_KEY", "from-env")
    monkeypatch.delenv("KEEPALIVE_MISSING_KEY", raising=False)

    from_env = ProviderConfig(
        index=0, name="a", model="m", url="https://a.example.com", api_key_env="KEEPALIVE_TEST_KEY"
    )
    literal = ProviderConfig(index=0, name="b", model="m", url="https://b.example.com", api_key="lit")
    missing = ProviderConfig(
        index=0, name="c", model="m", url="https://c.example.com", api_key_env="KEEPALIVE_MISSING_KEY"
    )
    assert from_env.credential() == "from-env"
    assert literal.credential() == "lit"
    with pytest.raises(ConfigurationError, match="KEEPALIVE_MISSING_KEY"):
        missing.credential()


def test_from_dict_normalizes_optional_string_fields() -> None:
    provider = ProviderConfig.from_dict(
        0,
        {
            "name": "openai",
            "model": "gpt-4o-mini",
            "url": "https://api.openai.com/v1/chat/completions",
            "api_key": None,
            "api_key_env": "   ",
        },
    )
    assert provider.api_key is None
    assert provider.api_key_env is None
