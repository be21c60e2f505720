import os

import pytest

from provisioning.config import ENV_PREFIX, Settings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)


def write_config(tmp_path, text: str):
    cfg = tmp_path / "config.yml"
    cfg.write_text(text, encoding="utf-8")
    return str(cfg)


def test_defaults_without_sources():
    loaded = load_settings(None, {"page_size": None})

    assert loaded.settings == Settings()
    assert loaded.sources_used == []


def test_priority_cli_over_env_over_config(tmp_path, monkeypatch):
    cfg = write_config(
        tmp_path,
        "\n".join(
            [
                "page_size: 10",
                "worker_pool_size: 3",
                "propagation_timeout_seconds: 7.5",
                "log_level: debug",
            ]
        ),
    )
    monkeypatch.setenv("PROV_PAGE_SIZE", "20")
    monkeypatch.setenv("PROV_WORKER_POOL_SIZE", "5")

    loaded = load_settings(cfg, {"page_size": 30, "worker_pool_size": None})

    assert loaded.settings.page_size == 30
    assert loaded.settings.worker_pool_size == 5
    assert loaded.settings.propagation_timeout_seconds == 7.5
    assert loaded.settings.log_level == "DEBUG"
    assert loaded.sources_used == ["config", "env", "cli"]


def test_blank_env_value_is_ignored(tmp_path, monkeypatch):
    cfg = write_config(tmp_path, "connector_retries: 4\n")
    monkeypatch.setenv("PROV_CONNECTOR_RETRIES", "  ")

    loaded = load_settings(cfg, {})

    assert loaded.settings.connector_retries == 4
    assert loaded.sources_used == ["config"]


def test_missing_or_non_mapping_config_falls_back_to_defaults(tmp_path):
    assert load_settings(str(tmp_path / "absent.yml"), {}).settings == Settings()
    cfg = write_config(tmp_path, "- just\n- a list\n")
    assert load_settings(cfg, {}).sources_used == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"page_size": 0},
        {"worker_pool_size": -1},
        {"connector_retries": -1},
        {"propagation_timeout_seconds": -0.5},
        {"log_level": "LOUD"},
        {"unknown_setting": 1},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValueError):
        load_settings(None, overrides)


def test_invalid_env_value_is_rejected(monkeypatch):
    monkeypatch.setenv("PROV_PROPAGATION_POOL_SIZE", "many")

    with pytest.raises(ValueError, match="propagation_pool_size"):
        load_settings(None, {})
