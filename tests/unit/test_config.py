import json

import pytest

from repocache import config as config_module


def _prepare_config(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_file = config_dir / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)
    return config_file


def test_load_config_defaults(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)

    cfg = config_module.load_config()

    assert cfg.provider == config_module.DEFAULT_PROVIDER
    assert cfg.batch_size == 10
    assert cfg.extensions == (".java",)
    assert cfg.sweep_on_start is True
    assert cfg.blob_grace_seconds == config_module.DEFAULT_BLOB_GRACE_SECONDS


def test_set_provider_and_base_url(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)

    config_module.set_provider("Gemini")
    config_module.set_base_url("https://proxy.example.com")

    stored = json.loads(config_file.read_text())
    assert stored["provider"] == "gemini"
    assert stored["base_url"] == "https://proxy.example.com"

    config_module.set_base_url(None)
    assert config_module.load_config().base_url is None


def test_set_provider_rejects_unknown(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)

    with pytest.raises(ValueError):
        config_module.set_provider("chroma")


def test_save_and_load_round_trip(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)
    cfg = config_module.Config(
        api_key="secret",
        batch_size=25,
        extensions=(".java", ".kt"),
        skip_dirs=("generated",),
        ttl_days={"metadata": 2.0},
        sweep_on_start=False,
    )

    config_module.save_config(cfg)
    loaded = config_module.load_config()

    assert loaded.api_key == "secret"
    assert loaded.batch_size == 25
    assert loaded.extensions == (".java", ".kt")
    assert loaded.skip_dirs == ("generated",)
    assert loaded.ttl_days == {"metadata": 2.0}
    assert loaded.sweep_on_start is False


def test_config_from_json_validates_values():
    cfg = config_module.config_from_json(
        '{"extensions": ["JAVA", "kt"], "blob_grace_seconds": "60", "sweep_on_start": "no"}'
    )

    assert cfg.extensions == (".java", ".kt")
    assert cfg.blob_grace_seconds == 60.0
    assert cfg.sweep_on_start is False

    with pytest.raises(ValueError):
        config_module.config_from_json({"batch_size": 0})
    with pytest.raises(ValueError):
        config_module.config_from_json({"ttl_days": {"forever": 1}})
    with pytest.raises(ValueError):
        config_module.config_from_json("[1, 2]")


def test_update_config_from_json_persists(tmp_path, monkeypatch):
    config_file = _prepare_config(tmp_path, monkeypatch)
    config_module.set_model("voyage-code-3")

    config_module.update_config_from_json({"batch_size": 4})

    stored = json.loads(config_file.read_text())
    assert stored["model"] == "voyage-code-3"
    assert stored["batch_size"] == 4


def test_config_dir_context_overrides_location(tmp_path, monkeypatch):
    _prepare_config(tmp_path, monkeypatch)
    override = tmp_path / "override"

    with config_module.config_dir_context(override):
        config_module.set_batch_size(7)
        assert config_module.load_config().batch_size == 7

    assert (override / "config.json").exists()
    assert config_module.load_config().batch_size == 10


def test_resolve_default_model_per_provider():
    assert config_module.resolve_default_model("voyage", None) == "voyage-code-2"
    assert config_module.resolve_default_model("openai", "") == "text-embedding-3-small"
    assert config_module.resolve_default_model("gemini", None) == "gemini-embedding-001"
    assert config_module.resolve_default_model("local", None) == config_module.DEFAULT_LOCAL_MODEL
    assert config_module.resolve_default_model("voyage", " custom ") == "custom"


def test_resolve_api_key_prefers_config_then_env(monkeypatch):
    monkeypatch.delenv(config_module.ENV_API_KEY, raising=False)
    monkeypatch.setenv(config_module.VOYAGE_ENV, "voyage-env")

    assert config_module.resolve_api_key("configured", "voyage") == "configured"
    assert config_module.resolve_api_key(None, "voyage") == "voyage-env"

    monkeypatch.setenv(config_module.ENV_API_KEY, "general")
    assert config_module.resolve_api_key(None, "voyage") == "general"
    assert config_module.resolve_api_key("configured", "local") is None


def test_resolve_data_dir(tmp_path):
    assert config_module.resolve_data_dir(config_module.Config()) is None
    cfg = config_module.Config(data_dir=str(tmp_path / "data"))
    assert config_module.resolve_data_dir(cfg) == (tmp_path / "data").resolve()
