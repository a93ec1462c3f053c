import json
import logging

from reveal_chat.constants import SELECTED_MODEL_KEY
from reveal_chat.errors import ValidationError
from reveal_chat.models import AppConfig
from reveal_chat.repositories.config_repository import ConfigRepository
from reveal_chat.repositories.kv_repository import KeyValueRepository
from reveal_chat.services.model_selection import ModelSelectionService


def _repo(tmp_path) -> ConfigRepository:
    return ConfigRepository(
        tmp_path / "chat_config.json", tmp_path / ".local_chat" / "ai_config.json"
    )


def test_load_config_defaults_when_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    config = _repo(tmp_path).load_config()

    assert config.default_model == "gpt-3.5-turbo"
    assert config.store == "file"
    assert config.orchestrator.max_attempts == 3
    assert config.persistence.poll_attempts == 10
    assert set(config.providers) == {"openai", "gemini"}
    assert config.providers["openai"].api_key == ""


def test_load_config_merges_provider_file(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    (tmp_path / "chat_config.json").write_text(
        json.dumps({"default_model": "gpt-4o", "orchestrator": {"max_attempts": 5}}),
        encoding="utf-8",
    )
    ai_dir = tmp_path / ".local_chat"
    ai_dir.mkdir()
    (ai_dir / "ai_config.json").write_text(
        json.dumps({"providers": {"gemini": {"api_key": "g", "streaming": True}}}),
        encoding="utf-8",
    )

    config = _repo(tmp_path).load_config()

    assert config.default_model == "gpt-4o"
    assert config.orchestrator.max_attempts == 5
    assert config.providers["gemini"].api_key == "g"
    assert config.providers["gemini"].streaming is True
    assert "openai" in config.providers


def test_environment_overrides_api_keys(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", " sk-env ")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    config = _repo(tmp_path).load_config()

    assert config.providers["openai"].api_key == "sk-env"


def test_invalid_config_logs_warning(tmp_path, caplog):
    (tmp_path / "chat_config.json").write_text("{bad-json", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        config = _repo(tmp_path).load_config()

    assert config.default_model == "gpt-3.5-turbo"
    assert "Failed to load config" in caplog.text


def test_schema_errors_fall_back_to_defaults(tmp_path, caplog):
    (tmp_path / "chat_config.json").write_text(
        json.dumps({"orchestrator": {"max_attempts": "many"}}), encoding="utf-8"
    )

    with caplog.at_level(logging.WARNING):
        config = _repo(tmp_path).load_config()

    assert config.orchestrator.max_attempts == 3
    assert "Invalid config" in caplog.text


def test_save_config_excludes_provider_secrets(tmp_path):
    repo = _repo(tmp_path)
    config = AppConfig(default_model="gpt-4o")
    config.providers["openai"].api_key = "sk-secret"

    repo.save_config(config)
    repo.save_ai_config(config)

    saved = json.loads((tmp_path / "chat_config.json").read_text(encoding="utf-8"))
    assert saved["default_model"] == "gpt-4o"
    assert "providers" not in saved
    ai_saved = json.loads(
        (tmp_path / ".local_chat" / "ai_config.json").read_text(encoding="utf-8")
    )
    assert ai_saved["providers"]["openai"]["api_key"] == "sk-secret"


def test_key_value_repository_round_trip(tmp_path):
    kv = KeyValueRepository(tmp_path / "nested" / "kv.json")

    assert kv.get_item("missing") is None
    assert kv.set_item("last_room", "room-1") is True
    assert kv.get_item("last_room") == "room-1"
    assert kv.remove_item("last_room") is True
    assert kv.remove_item("last_room") is True
    assert kv.get_item("last_room") is None


def test_key_value_repository_ignores_corrupt_file(tmp_path, caplog):
    path = tmp_path / "kv.json"
    path.write_text("not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        assert KeyValueRepository(path).get_item("anything") is None
    assert "Failed to load key-value store" in caplog.text


def test_model_selection_remembers_choice(tmp_path):
    kv = KeyValueRepository(tmp_path / "kv.json")
    selection = ModelSelectionService(kv, default_model="gpt-3.5-turbo")
    seen: list[tuple[str, str]] = []
    selection.subscribe("room-1", lambda key, value: seen.append((key, value)))

    assert selection.model_for("room-1") == "gpt-3.5-turbo"
    assert selection.select("room-1", " gpt-4o ") == "gpt-4o"
    assert selection.model_for("room-1") == "gpt-4o"
    assert seen == [("room-1", "gpt-4o")]
    assert kv.get_item(SELECTED_MODEL_KEY) == "gpt-4o"

    fresh = ModelSelectionService(kv, default_model="gpt-3.5-turbo")
    assert fresh.model_for("other-room") == "gpt-4o"


def test_model_selection_rejects_unknown_models(tmp_path, caplog):
    kv = KeyValueRepository(tmp_path / "kv.json")
    selection = ModelSelectionService(kv)

    try:
        selection.select("room-1", "llama-3")
        raise AssertionError("Expected ValidationError")
    except ValidationError as exc:
        assert "Unsupported model" in exc.reason

    kv.set_item(SELECTED_MODEL_KEY, "not-a-model")
    with caplog.at_level(logging.WARNING):
        assert ModelSelectionService(kv).model_for("room-2") == "gpt-3.5-turbo"
    assert "Ignoring unsupported saved model" in caplog.text
