"""Tests for AssistantConfig defaults and persistence."""

import json

import pytest
from pydantic import ValidationError

from config import AssistantConfig


def test_defaults():
    config = AssistantConfig()

    assert config.timing.wake_transition_ms == 400
    assert config.timing.inactivity_timeout_ms == 1600
    assert config.timing.passive_restart_ms == 350
    assert config.timing.active_restart_ms == 300
    assert config.hotword.variants == ["stella", "estela", "tela", "stelar", "stel"]
    assert config.recognizer.language == "pt-BR"
    assert config.synthesis.voice_id == "mPDAoQyGzxBSkE0OAOKw"
    assert config.synthesis.speed == 1.15
    assert config.transport.process_path == "/speech/process"
    assert config.transport.channel == "private-agent-123"
    assert config.transport.event == "server-speech-output"


def test_merge_patch_is_nested_and_non_destructive():
    config = AssistantConfig()

    patched = config.merge_patch({"timing": {"inactivity_timeout_ms": 2000}})

    assert patched.timing.inactivity_timeout_ms == 2000
    assert patched.timing.wake_transition_ms == 400
    assert config.timing.inactivity_timeout_ms == 1600


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        AssistantConfig().merge_patch({"synthesis": {"speed": 3.0}})


def test_load_missing_file_returns_defaults(tmp_path):
    config = AssistantConfig.load(tmp_path / "absent.json")
    assert config == AssistantConfig()


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    assert AssistantConfig.load(path) == AssistantConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "stella.json"
    AssistantConfig().merge_patch({"transport": {"user_id": "user456"}}).save(path)

    assert json.loads(path.read_text(encoding="utf-8"))["transport"]["user_id"] == "user456"
    assert AssistantConfig.load(path).transport.user_id == "user456"


def test_inactivity_must_outlast_active_restart():
    with pytest.raises(ValidationError, match="active_restart_ms"):
        AssistantConfig().merge_patch({"timing": {"inactivity_timeout_ms": 250}})

    patched = AssistantConfig().merge_patch({"timing": {"inactivity_timeout_ms": 250, "active_restart_ms": 100}})
    assert patched.timing.inactivity_timeout_ms == 250


@pytest.mark.parametrize(
    "patch, message",
    [
        ({"timings": {"inactivity_timeout_ms": 2000}}, "unknown config key: timings"),
        ({"timing": {"inactivity_ms": 2000}}, "unknown config key: timing.inactivity_ms"),
        ({"transport": "private-agent-123"}, "config section transport must be an object"),
    ],
)
def test_merge_patch_rejects_unknown_shapes(patch, message):
    with pytest.raises(ValueError, match=message):
        AssistantConfig().merge_patch(patch)


def test_merge_patch_requires_object():
    with pytest.raises(ValueError):
        AssistantConfig().merge_patch(["timing"])


def test_load_out_of_range_values_returns_defaults(tmp_path):
    path = tmp_path / "stella.json"
    path.write_text(json.dumps({"synthesis": {"speed": 9}}), encoding="utf-8")

    assert AssistantConfig.load(path) == AssistantConfig()


def test_save_replaces_existing_file(tmp_path):
    path = tmp_path / "stella.json"
    path.write_text("stale", encoding="utf-8")

    AssistantConfig().save(path)

    assert AssistantConfig.load(path) == AssistantConfig()
    assert [p.name for p in tmp_path.iterdir()] == ["stella.json"]
