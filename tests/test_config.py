"""Tests for configuration loading."""

import json

import pytest

from evidoc.config import EvidocConfig, load_config, save_config
from evidoc.errors import ConfigurationError
from evidoc.service import build_service


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for name in list(os.environ):
        if name.startswith("EVIDOC_"):
            monkeypatch.delenv(name)


class TestLoadConfig:
    def test_defaults_when_file_missing(self, tmp_path):
        config = load_config(tmp_path / "missing.json")
        assert config.ai.provider == "none"
        assert config.pipeline.ocr_confidence_thresholds == {"application/pdf": 0.5}
        assert config.pipeline.max_text_length == 50000
        assert config.pipeline.stage_timeout_seconds == 60.0
        assert config.pipeline.max_retries == 0
        assert config.queue.workers == 5
        assert config.cache.ttl_seconds == 300

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "ai": {"provider": "anthropic", "_api_key": "sk-file"},
            "pipeline": {"max_retries": 2, "ocr_confidence_thresholds": {"application/pdf": 0.8}},
            "queue": {"workers": 3},
        }))

        config = load_config(path)

        assert config.ai.provider == "anthropic"
        assert config.ai.api_key == "sk-file"
        assert config.pipeline.max_retries == 2
        assert config.pipeline.ocr_confidence_thresholds == {"application/pdf": 0.8}
        assert config.queue.workers == 3

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"queue": {"workers": 3}}))
        monkeypatch.setenv("EVIDOC_WORKERS", "8")
        monkeypatch.setenv("EVIDOC_OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("EVIDOC_STAGE_TIMEOUT", "12.5")

        config = load_config(path)

        assert config.queue.workers == 8
        assert config.ai.provider == "openai"
        assert config.ai.api_key == "sk-env"
        assert config.pipeline.stage_timeout_seconds == 12.5

    def test_bad_numbers_are_configuration_errors(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EVIDOC_WORKERS", "many")
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.json")

    def test_unknown_backend(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EVIDOC_OCR_BACKEND", "google")
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.json")

    def test_invalid_json_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path).queue.workers == 5


class TestSaveConfig:
    def test_secrets_are_not_written(self, tmp_path):
        config = EvidocConfig()
        config.ai.provider = "anthropic"
        config.ai.api_key = "sk-secret"
        config.ocr.aws_secret_access_key = "aws-secret"
        path = tmp_path / "config.json"

        save_config(config, path)

        content = path.read_text()
        assert "sk-secret" not in content
        assert "aws-secret" not in content
        assert load_config(path).ai.provider == "anthropic"


class TestBuildService:
    def test_wires_components_from_config(self, tmp_path):
        config = EvidocConfig(data_dir=tmp_path / "data")
        config.storage.root = tmp_path / "files"
        config.queue.workers = 2

        components = build_service(config)

        assert (tmp_path / "data" / "evidoc.db").exists()
        assert components.service.queue.worker_count == 2
        assert components.processor.summarizer.provider is None
        assert components.storage.root == (tmp_path / "files").resolve()
