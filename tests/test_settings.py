"""
Тесты для системы настроек.
"""

from pathlib import Path

import pytest

from chat_router.settings import DEFAULTS, DotDict, load_settings, validate_settings


class TestDotDict:
    """Тесты для DotDict"""

    def test_dot_access(self):
        d = DotDict({"a": 1, "b": {"c": 2}})
        assert d.a == 1
        assert d.b.c == 2

    def test_missing_key_raises(self):
        d = DotDict({"a": 1})
        with pytest.raises(AttributeError):
            _ = d.nonexistent

    def test_get_nested(self):
        d = DotDict({"a": {"b": {"c": 3}}})
        assert d.get_nested("a.b.c") == 3
        assert d.get_nested("a.b.x", "default") == "default"

    def test_set_attr(self):
        d = DotDict({})
        d.foo = "bar"
        assert d["foo"] == "bar"


class TestLoadSettings:
    """Тесты загрузки настроек"""

    def test_load_defaults_when_no_file(self):
        settings = load_settings(Path("/nonexistent/path.yaml"))
        assert settings.pipeline.intent_threshold == DEFAULTS["pipeline"]["intent_threshold"]
        assert settings.business.default_id == "dji13store"

    def test_deep_merge(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("pipeline:\n  intent_threshold: 3\n", encoding="utf-8")

        settings = load_settings(path)

        assert settings.pipeline.intent_threshold == 3
        assert settings.pipeline.context_window == DEFAULTS["pipeline"]["context_window"]

    def test_backends_list_replaced(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "fallback:\n"
            "  backends:\n"
            "    - {name: local, kind: openai, model: llama, base_url: 'http://localhost:8000/v1'}\n",
            encoding="utf-8",
        )

        settings = load_settings(path)

        assert [b["name"] for b in settings.fallback.backends] == ["local"]
        assert settings.fallback.history_limit == DEFAULTS["fallback"]["history_limit"]

    def test_bundled_settings_are_valid(self):
        assert validate_settings(load_settings()) == []


class TestValidateSettings:
    """Тесты валидации"""

    def _settings(self, **fallback):
        data = load_settings(Path("/nonexistent/path.yaml"))
        data["fallback"] = {**data["fallback"], **fallback}
        return DotDict(data)

    def test_bad_threshold(self):
        settings = load_settings(Path("/nonexistent/path.yaml"))
        settings["pipeline"] = {**settings["pipeline"], "intent_threshold": 0}
        errors = validate_settings(settings)
        assert any("intent_threshold" in e for e in errors)

    def test_unknown_backend_kind(self):
        errors = validate_settings(self._settings(backends=[{"name": "x", "kind": "bard", "model": "m"}]))
        assert any("kind" in e for e in errors)

    def test_duplicate_backend_names(self):
        backend = {"name": "x", "kind": "openai", "model": "m"}
        errors = validate_settings(self._settings(backends=[backend, dict(backend)]))
        assert any("дублируется" in e for e in errors)

    def test_missing_model_and_bad_timeout(self):
        errors = validate_settings(
            self._settings(backends=[{"name": "x", "kind": "openai", "model": "", "timeout": 0}])
        )
        assert len(errors) == 2
