"""
Загрузчик настроек из settings.yaml

Использование:
    from chat_router.settings import settings

    threshold = settings.pipeline.intent_threshold
    backends = settings.fallback.backends
"""

import copy
import yaml
from pathlib import Path
from typing import List, Any


# Путь к файлу настроек
SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Значения по умолчанию (используются если параметр не указан в YAML)
DEFAULTS = {
    "pipeline": {
        "intent_threshold": 2,
        "context_window": 8,
        "follow_up_max_length": 40,
        "request_budget_seconds": 55.0,
    },
    "fallback": {
        "history_limit": 10,
        "max_tokens": 1024,
        "temperature": 0.7,
        "backends": [
            {
                "name": "claude",
                "kind": "anthropic",
                "model": "claude-sonnet-4-20250514",
                "base_url": "https://api.anthropic.com/v1",
                "api_key_env": "ANTHROPIC_API_KEY",
                "timeout": 30,
            },
            {
                "name": "openai",
                "kind": "openai",
                "model": "gpt-4o-mini",
                "base_url": "https://api.openai.com/v1",
                "api_key_env": "OPENAI_API_KEY",
                "timeout": 30,
            },
        ],
    },
    "business": {
        "directory": "businesses",
        "default_id": "dji13store",
    },
    "logging": {
        "level": "INFO",
    },
    "api": {
        "api_key_env": "API_KEY",
    },
}

BACKEND_KINDS = ("openai", "anthropic")


class DotDict(dict):
    """Словарь с доступом через точку: d.key вместо d['key']"""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            if isinstance(value, dict):
                return DotDict(value)
            return value
        except KeyError:
            raise AttributeError(f"Настройка '{key}' не найдена")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Получить значение по пути: 'pipeline.intent_threshold'"""
        keys = path.split('.')
        value = self
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _deep_merge(base: dict, override: dict) -> dict:
    """Глубокое слияние словарей (override перезаписывает base)"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(filepath: Path = None) -> DotDict:
    """
    Загрузить настройки из YAML файла.

    Порядок приоритета:
    1. Значения из YAML файла (высший приоритет)
    2. Значения по умолчанию (DEFAULTS)

    Списки (например fallback.backends) заменяются целиком, не мержатся.

    Args:
        filepath: Путь к файлу настроек (по умолчанию settings.yaml)

    Returns:
        DotDict с настройками
    """
    filepath = Path(filepath) if filepath else SETTINGS_FILE

    config = copy.deepcopy(DEFAULTS)

    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        config = _deep_merge(config, yaml_config)
    else:
        print(f"[settings] Файл настроек не найден: {filepath}")
        print("[settings] Используются значения по умолчанию")

    return DotDict(config)


def validate_settings(settings: DotDict) -> List[str]:
    """
    Валидация настроек.

    Returns:
        Список ошибок (пустой если всё OK)
    """
    errors = []

    # Pipeline
    if settings.pipeline.intent_threshold <= 0:
        errors.append("pipeline.intent_threshold должен быть > 0")
    if settings.pipeline.context_window < 1:
        errors.append("pipeline.context_window должен быть >= 1")
    if settings.pipeline.request_budget_seconds <= 0:
        errors.append("pipeline.request_budget_seconds должен быть > 0")

    # Fallback backends
    if settings.fallback.history_limit < 0:
        errors.append("fallback.history_limit должен быть >= 0")
    seen = set()
    for index, backend in enumerate(settings.fallback.backends or []):
        name = backend.get("name")
        if not name:
            errors.append(f"fallback.backends[{index}].name не указан")
        elif name in seen:
            errors.append(f"fallback.backends[{index}].name '{name}' дублируется")
        seen.add(name)
        if backend.get("kind") not in BACKEND_KINDS:
            errors.append(
                f"fallback.backends[{index}].kind должен быть одним из {BACKEND_KINDS}"
            )
        if not backend.get("model"):
            errors.append(f"fallback.backends[{index}].model не указан")
        if backend.get("timeout", 1) <= 0:
            errors.append(f"fallback.backends[{index}].timeout должен быть > 0")

    # Business
    if not settings.business.default_id:
        errors.append("business.default_id не указан")

    return errors


# Глобальный экземпляр настроек (ленивая загрузка)
_settings = None


def get_settings() -> DotDict:
    """Получить глобальные настройки (singleton)"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        errors = validate_settings(_settings)
        if errors:
            print("[settings] Ошибки в настройках:")
            for err in errors:
                print(f"  - {err}")
    return _settings


def reload_settings() -> DotDict:
    """Перезагрузить настройки из файла"""
    global _settings
    _settings = None
    return get_settings()


# Для удобного импорта: from chat_router.settings import settings
settings = get_settings()


# =============================================================================
# CLI для проверки настроек
# =============================================================================

if __name__ == "__main__":
    import json

    print("=" * 60)
    print("ТЕКУЩИЕ НАСТРОЙКИ")
    print("=" * 60)

    s = load_settings()

    errors = validate_settings(s)
    if errors:
        print("\n[!] ОШИБКИ:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("\n[+] Все настройки валидны")

    print("\n" + "-" * 60)
    print(json.dumps(dict(s), indent=2, ensure_ascii=False))
