"""
Feature Flags для Chat Router.

Позволяет выключить слой каскада или fallback без деплоя.

Использование:
    from chat_router.feature_flags import flags

    if flags.llm_fallback:
        ...

    if flags.is_enabled("custom_flag"):
        ...
"""

import os
from typing import Dict, List, Set

from chat_router.settings import settings


class FeatureFlags:
    """
    Система feature flags.

    Особенности:
    - Загрузка из settings.yaml (секция feature_flags)
    - Override через environment variables (FF_<NAME>)
    - Runtime overrides для тестов
    - Типизированные property для основных флагов
    """

    DEFAULTS: Dict[str, bool] = {
        # Каскад
        "context_resolution": True,       # Слой 5: ответы по контексту диалога
        "clarification": True,            # Второй проход слоя 12: уточняющий вопрос

        # Генеративный fallback
        "llm_fallback": True,             # Передача в LLM после слоя 14
        "llm_streaming": True,            # Стриминговый режим fallback

        # Транспорт
        "off_hours_annotation": True,     # Пометка "нерабочее время" в ответе

        # Инфраструктура
        "structured_logging": True,       # События pipeline_routed / backend_failed
    }

    GROUPS: Dict[str, List[str]] = {
        "cascade": ["context_resolution", "clarification"],
        "llm": ["llm_fallback", "llm_streaming"],
        "safe": ["context_resolution", "clarification", "structured_logging"],
    }

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self._load_flags()

    def _load_flags(self) -> None:
        """Загрузить флаги из settings и environment"""
        self._flags = self.DEFAULTS.copy()

        settings_flags = settings.get_nested("feature_flags", {})
        if isinstance(settings_flags, dict):
            for key, value in settings_flags.items():
                if isinstance(value, bool):
                    self._flags[key] = value

        # Environment имеет высший приоритет
        for key in self._flags:
            env_value = os.environ.get(f"FF_{key.upper()}")
            if env_value is not None:
                self._flags[key] = env_value.lower() in ("true", "1", "yes", "on")

    def reload(self) -> None:
        """Перезагрузить флаги из settings"""
        self._overrides.clear()
        self._load_flags()

    def is_enabled(self, flag: str) -> bool:
        if flag in self._overrides:
            return self._overrides[flag]
        return self._flags.get(flag, False)

    def set_override(self, flag: str, value: bool) -> None:
        """
        Установить runtime override для флага.
        Используется для тестов и динамического управления.
        """
        self._overrides[flag] = value

    def clear_override(self, flag: str) -> None:
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        result = self._flags.copy()
        result.update(self._overrides)
        return result

    def get_enabled_flags(self) -> Set[str]:
        return {k for k, v in self.get_all_flags().items() if v}

    def is_group_enabled(self, group: str, require_all: bool = False) -> bool:
        flags_in_group = self.GROUPS.get(group, [])
        if not flags_in_group:
            return False
        if require_all:
            return all(self.is_enabled(f) for f in flags_in_group)
        return any(self.is_enabled(f) for f in flags_in_group)

    def enable_group(self, group: str) -> None:
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, True)

    def disable_group(self, group: str) -> None:
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, False)

    # =========================================================================
    # Типизированные property для основных флагов
    # =========================================================================

    @property
    def context_resolution(self) -> bool:
        """Включены ли ответы по контексту (слой 5)"""
        return self.is_enabled("context_resolution")

    @property
    def clarification(self) -> bool:
        """Включён ли уточняющий вопрос на слое 12"""
        return self.is_enabled("clarification")

    @property
    def llm_fallback(self) -> bool:
        """Включена ли передача в генеративный бэкенд"""
        return self.is_enabled("llm_fallback")

    @property
    def llm_streaming(self) -> bool:
        return self.is_enabled("llm_streaming")

    @property
    def off_hours_annotation(self) -> bool:
        return self.is_enabled("off_hours_annotation")

    @property
    def structured_logging(self) -> bool:
        return self.is_enabled("structured_logging")


# Singleton экземпляр
flags = FeatureFlags()
