"""
Генеративные бэкенды для fallback слоя 14.

Два протокола:
- openai:    POST /chat/completions (Bearer), stream = SSE с choices[0].delta.content и [DONE]
- anthropic: POST /messages (x-api-key), stream = content_block_delta/text_delta и message_stop

Буферизованный вызов идёт через requests, потоковый через httpx.AsyncClient.
Ошибки транспорта и протокола поднимаются как BackendError; решение о
замене бэкенда или откате принимает FallbackDispatcher.
"""

import json
import os
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import requests

from chat_router.logger import logger
from chat_router.models import ChatMessage, MessageRole
from chat_router.settings import settings


ANTHROPIC_VERSION = "2023-06-01"


class BackendError(Exception):
    """Ошибка генеративного бэкенда (сеть, HTTP статус, пустой ответ)."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        self.message = message
        super().__init__(f"{backend}: {message}")


@dataclass
class BackendConfig:
    """Параметры одного бэкенда из settings.fallback.backends"""
    name: str
    kind: str
    model: str
    base_url: str
    api_key_env: str = ""
    timeout: float = 30
    api_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackendConfig":
        return cls(
            name=data["name"],
            kind=data["kind"],
            model=data["model"],
            base_url=data.get("base_url", ""),
            api_key_env=data.get("api_key_env", ""),
            timeout=data.get("timeout", 30),
            api_key=data.get("api_key"),
        )

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None


@dataclass
class BackendStats:
    """Статистика бэкенда"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return (self.successful_requests / self.total_requests) * 100

    @property
    def average_response_time_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_requests


@dataclass
class StreamChunk:
    """Разобранная строка SSE: текстовая дельта или конец потока"""
    text: str = ""
    done: bool = False


# =============================================================================
# Base
# =============================================================================

class GenerativeBackend:
    """
    Базовый класс бэкенда.

    Подклассы задают путь, заголовки, тело запроса и разбор ответа.

    Args:
        config: Параметры бэкенда
        max_tokens: Лимит токенов ответа
        temperature: Температура генерации
        transport: httpx transport (для тестов: httpx.MockTransport)
    """

    kind = ""
    path = ""

    def __init__(
        self,
        config: BackendConfig,
        max_tokens: int = None,
        temperature: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.max_tokens = max_tokens if max_tokens is not None else settings.fallback.max_tokens
        self.temperature = temperature if temperature is not None else settings.fallback.temperature
        self._transport = transport
        self._stats = BackendStats()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def timeout(self) -> float:
        return float(self.config.timeout)

    @property
    def stats(self) -> BackendStats:
        return self._stats

    def is_configured(self) -> bool:
        """Бэкенд участвует в fallback только при наличии API-ключа"""
        return bool(self.config.resolve_api_key())

    @property
    def url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}{self.path}"

    # Переопределяется в подклассах -------------------------------------------

    def headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def build_body(self, system_prompt: str, messages: Sequence[ChatMessage], stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_text(self, data: Dict[str, Any]) -> str:
        """Текст из JSON-ответа. BackendError, если поля не тех типов."""
        raise NotImplementedError

    def parse_chunk(self, line: str) -> Optional[StreamChunk]:
        """Разобрать строку SSE. None = строка не несёт данных или повреждена."""
        raise NotImplementedError

    # -------------------------------------------------------------------------

    def generate(self, system_prompt: str, messages: Sequence[ChatMessage], timeout: float = None) -> str:
        """
        Буферизованная генерация.

        Raises:
            BackendError: сеть, HTTP статус, неожиданный формат или пустой ответ
        """
        self._stats.total_requests += 1
        start_time = time.perf_counter()
        try:
            response = requests.post(
                self.url,
                headers=self.headers(),
                json=self.build_body(system_prompt, messages, stream=False),
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            self._stats.failed_requests += 1
            raise BackendError(self.name, "timeout") from e
        except requests.exceptions.RequestException as e:
            self._stats.failed_requests += 1
            raise BackendError(self.name, str(e)[:200]) from e
        except ValueError as e:
            self._stats.failed_requests += 1
            raise BackendError(self.name, "invalid JSON response") from e

        try:
            if not isinstance(data, dict):
                raise self._malformed()
            text = self.extract_text(data).strip()
        except BackendError:
            self._stats.failed_requests += 1
            raise
        if not text:
            self._stats.failed_requests += 1
            raise BackendError(self.name, "empty response")

        self._stats.successful_requests += 1
        self._stats.total_response_time_ms += (time.perf_counter() - start_time) * 1000
        return text

    async def stream(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        timeout: float = None,
    ) -> AsyncIterator[str]:
        """
        Потоковая генерация: текстовые дельты в порядке upstream.

        Повреждённые строки пропускаются. Закрытие генератора закрывает
        upstream-ответ (выход из async with client.stream).

        Raises:
            BackendError: сеть или HTTP статус
        """
        self._stats.total_requests += 1
        body = self.build_body(system_prompt, messages, stream=True)
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout or self.timeout),
                transport=self._transport,
            ) as client:
                async with client.stream("POST", self.url, json=body, headers=self.headers()) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        chunk = self.parse_chunk(line)
                        if chunk is None:
                            continue
                        if chunk.done:
                            break
                        if chunk.text:
                            yield chunk.text
        except httpx.TimeoutException as e:
            self._stats.failed_requests += 1
            raise BackendError(self.name, "timeout") from e
        except httpx.HTTPError as e:
            self._stats.failed_requests += 1
            raise BackendError(self.name, str(e)[:200]) from e
        self._stats.successful_requests += 1

    def _malformed(self) -> BackendError:
        return BackendError(self.name, "malformed response")

    @staticmethod
    def _sse_payload(line: str) -> Optional[str]:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        return line[5:].strip()

    @staticmethod
    def _loads(payload: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug("Dropped malformed stream chunk", chunk=payload[:100])
            return None
        return data if isinstance(data, dict) else None


# =============================================================================
# OpenAI-compatible
# =============================================================================

class OpenAIChatBackend(GenerativeBackend):
    """OpenAI-compatible /chat/completions"""

    kind = "openai"
    path = "/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.resolve_api_key() or ''}",
        }

    def build_body(self, system_prompt: str, messages: Sequence[ChatMessage], stream: bool) -> Dict[str, Any]:
        payload: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        payload.extend(m.to_dict() for m in messages)
        return {
            "model": self.config.model,
            "messages": payload,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": stream,
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise self._malformed()
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise self._malformed()
        content = message.get("content")
        if content is None:
            return ""
        if not isinstance(content, str):
            raise self._malformed()
        return content

    def parse_chunk(self, line: str) -> Optional[StreamChunk]:
        payload = self._sse_payload(line)
        if payload is None:
            return None
        if payload == "[DONE]":
            return StreamChunk(done=True)
        data = self._loads(payload)
        if data is None:
            return None
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        return StreamChunk(text=content) if isinstance(content, str) and content else None


# =============================================================================
# Anthropic Messages
# =============================================================================

class AnthropicMessagesBackend(GenerativeBackend):
    """Anthropic /messages"""

    kind = "anthropic"
    path = "/messages"

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.resolve_api_key() or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_body(self, system_prompt: str, messages: Sequence[ChatMessage], stream: bool) -> Dict[str, Any]:
        # Messages API принимает только user/assistant
        payload = [
            {
                "role": MessageRole.USER.value if m.role == MessageRole.SYSTEM else m.role.value,
                "content": m.content,
            }
            for m in messages
        ]
        return {
            "model": self.config.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": payload,
            "stream": stream,
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        blocks = data.get("content") or []
        if not isinstance(blocks, list):
            raise self._malformed()
        parts = []
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "text":
                continue
            text = block.get("text", "")
            if not isinstance(text, str):
                raise self._malformed()
            parts.append(text)
        return "".join(parts)

    def parse_chunk(self, line: str) -> Optional[StreamChunk]:
        payload = self._sse_payload(line)
        if payload is None:
            return None
        data = self._loads(payload)
        if data is None:
            return None
        event_type = data.get("type")
        if event_type == "message_stop":
            return StreamChunk(done=True)
        if event_type != "content_block_delta":
            return None
        delta = data.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "text_delta":
            return None
        text = delta.get("text")
        return StreamChunk(text=text) if isinstance(text, str) and text else None


BACKEND_CLASSES = {
    OpenAIChatBackend.kind: OpenAIChatBackend,
    AnthropicMessagesBackend.kind: AnthropicMessagesBackend,
}


def create_backend(
    config: BackendConfig,
    max_tokens: int = None,
    temperature: float = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GenerativeBackend:
    if config.kind not in BACKEND_CLASSES:
        raise ValueError(f"Unknown backend kind '{config.kind}'")
    return BACKEND_CLASSES[config.kind](
        config,
        max_tokens=max_tokens,
        temperature=temperature,
        transport=transport,
    )


def build_backends(backend_configs: Sequence[Dict[str, Any]] = None) -> List[GenerativeBackend]:
    """Бэкенды в порядке приоритета из settings.fallback.backends"""
    if backend_configs is None:
        backend_configs = settings.fallback.backends or []
    return [create_backend(BackendConfig.from_dict(dict(c))) for c in backend_configs]
