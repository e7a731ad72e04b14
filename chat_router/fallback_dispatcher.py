"""
Fallback Dispatcher — генеративный ответ вместо дефолтного fallback слоя 14.

Правила:
- вызывается только если каскад закончился на слое 14;
- участвуют только сконфигурированные бэкенды (есть API-ключ), по приоритету;
- не больше двух попыток: основной бэкенд и одна замена, затем откат
  к дефолтному ответу каскада;
- таймаут вызова = min(таймаут бэкенда, остаток бюджета запроса);
  поток дельт обрывается (с done), как только бюджет исчерпан;
- ошибки бэкендов логируются и никогда не выходят наружу.

Потоковый режим отдаёт события в порядке:
    trace (один раз) -> content* -> done (один раз)
"""

import asyncio
import json
import time
from contextlib import aclosing
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from chat_router.feature_flags import flags
from chat_router.llm import BackendError, GenerativeBackend, build_backends
from chat_router.logger import logger
from chat_router.models import BusinessConfig, ChatMessage
from chat_router.context_extractor import build_conversation
from chat_router.pipeline import RoutingResult
from chat_router.prompt_builder import build_system_prompt
from chat_router.settings import settings
from chat_router.trace import TERMINAL_LAYER, PipelineTrace, StepStatus, TraceMode


MAX_ATTEMPTS = 2

DONE_SENTINEL = "[DONE]"


class StreamEventType(str, Enum):
    TRACE = "trace"
    CONTENT = "content"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    """Одно событие потокового ответа"""
    type: StreamEventType
    trace: Optional[PipelineTrace] = None
    content: Optional[str] = None
    is_admin_escalation: bool = False
    is_cancel_escalation: bool = False
    clarify_options: Optional[List[str]] = None

    @classmethod
    def for_trace(cls, trace: PipelineTrace, result: Optional[RoutingResult] = None) -> "StreamEvent":
        if result is None:
            return cls(type=StreamEventType.TRACE, trace=trace)
        return cls(
            type=StreamEventType.TRACE,
            trace=trace,
            is_admin_escalation=result.is_admin_escalation,
            is_cancel_escalation=result.is_cancel_escalation,
            clarify_options=result.clarify_options,
        )

    @classmethod
    def for_content(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.CONTENT, content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type=StreamEventType.DONE)

    def to_payload(self) -> Any:
        """JSON-совместимое тело события (для done: строка-sentinel)"""
        if self.type == StreamEventType.DONE:
            return DONE_SENTINEL
        if self.type == StreamEventType.CONTENT:
            return {"content": self.content}
        payload: Dict[str, Any] = {"trace": self.trace.to_dict()}
        if self.is_admin_escalation:
            payload["is_admin_escalation"] = True
        if self.is_cancel_escalation:
            payload["is_cancel_escalation"] = True
        if self.clarify_options is not None:
            payload["clarify_options"] = list(self.clarify_options)
        return payload

    def to_sse(self) -> str:
        """Строка SSE: data: <json> или data: [DONE]"""
        payload = self.to_payload()
        data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        return f"data: {data}\n\n"


class FallbackDispatcher:
    """
    Диспетчер генеративного fallback.

    Args:
        backends: Бэкенды в порядке приоритета (по умолчанию из settings)
        history_limit: Сколько сообщений истории передавать модели
        budget_seconds: Бюджет времени на запрос целиком
        clock: Монотонные часы в секундах
    """

    def __init__(
        self,
        backends: Sequence[GenerativeBackend] = None,
        history_limit: int = None,
        budget_seconds: float = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.backends = list(backends) if backends is not None else build_backends()
        self.history_limit = history_limit if history_limit is not None else settings.fallback.history_limit
        if budget_seconds is None:
            budget_seconds = settings.pipeline.request_budget_seconds
        self.budget_seconds = budget_seconds
        self._clock = clock or time.perf_counter

    # =========================================================================
    # Helpers
    # =========================================================================

    def eligible_backends(self) -> List[GenerativeBackend]:
        return [b for b in self.backends if b.is_configured()]

    def is_active(self) -> bool:
        return flags.llm_fallback and bool(self.eligible_backends())

    def _remaining(self, started: float) -> float:
        return self.budget_seconds - (self._clock() - started)

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000

    def build_messages(self, history: Sequence[ChatMessage], message: str) -> List[ChatMessage]:
        """Последние history_limit сообщений истории + текущее сообщение"""
        conversation = build_conversation(history, message)
        prior = conversation[:-1]
        if self.history_limit == 0:
            prior = []
        elif len(prior) > self.history_limit:
            prior = prior[-self.history_limit:]
        return prior + conversation[-1:]

    @staticmethod
    def _needs_fallback(result: RoutingResult) -> bool:
        return result.trace.final_layer == TERMINAL_LAYER

    def _record_failure(self, backend: GenerativeBackend, attempt: int, error: str) -> Dict[str, Any]:
        logger.warning(
            "Generative backend failed",
            backend=backend.name,
            attempt=attempt,
            error=error,
        )
        return {"backend": backend.name, "error": error}

    def _reverted_trace(
        self,
        trace: PipelineTrace,
        backend_name: str,
        failures: List[Dict[str, Any]],
        duration_ms: float,
    ) -> PipelineTrace:
        logger.warning("Generative fallback reverted to default content", failures=len(failures))
        logger.metric("fallback_reverted", 1, backend=backend_name)
        return trace.with_backend_step(
            backend_name,
            StepStatus.CHECKED,
            duration_ms,
            TraceMode.BACKEND_FAILED,
            {"errors": failures},
        )

    # =========================================================================
    # Buffered
    # =========================================================================

    def dispatch(
        self,
        result: RoutingResult,
        history: Sequence[ChatMessage],
        business: BusinessConfig,
        started: float = None,
        off_hours_note: Optional[str] = None,
    ) -> RoutingResult:
        """
        Буферизованный fallback.

        Returns:
            Новый RoutingResult (исходный не меняется). Если fallback не
            нужен или выключен, возвращается исходный результат.
        """
        if not self._needs_fallback(result) or not self.is_active():
            return result

        started = self._clock() if started is None else started
        dispatch_start = self._clock()
        candidates = self.eligible_backends()[:MAX_ATTEMPTS]
        system_prompt = build_system_prompt(business, off_hours_note)
        messages = self.build_messages(history, result.trace.user_message)
        failures: List[Dict[str, Any]] = []

        for attempt, backend in enumerate(candidates, start=1):
            remaining = self._remaining(started)
            if remaining <= 0:
                failures.append(self._record_failure(backend, attempt, "request budget exhausted"))
                break

            t = self._clock()
            try:
                content = backend.generate(system_prompt, messages, timeout=min(backend.timeout, remaining))
            except BackendError as e:
                failures.append(self._record_failure(backend, attempt, e.message))
                continue

            duration_ms = self._elapsed_ms(t)
            logger.metric("fallback_latency_ms", round(duration_ms, 2), backend=backend.name, mode="buffered")
            details: Dict[str, Any] = {"model": backend.config.model, "attempt": attempt}
            if failures:
                details["errors"] = failures
            trace = result.trace.with_backend_step(
                backend.name,
                StepStatus.MATCHED,
                duration_ms,
                TraceMode.PIPELINE_THEN_BACKEND,
                details,
            )
            return replace(result, content=content, trace=trace)

        trace = self._reverted_trace(
            result.trace,
            failures[-1]["backend"],
            failures,
            self._elapsed_ms(dispatch_start),
        )
        return replace(result, trace=trace)

    # =========================================================================
    # Streamed
    # =========================================================================

    async def dispatch_stream(
        self,
        result: RoutingResult,
        history: Sequence[ChatMessage],
        business: BusinessConfig,
        started: float = None,
        off_hours_note: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Потоковый fallback.

        Событие trace отправляется, когда исход известен: по первой дельте
        бэкенда (mode=pipeline_then_stream) или после отката
        (mode=backend_failed, дефолтный ответ одной дельтой).
        """
        if not self._needs_fallback(result) or not self.is_active():
            yield StreamEvent.for_trace(result.trace, result)
            yield StreamEvent.for_content(result.content)
            yield StreamEvent.done()
            return

        if not flags.llm_streaming:
            buffered = await asyncio.to_thread(
                self.dispatch, result, history, business, started, off_hours_note,
            )
            yield StreamEvent.for_trace(buffered.trace, buffered)
            yield StreamEvent.for_content(buffered.content)
            yield StreamEvent.done()
            return

        started = self._clock() if started is None else started
        dispatch_start = self._clock()
        candidates = self.eligible_backends()[:MAX_ATTEMPTS]
        system_prompt = build_system_prompt(business, off_hours_note)
        messages = self.build_messages(history, result.trace.user_message)
        failures: List[Dict[str, Any]] = []

        for attempt, backend in enumerate(candidates, start=1):
            remaining = self._remaining(started)
            if remaining <= 0:
                failures.append(self._record_failure(backend, attempt, "request budget exhausted"))
                break

            t = self._clock()
            relayed = False
            try:
                async with aclosing(
                    backend.stream(system_prompt, messages, timeout=min(backend.timeout, remaining))
                ) as deltas:
                    async for delta in deltas:
                        if not relayed:
                            relayed = True
                            first_delta_ms = self._elapsed_ms(t)
                            logger.metric(
                                "fallback_first_delta_ms",
                                round(first_delta_ms, 2),
                                backend=backend.name,
                                mode="stream",
                            )
                            details: Dict[str, Any] = {"model": backend.config.model, "attempt": attempt}
                            if failures:
                                details["errors"] = failures
                            trace = result.trace.with_backend_step(
                                backend.name,
                                StepStatus.MATCHED,
                                first_delta_ms,
                                TraceMode.PIPELINE_THEN_STREAM,
                                details,
                            )
                            yield StreamEvent.for_trace(trace, result)
                        yield StreamEvent.for_content(delta)
                        if self._remaining(started) <= 0:
                            logger.warning("Generative stream exceeded request budget", backend=backend.name)
                            break
            except BackendError as e:
                if relayed:
                    logger.warning("Generative stream interrupted", backend=backend.name, error=e.message)
                    yield StreamEvent.done()
                    return
                failures.append(self._record_failure(backend, attempt, e.message))
                continue

            if relayed:
                yield StreamEvent.done()
                return
            failures.append(self._record_failure(backend, attempt, "empty stream"))

        trace = self._reverted_trace(
            result.trace,
            failures[-1]["backend"],
            failures,
            self._elapsed_ms(dispatch_start),
        )
        yield StreamEvent.for_trace(trace, result)
        yield StreamEvent.for_content(result.content)
        yield StreamEvent.done()
