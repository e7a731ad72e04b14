"""
ChatRouter — точка входа библиотеки.

Связывает реестр бизнесов, каскад, генеративный fallback и off-hours
аннотаторы:

    message -> RoutingPipeline.run -> FallbackDispatcher -> annotator -> RoutingResult

Использование:
    router = ChatRouter.from_settings()
    result = router.route("สวัสดีครับ", history, business_id="dji13store")

    async for event in router.route_stream("มีโดรนรุ่นไหนบ้าง"):
        print(event.to_sse())
"""

import time
from contextlib import aclosing
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Sequence

from chat_router.business_loader import BusinessRegistry
from chat_router.fallback_dispatcher import FallbackDispatcher, StreamEvent, StreamEventType
from chat_router.feature_flags import flags
from chat_router.intent_handlers import IntentHandlerRegistry
from chat_router.models import BusinessConfig, ChatMessage
from chat_router.off_hours import Annotator
from chat_router.pipeline import RoutingPipeline, RoutingResult


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatRouter:
    """
    Маршрутизатор сообщений для нескольких бизнесов.

    Args:
        registry: Реестр бизнесов
        dispatcher: Генеративный fallback (по умолчанию из settings)
        annotators: {business_id: annotator} для ответов в нерабочее время
        handlers: Реестр стратегий интентов
        clock: Монотонные часы в секундах
        wall_clock: Часы для timestamp и расписания работы
    """

    def __init__(
        self,
        registry: BusinessRegistry,
        dispatcher: Optional[FallbackDispatcher] = None,
        annotators: Optional[Dict[str, Annotator]] = None,
        handlers: IntentHandlerRegistry = None,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self._clock = clock or time.perf_counter
        self._wall_clock = wall_clock or _utc_now
        self.dispatcher = dispatcher or FallbackDispatcher(clock=self._clock)
        self.annotators: Dict[str, Annotator] = dict(annotators or {})
        self._handlers = handlers
        self._pipelines: Dict[str, RoutingPipeline] = {}

    @classmethod
    def from_settings(cls, **kwargs) -> "ChatRouter":
        """Бизнесы из settings.business.directory, аннотаторы из их расписаний"""
        registry = BusinessRegistry.from_directory()
        kwargs.setdefault("annotators", registry.build_annotators())
        return cls(registry, **kwargs)

    @classmethod
    def for_business(cls, business: BusinessConfig, **kwargs) -> "ChatRouter":
        """Маршрутизатор для одной конфигурации, переданной напрямую"""
        return cls(BusinessRegistry([business], default_id=business.id), **kwargs)

    # =========================================================================
    # Helpers
    # =========================================================================

    def pipeline_for(self, business: BusinessConfig) -> RoutingPipeline:
        pipeline = self._pipelines.get(business.id)
        if pipeline is None:
            pipeline = RoutingPipeline(
                business,
                handlers=self._handlers,
                clock=self._clock,
                wall_clock=self._wall_clock,
            )
            self._pipelines[business.id] = pipeline
        return pipeline

    def _annotator(self, business: BusinessConfig) -> Optional[Annotator]:
        if not flags.off_hours_annotation:
            return None
        return self.annotators.get(business.id)

    @staticmethod
    def _prompt_note(annotator: Optional[Annotator], now: datetime) -> Optional[str]:
        note = getattr(annotator, "note", None)
        return note(now) if callable(note) else None

    @staticmethod
    def _annotate(result: RoutingResult, annotator: Optional[Annotator], now: datetime) -> RoutingResult:
        if annotator is None or result.is_admin_escalation:
            return result
        content = annotator(result.content, now)
        if content == result.content:
            return result
        return replace(result, content=content)

    # =========================================================================
    # Public API
    # =========================================================================

    def route(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        business_id: Optional[str] = None,
    ) -> RoutingResult:
        """
        Буферизованная маршрутизация.

        Raises:
            UnknownBusinessError: business_id не зарегистрирован
        """
        started = self._clock()
        business = self.registry.get(business_id)
        result = self.pipeline_for(business).run(message, history)

        now = self._wall_clock()
        annotator = self._annotator(business)
        result = self.dispatcher.dispatch(
            result,
            history,
            business,
            started=started,
            off_hours_note=self._prompt_note(annotator, now),
        )
        return self._annotate(result, annotator, now)

    async def route_stream(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        business_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Потоковая маршрутизация: trace -> content* -> done.

        Если каскад ответил до слоя 14, поток = trace, один content, done.
        Пометка нерабочего времени добавляется отдельной дельтой перед done.

        Raises:
            UnknownBusinessError: business_id не зарегистрирован
        """
        started = self._clock()
        business = self.registry.get(business_id)
        result = self.pipeline_for(business).run(message, history)

        now = self._wall_clock()
        annotator = self._annotator(business)
        if result.is_admin_escalation:
            annotator = None

        streamed = []
        events = self.dispatcher.dispatch_stream(
            result,
            history,
            business,
            started=started,
            off_hours_note=self._prompt_note(annotator, now),
        )
        async with aclosing(events):
            async for event in events:
                if event.type == StreamEventType.CONTENT:
                    streamed.append(event.content)
                elif event.type == StreamEventType.DONE and annotator is not None:
                    text = "".join(streamed)
                    annotated = annotator(text, now)
                    if annotated != text and annotated.startswith(text):
                        yield StreamEvent.for_content(annotated[len(text):])
                yield event
