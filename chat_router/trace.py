"""
Pipeline Trace — полная запись прохода каскада для одного запроса.

Модуль содержит:
- StepStatus / TraceMode: закрытые перечисления вместо строк
- PipelineStep: запись одного слоя
- PipelineTrace: итоговый трейс фиксированной формы (15 шагов, +1 при fallback)
- TraceBuilder: накопитель шагов, который каскад передаёт явно

Часы инжектируются: в тестах подставляется детерминированный clock.
"""

import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class StepStatus(str, Enum):
    """Итог одного слоя."""
    MATCHED = "matched"
    SKIPPED = "skipped"
    CHECKED = "checked"
    NOT_REACHED = "not_reached"


class TraceMode(str, Enum):
    """Каким путём получен ответ."""
    PIPELINE = "pipeline"
    PIPELINE_THEN_BACKEND = "pipeline_then_backend"
    PIPELINE_THEN_STREAM = "pipeline_then_stream"
    BACKEND_FAILED = "backend_failed"


# Канонические слои каскада: (номер, имя, описание)
LAYER_DEFINITIONS: Tuple[Tuple[int, str, str], ...] = (
    (0, "Context Extraction", "วิเคราะห์บริบทจากประวัติแชท"),
    (1, "Admin Escalation", "ตรวจจับคำขอคุยกับแอดมิน/คนจริง"),
    (2, "VAT Refund", "ตรวจจับคำถามเรื่อง VAT Refund"),
    (3, "Stock Inquiry", "ตรวจจับคำถามเรื่องสต็อกสินค้า"),
    (4, "Discontinued Detection", "ตรวจจับสินค้าที่ยกเลิกจำหน่าย"),
    (5, "Context Resolution", "ตอบต่อเนื่องจากบริบทสนทนา"),
    (6, "Intent Engine", "จับ intent ด้วย multi-signal scoring"),
    (7, "Sale Scripts", "จับคู่กับ sale script"),
    (8, "Knowledge Base", "ค้นหาจาก knowledge base"),
    (9, "FAQ Search", "ค้นหาจาก FAQ"),
    (10, "Product Search", "ค้นหาสินค้า"),
    (11, "Category Browse", "แสดงหมวดหมู่"),
    (12, "Category Specific", "ค้นหาตามหมวดเฉพาะ"),
    (13, "Context Fallback", "ใช้บริบทสนทนาตอบ fallback"),
    (14, "Default Fallback", "ข้อความตอบกลับเริ่มต้น"),
)

TERMINAL_LAYER = LAYER_DEFINITIONS[-1][0]
BACKEND_LAYER = TERMINAL_LAYER + 1


def _round_ms(value: float) -> float:
    return round(value, 2)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


# =============================================================================
# Trace dataclasses
# =============================================================================

@dataclass
class PipelineStep:
    """Запись одного слоя каскада."""
    layer: int
    name: str
    description: str
    status: StepStatus
    duration_ms: float = 0.0
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "layer": self.layer,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "duration_ms": _round_ms(self.duration_ms),
        }
        if self.details:
            result["details"] = self.details
        return result


@dataclass
class PipelineTrace:
    """
    Трейс одного запроса.

    Инвариант: steps упорядочены по layer и покрывают слои 0-14;
    шаг слоя 15 появляется только после fallback dispatch.
    """
    total_duration_ms: float
    mode: TraceMode
    steps: List[PipelineStep]
    final_layer: int
    final_layer_name: str
    user_message: str
    timestamp: str
    final_intent: Optional[str] = None

    def step(self, layer: int) -> Optional[PipelineStep]:
        for candidate in self.steps:
            if candidate.layer == layer:
                return candidate
        return None

    @property
    def matched_layers(self) -> List[int]:
        return [s.layer for s in self.steps if s.status == StepStatus.MATCHED]

    def with_backend_step(
        self,
        backend: str,
        status: StepStatus,
        duration_ms: float,
        mode: TraceMode,
        details: Optional[Dict[str, Any]] = None,
    ) -> "PipelineTrace":
        """
        Вернуть копию трейса с синтетическим шагом слоя 15.

        При успехе бэкенда final_layer переходит на слой 15,
        при откате остаётся на слое 14.
        """
        step = PipelineStep(
            layer=BACKEND_LAYER,
            name=backend,
            description=f"ส่งต่อให้ {backend} ตอบแทน (generative fallback)",
            status=status,
            duration_ms=_round_ms(duration_ms),
            details=details,
        )
        steps = [s for s in self.steps if s.layer != BACKEND_LAYER] + [step]
        succeeded = status == StepStatus.MATCHED
        return replace(
            self,
            steps=steps,
            mode=mode,
            total_duration_ms=_round_ms(self.total_duration_ms + duration_ms),
            final_layer=BACKEND_LAYER if succeeded else self.final_layer,
            final_layer_name=backend if succeeded else self.final_layer_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "total_duration_ms": _round_ms(self.total_duration_ms),
            "mode": self.mode.value,
            "steps": [s.to_dict() for s in self.steps],
            "final_layer": self.final_layer,
            "final_layer_name": self.final_layer_name,
            "user_message": self.user_message,
            "timestamp": self.timestamp,
        }
        if self.final_intent is not None:
            result["final_intent"] = self.final_intent
        return result


# =============================================================================
# TraceBuilder
# =============================================================================

class TraceBuilder:
    """
    Накопитель шагов каскада.

    Usage:
        builder = TraceBuilder("ราคาเท่าไหร่")
        t = builder.now()
        ...
        builder.record(1, "Admin Escalation", "...", StepStatus.SKIPPED, t)
        trace = builder.finish(final_layer=6, final_layer_name="Intent: Greeting")
    """

    def __init__(
        self,
        user_message: str,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        self._clock = clock or time.perf_counter
        self._wall_clock = wall_clock or _utc_now
        self._user_message = user_message
        self._steps: Dict[int, PipelineStep] = {}
        self._started = self._clock()

    def now(self) -> float:
        return self._clock()

    def elapsed_ms(self, start: float) -> float:
        """Миллисекунды с момента start (clock в секундах)."""
        return _round_ms((self._clock() - start) * 1000)

    def record(
        self,
        layer: int,
        name: str,
        description: str,
        status: StepStatus,
        start: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> "TraceBuilder":
        """Записать шаг слоя. Один слой = один шаг."""
        if layer in self._steps:
            raise ValueError(f"Layer {layer} already recorded")
        self._steps[layer] = PipelineStep(
            layer=layer,
            name=name,
            description=description,
            status=status,
            duration_ms=self.elapsed_ms(start),
            details=details,
        )
        return self

    def replace(
        self,
        layer: int,
        name: str,
        description: str,
        status: StepStatus,
        start: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> "TraceBuilder":
        """Перезаписать шаг слоя (второй проход слоя 12)."""
        self._steps.pop(layer, None)
        return self.record(layer, name, description, status, start, details)

    def recorded(self, layer: int) -> Optional[PipelineStep]:
        return self._steps.get(layer)

    def finish(
        self,
        final_layer: int,
        final_layer_name: str,
        final_intent: Optional[str] = None,
        mode: TraceMode = TraceMode.PIPELINE,
    ) -> PipelineTrace:
        """Дополнить недостигнутые слои, отсортировать и зафиксировать трейс."""
        steps = dict(self._steps)
        for layer, name, description in LAYER_DEFINITIONS:
            if layer not in steps:
                steps[layer] = PipelineStep(
                    layer=layer,
                    name=name,
                    description=description,
                    status=StepStatus.NOT_REACHED,
                    duration_ms=0.0,
                )

        return PipelineTrace(
            total_duration_ms=self.elapsed_ms(self._started),
            mode=mode,
            steps=[steps[layer] for layer in sorted(steps)],
            final_layer=final_layer,
            final_layer_name=final_layer_name,
            final_intent=final_intent,
            user_message=self._user_message,
            timestamp=_iso(self._wall_clock()),
        )


def layer_definition(layer: int) -> Tuple[int, str, str]:
    for definition in LAYER_DEFINITIONS:
        if definition[0] == layer:
            return definition
    raise KeyError(layer)
