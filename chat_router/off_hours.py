"""
Off-hours annotators — пометка ответа в нерабочее время.

Каскад не ветвится по id бизнеса: ChatRouter получает таблицу
{business_id: annotator} при создании. Аннотатор — callable
(content, now) -> content, плюс note(now) для system prompt.
"""

from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timezone
from typing import Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo


OFF_HOURS_SUFFIX = "\n\n⏰ หมายเหตุ: ขณะนี้อยู่นอกเวลาทำการ ทีมงานจะติดต่อกลับในวันทำการถัดไปครับ"

# Ответ уже говорит о нерабочем времени
OFF_HOURS_MARKERS = ("นอกเวลา", "ปิดทำการ")

DEFAULT_PROMPT_NOTE = (
    "ขณะนี้อยู่นอกเวลาทำการ (09:00–18:00 น.) หากลูกค้าต้องการติดต่อทีมงานโดยตรง "
    "ให้แจ้งว่าทีมงานจะติดต่อกลับในวันทำการถัดไป แต่คุณยังสามารถช่วยตอบคำถามทั่วไปได้ตามปกติครับ"
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class DaySchedule:
    day: str
    open: dt_time
    close: dt_time
    active: bool = True


@dataclass(frozen=True)
class BusinessHours:
    """Расписание работы бизнеса в его часовом поясе"""
    timezone: str = "Asia/Bangkok"
    schedule: Tuple[DaySchedule, ...] = field(default_factory=tuple)
    enabled: bool = True
    prompt_note: str = DEFAULT_PROMPT_NOTE

    def is_open(self, now: datetime) -> bool:
        if not self.enabled:
            return True
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(ZoneInfo(self.timezone))
        day_name = WEEKDAYS[local.weekday()]
        for day in self.schedule:
            if day.day.lower() == day_name:
                return day.active and day.open <= local.time().replace(tzinfo=None) < day.close
        return False


def parse_hhmm(value: str) -> dt_time:
    hours, minutes = value.strip().split(":")
    return dt_time(int(hours), int(minutes))


def default_schedule(open_at: str = "09:00", close_at: str = "18:00") -> Tuple[DaySchedule, ...]:
    return tuple(
        DaySchedule(day=day, open=parse_hhmm(open_at), close=parse_hhmm(close_at))
        for day in WEEKDAYS
    )


class OffHoursAnnotator:
    """Добавляет пометку, если бизнес закрыт и ответ её ещё не содержит."""

    def __init__(self, hours: BusinessHours, suffix: str = OFF_HOURS_SUFFIX):
        self.hours = hours
        self.suffix = suffix

    def note(self, now: datetime) -> Optional[str]:
        """Пометка для system prompt (None в рабочее время)"""
        if self.hours.is_open(now):
            return None
        return self.hours.prompt_note

    def __call__(self, content: str, now: datetime) -> str:
        if not content or self.hours.is_open(now):
            return content
        if any(marker in content for marker in OFF_HOURS_MARKERS):
            return content
        return content + self.suffix


Annotator = Callable[[str, datetime], str]
AnnotatorTable = Dict[str, Annotator]
