"""
Recurrence matching and instance expansion for habits.

Both entry points are pure functions of ``(habit, reference, tz)``: they read
nothing from the store and keep no state between calls.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from utils.datetime_utils import coerce_number, date_only_equal, local_date, to_instant

CADENCE_UNITS = {"day", "week"}
SUB_DIVISION_UNITS = {"hour", "minute"}


def js_weekday(d: date) -> int:
    """Weekday number with Sunday as 0, the convention stored in ``weekdaySet``."""
    return (d.weekday() + 1) % 7


def _weekday_list(raw: Any) -> list[int]:
    if not isinstance(raw, (list, tuple)):
        return []
    out: list[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        value = coerce_number(item, default=-1)
        if float(value).is_integer() and 0 <= value <= 6:
            out.append(int(value))
    return out


@dataclass
class RecurrenceRule:
    cadence_unit: str
    cadence_count: int
    start_date: datetime
    latest_generated_date: datetime | None = None
    weekday_set: list[int] = field(default_factory=list)
    times_per_day: int = 1
    sub_division_unit: str = "hour"
    sub_division_amount: float = 0


@dataclass
class Habit:
    id: str
    name: str
    owner_id: str | None
    rule: RecurrenceRule
    end_mode: str = "never"
    end_date: datetime | None = None
    reminder_offset: str | None = None
    user: dict[str, Any] = field(default_factory=dict)

    @property
    def last_instant(self) -> datetime:
        return self.rule.latest_generated_date or self.rule.start_date

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any], reference: datetime) -> "Habit":
        repeat = data.get("recurrence") or {}
        raw_latest = repeat.get("latestGeneratedDate")
        rule = RecurrenceRule(
            cadence_unit=str(repeat.get("cadenceUnit") or "day").strip().lower(),
            cadence_count=max(int(coerce_number(repeat.get("cadenceCount"), default=1)), 1),
            start_date=to_instant(repeat.get("startDate"), reference),
            latest_generated_date=to_instant(raw_latest, reference) if raw_latest else None,
            weekday_set=_weekday_list(repeat.get("weekdaySet")),
            times_per_day=int(coerce_number(repeat.get("timesPerDay"))),
            sub_division_unit=str(repeat.get("subDivisionUnit") or "hour").strip().lower(),
            sub_division_amount=coerce_number(repeat.get("subDivisionAmount")),
        )
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        raw_end = data.get("endDate")
        return cls(
            id=doc_id,
            name=str(data.get("name") or ""),
            owner_id=data.get("ownerId") or user.get("uid"),
            rule=rule,
            end_mode=str(data.get("endMode") or "never").strip(),
            end_date=to_instant(raw_end, reference) if raw_end else None,
            reminder_offset=data.get("reminderOffset"),
            user=user,
        )


@dataclass(frozen=True)
class OccurrenceDraft:
    habit_id: str
    scheduled_at: datetime

    def to_document(self, habit: Habit) -> dict[str, Any]:
        return {
            "habitId": self.habit_id,
            "ownerId": habit.owner_id,
            "habit": habit.name,
            "user": habit.user,
            "scheduledAt": self.scheduled_at,
            "reminderOffset": habit.reminder_offset,
            "completedAt": None,
            "completedBy": None,
        }


def is_scheduled_today(habit: Habit, reference: datetime, tz: ZoneInfo) -> bool:
    rule = habit.rule
    repeat_days = rule.cadence_count
    if rule.cadence_unit == "week":
        repeat_days *= 7

    last_local = habit.last_instant.astimezone(tz)

    # Weekly cadence follows weekday membership, not a fixed day count.
    if rule.cadence_unit == "week":
        if js_weekday(local_date(reference, tz)) not in rule.weekday_set:
            return False
        start_weekday = js_weekday(local_date(rule.start_date, tz))
        cursor = last_local
        for weekday in rule.weekday_set:
            cursor = cursor + timedelta(days=repeat_days - start_weekday + weekday)
            if date_only_equal(cursor, reference, tz):
                return True
        return False

    return date_only_equal(last_local + timedelta(days=repeat_days), reference, tz)


def expand_occurrences(habit: Habit, reference: datetime, tz: ZoneInfo) -> list[OccurrenceDraft]:
    """Concrete instances for ``reference``'s day, ordered by slot."""
    if not is_scheduled_today(habit, reference, tz):
        return []

    rule = habit.rule
    last_local = habit.last_instant.astimezone(tz)
    ref_local = reference.astimezone(tz)
    base = last_local.replace(year=ref_local.year, month=ref_local.month, day=ref_local.day)

    if rule.times_per_day <= 1:
        return [OccurrenceDraft(habit_id=habit.id, scheduled_at=base.astimezone(timezone.utc))]

    drafts: list[OccurrenceDraft] = []
    seen: set[datetime] = set()
    for i in range(rule.times_per_day):
        if rule.sub_division_unit == "hour":
            slot = base + timedelta(hours=rule.sub_division_amount * i)
        else:
            slot = base + timedelta(minutes=rule.sub_division_amount * i)
        # Skip slots that would repeat the last recorded occurrence.
        if slot > last_local and slot not in seen:
            seen.add(slot)
            drafts.append(OccurrenceDraft(habit_id=habit.id, scheduled_at=slot.astimezone(timezone.utc)))
    return drafts
