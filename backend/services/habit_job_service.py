from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from config import settings
from services.batch_writer import BatchWriteAccumulator
from services.document_store import DocumentSnapshot, DocumentStore, FieldFilter
from services.job_errors import (
    EmptyResultError,
    InputError,
    InternalError,
    JobError,
    NotificationDeliveryError,
    WriteCommitError,
)
from services.notification_batcher import NotificationBatcher
from services.push_gateway import NotificationPayload, PushGateway, normalize_tokens
from services.recurrence_service import Habit, expand_occurrences
from utils.datetime_utils import (
    local_date,
    parse_reference_date,
    parse_reminder_offset,
    resolve_tz,
    to_instant,
    truncate_to_minute,
    utcnow,
)

logger = logging.getLogger(__name__)

GENERATE_OCCURRENCES = "generate-occurrences"
SEND_REMINDERS = "send-reminders"
VALID_ACTIONS = {GENERATE_OCCURRENCES, SEND_REMINDERS}

HABIT_COLLECTION = "habit"
HISTORY_COLLECTION = "history"
USERS_COLLECTION = "users"
GUARDIAN_LINKS_COLLECTION = "guardian_links"

REMINDER_TITLE = "It's time for habit!"
COMPLETED_TITLE = "Hooray!"


class JobPhase(str, Enum):
    IDLE = "idle"
    QUERYING = "querying"
    PROCESSING = "processing"
    FLUSHING = "flushing"
    REPORTING = "reporting"


@dataclass
class RunContext:
    """Everything one invocation needs; nothing here outlives the run."""

    reference: datetime
    tz: ZoneInfo
    write_batch_limit: int = 500
    notification_batch_limit: int = 500
    completion_window_seconds: int = 60
    reminder_lookahead_hours: int = 24
    phase: JobPhase = JobPhase.IDLE
    failed_rows: int = 0

    def advance(self, phase: JobPhase) -> None:
        logger.debug("Job phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    @property
    def reference_day_start(self) -> datetime:
        local = self.reference.astimezone(self.tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class JobResult:
    action: str
    summary: str
    details: dict[str, Any] = field(default_factory=dict)


def build_run_context(body: dict[str, Any], now: datetime | None = None) -> RunContext:
    tz = resolve_tz(settings.JOB_TIMEZONE)
    raw_today = body.get("today")
    if raw_today:
        try:
            reference = parse_reference_date(raw_today, tz)
        except ValueError as exc:
            raise InputError(f"Invalid today value: {raw_today!r}") from exc
    else:
        reference = now or utcnow()
    return RunContext(
        reference=reference,
        tz=tz,
        write_batch_limit=settings.WRITE_BATCH_LIMIT,
        notification_batch_limit=settings.NOTIFICATION_BATCH_LIMIT,
        completion_window_seconds=settings.COMPLETION_WINDOW_SECONDS,
        reminder_lookahead_hours=settings.REMINDER_LOOKAHEAD_HOURS,
    )


async def run_action(
    body: dict[str, Any],
    store: DocumentStore,
    gateway: PushGateway,
    now: datetime | None = None,
) -> JobResult:
    action = str(body.get("action") or "").strip()
    if not action:
        raise InputError("No action")
    if action not in VALID_ACTIONS:
        raise InputError("Not valid")

    ctx = build_run_context(body, now=now)
    logger.info("Running %s for reference %s", action, ctx.reference.isoformat())
    try:
        if action == GENERATE_OCCURRENCES:
            return await generate_occurrences(ctx, store)
        return await send_reminders(ctx, store, gateway)
    except JobError:
        raise
    except Exception as exc:
        logger.exception("Unexpected failure while running %s", action)
        raise InternalError("Internal Server Error") from exc


# ---------------------------------------------------------------------------
# generate-occurrences
# ---------------------------------------------------------------------------

def _is_active(habit: Habit, ctx: RunContext) -> bool:
    if habit.end_mode == "never" or habit.end_date is None:
        return True
    return local_date(habit.end_date, ctx.tz) >= local_date(ctx.reference, ctx.tz)


async def _query_candidate_habits(ctx: RunContext, store: DocumentStore) -> list[DocumentSnapshot]:
    open_ended = await store.where(HABIT_COLLECTION, FieldFilter("endMode", "==", "never"))
    dated = await store.where(HABIT_COLLECTION, FieldFilter("endDate", ">=", ctx.reference_day_start))

    seen: set[str] = set()
    candidates: list[DocumentSnapshot] = []
    for snap in [*open_ended, *dated]:
        if snap.id in seen:
            continue
        seen.add(snap.id)
        candidates.append(snap)
    if not candidates:
        raise EmptyResultError("No matching habit documents.")
    return candidates


def _stage_generation(
    ctx: RunContext,
    habits: list[DocumentSnapshot],
    writer: BatchWriteAccumulator,
) -> tuple[int, dict[str, datetime]]:
    latest_by_habit: dict[str, datetime] = {}
    generated = 0

    for snap in habits:
        if not snap.data:
            logger.warning("Habit document %s is empty", snap.id)
            continue
        try:
            habit = Habit.from_document(snap.id, snap.data, ctx.reference)
            if not _is_active(habit, ctx):
                continue
            drafts = expand_occurrences(habit, ctx.reference, ctx.tz)
            for draft in drafts:
                writer.stage_write(HISTORY_COLLECTION, draft.to_document(habit))
                generated += 1
            if drafts:
                previous = habit.rule.latest_generated_date
                newest = drafts[-1].scheduled_at
                if previous is None or newest > previous:
                    latest_by_habit[habit.id] = newest
        except Exception:
            ctx.failed_rows += 1
            logger.exception("Failed to generate occurrences for habit %s", snap.id)

    # One update per habit, carrying only the last occurrence of this run.
    for habit_id, newest in latest_by_habit.items():
        writer.stage_write(
            HABIT_COLLECTION,
            {"recurrence": {"latestGeneratedDate": newest}},
            doc_id=habit_id,
            merge=True,
        )
    return generated, latest_by_habit


async def generate_occurrences(ctx: RunContext, store: DocumentStore) -> JobResult:
    ctx.advance(JobPhase.QUERYING)
    try:
        habits = await _query_candidate_habits(ctx, store)
    except EmptyResultError as exc:
        logger.info(exc.message)
        ctx.advance(JobPhase.REPORTING)
        return JobResult(action=GENERATE_OCCURRENCES, summary=exc.message)

    ctx.advance(JobPhase.PROCESSING)
    writer = BatchWriteAccumulator(store, limit=ctx.write_batch_limit)
    try:
        generated, latest_by_habit = _stage_generation(ctx, habits, writer)
    except BaseException:
        # Commits already started must settle before the error leaves the run.
        await writer.discard()
        raise

    ctx.advance(JobPhase.FLUSHING)
    outcomes = await writer.finalize()

    ctx.advance(JobPhase.REPORTING)
    failed = [o for o in outcomes if not o.ok]
    if failed:
        raise WriteCommitError(f"{len(failed)} of {len(outcomes)} commit batches failed")

    summary = f"Committed {writer.staged_total} writes in {len(outcomes)} batches"
    logger.info(summary)
    return JobResult(
        action=GENERATE_OCCURRENCES,
        summary=summary,
        details={
            "staged_writes": writer.staged_total,
            "generated": generated,
            "habits_updated": len(latest_by_habit),
            "failed_rows": ctx.failed_rows,
        },
    )


# ---------------------------------------------------------------------------
# send-reminders
# ---------------------------------------------------------------------------

def _describe_offset(offset: timedelta) -> str:
    minutes = int(offset.total_seconds() // 60)
    if minutes and minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def reminder_body(habit_name: str, offset: timedelta) -> str:
    if offset <= timedelta(0):
        return f"{habit_name} starting now..."
    return f"{habit_name} starting in {_describe_offset(offset)}..."


def should_notify_owner(owner_id: str | None, completed_by: str | None) -> bool:
    """The owner hears about a completion only when someone else completed it."""
    return bool(completed_by) and completed_by != owner_id


def _owner_id(data: dict[str, Any]) -> str | None:
    user = data.get("user") if isinstance(data.get("user"), dict) else {}
    return data.get("ownerId") or user.get("uid")


async def _load_recipient_tokens(
    store: DocumentStore,
    owner_ids: list[str],
) -> tuple[dict[str, Any], dict[str, list[Any]]]:
    """Return ``(owner token by uid, guardian tokens by child uid)``."""
    links = await store.where(GUARDIAN_LINKS_COLLECTION, FieldFilter("childId", "in", owner_ids))
    if not links:
        logger.info("No matching guardian link documents.")

    parent_ids = [str(link.data.get("parentId")) for link in links if link.data.get("parentId")]
    user_ids = list(dict.fromkeys([*owner_ids, *parent_ids]))
    users = await store.get_all(USERS_COLLECTION, user_ids)
    token_by_uid = {user.id: user.data.get("token") for user in users}

    guardians: dict[str, list[Any]] = defaultdict(list)
    for link in links:
        token = token_by_uid.get(str(link.data.get("parentId")))
        if token:
            guardians[str(link.data.get("childId"))].append(token)
    return token_by_uid, guardians


async def _stage_start_reminders(ctx: RunContext, store: DocumentStore, batcher: NotificationBatcher) -> int:
    ref_minute = truncate_to_minute(ctx.reference)
    ctx.advance(JobPhase.QUERYING)
    rows = await store.where(
        HISTORY_COLLECTION,
        FieldFilter("scheduledAt", ">=", ref_minute),
        FieldFilter("scheduledAt", "<", ref_minute + timedelta(hours=ctx.reminder_lookahead_hours, minutes=1)),
    )
    if not rows:
        raise EmptyResultError("No matching history documents.")

    ctx.advance(JobPhase.PROCESSING)
    due: list[tuple[DocumentSnapshot, timedelta]] = []
    for snap in rows:
        try:
            if snap.data.get("completedAt"):
                continue
            offset = parse_reminder_offset(snap.data.get("reminderOffset"))
            if offset is None:
                continue
            scheduled = to_instant(snap.data.get("scheduledAt"), ctx.reference)
            if truncate_to_minute(scheduled - offset) != ref_minute:
                continue
            due.append((snap, offset))
        except Exception:
            ctx.failed_rows += 1
            logger.exception("Failed to evaluate reminder for history %s", snap.id)
    if not due:
        logger.info("No reminders due at %s", ref_minute.isoformat())
        return 0

    owner_ids = list(dict.fromkeys(uid for uid in (_owner_id(snap.data) for snap, _ in due) if uid))
    owner_tokens, guardian_tokens = await _load_recipient_tokens(store, owner_ids)

    staged = 0
    for snap, offset in due:
        data = snap.data
        owner_id = _owner_id(data)
        snapshot_user = data.get("user") if isinstance(data.get("user"), dict) else {}
        tokens = normalize_tokens(
            owner_tokens.get(owner_id) or snapshot_user.get("token"),
            *guardian_tokens.get(owner_id or "", []),
        )
        if not tokens:
            logger.info("History %s has no recipient tokens", snap.id)
            continue
        batcher.stage_notification(
            NotificationPayload(
                title=REMINDER_TITLE,
                body=reminder_body(str(data.get("habit") or ""), offset),
                recipient_tokens=tokens,
            )
        )
        staged += 1
    return staged


def _stage_completion_for(data: dict[str, Any], batcher: NotificationBatcher) -> int:
    owner = data.get("user") if isinstance(data.get("user"), dict) else {}
    owner_id = _owner_id(data)
    completed_by = data.get("completedBy")
    habit_name = str(data.get("habit") or "")
    staged = 0

    for guardian in owner.get("connections") or []:
        if not isinstance(guardian, dict):
            continue
        # The completer already knows.
        if completed_by and guardian.get("uid") == completed_by:
            continue
        tokens = normalize_tokens(guardian.get("token"))
        if not tokens:
            continue
        batcher.stage_notification(
            NotificationPayload(
                title=COMPLETED_TITLE,
                body=f"{habit_name} habit has been completed.",
                recipient_tokens=tokens,
            )
        )
        staged += 1

    if should_notify_owner(owner_id, completed_by):
        tokens = normalize_tokens(owner.get("token"))
        if tokens:
            batcher.stage_notification(
                NotificationPayload(
                    title=COMPLETED_TITLE,
                    body=f"{habit_name} habit has been completed. Keep it up!",
                    recipient_tokens=tokens,
                )
            )
            staged += 1
    return staged


async def _stage_completion_notices(ctx: RunContext, store: DocumentStore, batcher: NotificationBatcher) -> int:
    window_start = ctx.reference - timedelta(seconds=ctx.completion_window_seconds)
    ctx.advance(JobPhase.QUERYING)
    rows = await store.where(
        HISTORY_COLLECTION,
        FieldFilter("completedAt", ">", window_start),
        FieldFilter("completedAt", "<=", ctx.reference),
        FieldFilter("user.isGuardian", "==", False),
    )
    if not rows:
        raise EmptyResultError("No matching completed history documents.")

    ctx.advance(JobPhase.PROCESSING)
    staged = 0
    for snap in rows:
        try:
            staged += _stage_completion_for(snap.data, batcher)
        except Exception:
            ctx.failed_rows += 1
            logger.exception("Failed to stage completion notices for history %s", snap.id)
    return staged


async def send_reminders(ctx: RunContext, store: DocumentStore, gateway: PushGateway) -> JobResult:
    batcher = NotificationBatcher(gateway, limit=ctx.notification_batch_limit)

    reminders = 0
    completions = 0
    try:
        try:
            reminders = await _stage_start_reminders(ctx, store, batcher)
        except EmptyResultError as exc:
            logger.info(exc.message)

        try:
            completions = await _stage_completion_notices(ctx, store, batcher)
        except EmptyResultError as exc:
            logger.info(exc.message)
    except BaseException:
        await batcher.discard()
        raise

    ctx.advance(JobPhase.FLUSHING)
    report = await batcher.finalize()

    ctx.advance(JobPhase.REPORTING)
    if report.failed_groups:
        logger.error(
            "%s of %s notification groups failed (%s messages)",
            report.failed_groups,
            report.groups,
            report.messages,
        )
        raise NotificationDeliveryError("Notification reminder is not sent - Internal Server Error")

    logger.info(report.summary)
    return JobResult(
        action=SEND_REMINDERS,
        summary=report.summary,
        details={
            "reminders": reminders,
            "completions": completions,
            "groups": report.groups,
            "success_count": report.success_count,
            "failure_count": report.failure_count,
            "failed_rows": ctx.failed_rows,
        },
    )
