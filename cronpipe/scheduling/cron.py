"""
Cron Evaluator — compute the next UTC instant a cron expression fires.

The expression is evaluated against the *wall clock* of an IANA timezone,
so "0 9 * * *" in Europe/Berlin fires at local 09:00 on both sides of a DST
change (07:00 UTC in summer, 08:00 UTC in winter).

croniter walks naive wall-clock datetimes; zoneinfo turns each candidate
back into an instant. Doing the walk on naive values keeps croniter out of
DST arithmetic entirely:

    Skipped wall times (spring forward) fire once, shifted forward by the gap.
    Repeated wall times (fall back) fire once, at the first occurrence,
    unless the reference instant is already inside the second pass.

Usage:
    next_at = next_fire("0 9 * * *", "Europe/Berlin", datetime.now(timezone.utc))

Requires the `croniter` package.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from cronpipe.core.errors import InvalidSchedule

# A wall-clock candidate can fail to map past the reference instant only
# around a fall-back transition, so a handful of tries is always enough.
_MAX_CANDIDATES = 8


def next_fire(cron_expr: str, tz: str, from_instant: datetime) -> datetime:
    """
    Return the first instant strictly after *from_instant* at which
    *cron_expr* fires in timezone *tz*, as an aware UTC datetime.

    A naive *from_instant* is taken to be UTC.

    Raises:
        InvalidSchedule: malformed expression, unknown timezone, or no
            future occurrence (e.g. "0 0 30 2 *").
    """
    zone = _zone(cron_expr, tz)
    _check_expression(cron_expr, tz)
    after = _as_utc(from_instant)
    local = after.astimezone(zone).replace(tzinfo=None)

    try:
        it = croniter(cron_expr, local)
        for _ in range(_MAX_CANDIDATES):
            wall = it.get_next(datetime)
            instant = _resolve(wall, zone, after)
            if instant is not None:
                return instant
    except (CroniterError, ValueError, OverflowError) as e:
        raise InvalidSchedule(
            f"No next occurrence for {cron_expr!r} in {tz}: {e}", cron=cron_expr, tz=tz
        ) from e

    raise InvalidSchedule(
        f"No next occurrence for {cron_expr!r} in {tz}", cron=cron_expr, tz=tz
    )


def upcoming(cron_expr: str, tz: str, from_instant: datetime, count: int = 5) -> list[datetime]:
    """The next *count* firing instants, each computed from the previous one."""
    result: list[datetime] = []
    current = from_instant
    for _ in range(count):
        current = next_fire(cron_expr, tz, current)
        result.append(current)
    return result


def validate_schedule(cron_expr: str | None, tz: str | None) -> datetime:
    """
    Validate a schedule at job creation time.

    Returns the first firing instant from now so callers can seed the
    job's fire cursor with it. Raises InvalidSchedule otherwise.
    """
    if not cron_expr or not cron_expr.strip():
        raise InvalidSchedule("Cron expression is empty", cron=cron_expr or "", tz=tz or "")
    if not tz:
        raise InvalidSchedule("Timezone is empty", cron=cron_expr, tz="")
    return next_fire(cron_expr, tz, datetime.now(timezone.utc))


# ━━━ Helpers ━━━


def _zone(cron_expr: str, tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise InvalidSchedule(f"Unknown timezone: {tz!r}", cron=cron_expr, tz=tz) from e


def _check_expression(cron_expr: str, tz: str) -> None:
    expr = (cron_expr or "").strip()
    fields = expr.split()
    # Five standard fields, or a single @alias such as "@daily".
    if not (len(fields) == 5 or (len(fields) == 1 and expr.startswith("@"))):
        raise InvalidSchedule(
            f"Expected 5 cron fields, got {len(fields)}: {cron_expr!r}", cron=cron_expr, tz=tz
        )
    if not croniter.is_valid(expr):
        raise InvalidSchedule(f"Malformed cron expression: {cron_expr!r}", cron=cron_expr, tz=tz)


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def _resolve(wall: datetime, zone: ZoneInfo, after: datetime) -> datetime | None:
    """Map a naive wall-clock time in *zone* to the earliest instant past *after*."""
    for fold in (0, 1):
        instant = wall.replace(tzinfo=zone, fold=fold).astimezone(timezone.utc)
        if instant > after:
            return instant
    return None
