"""
Column lists and row → model mapping shared by the SQL backends.

Backends decode their driver-specific values (ISO text vs timestamptz,
JSON text vs jsonb) before handing a plain dict to these builders.
"""

from __future__ import annotations

from typing import Any, Callable

from cronpipe.scheduling.models import (
    ActionKind,
    Attempt,
    AttemptStatus,
    FireCursor,
    Job,
    Run,
    RunStatus,
)

JOB_COLUMNS = (
    "id", "project_id", "name", "kind", "cron", "tz", "target", "method",
    "headers", "body_template", "retry_max", "timeout_ms", "concurrency",
    "paused", "created_at",
)
RUN_COLUMNS = (
    "id", "job_id", "project_id", "trigger_at", "status", "dispatch_attempts",
    "duration_ms", "error", "created_at", "finished_at", "retry_pending",
)
ATTEMPT_COLUMNS = (
    "id", "run_id", "attempt_no", "started_at", "finished_at", "status",
    "http_status", "latency_ms", "response_excerpt", "error",
)


def select_list(table_alias: str, columns: tuple[str, ...], prefix: str) -> str:
    """`j.id AS job_id, j.name AS job_name, ...`"""
    return ", ".join(f"{table_alias}.{c} AS {prefix}{c}" for c in columns)


def unprefix(row: dict[str, Any], prefix: str) -> dict[str, Any]:
    n = len(prefix)
    return {k[n:]: v for k, v in row.items() if k.startswith(prefix)}


Decoder = Callable[[Any], Any]


def job_from_row(d: dict[str, Any], ts: Decoder, js: Decoder) -> Job:
    return Job(
        id=d["id"],
        project_id=d["project_id"],
        name=d["name"],
        kind=ActionKind(d["kind"]),
        cron=d["cron"],
        tz=d["tz"],
        target=d["target"],
        method=d["method"],
        headers=js(d["headers"]) or {},
        body_template=js(d["body_template"]),
        retry_max=d["retry_max"],
        timeout_ms=d["timeout_ms"],
        concurrency=d["concurrency"],
        paused=bool(d["paused"]),
        created_at=ts(d["created_at"]),
    )


def cursor_from_row(d: dict[str, Any], ts: Decoder) -> FireCursor:
    invalid_since = d.get("invalid_since")
    return FireCursor(
        job_id=d["job_id"],
        next_at=ts(d["next_at"]),
        version=d["version"],
        invalid_since=ts(invalid_since) if invalid_since is not None else None,
    )


def run_from_row(d: dict[str, Any], ts: Decoder) -> Run:
    return Run(
        id=d["id"],
        job_id=d["job_id"],
        project_id=d["project_id"],
        trigger_at=ts(d["trigger_at"]),
        status=RunStatus(d["status"]),
        dispatch_attempts=d["dispatch_attempts"],
        duration_ms=d["duration_ms"],
        error=d["error"],
        created_at=ts(d["created_at"]),
        finished_at=ts(d["finished_at"]) if d["finished_at"] is not None else None,
        retry_pending=bool(d["retry_pending"]),
    )


def attempt_from_row(d: dict[str, Any], ts: Decoder) -> Attempt:
    return Attempt(
        id=d["id"],
        run_id=d["run_id"],
        attempt_no=d["attempt_no"],
        started_at=ts(d["started_at"]),
        finished_at=ts(d["finished_at"]),
        status=AttemptStatus(d["status"]),
        http_status=d["http_status"],
        latency_ms=d["latency_ms"],
        response_excerpt=d["response_excerpt"],
        error=d["error"],
    )


# ━━━ Shared SQL ━━━

# A claimed run stays in flight until it is terminal with no redelivery owed.
IN_FLIGHT = "dispatch_attempts >= 1 AND (status = 'running' OR retry_pending)"


def admissible_runs_sql(limit_param: str, locking: str = "") -> str:
    """
    Undispatched runs, admissible ones first, then oldest first.

    A run is admissible while its rank within the job is inside
    `concurrency - in_flight`. Runs over the limit only fill what is left of
    the batch, so a backed-up job cannot push other jobs out of it. Runs whose
    job is gone count as admissible so the dispatcher can skip them.
    *locking* is appended after LIMIT (e.g. FOR UPDATE OF r SKIP LOCKED).
    """
    return f"""
        WITH in_flight AS (
            SELECT job_id, COUNT(*) AS n FROM runs
            WHERE {IN_FLIGHT}
            GROUP BY job_id
        ),
        ranked AS (
            SELECT id, ROW_NUMBER() OVER (PARTITION BY job_id ORDER BY trigger_at, id) AS rn
            FROM runs
            WHERE status = 'running' AND dispatch_attempts = 0
        )
        SELECT {select_list("r", RUN_COLUMNS, "run_")}, {select_list("j", JOB_COLUMNS, "job_")}
        FROM runs r
        JOIN ranked k ON k.id = r.id
        LEFT JOIN jobs j ON j.id = r.job_id
        LEFT JOIN in_flight f ON f.job_id = r.job_id
        ORDER BY
            CASE WHEN j.id IS NULL OR k.rn <= j.concurrency - COALESCE(f.n, 0) THEN 0 ELSE 1 END,
            r.trigger_at ASC, r.id ASC
        LIMIT {limit_param}
        {locking}
    """
