"""
cronpipe exception hierarchy.

Every error in the system inherits from CronPipeError.
Each pipeline stage has its own error class for targeted catching.

Usage:
    try:
        next_at = next_fire(job.cron, job.tz, now)
    except InvalidSchedule as e:
        # Skip the row and raise an alert
    except CronPipeError as e:
        # Handle any cronpipe error
"""


class CronPipeError(Exception):
    """Base exception for all cronpipe errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Configuration ━━━


class ConfigError(CronPipeError):
    """Configuration is invalid, missing, or malformed."""

    pass


# ━━━ Scheduling ━━━


class InvalidSchedule(CronPipeError):
    """Cron expression or timezone is malformed, or has no future occurrence."""

    def __init__(
        self,
        message: str,
        cron: str = "",
        tz: str = "",
        details: dict | None = None,
    ):
        self.cron = cron
        self.tz = tz
        super().__init__(message, details)


class ClaimConflict(CronPipeError):
    """A row was claimed by a concurrent instance first. Expected, not a failure."""

    pass


# ━━━ Store ━━━


class StoreError(CronPipeError):
    """Scheduling store failure."""

    pass


class StoreUnavailable(StoreError):
    """The store could not be reached or the transaction could not run. Transient."""

    pass


class StoreWriteFailure(StoreError):
    """A durable write (attempt, run finalization) did not go through."""

    pass


# ━━━ Queue ━━━


class QueueError(CronPipeError):
    """Work queue failure."""

    pass


class QueuePublishFailure(QueueError):
    """An execution task could not be published."""

    def __init__(self, message: str, run_id: str = "", details: dict | None = None):
        self.run_id = run_id
        super().__init__(message, details)


# ━━━ Actions ━━━


class ActionError(CronPipeError):
    """A job action failed. Terminal for the attempt, never thrown past the executor."""

    def __init__(
        self,
        message: str,
        kind: str = "",
        status_code: int | None = None,
        details: dict | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message, details)


class ActionTimeout(ActionError):
    """The action did not complete within the job's timeout."""

    pass


class ActionTransportError(ActionError):
    """Network-level failure: connection refused, DNS, reset, TLS."""

    pass


class UnsupportedAction(ActionError):
    """The job's action kind has no executable implementation."""

    pass
