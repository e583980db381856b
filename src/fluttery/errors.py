from __future__ import annotations


class FlutteryError(RuntimeError):
    """Base class for every error raised by the session core."""

    code = "internal"
    retriable = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


class CapacityExceededError(FlutteryError):
    """Raised when the configured number of concurrent sessions is reached."""

    code = "capacity_exceeded"
    retriable = True


class PortsExhaustedError(FlutteryError):
    """Raised when every port of the preview range is held."""

    code = "ports_exhausted"
    retriable = True


class StartError(FlutteryError):
    """Raised when a development server fails to become ready."""

    code = "start_error"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "process",
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.exit_code = exit_code


class SessionNotFoundError(FlutteryError):
    code = "not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotReadyError(FlutteryError):
    code = "not_ready"
    retriable = True

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session {session_id} is not ready (status: {status})")
        self.session_id = session_id
        self.status = status


class RunNotFoundError(FlutteryError):
    code = "run_not_found"


class RunInProgressError(FlutteryError):
    """Raised when a session already has a run in planning/executing/integrating."""

    code = "run_in_progress"
    retriable = True


class PlanningError(FlutteryError):
    code = "planning_failed"


class CycleError(PlanningError):
    code = "cycle"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Task graph contains a cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class WorkerError(FlutteryError):
    """Raised by a worker when its generated output is unusable."""

    code = "worker_failed"
    retriable = True


class TaskFailedError(FlutteryError):
    code = "task_failed"
    retriable = True

    def __init__(self, message: str, *, task_id: str, kind: str) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.kind = kind


class ReloadError(FlutteryError):
    code = "reload_failed"


class WorkspaceError(FlutteryError):
    code = "workspace_error"
