from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .worker import ExecutionTask


class VppxError(RuntimeError):
    """Base class for errors raised by the trading core."""


class StrategyValidationError(VppxError):
    """Malformed strategy, rule or action."""


class StrategyConflictError(StrategyValidationError):
    """Illegal lifecycle move, edit of an active strategy or stale version."""


class StrategyNotFoundError(VppxError):
    pass


class StrategyNotActiveError(VppxError):
    pass


class TaskStateError(VppxError):
    pass


class QueueFullError(VppxError):
    pass


class RiskRejection(VppxError):
    def __init__(self, reason_code: str, reason: str, task: ExecutionTask | None = None) -> None:
        super().__init__(reason)
        self.reason_code = reason_code
        self.reason = reason
        self.task = task


class TransientExecutionFailure(VppxError):
    pass


class TerminalExecutionFailure(VppxError):
    def __init__(self, message: str, cause_chain: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.cause_chain = list(cause_chain)


class SimulationDataError(VppxError):
    pass


class BacktestCancelled(VppxError):
    pass


class TaskNotFoundError(VppxError):
    pass


class BacktestRunNotFoundError(VppxError):
    pass
