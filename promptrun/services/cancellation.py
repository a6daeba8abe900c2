"""Run cancellation: local abort token plus best-effort remote cancel."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

from promptrun.core.exceptions import PromptRunError
from promptrun.core.logging import get_logger

if TYPE_CHECKING:
    from promptrun.services.run_state import RunStateMachine

logger = get_logger(__name__)


class CancellationToken:
    """One-shot abort signal owned by a run.

    Callbacks run synchronously inside ``cancel()``. A callback added after
    cancellation runs immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def cancel(self) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._cancelled:
            return False
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}", exc_info=True)
        return True


class CancelOutcome(str, Enum):
    # Server stopped the response
    CANCELLED = "cancelled"
    # Server had already finished; the local run is cancelled regardless
    ALREADY_COMPLETED = "already_completed"
    # No response id was known, only the local stream was aborted
    LOCAL_ONLY = "local_only"
    # Remote request failed; the local run is cancelled regardless
    REMOTE_FAILED = "remote_failed"
    # Run was already terminal
    NOOP = "noop"


@dataclass(frozen=True)
class CancelResult:
    outcome: CancelOutcome
    response_id: Optional[str] = None
    warning: Optional[str] = None

    @property
    def remote_attempted(self) -> bool:
        return self.response_id is not None


class RemoteCanceller(Protocol):
    async def cancel_response(self, response_id: str) -> str:
        """Ask the server to stop a response. Returns its reported status."""
        ...


class CancellationCoordinator:
    """Drives the cancel protocol for a run.

    1. Capture and clear the remote response id, with no await in between,
       so only one caller ever sees it.
    2. Fire the run's token, which aborts the local stream, and resolve the
       run as cancelled.
    3. If an id was captured, issue the remote cancel. Its failure is
       reported on the result, never raised.
    """

    def __init__(self, remote: Optional[RemoteCanceller] = None):
        self.remote = remote

    async def cancel(self, machine: "RunStateMachine") -> CancelResult:
        run = machine.run
        if run.is_terminal:
            return CancelResult(CancelOutcome.NOOP)

        response_id = run.take_remote_response_id()
        run.token.cancel()
        machine.mark_cancelled()

        if response_id is None:
            logger.info("Cancelled run locally", data={"run_id": run.run_id})
            return CancelResult(CancelOutcome.LOCAL_ONLY)

        return await self.cancel_remote(run.run_id, response_id)

    async def cancel_remote(self, run_id: str, response_id: str) -> CancelResult:
        """Ask the server to stop ``response_id``. Never raises."""
        if self.remote is None:
            return CancelResult(
                CancelOutcome.REMOTE_FAILED,
                response_id=response_id,
                warning="No remote canceller configured",
            )

        try:
            status = await self.remote.cancel_response(response_id)
        except PromptRunError as e:
            logger.warning(
                "Remote cancel failed",
                data={"run_id": run_id, "response_id": response_id, "error": e.message, "code": e.code},
            )
            return CancelResult(CancelOutcome.REMOTE_FAILED, response_id=response_id, warning=e.message)
        except Exception as e:
            logger.warning(
                f"Remote cancel failed: {e}",
                data={"run_id": run_id, "response_id": response_id},
                exc_info=True,
            )
            return CancelResult(CancelOutcome.REMOTE_FAILED, response_id=response_id, warning=str(e))

        if status == "completed":
            logger.info(
                "Response finished before cancel reached the server",
                data={"run_id": run_id, "response_id": response_id},
            )
            return CancelResult(
                CancelOutcome.ALREADY_COMPLETED,
                response_id=response_id,
                warning="Response had already completed",
            )

        logger.info("Cancelled run", data={"run_id": run_id, "response_id": response_id})
        return CancelResult(CancelOutcome.CANCELLED, response_id=response_id)
