"""
"Run all" for a notebook: submit cells in document order, one at a time per kernel session.

Cells bound to the same session form a lane and run strictly sequentially, the next cell is only
enqueued once the previous one settled. Lanes on different sessions run concurrently. What
happens after a failing cell depends on the ErrorPolicy, but system faults (lost connection,
dead session, cancellation) always end the affected lane since nothing after them can run.
"""
import asyncio
import uuid
from typing import Dict, Iterable, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from cellrunner.engine.queue import ExecutionQueue
from cellrunner.errors import ExecutionTimeout, KernelRuntimeError
from cellrunner.models.execution import CellSpec, CellStatus
from cellrunner.settings import ErrorPolicy

logger = structlog.get_logger(__name__)


class RunAllReport(BaseModel):
    completed: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    # Empty cells, and cells never submitted because the run stopped
    skipped: List[str] = Field(default_factory=list)
    stopped: bool = False


class _Run:
    def __init__(self, error_policy: ErrorPolicy):
        self.error_policy = error_policy
        self.report = RunAllReport()
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True
        self.report.stopped = True


class RunAllOrchestrator:
    def __init__(
        self,
        queue: ExecutionQueue,
        error_policy: ErrorPolicy = ErrorPolicy.continue_on_error,
    ):
        self.queue = queue
        self.error_policy = error_policy
        self._runs: Set[_Run] = set()

    @property
    def running(self) -> bool:
        return bool(self._runs)

    def stop(self) -> None:
        """Stop every active run once the cells currently executing settle."""
        for run in self._runs:
            run.stop()

    async def run_all(
        self,
        cells: Iterable[CellSpec],
        session_id: Optional[uuid.UUID] = None,
        error_policy: Optional[ErrorPolicy] = None,
        timeout: Optional[float] = None,
    ) -> RunAllReport:
        """
        Run {cells} in order. Cells without a session_id of their own run on {session_id}.
        Raises ValueError before anything runs if a cell ends up with no session at all.
        """
        run = _Run(error_policy or self.error_policy)
        lanes: Dict[uuid.UUID, List[CellSpec]] = {}
        for cell in cells:
            if not cell.code.strip():
                run.report.skipped.append(cell.cell_id)
                continue
            cell_session = cell.session_id or session_id
            if cell_session is None:
                raise ValueError(f"Cell {cell.cell_id} is not bound to a kernel session")
            lanes.setdefault(cell_session, []).append(cell)

        logger.info(
            "Starting run-all",
            cells=sum(len(lane) for lane in lanes.values()),
            sessions=len(lanes),
            error_policy=run.error_policy.value,
        )
        self._runs.add(run)
        try:
            await asyncio.gather(
                *(self._run_lane(run, sid, lane, timeout) for sid, lane in lanes.items())
            )
        finally:
            self._runs.discard(run)
        logger.info(
            "Finished run-all",
            completed=len(run.report.completed),
            failed=len(run.report.failed),
            skipped=len(run.report.skipped),
            stopped=run.report.stopped,
        )
        return run.report

    async def _run_lane(
        self,
        run: _Run,
        session_id: uuid.UUID,
        cells: List[CellSpec],
        timeout: Optional[float],
    ) -> None:
        report = run.report
        for index, cell in enumerate(cells):
            if run.stopped:
                report.skipped.extend(c.cell_id for c in cells[index:])
                return
            try:
                request = await self.queue.enqueue(session_id, cell.cell_id, cell.code, timeout)
                state = await request
            except ExecutionTimeout:
                report.failed.append(cell.cell_id)
                if run.error_policy is ErrorPolicy.stop_on_error:
                    run.stop()
                continue
            except KernelRuntimeError as e:
                report.failed.append(cell.cell_id)
                report.skipped.extend(c.cell_id for c in cells[index + 1 :])
                logger.warning(
                    "Stopping run-all on session",
                    session_id=str(session_id),
                    cell_id=cell.cell_id,
                    error=str(e),
                )
                return

            if state.status is CellStatus.error:
                report.failed.append(cell.cell_id)
                if run.error_policy is ErrorPolicy.stop_on_error:
                    run.stop()
            else:
                report.completed.append(cell.cell_id)
