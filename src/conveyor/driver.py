from __future__ import annotations

import logging
from typing import Any

from conveyor.config import ConveyorConfig
from conveyor.decisions import DecisionProvider
from conveyor.errors import (
    ConveyorError,
    FormatError,
    GateRegressionError,
    PhaseDependencyError,
    ResolutionError,
)
from conveyor.gates import PIPELINE_STAGES, evaluate, evaluate_phase
from conveyor.governor import Bound, IterationGovernor, Outcome, Verdict
from conveyor.phases import PhaseReconciler, Reconciliation, unmet_dependencies
from conveyor.pipeline import StagePipeline
from conveyor.report import RunReport
from conveyor.store.base import ArtifactKey, ArtifactStore, validate_unit
from conveyor.workers.base import ResultKind, Worker, WorkerError, WorkerRequest, WorkerResult
from conveyor.workers.roles import PHASE_STAGE

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs units of work and the phase loop against one artifact store.

    Nothing here survives a restart except what the store holds; both
    ``run_unit`` and ``run_phases`` re-derive their position from artifacts.
    """

    def __init__(
        self,
        store: ArtifactStore,
        worker: Worker,
        config: ConveyorConfig,
        decisions: DecisionProvider,
        *,
        review_extension: int = 0,
    ) -> None:
        self.store = store
        self.worker = worker
        self.config = config
        self.decisions = decisions
        self.reconciler = PhaseReconciler(store)
        self.pipeline = StagePipeline(
            store, worker, config, decisions, review_extension=review_extension
        )

    def resolve_unit(self, unit: str | None = None) -> str:
        if unit is not None and unit.strip():
            return validate_unit(unit)
        key = ArtifactKey.active_unit_pointer()
        text = self.store.read_optional(key)
        if text is None:
            raise ResolutionError(
                f"No unit of work given and no active unit pointer at {self.store.path_for(key)}."
            )
        for line in text.splitlines():
            candidate = line.strip()
            if candidate and not candidate.startswith("#"):
                return validate_unit(candidate)
        raise ResolutionError(f"Active unit pointer {key} is empty.")

    async def run_unit(self, unit: str | None = None, *, commit: bool = True) -> RunReport:
        report = RunReport(unit=unit or "", shape="pipeline")
        try:
            report.unit = self.resolve_unit(unit)
            logger.info("running pipeline for %s (commit=%s)", report.unit, commit)
            await self.pipeline.run(report.unit, commit=commit, report=report)
        except ConveyorError as exc:
            report.fail(exc)
            exc.report = report
            logger.error("%s failed at %s: %s", report.unit or "unit", exc.stage, exc)
            raise
        return report

    async def _run_phase(self, number: int, reconciliation: Reconciliation) -> WorkerResult:
        key = ArtifactKey.phase_detail(number)
        row = reconciliation.summary.row(number)
        request = WorkerRequest(
            unit=f"phase-{number}",
            stage=PHASE_STAGE,
            context={
                "phase": number,
                "title": row.title if row else "",
                "target": str(self.store.path_for(key)),
            },
            artifacts={
                str(ArtifactKey.phase_summary()): str(
                    self.store.path_for(ArtifactKey.phase_summary())
                ),
                str(key): str(self.store.path_for(key)),
            },
        )
        try:
            return await self.worker.invoke(request)
        except WorkerError as exc:
            return WorkerResult.failure(str(exc))

    def _verify_finished(self, finished: set[int]) -> None:
        for number in sorted(finished):
            current = evaluate_phase(self.store, number)
            if not current.passed:
                raise GateRegressionError(
                    f"phase {number} was done earlier in this run but now reads PENDING "
                    f"({current.reason})",
                    stage=current.stage,
                )

    async def run_phases(self) -> RunReport:
        loops = self.config.loops
        report = RunReport(unit="phases", shape="phases")
        governor = IterationGovernor(
            "phases",
            Bound(loops.phase_bound, extension=loops.bound_extension),
            decisions=self.decisions,
            failure_limit=loops.failure_streak_limit,
        )
        skipped: set[int] = set()
        finished: set[int] = set()
        try:
            while True:
                self._verify_finished(finished)
                reconciliation = self.reconciler.reconcile(exclude=skipped)
                finished.update(row.number for row in reconciliation.summary.rows if row.done)
                row = reconciliation.current
                if row is None:
                    if skipped:
                        report.stop(f"remaining phases were skipped: {sorted(skipped)}")
                    else:
                        report.outcome = "complete"
                        report.reason = "all phases done"
                    break

                if governor.begin_iteration() is Verdict.STOP:
                    report.stop(
                        f"phase loop bound of {governor.bound.limit} iterations reached",
                        stage=f"phase-{row.number}",
                    )
                    break
                report.iterations = governor.counter.value

                unmet = unmet_dependencies(row, reconciliation.summary)
                if unmet:
                    message = f"phase {row.number} depends on phases that are not done: {unmet}"
                    if loops.enforce_phase_dependencies:
                        raise PhaseDependencyError(message, phase=row.number, unmet=unmet)
                    logger.warning("%s; continuing", message)

                self.reconciler.materialize(row, reconciliation.summary)
                before = self.reconciler.count(row.number)
                result = await self._run_phase(row.number, reconciliation)
                after = self.reconciler.count(row.number)

                done = evaluate_phase(self.store, row.number).passed
                if done:
                    finished.add(row.number)
                progressed = (
                    after is not None and before is not None and after.checked > before.checked
                )
                if result.kind in (ResultKind.FAILURE, ResultKind.BLOCKED):
                    outcome = Outcome.FAILURE
                elif done:
                    outcome = Outcome.SUCCESS
                elif progressed:
                    outcome = Outcome.PARTIAL
                else:
                    outcome = Outcome.FAILURE

                name = f"phase-{row.number}"
                report.record(
                    name,
                    before.progress if before else "0/?",
                    "invoke",
                    after=after.progress if after else "0/?",
                    result=outcome.value,
                    detail=result.error or result.reason,
                )
                verdict = governor.record(name, outcome, done=done)
                if verdict is Verdict.SKIP_UNIT:
                    logger.warning("skipping %s for the rest of this run", name)
                    skipped.add(row.number)
                elif verdict is Verdict.STOP:
                    report.stop(f"stopped after repeated failures of {name}", stage=name)
                    break
        except ConveyorError as exc:
            report.fail(exc)
            exc.report = report
            logger.error("phase loop failed: %s", exc)
            raise
        finally:
            report.escalations.extend(governor.escalations)
        return report

    def reconcile(self, *, dry_run: bool = False) -> Reconciliation:
        return self.reconciler.reconcile(write=not dry_run)

    def status(self, unit: str | None = None) -> dict[str, Any]:
        resolved = self.resolve_unit(unit)
        gates: list[dict[str, Any]] = []
        for stage in PIPELINE_STAGES:
            try:
                gates.append(evaluate(stage, self.store, resolved).to_dict())
            except FormatError as exc:
                gates.append({"stage": stage.value, "status": "ERROR", "reason": str(exc)})
        payload: dict[str, Any] = {"unit": resolved, "gates": gates}
        if self.store.exists(ArtifactKey.phase_summary()):
            try:
                payload["phases"] = self.reconciler.reconcile(write=False).to_dict()
            except FormatError as exc:
                payload["phases"] = {"error": str(exc)}
        return payload
