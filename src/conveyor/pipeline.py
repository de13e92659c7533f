from __future__ import annotations

import logging
from typing import Any

from conveyor.config import ConveyorConfig
from conveyor.decisions import Decision, DecisionProvider, Escalation, EscalationKind
from conveyor.errors import (
    ConveyorError,
    FormatError,
    GateRegressionError,
    NothingToImplementError,
    ReviewLoopExceededError,
    StageBlockedError,
    StageIncompleteError,
    WorkerFailureError,
)
from conveyor.gates import PIPELINE_STAGES, GateResult, Stage, evaluate, mentions
from conveyor.governor import Bound, IterationGovernor, Outcome, Verdict
from conveyor.markers import count_checkboxes, flip_checkboxes, write_status
from conveyor.report import RunReport
from conveyor.store.base import ArtifactKey, ArtifactStore
from conveyor.workers.base import ResultKind, Worker, WorkerError, WorkerRequest, WorkerResult

logger = logging.getLogger(__name__)

STAGE_TARGETS = {
    Stage.REQUIREMENTS: ArtifactKey.requirements,
    Stage.RESEARCH_PLAN: ArtifactKey.plan,
    Stage.TASK_BREAKDOWN: ArtifactKey.tasklist,
    Stage.IMPLEMENTATION: ArtifactKey.tasklist,
    Stage.REVIEW: ArtifactKey.review_report,
    Stage.DOCUMENTATION: ArtifactKey.summary_doc,
    Stage.VALIDATION: ArtifactKey.summary_doc,
}


def _describe(result: GateResult) -> str:
    return result.status.value


class StagePipeline:
    """Drives one unit of work through the ordered stage list.

    Every decision is taken from gate results over the artifact store, so a
    run interrupted anywhere restarts at the first stage whose gate is still
    pending.
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
        self.review_extension = max(0, int(review_extension))

    def _artifact_refs(self, unit: str) -> dict[str, str]:
        keys = [
            ArtifactKey.requirements(unit),
            ArtifactKey.plan(unit),
            ArtifactKey.tasklist(unit),
            ArtifactKey.review_report(unit),
            ArtifactKey.summary_doc(unit),
            ArtifactKey.changelog(),
        ]
        return {str(key): str(self.store.path_for(key)) for key in keys if self.store.exists(key)}

    def _request(self, unit: str, stage: Stage, commit: bool, **context: Any) -> WorkerRequest:
        target_factory = STAGE_TARGETS.get(stage)
        target = (
            self.store.path_for(target_factory(unit))
            if target_factory is not None
            else self.store.path_for(ArtifactKey.changelog())
        )
        return WorkerRequest(
            unit=unit,
            stage=stage.value,
            context={"commit": commit, "target": str(target), **context},
            artifacts=self._artifact_refs(unit),
        )

    def _unchecked_tasks(self, unit: str) -> int:
        key = ArtifactKey.tasklist(unit)
        text = self.store.read_optional(key)
        if text is None:
            return 0
        return count_checkboxes(text, artifact=str(key)).unchecked

    async def _invoke(
        self,
        unit: str,
        stage: Stage,
        before: GateResult,
        commit: bool,
        report: RunReport,
        failures: IterationGovernor,
        **context: Any,
    ) -> WorkerResult:
        """Invoke the stage worker until it returns something other than FAILURE."""
        while True:
            request = self._request(unit, stage, commit, **context)
            try:
                result = await self.worker.invoke(request)
            except WorkerError as exc:
                result = WorkerResult.failure(str(exc))
            if result.kind is not ResultKind.FAILURE:
                failures.record(stage.value, Outcome.SUCCESS)
                return result

            report.record(
                stage.value, _describe(before), "invoke", result="FAILURE", detail=result.error
            )
            verdict = failures.record(stage.value, Outcome.FAILURE)
            if verdict is Verdict.CONTINUE:
                logger.warning("%s worker failed for %s, retrying: %s", stage, unit, result.error)
                continue
            decision = "skip" if verdict is Verdict.SKIP_UNIT else "stop"
            raise WorkerFailureError(
                f"{stage.value} worker failed {failures.streak(stage.value)} times "
                f"in a row ({result.error}); decision: {decision}",
                stage=stage.value,
                decision=decision,
            )

    def _approve_plan(self, unit: str, result: WorkerResult, report: RunReport) -> None:
        escalation = Escalation(
            kind=EscalationKind.APPROVAL,
            unit=unit,
            reason=result.reason or "plan is waiting for approval",
            options=(Decision.APPROVE, Decision.STOP),
        )
        decision = self.decisions.resolve(escalation)
        report.escalations.append({**escalation.to_dict(), "decision": decision.value})
        if decision is not Decision.APPROVE:
            raise StageBlockedError(
                f"{Stage.RESEARCH_PLAN.value} blocked: {escalation.reason}",
                stage=Stage.RESEARCH_PLAN.value,
            )
        key = ArtifactKey.plan(unit)
        if not self.store.exists(key):
            raise StageIncompleteError(
                f"{Stage.RESEARCH_PLAN.value}: stage did not produce required artifact ({key})",
                stage=Stage.RESEARCH_PLAN.value,
            )
        self.store.update(key, lambda text: write_status(text, "APPROVED"))
        logger.info("plan for %s approved", unit)

    def _sync_phase_lines(self, unit: str) -> int:
        counts: list[int] = []

        def _flip(text: str) -> str:
            updated, count = flip_checkboxes(text, lambda box: mentions(box.text, unit))
            counts.append(count)
            return updated

        for phase in self.store.list_phase_details():
            self.store.update(ArtifactKey.phase_detail(phase), _flip)
        flipped = sum(counts)
        if flipped:
            logger.info("checked %s phase lines for %s", flipped, unit)
        return flipped

    def _resume(
        self, unit: str, stage: Stage, before: GateResult, report: RunReport
    ) -> GateResult | None:
        """Finish a stage from what an earlier run left behind, without the worker.

        A plan that exists but is not approved goes straight to approval, and
        a changelog that already mentions the unit only needs its phase lines
        checked. Returns None when the worker still has to run.
        """
        if stage is Stage.RESEARCH_PLAN and before.token is not None:
            self._approve_plan(unit, WorkerResult.blocked(before.reason), report)
            action, detail = "approve", before.reason
        elif stage is Stage.SYNC:
            changelog = self.store.read_optional(ArtifactKey.changelog())
            if changelog is None or not mentions(changelog, unit):
                return None
            flipped = self._sync_phase_lines(unit)
            action, detail = "sync", f"checked {flipped} phase lines"
        else:
            return None

        after = evaluate(stage, self.store, unit)
        if stage is Stage.SYNC and not after.passed:
            return None
        report.record(stage.value, _describe(before), action, after=_describe(after), detail=detail)
        if not after.passed:
            raise StageIncompleteError(
                f"{stage.value}: stage did not produce required artifact ({after.reason})",
                stage=stage.value,
            )
        logger.info("%s for %s resumed without the worker (%s)", stage.value, unit, action)
        return after

    async def _run_stage(
        self,
        unit: str,
        stage: Stage,
        commit: bool,
        report: RunReport,
        failures: IterationGovernor,
    ) -> GateResult:
        before = evaluate(stage, self.store, unit)
        if stage is Stage.IMPLEMENTATION and before.vacuous:
            raise NothingToImplementError(
                f"{stage.value}: nothing to implement ({before.reason})", stage=stage.value
            )
        if before.passed:
            report.record(stage.value, _describe(before), "skip", after="PASSED")
            logger.info("%s passed for %s, skipping", stage.value, unit)
            return before

        resumed = self._resume(unit, stage, before, report)
        if resumed is not None:
            return resumed

        result = await self._invoke(unit, stage, before, commit, report, failures)
        detail = result.reason
        if result.kind is ResultKind.BLOCKED:
            if stage is not Stage.RESEARCH_PLAN:
                raise StageBlockedError(
                    f"{stage.value} blocked: {result.reason or 'no reason given'}",
                    stage=stage.value,
                )
            self._approve_plan(unit, result, report)
        if stage is Stage.SYNC:
            flipped = self._sync_phase_lines(unit)
            detail = f"checked {flipped} phase lines"

        after = evaluate(stage, self.store, unit)
        report.record(
            stage.value,
            _describe(before),
            "invoke",
            after=_describe(after),
            result=result.kind.value,
            detail=detail or after.reason,
        )
        if not after.passed:
            raise StageIncompleteError(
                f"{stage.value}: stage did not produce required artifact ({after.reason})",
                stage=stage.value,
            )
        return after

    async def _run_review(
        self,
        unit: str,
        commit: bool,
        report: RunReport,
        failures: IterationGovernor,
        review: IterationGovernor,
    ) -> bool:
        """Return True when the review passed, False when IMPLEMENTATION reopens."""
        stage = Stage.REVIEW
        before = evaluate(stage, self.store, unit)
        if before.passed:
            report.record(stage.value, _describe(before), "skip", after="PASSED")
            return True

        baseline = self._unchecked_tasks(unit)
        result = await self._invoke(
            unit, stage, before, commit, report, failures, review_round=review.counter.value + 1
        )
        after = evaluate(stage, self.store, unit)
        if result.kind in (ResultKind.NEEDS_FIXES, ResultKind.BLOCKED):
            verdict = result.kind.value
        elif after.passed:
            report.record(
                stage.value, _describe(before), "invoke", after="PASSED", result=result.kind.value
            )
            return True
        elif after.token in ("NEEDS_FIXES", "BLOCKED"):
            verdict = after.token
        else:
            raise StageIncompleteError(
                f"{stage.value}: stage did not produce required artifact ({after.reason})",
                stage=stage.value,
            )

        appended = self._unchecked_tasks(unit) - baseline
        if appended <= 0:
            raise FormatError(
                f"Review returned {verdict} without appending unchecked tasks",
                artifact=str(ArtifactKey.tasklist(unit)),
                stage=stage.value,
            )
        if review.begin_iteration() is Verdict.STOP:
            raise ReviewLoopExceededError(
                f"{stage.value}: review loop exceeded {review.bound.limit} rounds; "
                "manual intervention required",
                stage=stage.value,
            )
        report.record(
            stage.value,
            _describe(before),
            "reopen",
            after=_describe(after),
            result=verdict,
            detail=f"{appended} new tasks, round {review.counter.value}",
        )
        logger.info("review of %s returned %s, reopening implementation", unit, verdict)
        return False

    def _verify_passed(self, unit: str, passed: dict[Stage, GateResult]) -> None:
        for stage in list(passed):
            current = evaluate(stage, self.store, unit)
            if not current.passed:
                raise GateRegressionError(
                    f"{stage.value} gate passed earlier in this run but now reads PENDING "
                    f"({current.reason})",
                    stage=stage.value,
                )

    async def run(
        self, unit: str, *, commit: bool = True, report: RunReport | None = None
    ) -> RunReport:
        report = report or RunReport(unit=unit, shape="pipeline")
        loops = self.config.loops
        failures = IterationGovernor(
            "stage-failures",
            None,
            decisions=self.decisions,
            failure_limit=loops.failure_streak_limit,
        )
        review = IterationGovernor(
            "review",
            Bound(loops.review_bound, extension=self.review_extension),
            decisions=self.decisions,
        )
        passed: dict[Stage, GateResult] = {}
        index = 0
        try:
            while index < len(PIPELINE_STAGES):
                stage = PIPELINE_STAGES[index]
                try:
                    self._verify_passed(unit, passed)
                    if stage is Stage.REVIEW:
                        if not await self._run_review(unit, commit, report, failures, review):
                            passed.pop(Stage.IMPLEMENTATION, None)
                            index = PIPELINE_STAGES.index(Stage.IMPLEMENTATION)
                            continue
                        passed[stage] = evaluate(stage, self.store, unit)
                    else:
                        passed[stage] = await self._run_stage(
                            unit, stage, commit, report, failures
                        )
                except ConveyorError as exc:
                    if exc.stage is None:
                        exc.stage = stage.value
                    raise
                index += 1
            self._verify_passed(unit, passed)
        finally:
            report.iterations = review.counter.value
            report.escalations.extend(failures.escalations)
            report.escalations.extend(review.escalations)
        report.outcome = "complete"
        logger.info("%s complete", unit)
        return report
