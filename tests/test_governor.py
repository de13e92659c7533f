import pytest

from conveyor.decisions import (
    Decision,
    DecisionProvider,
    Escalation,
    EscalationKind,
    PresetDecisionProvider,
)
from conveyor.errors import BoundExceededError, ConveyorError
from conveyor.governor import Bound, IterationGovernor, Outcome, Verdict


class RecordingDecisions(DecisionProvider):
    def __init__(self, *answers: Decision) -> None:
        self.answers = list(answers)
        self.asked: list[Escalation] = []

    def decide(self, escalation: Escalation) -> Decision:
        self.asked.append(escalation)
        if self.answers:
            return self.answers.pop(0)
        return Decision.STOP


def test_two_consecutive_failures_escalate() -> None:
    decisions = RecordingDecisions(Decision.SKIP_UNIT)
    governor = IterationGovernor("phases", None, decisions=decisions)

    assert governor.record("phase-5", Outcome.FAILURE) is Verdict.CONTINUE
    assert governor.record("phase-5", Outcome.FAILURE) is Verdict.SKIP_UNIT

    assert len(decisions.asked) == 1
    assert decisions.asked[0].kind is EscalationKind.FAILURE_STREAK
    assert decisions.asked[0].options == (Decision.SKIP_UNIT, Decision.STOP)
    assert governor.escalations[0]["decision"] == "skip"


def test_success_between_failures_resets_the_streak() -> None:
    decisions = RecordingDecisions()
    governor = IterationGovernor("phases", None, decisions=decisions)

    governor.record("phase-5", Outcome.FAILURE)
    governor.record("phase-5", Outcome.SUCCESS)
    assert governor.record("phase-5", Outcome.FAILURE) is Verdict.CONTINUE

    assert decisions.asked == []
    assert governor.streak("phase-5") == 1


def test_partial_progress_is_not_a_failure() -> None:
    decisions = RecordingDecisions()
    governor = IterationGovernor("phases", None, decisions=decisions)

    governor.record("phase-2", Outcome.FAILURE)
    assert governor.record("phase-2", Outcome.PARTIAL) is Verdict.CONTINUE
    assert governor.record("phase-2", Outcome.FAILURE) is Verdict.CONTINUE
    assert decisions.asked == []


def test_streaks_are_scoped_per_unit() -> None:
    decisions = RecordingDecisions()
    governor = IterationGovernor("phases", None, decisions=decisions)

    governor.record("phase-1", Outcome.FAILURE)
    assert governor.record("phase-2", Outcome.FAILURE) is Verdict.CONTINUE
    assert decisions.asked == []


def test_escalation_is_decided_once_per_unit() -> None:
    decisions = RecordingDecisions(Decision.STOP)
    governor = IterationGovernor("phases", None, decisions=decisions)

    governor.record("phase-3", Outcome.FAILURE)
    assert governor.record("phase-3", Outcome.FAILURE) is Verdict.STOP
    assert governor.record("phase-3", Outcome.FAILURE) is Verdict.STOP
    assert governor.record("phase-3", Outcome.SUCCESS) is Verdict.STOP
    assert len(decisions.asked) == 1


def test_success_completes_when_done() -> None:
    governor = IterationGovernor("phases", None, decisions=RecordingDecisions())

    assert governor.record("phase-1", Outcome.SUCCESS, done=True) is Verdict.COMPLETE
    assert governor.record("phase-1", Outcome.SUCCESS) is Verdict.CONTINUE


def test_bound_extension_allows_five_more_iterations() -> None:
    decisions = RecordingDecisions(Decision.EXTEND_BOUND)
    governor = IterationGovernor("phases", Bound(10, extension=5), decisions=decisions)

    verdicts = [governor.begin_iteration() for _ in range(15)]

    assert verdicts == [Verdict.CONTINUE] * 15
    assert len(decisions.asked) == 1
    assert decisions.asked[0].kind is EscalationKind.BOUND_EXCEEDED
    assert decisions.asked[0].options == (Decision.EXTEND_BOUND, Decision.STOP)
    assert governor.bound is not None and governor.bound.limit == 15

    assert governor.begin_iteration() is Verdict.STOP
    assert len(decisions.asked) == 1
    assert [entry["decision"] for entry in governor.escalations] == ["extend", "stop"]
    assert governor.escalations[1]["options"] == ["stop"]


def test_bound_without_extension_stops() -> None:
    governor = IterationGovernor(
        "phases", Bound(10, extension=5), decisions=PresetDecisionProvider()
    )

    verdicts = [governor.begin_iteration() for _ in range(11)]

    assert verdicts[:10] == [Verdict.CONTINUE] * 10
    assert verdicts[10] is Verdict.STOP


def test_bound_extends_only_once() -> None:
    bound = Bound(3, extension=2)

    assert bound.extend() == 5
    with pytest.raises(BoundExceededError):
        bound.extend()
    with pytest.raises(BoundExceededError):
        Bound(3).extend()


def test_preset_answers_only_what_was_preapproved() -> None:
    approval = Escalation(
        EscalationKind.APPROVAL, "U-1", "plan ready", (Decision.APPROVE, Decision.STOP)
    )
    bound = Escalation(
        EscalationKind.BOUND_EXCEEDED, "phases", "11 > 10", (Decision.EXTEND_BOUND, Decision.STOP)
    )

    assert PresetDecisionProvider().resolve(approval) is Decision.STOP
    assert PresetDecisionProvider(approve_plans=True).resolve(approval) is Decision.APPROVE
    assert PresetDecisionProvider(approve_plans=True).resolve(bound) is Decision.STOP
    assert PresetDecisionProvider(extend_bound=True).resolve(bound) is Decision.EXTEND_BOUND


def test_resolve_rejects_answers_outside_the_options() -> None:
    escalation = Escalation(
        EscalationKind.FAILURE_STREAK, "phase-1", "2 failures", (Decision.SKIP_UNIT, Decision.STOP)
    )

    with pytest.raises(ConveyorError, match="not one of"):
        RecordingDecisions(Decision.APPROVE).resolve(escalation)
