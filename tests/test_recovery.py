from __future__ import annotations

import pytest

from tera.agent.errors import ExecutionError, RecoveryExhausted
from tera.agent.models import Action, Plan, RecoveryChoice
from tera.agent.recovery import ErrorCategory, RecoveryManager, classify_error

CORRECTED = '<tools name="run_command"><command>python3 -m pytest</command></tools>'


class FakeClient:
    def __init__(self, responses: list[str] | None = None) -> None:
        self.responses = responses or [CORRECTED]
        self.calls: list[dict[str, object]] = []

    def generate_corrected_plan(
        self,
        task: str,
        prior_plan: str,
        completed_steps: list[str],
        error_message: str,
        classification: str,
        instructions: str | None = None,
    ) -> str:
        self.calls.append(
            {
                "task": task,
                "prior_plan": prior_plan,
                "completed_steps": completed_steps,
                "error_message": error_message,
                "classification": classification,
                "instructions": instructions,
            }
        )
        return self.responses[min(len(self.calls), len(self.responses)) - 1]


def _failure(manager: RecoveryManager, message: str = "pytest: command not found"):
    action = Action(kind="run_command", description="Run tests", params={"command": "pytest"})
    return manager.handle(
        task="run the tests",
        plan=Plan(actions=[action]),
        failed_action=action,
        completed_steps=["Create config"],
        error=ExecutionError(message),
    )


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("bash: pytest: command not found", ErrorCategory.MISSING_COMMAND),
        ("cp: cannot create regular file: Permission denied", ErrorCategory.PERMISSION),
        ("cat: a.txt: No such file or directory", ErrorCategory.MISSING_FILE),
        ("SyntaxError: invalid syntax", ErrorCategory.SYNTAX),
        ("curl: (6) Could not resolve host: example.invalid", ErrorCategory.NETWORK),
        ("something odd happened", ErrorCategory.UNKNOWN),
    ],
)
def test_classify_error(message: str, expected: ErrorCategory) -> None:
    assert classify_error(message) is expected


def test_auto_mode_requests_corrected_plan() -> None:
    client = FakeClient()
    manager = RecoveryManager(client=client, auto=True)

    decision = _failure(manager, "cat: notes.txt: No such file or directory")

    assert decision.action == "retry"
    assert decision.category == "missing_file"
    assert decision.corrected_plan is not None
    assert decision.corrected_plan.actions[0].params["command"] == "python3 -m pytest"
    assert client.calls[0]["classification"] == "missing_file"
    assert client.calls[0]["completed_steps"] == ["Create config"]
    assert '<tools name="run_command">' in str(client.calls[0]["prior_plan"])


def test_interactive_retry_forwards_instructions() -> None:
    client = FakeClient()
    manager = RecoveryManager(
        client=client,
        auto=False,
        choose_recovery_action=lambda _message: RecoveryChoice("retry", "use python3"),
    )

    decision = _failure(manager)

    assert decision.action == "retry"
    assert client.calls[0]["instructions"] == "use python3"


def test_skip_and_abort_do_not_contact_model() -> None:
    client = FakeClient()
    skipping = RecoveryManager(
        client=client, auto=False, choose_recovery_action=lambda _m: RecoveryChoice("skip")
    )
    aborting = RecoveryManager(
        client=client, auto=False, choose_recovery_action=lambda _m: RecoveryChoice("abort")
    )

    assert _failure(skipping).action == "skip"
    assert _failure(aborting).action == "abort"
    assert client.calls == []


def test_without_chooser_interactive_mode_aborts() -> None:
    assert _failure(RecoveryManager(client=FakeClient(), auto=False)).action == "abort"


def test_third_consecutive_failure_exhausts_recovery_whatever_the_choice() -> None:
    manager = RecoveryManager(
        client=FakeClient(), auto=False, choose_recovery_action=lambda _m: RecoveryChoice("skip")
    )

    _failure(manager)
    _failure(manager)
    with pytest.raises(RecoveryExhausted) as excinfo:
        _failure(manager, "final failure")

    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error == "final failure"


def test_success_resets_attempt_counter() -> None:
    manager = RecoveryManager(client=FakeClient(), auto=True)

    _failure(manager)
    _failure(manager)
    manager.record_success()
    decision = _failure(manager)

    assert decision.action == "retry"
    assert manager.attempts == 1


def test_unparsable_corrected_plan_aborts() -> None:
    delays: list[float] = []
    client = FakeClient(["I am not sure what to do"])
    manager = RecoveryManager(client=client, auto=True, sleep=delays.append)

    decision = _failure(manager)

    assert decision.action == "abort"
    assert decision.reason is not None
    assert decision.reason.startswith("Could not obtain a corrected plan")
    assert len(client.calls) == 3
    assert delays == [0.5, 1.0]
