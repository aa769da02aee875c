from __future__ import annotations

import json
from pathlib import Path

from tera.agent.context import AgentContext, RunOptions
from tera.agent.loop import AgentLoop, run_agent
from tera.agent.models import PlanExecution, RecoveryChoice
from tera.memory import EpisodeMemory
from tera.shell import BackgroundLaunch, CommandResult

COMPLETE = "<status>complete</status>"


def tool(kind: str, body: str = "", **params: object) -> str:
    rendered = "".join(f'<param name="{name}" value="{value}" />' for name, value in params.items())
    return f'<tools name="{kind}">{rendered}{body}</tools>'


def plan(*tools: str, status: str = "continue") -> str:
    return "\n".join([*tools, f"<status>{status}</status>"])


class FakeShell:
    name = "fake"

    def __init__(self, failures: dict[str, str] | None = None) -> None:
        self.failures = failures or {}
        self.commands: list[str] = []

    def execute(
        self, command: str, *, cwd: str | None = None, timeout: float | None = None
    ) -> CommandResult:
        self.commands.append(command)
        if command in self.failures:
            return CommandResult(
                command=command,
                shell=self.name,
                returncode=1,
                stdout="",
                stderr=self.failures[command],
            )
        return CommandResult(command=command, shell=self.name, returncode=0, stdout="ok", stderr="")

    def spawn_background(
        self, command: str, *, cwd: str | None = None, grace_seconds: float = 1.0
    ) -> BackgroundLaunch:
        return BackgroundLaunch(command=command, pid=1, running=True)


class FakeClient:
    model = "fake-model"

    def __init__(
        self,
        *,
        plans: list[str],
        evaluations=None,
        corrections: list[str] | None = None,
    ) -> None:
        self.plans = plans
        self.evaluations = evaluations if evaluations is not None else [COMPLETE]
        self.corrections = corrections or [COMPLETE]
        self.discovery_contexts: list[str | None] = []
        self.evaluate_calls = 0
        self.evaluated_executions: list[list[PlanExecution]] = []
        self.correction_calls: list[dict[str, object]] = []

    def generate_plan(self, task: str, discovery_context: str | None = None) -> str:
        self.discovery_contexts.append(discovery_context)
        return self.plans[min(len(self.discovery_contexts), len(self.plans)) - 1]

    def evaluate(self, task, execution_results, previous_plans) -> str:
        self.evaluate_calls += 1
        self.evaluated_executions.append(list(execution_results))
        if callable(self.evaluations):
            return self.evaluations(self.evaluate_calls)
        return self.evaluations[min(self.evaluate_calls, len(self.evaluations)) - 1]

    def generate_corrected_plan(
        self,
        task,
        prior_plan,
        completed_steps,
        error_message,
        classification,
        instructions=None,
    ) -> str:
        self.correction_calls.append(
            {
                "completed_steps": completed_steps,
                "error_message": error_message,
                "classification": classification,
            }
        )
        return self.corrections[min(len(self.correction_calls), len(self.corrections)) - 1]


def _workdir(tmp_path: Path) -> Path:
    work = tmp_path / "work"
    work.mkdir()
    return work


def _log_entries(log_dir: Path) -> list[dict[str, object]]:
    entries: list[dict[str, object]] = []
    for log_file in log_dir.glob("session-*.log"):
        lines = log_file.read_text(encoding="utf-8").splitlines()
        entries.extend(json.loads(line) for line in lines)
    return entries


def test_empty_file_task_completes_end_to_end(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    client = FakeClient(
        plans=[
            plan(
                tool("create_file", "<description>Create empty file notes.txt</description>"),
                tool("list_directory", path="."),
            )
        ]
    )
    sleeps: list[float] = []

    result = run_agent(
        "create empty file notes.txt",
        RunOptions(auto=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
        sleep=sleeps.append,
    )

    assert result.success is True
    assert result.outcome == "completed"
    assert result.completed_steps == 1
    assert result.total_plans == 1
    assert (work / "notes.txt").read_bytes() == b""
    assert client.evaluate_calls == 1
    assert sleeps == [0.3]
    listing = result.executions[0].results[1]
    assert listing.success is True
    assert "notes.txt" in str(listing.result)

    entries = _log_entries(tmp_path / "logs")
    assert [entry["event"] for entry in entries] == ["action", "action", "run_finished"]
    assert entries[0]["log_version"] == 1
    assert entries[0]["model"] == "fake-model"
    assert entries[0]["shell"] == "fake"
    assert entries[-1]["outcome"] == "completed"


def test_discovery_context_lists_directory_and_key_files(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    (work / "README.md").write_text("# demo\n", encoding="utf-8")
    (work / "app.py").write_text("print('hi')\n", encoding="utf-8")
    client = FakeClient(plans=[COMPLETE])

    result = run_agent(
        "say hi",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
    )

    context = str(client.discovery_contexts[0])
    assert f"Working directory: {work}" in context
    assert "- app.py" in context
    assert "Key project files: README.md" in context
    assert result.outcome == "completed"
    assert client.evaluate_calls == 0


def test_repeated_identical_reads_trip_action_guard(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    (work / "app.py").write_text("\n".join(f"line {n}" for n in range(5)), encoding="utf-8")
    read = plan(tool("read_file_lines", path="app.py", start_line=1, end_line=20))
    client = FakeClient(plans=[read], evaluations=[read])

    result = run_agent(
        "inspect app",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
    )

    assert result.outcome == "aborted"
    assert result.guard == "action_repetition"
    assert result.total_plans == 3
    assert client.evaluate_calls == 2
    assert result.completed_steps == 0


def test_repeated_error_trips_error_guard(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    failing = plan(tool("run_command", "<command>make deploy</command>"))
    client = FakeClient(plans=[failing], evaluations=[failing])

    result = run_agent(
        "deploy",
        RunOptions(
            auto_approve_kinds=frozenset({"run_command"}),
            fast=True,
            working_directory=str(work),
        ),
        client=client,
        shell=FakeShell({"make deploy": "make: *** No rule to make target 'deploy'"}),
        log_dir=tmp_path / "logs",
        choose_recovery_action=lambda _message: RecoveryChoice("skip"),
    )

    assert result.outcome == "aborted"
    assert result.guard == "error_repetition"
    assert result.total_plans == 2
    assert all(outcome.skipped for execution in result.executions for outcome in execution.results)


def test_plan_ceiling_stops_before_eleventh_plan(tmp_path: Path) -> None:
    work = _workdir(tmp_path)

    def next_plan(call: int) -> str:
        return plan(tool("create_file", path=f"file{call + 1}.txt", content="x"))

    client = FakeClient(
        plans=[plan(tool("create_file", path="file1.txt", content="x"))],
        evaluations=next_plan,
    )

    result = run_agent(
        "keep going",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
    )

    assert result.outcome == "aborted"
    assert result.guard == "plan_ceiling"
    assert result.total_plans == 10
    assert client.evaluate_calls == 10
    assert (work / "file10.txt").exists()
    assert not (work / "file11.txt").exists()


def test_consecutive_failures_exhaust_recovery(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    flaky = plan(tool("run_command", "<command>flaky</command>"))
    shell = FakeShell({"flaky": "flaky: something broke"})
    client = FakeClient(plans=[flaky], corrections=[flaky])

    result = run_agent(
        "run flaky",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=shell,
        log_dir=tmp_path / "logs",
    )

    assert result.outcome == "recovery_exhausted"
    assert result.guard == "recovery_ceiling"
    assert result.success is False
    assert shell.commands == ["flaky", "flaky", "flaky"]
    assert len(client.correction_calls) == 2


def test_skipping_does_not_reset_failure_count(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    shell = FakeShell({name: f"{name}: failed" for name in ("one", "two", "three", "four")})
    client = FakeClient(
        plans=[
            plan(
                *(
                    tool("run_command", f"<command>{name}</command>")
                    for name in ("one", "two", "three", "four")
                )
            )
        ]
    )

    result = run_agent(
        "run all",
        RunOptions(
            auto_approve_kinds=frozenset({"run_command"}),
            fast=True,
            working_directory=str(work),
        ),
        client=client,
        shell=shell,
        log_dir=tmp_path / "logs",
        choose_recovery_action=lambda _message: RecoveryChoice("skip"),
    )

    assert result.outcome == "recovery_exhausted"
    assert shell.commands == ["one", "two", "three"]


def test_retry_switches_to_corrected_plan(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    client = FakeClient(
        plans=[
            plan(
                tool(
                    "create_file",
                    "<description>Create a</description>",
                    path="a.txt",
                    content="x",
                ),
                tool("run_command", "<command>pytset</command>"),
            )
        ],
        corrections=[plan(tool("run_command", "<command>pytest</command>"), status="complete")],
    )
    shell = FakeShell({"pytset": "bash: pytset: command not found"})

    result = run_agent(
        "create a and test",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=shell,
        log_dir=tmp_path / "logs",
    )

    assert result.outcome == "completed"
    assert result.completed_steps == 2
    assert shell.commands == ["pytset", "pytest"]
    assert client.correction_calls[0]["completed_steps"] == ["Create a"]
    assert client.correction_calls[0]["classification"] == "missing_command"
    assert client.evaluate_calls == 0
    outcomes = result.executions[0].results
    assert [outcome.success for outcome in outcomes] == [True, False, True]


def test_undecodable_patch_target_goes_through_recovery(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    (work / "legacy.txt").write_bytes(b"caf\xe9\n")
    patch = tool(
        "patch_file",
        '<changes><change action="add" line="1"><content>x</content></change></changes>',
        path="legacy.txt",
    )
    client = FakeClient(plans=[plan(patch)])

    result = run_agent(
        "patch legacy",
        RunOptions(auto=True, fast=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
    )

    assert result.outcome == "completed"
    assert len(client.correction_calls) == 1
    assert "Could not read" in str(client.correction_calls[0]["error_message"])
    assert result.executions[0].results[0].success is False
    assert (work / "legacy.txt").read_bytes() == b"caf\xe9\n"


def test_declined_action_aborts_without_side_effects(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    client = FakeClient(plans=[plan(tool("create_file", path="a.txt", content="x"))])
    prompts: list[str] = []

    def decline(prompt: str) -> bool:
        prompts.append(prompt)
        return False

    result = run_agent(
        "create a",
        RunOptions(fast=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
        confirm=decline,
    )

    assert result.outcome == "aborted"
    assert result.reason is not None and "declined" in result.reason
    assert len(prompts) == 1
    assert not (work / "a.txt").exists()


def test_only_unapproved_kinds_ask_for_confirmation(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    client = FakeClient(
        plans=[
            plan(
                tool("create_file", path="x.txt", content="x"),
                tool("run_command", "<command>echo hi</command>"),
                tool("list_directory", path="."),
            )
        ]
    )
    prompts: list[str] = []

    def accept(prompt: str) -> bool:
        prompts.append(prompt)
        return True

    result = run_agent(
        "make x",
        RunOptions(
            auto_approve_kinds=frozenset({"create_file"}),
            fast=True,
            working_directory=str(work),
        ),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
        confirm=accept,
    )

    assert result.outcome == "completed"
    assert prompts == ["run_command: run_command echo hi"]


def test_unparsable_initial_plan_aborts(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    client = FakeClient(plans=["I'd rather chat about it."])
    sleeps: list[float] = []

    result = run_agent(
        "anything",
        RunOptions(auto=True, working_directory=str(work)),
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
        sleep=sleeps.append,
    )

    assert result.outcome == "aborted"
    assert result.reason is not None
    assert result.reason.startswith("Could not obtain an initial plan")
    assert len(client.discovery_contexts) == 3
    assert sleeps == [0.5, 1.0]
    assert result.total_plans == 0


def test_episode_memory_is_recorded_and_recalled(tmp_path: Path) -> None:
    work = _workdir(tmp_path)
    memory = EpisodeMemory(tmp_path / "memory")
    client = FakeClient(
        plans=[plan(tool("create_file", "<description>Create notes</description>", path="n.txt"))]
    )
    loop = AgentLoop(
        client=client,
        shell=FakeShell(),
        log_dir=tmp_path / "logs",
        options=RunOptions(auto=True, fast=True, working_directory=str(work)),
        context=AgentContext(memory=memory),
    )

    loop.run("create notes file")
    loop.run("create notes file again")

    episodes = memory.episodes()
    assert len(episodes) == 2
    assert episodes[-1].task == "create notes file"
    assert episodes[-1].success is True
    assert episodes[-1].actions == ["Create notes"]
    assert "Previous runs on similar tasks" in str(client.discovery_contexts[1])
