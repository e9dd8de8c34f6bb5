from __future__ import annotations

import allure
import pytest

from taskrelay.config import WorkflowConfig
from taskrelay.engine.errors import (
    BatchInFlightError,
    DefinitionError,
    DependencyCycleError,
    InvalidCheckpointError,
    InvalidConfigError,
    InvalidTransitionError,
    TaskNotFoundError,
    WorkflowConflictError,
    WorkflowNotFoundError,
)
from taskrelay.engine.graph import CASCADE_SKIP_SUMMARY
from taskrelay.engine.models import TaskCategory, TaskStatus, WorkflowStatus
from taskrelay.engine.repository import InMemoryWorkflowRepository
from taskrelay.engine.service import (
    CONTEXT_SEPARATOR,
    CheckpointOutcome,
    FinishOutcome,
    WorkflowService,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Workflow Service"),
]


def _statuses(repository: InMemoryWorkflowRepository) -> dict[str, TaskStatus]:
    state = repository.load_state()
    assert state is not None
    return {task.id: task.status for task in state.tasks}


def _complete(service: WorkflowService, task_id: str, detail: str = "done") -> None:
    item = service.next()
    assert item is not None
    assert item.task.id == task_id
    service.checkpoint(task_id, detail)


def test_init_writes_state_summary_config_and_history(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    result = service.init(three_tasks)

    assert result.warnings == []
    state = repository.load_state()
    assert state is not None
    assert state.name == "Signup"
    assert state.status == WorkflowStatus.RUNNING
    assert [task.id for task in state.tasks] == ["001", "002", "003"]
    assert all(task.status == TaskStatus.PENDING for task in state.tasks)
    assert repository.load_definition() == three_tasks
    assert repository.load_summary() == "# Signup\n\nUser signup flow\n"
    assert repository.has_config()
    assert [entry.event for entry in repository.load_history()] == ["init"]
    assert repository.load_heartbeat().last_command == "init"
    assert repository.lock_count == 1
    assert repository.locked is False


def test_init_rejects_invalid_definition_without_writing(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    with pytest.raises(DefinitionError, match="unknown task id: 007") as error:
        service.init("# Bad\n1. [general] A (deps: 7)\n")

    assert error.value.issues
    assert repository.load_state() is None
    assert repository.load_history() == []


def test_init_rejects_cycles_without_writing(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    with pytest.raises(DependencyCycleError) as error:
        service.init("# Loop\n1. [general] A (deps: 2)\n2. [general] B (deps: 1)\n")

    assert error.value.cycle[0] == error.value.cycle[-1]
    assert repository.load_state() is None


def test_init_refuses_running_workflow_unless_forced(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init(three_tasks)
    service.next()
    service.checkpoint("001", "model added")

    with pytest.raises(WorkflowConflictError, match="--force"):
        service.init("# Other\n1. [general] Only\n")

    service.init("# Other\n1. [general] Only\n", force=True)
    state = repository.load_state()
    assert state.name == "Other"
    assert repository.load_task_output("001") is None
    assert repository.load_config() == WorkflowConfig()


def test_init_keeps_existing_config(
    three_tasks,
    repository: InMemoryWorkflowRepository,
    service,
) -> None:
    repository.save_config(WorkflowConfig(max_retries=7))
    service.init(three_tasks)
    assert repository.load_config().max_retries == 7


def test_commands_require_a_workflow(service: WorkflowService) -> None:
    with pytest.raises(WorkflowNotFoundError, match="taskrelay init"):
        service.next()
    with pytest.raises(WorkflowNotFoundError):
        service.checkpoint("001", "x")
    assert service.status().state is None
    assert service.resume().state is None


def test_sequencing_scenario_through_batches(three_tasks, service: WorkflowService) -> None:
    service.init(three_tasks)

    batch = service.next_batch()
    assert [item.task.id for item in batch] == ["001"]
    service.checkpoint("001", "model added")

    batch = service.next_batch()
    assert [item.task.id for item in batch] == ["002"]
    service.checkpoint("002", "endpoint added")

    batch = service.next_batch()
    assert [item.task.id for item in batch] == ["003"]


def test_admission_refused_while_batch_in_flight(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init("# Wide\n1. [general] A\n2. [general] B\n3. [general] C (deps: 1)\n")

    batch = service.next_batch()
    assert [item.task.id for item in batch] == ["001", "002"]

    with pytest.raises(BatchInFlightError):
        service.next()
    with pytest.raises(BatchInFlightError):
        service.next_batch()

    service.checkpoint("001", "a")
    with pytest.raises(BatchInFlightError, match="002"):
        service.next()

    service.checkpoint("002", "b")
    assert service.next().task.id == "003"
    assert repository.load_state().active_task_ids == ["003"]


def test_next_batch_respects_max_parallel(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    repository.save_config(WorkflowConfig(max_parallel=2))
    service.init("# Wide\n1. [general] A\n2. [general] B\n3. [general] C\n")

    assert [item.task.id for item in service.next_batch()] == ["001", "002"]


def test_dispatch_context_joins_summary_and_dependency_outputs(
    three_tasks,
    service: WorkflowService,
) -> None:
    service.init(three_tasks)
    _complete(service, "001", "model added\nwith columns")
    _complete(service, "002", "endpoint added")

    item = service.next()

    assert item is not None
    parts = item.context.split(CONTEXT_SEPARATOR)
    assert parts[0].startswith("# Signup")
    assert "- [backend] 001: Create user model: model added" in parts[0]
    assert parts[1] == "# task-001: Create user model\n\nmodel added\nwith columns\n"
    assert parts[2] == "# task-002: Signup endpoint\n\nendpoint added\n"


def test_checkpoint_success_records_output_summary_and_commit(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    committer,
) -> None:
    service.init(three_tasks)
    service.next()

    result = service.checkpoint("001", "model added\nsecond line", ["models.py"])

    assert result.outcome == CheckpointOutcome.DONE
    assert (result.done_count, result.total) == (1, 3)
    assert result.committed is True
    assert committer.commits == [("001", "Create user model", "model added", ["models.py"])]
    state = repository.load_state()
    task = state.find_task("001")
    assert task.summary == "model added"
    assert task.timestamps.completed is not None
    assert state.active_task_ids == []
    assert "001: Create user model: model added" in repository.load_summary()
    assert [entry.event for entry in repository.load_history()][-2:] == ["dispatch", "checkpoint"]


def test_checkpoint_commit_failure_is_returned_not_raised(
    three_tasks,
    service: WorkflowService,
    committer,
) -> None:
    committer.error = "git commit failed: hook rejected"
    service.init(three_tasks)
    service.next()

    result = service.checkpoint("001", "model added")

    assert result.outcome == CheckpointOutcome.DONE
    assert result.committed is False
    assert result.commit_error == "git commit failed: hook rejected"


def test_checkpoint_skips_commit_when_auto_commit_disabled(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    committer,
) -> None:
    repository.save_config(WorkflowConfig(auto_commit=False))
    service.init(three_tasks)
    service.next()
    service.checkpoint("001", "model added")
    assert committer.commits == []


def test_checkpoint_requires_active_task_and_detail(three_tasks, service: WorkflowService) -> None:
    service.init(three_tasks)
    with pytest.raises(InvalidTransitionError, match="only active"):
        service.checkpoint("001", "premature")
    with pytest.raises(TaskNotFoundError):
        service.checkpoint("404", "x")

    service.next()
    with pytest.raises(InvalidCheckpointError, match="empty"):
        service.checkpoint("001", "   ")


def test_three_failures_cascade_scenario(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init(three_tasks)

    outcomes = []
    for _ in range(3):
        item = service.next()
        assert item is not None and item.task.id == "001"
        outcomes.append(service.checkpoint("001", "FAILED").outcome)

    assert outcomes == [CheckpointOutcome.RETRY, CheckpointOutcome.RETRY, CheckpointOutcome.FAILED]
    state = repository.load_state()
    task = state.find_task("001")
    assert task.status == TaskStatus.FAILED
    assert task.retries == 3 == len(task.fail_history)

    assert service.next() is None
    assert _statuses(repository) == {
        "001": TaskStatus.FAILED,
        "002": TaskStatus.SKIPPED,
        "003": TaskStatus.SKIPPED,
    }
    state = repository.load_state()
    assert state.find_task("002").summary == CASCADE_SKIP_SUMMARY
    assert state.status == WorkflowStatus.FINISHING
    assert service.next_batch() == []


def test_failed_flag_records_reason(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init(three_tasks)
    service.next()

    result = service.checkpoint("001", "migration crashed", failed=True)

    assert result.outcome == CheckpointOutcome.RETRY
    assert result.retries == 1
    task = repository.load_state().find_task("001")
    assert task.fail_history == ["[attempt 1] migration crashed"]
    assert task.status == TaskStatus.PENDING


def test_resume_scenario_resets_interrupted_task(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    committer,
) -> None:
    service.init(three_tasks)
    assert service.next().task.id == "001"

    result = service.resume()

    assert result.reset_task_ids == ["001"]
    assert result.stashed is True
    assert committer.cleanups == 1
    assert committer.prunes == [5]
    state = repository.load_state()
    assert state.find_task("001").status == TaskStatus.PENDING
    assert state.active_task_ids == []
    assert state.status == WorkflowStatus.RUNNING
    assert service.next().task.id == "001"


def test_resume_without_interruption_does_not_touch_vcs(
    three_tasks,
    service: WorkflowService,
    committer,
) -> None:
    service.init(three_tasks)
    result = service.resume()
    assert result.reset_task_ids == []
    assert committer.cleanups == 0


def test_pause_blocks_dispatch_until_resume(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init(three_tasks)
    service.next()

    assert service.pause() == ["001"]
    assert repository.load_state().status == WorkflowStatus.IDLE
    with pytest.raises(InvalidTransitionError, match="paused"):
        service.next()

    service.resume()
    assert service.next().task.id == "001"


def test_skip_manual_and_cascade(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init(three_tasks)
    service.next()

    result = service.skip("001")

    assert result.changed is True
    assert result.previous_status == TaskStatus.ACTIVE
    state = repository.load_state()
    assert state.find_task("001").summary == "skipped manually"
    assert state.active_task_ids == []
    assert service.next() is None
    assert _statuses(repository)["003"] == TaskStatus.SKIPPED


def test_skip_done_task_is_noop(three_tasks, service: WorkflowService) -> None:
    service.init(three_tasks)
    _complete(service, "001")

    result = service.skip("001")

    assert result.changed is False
    assert result.previous_status == TaskStatus.DONE


def test_edit_pending_task(service: WorkflowService, repository) -> None:
    service.init("# E\n1. [general] A\n2. [general] B\n3. [general] C\n")

    task = service.edit(
        "003",
        title="C2",
        description="more",
        category=TaskCategory.FRONTEND,
        deps=["1", "002"],
    )

    assert task.title == "C2"
    assert task.deps == ["001", "002"]
    stored = repository.load_state().find_task("003")
    assert stored.category == TaskCategory.FRONTEND
    assert stored.description == "more"


def test_edit_rejects_bad_deps_and_non_pending(service: WorkflowService, repository) -> None:
    service.init("# E\n1. [general] A\n2. [general] B (deps: 1)\n")

    with pytest.raises(DefinitionError, match="cannot depend on itself"):
        service.edit("002", deps=["002"])
    with pytest.raises(DefinitionError, match="Unknown dependency"):
        service.edit("002", deps=["009"])
    with pytest.raises(DependencyCycleError):
        service.edit("001", deps=["002"])
    assert repository.load_state().find_task("001").deps == []

    service.next()
    with pytest.raises(InvalidTransitionError, match="only pending"):
        service.edit("001", title="late")


def test_add_appends_with_next_id_and_reopens_finishing(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    service.init("# A\n1. [general] Only\n")
    _complete(service, "001")
    assert repository.load_state().status == WorkflowStatus.FINISHING

    task = service.add("Follow-up", category=TaskCategory.BACKEND, deps=["001"])

    assert task.id == "002"
    state = repository.load_state()
    assert state.status == WorkflowStatus.RUNNING
    assert state.find_task("002").deps == ["001"]
    with pytest.raises(DefinitionError, match="Unknown dependency"):
        service.add("Broken", deps=["042"])
    with pytest.raises(DefinitionError, match="title"):
        service.add("  ")


def test_show_and_log(three_tasks, service: WorkflowService) -> None:
    service.init(three_tasks)
    _complete(service, "001", "model added")

    details = service.show("001")
    assert details.task.summary == "model added"
    assert details.output.endswith("model added\n")

    assert [entry.event for entry in service.log()] == ["init", "dispatch", "checkpoint"]
    assert [entry.event for entry in service.log(limit=1)] == ["checkpoint"]


def test_status_flags_stale_active_tasks(three_tasks, service: WorkflowService, clock) -> None:
    service.init(three_tasks)
    service.next()
    assert service.status().stale_task_ids == []

    clock.advance(hours=1)
    report = service.status()

    assert report.stale_task_ids == ["001"]
    assert report.heartbeat.last_command == "next"


def test_finalization_scenario(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    committer,
    verifier,
) -> None:
    service.init(three_tasks)
    _complete(service, "001")
    _complete(service, "002")
    _complete(service, "003")
    assert repository.load_state().status == WorkflowStatus.FINISHING

    first = service.finish()

    assert first.outcome == FinishOutcome.NEEDS_REVIEW
    assert "review" in first.message
    assert first.scripts == ["make test"]
    assert repository.load_state() is not None

    service.review()
    second = service.finish()

    assert second.outcome == FinishOutcome.COMPLETED
    assert second.tallies == {"done": 3, "skipped": 0, "failed": 0}
    assert second.verification_reused is True
    assert verifier.calls == 1
    assert repository.load_state() is None
    assert repository.load_history() == []
    assert committer.commits[-1] == ("finish", "Signup", "3 done", None)


def test_finish_refuses_until_all_terminal(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    verifier,
) -> None:
    service.init(three_tasks)

    result = service.finish()

    assert result.outcome == FinishOutcome.NOT_READY
    assert "001, 002, 003" in result.message
    assert verifier.calls == 0
    assert repository.load_state().status == WorkflowStatus.RUNNING
    with pytest.raises(InvalidTransitionError):
        service.review()


def test_finish_verification_failure_keeps_state(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    verifier,
) -> None:
    verifier.passed = False
    verifier.error = "make test failed:\n1 failed"
    service.init("# A\n1. [general] Only\n")
    _complete(service, "001")
    service.review()

    result = service.finish()

    assert result.outcome == FinishOutcome.VERIFY_FAILED
    assert result.error == "make test failed:\n1 failed"
    assert result.scripts == ["make test"]
    state = repository.load_state()
    assert state.status == WorkflowStatus.FINISHING
    assert state.verified is False

    verifier.passed = True
    assert service.finish().outcome == FinishOutcome.COMPLETED
    assert verifier.calls == 2


def test_finish_releases_lock_during_verification(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    verifier,
) -> None:
    observed: list[bool] = []
    verifier.on_verify = lambda: observed.append(repository.locked)
    service.init("# A\n1. [general] Only\n")
    _complete(service, "001")
    service.review()

    assert service.finish().outcome == FinishOutcome.COMPLETED
    assert observed == [False]


def test_finish_detects_changes_during_verification(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    verifier,
) -> None:
    verifier.on_verify = lambda: service.add("Late addition")
    service.init("# A\n1. [general] Only\n")
    _complete(service, "001")
    service.review()

    with pytest.raises(WorkflowConflictError, match="changed while verification ran"):
        service.finish()
    state = repository.load_state()
    assert state.status == WorkflowStatus.RUNNING
    assert state.review_done is False


def test_finish_reverifies_after_task_added_to_finishing_workflow(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    verifier,
) -> None:
    service.init("# A\n1. [general] Only\n")
    _complete(service, "001")
    assert service.finish().outcome == FinishOutcome.NEEDS_REVIEW
    assert repository.load_state().verified is True

    service.add("Follow-up")
    assert repository.load_state().verified is False
    _complete(service, "002")
    service.review()
    result = service.finish()

    assert result.outcome == FinishOutcome.COMPLETED
    assert result.verification_reused is False
    assert verifier.calls == 2


def test_invalid_config_is_reported(
    three_tasks,
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
) -> None:
    repository.save_config(WorkflowConfig(max_retries=0))
    with pytest.raises(InvalidConfigError, match="max_retries"):
        service.init(three_tasks)


@pytest.mark.parametrize("batch", [False, True])
def test_dispatch_moves_fully_terminal_running_workflow_to_finishing(
    service: WorkflowService,
    repository: InMemoryWorkflowRepository,
    batch: bool,
) -> None:
    service.init("# A\n1. [general] Only\n2. [general] Other\n")
    state = repository.load_state()
    state.tasks[0].status = TaskStatus.DONE
    state.tasks[1].status = TaskStatus.SKIPPED
    repository.save_state(state)

    dispatched = service.next_batch() if batch else service.next()

    assert not dispatched
    assert repository.load_state().status == WorkflowStatus.FINISHING
    assert service.finish().outcome == FinishOutcome.NEEDS_REVIEW
