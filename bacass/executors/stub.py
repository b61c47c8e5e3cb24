import os
import typing
from typing import Optional

from bacass.executors.base import Executor, TaskExecutionError, register_executor

if typing.TYPE_CHECKING:
    from bacass.scheduler import Job, Scheduler

STUB_FILE = "stub.txt"


def format_stub(job: "Job", channel: str, command: Optional[str]) -> str:
    """
    Describe the task instance a placeholder output stands in for.
    """
    lines = [
        "stub output",
        f"node: {job.node.name}",
        f"key: {job.key}",
        f"channel: {channel}",
    ]
    if command is not None:
        lines += ["command:", command.strip()]
    return "\n".join(lines) + "\n"


@register_executor("stub")
class StubExecutor(Executor):
    """
    Executor that never runs tools.

    Every declared output of a task instance is replaced by a small placeholder
    file describing the node, key and (for script tasks) the command that would
    have run. Placeholder contents only depend on the run parameters, so two
    stub runs over the same inputs produce identical outputs.
    """

    def __init__(
        self,
        name: str,
        scheduler: Optional["Scheduler"] = None,
        config=None,
    ):
        super().__init__(name, scheduler=scheduler)

    def _write_outputs(self, job: "Job", command: Optional[str]) -> None:
        for channel, path in job.outputs.items():
            if job.node.is_dir_output(channel):
                os.makedirs(path, exist_ok=True)
                path = os.path.join(path, STUB_FILE)
            else:
                os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as out:
                out.write(format_stub(job, channel, command))

    def submit(self, job: "Job") -> None:
        assert self._scheduler
        self._write_outputs(job, None)
        self._scheduler.done_job(job, None)

    def submit_script(self, job: "Job") -> None:
        assert self._scheduler
        try:
            # Building the command still checks the task can be rendered.
            command = job.node.func(job.task_context)
        except Exception as error:
            self._scheduler.reject_job(
                job,
                TaskExecutionError(job.node.name, job.key, f"{type(error).__name__}: {error}"),
            )
            return
        self._write_outputs(job, command)
        self._scheduler.done_job(job, None)
