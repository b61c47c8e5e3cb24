import os
import signal
import subprocess
import threading
import typing
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from bacass.config import create_config_section
from bacass.executors.base import (
    Executor,
    TaskCancelledError,
    TaskExecutionError,
    register_executor,
)
from bacass.scripting import ScriptError, exec_script, prepare_command
from bacass.utils import parse_memory, trim_string

if typing.TYPE_CHECKING:
    from bacass.scheduler import Job, Scheduler


def exec_task(job: "Job") -> Any:
    """
    Call a python task function for one task instance.
    """
    return job.node.func(job.task_context)


def get_task_command(job: "Job") -> str:
    """
    Get command from a script task.
    """
    command = job.node.func(job.task_context)
    if not isinstance(command, str):
        raise TypeError(
            f"Script task {job.node.name} must return a command string, "
            f"not {type(command).__name__}."
        )
    return prepare_command(command)


@register_executor("local")
class LocalExecutor(Executor):
    """
    Executor running task instances on this machine using a thread pool.

    Script tasks run as a bash subprocess inside the instance work dir.
    A job only starts when its cpus and memory reservation fits in what is
    left of `max_cpus` and `max_memory`. Jobs that do not fit wait in
    submission order, while smaller jobs behind them may start first.
    """

    def __init__(
        self,
        name: str,
        scheduler: Optional["Scheduler"] = None,
        config=None,
    ):
        super().__init__(name, scheduler=scheduler)

        # Parse config.
        if not config:
            config = create_config_section()

        self.max_workers = config.getint("max_workers", 20)
        self.max_cpus = config.getint("max_cpus", os.cpu_count() or 1)
        self.max_memory = parse_memory(config.get("max_memory", "128.GB"))

        self._thread_executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._waiting: List[Tuple["Job", Callable[["Job"], Any]]] = []
        self._cpus_used = 0
        self._memory_used = 0.0
        self._procs: Dict[str, subprocess.Popen] = {}
        self._cancelled: Set[str] = set()

    def set_limits(self, max_cpus: int, max_memory: float) -> None:
        self.max_cpus = max_cpus
        self.max_memory = max_memory

    def _start(self) -> None:
        """
        Start pool on first Job submission.
        """
        if not self._thread_executor:
            self._thread_executor = ThreadPoolExecutor(max_workers=self.max_workers)

    def stop(self) -> None:
        """
        Stop Executor pools.
        """
        if self._thread_executor:
            self._thread_executor.shutdown()
            self._thread_executor = None

    def _fits(self, job: "Job") -> bool:
        return (
            self._cpus_used + job.cpus <= self.max_cpus
            and self._memory_used + job.memory <= self.max_memory
        )

    def _admit(self) -> List[Tuple["Job", Callable[["Job"], Any]]]:
        """
        Reserve resources for waiting jobs that now fit. Caller holds the lock.
        """
        admitted = []
        still_waiting = []
        for job, exec_func in self._waiting:
            if self._fits(job):
                self._cpus_used += job.cpus
                self._memory_used += job.memory
                admitted.append((job, exec_func))
            else:
                still_waiting.append((job, exec_func))
        self._waiting = still_waiting
        return admitted

    def _launch(self, admitted: List[Tuple["Job", Callable[["Job"], Any]]]) -> None:
        assert self._thread_executor
        for job, exec_func in admitted:
            self._thread_executor.submit(exec_func, job).add_done_callback(
                lambda future, job=job: self._on_done(job, future)
            )

    def _submit(self, exec_func: Callable[["Job"], Any], job: "Job") -> None:
        """
        Common entry point for submitting a Job to the Executor.
        """
        # Ensure pool is started.
        self._start()

        # A job larger than the whole machine could never start.
        job.cpus = min(job.cpus, self.max_cpus)
        job.memory = min(job.memory, self.max_memory)

        with self._lock:
            self._waiting.append((job, exec_func))
            admitted = self._admit()
        self._launch(admitted)

    def _on_done(self, job: "Job", future: Future) -> None:
        assert self._scheduler
        with self._lock:
            self._cpus_used -= job.cpus
            self._memory_used -= job.memory
            self._procs.pop(job.id, None)
            was_cancelled = job.id in self._cancelled
            self._cancelled.discard(job.id)
            admitted = self._admit()
        self._launch(admitted)

        try:
            result = future.result()
        except ScriptError as error:
            if was_cancelled:
                self._scheduler.reject_job(job, TaskCancelledError(job.node.name, job.key))
                return
            stderr = error.message if isinstance(error.message, str) else ""
            self._scheduler.reject_job(
                job,
                TaskExecutionError(
                    job.node.name,
                    job.key,
                    f"command failed: {error}",
                    returncode=error.returncode,
                    stderr=trim_string(stderr, max_length=2000),
                ),
            )
            return
        except Exception as error:
            self._scheduler.reject_job(
                job,
                TaskExecutionError(job.node.name, job.key, f"{type(error).__name__}: {error}"),
            )
            return

        if was_cancelled:
            self._scheduler.reject_job(job, TaskCancelledError(job.node.name, job.key))
        else:
            self._scheduler.done_job(job, result)

    def _exec_script_task(self, job: "Job") -> None:
        command = get_task_command(job)

        def on_start(proc: subprocess.Popen) -> None:
            with self._lock:
                self._procs[job.id] = proc
                cancelled = job.id in self._cancelled
            if cancelled:
                _terminate(proc)

        exec_script(command, job.work_dir, on_start=on_start)

    def submit(self, job: "Job") -> None:
        assert not job.node.script
        self._submit(exec_task, job)

    def submit_script(self, job: "Job") -> None:
        assert job.node.script
        self._submit(self._exec_script_task, job)

    def cancel_job(self, job: "Job") -> None:
        assert self._scheduler
        with self._lock:
            waiting = [entry for entry in self._waiting if entry[0] is job]
            if waiting:
                # Never started: nothing to stop.
                self._waiting.remove(waiting[0])
            else:
                self._cancelled.add(job.id)
            proc = self._procs.get(job.id)

        if waiting:
            self._scheduler.reject_job(job, TaskCancelledError(job.node.name, job.key))
        elif proc:
            _terminate(proc)


def _terminate(proc: subprocess.Popen) -> None:
    """
    Terminate a script and the processes it started.
    """
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
