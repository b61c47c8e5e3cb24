import dataclasses
import datetime
import logging
import os
import queue
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from bacass.config import Config
from bacass.context import RunContext
from bacass.executors.base import (
    Executor,
    TaskCancelledError,
    TaskExecutionError,
    get_executors_from_config,
)
from bacass.executors.local import LocalExecutor
from bacass.executors.stub import StubExecutor
from bacass.graph import (
    FATAL_POLICY,
    DataflowGraph,
    GraphError,
    JoinMismatchError,
    JoinOperator,
    Operator,
    Void,
    is_void,
)
from bacass.logging import logger as _logger
from bacass.manifest import SampleRecord
from bacass.task import GLOBAL_KEY, TaskContext, TaskNode
from bacass.utils import format_table

# Constants.
JOB_ACTION_WIDTH = 6  # Width of job action in logs.

PENDING = "PENDING"
READY = "READY"
RUNNING = "RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"
TERMINAL_STATUSES = (SUCCEEDED, FAILED, SKIPPED)

DISABLED = "disabled"
REQUIREMENT = "requirement"
INCOMPLETE_INPUTS = "incomplete inputs"
CANCELLED = "cancelled"

STUB_EXECUTOR = "stub"

ChannelCallback = Callable[[str, str, Any], None]


class SchedulerError(Exception):
    pass


class RunFailedError(Exception):
    """
    The run as a whole failed, e.g. a required stage failed for every sample.
    """

    def __init__(self, failures: List[str], result: Optional["RunResult"] = None):
        self.failures = failures
        self.result = result
        super().__init__("Run failed: " + "; ".join(failures))


class RunCancelledError(Exception):
    """
    The run was cancelled before all task instances completed.
    """

    def __init__(self, reason: str, result: Optional["RunResult"] = None):
        self.reason = reason
        self.result = result
        super().__init__(f"Run cancelled: {reason}")


class Job:
    """
    A Job tracks one task instance, a TaskNode applied to one key, through its
    various stages.
    """

    STATUSES = [PENDING, READY, RUNNING, SUCCEEDED, FAILED, SKIPPED, "TOTAL"]

    def __init__(
        self,
        node: TaskNode,
        key: str,
        sample: Optional[SampleRecord] = None,
        id: Optional[str] = None,
    ):
        self.id = id or str(uuid.uuid4())
        self.node = node
        self.key = key
        self.sample = sample
        self.status = PENDING

        # Resolved input values by task parameter.
        self.inputs: Dict[str, Any] = {}

        # Published path of each output channel.
        self.outputs: Dict[str, str] = {}

        # Execution details, set once the job is READY.
        self.work_dir: Optional[str] = None
        self.executor: Optional[str] = None
        self.cpus = 0
        self.memory = 0.0
        self.task_context: Optional[TaskContext] = None

        # Outcome.
        self.error: Optional[Exception] = None
        self.skip_reason: Optional[str] = None
        self.start_time: Optional[datetime.datetime] = None
        self.end_time: Optional[datetime.datetime] = None

    def __repr__(self) -> str:
        return f"Job(id={self.id[:8]}, node={self.node.name}, key={self.key}, {self.status})"

    @property
    def name(self) -> str:
        return f"{self.node.name}[{self.key}]"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def clear(self) -> None:
        """
        Release inputs once the job is terminal.
        """
        self.inputs = {}
        self.task_context = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node": self.node.name,
            "key": self.key,
            "status": self.status,
            "skip_reason": self.skip_reason,
            "error": str(self.error) if self.error else None,
        }


@dataclasses.dataclass
class RunResult:
    """
    Outcome of one scheduler run.
    """

    jobs: List[Job] = dataclasses.field(default_factory=list)
    join_mismatches: List[JoinMismatchError] = dataclasses.field(default_factory=list)
    failures: List[str] = dataclasses.field(default_factory=list)
    cancelled: Optional[str] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None

    def get_jobs(
        self,
        node: Optional[str] = None,
        key: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Job]:
        return [
            job
            for job in self.jobs
            if (node is None or job.node.name == node)
            and (key is None or job.key == key)
            and (status is None or job.status == status)
        ]

    def get_job(self, node: str, key: str) -> Optional[Job]:
        jobs = self.get_jobs(node=node, key=key)
        return jobs[0] if jobs else None

    def status_counts(self) -> Dict[str, Dict[str, int]]:
        return get_status_counts(self.jobs)

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.cancelled


def get_status_counts(jobs: List[Job]) -> Dict[str, Dict[str, int]]:
    """
    Count jobs per node and status (Dict[node_name, Dict[status, count]]).
    """
    status_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for job in jobs:
        status_counts[job.node.name][job.status] += 1
        status_counts[job.node.name]["TOTAL"] += 1
    return status_counts


def format_job_statuses(
    job_status_counts: Dict[str, Dict[str, int]],
    timestamp: Optional[datetime.datetime] = None,
) -> Iterator[str]:
    """
    Format job status table (Dict[node_name, Dict[status, count]]).
    """
    # Create counts table.
    node_names = sorted(job_status_counts.keys())
    table: List[List[str]] = (
        [["TASK"] + Job.STATUSES]
        + [
            ["ALL"]
            + [
                str(sum(job_status_counts[node_name][status] for node_name in node_names))
                for status in Job.STATUSES
            ]
        ]
        + [
            [node_name] + [str(job_status_counts[node_name][status]) for status in Job.STATUSES]
            for node_name in node_names
        ]
    )

    # Display job status table.
    if timestamp is None:
        timestamp = datetime.datetime.now()
    yield "| JOB STATUS {}".format(timestamp.strftime("%Y/%m/%d %H:%M:%S"))

    for line in format_table(table, "l" + "r" * len(Job.STATUSES), min_width=7):
        yield f"| {line}"
    yield ""


def output_exists(path: str, is_dir: bool) -> bool:
    if is_dir:
        return os.path.isdir(path) and bool(os.listdir(path))
    return os.path.exists(path)


class Scheduler:
    """
    Scheduler for running a DataflowGraph over the samples of a run.

    Although the scheduler collaborates with executors that may use multiple
    threads during execution, the scheduler logic relies upon being executed
    from a single thread. Therefore, the main lifecycle methods used by
    executors (`done_job`, `reject_job`) and `cancel` defer back to the
    scheduler thread through an event queue.

    Data moves through the graph by key. Each consumer of a channel has its own
    inbox of delivered values; a task instance is created as soon as every
    input of its node has delivered its key (global inputs are broadcast to
    every key) and the inbox entries are then released.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        executor: Optional[Executor] = None,
        logger: Optional[Any] = None,
        job_status_interval: Optional[int] = None,
    ):
        self.config = config or Config()
        self.logger = logger or _logger
        if job_status_interval is None:
            job_status_interval = int(
                self.config.get("scheduler", {}).get("job_status_interval", 20)
            )
        # A non-positive interval disables the periodic status table.
        self.job_status_interval: Optional[int] = (
            job_status_interval if job_status_interval > 0 else None
        )

        # Setup executors.
        self.executors: Dict[str, Executor] = {}
        if executor:
            self.add_executor(executor)
        else:
            self.add_executor(LocalExecutor("default"))
        self.add_executor(StubExecutor(STUB_EXECUTOR))
        for executor in get_executors_from_config(self.config.get("executors", {})):
            self.add_executor(executor)

        self._subscribers: Dict[str, List[ChannelCallback]] = defaultdict(list)

        # Scheduler state.
        self.thread_id: Optional[int] = None
        self.events_queue: queue.Queue = queue.Queue()
        self._reset()

    def _reset(self) -> None:
        self.graph: Optional[DataflowGraph] = None
        self.context: Optional[RunContext] = None
        self._samples: Dict[str, SampleRecord] = {}
        self._jobs: Dict[Tuple[str, str], Job] = {}
        self._inbox: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._closed: Set[str] = set()
        self._delivered: Dict[str, Set[str]] = defaultdict(set)
        self._join_mismatches: List[JoinMismatchError] = []
        self._failures: List[str] = []
        self._fatal_error: Optional[JoinMismatchError] = None
        self._cancelled: Optional[str] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_executor(self, executor: Executor) -> None:
        """
        Add executor to scheduler.
        """
        self.executors[executor.name] = executor
        executor.set_scheduler(self)

    def subscribe(self, channel: str, callback: ChannelCallback) -> None:
        """
        Call `callback(channel, key, value)` for every datum delivered on `channel`.
        """
        self._subscribers[channel].append(callback)

    def log(
        self, *messages: Any, indent: int = 0, multiline: bool = False, level: int = logging.INFO
    ) -> None:
        text = " ".join(map(str, messages))
        if not multiline:
            lines = text.split("\n")
        else:
            lines = [text]
        for line in lines:
            self.logger.log(level, (" " * indent) + line)

    def _log_job(self, action: str, job: Job, detail: str = "", level: int = logging.INFO) -> None:
        self.log(
            "{action} Job {job_id}:  {name}{detail}".format(
                action=action.ljust(JOB_ACTION_WIDTH),
                job_id=job.id[:8],
                name=job.name,
                detail=f" ({detail})" if detail else "",
            ),
            level=level,
        )

    def get_job_status_report(self) -> List[str]:
        return list(format_job_statuses(get_status_counts(list(self._jobs.values()))))

    def log_job_statuses(self) -> None:
        """
        Display Job statuses.
        """
        self.log()
        for report_line in self.get_job_status_report():
            self.log(report_line)
        self.log()

    def run(self, graph: DataflowGraph, context: RunContext) -> RunResult:
        """
        Run every task instance of `graph` for the samples of `context`.

        Per-sample source channels receive each SampleRecord under its sample
        id; global source channels receive the RunContext itself.
        """
        if self._running:
            raise SchedulerError("Scheduler is already running.")
        graph.freeze()

        self._reset()
        self._running = True
        self.graph = graph
        self.context = context
        self._samples = {sample.id: sample for sample in context.samples}
        self._inbox = {
            name: {channel: {} for channel in graph.get_inputs(name)} for name in graph.order
        }
        self.thread_id = threading.get_ident()
        start_time = datetime.datetime.now()

        for executor in self.executors.values():
            executor.set_limits(context.params.max_cpus, context.params.max_memory)
            executor.start()

        self.log(
            "Start run {} ({} samples, {} nodes)".format(
                context.run_id[:8], len(self._samples), len(graph.nodes)
            )
        )
        try:
            # Feed the source channels.
            for source, is_global in graph.sources.items():
                if is_global:
                    self._deliver(source, GLOBAL_KEY, context)
                else:
                    for sample in context.samples:
                        self._deliver(source, sample.id, sample)
                self._close_channel(source)
            self._check_closures()
            self._process_events()
        finally:
            for executor in self.executors.values():
                executor.stop()
            self._running = False

        result = RunResult(
            jobs=list(self._jobs.values()),
            join_mismatches=list(self._join_mismatches),
            failures=self._failures + self._get_required_failures(),
            cancelled=self._cancelled,
            start_time=start_time,
            end_time=datetime.datetime.now(),
        )
        self.log("End run {}".format(context.run_id[:8]))

        if self._fatal_error:
            self._fatal_error.result = result
            raise self._fatal_error
        if self._cancelled:
            raise RunCancelledError(self._cancelled, result)
        if result.failures:
            raise RunFailedError(result.failures, result)
        return result

    def _process_events(self) -> None:
        """
        Main scheduler event loop. Loop over events until every channel is
        closed and every job is terminal.
        """
        while not self._is_finished():
            if self.events_queue.empty() and not self._get_active_jobs():
                raise SchedulerError(
                    "Run stalled: no jobs in flight but channels are still open: {}".format(
                        ", ".join(sorted(set(self.graph.channels) - self._closed))
                    )
                )
            try:
                event_func = self.events_queue.get(timeout=self.job_status_interval)
                event_func()
                self._check_closures()
            except KeyboardInterrupt:
                self.log("Shutting down... waiting for in-flight jobs to stop.")
                self._cancel_main_thread("interrupted")
            except queue.Empty:
                # Print job statuses periodically.
                self.log_job_statuses()

        # Print final job statuses.
        self.log_job_statuses()

    def _is_finished(self) -> bool:
        assert self.graph
        return len(self._closed) == len(self.graph.channels) and not self._get_active_jobs()

    def _get_active_jobs(self) -> List[Job]:
        return [job for job in self._jobs.values() if not job.is_terminal]

    def cancel(self, reason: str = CANCELLED) -> None:
        """
        Cancel the current run.

        Thread safe. In-flight jobs are signalled through their executor and
        nothing new is dispatched.
        """
        self.events_queue.put(lambda: self._cancel_main_thread(reason))

    def _cancel_main_thread(self, reason: str) -> None:
        assert self.thread_id == threading.get_ident()
        if self._cancelled:
            return
        self._cancelled = reason
        self.log(f"Cancelling run: {reason}", level=logging.WARNING)
        for job in self._get_active_jobs():
            if job.status == RUNNING and job.executor:
                self.executors[job.executor].cancel_job(job)

    # Channel delivery.

    def _deliver(self, channel: str, key: str, value: Any) -> None:
        """
        Deliver one datum on a channel to its subscribers and consumers.
        """
        assert self.graph
        if key in self._delivered[channel]:
            raise SchedulerError(f"Channel {channel} delivered key '{key}' twice.")
        self._delivered[channel].add(key)

        for callback in self._subscribers.get(channel, []):
            callback(channel, key, value)

        for consumer in self.graph.channels[channel].consumers:
            self._inbox[consumer][channel][key] = value
            if consumer in self.graph.nodes:
                self._on_node_input(self.graph.nodes[consumer], channel, key)
            else:
                self._on_operator_input(self.graph.operators[consumer], key)

    def _close_channel(self, channel: str) -> None:
        self._closed.add(channel)

    def _check_closures(self) -> None:
        """
        Close the outputs of every node and operator that can emit nothing more.
        """
        assert self.graph
        for name in self.graph.order:
            outputs = self.graph.get_outputs(name)
            if all(output in self._closed for output in outputs):
                continue
            if not all(channel in self._closed for channel in self.graph.get_inputs(name)):
                continue

            if name in self.graph.nodes:
                node = self.graph.nodes[name]
                self._skip_incomplete(node)
                if any(
                    not job.is_terminal
                    for (node_name, _), job in self._jobs.items()
                    if node_name == name
                ):
                    continue
            else:
                operator = self.graph.operators[name]
                self._handle_emissions(operator, operator.on_close(self._inbox[name]))
                for channel_values in self._inbox[name].values():
                    channel_values.clear()

            for output in outputs:
                self._close_channel(output)

    # Operators.

    def _on_operator_input(self, operator: Operator, key: str) -> None:
        self._handle_emissions(operator, operator.on_deliver(key, self._inbox[operator.name]))

    def _handle_emissions(
        self, operator: Operator, emissions: List[Tuple[str, Any, Optional[Exception]]]
    ) -> None:
        for key, value, error in emissions:
            for channel_values in self._inbox[operator.name].values():
                channel_values.pop(key, None)

            if isinstance(error, JoinMismatchError):
                self._join_mismatches.append(error)
                self.log(str(error), level=logging.WARNING)
                if isinstance(operator, JoinOperator) and operator.policy == FATAL_POLICY:
                    if not self._fatal_error:
                        self._fatal_error = error
                    self._cancel_main_thread(str(error))
            elif isinstance(error, GraphError):
                self._failures.append(str(error))
                self.log(str(error), level=logging.ERROR)

            self._deliver(operator.output, key, value)

    # Task instances.

    def _on_node_input(self, node: TaskNode, channel: str, key: str) -> None:
        assert self.graph
        if node.is_global:
            self._try_create_job(node, GLOBAL_KEY)
        elif key == GLOBAL_KEY:
            # Broadcast: a global input may complete many waiting keys.
            for waiting_key in sorted(self._get_waiting_keys(node)):
                self._try_create_job(node, waiting_key)
        else:
            self._try_create_job(node, key)

    def _get_waiting_keys(self, node: TaskNode) -> Set[str]:
        assert self.graph
        keys: Set[str] = set()
        for channel, values in self._inbox[node.name].items():
            if not self.graph.channels[channel].is_global:
                keys.update(values)
        return keys

    def _get_input_key(self, channel: str, key: str) -> str:
        assert self.graph
        return GLOBAL_KEY if self.graph.channels[channel].is_global else key

    def _try_create_job(self, node: TaskNode, key: str) -> None:
        """
        Create the job for `(node, key)` once every input delivered the key.
        """
        if (node.name, key) in self._jobs:
            return
        inbox = self._inbox[node.name]
        if not all(self._get_input_key(channel, key) in inbox[channel] for channel in inbox):
            return

        values = {channel: inbox[channel][self._get_input_key(channel, key)] for channel in inbox}
        for channel in inbox:
            if self._get_input_key(channel, key) == key:
                del inbox[channel][key]

        job = Job(node, key, sample=self._samples.get(key))
        self._jobs[(node.name, key)] = job
        self._prepare_job(job, values)

    def _skip_incomplete(self, node: TaskNode) -> None:
        """
        Skip keys that only partially arrived on the (closed) inputs of a node.
        """
        keys = (
            self._get_waiting_keys(node)
            if not node.is_global
            else ({GLOBAL_KEY} if (node.name, GLOBAL_KEY) not in self._jobs else set())
        )
        # A global node whose inputs never delivered anything has nothing to run.
        if node.is_global and not any(self._inbox[node.name].values()):
            keys = set()

        for key in sorted(keys):
            for channel_values in self._inbox[node.name].values():
                if key != GLOBAL_KEY:
                    channel_values.pop(key, None)
            job = Job(node, key, sample=self._samples.get(key))
            self._jobs[(node.name, key)] = job
            self._skip_job(job, INCOMPLETE_INPUTS)

    def _prepare_job(self, job: Job, values: Dict[str, Any]) -> None:
        """
        Decide whether a new job is skipped or dispatched.
        """
        assert self.context
        node = job.node

        if not node.is_enabled(self.context.params):
            self._skip_job(job, DISABLED)
            return

        # Resolve task parameters.
        for param, input in node.inputs.items():
            value = values[input.channel]
            if is_void(value):
                if input.optional:
                    value = None
                else:
                    self._skip_job(job, f"upstream: {value}")
                    return
            job.inputs[param] = value

        if not node.is_required_for(job.sample):
            self._skip_job(job, REQUIREMENT)
            return

        if self._cancelled:
            self._skip_job(job, CANCELLED)
            return

        job.cpus, job.memory = self.context.get_resources(node.resource_class)
        job.outputs = node.get_output_paths(self.context.output_dir, job.key)
        job.work_dir = node.get_work_dir(self.context.work_dir, job.key)
        job.executor = STUB_EXECUTOR if self.context.params.stub else node.executor
        if job.executor not in self.executors:
            raise SchedulerError(f"Task {node.name} uses unknown executor {job.executor}.")
        job.task_context = TaskContext(
            node=node,
            key=job.key,
            sample=job.sample,
            inputs=job.inputs,
            outputs=job.outputs,
            params=self.context.params,
            run=self.context,
            work_dir=job.work_dir,
            cpus=job.cpus,
            memory=job.memory,
        )
        job.status = READY

        # Delay the execution to a new event so we don't interrupt the current event.
        self.events_queue.put(lambda: self._exec_job_main_thread(job))

    def _exec_job_main_thread(self, job: Job) -> None:
        """
        Submit a READY job to its executor.

        This function runs on the main scheduler thread.
        """
        assert self.thread_id == threading.get_ident()
        if self._cancelled:
            self._skip_job(job, CANCELLED)
            return

        assert job.work_dir and job.executor
        os.makedirs(job.work_dir, exist_ok=True)
        for channel, path in job.outputs.items():
            if job.node.is_dir_output(channel):
                os.makedirs(path, exist_ok=True)
            else:
                os.makedirs(os.path.dirname(path), exist_ok=True)

        job.status = RUNNING
        job.start_time = datetime.datetime.now()
        executor = self.executors[job.executor]
        self._log_job("Run", job, detail=f"{executor.name}, cpus={job.cpus}")
        if job.node.script:
            executor.submit_script(job)
        else:
            executor.submit(job)

    def _skip_job(self, job: Job, reason: str) -> None:
        job.status = SKIPPED
        job.skip_reason = reason
        job.end_time = datetime.datetime.now()
        self._log_job("Skip", job, detail=reason, level=logging.DEBUG)
        job.clear()
        for channel in job.node.outputs:
            self._deliver(channel, job.key, Void("skipped", job.node.name))

    def done_job(self, job: Job, result: Any) -> None:
        """
        Mark a :class:`Job` as successfully done with a `result`.

        A primary Executor lifecycle method, hence is thread safe.
        """
        self.events_queue.put(lambda: self._done_job_main_thread(job, result))

    def _done_job_main_thread(self, job: Job, result: Any) -> None:
        """
        Check the declared outputs of a finished job and publish them.

        Python tasks may return a dict overriding the value of some outputs.
        """
        assert self.thread_id == threading.get_ident()
        overrides = result if isinstance(result, dict) else {}

        values: Dict[str, Any] = {}
        for channel, path in job.outputs.items():
            if channel in overrides:
                values[channel] = overrides[channel]
            elif output_exists(path, job.node.is_dir_output(channel)):
                values[channel] = path
            elif channel in job.node.optional_outputs:
                values[channel] = Void("not produced", job.node.name)
            else:
                self._reject_job_main_thread(
                    job,
                    TaskExecutionError(
                        job.node.name, job.key, f"missing output {channel}: {path}"
                    ),
                )
                return

        job.status = SUCCEEDED
        job.end_time = datetime.datetime.now()
        self._log_job("Done", job)
        job.clear()
        for channel, value in values.items():
            self._deliver(channel, job.key, value)

    def reject_job(self, job: Job, error: Exception) -> None:
        """
        Reject a :class:`Job` that has failed with an `error`.

        A primary Executor lifecycle method, hence is thread safe.
        """
        self.events_queue.put(lambda: self._reject_job_main_thread(job, error))

    def _reject_job_main_thread(self, job: Job, error: Exception) -> None:
        assert self.thread_id == threading.get_ident()
        job.status = FAILED
        job.error = error
        job.end_time = datetime.datetime.now()
        level = logging.WARNING if isinstance(error, TaskCancelledError) else logging.ERROR
        self._log_job("Reject", job, detail=str(error), level=level)
        job.clear()
        for channel in job.node.outputs:
            self._deliver(channel, job.key, Void("failed", job.node.name))

    def _get_required_failures(self) -> List[str]:
        """
        Required nodes that failed for every key they ran on.
        """
        assert self.graph
        failures = []
        for name, node in self.graph.nodes.items():
            if not node.required:
                continue
            jobs = [job for (node_name, _), job in self._jobs.items() if node_name == name]
            failed = [job for job in jobs if job.status == FAILED]
            if failed and not any(job.status == SUCCEEDED for job in jobs):
                failures.append(
                    "required task {} failed for all samples: {}".format(
                        name, ", ".join(sorted(job.key for job in failed))
                    )
                )
        return failures
