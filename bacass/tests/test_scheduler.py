import threading
import time
from typing import Any, Dict, List

import pytest

from bacass.config import Config
from bacass.executors.base import TaskCancelledError, TaskExecutionError
from bacass.graph import DataflowGraph, GraphError, JoinMismatchError, Void, is_void
from bacass.scheduler import (
    DISABLED,
    FAILED,
    REQUIREMENT,
    SKIPPED,
    SUCCEEDED,
    RunCancelledError,
    RunFailedError,
    Scheduler,
    SchedulerError,
    format_job_statuses,
    get_status_counts,
)
from bacass.task import GLOBAL_KEY, Input
from bacass.tests.utils import value_task


def make_chain() -> DataflowGraph:
    graph = DataflowGraph("chain")
    graph.source("samples")
    graph.task(
        "trim", inputs={"sample": "samples"}, outputs={"trimmed": "t.fq"}, script=False
    )(value_task("trimmed-{key}"))
    graph.task(
        "assemble", inputs={"reads": "trimmed"}, outputs={"assembly": "a.fa"}, script=False
    )(value_task("{reads}-assembled"))
    return graph


def test_per_sample_chain(scheduler: Scheduler, make_context) -> None:
    """
    Each sample should flow through the chain independently.
    """
    received: List[Any] = []
    scheduler.subscribe("assembly", lambda channel, key, value: received.append((key, value)))

    result = scheduler.run(make_chain(), make_context())
    assert result.succeeded
    assert len(result.jobs) == 4
    assert all(job.status == SUCCEEDED for job in result.jobs)
    assert sorted(received) == [
        ("A", "trimmed-A-assembled"),
        ("B", "trimmed-B-assembled"),
    ]

    job = result.get_job("assemble", "A")
    assert job.cpus == 2
    assert job.work_dir.endswith("work/assemble/A")
    assert job.start_time and job.end_time
    assert job.to_dict() == {
        "node": "assemble",
        "key": "A",
        "status": SUCCEEDED,
        "skip_reason": None,
        "error": None,
    }


def test_failure_is_contained(scheduler: Scheduler, make_context) -> None:
    """
    A failure for one sample should only skip that sample's downstream work.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"trimmed": "t.fq"}, script=False)
    def trim(ctx):
        if ctx.key == "B":
            raise ValueError("corrupt reads")
        return {"trimmed": f"trimmed-{ctx.key}"}

    graph.task(
        "assemble", inputs={"reads": "trimmed"}, outputs={"assembly": "a.fa"}, script=False
    )(value_task("{reads}-assembled"))

    result = scheduler.run(graph, make_context())
    assert result.succeeded
    assert result.get_job("assemble", "A").status == SUCCEEDED

    failed = result.get_job("trim", "B")
    assert failed.status == FAILED
    assert isinstance(failed.error, TaskExecutionError)
    assert "corrupt reads" in str(failed.error)

    skipped = result.get_job("assemble", "B")
    assert skipped.status == SKIPPED
    assert skipped.skip_reason == "upstream: trim failed"


def test_disabled_and_requirement(scheduler: Scheduler, make_context) -> None:
    """
    Disabled nodes and unmet sample requirements should skip without dispatch.
    """
    calls: List[str] = []

    def record(ctx):
        calls.append(f"{ctx.node.name}:{ctx.key}")
        return {channel: ctx.key for channel in ctx.outputs}

    graph = DataflowGraph()
    graph.source("samples")
    graph.task(
        "porechop",
        inputs={"sample": "samples"},
        outputs={"trimmed_long": "l.fq"},
        requires=lambda sample: sample.has_long_reads,
        script=False,
    )(record)
    graph.task(
        "pycoqc",
        inputs={"sample": "samples"},
        outputs={"pycoqc": "p.html"},
        when=lambda params: not params.skip_pycoqc,
        script=False,
    )(record)
    graph.task(
        "nanoplot", inputs={"reads": "trimmed_long"}, outputs={"plots": "n/"}, script=False
    )(record)

    result = scheduler.run(graph, make_context(skip_pycoqc=True))
    assert sorted(calls) == ["nanoplot:B", "porechop:B"]

    assert result.get_job("porechop", "A").skip_reason == REQUIREMENT
    assert result.get_job("nanoplot", "A").skip_reason == "upstream: porechop skipped"
    assert {job.skip_reason for job in result.get_jobs(node="pycoqc")} == {DISABLED}
    assert result.status_counts()["pycoqc"][SKIPPED] == 2


def test_global_broadcast(scheduler: Scheduler, make_context) -> None:
    """
    A global channel should be delivered to every sample of a consumer.
    """
    graph = DataflowGraph()
    graph.source("samples")
    graph.source("run", is_global=True)

    @graph.task(inputs={"run": "run"}, outputs={"db": "db/"}, script=False)
    def prepare_db(ctx):
        assert ctx.is_global
        return {"db": f"db-{ctx.run.run_id}"}

    graph.task(
        "classify",
        inputs={"sample": "samples", "db": "db"},
        outputs={"report": "r.txt"},
        script=False,
    )(value_task("{key}-{db}"))

    received: Dict[str, Any] = {}
    scheduler.subscribe("report", lambda channel, key, value: received.update({key: value}))
    result = scheduler.run(graph, make_context())

    assert result.get_job("prepare_db", GLOBAL_KEY).status == SUCCEEDED
    assert len(result.get_jobs(node="prepare_db")) == 1
    assert received == {"A": "A-db-test-run", "B": "B-db-test-run"}


def test_global_skip_propagates(scheduler: Scheduler, make_context) -> None:
    """
    A skipped global node should skip every per-sample consumer.
    """
    graph = DataflowGraph()
    graph.source("samples")
    graph.source("run", is_global=True)
    graph.task(
        "prepare_db",
        inputs={"run": "run"},
        outputs={"db": "db/"},
        when=lambda params: not params.skip_kraken2,
        script=False,
    )(value_task("db"))
    graph.task(
        "classify",
        inputs={"sample": "samples", "db": "db"},
        outputs={"report": "r.txt"},
        script=False,
    )(value_task("{db}"))

    result = scheduler.run(graph, make_context(skip_kraken2=True))
    assert result.get_job("prepare_db", GLOBAL_KEY).skip_reason == DISABLED
    assert [job.skip_reason for job in result.get_jobs(node="classify")] == [
        "upstream: prepare_db skipped",
        "upstream: prepare_db skipped",
    ]


def test_collect(scheduler: Scheduler, make_context) -> None:
    """
    A collected channel should hold the values of every successful sample.
    """
    graph = make_chain()
    collected: List[Any] = []

    @graph.task(
        inputs={"assemblies": graph.collect("all_assemblies", "assembly")},
        outputs={"report": "quast/"},
        script=False,
    )
    def quast(ctx):
        collected.append(ctx.assemblies)
        return {"report": "quast"}

    result = scheduler.run(graph, make_context())
    assert result.get_job("quast", GLOBAL_KEY).status == SUCCEEDED
    assert collected == [{"A": "trimmed-A-assembled", "B": "trimmed-B-assembled"}]


def test_collect_empty(scheduler: Scheduler, make_context) -> None:
    """
    An empty collection that is not allowed should fail the run.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"assembly": "a.fa"}, script=False)
    def assemble(ctx):
        raise ValueError("no reads")

    graph.task(
        "quast",
        inputs={"assemblies": graph.collect("all", "assembly", allow_empty=False)},
        outputs={"report": "quast/"},
        script=False,
    )(value_task("quast"))

    with pytest.raises(RunFailedError) as excinfo:
        scheduler.run(graph, make_context())

    result = excinfo.value.result
    assert any("Collect all" in failure for failure in result.failures)
    assert result.get_job("quast", GLOBAL_KEY).skip_reason == "upstream: all empty collection"


def make_join_graph(policy: str) -> DataflowGraph:
    graph = DataflowGraph()
    graph.source("samples")
    graph.task(
        "skewer", inputs={"sample": "samples"}, outputs={"short": "s/"}, script=False
    )(value_task("short-{key}"))
    graph.task(
        "porechop",
        inputs={"sample": "samples"},
        outputs={"long": "l.fq"},
        requires=lambda sample: sample.has_long_reads,
        script=False,
    )(value_task("long-{key}"))

    @graph.task(
        inputs={"reads": graph.join("hybrid", "short", "long", policy=policy)},
        outputs={"assembly": "a.fa"},
        script=False,
    )
    def unicycler(ctx):
        short, long = ctx.reads
        return {"assembly": f"{short}+{long}"}

    return graph


def test_join_skip_policy(scheduler: Scheduler, make_context) -> None:
    """
    Under the skip policy a one-sided sample should be skipped and recorded.
    """
    received: Dict[str, Any] = {}
    scheduler.subscribe("assembly", lambda channel, key, value: received.update({key: value}))
    result = scheduler.run(make_join_graph("skip"), make_context())

    assert received["B"] == "short-B+long-B"
    assert is_void(received["A"])
    assert result.get_job("unicycler", "A").skip_reason == "upstream: hybrid join mismatch"
    [mismatch] = result.join_mismatches
    assert (mismatch.join, mismatch.key, mismatch.missing) == ("hybrid", "A", "right")
    assert result.succeeded


def test_join_null_policy(scheduler: Scheduler, make_context) -> None:
    """
    Under the null policy the missing side should be None.
    """
    received: Dict[str, Any] = {}
    scheduler.subscribe("assembly", lambda channel, key, value: received.update({key: value}))
    result = scheduler.run(make_join_graph("null"), make_context())

    assert received == {"A": "short-A+None", "B": "short-B+long-B"}
    assert len(result.join_mismatches) == 1


def test_join_fatal_policy(scheduler: Scheduler, make_context) -> None:
    """
    Under the fatal policy a mismatch should abort the run.
    """
    with pytest.raises(JoinMismatchError) as excinfo:
        scheduler.run(make_join_graph("fatal"), make_context())
    assert excinfo.value.key == "A"
    assert excinfo.value.result.cancelled
    assert excinfo.value in excinfo.value.result.join_mismatches


def test_optional_input(scheduler: Scheduler, make_context) -> None:
    """
    Optional inputs should receive None instead of skipping the instance.
    """
    graph = make_join_graph("skip")
    seen: Dict[str, Any] = {}

    @graph.task(
        inputs={"short": "short", "long": Input("long", optional=True)},
        outputs={"report": "k.txt"},
        script=False,
    )
    def kraken2(ctx):
        seen[ctx.key] = ctx.long
        return {"report": ctx.key}

    scheduler.run(graph, make_context())
    assert seen == {"A": None, "B": "long-B"}


def test_outputs_checked(scheduler: Scheduler, make_context) -> None:
    """
    Declared outputs that were not produced should fail the instance unless optional.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"assembly": "a.fa"}, script=False)
    def lazy(ctx):
        return None

    @graph.task(
        inputs={"sample": "samples"},
        outputs={"plasmids": "p.fa"},
        optional_outputs=("plasmids",),
        script=False,
    )
    def plasmids(ctx):
        return None

    received: Dict[str, Any] = {}
    scheduler.subscribe("plasmids", lambda channel, key, value: received.update({key: value}))
    result = scheduler.run(graph, make_context())

    for job in result.get_jobs(node="lazy"):
        assert job.status == FAILED
        assert "missing output assembly" in str(job.error)
    assert all(job.status == SUCCEEDED for job in result.get_jobs(node="plasmids"))
    assert received["A"] == Void("not produced", "plasmids")


def test_python_task_output_file(scheduler: Scheduler, make_context) -> None:
    """
    Outputs written to their published path should be delivered as paths.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"note": "{key}.txt"}, script=False)
    def write_note(ctx):
        with open(ctx.outputs["note"], "w") as out:
            out.write(ctx.sample.id)

    received: Dict[str, Any] = {}
    scheduler.subscribe("note", lambda channel, key, value: received.update({key: value}))
    context = make_context()
    scheduler.run(graph, context)

    with open(received["A"]) as infile:
        assert infile.read() == "A"
    assert received["A"].endswith("A/write_note/A.txt")


def test_required_failure(scheduler: Scheduler, make_context) -> None:
    """
    A required node failing for every sample should fail the run.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(
        inputs={"sample": "samples"}, outputs={"assembly": "a.fa"}, required=True, script=False
    )
    def assemble(ctx):
        raise RuntimeError("out of memory")

    with pytest.raises(RunFailedError) as excinfo:
        scheduler.run(graph, make_context())
    assert "required task assemble failed for all samples: A, B" in str(excinfo.value)
    assert len(excinfo.value.result.get_jobs(status=FAILED)) == 2


def test_required_partial_failure(scheduler: Scheduler, make_context) -> None:
    """
    A required node succeeding for some sample should not fail the run.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(
        inputs={"sample": "samples"}, outputs={"assembly": "a.fa"}, required=True, script=False
    )
    def assemble(ctx):
        if ctx.key == "A":
            raise RuntimeError("out of memory")
        return {"assembly": "b.fa"}

    result = scheduler.run(graph, make_context())
    assert result.succeeded
    assert result.get_job("assemble", "A").status == FAILED


def test_cancel(scheduler: Scheduler, make_context, samples) -> None:
    """
    Cancelling a run should stop dispatching and raise RunCancelledError.
    """
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"trimmed": "t.fq"}, script=False)
    def trim(ctx):
        scheduler.cancel("user request")
        return {"trimmed": "t"}

    graph.task(
        "assemble", inputs={"reads": "trimmed"}, outputs={"assembly": "a.fa"}, script=False
    )(value_task("{reads}"))

    with pytest.raises(RunCancelledError) as excinfo:
        scheduler.run(graph, make_context(samples=samples[:1]))

    assert excinfo.value.reason == "user request"
    result = excinfo.value.result
    assert result.cancelled == "user request"
    assert not result.get_jobs(node="assemble", status=SUCCEEDED)
    trim_job = result.get_job("trim", "A")
    if trim_job.status == FAILED:
        assert isinstance(trim_job.error, TaskCancelledError)


def test_resources_capped(scheduler: Scheduler, make_context) -> None:
    """
    Resource reservations should not exceed the run limits.
    """
    graph = DataflowGraph()
    graph.source("samples")
    graph.task(
        "assemble",
        inputs={"sample": "samples"},
        outputs={"assembly": "a.fa"},
        resource_class="large",
        script=False,
    )(value_task("{key}"))

    result = scheduler.run(graph, make_context(max_cpus=4, max_memory=16.0))
    job = result.get_job("assemble", "A")
    assert (job.cpus, job.memory) == (4, 16.0)


def test_local_admission(scheduler: Scheduler, make_context) -> None:
    """
    Jobs whose reservations do not fit together should not run concurrently.
    """
    lock = threading.Lock()
    running = [0]
    peak = [0]

    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"out": "o"}, script=False)
    def busy(ctx):
        with lock:
            running[0] += 1
            peak[0] = max(peak[0], running[0])
        time.sleep(0.05)
        with lock:
            running[0] -= 1
        return {"out": ctx.key}

    result = scheduler.run(graph, make_context(max_cpus=2))
    assert all(job.status == SUCCEEDED for job in result.jobs)
    assert peak[0] == 1


def test_stub_mode(scheduler: Scheduler, make_context) -> None:
    """
    Stub runs should write placeholders without calling python tasks.
    """
    calls: List[str] = []
    graph = DataflowGraph()
    graph.source("samples")

    @graph.task(inputs={"sample": "samples"}, outputs={"db": "db/"}, script=False)
    def fetch(ctx):
        calls.append(ctx.key)

    @graph.task(inputs={"db": "db"}, outputs={"report": "{key}.txt"})
    def classify(ctx):
        return f"kraken2 --db {ctx.db} > {ctx.outputs['report']}"

    received: Dict[str, Any] = {}
    scheduler.subscribe("report", lambda channel, key, value: received.update({key: value}))
    result = scheduler.run(graph, make_context(stub=True))

    assert calls == []
    assert all(job.executor == "stub" for job in result.jobs)
    with open(received["A"]) as infile:
        text = infile.read()
    assert "node: classify" in text
    assert "kraken2 --db" in text


def test_run_twice(scheduler: Scheduler, make_context) -> None:
    """
    A scheduler should be reusable for several runs.
    """
    assert scheduler.run(make_chain(), make_context()).succeeded
    assert scheduler.run(make_chain(), make_context()).succeeded
    assert not scheduler.is_running


def test_unknown_executor(scheduler: Scheduler, make_context) -> None:
    graph = DataflowGraph()
    graph.source("samples")
    graph.task(
        "a", inputs={"sample": "samples"}, outputs={"a": "a"}, executor="batch", script=False
    )(value_task("{key}"))
    with pytest.raises(SchedulerError):
        scheduler.run(graph, make_context())


def test_invalid_graph(scheduler: Scheduler, make_context) -> None:
    graph = DataflowGraph()
    graph.source("samples")
    graph.task("a", inputs={"x": "nothing"}, outputs={"a": "a"})(value_task("{key}"))
    with pytest.raises(GraphError):
        scheduler.run(graph, make_context())


def test_format_job_statuses(scheduler: Scheduler, make_context) -> None:
    """
    The job status table should count jobs per node and status.
    """
    result = scheduler.run(make_chain(), make_context())
    lines = list(format_job_statuses(get_status_counts(result.jobs)))
    assert lines[0].startswith("| JOB STATUS ")
    assert lines[1].split() == [
        "|",
        "TASK",
        "PENDING",
        "READY",
        "RUNNING",
        "SUCCEEDED",
        "FAILED",
        "SKIPPED",
        "TOTAL",
    ]
    assert lines[3].split() == ["|", "ALL", "0", "0", "0", "4", "0", "0", "4"]
    assert lines[4].split() == ["|", "assemble", "0", "0", "0", "2", "0", "0", "2"]


def test_job_status_interval() -> None:
    """
    An explicit interval should win over the config, and zero disables the status table.
    """
    config = Config({"scheduler": {"job_status_interval": "5"}})
    assert Scheduler(config=config).job_status_interval == 5
    assert Scheduler(config=config, job_status_interval=2).job_status_interval == 2
    assert Scheduler(config=config, job_status_interval=0).job_status_interval is None
    assert Scheduler().job_status_interval == 20
