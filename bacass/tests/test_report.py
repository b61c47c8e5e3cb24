import json
import os

import pytest

from bacass.graph import DataflowGraph
from bacass.report import (
    REPORT_FILE,
    SUMMARY_FILE,
    AggregationIncompleteError,
    RunReportAggregator,
    format_report,
)
from bacass.scheduler import Scheduler


def write_output(ctx):
    for channel, path in ctx.outputs.items():
        with open(path, "w") as out:
            out.write(f"{channel} {ctx.key}\n")


def make_graph() -> DataflowGraph:
    graph = DataflowGraph("report")
    graph.source("samples")
    graph.source("run", is_global=True)

    @graph.task(
        inputs={"sample": "samples"},
        outputs={"qc_report": "{key}_qc.txt"},
        report=True,
        script=False,
    )
    def qc(ctx):
        if ctx.key == "B":
            raise ValueError("bad reads")
        write_output(ctx)

    graph.task(
        "nanoplot",
        inputs={"sample": "samples"},
        outputs={"nanoplot_report": "{key}_nanoplot.txt"},
        requires=lambda sample: sample.has_long_reads and sample.id == "C",
        report=True,
        script=False,
    )(write_output)
    graph.task(
        "versions",
        inputs={"run": "run"},
        outputs={"software_versions": "versions.yml"},
        report=True,
        script=False,
    )(write_output)
    return graph.freeze()


def test_report(scheduler: Scheduler, make_context) -> None:
    """
    The aggregator should summarize fragments, failures and skips of a run.
    """
    context = make_context()
    graph = make_graph()
    aggregator = RunReportAggregator(context, graph)
    aggregator.attach(scheduler)
    result = scheduler.run(graph, context)
    report = aggregator.build(result)

    assert report.samples == {"A": {"qc_report": "A/qc/A_qc.txt"}}
    assert report.global_fragments == {"software_versions": "versions/versions.yml"}
    assert set(report.hashes) == {"A/qc/A_qc.txt", "versions/versions.yml"}
    assert report.failures["B"][0]["node"] == "qc"
    assert "bad reads" in report.failures["B"][0]["error"]
    assert report.skipped["A"] == [{"node": "nanoplot", "reason": "requirement"}]
    assert report.job_counts["qc"] == {"FAILED": 1, "SUCCEEDED": 1, "TOTAL": 2}
    assert report.execution["status"] == "succeeded"
    assert report.execution["run_id"] == "test-run"
    assert report.warnings == ["No report fragments from: nanoplot_report"]
    assert report.run["params"]["output_dir"] == context.output_dir

    paths = aggregator.write(report)
    assert paths == [
        os.path.join(context.info_dir, SUMMARY_FILE),
        os.path.join(context.info_dir, REPORT_FILE),
    ]
    with open(paths[0]) as infile:
        summary = json.load(infile)
    assert summary["samples"] == report.samples

    with open(paths[1]) as infile:
        text = infile.read()
    assert "bacass run report" in text
    assert "B qc: " in text
    assert "WARNING: No report fragments from: nanoplot_report" in text


def test_report_strict(scheduler: Scheduler, make_context) -> None:
    """
    In strict mode a report stage without fragments should be an error, raised
    only after the partial report could be written.
    """
    context = make_context()
    graph = make_graph()
    aggregator = RunReportAggregator(context, graph, strict=True)
    aggregator.attach(scheduler)
    report = aggregator.build(scheduler.run(graph, context))
    assert report.warnings == ["No report fragments from: nanoplot_report"]

    paths = aggregator.write(report)
    assert all(os.path.exists(path) for path in paths)

    with pytest.raises(AggregationIncompleteError) as excinfo:
        aggregator.check()
    assert excinfo.value.channels == ["nanoplot_report"]

    # Without strict mode the check passes.
    RunReportAggregator(context, graph).check()


def test_report_reruns_identical(scheduler: Scheduler, make_context) -> None:
    """
    Reruns over the same inputs should give the same report apart from execution details.
    """
    reports = []
    for _ in range(2):
        context = make_context()
        graph = make_graph()
        aggregator = RunReportAggregator(context, graph)
        aggregator.attach(scheduler)
        reports.append(aggregator.build(scheduler.run(graph, context)).to_dict())

    first, second = reports
    first.pop("execution")
    second.pop("execution")
    assert first == second


def test_report_without_samples(make_context) -> None:
    """
    A run without samples should still report its global stages.
    """
    context = make_context(samples=())
    graph = make_graph()
    aggregator = RunReportAggregator(context, graph)
    scheduler = Scheduler()
    aggregator.attach(scheduler)
    report = aggregator.build(scheduler.run(graph, context))

    assert report.samples == {}
    assert list(report.global_fragments) == ["software_versions"]
    lines = list(format_report(report))
    assert any(
        line.split() == ["*", "software_versions", "versions/versions.yml"] for line in lines
    )
