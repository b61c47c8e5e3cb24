"""
Run report aggregation.

The aggregator subscribes to the output channels of every report-producing
task node, keeps the fragments that arrive and, once the run is over,
renders a summary of the whole run from whatever fragments exist.
"""

import dataclasses
import json
import os
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from bacass.context import RunContext
from bacass.graph import DataflowGraph, is_void
from bacass.hashing import hash_path
from bacass.logging import logger
from bacass.scheduler import FAILED, SKIPPED, RunResult, format_job_statuses
from bacass.task import GLOBAL_KEY
from bacass.utils import format_table

if TYPE_CHECKING:
    from bacass.scheduler import Scheduler

SUMMARY_FILE = "run_summary.json"
REPORT_FILE = "run_report.txt"


class AggregationIncompleteError(Exception):
    """
    A report channel produced no fragments.
    """

    def __init__(self, channels: List[str]):
        self.channels = channels
        super().__init__("No report fragments from: {}".format(", ".join(channels)))

    def __reduce__(self):
        return (AggregationIncompleteError, (self.channels,))


@dataclasses.dataclass
class RunReport:
    """
    Summary of one run.

    Everything outside `execution` only depends on the inputs and parameters
    of the run, so reruns over the same inputs give identical reports.
    """

    run: Dict[str, Any]
    samples: Dict[str, Dict[str, Any]]
    global_fragments: Dict[str, Any]
    hashes: Dict[str, str]
    job_counts: Dict[str, Dict[str, int]]
    failures: Dict[str, List[Dict[str, str]]]
    skipped: Dict[str, List[Dict[str, str]]]
    join_mismatches: List[Dict[str, str]]
    run_failures: List[str]
    warnings: List[str]
    execution: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def get_fragment_set(self) -> Dict[str, str]:
        """
        Returns the fragment paths with their content hashes.
        """
        return dict(self.hashes)


class RunReportAggregator:
    """
    Collects report fragments delivered during a run into a RunReport.
    """

    def __init__(self, context: RunContext, graph: DataflowGraph, strict: bool = False):
        self.context = context
        self.graph = graph.freeze()
        self.strict = strict
        self.channels = [channel.name for channel in self.graph.iter_report_channels()]
        self._fragments: Dict[str, Dict[str, Any]] = defaultdict(dict)

    def attach(self, scheduler: "Scheduler") -> None:
        for channel in self.channels:
            scheduler.subscribe(channel, self.on_fragment)

    def on_fragment(self, channel: str, key: str, value: Any) -> None:
        # Fragments of skipped or failed stages are left out.
        if is_void(value) or value is None:
            return
        self._fragments[key][channel] = value

    def _relpath(self, value: Any) -> Any:
        """
        Express fragment paths relative to the output dir.
        """
        if not isinstance(value, str) or not os.path.exists(value):
            return value
        path = os.path.abspath(value)
        output_dir = os.path.abspath(self.context.output_dir)
        if path.startswith(output_dir + os.sep):
            return os.path.relpath(path, output_dir)
        return path

    def _get_hashes(self) -> Dict[str, str]:
        hashes = {}
        for fragments in self._fragments.values():
            for value in fragments.values():
                if isinstance(value, str) and os.path.exists(value):
                    hashes[self._relpath(value)] = hash_path(value)
        return hashes

    def get_missing_channels(self) -> List[str]:
        """
        Report channels of enabled nodes that produced no fragments.
        """
        received = {channel for fragments in self._fragments.values() for channel in fragments}
        missing = []
        for channel in self.channels:
            node = self.graph.nodes[self.graph.channels[channel].producer]
            if channel not in received and node.is_enabled(self.context.params):
                missing.append(channel)
        return missing

    def get_warnings(self) -> List[str]:
        missing = self.get_missing_channels()
        return [str(AggregationIncompleteError(missing))] if missing else []

    def check(self) -> None:
        """
        In strict mode, raise AggregationIncompleteError for report channels
        without fragments. Called after the report is written.
        """
        missing = self.get_missing_channels()
        if self.strict and missing:
            raise AggregationIncompleteError(missing)

    def build(self, result: RunResult) -> RunReport:
        """
        Render the run report once every job of the run is terminal.
        """
        failures: Dict[str, List[Dict[str, str]]] = defaultdict(list)
        skipped: Dict[str, List[Dict[str, str]]] = defaultdict(list)
        for job in sorted(result.jobs, key=lambda job: (job.key, job.node.name)):
            if job.status == FAILED:
                failures[job.key].append({"node": job.node.name, "error": str(job.error)})
            elif job.status == SKIPPED:
                skipped[job.key].append({"node": job.node.name, "reason": job.skip_reason or ""})

        samples = {
            key: {channel: self._relpath(value) for channel, value in sorted(fragments.items())}
            for key, fragments in sorted(self._fragments.items())
            if key != GLOBAL_KEY
        }
        global_fragments = {
            channel: self._relpath(value)
            for channel, value in sorted(self._fragments.get(GLOBAL_KEY, {}).items())
        }
        job_counts = {
            node: {status: count for status, count in sorted(counts.items())}
            for node, counts in sorted(result.status_counts().items())
        }

        if result.cancelled:
            status = "cancelled"
        elif result.failures:
            status = "failed"
        else:
            status = "succeeded"

        return RunReport(
            run=self.context.to_dict(),
            samples=samples,
            global_fragments=global_fragments,
            hashes=self._get_hashes(),
            job_counts=job_counts,
            failures=dict(failures),
            skipped=dict(skipped),
            join_mismatches=[
                {"join": error.join, "key": error.key, "missing": error.missing}
                for error in sorted(result.join_mismatches, key=lambda error: error.key)
            ],
            run_failures=list(result.failures),
            warnings=self.get_warnings(),
            execution={
                "run_id": self.context.run_id,
                "status": status,
                "start_time": _isoformat(result.start_time or self.context.start_time),
                "end_time": _isoformat(result.end_time),
                "argv": list(self.context.argv),
            },
        )

    def write(self, report: RunReport) -> List[str]:
        """
        Write the summary JSON and text report under `pipeline_info/`.
        """
        os.makedirs(self.context.info_dir, exist_ok=True)
        summary_path = os.path.join(self.context.info_dir, SUMMARY_FILE)
        with open(summary_path, "w") as out:
            json.dump(report.to_dict(), out, indent=2, sort_keys=True)
            out.write("\n")

        report_path = os.path.join(self.context.info_dir, REPORT_FILE)
        with open(report_path, "w") as out:
            for line in format_report(report):
                out.write(line + "\n")

        logger.info(f"Run report written to {report_path}")
        return [summary_path, report_path]


def _isoformat(timestamp: Optional[Any]) -> Optional[str]:
    return timestamp.isoformat() if timestamp else None


def format_report(report: RunReport):
    """
    Human readable lines of a run report.
    """
    params = report.run["params"]
    yield "bacass run report"
    yield "================="
    yield ""
    yield "Run: {}  Status: {}".format(report.execution["run_id"], report.execution["status"])
    yield ""
    yield "Parameters"
    yield "----------"
    for line in format_table(
        [["PARAM", "VALUE"]] + [[key, str(value)] for key, value in sorted(params.items())],
        "ll",
    ):
        yield line
    yield ""

    yield "Samples"
    yield "-------"
    rows = [["SAMPLE", "CHANNEL", "FRAGMENT"]]
    for sample, fragments in report.samples.items():
        for channel, value in fragments.items():
            rows.append([sample, channel, str(value)])
    for channel, value in report.global_fragments.items():
        rows.append([GLOBAL_KEY, channel, str(value)])
    if len(rows) > 1:
        yield from format_table(rows, "lll")
    else:
        yield "No report fragments."
    yield ""

    counts = {
        node: defaultdict(int, node_counts) for node, node_counts in report.job_counts.items()
    }
    for line in format_job_statuses(counts):
        yield line

    if report.failures:
        yield "Failures"
        yield "--------"
        for sample, failures in report.failures.items():
            for failure in failures:
                yield "{} {}: {}".format(sample, failure["node"], failure["error"])
        yield ""

    if report.join_mismatches:
        yield "Join mismatches"
        yield "---------------"
        for mismatch in report.join_mismatches:
            yield "{join}: sample {key} missing {missing} side".format(**mismatch)
        yield ""

    for message in report.run_failures + report.warnings:
        yield f"WARNING: {message}"
