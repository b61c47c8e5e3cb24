from typing import TYPE_CHECKING

from bacass.config import Config, ConfigurationError, RunConfig
from bacass.context import RunContext
from bacass.executors.base import register_executor
from bacass.graph import DataflowGraph, GraphError, JoinMismatchError, Void
from bacass.manifest import ABSENT, MalformedManifestError, SampleRecord, load_manifest
from bacass.pipeline import build_pipeline, run_pipeline
from bacass.report import AggregationIncompleteError, RunReport, RunReportAggregator
from bacass.scheduler import RunCancelledError, RunFailedError, RunResult, Scheduler
from bacass.task import GLOBAL_KEY, Input, TaskContext, TaskNode
from bacass.version import version

if TYPE_CHECKING:
    from bacass.executors.local import LocalExecutor
    from bacass.executors.stub import StubExecutor
else:
    LocalExecutor = register_executor("local", "bacass.executors.local.LocalExecutor")
    StubExecutor = register_executor("stub", "bacass.executors.stub.StubExecutor")


__version__ = version
__all__ = [
    "ABSENT",
    "AggregationIncompleteError",
    "Config",
    "ConfigurationError",
    "DataflowGraph",
    "GLOBAL_KEY",
    "GraphError",
    "Input",
    "JoinMismatchError",
    "MalformedManifestError",
    "RunCancelledError",
    "RunConfig",
    "RunContext",
    "RunFailedError",
    "RunReport",
    "RunReportAggregator",
    "RunResult",
    "SampleRecord",
    "Scheduler",
    "TaskContext",
    "TaskNode",
    "Void",
    "build_pipeline",
    "load_manifest",
    "run_pipeline",
    "version",
]
