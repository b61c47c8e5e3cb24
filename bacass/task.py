import dataclasses
import inspect
import os
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple, Union

from bacass.manifest import GLOBAL_KEY, SampleRecord

if TYPE_CHECKING:
    from bacass.config import RunConfig
    from bacass.context import RunContext

RESOURCE_CLASSES = ("small", "medium", "large")


@dataclasses.dataclass(frozen=True)
class Input:
    """
    Reference from a task parameter to the channel feeding it.

    Optional inputs receive None when their upstream produced nothing for
    the key instead of skipping the task instance.
    """

    channel: str
    optional: bool = False


InputSpec = Union[str, Input]


def _always(*args: Any) -> bool:
    return True


@dataclasses.dataclass
class TaskContext:
    """
    Everything a task function may use to build its command for one instance.
    """

    node: "TaskNode"
    key: str
    sample: Optional[SampleRecord]
    inputs: Dict[str, Any]
    outputs: Dict[str, str]
    params: "RunConfig"
    run: "RunContext"
    work_dir: str
    cpus: int = 1
    memory: float = 1.0

    def __getattr__(self, name: str) -> Any:
        # Allow `ctx.reads` as a shorthand for `ctx.inputs["reads"]`.
        inputs = self.__dict__.get("inputs", {})
        if name in inputs:
            return inputs[name]
        raise AttributeError(name)

    @property
    def is_global(self) -> bool:
        return self.key == GLOBAL_KEY


class TaskNode:
    """
    Static definition of a pipeline stage.

    A node reads named input channels and publishes one datum per output
    channel for every key it runs on. Script nodes (the default) return the
    shell command to run; python nodes are called directly by the executor
    and may return a dict overriding their output values.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[TaskContext], Any],
        inputs: Optional[Mapping[str, InputSpec]] = None,
        outputs: Optional[Mapping[str, str]] = None,
        when: Optional[Callable[["RunConfig"], bool]] = None,
        requires: Optional[Callable[[SampleRecord], bool]] = None,
        resource_class: str = "small",
        script: bool = True,
        required: bool = False,
        report: bool = False,
        publish_dir: Optional[str] = None,
        optional_outputs: Tuple[str, ...] = (),
        executor: str = "default",
    ):
        if resource_class not in RESOURCE_CLASSES:
            raise ValueError(
                f"Task {name}: unknown resource class '{resource_class}'. "
                f"Choose from: {', '.join(RESOURCE_CLASSES)}."
            )
        self.name = name
        self.func = func
        self.inputs: Dict[str, Input] = {
            param: spec if isinstance(spec, Input) else Input(spec)
            for param, spec in (inputs or {}).items()
        }
        self.outputs: Dict[str, str] = dict(outputs or {})
        self.when = when or _always
        self.requires = requires or _always
        self.resource_class = resource_class
        self.script = script
        self.required = required
        self.report = report
        self.publish_dir = publish_dir or name
        self.optional_outputs = tuple(optional_outputs)
        self.executor = executor
        self.doc = inspect.getdoc(func)

        # Set by DataflowGraph.freeze().
        self.is_global = False

    def __repr__(self) -> str:
        return f"TaskNode({self.name})"

    def is_enabled(self, params: "RunConfig") -> bool:
        """
        Evaluate the run-level predicate of this node.
        """
        return bool(self.when(params))

    def is_required_for(self, sample: Optional[SampleRecord]) -> bool:
        """
        Evaluate the per-sample data predicate of this node.
        """
        if sample is None:
            return True
        return bool(self.requires(sample))

    def get_output_paths(self, output_dir: str, key: str) -> Dict[str, str]:
        """
        Returns the published path of each output channel for one key.
        """
        if key == GLOBAL_KEY:
            base_dir = os.path.join(output_dir, self.publish_dir)
        else:
            base_dir = os.path.join(output_dir, key, self.publish_dir)
        return {
            channel: os.path.normpath(os.path.join(base_dir, template.format(key=key)))
            for channel, template in self.outputs.items()
        }

    def get_work_dir(self, work_dir: str, key: str) -> str:
        return os.path.join(work_dir, self.name, "global" if key == GLOBAL_KEY else key)

    def is_dir_output(self, channel: str) -> bool:
        """
        Output templates ending in "/" (or ".") name directories.
        """
        template = self.outputs[channel]
        return template.endswith("/") or template in ("", ".")
