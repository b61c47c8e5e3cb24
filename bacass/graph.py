"""
Static dataflow graph of task nodes connected by named channels.

Channels are keyed either by sample id (per-sample channels) or by
`GLOBAL_KEY` (global channels). Besides task nodes, three operators derive
channels from other channels:

- join: match two per-sample channels by key into `(left, right)` pairs.
- collect: gather a per-sample channel into one `{key: value}` dict.
- mix: per key, take the first available datum from several channels.

Any channel may feed any number of consumers (fan-out).
"""

import dataclasses
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from bacass.task import GLOBAL_KEY, TaskContext, TaskNode

if TYPE_CHECKING:
    from bacass.scheduler import RunResult

SKIP_POLICY = "skip"
NULL_POLICY = "null"
FATAL_POLICY = "fatal"
JOIN_POLICIES = (SKIP_POLICY, NULL_POLICY, FATAL_POLICY)


class GraphError(Exception):
    """
    Raised when a dataflow graph is malformed.
    """

    pass


class JoinMismatchError(Exception):
    """
    A sample key arrived on only one side of a join.
    """

    def __init__(self, join: str, key: str, missing: str, result: Optional["RunResult"] = None):
        self.join = join
        self.key = key
        self.missing = missing
        self.result = result
        super().__init__(f"Join {join}: sample '{key}' has no datum on its {missing} side.")

    def __reduce__(self):
        return (JoinMismatchError, (self.join, self.key, self.missing))


@dataclasses.dataclass(frozen=True)
class Void:
    """
    Datum standing for "nothing will arrive for this key".

    Emitted on the outputs of skipped or failed task instances and by
    operators that could not produce a value.
    """

    reason: str
    origin: str

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"{self.origin} {self.reason}"


def is_void(value: Any) -> bool:
    return isinstance(value, Void)


class Channel:
    """
    A named conduit from one producer to any number of consumers.
    """

    def __init__(self, name: str, producer: str, is_global: bool = False):
        self.name = name
        self.producer = producer
        self.is_global = is_global
        self.consumers: List[str] = []

    def __repr__(self) -> str:
        kind = "global" if self.is_global else "per-sample"
        return f"Channel({self.name}, {kind})"


class Operator:
    """
    Base class for graph operators deriving one channel from others.

    Operators are stateless; the scheduler passes them the delivered values
    of their input channels.
    """

    kind = "operator"

    def __init__(self, name: str, inputs: Sequence[str]):
        self.name = name
        self.inputs = list(inputs)
        self.output = name

    def __repr__(self) -> str:
        return "{}({}: {})".format(type(self).__name__, self.name, ", ".join(self.inputs))

    def on_deliver(
        self, key: str, values: Dict[str, Dict[str, Any]]
    ) -> List[Tuple[str, Any, Optional[Exception]]]:
        """
        Called when one of the inputs delivered `key`.

        `values` maps each input channel to its delivered (not yet consumed)
        values. Returns a list of `(key, datum, error)` emissions.
        """
        return []

    def on_close(
        self, values: Dict[str, Dict[str, Any]]
    ) -> List[Tuple[str, Any, Optional[Exception]]]:
        """
        Called once all inputs are closed. Returns final emissions.
        """
        return []


class JoinOperator(Operator):
    """
    Combine two per-sample channels into `(left, right)` tuples by sample key.

    How a key missing on one side (or Void on one side) is handled depends
    on the policy:

    - skip: emit Void for the key and record a JoinMismatchError.
    - null: emit the pair with None for the missing side and record the error.
    - fatal: record the error; the scheduler aborts the run.
    """

    kind = "join"

    def __init__(self, name: str, left: str, right: str, policy: str = SKIP_POLICY):
        super().__init__(name, [left, right])
        if policy not in JOIN_POLICIES:
            raise GraphError(f"Join {name}: unknown policy '{policy}'.")
        self.left = left
        self.right = right
        self.policy = policy

    def _combine(self, key: str, left: Any, right: Any) -> Tuple[str, Any, Optional[Exception]]:
        if not is_void(left) and not is_void(right):
            return (key, (left, right), None)

        error = JoinMismatchError(self.name, key, "left" if is_void(left) else "right")
        if self.policy == NULL_POLICY and not (is_void(left) and is_void(right)):
            return (
                key,
                (None if is_void(left) else left, None if is_void(right) else right),
                error,
            )
        return (key, Void("join mismatch", self.name), error)

    def on_deliver(self, key, values):
        left_values, right_values = values[self.left], values[self.right]
        if key in left_values and key in right_values:
            return [self._combine(key, left_values[key], right_values[key])]
        return []

    def on_close(self, values):
        missing = Void("missing", self.name)
        left_values, right_values = values[self.left], values[self.right]
        leftover_keys = sorted(set(left_values) ^ set(right_values))
        return [
            self._combine(key, left_values.get(key, missing), right_values.get(key, missing))
            for key in leftover_keys
        ]


class CollectOperator(Operator):
    """
    Gather every value of a per-sample channel into one global datum.

    The collected dict is ordered by sample key so consumers see the same
    input regardless of arrival order. Void values are left out.
    """

    kind = "collect"

    def __init__(self, name: str, channel: str, allow_empty: bool = True):
        super().__init__(name, [channel])
        self.channel = channel
        self.allow_empty = allow_empty

    def on_close(self, values):
        collected = {
            key: value
            for key, value in sorted(values[self.channel].items())
            if not is_void(value)
        }
        if not collected and not self.allow_empty:
            return [
                (
                    GLOBAL_KEY,
                    Void("empty collection", self.name),
                    GraphError(f"Collect {self.name}: no values arrived from {self.channel}."),
                )
            ]
        return [(GLOBAL_KEY, collected, None)]


class MixOperator(Operator):
    """
    Merge alternative channels: per key, the first non-Void datum in the
    declared channel order wins.
    """

    kind = "mix"

    def _first(self, key: str, values: Dict[str, Dict[str, Any]]) -> Any:
        for channel in self.inputs:
            value = values[channel].get(key)
            if value is not None and not is_void(value):
                return value
        return Void("no alternative", self.name)

    def on_deliver(self, key, values):
        if all(key in values[channel] for channel in self.inputs):
            return [(key, self._first(key, values), None)]
        return []

    def on_close(self, values):
        keys = set()
        for channel in self.inputs:
            keys.update(values[channel])
        incomplete = sorted(
            key for key in keys if not all(key in values[channel] for channel in self.inputs)
        )
        return [(key, self._first(key, values), None) for key in incomplete]


class DataflowGraph:
    """
    Builder and container for a static graph of task nodes and operators.

    The graph is built once, frozen, and then executed by a Scheduler.
    """

    def __init__(self, name: str = "pipeline"):
        self.name = name
        self.sources: Dict[str, bool] = {}
        self.nodes: Dict[str, TaskNode] = {}
        self.operators: Dict[str, Operator] = {}
        self.channels: Dict[str, Channel] = {}
        self.order: List[str] = []
        self._frozen = False

    def __repr__(self) -> str:
        return f"DataflowGraph({self.name}, nodes={len(self.nodes)})"

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self, name: str) -> None:
        if self._frozen:
            raise GraphError(f"Cannot add {name}: graph {self.name} is frozen.")
        if name in self.nodes or name in self.operators or name in self.sources:
            raise GraphError(f"Duplicate graph element name: {name}")

    def source(self, name: str, is_global: bool = False) -> str:
        """
        Declare an entry channel fed by the scheduler.
        """
        self._check_mutable(name)
        self.sources[name] = is_global
        return name

    def add_task(self, node: TaskNode) -> TaskNode:
        self._check_mutable(node.name)
        self.nodes[node.name] = node
        return node

    def task(self, name: Optional[str] = None, **options: Any) -> Callable:
        """
        Decorator registering a task function as a node of this graph.

        .. code-block:: python

            @graph.task(inputs={"sample": "samples"}, outputs={"fastqc_reports": "."})
            def fastqc(ctx):
                return f"fastqc -o {ctx.outputs['fastqc_reports']} {ctx.sample.short_read1}"
        """

        def deco(func: Callable[[TaskContext], Any]) -> TaskNode:
            return self.add_task(TaskNode(name or func.__name__, func, **options))

        return deco

    def join(self, name: str, left: str, right: str, policy: str = SKIP_POLICY) -> str:
        self._check_mutable(name)
        self.operators[name] = JoinOperator(name, left, right, policy=policy)
        return name

    def collect(self, name: str, channel: str, allow_empty: bool = True) -> str:
        self._check_mutable(name)
        self.operators[name] = CollectOperator(name, channel, allow_empty=allow_empty)
        return name

    def mix(self, name: str, channels: Sequence[str]) -> str:
        self._check_mutable(name)
        if not channels:
            raise GraphError(f"Mix {name}: needs at least one channel.")
        self.operators[name] = MixOperator(name, channels)
        return name

    def get_inputs(self, name: str) -> List[str]:
        """
        Returns the input channel names of a node or operator.
        """
        if name in self.nodes:
            return [input.channel for input in self.nodes[name].inputs.values()]
        return list(self.operators[name].inputs)

    def get_outputs(self, name: str) -> List[str]:
        if name in self.nodes:
            return list(self.nodes[name].outputs)
        return [self.operators[name].output]

    def freeze(self) -> "DataflowGraph":
        """
        Validate the graph, resolve channels and compute a topological order.
        """
        if self._frozen:
            return self

        # Declare channels and their producers.
        channels: Dict[str, Channel] = {
            name: Channel(name, "source", is_global) for name, is_global in self.sources.items()
        }
        for name in list(self.nodes) + list(self.operators):
            for output in self.get_outputs(name):
                if output in channels:
                    raise GraphError(
                        f"Channel {output} has two producers: "
                        f"{channels[output].producer} and {name}."
                    )
                channels[output] = Channel(output, name)

        # Wire consumers.
        for name in list(self.nodes) + list(self.operators):
            inputs = self.get_inputs(name)
            if name in self.nodes and not inputs:
                raise GraphError(f"Task {name} has no inputs.")
            for channel in inputs:
                if channel not in channels:
                    raise GraphError(f"{name} reads unknown channel {channel}.")
                if name not in channels[channel].consumers:
                    channels[channel].consumers.append(name)

        self.channels = channels
        self.order = self._topological_order()
        self._resolve_scopes()
        self._frozen = True
        return self

    def _topological_order(self) -> List[str]:
        """
        Order nodes and operators so each comes after its producers.
        """
        elements = list(self.nodes) + list(self.operators)
        upstream: Dict[str, set] = {}
        downstream: Dict[str, set] = defaultdict(set)
        for name in elements:
            producers = {
                self.channels[channel].producer
                for channel in self.get_inputs(name)
                if self.channels[channel].producer != "source"
            }
            upstream[name] = producers
            for producer in producers:
                downstream[producer].add(name)

        order: List[str] = []
        ready = sorted(name for name in elements if not upstream[name])
        while ready:
            name = ready.pop(0)
            order.append(name)
            for consumer in sorted(downstream[name]):
                upstream[consumer].discard(name)
                if not upstream[consumer]:
                    ready.append(consumer)

        if len(order) != len(elements):
            cycle = sorted(set(elements) - set(order))
            raise GraphError("Graph has a cycle involving: {}".format(", ".join(cycle)))
        return order

    def _resolve_scopes(self) -> None:
        """
        Determine which channels are global and check operator input scopes.
        """
        for name in self.order:
            inputs = [self.channels[channel] for channel in self.get_inputs(name)]
            if name in self.nodes:
                node = self.nodes[name]
                # Per-sample as soon as one input is per-sample; global inputs broadcast.
                node.is_global = all(channel.is_global for channel in inputs)
                is_global = node.is_global
            else:
                operator = self.operators[name]
                if isinstance(operator, CollectOperator):
                    if inputs[0].is_global:
                        raise GraphError(f"Collect {name} needs a per-sample channel.")
                    is_global = True
                elif isinstance(operator, JoinOperator):
                    if any(channel.is_global for channel in inputs):
                        raise GraphError(f"Join {name} needs two per-sample channels.")
                    is_global = False
                else:
                    scopes = {channel.is_global for channel in inputs}
                    if len(scopes) > 1:
                        raise GraphError(f"Mix {name} cannot mix global and per-sample channels.")
                    is_global = scopes.pop()

            for output in self.get_outputs(name):
                self.channels[output].is_global = is_global

    def iter_report_channels(self) -> Iterator[Channel]:
        """
        Iterate the output channels of nodes marked as report producers.
        """
        for name in self.order:
            node = self.nodes.get(name)
            if node and node.report:
                for output in node.outputs:
                    yield self.channels[output]
