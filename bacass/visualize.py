import pygraphviz as pgv
from pygraphviz import AGraph

from bacass.graph import DataflowGraph

SOURCE_COLOR = "#FF8484"
TASK_COLOR = "#8FE0AC"
OPERATOR_COLOR = "#B5D3E7"


def init_graph(name: str, direction: str) -> AGraph:
    """
    Initializes a graph with the desired attributes.
    """
    graph = pgv.AGraph(name=name, strict=False, directed=True)
    graph.node_attr.update(
        {
            "shape": "box",
            "style": "filled",
            "fontname": "helvetica",
        }
    )
    graph.graph_attr.update(
        {
            "rankdir": direction,
            "fontname": "helvetica",
        }
    )
    return graph


def viz_graph(graph: DataflowGraph, direction: str = "LR") -> AGraph:
    """
    Draw the sources, task nodes and operators of a dataflow graph.

    Every edge is labeled with the channel it carries.
    """
    graph = graph.freeze()
    agraph = init_graph(graph.name, direction)

    for name in graph.sources:
        agraph.add_node(name, shape="ellipse", fillcolor=SOURCE_COLOR)
    for name in graph.order:
        if name in graph.nodes:
            agraph.add_node(name, fillcolor=TASK_COLOR)
        else:
            kind = graph.operators[name].kind
            agraph.add_node(
                name, shape="diamond", fillcolor=OPERATOR_COLOR, label=f"{kind}\\n{name}"
            )

    for name in graph.order:
        for channel in graph.get_inputs(name):
            producer = graph.channels[channel].producer
            source = channel if producer == "source" else producer
            agraph.add_edge(source, name, key=channel, label=channel)
    return agraph
