import logging
from typing import Tuple

import graphviz

from perfscope.metrics import ROOT_NODE, CallGraph

logger = logging.getLogger(__name__)


class CallGraphRenderer:
    def __init__(self, graph: CallGraph):
        self.graph = graph
        self.dot = graphviz.Digraph(comment="Call Graph")
        self.dot.attr('node', shape='box', style='rounded,filled', fillcolor='lightblue')
        self.dot.attr('edge', color='gray40')
        self.node_ids = {}

    def _node_id(self, name: str) -> str:
        if name not in self.node_ids:
            self.node_ids[name] = str(len(self.node_ids))
        return self.node_ids[name]

    def build(self) -> graphviz.Digraph:
        for name in self.graph.nodes:
            attrs = {'fillcolor': 'lightgray'} if name == ROOT_NODE else {}
            self.dot.node(self._node_id(name), label=name, **attrs)
        for edge in self.graph.edges:
            label = f"{edge.call_count}x\\n{edge.cumulative_duration_ms:.2f}ms"
            self.dot.edge(self._node_id(edge.source), self._node_id(edge.target), label=label)
        return self.dot


def render_call_graph(graph: CallGraph) -> Tuple[str, str]:
    """
    Returns (format, text): an SVG document, or the DOT source when the
    graphviz binaries are not installed.
    """
    dot = CallGraphRenderer(graph).build()
    try:
        return "svg", dot.pipe(format='svg').decode('utf-8')
    except graphviz.ExecutableNotFound:
        logger.warning("graphviz 'dot' executable not found, returning DOT source")
        return "dot", dot.source
