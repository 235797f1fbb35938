"""Structural validation of workflow graphs before a run is started."""

from collections import Counter
from typing import Dict, List, Set

from ..models.graph import NodeKind, ValidationResult, WorkflowGraph
from .logging import get_logger


logger = get_logger(__name__)


class GraphValidator:
    """Checks a graph for structural errors and suspicious shapes."""

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        """
        Validate a graph for structural correctness.

        Args:
            graph: The graph to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        self._validate_terminals(graph, errors, warnings)
        self._validate_references(graph, errors, warnings)
        self._validate_connections(graph, errors, warnings)
        self._validate_branching(graph, errors, warnings)
        self._validate_cycles(graph, errors, warnings)
        self._validate_labels(graph, errors, warnings)

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return result

    def _validate_terminals(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        start_nodes = graph.start_nodes()
        if not start_nodes:
            errors.append("Workflow must have at least one Start node")
        elif len(start_nodes) > 1:
            warnings.append("Workflow has multiple Start nodes. Consider using only one entry point.")

        if not any(node.kind == NodeKind.END.value for node in graph.nodes):
            warnings.append("Workflow has no End node. Consider adding at least one terminal point.")

    def _validate_references(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        node_ids = {node.id for node in graph.nodes}
        for edge in graph.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id} references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id} references non-existent target node: {edge.target}")

    def _validate_connections(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        for node in graph.nodes:
            incoming = graph.incoming_edges(node.id)
            outgoing = graph.outgoing_edges(node.id)

            if node.kind == NodeKind.START.value:
                if incoming:
                    errors.append(f'Start node "{node.label}" should not have incoming connections')
            elif not incoming:
                warnings.append(f'Node "{node.label}" has no incoming connections and may be unreachable')

            if node.kind == NodeKind.END.value:
                if outgoing:
                    errors.append(f'End node "{node.label}" should not have outgoing connections')
            elif not outgoing:
                warnings.append(f'Node "{node.label}" has no outgoing connections')

    def _validate_branching(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        for node in graph.nodes:
            outgoing = len(graph.outgoing_edges(node.id))
            if node.kind == NodeKind.DECISION.value and outgoing < 2:
                warnings.append(
                    f'Decision node "{node.label}" should have at least 2 outgoing connections for branching'
                )
            elif node.kind == NodeKind.PARALLEL.value and outgoing < 2:
                warnings.append(
                    f'Parallel node "{node.label}" should have at least 2 outgoing connections for parallel execution'
                )

    def _validate_cycles(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        """Warn about cycles reachable from a start node that pass through no loop node."""
        adjacency: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
        for edge in graph.edges:
            if edge.source in adjacency and edge.target in adjacency:
                adjacency[edge.source].append(edge.target)
        loop_ids = {node.id for node in graph.nodes if node.kind == NodeKind.LOOP.value}

        for start in graph.start_nodes():
            visited: Set[str] = set()
            path: List[str] = [start.id]
            on_path: Set[str] = {start.id}
            stack = [iter(adjacency[start.id])]
            visited.add(start.id)

            while stack:
                neighbor = next(stack[-1], None)
                if neighbor is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue

                if neighbor in on_path:
                    cycle = path[path.index(neighbor):]
                    if not loop_ids.intersection(cycle):
                        warnings.append("Potential infinite loop detected not controlled by a Loop node")
                        return
                    continue

                if neighbor not in visited:
                    visited.add(neighbor)
                    path.append(neighbor)
                    on_path.add(neighbor)
                    stack.append(iter(adjacency[neighbor]))

    def _validate_labels(self, graph: WorkflowGraph, errors: List[str], warnings: List[str]):
        counts = Counter(node.label for node in graph.nodes)
        for label, count in counts.items():
            if count > 1:
                warnings.append(
                    f'Label "{label}" is used by {count} nodes; later outputs overwrite earlier ones in the context'
                )


def validate_graph(graph: WorkflowGraph) -> ValidationResult:
    return GraphValidator().validate(graph)
