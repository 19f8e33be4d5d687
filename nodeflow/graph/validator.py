"""Graph validation.

Rejects graphs the scheduler could not run correctly before any node is
invoked: structural problems (duplicate names, dangling connections, cycles),
unknown node types, connections to ports a node does not have, nonsensical
settings, and parameters a node type declares invalid.
"""

import ast
import logging
from dataclasses import dataclass
from typing import Any

from nodeflow.graph.expression import SEGMENT_PATTERN, is_expression
from nodeflow.graph.model import Node, WorkflowGraph
from nodeflow.graph.node import NodeTypeRegistry, input_count, output_count

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def _expression_errors(node: Node) -> list[str]:
    errors: list[str] = []

    def check(path: str, value: Any) -> None:
        if is_expression(value):
            for match in SEGMENT_PATTERN.finditer(value[1:]):
                try:
                    ast.parse(match.group(1).strip(), mode="eval")
                except SyntaxError as e:
                    errors.append(
                        f"Node '{node.name}' parameter '{path}' has invalid expression: {e.msg}"
                    )
        elif isinstance(value, dict):
            for key, inner in value.items():
                check(f"{path}.{key}", inner)
        elif isinstance(value, list):
            for i, inner in enumerate(value):
                check(f"{path}[{i}]", inner)

    for name, value in node.parameters.items():
        check(name, value)
    return errors


def _settings_errors(node: Node) -> list[str]:
    settings = node.settings
    errors = []
    if settings.max_tries < 1:
        errors.append(f"Node '{node.name}' max_tries must be at least 1")
    if settings.wait_between_tries_ms < 0:
        errors.append(f"Node '{node.name}' wait_between_tries_ms must not be negative")
    if settings.timeout_seconds is not None and settings.timeout_seconds <= 0:
        errors.append(f"Node '{node.name}' timeout_seconds must be positive")
    return errors


def validate(graph: WorkflowGraph, registry: NodeTypeRegistry | None = None) -> ValidationResult:
    """
    Validate a graph, optionally against a node type registry.

    Without a registry only structural checks run.
    """
    errors = graph.validate()

    for node in graph.nodes:
        errors.extend(_settings_errors(node))
        errors.extend(_expression_errors(node))

    if registry is not None:
        for node in graph.nodes:
            node_type = registry.get(node.type)
            if node_type is None:
                errors.append(f"Node '{node.name}' has unknown type '{node.type}'")
                continue

            outputs = output_count(node_type, node)
            inputs = input_count(node_type, node)
            for conn in graph.outgoing(node.name):
                if conn.source_output >= outputs:
                    errors.append(
                        f"Connection '{conn.label}' uses output {conn.source_output} "
                        f"but '{node.name}' has {outputs} output(s)"
                    )
            for conn in graph.incoming(node.name):
                if conn.target_input >= inputs:
                    errors.append(
                        f"Connection '{conn.label}' uses input {conn.target_input} "
                        f"but '{node.name}' has {inputs} input(s)"
                    )

            if hasattr(node_type, "validate_parameters"):
                errors.extend(
                    f"Node '{node.name}': {message}"
                    for message in node_type.validate_parameters(node)
                )

    if errors:
        logger.debug(f"Graph '{graph.id}' failed validation: {errors}")
    return ValidationResult(success=not errors, errors=errors)
