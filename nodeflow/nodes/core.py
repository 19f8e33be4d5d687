"""
Core node types - Data and routing primitives.

These exist to exercise engine semantics (branching, joins, per-item
expressions, aggregation) and to build small workflows without an
integration catalog.
"""

import logging
from typing import Any

from nodeflow.errors import InputError
from nodeflow.graph.context import NodeCallContext
from nodeflow.graph.model import Node
from nodeflow.graph.node import BaseNodeType, NodeDescription
from nodeflow.schemas.item import Item, PairedItem
from nodeflow.schemas.run import NodeRunResult

logger = logging.getLogger(__name__)


def _passthrough(items: list[Item], input: int = 0) -> list[Item]:
    """Copies of input items linked back to their positions."""
    out = []
    for i, item in enumerate(items):
        copy = item.model_copy(deep=True)
        copy.paired_item = [PairedItem(item=i, input=input)]
        out.append(copy)
    return out


class TriggerNode(BaseNodeType):
    """Entry point: emits the run's trigger items."""

    description = NodeDescription(name="trigger", inputs=0, is_trigger=True, side_effect_free=True)

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        return NodeRunResult(outputs=[[i.model_copy(deep=True) for i in ctx.items]])


class NoOpNode(BaseNodeType):
    description = NodeDescription(name="noop", accepts_error_items=True, side_effect_free=True)

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        return NodeRunResult(outputs=[_passthrough(ctx.items)])


class SetNode(BaseNodeType):
    """
    Sets fields on every item.

    Parameters:
        values: field -> value (expressions resolved per item)
        keep_only_set: drop all other fields
    """

    description = NodeDescription(name="set", execution_mode="each", side_effect_free=True)

    def validate_parameters(self, node: Node) -> list[str]:
        if not isinstance(node.parameters.get("values", {}), dict):
            return ["'values' must be a mapping of field names to values"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        values = ctx.parameters.get("values", {})
        if not isinstance(values, dict):
            raise InputError("'values' must be a mapping of field names to values")
        data: dict[str, Any] = {} if ctx.parameters.get("keep_only_set") else dict(ctx.item.data)
        data.update(values)
        return NodeRunResult(
            outputs=[[Item(data=data, binary=dict(ctx.item.binary), paired_item=ctx.paired())]]
        )


class FilterNode(BaseNodeType):
    """
    Keeps the items whose ``condition`` is truthy.

    Example parameters: {"condition": "={{ json.value % 2 == 0 }}"}
    """

    description = NodeDescription(name="filter", side_effect_free=True)

    def validate_parameters(self, node: Node) -> list[str]:
        if "condition" not in node.parameters:
            return ["'condition' is required"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        kept = []
        for i, item in enumerate(ctx.items):
            if ctx.get_parameter("condition", i):
                kept.append(item.model_copy(update={"paired_item": [PairedItem(item=i)]}))
        logger.debug(f"Filter kept {len(kept)}/{len(ctx.items)} item(s)")
        return NodeRunResult(outputs=[kept])


class IfNode(BaseNodeType):
    """Routes each item to output 0 (true) or output 1 (false)."""

    description = NodeDescription(
        name="if",
        outputs=2,
        output_names=["true", "false"],
        accepts_error_items=True,
        side_effect_free=True,
    )

    def validate_parameters(self, node: Node) -> list[str]:
        if "condition" not in node.parameters:
            return ["'condition' is required"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        true_items: list[Item] = []
        false_items: list[Item] = []
        for i, item in enumerate(ctx.items):
            routed = item.model_copy(update={"paired_item": [PairedItem(item=i)]})
            if ctx.get_parameter("condition", i):
                true_items.append(routed)
            else:
                false_items.append(routed)
        return NodeRunResult(outputs=[true_items, false_items])


class SwitchNode(BaseNodeType):
    """
    Routes items by a list of conditions, one output per rule.

    Parameters:
        rules: list of conditions, evaluated per item
        all_matches: send an item to every matching output (default: first match)
        fallback_output: add a last output for items matching no rule
    """

    description = NodeDescription(
        name="switch",
        outputs=1,
        accepts_error_items=True,
        side_effect_free=True,
    )

    def output_count(self, node: Node) -> int:
        rules = node.parameters.get("rules", [])
        count = len(rules) if isinstance(rules, list) else 0
        if node.parameters.get("fallback_output"):
            count += 1
        return max(count, 1)

    def validate_parameters(self, node: Node) -> list[str]:
        rules = node.parameters.get("rules")
        if not isinstance(rules, list) or not rules:
            return ["'rules' must be a non-empty list of conditions"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        rule_count = len(ctx.node.parameters.get("rules", []))
        fallback = bool(ctx.parameters.get("fallback_output"))
        all_matches = bool(ctx.parameters.get("all_matches"))
        outputs: list[list[Item]] = [[] for _ in range(self.output_count(ctx.node))]

        for i, item in enumerate(ctx.items):
            results = ctx.get_parameter("rules", i) or []
            matched = False
            for rule_index in range(rule_count):
                if rule_index < len(results) and results[rule_index]:
                    outputs[rule_index].append(
                        item.model_copy(update={"paired_item": [PairedItem(item=i)]})
                    )
                    matched = True
                    if not all_matches:
                        break
            if not matched and fallback:
                outputs[rule_count].append(
                    item.model_copy(update={"paired_item": [PairedItem(item=i)]})
                )
        return NodeRunResult(outputs=outputs)


class MergeNode(BaseNodeType):
    """
    Joins two input streams.

    Both inputs are optional: when one branch produced nothing the merge
    runs with what arrived once the rest of the run is idle.

    Modes:
        append: items of input 0, then items of input 1
        combine_by_position: item i of input 0 merged with item i of input 1
        combine_by_field: items with equal ``join_field`` values merged
    """

    MODES = ("append", "combine_by_position", "combine_by_field")

    description = NodeDescription(
        name="merge",
        inputs=2,
        required_inputs=[],
        accepts_error_items=True,
        side_effect_free=True,
    )

    def validate_parameters(self, node: Node) -> list[str]:
        mode = node.parameters.get("mode", "append")
        errors = []
        if mode not in self.MODES:
            errors.append(f"'mode' must be one of {', '.join(self.MODES)}")
        if mode == "combine_by_field" and not node.parameters.get("join_field"):
            errors.append("'join_field' is required for combine_by_field")
        return errors

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        first = ctx.inputs[0] if ctx.inputs else []
        second = ctx.inputs[1] if len(ctx.inputs) > 1 else []
        mode = ctx.parameters.get("mode", "append")

        if mode == "append":
            return NodeRunResult(outputs=[_passthrough(first, 0) + _passthrough(second, 1)])

        if mode == "combine_by_position":
            merged = []
            for i in range(min(len(first), len(second))):
                merged.append(
                    Item(
                        data={**first[i].data, **second[i].data},
                        binary={**first[i].binary, **second[i].binary},
                        paired_item=[PairedItem(item=i, input=0), PairedItem(item=i, input=1)],
                    )
                )
            return NodeRunResult(outputs=[merged])

        if mode == "combine_by_field":
            field = ctx.parameters.get("join_field")
            index: dict[Any, list[int]] = {}
            for j, item in enumerate(second):
                index.setdefault(item.data.get(field), []).append(j)
            merged = []
            for i, item in enumerate(first):
                for j in index.get(item.data.get(field), []):
                    merged.append(
                        Item(
                            data={**item.data, **second[j].data},
                            paired_item=[PairedItem(item=i, input=0), PairedItem(item=j, input=1)],
                        )
                    )
            return NodeRunResult(outputs=[merged])

        raise InputError(f"Unknown merge mode '{mode}'")


class AggregateNode(BaseNodeType):
    """
    Reduces all items to one.

    Parameters:
        field: item field to aggregate
        operation: sum | count | min | max | avg | list
        output_field: name of the result field (defaults to ``field``)
    """

    OPERATIONS = ("sum", "count", "min", "max", "avg", "list")

    description = NodeDescription(name="aggregate", side_effect_free=True)

    def validate_parameters(self, node: Node) -> list[str]:
        errors = []
        if node.parameters.get("operation", "sum") not in self.OPERATIONS:
            errors.append(f"'operation' must be one of {', '.join(self.OPERATIONS)}")
        if not node.parameters.get("field") and node.parameters.get("operation") != "count":
            errors.append("'field' is required")
        return errors

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        field = ctx.parameters.get("field")
        operation = ctx.parameters.get("operation", "sum")
        output_field = ctx.parameters.get("output_field") or field or operation

        values = [item.data[field] for item in ctx.items if field in item.data] if field else []
        if operation in ("sum", "min", "max", "avg"):
            for value in values:
                if not isinstance(value, (int, float)) or isinstance(value, bool):
                    raise InputError(
                        f"Cannot {operation} non-numeric value {value!r} in field '{field}'"
                    )

        if operation == "sum":
            result: Any = sum(values)
        elif operation == "count":
            result = len(values) if field else len(ctx.items)
        elif operation == "min":
            result = min(values) if values else None
        elif operation == "max":
            result = max(values) if values else None
        elif operation == "avg":
            result = sum(values) / len(values) if values else None
        elif operation == "list":
            result = values
        else:
            raise InputError(f"Unknown aggregate operation '{operation}'")

        paired = [PairedItem(item=i) for i in range(len(ctx.items))]
        return NodeRunResult(outputs=[[Item(data={output_field: result}, paired_item=paired)]])
