"""
Expression Resolver - Turns parameter expressions into values.

A parameter string starting with ``=`` is an expression. Inside it, every
``{{ ... }}`` segment is evaluated with ``safe_eval`` against an
ExpressionScope. A string that is exactly one segment yields the raw value
(a number stays a number); otherwise segment results are stringified and
spliced into the surrounding text.

Examples:
    "={{ json.amount * 2 }}"               -> 84
    "=Hello {{ json.name }}!"              -> "Hello Ada!"
    "={{ node('Lookup').item.email }}"     -> the Lookup item paired with this one

Resolution is pure: it reads the run data store and never writes to it.
"""

import copy
import json
import logging
import re
from typing import Any

from nodeflow.errors import ExpressionError
from nodeflow.graph.safe_eval import safe_eval
from nodeflow.schemas.item import Item, PairedItem, SourceRef
from nodeflow.storage.run_data import RunDataStore

logger = logging.getLogger(__name__)

EXPRESSION_PREFIX = "="
SEGMENT_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

# Upper bound on provenance hops when looking for a paired item
MAX_PAIRING_DEPTH = 1000


def is_expression(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(EXPRESSION_PREFIX)


def _data(item: Item) -> dict[str, Any]:
    return copy.deepcopy(item.data)


class ItemListAccessor:
    """Read-only view over a list of items, exposed to expressions."""

    def __init__(self, items: list[Item]):
        self._items = items

    def all(self) -> list[dict[str, Any]]:
        return [_data(i) for i in self._items]

    def first(self) -> dict[str, Any] | None:
        return _data(self._items[0]) if self._items else None

    def last(self) -> dict[str, Any] | None:
        return _data(self._items[-1]) if self._items else None

    def count(self) -> int:
        return len(self._items)


class InputAccessor:
    """``input`` in expressions: the items given to the current invocation."""

    def __init__(self, inputs: list[list[Item]], item_index: int):
        self._inputs = inputs
        self._item_index = item_index

    def _port(self, port: int) -> list[Item]:
        return self._inputs[port] if port < len(self._inputs) else []

    def all(self, port: int = 0) -> list[dict[str, Any]]:
        return ItemListAccessor(self._port(port)).all()

    def first(self, port: int = 0) -> dict[str, Any] | None:
        return ItemListAccessor(self._port(port)).first()

    def last(self, port: int = 0) -> dict[str, Any] | None:
        return ItemListAccessor(self._port(port)).last()

    @property
    def item(self) -> dict[str, Any] | None:
        items = self._port(0)
        if self._item_index < len(items):
            return _data(items[self._item_index])
        return None


class NodeAccessor:
    """``node("Name")`` in expressions: output of an upstream node in this run."""

    def __init__(self, scope: "ExpressionScope", name: str):
        self._scope = scope
        self._name = name
        if not scope.run_data.has_run(name):
            raise ExpressionError(f"Node '{name}' has no recorded output in this run")

    def _items(self, port: int = 0, run_index: int | None = None) -> list[Item]:
        store = self._scope.run_data
        result = store.latest(self._name) if run_index is None else store.get(self._name, run_index)
        if result is None:
            raise ExpressionError(f"Node '{self._name}' has no output for run {run_index}")
        return result.port(port)

    def all(self, port: int = 0, run_index: int | None = None) -> list[dict[str, Any]]:
        return ItemListAccessor(self._items(port, run_index)).all()

    def first(self, port: int = 0, run_index: int | None = None) -> dict[str, Any] | None:
        return ItemListAccessor(self._items(port, run_index)).first()

    def last(self, port: int = 0, run_index: int | None = None) -> dict[str, Any] | None:
        return ItemListAccessor(self._items(port, run_index)).last()

    @property
    def item(self) -> dict[str, Any] | None:
        """The item of this node paired with the current item, else its first item."""
        paired = self._scope.find_paired_item(self._name)
        if paired is not None:
            return _data(paired)
        return self.first()

    @property
    def json(self) -> dict[str, Any] | None:
        return self.item

    @property
    def is_executed(self) -> bool:
        return True


class ExpressionScope:
    """
    Everything an expression can see for one (invocation, item) pair.

    Built by the context builder; ``inputs`` and ``source`` are the current
    invocation's per-port items and upstream references.
    """

    def __init__(
        self,
        run_data: RunDataStore,
        *,
        trigger_items: list[Item] | None = None,
        inputs: list[list[Item]] | None = None,
        source: list[SourceRef | None] | None = None,
        item_index: int = 0,
        run_index: int = 0,
        extra: dict[str, Any] | None = None,
    ):
        self.run_data = run_data
        self.trigger_items = trigger_items or []
        self.inputs = inputs or []
        self.source = source or []
        self.item_index = item_index
        self.run_index = run_index
        self.extra = extra or {}

    @property
    def item(self) -> Item | None:
        port = self.inputs[0] if self.inputs else []
        if self.item_index < len(port):
            return port[self.item_index]
        return None

    def for_item(self, item_index: int) -> "ExpressionScope":
        """Same scope, pointed at another item of port 0."""
        return ExpressionScope(
            self.run_data,
            trigger_items=self.trigger_items,
            inputs=self.inputs,
            source=self.source,
            item_index=item_index,
            run_index=self.run_index,
            extra=self.extra,
        )

    def find_paired_item(self, target: str) -> Item | None:
        """
        Walk provenance from the current item back to ``target``.

        The current item was emitted by ``source[0]``. Each hop follows the
        item's ``paired_item`` into the input of the invocation that emitted
        it, using that invocation's recorded ``source`` to find the upstream
        output. Returns None when the chain breaks before reaching ``target``.
        """
        item = self.item
        ref = self.source[0] if self.source else None

        for _ in range(MAX_PAIRING_DEPTH):
            if item is None or ref is None:
                return None
            if ref.node == target:
                return item

            producer = self.run_data.get(ref.node, ref.run_index)
            if producer is None or not item.paired_item:
                return None
            pair: PairedItem = item.paired_item[0]
            if pair.input >= len(producer.source):
                return None
            upstream = producer.source[pair.input]
            if upstream is None:
                return None
            upstream_result = self.run_data.get(upstream.node, upstream.run_index)
            if upstream_result is None:
                return None
            items = upstream_result.port(upstream.output)
            if pair.item >= len(items):
                return None
            item, ref = items[pair.item], upstream
        return None

    def variables(self) -> dict[str, Any]:
        item = self.item
        names: dict[str, Any] = {
            "json": _data(item) if item else {},
            "binary": {k: v.model_dump() for k, v in item.binary.items()} if item else {},
            "item_index": self.item_index,
            "run_index": self.run_index,
            "trigger": _data(self.trigger_items[0]) if self.trigger_items else {},
            "trigger_items": [_data(i) for i in self.trigger_items],
            "input": InputAccessor(self.inputs, self.item_index),
            "node": lambda name: NodeAccessor(self, name),
        }
        names.update(self.extra)
        return names


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _evaluate(code: str, names: dict[str, Any], expression_text: str) -> Any:
    try:
        return safe_eval(code, names)
    except ExpressionError:
        raise
    except SyntaxError as e:
        raise ExpressionError(
            f"Invalid expression syntax: {e.msg}", expression=expression_text
        ) from e
    except Exception as e:
        raise ExpressionError(
            f"Expression evaluation failed: {type(e).__name__}: {e}",
            expression=expression_text,
        ) from e


def resolve(expression_text: str, scope: ExpressionScope) -> Any:
    """
    Resolve one expression string.

    Raises:
        ExpressionError: on syntax errors, unknown names, references to nodes
            without output, or any failure during evaluation
    """
    text = expression_text[1:] if is_expression(expression_text) else expression_text
    matches = list(SEGMENT_PATTERN.finditer(text))
    if not matches:
        return text

    names = scope.variables()

    if len(matches) == 1 and matches[0].group(0) == text.strip():
        return _evaluate(matches[0].group(1), names, expression_text)

    parts: list[str] = []
    last = 0
    for match in matches:
        parts.append(text[last : match.start()])
        parts.append(_stringify(_evaluate(match.group(1), names, expression_text)))
        last = match.end()
    parts.append(text[last:])
    return "".join(parts)


def resolve_value(value: Any, scope: ExpressionScope) -> Any:
    """Resolve expressions anywhere inside a parameter value (dicts and lists included)."""
    if is_expression(value):
        return resolve(value, scope)
    if isinstance(value, dict):
        return {k: resolve_value(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, scope) for v in value]
    return copy.deepcopy(value)


def resolve_parameters(parameters: dict[str, Any], scope: ExpressionScope) -> dict[str, Any]:
    """Return a resolved deep copy of a node's parameters."""
    return {name: resolve_value(value, scope) for name, value in parameters.items()}
