"""
Item Schema - The unit of data flowing along connections.

An item is a JSON-like record plus optional references to binary payloads.
Items carry provenance (``paired_item``) pointing back at the input item(s)
of the invocation that produced them, which is how expressions find "the
matching item" in an upstream node's output.
"""

from typing import Any

from pydantic import BaseModel, Field


class BinaryRef(BaseModel):
    """Reference to a binary payload held by the binary data provider."""

    id: str
    mime_type: str = "application/octet-stream"
    file_name: str | None = None
    size: int = 0

    model_config = {"extra": "allow"}


class PairedItem(BaseModel):
    """Index of the input item (and input port) an output item derives from."""

    item: int = 0
    input: int = 0


class ItemError(BaseModel):
    """Marks an item produced by a failed invocation under continue-on-fail."""

    node: str
    kind: str
    message: str
    description: str | None = None


class Item(BaseModel):
    """
    One unit of data.

    Example:
        Item(data={"id": 7, "email": "a@example.com"})
    """

    data: dict[str, Any] = Field(default_factory=dict)
    binary: dict[str, BinaryRef] = Field(default_factory=dict)
    paired_item: list[PairedItem] | None = None
    error: ItemError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def of(cls, value: Any) -> "Item":
        """Coerce a dict (or an Item) into an Item."""
        if isinstance(value, Item):
            return value
        if isinstance(value, dict):
            return cls(data=value)
        return cls(data={"value": value})


class SourceRef(BaseModel):
    """Which upstream invocation delivered the items on an input port."""

    node: str
    output: int = 0
    run_index: int = 0


def to_items(values: Any) -> list[Item]:
    """Normalize None, a single dict/Item, or a list of them into a list of Items."""
    if values is None:
        return []
    if isinstance(values, (Item, dict)):
        return [Item.of(values)]
    return [Item.of(v) for v in values]
