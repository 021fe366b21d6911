from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from models import CategoryType
from money import round_money


@dataclass(frozen=True)
class CategoryMeta:
    type: CategoryType
    parent_id: Optional[int]


@dataclass
class TreeNode:
    category_id: int
    name: str
    planned: Decimal
    realized: Decimal
    color: Optional[str]
    type: CategoryType
    parent_id: Optional[int]
    children: list["TreeNode"] = field(default_factory=list)


def build_tree(
    rows: Iterable, metadata: Mapping[int, CategoryMeta]
) -> list[TreeNode]:
    """
    Link flat grid rows into a forest.

    ``rows`` only need ``category_id``, ``name``, ``planned``, ``realized`` and
    ``color``. Rows without metadata are dropped. A node whose parent is not
    among the rows becomes a root, so one call can return several roots.
    """
    nodes: dict[int, TreeNode] = {}
    for row in rows:
        meta = metadata.get(row.category_id)
        if meta is None:
            continue
        nodes[row.category_id] = TreeNode(
            category_id=row.category_id,
            name=row.name,
            planned=row.planned,
            realized=row.realized,
            color=row.color,
            type=meta.type,
            parent_id=meta.parent_id,
        )

    roots: list[TreeNode] = []
    for node in nodes.values():
        parent = nodes.get(node.parent_id) if node.parent_id is not None else None
        if parent is not None and parent is not node:
            parent.children.append(node)
        else:
            roots.append(node)
    return roots


def aggregate_tree(node: TreeNode) -> tuple[Decimal, Decimal]:
    """
    Roll ``planned``/``realized`` up from the leaves.

    Leaves keep their own values. An internal node is overwritten with the sum
    of its children's totals, rounded after summation; its own values are
    discarded.
    """
    if not node.children:
        return node.planned, node.realized

    planned = Decimal("0")
    realized = Decimal("0")
    for child in node.children:
        child_planned, child_realized = aggregate_tree(child)
        planned += child_planned
        realized += child_realized

    node.planned = round_money(planned)
    node.realized = round_money(realized)
    return node.planned, node.realized
