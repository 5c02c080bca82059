"""
Grouping engine.

Partitions cart lines into allocation groups: every line of one automatic
bundle instance forms a bundle group, every other line is a singleton.
Pure; re-run after every cart mutation.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from pos_pricing.models.cart import BundleGroupId, LineItem


@dataclass(frozen=True)
class UnitInstance:
    """One unit of a line, addressed by (line id, instance index)."""
    line_id: str
    instance_index: int


def _instances(item: LineItem) -> Tuple[UnitInstance, ...]:
    return tuple(UnitInstance(item.line_id, i) for i in range(item.quantity))


@dataclass(frozen=True)
class BundleGroup:
    bundle_group_id: BundleGroupId
    item_indexes: Tuple[int, ...]
    members: Tuple[LineItem, ...]

    @property
    def key(self) -> str:
        return f"bundle:{self.bundle_group_id}"

    @property
    def total_quantity(self) -> int:
        return sum(member.quantity for member in self.members)

    @property
    def instances(self) -> Tuple[UnitInstance, ...]:
        return tuple(unit for member in self.members for unit in _instances(member))

    @property
    def promotion_id(self) -> Optional[str]:
        for member in self.members:
            if member.bundle_promotion_id is not None:
                return member.bundle_promotion_id
        return None


@dataclass(frozen=True)
class SingletonGroup:
    item_index: int
    member: LineItem

    @property
    def key(self) -> str:
        return f"item:{self.member.line_id}"

    @property
    def instances(self) -> Tuple[UnitInstance, ...]:
        return _instances(self.member)


AllocationGroup = Union[BundleGroup, SingletonGroup]


def group_items(items: Sequence[LineItem]) -> List[AllocationGroup]:
    """
    Build allocation groups in cart order.

    A bundle group opens at the first line of an unseen bundle group id and
    takes every later line sharing it. A line flagged as a bundle member
    without a group id is a singleton.
    """
    groups: List[AllocationGroup] = []
    visited = set()

    for index, item in enumerate(items):
        if index in visited:
            continue
        visited.add(index)

        if item.is_from_bundle and item.bundle_group_id is not None:
            indexes = [index]
            for other_index in range(index + 1, len(items)):
                if other_index not in visited and items[other_index].bundle_group_id == item.bundle_group_id:
                    indexes.append(other_index)
                    visited.add(other_index)
            groups.append(BundleGroup(
                bundle_group_id=item.bundle_group_id,
                item_indexes=tuple(indexes),
                members=tuple(items[i] for i in indexes),
            ))
        else:
            groups.append(SingletonGroup(item_index=index, member=item))

    return groups


def line_group_key(item: LineItem) -> str:
    """Key of the allocation group a line falls into."""
    if item.is_from_bundle and item.bundle_group_id is not None:
        return f"bundle:{item.bundle_group_id}"
    return f"item:{item.line_id}"


def find_group(groups: Sequence[AllocationGroup], key: str) -> Optional[AllocationGroup]:
    for group in groups:
        if group.key == key:
            return group
    return None


def bundle_member_indexes(groups: Sequence[AllocationGroup]) -> set:
    """Indexes of every line that belongs to a bundle group."""
    return {index for group in groups if isinstance(group, BundleGroup) for index in group.item_indexes}
