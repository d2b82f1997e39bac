from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol, Sequence, TypeVar


class HasCategoryId(Protocol):
    category_id: str


T = TypeVar("T", bound=HasCategoryId)


@dataclass
class CategoryGroup:
    category: HasCategoryId
    subcategories: list = field(default_factory=list)


def parse_category_path(category_id: str) -> list[int]:
    """Leading numeric segments of a ``qb-`` id: ``qb-0-2-1`` -> ``[0, 2, 1]``."""
    parts = category_id.split("-")
    if len(parts) < 2 or parts[0] != "qb":
        return []
    path: list[int] = []
    for part in parts[1:]:
        if not part.isdigit():
            break
        path.append(int(part))
    return path


def is_top_level_category(category_id: str) -> bool:
    return len(parse_category_path(category_id)) == 1


def top_level_index(category_id: str) -> float:
    path = parse_category_path(category_id)
    return path[0] if path else float("inf")


def top_level_categories(categories: Sequence[T]) -> list[T]:
    """Top-level categories ordered by position, dropping those with no cost."""
    top = [c for c in categories if is_top_level_category(c.category_id)]
    top.sort(key=lambda c: top_level_index(c.category_id))
    return [c for c in top if getattr(c, "amount", Decimal("0")) > 0]


def group_categories_with_subs(categories: Sequence[T]) -> list[CategoryGroup]:
    groups: dict[int, dict[str, object]] = {}
    for cat in categories:
        path = parse_category_path(cat.category_id)
        if not path:
            continue
        entry = groups.setdefault(path[0], {"category": None, "subs": []})
        if len(path) == 1:
            entry["category"] = cat
        else:
            entry["subs"].append(cat)
    return [
        CategoryGroup(category=groups[idx]["category"], subcategories=groups[idx]["subs"])
        for idx in sorted(groups)
        if groups[idx]["category"] is not None
    ]
