"""Profit & Loss report parsing.

QuickBooks returns the P&L as a loosely typed tree of ``Rows.Row`` entries.
Each entry is either a plain line (``ColData`` cells) or a section with a
``Header``, child ``Rows`` and a trailing ``Summary`` with totals. The raw JSON
is converted into :class:`LineItem` / :class:`Section` nodes first; totals and
the cost-of-sales category list are read from those nodes only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

INCOME_TITLE_RE = re.compile(r"^income$", re.IGNORECASE)
COS_TITLE_RE = re.compile(r"cost of (goods )?sold|cost of sales", re.IGNORECASE)
COS_LINE_RE = re.compile(r"^cost of (goods )?sold$", re.IGNORECASE)
COS_NUMBER_RE = re.compile(r"^COS\s*(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class LineItem:
    cells: tuple[object, ...]

    @property
    def name(self) -> str:
        if not self.cells:
            return ""
        return _cell_text(self.cells[0])

    @property
    def total(self) -> Decimal:
        return column_value(self.cells)


@dataclass(frozen=True)
class Section:
    header: tuple[object, ...]
    summary: tuple[object, ...]
    cells: tuple[object, ...] = ()
    children: tuple["ReportNode", ...] = ()
    group: Optional[str] = None

    @property
    def title(self) -> str:
        if self.header:
            return _cell_text(self.header[0])
        return ""

    @property
    def name(self) -> str:
        if self.title:
            return self.title
        if self.cells:
            return _cell_text(self.cells[0])
        return ""

    @property
    def total(self) -> Decimal:
        if len(self.summary) >= 2:
            return column_value(self.summary)
        return column_value(self.cells)


ReportNode = Union[LineItem, Section]


@dataclass(frozen=True)
class CategoryAmount:
    category_id: str
    name: str
    amount: Decimal


@dataclass(frozen=True)
class PnlSummary:
    income_total: Decimal = Decimal("0")
    cos_total: Decimal = Decimal("0")
    cos_by_category: list[CategoryAmount] = field(default_factory=list)


def parse_amount(value: object) -> Decimal:
    """Non-negative magnitude of a report cell value; junk counts as zero."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, (int, float)):
        text = repr(value)
    else:
        text = str(value).replace(",", "").strip()
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    if not amount.is_finite():
        return Decimal("0")
    return abs(amount)


def value_column_index(cells: tuple[object, ...]) -> int:
    # Multi-period reports append a "Total" column after the period columns.
    if len(cells) > 2:
        return len(cells) - 1
    return 1


def column_value(cells: tuple[object, ...]) -> Decimal:
    idx = value_column_index(cells)
    if len(cells) > idx:
        return parse_amount(_cell_value(cells[idx]))
    return Decimal("0")


def _cell_value(cell: object) -> object:
    if isinstance(cell, dict):
        return cell.get("value")
    return None


def _cell_text(cell: object) -> str:
    value = _cell_value(cell)
    if value is None:
        return ""
    return str(value).strip()


def _col_data(container: object) -> tuple[object, ...]:
    if not isinstance(container, dict):
        return ()
    cells = container.get("ColData")
    if not isinstance(cells, list):
        return ()
    return tuple(cells)


def _row_list(container: object) -> list[object]:
    if not isinstance(container, dict):
        return []
    rows = container.get("Rows")
    if not isinstance(rows, dict):
        return []
    row_list = rows.get("Row")
    return row_list if isinstance(row_list, list) else []


def parse_node(raw: object) -> Optional[ReportNode]:
    if not isinstance(raw, dict):
        return None
    children = tuple(
        node for node in (parse_node(child) for child in _row_list(raw)) if node
    )
    header = _col_data(raw.get("Header"))
    summary = _col_data(raw.get("Summary"))
    group = raw.get("group")
    if header or summary or children or raw.get("type") == "Section":
        return Section(
            header=header,
            summary=summary,
            cells=_col_data(raw),
            children=children,
            group=group if isinstance(group, str) else None,
        )
    return LineItem(cells=_col_data(raw))


def parse_report(report: object) -> list[ReportNode]:
    """Convert the top-level rows of a raw report into typed nodes."""
    return [node for node in (parse_node(raw) for raw in _row_list(report)) if node]


def find_section(
    nodes: list[ReportNode], title_match: Callable[[str], bool]
) -> Optional[Section]:
    for node in nodes:
        if not isinstance(node, Section):
            continue
        if node.title and title_match(node.title):
            return node
        if node.group and title_match(node.group):
            return node
    return None


def income_total(nodes: list[ReportNode]) -> Decimal:
    section = find_section(nodes, lambda t: bool(INCOME_TITLE_RE.match(t.strip())))
    return section.total if section else Decimal("0")


def _cos_section(nodes: list[ReportNode]) -> Optional[Section]:
    return find_section(nodes, lambda t: bool(COS_TITLE_RE.search(t.strip())))


def cos_total(nodes: list[ReportNode]) -> Decimal:
    section = _cos_section(nodes)
    return section.total if section else Decimal("0")


def cos_number(name: str) -> Optional[int]:
    """``N`` from category names such as ``COS1- Supplier`` or ``COS 6 - Teas``."""
    match = COS_NUMBER_RE.match(name.strip())
    return int(match.group(1)) if match else None


def category_id_for(name: str, path: list[int]) -> str:
    number = cos_number(name)
    # Numbered top-level categories keep their id when QuickBooks omits an
    # earlier category that had no activity in the period.
    if number is not None and len(path) == 1:
        return f"qb-{number - 1}"
    return "qb-" + "-".join(str(idx) for idx in path)


def _top_level_ids(children: list[ReportNode]) -> list[str]:
    """Numbered categories claim ``qb-{N-1}``; unnumbered ones keep their
    position unless a numbered category holds it, then take the next free slot."""
    claimed: set[int] = set()
    for child in children:
        number = cos_number(child.name or "")
        if number is not None:
            claimed.add(number - 1)
    ids: list[str] = []
    for idx, child in enumerate(children):
        if cos_number(child.name or "") is not None:
            ids.append(category_id_for(child.name, [idx]))
            continue
        slot = idx
        while slot in claimed:
            slot += 1
        claimed.add(slot)
        ids.append(f"qb-{slot}")
    return ids


def _flatten(node: ReportNode, category_id: str, out: list[CategoryAmount]) -> None:
    name = node.name
    if not name:
        return
    has_header = isinstance(node, Section) and bool(node.header)
    if not has_header and COS_LINE_RE.match(name):
        return
    out.append(CategoryAmount(category_id, name, node.total))
    if isinstance(node, Section):
        # subcategories hang off their parent's id so they group with it
        for idx, child in enumerate(node.children):
            _flatten(child, f"{category_id}-{idx}", out)


def cos_by_category(nodes: list[ReportNode]) -> list[CategoryAmount]:
    section = _cos_section(nodes)
    if section is None:
        return []
    out: list[CategoryAmount] = []
    for child, category_id in zip(section.children, _top_level_ids(section.children)):
        _flatten(child, category_id, out)
    return out


def summarize_report(report: object, *, include_income: bool = True) -> PnlSummary:
    nodes = parse_report(report)
    return PnlSummary(
        income_total=income_total(nodes) if include_income else Decimal("0"),
        cos_total=cos_total(nodes),
        cos_by_category=cos_by_category(nodes),
    )
