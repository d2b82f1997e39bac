from decimal import Decimal

from categories import group_categories_with_subs
from conftest import line, pnl_report, section
from pnl_parser import (
    category_id_for,
    parse_amount,
    parse_report,
    summarize_report,
)


def test_single_column_report_totals() -> None:
    report = pnl_report(
        income="12000.50", cos_rows=[("COS1- Food", "2500"), ("COS2- Beverage", "500")]
    )
    summary = summarize_report(report)
    assert summary.income_total == Decimal("12000.50")
    assert summary.cos_total == Decimal("3000.0")
    assert [(c.category_id, c.name, c.amount) for c in summary.cos_by_category] == [
        ("qb-0", "COS1- Food", Decimal("2500")),
        ("qb-1", "COS2- Beverage", Decimal("500")),
    ]


def test_multi_period_report_reads_total_column() -> None:
    report = {
        "Rows": {
            "Row": [
                {
                    "type": "Section",
                    "Header": {"ColData": [{"value": "Income"}, {"value": ""}]},
                    "Rows": {"Row": [line("Sales", "100", "200", "300")]},
                    "Summary": {
                        "ColData": [
                            {"value": "Total Income"},
                            {"value": "100"},
                            {"value": "200"},
                            {"value": "300"},
                        ]
                    },
                },
                {
                    "type": "Section",
                    "Header": {"ColData": [{"value": "Cost of Sales"}, {"value": ""}]},
                    "Rows": {"Row": [line("COS1- Food", "10", "20", "30")]},
                    "Summary": {
                        "ColData": [
                            {"value": "Total Cost of Sales"},
                            {"value": "10"},
                            {"value": "20"},
                            {"value": "30"},
                        ]
                    },
                },
            ]
        }
    }
    summary = summarize_report(report)
    assert summary.income_total == Decimal("300")
    assert summary.cos_total == Decimal("30")
    assert summary.cos_by_category[0].amount == Decimal("30")


def test_numbered_categories_keep_ids_when_one_is_missing() -> None:
    report = pnl_report(cos_rows=[("COS1- Food", "10"), ("COS3 - Paper", "5")])
    ids = [c.category_id for c in summarize_report(report).cos_by_category]
    assert ids == ["qb-0", "qb-2"]


def test_category_id_uses_position_for_unnumbered_and_nested_rows() -> None:
    assert category_id_for("Freight", [4]) == "qb-4"
    assert category_id_for("COS6 - Teas", [1]) == "qb-5"
    assert category_id_for("COS6 - Teas", [1, 0]) == "qb-1-0"


def test_nested_subcategories_are_flattened_after_their_parent() -> None:
    report = {
        "Rows": {
            "Row": [
                section(
                    "Cost of Goods Sold",
                    [
                        line("COS1- Food", "40"),
                        section(
                            "Supplies",
                            [line("Paper", "7"), line("Cleaning", "3")],
                            "10",
                        ),
                        line("Cost of Goods Sold", "99"),
                    ],
                    "50",
                )
            ]
        }
    }
    summary = summarize_report(report)
    assert summary.cos_total == Decimal("50")
    assert [(c.category_id, c.amount) for c in summary.cos_by_category] == [
        ("qb-0", Decimal("40")),
        ("qb-1", Decimal("10")),
        ("qb-1-0", Decimal("7")),
        ("qb-1-1", Decimal("3")),
    ]


def test_only_exact_income_section_counts() -> None:
    report = {
        "Rows": {
            "Row": [
                section("Other Income", [line("Interest", "50")], "50"),
            ]
        }
    }
    assert summarize_report(report).income_total == Decimal("0")


def test_section_without_summary_falls_back_to_own_cells() -> None:
    nodes = parse_report(
        {
            "Rows": {
                "Row": [
                    {
                        "type": "Section",
                        "ColData": [{"value": "Cost of Goods Sold"}, {"value": "12"}],
                        "group": "COGS",
                    }
                ]
            }
        }
    )
    assert nodes[0].total == Decimal("12")


def test_malformed_reports_yield_zeros() -> None:
    for report in (None, {}, {"Rows": "junk"}, {"Rows": {"Row": [1, "x", None]}}):
        summary = summarize_report(report)
        assert summary.income_total == Decimal("0")
        assert summary.cos_total == Decimal("0")
        assert summary.cos_by_category == []


def test_amounts_are_absolute_and_junk_is_zero() -> None:
    assert parse_amount("-1,234.50") == Decimal("1234.50")
    assert parse_amount("") == Decimal("0")
    assert parse_amount("n/a") == Decimal("0")
    assert parse_amount(None) == Decimal("0")
    assert parse_amount(12.5) == Decimal("12.5")


def cos_report(rows, total):
    return {"Rows": {"Row": [section("Cost of Goods Sold", rows, total)]}}


def test_unnumbered_category_never_takes_a_numbered_slot() -> None:
    report = cos_report(
        [line("COS1- Food", "10"), line("Freight", "4"), line("COS2- Drinks", "6")], "20"
    )
    ids = [c.category_id for c in summarize_report(report).cos_by_category]
    assert ids == ["qb-0", "qb-2", "qb-1"]
    assert len(set(ids)) == len(ids)


def test_subcategories_follow_a_renumbered_parent() -> None:
    report = cos_report(
        [
            line("COS1- Food", "10"),
            section("COS3 - Paper", [line("Cups", "4"), line("Lids", "1")], "5"),
        ],
        "15",
    )
    categories = summarize_report(report).cos_by_category
    assert [c.category_id for c in categories] == ["qb-0", "qb-2", "qb-2-0", "qb-2-1"]

    groups = group_categories_with_subs(categories)
    assert [g.category.name for g in groups] == ["COS1- Food", "COS3 - Paper"]
    assert [s.name for s in groups[1].subcategories] == ["Cups", "Lids"]
