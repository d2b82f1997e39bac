from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import FakeQuickBooks, add_location, pnl_report
from errors import (
    QB_REFRESH_EXPIRED,
    BudgetConflict,
    InvalidYearMonth,
    QuickBooksNotConfigured,
    RefreshTokenExpired,
    UpstreamError,
)
from models import Budget
from schemas import BudgetSettingsIn
from services import (
    BudgetService,
    BudgetSettingsService,
    ReferenceData,
    ReferenceDataService,
)


def budget_count(session) -> int:
    return session.scalar(select(func.count()).select_from(Budget))


def test_settings_default_and_update(session) -> None:
    settings = BudgetSettingsService(session)
    config = settings.config()
    assert config.rate == Decimal("0.33")
    assert config.reference_period_months == 6

    settings.update(BudgetSettingsIn(budget_rate=Decimal("0.3"), reference_period_months=3))
    config = settings.config()
    assert config.rate == Decimal("0.3")
    assert config.reference_period_months == 3


def test_ensure_budget_uses_reference_window_income(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    client = FakeQuickBooks({"r1": pnl_report(income="60000", cos_rows=[("COS1- Food", "100")])})
    service = BudgetService(session, client)

    budget = service.ensure_budget_for_month(location.id, "2025-02")

    assert budget.total_amount == Decimal("3300")
    assert budget.budget_rate_used == Decimal("0.33")
    assert budget.reference_period_months_used == 6
    assert budget.error is None
    assert client.calls[0]["start_date"] == "2024-08-01"
    assert client.calls[0]["end_date"] == "2025-01-31"


def test_ensure_budget_twice_keeps_one_row(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    client = FakeQuickBooks({"r1": pnl_report(income="6000")})
    service = BudgetService(session, client)

    first = service.ensure_budget_for_month(location.id, "2025-02")
    client.reports["r1"] = pnl_report(income="12000")
    second = service.ensure_budget_for_month(location.id, "2025-02", budget_rate=Decimal("0.5"))

    assert first.id == second.id
    assert second.total_amount == Decimal("1000")
    assert budget_count(session) == 1


def test_ensure_budget_with_supplied_reference_data_skips_upstream(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    client = FakeQuickBooks()
    budget = BudgetService(session, client).ensure_budget_for_month(
        location.id,
        "2025-02",
        reference_period_months=2,
        reference_data=ReferenceData(income_total=Decimal("1000")),
    )
    assert budget.total_amount == Decimal("165")
    assert client.calls == []


def test_expired_refresh_token_writes_stub(session) -> None:
    location = add_location(
        session,
        "BOS",
        realm_external_id="r1",
        expires_at=datetime.utcnow() - timedelta(hours=1),
    )
    client = FakeQuickBooks()
    client.refresh_result = RefreshTokenExpired("invalid_grant")

    budget = BudgetService(session, client).ensure_budget_for_month(location.id, "2025-02")

    assert budget.error == QB_REFRESH_EXPIRED
    assert budget.total_amount == Decimal("0")
    assert budget.budget_rate_used is None
    assert budget.reference_period_months_used is None


def test_other_upstream_failures_propagate_without_a_row(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    client = FakeQuickBooks({"r1": UpstreamError("QuickBooks P&L request failed: 500")})

    with pytest.raises(UpstreamError) as excinfo:
        BudgetService(session, client).ensure_budget_for_month(location.id, "2025-02")
    assert excinfo.value.details["location_id"] == location.id
    assert budget_count(session) == 0


def test_invalid_month_and_unknown_location(session) -> None:
    service = BudgetService(session, FakeQuickBooks())
    with pytest.raises(InvalidYearMonth):
        service.ensure_budget_for_month(1, "2025-13")
    with pytest.raises(ValueError):
        service.ensure_budget_for_month(999, "2025-02")


def test_concurrent_first_insert_surfaces_as_conflict(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1")
    service = BudgetService(session, FakeQuickBooks({"r1": pnl_report(income="600")}))
    service.ensure_budget_for_month(location.id, "2025-02")

    # A second writer that missed the existing row tries to insert it again.
    with pytest.raises(BudgetConflict):
        service._save(location.id, "2025-02", None, total_amount=Decimal("1"))
    assert budget_count(session) == 1


def test_ensure_all_requires_configuration(session) -> None:
    add_location(session, "BOS", realm_external_id="r1")
    service = BudgetService(session, FakeQuickBooks(configured=False))
    with pytest.raises(QuickBooksNotConfigured):
        service.ensure_budgets_for_month("2025-02")


def test_ensure_all_isolates_failing_location(file_session_factory) -> None:
    with file_session_factory() as session:
        bos = add_location(session, "BOS", realm_external_id="r1")
        nyc = add_location(session, "NYC", realm_external_id="r2")
        chi = add_location(session, "CHI", realm_external_id="r3")
        client = FakeQuickBooks(
            {
                "r1": pnl_report(income="6000"),
                "r2": UpstreamError("QuickBooks P&L request failed: 503"),
                "r3": pnl_report(income="12000"),
            }
        )
        service = BudgetService(
            session, client, session_factory=file_session_factory, max_workers=4
        )

        outcomes = {o.location_id: o for o in service.ensure_budgets_for_month("2025-02")}

        assert outcomes[bos.id].status == "ok"
        assert outcomes[nyc.id].status == "failed"
        assert "503" in outcomes[nyc.id].error
        assert outcomes[chi.id].status == "ok"
        views = {v.location_code: v for v in service.get_budgets_by_month("2025-02")}
        assert set(views) == {"BOS", "CHI"}
        assert views["BOS"].total_amount == Decimal("330")
        assert views["CHI"].total_amount == Decimal("660")


def test_ensure_all_skips_clean_rows_and_retries_stubs(file_session_factory) -> None:
    with file_session_factory() as session:
        bos = add_location(session, "BOS", realm_external_id="r1")
        nyc = add_location(
            session,
            "NYC",
            realm_external_id="r2",
            expires_at=datetime.utcnow() - timedelta(hours=1),
        )
        client = FakeQuickBooks(
            {"r1": pnl_report(income="6000"), "r2": pnl_report(income="6000")}
        )
        client.refresh_result = RefreshTokenExpired("invalid_grant")
        service = BudgetService(
            session, client, session_factory=file_session_factory, max_workers=4
        )

        first = {o.location_id: o for o in service.ensure_budgets_for_month("2025-02")}
        assert first[bos.id].status == "ok"
        assert first[nyc.id].status == "stub"

        # The location reconnects; the next run heals the stub and leaves BOS alone.
        client.refresh_result = None
        calls_before = len(client.calls)
        second = {o.location_id: o for o in service.ensure_budgets_for_month("2025-02")}

        assert second[bos.id].status == "skipped"
        assert second[nyc.id].status == "ok"
        assert [c["realm_id"] for c in client.calls[calls_before:]] == ["r2"]
        healed = service.get_budget_by_location_and_month(nyc.id, "2025-02")
        assert healed.error is None
        assert healed.total_amount == Decimal("330")


def test_attach_current_month_cos_flags_only_failed_budget(file_session_factory) -> None:
    with file_session_factory() as session:
        bos = add_location(session, "BOS", realm_external_id="r1")
        nyc = add_location(session, "NYC", realm_external_id="r2")
        client = FakeQuickBooks(
            {
                "r1": pnl_report(
                    income="1000", cos_rows=[("COS1- Food", "120"), ("COS2- Drinks", "30")]
                ),
                "r2": pnl_report(income="1000"),
            }
        )
        service = BudgetService(
            session, client, session_factory=file_session_factory, max_workers=4
        )
        service.ensure_budgets_for_month("2025-03")
        client.reports["r2"] = UpstreamError("QuickBooks P&L request timed out")

        views = service.attach_current_month_cos(
            service.get_budgets_by_month("2025-03"), "2025-03", today=date(2025, 3, 10)
        )
        by_code = {v.location_code: v for v in views}

        assert by_code["BOS"].current_cos_total == Decimal("150.0")
        assert [c.category_id for c in by_code["BOS"].current_cos_by_category] == [
            "qb-0",
            "qb-1",
        ]
        assert by_code["BOS"].current_cos_error is None
        assert by_code["NYC"].current_cos_total is None
        assert "timed out" in by_code["NYC"].current_cos_error
        current_calls = [c for c in client.calls if c["start_date"] == "2025-03-01"]
        assert {c["end_date"] for c in current_calls} == {"2025-03-10"}
        assert bos.id != nyc.id


def test_attach_reference_cos_allocates_budget(file_session_factory) -> None:
    with file_session_factory() as session:
        add_location(session, "BOS", realm_external_id="r1")
        client = FakeQuickBooks(
            {
                "r1": pnl_report(
                    income="60000",
                    cos_rows=[("COS1- Food", "3000"), ("COS2- Drinks", "1000")],
                )
            }
        )
        service = BudgetService(
            session, client, session_factory=file_session_factory, max_workers=2
        )
        service.ensure_budgets_for_month("2025-02")

        [view] = service.attach_reference_cos(service.get_budgets_by_month("2025-02"), "2025-02")

        assert view.reference_income_total == Decimal("60000")
        assert [(c.category_id, c.amount) for c in view.categories] == [
            ("qb-0", Decimal("2475.00")),
            ("qb-1", Decimal("825.00")),
        ]
        payload = view.to_dict()
        assert payload["totalAmount"] == 3300.0
        assert payload["categories"][0]["percent"] == 75.0


def test_bulk_update_streams_progress(session) -> None:
    bos = add_location(session, "BOS", realm_external_id="r1")
    client = FakeQuickBooks({"r1": pnl_report(income="6000")})
    service = BudgetService(session, client)
    service.ensure_budget_for_month(bos.id, "2025-01")
    service.ensure_budget_for_month(bos.id, "2025-02")

    events = list(service.bulk_update("2025-01", "2025-03", budget_rate=Decimal("0.5")))

    assert [e["type"] for e in events] == ["progress", "progress", "done"]
    assert events[-1]["updated"] == 2
    assert service.get_budget_by_location_and_month(bos.id, "2025-02").total_amount == Decimal("500")


def test_bulk_update_rejects_reversed_range(session) -> None:
    with pytest.raises(ValueError):
        BudgetService(session, FakeQuickBooks()).bulk_update("2025-03", "2025-01")


def test_reference_data_service_passes_class_filter(session) -> None:
    location = add_location(session, "BOS", realm_external_id="r1", class_id="500")
    client = FakeQuickBooks({"r1": pnl_report(income="100")})

    ref = ReferenceDataService(session, client).reference_income_and_cos(location.id, "2025-02", 1)

    assert ref.income_total == Decimal("100")
    assert client.calls[0]["class_id"] == "500"
    assert client.calls[0]["start_date"] == "2025-01-01"
