from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterator, Optional, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from budget_math import (
    BudgetConfig,
    CategoryAllocation,
    compute_total_budget,
    distribute_by_cos_percent,
)
from categories import top_level_categories
from config import get_settings
from errors import (
    QB_REFRESH_EXPIRED,
    AppError,
    BudgetConflict,
    InvalidYearMonth,
    QuickBooksNotConfigured,
    RefreshTokenExpired,
)
from models import Budget, BudgetSettings, Location, Realm
from periods import (
    DateRange,
    is_valid_year_month,
    list_year_months_in_range,
    reference_current_month_range,
    reference_previous_month_range,
)
from pnl_parser import CategoryAmount, summarize_report
from quickbooks import QuickBooksClient, TokenGrant
from schemas import BudgetSettingsIn, LocationIn
from tokens import TokenManager

logger = logging.getLogger(__name__)

ACCOUNTING_METHOD = "Accrual"

K = TypeVar("K")
R = TypeVar("R")


@dataclass(frozen=True)
class ReferenceData:
    income_total: Decimal = Decimal("0")
    cos_total: Decimal = Decimal("0")
    cos_by_category: list[CategoryAmount] = field(default_factory=list)


@dataclass(frozen=True)
class CosBreakdown:
    cos_total: Decimal
    cos_by_category: list[CategoryAmount]


@dataclass
class BudgetView:
    id: int
    location_id: int
    year_month: str
    total_amount: Decimal
    budget_rate_used: Optional[Decimal]
    reference_period_months_used: Optional[int]
    error: Optional[str]
    location_code: str
    location_name: str
    current_cos_total: Optional[Decimal] = None
    current_cos_by_category: Optional[list[CategoryAmount]] = None
    current_cos_error: Optional[str] = None
    reference_income_total: Optional[Decimal] = None
    reference_cos_total: Optional[Decimal] = None
    reference_cos_by_category: Optional[list[CategoryAmount]] = None
    reference_error: Optional[str] = None
    categories: list[CategoryAllocation] = field(default_factory=list)

    @classmethod
    def from_model(cls, budget: Budget) -> "BudgetView":
        return cls(
            id=budget.id,
            location_id=budget.location_id,
            year_month=budget.year_month,
            total_amount=Decimal(budget.total_amount),
            budget_rate_used=(
                Decimal(budget.budget_rate_used)
                if budget.budget_rate_used is not None
                else None
            ),
            reference_period_months_used=budget.reference_period_months_used,
            error=budget.error,
            location_code=budget.location.code,
            location_name=budget.location.name,
        )

    @property
    def needs_reconnect(self) -> bool:
        return self.error == QB_REFRESH_EXPIRED

    def to_dict(self) -> dict[str, object]:
        def amounts(rows):
            if rows is None:
                return None
            return [
                {"categoryId": r.category_id, "name": r.name, "amount": float(r.amount)}
                for r in rows
            ]

        def money(value):
            return float(value) if value is not None else None

        return {
            "id": self.id,
            "locationId": self.location_id,
            "yearMonth": self.year_month,
            "totalAmount": float(self.total_amount),
            "budgetRateUsed": money(self.budget_rate_used),
            "referencePeriodMonthsUsed": self.reference_period_months_used,
            "error": self.error,
            "location": {
                "id": self.location_id,
                "code": self.location_code,
                "name": self.location_name,
            },
            "currentCosTotal": money(self.current_cos_total),
            "currentCosByCategory": amounts(self.current_cos_by_category),
            "currentCosError": self.current_cos_error,
            "referenceIncomeTotal": money(self.reference_income_total),
            "referenceCosTotal": money(self.reference_cos_total),
            "referenceCosByCategory": amounts(self.reference_cos_by_category),
            "categories": [
                {
                    "categoryId": c.category_id,
                    "name": c.name,
                    "amount": float(c.amount),
                    "percent": c.percent,
                }
                for c in self.categories
            ],
        }


@dataclass(frozen=True)
class EnsureOutcome:
    location_id: int
    status: str  # "skipped" | "ok" | "stub" | "failed"
    error: Optional[str] = None


class BudgetSettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_or_create(self) -> BudgetSettings:
        row = self.session.scalar(select(BudgetSettings).order_by(BudgetSettings.id))
        if row:
            return row
        settings = get_settings()
        row = BudgetSettings(
            budget_rate=Decimal(str(settings.default_budget_rate)),
            reference_period_months=settings.default_reference_period_months,
        )
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def config(self) -> BudgetConfig:
        row = self.get_or_create()
        return BudgetConfig(
            rate=Decimal(row.budget_rate),
            reference_period_months=row.reference_period_months,
        )

    def update(
        self, data: BudgetSettingsIn, updated_by_id: Optional[int] = None
    ) -> BudgetSettings:
        row = self.get_or_create()
        if data.budget_rate is not None:
            row.budget_rate = data.budget_rate
        if data.reference_period_months is not None:
            row.reference_period_months = data.reference_period_months
        row.updated_by_id = updated_by_id
        self.session.commit()
        self.session.refresh(row)
        logger.info(
            "budget_settings_updated: rate=%s reference_months=%s by=%s",
            row.budget_rate,
            row.reference_period_months,
            updated_by_id,
        )
        return row


class LocationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Location]:
        stmt = (
            select(Location)
            .options(joinedload(Location.realm))
            .order_by(Location.created_at.asc(), Location.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, location_id: int) -> Location:
        location = self.session.get(
            Location, location_id, options=[joinedload(Location.realm)]
        )
        if not location:
            raise ValueError("Location not found")
        return location

    def get_by_ids(self, ids: Sequence[int]) -> list[Location]:
        if not ids:
            return []
        stmt = select(Location).where(Location.id.in_(ids)).order_by(Location.code)
        return self.session.scalars(stmt).all()

    def create(self, data: LocationIn) -> Location:
        existing = self.session.scalar(select(Location).where(Location.code == data.code))
        if existing:
            raise ValueError("Location code already exists")
        location = Location(code=data.code, name=data.name, class_id=data.class_id)
        self.session.add(location)
        self.session.commit()
        self.session.refresh(location)
        return location

    def link_realm(self, location_id: int, realm: Realm) -> Location:
        location = self.get(location_id)
        location.realm_id = realm.id
        self.session.commit()
        self.session.refresh(location)
        return location


class RealmService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Realm]:
        return self.session.scalars(select(Realm).order_by(Realm.name)).all()

    def get(self, realm_pk: int) -> Realm:
        realm = self.session.get(Realm, realm_pk)
        if not realm:
            raise ValueError("Realm not found")
        return realm

    def for_location(self, location_id: int) -> Optional[Realm]:
        location = self.session.get(Location, location_id)
        return location.realm if location else None

    def by_external_id(self, external_id: str) -> Optional[Realm]:
        return self.session.scalar(select(Realm).where(Realm.external_id == external_id))

    def upsert_from_grant(
        self,
        external_id: str,
        name: str,
        grant: TokenGrant,
        *,
        now: Optional[datetime] = None,
    ) -> Realm:
        now = now or datetime.utcnow()
        realm = self.by_external_id(external_id)
        if realm is None:
            realm = Realm(external_id=external_id, name=name)
            self.session.add(realm)
        realm.access_token = grant.access_token
        realm.refresh_token = grant.refresh_token
        realm.expires_at = now + timedelta(seconds=grant.expires_in)
        realm.refresh_expires_at = (
            now + timedelta(seconds=grant.refresh_expires_in)
            if grant.refresh_expires_in is not None
            else None
        )
        self.session.commit()
        self.session.refresh(realm)
        return realm

    def connections(self, locations: Sequence[Location]) -> list[dict[str, object]]:
        rows = []
        for loc in sorted(locations, key=lambda l: l.code):
            realm = loc.realm
            rows.append(
                {
                    "locationId": loc.id,
                    "locationCode": loc.code,
                    "locationName": loc.name,
                    "realmId": realm.id if realm else None,
                    "qbRealmId": realm.external_id if realm else None,
                    "hasTokens": bool(realm and realm.refresh_token),
                    "refreshExpiresAt": (
                        realm.refresh_expires_at.isoformat()
                        if realm and realm.refresh_expires_at
                        else None
                    ),
                }
            )
        return rows


class ReferenceDataService:
    """Live P&L figures for a location. Nothing fetched here is stored."""

    def __init__(self, session: Session, client: QuickBooksClient) -> None:
        self.session = session
        self.client = client
        self.tokens = TokenManager(session, client)

    def _check_configured(self) -> None:
        if not self.client.configured:
            raise QuickBooksNotConfigured()

    def realm_id_for_location(self, location_id: int) -> str:
        self._check_configured()
        location = LocationService(self.session).get(location_id)
        if location.realm is None or not location.realm.external_id:
            raise AppError(
                "Location has no QuickBooks realm", details={"location_id": location_id}
            )
        return location.realm.external_id

    def profit_and_loss(
        self,
        location_id: int,
        date_range: DateRange,
        accounting_method: str = ACCOUNTING_METHOD,
    ) -> dict:
        self._check_configured()
        location = LocationService(self.session).get(location_id)
        return self.tokens.with_valid_token(
            location,
            lambda token, realm_id, class_id: self.client.fetch_profit_and_loss(
                realm_id,
                date_range.start_date,
                date_range.end_date,
                accounting_method,
                token,
                class_id,
            ),
        )

    def reference_income_and_cos(
        self, location_id: int, year_month: str, months: int
    ) -> ReferenceData:
        self._check_configured()
        date_range = reference_previous_month_range(year_month, months)
        try:
            report = self.profit_and_loss(location_id, date_range)
        except AppError as exc:
            logger.error(
                "reference_fetch_failed: location_id=%s year_month=%s error=%s",
                location_id,
                year_month,
                exc,
            )
            exc.details.setdefault("location_id", location_id)
            raise
        summary = summarize_report(report)
        return ReferenceData(
            income_total=summary.income_total,
            cos_total=summary.cos_total,
            cos_by_category=summary.cos_by_category,
        )

    def current_month_cos(
        self, location_id: int, year_month: str, *, today: Optional[date] = None
    ) -> CosBreakdown:
        self._check_configured()
        date_range = reference_current_month_range(year_month, today=today)
        report = self.profit_and_loss(location_id, date_range)
        summary = summarize_report(report, include_income=False)
        # The section total is authoritative; the category list mixes parents
        # and their subcategories, so summing it would double count.
        return CosBreakdown(
            cos_total=summary.cos_total, cos_by_category=summary.cos_by_category
        )


class BudgetService:
    def __init__(
        self,
        session: Session,
        client: Optional[QuickBooksClient] = None,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session = session
        self.client = client or QuickBooksClient()
        self.session_factory = session_factory or sessionmaker(
            bind=session.get_bind(), autoflush=False, expire_on_commit=False
        )
        self.max_workers = max_workers or get_settings().fanout_workers
        self.settings_service = BudgetSettingsService(session)
        self.reference = ReferenceDataService(session, self.client)

    def _find(self, location_id: int, year_month: str) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.location))
            .where(Budget.location_id == location_id, Budget.year_month == year_month)
        )
        return self.session.scalar(stmt)

    def _save(
        self,
        location_id: int,
        year_month: str,
        existing: Optional[Budget],
        **values: object,
    ) -> Budget:
        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(location_id=location_id, year_month=year_month, **values)
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(
                "budget_insert_conflict: location_id=%s year_month=%s",
                location_id,
                year_month,
            )
            raise BudgetConflict(
                "Budget for this location and month was created concurrently; retry",
                details={"location_id": location_id, "year_month": year_month},
            ) from exc
        self.session.refresh(budget)
        return budget

    def ensure_budget_for_month(
        self,
        location_id: int,
        year_month: str,
        *,
        budget_rate: Optional[Decimal] = None,
        reference_period_months: Optional[int] = None,
        reference_data: Optional[ReferenceData] = None,
    ) -> Budget:
        """Create or recompute the budget row for a location and month.

        An expired refresh token degrades the row to a zero-amount stub carrying
        ``QB_REFRESH_EXPIRED``; every other failure propagates.
        """
        if not is_valid_year_month(year_month):
            raise InvalidYearMonth(year_month)
        LocationService(self.session).get(location_id)

        try:
            config = self.settings_service.config()
            rate = Decimal(budget_rate) if budget_rate is not None else config.rate
            months = (
                reference_period_months
                if reference_period_months is not None
                else config.reference_period_months
            )
            ref = reference_data or self.reference.reference_income_and_cos(
                location_id, year_month, months
            )
            total_amount = compute_total_budget(ref.income_total, rate, months)
            budget = self._save(
                location_id,
                year_month,
                self._find(location_id, year_month),
                total_amount=total_amount,
                budget_rate_used=rate,
                reference_period_months_used=months,
                error=None,
            )
        except RefreshTokenExpired as exc:
            logger.warning(
                "budget_stub_refresh_expired: location_id=%s year_month=%s error=%s",
                location_id,
                year_month,
                exc,
            )
            self.session.rollback()
            return self._save(
                location_id,
                year_month,
                self._find(location_id, year_month),
                total_amount=Decimal("0"),
                budget_rate_used=None,
                reference_period_months_used=None,
                error=QB_REFRESH_EXPIRED,
            )
        logger.info(
            "budget_ensured: location_id=%s year_month=%s total=%s",
            location_id,
            year_month,
            budget.total_amount,
        )
        return budget

    def _fan_out(
        self, keys: Sequence[K], work: Callable[["BudgetService", K], R]
    ) -> dict[K, R]:
        """Run ``work`` per key in a thread pool, each with its own session."""
        if not keys:
            return {}

        def run(key: K) -> R:
            with self.session_factory() as session:
                worker = BudgetService(
                    session,
                    self.client,
                    session_factory=self.session_factory,
                    max_workers=1,
                )
                return work(worker, key)

        workers = max(1, min(self.max_workers, len(keys)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return dict(zip(keys, pool.map(run, keys)))

    def _ensure_outcome(self, location_id: int, year_month: str) -> EnsureOutcome:
        try:
            budget = self.ensure_budget_for_month(location_id, year_month)
        except Exception as exc:
            logger.exception(
                "budget_ensure_failed: location_id=%s year_month=%s",
                location_id,
                year_month,
            )
            return EnsureOutcome(location_id, "failed", str(exc))
        if budget.error:
            return EnsureOutcome(location_id, "stub", budget.error)
        return EnsureOutcome(location_id, "ok")

    def ensure_budgets_for_month(self, year_month: str) -> list[EnsureOutcome]:
        """Ensure every location has a budget row for the month.

        Rows without an error are left alone; missing rows and error stubs are
        (re)computed independently so one location cannot fail the others.
        """
        if not is_valid_year_month(year_month):
            raise InvalidYearMonth(year_month)
        if not self.client.configured:
            raise QuickBooksNotConfigured()

        # Seed the settings row before workers race to create it.
        self.settings_service.get_or_create()
        locations = LocationService(self.session).list_all()
        rows = {
            b.location_id: b
            for b in self.session.scalars(
                select(Budget).where(Budget.year_month == year_month)
            )
        }
        pending = [
            loc.id
            for loc in locations
            if loc.id not in rows or rows[loc.id].error is not None
        ]
        results = self._fan_out(
            pending, lambda worker, lid: worker._ensure_outcome(lid, year_month)
        )
        # Workers wrote through their own sessions.
        self.session.expire_all()
        return [
            results.get(loc.id) or EnsureOutcome(loc.id, "skipped")
            for loc in locations
        ]

    def get_budget_by_location_and_month(
        self, location_id: int, year_month: str
    ) -> Optional[BudgetView]:
        budget = self._find(location_id, year_month)
        return BudgetView.from_model(budget) if budget else None

    def get_budgets_by_month(self, year_month: str) -> list[BudgetView]:
        stmt = (
            select(Budget)
            .join(Budget.location)
            .options(joinedload(Budget.location))
            .where(Budget.year_month == year_month)
            .order_by(Location.created_at.asc(), Location.id.asc())
        )
        return [BudgetView.from_model(b) for b in self.session.scalars(stmt)]

    @staticmethod
    def _settle(call: Callable[[], R]) -> tuple[Optional[R], Optional[str]]:
        try:
            return call(), None
        except Exception as exc:
            logger.warning("upstream_fetch_failed: error=%s", exc)
            return None, str(exc)

    def attach_current_month_cos(
        self,
        views: list[BudgetView],
        year_month: str,
        *,
        today: Optional[date] = None,
    ) -> list[BudgetView]:
        """Attach this month's actual COS; a failed fetch only flags its budget."""
        if not is_valid_year_month(year_month):
            return views
        results = self._fan_out(
            [v.location_id for v in views],
            lambda worker, lid: worker._settle(
                lambda: worker.reference.current_month_cos(lid, year_month, today=today)
            ),
        )
        attached = []
        for view in views:
            cos, error = results[view.location_id]
            if cos is None:
                attached.append(replace(view, current_cos_error=error))
                continue
            attached.append(
                replace(
                    view,
                    current_cos_total=cos.cos_total,
                    current_cos_by_category=cos.cos_by_category,
                    current_cos_error=None,
                )
            )
        return attached

    def attach_reference_cos(
        self, views: list[BudgetView], year_month: str
    ) -> list[BudgetView]:
        """Attach reference-period COS and the per-category budget allocation."""
        if not is_valid_year_month(year_month):
            return views
        default_months = self.settings_service.config().reference_period_months
        months_for = {
            v.location_id: v.reference_period_months_used or default_months
            for v in views
        }
        results = self._fan_out(
            [v.location_id for v in views],
            lambda worker, lid: worker._settle(
                lambda: worker.reference.reference_income_and_cos(
                    lid, year_month, months_for[lid]
                )
            ),
        )
        attached = []
        for view in views:
            ref, error = results[view.location_id]
            if ref is None:
                attached.append(replace(view, reference_error=error))
                continue
            attached.append(
                replace(
                    view,
                    reference_income_total=ref.income_total,
                    reference_cos_total=ref.cos_total,
                    reference_cos_by_category=ref.cos_by_category,
                    reference_error=None,
                    categories=distribute_by_cos_percent(
                        view.total_amount, top_level_categories(ref.cos_by_category)
                    ),
                )
            )
        return attached

    def bulk_update(
        self,
        from_year_month: str,
        to_year_month: str,
        *,
        budget_rate: Optional[Decimal] = None,
        reference_period_months: Optional[int] = None,
    ) -> Iterator[dict[str, object]]:
        """Recompute every budget in the month range, yielding progress events."""
        year_months = list_year_months_in_range(from_year_month, to_year_month)
        if not year_months:
            raise ValueError("Invalid range: from must be before or equal to to")
        config = self.settings_service.config()
        return self._bulk_events(
            year_months, config, budget_rate, reference_period_months
        )

    def _bulk_events(
        self,
        year_months: list[str],
        config: BudgetConfig,
        budget_rate: Optional[Decimal],
        reference_period_months: Optional[int],
    ) -> Iterator[dict[str, object]]:
        updated = 0
        try:
            for year_month in year_months:
                for view in self.get_budgets_by_month(year_month):
                    rate = budget_rate
                    if rate is None:
                        rate = view.budget_rate_used
                    if rate is None:
                        rate = config.rate
                    period = reference_period_months
                    if period is None:
                        period = (
                            view.reference_period_months_used
                            or config.reference_period_months
                        )
                    self.ensure_budget_for_month(
                        view.location_id,
                        year_month,
                        budget_rate=rate,
                        reference_period_months=period,
                    )
                    updated += 1
                    yield {
                        "type": "progress",
                        "yearMonth": year_month,
                        "locationCode": view.location_code,
                        "locationName": view.location_name,
                        "updated": updated,
                    }
            yield {"type": "done", "updated": updated}
        except (AppError, ValueError) as exc:
            logger.exception("bulk_update_failed: updated=%s", updated)
            yield {"type": "error", "error": str(exc), "updated": updated}
