import threading
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from database import Base, build_engine
from models import Location, Realm
from quickbooks import TokenGrant


def line(name, *amounts):
    return {"ColData": [{"value": name}, *({"value": str(a)} for a in amounts)]}


def section(title, rows, total, group=None):
    node = {
        "type": "Section",
        "Header": {"ColData": [{"value": title}, {"value": ""}]},
        "Rows": {"Row": rows},
        "Summary": {"ColData": [{"value": f"Total {title}"}, {"value": str(total)}]},
    }
    if group:
        node["group"] = group
    return node


def pnl_report(income="0", cos_rows=(), cos_total=None):
    """A single-column P&L with an Income and a Cost of Goods Sold section."""
    if cos_total is None:
        cos_total = sum(float(amount) for _, amount in cos_rows)
    return {
        "Header": {"ReportName": "ProfitAndLoss"},
        "Rows": {
            "Row": [
                section("Income", [line("Sales", income)], income, group="Income"),
                section(
                    "Cost of Goods Sold",
                    [line(name, amount) for name, amount in cos_rows],
                    cos_total,
                    group="COGS",
                ),
            ]
        },
    }


class FakeQuickBooks:
    """Stands in for QuickBooksClient; reports are keyed by realm external id."""

    def __init__(self, reports=None, configured=True):
        self.reports = dict(reports or {})
        self.configured = configured
        self.calls = []
        self.refresh_calls = []
        self.refresh_result = None
        self.exchanged = []
        self.company_names = {}
        self._lock = threading.Lock()

    def authorize_url(self, state, scopes=None):
        return f"https://appcenter.example/connect?{urlencode({'state': state})}"

    def exchange_code(self, code, realm_id=None):
        self.exchanged.append((code, realm_id))
        return TokenGrant(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_in=3600,
            refresh_expires_in=8_726_400,
            realm_id=realm_id,
        )

    def fetch_company_name(self, realm_id, access_token):
        return self.company_names.get(realm_id)

    def fetch_profit_and_loss(
        self, realm_id, start_date, end_date, accounting_method, access_token, class_id=None
    ):
        with self._lock:
            self.calls.append(
                {
                    "realm_id": realm_id,
                    "start_date": start_date,
                    "end_date": end_date,
                    "access_token": access_token,
                    "class_id": class_id,
                }
            )
        outcome = self.reports.get(realm_id, pnl_report())
        if callable(outcome):
            outcome = outcome(start_date, end_date, access_token)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def refresh_tokens(self, refresh_token):
        with self._lock:
            self.refresh_calls.append(refresh_token)
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        return self.refresh_result or TokenGrant(
            access_token="access-new",
            refresh_token="refresh-new",
            expires_in=3600,
            refresh_expires_in=8_726_400,
        )


def add_location(
    session: Session,
    code: str,
    *,
    realm_external_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    class_id: Optional[str] = None,
) -> Location:
    realm = None
    if realm_external_id:
        realm = Realm(
            external_id=realm_external_id,
            name=f"Company {realm_external_id}",
            access_token=f"access-{realm_external_id}",
            refresh_token=f"refresh-{realm_external_id}",
            expires_at=expires_at or datetime.utcnow() + timedelta(hours=1),
        )
        session.add(realm)
        session.flush()
    location = Location(
        code=code,
        name=f"Location {code}",
        realm_id=realm.id if realm else None,
        class_id=class_id,
    )
    session.add(location)
    session.commit()
    session.refresh(location)
    return location


@pytest.fixture
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database so fan-out workers can each open a session."""
    engine = build_engine(f"sqlite:///{tmp_path / 'cosbudget-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
