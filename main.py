import json
import logging
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session, sessionmaker

from auth import (
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    UserService,
    active_user,
    can_approve,
    current_user,
    ensure_location_access,
    is_privileged,
    issue_session,
    optional_user,
    require_privileged,
)
from categories import group_categories_with_subs
from csrf import (
    generate_csrf_token,
    read_oauth_state,
    sign_oauth_state,
    validate_csrf_token,
)
from database import get_db
from errors import GENERIC_ERROR_MESSAGE, AppError, QuickBooksNotConfigured
from models import User, UserRole, UserStatus
from periods import (
    DateRange,
    current_year_month,
    is_valid_year_month,
    list_year_months_in_range,
    next_year_month,
    prev_year_month,
)
from quickbooks import QuickBooksClient
from scheduler import SchedulerManager
from schemas import (
    BudgetBulkPatchIn,
    BudgetPatchIn,
    BudgetSettingsIn,
    OnboardingApproveIn,
    OnboardingIn,
    PnlQuery,
    RegisterIn,
    TokenRefreshIn,
)
from services import (
    BudgetService,
    BudgetSettingsService,
    BudgetView,
    LocationService,
    RealmService,
    ReferenceData,
    ReferenceDataService,
)
from pnl_parser import CategoryAmount
from tokens import TokenManager

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

app = FastAPI(title="COS Budget")
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


def format_money(value: Optional[Decimal], options: Optional[dict] = None) -> str:
    if value is None:
        return "–"
    include_cents = True
    if isinstance(options, dict):
        include_cents = options.get("include_cents", True)
    if include_cents:
        return f"${Decimal(value):,.2f}"
    return f"${Decimal(value):,.0f}"


def format_percent(value: Optional[float]) -> str:
    return "–" if value is None else f"{value:.1f}%"


templates.env.filters["money"] = format_money
templates.env.filters["percent"] = format_percent
templates.env.globals["csrf_token"] = generate_csrf_token
templates.env.globals["group_categories"] = group_categories_with_subs


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path


def get_qb_client() -> QuickBooksClient:
    return QuickBooksClient()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning("app_error: path=%s code=%s error=%s", request.url.path, exc.code, exc)
    return JSONResponse(
        status_code=502,
        content={"error": exc.message, "code": exc.code, "details": exc.details},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error: path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})


def render(request: Request, template: str, context: dict[str, object]) -> HTMLResponse:
    ctx = {"request": request}
    ctx.update(context)
    return templates.TemplateResponse(template, ctx)


def year_month_or_current(value: Optional[str]) -> str:
    return value if is_valid_year_month(value) else current_year_month()


def safe_return_path(value: Optional[str], default: str = "/budget") -> str:
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return default


def budget_service(db: Session, client: QuickBooksClient) -> BudgetService:
    return BudgetService(db, client)


def require_location(db: Session, location_id: int):
    try:
        return LocationService(db).get(location_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def enrich(service: BudgetService, views: list[BudgetView], year_month: str) -> list[BudgetView]:
    views = service.attach_current_month_cos(views, year_month)
    return service.attach_reference_cos(views, year_month)


# --- HTML pages -------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
def index():
    return RedirectResponse("/budget", status_code=303)


@app.get("/auth", response_class=HTMLResponse)
def login_page(request: Request, user: Optional[User] = Depends(optional_user)):
    if user is not None:
        return RedirectResponse("/budget", status_code=303)
    return render(request, "login.html", {"error": None, "email": ""})


@app.post("/auth")
async def login(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", "")):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    email = (form.get("email") or "").strip()
    user = UserService(db).authenticate(email, form.get("password") or "")
    if user is None:
        return render(
            request, "login.html", {"error": "Invalid email or password", "email": email}
        )
    response = RedirectResponse(
        safe_return_path(form.get("next")), status_code=303
    )
    response.set_cookie(
        SESSION_COOKIE,
        issue_session(user.id),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    logger.info("login: user_id=%s", user.id)
    return response


@app.post("/auth/logout")
async def logout(request: Request, user: User = Depends(current_user)):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    response = RedirectResponse("/auth", status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response


def onboarding_context(db: Session, user: User, error: Optional[str] = None) -> dict[str, object]:
    return {
        "user": user,
        "roles": [role.value for role in UserRole],
        "locations": LocationService(db).list_all(),
        "error": error,
    }


@app.get("/onboarding", response_class=HTMLResponse)
def onboarding_page(
    request: Request,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(optional_user),
):
    if user is None:
        return RedirectResponse("/auth", status_code=303)
    if user.status == UserStatus.active:
        return RedirectResponse("/budget", status_code=303)
    return render(request, "onboarding.html", onboarding_context(db, user))


@app.post("/onboarding")
async def onboarding_form(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    location_id = form.get("location_id")
    try:
        payload = OnboardingIn(
            name=form.get("name") or "",
            role=form.get("role") or UserRole.manager.value,
            location_id=int(location_id) if location_id else None,
        )
        user = UserService(db).onboard(user, payload)
    except ValueError as exc:
        return render(request, "onboarding.html", onboarding_context(db, user, str(exc)))
    target = "/budget" if user.status == UserStatus.active else "/onboarding"
    return RedirectResponse(target, status_code=303)


@app.get("/budget", response_class=HTMLResponse)
def budgets_page(
    request: Request,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(optional_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    if user is None:
        return RedirectResponse("/auth", status_code=303)
    if user.status != UserStatus.active:
        return RedirectResponse("/onboarding", status_code=303)
    requested = request.query_params.get("yearMonth")
    year_month = year_month_or_current(requested)
    if not is_privileged(user.role):
        if user.location_id is None:
            raise HTTPException(status_code=403, detail="No location assigned")
        return RedirectResponse(
            f"/budget/location/{user.location_id}?yearMonth={year_month}", status_code=303
        )
    if requested != year_month:
        return RedirectResponse(f"/budget?yearMonth={year_month}", status_code=303)

    service = budget_service(db, client)
    notice = None
    try:
        outcomes = service.ensure_budgets_for_month(year_month)
        failed = [o for o in outcomes if o.status == "failed"]
        if failed:
            notice = f"{len(failed)} location(s) could not be budgeted; see logs."
    except QuickBooksNotConfigured as exc:
        notice = exc.message
    views = service.get_budgets_by_month(year_month)
    if client.configured:
        views = enrich(service, views, year_month)
    return render(
        request,
        "budgets.html",
        {
            "user": user,
            "year_month": year_month,
            "prev_month": prev_year_month(year_month),
            "next_month": next_year_month(year_month),
            "budgets": views,
            "settings": BudgetSettingsService(db).get_or_create(),
            "notice": notice,
        },
    )


@app.get("/budget/location/{location_id}", response_class=HTMLResponse)
def location_page(
    location_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(optional_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    if user is None:
        return RedirectResponse("/auth", status_code=303)
    if user.status != UserStatus.active:
        return RedirectResponse("/onboarding", status_code=303)
    ensure_location_access(user, location_id)
    requested = request.query_params.get("yearMonth")
    year_month = year_month_or_current(requested)
    if requested != year_month:
        return RedirectResponse(
            f"/budget/location/{location_id}?yearMonth={year_month}", status_code=303
        )
    location = require_location(db, location_id)

    service = budget_service(db, client)
    error = None
    view = service.get_budget_by_location_and_month(location_id, year_month)
    if view is None:
        try:
            service.ensure_budget_for_month(location_id, year_month)
            view = service.get_budget_by_location_and_month(location_id, year_month)
        except AppError as exc:
            error = exc.message
    if view is not None and client.configured:
        view = enrich(service, [view], year_month)[0]
    return render(
        request,
        "location.html",
        {
            "user": user,
            "location": location,
            "year_month": year_month,
            "prev_month": prev_year_month(year_month),
            "next_month": next_year_month(year_month),
            "budget": view,
            "error": error,
        },
    )


@app.post("/budget/settings")
async def update_settings_form(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), user.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    rate_percent = form.get("budget_rate_percent")
    months = form.get("reference_period_months")
    try:
        payload = BudgetSettingsIn(
            budget_rate=(Decimal(rate_percent) / 100) if rate_percent else None,
            reference_period_months=int(months) if months else None,
        )
    except (ArithmeticError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    BudgetSettingsService(db).update(payload, updated_by_id=user.id)
    year_month = year_month_or_current(form.get("yearMonth"))
    return RedirectResponse(f"/budget?yearMonth={year_month}", status_code=303)


# --- JSON API ---------------------------------------------------------------


def settings_payload(db: Session) -> dict[str, object]:
    row = BudgetSettingsService(db).get_or_create()
    return {
        "budgetRate": float(row.budget_rate),
        "referencePeriodMonths": row.reference_period_months,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


@app.get("/api/budget/settings")
def get_budget_settings(
    db: Session = Depends(get_db), user: User = Depends(require_privileged)
):
    return settings_payload(db)


@app.patch("/api/budget/settings")
def patch_budget_settings(
    payload: BudgetSettingsIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
):
    BudgetSettingsService(db).update(payload, updated_by_id=user.id)
    return settings_payload(db)


@app.post("/api/budget/bulk")
def bulk_update_budgets(
    payload: BudgetBulkPatchIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
    client: QuickBooksClient = Depends(get_qb_client),
):
    if not list_year_months_in_range(payload.from_year_month, payload.to_year_month):
        raise HTTPException(
            status_code=400, detail="Invalid range: from must be before or equal to to"
        )
    # The request session is closed once the route returns; the stream owns its own.
    factory = sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False)

    def stream() -> Iterator[str]:
        with factory() as session:
            events = BudgetService(session, client).bulk_update(
                payload.from_year_month,
                payload.to_year_month,
                budget_rate=payload.budget_rate,
                reference_period_months=payload.reference_period_months,
            )
            for event in events:
                yield json.dumps(event) + "\n"

    logger.info(
        "bulk_update_started: from=%s to=%s by=%s",
        payload.from_year_month,
        payload.to_year_month,
        user.id,
    )
    return StreamingResponse(stream(), media_type="application/x-ndjson")


@app.get("/api/budget/{location_id}")
def get_budget(
    location_id: int,
    yearMonth: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(active_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    ensure_location_access(user, location_id)
    year_month = yearMonth or current_year_month()
    if not is_valid_year_month(year_month):
        raise HTTPException(status_code=400, detail="Invalid yearMonth; use YYYY-MM")
    require_location(db, location_id)
    service = budget_service(db, client)
    view = service.get_budget_by_location_and_month(location_id, year_month)
    if view is None:
        service.ensure_budget_for_month(location_id, year_month)
        view = service.get_budget_by_location_and_month(location_id, year_month)
    view = enrich(service, [view], year_month)[0]
    return view.to_dict()


@app.patch("/api/budget/{location_id}")
def patch_budget(
    location_id: int,
    payload: BudgetPatchIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
    client: QuickBooksClient = Depends(get_qb_client),
):
    year_month = payload.year_month or current_year_month()
    require_location(db, location_id)
    reference_data = None
    if payload.reference_data is not None:
        ref = payload.reference_data
        categories = [
            CategoryAmount(c.category_id, c.name, c.amount) for c in ref.cos_by_category
        ]
        reference_data = ReferenceData(
            income_total=ref.income_total,
            cos_total=(
                ref.cos_total
                if ref.cos_total is not None
                else sum((c.amount for c in categories), Decimal("0"))
            ),
            cos_by_category=categories,
        )
    service = budget_service(db, client)
    service.ensure_budget_for_month(
        location_id,
        year_month,
        budget_rate=payload.budget_rate,
        reference_period_months=payload.reference_period_months,
        reference_data=reference_data,
    )
    view = service.get_budget_by_location_and_month(location_id, year_month)
    logger.info(
        "budget_patched: location_id=%s year_month=%s by=%s", location_id, year_month, user.id
    )
    return view.to_dict()


@app.get("/api/quickbooks/auth")
def quickbooks_auth(
    locationId: Optional[int] = None,
    returnTo: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(active_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    if locationId is not None or returnTo:
        if locationId is not None:
            ensure_location_access(user, locationId)
        state = sign_oauth_state(user.id, locationId, safe_return_path(returnTo))
        return RedirectResponse(client.authorize_url(state), status_code=302)

    locations = LocationService(db).list_all()
    if not is_privileged(user.role):
        locations = [loc for loc in locations if loc.id == user.location_id]
    return {
        "configured": client.configured,
        "connections": RealmService(db).connections(locations),
    }


@app.get("/api/quickbooks/auth/callback")
def quickbooks_callback(
    code: Optional[str] = None,
    realmId: Optional[str] = None,
    state: str = "",
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(active_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    decoded = read_oauth_state(state, user.id)
    if decoded is None:
        logger.warning("quickbooks_callback_bad_state: user_id=%s", user.id)
        return RedirectResponse("/budget?qbError=invalid_state", status_code=303)
    location_id, return_to = decoded
    target = safe_return_path(return_to)
    if error or not code or not realmId:
        logger.warning("quickbooks_callback_rejected: error=%s", error)
        return RedirectResponse(
            f"{target}{'&' if '?' in target else '?'}qbError={quote(error or 'missing_code')}",
            status_code=303,
        )
    grant = client.exchange_code(code, realm_id=realmId)
    name = client.fetch_company_name(realmId, grant.access_token) or realmId
    realm = RealmService(db).upsert_from_grant(realmId, name, grant)
    if location_id is not None:
        ensure_location_access(user, location_id)
        LocationService(db).link_realm(location_id, realm)
    logger.info("quickbooks_connected: realm=%s by=%s", realm.id, user.id)
    return RedirectResponse(target, status_code=303)


@app.post("/api/quickbooks/auth/refresh")
def quickbooks_refresh(
    payload: TokenRefreshIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
    client: QuickBooksClient = Depends(get_qb_client),
):
    realms = RealmService(db)
    if payload.realm_id is not None:
        realm = realms.get(payload.realm_id)
    elif payload.location_id is not None:
        realm = realms.for_location(payload.location_id)
        if realm is None:
            raise ValueError("Location has no QuickBooks realm")
    else:
        raise ValueError("realmId or locationId is required")
    if not client.configured:
        raise QuickBooksNotConfigured()
    realm = TokenManager(db, client).refresh_realm(realm)
    return {
        "realmId": realm.id,
        "expiresAt": realm.expires_at.isoformat() if realm.expires_at else None,
    }


@app.get("/api/quickbooks/pnl")
def quickbooks_pnl(
    locationId: int,
    startDate: str,
    endDate: str,
    accountingMethod: str = "Accrual",
    db: Session = Depends(get_db),
    user: User = Depends(active_user),
    client: QuickBooksClient = Depends(get_qb_client),
):
    query = PnlQuery(
        location_id=locationId,
        start_date=startDate,
        end_date=endDate,
        accounting_method=accountingMethod,
    )
    ensure_location_access(user, query.location_id)
    date_range = DateRange(
        date.fromisoformat(query.start_date), date.fromisoformat(query.end_date)
    )
    if date_range.start > date_range.end:
        raise ValueError("startDate must be on or before endDate")
    return ReferenceDataService(db, client).profit_and_loss(
        query.location_id, date_range, query.accounting_method
    )


def user_payload(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "status": user.status.value,
        "locationId": user.location_id,
        "permittedById": user.permitted_by_id,
        "permittedAt": user.permitted_at.isoformat() if user.permitted_at else None,
    }


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    user = UserService(db).register(payload)
    response = JSONResponse(status_code=201, content=user_payload(user))
    response.set_cookie(
        SESSION_COOKIE,
        issue_session(user.id),
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/api/onboarding")
def submit_onboarding(
    payload: OnboardingIn,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    return user_payload(UserService(db).onboard(user, payload))


@app.get("/api/onboarding/pending")
def pending_users(db: Session = Depends(get_db), user: User = Depends(require_privileged)):
    return [user_payload(u) for u in UserService(db).list_pending()]


@app.post("/api/onboarding/approve")
def approve_user(
    payload: OnboardingApproveIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_privileged),
):
    users = UserService(db)
    target = users.get(payload.user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not can_approve(user, target):
        raise HTTPException(status_code=403, detail="Office users can only approve managers")
    return user_payload(users.approve(user, target))


@app.get("/api/realms")
def list_realms(db: Session = Depends(get_db), user: User = Depends(require_privileged)):
    return [
        {
            "id": realm.id,
            "qbRealmId": realm.external_id,
            "name": realm.name,
            "locations": [loc.code for loc in realm.locations],
            "expiresAt": realm.expires_at.isoformat() if realm.expires_at else None,
        }
        for realm in RealmService(db).list_all()
    ]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
