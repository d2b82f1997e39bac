"""Administrative commands.

Usage:
    python manage.py create-location BOS "Boston" --class-id 5000000000001
    python manage.py create-user ops@example.com --role office
    python manage.py ensure-budgets 2025-03
    python manage.py serve --port 8000
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from database import session_scope
from errors import AppError
from models import UserRole
from periods import current_year_month

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="COS budget administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    user = sub.add_parser("create-user", help="Create a login.")
    user.add_argument("email")
    user.add_argument("--name")
    user.add_argument(
        "--role", choices=[r.value for r in UserRole], default=UserRole.manager.value
    )
    user.add_argument("--location-id", type=int, help="Required for managers.")
    user.add_argument("--password", help="Prompted for when omitted.")

    location = sub.add_parser("create-location", help="Create a location.")
    location.add_argument("code")
    location.add_argument("name")
    location.add_argument("--class-id", help="QuickBooks class filter for reports.")

    ensure = sub.add_parser(
        "ensure-budgets", help="Create missing budgets and retry error stubs."
    )
    ensure.add_argument("year_month", nargs="?", help="YYYY-MM (default: this month)")

    serve = sub.add_parser("serve", help="Run the web app.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser.parse_args(argv)


def create_user(args: argparse.Namespace) -> int:
    from auth import UserService
    from schemas import UserIn

    password = args.password or getpass.getpass("Password: ")
    data = UserIn(
        email=args.email,
        password=password,
        name=args.name,
        role=UserRole(args.role),
        location_id=args.location_id,
    )
    with session_scope() as session:
        user = UserService(session).create(data)
        print(f"created user {user.id} ({user.email}, {user.role.value})")
    return 0


def create_location(args: argparse.Namespace) -> int:
    from schemas import LocationIn
    from services import LocationService

    data = LocationIn(code=args.code, name=args.name, class_id=args.class_id)
    with session_scope() as session:
        location = LocationService(session).create(data)
        print(f"created location {location.id} ({location.code})")
    return 0


def ensure_budgets(args: argparse.Namespace) -> int:
    from services import BudgetService

    year_month = args.year_month or current_year_month()
    with session_scope() as session:
        outcomes = BudgetService(session).ensure_budgets_for_month(year_month)
    for outcome in outcomes:
        line = f"location {outcome.location_id}: {outcome.status}"
        if outcome.error:
            line += f" ({outcome.error})"
        print(line)
    return 1 if any(o.status == "failed" for o in outcomes) else 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("main:app", host=args.host, port=args.port, reload=False)
    return 0


COMMANDS = {
    "create-user": create_user,
    "create-location": create_location,
    "ensure-budgets": ensure_budgets,
    "serve": serve,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = _parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except (AppError, ValidationError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
