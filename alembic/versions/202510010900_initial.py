"""initial schema

Revision ID: 202510010900
Revises:
Create Date: 2025-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "realms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("access_token", sa.Text()),
        sa.Column("refresh_token", sa.Text()),
        sa.Column("expires_at", sa.DateTime()),
        sa.Column("refresh_expires_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("external_id"),
    )

    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "realm_id",
            sa.Integer(),
            sa.ForeignKey("realms.id", ondelete="SET NULL"),
        ),
        sa.Column("class_id", sa.String(length=64)),
        *_timestamps(),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120)),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            sa.Enum("admin", "office", "manager", name="userrole"),
            nullable=False,
        ),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "budget_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("reference_period_months", sa.Integer(), nullable=False),
        sa.Column("updated_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        *_timestamps(),
        sa.CheckConstraint(
            "budget_rate >= 0 AND budget_rate <= 1", name="ck_settings_rate_range"
        ),
        sa.CheckConstraint(
            "reference_period_months > 0", name="ck_settings_reference_positive"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "location_id", sa.Integer(), sa.ForeignKey("locations.id"), nullable=False
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column(
            "total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"
        ),
        sa.Column("budget_rate_used", sa.Numeric(5, 4)),
        sa.Column("reference_period_months_used", sa.Integer()),
        sa.Column("error", sa.String(length=64)),
        *_timestamps(),
        sa.UniqueConstraint(
            "location_id", "year_month", name="uq_budget_location_month"
        ),
        sa.CheckConstraint("total_amount >= 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budgets_year_month", "budgets", ["year_month"])


def downgrade():
    op.drop_index("ix_budgets_year_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("budget_settings")
    op.drop_table("users")
    op.drop_table("locations")
    op.drop_table("realms")
