"""user approval status and encrypted realm tokens

Revision ID: 202510150900
Revises: 202510010900
Create Date: 2025-10-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

from token_crypto import PREFIX, decrypt_token, encrypt_token


revision = "202510150900"
down_revision = "202510010900"
branch_labels = None
depends_on = None


realms = sa.table(
    "realms",
    sa.column("id", sa.Integer),
    sa.column("access_token", sa.Text),
    sa.column("refresh_token", sa.Text),
)


def _rewrite_tokens(transform):
    bind = op.get_bind()
    rows = bind.execute(
        sa.select(realms.c.id, realms.c.access_token, realms.c.refresh_token)
    ).all()
    for realm_id, access_token, refresh_token in rows:
        bind.execute(
            realms.update()
            .where(realms.c.id == realm_id)
            .values(
                access_token=transform(access_token),
                refresh_token=transform(refresh_token),
            )
        )


def _encrypt(value):
    if value is None or value.startswith(PREFIX):
        return value
    return encrypt_token(value)


def _decrypt(value):
    if value is None:
        return None
    return decrypt_token(value)


def upgrade():
    with op.batch_alter_table("users") as batch:
        batch.add_column(
            sa.Column(
                "status",
                sa.Enum("pending_approval", "active", name="userstatus"),
                nullable=False,
                server_default="active",
            )
        )
        batch.add_column(sa.Column("permitted_by_id", sa.Integer()))
        batch.add_column(sa.Column("permitted_at", sa.DateTime()))
        batch.create_foreign_key(
            "fk_users_permitted_by_id", "users", ["permitted_by_id"], ["id"]
        )
    _rewrite_tokens(_encrypt)


def downgrade():
    _rewrite_tokens(_decrypt)
    with op.batch_alter_table("users") as batch:
        batch.drop_constraint("fk_users_permitted_by_id", type_="foreignkey")
        batch.drop_column("permitted_at")
        batch.drop_column("permitted_by_id")
        batch.drop_column("status")
