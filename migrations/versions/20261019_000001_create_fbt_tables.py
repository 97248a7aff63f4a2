"""Create FBT engine and host order/catalog tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None

BigIntPK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("orders"):
        op.create_table(
            "orders",
            sa.Column("id", BigIntPK, primary_key=True, autoincrement=True),
            sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_orders_status_id", "orders", ["status", "id"])

    if not inspector.has_table("order_lines"):
        op.create_table(
            "order_lines",
            sa.Column("id", BigIntPK, primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.BigInteger(), nullable=True),
            sa.Column("variation_id", sa.BigInteger(), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        )
        op.create_index("ix_order_lines_order", "order_lines", ["order_id"])

    if not inspector.has_table("products"):
        op.create_table(
            "products",
            sa.Column("product_id", sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column("parent_id", sa.BigInteger(), nullable=True),
            sa.Column("name", sa.Text(), nullable=True),
            sa.Column("in_stock", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("purchasable", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if not inspector.has_table("fbt_relationships"):
        op.create_table(
            "fbt_relationships",
            sa.Column("id", BigIntPK, primary_key=True, autoincrement=True),
            sa.Column("product_id", sa.BigInteger(), nullable=False),
            sa.Column("related_product_id", sa.BigInteger(), nullable=False),
            sa.Column("co_purchase_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("product_id", "related_product_id", name="uq_fbt_relationships_pair"),
            sa.CheckConstraint("co_purchase_count >= 1", name="ck_fbt_relationships_count"),
            sa.CheckConstraint("product_id <> related_product_id", name="ck_fbt_relationships_distinct"),
        )
        op.create_index(
            "ix_fbt_relationships_product_count",
            "fbt_relationships",
            ["product_id", "co_purchase_count"],
        )
        op.create_index("ix_fbt_relationships_related", "fbt_relationships", ["related_product_id"])
        op.create_index("ix_fbt_relationships_updated_at", "fbt_relationships", ["updated_at"])

    if not inspector.has_table("fbt_product_stats"):
        op.create_table(
            "fbt_product_stats",
            sa.Column("product_id", sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("order_count >= 0", name="ck_fbt_product_stats_count"),
        )

    if not inspector.has_table("order_markers"):
        op.create_table(
            "order_markers",
            sa.Column("order_id", sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column("marker", sa.String(64), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_order_markers_marker_order", "order_markers", ["marker", "order_id"])

    if not inspector.has_table("fbt_job_state"):
        op.create_table(
            "fbt_job_state",
            sa.Column("job_name", sa.String(64), primary_key=True),
            sa.Column("state", sa.Text(), nullable=False, server_default="not_started"),
            sa.Column("last_processed_id", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("remaining", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint(
                "state IN ('not_started','running','completed')",
                name="ck_fbt_job_state_state",
            ),
        )

    if not inspector.has_table("fbt_cache_entries"):
        op.create_table(
            "fbt_cache_entries",
            sa.Column("key", sa.String(), primary_key=True),
            sa.Column("payload", sa.Text(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )


def downgrade() -> None:
    for table in (
        "fbt_cache_entries",
        "fbt_job_state",
        "order_markers",
        "fbt_product_stats",
        "fbt_relationships",
        "products",
        "order_lines",
        "orders",
    ):
        op.drop_table(table)
