"""create crm schema

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


_TAG_LINKS = (
    ("crm_customer_tag", "crm_customer", "customer_id"),
    ("crm_product_tag", "crm_product", "product_id"),
    ("crm_order_tag", "crm_order", "order_id"),
    ("crm_communication_tag", "crm_communication", "communication_id"),
    ("crm_task_tag", "crm_task", "task_id"),
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_crm_user_role_status", "crm_user", ["role", "status"], unique=False)

    op.create_table(
        "crm_customer",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("company", sa.String(length=100), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="regular"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_crm_customer_status_type", "crm_customer", ["status", "type"], unique=False)
    op.create_index("ix_crm_customer_created_at", "crm_customer", ["created_at"], unique=False)

    op.create_table(
        "crm_product",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_product_status_price", "crm_product", ["status", "price"], unique=False)

    op.create_table(
        "crm_tag",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "crm_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("total", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["crm_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_order_customer_id", "crm_order", ["customer_id"], unique=False)
    op.create_index("ix_crm_order_user_status", "crm_order", ["user_id", "status"], unique=False)
    op.create_index("ix_crm_order_created_at", "crm_order", ["created_at"], unique=False)

    op.create_table(
        "crm_order_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["crm_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["crm_product.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_order_item_order_id", "crm_order_item", ["order_id"], unique=False)
    op.create_index("ix_crm_order_item_product_id", "crm_order_item", ["product_id"], unique=False)

    op.create_table(
        "crm_communication",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("parent_communication_id", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["crm_customer.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["crm_user.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["parent_communication_id"], ["crm_communication.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_communication_customer_id", "crm_communication", ["customer_id"], unique=False)
    op.create_index("ix_crm_communication_user_id", "crm_communication", ["user_id"], unique=False)
    op.create_index("ix_crm_communication_created_at", "crm_communication", ["created_at"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("assigned_to_id", sa.Uuid(), nullable=False),
        sa.Column("created_by_id", sa.Uuid(), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="todo"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("related_entity_type", sa.String(length=32), nullable=True),
        sa.Column("related_entity_id", sa.Uuid(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_time_minutes", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["crm_user.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by_id"], ["crm_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_task_assigned_status", "crm_task", ["assigned_to_id", "status"], unique=False)
    op.create_index("ix_crm_task_due_date", "crm_task", ["due_date"], unique=False)
    op.create_index("ix_crm_task_related", "crm_task", ["related_entity_type", "related_entity_id"], unique=False)

    for table_name, owner_table, owner_column in _TAG_LINKS:
        op.create_table(
            table_name,
            sa.Column(owner_column, sa.Uuid(), nullable=False),
            sa.Column("tag_id", sa.Uuid(), nullable=False),
            sa.ForeignKeyConstraint([owner_column], [f"{owner_table}.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tag_id"], ["crm_tag.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint(owner_column, "tag_id"),
        )
        op.create_index(f"ix_{table_name}_tag_id", table_name, ["tag_id"], unique=False)


def downgrade() -> None:
    for table_name, _, _ in reversed(_TAG_LINKS):
        op.drop_index(f"ix_{table_name}_tag_id", table_name=table_name)
        op.drop_table(table_name)

    op.drop_index("ix_crm_task_related", table_name="crm_task")
    op.drop_index("ix_crm_task_due_date", table_name="crm_task")
    op.drop_index("ix_crm_task_assigned_status", table_name="crm_task")
    op.drop_table("crm_task")

    op.drop_index("ix_crm_communication_created_at", table_name="crm_communication")
    op.drop_index("ix_crm_communication_user_id", table_name="crm_communication")
    op.drop_index("ix_crm_communication_customer_id", table_name="crm_communication")
    op.drop_table("crm_communication")

    op.drop_index("ix_crm_order_item_product_id", table_name="crm_order_item")
    op.drop_index("ix_crm_order_item_order_id", table_name="crm_order_item")
    op.drop_table("crm_order_item")

    op.drop_index("ix_crm_order_created_at", table_name="crm_order")
    op.drop_index("ix_crm_order_user_status", table_name="crm_order")
    op.drop_index("ix_crm_order_customer_id", table_name="crm_order")
    op.drop_table("crm_order")

    op.drop_table("crm_tag")

    op.drop_index("ix_crm_product_status_price", table_name="crm_product")
    op.drop_table("crm_product")

    op.drop_index("ix_crm_customer_created_at", table_name="crm_customer")
    op.drop_index("ix_crm_customer_status_type", table_name="crm_customer")
    op.drop_table("crm_customer")

    op.drop_index("ix_crm_user_role_status", table_name="crm_user")
    op.drop_table("crm_user")
