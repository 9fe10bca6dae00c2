"""Members, member packages, package history and balance ledger

Revision ID: 20261001_member_packages
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_member_packages"
down_revision = None
branch_labels = None
depends_on = None

OPEN_STATUS_CLAUSE = "status IN ('active', 'deactivated')"


def upgrade():
    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_type", sa.String(16), nullable=False),
        sa.Column("natural_id", sa.String(64), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("prefers_breakfast", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("prefers_lunch", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("prefers_dinner", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("member_type IN ('student', 'faculty', 'staff')", name="ck_members_member_type_valid"),
        sa.PrimaryKeyConstraint("id", name="pk_members"),
        sa.UniqueConstraint("member_type", "natural_id", name="uq_members_type_natural_id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("members", schema=None) as batch_op:
        batch_op.create_index("ix_members_member_type", ["member_type"], unique=False)

    op.create_table(
        "member_packages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("member_type", sa.String(16), nullable=False),
        sa.Column("package_type", sa.String(32), nullable=False),
        sa.Column("breakfast_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("lunch_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("dinner_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_breakfast", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_lunch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_dinner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_breakfast", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_lunch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_dinner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("disabled_meals", sa.JSON(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("breakfast_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lunch_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("dinner_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("deactivation_reason", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("carried_over_from_package_id", sa.Integer(), nullable=True),
        sa.Column("carried_over_breakfast", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("carried_over_lunch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("carried_over_dinner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("consumed_breakfast <= total_breakfast", name="ck_member_packages_breakfast_within_total"),
        sa.CheckConstraint("consumed_lunch <= total_lunch", name="ck_member_packages_lunch_within_total"),
        sa.CheckConstraint("consumed_dinner <= total_dinner", name="ck_member_packages_dinner_within_total"),
        sa.CheckConstraint("balance_cents >= 0", name="ck_member_packages_balance_non_negative"),
        sa.CheckConstraint(
            "package_type IN ('full_time', 'partial_full_time', 'partial', 'daily_basis')",
            name="ck_member_packages_package_type_valid",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'expired', 'renewed', 'deactivated')",
            name="ck_member_packages_status_valid",
        ),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], name="fk_member_packages_member_id_members"),
        sa.ForeignKeyConstraint(
            ["carried_over_from_package_id"],
            ["member_packages.id"],
            name="fk_member_packages_carried_over_from_package_id_member_packages",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_member_packages"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("member_packages", schema=None) as batch_op:
        batch_op.create_index("ix_member_packages_member_id", ["member_id"], unique=False)
        batch_op.create_index("ix_member_packages_package_type", ["package_type"], unique=False)
        batch_op.create_index("ix_member_packages_status", ["status"], unique=False)
        batch_op.create_index(
            "ix_member_packages_carried_over_from_package_id", ["carried_over_from_package_id"], unique=False
        )
        batch_op.create_index("ix_member_packages_member", ["member_id", "member_type", "status"], unique=False)

    # One open (active or deactivated) package per member
    op.create_index(
        "uq_member_packages_open_per_member",
        "member_packages",
        ["member_id", "member_type"],
        unique=True,
        sqlite_where=sa.text(OPEN_STATUS_CLAUSE),
        postgresql_where=sa.text(OPEN_STATUS_CLAUSE),
    )

    op.create_table(
        "package_disabled_days",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("disabled_date", sa.Date(), nullable=False),
        sa.ForeignKeyConstraint(
            ["package_id"], ["member_packages.id"],
            name="fk_package_disabled_days_package_id_member_packages",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_package_disabled_days"),
        sa.UniqueConstraint("package_id", "disabled_date", name="uq_package_disabled_days_package_date"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("package_disabled_days", schema=None) as batch_op:
        batch_op.create_index("ix_package_disabled_days_package_id", ["package_id"], unique=False)

    op.create_table(
        "package_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("member_type", sa.String(16), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("package_type", sa.String(32), nullable=False),
        sa.Column("total_breakfast", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_lunch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_dinner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_breakfast", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_lunch", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("consumed_dinner", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("previous_package_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(
            ["package_id"], ["member_packages.id"],
            name="fk_package_history_package_id_member_packages",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_package_history"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("package_history", schema=None) as batch_op:
        batch_op.create_index("ix_package_history_package_id", ["package_id"], unique=False)
        batch_op.create_index("ix_package_history_action", ["action"], unique=False)
        batch_op.create_index("ix_package_history_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_package_history_member_created", ["member_id", "member_type", "created_at"], unique=False)

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("balance_before_cents", sa.Integer(), nullable=False),
        sa.Column("balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("meal_type", sa.String(16), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_balance_transactions_amount_positive"),
        sa.CheckConstraint(
            "transaction_type IN ('deposit', 'debit')",
            name="ck_balance_transactions_transaction_type_valid",
        ),
        sa.ForeignKeyConstraint(
            ["package_id"], ["member_packages.id"],
            name="fk_balance_transactions_package_id_member_packages",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_balance_transactions"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("balance_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_balance_transactions_package_id", ["package_id"], unique=False)
        batch_op.create_index("ix_balance_transactions_member_id", ["member_id"], unique=False)
        batch_op.create_index("ix_balance_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_balance_transactions_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_balance_txns_package_occurred", ["package_id", "occurred_at"], unique=False)

    op.create_table(
        "meal_consumptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("member_type", sa.String(16), nullable=False),
        sa.Column("meal_type", sa.String(16), nullable=False),
        sa.Column("amount_deducted_cents", sa.Integer(), nullable=True),
        sa.Column("balance_after_cents", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("consumed_on", sa.Date(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(
            ["package_id"], ["member_packages.id"],
            name="fk_meal_consumptions_package_id_member_packages",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_meal_consumptions"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("meal_consumptions", schema=None) as batch_op:
        batch_op.create_index("ix_meal_consumptions_package_id", ["package_id"], unique=False)
        batch_op.create_index("ix_meal_consumptions_member_id", ["member_id"], unique=False)
        batch_op.create_index("ix_meal_consumptions_package_consumed", ["package_id", "consumed_at"], unique=False)


def downgrade():
    op.drop_table("meal_consumptions")
    op.drop_table("balance_transactions")
    op.drop_table("package_history")
    op.drop_table("package_disabled_days")
    op.drop_index("uq_member_packages_open_per_member", table_name="member_packages")
    op.drop_table("member_packages")
    op.drop_table("members")
