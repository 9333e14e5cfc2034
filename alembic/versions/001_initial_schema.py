"""initial schema with append-only audit tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19

"""
from alembic import op

from turnflow.database import Base
import turnflow.models  # noqa: F401

revision = '001'
down_revision = None
branch_labels = None
depends_on = None

APPEND_ONLY_TABLES = ("turn_approvals", "turn_history", "lock_box_history")


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())

    # Audit rows can be inserted, never changed or removed.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_audit_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    for table in APPEND_ONLY_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_audit_mutation()
            """
        )


def downgrade() -> None:
    for table in APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_audit_mutation()")
    Base.metadata.drop_all(bind=op.get_bind())
