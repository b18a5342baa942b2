"""Add claimed store subscription to provisional records

Revision ID: 8d2e4b6c1a57
Revises: 3f9c1e7a2b10
Create Date: 2026-10-17 12:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8d2e4b6c1a57"
down_revision: Union[str, None] = "3f9c1e7a2b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("subscription_records") as batch_op:
        batch_op.add_column(sa.Column("claimed_ref", sa.String(length=255), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("subscription_records") as batch_op:
        batch_op.drop_column("claimed_ref")
