"""affiliate reapply cooldown and code regeneration

Revision ID: 9c3d5e7f2a11
Revises: 4b1e9c2a7f10
Create Date: 2026-10-17 16:40:05.118342

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9c3d5e7f2a11"
down_revision: Union[str, Sequence[str], None] = "4b1e9c2a7f10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # nuove colonne nullable: le righe esistenti non hanno cooldown attivi
    op.add_column(
        "affiliates",
        sa.Column("next_allowed_application_date", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column("affiliates", sa.Column("code_regenerated_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("affiliates", "code_regenerated_at")
    op.drop_column("affiliates", "next_allowed_application_date")
