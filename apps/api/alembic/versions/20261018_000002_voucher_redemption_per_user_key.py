"""add per_user_key to voucher_redemptions

Revision ID: 20261018_000002
Revises: 20261018_000001
Create Date: 2026-10-18 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000002"
down_revision: Union[str, None] = "20261018_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("voucher_redemptions", sa.Column("per_user_key", sa.String(), nullable=True))
    op.execute(
        """
        UPDATE voucher_redemptions
        SET per_user_key = user_id
        WHERE voucher_id IN (
            SELECT id FROM vouchers WHERE allow_multiple_use_per_user = false
        )
        """
    )
    op.create_index(
        "uq_voucher_redemptions_voucher_per_user",
        "voucher_redemptions",
        ["voucher_id", "per_user_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_voucher_redemptions_voucher_per_user", table_name="voucher_redemptions")
    op.drop_column("voucher_redemptions", "per_user_key")
