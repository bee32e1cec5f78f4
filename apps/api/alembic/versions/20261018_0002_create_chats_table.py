"""create chats table

Revision ID: 20261018_0002
Revises: 20261018_0001
Create Date: 2026-10-18 09:05:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0002"
down_revision: Union[str, Sequence[str], None] = "20261018_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "chats",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column(
            "book_id",
            sa.String(length=64),
            sa.ForeignKey("books.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_chats_book_id", "chats", ["book_id"])
    op.create_index("ix_chats_book_id_created_at", "chats", ["book_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_chats_book_id_created_at", table_name="chats")
    op.drop_index("ix_chats_book_id", table_name="chats")
    op.drop_table("chats")
