"""create prompt library tables

Revision ID: 3c1f9a2b7d40
Revises: 
Create Date: 2026-10-19 09:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
from promptmaster.database import Base, seed_db
from promptmaster.models import user  # noqa: F401
from sqlalchemy.orm import Session


# revision identifiers, used by Alembic.
revision: str = '3c1f9a2b7d40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema by creating all tables and seeding an empty store."""
    bind = op.get_bind()
    Base.metadata.create_all(bind)
    session = Session(bind=bind)
    try:
        seed_db(session)
    finally:
        session.close()


def downgrade() -> None:
    """Downgrade schema by dropping all tables."""
    bind = op.get_bind()
    Base.metadata.drop_all(bind)
