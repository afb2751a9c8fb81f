"""Relational dataset catalog

Revision ID: 001_dataset_catalog
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_dataset_catalog'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JsonBlob = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create the catalog table for relational-backed datasets."""
    op.create_table(
        'dataset_catalog',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dataset_id', sa.String(length=255), nullable=False),
        sa.Column('original_name', sa.String(length=500), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('mime_type', sa.String(length=100), nullable=False),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('storage', sa.String(length=50), nullable=False),
        sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', JsonBlob, nullable=True),
        sa.Column('dataset_schema', JsonBlob, nullable=True),
        sa.Column('tags', JsonBlob, nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('dataset_id', name='uq_dataset_catalog_dataset_id'),
    )

    op.create_index('idx_dataset_catalog_dataset_id', 'dataset_catalog', ['dataset_id'])
    op.create_index('idx_dataset_catalog_category', 'dataset_catalog', ['category'])
    op.create_index('idx_dataset_catalog_storage', 'dataset_catalog', ['storage'])
    op.create_index('idx_dataset_catalog_created_at', 'dataset_catalog', ['created_at'])
    op.create_index('idx_dataset_catalog_mime_type', 'dataset_catalog', ['mime_type'])


def downgrade() -> None:
    """Drop the catalog table. Per-dataset data tables are left alone."""
    op.drop_index('idx_dataset_catalog_mime_type', table_name='dataset_catalog')
    op.drop_index('idx_dataset_catalog_created_at', table_name='dataset_catalog')
    op.drop_index('idx_dataset_catalog_storage', table_name='dataset_catalog')
    op.drop_index('idx_dataset_catalog_category', table_name='dataset_catalog')
    op.drop_index('idx_dataset_catalog_dataset_id', table_name='dataset_catalog')
    op.drop_table('dataset_catalog')
