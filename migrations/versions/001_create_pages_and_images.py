"""create pages and images tables

Adds the pages table (one row per normalized page URL, upserted on url)
and the images table holding page/image associations. An image URL is
uploaded once and may be associated with many pages, but only once per
page.

See also: docsite_ingest/entities/page.py, docsite_ingest/entities/image.py

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create pages and images with their indexes.

    - pages.url is unique; re-scrapes overwrite title, content, scraped_at
    - images.page_id cascades on page delete
    - (page_id, original_url) is unique so repeated commits insert nothing
    """
    op.create_table(
        'pages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('url', sa.String(length=2048), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('scraped_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_pages_url'), 'pages', ['url'], unique=True)

    op.create_table(
        'images',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('page_id', sa.Integer(), nullable=False),
        sa.Column('original_url', sa.String(length=2048), nullable=False),
        sa.Column('storage_path', sa.String(length=512), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['page_id'], ['pages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('page_id', 'original_url', name='uq_images_page_original_url')
    )
    op.create_index(op.f('ix_images_page_id'), 'images', ['page_id'])
    op.create_index(op.f('ix_images_original_url'), 'images', ['original_url'])


def downgrade() -> None:
    """Drop images first (it references pages), then pages."""
    op.drop_index(op.f('ix_images_original_url'), table_name='images')
    op.drop_index(op.f('ix_images_page_id'), table_name='images')
    op.drop_table('images')
    op.drop_index(op.f('ix_pages_url'), table_name='pages')
    op.drop_table('pages')
