"""create scrape_jobs table

Adds the durable job store. Each row is one job invocation moving
queued -> running -> completed | failed | cancelled, with its opaque
args/result, an append-only log and a cooperative cancel flag.

See also: docsite_ingest/entities/scrape_job.py (ScrapeJob entity)

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:01:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the scrape_jobs table with status and created_at indexes.

    The claim query orders queued rows by created_at, hence its index.
    """
    op.create_table(
        'scrape_jobs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('args', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('logs', sa.Text(), nullable=False, server_default=''),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_scrape_jobs_status'), 'scrape_jobs', ['status'])
    op.create_index(op.f('ix_scrape_jobs_created_at'), 'scrape_jobs', ['created_at'])


def downgrade() -> None:
    """Drop the scrape_jobs table and its indexes."""
    op.drop_index(op.f('ix_scrape_jobs_created_at'), table_name='scrape_jobs')
    op.drop_index(op.f('ix_scrape_jobs_status'), table_name='scrape_jobs')
    op.drop_table('scrape_jobs')
