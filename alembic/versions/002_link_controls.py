"""Link password, upload caps and usage counters

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('links', sa.Column('password_hash', sa.String(length=128), nullable=True))
    op.add_column('links', sa.Column('max_files', sa.Integer(), nullable=True))
    op.add_column('links', sa.Column('max_file_size_bytes', sa.BigInteger(), nullable=True))
    op.add_column('links', sa.Column('total_uploads', sa.Integer(), nullable=False, server_default='0'))
    op.add_column('links', sa.Column('total_files', sa.Integer(), nullable=False, server_default='0'))
    op.add_column('links', sa.Column('total_size_bytes', sa.BigInteger(), nullable=False, server_default='0'))
    op.add_column('links', sa.Column('last_upload_at', sa.DateTime(), nullable=True))

    # Backfill counters from files already attributed to each link
    op.execute(
        "UPDATE links SET "
        "total_uploads = (SELECT COUNT(*) FROM files WHERE files.link_id = links.id), "
        "total_files = (SELECT COUNT(*) FROM files WHERE files.link_id = links.id), "
        "total_size_bytes = (SELECT COALESCE(SUM(size_bytes), 0) FROM files WHERE files.link_id = links.id), "
        "last_upload_at = (SELECT MAX(uploaded_at) FROM files WHERE files.link_id = links.id)"
    )


def downgrade() -> None:
    op.drop_column('links', 'last_upload_at')
    op.drop_column('links', 'total_size_bytes')
    op.drop_column('links', 'total_files')
    op.drop_column('links', 'total_uploads')
    op.drop_column('links', 'max_file_size_bytes')
    op.drop_column('links', 'max_files')
    op.drop_column('links', 'password_hash')
