"""Initial schema: projects, file versions, chunks, runs, locks and webhook queue

Revision ID: 001_initial
Revises: 
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 768


def upgrade() -> None:
    # Create extensions
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Create projects table
    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('repo_owner', sa.String(length=255), nullable=False),
        sa.Column('repo_name', sa.String(length=255), nullable=False),
        sa.Column('repo_url', sa.String(length=500), nullable=False, unique=True),
        sa.Column('default_branch', sa.String(length=100), server_default='main'),
        sa.Column('webhook_id', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # Create repo_files table (one row per path per content version)
    op.create_table(
        'repo_files',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('path', sa.String(length=1000), nullable=False),
        sa.Column('sha', sa.String(length=64), nullable=False),
        sa.Column('size_bytes', sa.Integer(), server_default='0'),
        sa.Column('bucket_path', sa.String(length=1200), nullable=True),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        'uq_repo_files_current_path', 'repo_files', ['project_id', 'path'],
        unique=True, postgresql_where=sa.text('is_current'),
    )
    op.create_index('idx_repo_files_project_path', 'repo_files', ['project_id', 'path'])

    # Create repo_file_chunks table
    op.create_table(
        'repo_file_chunks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('repo_file_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('repo_files.id', ondelete='CASCADE'), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSIONS), nullable=False),
        sa.Column('embedding_model', sa.String(length=100), nullable=False),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('invalidated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('repo_file_id', 'chunk_index', name='uq_chunks_file_index'),
    )
    op.create_index('idx_chunks_current', 'repo_file_chunks', ['repo_file_id', 'is_current'])
    op.create_index(
        'idx_chunks_invalidated', 'repo_file_chunks', ['invalidated_at'],
        postgresql_where=sa.text('NOT is_current'),
    )
    op.create_index(
        'idx_chunks_embedding', 'repo_file_chunks', ['embedding'],
        postgresql_using='hnsw', postgresql_ops={'embedding': 'vector_cosine_ops'},
    )

    # Create ingestion_runs table
    op.create_table(
        'ingestion_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('phase', sa.String(length=20), server_default='indexing'),
        sa.Column('status', sa.String(length=20), server_default='pending'),
        sa.Column('trigger', sa.String(length=20), server_default='import'),
        sa.Column('error', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_check_constraint('ck_runs_phase', 'ingestion_runs', "phase IN ('indexing', 'embedding', 'review', 'done', 'failed')")
    op.create_check_constraint('ck_runs_status', 'ingestion_runs', "status IN ('pending', 'running', 'completed', 'failed')")
    op.create_index('idx_runs_project_created', 'ingestion_runs', ['project_id', 'created_at'])
    op.create_index('idx_runs_status', 'ingestion_runs', ['status', 'created_at'])

    # Create scan_progress table
    op.create_table(
        'scan_progress',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('ingestion_runs.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('files_total', sa.Integer(), server_default='0'),
        sa.Column('files_indexed', sa.Integer(), server_default='0'),
        sa.Column('chunks_total', sa.Integer(), server_default='0'),
        sa.Column('review_done', sa.Integer(), server_default='0'),
        sa.Column('review_total', sa.Integer(), server_default='0'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # Create job_locks table
    op.create_table(
        'job_locks',
        sa.Column('job_name', sa.String(length=255), primary_key=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # Create webhook_jobs table
    op.create_table(
        'webhook_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('delivery_id', sa.String(length=100), nullable=False, unique=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='pending'),
        sa.Column('retry_count', sa.Integer(), server_default='0'),
        sa.Column('max_retries', sa.Integer(), server_default='3'),
        sa.Column('last_error', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_check_constraint('ck_webhook_jobs_status', 'webhook_jobs', "status IN ('pending', 'running', 'done', 'error')")
    op.create_index('idx_webhook_jobs_status_created', 'webhook_jobs', ['status', 'created_at'])

    # Create webhook_deliveries table
    op.create_table(
        'webhook_deliveries',
        sa.Column('delivery_id', sa.String(length=100), primary_key=True),
        sa.Column('event', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='processing'),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('error', postgresql.JSONB(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )

    # Create commit_history table
    op.create_table(
        'commit_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sha', sa.String(length=64), nullable=False),
        sa.Column('message', sa.Text(), server_default=''),
        sa.Column('author_name', sa.String(length=255), nullable=True),
        sa.Column('author_email', sa.String(length=255), nullable=True),
        sa.Column('author_login', sa.String(length=255), nullable=True),
        sa.Column('committed_at', sa.DateTime(), nullable=True),
        sa.Column('url', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('project_id', 'sha', name='uq_commit_project_sha'),
    )
    op.create_index('idx_commits_project_date', 'commit_history', ['project_id', 'committed_at'])

    # Create project_analysis table
    op.create_table(
        'project_analysis',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('uuid_generate_v4()')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('idea_review', sa.Text(), nullable=True),
        sa.Column('tech_review', sa.Text(), nullable=True),
        sa.Column('patterns_review', sa.Text(), nullable=True),
        sa.Column('overview', sa.Text(), nullable=True),
        sa.Column('latest_release_note', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('project_analysis')
    op.drop_table('commit_history')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhook_jobs')
    op.drop_table('job_locks')
    op.drop_table('scan_progress')
    op.drop_table('ingestion_runs')
    op.drop_table('repo_file_chunks')
    op.drop_table('repo_files')
    op.drop_table('projects')
    op.execute('DROP EXTENSION IF EXISTS "uuid-ossp"')
    op.execute('DROP EXTENSION IF EXISTS vector')
