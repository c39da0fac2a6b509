"""Skip-trace engine schema: cache, ledger, runs, run items, activity, subjects

Revision ID: 3f9a1c7e5d20
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e5d20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # -- Cache Store --
    op.create_table(
        'cache_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=False),
        sa.Column('payload_hash', sa.Text(), nullable=False),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('parsed_contacts_json', sa.JSON(), nullable=False),
        sa.Column('ttl_expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('provider', 'idempotency_key', name='uq_cache_entries_provider_key'),
    )

    # -- Provider Call Ledger (append-only) --
    op.create_table(
        'provider_calls',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=True),
        sa.Column('subject_id', sa.Text(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('response_ms', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.Text(), nullable=True),
        sa.Column('run_id', sa.Text(), nullable=True),
        sa.Column('request_json', sa.Text(), nullable=True),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('payload_hash', sa.Text(), nullable=True),
        sa.Column('error_text', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_provider_calls_created_at', 'provider_calls', ['created_at'])
    op.create_index('ix_provider_calls_subject_id', 'provider_calls', ['subject_id'])
    op.create_index('ix_provider_calls_run_id', 'provider_calls', ['run_id'])
    op.create_index('ix_provider_calls_provider_key', 'provider_calls', ['provider', 'idempotency_key'])

    # -- Runs --
    op.create_table(
        'runs',
        sa.Column('run_id', sa.Text(), primary_key=True),
        sa.Column('source_label', sa.Text(), nullable=False, server_default=''),
        sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('queued', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('in_flight', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('done', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('soft_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.CheckConstraint('queued + in_flight + done + failed = total', name='ck_runs_counter_sum'),
        sa.CheckConstraint(
            'queued >= 0 AND in_flight >= 0 AND done >= 0 AND failed >= 0',
            name='ck_runs_counters_nonnegative',
        ),
    )

    # -- Run items --
    op.create_table(
        'run_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Text(), sa.ForeignKey('runs.run_id'), nullable=False),
        sa.Column('subject_id', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='queued'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('idempotency_key', sa.Text(), nullable=True),
        sa.Column('normalized_address', sa.Text(), nullable=True),
        sa.Column('normalized_person', sa.Text(), nullable=True),
        sa.Column('input_json', sa.JSON(), nullable=True),
        sa.Column('result_json', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('queued', 'in_flight', 'done', 'failed')",
            name='ck_run_items_status',
        ),
    )
    op.create_index('ix_run_items_run_id', 'run_items', ['run_id'])
    op.create_index('ix_run_items_run_id_status', 'run_items', ['run_id', 'status'])

    # -- Activity log --
    op.create_table(
        'lookup_activity',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.Text(), nullable=True),
        sa.Column('run_id', sa.Text(), nullable=True),
        sa.Column('run_item_id', sa.Integer(), nullable=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=True),
        sa.Column('outcome', sa.Text(), nullable=False),
        sa.Column('cached', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_lookup_activity_subject_id', 'lookup_activity', ['subject_id'])
    op.create_index('ix_lookup_activity_run_id', 'lookup_activity', ['run_id'])

    # -- Subjects (find-or-create boundary) --
    op.create_table(
        'subjects',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dedupe_key', sa.Text(), nullable=False, unique=True),
        sa.Column('normalized_address', sa.Text(), nullable=False),
        sa.Column('normalized_person', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('subjects')
    op.drop_index('ix_lookup_activity_run_id', table_name='lookup_activity')
    op.drop_index('ix_lookup_activity_subject_id', table_name='lookup_activity')
    op.drop_table('lookup_activity')
    op.drop_index('ix_run_items_run_id_status', table_name='run_items')
    op.drop_index('ix_run_items_run_id', table_name='run_items')
    op.drop_table('run_items')
    op.drop_table('runs')
    op.drop_index('ix_provider_calls_provider_key', table_name='provider_calls')
    op.drop_index('ix_provider_calls_run_id', table_name='provider_calls')
    op.drop_index('ix_provider_calls_subject_id', table_name='provider_calls')
    op.drop_index('ix_provider_calls_created_at', table_name='provider_calls')
    op.drop_table('provider_calls')
    op.drop_table('cache_entries')
