"""Initial ledger schema"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f9a6c1d2e4b'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=80), nullable=False),
        sa.Column('full_name', sa.String(length=150), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('withdrawal_phone', sa.String(length=20), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('referral_code', sa.String(length=20), nullable=False),
        sa.Column('referrer_id', sa.Integer(), nullable=True),
        sa.Column('is_activated', sa.Boolean(), nullable=False),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['referrer_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('referral_code'),
    )
    op.create_index('idx_user_referral_code', 'users', ['referral_code'])
    op.create_index('idx_user_referrer', 'users', ['referrer_id'])

    op.create_table(
        'earnings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='chk_earning_amount_positive'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_earning_user_source', 'earnings', ['user_id', 'source'])
    op.create_index('idx_earning_user_created', 'earnings', ['user_id', 'created_at'])

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('fee', sa.Integer(), nullable=False),
        sa.Column('net_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=True),
        sa.Column('conversation_id', sa.String(length=100), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='chk_withdrawal_amount_positive'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id'),
    )
    op.create_index('idx_withdrawal_user_source_status', 'withdrawals', ['user_id', 'source', 'status'])

    op.create_table(
        'referral_edges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('referrer_id', sa.Integer(), nullable=False),
        sa.Column('referred_id', sa.Integer(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('level IN (1, 2)', name='chk_referral_level'),
        sa.ForeignKeyConstraint(['referrer_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['referred_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referrer_id', 'referred_id', 'level', name='uq_referral_edge'),
    )
    op.create_index('idx_referral_referrer_level', 'referral_edges', ['referrer_id', 'level', 'is_active'])

    op.create_table(
        'available_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('duration', sa.String(length=50), nullable=False),
        sa.Column('reward', sa.Integer(), nullable=False),
        sa.Column('video_url', sa.String(length=500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('available_task_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('reward', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['available_task_id'], ['available_tasks.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_task_user_type_completed', 'tasks', ['user_id', 'type', 'completed_at'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('checkout_request_id', sa.String(length=100), nullable=False),
        sa.Column('merchant_request_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=True),
        sa.Column('mpesa_receipt_number', sa.String(length=50), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_desc', sa.String(length=255), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_request_id'),
        sa.UniqueConstraint('merchant_request_id'),
    )
    op.create_index('idx_payment_status_created', 'payment_transactions', ['status', 'created_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('reference', sa.String(length=120), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_events_reference', 'webhook_events', ['reference'])


def downgrade():
    op.drop_index('ix_webhook_events_reference', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('idx_payment_status_created', table_name='payment_transactions')
    op.drop_table('payment_transactions')
    op.drop_index('idx_task_user_type_completed', table_name='tasks')
    op.drop_table('tasks')
    op.drop_table('available_tasks')
    op.drop_index('idx_referral_referrer_level', table_name='referral_edges')
    op.drop_table('referral_edges')
    op.drop_index('idx_withdrawal_user_source_status', table_name='withdrawals')
    op.drop_table('withdrawals')
    op.drop_index('idx_earning_user_created', table_name='earnings')
    op.drop_index('idx_earning_user_source', table_name='earnings')
    op.drop_table('earnings')
    op.drop_index('idx_user_referrer', table_name='users')
    op.drop_index('idx_user_referral_code', table_name='users')
    op.drop_table('users')
