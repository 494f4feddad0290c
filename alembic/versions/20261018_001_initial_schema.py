"""Initial schema - event ingestion, Meta snapshots and ads agent tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Creates every table the application models define. Later changes get
their own revisions.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _attribution_columns():
    return [
        sa.Column('utm_source', sa.String(200), nullable=True),
        sa.Column('utm_medium', sa.String(200), nullable=True),
        sa.Column('utm_campaign', sa.String(200), nullable=True),
        sa.Column('utm_content', sa.String(200), nullable=True),
        sa.Column('utm_term', sa.String(200), nullable=True),
        sa.Column('referrer', sa.Text, nullable=True),
    ]


def upgrade() -> None:
    # Clients
    op.create_table(
        'clients',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Data source connections
    op.create_table(
        'data_source_connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), index=True, nullable=False),
        sa.Column('type', sa.String(30), server_default='wordpress'),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('connection_id', sa.String(64), unique=True, nullable=False),
        sa.Column('connection_secret', sa.String(128), nullable=False),
        sa.Column('previous_secret', sa.String(128), nullable=True),
        sa.Column('secret_rotated_at', sa.DateTime, nullable=True),
        sa.Column('status', sa.String(20), server_default='active'),
        sa.Column('webhook_url', sa.String(500), nullable=True),
        sa.Column('last_seen_at', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('last_error_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Raw webhook events
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('data_source_connections.id'), nullable=False),
        sa.Column('event_id', sa.String(255), unique=True, nullable=True),
        sa.Column('claimed_event_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(100), server_default='unknown'),
        sa.Column('raw_payload', sa.JSON, nullable=True),
        sa.Column('raw_body', sa.Text, nullable=True),
        sa.Column('signature', sa.String(128), nullable=True),
        sa.Column('signature_valid', sa.Boolean, server_default=sa.false()),
        sa.Column('processed', sa.Boolean, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime, nullable=True),
        sa.Column('error', sa.Text, nullable=True),
        sa.Column('retry_count', sa.Integer, server_default='0'),
        sa.Column('received_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_webhook_events_connection_received', 'webhook_events', ['connection_id', 'received_at'])
    op.create_index('ix_webhook_events_pending', 'webhook_events', ['processed', 'signature_valid'])

    # Leads
    op.create_table(
        'leads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), index=True, nullable=False),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('data_source_connections.id'), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('email', sa.String(255), index=True, nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('registration_type', sa.String(50), nullable=True),
        sa.Column('form_name', sa.String(200), nullable=True),
        sa.Column('campaign_name', sa.String(200), nullable=True),
        *_attribution_columns(),
        sa.Column('landing_page', sa.Text, nullable=True),
        sa.Column('fbclid', sa.String(255), nullable=True),
        sa.Column('gclid', sa.String(255), nullable=True),
        sa.Column('registered_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(100), unique=True, nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), index=True, nullable=False),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('data_source_connections.id'), nullable=False),
        sa.Column('total', sa.Float, server_default='0'),
        sa.Column('currency', sa.String(10), server_default='USD'),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('payment_method', sa.String(100), nullable=True),
        sa.Column('coupon_code', sa.String(100), nullable=True),
        sa.Column('customer_email', sa.String(255), index=True, nullable=True),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        *_attribution_columns(),
        sa.Column('fbclid', sa.String(255), nullable=True),
        sa.Column('gclid', sa.String(255), nullable=True),
        sa.Column('origin_source', sa.String(200), nullable=True),
        sa.Column('funnel_id', sa.String(100), nullable=True),
        sa.Column('checkout_id', sa.String(100), nullable=True),
        sa.Column('order_date', sa.DateTime, server_default=sa.func.now()),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('refunded_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Checkout funnel steps
    op.create_table(
        'checkout_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), index=True, nullable=False),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('data_source_connections.id'), nullable=False),
        sa.Column('event_type', sa.String(20)),
        sa.Column('funnel_id', sa.String(100), nullable=True),
        sa.Column('checkout_id', sa.String(100), index=True, nullable=True),
        sa.Column('step', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        *_attribution_columns(),
        sa.Column('event_date', sa.DateTime, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Contacts
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('contact_type', sa.String(20), server_default='lead'),
        sa.Column('first_source', sa.String(200), server_default='direct'),
        sa.Column('last_source', sa.String(200), server_default='direct'),
        sa.Column('total_spent', sa.Float, server_default='0'),
        sa.Column('total_orders', sa.Integer, server_default='0'),
        sa.Column('lead_count', sa.Integer, server_default='0'),
        sa.Column('first_seen', sa.DateTime, server_default=sa.func.now()),
        sa.Column('last_seen', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('client_id', 'email', name='uq_contacts_client_email'),
    )

    # Meta snapshots
    op.create_table(
        'meta_ad_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(64), unique=True, nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('currency', sa.String(10), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('last_synced_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        'meta_campaigns',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('campaign_id', sa.String(64), unique=True, nullable=False),
        sa.Column('account_id', sa.String(64), index=True, nullable=False),
        sa.Column('name', sa.String(300), nullable=False),
        sa.Column('objective', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('effective_status', sa.String(32), nullable=True),
        sa.Column('created_time', sa.DateTime, nullable=True),
    )
    op.create_table(
        'meta_ad_sets',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('adset_id', sa.String(64), unique=True, nullable=False),
        sa.Column('campaign_id', sa.String(64), index=True, nullable=False),
        sa.Column('account_id', sa.String(64), index=True, nullable=False),
        sa.Column('name', sa.String(300), nullable=False),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('effective_status', sa.String(32), nullable=True),
        sa.Column('created_time', sa.DateTime, nullable=True),
    )
    op.create_table(
        'meta_ads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('ad_id', sa.String(64), unique=True, nullable=False),
        sa.Column('adset_id', sa.String(64), index=True, nullable=False),
        sa.Column('campaign_id', sa.String(64), nullable=False),
        sa.Column('account_id', sa.String(64), index=True, nullable=False),
        sa.Column('name', sa.String(300), nullable=False),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('effective_status', sa.String(32), nullable=True),
        sa.Column('creative_id', sa.String(64), nullable=True),
        sa.Column('creative_title', sa.String(300), nullable=True),
        sa.Column('creative_body', sa.Text, nullable=True),
        sa.Column('created_time', sa.DateTime, nullable=True),
    )
    op.create_table(
        'meta_insights',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('date_start', sa.DateTime, nullable=False),
        sa.Column('date_stop', sa.DateTime, nullable=False),
        sa.Column('spend', sa.Float, server_default='0'),
        sa.Column('impressions', sa.Integer, server_default='0'),
        sa.Column('clicks', sa.Integer, server_default='0'),
        sa.Column('reach', sa.Integer, server_default='0'),
        sa.Column('frequency', sa.Float, server_default='0'),
        sa.Column('leads', sa.Integer, server_default='0'),
    )
    op.create_index('ix_meta_insights_entity_date', 'meta_insights', ['entity_type', 'entity_id', 'date_start'])

    # Ads agent
    op.create_table(
        'agent_configs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(64), unique=True, nullable=False),
        sa.Column('high_spend_threshold', sa.Float, server_default='150'),
        sa.Column('recent_launch_days', sa.Integer, server_default='7'),
        sa.Column('frequency_threshold', sa.Float, server_default='3.5'),
        sa.Column('max_changes_per_batch', sa.Integer, server_default='5'),
        sa.Column('allow_learning_edits', sa.Boolean, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_table(
        'agent_executions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('batch_id', sa.String(64), index=True, nullable=False),
        sa.Column('recommendation_id', sa.String(200), nullable=True),
        sa.Column('execution_type', sa.String(50), nullable=False),
        sa.Column('entity_level', sa.String(20), server_default='unknown'),
        sa.Column('entity_id', sa.String(64), nullable=True),
        sa.Column('before_state', sa.JSON, nullable=True),
        sa.Column('after_state', sa.JSON, nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('risk_level', sa.String(20), server_default='unknown'),
        sa.Column('approved_by', sa.String(255), nullable=False),
        sa.Column('approved_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('executed_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('execution_error', sa.Text, nullable=True),
    )
    op.create_index('ix_agent_executions_account_executed', 'agent_executions', ['account_id', 'executed_at'])


def downgrade() -> None:
    op.drop_index('ix_agent_executions_account_executed', table_name='agent_executions')
    op.drop_table('agent_executions')
    op.drop_table('agent_configs')
    op.drop_index('ix_meta_insights_entity_date', table_name='meta_insights')
    op.drop_table('meta_insights')
    op.drop_table('meta_ads')
    op.drop_table('meta_ad_sets')
    op.drop_table('meta_campaigns')
    op.drop_table('meta_ad_accounts')
    op.drop_table('contacts')
    op.drop_table('checkout_events')
    op.drop_table('orders')
    op.drop_table('leads')
    op.drop_index('ix_webhook_events_pending', table_name='webhook_events')
    op.drop_index('ix_webhook_events_connection_received', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_table('data_source_connections')
    op.drop_table('clients')
