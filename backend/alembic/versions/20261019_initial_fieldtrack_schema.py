"""initial fieldtrack schema

Revision ID: fieldtrack_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


revision: str = 'fieldtrack_0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('push_token', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('billing_address', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'jobsites',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('address_line1', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('state', sa.String(50), nullable=True),
        sa.Column('zip', sa.String(20), nullable=True),
    )
    op.create_index('ix_jobsites_customer_id', 'jobsites', ['customer_id'])

    op.create_table(
        'leads',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('jobsite_id', sa.Integer(), sa.ForeignKey('jobsites.id'), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='NEW'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_leads_customer_id', 'leads', ['customer_id'])

    op.create_table(
        'estimates',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('lead_id', sa.Integer(), sa.ForeignKey('leads.id'), nullable=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('jobsite_id', sa.Integer(), sa.ForeignKey('jobsites.id'), nullable=True),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('signature_data_url', sa.Text(), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_estimates_lead_id', 'estimates', ['lead_id'])
    op.create_index('ix_estimates_customer_id', 'estimates', ['customer_id'])

    op.create_table(
        'estimate_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'estimate_id',
            sa.Integer(),
            sa.ForeignKey('estimates.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('description', sa.String(255), nullable=False),
        sa.Column('qty', sa.Numeric(10, 2), nullable=False, server_default='1'),
        sa.Column('unit', sa.String(20), nullable=True),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
    )
    op.create_index('ix_estimate_items_estimate_id', 'estimate_items', ['estimate_id'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('estimate_id', sa.Integer(), sa.ForeignKey('estimates.id'), nullable=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('jobsite_id', sa.Integer(), sa.ForeignKey('jobsites.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='SCHEDULED'),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_jobs_estimate_id', 'jobs', ['estimate_id'])
    op.create_index('ix_jobs_customer_id', 'jobs', ['customer_id'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id'), nullable=True),
        sa.Column('number', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('issued_at', sa.Date(), nullable=True),
        sa.Column('due_at', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('number', name='uq_invoices_number'),
    )
    op.create_index('ix_invoices_job_id', 'invoices', ['job_id'])
    op.create_index('idx_invoices_status_due', 'invoices', ['status', 'due_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'invoice_id',
            sa.Integer(),
            sa.ForeignKey('invoices.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('method', sa.String(20), nullable=False, server_default='OTHER'),
        sa.Column('received_at', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])

    op.create_table(
        'reminders',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_id', sa.Integer(), sa.ForeignKey('jobs.id'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('channel', sa.String(10), nullable=False, server_default='EMAIL'),
        sa.Column('template', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_reminders_job_id', 'reminders', ['job_id'])
    op.create_index('ix_reminders_user_id', 'reminders', ['user_id'])
    op.create_index('idx_reminders_status_scheduled', 'reminders', ['status', 'scheduled_for'])


def downgrade() -> None:
    op.drop_index('idx_reminders_status_scheduled', table_name='reminders')
    op.drop_index('ix_reminders_user_id', table_name='reminders')
    op.drop_index('ix_reminders_job_id', table_name='reminders')
    op.drop_table('reminders')

    op.drop_index('ix_payments_invoice_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('idx_invoices_status_due', table_name='invoices')
    op.drop_index('ix_invoices_job_id', table_name='invoices')
    op.drop_table('invoices')

    op.drop_index('ix_jobs_customer_id', table_name='jobs')
    op.drop_index('ix_jobs_estimate_id', table_name='jobs')
    op.drop_table('jobs')

    op.drop_index('ix_estimate_items_estimate_id', table_name='estimate_items')
    op.drop_table('estimate_items')

    op.drop_index('ix_estimates_customer_id', table_name='estimates')
    op.drop_index('ix_estimates_lead_id', table_name='estimates')
    op.drop_table('estimates')

    op.drop_index('ix_leads_customer_id', table_name='leads')
    op.drop_table('leads')

    op.drop_index('ix_jobsites_customer_id', table_name='jobsites')
    op.drop_table('jobsites')

    op.drop_table('customers')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
