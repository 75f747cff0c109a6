"""initial billing schema

Revision ID: 4c1d7e2a9b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c1d7e2a9b30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        'families',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('primary_contact_name', sa.String(128)),
        sa.Column('primary_phone', sa.String(32)),
        sa.Column('primary_email', sa.String(128)),
        *_timestamps(),
    )

    op.create_table(
        'students',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('family_id', sa.Uuid(), sa.ForeignKey('families.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('dob', sa.Date()),
        *_timestamps(),
    )
    op.create_index('ix_students_family_id', 'students', ['family_id'])

    op.create_table(
        'enrolment_plans',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('level', sa.String(64)),
        sa.Column('billing_type', sa.String(16), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('duration_weeks', sa.Integer()),
        sa.Column('block_class_count', sa.Integer()),
        sa.Column('sessions_per_week', sa.Integer()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("billing_type IN ('PER_CLASS','PER_WEEK')", name='ck_enrolment_plan_billing_type'),
        sa.CheckConstraint('price_cents >= 0', name='ck_enrolment_plan_price_positive'),
    )

    op.create_table(
        'enrolments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('student_id', sa.Uuid(), sa.ForeignKey('students.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Uuid(), sa.ForeignKey('enrolment_plans.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='ACTIVE'),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date()),
        sa.Column('credits_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_through_date', sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("status IN ('ACTIVE','PAUSED','ENDED','CANCELLED')", name='ck_enrolment_status'),
        sa.CheckConstraint('credits_remaining >= 0', name='ck_enrolment_credits_non_negative'),
    )
    op.create_index('ix_enrolments_student_id', 'enrolments', ['student_id'])
    op.create_index('ix_enrolments_plan_id', 'enrolments', ['plan_id'])
    op.create_index('ix_enrolments_student_status', 'enrolments', ['student_id', 'status'])

    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('sku', sa.String(64), unique=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint('price_cents >= 0', name='ck_product_price_positive'),
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('family_id', sa.Uuid(), sa.ForeignKey('families.id'), nullable=False),
        sa.Column('enrolment_id', sa.Uuid(), sa.ForeignKey('enrolments.id')),
        sa.Column('source', sa.String(16), nullable=False, server_default='MANUAL'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('amount_paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(16), nullable=False, server_default='OPEN'),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('due_at', sa.DateTime()),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('coverage_start', sa.Date()),
        sa.Column('coverage_end', sa.Date()),
        sa.Column('credits_purchased', sa.Integer()),
        sa.Column('entitlements_applied_at', sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("status IN ('OPEN','PARTIALLY_PAID','PAID','OVERDUE','CANCELLED')", name='ck_invoice_status'),
        sa.CheckConstraint("source IN ('BILLING_PERIOD','PAY_AHEAD','COUNTER_SALE','MANUAL')", name='ck_invoice_source'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_invoice_amount_positive'),
        sa.CheckConstraint(
            'amount_paid_cents >= 0 AND amount_paid_cents <= amount_cents',
            name='ck_invoice_paid_within_amount',
        ),
    )
    op.create_index('ix_invoices_family_id', 'invoices', ['family_id'])
    op.create_index('ix_invoices_enrolment_id', 'invoices', ['enrolment_id'])
    op.create_index('ix_invoices_family_status', 'invoices', ['family_id', 'status'])

    op.create_table(
        'invoice_line_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.String(16), nullable=False, server_default='OTHER'),
        sa.Column('description', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Uuid(), sa.ForeignKey('products.id')),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("kind IN ('ENROLMENT','PRODUCT','OTHER')", name='ck_invoice_line_item_kind'),
        sa.CheckConstraint('quantity > 0', name='ck_invoice_line_item_quantity_positive'),
    )
    op.create_index('ix_invoice_line_items_invoice_id', 'invoice_line_items', ['invoice_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('family_id', sa.Uuid(), sa.ForeignKey('families.id'), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(100)),
        sa.Column('note', sa.String(1000)),
        sa.Column('paid_at', sa.DateTime(), nullable=False),
        sa.Column('idempotency_key', sa.String(128)),
        sa.Column('undone', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('undone_at', sa.DateTime()),
        sa.Column('undo_reason', sa.String(500)),
        *_timestamps(),
        sa.CheckConstraint('amount_cents > 0', name='ck_payment_amount_positive'),
        sa.UniqueConstraint('family_id', 'idempotency_key', name='uq_payment_family_idempotency_key'),
    )
    op.create_index('ix_payments_family_id', 'payments', ['family_id'])
    op.create_index('ix_payments_family_paid_at', 'payments', ['family_id', 'paid_at'])

    # Payment whose allocation completed an enrolment invoice and granted its entitlements
    with op.batch_alter_table('invoices') as batch_op:
        batch_op.add_column(sa.Column('entitlements_payment_id', sa.Uuid()))
        batch_op.create_foreign_key(
            'fk_invoices_entitlements_payment_id', 'payments', ['entitlements_payment_id'], ['id']
        )

    op.create_table(
        'payment_allocations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount_cents > 0', name='ck_payment_allocation_amount_positive'),
    )
    op.create_index('ix_payment_allocations_payment_id', 'payment_allocations', ['payment_id'])
    op.create_index('ix_payment_allocations_invoice_id', 'payment_allocations', ['invoice_id'])

    op.create_table(
        'entitlement_changes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('enrolment_id', sa.Uuid(), sa.ForeignKey('enrolments.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('field', sa.String(32), nullable=False),
        sa.Column('previous_credits', sa.Integer()),
        sa.Column('new_credits', sa.Integer()),
        sa.Column('previous_paid_through', sa.Date()),
        sa.Column('new_paid_through', sa.Date()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("field IN ('credits_remaining','paid_through_date')", name='ck_entitlement_change_field'),
    )
    op.create_index('ix_entitlement_changes_payment_id', 'entitlement_changes', ['payment_id'])
    op.create_index('ix_entitlement_changes_enrolment_id', 'entitlement_changes', ['enrolment_id'])


def downgrade():
    with op.batch_alter_table('invoices') as batch_op:
        batch_op.drop_constraint('fk_invoices_entitlements_payment_id', type_='foreignkey')
        batch_op.drop_column('entitlements_payment_id')
    op.drop_table('entitlement_changes')
    op.drop_table('payment_allocations')
    op.drop_table('payments')
    op.drop_table('invoice_line_items')
    op.drop_table('invoices')
    op.drop_table('products')
    op.drop_table('enrolments')
    op.drop_table('enrolment_plans')
    op.drop_table('students')
    op.drop_table('families')
