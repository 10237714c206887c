"""Invoice audit log

Revision ID: cc002_invoice_audit
Revises: cc001_initial
Create Date: 2026-10-18

Adds invoice_audit_logs: one row per manual change of an invoice
(creation, field edits, status changes, cancellation).
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'cc002_invoice_audit'
down_revision = 'cc001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('invoice_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('field_name', sa.String(length=64), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('invoice_audit_logs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_invoice_audit_logs_invoice_id'), ['invoice_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_invoice_audit_logs_user_id'), ['user_id'], unique=False)


def downgrade():
    op.drop_table('invoice_audit_logs')
