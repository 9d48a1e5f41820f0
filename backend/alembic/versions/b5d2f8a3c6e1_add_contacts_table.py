"""add contacts table

Revision ID: b5d2f8a3c6e1
Revises: a1c4e7b2d9f0
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "b5d2f8a3c6e1"
down_revision = "a1c4e7b2d9f0"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("peer_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("nickname", sa.String(length=50), nullable=True),
        sa.Column("requested_by_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["peer_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "peer_id", name="uq_contact_owner_peer"),
        sa.CheckConstraint("owner_id <> peer_id", name="ck_contact_not_self"),
        sa.CheckConstraint("status IN ('pending', 'accepted', 'blocked')", name="ck_contact_status"),
    )
    op.create_index(op.f("ix_contacts_owner_id"), "contacts", ["owner_id"], unique=False)
    op.create_index(op.f("ix_contacts_peer_id"), "contacts", ["peer_id"], unique=False)
    op.create_index("ix_contacts_owner_status", "contacts", ["owner_id", "status"], unique=False)
    op.create_index("ix_contacts_peer_status", "contacts", ["peer_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_contacts_peer_status", table_name="contacts")
    op.drop_index("ix_contacts_owner_status", table_name="contacts")
    op.drop_index(op.f("ix_contacts_peer_id"), table_name="contacts")
    op.drop_index(op.f("ix_contacts_owner_id"), table_name="contacts")
    op.drop_table("contacts")
