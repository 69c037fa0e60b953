"""documents, signing sessions, signer keys, verification payloads

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "documents",
        sa.Column("document_id", sa.String(length=120), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_documents_session_id", "documents", ["session_id"])

    op.create_table(
        "signing_sessions",
        sa.Column("session_id", sa.String(length=64), primary_key=True),
        sa.Column("document_id", sa.String(length=120), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_signing_sessions_document_id", "signing_sessions", ["document_id"])
    op.create_index("ix_signing_sessions_status", "signing_sessions", ["status"])

    op.create_table(
        "signer_keys",
        sa.Column("key_id", sa.String(length=64), primary_key=True),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("public_key_b64u", sa.String(length=64), nullable=False),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_signer_keys_public_key_b64u", "signer_keys", ["public_key_b64u"])
    op.create_index("ix_signer_keys_role_status", "signer_keys", ["role", "status"])

    op.create_table(
        "verification_payloads",
        sa.Column("token", sa.String(length=80), primary_key=True),
        sa.Column("body_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_verification_payloads_expires_at", "verification_payloads", ["expires_at"])


def downgrade():
    op.drop_table("verification_payloads")
    op.drop_table("signer_keys")
    op.drop_table("signing_sessions")
    op.drop_table("documents")
