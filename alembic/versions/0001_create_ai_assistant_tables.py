"""Create AI assistant tables"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_create_ai_assistant_tables"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def _audit() -> list[sa.Column]:
    return [
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
    ]


def _health() -> list[sa.Column]:
    return [
        sa.Column("health_status", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_check_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_check_error", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "ai_tools",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("implementation_type", sa.String(length=32), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("url_path", sa.String(length=512), nullable=True),
        _jsonb("response_mapping"),
        sa.Column("mcp_server_id", sa.Integer(), nullable=True),
        sa.Column("mcp_tool_name", sa.String(length=128), nullable=True),
        sa.Column("native_handler", sa.String(length=128), nullable=True),
        sa.Column("knowledge_provider_id", sa.Integer(), nullable=True),
        _jsonb("parameter_schema"),
        sa.Column("risk_level", sa.String(length=16), nullable=False, server_default=sa.text("'low'")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_ai_tools_name"),
    )
    op.create_index("ix_ai_tools_name", "ai_tools", ["name"])
    op.create_index("ix_ai_tools_mcp_server_id", "ai_tools", ["mcp_server_id"])
    op.create_index("ix_ai_tools_knowledge_provider_id", "ai_tools", ["knowledge_provider_id"])
    op.create_index("ix_ai_tools_updated_at", "ai_tools", ["updated_at"])

    op.create_table(
        "ai_agents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        _jsonb("model_config"),
        _jsonb("keywords"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("agent_type", sa.String(length=32), nullable=False, server_default=sa.text("'expert'")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_ai_agents_name"),
    )
    op.create_index("ix_ai_agents_name", "ai_agents", ["name"])
    op.create_index("ix_ai_agents_updated_at", "ai_agents", ["updated_at"])

    op.create_table(
        "ai_agent_tools",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("ai_agents.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tool_id", sa.Integer(), sa.ForeignKey("ai_tools.id", ondelete="CASCADE"), nullable=False),
        sa.UniqueConstraint("agent_id", "tool_id", name="uq_ai_agent_tools_agent_tool"),
    )
    op.create_index("ix_ai_agent_tools_agent_id", "ai_agent_tools", ["agent_id"])
    op.create_index("ix_ai_agent_tools_tool_id", "ai_agent_tools", ["tool_id"])

    op.create_table(
        "knowledge_providers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("provider_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _jsonb("config"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_health(),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_knowledge_providers_name"),
    )
    op.create_index("ix_knowledge_providers_name", "knowledge_providers", ["name"])
    op.create_index("ix_knowledge_providers_updated_at", "knowledge_providers", ["updated_at"])

    op.create_table(
        "knowledge_tools",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "provider_id",
            sa.Integer(),
            sa.ForeignKey("knowledge_providers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _jsonb("parameters"),
        _jsonb("keywords"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_knowledge_tools_name"),
    )
    op.create_index("ix_knowledge_tools_name", "knowledge_tools", ["name"])
    op.create_index("ix_knowledge_tools_provider_id", "knowledge_tools", ["provider_id"])
    op.create_index("ix_knowledge_tools_updated_at", "knowledge_tools", ["updated_at"])

    op.create_table(
        "mcp_servers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("server_type", sa.String(length=16), nullable=False, server_default=sa.text("'http'")),
        sa.Column("endpoint", sa.String(length=512), nullable=False),
        sa.Column("health_check_url", sa.String(length=512), nullable=True),
        sa.Column("health_check_interval", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default=sa.text("30")),
        _jsonb("allowed_envs"),
        _jsonb("allowed_prefixes"),
        _jsonb("allowed_ips"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_health(),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_mcp_servers_name"),
    )
    op.create_index("ix_mcp_servers_name", "mcp_servers", ["name"])
    op.create_index("ix_mcp_servers_updated_at", "mcp_servers", ["updated_at"])

    op.create_table(
        "mcp_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _jsonb("server_config"),
        sa.Column("category", sa.String(length=32), nullable=False, server_default=sa.text("'custom'")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_mcp_templates_name"),
    )
    op.create_index("ix_mcp_templates_updated_at", "mcp_templates", ["updated_at"])

    op.create_table(
        "ai_llm_models",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("model_id", sa.String(length=128), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'openai'")),
        sa.Column("api_key", sa.String(length=512), nullable=True),
        sa.Column("base_url", sa.String(length=512), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=False, server_default=sa.text("0.7")),
        sa.Column("max_tokens", sa.Integer(), nullable=False, server_default=sa.text("4096")),
        sa.Column("timeout", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("name", name="uq_ai_llm_models_name"),
    )
    op.create_index("ix_ai_llm_models_updated_at", "ai_llm_models", ["updated_at"])

    op.create_table(
        "ai_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_key", sa.String(length=128), nullable=False),
        sa.Column("config_value", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("config_type", sa.String(length=32), nullable=False, server_default=sa.text("'general'")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("scope", sa.String(length=32), nullable=True),
        sa.Column("scope_id", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("config_key", name="uq_ai_configs_config_key"),
    )
    op.create_index("ix_ai_configs_config_key", "ai_configs", ["config_key"])
    op.create_index("ix_ai_configs_updated_at", "ai_configs", ["updated_at"])

    op.create_table(
        "ai_optimization_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_type", sa.String(length=32), nullable=False),
        sa.Column("config_key", sa.String(length=64), nullable=False, server_default=sa.text("'default'")),
        _jsonb("config_value", nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        *_audit(),
        sa.UniqueConstraint("config_type", "config_key", name="uq_ai_optimization_configs_type_key"),
    )
    op.create_index("ix_ai_optimization_configs_config_type", "ai_optimization_configs", ["config_type"])
    op.create_index("ix_ai_optimization_configs_updated_at", "ai_optimization_configs", ["updated_at"])

    op.create_table(
        "ai_session_archives",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("mode", sa.String(length=32), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("first_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        _jsonb("messages"),
        _jsonb("trace_ids"),
        sa.Column(
            "archived_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("archived_by", sa.String(length=64), nullable=True),
        sa.Column("archive_reason", sa.String(length=32), nullable=False, server_default=sa.text("'manual'")),
    )
    op.create_index("ix_ai_session_archives_session_id", "ai_session_archives", ["session_id"])
    op.create_index("ix_ai_session_archives_user_id", "ai_session_archives", ["user_id"])


def downgrade() -> None:
    op.drop_table("ai_session_archives")
    op.drop_table("ai_optimization_configs")
    op.drop_table("ai_configs")
    op.drop_table("ai_llm_models")
    op.drop_table("mcp_templates")
    op.drop_table("mcp_servers")
    op.drop_table("knowledge_tools")
    op.drop_table("knowledge_providers")
    op.drop_table("ai_agent_tools")
    op.drop_table("ai_agents")
    op.drop_table("ai_tools")
