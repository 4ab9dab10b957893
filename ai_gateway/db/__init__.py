# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine, session management, and the ledger ORM models.
#
# Key exports:
#   - session_scope: transactional async session context manager
#   - Base: SQLAlchemy declarative base
#   - CostLog, BudgetEvent, AgentSession: ledger tables
# =============================================================================
