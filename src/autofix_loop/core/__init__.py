"""Core remediation loop components.

This module exports the main loop classes:
- ErrorCollector: Deduplicating, prioritized error queue
- FixOracleClient: Candidate generation with cache, rate limit and templates
- ValidationPipeline: Weighted multi-check gate for candidates
- FixApplier: Backup, patch, verify and roll back target files
- LoopOrchestrator: Iteration driver with convergence and stall detection
"""

from autofix_loop.core.error_collector import ErrorCollector
from autofix_loop.core.fix_applier import BackupStore, FixApplier
from autofix_loop.core.fix_oracle_client import FixOracleClient, StrategyHistory
from autofix_loop.core.orchestrator import LoopOrchestrator, create_applier, create_orchestrator
from autofix_loop.core.state_store import StateStore
from autofix_loop.core.validation_pipeline import ValidationPipeline

__all__ = [
    "BackupStore",
    "ErrorCollector",
    "FixApplier",
    "FixOracleClient",
    "LoopOrchestrator",
    "StateStore",
    "StrategyHistory",
    "ValidationPipeline",
    "create_applier",
    "create_orchestrator",
]
