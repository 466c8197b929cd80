"""
Database Package
================

Exports key database components.
"""

from darwinforge.db.models import (
    Base,
    RateLimitStateModel,
    ApplicationRecordModel,
    RollbackActionModel,
    ProposalModel,
    LearningSignalModel,
)
from darwinforge.db.connection import Database, init_db, DATA_DIR
