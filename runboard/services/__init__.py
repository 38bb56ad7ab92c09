"""
Services package for runboard.

Service layer over the document store: configuration, registry, batch writes,
reconciliation, player linking, backfill and run intake.
"""

from .base import BaseService
from .batch_writer import BatchWriteCoordinator
from .reconciliation import ReconciliationEngine
from .run_intake import RunIntakeService

__all__ = ['BaseService', 'BatchWriteCoordinator', 'ReconciliationEngine', 'RunIntakeService']
