"""Services - Category tree engine and categorization ledger."""

from qbank.services.categorization_ledger import CategorizationLedger
from qbank.services.category_store import CategoryStore
from qbank.services.closure_index import ClosureIndex
from qbank.services.path_index import PathIndex
from qbank.services.tree_mutator import TreeMutator
from qbank.services.tree_queries import TreeQueries
from qbank.services.tree_transfer import TreeTransfer
from qbank.services.validation_engine import ValidationEngine

__all__ = [
    "CategorizationLedger",
    "CategoryStore",
    "ClosureIndex",
    "PathIndex",
    "TreeMutator",
    "TreeQueries",
    "TreeTransfer",
    "ValidationEngine",
]
