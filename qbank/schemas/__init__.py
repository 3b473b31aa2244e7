"""Pydantic schemas for payloads, read models and operation results."""

from qbank.schemas.categorization import (
    BulkCategorizationResult,
    CategorizationRead,
    CategorizationResult,
    CategorizationStatistics,
    CategorizationValidationResult,
)
from qbank.schemas.category import (
    BulkCategoryResult,
    CategoryBreadcrumb,
    CategoryCreate,
    CategoryRead,
    CategoryResult,
    CategoryTreeNode,
    CategoryUpdate,
    ReorderResult,
)
from qbank.schemas.common import OperationResult, PagedResult
from qbank.schemas.delete_strategy import (
    Block,
    CascadeDelete,
    DeleteStrategy,
    ReparentChildren,
    parse_delete_strategy,
)
from qbank.schemas.transfer import (
    CategoryTreeExport,
    CategoryTreeImport,
    MergeStrategy,
    TreeImportResult,
)
from qbank.schemas.tree import (
    BulkDeleteResult,
    BulkMoveResult,
    CategorySearchResult,
    MoveRequest,
    TreeCopyResult,
    TreeDeleteResult,
    TreeMoveResult,
    TreeSearchCriteria,
    TreeStatistics,
    TreeValidationResult,
)

__all__ = [
    "OperationResult",
    "PagedResult",
    "CategoryCreate",
    "CategoryUpdate",
    "CategoryRead",
    "CategoryResult",
    "BulkCategoryResult",
    "CategoryBreadcrumb",
    "CategoryTreeNode",
    "ReorderResult",
    "Block",
    "CascadeDelete",
    "ReparentChildren",
    "DeleteStrategy",
    "parse_delete_strategy",
    "MoveRequest",
    "TreeMoveResult",
    "TreeCopyResult",
    "TreeDeleteResult",
    "BulkMoveResult",
    "BulkDeleteResult",
    "TreeValidationResult",
    "TreeStatistics",
    "TreeSearchCriteria",
    "CategorySearchResult",
    "CategorizationRead",
    "CategorizationResult",
    "BulkCategorizationResult",
    "CategorizationStatistics",
    "CategorizationValidationResult",
    "CategoryTreeExport",
    "CategoryTreeImport",
    "MergeStrategy",
    "TreeImportResult",
]
