"""Memory for metaclaw: workspace documents, vector memory and recall."""

from .chunking import split_text_for_memory
from .recall import RecallBudget, compress_recalled, recall_budgets, render_recalled
from .vector import MemoryEntry, MemoryMetadata, RecallOptions, RecalledEntry, VectorMemory
from .workspace import PersistenceError, QuickMemory, WorkspaceStore

__all__ = [
    "MemoryEntry",
    "MemoryMetadata",
    "PersistenceError",
    "QuickMemory",
    "RecallBudget",
    "RecallOptions",
    "RecalledEntry",
    "VectorMemory",
    "WorkspaceStore",
    "compress_recalled",
    "recall_budgets",
    "render_recalled",
    "split_text_for_memory",
]
