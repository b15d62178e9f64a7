"""Core services for Marathon."""

from .graph_store import GraphEvent, GraphStore
from .history import HistoryManager
from .scheduler import Scheduler
from .versions import VersionHistory

__all__ = [
	"GraphEvent",
	"GraphStore",
	"HistoryManager",
	"Scheduler",
	"VersionHistory",
]
