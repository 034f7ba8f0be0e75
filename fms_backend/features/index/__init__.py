"""
Index feature - crawl, store writes, live updates and queries.
"""
from .crawl_state import CrawlState
from .models import FileRecord, Listing, SearchResults, TagSummary
from .scheduler import CrawlScheduler
from .searcher import IndexSearcher
from .service import IndexService
from .store import IndexStore
from .watcher import DebouncedWatchHandler, IndexWatcher

__all__ = [
    "CrawlState",
    "CrawlScheduler",
    "DebouncedWatchHandler",
    "FileRecord",
    "IndexSearcher",
    "IndexService",
    "IndexStore",
    "IndexWatcher",
    "Listing",
    "SearchResults",
    "TagSummary",
]
