"""
SukiStudy - Sync Core

Rate-limited WaniKani API client, SQLite mirror of the user's subjects,
assignments and study materials, incremental sync engine, and live queries
for the study UI.
"""

from .client import (
    # API access
    WaniKaniClient,
    RateLimiter,
)
from .config import Settings, get_settings
from .exceptions import (
    SukiStudyError,
    AuthenticationError,
    RateLimitError,
    APIError,
    NetworkError,
    SyncAbortedError,
)
from .models import (
    # Data models
    Subject,
    Assignment,
    StudyMaterial,
    User,
    Summary,
    SubjectType,
    Resource,
    CollectionPage,
)
from .queries import (
    # Live queries
    LiveQuery,
    StudyItem,
    AllSubjectsQuery,
    LearnedSubjectsQuery,
    LessonsQuery,
)
from .session import StudySession
from .store import LocalStore, EntityCollection, ChangeEvent
from .sync import SyncEngine, SyncResult

__version__ = "0.1.0"
__all__ = [
    # API access
    "WaniKaniClient",
    "RateLimiter",

    # Configuration
    "Settings",
    "get_settings",

    # Exceptions
    "SukiStudyError",
    "AuthenticationError",
    "RateLimitError",
    "APIError",
    "NetworkError",
    "SyncAbortedError",

    # Data models
    "Subject",
    "Assignment",
    "StudyMaterial",
    "User",
    "Summary",
    "SubjectType",
    "Resource",
    "CollectionPage",

    # Storage and sync
    "LocalStore",
    "EntityCollection",
    "ChangeEvent",
    "SyncEngine",
    "SyncResult",

    # Live queries
    "LiveQuery",
    "StudyItem",
    "AllSubjectsQuery",
    "LearnedSubjectsQuery",
    "LessonsQuery",

    # Entry point
    "StudySession",
]
