"""idstitch.core

Core primitives.

Everything above the HTTP edge lives here and depends on nothing outside it.
"""

from .config import Config
from .database import Database
from .exceptions import IdStitchError, InvariantViolation, TransientStoreError, ValidationError
from .ingestion import IngestionCoordinator, IngestResult, ProfileUpdateResult
from .models import CanonicalEvent, Event, Identity, IdentityMapping
from .stats import IdentifierReport, StoreStats, collect_stats, lookup_identifier, recent_conflicts
from .stitcher import ConflictWarning, IdentityStitcher, StitchResult
from .time import parse_dt, utc_now

__all__ = [
    "CanonicalEvent",
    "Config",
    "ConflictWarning",
    "Database",
    "Event",
    "IdStitchError",
    "IdentifierReport",
    "Identity",
    "IdentityMapping",
    "IdentityStitcher",
    "IngestResult",
    "IngestionCoordinator",
    "InvariantViolation",
    "ProfileUpdateResult",
    "StitchResult",
    "StoreStats",
    "TransientStoreError",
    "ValidationError",
    "collect_stats",
    "lookup_identifier",
    "parse_dt",
    "recent_conflicts",
    "utc_now",
]
