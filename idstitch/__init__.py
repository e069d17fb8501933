"""idstitch: analytics ingestion with identity stitching.

Anonymous first, identified later. History follows the person.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "1.0.0"
