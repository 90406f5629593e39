"""
Position aggregates (one per user, asset and holding episode).

- models: the Position shape plus the open/closed transition table
- lifecycle: incremental apply, best-effort linkage and full replay repair
"""

from .models import Position, PositionEvent, PositionStatus, next_status  # noqa: F401
