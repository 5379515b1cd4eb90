from datetime import datetime

from dm_engine.core.clock import utcnow


def db_now() -> datetime:
    # Columns are naive and hold UTC.
    return utcnow().replace(tzinfo=None)
