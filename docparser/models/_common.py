# docparser/models/_common.py
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Integer

# BIGINT on mysql/postgres, INTEGER on sqlite so autoincrement works there
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Naive UTC; sqlite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
