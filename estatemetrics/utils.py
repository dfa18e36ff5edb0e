# estatemetrics/utils.py
"""Shared utilities: the package logger, a retry decorator and timestamps."""
import os
import logging
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

def get_logger(name=__name__):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        level=getattr(logging, level, logging.INFO)
    )
    return logging.getLogger(name)

logger = get_logger("estatemetrics")

def retry(exceptions, tries=3, delay=1, backoff=2, logger=logger):
    """Retry the wrapped call on `exceptions`; the last attempt propagates."""
    def deco_retry(f):
        @wraps(f)
        def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    logger.warning("Retryable error: %s, retrying in %s sec", e, mdelay)
                    time.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return f(*args, **kwargs)
        return f_retry
    return deco_retry


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC string, the format every stored date uses."""
    moment = moment or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or epoch milliseconds) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
