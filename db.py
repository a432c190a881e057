from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
from sqlalchemy.exc import OperationalError
import logging
import threading
import time

from config import DATABASE_URL, WRITE_RETRY_ATTEMPTS, WRITE_RETRY_DELAY

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; Postgres does not
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Application-level locks, striped per kind so the set stays bounded.
# A name is "kind:key" (e.g. request:12, mechanic:3); keys of one kind share
# LOCK_STRIPES locks. Callers holding two locks take mechanic before request.
LOCK_STRIPES = 64
locks = {}
locks_lock = threading.Lock()


def get_lock(name: str):
    kind, _, key = name.partition(":")
    with locks_lock:
        if kind not in locks:
            locks[kind] = [threading.Lock() for _ in range(LOCK_STRIPES)]
        stripes = locks[kind]
    return stripes[hash(key) % LOCK_STRIPES]


engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db():
    # make sure table classes are registered on the metadata
    import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine)


def run_with_retry(fn, *args, attempts=None, delay=None, **kwargs):
    """Run a database write, retrying transient failures with exponential backoff.

    Only OperationalError (dropped connection, locked database) is retried;
    domain errors propagate on the first attempt. Backoff blocks the calling
    thread, so async callers go through run_in_threadpool.
    """
    attempts = attempts or WRITE_RETRY_ATTEMPTS
    delay = WRITE_RETRY_DELAY if delay is None else delay
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except OperationalError as e:
            if attempt == attempts - 1:
                logger.error("write %s failed after %d attempts: %s", fn.__name__, attempts, e)
                raise
            wait = delay * (2 ** attempt)
            logger.warning("write %s failed (attempt %d/%d), retrying in %.2fs: %s",
                           fn.__name__, attempt + 1, attempts, wait, e)
            time.sleep(wait)
