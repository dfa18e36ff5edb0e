# estatemetrics/db.py
"""Lifecycle of the shared database engine.

`StorageConnection` creates the SQLAlchemy engine lazily, starts the
managed store process when the first health probe fails, polls until the
store answers, and closes everything again once no caller has used it for
`idle_timeout` seconds.

    Idle -> Connecting -> Ready -> (idle timer) Closing -> Idle
    Connecting -> Failed -> Connecting (on the next acquire)
"""
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import config
from .errors import ConnectionUnavailable, OperationCancelled, ProcessStartError
from .utils import logger, retry

_cancel_scope: ContextVar[Optional[threading.Event]] = ContextVar("estatemetrics_cancel", default=None)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    FAILED = "failed"


def default_probe(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.debug("Store health probe failed: %s", e)
        return False


def build_engine(url: str, pool_size: int = config.DB_POOL_SIZE, max_overflow: int = config.DB_MAX_OVERFLOW) -> Engine:
    url = config.normalize_database_url(url)
    if make_url(url).get_backend_name() == "postgresql":
        # tuned pool settings for a long-lived service
        return create_engine(url, pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return create_engine(url, pool_pre_ping=True)


class StorageConnection:
    def __init__(
        self,
        url: str = config.POSTGRES_URL,
        process=None,
        idle_timeout: float = config.STORE_IDLE_TIMEOUT,
        poll_interval: float = config.STORE_POLL_INTERVAL,
        max_start_attempts: int = config.STORE_START_ATTEMPTS,
        start_retry_delay: float = 2,
        engine_factory: Callable[[str], Engine] = build_engine,
        probe: Callable[[Engine], bool] = default_probe,
    ):
        self.url = url
        self.process = process
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self.max_start_attempts = max_start_attempts
        self.start_retry_delay = start_retry_delay
        self._engine_factory = engine_factory
        self._probe = probe

        self._lock = threading.Lock()
        self._state = ConnectionState.IDLE
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None
        self._inflight: Optional[Future] = None
        self._users = 0
        self._idle_timer: Optional[threading.Timer] = None
        self._closed = threading.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def users(self) -> int:
        return self._users

    def acquire(self, cancel: Optional[threading.Event] = None) -> Engine:
        """Return a ready engine, connecting (once, for all concurrent callers) if needed."""
        cancel = cancel or _cancel_scope.get()
        with self._lock:
            self._cancel_idle_timer()
            self._users += 1
            if self._state is ConnectionState.READY:
                return self._engine
            leader = self._inflight is None
            if leader:
                self._inflight = Future()
                self._state = ConnectionState.CONNECTING
                self._closed.clear()
            inflight = self._inflight

        if not leader:
            try:
                return self._await(inflight, cancel)
            except BaseException:
                self._drop_user()
                raise

        try:
            engine = self._connect(cancel)
        except BaseException as e:
            with self._lock:
                self._state = ConnectionState.FAILED
                self._inflight = None
            inflight.set_exception(e)
            self._drop_user()
            raise

        with self._lock:
            self._engine = engine
            self._sessionmaker = sessionmaker(autocommit=False, autoflush=False, bind=engine)
            self._state = ConnectionState.READY
            self._inflight = None
        inflight.set_result(engine)
        logger.info("Store connection ready")
        return engine

    def release(self) -> None:
        """Give back a lease; the last one out arms the idle timer."""
        self._drop_user()

    @contextmanager
    def lease(self, cancel: Optional[threading.Event] = None) -> Iterator[Engine]:
        engine = self.acquire(cancel)
        try:
            yield engine
        finally:
            self.release()

    @contextmanager
    def session(self, cancel: Optional[threading.Event] = None) -> Iterator[Session]:
        with self.lease(cancel):
            db = self._sessionmaker()
            try:
                yield db
            finally:
                db.close()

    @contextmanager
    def cancel_scope(self, cancel: Optional[threading.Event]):
        """Make `cancel` the default cancel signal for acquires in this context."""
        token = _cancel_scope.set(cancel)
        try:
            yield
        finally:
            _cancel_scope.reset(token)

    def close(self, stop_process: bool = True) -> None:
        """Abort pending polls and tear down immediately, regardless of leases."""
        self._closed.set()
        with self._lock:
            self._cancel_idle_timer()
            self._teardown(stop_process)

    def _await(self, inflight: Future, cancel: Optional[threading.Event]) -> Engine:
        while True:
            if self._cancelled(cancel):
                raise OperationCancelled("cancelled while waiting for the store connection")
            try:
                return inflight.result(timeout=self.poll_interval)
            except FutureTimeout:
                continue

    def _connect(self, cancel: Optional[threading.Event]) -> Engine:
        engine = self._engine_factory(self.url)
        try:
            if self._probe(engine):
                return engine
            if self.process is None:
                raise ConnectionUnavailable(f"store at {make_url(self.url).render_as_string()} is unreachable")
            self._start_process()
            logger.info("Waiting for the store to become ready")
            while not self._probe(engine):
                if self._wait(cancel, self.poll_interval):
                    raise OperationCancelled("cancelled while polling store readiness")
            return engine
        except BaseException:
            engine.dispose()
            raise

    def _start_process(self) -> None:
        start = retry(
            ProcessStartError,
            tries=self.max_start_attempts,
            delay=self.start_retry_delay,
            backoff=1,
        )(self.process.start)
        try:
            start()
        except ProcessStartError as e:
            raise ConnectionUnavailable(
                f"store process failed to start after {self.max_start_attempts} attempts: {e}"
            ) from e

    def _cancelled(self, cancel: Optional[threading.Event]) -> bool:
        return self._closed.is_set() or (cancel is not None and cancel.is_set())

    def _wait(self, cancel: Optional[threading.Event], seconds: float) -> bool:
        deadline = time.monotonic() + seconds
        while True:
            if self._cancelled(cancel):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            (cancel or self._closed).wait(min(remaining, 0.05))

    def _drop_user(self) -> None:
        with self._lock:
            self._users = max(0, self._users - 1)
            if self._users == 0 and self._state is ConnectionState.READY:
                self._arm_idle_timer()

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        timer = threading.Timer(self.idle_timeout, self._on_idle)
        timer.daemon = True
        self._idle_timer = timer
        timer.start()

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle(self) -> None:
        with self._lock:
            if self._users > 0 or self._state is not ConnectionState.READY:
                return
            if self._idle_timer is not None and self._idle_timer is not threading.current_thread():
                return
            self._idle_timer = None
            logger.info("Store idle for %ss, closing", self.idle_timeout)
            self._teardown(stop_process=True)

    def _teardown(self, stop_process: bool) -> None:
        self._state = ConnectionState.CLOSING
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        if stop_process and self.process is not None:
            self.process.stop()
        self._state = ConnectionState.IDLE
