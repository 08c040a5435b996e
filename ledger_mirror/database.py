"""
Database Schema and Connection Handling

SQLAlchemy models for the mirrored ledger state and connection management
with automatic reconnection. Redis sits in front as a position cache and
watermark checkpoint store, falling back to memory when unavailable.
"""

from typing import Any, Callable, Dict, Iterator, Optional, Tuple, TypeVar
from datetime import datetime, timedelta
from contextlib import contextmanager
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime,
    Numeric, Text, Index, ForeignKey, UniqueConstraint, Enum as SQLEnum, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError, DisconnectionError, SQLAlchemyError
import redis
from redis.exceptions import ConnectionError as RedisConnectionError

from .types import (
    EventType, EventStatus, PositionStatus, ActivityRole,
    LedgerMirrorError, PersistenceFailure
)
from .config import DatabaseConfig, RedisConfig

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class UserModel(Base):
    """Users table, keyed by lower-cased wallet address"""
    __tablename__ = 'users'

    id = Column(String(42), primary_key=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class MarketModel(Base):
    """Markets table, keyed by token address or logical pool id"""
    __tablename__ = 'markets'

    id = Column(String(66), primary_key=True)
    chain_id = Column(Integer, nullable=False, index=True)
    total_liquidity = Column(Numeric(78, 0), nullable=False, default=0)
    total_borrowed = Column(Numeric(78, 0), nullable=False, default=0)
    utilization_bps = Column(Integer, nullable=False, default=0)
    ipfs_hash = Column(String(100), nullable=True)
    last_update = Column(DateTime, nullable=False, default=datetime.utcnow)


class PositionModel(Base):
    """Materialized (user, market) positions; a cache of ledger state"""
    __tablename__ = 'positions'

    id = Column(String(110), primary_key=True)  # "{user}:{market}"
    user_id = Column(String(42), ForeignKey('users.id'), nullable=False, index=True)
    market_id = Column(String(66), ForeignKey('markets.id'), nullable=False, index=True)

    deposit_amount = Column(Numeric(78, 0), nullable=False)
    borrow_amount = Column(Numeric(78, 0), nullable=False)
    collateral_value = Column(Numeric(78, 0), nullable=False)
    price = Column(Numeric(78, 0), nullable=False)
    health_factor = Column(Numeric(12, 4), nullable=False)
    liquidation_risk = Column(Numeric(7, 4), nullable=False)
    interest_rate_bps = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(PositionStatus), nullable=False, index=True)

    # Provenance of degraded reads
    health_factor_source = Column(String(20), nullable=False)
    price_source = Column(String(20), nullable=False)
    config_source = Column(String(20), nullable=False)

    last_block = Column(Integer, nullable=True)
    last_update = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'market_id', name='uq_position_user_market'),
        Index('idx_market_health', 'market_id', 'health_factor'),
    )


class EventModel(Base):
    """Append-only ledger events, one row per transaction hash"""
    __tablename__ = 'events'

    tx_hash = Column(String(66), primary_key=True)
    chain_id = Column(Integer, nullable=False, index=True)
    event_type = Column(SQLEnum(EventType), nullable=False, index=True)
    market_id = Column(String(66), nullable=True, index=True)
    block_number = Column(Integer, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    payload = Column(Text, nullable=False)  # JSON string
    status = Column(SQLEnum(EventStatus), nullable=False, index=True)
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_type_chain_status', 'event_type', 'chain_id', 'status'),
    )


class UserActivityModel(Base):
    """Append-only per-user audit trail"""
    __tablename__ = 'user_activities'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(42), ForeignKey('users.id'), nullable=False, index=True)
    tx_hash = Column(String(66), nullable=False, index=True)
    market_id = Column(String(66), nullable=True)
    activity_type = Column(SQLEnum(EventType), nullable=False)
    role = Column(SQLEnum(ActivityRole), nullable=False)
    amount = Column(Numeric(78, 0), nullable=False)
    block_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('tx_hash', 'user_id', 'role', name='uq_activity_tx_user_role'),
    )


class RiskMetricModel(Base):
    """Health factor history, one row per position upsert"""
    __tablename__ = 'risk_metrics'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(42), nullable=False)
    market_id = Column(String(66), nullable=False)
    health_factor = Column(Numeric(12, 4), nullable=False)
    liquidation_risk = Column(Numeric(7, 4), nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index('idx_risk_user_market', 'user_id', 'market_id'),
    )


# ============================================================================
# Store Session Manager
# ============================================================================

class DatabaseManager:
    """
    Engine and transactional sessions for the mirror store.

    PostgreSQL gets a pre-pinged, recycled QueuePool and a per-statement
    timeout. SQLite (tests, local runs) shares one connection, so sessions
    are serialized in-process.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.url = config.connection_url
        self.is_sqlite = self.url.startswith("sqlite")
        self._lock = threading.RLock() if self.is_sqlite else None
        self.engine = None
        self._sessions: Optional[sessionmaker] = None
        self._build_engine()

    def _engine_options(self) -> Dict[str, Any]:
        timeout = self.config.pool_timeout_seconds
        if self.is_sqlite:
            return {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False, "timeout": timeout},
            }
        return {
            "poolclass": QueuePool,
            "pool_size": self.config.pool_size,
            "max_overflow": self.config.max_overflow,
            "pool_timeout": timeout,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
            "connect_args": {
                "connect_timeout": timeout,
                "options": f"-c statement_timeout={self.config.statement_timeout_ms}",
            },
        }

    def _build_engine(self):
        if self.engine is not None:
            self.engine.dispose()
        self.engine = create_engine(self.url, **self._engine_options())
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        logger.info(f"Store engine ready ({self.engine.dialect.name})")

    def create_tables(self):
        """Create any missing mirror tables"""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Table creation failed: {e}") from e
        logger.info(f"Store schema verified: {', '.join(sorted(Base.metadata.tables))}")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        One unit of work.

        Commits when the block exits normally and rolls back otherwise.
        LedgerMirrorError subclasses raised inside the block propagate as
        they are; anything else surfaces as PersistenceFailure. A lost
        connection also rebuilds the PostgreSQL engine.
        """
        if self._lock is not None:
            self._lock.acquire()
        session = self._sessions()
        try:
            yield session
            session.commit()
        except LedgerMirrorError:
            session.rollback()
            raise
        except (OperationalError, DisconnectionError) as e:
            session.rollback()
            logger.error(f"Store connection lost: {e}")
            if not self.is_sqlite:
                self._build_engine()
            raise PersistenceFailure(f"Store connection lost: {e}") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Store transaction rolled back: {e}")
            raise PersistenceFailure(f"Store transaction failed: {e}") from e
        finally:
            session.close()
            if self._lock is not None:
                self._lock.release()

    def health_check(self) -> bool:
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
        except PersistenceFailure as e:
            logger.error(f"Store health check failed: {e}")
            return False
        return True


# ============================================================================
# Cache
# ============================================================================

class MemoryCache:
    """Process-local stand-in for Redis with per-key expiry"""

    def __init__(self):
        # key -> (value, expires_at); None never expires
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}

    def set(self, key: str, value: str, ttl: Optional[int]):
        expires_at = datetime.utcnow() + timedelta(seconds=ttl) if ttl else None
        self._entries[key] = (value, expires_at)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and datetime.utcnow() >= expires_at:
            del self._entries[key]
            return None
        return value

    def delete(self, key: str):
        self._entries.pop(key, None)


class RedisManager:
    """
    Position cache and watermark checkpoint store.

    Any Redis connection error switches the manager to a MemoryCache for the
    rest of the process, until reconnect() succeeds. Values written while in
    fallback mode stay local and are not replayed into Redis.
    """

    def __init__(self, config: RedisConfig):
        self.config = config
        self.client: Optional[redis.Redis] = None
        self.memory = MemoryCache()
        self._use_fallback = True

        if config.enabled:
            self._connect()
        else:
            logger.info("Redis disabled, caching in memory")

    def _connect(self):
        client = redis.Redis(
            host=self.config.host,
            port=self.config.port,
            password=self.config.password,
            db=self.config.db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30
        )
        try:
            client.ping()
        except RedisConnectionError as e:
            logger.warning(f"Redis at {self.config.host}:{self.config.port} unreachable, caching in memory: {e}")
            self._use_fallback = True
            return

        self.client = client
        self._use_fallback = False
        logger.info(f"Redis connected at {self.config.host}:{self.config.port}")

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def _run(self, name: str, remote: Callable[[], T], local: Callable[[], T]) -> T:
        """Run against Redis, or against memory once Redis has failed"""
        if not self._use_fallback:
            try:
                return remote()
            except RedisConnectionError as e:
                logger.warning(f"Redis {name} failed, switching to in-memory cache: {e}")
                self._use_fallback = True
        return local()

    def set(self, key: str, value: str, ttl: Optional[int] = None, persist: bool = False) -> bool:
        """Store a value; persistent keys ignore the TTL"""
        ttl = None if persist else (ttl or self.config.ttl_seconds)

        def remote():
            if ttl is None:
                return self.client.set(key, value)
            return self.client.setex(key, ttl, value)

        self._run("set", remote, lambda: self.memory.set(key, value, ttl))
        return True

    def get(self, key: str) -> Optional[str]:
        return self._run("get", lambda: self.client.get(key), lambda: self.memory.get(key))

    def delete(self, key: str) -> bool:
        self._run("delete", lambda: self.client.delete(key), lambda: self.memory.delete(key))
        return True

    def reconnect(self):
        if self._use_fallback and self.config.enabled:
            logger.info("Retrying Redis connection")
            self._connect()


# ============================================================================
# Process-wide Instances
# ============================================================================

_db_manager: Optional[DatabaseManager] = None
_redis_manager: Optional[RedisManager] = None


def init_database(config: DatabaseConfig) -> DatabaseManager:
    """Connect to the store and create missing tables"""
    global _db_manager
    _db_manager = DatabaseManager(config)
    _db_manager.create_tables()
    return _db_manager


def init_redis(config: RedisConfig) -> RedisManager:
    global _redis_manager
    _redis_manager = RedisManager(config)
    return _redis_manager
