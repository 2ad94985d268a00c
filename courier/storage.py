import logging
from typing import Callable, Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError

from courier.config import settings
from courier.errors import ConflictError, NotFoundError, StaleRecordError
from courier.utils import parse_positive_int, utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions move between FastAPI worker threads
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from courier.models import Message, User  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("messages", "users"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

class MessageStore:
    """
    Typed CRUD over the messages table, keyed by idempotency key.

    Records are only created and updated in place, never deleted. Updates are
    guarded by the mapper's version column, so a write based on a stale read
    fails with StaleRecordError instead of overwriting a newer state.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, message):
        """
        Persist a new message, assigning id and created_at.

        Raises:
            ConflictError: a record with the same idempotency key and
                perspective already exists.
        """
        message.created_at = utc_now_iso()
        logger.info(
            f"Creating message: key={message.idempotency_key}, "
            f"direction={message.direction}, is_sender={message.is_sender}"
        )
        try:
            self.db.add(message)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate message detected: {message.idempotency_key}")
            raise ConflictError(f"Message already exists: {message.idempotency_key}")
        logger.debug(f"Message created: id={message.id}")
        return message

    def find_by_idempotency_key(self, idempotency_key: str):
        """
        Return the record for a key, preferring the sender-perspective copy
        when a send produced two records.
        """
        from courier.models import Message

        return (
            self.db.query(Message)
            .filter(Message.idempotency_key == idempotency_key)
            .order_by(Message.is_sender.desc(), Message.id.asc())
            .first()
        )

    def find_by_id(self, message_id: int):
        from courier.models import Message

        return self.db.get(Message, message_id)

    def list_by_user(self, user_id: int, page=None, page_size=None) -> Tuple[list, int]:
        """
        Page through a user's messages, newest first.

        Args:
            user_id: Directory entry id
            page: 1-indexed page; invalid values fall back to 1
            page_size: items per page; invalid values fall back to DEFAULT_PAGE_SIZE

        Returns:
            Tuple of (messages on the page, total count for the user)
        """
        from courier.models import Message

        page = parse_positive_int(page, 1)
        page_size = parse_positive_int(page_size, settings.DEFAULT_PAGE_SIZE)

        query = self.db.query(Message).filter(Message.user_id == user_id)
        total = query.count()

        messages = (
            query.order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        logger.info(f"Retrieved {len(messages)} of {total} messages for user {user_id} (page={page})")
        return messages, total

    def update(self, message):
        """
        Replace a record in place.

        Raises:
            NotFoundError: the id is unknown.
            StaleRecordError: the row changed since this copy was read.
        """
        from courier.models import Message

        current = self.db.get(Message, message.id) if message.id is not None else None
        if current is None:
            raise NotFoundError(f"Message not found: {message.id}")
        current_id = current.id
        try:
            if current is not message:
                message = self.db.merge(message)
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise StaleRecordError(f"Message {current_id} was modified concurrently")
        logger.debug(f"Message updated: id={message.id}, status={message.status}")
        return message

    def apply(
        self,
        idempotency_key: str,
        mutate: Callable[[object], bool],
        retries: int = 5,
    ) -> Tuple[Optional[object], bool]:
        """
        Atomic read-modify-write of the record behind an idempotency key.

        `mutate` receives a freshly read record and returns True when it
        changed it. On a version conflict the record is re-read and `mutate`
        runs again against the newer state.

        Returns:
            Tuple of (record or None if the key is unknown, whether it changed)

        Raises:
            StaleRecordError: every attempt lost the race.
        """
        for attempt in range(1, retries + 1):
            message = self.find_by_idempotency_key(idempotency_key)
            if message is None:
                return None, False
            if not mutate(message):
                return message, False
            try:
                return self.update(message), True
            except StaleRecordError:
                logger.info(f"Concurrent update on {idempotency_key}, retrying (attempt {attempt}/{retries})")
        raise StaleRecordError(f"Gave up updating {idempotency_key} after {retries} attempts")


# =============================================================================
# Directory
# =============================================================================

class Directory:
    """Directory entries (users) resolved by normalized phone number."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int):
        from courier.models import User

        return self.db.get(User, user_id)

    def get_by_phone(self, phone_number: str):
        from courier.models import User

        return self.db.query(User).filter(User.phone_number == phone_number).first()

    def get_or_create(self, phone_number: str, full_name: str, provisional: bool = True):
        """
        Resolve the entry for a phone number, creating it when absent.

        Concurrent first-contact events race on the unique phone_number
        constraint; the loser rolls back and reads the winner's row.

        Returns:
            Tuple of (user, created)
        """
        from courier.models import User

        user = self.get_by_phone(phone_number)
        if user is not None:
            return user, False

        user = User(
            full_name=full_name,
            phone_number=phone_number,
            is_temp_name=provisional,
            is_active=True,
            created_at=utc_now_iso(),
        )
        try:
            self.db.add(user)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Directory entry for {phone_number} created concurrently, reloading")
            user = self.get_by_phone(phone_number)
            if user is None:
                raise
            return user, False

        logger.info(f"Created directory entry {user.id} for {phone_number} (provisional={provisional})")
        return user, True
