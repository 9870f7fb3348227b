"""
MongoDB access for the Task/User backend.

Holds the client, the two collections, their indexes, and the transaction
runner every relationship write goes through.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from loguru import logger
from pymongo import ASCENDING, MongoClient, ReadPreference
from pymongo.client_session import ClientSession
from pymongo.errors import ConnectionFailure, OperationFailure
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from config import Settings, get_settings
from errors import TransientStoreError

T = TypeVar("T")

TASKS = "tasks"
USERS = "users"


def now() -> datetime:
    return datetime.now(timezone.utc)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return the ObjectId for `value`, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class Database:
    def __init__(self, client: MongoClient, name: str):
        self.client = client
        self.db = client[name]

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        client = MongoClient(
            settings.database_url,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
            tz_aware=True,
        )
        return cls(client, settings.database_name)

    @property
    def tasks(self):
        return self.db[TASKS]

    @property
    def users(self):
        return self.db[USERS]

    def ensure_indexes(self) -> None:
        self.users.create_index([("email", ASCENDING)], unique=True, name="email_unique")
        # the Update-User sweep filters on assignedUser
        self.tasks.create_index([("assignedUser", ASCENDING)], name="assigned_user")
        logger.info("Indexes ensured on {}.{} and {}.{}", self.db.name, USERS, self.db.name, TASKS)

    def run_transaction(self, callback: Callable[[Optional[ClientSession]], T]) -> T:
        """Run `callback(session)` inside one multi-document transaction.

        The driver retries the callback on TransientTransactionError and the
        commit on UnknownTransactionCommitResult; errors left after that are
        raised as TransientStoreError. Everything else propagates unchanged.
        """
        try:
            with self.client.start_session() as session:
                return session.with_transaction(
                    callback,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                    read_preference=ReadPreference.PRIMARY,
                )
        except ConnectionFailure as exc:
            logger.warning("Transaction aborted, store unreachable: {}", exc)
            raise TransientStoreError() from exc
        except OperationFailure as exc:
            if exc.has_error_label("TransientTransactionError") or exc.has_error_label(
                "UnknownTransactionCommitResult"
            ):
                logger.warning("Transaction aborted after retries: {}", exc)
                raise TransientStoreError() from exc
            raise

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
        except ConnectionFailure:
            return False
        return True

    def close(self) -> None:
        self.client.close()


_database: Optional[Database] = None


def get_database() -> Database:
    global _database
    if _database is None:
        _database = Database.from_settings(get_settings())
    return _database
