"""MongoDB Client - Connection, session and index management"""
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from pymongo import MongoClient as PyMongoClient
from pymongo import ASCENDING
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError
from pydantic import BaseModel, ValidationError

from ..config.settings import Settings
from ..domain.errors import AlreadyExistsError, NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

# Session of the transaction running in the current context
_session_var: ContextVar[Optional[ClientSession]] = ContextVar("mongo_session", default=None)


class MongoConnection:
    """
    MongoDB connection owned by a WorkflowContext

    Constructed once at process start and handed to the Mongo stores.
    """

    def __init__(self, settings: Settings, client: Optional[PyMongoClient] = None):
        self.settings = settings
        self._client = client
        self._database: Optional[Database] = None

    @property
    def client(self) -> PyMongoClient:
        """Get or create the MongoDB client"""
        if self._client is None:
            logger.info(f"Connecting to MongoDB: {self.settings.mongo_uri}")
            self._client = PyMongoClient(
                self.settings.mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=5000,
                socketTimeoutMS=30000,
            )
            try:
                self._client.admin.command("ping")
                logger.info("MongoDB connection successful")
            except ConnectionFailure as e:
                logger.error(f"MongoDB connection failed: {e}")
                raise
        return self._client

    @property
    def database(self) -> Database:
        if self._database is None:
            self._database = self.client[self.settings.mongo_db]
            logger.info(f"Using database: {self.settings.mongo_db}")
        return self._database

    def collection(self, name: str) -> Collection:
        return self.database[name]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._database = None
            logger.info("MongoDB connection closed")

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the block in a multi-document transaction

        Nested blocks join the outer transaction. When transactions are
        disabled in settings the block runs without a session.
        """
        if not self.settings.mongo_use_transactions or _session_var.get() is not None:
            yield
            return

        with self.client.start_session() as session:
            with session.start_transaction():
                token = _session_var.set(session)
                try:
                    yield
                finally:
                    _session_var.reset(token)

    @staticmethod
    def session() -> Optional[ClientSession]:
        """Session of the running transaction, if any"""
        return _session_var.get()

    # =========================================================================
    # Indexes & health
    # =========================================================================

    def create_indexes(self) -> None:
        """Create all required indexes"""
        db = self.database
        logger.info("Creating MongoDB indexes...")

        db["workflow_definitions"].create_index("name", unique=True)

        activity_definitions = db["activity_definitions"]
        activity_definitions.create_index("definition_id")

        transitions = db["transitions"]
        transitions.create_index([("from_activity_id", ASCENDING), ("name", ASCENDING)], unique=True)
        transitions.create_index("definition_id")

        workflows = db["workflows"]
        workflows.create_index([("definition_id", ASCENDING), ("item_id", ASCENDING)])
        workflows.create_index([("definition_id", ASCENDING), ("status", ASCENDING)])

        activities = db["activities"]
        activities.create_index([("workflow_id", ASCENDING), ("created_at", ASCENDING)])
        activities.create_index("activity_definition_id")

        db["decisions"].create_index([("activity_id", ASCENDING), ("decided_at", ASCENDING)])

        db["rules"].create_index("item_id")
        db["conditions"].create_index("rule_id")
        selectors = db["selectors"]
        selectors.create_index("item_id")
        selectors.create_index("group_id")
        db["filters"].create_index("selector_id")

        logger.info("MongoDB indexes created successfully")

    def health_check(self) -> Dict[str, Any]:
        """Check MongoDB health"""
        try:
            self.client.admin.command("ping")
            return {
                "status": "healthy",
                "database": self.settings.mongo_db,
                "connection": "ok"
            }
        except PyMongoError as e:
            logger.error(f"MongoDB health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": self.settings.mongo_db,
                "error": str(e)
            }


class MongoRepository:
    """Base class for repositories storing pydantic models as documents"""

    def __init__(self, connection: MongoConnection):
        self.connection = connection

    def transaction(self):
        return self.connection.transaction()

    def _collection(self, name: str) -> Collection:
        return self.connection.collection(name)

    def _insert(self, collection: str, key_attr: str, model: M, new_id: Callable[[], str]) -> M:
        stored = model.model_copy(update={key_attr: getattr(model, key_attr) or new_id()})
        doc = stored.model_dump(mode="json")
        doc["_id"] = getattr(stored, key_attr)
        try:
            self._collection(collection).insert_one(doc, session=self.connection.session())
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"{collection} {doc['_id']} already exists",
                details={key_attr: doc["_id"]}
            )
        return stored

    def _replace(self, collection: str, key_attr: str, model: M, not_found: Type[NotFoundError] = NotFoundError) -> M:
        key = getattr(model, key_attr)
        doc = model.model_dump(mode="json")
        doc["_id"] = key
        result = self._collection(collection).replace_one({"_id": key}, doc, session=self.connection.session())
        if result.matched_count == 0:
            raise not_found(f"{collection} {key} not found", details={key_attr: key})
        return model

    def _find_one(self, collection: str, model_cls: Type[M], query: Dict[str, Any]) -> Optional[M]:
        doc = self._collection(collection).find_one(query, session=self.connection.session())
        return self._decode(collection, model_cls, doc) if doc else None

    def _find(
        self,
        collection: str,
        model_cls: Type[M],
        query: Dict[str, Any],
        sort: Optional[List[Tuple[str, int]]] = None
    ) -> List[M]:
        cursor = self._collection(collection).find(query, session=self.connection.session())
        if sort:
            cursor = cursor.sort(sort)
        return [self._decode(collection, model_cls, doc) for doc in cursor]

    def _delete(self, collection: str, query: Dict[str, Any]) -> int:
        result = self._collection(collection).delete_many(query, session=self.connection.session())
        return result.deleted_count

    @staticmethod
    def _decode(collection: str, model_cls: Type[M], doc: Dict[str, Any]) -> M:
        doc = dict(doc)
        key = doc.pop("_id", None)
        try:
            return model_cls.model_validate(doc)
        except ValidationError as e:
            logger.error(
                f"Corrupted {collection} document {key}. Validation failed: {str(e)[:500]}",
                extra={"error_count": len(e.errors())}
            )
            raise
