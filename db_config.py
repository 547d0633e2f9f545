import os
import threading
from typing import Optional

from pymongo import MongoClient, ReturnDocument, ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from errors import StorageError


class MongoDB:
    """MongoDB connection manager for calls, turns, emotion metrics and suggestions"""

    def __init__(self, client=None, db_name: Optional[str] = None, uri: Optional[str] = None,
                 host: Optional[str] = None, port: Optional[int] = None):
        self.client = client
        self.db = None
        self.db_name = db_name or os.getenv('MONGODB_DB_NAME', 'call_monitor')
        self._uri = uri
        self._host = host
        self._port = port
        self.calls_collection = None
        self.turns_collection = None
        self.metrics_collection = None
        self.suggestions_collection = None
        self.counters_collection = None
        self.connect()

    def connect(self):
        """Establish MongoDB connection"""
        try:
            if self.client is None:
                mongo_uri = self._uri or os.getenv('MONGODB_URI')
                if mongo_uri:
                    # Use MongoDB URI (for cloud databases like MongoDB Atlas)
                    self.client = MongoClient(mongo_uri)
                else:
                    host = self._host or os.getenv('MONGODB_HOST', 'localhost')
                    port = int(self._port or os.getenv('MONGODB_PORT', 27017))
                    username = os.getenv('MONGODB_USER')
                    password = os.getenv('MONGODB_PASS')

                    if username and password:
                        self.client = MongoClient(
                            host=host,
                            port=port,
                            username=username,
                            password=password,
                            authSource=self.db_name
                        )
                    else:
                        self.client = MongoClient(host=host, port=port)

                # Test connection
                self.client.admin.command('ping')

            self.db = self.client[self.db_name]

            self.calls_collection = self.db.calls
            self.turns_collection = self.db.conversational_turns
            self.metrics_collection = self.db.emotional_metrics
            self.suggestions_collection = self.db.suggestions
            self.counters_collection = self.db.counters

            print(f"[DB] Successfully connected to MongoDB: {self.db_name}")

            self._create_indexes()

        except Exception as e:
            print(f"[DB ERROR] Failed to connect to MongoDB: {e}")
            raise

    def _create_indexes(self):
        """Create database indexes for better query performance"""
        try:
            self.calls_collection.create_index("id", unique=True)
            self.calls_collection.create_index([("created_at", DESCENDING)])
            self.calls_collection.create_index("agent_id")

            self.turns_collection.create_index("id", unique=True)
            self.turns_collection.create_index([("call_id", ASCENDING), ("turn_number", ASCENDING)])

            self.metrics_collection.create_index("id", unique=True)
            self.metrics_collection.create_index([("call_id", ASCENDING), ("timestamp_offset", ASCENDING)])

            self.suggestions_collection.create_index("id", unique=True)
            self.suggestions_collection.create_index("call_id")

            print("[DB] Database indexes created successfully")
        except Exception as e:
            print(f"[DB WARNING] Failed to create indexes: {e}")

    def next_sequence(self, key: str, count: int = 1) -> range:
        """
        Atomically reserve `count` consecutive values of the named sequence.

        Returns the reserved values as a range; the first value ever handed out
        for a key is 1.
        """
        if count < 1:
            return range(0)
        try:
            doc = self.counters_collection.find_one_and_update(
                {"_id": key},
                {"$inc": {"value": count}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StorageError(f"Failed to allocate sequence '{key}': {e}") from e
        end = int(doc["value"])
        return range(end - count + 1, end + 1)

    def close(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            print("[DB] MongoDB connection closed")


_mongodb = None
_mongodb_lock = threading.Lock()


def get_db(settings=None) -> MongoDB:
    """Return the shared MongoDB instance, connecting on first use"""
    global _mongodb
    with _mongodb_lock:
        if _mongodb is None:
            if settings is None:
                _mongodb = MongoDB()
            else:
                _mongodb = MongoDB(
                    db_name=settings.mongodb_db_name,
                    uri=settings.mongodb_uri,
                    host=settings.mongodb_host,
                    port=settings.mongodb_port
                )
        return _mongodb
