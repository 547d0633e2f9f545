# call_operations.py

import threading
import uuid
from collections import OrderedDict
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pymongo import ReturnDocument, ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from db_config import get_db
from errors import StorageError
from models import Call, ConversationalTurn, EmotionalMetric, EmotionScores, Suggestion

# Per-call locks so concurrent first chunks of one session create a single call.
# Bounded: calls that are never ended age out oldest-first.
MAX_TRACKED_CALLS = 1000
call_locks = OrderedDict()
call_locks_lock = threading.Lock()


def get_lock_for_call(call_id):
    """
    Safely retrieves or creates a threading.Lock for a given call_id.
    """
    with call_locks_lock:
        lock = call_locks.get(call_id)
        if lock is None:
            lock = threading.Lock()
            call_locks[call_id] = lock
            while len(call_locks) > MAX_TRACKED_CALLS:
                call_locks.popitem(last=False)
        else:
            call_locks.move_to_end(call_id)
        return lock


def cleanup_call_resources(call_id):
    """Removes the lock for a finished call."""
    with call_locks_lock:
        if call_id in call_locks:
            del call_locks[call_id]
            print(f"[LOCK_CLEANUP] Cleared lock for completed call {call_id}")


def new_id():
    return str(uuid.uuid4())


class _Repository:
    """Common get/delete plumbing for one collection keyed by `id`."""

    entity = None

    def __init__(self, collection):
        self.collection = collection

    def _wrap(self, action, e):
        print(f"[DB ERROR] {self.entity.__name__} {action} failed: {e}")
        return StorageError(f"{self.entity.__name__} {action} failed: {e}")

    def get_by_id(self, item_id):
        try:
            doc = self.collection.find_one({"id": item_id}, {"_id": 0})
        except PyMongoError as e:
            raise self._wrap("read", e) from e
        return self.entity.from_document(doc) if doc else None

    def delete(self, item_id) -> bool:
        try:
            result = self.collection.delete_one({"id": item_id})
        except PyMongoError as e:
            raise self._wrap("delete", e) from e
        return result.deleted_count > 0

    def _insert(self, item):
        try:
            self.collection.insert_one(asdict(item))
        except PyMongoError as e:
            raise self._wrap("create", e) from e
        return item

    def _find(self, query, sort=None, limit=0):
        try:
            cursor = self.collection.find(query, {"_id": 0})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return [self.entity.from_document(doc) for doc in cursor]
        except PyMongoError as e:
            raise self._wrap("read", e) from e


class CallsRepository(_Repository):
    entity = Call

    def create(self, agent_id, customer_id, call_id=None, start_time=None) -> Call:
        now = datetime.now(timezone.utc)
        call = Call(
            id=call_id or new_id(),
            agent_id=agent_id,
            customer_id=customer_id,
            start_time=start_time or now,
            created_at=now,
            updated_at=now,
        )
        return self._insert(call)

    def get_or_create(self, call_id, agent_id, customer_id) -> Call:
        """
        Return the call with this id, creating it if it does not exist yet.

        Safe under concurrent first chunks: the insert is an atomic upsert, and
        a unique-index race between processes falls back to a read.
        """
        with get_lock_for_call(call_id):
            now = datetime.now(timezone.utc)
            fields = asdict(Call(
                id=call_id,
                agent_id=agent_id,
                customer_id=customer_id,
                start_time=now,
                created_at=now,
                updated_at=now,
            ))
            fields.pop("id")
            try:
                doc = self.collection.find_one_and_update(
                    {"id": call_id},
                    {"$setOnInsert": fields},
                    projection={"_id": 0},
                    upsert=True,
                    return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                print(f"[DB] Call {call_id} was created concurrently, reading it back")
                call = self.get_by_id(call_id)
                if call is None:
                    raise self._wrap("get_or_create", f"call {call_id} vanished after a duplicate key error")
                return call
            except PyMongoError as e:
                raise self._wrap("get_or_create", e) from e
            if doc is None:
                raise self._wrap("get_or_create", f"upsert for call {call_id} returned no document")
            return Call.from_document(doc)

    def list(self, limit=100, agent_id=None, customer_id=None, outcome=None,
             start_time_from=None, start_time_to=None) -> List[Call]:
        """Newest calls first, optionally filtered by agent, customer, outcome and start-time range."""
        query = {}
        if agent_id:
            query["agent_id"] = agent_id
        if customer_id:
            query["customer_id"] = customer_id
        if outcome:
            query["outcome"] = outcome
        if start_time_from or start_time_to:
            query["start_time"] = {}
            if start_time_from:
                query["start_time"]["$gte"] = start_time_from
            if start_time_to:
                query["start_time"]["$lte"] = start_time_to
        return self._find(query, sort=[("start_time", DESCENDING)], limit=limit)

    def update(self, call_id, **fields) -> Optional[Call]:
        fields["updated_at"] = datetime.now(timezone.utc)
        try:
            doc = self.collection.find_one_and_update(
                {"id": call_id},
                {"$set": fields},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise self._wrap("update", e) from e
        return Call.from_document(doc) if doc else None


class TurnsRepository(_Repository):
    entity = ConversationalTurn

    def __init__(self, collection, db):
        super().__init__(collection)
        self.db = db

    def next_turn_numbers(self, call_id, count=1) -> range:
        return self.db.next_sequence(f"turns:{call_id}", count)

    def create(self, call_id, turn_number, speaker, transcript, confidence, timestamp_offset) -> ConversationalTurn:
        turn = ConversationalTurn(
            id=new_id(),
            call_id=call_id,
            turn_number=turn_number,
            speaker=speaker,
            transcript=transcript,
            confidence=confidence,
            timestamp_offset=timestamp_offset,
        )
        return self._insert(turn)

    def get_by_call_id(self, call_id) -> List[ConversationalTurn]:
        return self._find({"call_id": call_id}, sort=[("turn_number", ASCENDING)])


class EmotionalMetricsRepository(_Repository):
    entity = EmotionalMetric

    def create(self, call_id, scores: EmotionScores, timestamp_offset, turn_id=None) -> EmotionalMetric:
        metric = EmotionalMetric(
            id=new_id(),
            call_id=call_id,
            turn_id=turn_id,
            timestamp_offset=timestamp_offset,
            anger=scores.anger,
            frustration=scores.frustration,
            satisfaction=scores.satisfaction,
            neutral=scores.neutral,
            confidence=scores.confidence,
        )
        return self._insert(metric)

    def get_by_call_id(self, call_id) -> List[EmotionalMetric]:
        return self._find({"call_id": call_id}, sort=[("timestamp_offset", ASCENDING)])

    def get_by_call_ids(self, call_ids: Iterable[str]) -> List[EmotionalMetric]:
        return self._find({"call_id": {"$in": list(call_ids)}})


class SuggestionsRepository(_Repository):
    entity = Suggestion

    def create(self, suggestion: Suggestion) -> Suggestion:
        return self._insert(suggestion)

    def get_by_call_id(self, call_id) -> List[Suggestion]:
        return self._find({"call_id": call_id}, sort=[("created_at", ASCENDING)])

    def update_feedback(self, suggestion_id, was_followed: bool) -> Optional[Suggestion]:
        try:
            doc = self.collection.find_one_and_update(
                {"id": suggestion_id},
                {"$set": {"was_followed": bool(was_followed)}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise self._wrap("update", e) from e
        return Suggestion.from_document(doc) if doc else None


class CallOperations:
    """The four entity repositories over one database connection"""

    def __init__(self, db):
        self.db = db
        self.calls = CallsRepository(db.calls_collection)
        self.turns = TurnsRepository(db.turns_collection, db)
        self.metrics = EmotionalMetricsRepository(db.metrics_collection)
        self.suggestions = SuggestionsRepository(db.suggestions_collection)

    def delete_call(self, call_id) -> bool:
        """Delete a call together with its turns, metrics and suggestions."""
        try:
            self.db.turns_collection.delete_many({"call_id": call_id})
            self.db.metrics_collection.delete_many({"call_id": call_id})
            self.db.suggestions_collection.delete_many({"call_id": call_id})
            self.db.counters_collection.delete_one({"_id": f"turns:{call_id}"})
        except PyMongoError as e:
            print(f"[DB ERROR] Failed to delete data for call {call_id}: {e}")
            raise StorageError(str(e)) from e
        deleted = self.calls.delete(call_id)
        cleanup_call_resources(call_id)
        return deleted


def get_call_operations(settings=None):
    """Get CallOperations instance with database connection"""
    db = get_db(settings)
    return CallOperations(db)
