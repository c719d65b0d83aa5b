"""
MongoDB access layer

A single module-level client/database pair (configured from DATABASE_URL and
DATABASE_NAME) plus MongoStore, the only object the order and payment code
talks to. Inventory quantities are only ever changed through
MongoStore.try_decrement_variant, a single conditional update.
"""

import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database

T = TypeVar("T")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL and DATABASE_NAME else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return value as an ObjectId, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    if value is None:
        return None
    value = str(value)
    if not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def serialize_doc(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectId/datetime -> str."""
    if isinstance(doc, dict):
        out = {}
        for k, v in doc.items():
            key = "id" if k == "_id" else k
            out[key] = serialize_doc(v)
        return out
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


class MongoStore:
    """Inventory, order and purchase persistence on top of pymongo.

    Every method takes an optional ``session`` so it can join a transaction
    started by :meth:`run_in_transaction`.
    """

    def __init__(self, database: Database):
        self.db = database
        self.client = database.client

    @property
    def name(self) -> str:
        return self.db.name

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()

    def run_in_transaction(self, callback: Callable[[ClientSession], T]) -> T:
        """Run callback(session) inside one multi-document transaction.

        Commits when the callback returns, aborts and re-raises on any
        exception. Transient write conflicts (two checkouts touching the same
        product) are retried by pymongo, so the losing transaction re-reads
        the committed stock.
        """
        with self.client.start_session() as session:
            return session.with_transaction(callback)

    # Products / inventory

    def find_product(self, product_id: ObjectId, session: Optional[ClientSession] = None) -> Optional[dict]:
        return self.db["product"].find_one({"_id": product_id}, session=session)

    def try_decrement_variant(
        self,
        product_id: ObjectId,
        variant_id: ObjectId,
        amount: int,
        session: Optional[ClientSession] = None,
    ) -> bool:
        """Decrement a variant's quantity only if it currently holds >= amount."""
        result = self.db["product"].find_one_and_update(
            {
                "_id": product_id,
                "variants": {"$elemMatch": {"_id": variant_id, "quantity": {"$gte": amount}}},
            },
            {"$inc": {"variants.$[variant].quantity": -amount}},
            array_filters=[{"variant._id": variant_id}],
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        return result is not None

    # Generic documents

    def create_document(
        self,
        collection_name: str,
        data: Union[BaseModel, dict],
        session: Optional[ClientSession] = None,
    ) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump(by_alias=True, exclude_none=True)
        else:
            data_dict = dict(data)
        now = datetime.now(timezone.utc)
        data_dict.setdefault("created_at", now)
        data_dict["updated_at"] = now
        result = self.db[collection_name].insert_one(data_dict, session=session)
        return str(result.inserted_id)

    def find_by_id(
        self,
        collection_name: str,
        doc_id: ObjectId,
        session: Optional[ClientSession] = None,
    ) -> Optional[dict]:
        return self.db[collection_name].find_one({"_id": doc_id}, session=session)

    def find_one(
        self,
        collection_name: str,
        query: Dict[str, Any],
        session: Optional[ClientSession] = None,
    ) -> Optional[dict]:
        return self.db[collection_name].find_one(query, session=session)

    # Payment state

    def set_payment_status(
        self,
        collection_name: str,
        doc_id: ObjectId,
        allowed_from: Iterable[str],
        changes: Dict[str, Any],
        session: Optional[ClientSession] = None,
    ) -> bool:
        """Apply changes only while paymentStatus is one of allowed_from."""
        result = self.db[collection_name].update_one(
            {"_id": doc_id, "paymentStatus": {"$in": list(allowed_from)}},
            {"$set": {**changes, "updated_at": datetime.now(timezone.utc)}},
            session=session,
        )
        return result.modified_count == 1

    def increment(
        self,
        collection_name: str,
        doc_id: ObjectId,
        field: str,
        amount: int = 1,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.db[collection_name].update_one({"_id": doc_id}, {"$inc": {field: amount}}, session=session)

    def add_to_set(
        self,
        collection_name: str,
        doc_id: ObjectId,
        field: str,
        value: Any,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.db[collection_name].update_one({"_id": doc_id}, {"$addToSet": {field: value}}, session=session)
