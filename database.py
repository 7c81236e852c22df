"""
MongoDB access for the marketplace.

A ``Store`` wraps one pymongo database. It is built once by the app lifespan
(``Store.connect``) and handed to routes through the ``get_store`` dependency,
so tests can swap in a store over an in-memory client.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson.objectid import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, GEOSPHERE, TEXT, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "farm_market")


def to_object_id(id_str: str) -> Optional[ObjectId]:
    """Parse a hex id, returning None when it is not a valid ObjectId."""
    if isinstance(id_str, ObjectId):
        return id_str
    if not ObjectId.is_valid(id_str):
        return None
    return ObjectId(id_str)


class Store:
    def __init__(self, db, client: Optional[MongoClient] = None):
        self.db = db
        self._client = client

    @classmethod
    def connect(cls, url: str = DATABASE_URL, name: str = DATABASE_NAME) -> "Store":
        client = MongoClient(url)
        logger.info("Connected to MongoDB database %s", name)
        return cls(client[name], client)

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info("MongoDB connection closed")

    def ensure_indexes(self):
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["product"].create_index([("name", TEXT), ("description", TEXT), ("category", TEXT)])
        self.db["product"].create_index([("location", GEOSPHERE)])
        self.db["product"].create_index([("farmer_id", ASCENDING)])
        self.db["order"].create_index([("customer_id", ASCENDING), ("created_at", ASCENDING)])
        self.db["order"].create_index([("farmer_id", ASCENDING), ("created_at", ASCENDING)])

    # ----------------------- Generic CRUD -----------------------
    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        if isinstance(data, BaseModel):
            doc = data.model_dump()
        else:
            doc = dict(data)
        now = datetime.now(timezone.utc)
        doc["created_at"] = now
        doc["updated_at"] = now
        result = self.db[collection_name].insert_one(doc)
        return str(result.inserted_id)

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_by_id(self, collection_name: str, id_str: str) -> Optional[dict]:
        oid = to_object_id(id_str)
        if oid is None:
            return None
        return self.db[collection_name].find_one({"_id": oid})

    def find_one(self, collection_name: str, filter_dict: dict) -> Optional[dict]:
        return self.db[collection_name].find_one(filter_dict)

    def find_page(
        self,
        collection_name: str,
        filter_dict: dict,
        sort: List[Tuple[str, int]],
        skip: int,
        limit: int,
    ) -> Tuple[List[dict], int]:
        cursor = self.db[collection_name].find(filter_dict).sort(sort).skip(skip).limit(limit)
        docs = list(cursor)
        total = self.db[collection_name].count_documents(filter_dict)
        return docs, total

    def count(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        return self.db[collection_name].count_documents(filter_dict or {})

    def update_by_id(
        self,
        collection_name: str,
        id_str: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, Union[int, float]]] = None,
        conditions: Optional[dict] = None,
    ) -> Optional[dict]:
        """Apply ``$set``/``$inc`` to one document and return it after the update.

        ``conditions`` are extra filter terms; when they do not match, nothing
        is written and None is returned.
        """
        oid = to_object_id(id_str)
        if oid is None:
            return None
        update: Dict[str, dict] = {"$set": dict(set_fields or {})}
        update["$set"]["updated_at"] = datetime.now(timezone.utc)
        if inc_fields:
            update["$inc"] = dict(inc_fields)
        filter_dict = {"_id": oid}
        filter_dict.update(conditions or {})
        return self.db[collection_name].find_one_and_update(
            filter_dict, update, return_document=ReturnDocument.AFTER
        )

    def delete_by_id(self, collection_name: str, id_str: str) -> bool:
        oid = to_object_id(id_str)
        if oid is None:
            return False
        return self.db[collection_name].delete_one({"_id": oid}).deleted_count > 0

    # ----------------------- Inventory -----------------------
    def reserve_stock(self, product_id: str, quantity: int) -> bool:
        """Atomically take ``quantity`` units if the product is available and has them."""
        updated = self.update_by_id(
            "product",
            product_id,
            inc_fields={"quantity": -quantity},
            conditions={"quantity": {"$gte": quantity}, "is_available": True},
        )
        return updated is not None

    def release_stock(self, product_id: str, quantity: int):
        self.update_by_id("product", product_id, inc_fields={"quantity": quantity})

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()


def get_store(request: Request) -> Store:
    return request.app.state.store
