from enum import Enum
from typing import Any, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

from .models import (
    CourseEnrollment,
    Member,
    Payment,
    PointTransaction,
    Product,
    ScheduleEvent,
)

T = TypeVar("T", bound=BaseModel)


class Collection(str, Enum):
    MEMBER = "Member"
    PRODUCT = "Product"
    COURSE_ENROLLMENT = "CourseEnrollment"
    PAYMENT = "Payment"
    POINT_TRANSACTION = "PointTransaction"
    SCHEDULE_EVENT = "ScheduleEvent"


COLLECTION_TYPES: dict[Collection, type[BaseModel]] = {
    Collection.MEMBER: Member,
    Collection.PRODUCT: Product,
    Collection.COURSE_ENROLLMENT: CourseEnrollment,
    Collection.PAYMENT: Payment,
    Collection.POINT_TRANSACTION: PointTransaction,
    Collection.SCHEDULE_EVENT: ScheduleEvent,
}


class RecordStore:
    """In-memory collection store keyed by entity id.

    Each call is atomic on its own; there are no cross-collection
    transactions. Values are copied on the way in and out so callers never
    share references with stored records.
    """

    def __init__(self):
        self._collections: dict[Collection, dict[UUID, BaseModel]] = {
            collection: {} for collection in Collection
        }

    def get(self, collection: Collection, entity_id: UUID) -> Optional[Any]:
        entity = self._collections[collection].get(entity_id)
        return entity.model_copy(deep=True) if entity is not None else None

    def put(self, collection: Collection, entity: T) -> T:
        expected = COLLECTION_TYPES[collection]
        if not isinstance(entity, expected):
            raise TypeError(f"{collection.value} expects {expected.__name__}, got {type(entity).__name__}")
        self._collections[collection][entity.id] = entity.model_copy(deep=True)
        return entity

    def delete(self, collection: Collection, entity_id: UUID) -> bool:
        return self._collections[collection].pop(entity_id, None) is not None

    def query_by_field(self, collection: Collection, field: str, value: Any) -> list[Any]:
        return [
            e.model_copy(deep=True)
            for e in self._collections[collection].values()
            if getattr(e, field, None) == value
        ]

    def query_all(self, collection: Collection) -> list[Any]:
        return [e.model_copy(deep=True) for e in self._collections[collection].values()]

    def count(self, collection: Collection) -> int:
        return len(self._collections[collection])
