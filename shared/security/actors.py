"""
Who is asking. Every status change, list view and realtime subscription is
decided against one of these, never against raw role strings.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ActorRole(str, Enum):
    STUDENT = "student"
    RESTAURANT = "restaurant"
    COURIER = "courier"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    id: str
    # Restaurant consoles and couriers act on behalf of one restaurant
    restaurant_id: Optional[int] = None

    @classmethod
    def student(cls, user_id: str) -> "Actor":
        return cls(ActorRole.STUDENT, user_id)

    @classmethod
    def restaurant(cls, user_id: str, restaurant_id: int) -> "Actor":
        return cls(ActorRole.RESTAURANT, user_id, restaurant_id)

    @classmethod
    def courier(cls, user_id: str, restaurant_id: Optional[int] = None) -> "Actor":
        return cls(ActorRole.COURIER, user_id, restaurant_id)

    @classmethod
    def system(cls, name: str = "sla-supervisor") -> "Actor":
        return cls(ActorRole.SYSTEM, name)

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.RESTAURANT, ActorRole.COURIER)


SYSTEM_ACTOR = Actor.system()
