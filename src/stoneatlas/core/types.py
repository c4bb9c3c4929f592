"""Shared domain types for stoneatlas.

This module provides:
- Category / CachePolicy: cache partitions and their retention policy
- Stone, StoneUser: the domain record returned by the API
- CreateStoneRequest: payload for creating or updating a stone
- StoneStats: aggregate statistics over a list of stones
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class CachePolicy(str, Enum):
    """How a category treats cached entries missing from a fresh fetch."""

    REPLACE = "replace"  # Stale entries are deleted
    ACCUMULATE = "accumulate"  # Entries are only inserted or updated


class Category(str, Enum):
    """Cache partitions.

    Values match the identifiers persisted in the cache database.
    """

    OWN = "user_stones"
    PUBLIC = "public_stones"
    NEARBY = "nearby_stones"

    @property
    def policy(self) -> CachePolicy:
        """Retention policy, fixed per category."""
        if self is Category.NEARBY:
            return CachePolicy.ACCUMULATE
        return CachePolicy.REPLACE


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class StoneUser:
    """Owner information embedded in a stone."""

    id: uuid.UUID | None
    username: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoneUser:
        """Create from API response dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected a user object, got {type(data).__name__}")
        return cls(id=_parse_uuid(data.get("id")), username=data.get("username", ""))

    def to_dict(self) -> dict[str, Any]:
        """Convert to API dictionary."""
        return {
            "id": str(self.id) if self.id else None,
            "username": self.username,
        }


@dataclass
class Stone:
    """A stone lifting record as returned by the API.

    Attributes:
        id: Server identifier (None for records not yet created).
        is_public: Whether the stone also belongs to the public feed.
        lifting_level: One of wind, lap, chest, shoulder, overhead.
        weight: Confirmed weight, if any.
        estimated_weight: Estimated weight, if any.
    """

    id: uuid.UUID | None
    is_public: bool
    lifting_level: str
    user: StoneUser
    name: str | None = None
    weight: float | None = None
    estimated_weight: float | None = None
    stone_type: str | None = None
    description: str | None = None
    image_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    carry_distance: float | None = None
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stone:
        """Create from API response dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected a stone object, got {type(data).__name__}")
        return cls(
            id=_parse_uuid(data.get("id")),
            is_public=bool(data["isPublic"]),
            lifting_level=data["liftingLevel"],
            user=StoneUser.from_dict(data["user"]),
            name=data.get("name"),
            weight=data.get("weight"),
            estimated_weight=data.get("estimatedWeight"),
            stone_type=data.get("stoneType"),
            description=data.get("description"),
            image_url=data.get("imageUrl"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            location_name=data.get("locationName"),
            carry_distance=data.get("carryDistance"),
            created_at=_parse_datetime(data.get("createdAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to API dictionary (camelCase keys)."""
        return {
            "id": str(self.id) if self.id else None,
            "name": self.name,
            "weight": self.weight,
            "estimatedWeight": self.estimated_weight,
            "stoneType": self.stone_type,
            "description": self.description,
            "imageUrl": self.image_url,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "locationName": self.location_name,
            "isPublic": self.is_public,
            "liftingLevel": self.lifting_level,
            "carryDistance": self.carry_distance,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "user": self.user.to_dict(),
        }

    @property
    def effective_weight(self) -> float | None:
        """Confirmed weight, falling back to the estimate."""
        return self.weight if self.weight is not None else self.estimated_weight

    @property
    def has_valid_location(self) -> bool:
        """Whether the stone carries usable coordinates."""
        if self.latitude is None or self.longitude is None:
            return False
        return (
            self.latitude != 0
            and self.longitude != 0
            and abs(self.latitude) <= 90
            and abs(self.longitude) <= 180
        )


@dataclass
class CreateStoneRequest:
    """Payload for creating (POST) or updating (PUT) a stone."""

    is_public: bool
    lifting_level: str
    name: str | None = None
    weight: float | None = None
    estimated_weight: float | None = None
    stone_type: str | None = None
    description: str | None = None
    image_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    carry_distance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to API dictionary (camelCase keys)."""
        return {
            "name": self.name,
            "weight": self.weight,
            "estimatedWeight": self.estimated_weight,
            "stoneType": self.stone_type,
            "description": self.description,
            "imageUrl": self.image_url,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "locationName": self.location_name,
            "isPublic": self.is_public,
            "liftingLevel": self.lifting_level,
            "carryDistance": self.carry_distance,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreateStoneRequest:
        """Create from API dictionary."""
        return cls(
            is_public=bool(data["isPublic"]),
            lifting_level=data["liftingLevel"],
            name=data.get("name"),
            weight=data.get("weight"),
            estimated_weight=data.get("estimatedWeight"),
            stone_type=data.get("stoneType"),
            description=data.get("description"),
            image_url=data.get("imageUrl"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            location_name=data.get("locationName"),
            carry_distance=data.get("carryDistance"),
        )

    def to_json(self) -> bytes:
        """Serialize for durable storage in the offline queue."""
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> CreateStoneRequest:
        """Deserialize a payload written by to_json().

        Raises:
            ValueError: If the payload is not a valid request.
        """
        try:
            return cls.from_dict(json.loads(payload))
        except (KeyError, TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid stone request payload: {e}") from e


@dataclass
class StoneStats:
    """Aggregate statistics over a list of stones."""

    stones: list[Stone] = field(default_factory=list)

    @property
    def total_stones(self) -> int:
        return len(self.stones)

    @property
    def total_weight(self) -> float:
        return sum(s.effective_weight or 0.0 for s in self.stones)

    @property
    def heaviest_stone(self) -> float:
        weights = [s.effective_weight for s in self.stones if s.effective_weight is not None]
        return max(weights, default=0.0)

    @property
    def average_weight(self) -> float:
        if not self.stones:
            return 0.0
        return self.total_weight / self.total_stones

    @property
    def public_stones(self) -> int:
        return sum(1 for s in self.stones if s.is_public)

    @property
    def private_stones(self) -> int:
        return self.total_stones - self.public_stones

    @property
    def stones_with_location(self) -> int:
        return sum(1 for s in self.stones if s.has_valid_location)
