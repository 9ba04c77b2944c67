"""
Core data models for the TensorTours client.

This module defines the session, cache and backend payload structures shared by
the credential store, session manager, request dispatcher and tour API.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from enum import Enum

from tourshared.exceptions import ValidationError


def now_millis() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class TourType(Enum):
    """Types of tours available."""
    HISTORY = "history"
    CULTURAL = "cultural"
    ARCHITECTURE = "architecture"
    ART = "art"
    NATURE = "nature"


class SessionState(Enum):
    """Authentication state machine states."""
    NO_SESSION = "no_session"
    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    INVALID = "invalid"


class OperationKind(Enum):
    """Backend operation categories used for dispatch and caching."""
    PLACES = "places"
    TOUR = "tour"
    ON_DEMAND_TOUR = "on_demand_tour"
    PREVIEW_TOUR = "preview_tour"
    CITY_PREVIEW = "city_preview"
    PREVIEW_CONTENT = "preview_content"


@dataclass
class Session:
    """An authenticated session as persisted by the credential store."""
    id_token: str
    expires_at_millis: int
    refresh_token: Optional[str] = None
    username: Optional[str] = None
    access_token: Optional[str] = None

    def __post_init__(self):
        if not self.id_token:
            raise ValueError("Session ID token cannot be empty")

    def expires_within(self, buffer_millis: int, now: Optional[int] = None) -> bool:
        """Whether the session expires within ``buffer_millis`` of ``now``."""
        current = now if now is not None else now_millis()
        return self.expires_at_millis <= current + buffer_millis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id_token": self.id_token,
            "expires_at_millis": self.expires_at_millis,
            "refresh_token": self.refresh_token,
            "username": self.username,
            "access_token": self.access_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        try:
            return cls(
                id_token=data["id_token"],
                expires_at_millis=int(data["expires_at_millis"]),
                refresh_token=data.get("refresh_token"),
                username=data.get("username"),
                access_token=data.get("access_token"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid stored session: {e}", cause=e)


@dataclass
class ProviderSession:
    """Tokens returned by the identity provider on sign-in or refresh."""
    id_token: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at_millis: int
    username: Optional[str] = None

    def to_session(self, fallback_refresh_token: Optional[str] = None,
                   fallback_username: Optional[str] = None) -> Session:
        """Convert to a persistable session, keeping prior refresh data when the provider omits it."""
        return Session(
            id_token=self.id_token,
            expires_at_millis=self.expires_at_millis,
            refresh_token=self.refresh_token or fallback_refresh_token,
            username=self.username or fallback_username,
            access_token=self.access_token,
        )


@dataclass
class TokenResult:
    """Outcome of a token request: a token, or the reason there is none."""
    token: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.token is not None


@dataclass
class AuthStatus:
    """Authentication status as reported to callers."""
    is_authenticated: bool
    error: Optional[Exception] = None


@dataclass
class UserData:
    """Non-sensitive profile information about the signed-in user."""
    username: Optional[str] = None
    email: Optional[str] = None
    sub: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "email": self.email, "sub": self.sub}

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserData":
        return cls(
            username=claims.get("cognito:username") or claims.get("email"),
            email=claims.get("email"),
            sub=claims.get("sub"),
        )


@dataclass
class CacheEntry:
    """A cached response anchored to the location it was requested from."""
    created_at_millis: int
    origin_lat: float
    origin_lng: float
    payload: Any

    def age_millis(self, now: int) -> int:
        return now - self.created_at_millis


@dataclass
class ApiRequest:
    """A wire request built by a dispatch caller once a token is available."""
    method: str
    path: str
    json: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None
    base_url: Optional[str] = None


def _require(data: Dict[str, Any], key: str, model: str) -> Any:
    if key not in data or data[key] is None:
        raise ValidationError(f"{model} payload missing '{key}'", field_name=key)
    return data[key]


def _require_dict(data: Any, model: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError(f"{model} payload must be an object, got {type(data).__name__}")
    return data


@dataclass
class Place:
    """A point of interest returned by the places endpoint."""
    place_id: str
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "Place":
        data = _require_dict(data, "Place")
        location = data.get("location") or data.get("place_location") or {}
        if not isinstance(location, dict):
            location = {}
        latitude = data.get("latitude", location.get("latitude", location.get("lat")))
        longitude = data.get("longitude", location.get("longitude", location.get("lng")))
        return cls(
            place_id=_require(data, "place_id", "Place"),
            name=data.get("name") or data.get("place_name"),
            latitude=float(latitude) if latitude is not None else None,
            longitude=float(longitude) if longitude is not None else None,
            raw=data,
        )


@dataclass
class PlacesResponse:
    """Response of the places-near-a-location endpoint."""
    places: List[Place]
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "PlacesResponse":
        data = _require_dict(data, "Places")
        places = data.get("places", [])
        if not isinstance(places, list):
            raise ValidationError("Places payload 'places' must be a list", field_name="places")
        return cls(places=[Place.from_dict(p) for p in places], raw=data)


@dataclass
class Tour:
    """A generated audio tour for a place."""
    place_id: str
    tour_type: TourType
    place_info: Dict[str, Any] = field(default_factory=dict)
    photos: List[Dict[str, Any]] = field(default_factory=list)
    script: Dict[str, Any] = field(default_factory=dict)
    audio: Dict[str, Any] = field(default_factory=dict)

    @property
    def place_name(self) -> Optional[str]:
        return self.place_info.get("place_name")

    @property
    def audio_url(self) -> Optional[str]:
        return self.audio.get("cloudfront_url") or self.audio.get("url")

    @classmethod
    def from_dict(cls, data: Any) -> "Tour":
        data = _require_dict(data, "Tour")
        try:
            tour_type = TourType(_require(data, "tour_type", "Tour"))
        except ValueError as e:
            raise ValidationError(f"Unknown tour type: {data.get('tour_type')}", field_name="tour_type", cause=e)
        return cls(
            place_id=_require(data, "place_id", "Tour"),
            tour_type=tour_type,
            place_info=data.get("place_info") or {},
            photos=data.get("photos") or [],
            script=data.get("script") or {},
            audio=data.get("audio") or {},
        )


@dataclass
class TourResponse:
    """Response of the tour, on-demand tour and preview tour endpoints."""
    tour: Tour
    is_authenticated: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "TourResponse":
        data = _require_dict(data, "TourResponse")
        return cls(
            tour=Tour.from_dict(_require(data, "tour", "TourResponse")),
            is_authenticated=data.get("is_authenticated"),
            raw=data,
        )


@dataclass
class CityPreview:
    """Guest-mode preview of a city; empty places with an error when unavailable."""
    city: str
    places: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.places

    @classmethod
    def empty(cls, city: str, error: Optional[str] = None) -> "CityPreview":
        return cls(city=city, places=[], error=error)

    @classmethod
    def from_dict(cls, city: str, data: Any) -> "CityPreview":
        data = _require_dict(data, "CityPreview")
        places = data.get("places", [])
        if not isinstance(places, list):
            raise ValidationError("Preview payload 'places' must be a list", field_name="places")
        return cls(city=data.get("city") or city, places=places)
