"""Per-call subject attributes used for targeting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class UserContext:
    """Attributes of the subject a flag or experiment is evaluated for.

    Supplied by the caller on every evaluation and never persisted.

    Attributes:
        subject_id: Stable identifier of the subject (user ID)
        role: Subject role (rider, driver, admin, ...)
        country: ISO 3166-1 alpha-2 country code
        city: City name
        platform: Client platform (ios, android, web)
        app_version: Client application version string
        total_rides: Completed ride count
        rating: Average rating
        account_age_days: Days since registration
        loyalty_tier: Loyalty program tier
    """

    subject_id: str
    role: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    platform: Optional[str] = None
    app_version: Optional[str] = None
    total_rides: int = 0
    rating: float = 0.0
    account_age_days: int = 0
    loyalty_tier: Optional[str] = None
