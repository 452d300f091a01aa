from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    DateTime,
    Float,
    JSON,
    Index,
)
from tripsync.core.clock import utcnow
from tripsync.core.database import Base


class UserProfile(Base):
    """Authenticated rider profile."""

    __tablename__ = "user_profiles"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, default="")
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    phone_number = Column(String, nullable=False, default="")
    membership_type = Column(String, nullable=False, default="member")
    member_since = Column(String, nullable=True)
    rides_taken = Column(Integer, nullable=True)
    region = Column(String, nullable=True)
    user_photo = Column(String, nullable=True)
    referral_code = Column(String, nullable=True)
    last_synced_at = Column(DateTime, nullable=False, default=utcnow)


class RewardsProfile(Base):
    """Bike Angel points, level and streaks."""

    __tablename__ = "rewards_profiles"

    user_id = Column(String, primary_key=True)
    total_points = Column(Integer, nullable=False, default=0)
    current_level = Column(String, nullable=False, default="")
    points_to_next_level = Column(Integer, nullable=False, default=0)
    lifetime_points = Column(Integer, nullable=False, default=0)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    rides_this_month = Column(Integer, nullable=False, default=0)
    points_this_month = Column(Integer, nullable=False, default=0)
    achievements = Column(JSON, nullable=False, default=list)
    raw_data = Column(JSON, nullable=True)  # full payload for later parsing
    last_synced_at = Column(DateTime, nullable=False, default=utcnow)


class Subscription(Base):
    """Membership plan."""

    __tablename__ = "subscriptions"

    user_id = Column(String, primary_key=True)
    plan_name = Column(String, nullable=False, default="Unknown")
    status = Column(String, nullable=False, default="active")  # "active", "expired", "cancelled"
    expires_at = Column(DateTime, nullable=True)
    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime, nullable=False, default=utcnow)


class Trip(Base):
    """A single ride.

    Factual columns come from the trip history feed; the details_* columns,
    polyline and has_actual_coordinates are owned by the details backfill.
    """

    __tablename__ = "trips"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=True)  # seconds
    start_station_id = Column(String, nullable=True)
    start_station_name = Column(String, nullable=True)
    start_lat = Column(Float, nullable=True)
    start_lon = Column(Float, nullable=True)
    end_station_id = Column(String, nullable=True)
    end_station_name = Column(String, nullable=True)
    end_lat = Column(Float, nullable=True)
    end_lon = Column(Float, nullable=True)
    bike_type = Column(String, nullable=False, default="classic")  # "classic", "ebike"
    distance = Column(Float, nullable=True)  # meters
    angel_points = Column(Integer, nullable=True)
    cost = Column(Integer, nullable=True)  # cents

    polyline = Column(String, nullable=True)
    has_actual_coordinates = Column(Boolean, nullable=False, default=False)
    details_fetched = Column(Boolean, nullable=False, default=False)
    details_fetched_at = Column(DateTime, nullable=True)
    details_fetch_error = Column(String, nullable=True)
    details_fetch_attempts = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_trips_user_start", "user_id", "start_time"),
        Index("ix_trips_user_details", "user_id", "details_fetched"),
    )


# Columns written by the trip history feed; everything else on Trip is
# sync-derived and must survive re-ingestion.
TRIP_FACTUAL_COLUMNS = (
    "user_id",
    "start_time",
    "end_time",
    "duration",
    "start_station_id",
    "start_station_name",
    "start_lat",
    "start_lon",
    "end_station_id",
    "end_station_name",
    "end_lat",
    "end_lon",
    "bike_type",
    "distance",
    "angel_points",
    "cost",
)
