from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Index, Boolean, BigInteger, Float
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker, validates
from typing import Optional
import time

from config import config

# Reserved group ids. "all" is virtual and never stored.
DEVICE_GROUP_ALL = "all"
DEVICE_GROUP_NONE = "none"


def normalize_id(value: Optional[str]) -> str:
    """Account, device and group ids are case-insensitive and stored lower-case"""
    return value.strip().lower() if value else ""


def is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def is_all_group(group_id: Optional[str]) -> bool:
    return group_id is not None and group_id.strip().lower() == DEVICE_GROUP_ALL


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    description: Mapped[str] = mapped_column(String, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Seconds of event history the account must keep (0 = no policy)
    retained_event_age: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    allow_notify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_title: Mapped[str] = mapped_column(String, nullable=False, default="Device")
    device_title_plural: Mapped[str] = mapped_column(String, nullable=False, default="Devices")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    @validates("account_id")
    def _lower_key(self, key, value):
        return normalize_id(value)

    def get_retained_event_time(self, now: Optional[int] = None) -> int:
        """Oldest event time that may be deleted, or 0 when no policy applies"""
        if not self.retained_event_age or self.retained_event_age <= 0:
            return 0
        now = int(time.time()) if now is None else now
        return max(now - self.retained_event_age, 0)

    def adjust_retained_event_time(self, cutoff: int, now: Optional[int] = None) -> int:
        """
        Clamp an old-event cutoff so events inside the retention window survive.

        Returns the requested cutoff unchanged when the account has no policy.
        """
        retained = self.get_retained_event_time(now)
        if retained <= 0:
            return cutoff
        return min(cutoff, retained)

    def __repr__(self):
        return f"Account({self.account_id})"


class Device(Base):
    __tablename__ = "devices"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    description: Mapped[str] = mapped_column(String, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_device_account_active', 'account_id', 'is_active'),
    )

    @validates("account_id", "device_id")
    def _lower_key(self, key, value):
        return normalize_id(value)

    def __repr__(self):
        return f"Device({self.account_id}/{self.device_id})"


class DeviceGroup(Base):
    __tablename__ = "device_groups"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    description: Mapped[str] = mapped_column(String, nullable=False, default="")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    allow_notify: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    notify_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    work_order_id: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_update_time: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    creation_time: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    @validates("account_id", "group_id")
    def _lower_key(self, key, value):
        return normalize_id(value)

    @validates("notify_email", "work_order_id")
    def _trim(self, key, value):
        return value.strip() if value else value

    def set_creation_default_values(self):
        self.description = ""

    def get_allow_notify(self, check_account: bool = False, account: Optional[Account] = None) -> bool:
        """
        Returns True if this group allows notifications.

        With check_account (and DEVICE_GROUP_CHECK_ACCOUNT_ALLOW_NOTIFY enabled)
        the owning account's setting decides instead.
        """
        if not check_account or not config.check_account_allow_notify:
            return bool(self.allow_notify)
        return bool(account.allow_notify) if account is not None else False

    def __repr__(self):
        return f"DeviceGroup({self.account_id}/{self.group_id})"


class DeviceList(Base):
    """Normal membership: group and device share the account"""
    __tablename__ = "device_list"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    __table_args__ = (
        Index('idx_device_list_device', 'account_id', 'device_id'),
    )

    @validates("account_id", "group_id", "device_id")
    def _lower_key(self, key, value):
        return normalize_id(value)


class DeviceUList(Base):
    """Universal membership: the device may belong to another account"""
    __tablename__ = "device_ulist"

    account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    device_account_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    __table_args__ = (
        Index('idx_device_ulist_device', 'device_account_id', 'device_id'),
    )

    @validates("account_id", "group_id", "device_account_id", "device_id")
    def _lower_key(self, key, value):
        return normalize_id(value)


class EventData(Base):
    __tablename__ = "event_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(32), nullable=False)
    device_id: Mapped[str] = mapped_column(String(32), nullable=False)
    # Epoch seconds
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed_kph: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('idx_event_device_time', 'account_id', 'device_id', 'timestamp'),
    )

    @validates("account_id", "device_id")
    def _lower_key(self, key, value):
        return normalize_id(value)


DATABASE_URL = config.database_url

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    # Sweeps hold one connection at a time, so a modest pool is enough
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,    # Verify connections before use
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_timeout=30
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
