import enum
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class Channel(str, enum.Enum):
    production = "production"
    staging = "staging"
    development = "development"


class Platform(str, enum.Enum):
    ios = "ios"
    android = "android"
    web = "web"


DEFAULT_PLATFORMS = [Platform.ios.value, Platform.android.value]

VERSION_MAX_LENGTH = 50
RANGE_MAX_LENGTH = 255


class Update(Base):
    __tablename__ = "updates"
    __table_args__ = (UniqueConstraint("app_id", "version", "channel", name="uq_updates_app_version_channel"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[int] = mapped_column(Integer, ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(VERSION_MAX_LENGTH), nullable=False)
    channel: Mapped[Channel] = mapped_column(Enum(Channel, name="releasechannel"), nullable=False)
    runtime_version: Mapped[str] = mapped_column(String(VERSION_MAX_LENGTH), nullable=False)
    target_version_range: Mapped[str | None] = mapped_column(String(RANGE_MAX_LENGTH))
    platforms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False)
    bundle_id: Mapped[int] = mapped_column(Integer, ForeignKey("bundles.id"), nullable=False, index=True)
    manifest_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("manifests.id", ondelete="SET NULL"))
    published_by: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    app = relationship("App", back_populates="updates")
    bundle = relationship("Bundle")
    manifest = relationship("Manifest")
    assets = relationship(
        "Asset",
        back_populates="update",
        cascade="all, delete-orphan",
        order_by="Asset.id",
    )
