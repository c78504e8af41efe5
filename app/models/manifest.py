from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.update import VERSION_MAX_LENGTH, Channel


class Manifest(Base):
    __tablename__ = "manifests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    app_id: Mapped[int] = mapped_column(Integer, ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(VERSION_MAX_LENGTH), nullable=False)
    channel: Mapped[Channel] = mapped_column(Enum(Channel, name="releasechannel"), nullable=False)
    runtime_version: Mapped[str] = mapped_column(String(VERSION_MAX_LENGTH), nullable=False)
    platforms: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    content: Mapped[dict] = mapped_column(JSON, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    app = relationship("App", back_populates="manifests")
