"""SQLAlchemy models for generation quota and burst counters."""

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from inkframe.common.models import Base


class QuotaCounterModel(Base):
    """Weekly allowance counter. Timestamps are epoch seconds."""

    __tablename__ = "quota_counters"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_started_at: Mapped[float] = mapped_column(Float, nullable=False)
    reset_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


class BurstWindowModel(Base):
    """Hit count for one fixed window of a burst bucket."""

    __tablename__ = "burst_windows"

    bucket: Mapped[str] = mapped_column(String(512), primary_key=True)
    window_index: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
