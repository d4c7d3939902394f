"""UserCredit model for per-module quota accounting."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserCredit(Base):
    """Quota row: how many units of a module an account was granted and has used."""

    __tablename__ = "user_credits"
    __table_args__ = (
        UniqueConstraint("user_id", "module", name="uq_user_credits_user_module"),
        CheckConstraint("credits >= 0", name="ck_user_credits_credits_non_negative"),
        CheckConstraint("used >= 0", name="ck_user_credits_used_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    module = Column(String, nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credits")

    @property
    def available(self) -> int:
        return max(0, int(self.credits or 0) - int(self.used or 0))

    def has_enough(self, required: int = 1) -> bool:
        return self.available >= required
