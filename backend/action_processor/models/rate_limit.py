"""
RateLimit model.

One row per (user_id, platform, method, endpoint) holding the epoch
second at which the platform's rate limit window resets. Written only by
the rate-limit oracle; concurrent writers are last-write-wins.
"""

from sqlalchemy import BigInteger, Column, Integer, String, UniqueConstraint

from action_processor.db_base import Base


class RateLimit(Base):
    """Persisted platform rate-limit reset time for one account and endpoint."""

    __tablename__ = "rate_limit"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(255), nullable=False)
    platform = Column(String(32), nullable=False)
    method = Column(String(16), nullable=False)
    endpoint = Column(String(255), nullable=False)

    limit_reset_at = Column(
        BigInteger,
        nullable=False,
        comment="Epoch seconds when the rate limit window resets",
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "platform", "method", "endpoint", name="uq_rate_limit_key"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimit(user_id={self.user_id}, platform={self.platform}, "
            f"method={self.method}, endpoint={self.endpoint}, "
            f"limit_reset_at={self.limit_reset_at})>"
        )
