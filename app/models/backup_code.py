"""
2FA backup codes.

Only a salted SHA-256 of each code is stored; the plaintext is shown to the
user once, when the batch is generated.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Integer, ForeignKey
from sqlalchemy.orm import relationship
from app.core.database import Base, UTCDateTime


class BackupCode(Base):
    __tablename__ = "backup_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # "salt_hex:sha256_hex"
    code_hash = Column(String(97), nullable=False)

    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="backup_codes")

    def __repr__(self):
        return f"<BackupCode(id={self.id}, user_id={self.user_id}, used={self.used})>"
