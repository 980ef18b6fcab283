"""
User-supplied AI provider API keys, encrypted at rest.
"""

import enum
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Enum, UniqueConstraint, func
from sqlalchemy.orm import relationship
from app.core.database import Base, UTCDateTime


class ApiProvider(str, enum.Enum):
    OPENAI = "OPENAI"
    CLAUDE = "CLAUDE"


class ApiKey(Base):
    """
    One key per provider per user. encrypted_key is an AES-GCM envelope
    produced by the ApiKeyVault; the plaintext never touches the database.
    """
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    provider = Column(Enum(ApiProvider), nullable=False)
    key_name = Column(String, nullable=False)
    encrypted_key = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    last_used = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="api_keys")

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_api_keys_user_provider'),
    )

    def __repr__(self):
        return f"<ApiKey(id={self.id}, user_id={self.user_id}, provider={self.provider})>"
