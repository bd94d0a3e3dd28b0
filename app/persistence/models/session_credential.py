"""Session credential model (database credential store)."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from app.persistence.database import Base


class SessionCredential(Base):
    """One named piece of protocol auth material for a tenant.

    ``data`` holds JSON, Fernet-encrypted when a field encryption key is set.
    """

    __tablename__ = "session_credentials"
    __table_args__ = (UniqueConstraint("tenant_id", "key_name", name="uq_session_credentials_tenant_key"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    key_name = Column(String(255), nullable=False)
    data = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SessionCredential(tenant_id={self.tenant_id}, key_name={self.key_name})>"
