from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from vaultscan.core.base import Base
from vaultscan.models.vault_item import JSONBCompat, utcnow


class QuarantinedFile(Base):
    """Append-only audit entry written once per quarantine event."""

    __tablename__ = "quarantined_files"

    id = Column(Integer, primary_key=True, index=True)

    vault_item_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)

    file_name = Column(String(512), nullable=False)
    original_size = Column(BigInteger, nullable=False, default=0)
    quarantined_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    reason = Column(Text, nullable=False)
    threats = Column(JSONBCompat(), nullable=False)
    scan_provider = Column(String(64), nullable=False)

    staging_path = Column(String(1024), nullable=False)
    quarantine_path = Column(String(1024), nullable=False)
    retention_expiry = Column(DateTime(timezone=True), nullable=False, index=True)
