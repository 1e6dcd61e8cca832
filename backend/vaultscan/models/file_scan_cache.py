from sqlalchemy import BigInteger, Column, DateTime, Integer, String

from vaultscan.core.base import Base
from vaultscan.models.vault_item import JSONBCompat, utcnow


class FileScanCacheEntry(Base):
    __tablename__ = "file_scan_cache"

    id = Column(Integer, primary_key=True, index=True)

    # SHA-256 hex of the scanned bytes; identical content from any user hits the same entry.
    file_hash = Column(String(64), nullable=False, index=True)
    file_name = Column(String(512), nullable=True)
    mime_type = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    user_id = Column(String(128), nullable=True)

    scan_result = Column(JSONBCompat(), nullable=False)
    scanned_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
