from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vaultscan.models.notification import Notification

logger = logging.getLogger(__name__)

SECURITY_ALERT = "security_alert"


def create_notification(
    db: Session,
    *,
    user_id: str,
    type: str,
    title: str,
    body: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> Notification:
    ev = Notification(
        user_id=user_id,
        type=type,
        title=title,
        body=body,
        data=data,
    )
    db.add(ev)
    # Let caller decide commit timing; flush so `id`/`created_at` can be used.
    db.flush()
    return ev


def notify_file_quarantined(
    db: Session,
    *,
    user_id: str,
    item_id: str,
    file_name: str,
    threats: list[str],
) -> bool:
    """Best-effort owner alert for a quarantined file. Failures are logged, never raised."""
    try:
        create_notification(
            db,
            user_id=user_id,
            type=SECURITY_ALERT,
            title="File quarantined",
            body=f'"{file_name}" was quarantined because threats were detected.',
            data={"itemId": item_id, "fileName": file_name, "threats": list(threats)},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create quarantine notification item=%s user=%s", item_id, user_id)
        return False
    return True
