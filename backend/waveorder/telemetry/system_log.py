"""Structured audit trail written to the system_logs table.

WHAT: Records subscription changes and handler failures as SystemLog rows
WHY: Support staff read these from the admin panel without grepping logs

Writes are fire-and-forget: a failed insert is rolled back and logged, never
raised into the caller.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models import LogSeverityEnum, SystemLog

logger = logging.getLogger(__name__)


def log_system_event(
    db: Session,
    *,
    log_type: str,
    severity: LogSeverityEnum = LogSeverityEnum.info,
    endpoint: Optional[str] = None,
    method: Optional[str] = None,
    status_code: Optional[int] = None,
    url: Optional[str] = None,
    error_message: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[SystemLog]:
    """Insert and commit one SystemLog row.

    Returns:
        The row, or None when the write failed
    """
    entry = SystemLog(
        log_type=log_type,
        severity=severity,
        endpoint=endpoint,
        method=method,
        status_code=status_code,
        url=url,
        error_message=error_message,
        metadata_json=metadata,
    )
    try:
        db.add(entry)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"[SYSTEM_LOG] Failed to write {log_type} entry: {e}", exc_info=True)
        return None
    return entry
