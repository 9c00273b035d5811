"""
Per-(job, agent, comment) audit rows.

The write happens inside a SAVEPOINT so a failing audit insert rolls back
only itself; the analysis transaction carries on.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api import crud


logger = logging.getLogger(__name__)


def log_agent_processing(
    db: Session,
    job_id: str,
    comment_id: str,
    agent_name: str,
    start_time: float,
    metadata: Dict[str, Any],
    success: bool = True,
    error_message: Optional[str] = None,
) -> None:
    processing_time_ms = int((time.time() - start_time) * 1000)

    try:
        with db.begin_nested():
            crud.upsert_agent_log(
                db,
                job_id=job_id,
                comment_id=comment_id,
                agent_name=agent_name,
                processing_time_ms=processing_time_ms,
                success=success,
                error_message=error_message,
                metadata={"agentName": agent_name, "data": metadata},
            )
    except SQLAlchemyError as e:
        logger.warning(
            "Failed to write agent processing log",
            extra={"job_id": job_id, "comment_id": comment_id, "agent": agent_name, "error": str(e)},
        )
