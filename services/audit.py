"""
Audit Service: append-only trail of what the engine did and who asked.
"""
import json
import logging
from typing import Any, Optional

from core.decorators import best_effort
from dataexport.database import SessionLocal
from dataexport.models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @best_effort("AUDIT")
    def log(self, entity_type: str, entity_id: Optional[int], action: str,
            actor: Optional[str] = None, details: Any = None):
        if details is not None and not isinstance(details, str):
            details = json.dumps(details, default=str)
        session = self.session_factory()
        try:
            session.add(AuditLog(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor=actor,
                details=details,
            ))
            session.commit()
            logger.debug("[AUDIT] %s %s %s by %s", entity_type, entity_id, action, actor)
        finally:
            session.close()

