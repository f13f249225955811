"""
Audit Emission
==============
Writes AuditLogEntry records to the black box. An audit write that fails is
logged at error level and never interrupts the business operation.
"""

from typing import Any, Dict, Optional

import structlog

from pipeline.repositories import IAuditLog
from schemas.commerce import AuditEventType, AuditLogEntry

logger = structlog.get_logger().bind(component="audit")


async def emit_audit(
    audit: IAuditLog,
    event_type: AuditEventType,
    entity_type: str,
    entity_id: str,
    correlation_id: str,
    previous_state: Optional[Dict[str, Any]] = None,
    new_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> Optional[AuditLogEntry]:
    """Emit audit log entry"""
    entry = AuditLogEntry(
        correlation_id=correlation_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        previous_state=previous_state,
        new_state=new_state,
        metadata=metadata or {},
        actor=actor,
    )
    try:
        await audit.append(entry)
    except Exception as e:
        logger.error("audit_append_failed",
                     event_type=event_type.value,
                     entity_id=entity_id,
                     error=str(e),
                     error_type=type(e).__name__)
        return None

    logger.info("audit_event",
                event_type=event_type.value,
                entity_type=entity_type,
                entity_id=entity_id,
                correlation_id=correlation_id)
    return entry
