"""Audit log helper."""

from artpero.extensions import db
from artpero.models.audit import AuditEvent


def log_audit(action, order_id=None, actor_user_id=None, metadata=None):
    """Record an audit event. Flushes; the caller commits.

    actor_user_id is None for webhook/system-initiated actions.
    """
    event = AuditEvent(
        action=action,
        order_id=order_id,
        actor_user_id=actor_user_id,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
