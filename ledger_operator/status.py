"""
Status helpers shared by the reconciler, timers and kopf handlers.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import StatusType

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def parse_time(value: str) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def set_condition(conditions: list, ctype: str, status: str, reason: str, message: str):
    """Upsert a condition in a conditions list."""
    for c in conditions:
        if c.get("type") == ctype:
            if c.get("status") != status:
                c["lastTransitionTime"] = now()
            c["status"] = status
            c["reason"] = reason
            c["message"] = message
            return
    conditions.append({
        "type": ctype,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": now(),
    })


def status_patch(current: Dict[str, Any], status_type: StatusType, reason: str,
                 message: str) -> Optional[Dict[str, Any]]:
    """
    Build a status body for (type, reason, message), or None when the current
    status already says exactly that.
    """
    if (current.get("type") == status_type.value
            and current.get("reason", "") == reason
            and current.get("message", "") == message):
        return None

    conditions: List[dict] = [dict(c) for c in current.get("conditions") or []]
    for st in StatusType:
        if st == status_type:
            set_condition(conditions, st.value, "True", reason, message)
        elif any(c.get("type") == st.value for c in conditions):
            set_condition(conditions, st.value, "False", "", "")

    return {
        "type": status_type.value,
        "status": "True",
        "reason": reason,
        "message": message,
        "lastHeartbeatTime": now(),
        "conditions": conditions,
    }
