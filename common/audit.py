import uuid

from common.utils import to_json_compatible
from core.models import AuditLog


def _parse_uuid(value):
    if not value:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID") or request.META.get("HTTP_X_REQUEST_ID")


def create_audit_log(
    *,
    actor=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    return AuditLog.objects.create(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=_parse_uuid(entity_id),
        before_snapshot=to_json_compatible(before_snapshot) if before_snapshot is not None else None,
        after_snapshot=to_json_compatible(after_snapshot) if after_snapshot is not None else None,
        request_id=request_id,
    )


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
    )
