from .directory import is_platform_admin, is_workshop_staff, staff_workshop_ids
from .models import WorkflowEvent


def infer_actor_role(user, service_request=None):
    if user is None:
        return "system"
    if is_platform_admin(user):
        return "admin"
    if service_request is not None:
        if service_request.requester_id == user.id:
            return "requester"
        if is_workshop_staff(user, service_request.workshop_id):
            return "staff"
    return "staff" if staff_workshop_ids(user) else "requester"


def create_workflow_event(
    service_request,
    *,
    action_type="request_status",
    from_status="",
    to_status="",
    quotation=None,
    worker=None,
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
):
    return WorkflowEvent.objects.create(
        action_type=action_type,
        service_request=service_request,
        quotation=quotation,
        worker=worker,
        from_status=from_status or "",
        to_status=to_status or "",
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=(note or "")[:240],
    )
