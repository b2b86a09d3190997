"""Service request lifecycle.

All status changes go through ``apply_transition`` so that the worker
availability rules and the audit trail stay in one place.
"""

import logging

from django.db.models import Q
from django.utils import timezone

from .audit import create_workflow_event, infer_actor_role
from .directory import get_open_workshop, get_workshop, is_platform_admin, is_workshop_staff, staff_workshop_ids
from .exceptions import (
    Conflict,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    NotFound,
)
from .forms import ServiceRequestForm, form_errors_payload
from .models import (
    OPEN_FOR_QUOTATION_STATUSES,
    TERMINAL_REQUEST_STATUSES,
    Quotation,
    ServiceRequest,
    Workshop,
)
from .transactions import atomic_operation
from .workers import bind_worker, on_status_change

logger = logging.getLogger(__name__)

SERVICE_REQUEST_ALLOWED_TRANSITIONS = {
    "PENDING": {"QUOTED", "ACCEPTED", "CANCELLED"},
    "QUOTED": {"ACCEPTED", "CANCELLED"},
    "ACCEPTED": {"IN_PROGRESS", "CANCELLED"},
    "IN_PROGRESS": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}

# Targets reachable through the public transition operation.
PUBLIC_TRANSITION_TARGETS = {"IN_PROGRESS", "COMPLETED", "CANCELLED"}

ROLE_TRANSITIONS = {
    "requester": {
        ("PENDING", "CANCELLED"),
        ("QUOTED", "CANCELLED"),
        ("ACCEPTED", "CANCELLED"),
    },
    "staff": {
        ("ACCEPTED", "IN_PROGRESS"),
        ("IN_PROGRESS", "COMPLETED"),
        ("ACCEPTED", "CANCELLED"),
        ("IN_PROGRESS", "CANCELLED"),
    },
}


def can_transition(current_status, next_status):
    return next_status in SERVICE_REQUEST_ALLOWED_TRANSITIONS.get(current_status, set())


def apply_transition(
    service_request,
    next_status,
    extra_update_fields=None,
    *,
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
):
    """Move ``service_request`` to ``next_status`` and save it.

    Returns ``False`` when the request already had that status (extra fields are
    still saved). The caller must hold the request row lock.
    """
    current_status = service_request.status
    update_fields = list(dict.fromkeys(extra_update_fields or []))

    if current_status == next_status:
        if update_fields:
            service_request.save(update_fields=[*update_fields, "updated_at"])
        return False
    if not can_transition(current_status, next_status):
        raise InvalidTransition(f"Cannot move a request from {current_status} to {next_status}.")

    service_request.status = next_status
    update_fields = ["status", *update_fields, "updated_at"]
    if next_status == "COMPLETED":
        service_request.actual_completion = timezone.now()
        update_fields.append("actual_completion")

    on_status_change(service_request, next_status)
    service_request.save(update_fields=list(dict.fromkeys(update_fields)))
    create_workflow_event(
        service_request,
        from_status=current_status,
        to_status=next_status,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=note,
    )
    logger.info("Request %s moved %s -> %s (%s)", service_request.id, current_status, next_status, actor_role)
    return True


def lock_service_request(request_id):
    service_request = ServiceRequest.objects.select_for_update().filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    return service_request


@atomic_operation
def create_service_request(payload, *, requester, source="user"):
    payload = dict(payload or {})
    form = ServiceRequestForm(payload)
    errors = {} if form.is_valid() else form_errors_payload(form)

    workshop = None
    workshop_id = payload.get("workshop_id")
    if workshop_id not in (None, ""):
        workshop = Workshop.objects.filter(id=workshop_id).first() if str(workshop_id).isdigit() else None
        if workshop is None:
            errors["workshop_id"] = ["Workshop not found."]
    if errors:
        raise InvalidArgument("Service request is invalid.", errors=errors)

    service_request = form.save(commit=False)
    service_request.requester = requester
    service_request.workshop = workshop
    service_request.status = "PENDING"
    if not service_request.service_type:
        service_request.service_type = "INSTANT_SERVICE"
    if not service_request.priority:
        service_request.priority = "MEDIUM"
    service_request.save()

    create_workflow_event(
        service_request,
        to_status="PENDING",
        actor_user=requester,
        actor_role="requester",
        source=source,
        note="created",
    )
    logger.info("Request %s created by user %s", service_request.id, requester.id)
    return service_request


def transition_roles(service_request, actor):
    """Every role ``actor`` holds on ``service_request``, requester before staff.

    An owner who files a request served by their own workshop holds both.
    """
    if is_platform_admin(actor):
        return ["admin"]
    roles = []
    if service_request.requester_id == getattr(actor, "id", None):
        roles.append("requester")
    if service_request.workshop_id is not None and is_workshop_staff(actor, service_request.workshop_id):
        roles.append("staff")
    return roles


def _check_transition_permission(service_request, next_status, roles):
    """Return the first role in ``roles`` allowed to make this move."""
    for role in roles:
        if role == "admin" or (service_request.status, next_status) in ROLE_TRANSITIONS.get(role, set()):
            return role
    held = " or ".join(roles)
    raise Forbidden(f"A {held} cannot move this request to {next_status}.")


@atomic_operation
def transition_request(request_id, new_status, actor, *, source="user", note=""):
    if new_status not in dict(ServiceRequest.STATUS_CHOICES):
        raise InvalidArgument("Unknown status.", errors={"status": [f"Unknown value: {new_status}"]})
    service_request = lock_service_request(request_id)

    roles = transition_roles(service_request, actor)
    if not roles:
        raise Forbidden("You have no authority over this request.")
    if service_request.status == new_status:
        return service_request
    if new_status not in PUBLIC_TRANSITION_TARGETS or not can_transition(service_request.status, new_status):
        raise InvalidTransition(f"Cannot move a request from {service_request.status} to {new_status}.")
    role = _check_transition_permission(service_request, new_status, roles)

    apply_transition(
        service_request,
        new_status,
        actor_user=actor,
        actor_role=role,
        source=source,
        note=note,
    )
    return service_request


@atomic_operation
def assign_workshop(request_id, workshop_id, actor, worker_id=None, *, source="user"):
    """Bind a request straight to a workshop without a quotation and accept it."""
    service_request = lock_service_request(request_id)
    workshop = get_workshop(workshop_id)
    if not is_workshop_staff(actor, workshop.id):
        raise Forbidden("Only staff of this workshop can take the request.")
    if service_request.workshop_id not in (None, workshop.id) and not is_workshop_staff(
        actor, service_request.workshop_id
    ):
        raise Forbidden("The request is already bound to another workshop.")
    if service_request.status in TERMINAL_REQUEST_STATUSES or service_request.status == "IN_PROGRESS":
        raise InvalidTransition(f"Cannot assign a workshop while the request is {service_request.status}.")
    get_open_workshop(workshop.id)

    accepted_quotation = (
        Quotation.objects.select_for_update()
        .filter(service_request=service_request, is_accepted=True)
        .first()
    )
    if accepted_quotation is not None and accepted_quotation.workshop_id != workshop.id:
        raise Conflict("Another workshop's quotation was accepted for this request.")

    role = infer_actor_role(actor, service_request)
    previous_workshop_id = service_request.workshop_id
    if worker_id is None and previous_workshop_id == workshop.id:
        worker_id = service_request.assigned_worker_id
    bind_worker(service_request, workshop.id, worker_id, actor_user=actor, actor_role=role, source=source)
    service_request.workshop = workshop

    apply_transition(
        service_request,
        "ACCEPTED",
        ["workshop", "assigned_worker"],
        actor_user=actor,
        actor_role=role,
        source=source,
        note="direct assignment",
    )
    if previous_workshop_id != workshop.id:
        create_workflow_event(
            service_request,
            action_type="workshop_assigned",
            actor_user=actor,
            actor_role=role,
            source=source,
            note=f"workshop {workshop.id}",
        )
        logger.info("Request %s assigned to workshop %s", service_request.id, workshop.id)
    return service_request


def visible_requests(user):
    """Requests the user may read: own, their workshops', and open ones for staff."""
    if is_platform_admin(user):
        return ServiceRequest.objects.all()
    workshop_ids = staff_workshop_ids(user)
    visibility = Q(requester=user)
    if workshop_ids:
        visibility |= Q(workshop_id__in=workshop_ids) | Q(
            workshop__isnull=True,
            status__in=OPEN_FOR_QUOTATION_STATUSES,
        )
    return ServiceRequest.objects.filter(visibility)


def get_request_for_viewer(request_id, user):
    service_request = ServiceRequest.objects.select_related("workshop", "assigned_worker").filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    if not visible_requests(user).filter(id=service_request.id).exists():
        raise Forbidden("You cannot view this request.")
    return service_request
