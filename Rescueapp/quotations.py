import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from .audit import create_workflow_event, infer_actor_role
from .directory import (
    coerce_id,
    get_open_workshop,
    get_workshop,
    is_platform_admin,
    is_workshop_staff,
    staff_workshop_ids,
)
from .exceptions import (
    AlreadyAccepted,
    Conflict,
    Expired,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    NotFound,
)
from .forms import QUOTATION_EDITABLE_FIELDS, QuotationForm, form_errors_payload
from .fulfillment import apply_transition, lock_service_request
from .models import OPEN_FOR_QUOTATION_STATUSES, Quotation, ServiceRequest
from .transactions import atomic_operation

logger = logging.getLogger(__name__)


def _validated_quotation_form(data, instance=None):
    form = QuotationForm(data, instance=instance)
    if not form.is_valid():
        raise InvalidArgument("Quotation is invalid.", errors=form_errors_payload(form))
    return form


@atomic_operation
def submit_quotation(request_id, workshop_id, pricing, *, actor, source="user"):
    service_request = lock_service_request(request_id)
    workshop = get_open_workshop(workshop_id)
    if not is_workshop_staff(actor, workshop.id):
        raise Forbidden("Only staff of this workshop can quote.")
    if service_request.status not in OPEN_FOR_QUOTATION_STATUSES:
        raise Conflict("The request no longer accepts quotations.")
    if Quotation.objects.filter(service_request=service_request, workshop=workshop).exists():
        raise Conflict("This workshop already quoted for the request.")

    form = _validated_quotation_form(dict(pricing or {}))
    quotation = form.save(commit=False)
    quotation.service_request = service_request
    quotation.workshop = workshop
    quotation.is_accepted = False
    try:
        with transaction.atomic():
            quotation.save()
    except IntegrityError as exc:
        raise Conflict("This workshop already quoted for the request.") from exc

    role = infer_actor_role(actor, service_request)
    apply_transition(service_request, "QUOTED", actor_user=actor, actor_role=role, source=source)
    create_workflow_event(
        service_request,
        action_type="quotation_submitted",
        quotation=quotation,
        actor_user=actor,
        actor_role=role,
        source=source,
        note=f"total {quotation.total_amount}",
    )
    logger.info(
        "Quotation %s submitted for request %s by workshop %s",
        quotation.id,
        service_request.id,
        workshop.id,
    )
    return quotation


@atomic_operation
def accept_quotation(quotation_id, actor, *, source="user"):
    """Accept one quotation and reject its siblings as a single unit.

    Locks the request row first, then every quotation of that request, so two
    concurrent accepts against the same request serialize on the first lock.
    """
    quotation_id = coerce_id(quotation_id, "quotation_id")
    request_id = Quotation.objects.filter(id=quotation_id).values_list("service_request_id", flat=True).first()
    if request_id is None:
        raise NotFound("Quotation not found.")
    service_request = lock_service_request(request_id)
    quotations = {
        item.id: item
        for item in Quotation.objects.select_for_update().filter(service_request=service_request).order_by("id")
    }
    quotation = quotations.get(quotation_id)
    if quotation is None:
        raise NotFound("Quotation not found.")

    now = timezone.now()
    if quotation.valid_until <= now:
        raise Expired()
    if quotation.is_accepted:
        raise AlreadyAccepted()
    if service_request.requester_id != getattr(actor, "id", None):
        raise Forbidden("Only the requester can accept a quotation.")
    if service_request.status not in OPEN_FOR_QUOTATION_STATUSES:
        raise InvalidTransition(f"Cannot accept a quotation while the request is {service_request.status}.")

    # Clear siblings before setting the target; the single-accepted constraint is checked per row.
    Quotation.objects.filter(service_request=service_request, is_accepted=True).exclude(id=quotation.id).update(
        is_accepted=False,
        accepted_at=None,
        updated_at=now,
    )
    quotation.is_accepted = True
    quotation.accepted_at = now
    quotation.save(update_fields=["is_accepted", "accepted_at", "updated_at"])

    previous_workshop_id = service_request.workshop_id
    service_request.workshop_id = quotation.workshop_id
    apply_transition(
        service_request,
        "ACCEPTED",
        ["workshop"],
        actor_user=actor,
        actor_role="requester",
        source=source,
        note=f"quotation {quotation.id}",
    )
    create_workflow_event(
        service_request,
        action_type="quotation_accepted",
        quotation=quotation,
        actor_user=actor,
        actor_role="requester",
        source=source,
    )
    if previous_workshop_id != quotation.workshop_id:
        create_workflow_event(
            service_request,
            action_type="workshop_assigned",
            actor_user=actor,
            actor_role="requester",
            source=source,
            note=f"workshop {quotation.workshop_id}",
        )
    logger.info("Quotation %s accepted for request %s", quotation.id, service_request.id)
    return service_request


@atomic_operation
def update_quotation(quotation_id, fields, *, actor, source="user"):
    quotation_id = coerce_id(quotation_id, "quotation_id")
    request_id = Quotation.objects.filter(id=quotation_id).values_list("service_request_id", flat=True).first()
    if request_id is None:
        raise NotFound("Quotation not found.")
    service_request = lock_service_request(request_id)
    quotation = Quotation.objects.select_for_update().get(id=quotation_id)
    if not is_workshop_staff(actor, quotation.workshop_id):
        raise Forbidden("Only staff of the quoting workshop can edit it.")
    if quotation.is_accepted:
        raise Conflict("An accepted quotation cannot be changed.")

    fields = dict(fields or {})
    unknown = sorted(set(fields) - set(QUOTATION_EDITABLE_FIELDS))
    if unknown:
        raise InvalidArgument(
            "Unknown quotation fields.",
            errors={name: ["This field cannot be changed."] for name in unknown},
        )
    if not fields:
        return quotation

    data = {name: getattr(quotation, name) for name in QUOTATION_EDITABLE_FIELDS}
    data.update(fields)
    quotation = _validated_quotation_form(data, instance=quotation).save()

    create_workflow_event(
        service_request,
        action_type="quotation_updated",
        quotation=quotation,
        actor_user=actor,
        actor_role=infer_actor_role(actor, service_request),
        source=source,
        note=f"total {quotation.total_amount}",
    )
    logger.info("Quotation %s updated, total %s", quotation.id, quotation.total_amount)
    return quotation


def list_quotations(request_id, actor):
    service_request = ServiceRequest.objects.filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    quotations = Quotation.objects.filter(service_request=service_request).select_related("workshop")
    if is_platform_admin(actor) or service_request.requester_id == getattr(actor, "id", None):
        return list(quotations.order_by("total_amount", "id"))
    workshop_ids = staff_workshop_ids(actor)
    if not workshop_ids:
        raise Forbidden("You cannot view quotations for this request.")
    return list(quotations.filter(workshop_id__in=workshop_ids).order_by("id"))


def get_quotation(quotation_id, actor):
    quotation = (
        Quotation.objects.select_related("service_request", "workshop")
        .filter(id=coerce_id(quotation_id, "quotation_id"))
        .first()
    )
    if quotation is None:
        raise NotFound("Quotation not found.")
    if quotation.service_request.requester_id == getattr(actor, "id", None):
        return quotation
    if not is_workshop_staff(actor, quotation.workshop_id):
        raise Forbidden("You cannot view this quotation.")
    return quotation


def list_workshop_quotations(workshop_id, actor):
    """Every quotation a workshop has issued, newest first."""
    workshop = get_workshop(coerce_id(workshop_id, "workshop_id"))
    if not is_workshop_staff(actor, workshop.id):
        raise Forbidden("Only staff of this workshop can list its quotations.")
    return list(
        Quotation.objects.filter(workshop=workshop)
        .select_related("service_request")
        .order_by("-created_at", "-id")
    )
