import logging

from django.db import IntegrityError, transaction
from django.db.models import ProtectedError
from django.contrib.auth.models import User

from .audit import create_workflow_event, infer_actor_role
from .directory import coerce_id, get_workshop, is_platform_admin, is_workshop_owner, is_workshop_staff
from .exceptions import (
    Conflict,
    Forbidden,
    Inconsistent,
    InvalidArgument,
    NotFound,
    PreconditionFailed,
    Unavailable,
)
from .models import ACTIVE_REQUEST_STATUSES, TERMINAL_REQUEST_STATUSES, ServiceRequest, Worker
from .transactions import atomic_operation

logger = logging.getLogger(__name__)

WORKER_ASSIGNABLE_STATUSES = ACTIVE_REQUEST_STATUSES
WORKER_EDITABLE_FIELDS = ("name", "phone", "specialization", "workshop_id")


def clean_worker_name(name):
    name = (name or "").strip()
    if not 2 <= len(name) <= 255:
        raise InvalidArgument("Name must be between 2 and 255 characters.", errors={"name": ["Invalid length."]})
    return name


def normalize_specialization(values):
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    if not isinstance(values, (list, tuple, set)):
        raise InvalidArgument("specialization must be a list.", errors={"specialization": ["Must be a list."]})
    tags = {str(value).strip() for value in values if str(value).strip()}
    return sorted(tags)


def lock_workers(*worker_ids):
    """Lock the given workers in id order and return them keyed by id."""
    ids = sorted({worker_id for worker_id in worker_ids if worker_id is not None})
    if not ids:
        return {}
    return {worker.id: worker for worker in Worker.objects.select_for_update().filter(id__in=ids).order_by("id")}


def bind_worker(service_request, workshop_id, worker_id, *, actor_user=None, actor_role="system", source="system"):
    """Point ``service_request`` at ``worker_id`` (or none) and sync availability.

    The caller holds the request row lock and saves ``assigned_worker`` itself.
    Returns the newly bound worker or ``None``.
    """
    previous_id = service_request.assigned_worker_id
    locked = lock_workers(previous_id, worker_id)

    new_worker = None
    if worker_id is not None:
        new_worker = locked.get(worker_id)
        if new_worker is None or new_worker.workshop_id != workshop_id:
            raise NotFound("Worker not found in this workshop.")
        if not new_worker.is_available and worker_id != previous_id:
            raise Unavailable("Worker is not available.")

    if previous_id is not None and previous_id != worker_id:
        previous_worker = locked.get(previous_id)
        if previous_worker is not None:
            previous_worker.is_available = True
            previous_worker.save(update_fields=["is_available", "updated_at"])
            create_workflow_event(
                service_request,
                action_type="worker_released",
                worker=previous_worker,
                actor_user=actor_user,
                actor_role=actor_role,
                source=source,
            )

    if new_worker is not None and new_worker.is_available:
        new_worker.is_available = False
        new_worker.save(update_fields=["is_available", "updated_at"])
    if new_worker is not None and worker_id != previous_id:
        create_workflow_event(
            service_request,
            action_type="worker_assigned",
            worker=new_worker,
            actor_user=actor_user,
            actor_role=actor_role,
            source=source,
        )

    service_request.assigned_worker = new_worker
    return new_worker


def on_status_change(service_request, new_status):
    """Keep the assigned worker's availability in step with the request status."""
    worker_id = service_request.assigned_worker_id
    if worker_id is None:
        return None
    if new_status not in ACTIVE_REQUEST_STATUSES and new_status not in TERMINAL_REQUEST_STATUSES:
        raise Inconsistent(f"Request {service_request.id} has a worker while {new_status}.")

    worker = lock_workers(worker_id).get(worker_id)
    if worker is None:
        raise Inconsistent(f"Assigned worker {worker_id} of request {service_request.id} is missing.")
    if worker.workshop_id != service_request.workshop_id:
        raise Inconsistent(f"Assigned worker {worker_id} is not part of workshop {service_request.workshop_id}.")

    is_available = new_status in TERMINAL_REQUEST_STATUSES
    if worker.is_available != is_available:
        worker.is_available = is_available
        worker.save(update_fields=["is_available", "updated_at"])
    return worker


@atomic_operation
def assign_worker(request_id, worker_id, actor, *, source="user"):
    service_request = ServiceRequest.objects.select_for_update().filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    if service_request.workshop_id is None:
        raise PreconditionFailed("Assign a workshop before assigning a worker.")
    if not is_workshop_staff(actor, service_request.workshop_id):
        raise Forbidden("Only workshop staff can assign workers.")
    if service_request.status not in WORKER_ASSIGNABLE_STATUSES:
        raise PreconditionFailed("Workers can only be assigned to accepted or in-progress requests.")
    if service_request.assigned_worker_id == worker_id:
        return service_request

    bind_worker(
        service_request,
        service_request.workshop_id,
        worker_id,
        actor_user=actor,
        actor_role=infer_actor_role(actor, service_request),
        source=source,
    )
    service_request.save(update_fields=["assigned_worker", "updated_at"])
    logger.info("Request %s worker set to %s by user %s", service_request.id, worker_id, actor.id)
    return service_request


@atomic_operation
def register_worker(workshop_id, *, user, name, phone="", specialization=None, actor):
    workshop = get_workshop(workshop_id)
    if not is_workshop_owner(actor, workshop.id):
        raise Forbidden("Only the workshop owner can register workers.")
    if user is None:
        raise InvalidArgument("user is required.", errors={"user": ["This field is required."]})
    if not isinstance(user, User):
        user = User.objects.filter(id=user).first()
        if user is None:
            raise NotFound("User not found.")
    name = clean_worker_name(name)
    if Worker.objects.filter(user=user).exists():
        raise Conflict("This user is already registered as a worker.")

    try:
        worker = Worker.objects.create(
            workshop=workshop,
            user=user,
            name=name,
            phone=(phone or "").strip()[:20],
            specialization=normalize_specialization(specialization),
        )
    except IntegrityError as exc:
        raise Conflict("This user is already registered as a worker.") from exc
    logger.info("Worker %s registered at workshop %s", worker.id, workshop.id)
    return worker


def list_available_workers(request_id, actor):
    service_request = ServiceRequest.objects.filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    if service_request.workshop_id is None:
        raise PreconditionFailed("Request has no workshop yet.")
    if not is_workshop_staff(actor, service_request.workshop_id):
        raise Forbidden("Only workshop staff can list workers.")
    return list(
        Worker.objects.filter(workshop_id=service_request.workshop_id, is_available=True).order_by("created_at", "id")
    )


@atomic_operation
def set_worker_availability(worker_id, is_available, actor):
    worker = lock_workers(worker_id).get(worker_id)
    if worker is None:
        raise NotFound("Worker not found.")
    if worker.user_id != getattr(actor, "id", None) and not is_platform_admin(actor):
        raise Forbidden("Only the worker can change their availability.")
    is_available = bool(is_available)
    if is_available and ServiceRequest.objects.filter(
        assigned_worker=worker,
        status__in=ACTIVE_REQUEST_STATUSES,
    ).exists():
        raise Conflict("Worker is bound to an active request.")
    if worker.is_available != is_available:
        worker.is_available = is_available
        worker.save(update_fields=["is_available", "updated_at"])
    return worker


def get_worker(worker_id, actor):
    worker = Worker.objects.select_related("workshop").filter(id=coerce_id(worker_id, "worker_id")).first()
    if worker is None:
        raise NotFound("Worker not found.")
    if worker.user_id != getattr(actor, "id", None) and not is_workshop_staff(actor, worker.workshop_id):
        raise Forbidden("You cannot view this worker.")
    return worker


def list_workshop_workers(workshop_id, actor):
    workshop = get_workshop(coerce_id(workshop_id, "workshop_id"))
    if not is_workshop_staff(actor, workshop.id):
        raise Forbidden("Only workshop staff can list workers.")
    return list(Worker.objects.filter(workshop=workshop).order_by("-created_at", "-id"))


@atomic_operation
def update_worker(worker_id, fields, *, actor):
    """Edit a worker's profile; moving them to another workshop needs a clean record.

    The worker may edit their own name, phone and specialization. Only the owner of
    both workshops (or an admin) may move them, and never while a request of the
    current workshop still points at them.
    """
    worker_id = coerce_id(worker_id, "worker_id")
    worker = lock_workers(worker_id).get(worker_id)
    if worker is None:
        raise NotFound("Worker not found.")
    if worker.user_id != getattr(actor, "id", None) and not is_workshop_owner(actor, worker.workshop_id):
        raise Forbidden("Only the worker or the workshop owner can edit this worker.")

    fields = dict(fields or {})
    unknown = sorted(set(fields) - set(WORKER_EDITABLE_FIELDS))
    if unknown:
        raise InvalidArgument(
            "Unknown worker fields.",
            errors={name: ["This field cannot be changed."] for name in unknown},
        )

    update_fields = []
    if "name" in fields:
        worker.name = clean_worker_name(fields["name"])
        update_fields.append("name")
    if "phone" in fields:
        worker.phone = (fields["phone"] or "").strip()[:20]
        update_fields.append("phone")
    if "specialization" in fields:
        worker.specialization = normalize_specialization(fields["specialization"])
        update_fields.append("specialization")
    if "workshop_id" in fields:
        target = get_workshop(coerce_id(fields["workshop_id"], "workshop_id"))
        if target.id != worker.workshop_id:
            if not (is_workshop_owner(actor, worker.workshop_id) and is_workshop_owner(actor, target.id)):
                raise Forbidden("Only the owner of both workshops can move a worker.")
            bound = ServiceRequest.objects.filter(assigned_worker=worker)
            if bound.filter(status__in=ACTIVE_REQUEST_STATUSES).exists():
                raise Conflict("Worker is bound to an active request.")
            if bound.exists():
                raise Conflict("Worker has requests recorded at the current workshop.")
            previous_workshop_id = worker.workshop_id
            worker.workshop = target
            update_fields.append("workshop")
            logger.info("Worker %s moved from workshop %s to %s", worker.id, previous_workshop_id, target.id)

    if update_fields:
        worker.save(update_fields=update_fields + ["updated_at"])
    return worker


@atomic_operation
def delete_worker(worker_id, *, actor):
    worker_id = coerce_id(worker_id, "worker_id")
    worker = lock_workers(worker_id).get(worker_id)
    if worker is None:
        raise NotFound("Worker not found.")
    if not is_workshop_owner(actor, worker.workshop_id):
        raise Forbidden("Only the workshop owner can remove workers.")
    if ServiceRequest.objects.filter(assigned_worker=worker).exists():
        raise Conflict("Worker is referenced by service requests.")
    try:
        with transaction.atomic():
            worker.delete()
    except (IntegrityError, ProtectedError) as exc:
        raise Conflict("Worker is referenced by service requests.") from exc
    logger.info("Worker %s removed from workshop %s by user %s", worker_id, worker.workshop_id, actor.id)
