import logging

from django.conf import settings
from django.db.models import Q

from .exceptions import Forbidden, InvalidArgument, NotFound, PreconditionFailed, Unavailable
from .geo import latitude_band, make_coordinates, resolve_radius_km, search_near
from .models import ServiceRequest, Worker, Workshop, WorkshopReview
from .transactions import atomic_operation

logger = logging.getLogger(__name__)


def get_search_max_results():
    try:
        configured = int(getattr(settings, "WORKSHOP_SEARCH_MAX_RESULTS", 100))
    except (TypeError, ValueError):
        configured = 100
    return max(1, configured)


def coerce_id(value, field_name="id"):
    """Parse a primary key given as int or numeric string."""
    if isinstance(value, bool):
        raise InvalidArgument(f"{field_name} must be an integer.", errors={field_name: ["Must be an integer."]})
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidArgument(f"{field_name} must be an integer.", errors={field_name: ["Must be an integer."]})


def resolve_search_limit(limit=None):
    max_results = get_search_max_results()
    if limit in (None, ""):
        return max_results
    value = coerce_id(limit, "limit")
    if value < 1:
        raise InvalidArgument("limit must be at least 1.", errors={"limit": ["Must be at least 1."]})
    return min(value, max_results)


def is_platform_admin(user):
    return bool(user and getattr(user, "is_authenticated", False) and (user.is_superuser or user.is_staff))


def staff_workshop_ids(user):
    if not user or not getattr(user, "is_authenticated", False):
        return set()
    workshop_ids = set(Workshop.objects.filter(owner=user).values_list("id", flat=True))
    workshop_ids.update(Worker.objects.filter(user=user).values_list("workshop_id", flat=True))
    return workshop_ids


def is_workshop_owner(user, workshop_id):
    if is_platform_admin(user):
        return True
    if not user or not getattr(user, "is_authenticated", False) or workshop_id is None:
        return False
    return Workshop.objects.filter(id=workshop_id, owner=user).exists()


def is_workshop_staff(user, workshop_id):
    if is_workshop_owner(user, workshop_id):
        return True
    if not user or not getattr(user, "is_authenticated", False) or workshop_id is None:
        return False
    return Worker.objects.filter(workshop_id=workshop_id, user=user).exists()


def get_workshop(workshop_id):
    workshop = Workshop.objects.filter(id=workshop_id).first() if workshop_id is not None else None
    if workshop is None:
        raise NotFound("Workshop not found.")
    return workshop


def get_open_workshop(workshop_id):
    workshop = get_workshop(workshop_id)
    if not workshop.is_open:
        raise Unavailable("Workshop is closed.")
    return workshop


def search_workshops_near(
    latitude=None,
    longitude=None,
    radius_km=None,
    *,
    status=None,
    search="",
    sort=None,
    limit=None,
):
    """Return ``WorkshopMatch`` items for the catalog, nearest first when a center is given."""
    max_results = resolve_search_limit(limit)
    has_lat = latitude not in (None, "")
    has_lon = longitude not in (None, "")
    if has_lat != has_lon:
        raise InvalidArgument(
            "latitude and longitude must be given together.",
            errors={"latitude" if not has_lat else "longitude": ["This field is required with the other coordinate."]},
        )

    workshops_qs = Workshop.objects.all()
    if status:
        if status not in dict(Workshop.STATUS_CHOICES):
            raise InvalidArgument("Unknown workshop status.", errors={"status": [f"Unknown value: {status}"]})
        workshops_qs = workshops_qs.filter(status=status)
    search_text = (search or "").strip()
    if search_text:
        workshops_qs = workshops_qs.filter(Q(name__icontains=search_text) | Q(address__icontains=search_text))

    center = None
    radius = None
    if has_lat:
        center = make_coordinates(latitude, longitude)
        radius = resolve_radius_km(radius_km)
        min_lat, max_lat = latitude_band(center, radius)
        workshops_qs = workshops_qs.filter(latitude__gte=min_lat, latitude__lte=max_lat)
    elif radius_km is not None:
        resolve_radius_km(radius_km)

    matches = search_near(center, radius, workshops_qs, sort=sort or ("nearest" if center else None))
    return matches[:max_results]


@atomic_operation
def submit_review(request_id, actor, score, comment=""):
    service_request = ServiceRequest.objects.select_for_update().filter(id=request_id).first()
    if service_request is None:
        raise NotFound("Service request not found.")
    if service_request.requester_id != getattr(actor, "id", None):
        raise Forbidden("Only the requester can review this service.")
    if service_request.status != "COMPLETED" or service_request.workshop_id is None:
        raise PreconditionFailed("Only completed services can be reviewed.")
    try:
        score_value = int(score)
    except (TypeError, ValueError):
        score_value = 0
    if score_value not in dict(WorkshopReview.SCORE_CHOICES):
        raise InvalidArgument("Score must be between 1 and 5.", errors={"score": ["Must be between 1 and 5."]})

    review = WorkshopReview.objects.filter(service_request=service_request).first()
    if review is None:
        review = WorkshopReview(service_request=service_request, user=actor, workshop_id=service_request.workshop_id)
    review.score = score_value
    review.comment = (comment or "").strip()[:2000]
    review.save()
    logger.info("Review for workshop %s saved from request %s", review.workshop_id, service_request.id)
    return review
