import hashlib
import json
import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView, exception_handler
from rest_framework_simplejwt.tokens import RefreshToken

from .api_serializers import (
    AssignWorkerSerializer,
    AssignWorkshopSerializer,
    LoginSerializer,
    QuotationSerializer,
    ReviewInputSerializer,
    ServiceRequestSerializer,
    TransitionSerializer,
    WorkerAvailabilitySerializer,
    WorkerRegistrationSerializer,
    WorkerSerializer,
    WorkerUpdateSerializer,
    WorkflowEventSerializer,
    WorkshopMatchSerializer,
    WorkshopReviewSerializer,
    WorkshopSearchQuerySerializer,
)
from .directory import search_workshops_near, staff_workshop_ids, submit_review
from .exceptions import FulfillmentError, Inconsistent, InvalidArgument
from .fulfillment import (
    assign_workshop,
    create_service_request,
    get_request_for_viewer,
    transition_request,
    visible_requests,
)
from .middleware import record_error
from .models import IdempotencyRecord
from .quotations import (
    accept_quotation,
    get_quotation,
    list_quotations,
    list_workshop_quotations,
    submit_quotation,
    update_quotation,
)
from .workers import (
    assign_worker,
    delete_worker,
    get_worker,
    list_available_workers,
    list_workshop_workers,
    register_worker,
    set_worker_availability,
    update_worker,
)

logger = logging.getLogger(__name__)


def get_post_idempotency_ttl_seconds():
    try:
        configured = int(getattr(settings, "POST_IDEMPOTENCY_TTL_SECONDS", 86400))
    except (TypeError, ValueError):
        configured = 86400
    return max(60, configured)


def idempotency_cutoff():
    return timezone.now() - timedelta(seconds=get_post_idempotency_ttl_seconds())


def purge_expired_idempotency_records():
    deleted_count, _ = IdempotencyRecord.objects.filter(created_at__lt=idempotency_cutoff()).delete()
    if deleted_count:
        logger.info("Purged %s expired idempotency records", deleted_count)
    return deleted_count


def fulfillment_exception_handler(exc, context):
    if isinstance(exc, FulfillmentError):
        if isinstance(exc, Inconsistent):
            logger.error("Invariant violation surfaced to the API: %s", exc.detail)
        if exc.status_code >= 500 and context.get("request") is not None:
            record_error(context["request"], exc)
        return Response(exc.as_payload(), status=exc.status_code)
    return exception_handler(exc, context)


def build_idempotency_key(request, scope, explicit_key):
    raw_key = json.dumps(
        {
            "scope": scope,
            "endpoint": request.path,
            "identity": f"user:{request.user.id}",
            "explicit": explicit_key,
        },
        sort_keys=True,
    )
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def run_idempotent(request, scope, operation):
    """Run ``operation`` once per ``X-Idempotency-Key``; replays return the request's current state.

    ``operation`` must return the affected ServiceRequest. Without the header the
    operation simply runs.
    """
    explicit_key = (request.headers.get("X-Idempotency-Key") or "").strip()
    if not explicit_key:
        return operation(), False

    dedupe_key = build_idempotency_key(request, scope, explicit_key[:200])
    IdempotencyRecord.objects.filter(key=dedupe_key, created_at__lt=idempotency_cutoff()).delete()

    existing = IdempotencyRecord.objects.select_related("service_request").filter(key=dedupe_key).first()
    if existing is not None and existing.service_request is not None:
        return existing.service_request, True

    try:
        with transaction.atomic():
            service_request = operation()
            IdempotencyRecord.objects.create(
                key=dedupe_key,
                scope=scope[:80],
                endpoint=request.path[:200],
                service_request=service_request,
                user=request.user,
            )
    except IntegrityError:
        # A concurrent call with the same key committed first.
        existing = IdempotencyRecord.objects.select_related("service_request").filter(key=dedupe_key).first()
        if existing is None or existing.service_request is None:
            raise
        return existing.service_request, True
    return service_request, False


def request_state_response(service_request, replayed=False, status_code=status.HTTP_200_OK):
    service_request.refresh_from_db()
    response = Response(ServiceRequestSerializer(service_request).data, status=status_code)
    if replayed:
        response["Idempotent-Replayed"] = "true"
    return response


class LoginView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = LoginSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]
        refresh = RefreshToken.for_user(user)
        return Response(
            {
                "access": str(refresh.access_token),
                "refresh": str(refresh),
                "user": {
                    "id": user.id,
                    "username": user.username,
                    "workshop_ids": sorted(staff_workshop_ids(user)),
                },
            },
            status=status.HTTP_200_OK,
        )


class WorkshopSearchView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        query = WorkshopSearchQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data
        matches = search_workshops_near(
            params.get("latitude"),
            params.get("longitude"),
            params.get("radius"),
            status=params.get("status"),
            search=params.get("search", ""),
            sort=params.get("sort"),
            limit=params.get("limit"),
        )
        return Response(
            {"count": len(matches), "results": WorkshopMatchSerializer(matches, many=True).data},
            status=status.HTTP_200_OK,
        )


class WorkshopWorkersView(APIView):
    def get(self, request, workshop_id):
        workers = list_workshop_workers(workshop_id, request.user)
        return Response(WorkerSerializer(workers, many=True).data, status=status.HTTP_200_OK)

    def post(self, request, workshop_id):
        serializer = WorkerRegistrationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        worker = register_worker(
            workshop_id,
            user=data["user_id"],
            name=data["name"],
            phone=data.get("phone", ""),
            specialization=data.get("specialization"),
            actor=request.user,
        )
        return Response(WorkerSerializer(worker).data, status=status.HTTP_201_CREATED)


class WorkerDetailView(APIView):
    def get(self, request, worker_id):
        return Response(WorkerSerializer(get_worker(worker_id, request.user)).data, status=status.HTTP_200_OK)

    def patch(self, request, worker_id):
        serializer = WorkerUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        worker = update_worker(worker_id, serializer.validated_data, actor=request.user)
        return Response(WorkerSerializer(worker).data, status=status.HTTP_200_OK)

    def delete(self, request, worker_id):
        delete_worker(worker_id, actor=request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)


class WorkerAvailabilityView(APIView):
    def post(self, request, worker_id):
        serializer = WorkerAvailabilitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        worker = set_worker_availability(worker_id, serializer.validated_data["is_available"], request.user)
        return Response(WorkerSerializer(worker).data, status=status.HTTP_200_OK)


class ServiceRequestListCreateView(APIView):
    def get(self, request):
        requests_qs = visible_requests(request.user).select_related("workshop", "assigned_worker")
        status_filter = (request.query_params.get("status") or "").strip()
        if status_filter:
            requests_qs = requests_qs.filter(status=status_filter)
        return Response(ServiceRequestSerializer(requests_qs[:100], many=True).data, status=status.HTTP_200_OK)

    def post(self, request):
        payload = request.data.dict() if hasattr(request.data, "dict") else dict(request.data)
        service_request = create_service_request(payload, requester=request.user, source="api")
        return Response(ServiceRequestSerializer(service_request).data, status=status.HTTP_201_CREATED)


class ServiceRequestDetailView(APIView):
    def get(self, request, request_id):
        service_request = get_request_for_viewer(request_id, request.user)
        return Response(ServiceRequestSerializer(service_request).data, status=status.HTTP_200_OK)


class ServiceRequestHistoryView(APIView):
    def get(self, request, request_id):
        service_request = get_request_for_viewer(request_id, request.user)
        events = service_request.workflow_events.order_by("created_at", "id")
        return Response(WorkflowEventSerializer(events, many=True).data, status=status.HTTP_200_OK)


class RequestQuotationsView(APIView):
    def get(self, request, request_id):
        quotations = list_quotations(request_id, request.user)
        return Response(QuotationSerializer(quotations, many=True).data, status=status.HTTP_200_OK)

    def post(self, request, request_id):
        pricing = request.data.dict() if hasattr(request.data, "dict") else dict(request.data)
        workshop_id = pricing.pop("workshop_id", None)
        if workshop_id in (None, ""):
            workshop_ids = staff_workshop_ids(request.user)
            if len(workshop_ids) != 1:
                raise InvalidArgument(
                    "workshop_id is required.",
                    errors={"workshop_id": ["This field is required."]},
                )
            workshop_id = next(iter(workshop_ids))
        quotation = submit_quotation(request_id, workshop_id, pricing, actor=request.user, source="api")
        return Response(QuotationSerializer(quotation).data, status=status.HTTP_201_CREATED)


class QuotationDetailView(APIView):
    def get(self, request, quotation_id):
        quotation = get_quotation(quotation_id, request.user)
        return Response(QuotationSerializer(quotation).data, status=status.HTTP_200_OK)

    def patch(self, request, quotation_id):
        fields = request.data.dict() if hasattr(request.data, "dict") else dict(request.data)
        quotation = update_quotation(quotation_id, fields, actor=request.user, source="api")
        return Response(QuotationSerializer(quotation).data, status=status.HTTP_200_OK)


class WorkshopQuotationsView(APIView):
    def get(self, request, workshop_id):
        quotations = list_workshop_quotations(workshop_id, request.user)
        return Response(QuotationSerializer(quotations, many=True).data, status=status.HTTP_200_OK)


class QuotationAcceptView(APIView):
    def post(self, request, quotation_id):
        service_request, replayed = run_idempotent(
            request,
            f"quotation-accept:{quotation_id}",
            lambda: accept_quotation(quotation_id, request.user, source="api"),
        )
        return request_state_response(service_request, replayed)


class AssignWorkshopView(APIView):
    def post(self, request, request_id):
        serializer = AssignWorkshopSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        service_request, replayed = run_idempotent(
            request,
            f"assign-workshop:{request_id}",
            lambda: assign_workshop(
                request_id,
                data["workshop_id"],
                request.user,
                data.get("worker_id"),
                source="api",
            ),
        )
        return request_state_response(service_request, replayed)


class AssignWorkerView(APIView):
    def post(self, request, request_id):
        serializer = AssignWorkerSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        worker_id = serializer.validated_data["worker_id"]
        service_request, replayed = run_idempotent(
            request,
            f"assign-worker:{request_id}",
            lambda: assign_worker(request_id, worker_id, request.user, source="api"),
        )
        return request_state_response(service_request, replayed)


class TransitionView(APIView):
    def post(self, request, request_id):
        serializer = TransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        service_request, replayed = run_idempotent(
            request,
            f"transition:{request_id}",
            lambda: transition_request(
                request_id,
                data["status"].strip().upper(),
                request.user,
                source="api",
                note=data.get("note", ""),
            ),
        )
        return request_state_response(service_request, replayed)


class AvailableWorkersView(APIView):
    def get(self, request, request_id):
        workers = list_available_workers(request_id, request.user)
        return Response(WorkerSerializer(workers, many=True).data, status=status.HTTP_200_OK)


class ReviewView(APIView):
    def post(self, request, request_id):
        serializer = ReviewInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        review = submit_review(
            request_id,
            request.user,
            serializer.validated_data["score"],
            serializer.validated_data.get("comment", ""),
        )
        return Response(WorkshopReviewSerializer(review).data, status=status.HTTP_200_OK)
