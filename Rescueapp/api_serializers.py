from django.contrib.auth import authenticate
from rest_framework import serializers

from .geo import SEARCH_SORT_CHOICES
from .models import Quotation, ServiceRequest, WorkflowEvent, Worker, Workshop, WorkshopReview


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(write_only=True, trim_whitespace=False, style={"input_type": "password"})

    def validate(self, attrs):
        request = self.context.get("request")
        username = (attrs.get("username") or "").strip()
        user = authenticate(request=request, username=username, password=attrs.get("password") or "")
        if user is None:
            raise serializers.ValidationError("Invalid username or password.")
        if not user.is_active:
            raise serializers.ValidationError("This account is inactive.")
        attrs["user"] = user
        return attrs


class WorkshopSerializer(serializers.ModelSerializer):
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()
    rating = serializers.FloatField()

    class Meta:
        model = Workshop
        fields = ("id", "name", "description", "address", "latitude", "longitude", "status", "rating", "created_at")


class WorkshopMatchSerializer(serializers.Serializer):
    workshop = WorkshopSerializer()
    distance_km = serializers.SerializerMethodField()

    def get_distance_km(self, obj):
        if obj.distance_km is None:
            return None
        return round(obj.distance_km, 3)


class WorkshopSearchQuerySerializer(serializers.Serializer):
    latitude = serializers.CharField(required=False, allow_blank=True)
    longitude = serializers.CharField(required=False, allow_blank=True)
    radius = serializers.CharField(required=False)
    status = serializers.ChoiceField(choices=Workshop.STATUS_CHOICES, required=False)
    search = serializers.CharField(required=False, allow_blank=True, max_length=120)
    sort = serializers.ChoiceField(choices=SEARCH_SORT_CHOICES, required=False)
    limit = serializers.IntegerField(required=False, min_value=1)


class WorkerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Worker
        fields = ("id", "workshop", "user", "name", "phone", "specialization", "is_available", "created_at")


class ServiceRequestSerializer(serializers.ModelSerializer):
    location_latitude = serializers.FloatField()
    location_longitude = serializers.FloatField()
    workshop_name = serializers.SerializerMethodField()
    assigned_worker_name = serializers.SerializerMethodField()

    class Meta:
        model = ServiceRequest
        fields = (
            "id",
            "requester",
            "workshop",
            "workshop_name",
            "assigned_worker",
            "assigned_worker_name",
            "name",
            "description",
            "service_type",
            "priority",
            "status",
            "location_address",
            "location_latitude",
            "location_longitude",
            "issue_description",
            "scheduled_start_time",
            "scheduled_end_time",
            "estimated_completion",
            "actual_completion",
            "created_at",
            "updated_at",
        )

    def get_workshop_name(self, obj):
        return obj.workshop.name if obj.workshop_id else ""

    def get_assigned_worker_name(self, obj):
        return obj.assigned_worker.name if obj.assigned_worker_id else ""


class QuotationSerializer(serializers.ModelSerializer):
    workshop_name = serializers.CharField(source="workshop.name", read_only=True)

    class Meta:
        model = Quotation
        fields = (
            "id",
            "service_request",
            "workshop",
            "workshop_name",
            "service_charges",
            "variable_cost",
            "spare_parts_cost",
            "total_amount",
            "notes",
            "valid_until",
            "is_accepted",
            "accepted_at",
            "created_at",
            "updated_at",
        )


class WorkflowEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowEvent
        fields = (
            "id",
            "action_type",
            "from_status",
            "to_status",
            "quotation",
            "worker",
            "actor_user",
            "actor_role",
            "source",
            "note",
            "created_at",
        )


class WorkshopReviewSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkshopReview
        fields = ("id", "workshop", "service_request", "score", "comment", "created_at", "updated_at")


class AssignWorkshopSerializer(serializers.Serializer):
    workshop_id = serializers.IntegerField()
    worker_id = serializers.IntegerField(required=False, allow_null=True)


class AssignWorkerSerializer(serializers.Serializer):
    # null unassigns
    worker_id = serializers.IntegerField(allow_null=True)


class TransitionSerializer(serializers.Serializer):
    status = serializers.CharField(max_length=20)
    note = serializers.CharField(required=False, allow_blank=True, max_length=240)


class ReviewInputSerializer(serializers.Serializer):
    score = serializers.IntegerField()
    comment = serializers.CharField(required=False, allow_blank=True, max_length=2000)


class WorkerRegistrationSerializer(serializers.Serializer):
    user_id = serializers.IntegerField()
    name = serializers.CharField(max_length=255)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=20)
    specialization = serializers.ListField(child=serializers.CharField(max_length=60), required=False)


class WorkerUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(required=False, max_length=255)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=20)
    specialization = serializers.ListField(child=serializers.CharField(max_length=60), required=False)
    workshop_id = serializers.IntegerField(required=False)

    def validate(self, attrs):
        unknown = sorted(set(self.initial_data) - set(self.fields))
        if unknown:
            raise serializers.ValidationError({name: ["This field cannot be changed."] for name in unknown})
        return attrs


class WorkerAvailabilitySerializer(serializers.Serializer):
    is_available = serializers.BooleanField()
