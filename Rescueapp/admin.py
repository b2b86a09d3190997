from django.contrib import admin
from django.contrib import messages
from django.urls import reverse
from django.utils import timezone
from django.utils.html import format_html

from .api_views import idempotency_cutoff, purge_expired_idempotency_records
from .models import (
    ErrorLog,
    IdempotencyRecord,
    Quotation,
    ServiceRequest,
    WorkflowEvent,
    Worker,
    Workshop,
    WorkshopReview,
)


class WorkerInline(admin.TabularInline):
    model = Worker
    extra = 0
    fields = ("name", "user", "phone", "is_available")
    readonly_fields = ("is_available",)


@admin.register(Workshop)
class WorkshopAdmin(admin.ModelAdmin):
    list_display = ("name", "owner", "status", "rating", "latitude", "longitude", "created_at")
    list_filter = ("status",)
    search_fields = ("name", "address", "owner__username")
    readonly_fields = ("rating", "created_at", "updated_at")
    inlines = (WorkerInline,)


@admin.register(Worker)
class WorkerAdmin(admin.ModelAdmin):
    list_display = ("name", "workshop", "user", "phone", "is_available", "created_at")
    list_filter = ("is_available", "workshop")
    search_fields = ("name", "phone", "user__username", "workshop__name")
    # Availability follows the request lifecycle.
    readonly_fields = ("is_available", "created_at", "updated_at")


class QuotationInline(admin.TabularInline):
    model = Quotation
    extra = 0
    fields = ("workshop", "total_amount", "valid_until", "is_accepted", "accepted_at")
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(ServiceRequest)
class ServiceRequestAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "requester",
        "status",
        "priority",
        "workshop",
        "assigned_worker",
        "created_at",
    )
    list_filter = ("status", "priority", "service_type")
    search_fields = ("id", "name", "requester__username", "location_address", "workshop__name")
    list_select_related = ("requester", "workshop", "assigned_worker")
    readonly_fields = ("status", "workshop", "assigned_worker", "actual_completion", "created_at", "updated_at")
    inlines = (QuotationInline,)
    ordering = ("-created_at", "-id")


@admin.register(Quotation)
class QuotationAdmin(admin.ModelAdmin):
    list_display = ("service_request", "workshop", "total_amount", "valid_until", "is_accepted", "accepted_at")
    list_filter = ("is_accepted",)
    search_fields = ("service_request__id", "workshop__name", "notes")
    readonly_fields = ("total_amount", "is_accepted", "accepted_at", "created_at", "updated_at")


@admin.register(WorkshopReview)
class WorkshopReviewAdmin(admin.ModelAdmin):
    list_display = ("service_request", "workshop", "user", "score", "updated_at")
    list_filter = ("score",)
    search_fields = ("service_request__id", "workshop__name", "user__username", "comment")


@admin.register(WorkflowEvent)
class WorkflowEventAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "action_type",
        "service_request",
        "from_status",
        "to_status",
        "worker",
        "actor_role",
        "actor_user",
        "source",
        "note",
    )
    list_filter = ("action_type", "actor_role", "source", "to_status", "created_at")
    search_fields = ("service_request__id", "actor_user__username", "note")
    list_select_related = ("service_request", "worker", "actor_user")
    date_hierarchy = "created_at"
    ordering = ("-created_at", "-id")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ("created_at", "scope", "service_request", "user", "is_expired")
    list_filter = ("scope",)
    search_fields = ("scope", "service_request__id", "user__username")
    ordering = ("-created_at", "-id")
    readonly_fields = ("key", "scope", "endpoint", "service_request", "user", "created_at")
    actions = ("purge_expired",)

    @admin.display(boolean=True, description="Expired")
    def is_expired(self, obj):
        return obj.created_at < idempotency_cutoff()

    @admin.action(description="Purge records past the replay window")
    def purge_expired(self, request, queryset):
        deleted_count = purge_expired_idempotency_records()
        self.message_user(request, f"{deleted_count} expired idempotency records purged.", level=messages.SUCCESS)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ErrorLog)
class ErrorLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "status_code", "error_code", "service_request_link", "path", "resolved_at")
    list_filter = ("error_code", "status_code", "resolved_at")
    search_fields = ("=service_request_ref", "path", "message", "request_id")
    readonly_fields = [field.name for field in ErrorLog._meta.fields if field.name != "resolved_at"]
    ordering = ("-created_at", "-id")
    actions = ("mark_resolved",)

    @admin.display(description="Service request")
    def service_request_link(self, obj):
        if obj.service_request_ref is None:
            return "-"
        url = reverse("admin:Rescueapp_servicerequest_change", args=[obj.service_request_ref])
        return format_html('<a href="{}">#{}</a>', url, obj.service_request_ref)

    @admin.action(description="Mark selected errors as resolved")
    def mark_resolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=True).update(resolved_at=timezone.now())
        self.message_user(request, f"{updated_count} errors marked resolved.", level=messages.SUCCESS)
