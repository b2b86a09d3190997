from decimal import Decimal

from django.contrib.auth.models import User
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Avg

ACTIVE_REQUEST_STATUSES = ("ACCEPTED", "IN_PROGRESS")
TERMINAL_REQUEST_STATUSES = ("COMPLETED", "CANCELLED")
OPEN_FOR_QUOTATION_STATUSES = ("PENDING", "QUOTED")


class Workshop(models.Model):
    STATUS_CHOICES = (
        ("OPEN", "Open"),
        ("CLOSED", "Closed"),
    )

    owner = models.ForeignKey(User, on_delete=models.CASCADE, related_name="owned_workshops")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    address = models.TextField()
    latitude = models.DecimalField(
        max_digits=10,
        decimal_places=8,
        validators=[MinValueValidator(-90), MaxValueValidator(90)],
    )
    longitude = models.DecimalField(
        max_digits=11,
        decimal_places=8,
        validators=[MinValueValidator(-180), MaxValueValidator(180)],
    )
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="OPEN", db_index=True)
    rating = models.DecimalField(max_digits=2, decimal_places=1, default=Decimal("0.0"))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "id"]
        indexes = [
            models.Index(fields=["latitude", "longitude"], name="workshop_lat_lon_idx"),
        ]

    def __str__(self):
        return self.name

    @property
    def is_open(self):
        return self.status == "OPEN"


class Worker(models.Model):
    workshop = models.ForeignKey(Workshop, on_delete=models.CASCADE, related_name="workers")
    # One workshop per user.
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="worker_profile")
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=20, blank=True)
    specialization = models.JSONField(default=list, blank=True)
    is_available = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(fields=["workshop", "user"], name="uq_worker_workshop_user"),
        ]

    def __str__(self):
        return f"{self.name} @ {self.workshop.name}"


class ServiceRequest(models.Model):
    STATUS_CHOICES = (
        ("PENDING", "Pending"),
        ("QUOTED", "Quoted"),
        ("ACCEPTED", "Accepted"),
        ("IN_PROGRESS", "In progress"),
        ("COMPLETED", "Completed"),
        ("CANCELLED", "Cancelled"),
    )
    PRIORITY_CHOICES = (
        ("LOW", "Low"),
        ("MEDIUM", "Medium"),
        ("HIGH", "High"),
        ("URGENT", "Urgent"),
    )
    SERVICE_TYPE_CHOICES = (
        ("INSTANT_SERVICE", "Instant service"),
        ("SCHEDULED_SERVICE", "Scheduled service"),
    )

    requester = models.ForeignKey(User, on_delete=models.PROTECT, related_name="service_requests")
    workshop = models.ForeignKey(
        Workshop,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="service_requests",
    )
    assigned_worker = models.ForeignKey(
        Worker,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="service_requests",
    )
    name = models.CharField(max_length=255)
    description = models.TextField()
    service_type = models.CharField(max_length=20, choices=SERVICE_TYPE_CHOICES, default="INSTANT_SERVICE")
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default="MEDIUM")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="PENDING", db_index=True)
    location_address = models.CharField(max_length=500)
    location_latitude = models.DecimalField(max_digits=10, decimal_places=8)
    location_longitude = models.DecimalField(max_digits=11, decimal_places=8)
    issue_description = models.TextField()
    scheduled_start_time = models.DateTimeField(null=True, blank=True)
    scheduled_end_time = models.DateTimeField(null=True, blank=True)
    estimated_completion = models.DateTimeField(null=True, blank=True)
    actual_completion = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"#{self.id} {self.name} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_REQUEST_STATUSES


class Quotation(models.Model):
    service_request = models.ForeignKey(ServiceRequest, on_delete=models.CASCADE, related_name="quotations")
    workshop = models.ForeignKey(Workshop, on_delete=models.CASCADE, related_name="quotations")
    service_charges = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    variable_cost = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0.00"), validators=[MinValueValidator(0)]
    )
    spare_parts_cost = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0.00"), validators=[MinValueValidator(0)]
    )
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    notes = models.TextField(blank=True)
    valid_until = models.DateTimeField()
    is_accepted = models.BooleanField(default=False, db_index=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["service_request", "workshop"],
                name="uq_quotation_request_workshop",
            ),
            models.UniqueConstraint(
                fields=["service_request"],
                condition=models.Q(is_accepted=True),
                name="uq_quotation_single_accepted",
            ),
        ]

    def __str__(self):
        return f"Quotation #{self.id} request {self.service_request_id} -> {self.workshop_id}"

    @staticmethod
    def compute_total(service_charges, variable_cost, spare_parts_cost):
        return (
            Decimal(service_charges or 0)
            + Decimal(variable_cost or 0)
            + Decimal(spare_parts_cost or 0)
        )

    def save(self, *args, **kwargs):
        self.total_amount = Quotation.compute_total(
            self.service_charges,
            self.variable_cost,
            self.spare_parts_cost,
        )
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "total_amount" not in update_fields:
            kwargs["update_fields"] = [*update_fields, "total_amount"]
        super().save(*args, **kwargs)


class WorkshopReview(models.Model):
    SCORE_CHOICES = (
        (1, "1"),
        (2, "2"),
        (3, "3"),
        (4, "4"),
        (5, "5"),
    )

    workshop = models.ForeignKey(Workshop, on_delete=models.CASCADE, related_name="reviews")
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="workshop_reviews")
    service_request = models.OneToOneField(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name="review",
    )
    score = models.PositiveSmallIntegerField(choices=SCORE_CHOICES)
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-updated_at"]

    def __str__(self):
        return f"{self.user.username} -> {self.workshop.name} / request {self.service_request_id}: {self.score}"

    @staticmethod
    def refresh_workshop_average(workshop_id):
        avg_score = (
            WorkshopReview.objects.filter(workshop_id=workshop_id)
            .aggregate(avg_value=Avg("score"))
            .get("avg_value")
        )
        Workshop.objects.filter(id=workshop_id).update(rating=round(avg_score, 1) if avg_score is not None else 0.0)

    def save(self, *args, **kwargs):
        previous_workshop_id = None
        if self.pk:
            previous_workshop_id = (
                WorkshopReview.objects.filter(pk=self.pk).values_list("workshop_id", flat=True).first()
            )
        super().save(*args, **kwargs)
        WorkshopReview.refresh_workshop_average(self.workshop_id)
        if previous_workshop_id and previous_workshop_id != self.workshop_id:
            WorkshopReview.refresh_workshop_average(previous_workshop_id)

    def delete(self, *args, **kwargs):
        workshop_id = self.workshop_id
        super().delete(*args, **kwargs)
        WorkshopReview.refresh_workshop_average(workshop_id)


class WorkflowEvent(models.Model):
    ACTION_CHOICES = (
        ("request_status", "Request status change"),
        ("quotation_submitted", "Quotation submitted"),
        ("quotation_updated", "Quotation updated"),
        ("quotation_accepted", "Quotation accepted"),
        ("workshop_assigned", "Workshop assigned"),
        ("worker_assigned", "Worker assigned"),
        ("worker_released", "Worker released"),
    )
    ACTOR_ROLE_CHOICES = (
        ("requester", "Requester"),
        ("staff", "Workshop staff"),
        ("admin", "Administrator"),
        ("system", "System"),
    )
    SOURCE_CHOICES = (
        ("user", "User"),
        ("api", "API"),
        ("system", "System"),
    )

    action_type = models.CharField(max_length=32, choices=ACTION_CHOICES, default="request_status")
    service_request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name="workflow_events",
    )
    quotation = models.ForeignKey(
        Quotation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    worker = models.ForeignKey(
        Worker,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    from_status = models.CharField(max_length=30, blank=True)
    to_status = models.CharField(max_length=30, blank=True)
    actor_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    actor_role = models.CharField(max_length=20, choices=ACTOR_ROLE_CHOICES, default="system")
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default="system")
    note = models.CharField(max_length=240, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["service_request", "created_at"], name="wfevent_request_created_idx"),
            models.Index(fields=["action_type", "created_at"], name="wfevent_action_created_idx"),
        ]

    def __str__(self):
        if self.action_type == "request_status":
            return f"request {self.service_request_id} {self.from_status} -> {self.to_status}"
        return f"request {self.service_request_id} {self.action_type}"


class IdempotencyRecord(models.Model):
    key = models.CharField(max_length=64, unique=True)
    scope = models.CharField(max_length=80)
    endpoint = models.CharField(max_length=200, blank=True)
    service_request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="idempotency_records",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="idempotency_records",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.scope} {self.created_at:%Y-%m-%d %H:%M:%S}"


class ErrorLog(models.Model):
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    path = models.CharField(max_length=300, blank=True)
    method = models.CharField(max_length=10, blank=True)
    status_code = models.PositiveSmallIntegerField(default=500)
    error_code = models.CharField(max_length=40, blank=True, db_index=True)
    service_request_ref = models.PositiveBigIntegerField(null=True, blank=True)
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True)
    request_id = models.CharField(max_length=120, blank=True, db_index=True)
    ip_address = models.CharField(max_length=64, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="error_logs",
    )

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status_code", "created_at"], name="errorlog_status_created_idx"),
            models.Index(fields=["resolved_at", "created_at"], name="errorlog_resolved_created_idx"),
        ]

    def __str__(self):
        return f"{self.status_code} {self.error_code or '-'} {self.message[:80]}"

    @property
    def is_resolved(self):
        return self.resolved_at is not None
