from decimal import Decimal

from django import forms
from django.core.exceptions import ValidationError
from django.utils import timezone

from .models import Quotation, ServiceRequest

COST_FIELDS = ("service_charges", "variable_cost", "spare_parts_cost")
QUOTATION_EDITABLE_FIELDS = (*COST_FIELDS, "notes", "valid_until")


def coordinate_to_decimal(value):
    return Decimal(str(round(value, 8)))


def form_errors_payload(form):
    return {field: [str(message) for message in messages] for field, messages in form.errors.items()}


class ServiceRequestForm(forms.ModelForm):
    location_latitude = forms.FloatField(min_value=-90, max_value=90)
    location_longitude = forms.FloatField(min_value=-180, max_value=180)

    class Meta:
        model = ServiceRequest
        fields = (
            "name",
            "description",
            "service_type",
            "priority",
            "location_address",
            "location_latitude",
            "location_longitude",
            "issue_description",
            "scheduled_start_time",
            "scheduled_end_time",
            "estimated_completion",
        )

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["service_type"].required = False
        self.fields["priority"].required = False

    def _clean_text(self, field_name, min_length, max_length, label):
        value = (self.cleaned_data.get(field_name) or "").strip()
        if len(value) < min_length or len(value) > max_length:
            raise ValidationError(f"{label} must be between {min_length} and {max_length} characters.")
        return value

    def clean_name(self):
        return self._clean_text("name", 2, 255, "Name")

    def clean_description(self):
        return self._clean_text("description", 10, 1000, "Description")

    def clean_location_address(self):
        return self._clean_text("location_address", 5, 500, "Location address")

    def clean_issue_description(self):
        return self._clean_text("issue_description", 10, 2000, "Issue description")

    def clean_location_latitude(self):
        return coordinate_to_decimal(self.cleaned_data["location_latitude"])

    def clean_location_longitude(self):
        return coordinate_to_decimal(self.cleaned_data["location_longitude"])

    def clean(self):
        cleaned_data = super().clean()
        start = cleaned_data.get("scheduled_start_time")
        end = cleaned_data.get("scheduled_end_time")
        if start and end and end <= start:
            self.add_error("scheduled_end_time", "Scheduled end must be after the scheduled start.")
        return cleaned_data


class QuotationForm(forms.ModelForm):
    class Meta:
        model = Quotation
        fields = QUOTATION_EDITABLE_FIELDS

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["variable_cost"].required = False
        self.fields["spare_parts_cost"].required = False
        self.fields["notes"].required = False

    def _clean_cost(self, field_name, *, default=None):
        value = self.cleaned_data.get(field_name)
        if value is None:
            if default is None:
                raise ValidationError("This field is required.")
            return default
        if value < 0:
            raise ValidationError("Amount cannot be negative.")
        return value

    def clean_service_charges(self):
        return self._clean_cost("service_charges")

    def clean_variable_cost(self):
        return self._clean_cost("variable_cost", default=Decimal("0.00"))

    def clean_spare_parts_cost(self):
        return self._clean_cost("spare_parts_cost", default=Decimal("0.00"))

    def clean_valid_until(self):
        valid_until = self.cleaned_data.get("valid_until")
        is_changed = self.instance.pk is None or valid_until != self.instance.valid_until
        if is_changed and valid_until <= timezone.now():
            raise ValidationError("Valid until date must be in the future.")
        return valid_until
