from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .api_views import (
    AssignWorkerView,
    AssignWorkshopView,
    AvailableWorkersView,
    LoginView,
    QuotationAcceptView,
    QuotationDetailView,
    RequestQuotationsView,
    ReviewView,
    ServiceRequestDetailView,
    ServiceRequestHistoryView,
    ServiceRequestListCreateView,
    TransitionView,
    WorkerAvailabilityView,
    WorkerDetailView,
    WorkshopQuotationsView,
    WorkshopSearchView,
    WorkshopWorkersView,
)


urlpatterns = [
    path("auth/login/", LoginView.as_view(), name="api_login"),
    path("auth/refresh/", TokenRefreshView.as_view(), name="api_token_refresh"),
    path("workshops/", WorkshopSearchView.as_view(), name="api_workshop_search"),
    path("workshops/<int:workshop_id>/workers/", WorkshopWorkersView.as_view(), name="api_workshop_workers"),
    path(
        "workshops/<int:workshop_id>/quotations/",
        WorkshopQuotationsView.as_view(),
        name="api_workshop_quotations",
    ),
    path("workers/<int:worker_id>/", WorkerDetailView.as_view(), name="api_worker_detail"),
    path("workers/<int:worker_id>/availability/", WorkerAvailabilityView.as_view(), name="api_worker_availability"),
    path("requests/", ServiceRequestListCreateView.as_view(), name="api_requests"),
    path("requests/<int:request_id>/", ServiceRequestDetailView.as_view(), name="api_request_detail"),
    path("requests/<int:request_id>/history/", ServiceRequestHistoryView.as_view(), name="api_request_history"),
    path("requests/<int:request_id>/quotations/", RequestQuotationsView.as_view(), name="api_request_quotations"),
    path(
        "requests/<int:request_id>/assign-workshop/",
        AssignWorkshopView.as_view(),
        name="api_request_assign_workshop",
    ),
    path("requests/<int:request_id>/assign-worker/", AssignWorkerView.as_view(), name="api_request_assign_worker"),
    path("requests/<int:request_id>/transition/", TransitionView.as_view(), name="api_request_transition"),
    path(
        "requests/<int:request_id>/available-workers/",
        AvailableWorkersView.as_view(),
        name="api_request_available_workers",
    ),
    path("requests/<int:request_id>/review/", ReviewView.as_view(), name="api_request_review"),
    path("quotations/<int:quotation_id>/", QuotationDetailView.as_view(), name="api_quotation_detail"),
    path("quotations/<int:quotation_id>/accept/", QuotationAcceptView.as_view(), name="api_quotation_accept"),
]
