from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth.models import AnonymousUser, User
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError
from django.test import RequestFactory, TestCase, override_settings
from django.urls import resolve, reverse
from django.utils import timezone
from rest_framework.test import APIClient

from .api_views import purge_expired_idempotency_records
from .directory import search_workshops_near, submit_review
from .exceptions import (
    AlreadyAccepted,
    Conflict,
    Expired,
    Forbidden,
    Inconsistent,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    OperationTimeout,
    PreconditionFailed,
    Unavailable,
)
from .fulfillment import assign_workshop, create_service_request, transition_request
from .geo import Coordinates, distance_km
from .invariants import find_invariant_violations
from .middleware import ErrorLoggingMiddleware
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
from .quotations import (
    accept_quotation,
    get_quotation,
    list_quotations,
    list_workshop_quotations,
    submit_quotation,
    update_quotation,
)
from .transactions import atomic_operation, is_timeout_error
from .workers import (
    assign_worker,
    delete_worker,
    list_available_workers,
    list_workshop_workers,
    on_status_change,
    register_worker,
    set_worker_availability,
    update_worker,
)

# One degree of latitude on the 6371 km sphere.
KM_PER_DEGREE = 111.19492664


def latitude_north_of(latitude, km):
    return Decimal(str(round(latitude + km / KM_PER_DEGREE, 8)))


class FulfillmentTestMixin:
    def setUp(self):
        self.requester = User.objects.create_user(username="driver", password="StrongPass123!")
        self.owner1 = User.objects.create_user(username="owner1", password="StrongPass123!")
        self.owner2 = User.objects.create_user(username="owner2", password="StrongPass123!")
        self.outsider = User.objects.create_user(username="outsider", password="StrongPass123!")
        self.admin = User.objects.create_user(username="ops", password="StrongPass123!", is_staff=True)

        self.w1 = Workshop.objects.create(
            owner=self.owner1,
            name="North Garage",
            address="1 North Street",
            latitude=Decimal("41.00000000"),
            longitude=Decimal("29.00000000"),
        )
        self.w2 = Workshop.objects.create(
            owner=self.owner2,
            name="South Garage",
            address="2 South Street",
            latitude=Decimal("41.01000000"),
            longitude=Decimal("29.01000000"),
        )

        self.mechanic_x = User.objects.create_user(username="mech_x", password="StrongPass123!")
        self.mechanic_y = User.objects.create_user(username="mech_y", password="StrongPass123!")
        self.mechanic_z = User.objects.create_user(username="mech_z", password="StrongPass123!")
        self.worker_x = Worker.objects.create(workshop=self.w2, user=self.mechanic_x, name="Xavier")
        self.worker_y = Worker.objects.create(workshop=self.w2, user=self.mechanic_y, name="Yusuf")
        self.worker_z = Worker.objects.create(workshop=self.w1, user=self.mechanic_z, name="Zeki")

    def request_payload(self, **overrides):
        payload = {
            "name": "Flat tyre",
            "description": "Rear tyre punctured on the highway",
            "location_address": "Ring Road exit 12",
            "location_latitude": 12.9,
            "location_longitude": 77.6,
            "issue_description": "Tyre burst near the exit ramp",
        }
        payload.update(overrides)
        return payload

    def make_request(self, **overrides):
        return create_service_request(self.request_payload(**overrides), requester=self.requester)

    def pricing(self, charges="100.00", hours=1, **extra):
        data = {"service_charges": charges, "valid_until": timezone.now() + timedelta(hours=hours)}
        data.update(extra)
        return data

    def accepted_request_at_w2(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)
        accept_quotation(quotation.id, self.requester)
        service_request.refresh_from_db()
        return service_request


class QuotationLedgerTests(FulfillmentTestMixin, TestCase):
    def test_create_service_request_starts_pending(self):
        service_request = self.make_request(priority="HIGH")

        self.assertEqual(service_request.status, "PENDING")
        self.assertEqual(service_request.priority, "HIGH")
        self.assertEqual(service_request.service_type, "INSTANT_SERVICE")
        self.assertEqual(service_request.location_latitude, Decimal("12.9"))
        self.assertTrue(
            WorkflowEvent.objects.filter(service_request=service_request, to_status="PENDING").exists()
        )

    def test_create_service_request_rejects_bad_input(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self.make_request(location_latitude=120, description="short")
        self.assertIn("location_latitude", ctx.exception.errors)
        self.assertIn("description", ctx.exception.errors)

        with self.assertRaises(InvalidArgument) as ctx:
            self.make_request(workshop_id=999999)
        self.assertIn("workshop_id", ctx.exception.errors)

        start = timezone.now() + timedelta(hours=2)
        with self.assertRaises(InvalidArgument) as ctx:
            self.make_request(scheduled_start_time=start, scheduled_end_time=start - timedelta(hours=1))
        self.assertIn("scheduled_end_time", ctx.exception.errors)
        self.assertEqual(ServiceRequest.objects.count(), 0)

    def test_accepting_one_quotation_rejects_siblings(self):
        service_request = self.make_request()
        q1 = submit_quotation(service_request.id, self.w1.id, self.pricing("100.00"), actor=self.owner1)
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "QUOTED")

        q2 = submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)
        accept_quotation(q2.id, self.requester)

        q1.refresh_from_db()
        q2.refresh_from_db()
        service_request.refresh_from_db()
        self.assertTrue(q2.is_accepted)
        self.assertIsNotNone(q2.accepted_at)
        self.assertFalse(q1.is_accepted)
        self.assertEqual(service_request.status, "ACCEPTED")
        self.assertEqual(service_request.workshop_id, self.w2.id)
        self.assertEqual(Quotation.objects.filter(service_request=service_request, is_accepted=True).count(), 1)

        actions = set(
            WorkflowEvent.objects.filter(service_request=service_request).values_list("action_type", flat=True)
        )
        self.assertTrue({"quotation_submitted", "quotation_accepted", "workshop_assigned"} <= actions)

    def test_accept_rejects_second_acceptance(self):
        service_request = self.make_request()
        q1 = submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner1)
        q2 = submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)
        accept_quotation(q2.id, self.requester)

        with self.assertRaises(AlreadyAccepted):
            accept_quotation(q2.id, self.requester)
        with self.assertRaises(InvalidTransition):
            accept_quotation(q1.id, self.requester)

        q1.refresh_from_db()
        self.assertFalse(q1.is_accepted)
        self.assertEqual(Quotation.objects.filter(service_request=service_request, is_accepted=True).count(), 1)

    def test_accept_expired_quotation_changes_nothing(self):
        service_request = self.make_request()
        quotation = Quotation.objects.create(
            service_request=service_request,
            workshop=self.w1,
            service_charges=Decimal("50.00"),
            valid_until=timezone.now() - timedelta(minutes=1),
        )

        with self.assertRaises(Expired):
            accept_quotation(quotation.id, self.requester)

        quotation.refresh_from_db()
        service_request.refresh_from_db()
        self.assertFalse(quotation.is_accepted)
        self.assertEqual(service_request.status, "PENDING")
        self.assertIsNone(service_request.workshop_id)

    def test_accept_requires_requester(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner1)

        with self.assertRaises(Forbidden):
            accept_quotation(quotation.id, self.owner1)
        with self.assertRaises(NotFound):
            accept_quotation(999999, self.requester)

        quotation.refresh_from_db()
        self.assertFalse(quotation.is_accepted)

    def test_submit_quotation_validation(self):
        service_request = self.make_request()

        with self.assertRaises(NotFound):
            submit_quotation(999999, self.w1.id, self.pricing(), actor=self.owner1)
        with self.assertRaises(Forbidden):
            submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner2)
        with self.assertRaises(InvalidArgument):
            submit_quotation(service_request.id, self.w1.id, self.pricing(hours=-1), actor=self.owner1)
        with self.assertRaises(InvalidArgument) as ctx:
            submit_quotation(service_request.id, self.w1.id, self.pricing("-5.00"), actor=self.owner1)
        self.assertIn("service_charges", ctx.exception.errors)

        submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner1)
        with self.assertRaises(Conflict):
            submit_quotation(service_request.id, self.w1.id, self.pricing("90.00"), actor=self.owner1)
        self.assertEqual(Quotation.objects.filter(service_request=service_request).count(), 1)

    def test_submit_quotation_rejected_after_acceptance(self):
        service_request = self.accepted_request_at_w2()

        with self.assertRaises(Conflict):
            submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner1)

    def test_closed_workshop_cannot_quote(self):
        self.w1.status = "CLOSED"
        self.w1.save(update_fields=["status"])
        service_request = self.make_request()

        with self.assertRaises(Unavailable):
            submit_quotation(service_request.id, self.w1.id, self.pricing(), actor=self.owner1)

    def test_total_amount_follows_every_cost_update(self):
        service_request = self.make_request()
        quotation = submit_quotation(
            service_request.id,
            self.w1.id,
            self.pricing("100.00", variable_cost="10.00"),
            actor=self.owner1,
        )
        self.assertEqual(quotation.total_amount, Decimal("110.00"))

        quotation = update_quotation(quotation.id, {"variable_cost": "15.50"}, actor=self.owner1)
        self.assertEqual(quotation.total_amount, Decimal("115.50"))

        quotation = update_quotation(quotation.id, {"spare_parts_cost": "4.50", "notes": "OEM parts"}, actor=self.owner1)
        quotation.refresh_from_db()
        self.assertEqual(quotation.total_amount, Decimal("120.00"))
        self.assertEqual(
            quotation.total_amount,
            quotation.service_charges + quotation.variable_cost + quotation.spare_parts_cost,
        )

        quotation.service_charges = Decimal("200.00")
        quotation.save(update_fields=["service_charges"])
        quotation.refresh_from_db()
        self.assertEqual(quotation.total_amount, Decimal("220.00"))

    def test_update_quotation_rules(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)

        with self.assertRaises(Forbidden):
            update_quotation(quotation.id, {"service_charges": "70.00"}, actor=self.owner1)
        with self.assertRaises(InvalidArgument):
            update_quotation(quotation.id, {"is_accepted": True}, actor=self.owner2)
        with self.assertRaises(InvalidArgument):
            update_quotation(quotation.id, {"spare_parts_cost": "-1.00"}, actor=self.owner2)

        accept_quotation(quotation.id, self.requester)
        with self.assertRaises(Conflict):
            update_quotation(quotation.id, {"service_charges": "70.00"}, actor=self.owner2)

        quotation.refresh_from_db()
        self.assertEqual(quotation.total_amount, Decimal("80.00"))

    def test_list_quotations_visibility(self):
        service_request = self.make_request()
        submit_quotation(service_request.id, self.w1.id, self.pricing("100.00"), actor=self.owner1)
        submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)

        requester_view = list_quotations(service_request.id, self.requester)
        self.assertEqual([item.workshop_id for item in requester_view], [self.w2.id, self.w1.id])
        self.assertEqual([item.workshop_id for item in list_quotations(service_request.id, self.owner1)], [self.w1.id])
        with self.assertRaises(Forbidden):
            list_quotations(service_request.id, self.outsider)


    def test_quotation_ids_may_arrive_as_strings(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing("80.00"), actor=self.owner2)

        update_quotation(str(quotation.id), {"service_charges": "90.00"}, actor=self.owner2)
        accept_quotation(str(quotation.id), self.requester)

        quotation.refresh_from_db()
        self.assertTrue(quotation.is_accepted)
        self.assertEqual(quotation.total_amount, Decimal("90.00"))
        with self.assertRaises(InvalidArgument):
            accept_quotation("latest", self.requester)

    def test_get_quotation_visibility(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing(), actor=self.owner2)

        for viewer in (self.requester, self.owner2, self.mechanic_x, self.admin):
            self.assertEqual(get_quotation(quotation.id, viewer).id, quotation.id)
        for viewer in (self.owner1, self.outsider):
            with self.assertRaises(Forbidden):
                get_quotation(quotation.id, viewer)
        with self.assertRaises(NotFound):
            get_quotation(999999, self.admin)

    def test_list_workshop_quotations_newest_first(self):
        first = submit_quotation(self.make_request().id, self.w2.id, self.pricing(), actor=self.owner2)
        second = submit_quotation(self.make_request().id, self.w2.id, self.pricing(), actor=self.owner2)
        submit_quotation(self.make_request().id, self.w1.id, self.pricing(), actor=self.owner1)

        self.assertEqual(
            [quotation.id for quotation in list_workshop_quotations(self.w2.id, self.mechanic_y)],
            [second.id, first.id],
        )
        with self.assertRaises(Forbidden):
            list_workshop_quotations(self.w2.id, self.owner1)
        with self.assertRaises(NotFound):
            list_workshop_quotations(999999, self.admin)


class WorkerAssignmentTests(FulfillmentTestMixin, TestCase):
    def test_assign_and_unassign_worker(self):
        service_request = self.accepted_request_at_w2()

        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        self.worker_x.refresh_from_db()
        service_request.refresh_from_db()
        self.assertFalse(self.worker_x.is_available)
        self.assertEqual(service_request.assigned_worker_id, self.worker_x.id)

        assign_worker(service_request.id, None, self.owner2)
        self.worker_x.refresh_from_db()
        service_request.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)
        self.assertIsNone(service_request.assigned_worker_id)
        self.assertTrue(
            WorkflowEvent.objects.filter(
                service_request=service_request,
                action_type="worker_released",
                worker=self.worker_x,
            ).exists()
        )

    def test_swapping_workers_releases_previous(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        assign_worker(service_request.id, self.worker_y.id, self.mechanic_x)

        self.worker_x.refresh_from_db()
        self.worker_y.refresh_from_db()
        service_request.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)
        self.assertFalse(self.worker_y.is_available)
        self.assertEqual(service_request.assigned_worker_id, self.worker_y.id)

    def test_reassigning_same_worker_is_noop(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        assign_worker(service_request.id, self.worker_x.id, self.owner2)

        self.assertEqual(
            WorkflowEvent.objects.filter(service_request=service_request, action_type="worker_assigned").count(),
            1,
        )

    def test_unavailable_worker_leaves_state_unchanged(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        Worker.objects.filter(id=self.worker_y.id).update(is_available=False)

        with self.assertRaises(Unavailable):
            assign_worker(service_request.id, self.worker_y.id, self.owner2)

        self.worker_x.refresh_from_db()
        service_request.refresh_from_db()
        self.assertFalse(self.worker_x.is_available)
        self.assertEqual(service_request.assigned_worker_id, self.worker_x.id)

    def test_worker_cannot_serve_two_active_requests(self):
        first = self.accepted_request_at_w2()
        second = self.accepted_request_at_w2()
        assign_worker(first.id, self.worker_x.id, self.owner2)

        with self.assertRaises(Unavailable):
            assign_worker(second.id, self.worker_x.id, self.owner2)
        self.assertEqual(
            ServiceRequest.objects.filter(assigned_worker=self.worker_x, status__in=["ACCEPTED", "IN_PROGRESS"]).count(),
            1,
        )

    def test_assign_worker_guards(self):
        pending = self.make_request()
        with self.assertRaises(PreconditionFailed):
            assign_worker(pending.id, self.worker_x.id, self.owner2)

        service_request = self.accepted_request_at_w2()
        with self.assertRaises(NotFound):
            assign_worker(service_request.id, self.worker_z.id, self.owner2)
        with self.assertRaises(Forbidden):
            assign_worker(service_request.id, self.worker_x.id, self.owner1)
        with self.assertRaises(NotFound):
            assign_worker(999999, self.worker_x.id, self.owner2)

        self.worker_x.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)

    def test_completion_releases_worker(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)

        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        transition_request(service_request.id, "COMPLETED", self.mechanic_x)

        self.worker_x.refresh_from_db()
        service_request.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)
        self.assertEqual(service_request.status, "COMPLETED")
        self.assertEqual(service_request.assigned_worker_id, self.worker_x.id)
        self.assertIsNotNone(service_request.actual_completion)

    def test_requester_cancel_releases_worker(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)

        transition_request(service_request.id, "CANCELLED", self.requester)

        self.worker_x.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)

    def test_mismatched_worker_surfaces_inconsistent(self):
        service_request = self.accepted_request_at_w2()
        ServiceRequest.objects.filter(id=service_request.id).update(assigned_worker=self.worker_z)

        with self.assertRaises(Inconsistent):
            transition_request(service_request.id, "IN_PROGRESS", self.owner2)

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "ACCEPTED")

    def test_register_worker(self):
        new_user = User.objects.create_user(username="apprentice", password="StrongPass123!")
        worker = register_worker(
            self.w2.id,
            user=new_user.id,
            name="Apprentice",
            specialization=["tyres", " battery", "tyres"],
            actor=self.owner2,
        )
        self.assertEqual(worker.workshop_id, self.w2.id)
        self.assertEqual(worker.specialization, ["battery", "tyres"])
        self.assertTrue(worker.is_available)

        with self.assertRaises(Conflict):
            register_worker(self.w1.id, user=new_user, name="Apprentice", actor=self.owner1)
        other_user = User.objects.create_user(username="helper", password="StrongPass123!")
        with self.assertRaises(Forbidden):
            register_worker(self.w2.id, user=other_user, name="Helper", actor=self.mechanic_x)
        with self.assertRaises(InvalidArgument):
            register_worker(self.w2.id, user=other_user, name="H", actor=self.owner2)

    def test_list_available_workers_oldest_first(self):
        with self.assertRaises(PreconditionFailed):
            list_available_workers(self.make_request().id, self.owner2)

        service_request = self.accepted_request_at_w2()
        self.assertEqual(
            [worker.id for worker in list_available_workers(service_request.id, self.owner2)],
            [self.worker_x.id, self.worker_y.id],
        )
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        self.assertEqual(
            [worker.id for worker in list_available_workers(service_request.id, self.owner2)],
            [self.worker_y.id],
        )
        with self.assertRaises(Forbidden):
            list_available_workers(service_request.id, self.owner1)

    def test_set_worker_availability(self):
        set_worker_availability(self.worker_y.id, False, self.mechanic_y)
        self.worker_y.refresh_from_db()
        self.assertFalse(self.worker_y.is_available)

        with self.assertRaises(Forbidden):
            set_worker_availability(self.worker_y.id, True, self.mechanic_x)

        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        with self.assertRaises(Conflict):
            set_worker_availability(self.worker_x.id, True, self.mechanic_x)


    def test_quoting_a_request_with_a_stray_worker_is_inconsistent(self):
        service_request = self.make_request()
        ServiceRequest.objects.filter(id=service_request.id).update(workshop=self.w2, assigned_worker=self.worker_x)

        with self.assertRaises(Inconsistent):
            submit_quotation(service_request.id, self.w2.id, self.pricing(), actor=self.owner2)

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "PENDING")
        self.assertFalse(Quotation.objects.filter(service_request=service_request).exists())

    def test_on_status_change_refuses_worker_before_acceptance(self):
        service_request = self.make_request()
        service_request.workshop = self.w2
        service_request.assigned_worker = self.worker_x

        for status in ("PENDING", "QUOTED"):
            with self.assertRaises(Inconsistent):
                on_status_change(service_request, status)
        self.worker_x.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)

    def test_list_workshop_workers_newest_first(self):
        self.assertEqual(
            [worker.id for worker in list_workshop_workers(self.w2.id, self.mechanic_x)],
            [self.worker_y.id, self.worker_x.id],
        )
        self.assertEqual(len(list_workshop_workers(str(self.w2.id), self.admin)), 2)
        with self.assertRaises(Forbidden):
            list_workshop_workers(self.w2.id, self.owner1)
        with self.assertRaises(NotFound):
            list_workshop_workers(999999, self.admin)

    def test_update_worker_profile(self):
        worker = update_worker(
            self.worker_x.id,
            {"name": " Xavi ", "specialization": ["engine", "tyres", "engine"]},
            actor=self.mechanic_x,
        )
        self.assertEqual(worker.name, "Xavi")
        self.assertEqual(worker.specialization, ["engine", "tyres"])

        update_worker(self.worker_x.id, {"phone": "5550001"}, actor=self.owner2)
        self.worker_x.refresh_from_db()
        self.assertEqual(self.worker_x.phone, "5550001")

        with self.assertRaises(Forbidden):
            update_worker(self.worker_x.id, {"name": "Nobody"}, actor=self.mechanic_y)
        with self.assertRaises(InvalidArgument):
            update_worker(self.worker_x.id, {"is_available": False}, actor=self.owner2)
        with self.assertRaises(InvalidArgument):
            update_worker(self.worker_x.id, {"name": "X"}, actor=self.owner2)
        with self.assertRaises(NotFound):
            update_worker(999999, {"name": "Ghost"}, actor=self.admin)

    def test_moving_worker_between_workshops(self):
        east = Workshop.objects.create(
            owner=self.owner2,
            name="East Garage",
            address="3 East Street",
            latitude=Decimal("41.02000000"),
            longitude=Decimal("29.02000000"),
        )
        with self.assertRaises(Forbidden):
            update_worker(self.worker_x.id, {"workshop_id": east.id}, actor=self.mechanic_x)
        with self.assertRaises(Forbidden):
            update_worker(self.worker_x.id, {"workshop_id": self.w1.id}, actor=self.owner2)

        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        with self.assertRaises(Conflict):
            update_worker(self.worker_x.id, {"workshop_id": east.id}, actor=self.owner2)

        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        transition_request(service_request.id, "COMPLETED", self.owner2)
        with self.assertRaises(Conflict):
            update_worker(self.worker_x.id, {"workshop_id": east.id}, actor=self.owner2)
        self.worker_x.refresh_from_db()
        self.assertEqual(self.worker_x.workshop_id, self.w2.id)

        worker = update_worker(self.worker_y.id, {"workshop_id": east.id}, actor=self.owner2)
        self.assertEqual(worker.workshop_id, east.id)
        self.assertEqual(find_invariant_violations(), [])

    def test_delete_worker(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)

        with self.assertRaises(Forbidden):
            delete_worker(self.worker_y.id, actor=self.mechanic_y)
        with self.assertRaises(Conflict):
            delete_worker(self.worker_x.id, actor=self.owner2)
        self.assertTrue(Worker.objects.filter(id=self.worker_x.id).exists())

        delete_worker(self.worker_y.id, actor=self.owner2)
        self.assertFalse(Worker.objects.filter(id=self.worker_y.id).exists())
        with self.assertRaises(NotFound):
            delete_worker(self.worker_y.id, actor=self.owner2)


class FulfillmentEngineTests(FulfillmentTestMixin, TestCase):
    def test_transition_is_idempotent(self):
        service_request = self.accepted_request_at_w2()

        first = transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        second = transition_request(service_request.id, "IN_PROGRESS", self.owner2)

        self.assertEqual(first.status, "IN_PROGRESS")
        self.assertEqual(second.status, "IN_PROGRESS")
        self.assertEqual(
            WorkflowEvent.objects.filter(service_request=service_request, to_status="IN_PROGRESS").count(),
            1,
        )

    def test_transition_table_is_enforced(self):
        service_request = self.accepted_request_at_w2()

        with self.assertRaises(InvalidTransition):
            transition_request(service_request.id, "COMPLETED", self.owner2)
        with self.assertRaises(InvalidTransition):
            transition_request(service_request.id, "QUOTED", self.admin)
        with self.assertRaises(InvalidArgument):
            transition_request(service_request.id, "FIXED", self.owner2)

        transition_request(service_request.id, "CANCELLED", self.owner2)
        with self.assertRaises(InvalidTransition):
            transition_request(service_request.id, "IN_PROGRESS", self.admin)

    def test_transition_permissions(self):
        service_request = self.accepted_request_at_w2()

        with self.assertRaises(Forbidden):
            transition_request(service_request.id, "IN_PROGRESS", self.requester)
        with self.assertRaises(Forbidden):
            transition_request(service_request.id, "IN_PROGRESS", self.outsider)
        with self.assertRaises(Forbidden):
            transition_request(service_request.id, "IN_PROGRESS", self.owner1)

        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        with self.assertRaises(Forbidden):
            transition_request(service_request.id, "CANCELLED", self.requester)

        transition_request(service_request.id, "COMPLETED", self.admin)
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "COMPLETED")

    def test_owner_serving_own_request_may_start_and_complete(self):
        service_request = create_service_request(self.request_payload(), requester=self.owner2)
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing(), actor=self.owner2)
        accept_quotation(quotation.id, self.owner2)

        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        transition_request(service_request.id, "COMPLETED", self.owner2)

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "COMPLETED")
        roles = WorkflowEvent.objects.filter(
            service_request=service_request,
            to_status__in=["IN_PROGRESS", "COMPLETED"],
        ).values_list("actor_role", flat=True)
        self.assertEqual(set(roles), {"staff"})

    def test_requester_can_cancel_pending_request(self):
        service_request = self.make_request()

        transition_request(service_request.id, "CANCELLED", self.requester, note="found help")

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "CANCELLED")
        event = WorkflowEvent.objects.get(service_request=service_request, to_status="CANCELLED")
        self.assertEqual(event.actor_role, "requester")
        self.assertEqual(event.note, "found help")

    def test_assign_workshop_directly(self):
        service_request = self.make_request(workshop_id=self.w1.id)

        assign_workshop(service_request.id, self.w1.id, self.owner1, worker_id=self.worker_z.id)

        service_request.refresh_from_db()
        self.worker_z.refresh_from_db()
        self.assertEqual(service_request.status, "ACCEPTED")
        self.assertEqual(service_request.workshop_id, self.w1.id)
        self.assertEqual(service_request.assigned_worker_id, self.worker_z.id)
        self.assertFalse(self.worker_z.is_available)

    def test_assign_workshop_guards(self):
        service_request = self.make_request()

        with self.assertRaises(Forbidden):
            assign_workshop(service_request.id, self.w1.id, self.owner2)
        with self.assertRaises(NotFound):
            assign_workshop(service_request.id, 999999, self.owner1)
        with self.assertRaises(NotFound):
            assign_workshop(service_request.id, self.w1.id, self.owner1, worker_id=self.worker_x.id)

        self.w1.status = "CLOSED"
        self.w1.save(update_fields=["status"])
        with self.assertRaises(Unavailable):
            assign_workshop(service_request.id, self.w1.id, self.owner1)

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, "PENDING")
        self.assertIsNone(service_request.workshop_id)

    def test_assign_workshop_respects_accepted_quotation(self):
        service_request = self.accepted_request_at_w2()

        with self.assertRaises(Forbidden):
            assign_workshop(service_request.id, self.w1.id, self.owner1)
        with self.assertRaises(Conflict):
            assign_workshop(service_request.id, self.w1.id, self.admin)

    def test_assign_workshop_rejects_terminal_request(self):
        service_request = self.make_request()
        transition_request(service_request.id, "CANCELLED", self.requester)

        with self.assertRaises(InvalidTransition):
            assign_workshop(service_request.id, self.w1.id, self.owner1)


class WorkshopDirectoryTests(FulfillmentTestMixin, TestCase):
    def make_workshop(self, name, latitude, longitude, **extra):
        owner = User.objects.create_user(username=f"owner_{name.lower().replace(' ', '_')}", password="StrongPass123!")
        return Workshop.objects.create(
            owner=owner,
            name=name,
            address=f"{name} road",
            latitude=Decimal(str(latitude)),
            longitude=Decimal(str(longitude)),
            **extra,
        )

    def test_distance_km(self):
        origin = Coordinates(0.0, 0.0)
        self.assertEqual(distance_km(origin, origin), 0.0)
        self.assertAlmostEqual(distance_km(origin, Coordinates(0.0, 1.0)), 111.195, places=2)
        self.assertAlmostEqual(distance_km(Coordinates(0.0, 0.0), Coordinates(0.0, 180.0)), 20015.087, places=1)

    def test_search_near_filters_by_radius(self):
        near = self.make_workshop("Near", latitude_north_of(12.9, 3), 77.6)
        self.make_workshop("Far", latitude_north_of(12.9, 8), 77.6)

        matches = search_workshops_near(12.9, 77.6, 5)

        self.assertEqual([match.workshop.id for match in matches], [near.id])
        self.assertAlmostEqual(matches[0].distance_km, 3.0, places=2)

    def test_search_near_orders_nearest_then_rating(self):
        one_km = self.make_workshop("One", latitude_north_of(12.9, 1), 77.6)
        two_km_low = self.make_workshop("Two low", latitude_north_of(12.9, 2), 77.6, rating=Decimal("3.0"))
        two_km_high = self.make_workshop("Two high", latitude_north_of(12.9, 2), 77.6, rating=Decimal("4.5"))

        matches = search_workshops_near("12.9", "77.6", "10")

        self.assertEqual(
            [match.workshop.id for match in matches],
            [one_km.id, two_km_high.id, two_km_low.id],
        )

    def test_default_radius_is_fifty_km(self):
        inside = self.make_workshop("Inside", latitude_north_of(12.9, 40), 77.6)
        self.make_workshop("Outside", latitude_north_of(12.9, 60), 77.6)

        matches = search_workshops_near(12.9, 77.6)

        self.assertEqual([match.workshop.id for match in matches], [inside.id])

    @override_settings(WORKSHOP_SEARCH_DEFAULT_RADIUS_KM=100)
    def test_default_radius_follows_settings(self):
        self.make_workshop("Inside", latitude_north_of(12.9, 60), 77.6)
        self.assertEqual(len(search_workshops_near(12.9, 77.6)), 1)

    def test_search_rejects_bad_arguments(self):
        for radius in (0, -1, "abc"):
            with self.assertRaises(InvalidArgument):
                search_workshops_near(12.9, 77.6, radius)
        with self.assertRaises(InvalidArgument):
            search_workshops_near(95, 77.6)
        with self.assertRaises(InvalidArgument):
            search_workshops_near(12.9, None)
        with self.assertRaises(InvalidArgument):
            search_workshops_near(status="BUSY")

    def test_search_filters_and_fallback_sort(self):
        self.w1.rating = Decimal("4.8")
        self.w1.save(update_fields=["rating"])
        closed = self.make_workshop("Closed", 41.02, 29.02, status="CLOSED")

        by_rating = search_workshops_near(sort="mostRated")
        self.assertEqual(by_rating[0].workshop.id, self.w1.id)
        self.assertIsNone(by_rating[0].distance_km)

        newest = search_workshops_near()
        self.assertEqual(newest[0].workshop.id, closed.id)

        open_only = search_workshops_near(status="OPEN")
        self.assertNotIn(closed.id, [match.workshop.id for match in open_only])

        named = search_workshops_near(search="south")
        self.assertEqual([match.workshop.id for match in named], [self.w2.id])

    def test_workshop_just_inside_radius_survives_prefilter(self):
        edge = self.make_workshop("Edge", "0.08993216", 0)
        self.assertLess(distance_km(Coordinates(0.0, 0.0), Coordinates(0.08993216, 0.0)), 10.0)

        matches = search_workshops_near(0, 0, 10)

        self.assertEqual([match.workshop.id for match in matches], [edge.id])

    def test_radius_boundary_is_inclusive(self):
        edge = self.make_workshop("Edge", latitude_north_of(12.9, 4), 77.6)
        exact = distance_km(Coordinates(12.9, 77.6), Coordinates(float(edge.latitude), 77.6))

        matches = search_workshops_near(12.9, 77.6, exact)

        self.assertEqual([match.workshop.id for match in matches], [edge.id])
        self.assertEqual(matches[0].distance_km, exact)

    def test_equal_distance_and_rating_prefers_older_workshop(self):
        newer = self.make_workshop("Newer", latitude_north_of(12.9, 2), 77.6, rating=Decimal("4.0"))
        older = self.make_workshop("Older", latitude_north_of(12.9, 2), 77.6, rating=Decimal("4.0"))
        Workshop.objects.filter(id=older.id).update(created_at=timezone.now() - timedelta(days=3))

        matches = search_workshops_near(12.9, 77.6, 10)

        self.assertEqual([match.workshop.id for match in matches], [older.id, newer.id])

    def test_oldest_sort_without_center(self):
        veteran = self.make_workshop("Veteran", 40.0, 28.0)
        Workshop.objects.filter(id=veteran.id).update(created_at=timezone.now() - timedelta(days=30))

        matches = search_workshops_near(sort="oldest")

        self.assertEqual([match.workshop.id for match in matches], [veteran.id, self.w1.id, self.w2.id])
        self.assertTrue(all(match.distance_km is None for match in matches))

    def test_search_limit_is_validated(self):
        self.assertEqual(len(search_workshops_near(limit="1")), 1)
        for limit in ("many", 0, -3):
            with self.assertRaises(InvalidArgument):
                search_workshops_near(limit=limit)

    def test_review_store_timeout_is_reported(self):
        service_request = self.accepted_request_at_w2()
        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        transition_request(service_request.id, "COMPLETED", self.owner2)

        with mock.patch.object(WorkshopReview, "save", side_effect=OperationalError("database is locked")):
            with self.assertRaises(OperationTimeout):
                submit_review(service_request.id, self.requester, 4)
        self.assertFalse(WorkshopReview.objects.exists())

    def test_review_updates_workshop_rating(self):
        service_request = self.accepted_request_at_w2()
        with self.assertRaises(PreconditionFailed):
            submit_review(service_request.id, self.requester, 4)

        transition_request(service_request.id, "IN_PROGRESS", self.owner2)
        transition_request(service_request.id, "COMPLETED", self.owner2)
        with self.assertRaises(Forbidden):
            submit_review(service_request.id, self.owner2, 5)
        with self.assertRaises(InvalidArgument):
            submit_review(service_request.id, self.requester, 6)

        submit_review(service_request.id, self.requester, 4, "Quick and fair")
        self.w2.refresh_from_db()
        self.assertEqual(self.w2.rating, Decimal("4.0"))

        submit_review(service_request.id, self.requester, 2)
        self.w2.refresh_from_db()
        self.assertEqual(self.w2.rating, Decimal("2.0"))
        self.assertEqual(self.w2.reviews.count(), 1)


class InvariantCheckTests(FulfillmentTestMixin, TestCase):
    def test_clean_state_passes(self):
        service_request = self.accepted_request_at_w2()
        assign_worker(service_request.id, self.worker_x.id, self.owner2)
        out = StringIO()

        call_command("check_fulfillment_invariants", "--strict", stdout=out)

        self.assertEqual(find_invariant_violations(), [])
        self.assertIn("All fulfillment invariants hold", out.getvalue())

    def test_violations_are_reported(self):
        service_request = self.accepted_request_at_w2()
        ServiceRequest.objects.filter(id=service_request.id).update(assigned_worker=self.worker_z)

        rules = {violation.rule for violation in find_invariant_violations()}
        self.assertIn("worker-workshop", rules)
        self.assertIn("active-worker-busy", rules)

        out = StringIO()
        call_command("check_fulfillment_invariants", stdout=out)
        self.assertIn("invariant violations found", out.getvalue())
        with self.assertRaises(CommandError):
            call_command("check_fulfillment_invariants", "--strict", stdout=StringIO())


class StoreTimeoutTests(TestCase):
    def test_timeout_errors_are_recognised(self):
        self.assertTrue(is_timeout_error(OperationalError("database is locked")))
        self.assertTrue(is_timeout_error(OperationalError("canceling statement due to statement timeout")))
        self.assertFalse(is_timeout_error(OperationalError("no such table: foo")))

    def test_atomic_operation_translates_timeouts(self):
        @atomic_operation
        def stuck():
            raise OperationalError("canceling statement due to lock timeout")

        @atomic_operation
        def broken():
            raise OperationalError("no such table: foo")

        with self.assertRaises(OperationTimeout):
            stuck()
        with self.assertRaises(OperationalError):
            broken()


class ErrorLoggingMiddlewareTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.middleware = ErrorLoggingMiddleware(lambda request: None)

    def test_unexpected_error_is_persisted(self):
        request = self.factory.get("/api/requests/", HTTP_X_REQUEST_ID="req-1")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, RuntimeError("boom"))

        error_log = ErrorLog.objects.get()
        self.assertEqual(error_log.status_code, 500)
        self.assertEqual(error_log.request_id, "req-1")
        self.assertIn("RuntimeError", error_log.traceback)

    def test_client_errors_are_skipped(self):
        request = self.factory.get("/api/requests/")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, Conflict())

        self.assertFalse(ErrorLog.objects.exists())

    def test_error_is_tied_to_the_service_request(self):
        path = "/api/requests/42/transition/"
        request = self.factory.post(path)
        request.user = AnonymousUser()
        request.resolver_match = resolve(path)

        self.middleware.process_exception(request, RuntimeError("boom"))

        error_log = ErrorLog.objects.get()
        self.assertEqual(error_log.error_code, "RuntimeError")
        self.assertEqual(error_log.service_request_ref, 42)

    def test_server_side_fulfillment_errors_are_persisted(self):
        request = self.factory.get("/api/requests/")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, Inconsistent("worker missing"))

        error_log = ErrorLog.objects.get()
        self.assertEqual(error_log.error_code, "inconsistent")
        self.assertIsNone(error_log.service_request_ref)

    @override_settings(ERROR_LOGGING_ENABLED=False)
    def test_logging_can_be_disabled(self):
        request = self.factory.get("/api/requests/")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, RuntimeError("boom"))

        self.assertFalse(ErrorLog.objects.exists())


class FulfillmentApiTests(FulfillmentTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.api = APIClient()

    def as_user(self, user):
        self.api.force_authenticate(user=user)
        return self.api

    def test_login_issues_tokens(self):
        response = self.api.post(
            reverse("api_login"),
            {"username": "owner1", "password": "StrongPass123!"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.data)
        self.assertEqual(response.data["user"]["workshop_ids"], [self.w1.id])

        token = response.data["access"]
        self.api.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
        response = self.api.get(reverse("api_requests"))
        self.assertEqual(response.status_code, 200)

    def test_anonymous_requests_are_rejected(self):
        response = self.api.get(reverse("api_requests"))
        self.assertEqual(response.status_code, 401)

    def test_full_flow_over_http(self):
        client = self.as_user(self.requester)
        response = client.post(
            reverse("api_requests"),
            {
                "name": "Dead battery",
                "description": "Car does not start in the parking lot",
                "location_address": "Mall parking B2",
                "location_latitude": 12.9,
                "location_longitude": 77.6,
                "issue_description": "Battery drained overnight",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        request_id = response.data["id"]
        self.assertEqual(response.data["status"], "PENDING")

        valid_until = (timezone.now() + timedelta(hours=1)).isoformat()
        response = self.as_user(self.owner2).post(
            reverse("api_request_quotations", args=[request_id]),
            {"service_charges": "40.00", "spare_parts_cost": "60.00", "valid_until": valid_until},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.data["total_amount"]), Decimal("100.00"))
        quotation_id = response.data["id"]

        response = self.as_user(self.owner2).post(reverse("api_quotation_accept", args=[quotation_id]))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["code"], "forbidden")

        client = self.as_user(self.requester)
        first = client.post(reverse("api_quotation_accept", args=[quotation_id]), HTTP_X_IDEMPOTENCY_KEY="accept-1")
        second = client.post(reverse("api_quotation_accept", args=[quotation_id]), HTTP_X_IDEMPOTENCY_KEY="accept-1")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second["Idempotent-Replayed"], "true")
        self.assertEqual(second.data["status"], "ACCEPTED")
        self.assertEqual(
            WorkflowEvent.objects.filter(service_request_id=request_id, action_type="quotation_accepted").count(),
            1,
        )

        response = client.post(reverse("api_quotation_accept", args=[quotation_id]))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "already-accepted")

        client = self.as_user(self.owner2)
        response = client.post(
            reverse("api_request_assign_worker", args=[request_id]),
            {"worker_id": self.worker_x.id},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["assigned_worker"], self.worker_x.id)

        response = client.post(
            reverse("api_request_transition", args=[request_id]),
            {"status": "completed"},
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "invalid-transition")

        for next_status in ("IN_PROGRESS", "COMPLETED"):
            response = client.post(
                reverse("api_request_transition", args=[request_id]),
                {"status": next_status},
                format="json",
            )
            self.assertEqual(response.status_code, 200)
        self.worker_x.refresh_from_db()
        self.assertTrue(self.worker_x.is_available)

        response = self.as_user(self.requester).post(
            reverse("api_request_review", args=[request_id]),
            {"score": 5},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.w2.refresh_from_db()
        self.assertEqual(self.w2.rating, Decimal("5.0"))

        response = self.as_user(self.requester).get(reverse("api_request_history", args=[request_id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data[-1]["to_status"], "COMPLETED")

    def test_error_status_mapping(self):
        service_request = self.make_request()
        expired = Quotation.objects.create(
            service_request=service_request,
            workshop=self.w1,
            service_charges=Decimal("50.00"),
            valid_until=timezone.now() - timedelta(minutes=5),
        )

        client = self.as_user(self.requester)
        response = client.post(reverse("api_quotation_accept", args=[expired.id]))
        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.data["code"], "expired")

        response = client.get(reverse("api_request_detail", args=[999999]))
        self.assertEqual(response.status_code, 404)

        response = self.as_user(self.outsider).get(reverse("api_request_detail", args=[service_request.id]))
        self.assertEqual(response.status_code, 403)

        response = self.as_user(self.owner1).post(
            reverse("api_request_assign_worker", args=[service_request.id]),
            {"worker_id": self.worker_z.id},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "precondition-failed")

        response = client.post(reverse("api_requests"), {"name": "x"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("errors", response.data)

    def test_workshop_search_is_public(self):
        response = self.api.get(reverse("api_workshop_search"), {"latitude": "41.0", "longitude": "29.0", "radius": "5"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["results"][0]["workshop"]["id"], self.w1.id)
        self.assertEqual(response.data["results"][0]["distance_km"], 0.0)

        response = self.api.get(reverse("api_workshop_search"), {"latitude": "41.0", "longitude": "29.0", "radius": "0"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "validation-error")

    def test_assign_workshop_and_worker_availability_over_http(self):
        service_request = self.make_request()

        response = self.as_user(self.owner1).post(
            reverse("api_request_assign_workshop", args=[service_request.id]),
            {"workshop_id": self.w1.id, "worker_id": self.worker_z.id},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "ACCEPTED")

        response = self.as_user(self.mechanic_z).post(
            reverse("api_worker_availability", args=[self.worker_z.id]),
            {"is_available": True},
            format="json",
        )
        self.assertEqual(response.status_code, 409)

        response = self.as_user(self.owner1).get(reverse("api_request_available_workers", args=[service_request.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, [])

    def test_worker_management_over_http(self):
        client = self.as_user(self.owner2)
        response = client.get(reverse("api_workshop_workers", args=[self.w2.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.data], [self.worker_y.id, self.worker_x.id])

        response = client.patch(
            reverse("api_worker_detail", args=[self.worker_y.id]),
            {"phone": "5550002", "specialization": ["battery"]},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["specialization"], ["battery"])

        response = client.patch(
            reverse("api_worker_detail", args=[self.worker_y.id]),
            {"is_available": False},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

        response = self.as_user(self.mechanic_y).get(reverse("api_worker_detail", args=[self.worker_y.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["phone"], "5550002")

        response = self.as_user(self.owner1).delete(reverse("api_worker_detail", args=[self.worker_y.id]))
        self.assertEqual(response.status_code, 403)
        response = client.delete(reverse("api_worker_detail", args=[self.worker_y.id]))
        self.assertEqual(response.status_code, 204)
        self.assertFalse(Worker.objects.filter(id=self.worker_y.id).exists())

    def test_quotation_reads_over_http(self):
        service_request = self.make_request()
        quotation = submit_quotation(service_request.id, self.w2.id, self.pricing("75.00"), actor=self.owner2)

        response = self.as_user(self.requester).get(reverse("api_quotation_detail", args=[quotation.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.data["total_amount"]), Decimal("75.00"))

        response = self.as_user(self.outsider).get(reverse("api_quotation_detail", args=[quotation.id]))
        self.assertEqual(response.status_code, 403)

        response = self.as_user(self.mechanic_x).get(reverse("api_workshop_quotations", args=[self.w2.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.data], [quotation.id])

        response = self.as_user(self.owner1).get(reverse("api_workshop_quotations", args=[self.w2.id]))
        self.assertEqual(response.status_code, 403)

    def test_invariant_break_over_http_is_logged(self):
        service_request = self.accepted_request_at_w2()
        ServiceRequest.objects.filter(id=service_request.id).update(assigned_worker=self.worker_z)

        response = self.as_user(self.owner2).post(
            reverse("api_request_transition", args=[service_request.id]),
            {"status": "IN_PROGRESS"},
            format="json",
        )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "inconsistent")
        error_log = ErrorLog.objects.get()
        self.assertEqual(error_log.error_code, "inconsistent")
        self.assertEqual(error_log.service_request_ref, service_request.id)

    @override_settings(POST_IDEMPOTENCY_TTL_SECONDS=3600)
    def test_expired_idempotency_records_are_purged(self):
        service_request = self.make_request()
        stale = IdempotencyRecord.objects.create(key="a" * 64, scope="transition", service_request=service_request)
        fresh = IdempotencyRecord.objects.create(key="b" * 64, scope="transition", service_request=service_request)
        IdempotencyRecord.objects.filter(id=stale.id).update(created_at=timezone.now() - timedelta(hours=2))

        self.assertEqual(purge_expired_idempotency_records(), 1)
        self.assertEqual(list(IdempotencyRecord.objects.values_list("id", flat=True)), [fresh.id])
