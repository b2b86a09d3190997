from collections import Counter, defaultdict
from dataclasses import dataclass

from .models import ACTIVE_REQUEST_STATUSES, TERMINAL_REQUEST_STATUSES, Quotation, ServiceRequest


@dataclass
class Violation:
    rule: str
    service_request_id: int
    detail: str


def find_invariant_violations():
    """Scan every request, quotation and worker binding and list what is out of line."""
    violations = []
    active_by_worker = defaultdict(list)

    requests_qs = ServiceRequest.objects.filter(assigned_worker__isnull=False).select_related("assigned_worker")
    for service_request in requests_qs.iterator():
        worker = service_request.assigned_worker
        if worker.workshop_id != service_request.workshop_id:
            violations.append(
                Violation(
                    "worker-workshop",
                    service_request.id,
                    f"worker {worker.id} belongs to workshop {worker.workshop_id}, "
                    f"request is bound to {service_request.workshop_id}",
                )
            )
        if service_request.status in ACTIVE_REQUEST_STATUSES:
            active_by_worker[worker.id].append(service_request.id)
            if worker.is_available:
                violations.append(
                    Violation(
                        "active-worker-busy",
                        service_request.id,
                        f"worker {worker.id} is available while the request is {service_request.status}",
                    )
                )
        elif service_request.status not in TERMINAL_REQUEST_STATUSES:
            violations.append(
                Violation(
                    "early-worker",
                    service_request.id,
                    f"worker {worker.id} is assigned while the request is {service_request.status}",
                )
            )

    for service_request in requests_qs.filter(status__in=TERMINAL_REQUEST_STATUSES).iterator():
        worker = service_request.assigned_worker
        if not worker.is_available and worker.id not in active_by_worker:
            violations.append(
                Violation(
                    "terminal-worker-released",
                    service_request.id,
                    f"worker {worker.id} was not released after {service_request.status}",
                )
            )

    for worker_id, request_ids in sorted(active_by_worker.items()):
        if len(request_ids) > 1:
            for request_id in request_ids:
                violations.append(
                    Violation(
                        "worker-exclusivity",
                        request_id,
                        f"worker {worker_id} is bound to active requests {sorted(request_ids)}",
                    )
                )

    accepted = Quotation.objects.filter(is_accepted=True).select_related("service_request")
    accepted_counts = Counter(accepted.values_list("service_request_id", flat=True))
    for request_id, count in sorted(accepted_counts.items()):
        if count > 1:
            violations.append(Violation("single-acceptance", request_id, f"{count} accepted quotations"))
    for quotation in accepted.iterator():
        if quotation.service_request.workshop_id != quotation.workshop_id:
            violations.append(
                Violation(
                    "accepted-workshop",
                    quotation.service_request_id,
                    f"accepted quotation {quotation.id} is from workshop {quotation.workshop_id}, "
                    f"request is bound to {quotation.service_request.workshop_id}",
                )
            )
    return violations
