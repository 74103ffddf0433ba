from django.urls import path

from inventory.views import (
    blood_compatibility,
    inventory_stats,
    request_detail,
    request_transition,
    requests_collection,
    requests_urgent,
    sweep_expired,
    unit_detail,
    units_collection,
)

urlpatterns = [
    path("units/", units_collection, name="inventory_units"),
    path("units/<int:unit_id>", unit_detail, name="inventory_unit_detail"),
    path("stats", inventory_stats, name="inventory_stats"),
    path(
        "compatibility/<str:blood_type>",
        blood_compatibility,
        name="inventory_compatibility",
    ),
    path("sweep-expired", sweep_expired, name="inventory_sweep_expired"),
    path("requests/", requests_collection, name="blood_requests"),
    path("requests/urgent", requests_urgent, name="blood_requests_urgent"),
    path("requests/<int:request_id>", request_detail, name="blood_request_detail"),
    path(
        "requests/<int:request_id>/<str:action>",
        request_transition,
        name="blood_request_transition",
    ),
]
