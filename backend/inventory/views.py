import logging
from typing import Any, Dict

from rest_framework.decorators import api_view
from rest_framework.response import Response

from inventory import rules
from inventory.exceptions import InventoryError, ValidationError
from inventory.notifications import Notifier
from inventory.services import compatibility
from inventory.services.allocation import AllocationEngine
from inventory.services.lifecycle import RequestLifecycle, serialize_request
from inventory.services.sweeper import ExpirySweeper
from inventory.services.unit_store import UnitStore, parse_positive_int, serialize_unit

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _services() -> Dict[str, Any]:
    notifier = Notifier()
    store = UnitStore(notifier)
    engine = AllocationEngine(store)
    return {
        "store": store,
        "lifecycle": RequestLifecycle(engine, store, notifier),
        "sweeper": ExpirySweeper(store, notifier),
    }


def _actor_id(request) -> str | None:
    header_actor = str(request.headers.get("X-Actor-Id") or "").strip()
    if header_actor:
        return header_actor
    data = request.data if isinstance(request.data, dict) else {}
    body_actor = str(data.get("actor") or "").strip()
    return body_actor or None


def _require_actor(request) -> str:
    actor = _actor_id(request)
    if not actor:
        raise ValidationError("Actor is required (X-Actor-Id header or actor field).", field="actor")
    return actor


def _error_response(exc: InventoryError) -> Response:
    return Response(exc.as_dict(), status=exc.http_status)


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_VALUES


def _body(request) -> Dict[str, Any]:
    if not isinstance(request.data, dict):
        raise ValidationError("Request body must be a JSON object.", field="body")
    return request.data


def _paged_response(page: Dict[str, Any], serializer) -> Response:
    return Response(
        {
            "results": [serializer(item) for item in page["items"]],
            "count": page["count"],
            "page": page["page"],
            "limit": page["limit"],
            "pages": page["pages"],
        }
    )


# ── Blood units ─────────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
def units_collection(request):
    store = _services()["store"]
    if request.method == "GET":
        params = request.query_params
        try:
            page = store.list(
                {
                    "blood_type": params.get("blood_type"),
                    "status": params.get("status"),
                    "component": params.get("component"),
                    "section": params.get("section"),
                    "search": params.get("search"),
                    "expiring_within_days": params.get("expiring_within_days"),
                },
                page=params.get("page"),
                limit=params.get("limit"),
            )
        except InventoryError as exc:
            return _error_response(exc)
        return _paged_response(page, serialize_unit)

    try:
        actor = _require_actor(request)
        data = _body(request)
        unit = store.add(
            donor_id=data.get("donor_id"),
            blood_type=data.get("blood_type"),
            collection_date=data.get("collection_date"),
            actor=actor,
            units=data.get("units", 1),
            component=data.get("component"),
            test_results=data.get("test_results"),
            storage_location=data.get("storage_location"),
            notes=data.get("notes"),
        )
    except InventoryError as exc:
        return _error_response(exc)
    return Response(serialize_unit(unit), status=201)


@api_view(["GET", "PATCH", "DELETE"])
def unit_detail(request, unit_id: int):
    store = _services()["store"]
    try:
        if request.method == "GET":
            return Response(serialize_unit(store.get(unit_id)))

        actor = _require_actor(request)
        if request.method == "DELETE":
            store.delete(unit_id, actor)
            return Response(status=204)

        data = _body(request)
        unit = store.update(
            unit_id,
            actor,
            test_results=data.get("test_results"),
            storage_location=data.get("storage_location"),
            notes=data.get("notes"),
        )
    except InventoryError as exc:
        return _error_response(exc)
    return Response(serialize_unit(unit))


@api_view(["GET"])
def inventory_stats(request):
    return Response(_services()["store"].summary())


@api_view(["GET"])
def blood_compatibility(request, blood_type: str):
    try:
        normalized = compatibility.normalize_blood_type(blood_type)
        response = {
            "blood_type": normalized,
            "can_receive_from": compatibility.compatible_donor_types(normalized),
            "can_donate_to": compatibility.compatible_recipient_types(normalized),
        }
        units_needed = request.query_params.get("units")
        if units_needed not in (None, ""):
            needed = parse_positive_int(units_needed, "units")
            levels = _services()["store"].stock_levels()
            response["substitution"] = compatibility.suggest_substitutes(normalized, needed, levels)
    except InventoryError as exc:
        return _error_response(exc)
    return Response(response)


@api_view(["POST"])
def sweep_expired(request):
    actor = _actor_id(request) or rules.SYSTEM_ACTOR
    count = _services()["sweeper"].sweep_expired(actor=actor)
    logger.info(
        "sweep_expired_requested",
        extra={"event_type": "STATE_CHANGE", "user_id": actor, "expired_count": count},
    )
    return Response({"expired_count": count})


# ── Blood requests ──────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
def requests_collection(request):
    lifecycle = _services()["lifecycle"]
    if request.method == "GET":
        params = request.query_params
        try:
            page = lifecycle.list_requests(
                {
                    "status": params.get("status"),
                    "urgency_level": params.get("urgency_level"),
                    "blood_type": params.get("blood_type"),
                    "hospital_id": params.get("hospital_id"),
                    "search": params.get("search"),
                },
                page=params.get("page"),
                limit=params.get("limit"),
            )
        except InventoryError as exc:
            return _error_response(exc)
        return _paged_response(page, serialize_request)

    try:
        actor = _require_actor(request)
        data = _body(request)
        req = lifecycle.create_request(
            hospital_id=data.get("hospital_id"),
            blood_type=data.get("blood_type"),
            units=data.get("units_required"),
            urgency=data.get("urgency_level"),
            required_by=data.get("required_by"),
            reason=data.get("reason"),
            requested_by=actor,
            recipient_id=data.get("recipient_id"),
            patient_condition=data.get("patient_condition"),
            notes=data.get("notes"),
        )
    except InventoryError as exc:
        return _error_response(exc)
    return Response(serialize_request(req), status=201)


@api_view(["GET"])
def requests_urgent(request):
    try:
        limit = parse_positive_int(
            request.query_params.get("limit") or rules.URGENT_LIST_LIMIT, "limit"
        )
    except InventoryError as exc:
        return _error_response(exc)
    requests = _services()["lifecycle"].urgent_requests(limit=limit)
    return Response({"results": [serialize_request(req) for req in requests], "count": len(requests)})


@api_view(["GET", "PATCH", "DELETE"])
def request_detail(request, request_id: int):
    lifecycle = _services()["lifecycle"]
    try:
        if request.method == "GET":
            return Response(serialize_request(lifecycle.get_request(request_id)))

        actor = _require_actor(request)
        if request.method == "DELETE":
            lifecycle.delete_request(request_id, actor)
            return Response(status=204)

        updates = {key: value for key, value in _body(request).items() if key != "actor"}
        req = lifecycle.update_request(request_id, updates, actor)
    except InventoryError as exc:
        return _error_response(exc)
    return Response(serialize_request(req))


@api_view(["POST"])
def request_transition(request, request_id: int, action: str):
    lifecycle = _services()["lifecycle"]
    try:
        actor = _require_actor(request)
        data = _body(request) if request.data else {}
        req = lifecycle.transition_request(
            request_id,
            action,
            actor,
            reason=data.get("reason"),
            accept_partial=_flag(data.get("accept_partial")),
        )
    except InventoryError as exc:
        logger.info(
            "blood_request_transition_refused",
            extra={
                "event_type": "STATE_CHANGE",
                "request_id": request_id,
                "action": action,
                "code": exc.code,
            },
        )
        return _error_response(exc)
    return Response(serialize_request(req))
