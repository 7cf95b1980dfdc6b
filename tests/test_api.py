"""
tests/test_api.py — HTTP surface of the fulfillment core.

Covers: catalog, planning calculator, orders, batches + QC items, lifecycle
        transitions, capacity reservations, approval workflows, health checks
        and the error envelope / status mapping.
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from radiopharm.services.role_resolver import set_role

BASE = "/api/v1"


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════

def _headers(user):
    return {"X-User": user}


ADMIN = "admin.ann"


def _product(client, **kw):
    defaults = {
        "code": "FDG", "name": "Fludeoxyglucose F-18", "half_life_minutes": 110,
        "synthesis_time_minutes": 40, "qc_time_minutes": 20,
        "shelf_life_minutes": 600, "overage_percent": 10,
    }
    defaults.update(kw)
    rv = client.post(f"{BASE}/products", json=defaults)
    assert rv.status_code == 201
    return rv.get_json()


def _customer(client, **kw):
    defaults = {"code": "HOSP-1", "name": "City Hospital", "travel_time_minutes": 40}
    defaults.update(kw)
    rv = client.post(f"{BASE}/customers", json=defaults)
    assert rv.status_code == 201
    return rv.get_json()


def _order(client, product_id, customer_id, when, **kw):
    defaults = {
        "product_id": product_id, "customer_id": customer_id,
        "requested_activity": 100, "delivery_window_start": when.isoformat(),
    }
    defaults.update(kw)
    rv = client.post(f"{BASE}/orders", json=defaults, headers=_headers("sales.erin"))
    assert rv.status_code == 201
    return rv.get_json()


def _batch(client, product_id, when):
    rv = client.post(f"{BASE}/batches", json={
        "product_id": product_id,
        "planned_start_time": (when - timedelta(hours=2)).isoformat(),
    }, headers=_headers("prod.dave"))
    assert rv.status_code == 201
    return rv.get_json()


def _transition(client, entity_type, entity_id, target, user="prod.dave"):
    return client.post(
        f"{BASE}/{entity_type}/{entity_id}/transitions",
        json={"target_status": target},
        headers=_headers(user),
    )


@pytest.fixture()
def when():
    tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time(12, 0), tzinfo=timezone.utc)


@pytest.fixture()
def catalog(client):
    return _product(client)["id"], _customer(client)["id"]


@pytest.fixture()
def roles(client):
    set_role(ADMIN, "ADMIN")
    for actor, role in (("qc.alice", "QC"), ("qp.bob", "QP"), ("prod.dave", "PRODUCTION")):
        rv = client.put(f"{BASE}/approvals/roles/{actor}", json={"role": role}, headers=_headers(ADMIN))
        assert rv.status_code == 200
    return {"QC": "qc.alice", "QP": "qp.bob"}


# ═════════════════════════════════════════════════════════════════════════
# Health
# ═════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_ready(self, client):
        rv = client.get(f"{BASE}/health/ready")
        assert rv.status_code == 200
        assert rv.get_json()["status"] == "ok"

    def test_live_reports_database(self, client):
        rv = client.get(f"{BASE}/health/live")
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["app"]["daily_capacity_minutes"] == 480

    def test_request_id_header(self, client):
        rv = client.get(f"{BASE}/health/ready", headers={"X-Request-ID": "abc-123"})
        assert rv.headers.get("X-Request-ID") == "abc-123"

    def test_unknown_route_is_json_404(self, client):
        rv = client.get(f"{BASE}/nope")
        assert rv.status_code == 404
        assert rv.get_json()["error"] == "Not found"


# ═════════════════════════════════════════════════════════════════════════
# Catalog & planning
# ═════════════════════════════════════════════════════════════════════════

class TestCatalog:
    def test_create_and_get_product(self, client):
        product = _product(client)
        rv = client.get(f"{BASE}/products/{product['id']}")
        assert rv.status_code == 200
        assert rv.get_json()["code"] == "FDG"

    def test_duplicate_product_code(self, client):
        _product(client)
        rv = client.post(f"{BASE}/products", json={
            "code": "FDG", "name": "Again", "half_life_minutes": 110,
            "shelf_life_minutes": 600, "overage_percent": 10,
        })
        assert rv.status_code == 422

    def test_invalid_product_reports_fields(self, client):
        rv = client.post(f"{BASE}/products", json={"code": "X", "name": "X", "half_life_minutes": -1})
        assert rv.status_code == 422
        body = rv.get_json()
        assert body["code"] == "ERR_VALIDATION"
        assert "half_life_minutes" in body["details"]

    def test_missing_customer_is_404(self, client):
        rv = client.get(f"{BASE}/customers/42")
        assert rv.status_code == 404
        assert rv.get_json()["code"] == "ERR_NOT_FOUND"


class TestPlanning:
    def test_production_requirement(self, client, catalog, when):
        product_id, customer_id = catalog
        rv = client.post(f"{BASE}/planning/production-requirement", json={
            "product_id": product_id, "customer_id": customer_id,
            "requested_activity": 100, "reference_time": when.isoformat(),
        })
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["production_activity"] == pytest.approx(160.54, abs=0.01)
        assert body["total_elapsed_minutes"] == 60
        assert body["within_shelf_life"] is True

    def test_missing_fields(self, client):
        rv = client.post(f"{BASE}/planning/production-requirement", json={})
        assert rv.status_code == 422
        assert set(rv.get_json()["details"]) == {"product_id", "customer_id", "requested_activity"}

    def test_non_positive_activity(self, client, catalog, when):
        product_id, customer_id = catalog
        rv = client.post(f"{BASE}/planning/production-requirement", json={
            "product_id": product_id, "customer_id": customer_id,
            "requested_activity": 0, "reference_time": when.isoformat(),
        })
        assert rv.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# Orders & batches
# ═════════════════════════════════════════════════════════════════════════

class TestOrders:
    def test_create_order_derives_plan(self, client, catalog, when):
        order = _order(client, *catalog, when)
        assert order["status"] == "DRAFT"
        assert order["calculated_production_activity"] == pytest.approx(160.54, abs=0.01)

    def test_derived_field_rejected(self, client, catalog, when):
        product_id, customer_id = catalog
        rv = client.post(f"{BASE}/orders", json={
            "product_id": product_id, "customer_id": customer_id,
            "requested_activity": 100, "delivery_window_start": when.isoformat(),
            "calculated_production_activity": 999,
        })
        assert rv.status_code == 422
        assert rv.get_json()["details"] == {"calculated_production_activity": "derived"}

    def test_bad_datetime(self, client, catalog):
        product_id, customer_id = catalog
        rv = client.post(f"{BASE}/orders", json={
            "product_id": product_id, "customer_id": customer_id,
            "requested_activity": 100, "delivery_window_start": "tomorrow-ish",
        })
        assert rv.status_code == 422

    def test_list_filters_by_status(self, client, catalog, when):
        first = _order(client, *catalog, when)
        _order(client, *catalog, when)
        assert _transition(client, "order", first["id"], "SUBMITTED").status_code == 200

        rv = client.get(f"{BASE}/orders?status=SUBMITTED")
        assert [o["id"] for o in rv.get_json()] == [first["id"]]


class TestBatches:
    def test_assign_and_detail(self, client, catalog, when):
        order = _order(client, *catalog, when)
        batch = _batch(client, catalog[0], when)

        rv = client.post(f"{BASE}/batches/{batch['id']}/orders", json={"order_id": order["id"]})
        assert rv.status_code == 200
        body = rv.get_json()
        assert body["order_ids"] == [order["id"]]
        assert body["target_activity"] == pytest.approx(order["calculated_production_activity"])

    def test_assign_requires_order_id(self, client, catalog, when):
        batch = _batch(client, catalog[0], when)
        rv = client.post(f"{BASE}/batches/{batch['id']}/orders", json={})
        assert rv.status_code == 422

    def test_qc_item_lifecycle(self, client, catalog, when):
        batch = _batch(client, catalog[0], when)
        rv = client.post(f"{BASE}/batches/{batch['id']}/qc-items", json={"name": "pH"})
        assert rv.status_code == 201
        item = rv.get_json()

        rv = client.put(f"{BASE}/qc-items/{item['id']}", json={"status": "PASSED", "result_value": "7.0"},
                        headers=_headers("qc.alice"))
        assert rv.status_code == 200
        assert rv.get_json()["status"] == "PASSED"

        rv = client.put(f"{BASE}/qc-items/{item['id']}", json={"status": "FAILED"})
        assert rv.status_code == 409

    def test_material_lot(self, client, catalog, when):
        batch = _batch(client, catalog[0], when)
        rv = client.post(f"{BASE}/batches/{batch['id']}/material-lots", json={
            "lot_number": "FDG-PREC-0042", "material_name": "Mannose triflate", "quantity": 25, "unit": "mg",
        })
        assert rv.status_code == 201

        detail = client.get(f"{BASE}/batches/{batch['id']}").get_json()
        assert [m["lot_number"] for m in detail["material_lots"]] == ["FDG-PREC-0042"]

        rv = client.post(f"{BASE}/batches/{batch['id']}/material-lots", json={"lot_number": "X"})
        assert rv.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_illegal_transition_is_409(self, client, catalog, when):
        order = _order(client, *catalog, when)
        rv = _transition(client, "order", order["id"], "DISPATCHED")

        assert rv.status_code == 409
        body = rv.get_json()
        assert body["code"] == "ERR_GUARD_VIOLATION"
        assert body["details"]["code"] == "ILLEGAL_TRANSITION"
        assert body["details"]["from_status"] == "DRAFT"

    def test_unknown_status_is_422(self, client, catalog, when):
        order = _order(client, *catalog, when)
        assert _transition(client, "order", order["id"], "TELEPORTED").status_code == 422

    def test_missing_entity_is_404(self, client):
        assert _transition(client, "batch", 77, "IN_PROGRESS").status_code == 404

    def test_unknown_entity_route(self, client):
        rv = client.post(f"{BASE}/invoice/1/transitions", json={"target_status": "PAID"})
        assert rv.status_code == 404

    def test_allowed_and_journey(self, client, catalog, when):
        order = _order(client, *catalog, when)
        _transition(client, "order", order["id"], "SUBMITTED", user="sales.erin")

        rv = client.get(f"{BASE}/order/{order['id']}/transitions")
        assert rv.get_json()["allowed"] == ["VALIDATED", "CANCELLED", "REJECTED"]

        rv = client.get(f"{BASE}/order/{order['id']}/journey")
        entries = rv.get_json()
        assert [e["action"] for e in entries] == ["order.create", "order.transition"]
        assert entries[1]["actor"] == "sales.erin"

    def test_scheduling_conflict_maps_to_409(self, client, catalog, when):
        order = _order(client, *catalog, when)
        batch = _batch(client, catalog[0], when)
        _transition(client, "order", order["id"], "SUBMITTED")
        _transition(client, "order", order["id"], "VALIDATED")
        client.post(f"{BASE}/batches/{batch['id']}/orders", json={"order_id": order["id"]})
        rv = client.post(f"{BASE}/capacity/reservations", json={
            "date": when.date().isoformat(), "minutes": 470, "mode": "COMMITTED",
        })
        assert rv.status_code == 201

        rv = _transition(client, "order", order["id"], "SCHEDULED")
        assert rv.status_code == 409
        assert rv.get_json()["code"] == "ERR_CAPACITY_EXCEEDED"
        assert client.get(f"{BASE}/orders/{order['id']}").get_json()["status"] == "VALIDATED"


# ═════════════════════════════════════════════════════════════════════════
# Capacity
# ═════════════════════════════════════════════════════════════════════════

class TestCapacity:
    def test_reserve_commit_release(self, client, when):
        day = when.date().isoformat()
        rv = client.post(f"{BASE}/capacity/reservations", json={"date": day, "minutes": 120},
                         headers=_headers("planner"))
        assert rv.status_code == 201
        reservation = rv.get_json()
        assert reservation["status"] == "TENTATIVE"
        assert reservation["created_by"] == "planner"

        rv = client.post(f"{BASE}/capacity/reservations/{reservation['id']}/commit")
        assert rv.get_json()["status"] == "COMMITTED"
        assert client.get(f"{BASE}/capacity/{day}").get_json()["committed_minutes"] == 120

        rv = client.delete(f"{BASE}/capacity/reservations/{reservation['id']}")
        assert rv.get_json()["status"] == "RELEASED"
        rv = client.delete(f"{BASE}/capacity/reservations/{reservation['id']}")
        assert rv.status_code == 409

    def test_window_reservation(self, client, when):
        start = datetime.combine(when.date(), time(23, 0), tzinfo=timezone.utc)
        rv = client.post(f"{BASE}/capacity/reservations", json={
            "start": start.isoformat(), "end": (start + timedelta(hours=2)).isoformat(),
        })
        assert rv.status_code == 201
        assert [r["minutes"] for r in rv.get_json()] == [pytest.approx(60), pytest.approx(60)]

    def test_over_capacity_is_409(self, client, when):
        day = when.date().isoformat()
        client.post(f"{BASE}/capacity/reservations", json={"date": day, "minutes": 400})
        rv = client.post(f"{BASE}/capacity/reservations", json={"date": day, "minutes": 100})

        assert rv.status_code == 409
        details = rv.get_json()["details"]
        assert details["used_minutes"] == 400
        assert details["requested_minutes"] == 100

    def test_override(self, client, when):
        day = when.date().isoformat()
        client.post(f"{BASE}/capacity/reservations", json={"date": day, "minutes": 400})
        rv = client.post(f"{BASE}/capacity/reservations",
                         json={"date": day, "minutes": 100, "override": True},
                         headers=_headers("supervisor"))
        assert rv.status_code == 201
        assert rv.get_json()["is_override"] is True

    def test_bad_minutes(self, client, when):
        rv = client.post(f"{BASE}/capacity/reservations", json={"date": when.date().isoformat(), "minutes": "lots"})
        assert rv.status_code == 422

    def test_calendar_and_set_capacity(self, client, when):
        day = when.date()
        rv = client.put(f"{BASE}/capacity/{day.isoformat()}", json={"total_capacity_minutes": 600})
        assert rv.status_code == 200
        assert rv.get_json()["total_capacity_minutes"] == 600

        rv = client.get(f"{BASE}/capacity/calendar?start={day.isoformat()}"
                        f"&end={(day + timedelta(days=1)).isoformat()}")
        days = rv.get_json()
        assert [d["total_capacity_minutes"] for d in days] == [600, 480]

    def test_calendar_requires_range(self, client):
        assert client.get(f"{BASE}/capacity/calendar").status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════

class TestApprovals:
    def _workflow(self, client, catalog, when):
        batch = _batch(client, catalog[0], when)
        rv = client.post(f"{BASE}/approvals/workflows", json={
            "entity_type": "batch", "entity_id": batch["id"],
        }, headers=_headers("prod.dave"))
        assert rv.status_code == 201
        return rv.get_json()

    def test_default_steps_open_a_review(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)
        assert [s["required_role"] for s in wf["steps"]] == ["QC", "QP"]
        assert wf["definition_key"] == "review"
        assert wf["status"] == "PENDING"

    def test_sign_off_sequence(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)
        url = f"{BASE}/approvals/workflows/{wf['id']}/actions"

        rv = client.post(url, json={"step_order": 1, "action": "APPROVE"}, headers=_headers(roles["QP"]))
        assert rv.status_code == 403
        assert rv.get_json()["code"] == "ERR_UNAUTHORIZED"

        rv = client.post(url, json={"step_order": 2, "action": "APPROVE"}, headers=_headers(roles["QP"]))
        assert rv.status_code == 409
        assert rv.get_json()["code"] == "ERR_WORKFLOW_STEP_MISMATCH"

        rv = client.post(url, json={"step_order": 1, "action": "APPROVE"}, headers=_headers(roles["QC"]))
        assert rv.get_json() == {"status": "PENDING", "current_step": 2}

        rv = client.post(url, json={"step_order": 2, "action": "APPROVE"}, headers=_headers(roles["QP"]))
        assert rv.get_json() == {"status": "APPROVED", "current_step": 2}

        rv = client.get(f"{BASE}/approvals/workflows/{wf['id']}/verify")
        assert rv.get_json()["consistent"] is True

    def test_anonymous_actor_is_rejected(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)
        rv = client.post(f"{BASE}/approvals/workflows/{wf['id']}/actions",
                         json={"step_order": 1, "action": "APPROVE"})
        assert rv.status_code == 403

    def test_step_order_must_be_integer(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)
        rv = client.post(f"{BASE}/approvals/workflows/{wf['id']}/actions",
                         json={"step_order": "1", "action": "APPROVE"}, headers=_headers(roles["QC"]))
        assert rv.status_code == 422

    def test_pending_and_history(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)

        rv = client.get(f"{BASE}/approvals/pending", headers=_headers(roles["QC"]))
        assert [w["id"] for w in rv.get_json()] == [wf["id"]]

        rv = client.get(f"{BASE}/approvals/batch/{wf['entity_id']}/history")
        assert [w["id"] for w in rv.get_json()] == [wf["id"]]

    def test_cancel(self, client, catalog, when, roles):
        wf = self._workflow(client, catalog, when)
        rv = client.post(f"{BASE}/approvals/workflows/{wf['id']}/cancel", headers=_headers("prod.dave"))
        assert rv.get_json()["status"] == "CANCELLED"
        rv = client.post(f"{BASE}/approvals/workflows/{wf['id']}/cancel")
        assert rv.status_code == 409

    def test_workflow_for_missing_entity(self, client):
        rv = client.post(f"{BASE}/approvals/workflows", json={"entity_type": "order", "entity_id": 5})
        assert rv.status_code == 404

    def test_unknown_role(self, client, roles):
        rv = client.put(f"{BASE}/approvals/roles/someone", json={"role": "JANITOR"}, headers=_headers(ADMIN))
        assert rv.status_code == 422

    def test_role_assignment_requires_admin(self, client, roles):
        rv = client.put(f"{BASE}/approvals/roles/mallory", json={"role": "QP"})
        assert rv.status_code == 403

        rv = client.put(f"{BASE}/approvals/roles/mallory", json={"role": "QP"}, headers=_headers(roles["QC"]))
        assert rv.status_code == 403
        assert rv.get_json()["code"] == "ERR_UNAUTHORIZED"

        rv = client.put(f"{BASE}/approvals/roles/qc.alice", json={"role": "QP"}, headers=_headers(roles["QC"]))
        assert rv.status_code == 403
        rv = client.get(f"{BASE}/approvals/pending", headers=_headers(roles["QC"]))
        assert rv.status_code == 200

    def test_release_definition_key_is_reserved(self, client, catalog, when, roles):
        batch = _batch(client, catalog[0], when)
        rv = client.post(f"{BASE}/approvals/workflows", json={
            "entity_type": "batch", "entity_id": batch["id"], "definition_key": "release",
            "steps": [{"step_name": "Self sign-off", "required_role": "PRODUCTION"}],
        }, headers=_headers("prod.dave"))
        assert rv.status_code == 422
        rv = client.get(f"{BASE}/approvals/batch/{batch['id']}/history")
        assert rv.get_json() == []


def test_assign_role_command(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["assign-role", ADMIN, "admin"])

    assert result.exit_code == 0, result.output
    assert f"{ADMIN} -> ADMIN" in result.output
