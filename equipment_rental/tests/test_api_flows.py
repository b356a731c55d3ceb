import unittest
from datetime import datetime

from equipment_rental.tests.support import add_equipment, add_reservation, add_user, make_session_factory

from fastapi.testclient import TestClient

import equipment_rental.RentalMan as app_module
from equipment_rental.db.deps import get_rental_db
from equipment_rental.models.rental_models import Equipment, User


class RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, body):
        self.sent.append(recipient)


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        with self.SessionLocal() as db:
            self.admin_id = add_user(db, full_name="Admin User", role="admin").UserID
            self.client_id = add_user(db, full_name="Client One").UserID
            self.other_id = add_user(db, full_name="Client Two").UserID
            self.equipment_id = add_equipment(db, daily_rate=100).EquipmentID
            self.busy_id = add_equipment(db, name="Crane Busy", status="maintenance", category="crane").EquipmentID

        def _override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[get_rental_db] = _override_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _headers(self, user_id):
        return {"X-User-ID": str(user_id)}

    def _create(self, user_id=None, start="2025-09-01T00:00:00", end="2025-09-04T00:00:00", **extra):
        body = {"equipmentID": self.equipment_id, "startDate": start, "endDate": end, **extra}
        return self.client.post("/api/reservations", json=body, headers=self._headers(user_id or self.client_id))

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_equipment_listing_and_availability_quote(self):
        listing = self.client.get("/api/equipment", params={"status": "available"})
        self.assertEqual(listing.status_code, 200)
        self.assertEqual([item["equipmentID"] for item in listing.json()], [self.equipment_id])

        quote = self.client.get(
            f"/api/equipment/{self.equipment_id}/availability",
            params={"startDate": "2025-09-01T00:00:00", "endDate": "2025-09-04T00:00:00"},
        )
        self.assertEqual(quote.status_code, 200)
        self.assertTrue(quote.json()["available"])
        self.assertEqual(quote.json()["estimatedCost"], 300.0)

        missing = self.client.get("/api/equipment/9999")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["errorKind"], "NotFoundError")

    def test_reservation_requires_known_actor(self):
        body = {"equipmentID": self.equipment_id, "startDate": "2025-09-01T00:00:00", "endDate": "2025-09-04T00:00:00"}
        self.assertEqual(self.client.post("/api/reservations", json=body).status_code, 401)
        self.assertEqual(self.client.post("/api/reservations", json=body, headers=self._headers(999)).status_code, 401)

    def test_create_returns_costed_pending_reservation(self):
        response = self._create(deliveryRequired=True, deliveryAddress={"street": "Main 1", "city": "Lodz"})
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["clientID"], self.client_id)
        self.assertEqual(payload["numberOfDays"], 3)
        self.assertEqual(payload["totalCost"], 350)
        self.assertEqual(payload["deliveryAddress"]["city"], "Lodz")

    def test_error_payloads_carry_kind_and_message(self):
        inverted = self._create(start="2025-09-04T00:00:00", end="2025-09-01T00:00:00")
        self.assertEqual(inverted.status_code, 400)
        self.assertEqual(inverted.json()["errorKind"], "ValidationError")

        busy = self.client.post(
            "/api/reservations",
            json={"equipmentID": self.busy_id, "startDate": "2025-09-01T00:00:00", "endDate": "2025-09-04T00:00:00"},
            headers=self._headers(self.client_id),
        )
        self.assertEqual(busy.status_code, 409)
        self.assertEqual(busy.json(), {"detail": "Equipment is not available.", "errorKind": "ConflictError"})

        malformed = self.client.post("/api/reservations", json={"startDate": "soon"}, headers=self._headers(self.client_id))
        self.assertEqual(malformed.status_code, 422)

    def test_admin_approval_blocks_overlapping_requests(self):
        reservation_id = self._create().json()["reservationID"]

        forbidden = self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.client_id))
        self.assertEqual(forbidden.status_code, 403)

        approved = self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.admin_id))
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["status"], "approved")
        self.assertEqual(approved.json()["approvedBy"], self.admin_id)

        overlap = self._create(user_id=self.other_id, start="2025-09-03T00:00:00", end="2025-09-05T00:00:00")
        self.assertEqual(overlap.status_code, 409)
        self.assertEqual(overlap.json()["detail"], "Requested dates conflict with another reservation.")

        touching = self._create(user_id=self.other_id, start="2025-09-04T00:00:00", end="2025-09-06T00:00:00")
        self.assertEqual(touching.status_code, 201)

        again = self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.admin_id))
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["errorKind"], "InvalidStateError")

    def test_reject_then_cancel_is_invalid(self):
        reservation_id = self._create().json()["reservationID"]
        rejected = self.client.post(
            f"/api/reservations/{reservation_id}/reject",
            json={"reason": "Fleet reserved"},
            headers=self._headers(self.admin_id),
        )
        self.assertEqual(rejected.json()["rejectionReason"], "Fleet reserved")

        cancel = self.client.post(
            f"/api/reservations/{reservation_id}/cancel", json={}, headers=self._headers(self.client_id)
        )
        self.assertEqual(cancel.status_code, 409)

    def test_clients_only_see_and_cancel_their_own(self):
        reservation_id = self._create().json()["reservationID"]
        self._create(user_id=self.other_id, start="2025-10-01T00:00:00", end="2025-10-02T00:00:00")

        mine = self.client.get("/api/reservations", headers=self._headers(self.client_id))
        self.assertEqual([item["reservationID"] for item in mine.json()], [reservation_id])
        everything = self.client.get("/api/reservations", headers=self._headers(self.admin_id))
        self.assertEqual(len(everything.json()), 2)

        peek = self.client.get(f"/api/reservations/{reservation_id}", headers=self._headers(self.other_id))
        self.assertEqual(peek.status_code, 404)
        self.assertEqual(peek.json(), {"detail": "Reservation not found.", "errorKind": "NotFoundError"})
        steal = self.client.post(
            f"/api/reservations/{reservation_id}/cancel", json={"reason": "x"}, headers=self._headers(self.other_id)
        )
        self.assertEqual(steal.status_code, 404)

        own = self.client.post(
            f"/api/reservations/{reservation_id}/cancel", json={"reason": "No longer needed"}, headers=self._headers(self.client_id)
        )
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json()["cancelledBy"], "client")

    def test_equipment_delete_is_guarded_by_blocking_reservations(self):
        reservation_id = self._create().json()["reservationID"]
        self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.admin_id))

        refused = self.client.delete(f"/api/equipment/{self.equipment_id}", headers=self._headers(self.admin_id))
        self.assertEqual(refused.status_code, 409)

        self.client.post(f"/api/reservations/{reservation_id}/cancel", json={}, headers=self._headers(self.admin_id))
        deleted = self.client.delete(f"/api/equipment/{self.equipment_id}", headers=self._headers(self.admin_id))
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").status_code, 404)

    def test_equipment_upsert_is_admin_only(self):
        body = {"name": "Bulldozer D6", "category": "bulldozer", "dailyRate": 450}
        self.assertEqual(self.client.post("/api/equipment", json=body, headers=self._headers(self.client_id)).status_code, 403)

        created = self.client.post("/api/equipment", json=body, headers=self._headers(self.admin_id))
        self.assertEqual(created.status_code, 200)
        equipment_id = created.json()["equipmentID"]
        self.assertEqual(created.json()["status"], "available")

        updated = self.client.put(
            f"/api/equipment/{equipment_id}",
            json={"name": "Bulldozer D6T", "dailyRate": 480},
            headers=self._headers(self.admin_id),
        )
        self.assertEqual(updated.json()["name"], "Bulldozer D6T")
        self.assertEqual(updated.json()["category"], "bulldozer")

        rented = self.client.post(
            "/api/equipment", json={**body, "status": "rented"}, headers=self._headers(self.admin_id)
        )
        self.assertEqual(rented.status_code, 409)
        self.assertEqual(rented.json()["errorKind"], "ConflictError")

    def test_equipment_update_cannot_release_a_held_machine(self):
        with self.SessionLocal() as db:
            equipment = db.get(Equipment, self.equipment_id)
            add_reservation(db, equipment, db.get(User, self.client_id), datetime(2025, 9, 1), datetime(2025, 9, 10), status="active")
            equipment.Status = "rented"
            db.commit()

        body = {"name": "Excavator CAT 320", "dailyRate": 100, "status": "available"}
        refused = self.client.put(f"/api/equipment/{self.equipment_id}", json=body, headers=self._headers(self.admin_id))
        self.assertEqual(refused.status_code, 409)
        self.assertEqual(refused.json()["errorKind"], "ConflictError")
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").json()["status"], "rented")

        retired = self.client.put(
            f"/api/equipment/{self.equipment_id}", json={**body, "status": "inactive"}, headers=self._headers(self.admin_id)
        )
        self.assertEqual(retired.status_code, 200)
        self.assertEqual(retired.json()["status"], "inactive")

    def test_offset_dates_are_accepted(self):
        mixed = self._create(start="2025-09-01T00:00:00Z", end="2025-09-04T00:00:00")
        self.assertIn(mixed.status_code, (201, 400))
        self.assertNotEqual(mixed.status_code, 500)

        aware = self._create(start="2025-10-01T00:00:00+02:00", end="2025-10-04T00:00:00+02:00")
        self.assertEqual(aware.status_code, 201)
        self.assertEqual(aware.json()["numberOfDays"], 3)

        quote = self.client.get(
            f"/api/equipment/{self.equipment_id}/availability",
            params={"startDate": "2025-11-01T00:00:00+02:00", "endDate": "2025-11-04T00:00:00"},
        )
        self.assertEqual(quote.status_code, 200)
        self.assertTrue(quote.json()["available"])

    def test_sweeper_trigger_activates_and_completes(self):
        reservation_id = self._create().json()["reservationID"]
        self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.admin_id))

        activated = self.client.post(
            "/api/sweeper/run/activate", params={"at": "2025-09-01T08:00:00"}, headers=self._headers(self.admin_id)
        )
        self.assertEqual(activated.status_code, 200)
        self.assertEqual(activated.json()["summary"]["ids"], [reservation_id])
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").json()["status"], "rented")

        completed = self.client.post(
            "/api/sweeper/run/complete", params={"at": "2025-09-04T18:00:00"}, headers=self._headers(self.admin_id)
        )
        self.assertEqual(completed.json()["summary"]["ids"], [reservation_id])
        detail = self.client.get(f"/api/reservations/{reservation_id}", headers=self._headers(self.client_id))
        self.assertEqual(detail.json()["status"], "completed")
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").json()["status"], "available")

        unknown = self.client.post("/api/sweeper/run/nope", headers=self._headers(self.admin_id))
        self.assertEqual(unknown.status_code, 404)

    def test_manual_complete_of_active_reservation(self):
        reservation_id = self._create().json()["reservationID"]
        self.client.post(f"/api/reservations/{reservation_id}/approve", headers=self._headers(self.admin_id))
        early = self.client.post(f"/api/reservations/{reservation_id}/complete", headers=self._headers(self.admin_id))
        self.assertEqual(early.status_code, 409)

        self.client.post("/api/sweeper/run/activate", params={"at": "2025-09-01T08:00:00"}, headers=self._headers(self.admin_id))
        done = self.client.post(f"/api/reservations/{reservation_id}/complete", headers=self._headers(self.admin_id))
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json()["status"], "completed")

    def test_maintenance_routes(self):
        scheduled = self.client.post(
            "/api/maintenance",
            json={
                "equipmentID": self.equipment_id,
                "type": "preventive",
                "title": "Service",
                "description": "500h service",
                "scheduledDate": "2025-09-10T09:00:00",
            },
            headers=self._headers(self.admin_id),
        )
        self.assertEqual(scheduled.status_code, 201)
        maintenance_id = scheduled.json()["maintenanceID"]

        started = self.client.post(f"/api/maintenance/{maintenance_id}/start", headers=self._headers(self.admin_id))
        self.assertEqual(started.json()["status"], "in_progress")
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").json()["status"], "maintenance")

        finished = self.client.post(
            f"/api/maintenance/{maintenance_id}/complete",
            json={"workPerformed": "Oil and filters", "laborCost": 100, "partsCost": 40},
            headers=self._headers(self.admin_id),
        )
        self.assertEqual(finished.json()["totalCost"], 140.0)
        self.assertEqual(self.client.get(f"/api/equipment/{self.equipment_id}").json()["status"], "available")

        overdue = self.client.get("/api/maintenance/overdue", headers=self._headers(self.admin_id))
        self.assertEqual(overdue.status_code, 200)
        self.assertEqual(self.client.get("/api/maintenance", headers=self._headers(self.client_id)).status_code, 403)

    def test_notification_queue_and_dispatch(self):
        self._create()
        pending = self.client.get("/api/notifications/pending", headers=self._headers(self.admin_id))
        self.assertEqual([item["type"] for item in pending.json()], ["ReservationCreated"])

        app_module.app.dependency_overrides[app_module.get_notification_sender] = lambda: None
        unconfigured = self.client.post("/api/notifications/dispatch", headers=self._headers(self.admin_id))
        self.assertEqual(unconfigured.status_code, 503)

        sender = RecordingSender()
        app_module.app.dependency_overrides[app_module.get_notification_sender] = lambda: sender
        dispatched = self.client.post("/api/notifications/dispatch", headers=self._headers(self.admin_id))
        self.assertEqual(dispatched.json(), {"sent": 1, "failed": 0, "skipped": 0})
        self.assertEqual(sender.sent, ["client.one@example.com"])
        self.assertEqual(self.client.get("/api/notifications/pending", headers=self._headers(self.admin_id)).json(), [])


if __name__ == "__main__":
    unittest.main()
