from datetime import datetime

import pytest

from database import db, get_document

DAY = "2030-03-10"
PNG = ("result.png", b"\x89PNG\r\n\x1a\nfake", "image/png")


@pytest.fixture
def doctor(client, make_user):
    user = make_user("doctor", name="Dr. Kapoor")
    profile = client.post("/api/doctors/profile", json={
        "specialties": ["cardiology"],
        "clinics": [{"name": "Heart Care", "address": "Connaught Place"}],
        "fee": 700,
    }, headers=user["headers"])
    assert profile.status_code == 200
    schedule = client.post("/api/doctors/schedule", json={
        "schedule": [{"date": DAY, "slots": [{"from": "10:00", "to": "11:00"}]}],
    }, headers=user["headers"])
    assert schedule.status_code == 200
    return {**user, "doctor_id": profile.json()["_id"]}


def _book(client, customer, doctor, start="10:00", end="10:15", **extra):
    return client.post(f"/api/doctors/{doctor['doctor_id']}/book",
                       json={"date": DAY, "from": start, "to": end, "clinic_index": 0, **extra},
                       headers=customer["headers"])


class TestDoctors:
    def test_profile_upsert_keeps_schedule(self, client, doctor):
        res = client.post("/api/doctors/profile", json={
            "specialties": ["cardiology", "general"], "clinics": [{"name": "Heart Care"}], "fee": 800,
        }, headers=doctor["headers"])
        assert res.json()["_id"] == doctor["doctor_id"]
        assert res.json()["fee"] == 800
        assert res.json()["schedule"][0]["date"] == DAY
        assert db["doctor"].count_documents({}) == 1

    def test_schedule_rejects_inverted_window(self, client, doctor):
        res = client.post("/api/doctors/schedule", json={
            "schedule": [{"date": DAY, "slots": [{"from": "11:00", "to": "10:00"}]}],
        }, headers=doctor["headers"])
        assert res.status_code == 400

    def test_search(self, client, customer, doctor):
        assert len(client.get("/api/doctors", params={"specialty": "cardiology"}, headers=customer["headers"]).json()) == 1
        assert client.get("/api/doctors", params={"specialty": "dermatology"}, headers=customer["headers"]).json() == []
        assert len(client.get("/api/doctors", params={"q": "kapoor"}, headers=customer["headers"]).json()) == 1

    def test_book_creates_order_and_hides_slot(self, client, customer, doctor):
        res = _book(client, customer, doctor)
        assert res.status_code == 201
        order = res.json()
        assert order["order_type"] == "doctor_booking"
        assert order["order_number"].startswith("DOC-")
        assert order["total_amount"] == 700
        assert order["payment"]["method"] == "online"
        assert order["doctor_booking"]["booking_number"].startswith("DB")
        assert order["doctor_booking"]["status"] == "scheduled"

        slots = client.get(f"/api/doctors/{doctor['doctor_id']}/slots", params={"date": DAY},
                           headers=customer["headers"]).json()
        assert {"from": "10:00", "to": "10:15"} not in slots
        assert len(slots) == 3

    def test_double_booking_conflicts(self, client, customer, make_user, doctor):
        assert _book(client, customer, doctor).status_code == 201
        other = make_user("customer")
        res = _book(client, other, doctor)
        assert res.status_code == 409
        assert res.json()["detail"] == "Overlapping slot already booked"

    def test_cancelled_slot_can_be_rebooked(self, client, customer, doctor):
        order = _book(client, customer, doctor).json()
        cancel = client.post(f"/api/doctors/bookings/{order['_id']}/cancel", headers=customer["headers"])
        assert cancel.status_code == 200
        assert cancel.json()["order"]["doctor_booking"]["status"] == "cancelled"
        assert cancel.json()["order"]["payment"]["status"] == "failed"
        assert _book(client, customer, doctor).status_code == 201

    def test_held_slot_conflicts_before_its_order_exists(self, client, customer, doctor):
        db["doctorslot"].insert_one({"_id": f"{doctor['doctor_id']}|{DAY}|10:00"})
        res = _book(client, customer, doctor)
        assert res.status_code == 409
        assert res.json()["detail"] == "Overlapping slot already booked"
        assert db["order"].count_documents({}) == 0

    def test_order_cancel_releases_slot_hold(self, client, customer, doctor):
        order = _book(client, customer, doctor).json()
        assert db["doctorslot"].count_documents({}) == 1
        assert client.patch(f"/api/orders/{order['_id']}/cancel", headers=customer["headers"]).status_code == 200
        assert db["doctorslot"].count_documents({}) == 0
        assert _book(client, customer, doctor).status_code == 201

    @pytest.mark.parametrize("start, end", [("10:00", "10:30"), ("10:05", "10:20"), ("12:00", "12:15")])
    def test_invalid_slots(self, client, customer, doctor, start, end):
        assert _book(client, customer, doctor, start, end).status_code == 400

    def test_doctor_lifecycle(self, client, customer, doctor, make_user):
        order = _book(client, customer, doctor).json()
        listing = client.get("/api/doctors/doctor/bookings", headers=doctor["headers"]).json()
        assert [o["_id"] for o in listing] == [order["_id"]]
        patient = client.get("/api/doctors/patient/bookings", headers=customer["headers"]).json()
        assert len(patient) == 1

        other_doctor = make_user("doctor")
        client.post("/api/doctors/profile", json={"specialties": ["ent"], "clinics": [{"name": "ENT"}]},
                    headers=other_doctor["headers"])
        denied = client.post(f"/api/doctors/bookings/{order['_id']}/confirm", headers=other_doctor["headers"])
        assert denied.status_code == 403

        confirm = client.post(f"/api/doctors/bookings/{order['_id']}/confirm", headers=doctor["headers"])
        assert confirm.json()["doctor_booking"]["status"] == "confirmed"
        done = client.post(f"/api/doctors/bookings/{order['_id']}/complete", headers=doctor["headers"])
        assert done.json()["doctor_booking"]["status"] == "completed"
        late = client.post(f"/api/doctors/bookings/{order['_id']}/cancel", headers=customer["headers"])
        assert late.status_code == 400


@pytest.fixture
def blood_test(client, admin):
    res = client.post("/api/tests", json={"name": "Complete Blood Count", "code": "CBC", "price": 350},
                      headers=admin["headers"])
    assert res.status_code == 201
    return res.json()["_id"]


ADDRESS = {"line1": "12 Park Street", "city": "New Delhi", "state": "Delhi", "zip": "110001", "phone": "9000000000"}


class TestDiagnostics:
    def test_catalog(self, client, customer, admin, blood_test):
        dup = client.post("/api/tests", json={"name": "CBC again", "code": "CBC", "price": 1}, headers=admin["headers"])
        assert dup.status_code == 409
        found = client.get("/api/tests", params={"q": "blood"}, headers=customer["headers"]).json()
        assert [t["code"] for t in found] == ["CBC"]

    def test_booking_requires_full_address(self, client, customer, blood_test):
        partial = {k: v for k, v in ADDRESS.items() if k != "zip"}
        res = client.post("/api/tests/book", json={"test_id": blood_test, "address": partial},
                          headers=customer["headers"])
        assert res.status_code == 422

    def test_scheduled_at_must_be_a_datetime(self, client, customer, blood_test):
        bad = client.post("/api/tests/book", json={"test_id": blood_test, "address": ADDRESS, "scheduled_at": "tomorrow"},
                          headers=customer["headers"])
        assert bad.status_code == 422
        ok = client.post("/api/tests/book",
                         json={"test_id": blood_test, "address": ADDRESS, "scheduled_at": "2030-03-11T09:30:00"},
                         headers=customer["headers"])
        assert ok.status_code == 201
        assert get_document("order", ok.json()["_id"])["test_booking"]["scheduled_at"] == datetime(2030, 3, 11, 9, 30)

    def test_unapproved_technician_cannot_be_assigned(self, client, customer, pharmacist, make_user, blood_test):
        oid = client.post("/api/tests/book", json={"test_id": blood_test, "address": ADDRESS},
                          headers=customer["headers"]).json()["_id"]
        client.post(f"/api/tests/bookings/{oid}/approve", headers=pharmacist["headers"])
        tech = make_user("technician", is_approved=False)
        assert client.get("/api/tests/technicians", headers=pharmacist["headers"]).json() == []
        res = client.post(f"/api/tests/bookings/{oid}/assign", json={"technician_id": tech["id"]},
                          headers=pharmacist["headers"])
        assert res.status_code == 404
        assert res.status_code == 422

    def test_booking_flow(self, client, customer, pharmacist, make_user, blood_test):
        res = client.post("/api/tests/book", json={"test_id": blood_test, "address": ADDRESS},
                          headers=customer["headers"])
        assert res.status_code == 201
        order = res.json()
        oid = order["_id"]
        assert order["order_number"].startswith("TEST-")
        assert order["total_amount"] == 350
        assert order["test_booking"]["status"] == "pending_review"
        assert order["test_booking"]["booking_number"].startswith("TB")

        tech = make_user("technician")
        early = client.post(f"/api/tests/bookings/{oid}/assign", json={"technician_id": tech["id"]},
                            headers=pharmacist["headers"])
        assert early.status_code == 400

        assert client.post(f"/api/tests/bookings/{oid}/approve", headers=pharmacist["headers"]).status_code == 200
        assigned = client.post(f"/api/tests/bookings/{oid}/assign", json={"technician_id": tech["id"]},
                               headers=pharmacist["headers"])
        assert assigned.json()["test_booking"]["status"] == "assigned"

        visible = client.get("/api/tests/bookings", headers=tech["headers"]).json()
        assert [o["_id"] for o in visible] == [oid]

        results = client.post(f"/api/tests/bookings/{oid}/results", files=[("files", PNG)], headers=tech["headers"])
        assert results.status_code == 200
        booking = get_document("order", oid)["test_booking"]
        assert booking["status"] == "results_ready"
        assert booking["result_files"][0]["original_name"] == "result.png"

        mine = client.get("/api/tests/my-bookings", headers=customer["headers"]).json()
        assert mine[0]["test_booking"]["status"] == "results_ready"

    def test_other_technician_cannot_upload(self, client, customer, pharmacist, make_user, blood_test):
        oid = client.post("/api/tests/book", json={"test_id": blood_test, "address": ADDRESS},
                          headers=customer["headers"]).json()["_id"]
        tech = make_user("technician")
        client.post(f"/api/tests/bookings/{oid}/approve", headers=pharmacist["headers"])
        client.post(f"/api/tests/bookings/{oid}/assign", json={"technician_id": tech["id"]},
                    headers=pharmacist["headers"])
        other = make_user("technician")
        res = client.post(f"/api/tests/bookings/{oid}/results", files=[("files", PNG)], headers=other["headers"])
        assert res.status_code == 403
