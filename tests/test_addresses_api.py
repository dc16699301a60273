import pytest

from database import db, get_document

HOME = {
    "title": "Home", "name": "Asha", "phone": "9000000000", "line1": "1 Main Road", "landmark": "Metro Gate 2",
    "city": "New Delhi", "state": "Delhi", "zip_code": "110001", "location": {"lat": 28.6139, "lng": 77.2090},
}
OFFICE = {**HOME, "title": "Office", "line1": "5 Cyber City", "city": "Gurugram", "state": "Haryana",
          "zip_code": "122002", "address_type": "office", "location": {"lat": 28.4951, "lng": 77.0895}}


def _save(client, user, body):
    res = client.post("/api/addresses", json=body, headers=user["headers"])
    assert res.status_code == 201
    return res.json()


class TestAddressBook:
    def test_first_address_becomes_default(self, client, customer):
        home = _save(client, customer, HOME)
        assert home["is_default"] is True
        assert home["user"] == customer["id"]
        assert home["full_address"] == "1 Main Road, Near Metro Gate 2, New Delhi, Delhi 110001"
        office = _save(client, customer, OFFICE)
        assert office["is_default"] is False

    def test_only_one_default(self, client, customer):
        home = _save(client, customer, HOME)
        office = _save(client, customer, {**OFFICE, "is_default": True})
        assert office["is_default"] is True
        assert get_document("address", home["_id"])["is_default"] is False

        client.put(f"/api/addresses/{home['_id']}/set-default", headers=customer["headers"])
        listing = client.get("/api/addresses", headers=customer["headers"]).json()
        assert [a["_id"] for a in listing] == [home["_id"], office["_id"]]
        assert db["address"].count_documents({"user": customer["id"], "is_default": True}) == 1

    def test_update_validates_merged_address(self, client, customer):
        home = _save(client, customer, HOME)
        ok = client.put(f"/api/addresses/{home['_id']}", json={"line2": "Flat 4B", "title": " Parents "},
                        headers=customer["headers"])
        assert ok.status_code == 200
        assert ok.json()["title"] == "Parents"
        assert ok.json()["line2"] == "Flat 4B"
        bad = client.put(f"/api/addresses/{home['_id']}", json={"zip_code": "abc"}, headers=customer["headers"])
        assert bad.status_code == 422
        assert get_document("address", home["_id"])["zip_code"] == "110001"

    @pytest.mark.parametrize("field, value", [("phone", "12"), ("zip_code", "not-a-pin"), ("title", "  ")])
    def test_create_rejects_bad_fields(self, client, customer, field, value):
        res = client.post("/api/addresses", json={**HOME, field: value}, headers=customer["headers"])
        assert res.status_code == 422

    def test_delete_default_promotes_another(self, client, customer):
        home = _save(client, customer, HOME)
        office = _save(client, customer, OFFICE)
        res = client.delete(f"/api/addresses/{home['_id']}", headers=customer["headers"])
        assert res.status_code == 200
        assert get_document("address", office["_id"])["is_default"] is True

    def test_addresses_are_private(self, client, customer, make_user):
        home = _save(client, customer, HOME)
        other = make_user("customer")
        assert client.get(f"/api/addresses/{home['_id']}", headers=other["headers"]).status_code == 404
        assert client.delete(f"/api/addresses/{home['_id']}", headers=other["headers"]).status_code == 404
        assert client.get("/api/addresses", headers=other["headers"]).json() == []


class TestCheckoutWithSavedAddress:
    def test_order_uses_saved_location(self, client, customer, add_medicine):
        office = _save(client, customer, OFFICE)
        med = add_medicine(price=50)
        res = client.post("/api/orders", json={"items": [{"medicine": med, "quantity": 2}],
                                               "address_id": office["_id"]}, headers=customer["headers"])
        assert res.status_code == 201
        order = res.json()
        assert order["delivery_address"]["street"] == "5 Cyber City, Near Metro Gate 2"
        assert order["delivery_address"]["city"] == "Gurugram"
        assert order["delivery_address"]["distance_km"] > 10
        assert order["delivery_charges"] > 50

    def test_cart_quote_with_saved_address(self, client, customer, add_medicine):
        home = _save(client, customer, HOME)
        med = add_medicine(price=50)
        res = client.post("/api/cart/quote", json={"items": [{"medicine": med, "quantity": 1}],
                                                   "address_id": home["_id"]}, headers=customer["headers"])
        assert res.status_code == 200
        assert res.json()["delivery"]["distance_km"] == pytest.approx(0.0)
        assert res.json()["delivery"]["final_fee"] == 30

    def test_unknown_address(self, client, customer, make_user, add_medicine):
        other = make_user("customer")
        theirs = _save(client, other, HOME)
        med = add_medicine()
        res = client.post("/api/orders", json={"items": [{"medicine": med, "quantity": 1}],
                                               "address_id": theirs["_id"]}, headers=customer["headers"])
        assert res.status_code == 404
        assert res.json()["detail"] == "Address not found"
