from datetime import timedelta

from auth import create_access_token, decode_token, hash_password, verify_password


def test_password_hashing():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("secret123", "not-a-hash")


def test_token_roundtrip_and_expiry():
    payload = decode_token(create_access_token("abc", "customer"))
    assert payload["sub"] == "abc" and payload["role"] == "customer"
    assert decode_token(create_access_token("abc", "customer", timedelta(seconds=-5))) is None
    assert decode_token("garbage") is None


def test_register_login_me(client):
    res = client.post("/api/auth/register", json={
        "name": "Asha", "email": "Asha@Example.com", "password": "secret123", "phone": "9000000001",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["user"]["email"] == "asha@example.com"
    assert "password_hash" not in body["user"]

    dup = client.post("/api/auth/register", json={"name": "A", "email": "asha@example.com", "password": "secret123"})
    assert dup.status_code == 409

    bad = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "nope"})
    assert bad.status_code == 401

    login = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["role"] == "customer"


def test_cannot_self_register_as_admin(client):
    res = client.post("/api/auth/register", json={
        "name": "Root", "email": "root@example.com", "password": "secret123", "role": "admin",
    })
    assert res.status_code == 400


def test_missing_or_bad_token(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_deactivated_user(client, make_user):
    user = make_user("customer", is_active=False)
    res = client.get("/api/auth/me", headers=user["headers"])
    assert res.status_code == 401
    assert res.json()["detail"] == "Account has been deactivated"


def test_role_guard(client, customer):
    res = client.post("/api/medicines", json={"name": "X", "price": 1}, headers=customer["headers"])
    assert res.status_code == 403


def test_self_registered_staff_need_approval(client, admin, customer, add_prescription):
    res = client.post("/api/auth/register", json={
        "name": "Ravi", "email": "ravi@example.com", "password": "secret123", "role": "pharmacist",
    })
    assert res.status_code == 201
    assert res.json()["user"]["is_approved"] is False
    headers = {"Authorization": f"Bearer {res.json()['access_token']}"}
    user_id = res.json()["user"]["_id"]

    assert client.get("/api/auth/me", headers=headers).status_code == 200
    rx = add_prescription(customer["id"])
    blocked = client.patch(f"/api/prescriptions/{rx}/start-review", headers=headers)
    assert blocked.status_code == 403
    assert blocked.json()["detail"] == "Account is awaiting admin approval"

    pending = client.get("/api/users", params={"role": "pharmacist", "is_approved": False}, headers=admin["headers"])
    assert [u["_id"] for u in pending.json()] == [user_id]

    approved = client.patch(f"/api/users/{user_id}/approve", json={"approve": True}, headers=admin["headers"])
    assert approved.status_code == 200
    assert approved.json()["is_approved"] is True
    assert client.patch(f"/api/prescriptions/{rx}/start-review", headers=headers).status_code == 200


def test_customers_are_approved_on_registration(client):
    res = client.post("/api/auth/register", json={"name": "C", "email": "c@example.com", "password": "secret123"})
    assert res.json()["user"]["is_approved"] is True


def test_only_admin_approves_users(client, pharmacist, make_user):
    tech = make_user("technician", is_approved=False)
    res = client.patch(f"/api/users/{tech['id']}/approve", json={"approve": True}, headers=pharmacist["headers"])
    assert res.status_code == 403


def test_approve_unknown_user(client, admin):
    res = client.patch("/api/users/not-an-id/approve", json={"approve": True}, headers=admin["headers"])
    assert res.status_code == 404
