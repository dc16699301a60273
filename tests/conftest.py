import os
import tempfile

os.environ["DATABASE_URL"] = "mongomock://localhost"
os.environ["DATABASE_NAME"] = "epharmacy_test"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="epharmacy-uploads-")
os.environ["AWS_S3_BUCKET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["CASHFREE_WEBHOOK_SECRET"] = ""

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, hash_password
from database import create_document, db
from main import app


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(role="customer", email=None, **extra):
        doc = {
            "name": extra.pop("name", f"Test {role}"),
            "email": email or f"{role}-{os.urandom(3).hex()}@example.com",
            "phone": extra.pop("phone", None),
            "role": role,
            "password_hash": hash_password("secret123"),
            "is_active": extra.pop("is_active", True),
        }
        doc.update(extra)
        user_id = create_document("appuser", doc)
        token = create_access_token(user_id, role)
        return {"id": user_id, "headers": {"Authorization": f"Bearer {token}"}, "email": doc["email"]}
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer", email="customer@example.com")


@pytest.fixture
def pharmacist(make_user):
    return make_user("pharmacist", email="pharmacist@example.com")


@pytest.fixture
def admin(make_user):
    return make_user("admin", email="admin@example.com")


@pytest.fixture
def add_medicine():
    def _add(name="Paracetamol", price=20.0, stock=100, requires_prescription=False, added_by=None, **extra):
        doc = {
            "name": name,
            "generic_name": extra.pop("generic_name", None),
            "category": extra.pop("category", "General"),
            "price": price,
            "stock_quantity": stock,
            "requires_prescription": requires_prescription,
            "is_active": extra.pop("is_active", True),
            "added_by": added_by,
        }
        doc.update(extra)
        return create_document("medicine", doc)
    return _add


@pytest.fixture
def add_prescription():
    from datetime import timedelta
    from database import utcnow

    def _add(customer_id, status="pending", valid_days=30):
        return create_document("prescription", {
            "prescription_number": "RX-TEST",
            "customer": customer_id,
            "doctor_name": "Dr. Rao",
            "doctor_registration_number": "REG-1",
            "patient_name": "Patient",
            "patient_age": 40,
            "patient_gender": "female",
            "prescription_date": utcnow() - timedelta(days=1),
            "valid_until": utcnow() + timedelta(days=valid_days),
            "documents": [],
            "status": status,
            "priority": "normal",
            "medicines": [],
        })
    return _add
