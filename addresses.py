"""
Customer address book

Saved addresses carry coordinates, so an order placed against one gets its
delivery fee from the stored location. Each user has at most one default.
"""
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from auth import get_current_user
from database import create_document, db, get_document, parse_id, serialize, update_document
from schemas import Address, DeliveryAddress, GeoPoint

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/addresses", tags=["Addresses"])

NEWEST_DEFAULT_FIRST = [("is_default", -1), ("created_at", -1), ("_id", -1)]


def find_address(user_id: str, address_id: str) -> Optional[Dict[str, Any]]:
    oid = parse_id(address_id)
    if oid is None:
        return None
    return db["address"].find_one({"_id": oid, "user": user_id})


def to_delivery_address(address: Dict[str, Any]) -> DeliveryAddress:
    parts = [address["line1"]]
    if address.get("line2"):
        parts.append(address["line2"])
    if address.get("landmark"):
        parts.append(f"Near {address['landmark']}")
    return DeliveryAddress(
        street=", ".join(parts),
        city=address.get("city"),
        state=address.get("state"),
        zip_code=address.get("zip_code"),
        phone=address.get("phone"),
        location=address.get("location"),
    )


def _owned(user: Dict[str, Any], address_id: str) -> Dict[str, Any]:
    address = find_address(user["_id"], address_id)
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


def _validated(data: Dict[str, Any]) -> Address:
    try:
        return Address(**data)
    except ValidationError as e:
        detail = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
        raise HTTPException(status_code=422, detail=detail)


def _make_default(user_id: str, address_id: Any) -> None:
    db["address"].update_many({"user": user_id, "_id": {"$ne": parse_id(address_id)}},
                              {"$set": {"is_default": False}})
    update_document("address", address_id, {"is_default": True})


def _view(address: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize(address)
    data["full_address"] = ", ".join(
        [to_delivery_address(address).street, f"{address['city']}, {address['state']} {address['zip_code']}"])
    return data


class AddressRequest(BaseModel):
    title: str
    name: str
    phone: str
    line1: str
    line2: Optional[str] = None
    landmark: Optional[str] = None
    city: str
    state: str
    zip_code: str
    country: str = "India"
    location: Optional[GeoPoint] = None
    is_default: bool = False
    address_type: Literal["home", "office", "other"] = "home"


class AddressUpdateRequest(BaseModel):
    title: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    landmark: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    location: Optional[GeoPoint] = None
    is_default: Optional[bool] = None
    address_type: Optional[Literal["home", "office", "other"]] = None


@router.get("")
def list_addresses(user: Dict[str, Any] = Depends(get_current_user)):
    cursor = db["address"].find({"user": user["_id"]}).sort(NEWEST_DEFAULT_FIRST)
    return [_view(a) for a in cursor]


@router.get("/{address_id}")
def get_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    return _view(_owned(user, address_id))


@router.post("", status_code=201)
def create_address(payload: AddressRequest, user: Dict[str, Any] = Depends(get_current_user)):
    first = db["address"].count_documents({"user": user["_id"]}) == 0
    fields = {k: v.strip() if isinstance(v, str) else v for k, v in payload.model_dump().items()}
    address = _validated({**fields, "user": user["_id"], "is_default": False})
    address_id = create_document("address", address)
    if first or payload.is_default:
        _make_default(user["_id"], address_id)
    logger.info("[ADDRESSES] Address %s saved for %s", address_id, user["_id"])
    return _view(get_document("address", address_id))


@router.put("/{address_id}")
def update_address(address_id: str, payload: AddressUpdateRequest, user: Dict[str, Any] = Depends(get_current_user)):
    current = _owned(user, address_id)
    changes = {k: v.strip() if isinstance(v, str) else v
               for k, v in payload.model_dump(exclude_unset=True).items()}
    make_default = changes.pop("is_default", None)
    merged = {k: v for k, v in current.items() if k in Address.model_fields}
    merged.update(changes)
    _validated(merged)
    update_document("address", current["_id"], changes)
    if make_default:
        _make_default(user["_id"], current["_id"])
    elif make_default is False:
        update_document("address", current["_id"], {"is_default": False})
    return _view(get_document("address", current["_id"]))


@router.put("/{address_id}/set-default")
def set_default_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    address = _owned(user, address_id)
    _make_default(user["_id"], address["_id"])
    return _view(get_document("address", address["_id"]))


@router.delete("/{address_id}")
def delete_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    address = _owned(user, address_id)
    db["address"].delete_one({"_id": address["_id"]})
    if address.get("is_default"):
        newest = db["address"].find_one({"user": user["_id"]}, sort=[("created_at", -1), ("_id", -1)])
        if newest:
            _make_default(user["_id"], newest["_id"])
    return {"id": address_id, "deleted": True}
