from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from lab_lending.models.lending_models import Material, new_document_id
from lab_lending.services.errors import NotFoundError, ValidationError
from lab_lending.services.unit_of_work import commit_or_raise


INVENTORY_LOGGER = logging.getLogger("lab_lending.inventory")

MATERIAL_FIELDS = {
    "name": "Name",
    "category": "Category",
    "description": "Description",
    "quantity": "Quantity",
    "available": "Available",
    "location": "Location",
    "imageUrl": "ImageUrl",
}


def _coerce_count(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        parsed = float(raw)
    except ValueError:
        return None
    return int(parsed) if parsed.is_integer() else None


def validate_stock(quantity_raw: Any, available_raw: Any) -> tuple[int, int]:
    quantity = _coerce_count(quantity_raw)
    available = _coerce_count(available_raw)
    if quantity is None or available is None:
        raise ValidationError("Total and available must be whole numbers.")
    if quantity < 0 or available < 0:
        raise ValidationError("Total and available cannot be negative.")
    if available > quantity:
        raise ValidationError("Available cannot be greater than total.")
    return quantity, available


def serialize_material(material: Material) -> dict:
    return {
        "id": material.MaterialID,
        "name": material.Name,
        "category": material.Category,
        "description": material.Description,
        "quantity": material.Quantity,
        "available": material.Available,
        "location": material.Location,
        "imageUrl": material.ImageUrl,
        "version": material.Version,
        "createdAt": material.CreatedDate,
        "updatedAt": material.UpdatedDate,
    }


def upsert_material(db: Session, material_id: str | None, data: dict[str, Any]) -> str:
    """Create a material when ``material_id`` is empty, otherwise patch it.

    Only the keys present in ``data`` are written. The stock rule is checked
    against the merged values, so updating ``available`` alone is still held
    to the stored ``quantity``.
    """
    fields = {key: data[key] for key in MATERIAL_FIELDS if key in data}

    material: Material | None = None
    if material_id:
        material = db.get(Material, material_id)
        if material is None:
            raise NotFoundError("Material not found.")
        merged_quantity = fields.get("quantity", material.Quantity)
        merged_available = fields.get("available", material.Available)
    else:
        name = str(fields.get("name") or "").strip()
        category = str(fields.get("category") or "").strip()
        if not name or not category:
            raise ValidationError("Name and category are required.")
        merged_quantity = fields.get("quantity")
        merged_available = fields.get("available")

    quantity, available = validate_stock(merged_quantity, merged_available)
    fields["quantity"] = quantity
    fields["available"] = available

    now = datetime.now()
    if material is None:
        material = Material(MaterialID=new_document_id(), CreatedDate=now)
        db.add(material)
    for field, value in fields.items():
        setattr(material, MATERIAL_FIELDS[field], value)
    material.UpdatedDate = now

    commit_or_raise(db)
    INVENTORY_LOGGER.info(
        "Material saved id=%s quantity=%s available=%s created=%s",
        material.MaterialID,
        quantity,
        available,
        not material_id,
    )
    return material.MaterialID


def delete_material(db: Session, material_id: str) -> bool:
    material = db.get(Material, material_id)
    if material is not None:
        db.delete(material)
        commit_or_raise(db)
        INVENTORY_LOGGER.info("Material deleted id=%s", material_id)
    return True


def get_material(db: Session, material_id: str) -> dict | None:
    material = db.get(Material, material_id)
    return serialize_material(material) if material else None


def list_materials(db: Session, category: str | None = None, search: str | None = None) -> list[dict]:
    stmt = select(Material)
    if category:
        stmt = stmt.where(Material.Category == category)
    term = (search or "").strip()
    if term:
        stmt = stmt.where(
            or_(
                Material.Name.ilike(f"%{term}%"),
                Material.Description.ilike(f"%{term}%"),
            )
        )
    materials = db.execute(stmt.order_by(Material.Name)).scalars().all()
    return [serialize_material(material) for material in materials]
