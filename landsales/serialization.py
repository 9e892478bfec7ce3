from bson import ObjectId, Decimal128
from datetime import date, datetime
from enum import Enum
from typing import Dict, Any, Optional


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {key: _serialize_value(value) for key, value in doc.items()}
    if "_id" in result:
        result["id"] = result["_id"]
    return result


def to_storage(data: Dict[str, Any]) -> Dict[str, Any]:
    """Prepare pydantic input data for BSON: enums to values, dates to datetimes"""
    result = {}
    for key, value in data.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        elif isinstance(value, list):
            value = [to_storage(item) if isinstance(item, dict) else item for item in value]
        result[key] = value
    return result
