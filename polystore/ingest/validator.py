"""
Payload checks for JSON ingestion.

Parsing happens upstream; these helpers only check the shape of the
already-parsed value and derive names.
"""

import re
from typing import Any, Dict, List

from polystore.common.exceptions import InputError


def normalize_payload(data: Any) -> List[Dict[str, Any]]:
    """
    Normalize a parsed JSON payload into a list of records.

    A single object becomes a one-element list.

    Raises:
        InputError: If the payload is a primitive, an empty array, or an
            array with non-object elements
    """
    if isinstance(data, dict):
        return [data]

    if not isinstance(data, list):
        raise InputError(
            f"JSON payload must be an object or array, not {type(data).__name__}")

    if not data:
        raise InputError("JSON payload is an empty array")

    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise InputError(
                f"Array element {index} is {type(item).__name__}; all elements must be objects")

    return data


def derive_dataset_name(original_name: str) -> str:
    """
    Derive a dataset name from a file name.

    ``"Sales Report.2024.json"`` -> ``"sales_report_2024"``
    """
    base = re.sub(r"\.[^/.]+$", "", original_name or "")
    name = re.sub(r"[^a-zA-Z0-9_]", "_", base).lower()
    return name or "dataset"
