"""
Parsing of the multipart page submission.

The browser form flattens nested records into indexed field names such as
``events[0][name]`` or ``memorialDetails[funeral][date]``. They are grouped
here into typed, validated records so the service never deals with raw
field names.
"""

from __future__ import annotations

import mimetypes
import re
from typing import Any, Optional

from pydantic import ValidationError
from starlette.datastructures import FormData, UploadFile

from legacy_pages.errors import InvalidSubmission
from legacy_pages.schemas import (
    EventIn,
    FileUpload,
    GeneralKnowledgeIn,
    InsightIn,
    MediaItemIn,
    MemorialDetailsIn,
    PageFields,
    PageSubmission,
    RelationshipIn,
)

COLLECTION_FIELD = re.compile(
    r"^(mediaItems|events|relationships|insights)\[(\d+)\]\[(\w+)\]$"
)
MEMORIAL_FIELD = re.compile(r"^memorialDetails\[(\w+)\](?:\[(\w+)\])?$")

COLLECTION_MODELS = {
    "mediaItems": MediaItemIn,
    "events": EventIn,
    "relationships": RelationshipIn,
    "insights": InsightIn,
}

FILE_FIELDS = ("coverPhoto", "honoureePhoto")


async def read_upload(value: Any) -> Optional[FileUpload]:
    """Read a file part; empty file inputs count as absent."""
    if not isinstance(value, UploadFile) or not value.filename:
        return None
    data = await value.read()
    content_type = (
        value.content_type
        or mimetypes.guess_type(value.filename)[0]
        or "application/octet-stream"
    )
    return FileUpload(filename=value.filename, content_type=content_type, data=data)


def _format_errors(label: str, exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        prefix = f"{label}.{location}" if label and location else label or location
        messages.append(f"{prefix}: {error['msg']}")
    return messages


async def parse_page_submission(form: FormData) -> PageSubmission:
    scalars: dict[str, Any] = {}
    collections: dict[str, dict[int, dict[str, Any]]] = {}
    memorial: dict[str, Any] = {}

    for key, value in form.multi_items():
        match = COLLECTION_FIELD.match(key)
        if match:
            name, index, field_name = match.group(1), int(match.group(2)), match.group(3)
            if isinstance(value, UploadFile):
                value = await read_upload(value)
            collections.setdefault(name, {}).setdefault(index, {})[field_name] = value
            continue

        match = MEMORIAL_FIELD.match(key)
        if match:
            section, field_name = match.groups()
            if field_name:
                memorial.setdefault(section, {})[field_name] = value
            else:
                memorial[section] = value
            continue

        if key not in FILE_FIELDS:
            scalars[key] = value

    errors: list[str] = []

    def validate(label: str, model, data: dict):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            errors.extend(_format_errors(label, exc))
            return None

    fields = validate("", PageFields, scalars)
    general_knowledge = validate("", GeneralKnowledgeIn, scalars)
    memorial_details = (
        validate("memorialDetails", MemorialDetailsIn, memorial) if memorial else None
    )

    parsed: dict[str, Optional[list]] = {}
    for name, model in COLLECTION_MODELS.items():
        entries = collections.get(name)
        if entries is None:
            parsed[name] = None
            continue
        parsed[name] = [
            validate(f"{name}[{index}]", model, entries[index])
            for index in sorted(entries)
        ]

    if errors:
        raise InvalidSubmission("; ".join(errors))

    return PageSubmission(
        fields=fields,
        general_knowledge=general_knowledge,
        memorial_details=memorial_details,
        cover_photo=await read_upload(form.get("coverPhoto")),
        honouree_photo=await read_upload(form.get("honoureePhoto")),
        media_items=parsed["mediaItems"],
        events=parsed["events"],
        relationships=parsed["relationships"],
        insights=parsed["insights"],
    )
