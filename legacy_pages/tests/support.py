"""
Shared helpers for the test suite: settings, session tokens and form data.
"""

from __future__ import annotations

import base64
import time

import jwt

from legacy_pages.config import Settings

JWT_SECRET = "legacy-pages-test-signing-secret-0001"
WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"legacy-pages-webhook-secret-01").decode()


def make_settings(**overrides) -> Settings:
    values = {
        "auth_jwt_key": JWT_SECRET,
        "auth_jwt_algorithms": ["HS256"],
        "webhook_secret": WEBHOOK_SECRET,
        "use_in_memory_backends": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_token(external_id: str, secret: str = JWT_SECRET, **claims) -> str:
    payload = {"sub": external_id, "exp": int(time.time()) + 3600}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(external_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(external_id)}"}


def page_form(slug: str = "jane-doe", page_type: str = "memorial", **extra) -> dict:
    data = {
        "pageType": page_type,
        "slug": slug,
        "honoureeName": "Jane Doe",
        "dateOfBirth": "1950-04-01",
        "dateOfPassing": "2023-09-12" if page_type == "memorial" else "",
        "creatorName": "John Doe",
        "relationship": "Son",
        "story": "She kept a garden for fifty years.",
        "personality": "",
        "values": "",
        "beliefs": "",
    }
    data.update(extra)
    return data


def image_file(name: str = "photo.jpg", data: bytes = b"fake-jpeg-bytes") -> tuple:
    return (name, data, "image/jpeg")
