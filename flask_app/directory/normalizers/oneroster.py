"""
OneRoster REST normalizer.

Pages through ``/users`` with ``limit``/``offset`` and keeps users whose role
matches the configured contact roles. Every request carries the per-source
timeout and the overall fetch deadline is checked between pages, so a slow
provider fails the run instead of producing a partial feed.
"""

from __future__ import annotations

import os
import time
from typing import Any, Iterable, Mapping, Sequence

import requests
from flask import current_app, has_app_context

from flask_app.directory.contracts import map_role_to_contact_type
from flask_app.directory.errors import AdapterUnreachableError, FeedFormatError, SyncTimeoutError

DEFAULT_API_ROOT = "/ims/oneroster/v1p1"
DEFAULT_CONTACT_ROLES: tuple[str, ...] = ("contact", "guardian", "parent", "teacher", "staff")
DEFAULT_EMAIL_FIELDS: tuple[str, ...] = ("email", "emailAddress", "username")
DEFAULT_ROLE_FIELDS: tuple[str, ...] = ("role", "roles")
DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT_SECONDS = 60.0


def _resolve_field(payload: Any, path: str) -> Any:
    current = payload
    for part in (segment for segment in path.split(".") if segment):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def pick_email(user: Mapping[str, Any], fields: Sequence[str]) -> str | None:
    for name in fields:
        value = _resolve_field(user, name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_roles(user: Mapping[str, Any], paths: Sequence[str]) -> list[str]:
    """Collect role names from string, object, or list-valued role fields."""

    roles: list[str] = []

    def _add(value: Any) -> None:
        if isinstance(value, Mapping) and isinstance(value.get("role"), str):
            value = value["role"]
        if isinstance(value, str) and value and value not in roles:
            roles.append(value)

    for path in paths:
        value = _resolve_field(user, path)
        if isinstance(value, list):
            for item in value:
                _add(item)
        elif value:
            _add(value)
    return roles


def user_to_row(
    user: Mapping[str, Any],
    *,
    contact_roles: Iterable[str],
    email_fields: Sequence[str],
    role_fields: Sequence[str],
) -> dict[str, Any] | None:
    """Translate a OneRoster user; ``None`` when the user is out of scope."""

    allowed = {role.lower() for role in contact_roles}
    matching = next((role for role in extract_roles(user, role_fields) if role.lower() in allowed), None)
    if matching is None:
        return None
    email = pick_email(user, email_fields)
    if not email:
        return None
    return {
        "external_id": user.get("sourcedId") or user.get("sourced_id") or user.get("id"),
        "email": email,
        "first_name": user.get("givenName") or user.get("firstName"),
        "last_name": user.get("familyName") or user.get("lastName"),
        "contact_type": map_role_to_contact_type(matching),
    }


def _users_from_payload(payload: Any) -> list[Mapping[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping) and isinstance(payload.get("users"), list):
        return payload["users"]
    raise FeedFormatError("OneRoster response did not contain a 'users' list.")


def _default_page_size() -> int:
    if has_app_context():
        return int(current_app.config.get("DIRECTORY_ONEROSTER_PAGE_SIZE", DEFAULT_PAGE_SIZE))
    return DEFAULT_PAGE_SIZE


def _auth_headers(config: Mapping[str, Any]) -> dict[str, str]:
    token_env = config.get("token_env")
    if not token_env:
        return {}
    token = os.environ.get(str(token_env))
    if not token:
        raise AdapterUnreachableError(f"Environment variable {token_env} is not set; cannot authenticate feed.")
    return {"Authorization": f"Bearer {token}"}


def normalize(config: Mapping[str, Any], *, timeout: float | None = None) -> list[dict[str, Any]]:
    base_url = str(config.get("base_url") or "").rstrip("/")
    if not base_url:
        raise FeedFormatError("OneRoster source requires 'base_url' in its configuration.")
    api_root = str(config.get("api_root") or DEFAULT_API_ROOT)
    url = f"{base_url}{api_root}/users"

    timeout = float(timeout or DEFAULT_TIMEOUT_SECONDS)
    deadline = time.monotonic() + timeout
    page_size = int(config.get("page_size") or _default_page_size())
    paginate = config.get("paginate", True)
    contact_roles = tuple(config.get("contact_roles") or DEFAULT_CONTACT_ROLES)
    email_fields = tuple(config.get("email_fields") or DEFAULT_EMAIL_FIELDS)
    role_fields = tuple(config.get("role_fields") or DEFAULT_ROLE_FIELDS)
    headers = {"Accept": "application/json", **_auth_headers(config)}

    rows: list[dict[str, Any]] = []
    offset = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SyncTimeoutError(f"OneRoster fetch exceeded {timeout:g}s after {offset} users.")
        params = {"limit": page_size, "offset": offset} if paginate else None
        try:
            response = requests.get(url, headers=headers, params=params, timeout=remaining)
        except requests.Timeout as exc:
            raise SyncTimeoutError(f"Timed out fetching {url} at offset {offset}.") from exc
        except requests.RequestException as exc:
            raise AdapterUnreachableError(f"Could not reach {url}: {exc}") from exc
        if response.status_code >= 400:
            raise AdapterUnreachableError(
                f"OneRoster responded with HTTP {response.status_code}.",
                status_code=response.status_code,
            )
        try:
            users = _users_from_payload(response.json())
        except ValueError as exc:
            raise FeedFormatError(f"OneRoster response was not valid JSON: {exc}") from exc

        for user in users:
            row = user_to_row(
                user,
                contact_roles=contact_roles,
                email_fields=email_fields,
                role_fields=role_fields,
            )
            if row is not None:
                rows.append(row)

        if not paginate or len(users) < page_size:
            break
        offset += page_size

    return [{"row_index": index, **row} for index, row in enumerate(rows, start=1)]
