"""HTTPS CSV normalizer: downloads a CSV export and parses it like a local file."""

from __future__ import annotations

import os
from typing import Any, Mapping
from urllib.parse import urlparse

import requests

from flask_app.directory.errors import AdapterUnreachableError, FeedFormatError, SyncTimeoutError

from .csv_rows import parse_directory_csv

DEFAULT_TIMEOUT_SECONDS = 60.0


def build_headers(config: Mapping[str, Any]) -> dict[str, str]:
    headers = {"Accept": "text/csv, text/plain;q=0.9, */*;q=0.1"}
    headers.update({str(key): str(value) for key, value in (config.get("headers") or {}).items()})
    token_env = config.get("token_env")
    if token_env:
        token = os.environ.get(str(token_env))
        if not token:
            raise AdapterUnreachableError(f"Environment variable {token_env} is not set; cannot authenticate feed.")
        headers["Authorization"] = f"Bearer {token}"
    return headers


def fetch_text(url: str, *, headers: Mapping[str, str], timeout: float) -> str:
    """GET ``url`` and return the body, translating transport failures."""

    try:
        response = requests.get(url, headers=dict(headers), timeout=timeout)
    except requests.Timeout as exc:
        raise SyncTimeoutError(f"Timed out after {timeout:g}s fetching {url}.") from exc
    except requests.RequestException as exc:
        raise AdapterUnreachableError(f"Could not reach {url}: {exc}") from exc

    if response.status_code >= 400:
        raise AdapterUnreachableError(
            f"Feed {url} responded with HTTP {response.status_code}.",
            status_code=response.status_code,
        )
    return response.text


def normalize(config: Mapping[str, Any], *, timeout: float | None = None) -> list[dict[str, Any]]:
    url = str(config.get("url") or "").strip()
    if not url:
        raise FeedFormatError("HTTPS CSV source requires 'url' in its configuration.")
    if urlparse(url).scheme != "https":
        raise FeedFormatError("HTTPS CSV source URL must use https://.")

    text = fetch_text(url, headers=build_headers(config), timeout=timeout or DEFAULT_TIMEOUT_SECONDS)
    return parse_directory_csv(
        text,
        delimiter=config.get("delimiter") or ",",
        default_contact_type=config.get("default_contact_type"),
    )
