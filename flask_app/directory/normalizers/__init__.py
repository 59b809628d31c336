"""Row normalizers: one strategy per directory source type.

Each module exposes ``normalize(config, *, timeout) -> list[dict]`` returning
canonical row mappings. Fatal feed problems raise ``NormalizerError``
subclasses; per-row problems are left to the diff engine.
"""

from __future__ import annotations

from . import csv_rows, https_csv, inline, oneroster
from .csv_rows import CSVHeaderError, iter_directory_rows, parse_directory_csv

__all__ = [
    "csv_rows",
    "https_csv",
    "inline",
    "oneroster",
    "CSVHeaderError",
    "iter_directory_rows",
    "parse_directory_csv",
]
