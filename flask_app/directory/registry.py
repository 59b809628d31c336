"""
Normalizer registry.

Sources name their normalizer through ``source_type``; the registry maps that
name to a descriptor so configuration can be validated at startup and the
orchestrator can resolve the strategy at run time.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from .errors import UnsupportedSourceTypeError
from .normalizers import csv_rows, https_csv, inline, oneroster

NormalizeFn = Callable[..., list[dict[str, Any]]]


@dataclass(frozen=True)
class NormalizerDescriptor:
    """Metadata describing a directory normalizer."""

    name: str
    title: str
    normalize: NormalizeFn
    summary: str | None = None
    remote: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "title": self.title, "summary": self.summary, "remote": self.remote}


def get_normalizer_registry() -> Mapping[str, NormalizerDescriptor]:
    """Return the registry of bundled normalizers."""
    return OrderedDict(
        (
            (
                "csv",
                NormalizerDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    normalize=csv_rows.normalize,
                    summary="Read a directory export from a local CSV file.",
                ),
            ),
            (
                "https_csv",
                NormalizerDescriptor(
                    name="https_csv",
                    title="CSV over HTTPS",
                    normalize=https_csv.normalize,
                    summary="Download a CSV export from an HTTPS endpoint.",
                    remote=True,
                ),
            ),
            (
                "oneroster",
                NormalizerDescriptor(
                    name="oneroster",
                    title="OneRoster REST",
                    normalize=oneroster.normalize,
                    summary="Page through OneRoster /users and keep contact roles.",
                    remote=True,
                ),
            ),
            (
                "inline",
                NormalizerDescriptor(
                    name="inline",
                    title="Inline Rows",
                    normalize=inline.normalize,
                    summary="Rows stored directly on the source configuration.",
                ),
            ),
        )
    )


def resolve_normalizers(
    configured: Sequence[str],
    registry: Mapping[str, NormalizerDescriptor] | None = None,
) -> Iterable[NormalizerDescriptor]:
    """
    Map configured normalizer names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_normalizer_registry()
    unknown = sorted({name for name in configured if name not in registry})
    if unknown:
        raise ValueError(
            "Unknown directory normalizers configured: "
            + ", ".join(unknown)
            + ". Update DIRECTORY_NORMALIZERS or register these normalizers first."
        )
    return tuple(registry[name] for name in configured)


def get_normalizer(
    source_type: str,
    enabled: Sequence[str] | None = None,
    registry: Mapping[str, NormalizerDescriptor] | None = None,
) -> NormalizerDescriptor:
    """Resolve the descriptor for ``source_type`` or raise ``unsupported_source_type``."""
    registry = registry or get_normalizer_registry()
    descriptor = registry.get(source_type)
    if descriptor is None or (enabled is not None and source_type not in enabled):
        raise UnsupportedSourceTypeError(f"Source type '{source_type}' is not an enabled directory normalizer.")
    return descriptor
