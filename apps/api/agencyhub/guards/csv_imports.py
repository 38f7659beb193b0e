"""Authorization and upload validation for CSV imports and exports."""

from __future__ import annotations

import os
import re
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agencyhub.core.config import get_settings
from agencyhub.guards.base import BaseGuard
from agencyhub.platform.security.context import CLIENT_ROLES, Identity


ALLOWED_EXTENSIONS = frozenset({"csv", "txt"})
ALLOWED_MIME_TYPES = frozenset({"text/csv", "text/plain", "application/csv", "application/vnd.ms-excel"})

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")
_SNIFF_BYTES = 8192
_BINARY_SIGNATURES = (
    b"PK\x03\x04",  # zip containers, including xlsx
    b"\xd0\xcf\x11\xe0",  # OLE compound files (xls, doc)
    b"%PDF-",
    b"\x89PNG",
    b"\xff\xd8\xff",
    b"GIF8",
    b"MZ",
    b"\x7fELF",
)


@dataclass(slots=True)
class UploadedFile:
    """An upload that has already been spooled to disk by the web layer."""

    name: str
    path: str | None
    size: int


@dataclass(slots=True)
class FileValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def detect_mime_type(path: str | os.PathLike[str]) -> str:
    """Content-based MIME sniffing for delimited text uploads."""

    with open(path, "rb") as handle:
        head = handle.read(_SNIFF_BYTES)

    if not head:
        return "application/x-empty"
    if head.startswith(_BINARY_SIGNATURES) or b"\x00" in head:
        return "application/octet-stream"

    try:
        sample = head.decode("utf-8")
    except UnicodeDecodeError:
        sample = head.decode("latin-1")

    first_line = sample.splitlines()[0] if sample.splitlines() else ""
    if any(delimiter in first_line for delimiter in (",", ";", "\t")):
        return "text/csv"
    return "text/plain"


class CsvImportGuard(BaseGuard):
    """CSV import/export permissions plus the upload checks that gate an import.

    Owner: everything. Agency: everything inside its agency. Direct and end clients
    may only view imports they created themselves and cannot import or export.
    """

    def can_view(self, identity: Identity, csv_import: Any) -> bool:
        identity = self._identity(identity)
        resource = self._resource(csv_import)
        if identity.role in CLIENT_ROLES:
            return resource.user_id is not None and resource.user_id == identity.id
        return self._staff_access(identity, resource)

    def can_create(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_edit(self, identity: Identity, csv_import: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(csv_import))

    def can_delete(self, identity: Identity, csv_import: Any) -> bool:
        return self._staff_access(self._identity(identity), self._resource(csv_import))

    def can_export(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def can_cancel(self, identity: Identity, csv_import: Any) -> bool:
        resource = self._resource(csv_import)
        if not self.can_edit(identity, resource):
            return False
        return resource.status == "pending"

    def can_view_history(self, identity: Identity) -> bool:
        return self._identity(identity).role is not None

    def can_download_export(self, identity: Identity) -> bool:
        return self._is_staff(self._identity(identity))

    def filter_viewable_imports(self, identity: Identity, imports: Iterable[Any]) -> list[Any]:
        return [item for item in imports if self.can_view(identity, item)]

    def can_import_entity_type(self, identity: Identity, entity_type: str) -> bool:
        # Every entity type is importable once the general permission is held.
        return self.can_create(identity)

    def can_export_entity_type(self, identity: Identity, entity_type: str) -> bool:
        return self.can_export(identity)

    def validate_file_upload(self, upload: UploadedFile | None) -> FileValidationResult:
        """Run every upload check and report all failures together."""

        if upload is None or not upload.path or not Path(upload.path).is_file():
            return FileValidationResult(valid=False, errors=["No file was uploaded"])

        errors: list[str] = []
        settings = get_settings()

        if upload.size > settings.csv_max_upload_bytes:
            limit_mb = settings.csv_max_upload_bytes // (1024 * 1024)
            errors.append(f"File size exceeds {limit_mb}MB limit")

        extension = Path(upload.name or "").suffix.lstrip(".").lower()
        if extension not in ALLOWED_EXTENSIONS:
            errors.append("Only CSV files are allowed")

        readable = os.access(upload.path, os.R_OK)
        if readable:
            try:
                mime_type = detect_mime_type(upload.path)
            except OSError:
                readable = False
            else:
                if mime_type not in ALLOWED_MIME_TYPES:
                    errors.append("Invalid file type. Please upload a CSV file.")

        if not readable:
            errors.append("File is not readable")

        return FileValidationResult(valid=not errors, errors=errors)

    @staticmethod
    def get_safe_filename(original_filename: str) -> str:
        """Replace unsafe characters and add a unique suffix before the extension."""

        basename = os.path.basename((original_filename or "").replace("\\", "/"))
        cleaned = _UNSAFE_FILENAME_CHARS.sub("_", basename)
        stem, extension = os.path.splitext(cleaned)
        stem = stem.strip(".") or "upload"
        suffix = f"{int(time.time())}_{uuid.uuid4().hex[:8]}"
        return f"{stem}_{suffix}{extension}"

    @staticmethod
    def get_upload_directory() -> Path:
        upload_dir = Path(get_settings().csv_upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        return upload_dir

    def permission_summary(self, identity: Identity, csv_import: Any = None) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "can_create": self.can_create(identity),
            "can_export": self.can_export(identity),
            "can_view_history": self.can_view_history(identity),
            "can_download_export": self.can_download_export(identity),
        }
        if csv_import is not None:
            resource = self._resource(csv_import)
            summary.update(
                {
                    "can_view": self.can_view(identity, resource),
                    "can_edit": self.can_edit(identity, resource),
                    "can_delete": self.can_delete(identity, resource),
                    "can_cancel": self.can_cancel(identity, resource),
                }
            )
        return summary
