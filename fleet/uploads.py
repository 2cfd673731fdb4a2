"""
Uploaded plugin/theme archives.

Archives are classified, de-duplicated by (slug, version), written under
upload_dir/<kind>s/ and recorded with the latest-version flag maintained
by the database. Progress goes to the "upload" event channel.
"""

import io
import logging
import secrets
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from fleet.broadcast import CHANNEL_UPLOAD, EVENT_COMPLETE, EVENT_ERROR, EVENT_LOG, EVENT_PROGRESS
from fleet.errors import UploadError
from fleet.models import PackageKind, UploadedPackage
from fleet.package_detect import detect_package, to_safe_slug

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 100 * 1024 * 1024


@dataclass
class UploadFile:
    filename: str
    data: bytes


def is_zip_file(filename: str, data: bytes) -> bool:
    """.zip name plus a local-file, empty-archive or spanned ZIP signature."""
    if not filename.lower().endswith('.zip'):
        return False
    return (
        len(data) >= 4
        and data[0] == 0x50 and data[1] == 0x4B
        and data[2] in (0x03, 0x05, 0x07)
        and data[3] in (0x04, 0x06, 0x08)
    )


class PackageUploads:

    def __init__(self, db, broadcaster, upload_dir: Path, max_bytes: int = MAX_UPLOAD_BYTES):
        self.db = db
        self.broadcaster = broadcaster
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes

    def process(self, files: List[UploadFile]) -> Dict[str, Any]:
        """
        Store a batch of uploaded archives.

        Each file ends up in exactly one of success/failed/skipped. Ends with
        one "complete" event.

        Returns:
            Dict with upload_id, counters and per-file results
        """
        if not files:
            raise UploadError("No files uploaded")

        upload_id = uuid.uuid4().hex
        progress = {'total': len(files), 'current': 0, 'success': 0, 'failed': 0, 'skipped': 0}
        results = []

        def emit(type: str, message: str, **data):
            self.broadcaster.emit(CHANNEL_UPLOAD, type, message, upload_id=upload_id, data={**progress, **data})

        emit(EVENT_LOG, f"Starting upload for {len(files)} file(s)...")
        emit(EVENT_PROGRESS, "Upload started")

        for index, upload in enumerate(files):
            filename = upload.filename or f"file-{index + 1}.zip"
            try:
                outcome, message, stored = self._store(upload.data, filename)
                progress[outcome] += 1
                results.append({
                    'file_name': filename,
                    'result': outcome,
                    'message': message,
                    'package': stored.to_dict() if stored else None,
                })
                emit(EVENT_ERROR if outcome == 'failed' else EVENT_LOG, f"{filename}: {message}",
                     file_name=filename, result=outcome)
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Failed to store upload {filename}: {e}")
                progress['failed'] += 1
                results.append({'file_name': filename, 'result': 'failed', 'message': str(e), 'package': None})
                emit(EVENT_ERROR, f"{filename}: {e}")
            finally:
                progress['current'] += 1
                emit(EVENT_PROGRESS, f"Processed {progress['current']}/{progress['total']}: {filename}", file_name=filename)

        emit(
            EVENT_COMPLETE,
            f"Upload completed: {progress['success']} successful, {progress['failed']} failed, "
            f"{progress['skipped']} skipped",
            done=True
        )
        logger.info(f"Upload {upload_id}: {progress['success']} stored, {progress['failed']} failed, {progress['skipped']} skipped")

        return {'upload_id': upload_id, **progress, 'results': results}

    def _store(self, data: bytes, filename: str):
        if len(data) > self.max_bytes:
            return 'failed', f"exceeds {self.max_bytes // (1024 * 1024)}MB limit", None

        if not is_zip_file(filename, data):
            return 'failed', "not a ZIP archive", None

        detected = detect_package(io.BytesIO(data))
        if not detected.is_known:
            return 'failed', "not a valid WordPress plugin/theme ZIP", None

        kind = detected.kind
        if self.db.find_uploaded(kind, detected.slug, detected.version):
            return 'skipped', f"skipped duplicate {kind.value} ({detected.slug} {detected.version})", None

        archive_path = self._persist(data, kind, detected.slug)
        try:
            stored = self.db.record_upload(
                kind,
                slug=detected.slug,
                title=detected.title,
                version=detected.version,
                archive_path=str(archive_path),
                original_filename=f"{detected.slug}.zip",
            )
        except sqlite3.Error:
            archive_path.unlink(missing_ok=True)
            raise

        if stored is None:
            # Same version stored concurrently
            archive_path.unlink(missing_ok=True)
            return 'skipped', f"skipped duplicate {kind.value} ({detected.slug} {detected.version})", None
        return 'success', f"{kind.value} uploaded ({detected.slug} {detected.version})", stored

    def _persist(self, data: bytes, kind: PackageKind, slug: str) -> Path:
        directory = self.upload_dir / f"{kind.value}s"
        directory.mkdir(parents=True, exist_ok=True)

        base = to_safe_slug(slug) or f"{kind.value}s"
        path = directory / f"{base}-{int(time.time() * 1000)}-{secrets.token_hex(3)}.zip"
        path.write_bytes(data)
        return path

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def list_versions(self, kind: PackageKind, slug: str) -> List[UploadedPackage]:
        return self.db.list_uploaded(kind, slug)

    def delete_versions(self, kind: PackageKind, slug: str, versions: Optional[Iterable[str]] = None) -> List[UploadedPackage]:
        """Delete versions (all when None) and their archive files."""
        deleted = self.db.delete_uploaded_versions(kind, slug, versions)
        for upload in deleted:
            try:
                Path(upload.archive_path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove archive {upload.archive_path}: {e}")
        return deleted
