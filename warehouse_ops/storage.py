"""Completion photo bucket.

Every file in an upload is validated before anything is written, so a batch
with one bad file stores nothing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_ops.config import settings
from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import BackendError, NotFoundError, ValidationError
from warehouse_ops.models import Truck, TruckPhoto

logger = logging.getLogger(__name__)

ALLOWED_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class PhotoUpload:
    filename: str
    content_type: str
    content: bytes


def validate_photo(upload: PhotoUpload, max_bytes: Optional[int] = None) -> None:
    limit = settings.photo_max_bytes if max_bytes is None else max_bytes
    if upload.content_type not in ALLOWED_TYPES:
        raise ValidationError(
            f"{upload.filename}: only JPEG, PNG and WebP images are allowed"
        )
    if len(upload.content) > limit:
        raise ValidationError(f"{upload.filename}: file is larger than {limit / (1024 * 1024):g} MB")
    if not upload.content:
        raise ValidationError(f"{upload.filename}: file is empty")


def validate_batch(uploads: Sequence[PhotoUpload], max_files: Optional[int] = None) -> None:
    limit = settings.photo_max_files if max_files is None else max_files
    if not uploads:
        raise ValidationError("At least one photo is required")
    if len(uploads) > limit:
        raise ValidationError(f"Maximum {limit} files allowed")
    for upload in uploads:
        validate_photo(upload)


class PhotoBucket:
    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or settings.photo_bucket_dir)

    def path_for(self, truck_id: int, content_type: str) -> Path:
        return self.root / str(truck_id) / f"{uuid.uuid4().hex}.{ALLOWED_TYPES[content_type]}"

    def store(
        self, db: Session, truck_id: int, uploads: Sequence[PhotoUpload], user_id: str
    ) -> list[TruckPhoto]:
        if db.get(Truck, truck_id) is None:
            raise NotFoundError("truck not found")
        validate_batch(uploads)

        written: list[Path] = []
        photos: list[TruckPhoto] = []
        stamp = datetime.now(timezone.utc)
        try:
            for upload in uploads:
                target = self.path_for(truck_id, upload.content_type)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(upload.content)
                written.append(target)
                photos.append(
                    TruckPhoto(
                        truck_id=truck_id,
                        file_path=str(target.relative_to(self.root)),
                        file_name=upload.filename,
                        file_size_kb=max(1, round(len(upload.content) / 1024)),
                        content_type=upload.content_type,
                        uploaded_by_user_id=user_id,
                        created_at=stamp,
                    )
                )
        except OSError as exc:
            self._discard(written)
            logger.error("Writing photos for truck %s failed: %s", truck_id, exc)
            raise BackendError("Photo upload failed") from exc

        db.add_all(photos)
        try:
            commit_or_raise(db, "Recording photos")
        except BackendError:
            self._discard(written)
            raise
        for photo in photos:
            db.refresh(photo)
        logger.info("Stored %d photos for truck %s", len(photos), truck_id)
        return photos

    def _discard(self, paths: Sequence[Path]) -> None:
        for path in paths:
            path.unlink(missing_ok=True)

    def list_photos(self, db: Session, truck_id: int) -> list[TruckPhoto]:
        return list(
            db.scalars(
                select(TruckPhoto)
                .where(TruckPhoto.truck_id == truck_id)
                .order_by(TruckPhoto.created_at, TruckPhoto.id)
            ).all()
        )


def photo_to_dict(photo: TruckPhoto) -> dict:
    return {
        "photo_id": photo.id,
        "truck_id": photo.truck_id,
        "file_path": photo.file_path,
        "file_name": photo.file_name,
        "file_size_kb": photo.file_size_kb,
        "content_type": photo.content_type,
        "uploaded_by_user_id": photo.uploaded_by_user_id,
    }
