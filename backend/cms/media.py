from __future__ import annotations

import logging
import mimetypes
import os
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Sum

from common.exceptions import BusinessRuleError
from common.trees import check_parent_assignment

from .models import Media, MediaFolder
from .utils import unique_slug

logger = logging.getLogger(__name__)

MEDIA_BULK_ACTIONS = ("move", "tag", "delete")
KIND_PREFIXES = {"image": "image/", "video": "video/", "audio": "audio/"}


def max_upload_bytes() -> int:
    return int(getattr(settings, "CMS_MEDIA_MAX_UPLOAD_MB", 10)) * 1024 * 1024


def detect_mime(upload) -> str:
    content_type = getattr(upload, "content_type", None)
    if content_type and content_type != "application/octet-stream":
        return content_type.split(";")[0].strip().lower()
    guessed, _ = mimetypes.guess_type(upload.name)
    return guessed or "application/octet-stream"


def validate_upload(upload) -> str:
    """Return the file's mime type; raise when it is too big or not allowed."""
    limit = max_upload_bytes()
    if upload.size > limit:
        raise BusinessRuleError(
            f"File '{upload.name}' exceeds the {limit // (1024 * 1024)} MB upload limit.", field="files")
    mime = detect_mime(upload)
    allowed = getattr(settings, "CMS_MEDIA_ALLOWED_TYPES", None)
    if allowed and mime not in allowed:
        raise BusinessRuleError(f"File type '{mime}' is not allowed.", field="files")
    return mime


def upload_media(tenant, files, *, folder: Optional[MediaFolder] = None, user=None,
                 alt_text: str = "", caption: str = "", tags: Optional[List[str]] = None) -> List[Media]:
    """All files are checked before any is stored."""
    if not files:
        raise BusinessRuleError("Select at least one file.", field="files")
    mimes = [validate_upload(f) for f in files]
    created = []
    with transaction.atomic():
        for upload, mime in zip(files, mimes):
            media = Media(
                tenant=tenant, folder=folder, uploaded_by=user, mime_type=mime, size=upload.size,
                original_name=upload.name, name=os.path.splitext(os.path.basename(upload.name))[0],
                alt_text=alt_text, caption=caption, tags=list(tags or []),
            )
            media.file.save(upload.name, upload, save=False)
            media.save()
            created.append(media)
    logger.info("uploaded %d media files for %s", len(created), tenant.slug)
    return created


def delete_media(media: Media) -> None:
    if media.file:
        media.file.delete(save=False)
    media.delete()


# ---- folders ----------------------------------------------------------------

def _check_folder_parent(folder: MediaFolder, parent: Optional[MediaFolder]) -> None:
    if parent is None:
        return
    if parent.tenant_id != folder.tenant_id:
        raise BusinessRuleError("Parent folder belongs to another tenant.", field="parent")
    check_parent_assignment(folder, parent.pk, label="folder")


def create_folder(tenant, data: Dict[str, Any]) -> MediaFolder:
    parent = data.get("parent")
    folder = MediaFolder(tenant=tenant, name=data["name"], description=data.get("description") or "", parent=parent)
    _check_folder_parent(folder, parent)
    folder.slug = unique_slug(MediaFolder, tenant, data.get("slug") or data["name"], parent=parent)
    folder.save()
    return folder


def update_folder(folder: MediaFolder, data: Dict[str, Any]) -> MediaFolder:
    if "parent" in data and data["parent"] != folder.parent:
        _check_folder_parent(folder, data["parent"])
        folder.parent = data["parent"]
    for key in ("name", "description"):
        if key in data:
            setattr(folder, key, data[key])
    if "name" in data or "parent" in data:
        folder.slug = unique_slug(MediaFolder, folder.tenant, data.get("slug") or folder.name,
                                  exclude_pk=folder.pk, parent=folder.parent)
    folder.save()
    return folder


def _subtree_ids(folder: MediaFolder) -> List[Any]:
    ids, frontier = [folder.pk], [folder.pk]
    while frontier:
        frontier = list(MediaFolder.objects.filter(parent_id__in=frontier).exclude(pk__in=ids)
                        .values_list("pk", flat=True))
        ids.extend(frontier)
    return ids


def delete_folder(folder: MediaFolder, *, delete_contents: bool = False) -> Dict[str, int]:
    """
    With `delete_contents` the folder, its subfolders and every file in them
    go. Otherwise subfolders and files move up to the folder's parent.
    """
    with transaction.atomic():
        if delete_contents:
            ids = _subtree_ids(folder)
            files = list(Media.objects.filter(folder_id__in=ids))
            for media in files:
                delete_media(media)
            MediaFolder.objects.filter(pk__in=ids).delete()
            return {"folders": len(ids), "media_deleted": len(files), "moved": 0}
        moved = Media.objects.filter(folder=folder).update(folder_id=folder.parent_id)
        moved += MediaFolder.objects.filter(parent=folder).update(parent_id=folder.parent_id)
        folder.delete()
        return {"folders": 1, "media_deleted": 0, "moved": moved}


# ---- bulk / stats -----------------------------------------------------------

def bulk_media(items: List[Media], action: str, *, folder: Optional[MediaFolder] = None,
               tags: Optional[List[str]] = None) -> int:
    if action not in MEDIA_BULK_ACTIONS:
        raise BusinessRuleError("Invalid bulk action.", field="action")
    if action == "move":
        return Media.objects.filter(pk__in=[m.pk for m in items]).update(folder=folder)
    if action == "tag":
        clean = [t.strip() for t in (tags or []) if isinstance(t, str) and t.strip()]
        if not clean:
            raise BusinessRuleError("Provide at least one tag.", field="tags")
        for media in items:
            media.tags = list(dict.fromkeys(list(media.tags or []) + clean))
            media.save(update_fields=["tags", "updated_at"])
        return len(items)
    for media in items:
        delete_media(media)
    return len(items)


def media_kind(mime: str) -> str:
    for kind, prefix in KIND_PREFIXES.items():
        if mime.startswith(prefix):
            return kind
    return "document"


def media_stats(tenant) -> Dict[str, Any]:
    qs = Media.objects.filter(tenant=tenant)
    by_kind: Dict[str, int] = {}
    for mime, n in qs.values_list("mime_type").annotate(n=Count("id")).order_by("mime_type"):
        kind = media_kind(mime)
        by_kind[kind] = by_kind.get(kind, 0) + n
    return {
        "total": qs.count(),
        "total_size": qs.aggregate(s=Sum("size"))["s"] or 0,
        "by_kind": by_kind,
        "folders": MediaFolder.objects.filter(tenant=tenant).count(),
        "unfiled": qs.filter(folder__isnull=True).count(),
    }
