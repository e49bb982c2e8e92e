from __future__ import annotations
"""Storage of media uploaded with order transitions.

Files land in UPLOAD_FOLDER under a unique name; the engine only ever sees
the public paths (MEDIA_URL_PREFIX/<name>).
"""
import os
import uuid
from typing import Dict, Iterable, List

from flask import abort, current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename


def _stored_name(upload: FileStorage) -> str:
    original = secure_filename(upload.filename or '') or 'upload'
    return f'{uuid.uuid4().hex}-{original}'


def save_uploads(files: Iterable[FileStorage]) -> List[str]:
    """Persist uploads and return their public paths. More than MAX_MEDIA_FILES answers 400."""
    uploads = [f for f in files if f and f.filename]
    if len(uploads) > current_app.config['MAX_MEDIA_FILES']:
        abort(400, description=f"At most {current_app.config['MAX_MEDIA_FILES']} files per request")
    folder = current_app.config['UPLOAD_FOLDER']
    prefix = current_app.config['MEDIA_URL_PREFIX'].rstrip('/')
    os.makedirs(folder, exist_ok=True)
    paths = []
    for upload in uploads:
        name = _stored_name(upload)
        upload.save(os.path.join(folder, name))
        paths.append(f'{prefix}/{name}')
    return paths


def save_request_media(files, field_names=('media', 'files')) -> List[str]:
    """Save every file sent under the given multipart field names."""
    collected: List[FileStorage] = []
    for field_name in field_names:
        collected.extend(files.getlist(field_name))
    return save_uploads(collected)


def save_grouped_media(files) -> Dict[str, List[str]]:
    """Save files keyed by field name (``media_<itemId>``); returns field -> paths."""
    keys = [k for k in files.keys() if k.startswith(('media_', 'media-'))]
    total = sum(len(files.getlist(k)) for k in keys)
    if total > current_app.config['MAX_MEDIA_FILES']:
        abort(400, description=f"At most {current_app.config['MAX_MEDIA_FILES']} files per request")
    return {field_name: save_uploads(files.getlist(field_name)) for field_name in keys}


def discard_uploads(paths: Iterable[str]):
    """Remove files saved for a request whose operation was rejected."""
    folder = current_app.config['UPLOAD_FOLDER']
    for path in paths:
        target = os.path.join(folder, os.path.basename(path))
        if os.path.exists(target):
            os.remove(target)

__all__ = ['save_uploads', 'save_request_media', 'save_grouped_media', 'discard_uploads']
