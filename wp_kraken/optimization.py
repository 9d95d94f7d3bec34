"""
Kraken optimization of WordPress attachments.

``KrakenOptimization`` uploads an attachment's original file and its
generated sizes to Kraken, overwrites the local files with the optimized
results and records what it did in post meta:

* ``_kraken_size``: the API response for the original file, plus the backup
  path and a ``savings_percent`` string. Rewritten every time the original
  is optimized.
* ``_kraked_thumbs``: one entry per optimized size. Written once; while it
  exists thumbnails are never sent again.
"""

import hashlib
import io
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image

from wp_kraken.api import KrakenClient, KrakenError
from wp_kraken.config import PRESERVE_META_FIELDS
from wp_kraken.events import MediaEvents
from wp_kraken.library import MediaLibrary, page_count

KRAKEN_SIZE_META = '_kraken_size'
KRAKED_THUMBS_META = '_kraked_thumbs'

# formats Pillow can check before we overwrite the original
VERIFIABLE_SUFFIXES = {'.jpg', '.jpeg', '.png', '.gif'}


def format_percent(value: float) -> str:
    """Render a percentage rounded to 2 decimals: 25 -> '25%', 33.3333 -> '33.33%'."""
    text = f"{round(value, 2):.2f}".rstrip('0').rstrip('.')
    if text == '-0':
        text = '0'
    return f"{text}%"


def savings_percent(saved_bytes: int, original_size: int) -> str:
    if not original_size:
        return format_percent(0)
    return format_percent(saved_bytes / original_size * 100)


def backup_path_for(path: str) -> str:
    digest = hashlib.md5(path.encode('utf-8')).hexdigest()
    return f"{path}_kraken_{digest}"


def is_valid_image(content: bytes) -> bool:
    try:
        with Image.open(io.BytesIO(content)) as image:
            image.verify()
        return True
    except Exception:
        return False


class KrakenOptimization:
    """Optimizes attachments through the Kraken API and tracks the results."""

    def __init__(self, library: MediaLibrary, client: KrakenClient, options: Dict,
                 events: MediaEvents = None, logger: logging.Logger = None):
        self.library = library
        self.client = client
        self.options = options
        self.logger = logger or logging.getLogger(__name__)

        # failure reason of the most recent file, for reporting
        self.last_error = None
        # per-krake_attachment() totals
        self.totals = {'files': 0, 'original_size': 0, 'saved_bytes': 0}

        if events is not None and self.options.get('auto_optimize'):
            self.register(events)

    def register(self, events: MediaEvents):
        events.on_attachment_created(self.optimize_image_on_upload)
        events.on_thumbnails_generated(self.optimize_thumbnails_on_resize)
        self.logger.info("Optimize on upload enabled")

    def reset_image(self, attachment_id: int) -> bool:
        is_size_deleted = self.library.delete(attachment_id, KRAKEN_SIZE_META)
        is_thumbs_deleted = self.library.delete(attachment_id, KRAKED_THUMBS_META)

        self.logger.info(f"Reset ID {attachment_id}: size={is_size_deleted} thumbs={is_thumbs_deleted}")
        return is_size_deleted and is_thumbs_deleted

    def reset_all_images(self) -> bool:
        is_thumbs_deleted = self.library.delete_all(KRAKED_THUMBS_META)
        is_size_deleted = self.library.delete_all(KRAKEN_SIZE_META)

        return is_thumbs_deleted and is_size_deleted

    def is_optimized(self, attachment_id: int) -> bool:
        return bool(self.library.get(attachment_id, KRAKEN_SIZE_META)
                    or self.library.get(attachment_id, KRAKED_THUMBS_META))

    def format_optimization_response(self, response: Dict) -> Dict:
        response = dict(response)
        response['savings_percent'] = savings_percent(response.get('saved_bytes', 0),
                                                      response.get('original_size', 0))
        return response

    def _fail(self, message: str) -> bool:
        self.last_error = message
        self.logger.error(message)
        return False

    def replace_image(self, path: str, url: str) -> bool:
        """Overwrite ``path`` with the file at ``url``."""
        try:
            content = self.client.download(url)
        except KrakenError as e:
            return self._fail(str(e))

        if not content:
            return self._fail(f"Empty download from {url}")

        if Path(path).suffix.lower() in VERIFIABLE_SUFFIXES and not is_valid_image(content):
            return self._fail(f"Downloaded file from {url} is not a valid image")

        try:
            with open(path, 'wb') as f:
                f.write(content)
        except OSError as e:
            return self._fail(f"Failed to write {path}: {e}")

        return True

    def get_preserve_meta_options(self) -> List[str]:
        return [field for field in PRESERVE_META_FIELDS
                if self.options.get(f"preserve_meta_{field}")]

    def is_lossy(self, variant: Optional[str] = None) -> bool:
        if variant:
            return variant == 'lossy'
        return self.options.get('api_lossy') == 'lossy'

    def build_request_params(self, image_path: str, variant: Optional[str] = None) -> Dict:
        """API options for one file, from the configuration."""
        settings = self.options

        params = {
            'file': image_path,
            'wait': True,
            'lossy': self.is_lossy(variant),
            'origin': 'wp',
        }

        preserve_meta = self.get_preserve_meta_options()
        if preserve_meta:
            params['preserve_meta'] = preserve_meta

        if settings.get('chroma'):
            params['sampling_scheme'] = settings['chroma']

        if settings.get('auto_orient'):
            params['auto_orient'] = True

        width = int(settings.get('resize_width') or 0)
        height = int(settings.get('resize_height') or 0)

        if width and height:
            params['resize'] = {'strategy': 'auto', 'width': width, 'height': height}
        elif width:
            params['resize'] = {'strategy': 'landscape', 'width': width}
        elif height:
            params['resize'] = {'strategy': 'portrait', 'height': height}

        quality = int(settings.get('jpeg_quality') or 0)
        if quality > 0:
            params['quality'] = quality

        return params

    def get_optimized_image(self, image_path: str, variant: Optional[str] = None) -> Dict:
        response = self.client.upload(self.build_request_params(image_path, variant))
        response['type'] = variant or self.options.get('api_lossy')
        return response

    def optimize_single_image(self, path: str, variant: Optional[str] = None) -> Optional[Dict]:
        """Krake one file in place; returns the API response or None."""
        try:
            optimized_image = self.get_optimized_image(path, variant)
        except (KrakenError, OSError) as e:
            self._fail(f"Kraken upload failed for {path}: {e}")
            return None

        if not optimized_image.get('success'):
            reason = optimized_image.get('message') or optimized_image.get('error') or 'unknown error'
            self._fail(f"Kraken could not optimize {path}: {reason}")
            return None

        if not self.replace_image(path, optimized_image.get('kraked_url')):
            return None

        original_size = optimized_image.get('original_size', 0)
        saved_bytes = optimized_image.get(
            'saved_bytes', original_size - optimized_image.get('kraked_size', original_size))
        self.totals['files'] += 1
        self.totals['original_size'] += original_size
        self.totals['saved_bytes'] += saved_bytes

        self.logger.info(f"Kraked {path}: {original_size} -> {optimized_image.get('kraked_size')} bytes")
        return optimized_image

    def backup_image(self, path: str) -> Optional[str]:
        backup_path = backup_path_for(path)
        try:
            shutil.copy2(path, backup_path)
        except OSError as e:
            self.logger.warning(f"Could not back up {path}: {e}")
            return None
        return backup_path

    def optimize_main_image(self, attachment_id: int, variant: Optional[str] = None) -> bool:
        path = self.library.get_attached_file(attachment_id)

        if not path:
            return self._fail(f"Attachment {attachment_id} has no file")

        data = {}
        backup_path = self.backup_image(path)
        if backup_path:
            data['optimized_backup_file'] = backup_path

        optimized_image = self.optimize_single_image(path, variant)

        if optimized_image:
            data.update(self.format_optimization_response(optimized_image))
            self.library.set(attachment_id, KRAKEN_SIZE_META, data)
            return True

        return False

    def optimize_thumbnails(self, attachment_id: int, variant: Optional[str] = None) -> bool:
        if self.library.get(attachment_id, KRAKED_THUMBS_META):
            return True

        metadata = self.library.get_attachment_metadata(attachment_id)
        sizes = self.options.get('sizes_to_optimize') or []
        thumb_data = []

        # e.g. 2024/02, the directory the sizes live in
        upload_subdir = Path(metadata.get('file') or '').parent
        upload_full_path = Path(self.library.uploads_path) / upload_subdir

        for key, size in (metadata.get('sizes') or {}).items():
            if key not in sizes:
                continue

            path = str(upload_full_path / size['file'])
            optimized_image = self.optimize_single_image(path, variant)

            if optimized_image:
                thumb_data.append({
                    'thumb': key,
                    'file': size['file'],
                    'original_size': optimized_image.get('original_size'),
                    'kraked_size': optimized_image.get('kraked_size'),
                    'type': optimized_image.get('type'),
                })

        if thumb_data:
            self.library.set(attachment_id, KRAKED_THUMBS_META, thumb_data)
            return True

        return False

    def optimize_image(self, attachment_id: int, variant: Optional[str] = None) -> bool:
        optimized_main_image = self.optimize_main_image(attachment_id, variant)
        optimized_thumbnails = self.optimize_thumbnails(attachment_id, variant)

        return optimized_main_image or optimized_thumbnails

    def krake_attachment(self, attachment_id: int, variant: Optional[str] = None) -> Dict:
        """optimize_image() as a result mapping with byte totals."""
        self.last_error = None
        self.totals = {'files': 0, 'original_size': 0, 'saved_bytes': 0}

        if self.optimize_image(attachment_id, variant):
            return dict(self.totals, success=True)

        return {'error': self.last_error or f"Attachment {attachment_id} could not be kraked"}

    def optimize_image_on_upload(self, attachment_id: int):
        if not self.options.get('optimize_main_image'):
            return

        if not self.library.is_image(attachment_id):
            return

        self.optimize_main_image(attachment_id)

    def optimize_thumbnails_on_resize(self, metadata: Dict, attachment_id: int) -> Dict:
        self.optimize_thumbnails(attachment_id)
        return metadata

    def get_unoptimized_images(self, page: int = 1, page_size: int = 30) -> Dict:
        ids, total = self.library.find_missing_meta(
            [KRAKEN_SIZE_META, KRAKED_THUMBS_META],
            limit=page_size,
            offset=(max(page, 1) - 1) * page_size
        )
        return {
            'ids': ids,
            'pages': page_count(total, page_size),
            'total': total,
        }
