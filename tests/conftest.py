import copy
import os
from pathlib import Path

import pytest
from PIL import Image

from wp_kraken.config import create_default_config
from wp_kraken.library import MediaLibrary
from wp_kraken.optimization import KrakenOptimization

API_KEY = "0123456789abcdef0123456789abcdef"
API_SECRET = "0123456789abcdef0123456789abcdef01234567"


def make_png(path: Path, size=(64, 64)):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.effect_noise(size, 64).save(path, 'PNG')
    return path


def png_bytes(tmp_path: Path) -> bytes:
    return make_png(tmp_path / "_optimized.png", size=(2, 2)).read_bytes()


class FakeLibrary(MediaLibrary):
    """In-memory media library"""

    def __init__(self, uploads_path):
        self.uploads_path = Path(uploads_path)
        self.posts = {}
        self.meta = {}
        self.closed = False

    def add_attachment(self, attachment_id, file=None, title=None, mime_type='image/png',
                       parent=0, sizes=None, status='inherit'):
        self.posts[attachment_id] = {
            'title': title if title is not None else f"Image {attachment_id}",
            'parent': parent,
            'mime_type': mime_type,
            'guid': f"https://example.com/wp-content/uploads/{file}",
            'status': status,
            'type': 'attachment',
        }
        if file:
            self.meta[(attachment_id, '_wp_attached_file')] = file
            self.meta[(attachment_id, '_wp_attachment_metadata')] = {
                'file': file,
                'sizes': sizes or {},
            }

    def add_post(self, post_id, title, parent=0):
        self.posts[post_id] = {'title': title, 'parent': parent, 'mime_type': '',
                               'guid': '', 'status': 'publish', 'type': 'post'}

    def get(self, attachment_id, key):
        return copy.deepcopy(self.meta.get((attachment_id, key)))

    def set(self, attachment_id, key, value):
        self.meta[(attachment_id, key)] = copy.deepcopy(value)
        return True

    def delete(self, attachment_id, key):
        return self.meta.pop((attachment_id, key), None) is not None

    def delete_all(self, key):
        matches = [meta_key for meta_key in self.meta if meta_key[1] == key]
        for meta_key in matches:
            del self.meta[meta_key]
        return bool(matches)

    def get_attached_file(self, attachment_id):
        relative = self.meta.get((attachment_id, '_wp_attached_file'))
        return str(self.uploads_path / relative) if relative else None

    def get_attachment_metadata(self, attachment_id):
        return self.get(attachment_id, '_wp_attachment_metadata') or {}

    def is_image(self, attachment_id):
        return self.posts[attachment_id]['mime_type'].startswith('image/')

    def get_title(self, attachment_id):
        return self.posts[attachment_id]['title']

    def get_parent(self, attachment_id):
        return self.posts[attachment_id]['parent']

    def get_attachment_url(self, attachment_id):
        return self.posts[attachment_id]['guid']

    def find_attachments(self, ids=(), mime_types=()):
        ids = list(ids)
        return sorted(
            (post_id for post_id, post in self.posts.items()
             if post['type'] == 'attachment'
             and (not ids or post_id in ids)
             and (not mime_types or post['mime_type'] in mime_types)),
            reverse=True
        )

    def find_missing_meta(self, keys, limit, offset=0):
        keys = list(keys)
        missing = [
            post_id for post_id in sorted(self.posts, reverse=True)
            if self.posts[post_id]['type'] == 'attachment'
            and self.posts[post_id]['status'] == 'inherit'
            and any((post_id, key) not in self.meta for key in keys)
        ]
        return missing[offset:offset + limit], len(missing)

    def close(self):
        self.closed = True


class FakeClient:
    """Stands in for KrakenClient; records every call."""

    def __init__(self, optimized: bytes, api_key=API_KEY, api_secret=API_SECRET):
        self.auth = {'api_key': api_key, 'api_secret': api_secret}
        self.optimized = optimized
        self.uploads = []
        self.downloads = []
        self.status_calls = 0
        self.failing = {}
        self.status = {'success': True, 'quota_total': 500 * 1024 ** 2,
                       'quota_used': 1024 ** 2, 'quota_remaining': 499 * 1024 ** 2}

    @property
    def calls(self):
        return len(self.uploads) + len(self.downloads) + self.status_calls

    def upload(self, params):
        self.uploads.append(params)
        path = params['file']
        if path in self.failing:
            return {'success': False, 'message': self.failing[path]}

        original_size = os.path.getsize(path)
        name = os.path.basename(path)
        return {
            'success': True,
            'file_name': name,
            'original_size': original_size,
            'kraked_size': len(self.optimized),
            'saved_bytes': original_size - len(self.optimized),
            'kraked_url': f"https://dl.kraken.io/api/{name}",
        }

    def user_status(self):
        self.status_calls += 1
        if isinstance(self.status, Exception):
            raise self.status
        return self.status

    def download(self, url):
        self.downloads.append(url)
        return self.optimized


@pytest.fixture
def uploads(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def library(uploads):
    return FakeLibrary(uploads)


@pytest.fixture
def client(tmp_path):
    return FakeClient(png_bytes(tmp_path))


@pytest.fixture
def options():
    return create_default_config()['optimization']


@pytest.fixture
def optimizer(library, client, options):
    return KrakenOptimization(library, client, options)


@pytest.fixture
def add_image(library, uploads):
    """Create an attachment with a real image file and optional sizes."""

    def _add(attachment_id, name=None, sizes=('thumbnail', 'medium'), **kwargs):
        name = name or f"image-{attachment_id}"
        file = f"2024/02/{name}.png"
        make_png(uploads / file)

        size_meta = {}
        for size in sizes:
            size_file = f"{name}-{size}.png"
            make_png(uploads / "2024/02" / size_file, size=(32, 32))
            size_meta[size] = {'file': size_file, 'width': 32, 'height': 32,
                               'mime-type': 'image/png'}

        library.add_attachment(attachment_id, file=file, sizes=size_meta, **kwargs)
        return uploads / file

    return _add
