"""
Bulk kraking of the media library.

A run is a fixed sequence of stages::

    init -> validate-credentials -> enumerate-targets -> process-targets -> report

Any stage may raise ``StopRun`` to end the run early with a message and an
exit code; ``BatchRunner.run()`` turns that into output and returns the code.
"""

import logging
import os
import re
import sys
from typing import Dict, Iterable, List, Optional

from wp_kraken.api import KrakenConnectionError, KrakenError
from wp_kraken.config import valid_credentials
from wp_kraken.optimization import KrakenOptimization, format_percent

MIME_TYPES = {
    'gif': 'image/gif',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'svg': 'image/svg+xml',
}

COMPARATORS = ('none', 'md4', 'timestamp')

STAT_KEYS = ('attachments', 'compared', 'changed', 'uploaded',
             'kraked', 'failed', 'samesize', 'size', 'saved')

DEFAULTS = {
    'lossy': False,
    'compare': 'md4',
    'types': 'gif, jpeg, png, svg',
}

SIZE_UNITS = (
    ('TB', 1024 ** 4),
    ('GB', 1024 ** 3),
    ('MB', 1024 ** 2),
    ('KB', 1024),
    ('B', 1),
)


class StopRun(Exception):
    """Ends a batch run; ``level`` is one of error, warning, success."""

    def __init__(self, message: str, level: str = 'error', exit_code: int = 1):
        super().__init__(message)
        self.message = message
        self.level = level
        self.exit_code = exit_code


def parse_types(value: str, as_mime: bool = False) -> Optional[List[str]]:
    """Split a comma/space separated type list.

    ``jpg`` is accepted as ``jpeg``. Returns None when the list is empty or
    holds an unknown type.
    """
    types = []
    for item in re.split(r'[\s,]+', (value or '').strip()):
        if not item:
            continue
        if item == 'jpg':
            item = 'jpeg'
        if item not in MIME_TYPES:
            return None
        types.append(MIME_TYPES[item] if as_mime else item)

    return types or None


def size_format(num_bytes: float, decimals: int = 0) -> str:
    """Human readable byte count, 1024 based."""
    if not num_bytes:
        return '0 B'
    for unit, magnitude in SIZE_UNITS:
        if num_bytes >= magnitude:
            return f"{num_bytes / magnitude:,.{decimals}f} {unit}"
    return f"{num_bytes} B"


def plural(count: int, singular: str, many: str) -> str:
    return singular if count == 1 else many


class BatchRunner:
    """Krakes every matching attachment that has not been kraked yet."""

    def __init__(self, optimizer: KrakenOptimization, options: Dict = None,
                 ids: Iterable[int] = (), logger: logging.Logger = None,
                 stdout=None, stderr=None):
        self.optimizer = optimizer
        self.library = optimizer.library
        self.client = optimizer.client
        self.options = dict(DEFAULTS, **(options or {}))
        self.ids = [int(attachment_id) for attachment_id in ids]
        self.logger = logger or logging.getLogger(__name__)
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

        self.dry_run = bool(self.options.get('dry_run'))
        self.limit = -1
        self.compare = self.options['compare']
        self.mime_types: List[str] = []
        self.targets: List[int] = []
        self.stats = {key: 0 for key in STAT_KEYS}

    def line(self, message: str):
        print(message, file=self.stdout)

    def warning(self, message: str):
        # already on the console
        self.logger.debug(f"Warning: {message}")
        print(f"Warning: {message}", file=self.stderr)

    def stages(self):
        return (
            ('init', self.init_config),
            ('validate-credentials', self.validate_credentials),
            ('enumerate-targets', self.enumerate_targets),
            ('process-targets', self.process_targets),
            ('report', self.show_report),
        )

    def run(self) -> int:
        """Run all stages; returns the exit code."""
        mode = 'DRY RUN' if self.dry_run else 'LIVE'
        self.logger.info(f"Batch run started ({mode})")

        for name, stage in self.stages():
            self.logger.debug(f"Stage: {name}")
            try:
                stage()
            except StopRun as stop:
                self.logger.debug(f"Batch run stopped during {name}: {stop.message}")
                if stop.level == 'success':
                    print(f"Success: {stop.message}", file=self.stdout)
                elif stop.level == 'warning':
                    self.warning(stop.message)
                else:
                    print(f"Error: {stop.message}", file=self.stderr)
                return stop.exit_code

        self.logger.info(f"Batch run finished: {self.stats}")
        return 0

    def init_config(self):
        limit = self.options.get('limit')
        if limit is not None:
            try:
                limit = int(str(limit).strip())
            except ValueError:
                raise StopRun('Invalid `limit` flag value.')
            if limit != -1 and limit <= 0:
                raise StopRun('Invalid `limit` flag value.')
            self.limit = limit

        if self.options.get('all'):
            # krake all images
            self.compare = 'none'
        elif self.compare not in COMPARATORS:
            raise StopRun(f"Invalid `compare` flag value. Use one of: {', '.join(COMPARATORS)}")

        mime_types = parse_types(self.options['types'], as_mime=True)
        if mime_types is None:
            raise StopRun(f"Invalid `types` flag value: {self.options['types']}. "
                          f"Use any of: {', '.join(MIME_TYPES)}")
        self.mime_types = mime_types

    def validate_credentials(self):
        api_key = self.client.auth.get('api_key')
        api_secret = self.client.auth.get('api_secret')

        if not api_key or not api_secret:
            raise StopRun('Please specify your Kraken API credentials.')

        if not valid_credentials(api_key, api_secret):
            raise StopRun('Please specify valid Kraken API credentials.')

        if self.dry_run:
            return

        try:
            response = self.client.user_status()
        except KrakenConnectionError as e:
            self.warning(f"Kraken API credentials validation failed. (Connection error: {e})")
            return
        except KrakenError as e:
            self.warning(f"Kraken API credentials validation failed. (Error: {e})")
            return

        if not response.get('success'):
            self.warning(f"Kraken API credentials validation failed. (Error: {response.get('error')})")
            return

        self.line('Monthly Quota: {}, Current Usage: {}, Remaining: {}'.format(
            size_format(response.get('quota_total', 0)),
            size_format(response.get('quota_used', 0), 2),
            size_format(response.get('quota_remaining', 0), 2)
        ))

        if self.options.get('api_test'):
            raise StopRun('Kraken API test successful.', level='success', exit_code=0)

    def enumerate_targets(self):
        self.targets = self.library.find_attachments(self.ids, self.mime_types)

        if not self.targets:
            raise StopRun('No matching attachments found.', level='warning', exit_code=0)

        count = len(self.targets)
        if self.limit == -1:
            scope = 'Kraking all images.'
        else:
            scope = f"Kraking a maximum of {self.limit} {plural(self.limit, 'image', 'images')}."
        self.line(f"Found {count} {plural(count, 'attachment', 'attachments')} to check. {scope}")
        self.line('Skipping already kraked images.')

    def process_targets(self):
        for attachment_id in self.targets:
            if not self.check_attachment(attachment_id):
                break  # limit has been reached

    def attachment_title(self, attachment_id: int) -> str:
        """Titles of the attachment and its ancestors, outermost first."""
        titles = [self.library.get_title(attachment_id)]
        seen = {attachment_id}
        post_id = self.library.get_parent(attachment_id)

        while post_id and post_id not in seen:
            seen.add(post_id)
            titles.append(self.library.get_title(post_id))
            post_id = self.library.get_parent(post_id)

        return ' - '.join(reversed(titles))

    def file_size(self, attachment_id: int) -> str:
        path = self.library.get_attached_file(attachment_id)
        if not path or not os.path.exists(path):
            return 'unknown'
        return size_format(os.path.getsize(path), 2)

    def check_attachment(self, attachment_id: int) -> bool:
        """Process one attachment; returns False once the limit is reached."""
        if self.optimizer.is_optimized(attachment_id):
            self.stats['samesize'] += 1
            self.line(f"Skipping {self.library.get_title(attachment_id)} because it has already been compressed.")
            return True

        title = self.attachment_title(attachment_id)
        self.stats['attachments'] += 1

        if self.dry_run:
            self.line(f"Dry run: {title}, file size: {self.file_size(attachment_id)}, "
                      f"url: {self.library.get_attachment_url(attachment_id)}")
        else:
            self.krake(attachment_id, title)

        if self.limit != -1 and self.stats['attachments'] >= self.limit:
            return False

        return True

    def krake(self, attachment_id: int, title: str):
        variant = 'lossy' if self.options.get('lossy') else None

        try:
            result = self.optimizer.krake_attachment(attachment_id, variant)
        except Exception as e:
            self.logger.debug(f"Failed to krake attachment {attachment_id}", exc_info=True)
            self.stats['failed'] += 1
            self.warning(f"{title}: {e}")
            return

        if isinstance(result, dict) and result.get('error'):
            self.stats['failed'] += 1
            self.warning(result['error'])
        elif isinstance(result, dict) and result.get('success'):
            self.stats['kraked'] += 1
            self.stats['uploaded'] += result.get('files', 0)
            self.stats['size'] += result.get('original_size', 0)
            self.stats['saved'] += result.get('saved_bytes', 0)
            self.line(f"Processed {title}")
        else:
            self.stats['failed'] += 1
            self.warning('Unexpected response')
            self.logger.debug(f"Unexpected krake_attachment() result: {result!r}")

    def show_report(self):
        stats = self.stats

        self.line(f"{stats['attachments']} {plural(stats['attachments'], 'attachment', 'attachments')} checked.")
        self.line(f"{stats['kraked']} {plural(stats['kraked'], 'image', 'images')} successfully kraked.")
        self.line(f"{stats['samesize']} {plural(stats['samesize'], 'image', 'images')} already fully optimized.")
        self.line(f"{stats['failed']} {plural(stats['failed'], 'image', 'images')} failed to kraken.")

        if stats['size'] > 0 and stats['saved'] > 0:
            self.line('{} compressed to {} ({} saved). Savings: {}'.format(
                size_format(stats['size'], 2),
                size_format(stats['size'] - stats['saved'], 2),
                size_format(stats['saved'], 2),
                format_percent(abs(stats['saved'] / stats['size'] * 100))
            ))
