"""
Media upload events.

Stands in for the WordPress ``add_attachment`` action and the
``wp_generate_attachment_metadata`` filter: whoever creates attachments
dispatches through ``MediaEvents`` and the optimizer subscribes to it.
"""

import logging
from typing import Callable, Dict, List

AttachmentCallback = Callable[[int], None]
ThumbnailsCallback = Callable[[Dict, int], Dict]


class MediaEvents:

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)
        self._attachment_created: List[AttachmentCallback] = []
        self._thumbnails_generated: List[ThumbnailsCallback] = []

    def on_attachment_created(self, callback: AttachmentCallback):
        self._attachment_created.append(callback)

    def on_thumbnails_generated(self, callback: ThumbnailsCallback):
        self._thumbnails_generated.append(callback)

    def attachment_created(self, attachment_id: int):
        self.logger.debug(f"attachment_created({attachment_id}): {len(self._attachment_created)} handlers")
        for callback in self._attachment_created:
            callback(attachment_id)

    def thumbnails_generated(self, metadata: Dict, attachment_id: int) -> Dict:
        """Run the handlers as a filter chain and return the final metadata."""
        self.logger.debug(f"thumbnails_generated({attachment_id}): {len(self._thumbnails_generated)} handlers")
        for callback in self._thumbnails_generated:
            metadata = callback(metadata, attachment_id)
        return metadata
