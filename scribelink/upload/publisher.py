"""Upload progress publisher module for pub/sub event publishing."""

import logging
from typing import Callable
from pubsub import pub
from ..models.events import UploadProgressEvent

logger = logging.getLogger(__name__)

PROGRESS_TOPIC = "upload_progress"


class UploadProgressPublisher:
    """Publishes upload state transitions using pubsub.pub for pub/sub architecture."""

    def __init__(self, topic: str = PROGRESS_TOPIC):
        """Initialize upload progress publisher.

        Args:
            topic: Pub/sub topic name for upload progress events
        """
        self.topic = topic
        logger.info(f"UploadProgressPublisher initialized with topic: {topic}")

    def publish_progress(self, event: UploadProgressEvent) -> None:
        """Publish an upload progress event to the pub/sub topic.

        Args:
            event: UploadProgressEvent to publish
        """
        pub.sendMessage(self.topic, event=event)
        logger.debug(f"Published upload progress: {event.segment_id} -> {event.status.value} "
                     f"(queue depth {event.queue_depth})")

    def get_callback(self) -> Callable[[UploadProgressEvent], None]:
        """Get callback function for the upload pipeline to use.

        Returns:
            Callback function that publishes progress events
        """
        return self.publish_progress
