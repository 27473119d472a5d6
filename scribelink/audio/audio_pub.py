"""Audio publishers for pub/sub event publishing."""

import logging
from typing import Callable
from pubsub import pub
from ..models.segment import Segment

logger = logging.getLogger(__name__)

SEGMENT_TOPIC = "segment_events"
LEVEL_TOPIC = "capture_level"


class SegmentPublisher:
    """Publishes carved segments using pubsub.pub for pub/sub architecture."""

    def __init__(self, topic: str = SEGMENT_TOPIC):
        """Initialize segment publisher.

        Args:
            topic: Pub/sub topic name for segment creation events
        """
        self.topic = topic
        logger.info(f"SegmentPublisher initialized with topic: {topic}")

    def publish_segment(self, segment: Segment) -> None:
        """Publish a newly carved segment to the pub/sub topic.

        Args:
            segment: Segment that was just written to disk
        """
        pub.sendMessage(self.topic, segment=segment)
        logger.debug(f"Published segment: {segment.segment_id} (sequence {segment.sequence_number})")

    def get_callback(self) -> Callable[[Segment], None]:
        return self.publish_segment


class LevelPublisher:
    """Publishes capture amplitude levels (0.0 - 1.0)."""

    def __init__(self, topic: str = LEVEL_TOPIC):
        self.topic = topic

    def publish_level(self, level: float) -> None:
        pub.sendMessage(self.topic, level=level)
