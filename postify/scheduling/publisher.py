"""Publish boundary: sends one post over a resolved tenant connection."""

import logging
from abc import ABC, abstractmethod

from postify.connections.transport import Connection, SentMessage
from postify.models import Channel, Post

logger = logging.getLogger(__name__)


class PublishAction(ABC):
    """Performs the side-effecting send of a post."""

    @abstractmethod
    async def publish(self, connection: Connection, channel: Channel, post: Post) -> SentMessage:
        """Deliver *post* to *channel*.

        Raises:
            TransportError: If the endpoint rejected the send.
        """
        pass


class ConnectionPublisher(PublishAction):
    """Sends posts with the connection's own ``publish`` call."""

    async def publish(self, connection: Connection, channel: Channel, post: Post) -> SentMessage:
        logger.info(
            "[SCHEDULER] Publishing post %s to chat %s (type=%s, text_len=%d)",
            post.id,
            channel.chat_id,
            post.media_type.value,
            len(post.text),
        )
        sent = await connection.publish(
            chat_id=channel.chat_id,
            text=post.text,
            media_type=post.media_type,
            media_file_id=post.media_file_id,
        )
        logger.info(
            "[SCHEDULER] Post %s published (message_id=%s)", post.id, sent.message_id
        )
        return sent


__all__ = ["PublishAction", "ConnectionPublisher"]
