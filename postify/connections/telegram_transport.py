"""
Telegram transport built on python-telegram-bot (>=21.0).

Each tenant connection is its own ``telegram.ext.Application`` polling with
the tenant's bot token. Opening is confirmed before returning:

1. ``initialize()`` calls ``getMe``; a rejected token raises ``InvalidToken``.
2. A zero-timeout ``getUpdates`` probe surfaces ``Conflict`` when another
   process already polls with the same token.
3. ``start()`` plus ``updater.start_polling()``.

Library errors are classified once, in :func:`classify_telegram_error`.
"""

import asyncio
import logging
from typing import Any, Optional, Set

from telegram import Update
from telegram.error import Conflict, InvalidToken, TelegramError
from telegram.ext import Application, ApplicationHandlerStop, ContextTypes, TypeHandler

from postify.connections.transport import (
    Connection,
    ErrorHandler,
    FailureKind,
    SentMessage,
    Transport,
    TransportError,
    UpdateHandler,
)
from postify.models import MediaType
from postify.utils import ensure_utc

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================


def classify_telegram_error(exc: BaseException) -> FailureKind:
    """Map a library exception to a :class:`FailureKind`."""
    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, Conflict):
        return FailureKind.CONFLICT
    if isinstance(exc, InvalidToken):
        return FailureKind.AUTH_REVOKED
    return FailureKind.UNKNOWN


def to_transport_error(exc: BaseException) -> TransportError:
    """Wrap *exc* into a classified :class:`TransportError`."""
    if isinstance(exc, TransportError):
        return exc
    return TransportError(classify_telegram_error(exc), str(exc) or type(exc).__name__, cause=exc)


def is_from_owner(update: Any, owner_id: int) -> bool:
    """Whether an inbound update was sent by the bot's owner."""
    user = getattr(update, "effective_user", None)
    return user is not None and user.id == owner_id


# =============================================================================
# CONNECTION
# =============================================================================


class TelegramConnection(Connection):
    """A running ``Application`` for one tenant bot.

    Args:
        app: The built (not yet started) application.
        owner_id: Tenant whose updates are delivered to the handler.
        on_error: Callback for runtime errors after the connection is live.
    """

    def __init__(
        self,
        app: Application,
        owner_id: int,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self._app = app
        self.owner_id = owner_id
        self._on_error = on_error
        self._stopped = False
        self.username: Optional[str] = None
        self._error_tasks: Set["asyncio.Task[None]"] = set()

    @property
    def app(self) -> Application:
        return self._app

    def install_handlers(self, on_update: Optional[UpdateHandler]) -> None:
        """Register the ownership guard, the inbound handler and error hooks."""

        async def _guard(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            if not is_from_owner(update, self.owner_id):
                raise ApplicationHandlerStop

        async def _forward(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            if on_update is not None:
                await on_update(update)

        async def _handler_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
            logger.error(
                "[TRANSPORT] Update handling failed for owner %s: %s",
                self.owner_id,
                context.error,
            )
            if self._on_error is not None and context.error is not None:
                await self._on_error(to_transport_error(context.error))

        # Guard runs first; ApplicationHandlerStop drops foreign updates.
        self._app.add_handler(TypeHandler(Update, _guard), group=-1)
        self._app.add_handler(TypeHandler(Update, _forward), group=0)
        self._app.add_error_handler(_handler_error)

    def polling_error_callback(self, exc: TelegramError) -> None:
        """Synchronous hook for ``Updater.start_polling(error_callback=...)``."""
        logger.warning("[TRANSPORT] Polling error for owner %s: %s", self.owner_id, exc)
        if self._on_error is None:
            return
        task = asyncio.get_running_loop().create_task(self._on_error(to_transport_error(exc)))
        self._error_tasks.add(task)
        task.add_done_callback(self._error_tasks.discard)

    def is_healthy(self) -> bool:
        if self._stopped:
            return False
        updater = self._app.updater
        return bool(self._app.running and updater is not None and updater.running)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            if self._app.running:
                await self._app.stop()
            await self._app.shutdown()
            logger.info("[TRANSPORT] Connection for owner %s stopped", self.owner_id)
        except Exception:
            logger.exception("[TRANSPORT] Error during shutdown for owner %s", self.owner_id)

    async def publish(
        self,
        chat_id: int,
        text: str,
        media_type: MediaType = MediaType.TEXT,
        media_file_id: Optional[str] = None,
    ) -> SentMessage:
        bot = self._app.bot
        try:
            if media_type == MediaType.PHOTO and media_file_id:
                message = await bot.send_photo(chat_id=chat_id, photo=media_file_id, caption=text or None)
            elif media_type == MediaType.VIDEO and media_file_id:
                message = await bot.send_video(chat_id=chat_id, video=media_file_id, caption=text or None)
            else:
                message = await bot.send_message(chat_id=chat_id, text=text)
        except TelegramError as exc:
            raise to_transport_error(exc) from exc

        return SentMessage(
            message_id=message.message_id,
            chat_id=message.chat_id,
            sent_at=ensure_utc(message.date),
        )


# =============================================================================
# TRANSPORT
# =============================================================================


class TelegramTransport(Transport):
    """Opens one polling ``Application`` per tenant bot token."""

    def __init__(self, drop_pending_updates: bool = True) -> None:
        self.drop_pending_updates = drop_pending_updates

    async def open(
        self,
        token: str,
        owner_id: int,
        on_update: Optional[UpdateHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> TelegramConnection:
        app: Optional[Application] = None
        try:
            app = Application.builder().token(token).build()
            connection = TelegramConnection(app, owner_id, on_error=on_error)
            connection.install_handlers(on_update)

            await app.initialize()
            connection.username = app.bot.username

            # A webhook also blocks getUpdates; clear it so the probe only
            # reports a competing poller.
            await app.bot.delete_webhook(drop_pending_updates=self.drop_pending_updates)
            await app.bot.get_updates(timeout=0, limit=1)

            await app.start()
            await app.updater.start_polling(
                drop_pending_updates=self.drop_pending_updates,
                error_callback=connection.polling_error_callback,
            )
        except TelegramError as exc:
            error = to_transport_error(exc)
            logger.warning(
                "[TRANSPORT] Open failed for owner %s (%s): %s",
                owner_id,
                error.kind.value,
                exc,
            )
            if app is not None:
                await _shutdown_quietly(app)
            raise error from exc
        except Exception:
            logger.exception("[TRANSPORT] Unexpected error opening owner %s", owner_id)
            if app is not None:
                await _shutdown_quietly(app)
            raise

        logger.info(
            "[TRANSPORT] Connection for owner %s live (@%s)",
            owner_id,
            connection.username,
        )
        return connection


async def _shutdown_quietly(app: Application) -> None:
    try:
        if app.updater and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()
    except Exception:
        logger.exception("[TRANSPORT] Error while discarding a failed application")


__all__ = [
    "TelegramConnection",
    "TelegramTransport",
    "classify_telegram_error",
    "is_from_owner",
    "to_transport_error",
]
