import asyncio
import hmac
import logging
import sys

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, status
from pydantic import ValidationError

from pandoc_bot import __version__
from pandoc_bot.config import Settings, configure_logging
from pandoc_bot.conversion import ConversionService
from pandoc_bot.conversion.adapters import DoclingConverter, EngineRouter, LocalStateStore, LocalTempStore, PandocConverter
from pandoc_bot.errors import ConfigError
from pandoc_bot.handlers import Update, UpdateHandler, UpdatePoller
from pandoc_bot.telegram import TelegramBot

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/telegram/webhook"


def build_service(settings: Settings, bot: TelegramBot) -> ConversionService:
    state = LocalStateStore(settings.state_dir, default_format=settings.default_format)
    staging = LocalTempStore(settings.temp_dir)
    converter = EngineRouter([
        PandocConverter(settings.pandoc_path, pdf_engine=settings.pdf_engine),
        DoclingConverter(),
    ])
    return ConversionService(
        state=state,
        staging=staging,
        converter=converter,
        bot=bot,
        timeout=settings.conversion_timeout_sec,
        max_document_bytes=settings.max_document_bytes,
    )


def create_app(
    settings: Settings,
    *,
    bot: TelegramBot | None = None,
    service: ConversionService | None = None,
) -> FastAPI:
    """Build the webhook application.

    ``bot`` and ``service`` default to the real Telegram client and a service
    wired to local storage and the pandoc/docling engines.
    """
    app = FastAPI(
        title="Pandoc Bot",
        version=__version__,
        description="Telegram webhook front end converting documents with pandoc.",
    )
    if bot is None:
        bot = TelegramBot(settings.bot_token, settings.telegram_api_base)
    if service is None:
        service = build_service(settings, bot)
    handler = UpdateHandler(service, bot, max_document_bytes=settings.max_document_bytes)
    app.state.service = service

    @app.on_event("startup")
    async def _startup() -> None:
        removed = await service.reconcile()
        logger.info("Webhook front end ready (%d orphaned staged files removed)", removed)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.shutdown()

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post(WEBHOOK_PATH)
    async def webhook(
        payload: dict,
        background: BackgroundTasks,
        x_telegram_bot_api_secret_token: str | None = Header(None),
    ) -> dict[str, bool]:
        if settings.webhook_secret is not None:
            supplied = x_telegram_bot_api_secret_token or ""
            if not hmac.compare_digest(supplied.encode("utf-8"), settings.webhook_secret.encode("utf-8")):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"code": "forbidden", "message": "invalid secret token"})
        try:
            update = Update.model_validate(payload)
        except ValidationError:
            # Telegram retries non-2xx responses; a malformed update is dropped instead.
            logger.warning("Ignoring malformed update")
            return {"ok": False}
        background.add_task(handler.handle, update)
        return {"ok": True}

    return app


async def _run_polling(settings: Settings) -> None:
    bot = TelegramBot(settings.bot_token, settings.telegram_api_base)
    service = build_service(settings, bot)
    removed = await service.reconcile()
    logger.info("Removed %d orphaned staged files", removed)
    handler = UpdateHandler(service, bot, max_document_bytes=settings.max_document_bytes)
    try:
        await UpdatePoller(bot, handler).run()
    finally:
        await service.shutdown()


def run() -> None:
    """Start the bot.

    Reads settings from the environment and exits with status 2 if any is
    missing or invalid. BOT_MODE=webhook serves the webhook with uvicorn on
    HOST:PORT; BOT_MODE=polling long-polls the Bot API instead.
    """
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        raise SystemExit(2) from None
    configure_logging(settings.log_level)
    logger.info("Starting pandoc-bot %s in %s mode", __version__, settings.bot_mode)

    if settings.bot_mode == "polling":
        try:
            asyncio.run(_run_polling(settings))
        except KeyboardInterrupt:
            logger.info("Stopped")
        return

    import uvicorn

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
