import sys
import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from splitchat.api.routes import router
from splitchat.config import get_settings
from splitchat.deps import repo

settings = get_settings()

logger.remove()
logger.add(
    sys.stderr,
    level=settings.log_level.upper(),
    format="{time:HH:mm:ss} | {level:<7} | {message}",
)

app = FastAPI(title="Splitchat", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response: Response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "{} {} → {} ({:.0f} ms)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(router)


@app.get("/health")
def health():
    return {"status": "ok", "categories": len(repo.list_categories())}


@app.on_event("startup")
async def startup():
    """Open the ledger and start the Telegram bot if a token is configured."""
    logger.info("Ledger at {} ({} categories)", settings.db_path, len(repo.list_categories()))
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set, chat is available over HTTP only")
        return

    from splitchat.bot.handler import build_bot_app

    bot_app = build_bot_app()
    app.state.bot = bot_app

    await bot_app.initialize()
    await bot_app.start()
    await bot_app.updater.start_polling(drop_pending_updates=True)
    logger.info("Telegram bot started (polling)")


@app.on_event("shutdown")
async def shutdown():
    """Stop the bot, then flush and close the ledger file."""
    bot_app = getattr(app.state, "bot", None)
    if bot_app:
        await bot_app.updater.stop()
        await bot_app.stop()
        await bot_app.shutdown()
        logger.info("Telegram bot stopped")
    repo.db.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=True)
