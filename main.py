import sys

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from circlepay.api.admin import router as admin_router
from circlepay.api.routes import router
from circlepay.config import get_settings
from circlepay.deps import get_circle_service, get_notifier, get_reminder_scheduler
from circlepay.errors import CirclePayError

settings = get_settings()

# Configure loguru
logger.remove()
logger.add(sys.stderr, level=settings.log_level, format="{time:HH:mm:ss} | {level:<7} | {message}")

app = FastAPI(title="CirclePay", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("{} {}", request.method, request.url.path)
    response: Response = await call_next(request)
    logger.info("→ {}", response.status_code)
    return response


@app.exception_handler(CirclePayError)
async def handle_domain_error(request: Request, exc: CirclePayError):
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(router)
app.include_router(admin_router)


@app.on_event("startup")
async def startup():
    """Start the Telegram bot and the reminder task alongside FastAPI."""
    get_circle_service()
    get_reminder_scheduler().start()

    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set, bot will not start")
        return

    from circlepay.bot.handler import build_bot_app

    bot_app = build_bot_app()
    app.state.bot = bot_app
    get_notifier().attach(bot_app.bot)

    await bot_app.initialize()
    await bot_app.start()
    await bot_app.updater.start_polling(drop_pending_updates=True)
    logger.info("Telegram bot started (polling)")


@app.on_event("shutdown")
async def shutdown():
    """Stop the reminder task and the Telegram bot."""
    await get_reminder_scheduler().stop()

    bot_app = getattr(app.state, "bot", None)
    if bot_app:
        await bot_app.updater.stop()
        await bot_app.stop()
        await bot_app.shutdown()
        logger.info("Telegram bot stopped")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
