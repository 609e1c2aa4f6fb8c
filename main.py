import asyncio
from redis.asyncio import Redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import settings
from core.logger import setup_logging, logger
from db.gateway import SqlAlchemyGateway
from services.monitoring_service import monitor_sessions
from services.session_service import SessionService

async def start_api():
    import uvicorn
    from api.main import app
    config = uvicorn.Config(app, host=settings.API_HOST, port=settings.API_PORT, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()

async def main():
    # Setup structured logging
    setup_logging()

    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    gateway = SqlAlchemyGateway()
    session_service = SessionService(gateway, redis=redis)

    # Session Monitor: inactivity expiry + result recovery
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        monitor_sessions,
        trigger="interval",
        seconds=settings.SESSION_MONITOR_INTERVAL_SECONDS,
        args=[gateway, session_service],
        id=settings.SESSION_MONITOR_JOB_ID,
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info("Scheduler started (Session Monitor).", interval=settings.SESSION_MONITOR_INTERVAL_SECONDS)

    logger.info("Starting API...", env=settings.ENV, host=settings.API_HOST, port=settings.API_PORT)
    try:
        await start_api()
    finally:
        scheduler.shutdown(wait=False)
        await redis.aclose()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Application stopped.")
