from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.notifications import NotificationManager
from app.infra.db import Base, engine
from app.infra.store import SqlNotificationStore
from app.api.schemas import HealthOut
from app.api.notification_routes import router as notification_router
from app.api.payment_routes import router as payment_router


def create_app(manager: NotificationManager | None = None) -> FastAPI:
    setup_logging()
    notifications = manager or NotificationManager(store=SqlNotificationStore())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        notifications.start()
        try:
            yield
        finally:
            await notifications.shutdown()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.notifications = notifications

    # CORS (for the Vite admin panel)
    if settings.CORS_ALLOW_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ALLOW_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(notification_router)
    app.include_router(payment_router)

    @app.get("/health", response_model=HealthOut)
    def health(request: Request):
        return HealthOut(
            status="ok",
            app=settings.APP_NAME,
            subscribers=request.app.state.notifications.subscriber_count,
        )

    return app


app = create_app()
