from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, engine, SessionLocal, settings as default_settings
from core.engine import WageringEngine
from core.scheduler import RoundScheduler
from api import rounds, players, admin

logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    settings=default_settings,
    session_factory=SessionLocal,
    bind=engine,
    wagering_engine=None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: 建立資料表、發布模式、從資料庫重建進行中的回合
        Base.metadata.create_all(bind=bind)

        wagering = wagering_engine or WageringEngine(settings)
        db = session_factory()
        try:
            wagering.start(db)
        finally:
            db.close()
        app.state.engine = wagering

        scheduler = None
        if settings.start_scheduler:
            scheduler = RoundScheduler.from_settings(wagering, session_factory, settings)
            scheduler.start()
        app.state.scheduler = scheduler

        yield

        # Shutdown: 停止排程（進行中的結算會完成或回滾，不會留下半套狀態）
        if scheduler is not None:
            scheduler.stop()

    app = FastAPI(
        title="Wagering Engine API",
        description="Round-based color/number wagering engine",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure this properly in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(rounds.router)
    app.include_router(players.router)
    app.include_router(admin.router)

    @app.get("/")
    def root():
        return {"message": "Wagering Engine API", "status": "ok"}

    @app.get("/health")
    def health(request: Request):
        scheduler = getattr(request.app.state, "scheduler", None)
        return {
            "status": "healthy",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
