from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from contextlib import asynccontextmanager
import logging

from config import Settings, get_settings
from database import Base, engine as db_engine
from core.context import EngineContext
from core.engine import RoundEngine
from services.auth_service import AuthService
from api import admin, auth, bets, games

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # SQLAlchemy / APScheduler 的 INFO 太吵
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(ctx: EngineContext = None, config: Settings = None) -> FastAPI:
    config = config or (ctx.config if ctx else get_settings())
    if ctx is None:
        ctx = EngineContext.build(config, db_engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: 建表、補預設設定、重建鬧鐘、跑一次 tick、啟動 scheduler
        setup_logging(config.log_level)
        Base.metadata.create_all(bind=ctx.db_engine)
        report = app.state.engine.startup()
        logger.info(f"Startup report: {report}")
        yield
        # Shutdown: 停止 scheduler（鬧鐘下次開機會依 DB 狀態重建）
        app.state.engine.shutdown()

    app = FastAPI(
        title="Round Engine API",
        description="Five-minute betting rounds: scheduling, wagers and settlement",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = RoundEngine(ctx)
    app.state.auth = AuthService(config, ctx.clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        # 輸入格式錯誤一律 400
        return JSONResponse(
            status_code=400,
            content={"detail": {"code": "ValidationFailed", "message": jsonable_encoder(exc.errors())}},
        )

    app.include_router(auth.router)
    app.include_router(bets.router)
    app.include_router(games.router)
    app.include_router(admin.router)

    @app.get("/")
    def root():
        return {"message": "Round Engine API", "status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy", "server_time": ctx.clock.now_civil()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(app, host=settings.bind_host, port=settings.bind_port)
