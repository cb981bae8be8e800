from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from everwell.api.auth import router as auth_router
from everwell.api.cron import router as cron_router
from everwell.api.dashboard import router as dashboard_router
from everwell.api.insights import router as insights_router
from everwell.api.metrics import router as metrics_router
from everwell.api.profile import AVATAR_URL_PREFIX
from everwell.api.profile import router as profile_router
from everwell.api.tools import router as tools_router
from everwell.core import config
from everwell.core.errors import InsightsApiError
from everwell.db.session import create_tables

app = FastAPI(title=config.APP_NAME)


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.exception_handler(InsightsApiError)
def insights_error_handler(request: Request, exc: InsightsApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": f"{config.APP_NAME} API", "status": "ok"}


app.include_router(auth_router)
app.include_router(profile_router)
app.include_router(metrics_router)
app.include_router(dashboard_router)
app.include_router(insights_router)
app.include_router(tools_router)
app.include_router(cron_router)
app.mount(AVATAR_URL_PREFIX, StaticFiles(directory=str(config.avatar_dir())), name="avatars")
