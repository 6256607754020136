from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from reconciliation.config import settings
from reconciliation.logging_config import configure_logging
from reconciliation.routers import orders, receipts, sync, webhooks
from reconciliation.security.headers import install_security_headers
from reconciliation.services.sync_orchestrator import SyncScheduler, orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    scheduler = SyncScheduler(orchestrator)
    if settings.scheduler_enabled:
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        scheduler.stop()


app = FastAPI(title='Payment Reconciliation', lifespan=lifespan)

install_security_headers(app)

app.include_router(webhooks.router)
app.include_router(receipts.router)
app.include_router(orders.router)
app.include_router(sync.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
