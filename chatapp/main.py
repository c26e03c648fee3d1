import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router
from .core import redis_startup, init_metrics, shutdown_connections
from .errors import ChatError, CooldownActive, RateLimited
from .feed import feed
from .profiles import bootstrap_world_conversation
import logging
from pythonjsonlogger import jsonlogger

# setup structured logging
logger = logging.getLogger('chatapp')
handler = logging.StreamHandler()
formatter = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(logging.INFO)

app = FastAPI(title="ChatApp API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(router, prefix="/api")

_relay_task = None

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    headers = {}
    if isinstance(exc, (CooldownActive, RateLimited)) and exc.retry_after:
        headers['Retry-After'] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content={'detail': exc.message, 'error': exc.kind},
                        headers=headers)

@app.get('/healthz')
async def healthz():
    return {'status': 'ok'}

@app.middleware('http')
async def log_requests(request: Request, call_next):
    logger.info({'msg':'request_start','method':request.method,'path':request.url.path})
    response = await call_next(request)
    logger.info({'msg':'request_end','status': response.status_code})
    return response

@app.on_event("startup")
async def startup():
    global _relay_task
    # Best-effort init, don't block app from starting if a dependency fails
    try:
        await redis_startup()
    except Exception as e:
        logger.warning({'msg': 'redis_start_failed', 'error': str(e)})
    try:
        init_metrics()
    except Exception as e:
        logger.warning({'msg': 'metrics_init_failed', 'error': str(e)})
    try:
        await bootstrap_world_conversation()
    except Exception as e:
        logger.warning({'msg': 'world_bootstrap_failed', 'error': str(e)})
    try:
        _relay_task = asyncio.create_task(feed.start_redis_listener())
    except Exception as e:
        logger.warning({'msg': 'relay_start_failed', 'error': str(e)})

@app.on_event("shutdown")
async def shutdown():
    if _relay_task and not _relay_task.done():
        _relay_task.cancel()
    await shutdown_connections()
