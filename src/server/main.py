"""
FastAPI 应用入口点（Mock CA 服务）。
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from src.server.config import config
from src.server.mockca.core import VERSION, get_default_ca
from src.server.mockca.router import router as mockca_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 在接受请求前生成 CA；失败时直接中止启动
    ca = get_default_ca()
    try:
        ca.ensure_ready()
    except Exception as e:
        logger.error(f"Mock CA 初始化失败，服务无法启动: {e}")
        raise
    cert = ca.certificate
    logger.info(
        f"Mock CA Server is ready: version={VERSION}, ca_subject={cert.subject.rfc4514_string()}, "
        f"ca_expires={cert.not_valid_after_utc.isoformat()}"
    )
    yield
    logger.info("Mock CA Server 已停止")


app = FastAPI(title="External Issuer Mock CA", version=VERSION, lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - start) * 1000)
    client = request.client.host if request.client else "-"
    logger.info(
        f"HTTP request: method={request.method}, path={request.url.path}, status={response.status_code}, "
        f"duration_ms={duration_ms}, remote_addr={client}, user_agent={request.headers.get('user-agent', '')}"
    )
    return response


app.include_router(mockca_router)

logger.debug(f"config: {config.model_dump_json(indent=4)}")
