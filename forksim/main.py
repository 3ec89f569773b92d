"""
forksim - FastAPI Main Entry

在一次性 Anvil 分叉上模拟 EVM 调用，返回 token 转账与余额变动。
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import get_settings
from .simulation.engine import SimulationEngine
from .simulation.errors import ErrorKind, SimulationError
from .simulation.models import SimulateRequest, SimulateResponse


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    settings = get_settings()
    setup_logging(settings.log_level)

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("forksim 启动中...")
    logger.info(f"anvil: {settings.anvil_binary_path}")
    logger.info(f"价格查询: {'启用' if settings.pricing_enabled else '未配置 CMC_PRO_API_KEY，已禁用'}")
    logger.info("=" * 60)

    if getattr(app.state, "engine", None) is None:
        app.state.engine = SimulationEngine(settings)

    yield

    logger.info("forksim 关闭中...")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="forksim",
    description="EVM transaction simulation on disposable Anvil forks",
    version=__version__,
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ReplayRequest(BaseModel):
    """按交易哈希重新模拟"""
    fork_url: str = Field(..., min_length=1, description="分叉源 RPC URL")


# =============================================================================
# Health Check
# =============================================================================


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy",
        "service": "forksim",
        "version": __version__,
    }


# =============================================================================
# Simulation Endpoints
# =============================================================================


@app.post("/api/v1/simulate", response_model=SimulateResponse, response_model_by_alias=True)
async def simulate(request: SimulateRequest):
    """
    在指定区块位置模拟一次调用

    ## 请求示例
    ```json
    {
      "fork_url": "https://eth.llamarpc.com",
      "block_number": 19000000,
      "tx_from": "0x...",
      "tx_to": "0x...",
      "tx_value": "0x0",
      "tx_data": "0xa9059cbb...",
      "transaction_index": 12
    }
    ```
    """
    engine: SimulationEngine = app.state.engine
    return await engine.simulate(request)


@app.post("/api/v1/simulate/{tx_hash}", response_model=SimulateResponse, response_model_by_alias=True)
async def simulate_existing(tx_hash: str, request: ReplayRequest):
    """在原始位置重新模拟一笔已上链的交易"""
    engine: SimulationEngine = app.state.engine
    return await engine.simulate_transaction(request.fork_url, tx_hash)


# =============================================================================
# Error Handlers
# =============================================================================

ERROR_STATUS = {
    ErrorKind.INVALID_CALL_DATA: 400,
    ErrorKind.FORK_UNAVAILABLE: 503,
    ErrorKind.RPC_TIMEOUT: 504,
    ErrorKind.RPC_FAILED: 502,
}


@app.exception_handler(SimulationError)
async def simulation_error_handler(request: Request, exc: SimulationError):
    """处理模拟错误"""
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logging.getLogger(__name__).error(f"模拟失败 [{exc.kind.value}]: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": exc.message, "type": exc.kind.value}},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """处理值错误"""
    return JSONResponse(
        status_code=400,
        content={"error": {"message": str(exc), "type": "invalid_request_error"}},
    )


# =============================================================================
# Main
# =============================================================================

def main():
    """主入口"""
    settings = get_settings()

    uvicorn.run(
        "forksim.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
